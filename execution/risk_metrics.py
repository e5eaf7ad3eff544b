"""
Risk maths - volatility, correlation, drawdown and Kelly helpers.

Pure functions over plain float sequences. Too-short inputs raise
InsufficientDataError; the RiskGate decides the fallback.
"""
from __future__ import annotations

import math
from typing import List, Sequence

from execution.errors import InsufficientDataError


def daily_returns(closes: Sequence[float]) -> List[float]:
    """Simple returns between consecutive closes, skipping non-positive prices."""
    return [(closes[i] - closes[i - 1]) / closes[i - 1]
            for i in range(1, len(closes)) if closes[i - 1] > 0]


def volatility(closes: Sequence[float]) -> float:
    """Sample standard deviation of daily returns."""
    returns = daily_returns(closes)
    if len(returns) < 2:
        raise InsufficientDataError(f"need at least 3 closes for volatility, got {len(closes)}")
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / (len(returns) - 1)
    return math.sqrt(variance)


def pearson(xs: Sequence[float], ys: Sequence[float], min_samples: int = 5) -> float:
    """
    Pearson correlation over the most recent common window.

    Both series are truncated to the shorter length (keeping the newest
    points). A flat series has no defined correlation and yields 0.0.
    """
    n = min(len(xs), len(ys))
    if n < min_samples:
        raise InsufficientDataError(f"need {min_samples} common samples, got {n}")
    xs, ys = list(xs)[-n:], list(ys)[-n:]
    mx, my = sum(xs) / n, sum(ys) / n
    cov = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    vx = sum((x - mx) ** 2 for x in xs)
    vy = sum((y - my) ** 2 for y in ys)
    if vx == 0 or vy == 0:
        return 0.0
    return cov / math.sqrt(vx * vy)


def max_drawdown(prices: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a fraction of the peak."""
    peak, worst = None, 0.0
    for p in prices:
        if peak is None or p > peak:
            peak = p
        elif peak > 0:
            worst = max(worst, (peak - p) / peak)
    return worst


def kelly_fraction(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """f* = (b·p − q) / b with b = avg_win / avg_loss. Unclamped."""
    if avg_win <= 0 or avg_loss <= 0:
        raise InsufficientDataError("Kelly needs positive average win and loss")
    b = avg_win / avg_loss
    return (b * win_rate - (1.0 - win_rate)) / b


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
