"""
Periodic scheduler - runs named jobs at fixed intervals on a worker pool.

Each job is skip-if-busy: a tick that arrives while the previous run of the
same job is still executing is dropped. A job raising an exception is logged
and keeps its schedule.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from loguru import logger


@dataclass
class Job:
    name: str
    interval_sec: float
    func: Callable[[], object]
    next_run: float = 0.0
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    _busy: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def running(self) -> bool:
        return self._busy.locked()


class PeriodicScheduler:
    """Fixed-interval job runner backed by a ThreadPoolExecutor."""

    def __init__(self, workers: int = 4, clock: Callable[[], float] = time.monotonic,
                 tick_sec: float = 0.5):
        self._jobs: Dict[str, Job] = {}
        self._pool: Optional[ThreadPoolExecutor] = None
        self._workers = workers
        self._clock = clock
        self._tick = tick_sec
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_job(self, name: str, interval_sec: float, func: Callable[[], object],
                run_immediately: bool = True) -> Job:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = Job(name, interval_sec, func,
                  next_run=self._clock() if run_immediately else self._clock() + interval_sec)
        self._jobs[name] = job
        logger.info(f"Scheduled job '{name}' every {interval_sec:.0f}s")
        return job

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    # ── Execution ────────────────────────────────────────────────────────

    def _execute(self, job: Job) -> None:
        try:
            job.func()
            job.runs += 1
        except Exception as e:
            job.failures += 1
            logger.exception(f"Job '{job.name}' failed: {e}")
        finally:
            job._busy.release()

    def submit(self, job: Job) -> Optional[Future]:
        """Dispatch one run of a job unless its previous run is still going."""
        if not job._busy.acquire(blocking=False):
            job.skipped += 1
            logger.warning(f"Job '{job.name}' still running; skipping this tick")
            return None
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="job")
        return self._pool.submit(self._execute, job)

    def run_pending(self) -> List[Future]:
        now = self._clock()
        futures = []
        for job in self._jobs.values():
            if now < job.next_run:
                continue
            job.next_run = now + job.interval_sec
            future = self.submit(job)
            if future is not None:
                futures.append(future)
        return futures

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self._tick)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Scheduler already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with {len(self._jobs)} job(s), {self._workers} worker(s)")

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join()
            self._thread = None
        if self._pool:
            self._pool.shutdown(wait=wait)
            self._pool = None
        logger.info("Scheduler stopped")
