from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
import logging
import threading
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyJob:
    name: str
    hour: int
    minute: int
    func: Callable[[], Any]

    def __post_init__(self) -> None:
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid time of day for job {self.name}.")

    @property
    def run_at(self) -> time:
        return time(self.hour, self.minute)


class DailyScheduler:
    """Runs each job at most once per calendar day, once its time has passed.

    A job that was missed (process down at the scheduled minute) still runs on
    the next ``run_pending`` call of the same day.
    """

    def __init__(
        self,
        jobs: Iterable[DailyJob] = (),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.clock = clock
        self._jobs: dict[str, DailyJob] = {}
        self._last_run: dict[str, date] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        for job in jobs:
            self.add_job(job)

    @property
    def jobs(self) -> list[DailyJob]:
        return list(self._jobs.values())

    def add_job(self, job: DailyJob) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Duplicate job name: {job.name}")
        self._jobs[job.name] = job

    def run_job(self, name: str) -> Any:
        try:
            job = self._jobs[name]
        except KeyError as exc:
            raise ValueError(f"Unknown job: {name}") from exc
        logger.info("Running job %s", name)
        return job.func()

    def run_pending(self, now: datetime | None = None) -> list[str]:
        current = now or self.clock()
        ran: list[str] = []
        for job in sorted(self._jobs.values(), key=lambda item: item.run_at):
            if current.time() < job.run_at:
                continue
            if self._last_run.get(job.name) == current.date():
                continue
            self._last_run[job.name] = current.date()
            try:
                self.run_job(job.name)
            except Exception:
                logger.exception("Job %s failed", job.name)
            ran.append(job.name)
        return ran

    def start(self, poll_seconds: float = 60) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(poll_seconds,),
            name="fintrack-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler started with %s jobs", len(self._jobs))

    def stop(self, timeout: float | None = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self, poll_seconds: float) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(poll_seconds)
