"""Background execution of jobs with bounded retries."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from common.errors import FleetError

logger = logging.getLogger(__name__)


class Job(Protocol):
    """A unit of work for the runner. ``run`` is blocking and runs in a thread."""

    name: str

    def run(self) -> None: ...

    def failed(self, error: Exception) -> None: ...


@dataclass
class TaskRunnerConfig:
    """Configuration for the task runner."""

    max_tries: int = 3  # Attempts per job before it is marked failed
    retry_delay: float = 5.0  # Seconds between attempts
    max_concurrent: int = 10  # Jobs running at the same time


class TaskRunner:
    """
    Runs submitted jobs in worker threads, at least once each.

    A job that raises is attempted again up to ``max_tries`` times unless the
    error is a non-retryable FleetError. After the last failure the job's
    ``failed`` hook is called.
    """

    def __init__(self, config: TaskRunnerConfig | None = None):
        self.config = config or TaskRunnerConfig()
        self._semaphore: asyncio.Semaphore | None = None
        self._pending: set[asyncio.Task] = set()
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning("Task runner already running")
            return
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._running = True
        logger.info(
            f"Task runner started (max_tries={self.config.max_tries}, "
            f"max_concurrent={self.config.max_concurrent})"
        )

    async def stop(self) -> None:
        """Cancel pending jobs and stop accepting new ones."""
        self._running = False
        for task in self._pending:
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
        logger.info("Task runner stopped")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, job: Job) -> asyncio.Task:
        """
        Schedule a job on the running event loop.

        Raises:
            RuntimeError: If the runner has not been started
        """
        if not self._running:
            raise RuntimeError("Task runner is not running")
        task = asyncio.create_task(self._execute(job), name=job.name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.debug(f"Submitted job {job.name}")
        return task

    async def drain(self) -> None:
        """Wait until every submitted job has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _execute(self, job: Job) -> bool:
        """Run a job with retries. Returns True when it eventually succeeded."""
        async with self._semaphore:
            last_error: Exception | None = None
            for attempt in range(1, self.config.max_tries + 1):
                try:
                    await asyncio.to_thread(job.run)
                    logger.info(f"Job {job.name} succeeded (attempt {attempt})")
                    return True
                except Exception as e:
                    last_error = e
                    logger.warning(
                        f"Job {job.name} failed: {e}, attempt={attempt}/{self.config.max_tries}"
                    )
                    if isinstance(e, FleetError) and not e.retryable:
                        break
                if attempt < self.config.max_tries:
                    await asyncio.sleep(self.config.retry_delay)

            logger.error(f"Job {job.name} permanently failed: {last_error}")
            try:
                await asyncio.to_thread(job.failed, last_error)
            except Exception as e:
                logger.error(f"Failure hook of job {job.name} raised: {e}")
            return False
