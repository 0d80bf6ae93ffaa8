"""
Concurrency Dispatcher
======================

Runs item jobs with a parallelism ceiling per job class.

Jobs of a class are admitted strictly in submission order: the next one
starts as soon as a slot of its class frees up. Every class has its own
admission queue, so a full class never holds back another. A stop request
ends admission; jobs that were already admitted run to completion (their
polls observe the same stop signal). One job's failure never prevents the
others from running.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """One unit of work bound to an item id."""

    key: str
    run: Callable[[], Awaitable[Any]]
    job_class: str = "image"


@dataclass
class DispatchReport:
    """Per-job outcome of a dispatch."""

    completed: List[str] = field(default_factory=list)
    failures: Dict[str, BaseException] = field(default_factory=dict)
    not_admitted: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.not_admitted


class Dispatcher:
    """
    Bounded-concurrency job runner.

    The ceilings hold across concurrent ``dispatch`` calls on the same
    instance, so a single-item retry cannot exceed them while a batch runs.

    Usage:
        dispatcher = Dispatcher({"image": 3, "video": 2})
        report = await dispatcher.dispatch(jobs, cancel_event=stop_event)
    """

    def __init__(self, limits: Dict[str, int]):
        self.limits = dict(limits)
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.active: Counter = Counter()
        self.peak: Counter = Counter()

    def _semaphore(self, job_class: str) -> asyncio.Semaphore:
        # Semaphores belong to the loop they were first awaited on
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._semaphores = {}
            self._loop = loop
        if job_class not in self._semaphores:
            self._semaphores[job_class] = asyncio.Semaphore(self.limits.get(job_class, 1))
        return self._semaphores[job_class]

    async def dispatch(
        self,
        jobs: Sequence[Job],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchReport:
        """
        Run ``jobs`` and wait for every admitted one to finish.

        Args:
            jobs: Jobs in submission order
            cancel_event: Stop signal checked before each admission

        Returns:
            DispatchReport with completed keys, failures by key and the keys
            that were never admitted
        """
        report = DispatchReport()
        tasks: Dict[str, asyncio.Task] = {}
        skipped: Set[str] = set()

        queues: Dict[str, List[Job]] = {}
        for job in jobs:
            queues.setdefault(job.job_class, []).append(job)
        await asyncio.gather(*(
            self._admit(queue, tasks, skipped, cancel_event) for queue in queues.values()
        ))

        if skipped:
            report.cancelled = True
            report.not_admitted = [job.key for job in jobs if job.key in skipped]
            logger.info(f"Dispatch stopped; {len(report.not_admitted)} jobs not admitted")

        if tasks:
            results = await asyncio.gather(*tasks.values(), return_exceptions=True)
            for key, result in zip(tasks.keys(), results):
                if isinstance(result, BaseException):
                    report.failures[key] = result
                else:
                    report.completed.append(key)

        if report.failures:
            logger.warning(f"Dispatch finished with {len(report.failures)} failed jobs")
        return report

    async def _admit(
        self,
        queue: List[Job],
        tasks: Dict[str, asyncio.Task],
        skipped: Set[str],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        """Admit the jobs of one class in order, one free slot at a time."""
        for index, job in enumerate(queue):
            semaphore = self._semaphore(job.job_class)
            await semaphore.acquire()

            if cancel_event is not None and cancel_event.is_set():
                semaphore.release()
                skipped.update(j.key for j in queue[index:])
                return

            logger.debug(f"Admitting {job.job_class} job {job.key}")
            tasks[job.key] = asyncio.create_task(self._run(job, semaphore))

    async def _run(self, job: Job, semaphore: asyncio.Semaphore) -> Any:
        self.active[job.job_class] += 1
        self.peak[job.job_class] = max(self.peak[job.job_class], self.active[job.job_class])
        try:
            return await job.run()
        finally:
            self.active[job.job_class] -= 1
            semaphore.release()
