"""
Task Poller
===========

Follows a provider task handle to a terminal outcome.

The first status check happens immediately, because a task picked up again
after a restart may already be finished. Later checks are spaced by the
configured interval, which is also where a stop request is observed.
"""

import asyncio
import logging
from typing import Optional

from ..api.base import BaseGenerationClient, TaskStatus
from ..core.config import PollingConfig
from ..core.exceptions import (
    GenerationError,
    PollTimeoutError,
    ProviderBusyError,
    ProviderError,
    StoppedError,
)

logger = logging.getLogger(__name__)


class Poller:
    """
    Polls task handles until they succeed, fail or run out of attempts.

    Outcomes:
        succeeded   -> artifact URL returned
        failed      -> GenerationError
        unavailable -> ProviderBusyError (``no_resource``)
        budget used -> PollTimeoutError (outcome unknown)
        stopped     -> StoppedError
    """

    def __init__(self, client: BaseGenerationClient, config: Optional[PollingConfig] = None):
        self.client = client
        self.config = config or PollingConfig()

    def budget_for(self, job_class: str) -> int:
        """Attempt budget for a dispatcher job class."""
        if job_class == "video":
            return self.config.video_max_attempts
        return self.config.image_max_attempts

    async def poll(
        self,
        task_handle: str,
        job_class: str = "image",
        cancel_event: Optional[asyncio.Event] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Wait for a task to finish.

        Args:
            task_handle: Provider task id
            job_class: ``image`` or ``video`` (selects the attempt budget)
            cancel_event: Stop signal
            max_attempts: Override for the attempt budget

        Returns:
            Provider artifact URL
        """
        budget = max_attempts or self.budget_for(job_class)
        attempt = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise StoppedError()

            attempt += 1
            try:
                result = await self.client.get_status(task_handle)
            except ProviderError as e:
                # Status endpoint hiccups count against the budget but do not end the poll
                if attempt % 10 == 1:
                    logger.warning(f"Task {task_handle} status check {attempt}/{budget} failed: {e}")
                result = None

            if result is not None:
                if attempt % 10 == 1:
                    logger.info(f"Task {task_handle} attempt {attempt}/{budget}: {result.status.value}")

                if result.status == TaskStatus.SUCCEEDED:
                    if not result.artifact_url:
                        raise GenerationError("Task succeeded without an artifact", task_handle=task_handle)
                    logger.info(f"Task {task_handle} succeeded after {attempt} checks")
                    return result.artifact_url

                if result.status == TaskStatus.FAILED:
                    raise GenerationError(result.error or "Task failed", task_handle=task_handle)

                if result.status == TaskStatus.UNAVAILABLE:
                    raise ProviderBusyError(task_handle=task_handle)

            if attempt >= budget:
                logger.warning(f"Task {task_handle} polling timeout after {attempt} attempts")
                raise PollTimeoutError(task_handle=task_handle, attempts=attempt)

            if await self._wait(cancel_event):
                raise StoppedError()

    async def _wait(self, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep one interval; return True if a stop was requested meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(self.config.interval)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.config.interval)
        except asyncio.TimeoutError:
            pass
        return cancel_event.is_set()
