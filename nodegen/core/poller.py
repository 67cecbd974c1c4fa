"""
Generation jobs and the create/poll state machine shared by task-style providers
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from nodegen.core.errors import (
    GenerationError,
    JobCancelledError,
    JobTimeoutError,
    MalformedResponseError,
    ProviderError,
)
from nodegen.providers.result_url import extract_result_url, extract_result_urls

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.TIMED_OUT,
    JobState.CANCELLED,
})


class TaskState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


SUCCEEDED_WORDS = frozenset({"success", "succeed", "succeeded", "completed", "complete", "done"})
FAILED_WORDS = frozenset({"fail", "failed", "failure", "error", "canceled", "cancelled"})


def classify_task_state(raw: Any) -> TaskState:
    """Map a provider's free-form status string onto pending/succeeded/failed."""
    value = str(raw or "").strip().lower()
    if value in SUCCEEDED_WORDS:
        return TaskState.SUCCEEDED
    if value in FAILED_WORDS:
        return TaskState.FAILED
    return TaskState.PENDING


@dataclass
class PollResult:
    state: TaskState
    result: Any = None
    failure_reason: Optional[str] = None
    raw_state: Optional[str] = None
    result_urls: Optional[List[str]] = None


@dataclass
class ProgressEvent:
    phase: str
    label: str = ""
    detail: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


class GenerationJob:
    """One in-flight provider request for one node. Never persisted."""

    def __init__(self, node_id: str, provider: str, model_id: str, clock: Callable[[], float] = time.time):
        self.node_id = node_id
        self.provider = provider
        self.model_id = model_id
        self.external_task_id: Optional[str] = None
        self.state = JobState.SUBMITTED
        self.attempts = 0
        self.started_at = clock()
        self.result_url: Optional[str] = None
        self.error: Optional[str] = None
        self._cancel_requested = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self):
        if not self.is_terminal:
            self._cancel_requested = True

    def transition(self, state: JobState):
        if self.is_terminal:
            raise RuntimeError(f"Job for node {self.node_id} is already {self.state.value}")
        logger.debug(f"Job {self.node_id}: {self.state.value} -> {state.value}")
        self.state = state

    def raise_if_cancelled(self):
        if self._cancel_requested:
            if not self.is_terminal:
                self.transition(JobState.CANCELLED)
            raise JobCancelledError(f"Generation for node {self.node_id} was cancelled")


class AsyncJobPoller:
    """Submitted -> Polling -> Succeeded | Failed | TimedOut | Cancelled."""

    def __init__(
        self,
        interval: float = 5.0,
        max_wait: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.interval = interval
        self.max_wait = max_wait
        self.clock = clock
        self.sleep = sleep

    async def run(
        self,
        job: GenerationJob,
        poll: Callable[[str], Awaitable[PollResult]],
        on_progress: Optional[ProgressCallback] = None,
    ) -> PollResult:
        if not job.external_task_id:
            raise ValueError("Job has no external task id to poll")

        job.transition(JobState.POLLING)
        started = self.clock()
        task_id = job.external_task_id
        logger.info(f"⏳ Polling {job.provider} task {task_id} every {self.interval}s")

        while True:
            await self.sleep(self.interval)

            if job.cancel_requested:
                job.transition(JobState.CANCELLED)
                logger.info(f"🛑 Task {task_id} cancelled after {job.attempts} polls")
                raise JobCancelledError(f"Generation for node {job.node_id} was cancelled")

            elapsed = self.clock() - started
            if elapsed > self.max_wait:
                job.transition(JobState.TIMED_OUT)
                job.error = f"Timed out after {int(self.max_wait)}s"
                logger.warning(f"⏰ Task {task_id} timed out after {job.attempts} polls")
                raise JobTimeoutError(f"{job.provider} task {task_id} timed out after {int(self.max_wait)}s")

            job.attempts += 1
            try:
                result = await poll(task_id)
            except GenerationError as e:
                job.transition(JobState.FAILED)
                job.error = str(e)
                raise

            if result.state == TaskState.SUCCEEDED:
                url = extract_result_url(result.result)
                if not url:
                    job.transition(JobState.FAILED)
                    job.error = "Task succeeded without a result URL"
                    raise MalformedResponseError(
                        f"{job.provider} task {task_id} succeeded but returned no result URL"
                    )
                job.result_url = url
                if not result.result_urls:
                    result.result_urls = extract_result_urls(result.result) or [url]
                job.transition(JobState.SUCCEEDED)
                logger.info(f"✅ Task {task_id} succeeded after {job.attempts} polls")
                return result

            if result.state == TaskState.FAILED:
                reason = result.failure_reason or "Unknown task failure"
                job.transition(JobState.FAILED)
                job.error = reason
                logger.warning(f"❌ Task {task_id} failed: {reason}")
                raise ProviderError(f"{job.provider} task {task_id} failed: {reason}", body=result.result)

            if on_progress:
                on_progress(ProgressEvent(
                    phase="polling",
                    label="Generating",
                    detail=f"Status: {result.raw_state or 'pending'} (poll {job.attempts})",
                ))
