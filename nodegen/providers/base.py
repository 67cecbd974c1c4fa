"""
Provider adapter interface and the two concrete job shapes (subscribe, create/poll)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from nodegen.core.catalog import ModelDescriptor
from nodegen.core.errors import UploadError
from nodegen.core.media import is_remote_url
from nodegen.core.poller import (
    AsyncJobPoller,
    GenerationJob,
    PollResult,
    ProgressCallback,
    ProgressEvent,
)
from nodegen.models.models import GenerationMode, MediaKind

logger = logging.getLogger(__name__)


@dataclass
class MediaInput:
    """An input file: either an absolute URL or bytes still to be uploaded."""

    kind: MediaKind
    url: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: str = "application/octet-stream"
    parent_id: Optional[str] = None

    @property
    def needs_upload(self) -> bool:
        return not (self.url and is_remote_url(self.url))


@dataclass
class GenerationRequest:
    node_id: str
    model: ModelDescriptor
    mode: GenerationMode
    prompt: str = ""
    images: List[MediaInput] = field(default_factory=list)
    video: Optional[MediaInput] = None
    aspect_ratio: str = "Auto"
    resolution: str = "Auto"
    duration: Optional[int] = None
    generate_audio: bool = True
    variation_count: int = 1
    # Provider task id of the video being extended
    source_task_id: Optional[str] = None


@dataclass
class JobHandle:
    task_id: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Outcome:
    result_url: str
    result_urls: List[str] = field(default_factory=list)
    task_id: Optional[str] = None


class ProviderAdapter(ABC):
    """Submits one generation request to one external provider."""

    name = "provider"

    @abstractmethod
    async def submit(self, request: GenerationRequest, job: GenerationJob) -> JobHandle:
        ...

    @abstractmethod
    async def await_outcome(
        self, handle: JobHandle, job: GenerationJob, on_progress: Optional[ProgressCallback] = None
    ) -> Outcome:
        ...

    async def upload(self, data: bytes, mime_type: str) -> str:
        raise UploadError(f"{self.name} does not accept uploaded files")

    async def ensure_url(self, media: MediaInput, job: Optional[GenerationJob] = None) -> str:
        """Upload the input unless it is already an absolute http(s) URL."""
        if not media.needs_upload:
            return media.url
        if media.data is None:
            raise UploadError(f"Input {media.url or media.parent_id} has no data to upload")
        if job is not None:
            job.raise_if_cancelled()
        url = await self.upload(media.data, media.mime_type)
        logger.info(f"📤 Uploaded {media.kind.value} input ({len(media.data)} bytes) to {self.name}")
        media.url = url
        return url

    async def generate(
        self, request: GenerationRequest, job: GenerationJob, on_progress: Optional[ProgressCallback] = None
    ) -> Outcome:
        handle = await self.submit(request, job)
        job.raise_if_cancelled()
        return await self.await_outcome(handle, job, on_progress)

    async def aclose(self):
        pass


class TaskProviderAdapter(ProviderAdapter):
    """create_task + poll, driven to a terminal state by the AsyncJobPoller."""

    def __init__(self, poller: AsyncJobPoller):
        self.poller = poller

    @abstractmethod
    async def create_task(self, request: GenerationRequest, job: GenerationJob) -> str:
        ...

    @abstractmethod
    async def poll(self, task_id: str) -> PollResult:
        ...

    async def submit(self, request: GenerationRequest, job: GenerationJob) -> JobHandle:
        task_id = await self.create_task(request, job)
        job.external_task_id = task_id
        logger.info(f"🚀 {self.name} task created for node {job.node_id}: {task_id}")
        return JobHandle(task_id=task_id)

    async def await_outcome(
        self, handle: JobHandle, job: GenerationJob, on_progress: Optional[ProgressCallback] = None
    ) -> Outcome:
        result = await self.poller.run(job, self.poll, on_progress)
        return Outcome(
            result_url=job.result_url,
            result_urls=list(result.result_urls or [job.result_url]),
            task_id=handle.task_id,
        )


# Subscribe-style status order; progress never moves backwards
STATUS_ORDER = {"queued": 0, "in_progress": 1, "completed": 2}


class SubscribeProgress:
    """Per-call progress state for subscribe-style providers.

    A status event is emitted only when the status changes and does not move
    backwards; each log line is emitted once.
    """

    def __init__(self, on_progress: Optional[ProgressCallback] = None):
        self.on_progress = on_progress
        self.last_status: Optional[str] = None
        self.logs_seen = 0
        self.events: List[ProgressEvent] = []

    def observe(self, status: str, logs: Optional[List[str]] = None, position: Optional[int] = None) -> List[ProgressEvent]:
        emitted = []

        if status in STATUS_ORDER and status != self.last_status:
            previous = STATUS_ORDER.get(self.last_status, -1)
            if STATUS_ORDER[status] >= previous:
                self.last_status = status
                detail = f"Queue position {position}" if position is not None else ""
                emitted.append(ProgressEvent(phase=status, label=status.replace("_", " ").title(), detail=detail))

        if logs and len(logs) > self.logs_seen:
            for line in logs[self.logs_seen:]:
                emitted.append(ProgressEvent(phase=self.last_status or "in_progress", label="Log", detail=line))
            self.logs_seen = len(logs)

        for event in emitted:
            self.events.append(event)
            if self.on_progress:
                self.on_progress(event)
        return emitted
