"""
fal.ai adapter: uploads to the fal CDN and follows a queued request until it completes
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from nodegen.core.errors import (
    JobCancelledError,
    JobTimeoutError,
    MalformedResponseError,
    ProviderError,
    UploadError,
    ValidationError,
)
from nodegen.core.media import EXTENSION_BY_MIME
from nodegen.core.poller import GenerationJob, JobState, ProgressCallback
from nodegen.models.models import GenerationMode
from nodegen.providers.base import (
    GenerationRequest,
    JobHandle,
    Outcome,
    ProviderAdapter,
    SubscribeProgress,
)
from nodegen.providers.result_url import extract_result_url, extract_result_urls

logger = logging.getLogger(__name__)

FAL_QUEUE_URL = "https://queue.fal.run"
FAL_REST_URL = "https://rest.fal.ai"
FAL_POLL_INTERVAL = 1.0

DEFAULT_NEGATIVE_PROMPT = "blur, distort, and low quality"

# Queue status -> progress phase
FAL_STATUS = {
    "IN_QUEUE": "queued",
    "IN_PROGRESS": "in_progress",
    "COMPLETED": "completed",
}


class FalClient:
    """Async client for the fal.ai queue and storage REST APIs."""

    def __init__(
        self,
        key: str,
        queue_url: str = FAL_QUEUE_URL,
        rest_url: str = FAL_REST_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.queue_url = queue_url.rstrip("/")
        self.rest_url = rest_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Key {key}", "Accept": "application/json"},
        )

    async def _json(self, method: str, url: str, label: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{label} request failed: {e}")

        if response.status_code >= 400:
            logger.error(f"❌ {label} HTTP {response.status_code}: {response.text[:300]}")
            raise ProviderError(
                f"{label} failed with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                body=response.text,
                request_id=response.headers.get("x-fal-request-id"),
            )
        try:
            body = response.json()
        except ValueError:
            raise MalformedResponseError(f"{label} returned a non-JSON response")
        if not isinstance(body, dict):
            raise MalformedResponseError(f"{label} returned unexpected JSON: {str(body)[:200]}")
        return body

    async def upload(self, data: bytes, content_type: str) -> str:
        """Two-step CDN upload: fetch a storage token, then post the bytes."""
        file_name = f"{uuid.uuid4().hex}.{EXTENSION_BY_MIME.get(content_type, 'bin')}"
        try:
            token = await self._json(
                "POST",
                f"{self.rest_url}/storage/auth/token",
                "fal.ai storage token",
                params={"storage_type": "fal-cdn-v3"},
                json={},
            )
            uploaded = await self._json(
                "POST",
                f"{token['base_url']}/files/upload",
                "fal.ai upload",
                content=data,
                headers={
                    "Authorization": f"{token['token_type']} {token['token']}",
                    "Content-Type": content_type,
                    "X-Fal-File-Name": file_name,
                },
            )
        except KeyError as e:
            raise UploadError(f"fal.ai storage token response is missing {e}")
        except (ProviderError, MalformedResponseError) as e:
            raise UploadError(f"fal.ai storage upload failed: {e}")

        url = uploaded.get("access_url") or uploaded.get("url")
        if not url:
            raise UploadError("fal.ai upload succeeded but no URL was returned")
        return url

    async def submit(self, application: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._json("POST", f"{self.queue_url}/{application}", f"fal.ai {application}", json=arguments)
        if not body.get("request_id"):
            raise MalformedResponseError(f"fal.ai {application} returned no request_id")
        return body

    async def status(self, status_url: str) -> Dict[str, Any]:
        return await self._json("GET", status_url, "fal.ai status", params={"logs": 1})

    async def result(self, response_url: str) -> Dict[str, Any]:
        return await self._json("GET", response_url, "fal.ai result")

    async def cancel(self, cancel_url: str):
        await self._json("PUT", cancel_url, "fal.ai cancel")

    async def aclose(self):
        await self._client.aclose()


def _log_lines(status: Dict[str, Any]) -> List[str]:
    lines = []
    for entry in status.get("logs") or []:
        message = entry.get("message") if isinstance(entry, dict) else str(entry)
        if message:
            lines.append(message)
    return lines


class FalAdapter(ProviderAdapter):
    name = "fal"

    def __init__(
        self,
        client: FalClient,
        interval: float = FAL_POLL_INTERVAL,
        max_wait: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.interval = interval
        self.max_wait = max_wait
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_key(cls, key: str, max_wait: float = 600.0, timeout: float = 60.0) -> "FalAdapter":
        return cls(FalClient(key, timeout=timeout), max_wait=max_wait)

    async def upload(self, data: bytes, mime_type: str) -> str:
        return await self.client.upload(data, mime_type)

    async def build_arguments(self, request: GenerationRequest, job: GenerationJob) -> Dict[str, Any]:
        prompt = request.prompt.strip()

        if request.mode == GenerationMode.MOTION_CONTROL:
            if not request.images or request.video is None:
                raise ValidationError("Motion control needs a character image and a motion video")
            arguments = {
                "image_url": await self.ensure_url(request.images[0], job),
                "video_url": await self.ensure_url(request.video, job),
                "keep_original_sound": True,
                "character_orientation": "video",
            }
            if prompt:
                arguments["prompt"] = prompt
            return arguments

        if request.mode == GenerationMode.SINGLE_REFERENCE:
            return {
                "prompt": prompt,
                "image_url": await self.ensure_url(request.images[0], job),
                "duration": str(request.duration or 5),
                "generate_audio": request.generate_audio,
                "negative_prompt": DEFAULT_NEGATIVE_PROMPT,
            }

        raise ValidationError(f"fal.ai adapter does not support {request.mode.value} mode")

    async def submit(self, request: GenerationRequest, job: GenerationJob) -> JobHandle:
        application = request.model.model_for(request.mode)
        arguments = await self.build_arguments(request, job)
        job.raise_if_cancelled()

        queued = await self.client.submit(application, arguments)
        job.external_task_id = queued["request_id"]
        logger.info(f"🚀 fal.ai request queued for node {job.node_id}: {application} ({queued['request_id']})")

        base = f"{self.client.queue_url}/{application}/requests/{queued['request_id']}"
        return JobHandle(
            task_id=queued["request_id"],
            arguments={
                "application": application,
                "status_url": queued.get("status_url") or f"{base}/status",
                "response_url": queued.get("response_url") or base,
                "cancel_url": queued.get("cancel_url") or f"{base}/cancel",
            },
        )

    async def _cancel_remote(self, handle: JobHandle):
        try:
            await self.client.cancel(handle.arguments["cancel_url"])
        except (ProviderError, MalformedResponseError) as e:
            logger.warning(f"⚠️ fal.ai cancel for {handle.task_id} failed: {e}")

    async def await_outcome(
        self, handle: JobHandle, job: GenerationJob, on_progress: Optional[ProgressCallback] = None
    ) -> Outcome:
        application = handle.arguments["application"]
        progress = SubscribeProgress(on_progress)
        started = self.clock()
        job.transition(JobState.POLLING)

        try:
            while True:
                if job.cancel_requested:
                    await self._cancel_remote(handle)
                    job.transition(JobState.CANCELLED)
                    raise JobCancelledError(f"Generation for node {job.node_id} was cancelled")

                job.attempts += 1
                status = await self.client.status(handle.arguments["status_url"])
                phase = FAL_STATUS.get(str(status.get("status", "")).upper())
                if phase:
                    for event in progress.observe(phase, _log_lines(status), status.get("queue_position")):
                        logger.info(f"📡 fal.ai {application} [{event.phase}] {event.detail}".rstrip())
                if phase == "completed":
                    break

                if self.clock() - started > self.max_wait:
                    job.transition(JobState.TIMED_OUT)
                    raise JobTimeoutError(f"fal.ai {application} timed out after {int(self.max_wait)}s")
                await self.sleep(self.interval)

            if status.get("error"):
                raise ProviderError(f"fal.ai {application} failed: {status['error']}", body=status)
            result = await self.client.result(handle.arguments["response_url"])
        except (ProviderError, MalformedResponseError):
            if not job.is_terminal:
                job.transition(JobState.FAILED)
            raise

        url = extract_result_url(result)
        if not url:
            job.transition(JobState.FAILED)
            raise MalformedResponseError(f"fal.ai {application} completed without a result URL")

        job.result_url = url
        job.transition(JobState.SUCCEEDED)
        return Outcome(result_url=url, result_urls=extract_result_urls(result) or [url], task_id=handle.task_id)

    async def aclose(self):
        await self.client.aclose()
