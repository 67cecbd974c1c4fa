"""
Kie.ai adapters: Market jobs (Grok Imagine, Kling motion control) and Veo 3.1
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from nodegen.core.errors import (
    MalformedResponseError,
    ProviderError,
    UploadError,
    ValidationError,
)
from nodegen.core.media import EXTENSION_BY_MIME, MediaPreprocessor, encode_data_uri
from nodegen.core.poller import AsyncJobPoller, GenerationJob, PollResult, TaskState, classify_task_state
from nodegen.models.models import GenerationMode
from nodegen.providers.base import GenerationRequest, TaskProviderAdapter
from nodegen.providers.result_url import extract_result_url, extract_result_urls

logger = logging.getLogger(__name__)

REQUEST_ID_HEADERS = ("x-request-id", "request-id", "x-trace-id")


class KieClient:
    """Thin async HTTP client for the Kie.ai REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai",
        upload_url: str = "https://kieai.redpandaai.co/api/file-base64-upload",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.upload_url = upload_url
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

    @staticmethod
    def _request_id(response: httpx.Response) -> Optional[str]:
        for name in REQUEST_ID_HEADERS:
            if name in response.headers:
                return response.headers[name]
        return None

    async def request(self, method: str, url: str, label: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{label} request failed: {e}")

        request_id = self._request_id(response)
        if response.status_code >= 400:
            logger.error(f"❌ {label} HTTP {response.status_code}: {response.text[:300]}")
            raise ProviderError(
                f"{label} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
                request_id=request_id,
            )

        try:
            body = response.json()
        except ValueError:
            raise MalformedResponseError(f"{label} returned a non-JSON response (HTTP {response.status_code})")
        if not isinstance(body, dict):
            raise MalformedResponseError(f"{label} returned unexpected JSON: {str(body)[:200]}")

        code = body.get("code")
        if code is not None and code != 200:
            message = body.get("msg") or body.get("message") or "Unknown error"
            raise ProviderError(f"{label} error {code}: {message}", status_code=code, body=body, request_id=request_id)
        return body

    async def post(self, path: str, payload: Dict[str, Any], label: str) -> Dict[str, Any]:
        return await self.request("POST", f"{self.base_url}{path}", label, json=payload)

    async def get(self, path: str, params: Dict[str, Any], label: str) -> Dict[str, Any]:
        return await self.request("GET", f"{self.base_url}{path}", label, params=params)

    async def upload(self, data: bytes, mime_type: str, upload_path: str = "nodegen") -> str:
        """Upload through the base64 file endpoint; returns the download URL."""
        file_name = f"{uuid.uuid4().hex}.{EXTENSION_BY_MIME.get(mime_type, 'bin')}"
        payload = {
            "base64Data": encode_data_uri(data, mime_type),
            "uploadPath": upload_path,
            "fileName": file_name,
        }
        try:
            body = await self.request("POST", self.upload_url, "Kie.ai upload", json=payload)
        except (ProviderError, MalformedResponseError) as e:
            raise UploadError(f"Kie.ai upload failed: {e}")

        data_obj = body.get("data") or {}
        url = data_obj.get("downloadUrl") or data_obj.get("fileUrl") or extract_result_url(body)
        if not url:
            raise UploadError("Kie.ai upload succeeded but no file URL was returned")
        return url

    async def aclose(self):
        await self._client.aclose()


def _task_id(body: Dict[str, Any]) -> Optional[str]:
    data_obj = body.get("data") or {}
    return data_obj.get("taskId") or data_obj.get("task_id") or body.get("taskId") or body.get("task_id")


class KieAdapter(TaskProviderAdapter):
    def __init__(self, client: KieClient, poller: AsyncJobPoller):
        super().__init__(poller)
        self.client = client

    async def upload(self, data: bytes, mime_type: str) -> str:
        return await self.client.upload(data, mime_type)

    async def aclose(self):
        await self.client.aclose()


def _grok_image_ratio(aspect_ratio: str) -> str:
    return aspect_ratio if aspect_ratio in ("2:3", "3:2", "1:1", "16:9", "9:16") else "1:1"


def _grok_video_ratio(aspect_ratio: str) -> str:
    return aspect_ratio if aspect_ratio in ("2:3", "3:2", "1:1", "16:9", "9:16") else "16:9"


class KieMarketAdapter(KieAdapter):
    """/api/v1/jobs/createTask + /api/v1/jobs/recordInfo."""

    name = "kie"

    async def build_input(self, request: GenerationRequest, job: GenerationJob) -> Dict[str, Any]:
        model = request.model.model_for(request.mode)
        prompt = request.prompt.strip()

        if model.startswith("kling-2.6/motion-control"):
            if not request.images or request.video is None:
                raise ValidationError("Motion control needs a character image and a motion video")
            image_url = await self.ensure_url(request.images[0], job)
            video_url = await self.ensure_url(request.video, job)
            return {
                "prompt": prompt,
                "input_urls": [image_url],
                "video_urls": [video_url],
                "mode": "1080p" if request.resolution == "1080p" else "720p",
                "character_orientation": "video",
            }

        if model == "grok-imagine/image-to-image":
            if not request.images:
                raise ValidationError("Grok Imagine image-to-image needs one input image")
            payload = {"image_urls": [await self.ensure_url(request.images[0], job)]}
            if prompt:
                payload["prompt"] = prompt
            return payload

        if model == "grok-imagine/text-to-image":
            return {"prompt": prompt, "aspect_ratio": _grok_image_ratio(request.aspect_ratio)}

        if model.startswith("grok-imagine/") and model.endswith("-to-video"):
            payload = {
                "mode": "normal",
                "aspect_ratio": _grok_video_ratio(request.aspect_ratio),
                "resolution": "720p" if request.resolution == "720p" else "480p",
                "duration": "10" if (request.duration or 0) >= 8 else "6",
            }
            if prompt:
                payload["prompt"] = prompt
            if model == "grok-imagine/image-to-video":
                if not request.images:
                    raise ValidationError("Grok Imagine image-to-video needs one input image")
                payload["image_urls"] = [await self.ensure_url(request.images[0], job)]
            return payload

        # Generic market model
        payload = {"prompt": prompt}
        if request.images:
            payload["image_urls"] = [await self.ensure_url(image, job) for image in request.images]
        return payload

    async def create_task(self, request: GenerationRequest, job: GenerationJob) -> str:
        model = request.model.model_for(request.mode)
        payload = {"model": model, "input": await self.build_input(request, job)}
        job.raise_if_cancelled()

        logger.info(f"🎬 Kie.ai createTask: {model} (node {request.node_id})")
        body = await self.client.post("/api/v1/jobs/createTask", payload, f"Kie.ai createTask ({model})")
        task_id = _task_id(body)
        if not task_id:
            raise MalformedResponseError(f"Kie.ai createTask returned no taskId for model {model}")
        return task_id

    async def poll(self, task_id: str) -> PollResult:
        body = await self.client.get("/api/v1/jobs/recordInfo", {"taskId": task_id}, f"Kie.ai recordInfo ({task_id})")
        data_obj = body.get("data") or {}
        raw_state = data_obj.get("state") or body.get("state") or body.get("status")
        state = classify_task_state(raw_state)

        if state == TaskState.FAILED:
            reason = data_obj.get("failMsg") or data_obj.get("message") or body.get("msg") or "Unknown error"
            return PollResult(state, body, failure_reason=reason, raw_state=raw_state)

        if state == TaskState.SUCCEEDED:
            result_json = data_obj.get("resultJson")
            if isinstance(result_json, str):
                try:
                    result_json = json.loads(result_json)
                except ValueError:
                    raise MalformedResponseError(f"Kie.ai task {task_id} returned unparseable resultJson")
            result = {"resultJson": result_json, "data": data_obj}
            urls = extract_result_urls(result_json) if result_json else []
            return PollResult(state, result, raw_state=raw_state, result_urls=urls or None)

        return PollResult(state, body, raw_state=raw_state)


VEO_FLAG_STATES = {0: TaskState.PENDING, 1: TaskState.SUCCEEDED, 2: TaskState.FAILED, 3: TaskState.FAILED}


class KieVeoAdapter(KieAdapter):
    """/api/v1/veo/generate, /api/v1/veo/extend and /api/v1/veo/record-info."""

    name = "kie-veo"

    def __init__(self, client: KieClient, poller: AsyncJobPoller, media: MediaPreprocessor):
        super().__init__(client, poller)
        self.media = media

    async def _frame_url(self, request: GenerationRequest, index: int, job: GenerationJob) -> str:
        image = request.images[index]
        if image.data is not None and image.needs_upload:
            resolution = request.resolution if request.resolution != "Auto" else "720p"
            image.data = await self.media.fit_frame_async(image.data, request.aspect_ratio, resolution)
            image.mime_type = "image/jpeg"
        return await self.ensure_url(image, job)

    async def create_task(self, request: GenerationRequest, job: GenerationJob) -> str:
        model = request.model.model_for(request.mode)

        if request.mode == GenerationMode.EXTEND:
            if not request.source_task_id:
                raise ValidationError("Extend needs a source video generated by Veo (no provider task id found)")
            payload = {"taskId": request.source_task_id, "prompt": request.prompt.strip(), "model": model}
            logger.info(f"🎬 Kie.ai Veo extend: source task {request.source_task_id}")
            body = await self.client.post("/api/v1/veo/extend", payload, "Kie.ai Veo extend")
        else:
            payload = {
                "prompt": request.prompt.strip(),
                "model": model,
                "aspectRatio": request.aspect_ratio if request.aspect_ratio in ("16:9", "9:16") else "16:9",
                "enableTranslation": True,
                "generationType": "TEXT_2_VIDEO",
            }
            if request.mode == GenerationMode.SINGLE_REFERENCE:
                payload["generationType"] = "FIRST_AND_LAST_FRAMES_2_VIDEO"
                payload["imageUrls"] = [await self._frame_url(request, 0, job)]
            elif request.mode == GenerationMode.FRAME_TO_FRAME:
                payload["generationType"] = "FIRST_AND_LAST_FRAMES_2_VIDEO"
                payload["imageUrls"] = [
                    await self._frame_url(request, 0, job),
                    await self._frame_url(request, 1, job),
                ]
            elif request.mode == GenerationMode.REFERENCE:
                payload["generationType"] = "REFERENCE_2_VIDEO"
                payload["imageUrls"] = [await self.ensure_url(image, job) for image in request.images]

            job.raise_if_cancelled()
            logger.info(f"🎬 Kie.ai Veo generate: {model}, {payload['generationType']}, {payload['aspectRatio']}")
            body = await self.client.post("/api/v1/veo/generate", payload, "Kie.ai Veo generate")

        task_id = _task_id(body)
        if not task_id:
            raise MalformedResponseError("Kie.ai Veo returned no taskId")
        return task_id

    async def poll(self, task_id: str) -> PollResult:
        body = await self.client.get("/api/v1/veo/record-info", {"taskId": task_id}, f"Kie.ai Veo record-info ({task_id})")
        data_obj = body.get("data") or {}

        if data_obj.get("taskStatus") is not None:
            raw_state = str(data_obj["taskStatus"])
            state = classify_task_state(raw_state)
        else:
            flag = data_obj.get("successFlag")
            raw_state = f"successFlag={flag}"
            state = VEO_FLAG_STATES.get(flag, TaskState.PENDING)

        if state == TaskState.FAILED:
            reason = (
                data_obj.get("errorMessage")
                or data_obj.get("taskStatusMsg")
                or body.get("msg")
                or "Unknown error"
            )
            return PollResult(state, body, failure_reason=reason, raw_state=raw_state)

        if state == TaskState.SUCCEEDED:
            result = data_obj.get("response") or data_obj.get("taskResult") or data_obj
            return PollResult(state, result, raw_state=raw_state, result_urls=extract_result_urls(result) or None)

        return PollResult(state, body, raw_state=raw_state)
