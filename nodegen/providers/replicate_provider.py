"""
Replicate predictions adapter (Flux, Nano Banana, Veo 3.1, Kling)
"""

import logging
from typing import Any, Dict

import httpx
import replicate
from replicate.exceptions import ReplicateError

from nodegen.core.errors import MalformedResponseError, ProviderError, ValidationError
from nodegen.core.poller import AsyncJobPoller, GenerationJob, PollResult, classify_task_state, TaskState
from nodegen.models.models import GenerationMode
from nodegen.providers.base import GenerationRequest, TaskProviderAdapter
from nodegen.providers.result_url import extract_result_urls

logger = logging.getLogger(__name__)


class ReplicateAdapter(TaskProviderAdapter):
    name = "replicate"

    def __init__(self, client: Any, uploader: Any, poller: AsyncJobPoller):
        # client: replicate.Client; uploader: S3Uploader (Replicate has no input storage)
        super().__init__(poller)
        self.client = client
        self.uploader = uploader

    @classmethod
    def from_token(cls, api_token: str, uploader: Any, poller: AsyncJobPoller) -> "ReplicateAdapter":
        return cls(replicate.Client(api_token=api_token), uploader, poller)

    async def upload(self, data: bytes, mime_type: str) -> str:
        return await self.uploader.upload(data, mime_type)

    async def build_input(self, request: GenerationRequest, job: GenerationJob) -> Dict[str, Any]:
        model = request.model.model_for(request.mode)
        prompt = request.prompt.strip()
        image_urls = [await self.ensure_url(image, job) for image in request.images]

        if model == "google/nano-banana":
            payload = {"prompt": prompt, "output_format": "jpg"}
            if image_urls:
                payload["image_input"] = image_urls
            if request.aspect_ratio != "Auto":
                payload["aspect_ratio"] = request.aspect_ratio
            elif image_urls:
                payload["aspect_ratio"] = "match_input_image"
            return payload

        if model == "black-forest-labs/flux-schnell":
            payload = {
                "prompt": prompt,
                "num_outputs": min(request.variation_count, request.model.max_variations),
                "output_format": "jpg",
            }
            if request.aspect_ratio != "Auto":
                payload["aspect_ratio"] = request.aspect_ratio
            return payload

        if model == "black-forest-labs/flux-kontext-pro":
            return {
                "prompt": prompt,
                "input_image": image_urls[0],
                "aspect_ratio": "match_input_image" if request.aspect_ratio == "Auto" else request.aspect_ratio,
                "output_format": "jpg",
            }

        if model == "google/veo-3.1":
            payload = {
                "prompt": prompt,
                "aspect_ratio": request.aspect_ratio if request.aspect_ratio in ("16:9", "9:16") else "16:9",
                "duration": request.duration or 8,
                "resolution": request.resolution if request.resolution in ("720p", "1080p") else "720p",
                "generate_audio": request.generate_audio,
            }
            if request.mode in (GenerationMode.SINGLE_REFERENCE, GenerationMode.FRAME_TO_FRAME):
                payload["image"] = image_urls[0]
            if request.mode == GenerationMode.FRAME_TO_FRAME:
                payload["last_frame"] = image_urls[1]
            if request.mode in (GenerationMode.MULTI_REFERENCE, GenerationMode.REFERENCE):
                payload["reference_images"] = image_urls
            return payload

        if model == "kwaivgi/kling-v2.1":
            if not image_urls:
                raise ValidationError("Kling V2.1 needs a start image")
            payload = {
                "prompt": prompt,
                "start_image": image_urls[0],
                "duration": request.duration or 5,
                "mode": "pro" if request.resolution == "1080p" else "standard",
            }
            if request.mode == GenerationMode.FRAME_TO_FRAME:
                # end_image is only accepted in pro mode
                payload["end_image"] = image_urls[1]
                payload["mode"] = "pro"
            return payload

        payload = {"prompt": prompt}
        if request.aspect_ratio != "Auto":
            payload["aspect_ratio"] = request.aspect_ratio
        return payload

    async def create_task(self, request: GenerationRequest, job: GenerationJob) -> str:
        model = request.model.model_for(request.mode)
        payload = await self.build_input(request, job)
        job.raise_if_cancelled()

        logger.info(f"🎨 Replicate prediction: {model} (node {request.node_id})")
        try:
            prediction = await self.client.predictions.async_create(model=model, input=payload)
        except ReplicateError as e:
            raise ProviderError(f"Replicate {model} rejected the request: {e}", status_code=getattr(e, "status", None))
        except httpx.HTTPError as e:
            raise ProviderError(f"Replicate {model} request failed: {e}")

        if not getattr(prediction, "id", None):
            raise MalformedResponseError(f"Replicate {model} returned no prediction id")
        return prediction.id

    async def poll(self, task_id: str) -> PollResult:
        try:
            prediction = await self.client.predictions.async_get(task_id)
        except ReplicateError as e:
            raise ProviderError(f"Replicate prediction {task_id} lookup failed: {e}", status_code=getattr(e, "status", None))
        except httpx.HTTPError as e:
            raise ProviderError(f"Replicate prediction {task_id} lookup failed: {e}")

        raw_state = prediction.status
        state = classify_task_state(raw_state)
        if state == TaskState.FAILED:
            return PollResult(state, prediction.output, failure_reason=str(prediction.error or raw_state), raw_state=raw_state)
        if state == TaskState.SUCCEEDED:
            output = prediction.output
            return PollResult(state, output, raw_state=raw_state, result_urls=extract_result_urls(output) or None)
        return PollResult(state, None, raw_state=raw_state)
