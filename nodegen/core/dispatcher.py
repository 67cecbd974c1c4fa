"""
Generation dispatcher: runs one node's generation job from mode resolution to result
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

import httpx

from nodegen.core.catalog import ModelCatalog, ModelDescriptor
from nodegen.core.errors import (
    GenerationError,
    JobCancelledError,
    NodeBusyError,
    NodeNotFoundError,
    ValidationError,
)
from nodegen.core.graph import NodeGraph
from nodegen.core.media import MediaPreprocessor, closest_aspect_ratio, is_remote_url
from nodegen.core.modes import (
    ModeResolution,
    compose_prompt,
    resolve_mode,
    select_model,
    settings_for_model,
)
from nodegen.core.poller import GenerationJob, JobState, ProgressEvent
from nodegen.core.tracker import GenerationTracker
from nodegen.models.models import GenerationMode, MediaKind, Node, NodeStatus
from nodegen.providers.base import GenerationRequest, MediaInput, Outcome, ProviderAdapter

logger = logging.getLogger(__name__)

BUSY_REJECT = "reject"
BUSY_SUPERSEDE = "supersede"


class GenerationDispatcher:
    """At most one active job per node; failures end on the node, never past it."""

    def __init__(
        self,
        graph: NodeGraph,
        catalog: ModelCatalog,
        adapters: Dict[str, ProviderAdapter],
        media: MediaPreprocessor,
        tracker: Optional[GenerationTracker] = None,
        busy_policy: str = BUSY_REJECT,
        probe_results: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if busy_policy not in (BUSY_REJECT, BUSY_SUPERSEDE):
            raise ValueError(f"Unknown busy policy: {busy_policy}")
        self.graph = graph
        self.catalog = catalog
        self.adapters = adapters
        self.media = media
        self.tracker = tracker or GenerationTracker()
        self.busy_policy = busy_policy
        self.probe_results = probe_results
        self._http = http_client
        self._jobs: Dict[str, GenerationJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ---- job registry ----

    def active_job(self, node_id: str) -> Optional[GenerationJob]:
        job = self._jobs.get(node_id)
        if job is not None and not job.is_terminal:
            return job
        return None

    def _begin(self, node_id: str) -> GenerationJob:
        """Busy check, job registration and the Loading transition, with no await in between."""
        node = self.graph.get(node_id)

        existing = self.active_job(node_id)
        if existing is not None:
            if self.busy_policy == BUSY_REJECT:
                raise NodeBusyError(node_id)
            logger.info(f"🔁 Superseding active job on node {node_id}")
            existing.cancel()

        job = GenerationJob(node_id, provider="", model_id=node.model_id or "")
        self._jobs[node_id] = job
        self.graph.update_node(
            node_id,
            status=NodeStatus.LOADING,
            error_message=None,
            generation_started_at=time.time(),
        )
        self.tracker.start(node_id, model_id=node.model_id)
        return job

    def _is_current(self, node_id: str, job: GenerationJob) -> bool:
        return self._jobs.get(node_id) is job and self.graph.find(node_id) is not None

    def start(self, node_id: str) -> asyncio.Task:
        """Schedule generate() in the background. Rejection is raised immediately."""
        job = self._begin(node_id)
        task = asyncio.create_task(self._run(node_id, job), name=f"generate-{node_id}")
        self._tasks[node_id] = task
        return task

    async def generate(self, node_id: str) -> Node:
        job = self._begin(node_id)
        return await self._run(node_id, job)

    def cancel(self, node_id: str) -> bool:
        """Flag the node's active job; it stops at its next checkpoint."""
        self.graph.get(node_id)
        job = self.active_job(node_id)
        if job is None:
            return False
        logger.info(f"🛑 Cancel requested for node {node_id}")
        job.cancel()
        return True

    async def shutdown(self):
        for job in list(self._jobs.values()):
            job.cancel()
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---- mode / model ----

    def preview(self, node_id: str) -> Tuple[ModeResolution, ModelDescriptor, bool, List[ModelDescriptor]]:
        """Mode and model the next generate() would use, without changing the node."""
        node = self.graph.get(node_id)
        resolution = resolve_mode(node, self.graph.parents(node_id))
        model, changed, available = self._select_model(node, resolution)
        return resolution, model, changed, available

    def _select_model(self, node: Node, resolution: ModeResolution):
        requested = self.catalog.get(node.model_id)
        if requested is not None and requested.provider not in self.adapters:
            raise ValidationError(f"Model {requested.id} needs the {requested.provider} provider, which is not configured")
        configured = self.catalog.restrict(self.adapters.keys())
        return select_model(node, resolution, configured)

    # ---- run ----

    async def _run(self, node_id: str, job: GenerationJob) -> Optional[Node]:
        def on_progress(event: ProgressEvent):
            if self._is_current(node_id, job):
                self.tracker.update(node_id, phase=event.phase, label=event.label, detail=event.detail)

        try:
            outcome, model, resolution = await self._execute(node_id, job, on_progress)
            job.raise_if_cancelled()
            aspect = await self._probe_aspect_ratio(outcome.result_url, model.kind)
            if not self._is_current(node_id, job):
                logger.info(f"⏭️ Discarding superseded result for node {node_id}")
                return None

            node = self.graph.update_node(
                node_id,
                status=NodeStatus.SUCCESS,
                result_url=outcome.result_url,
                result_urls=outcome.result_urls if len(outcome.result_urls) > 1 else None,
                result_aspect_ratio=aspect,
                carousel_index=0,
                provider_task_id=outcome.task_id or job.external_task_id,
                error_message=None,
            )
            self.tracker.complete(
                node_id,
                result_url=outcome.result_url,
                task_id=outcome.task_id or job.external_task_id,
                detail=f"{model.name} ({resolution.mode.value})",
            )
            logger.info(f"✅ Node {node_id} generated: {outcome.result_url}")
            return node

        except JobCancelledError:
            if not job.is_terminal:
                job.transition(JobState.CANCELLED)
            if self._is_current(node_id, job):
                self.graph.update_node(node_id, status=NodeStatus.IDLE, generation_started_at=None)
                self.tracker.cancel(node_id)
                logger.info(f"🛑 Generation cancelled for node {node_id}")
            return None

        except GenerationError as e:
            return self._fail(node_id, job, str(e))

        except NodeNotFoundError:
            logger.warning(f"⚠️ Node {node_id} was removed during generation")
            return None

        except Exception as e:
            logger.exception(f"❌ Unexpected error generating node {node_id}")
            return self._fail(node_id, job, f"Unexpected error: {e}")

        finally:
            if self._jobs.get(node_id) is job:
                del self._jobs[node_id]
                self._tasks.pop(node_id, None)

    def _fail(self, node_id: str, job: GenerationJob, message: str) -> Optional[Node]:
        if not job.is_terminal:
            job.transition(JobState.FAILED)
        job.error = message
        if not self._is_current(node_id, job):
            return None
        logger.error(f"❌ Generation failed for node {node_id}: {message}")
        self.tracker.fail(node_id, error_message=message)
        return self.graph.update_node(node_id, status=NodeStatus.ERROR, error_message=message)

    async def _execute(self, node_id: str, job: GenerationJob, on_progress):
        node = self.graph.get(node_id)
        parents = self.graph.parents(node_id)

        resolution = resolve_mode(node, parents)
        model, changed, _ = self._select_model(node, resolution)
        updates = settings_for_model(node, model)
        if changed:
            updates["model_id"] = model.id
            logger.info(f"🔄 Node {node_id}: {node.model_id or 'no model'} -> {model.id} for {resolution.mode.value}")
        if updates:
            node = self.graph.update_node(node_id, **updates)

        adapter = self.adapters.get(model.provider)
        if adapter is None:
            raise ValidationError(f"Provider {model.provider} is not configured")
        job.provider = adapter.name
        job.model_id = model.id

        prompt = compose_prompt(node, parents)
        if not prompt and not model.prompt_optional(resolution.mode):
            raise ValidationError(f"A prompt is required for {model.name} in {resolution.mode.value} mode")

        logger.info(f"🎯 Node {node_id}: {resolution.mode.value} via {model.id} ({adapter.name})")
        self.tracker.update(node_id, phase="preparing", label="Preparing inputs", provider=adapter.name, model_id=model.id)
        job.raise_if_cancelled()

        request = await self._build_request(node, resolution, model, prompt, job)
        job.raise_if_cancelled()

        self.tracker.update(node_id, phase="submitted", label="Submitting")
        handle = await adapter.submit(request, job)
        job.raise_if_cancelled()

        self.tracker.update(node_id, phase="polling", label="Generating", task_id=handle.task_id)
        outcome: Outcome = await adapter.await_outcome(handle, job, on_progress)
        return outcome, model, resolution

    async def _build_request(
        self, node: Node, resolution: ModeResolution, model: ModelDescriptor, prompt: str, job: GenerationJob
    ) -> GenerationRequest:
        if resolution.mode == GenerationMode.FRAME_TO_FRAME:
            image_parents = [resolution.start_frame, resolution.end_frame]
        else:
            image_parents = list(resolution.image_parents)

        images = []
        for parent in image_parents:
            images.append(await self._media_input(parent, MediaKind.IMAGE, job))

        video = None
        source_task_id = None
        if resolution.mode == GenerationMode.MOTION_CONTROL:
            video = await self._media_input(resolution.video_parents[0], MediaKind.VIDEO, job)
        elif resolution.mode == GenerationMode.EXTEND:
            source_task_id = resolution.video_parents[0].provider_task_id

        aspect_ratio = node.aspect_ratio
        if aspect_ratio == "Auto" and images and images[0].data is not None:
            width, height = await self.media.dimensions_async(images[0].data)
            aspect_ratio = closest_aspect_ratio(width, height)
            if model.aspect_ratios and aspect_ratio not in model.aspect_ratios:
                aspect_ratio = "Auto"

        return GenerationRequest(
            node_id=node.id,
            model=model,
            mode=resolution.mode,
            prompt=prompt,
            images=images,
            video=video,
            aspect_ratio=aspect_ratio,
            resolution=node.resolution,
            duration=node.video_duration,
            generate_audio=node.generate_audio,
            variation_count=node.variation_count,
            source_task_id=source_task_id,
        )

    async def _media_input(self, parent: Node, kind: MediaKind, job: GenerationJob) -> MediaInput:
        source = parent.face_url()
        if is_remote_url(source):
            return MediaInput(kind, url=source, parent_id=parent.id)

        job.raise_if_cancelled()
        data, mime_type = await asyncio.to_thread(self.media.load, source)
        if kind == MediaKind.IMAGE:
            normalized = await self.media.normalize_async(data, kind)
            if normalized is not data:
                mime_type = "image/jpeg"
                logger.info(f"🗜️ Input from {parent.id} normalized: {len(data)} -> {len(normalized)} bytes")
            data = normalized
        return MediaInput(kind, data=data, mime_type=mime_type, parent_id=parent.id)

    async def _probe_aspect_ratio(self, url: str, kind: MediaKind) -> Optional[str]:
        """Pixel aspect ratio "w/h" of an image result, or None when probing is off or fails."""
        if not self.probe_results or kind != MediaKind.IMAGE or self._http is None:
            return None
        try:
            response = await self._http.get(url)
            response.raise_for_status()
            width, height = await self.media.dimensions_async(response.content)
        except (httpx.HTTPError, ValidationError) as e:
            logger.warning(f"⚠️ Could not probe result dimensions for {url}: {e}")
            return None
        return f"{width}/{height}"
