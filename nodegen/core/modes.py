"""
Mode resolution: derive a node's generation mode from its connected parents
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from nodegen.core.catalog import ModelCatalog, ModelDescriptor
from nodegen.core.errors import ValidationError
from nodegen.models.models import (
    IMAGE_PRODUCING_TYPES,
    VIDEO_PRODUCING_TYPES,
    FrameRole,
    GenerationMode,
    MediaKind,
    Node,
    NodeStatus,
    NodeType,
    VideoMode,
)

VIDEO_TARGET_TYPES = frozenset({NodeType.VIDEO, NodeType.LOCAL_VIDEO_MODEL})


@dataclass(frozen=True)
class ModeResolution:
    mode: GenerationMode
    kind: MediaKind
    image_parents: Tuple[Node, ...] = ()
    video_parents: Tuple[Node, ...] = ()
    start_frame: Optional[Node] = None
    end_frame: Optional[Node] = None

    @property
    def image_count(self) -> int:
        return len(self.image_parents)

    def image_urls(self) -> List[str]:
        return [p.face_url() for p in self.image_parents]


def is_usable_input(parent: Node) -> bool:
    """Only a parent that finished successfully and has a result feeds a child."""
    return parent.status == NodeStatus.SUCCESS and bool(parent.face_url())


def target_kind(node: Node) -> MediaKind:
    if node.type in IMAGE_PRODUCING_TYPES:
        return MediaKind.IMAGE
    if node.type in VIDEO_TARGET_TYPES:
        return MediaKind.VIDEO
    raise ValidationError(f"{node.type.value} nodes cannot be generated")


def resolve_mode(node: Node, parents: Sequence[Node]) -> ModeResolution:
    """Pure function of the node and its ordered parents."""
    kind = target_kind(node)

    usable = [p for p in parents if is_usable_input(p)]
    images = tuple(p for p in usable if p.type in IMAGE_PRODUCING_TYPES)
    videos = tuple(p for p in usable if p.type in VIDEO_PRODUCING_TYPES)

    if kind == MediaKind.IMAGE:
        if videos:
            raise ValidationError("Image nodes cannot take a video input")
        if not images:
            return ModeResolution(GenerationMode.TEXT_ONLY, kind)
        if len(images) == 1:
            return ModeResolution(GenerationMode.SINGLE_REFERENCE, kind, images)
        return ModeResolution(GenerationMode.MULTI_REFERENCE, kind, images)

    if node.video_mode == VideoMode.FRAME_TO_FRAME and len(images) < 2:
        raise ValidationError("Frame-to-frame mode needs two connected image inputs")

    if len(videos) > 1:
        raise ValidationError("Video nodes accept at most one video input")

    if videos:
        if not images:
            return ModeResolution(GenerationMode.EXTEND, kind, video_parents=videos)
        if len(images) == 1:
            return ModeResolution(GenerationMode.MOTION_CONTROL, kind, images, videos)
        raise ValidationError("A video input can only be combined with a single image input")

    if not images:
        return ModeResolution(GenerationMode.TEXT_ONLY, kind)
    if len(images) == 1:
        return ModeResolution(GenerationMode.SINGLE_REFERENCE, kind, images)
    if len(images) == 2:
        start, end = assign_frame_roles(node, images)
        return ModeResolution(GenerationMode.FRAME_TO_FRAME, kind, images, start_frame=start, end_frame=end)
    return ModeResolution(GenerationMode.REFERENCE, kind, images)


def assign_frame_roles(node: Node, image_parents: Sequence[Node]) -> Tuple[Node, Node]:
    """(start, end) from frame_inputs when both roles point at the two parents, else connection order."""
    first, second = image_parents[0], image_parents[1]
    by_role = {role: parent_id for parent_id, role in node.frame_inputs.items()}
    start_id = by_role.get(FrameRole.START)
    end_id = by_role.get(FrameRole.END)

    if {start_id, end_id} == {first.id, second.id}:
        if start_id == second.id:
            return second, first
        return first, second
    return first, second


def effective_frame_inputs(node: Node, image_parents: Sequence[Node]) -> Dict[str, FrameRole]:
    start, end = assign_frame_roles(node, image_parents)
    return {start.id: FrameRole.START, end.id: FrameRole.END}


def swap_frame_roles(frame_inputs: Dict[str, FrameRole]) -> Dict[str, FrameRole]:
    """Flip every entry's role. Applying it twice gives back the input."""
    flipped = {}
    for parent_id, role in frame_inputs.items():
        flipped[parent_id] = FrameRole.END if role == FrameRole.START else FrameRole.START
    return flipped


def select_model(
    node: Node, resolution: ModeResolution, catalog: ModelCatalog
) -> Tuple[ModelDescriptor, bool, List[ModelDescriptor]]:
    """Keep the node's model when it can run the mode, else fall back to the first capable one."""
    available = catalog.filter(resolution.kind, resolution.mode, resolution.image_count)
    if not available:
        raise ValidationError(
            f"No {resolution.kind.value} model supports {resolution.mode.value} "
            f"with {resolution.image_count} image input(s)"
        )

    current = catalog.get(node.model_id)
    if current is not None and current in available:
        return current, False, available
    return available[0], True, available


def settings_for_model(node: Node, model: ModelDescriptor) -> Dict[str, Any]:
    """Settings the model does not allow, reset to its first allowed value."""
    changes: Dict[str, Any] = {}

    duration = node.video_duration
    if model.durations and duration not in model.durations:
        duration = model.durations[0]
        changes["video_duration"] = duration

    resolutions = model.resolutions_for(duration)
    if resolutions and node.resolution not in resolutions:
        changes["resolution"] = resolutions[0]

    if model.aspect_ratios and node.aspect_ratio not in model.aspect_ratios:
        changes["aspect_ratio"] = model.aspect_ratios[0]

    if node.variation_count > model.max_variations:
        changes["variation_count"] = 1

    return changes


def compose_prompt(node: Node, parents: Sequence[Node]) -> str:
    """Text parents, then style parents, then the node's own prompt."""
    text_parts = [p.prompt.strip() for p in parents if p.type == NodeType.TEXT and p.prompt.strip()]
    style_parts = [p.prompt.strip() for p in parents if p.type == NodeType.STYLE and p.prompt.strip()]
    parts = text_parts + style_parts
    if node.prompt.strip():
        parts.append(node.prompt.strip())
    return "\n\n".join(parts)
