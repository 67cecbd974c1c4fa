"""
Pydantic models for canvas nodes and generation API
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class NodeType(str, Enum):
    TEXT = "Text"
    IMAGE = "Image"
    VIDEO = "Video"
    STYLE = "StyleImmutable"
    IMAGE_EDITOR = "ImageEditor"
    VIDEO_EDITOR = "VideoEditor"
    CAMERA_ANGLE = "CameraAngle"
    LOCAL_IMAGE_MODEL = "LocalImageModel"
    LOCAL_VIDEO_MODEL = "LocalVideoModel"


class NodeStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class FrameRole(str, Enum):
    START = "start"
    END = "end"


class VideoMode(str, Enum):
    STANDARD = "standard"
    FRAME_TO_FRAME = "frame-to-frame"


class GenerationMode(str, Enum):
    TEXT_ONLY = "text-only"
    SINGLE_REFERENCE = "single-reference"
    MULTI_REFERENCE = "multi-reference"
    FRAME_TO_FRAME = "frame-to-frame"
    REFERENCE = "reference"
    MOTION_CONTROL = "motion-control"
    EXTEND = "extend"


IMAGE_PRODUCING_TYPES = frozenset({
    NodeType.IMAGE,
    NodeType.IMAGE_EDITOR,
    NodeType.CAMERA_ANGLE,
    NodeType.LOCAL_IMAGE_MODEL,
})

VIDEO_PRODUCING_TYPES = frozenset({
    NodeType.VIDEO,
    NodeType.VIDEO_EDITOR,
    NodeType.LOCAL_VIDEO_MODEL,
})

PROMPT_TYPES = frozenset({NodeType.TEXT, NodeType.STYLE})

VariationCount = Literal[1, 2, 4]

# Written only by the dispatcher while a job is active
GENERATION_FIELDS = frozenset({
    "status",
    "result_url",
    "result_urls",
    "result_aspect_ratio",
    "error_message",
    "provider_task_id",
    "generation_started_at",
})


class Node(BaseModel):
    id: str
    type: NodeType
    status: NodeStatus = NodeStatus.IDLE
    prompt: str = ""
    model_id: Optional[str] = None

    # Settings
    aspect_ratio: str = "Auto"
    resolution: str = "Auto"
    video_duration: Optional[int] = None
    video_mode: VideoMode = VideoMode.STANDARD
    variation_count: VariationCount = 1
    generate_audio: bool = True

    # Results
    result_url: Optional[str] = None
    result_urls: Optional[List[str]] = None
    result_aspect_ratio: Optional[str] = None
    carousel_index: int = 0
    provider_task_id: Optional[str] = None
    error_message: Optional[str] = None
    generation_started_at: Optional[float] = None

    # Connections
    parent_ids: List[str] = Field(default_factory=list)
    frame_inputs: Dict[str, FrameRole] = Field(default_factory=dict)

    def face_url(self) -> Optional[str]:
        """The image this node feeds downstream: the selected variation, else resultUrl."""
        if self.result_urls:
            index = self.carousel_index if 0 <= self.carousel_index < len(self.result_urls) else 0
            return self.result_urls[index]
        return self.result_url

    @property
    def media_kind(self) -> Optional[MediaKind]:
        if self.type in IMAGE_PRODUCING_TYPES:
            return MediaKind.IMAGE
        if self.type in VIDEO_PRODUCING_TYPES:
            return MediaKind.VIDEO
        return None


class NodeCreate(BaseModel):
    id: Optional[str] = None
    type: NodeType
    prompt: str = ""
    model_id: Optional[str] = None
    aspect_ratio: str = "Auto"
    resolution: str = "Auto"
    video_duration: Optional[int] = None
    video_mode: VideoMode = VideoMode.STANDARD
    variation_count: VariationCount = 1
    generate_audio: bool = True
    result_url: Optional[str] = None
    parent_ids: List[str] = Field(default_factory=list)


class NodeUpdate(BaseModel):
    """Partial update sent by the canvas UI."""

    prompt: Optional[str] = None
    model_id: Optional[str] = None
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    video_duration: Optional[int] = None
    video_mode: Optional[VideoMode] = None
    variation_count: Optional[VariationCount] = None
    generate_audio: Optional[bool] = None
    carousel_index: Optional[int] = None
    frame_inputs: Optional[Dict[str, FrameRole]] = None
    # Allowed only while the node is not loading (e.g. uploading an image by hand)
    status: Optional[NodeStatus] = None
    result_url: Optional[str] = None
    result_urls: Optional[List[str]] = None
    error_message: Optional[str] = None


class ConnectRequest(BaseModel):
    parent_id: str


class ModeResponse(BaseModel):
    node_id: str
    mode: str
    model_id: Optional[str] = None
    model_changed: bool = False
    available_models: List[str] = Field(default_factory=list)


class GenerateResponse(BaseModel):
    success: bool
    node_id: str
    status: NodeStatus
    message: str


class GenerationStatus(BaseModel):
    node_id: str
    status: str  # "pending", "success", "error", "cancelled"
    phase: str
    label: str = ""
    detail: str = ""
    provider: Optional[str] = None
    model_id: Optional[str] = None
    task_id: Optional[str] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    started_at: str
    updated_at: str
    completed_at: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)
