"""
Static model catalog with capability flags
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from nodegen.models.models import GenerationMode, MediaKind

# Provider adapter keys
KIE = "kie"
KIE_VEO = "kie-veo"
FAL = "fal"
REPLICATE = "replicate"

STANDARD_IMAGE_RATIOS = ["Auto", "1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "5:4", "4:5", "21:9"]
VEO_RATIOS = ["16:9", "9:16"]


class ModelDescriptor(BaseModel):
    """A generation model and what it can do. Never mutated at runtime."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: str
    kind: MediaKind
    provider_model: str
    # Provider-side model path per mode, when one catalog entry spans several endpoints
    mode_models: Dict[GenerationMode, str] = Field(default_factory=dict)

    supports_text_to_x: bool = False
    supports_single_reference: bool = False
    supports_multi_reference: bool = False
    supports_frame_to_frame: bool = False
    supports_motion_control: bool = False
    supports_extend: bool = False
    max_reference_images: int = 1
    # Images per request; above 1 the adapter forwards the node's variation count
    max_variations: int = 1

    aspect_ratios: List[str] = Field(default_factory=lambda: ["Auto"])
    resolutions: List[str] = Field(default_factory=lambda: ["Auto"])
    durations: List[int] = Field(default_factory=list)
    duration_resolutions: Dict[int, List[str]] = Field(default_factory=dict)
    prompt_optional_modes: List[GenerationMode] = Field(default_factory=list)
    recommended: bool = False

    def supports(self, mode: GenerationMode, image_count: int = 0) -> bool:
        if mode == GenerationMode.TEXT_ONLY:
            return self.supports_text_to_x
        if mode == GenerationMode.SINGLE_REFERENCE:
            return self.supports_single_reference
        if mode in (GenerationMode.MULTI_REFERENCE, GenerationMode.REFERENCE):
            return self.supports_multi_reference and image_count <= self.max_reference_images
        if mode == GenerationMode.FRAME_TO_FRAME:
            return self.supports_frame_to_frame
        if mode == GenerationMode.MOTION_CONTROL:
            return self.supports_motion_control
        if mode == GenerationMode.EXTEND:
            return self.supports_extend
        return False

    def prompt_optional(self, mode: GenerationMode) -> bool:
        return mode != GenerationMode.TEXT_ONLY and mode in self.prompt_optional_modes

    def model_for(self, mode: GenerationMode) -> str:
        return self.mode_models.get(mode, self.provider_model)

    def resolutions_for(self, duration: Optional[int]) -> List[str]:
        if duration is not None and duration in self.duration_resolutions:
            return self.duration_resolutions[duration]
        return self.resolutions


DEFAULT_CATALOG: List[ModelDescriptor] = [
    # ---- image ----
    ModelDescriptor(
        id="grok-imagine-text-to-image",
        name="Grok Imagine",
        provider=KIE,
        kind=MediaKind.IMAGE,
        provider_model="grok-imagine/text-to-image",
        supports_text_to_x=True,
        aspect_ratios=["Auto", "1:1", "3:2", "2:3", "16:9", "9:16"],
    ),
    ModelDescriptor(
        id="grok-imagine-image-to-image",
        name="Grok Imagine Edit",
        provider=KIE,
        kind=MediaKind.IMAGE,
        provider_model="grok-imagine/image-to-image",
        supports_single_reference=True,
        aspect_ratios=["Auto", "1:1", "3:2", "2:3", "16:9", "9:16"],
        prompt_optional_modes=[GenerationMode.SINGLE_REFERENCE],
    ),
    ModelDescriptor(
        id="nano-banana",
        name="Nano Banana",
        provider=REPLICATE,
        kind=MediaKind.IMAGE,
        provider_model="google/nano-banana",
        supports_text_to_x=True,
        supports_single_reference=True,
        supports_multi_reference=True,
        max_reference_images=8,
        aspect_ratios=STANDARD_IMAGE_RATIOS,
        recommended=True,
    ),
    ModelDescriptor(
        id="flux-1.1-pro",
        name="FLUX 1.1 Pro",
        provider=REPLICATE,
        kind=MediaKind.IMAGE,
        provider_model="black-forest-labs/flux-1.1-pro",
        supports_text_to_x=True,
        aspect_ratios=["1:1", "16:9", "9:16", "3:2", "2:3", "4:5", "5:4", "3:4", "4:3"],
    ),
    ModelDescriptor(
        id="flux-schnell",
        name="FLUX Schnell",
        provider=REPLICATE,
        kind=MediaKind.IMAGE,
        provider_model="black-forest-labs/flux-schnell",
        supports_text_to_x=True,
        max_variations=4,
        aspect_ratios=["1:1", "16:9", "9:16", "21:9", "9:21", "3:2", "2:3", "4:5", "5:4", "3:4", "4:3"],
    ),
    ModelDescriptor(
        id="flux-kontext-pro",
        name="FLUX Kontext Pro",
        provider=REPLICATE,
        kind=MediaKind.IMAGE,
        provider_model="black-forest-labs/flux-kontext-pro",
        supports_single_reference=True,
        aspect_ratios=["Auto", "1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "21:9"],
    ),
    # ---- video ----
    ModelDescriptor(
        id="kie-veo3",
        name="Veo 3.1 (Kie.ai)",
        provider=KIE_VEO,
        kind=MediaKind.VIDEO,
        provider_model="veo3",
        supports_text_to_x=True,
        supports_single_reference=True,
        supports_frame_to_frame=True,
        aspect_ratios=VEO_RATIOS,
        resolutions=["Auto", "720p", "1080p"],
        durations=[8],
    ),
    ModelDescriptor(
        id="kie-veo3-fast",
        name="Veo 3.1 Fast (Kie.ai)",
        provider=KIE_VEO,
        kind=MediaKind.VIDEO,
        provider_model="veo3_fast",
        supports_text_to_x=True,
        supports_single_reference=True,
        supports_multi_reference=True,
        supports_frame_to_frame=True,
        max_reference_images=3,
        aspect_ratios=VEO_RATIOS,
        resolutions=["Auto", "720p", "1080p"],
        durations=[8],
        recommended=True,
    ),
    ModelDescriptor(
        id="kie-veo3-extend",
        name="Veo 3.1 Extend (Kie.ai)",
        provider=KIE_VEO,
        kind=MediaKind.VIDEO,
        provider_model="fast",
        supports_extend=True,
        aspect_ratios=VEO_RATIOS,
        resolutions=["Auto", "720p", "1080p"],
        durations=[8],
    ),
    ModelDescriptor(
        id="grok-imagine-video",
        name="Grok Imagine Video",
        provider=KIE,
        kind=MediaKind.VIDEO,
        provider_model="grok-imagine/text-to-video",
        mode_models={GenerationMode.SINGLE_REFERENCE: "grok-imagine/image-to-video"},
        supports_text_to_x=True,
        supports_single_reference=True,
        aspect_ratios=["16:9", "9:16", "1:1", "3:2", "2:3"],
        resolutions=["480p", "720p"],
        durations=[6, 10],
        prompt_optional_modes=[GenerationMode.SINGLE_REFERENCE],
    ),
    ModelDescriptor(
        id="kie-kling-2.6-motion-control",
        name="Kling 2.6 Motion Control (Kie.ai)",
        provider=KIE,
        kind=MediaKind.VIDEO,
        provider_model="kling-2.6/motion-control",
        supports_motion_control=True,
        aspect_ratios=["Auto"],
        resolutions=["720p", "1080p"],
        prompt_optional_modes=[GenerationMode.MOTION_CONTROL],
    ),
    ModelDescriptor(
        id="fal-kling-2.6-image-to-video",
        name="Kling 2.6 Pro (fal.ai)",
        provider=FAL,
        kind=MediaKind.VIDEO,
        provider_model="fal-ai/kling-video/v2.6/pro/image-to-video",
        supports_single_reference=True,
        aspect_ratios=["Auto"],
        resolutions=["Auto", "1080p"],
        durations=[5, 10],
    ),
    ModelDescriptor(
        id="fal-kling-2.6-motion-control",
        name="Kling 2.6 Motion Control (fal.ai)",
        provider=FAL,
        kind=MediaKind.VIDEO,
        provider_model="fal-ai/kling-video/v2.6/pro/motion-control",
        supports_motion_control=True,
        aspect_ratios=["Auto"],
        resolutions=["Auto"],
        prompt_optional_modes=[GenerationMode.MOTION_CONTROL],
    ),
    ModelDescriptor(
        id="veo-3.1",
        name="Veo 3.1",
        provider=REPLICATE,
        kind=MediaKind.VIDEO,
        provider_model="google/veo-3.1",
        supports_text_to_x=True,
        supports_single_reference=True,
        supports_multi_reference=True,
        supports_frame_to_frame=True,
        max_reference_images=3,
        aspect_ratios=VEO_RATIOS,
        resolutions=["720p", "1080p"],
        durations=[4, 6, 8],
        duration_resolutions={4: ["720p"], 6: ["720p"], 8: ["720p", "1080p"]},
    ),
    ModelDescriptor(
        id="kling-v2.1",
        name="Kling V2.1",
        provider=REPLICATE,
        kind=MediaKind.VIDEO,
        provider_model="kwaivgi/kling-v2.1",
        supports_single_reference=True,
        supports_frame_to_frame=True,
        aspect_ratios=["Auto"],
        resolutions=["720p", "1080p"],
        durations=[5, 10],
        prompt_optional_modes=[GenerationMode.FRAME_TO_FRAME],
    ),
]


class ModelCatalog:
    """Lookup and filtering over a fixed list of model descriptors."""

    def __init__(self, models: Optional[List[ModelDescriptor]] = None):
        self._models = list(models if models is not None else DEFAULT_CATALOG)
        self._by_id = {m.id: m for m in self._models}

    def get(self, model_id: Optional[str]) -> Optional[ModelDescriptor]:
        if model_id is None:
            return None
        return self._by_id.get(model_id)

    def all(self, kind: Optional[MediaKind] = None) -> List[ModelDescriptor]:
        if kind is None:
            return list(self._models)
        return [m for m in self._models if m.kind == kind]

    def filter(self, kind: MediaKind, mode: GenerationMode, image_count: int = 0) -> List[ModelDescriptor]:
        """Models of the given kind that can run the given mode, recommended first."""
        capable = [m for m in self._models if m.kind == kind and m.supports(mode, image_count)]
        return sorted(capable, key=lambda m: not m.recommended)

    def restrict(self, providers) -> "ModelCatalog":
        """A catalog holding only models whose provider is configured."""
        return ModelCatalog([m for m in self._models if m.provider in providers])
