from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# each synthesis call nominally yields a clip of this length
NOMINAL_CLIP_SECONDS = 8
ALLOWED_DURATIONS = (16, 20, 24)

SegmentType = Literal["talking_head", "demo_broll", "product_broll", "virtual_broll"]
SourceImageType = Literal["avatar", "composite", "product"]

_REF_INDEX = re.compile(r"^[A-Za-z]+_(\d+)$")


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _PlanModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class ImageCompositeTask(_PlanModel):
    """Avatar + product composite image request."""

    composite_id: str = Field(..., min_length=1, validation_alias=_alias("composite_id", "compositeId"))
    avatar_source: str = Field(..., validation_alias=_alias("avatar_source", "avatarSource"))
    product_sources: List[str] = Field(
        default_factory=list, validation_alias=_alias("product_sources", "productSources")
    )
    prompt: str
    description: str = ""


class Segment(_PlanModel):
    """A narrative unit of the target video and the source it is cut from."""

    segment_index: int = Field(..., validation_alias=_alias("segment_index", "segmentIndex"))
    type: SegmentType
    synthesis_call_id: Optional[str] = Field(
        default=None, validation_alias=_alias("synthesis_call_id", "synthesisCallId", "veoCallId")
    )
    existing_clip_id: Optional[str] = Field(
        default=None, validation_alias=_alias("existing_clip_id", "existingClipId")
    )
    start_time: float = Field(..., validation_alias=_alias("start_time", "startTime"))
    end_time: float = Field(..., validation_alias=_alias("end_time", "endTime"))
    script: Optional[str] = None
    setting: Optional[str] = None
    action: Optional[str] = None
    demo_id: Optional[str] = Field(default=None, validation_alias=_alias("demo_id", "demoId"))
    demo_timestamp: Optional[Tuple[float, float]] = Field(
        default=None, validation_alias=_alias("demo_timestamp", "demoTimestamp")
    )
    overlay_talking_head: Optional[bool] = Field(
        default=None, validation_alias=_alias("overlay_talking_head", "overlayTalkingHead")
    )
    product_image_index: Optional[int] = Field(
        default=None, validation_alias=_alias("product_image_index", "productImageIndex")
    )
    broll_prompt: Optional[str] = Field(default=None, validation_alias=_alias("broll_prompt", "brollPrompt"))

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class SynthesisCall(_PlanModel):
    """One request to the video-synthesis service."""

    call_id: str = Field(..., min_length=1, validation_alias=_alias("call_id", "callId"))
    source_image_type: SourceImageType = Field(
        ..., validation_alias=_alias("source_image_type", "sourceImageType")
    )
    source_image_ref: str = Field(..., validation_alias=_alias("source_image_ref", "sourceImageRef"))
    prompt: str


class OutputClip(_PlanModel):
    """Cut-list entry: a `[start, end)` range of one source placed at `order`."""

    clip_id: Optional[str] = Field(default=None, validation_alias=_alias("clip_id", "clipId"))
    synthesis_call_id: Optional[str] = Field(
        default=None, validation_alias=_alias("synthesis_call_id", "synthesisCallId", "veoCallId")
    )
    existing_clip_id: Optional[str] = Field(
        default=None, validation_alias=_alias("existing_clip_id", "existingClipId")
    )
    demo_id: Optional[str] = Field(default=None, validation_alias=_alias("demo_id", "demoId"))
    start_time: float = Field(..., validation_alias=_alias("start_time", "startTime"))
    end_time: float = Field(..., validation_alias=_alias("end_time", "endTime"))
    order: int

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def source_refs(self) -> Dict[str, str]:
        refs = {
            "synthesis": self.synthesis_call_id,
            "indexed": self.existing_clip_id,
            "demo": self.demo_id,
        }
        return {kind: ref for kind, ref in refs.items() if ref}


class Plan(_PlanModel):
    """Validated generation plan, stored verbatim on the job."""

    product_interaction: Optional[Literal["handheld", "non-handheld"]] = Field(
        default=None, validation_alias=_alias("product_interaction", "productInteraction")
    )
    interaction_reasoning: Optional[str] = Field(
        default=None, validation_alias=_alias("interaction_reasoning", "interactionReasoning")
    )
    total_duration_seconds: int = Field(
        ..., validation_alias=_alias("total_duration_seconds", "totalDurationSeconds", "totalDuration")
    )
    image_composite_tasks: List[ImageCompositeTask] = Field(
        default_factory=list,
        validation_alias=_alias("image_composite_tasks", "imageCompositeTasks", "imageGeneration"),
    )
    segments: List[Segment] = Field(default_factory=list)
    synthesis_calls: List[SynthesisCall] = Field(
        default_factory=list, validation_alias=_alias("synthesis_calls", "synthesisCalls", "veoCalls")
    )
    output_clips: List[OutputClip] = Field(
        default_factory=list, validation_alias=_alias("output_clips", "outputClips", "clips")
    )

    @property
    def call_ids(self) -> List[str]:
        return [call.call_id for call in self.synthesis_calls]

    @property
    def composite_ids(self) -> List[str]:
        return [task.composite_id for task in self.image_composite_tasks]

    def find_call(self, call_id: str) -> Optional[SynthesisCall]:
        for call in self.synthesis_calls:
            if call.call_id == call_id:
                return call
        return None

    def composite_index(self, composite_id: str) -> Optional[int]:
        for idx, task in enumerate(self.image_composite_tasks):
            if task.composite_id == composite_id:
                return idx
        return None

    def ordered_clips(self) -> List[OutputClip]:
        return sorted(self.output_clips, key=lambda clip: clip.order)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ProductInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    price: Optional[float] = None
    description: Optional[str] = None
    hooks: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)


class AvatarRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    image_url: str = Field(..., validation_alias=_alias("image_url", "imageUrl"))


class DemoRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    description: Optional[str] = None
    video_url: Optional[str] = Field(default=None, validation_alias=_alias("video_url", "videoUrl", "url"))
    duration: Optional[float] = None


class ExistingClipRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    description: str = ""
    duration: float
    type: str


class PlannerInput(BaseModel):
    """Everything the planner sees when authoring a plan for one job."""

    model_config = ConfigDict(populate_by_name=True)

    product: ProductInfo
    avatar: AvatarRef
    demos: List[DemoRef] = Field(default_factory=list)
    existing_clips: List[ExistingClipRef] = Field(
        default_factory=list, validation_alias=_alias("existing_clips", "existingClips")
    )
    tone: str = "energetic"
    target_duration: int = Field(16, validation_alias=_alias("target_duration", "targetDuration"))


def parse_image_ref(ref: str) -> Optional[int]:
    """Map a 1-based ``PREFIX_n`` reference to a 0-based index.

    >>> parse_image_ref("PRODUCT_2")
    1
    """
    match = _REF_INDEX.match((ref or "").strip())
    if match is None:
        return None
    return int(match.group(1)) - 1


__all__ = [
    "ALLOWED_DURATIONS",
    "NOMINAL_CLIP_SECONDS",
    "ImageCompositeTask",
    "Segment",
    "SynthesisCall",
    "OutputClip",
    "Plan",
    "ProductInfo",
    "AvatarRef",
    "DemoRef",
    "ExistingClipRef",
    "PlannerInput",
    "parse_image_ref",
]
