"""Structural and numeric checks applied to planner output before any paid call."""

from __future__ import annotations

import copy
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import PlanValidationError
from .schemas import ALLOWED_DURATIONS, NOMINAL_CLIP_SECONDS, Plan, PlannerInput, parse_image_ref

_DURATION_TOLERANCE = 1e-6
_MIN_NARRATIVE_SECONDS = 16
_MAX_WORDS_PER_SECOND = 4.0
_MIN_WORDS_PER_SECOND = 1.5
_SOURCE_TYPES = ("avatar", "composite", "product")
_CALL_LIST_KEYS = ("synthesis_calls", "synthesisCalls", "veoCalls")
_CALL_TYPE_KEYS = ("source_image_type", "sourceImageType")
_CALL_REF_KEYS = ("source_image_ref", "sourceImageRef")
_WORD_SPLIT = re.compile(r"\s+")


@dataclass(frozen=True)
class ValidationContext:
    """What the planner was given: the only things a plan may reference."""

    product_image_count: int
    demo_ids: frozenset = frozenset()
    existing_clip_ids: frozenset = frozenset()
    composite_reuse_warn: int = 2

    @classmethod
    def from_planner_input(cls, planner_input: PlannerInput, *, composite_reuse_warn: int = 2) -> ValidationContext:
        return cls(
            product_image_count=len(planner_input.product.images),
            demo_ids=frozenset(demo.id for demo in planner_input.demos),
            existing_clip_ids=frozenset(clip.id for clip in planner_input.existing_clips),
            composite_reuse_warn=composite_reuse_warn,
        )


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    plan: Optional[Plan] = None

    def raise_for_errors(self) -> Plan:
        if not self.valid or self.plan is None:
            raise PlanValidationError(self.errors, self.warnings)
        return self.plan


def validate_plan(
    candidate: Union[Plan, Mapping[str, Any]],
    context: Union[ValidationContext, PlannerInput],
) -> ValidationResult:
    """Check `candidate` against the plan invariants. Never raises.

    Raw mappings are normalised (``sourceImageType`` lower-cased, or inferred
    from the ``sourceImageRef`` prefix) and parsed before the semantic checks.
    """
    if isinstance(context, PlannerInput):
        context = ValidationContext.from_planner_input(context)
    errors: List[str] = []
    warnings: List[str] = []

    if isinstance(candidate, Plan):
        plan = candidate
    elif isinstance(candidate, Mapping):
        raw = normalize_plan_payload(candidate, errors)
        try:
            plan = Plan.model_validate(raw)
        except ValidationError as exc:
            errors.extend(_format_pydantic_errors(exc))
            return ValidationResult(valid=False, errors=errors, warnings=warnings)
    else:
        return ValidationResult(valid=False, errors=["plan must be a JSON object"])

    _check_duration(plan, errors)
    _check_unique_ids(plan, errors)
    _check_segments(plan, context, errors, warnings)
    _check_calls(plan, context, errors, warnings)
    _check_composites(plan, context, errors)
    _check_output_clips(plan, context, errors)
    if plan.product_interaction == "handheld" and not plan.image_composite_tasks:
        errors.append("Handheld product requires at least one composite image")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings, plan=plan)


def ensure_valid_plan(
    candidate: Union[Plan, Mapping[str, Any]],
    context: Union[ValidationContext, PlannerInput],
) -> Plan:
    """Return the parsed plan or raise :class:`PlanValidationError`."""
    return validate_plan(candidate, context).raise_for_errors()


def normalize_plan_payload(payload: Mapping[str, Any], errors: List[str]) -> dict:
    raw = copy.deepcopy(dict(payload))
    for list_key in _CALL_LIST_KEYS:
        calls = raw.get(list_key)
        if not isinstance(calls, list):
            continue
        for call in calls:
            if isinstance(call, dict):
                _normalize_source_type(call, errors)
    return raw


def _normalize_source_type(call: dict, errors: List[str]) -> None:
    type_key = next((k for k in _CALL_TYPE_KEYS if k in call), _CALL_TYPE_KEYS[1])
    ref = next((call[k] for k in _CALL_REF_KEYS if k in call), None)
    value = call.get(type_key)
    token = value.strip().lower() if isinstance(value, str) else ""
    if token in _SOURCE_TYPES:
        call[type_key] = token
        return
    ref_text = ref if isinstance(ref, str) else ""
    if ref_text.upper().startswith("AVATAR"):
        call[type_key] = "avatar"
    elif ref_text.lower().startswith("composite"):
        call[type_key] = "composite"
    elif ref_text.upper().startswith("PRODUCT"):
        call[type_key] = "product"
    else:
        call_id = call.get("call_id", call.get("callId"))
        errors.append(
            f'Invalid sourceImageType "{value}" for call {call_id}. '
            f'Expected one of "avatar"|"composite"|"product". sourceImageRef: {ref}'
        )


def _format_pydantic_errors(exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        out.append(f"{path}: {err.get('msg')}")
    return out


def expected_call_count(total_duration_seconds: int) -> int:
    return math.ceil(total_duration_seconds / NOMINAL_CLIP_SECONDS)


def _check_duration(plan: Plan, errors: List[str]) -> None:
    total = plan.total_duration_seconds
    if total not in ALLOWED_DURATIONS:
        allowed = ", ".join(str(d) for d in ALLOWED_DURATIONS)
        errors.append(f"totalDurationSeconds must be one of {{{allowed}}}, got {total}")
    expected = expected_call_count(total)
    if len(plan.synthesis_calls) != expected:
        errors.append(
            f"Expected {expected} synthesis calls for {total}s, got {len(plan.synthesis_calls)}"
        )


def _duplicates(values: Iterable[str]) -> List[str]:
    return sorted(value for value, count in Counter(values).items() if count > 1)


def _check_unique_ids(plan: Plan, errors: List[str]) -> None:
    for call_id in _duplicates(plan.call_ids):
        errors.append(f"Duplicate synthesis call id: {call_id}")
    for composite_id in _duplicates(plan.composite_ids):
        errors.append(f"Duplicate composite id: {composite_id}")


def _check_segments(plan: Plan, ctx: ValidationContext, errors: List[str], warnings: List[str]) -> None:
    call_ids = set(plan.call_ids)
    narrative_seconds = 0.0
    for seg in plan.segments:
        label = f"Segment {seg.segment_index}"
        if seg.synthesis_call_id and seg.synthesis_call_id not in call_ids:
            errors.append(f"{label} references non-existent synthesis call: {seg.synthesis_call_id}")
        if seg.existing_clip_id and seg.existing_clip_id not in ctx.existing_clip_ids:
            errors.append(f"{label} references unknown existing clip: {seg.existing_clip_id}")
        if seg.demo_id and seg.demo_id not in ctx.demo_ids:
            errors.append(f"{label} references unknown demo: {seg.demo_id}")
        if not (seg.synthesis_call_id or seg.existing_clip_id or (seg.type == "demo_broll" and seg.demo_id)):
            errors.append(f"{label} has no source (synthesis call, existing clip or demo)")
        if seg.end_time <= seg.start_time:
            errors.append(f"{label} has invalid time range [{seg.start_time}, {seg.end_time})")
            continue
        narrative_seconds += seg.duration
        if seg.type == "talking_head" and not (seg.script or "").strip():
            warnings.append(f"{label} is a talking head with no script")
        if seg.script and seg.script.strip():
            words = len(_WORD_SPLIT.split(seg.script.strip()))
            wps = words / seg.duration
            if wps > _MAX_WORDS_PER_SECOND:
                warnings.append(f"{label} script may be too fast: {wps:.1f} words/sec")
            elif wps < _MIN_WORDS_PER_SECOND:
                warnings.append(f"{label} script may be too slow: {wps:.1f} words/sec")
    if plan.segments and narrative_seconds < _MIN_NARRATIVE_SECONDS:
        warnings.append(f"Narrative duration {narrative_seconds:g}s is below {_MIN_NARRATIVE_SECONDS}s")


def _check_calls(plan: Plan, ctx: ValidationContext, errors: List[str], warnings: List[str]) -> None:
    composite_ids = set(plan.composite_ids)
    reuse: Counter = Counter()
    for call in plan.synthesis_calls:
        ref = call.source_image_ref
        if call.source_image_type == "composite":
            reuse[ref] += 1
            if ref not in composite_ids:
                errors.append(f"Synthesis call {call.call_id} references non-existent composite: {ref}")
        elif call.source_image_type == "product":
            index = parse_image_ref(ref)
            if index is None or not 0 <= index < ctx.product_image_count:
                errors.append(f"Synthesis call {call.call_id} has invalid product image reference: {ref}")
        elif not ref.upper().startswith("AVATAR"):
            errors.append(f"Synthesis call {call.call_id} has invalid avatar reference: {ref}")
    for composite_id, count in sorted(reuse.items()):
        if count > ctx.composite_reuse_warn:
            warnings.append(f"Composite {composite_id} is reused by {count} synthesis calls")


def _check_composites(plan: Plan, ctx: ValidationContext, errors: List[str]) -> None:
    for task in plan.image_composite_tasks:
        if not 1 <= len(task.product_sources) <= 2:
            errors.append(
                f"Composite {task.composite_id} must reference 1-2 product images, got {len(task.product_sources)}"
            )
        for ref in task.product_sources:
            index = parse_image_ref(ref)
            if index is None or not 0 <= index < ctx.product_image_count:
                errors.append(f"Invalid product image reference: {ref}")


def _check_output_clips(plan: Plan, ctx: ValidationContext, errors: List[str]) -> None:
    call_ids = set(plan.call_ids)
    total = 0.0
    for clip in plan.output_clips:
        label = f"Clip {clip.clip_id or clip.order}"
        refs = clip.source_refs()
        if len(refs) != 1:
            errors.append(f"{label} must name exactly one source, got {len(refs)}")
        if clip.synthesis_call_id and clip.synthesis_call_id not in call_ids:
            errors.append(f"{label} references non-existent synthesis call: {clip.synthesis_call_id}")
        if clip.existing_clip_id and clip.existing_clip_id not in ctx.existing_clip_ids:
            errors.append(f"{label} references unknown existing clip: {clip.existing_clip_id}")
        if clip.demo_id and clip.demo_id not in ctx.demo_ids:
            errors.append(f"{label} references unknown demo: {clip.demo_id}")
        if clip.start_time < 0 or clip.start_time >= clip.end_time:
            errors.append(
                f"{label} has invalid time range: start ({clip.start_time}) must be >= 0 and < end ({clip.end_time})"
            )
        if (clip.synthesis_call_id or clip.existing_clip_id) and clip.end_time > NOMINAL_CLIP_SECONDS:
            errors.append(f"{label} has end ({clip.end_time}) greater than {NOMINAL_CLIP_SECONDS} seconds")
        total += clip.duration

    orders = sorted(clip.order for clip in plan.output_clips)
    if orders != list(range(len(orders))):
        errors.append(f"Clip order must be a contiguous 0-based sequence, got {orders}")
    if abs(total - plan.total_duration_seconds) > _DURATION_TOLERANCE:
        errors.append(
            f"Output clips total {total:g}s but totalDurationSeconds is {plan.total_duration_seconds}"
        )


__all__ = [
    "ValidationContext",
    "ValidationResult",
    "validate_plan",
    "ensure_valid_plan",
    "normalize_plan_payload",
    "expected_call_count",
]
