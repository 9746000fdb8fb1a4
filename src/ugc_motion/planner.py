"""Plan authoring through a text model.

The model is asked for a single JSON document; its reply is treated as
untrusted text. The extracted mapping still goes through plan validation
before anything is stored on a job.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Mapping

from .errors import PlanningError
from .providers import TextModel
from .schemas import PlannerInput

LOG = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OUTER_OBJECT = re.compile(r"\{[\s\S]*\}")

DIRECTOR_PROMPT = """You are a creative director for short UGC-style social media videos.
Plan one vertical video from the product, the avatar and any demo footage below.

## Product
- Name: {product_name}
- Price: {product_price}
- Description: {product_description}
- Hooks: {product_hooks}
- Product images: {product_image_labels}

## Avatar
- Avatar image: AVATAR_1 (a headshot; the person is not holding anything)

## Demo footage
{demos}

## Existing B-roll clips available for reuse
{existing_clips}

## Preferences
- Tone: {tone}
- Target duration: {target_duration} seconds

## Rules
- totalDuration is 16, 20 or 24 and there are exactly ceil(totalDuration / 8) veoCalls.
- Every veoCall produces an 8 second clip; clips cut [startTime, endTime) ranges from them with 0 <= startTime < endTime <= 8.
- clips are ordered 0..N-1 and their durations add up to totalDuration exactly.
- Handheld products need at least one imageGeneration composite of AVATAR_1 holding 1-2 product images.
- sourceImageType is "avatar", "composite" or "product"; sourceImageRef is AVATAR_1, a compositeId or PRODUCT_n.
- Reuse an existing B-roll clip by setting existingClipId on the segment instead of requesting a new veoCall.

Return ONLY valid JSON with the keys productInteraction, interactionReasoning,
imageGeneration, totalDuration, segments, veoCalls and clips.
"""


def build_director_prompt(planner_input: PlannerInput) -> str:
    product = planner_input.product
    demos = "\n".join(f"- {d.id}: {d.description or 'no description'}" for d in planner_input.demos) or "None"
    clips = (
        "\n".join(
            f"- {c.id} ({c.type}, {c.duration:g}s): {c.description}" for c in planner_input.existing_clips
        )
        or "None"
    )
    labels = ", ".join(f"PRODUCT_{i + 1}" for i in range(len(product.images))) or "None"
    return DIRECTOR_PROMPT.format(
        product_name=product.name,
        product_price="N/A" if product.price is None else f"{product.price:g}",
        product_description=product.description or "N/A",
        product_hooks=", ".join(product.hooks) or "None",
        product_image_labels=labels,
        demos=demos,
        existing_clips=clips,
        tone=planner_input.tone,
        target_duration=planner_input.target_duration,
    )


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the plan object out of a model reply.

    A fenced code block wins; otherwise the span from the first ``{`` to the
    last ``}`` is parsed.
    """
    candidates = []
    fenced = _FENCED_BLOCK.search(text or "")
    if fenced:
        candidates.append(fenced.group(1))
    outer = _OUTER_OBJECT.search(text or "")
    if outer:
        candidates.append(outer.group(0))
    for candidate in candidates:
        try:
            doc = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(doc, dict):
            return doc
    raise PlanningError("Planner reply did not contain a JSON object", details={"reply": (text or "")[:500]})


class TextModelPlanner:
    """Planner that prompts a text model and parses its JSON reply."""

    def __init__(self, model: TextModel) -> None:
        self.model = model

    def plan(self, planner_input: PlannerInput) -> Mapping[str, Any]:
        prompt = build_director_prompt(planner_input)
        try:
            reply = self.model.generate(prompt)
        except PlanningError:
            raise
        except Exception as exc:
            raise PlanningError(f"Planner request failed: {exc}") from exc
        LOG.debug("Planner reply: %d chars", len(reply))
        return extract_json(reply)


__all__ = ["DIRECTOR_PROMPT", "build_director_prompt", "extract_json", "TextModelPlanner"]
