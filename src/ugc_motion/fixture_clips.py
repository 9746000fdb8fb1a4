"""Deterministic stand-in media used when fixture mode replaces real services.

A fixture clip is a small JSON document holding one label per frame. Slicing
and concatenating fixture clips is exact, so assembled output can be compared
frame-by-frame with its sources.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import List, Sequence

FIXTURE_KIND = "ugc-fixture-clip"
FIXTURE_FPS = 4


@dataclass(frozen=True)
class FixtureClip:
    frames: tuple
    fps: int = FIXTURE_FPS

    @property
    def duration_s(self) -> float:
        return len(self.frames) / self.fps

    @classmethod
    def generate(cls, label: str, duration_s: float, fps: int = FIXTURE_FPS) -> FixtureClip:
        count = int(round(duration_s * fps))
        return cls(frames=tuple(f"{label}@{i:04d}" for i in range(count)), fps=fps)

    @classmethod
    def concat(cls, clips: Sequence[FixtureClip]) -> FixtureClip:
        fps = clips[0].fps if clips else FIXTURE_FPS
        if any(clip.fps != fps for clip in clips):
            raise ValueError("fixture clips must share one frame rate")
        frames: List[str] = []
        for clip in clips:
            frames.extend(clip.frames)
        return cls(frames=tuple(frames), fps=fps)

    def slice(self, start_s: float, end_s: float) -> FixtureClip:
        lo = int(round(start_s * self.fps))
        hi = int(round(end_s * self.fps))
        if lo < 0 or hi > len(self.frames) or lo >= hi:
            raise ValueError(f"range [{start_s}, {end_s}) outside clip of {self.duration_s:g}s")
        return FixtureClip(frames=self.frames[lo:hi], fps=self.fps)

    def to_bytes(self) -> bytes:
        doc = {"kind": FIXTURE_KIND, "fps": self.fps, "frames": list(self.frames)}
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> FixtureClip:
        try:
            doc = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("payload is not a fixture clip") from exc
        if not isinstance(doc, dict) or doc.get("kind") != FIXTURE_KIND:
            raise ValueError("payload is not a fixture clip")
        return cls(frames=tuple(doc.get("frames") or ()), fps=int(doc.get("fps") or FIXTURE_FPS))


def fixture_image_bytes(label: str) -> bytes:
    """Tiny deterministic stand-in for a generated image."""
    return json.dumps({"kind": "ugc-fixture-image", "label": label}).encode("utf-8")


__all__ = ["FIXTURE_FPS", "FixtureClip", "fixture_image_bytes"]
