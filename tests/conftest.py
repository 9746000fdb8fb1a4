"""Test configuration helpers."""
from __future__ import annotations

import os
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest


def _ensure_src_on_path() -> None:
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    for entry in (src, root):
        entry_str = str(entry)
        if entry_str not in sys.path:
            sys.path.insert(0, entry_str)


def _ensure_pythonpath_env() -> None:
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    entries = [str(src), str(root)]
    existing = os.environ.get("PYTHONPATH")
    if existing:
        entries.append(existing)
    seen: set[str] = set()
    ordered: list[str] = []
    for entry in entries:
        if entry and entry not in seen:
            ordered.append(entry)
            seen.add(entry)
    os.environ["PYTHONPATH"] = os.pathsep.join(ordered)


_ensure_src_on_path()
_ensure_pythonpath_env()

from ugc_motion import telemetry  # noqa: E402
from ugc_motion.config import PipelineConfig  # noqa: E402
from ugc_motion.job_store import JobStore  # noqa: E402
from ugc_motion.orchestrator import JobOrchestrator, build_orchestrator  # noqa: E402
from ugc_motion.providers import InMemoryCatalog, StaticPlanner  # noqa: E402
from ugc_motion.schemas import AvatarRef, DemoRef, ProductInfo  # noqa: E402
from ugc_motion.storage import FilesystemObjectStore  # noqa: E402


class FakeClock:
    """Manual clock: `sleep` advances `now` instantly and is recorded."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            if seconds > 0:
                self._now += seconds


def plan_24s(**overrides: Any) -> Dict[str, Any]:
    """Handheld 24s plan: one composite and three 8s calls (composite, product, avatar)."""
    plan: Dict[str, Any] = {
        "productInteraction": "handheld",
        "interactionReasoning": "Small bottle, easy to hold",
        "totalDurationSeconds": 24,
        "imageGeneration": [
            {
                "compositeId": "composite_1",
                "avatarSource": "AVATAR_1",
                "productSources": ["PRODUCT_1"],
                "prompt": "avatar holding the serum bottle at chest height",
                "description": "hero shot",
            }
        ],
        "segments": [
            {
                "segmentIndex": 0,
                "type": "talking_head",
                "veoCallId": "veo_1",
                "startTime": 0,
                "endTime": 8,
                "script": "This serum changed my morning routine and I honestly cannot stop using it every day",
            },
            {
                "segmentIndex": 1,
                "type": "product_broll",
                "veoCallId": "veo_2",
                "startTime": 8,
                "endTime": 16,
                "brollPrompt": "Slow pan across the bottle on marble",
            },
            {
                "segmentIndex": 2,
                "type": "talking_head",
                "veoCallId": "veo_3",
                "startTime": 16,
                "endTime": 24,
                "script": "Grab yours today with the link below before this launch price is gone for good",
            },
        ],
        "veoCalls": [
            {
                "callId": "veo_1",
                "sourceImageType": "composite",
                "sourceImageRef": "composite_1",
                "prompt": "energetic creator shows the bottle to camera",
            },
            {
                "callId": "veo_2",
                "sourceImageType": "product",
                "sourceImageRef": "PRODUCT_2",
                "prompt": "aesthetic slow pan across the bottle",
            },
            {
                "callId": "veo_3",
                "sourceImageType": "avatar",
                "sourceImageRef": "AVATAR_1",
                "prompt": "creator smiles and points down",
            },
        ],
        "clips": [
            {"clipId": "c0", "veoCallId": "veo_1", "startTime": 0, "endTime": 8, "order": 0},
            {"clipId": "c1", "veoCallId": "veo_2", "startTime": 0, "endTime": 8, "order": 1},
            {"clipId": "c2", "veoCallId": "veo_3", "startTime": 0, "endTime": 8, "order": 2},
        ],
    }
    plan.update(overrides)
    return plan


def plan_16s(**overrides: Any) -> Dict[str, Any]:
    """Non-handheld 16s plan cutting call A twice and call B once."""
    plan: Dict[str, Any] = {
        "productInteraction": "non-handheld",
        "totalDurationSeconds": 16,
        "imageGeneration": [],
        "segments": [
            {
                "segmentIndex": 0,
                "type": "talking_head",
                "veoCallId": "veo_a",
                "startTime": 0,
                "endTime": 8,
                "script": "I tried every lamp out there and this is the only one that fits my desk",
            },
            {
                "segmentIndex": 1,
                "type": "virtual_broll",
                "veoCallId": "veo_b",
                "startTime": 8,
                "endTime": 16,
                "brollPrompt": "Calm desk setup at dusk",
            },
        ],
        "veoCalls": [
            {"callId": "veo_a", "sourceImageType": "avatar", "sourceImageRef": "AVATAR_1", "prompt": "talks to camera"},
            {"callId": "veo_b", "sourceImageType": "product", "sourceImageRef": "PRODUCT_1", "prompt": "calm lamp glow"},
        ],
        "clips": [
            {"veoCallId": "veo_a", "startTime": 0, "endTime": 4, "order": 0},
            {"veoCallId": "veo_a", "startTime": 4, "endTime": 8, "order": 1},
            {"veoCallId": "veo_b", "startTime": 0, "endTime": 8, "order": 2},
        ],
    }
    plan.update(overrides)
    return plan


@pytest.fixture(autouse=True)
def _clear_telemetry() -> None:
    telemetry.clear_events()
    yield
    telemetry.clear_events()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog(
        avatars=[AvatarRef(id="a1", image_url="https://cdn.example.com/avatars/a1.png")],
        products=[
            ProductInfo(
                id="p1",
                name="Glow Serum",
                price=29.0,
                description="Vitamin C serum",
                hooks=["glass skin in a week"],
                images=[
                    "https://cdn.example.com/products/p1-1.png",
                    "https://cdn.example.com/products/p1-2.png",
                ],
            )
        ],
        demos=[DemoRef(id="d1", description="unboxing", video_url="https://cdn.example.com/demos/d1.mp4", duration=12)],
    )


@pytest.fixture()
def job_store(tmp_path: Path) -> JobStore:
    store = JobStore(str(tmp_path / "jobs.db"))
    yield store
    store.close()


@pytest.fixture()
def object_store(tmp_path: Path) -> FilesystemObjectStore:
    return FilesystemObjectStore(root=tmp_path / "storage", base_url="https://media.example.com")


@pytest.fixture()
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig.from_env(
        {
            "UGC_DB_PATH": str(tmp_path / "pipeline.db"),
            "UGC_STORAGE_ROOT": str(tmp_path / "storage"),
            "UGC_STORAGE_BASE_URL": "https://media.example.com",
            "UGC_USE_FIXTURE": "1",
            "UGC_RETRY_ATTEMPTS": "2",
            "UGC_RETRY_MIN_BACKOFF_S": "0",
            "UGC_RETRY_MAX_BACKOFF_S": "0",
            "UGC_DEPENDENCY_TIMEOUT_S": "1",
            "UGC_DEPENDENCY_POLL_S": "0.05",
        }
    )


@pytest.fixture()
def make_orchestrator(
    pipeline_config: PipelineConfig, catalog: InMemoryCatalog, fake_clock: FakeClock
) -> Callable[..., JobOrchestrator]:
    """Build a fixture-mode orchestrator around a static plan (or planner)."""

    def _make(plan: Optional[Any] = None, **kwargs: Any) -> JobOrchestrator:
        planner = kwargs.pop("planner", None) or StaticPlanner(plan if plan is not None else plan_24s())
        return build_orchestrator(pipeline_config, catalog=catalog, planner=planner, clock=fake_clock, **kwargs)

    return _make
