from __future__ import annotations

import threading
import time
from typing import List

import pytest

from conftest import FakeClock, plan_16s, plan_24s
from ugc_motion import telemetry
from ugc_motion.composites import CompositeStage
from ugc_motion.dispatcher import SynthesisDispatcher, required_composite_image_ids
from ugc_motion.errors import DependencyTimeoutError, GenerationError
from ugc_motion.job_store import JobStatus, JobStore, VideoJob
from ugc_motion.providers import FixtureImageSynthesizer, FixtureVideoSynthesizer, InMemoryCatalog
from ugc_motion.ratelimit import SlidingWindowRateLimiter
from ugc_motion.retry import RetryPolicy
from ugc_motion.schemas import Plan
from ugc_motion.storage import FilesystemObjectStore

RETRY = RetryPolicy(attempts=3, min_backoff_s=1.0, max_backoff_s=10.0)


def _plan_without_composites() -> Plan:
    raw = plan_24s(productInteraction="non-handheld", imageGeneration=[])
    raw["veoCalls"][0]["sourceImageType"] = "avatar"
    raw["veoCalls"][0]["sourceImageRef"] = "AVATAR_1"
    return Plan.model_validate(raw)


def _job_in_video_stage(store: JobStore, plan: Plan) -> VideoJob:
    job = store.create({"user_id": "u1", "product_id": "p1", "avatar_id": "a1"})
    store.set_plan(job.id, plan)
    return store.set_status(job.id, JobStatus.GENERATING_VIDEO)


def _dispatcher(
    store: JobStore,
    catalog: InMemoryCatalog,
    synthesizer,
    clock: FakeClock,
    **kwargs,
) -> SynthesisDispatcher:
    kwargs.setdefault("retry", RETRY)
    return SynthesisDispatcher(
        store,
        catalog,
        synthesizer,
        clock=clock,
        limiter=SlidingWindowRateLimiter(2, 60.0, clock=clock),
        spacing_s=30.0,
        **kwargs,
    )


def _request_times() -> List[float]:
    return [event["payload"]["at"] for event in telemetry.get_events("synthesis.request")]


class FlakyVideo:
    """Fails the first `failures` requests, then delegates."""

    def __init__(self, inner: FixtureVideoSynthesizer, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.requests = 0

    def synthesize(self, source_image_url: str, prompt: str) -> str:
        self.requests += 1
        if self.requests <= self.failures:
            raise RuntimeError("429 quota exhausted")
        return self.inner.synthesize(source_image_url, prompt)


def test_batch_items_are_spaced_in_plan_order(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    job = _job_in_video_stage(job_store, _plan_without_composites())
    synthesizer = FixtureVideoSynthesizer(object_store)

    report = _dispatcher(job_store, catalog, synthesizer, fake_clock).dispatch(job.id)

    assert report.ok
    assert report.succeeded == ["veo_1", "veo_2", "veo_3"]
    assert _request_times() == [0.0, 30.0, 60.0]
    assert [c["prompt"] for c in synthesizer.calls] == [call.prompt for call in _plan_without_composites().synthesis_calls]
    job = job_store.get(job.id)
    assert job.status == JobStatus.VEO_CLIPS_COMPLETED
    assert job.pending_call_ids() == []
    statuses = [e["payload"]["status"] for e in telemetry.get_events("job.status")]
    assert statuses == ["veo_clips_completed"]


def test_sources_resolve_by_image_type(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    job = _job_in_video_stage(job_store, _plan_without_composites())
    synthesizer = FixtureVideoSynthesizer(object_store)
    _dispatcher(job_store, catalog, synthesizer, fake_clock).dispatch(job.id)
    assert [c["source_image_url"] for c in synthesizer.calls] == [
        "https://cdn.example.com/avatars/a1.png",
        "https://cdn.example.com/products/p1-2.png",
        "https://cdn.example.com/avatars/a1.png",
    ]


def test_resume_dispatches_only_missing_calls(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_16s())
    job = _job_in_video_stage(job_store, plan)
    job_store.append_produced_clip(job.id, "veo_a", "https://media.example.com/veo_a.json")
    synthesizer = FixtureVideoSynthesizer(object_store)

    report = _dispatcher(job_store, catalog, synthesizer, fake_clock).dispatch(job.id)

    assert report.skipped == ["veo_a"]
    assert report.succeeded == ["veo_b"]
    assert [c["prompt"] for c in synthesizer.calls] == ["calm lamp glow"]
    job = job_store.get(job.id)
    assert job.clip_url_for("veo_a") == "https://media.example.com/veo_a.json"
    assert job.status == JobStatus.VEO_CLIPS_COMPLETED


def test_nothing_pending_is_a_no_op(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_16s())
    job = _job_in_video_stage(job_store, plan)
    job_store.append_produced_clip(job.id, "veo_a", "https://media.example.com/a.json")
    job_store.append_produced_clip(job.id, "veo_b", "https://media.example.com/b.json")
    synthesizer = FixtureVideoSynthesizer(object_store)

    report = _dispatcher(job_store, catalog, synthesizer, fake_clock).dispatch(job.id)

    assert report.succeeded == [] and report.failed == {}
    assert synthesizer.calls == []
    assert job_store.get(job.id).status == JobStatus.VEO_CLIPS_COMPLETED


def test_transient_failures_are_retried_with_backoff(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_16s())
    job = _job_in_video_stage(job_store, plan)
    synthesizer = FlakyVideo(FixtureVideoSynthesizer(object_store), failures=2)

    report = _dispatcher(job_store, catalog, synthesizer, fake_clock).dispatch(job.id)

    assert report.ok
    assert synthesizer.requests == 4
    assert 1.0 in fake_clock.sleeps and 2.0 in fake_clock.sleeps


def test_exhausted_item_is_reported_and_later_items_still_run(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_16s())
    job = _job_in_video_stage(job_store, plan)
    synthesizer = FlakyVideo(FixtureVideoSynthesizer(object_store), failures=3)

    report = _dispatcher(job_store, catalog, synthesizer, fake_clock).dispatch(job.id)

    assert list(report.failed) == ["veo_a"]
    assert report.succeeded == ["veo_b"]
    job = job_store.get(job.id)
    assert job.pending_call_ids() == ["veo_a"]
    assert job.status == JobStatus.GENERATING_VIDEO
    with pytest.raises(GenerationError):
        report.raise_for_failures()


def test_waits_for_composites_then_times_out(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_24s())
    job = _job_in_video_stage(job_store, plan)
    CompositeStage(job_store, catalog, FixtureImageSynthesizer(object_store)).ensure_images(job_store.get(job.id))
    synthesizer = FixtureVideoSynthesizer(object_store)
    dispatcher = _dispatcher(
        job_store, catalog, synthesizer, fake_clock, dependency_timeout_s=0.2, dependency_poll_s=0.05
    )

    with pytest.raises(DependencyTimeoutError):
        dispatcher.dispatch(job.id)
    assert synthesizer.calls == []
    assert len(telemetry.get_events("synthesis.dependency_timeout")) == 1


def test_dispatch_starts_once_composites_complete(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_24s())
    job = _job_in_video_stage(job_store, plan)
    stage = CompositeStage(job_store, catalog, FixtureImageSynthesizer(object_store))
    job = stage.ensure_images(job)
    synthesizer = FixtureVideoSynthesizer(object_store)
    dispatcher = _dispatcher(job_store, catalog, synthesizer, fake_clock, dependency_timeout_s=10.0, dependency_poll_s=5.0)

    def _complete() -> None:
        time.sleep(0.1)
        stage.run(job.id)

    worker = threading.Thread(target=_complete)
    worker.start()
    started = time.monotonic()
    report = dispatcher.dispatch(job.id)
    worker.join()

    assert report.ok
    assert time.monotonic() - started < 5.0
    image = job_store.get_composite_image(job.composite_image_ids[0])
    assert synthesizer.calls[0]["source_image_url"] == image.image_url


def test_required_composites_follow_call_refs(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore
) -> None:
    plan = Plan.model_validate(plan_24s())
    job = _job_in_video_stage(job_store, plan)
    assert required_composite_image_ids(job, plan.synthesis_calls) == [""]
    job = CompositeStage(job_store, catalog, FixtureImageSynthesizer(object_store)).ensure_images(job)
    assert required_composite_image_ids(job, plan.synthesis_calls) == job.composite_image_ids


def test_generate_one_replaces_clip_and_shares_the_limiter(
    job_store: JobStore, catalog: InMemoryCatalog, object_store: FilesystemObjectStore, fake_clock: FakeClock
) -> None:
    plan = Plan.model_validate(plan_16s())
    job = _job_in_video_stage(job_store, plan)
    synthesizer = FixtureVideoSynthesizer(object_store)
    dispatcher = _dispatcher(job_store, catalog, synthesizer, fake_clock)
    dispatcher.dispatch(job.id)
    first = job_store.get(job.id).clip_url_for("veo_b")

    url = dispatcher.generate_one(job.id, "veo_b")

    assert url != first
    assert job_store.get(job.id).clip_url_for("veo_b") == url
    times = _request_times()
    assert times == [0.0, 30.0, 60.0]
    assert len(telemetry.get_events("synthesis.rate_limited")) == 1
    with pytest.raises(GenerationError):
        dispatcher.generate_one(job.id, "veo_zzz")
