"""Rate-limited, ordered dispatch of video synthesis calls.

The video service accepts at most two requests per minute and one request
in flight. Calls of a batch run on a single worker in plan order; item ``i``
of a batch is not sent before ``batch_start + i * spacing_s``. Every request
(including retries and manual regenerations) also passes a shared sliding
window limiter and a dispatch lock.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from . import telemetry
from .composites import StageReport
from .errors import DependencyTimeoutError, GenerationError, PipelineError
from .job_store import JobStatus, JobStore, VideoJob
from .providers import AssetCatalog, VideoSynthesizer
from .ratelimit import Clock, RateLimiter, SlidingWindowRateLimiter, SystemClock
from .retry import RetryPolicy
from .schemas import SynthesisCall, parse_image_ref

LOG = logging.getLogger(__name__)

STAGE = "generating_video"


def required_composite_image_ids(job: VideoJob, calls: List[SynthesisCall]) -> List[str]:
    """Stored composite image ids that the given calls use as source images.

    A referenced composite whose image row does not exist yet maps to an
    empty string, which never counts as complete.
    """
    if job.plan is None:
        return []
    out: List[str] = []
    for call in calls:
        if call.source_image_type != "composite":
            continue
        index = job.plan.composite_index(call.source_image_ref)
        if index is None:
            raise GenerationError(
                f"Synthesis call {call.call_id} references unknown composite {call.source_image_ref}",
                stage=STAGE,
                item_ids=[call.call_id],
            )
        image_id = job.composite_image_ids[index] if index < len(job.composite_image_ids) else ""
        if image_id not in out:
            out.append(image_id)
    return out


class SynthesisDispatcher:
    def __init__(
        self,
        store: JobStore,
        catalog: AssetCatalog,
        synthesizer: VideoSynthesizer,
        *,
        clock: Optional[Clock] = None,
        limiter: Optional[RateLimiter] = None,
        spacing_s: float = 30.0,
        retry: Optional[RetryPolicy] = None,
        dependency_timeout_s: float = 300.0,
        dependency_poll_s: float = 5.0,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.synthesizer = synthesizer
        self.clock: Clock = clock or SystemClock()
        self.limiter = limiter or SlidingWindowRateLimiter(max_requests=2, window_s=60.0, clock=self.clock)
        self.spacing_s = spacing_s
        self.retry = retry or RetryPolicy()
        self.dependency_timeout_s = dependency_timeout_s
        self.dependency_poll_s = dependency_poll_s
        self._dispatch_lock = threading.Lock()

    def dispatch(self, job_id: str) -> StageReport:
        """Synthesize every call of the job that has no produced clip yet."""
        job = self.store.get(job_id)
        if job.plan is None:
            raise GenerationError(f"Job {job_id} has no plan yet", stage=STAGE)
        report = StageReport(stage=STAGE)
        done = set(job.completed_synthesis_call_ids)
        pending = [call for call in job.plan.synthesis_calls if call.call_id not in done]
        report.skipped = [call_id for call_id in job.plan.call_ids if call_id in done]
        if not pending:
            self._mark_clips_completed(job_id)
            return report

        job = self.wait_for_composites(job, pending)
        batch_start = self.clock.now()
        LOG.info("Job %s: dispatching %d synthesis call(s)", job_id, len(pending))
        for index, call in enumerate(pending):
            delay = batch_start + index * self.spacing_s - self.clock.now()
            if delay > 0:
                self.clock.sleep(delay)
            try:
                self._synthesize(job, call, replace=False)
            except PipelineError as exc:
                report.failed[call.call_id] = str(exc)
            else:
                report.succeeded.append(call.call_id)
        return report

    def generate_one(self, job_id: str, call_id: str) -> str:
        """Regenerate one call through the shared lock and limiter."""
        job = self.store.get(job_id)
        call = job.plan.find_call(call_id) if job.plan is not None else None
        if call is None:
            raise GenerationError(f"Unknown synthesis call {call_id} for job {job_id}", stage=STAGE, item_ids=[call_id])
        return self._synthesize(job, call, replace=True)

    def wait_for_composites(self, job: VideoJob, calls: List[SynthesisCall]) -> VideoJob:
        if not any(call.source_image_type == "composite" for call in calls):
            return job

        def _ready(current: VideoJob) -> bool:
            needed = required_composite_image_ids(current, calls)
            done = set(current.completed_composite_ids)
            return all(image_id and image_id in done for image_id in needed)

        LOG.info("Job %s: waiting for composites before dispatch", job.id)
        ready = self.store.wait_for(
            job.id,
            _ready,
            timeout_s=self.dependency_timeout_s,
            poll_interval_s=self.dependency_poll_s,
        )
        if ready is None:
            telemetry.emit_event("synthesis.dependency_timeout", {"job_id": job.id})
            raise DependencyTimeoutError(
                f"Composites for job {job.id} not ready within {self.dependency_timeout_s:g}s",
                details={"job_id": job.id, "timeout_s": self.dependency_timeout_s},
            )
        return ready

    def _source_image_url(self, job: VideoJob, call: SynthesisCall) -> str:
        if call.source_image_type == "avatar":
            return self.catalog.get_avatar(job.avatar_id).image_url
        if call.source_image_type == "product":
            images = self.catalog.get_product(job.product_id).images
            index = parse_image_ref(call.source_image_ref)
            if index is None or not 0 <= index < len(images):
                raise ValueError(f"product image reference {call.source_image_ref} is out of range")
            return images[index]
        (image_id,) = required_composite_image_ids(job, [call])
        if not image_id:
            raise ValueError(f"composite {call.source_image_ref} has no stored image row")
        image = self.store.get_composite_image(image_id)
        if not image.ready:
            raise ValueError(f"composite {call.source_image_ref} has no image yet")
        return image.image_url

    def _request(self, source_url: str, call: SynthesisCall) -> str:
        waited = self.limiter.acquire()
        if waited:
            telemetry.emit_event("synthesis.rate_limited", {"call_id": call.call_id, "waited_s": waited})
        telemetry.emit_event("synthesis.request", {"call_id": call.call_id, "at": self.clock.now()})
        return self.synthesizer.synthesize(source_url, call.prompt)

    def _synthesize(self, job: VideoJob, call: SynthesisCall, *, replace: bool) -> str:
        def _on_retry(attempt: int, exc: Exception) -> None:
            LOG.warning("Synthesis call %s attempt %d failed: %s", call.call_id, attempt, exc)

        try:
            source_url = self._source_image_url(job, call)
            with self._dispatch_lock:
                url = self.retry.call(lambda: self._request(source_url, call), sleep=self.clock.sleep, on_retry=_on_retry)
        except Exception as exc:
            LOG.error("Synthesis call %s for job %s failed: %s", call.call_id, job.id, exc)
            telemetry.emit_event("synthesis.failed", {"job_id": job.id, "call_id": call.call_id})
            if isinstance(exc, PipelineError):
                raise
            raise GenerationError(
                f"Synthesis call {call.call_id} failed: {exc}", stage=STAGE, item_ids=[call.call_id]
            ) from exc

        self.store.append_produced_clip(job.id, call.call_id, url, replace=replace)
        telemetry.emit_event("synthesis.completed", {"job_id": job.id, "call_id": call.call_id, "url": url})
        self._mark_clips_completed(job.id)
        return url

    def _mark_clips_completed(self, job_id: str) -> None:
        moved: List[bool] = []

        def _apply(job: VideoJob):
            if job.status != JobStatus.GENERATING_VIDEO or job.pending_call_ids():
                return None
            moved.append(True)
            return {"status": JobStatus.VEO_CLIPS_COMPLETED}

        self.store.update(job_id, _apply)
        if moved:
            LOG.info("Job %s: all synthesis calls completed", job_id)
            telemetry.emit_event("job.status", {"job_id": job_id, "status": JobStatus.VEO_CLIPS_COMPLETED.value})


__all__ = ["STAGE", "SynthesisDispatcher", "required_composite_image_ids"]
