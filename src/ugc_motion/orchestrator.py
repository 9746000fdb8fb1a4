"""Job orchestrator: the resumable state machine driving one video job.

``advance(job_id)`` looks at the stored record and runs whatever stage is
next: planning, composite generation, video synthesis, assembly. Every stage
checkpoints into the job store as items complete, so calling ``advance``
again after a crash or a partial failure picks up the incomplete subset only.

Usage (programmatic):
    from ugc_motion.config import PipelineConfig
    from ugc_motion.orchestrator import build_orchestrator
    orch = build_orchestrator(PipelineConfig.from_env(), catalog=my_catalog, planner=my_planner)
    job_id = orch.create_job({"user_id": "u1", "product_id": "p1", "avatar_id": "a1"})
    orch.advance(job_id)
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Union

from . import telemetry
from .assembly import ClipAssembler, ClipResolver, FFmpegEncoder, FixtureEncoder, TimelineEncoder
from .clip_index import ClipIndex
from .composites import CompositeStage
from .config import PipelineConfig
from .dispatcher import SynthesisDispatcher, required_composite_image_ids
from .errors import (
    AssemblyError,
    DependencyTimeoutError,
    GenerationError,
    ItemNotFoundError,
    PlanningError,
    PlanValidationError,
)
from .job_store import JobInputs, JobStatus, JobStore, VideoJob
from .plan_validation import ValidationContext, validate_plan
from .planner import TextModelPlanner
from .providers import (
    AssetCatalog,
    FixtureImageSynthesizer,
    FixtureVideoSynthesizer,
    HttpImageSynthesizer,
    HttpTextModel,
    HttpVideoSynthesizer,
    ImageSynthesizer,
    ObjectStore,
    Planner,
    UnconfiguredService,
    VideoSynthesizer,
)
from .ratelimit import Clock, SlidingWindowRateLimiter, SystemClock
from .retry import RetryPolicy
from .schemas import PlannerInput
from .storage import FilesystemObjectStore, fetch_bytes

LOG = logging.getLogger(__name__)

STEP_PLANNING = "planning"
STEP_ASSEMBLING = JobStatus.ASSEMBLING.value


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    status: str
    planning_completed: bool
    composites_done: int
    composites_total: int
    calls_done: int
    calls_total: int
    can_generate_video: bool
    can_assemble: bool
    required_composites: List[str]
    error: Optional[str] = None
    error_step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class JobOrchestrator:
    def __init__(
        self,
        store: JobStore,
        catalog: AssetCatalog,
        planner: Planner,
        composites: CompositeStage,
        dispatcher: SynthesisDispatcher,
        assembler: ClipAssembler,
        clip_index: ClipIndex,
        object_store: ObjectStore,
        *,
        composite_reuse_warn: int = 2,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.planner = planner
        self.composites = composites
        self.dispatcher = dispatcher
        self.assembler = assembler
        self.clip_index = clip_index
        self.object_store = object_store
        self.composite_reuse_warn = composite_reuse_warn
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------- public API
    def create_job(self, inputs: Union[JobInputs, Mapping[str, Any]]) -> str:
        job = self.store.create(inputs)
        telemetry.emit_event("job.created", {"job_id": job.id, "status": job.status.value})
        return job.id

    def advance(self, job_id: str) -> VideoJob:
        """Run every stage that can run now; safe to call repeatedly.

        A concurrent call for the same job returns the current record
        immediately instead of running stages twice.
        """
        lock = self._job_lock(job_id)
        if not lock.acquire(blocking=False):
            LOG.info("Job %s is already advancing", job_id)
            return self.store.get(job_id)
        try:
            return self._advance(job_id)
        finally:
            lock.release()

    def get_progress(self, job_id: str) -> JobProgress:
        job = self.store.get(job_id)
        plan = job.plan
        done_composites = set(job.completed_composite_ids)
        calls_total = len(plan.synthesis_calls) if plan else 0
        done_calls = set(job.completed_synthesis_call_ids)
        calls_done = sum(1 for call_id in plan.call_ids if call_id in done_calls) if plan else 0
        required = required_composite_image_ids(job, plan.synthesis_calls) if plan else []
        return JobProgress(
            job_id=job.id,
            status=job.status.value,
            planning_completed=plan is not None,
            composites_done=sum(1 for image_id in job.composite_image_ids if image_id in done_composites),
            composites_total=len(plan.image_composite_tasks) if plan else 0,
            calls_done=calls_done,
            calls_total=calls_total,
            can_generate_video=plan is not None and all(i and i in done_composites for i in required),
            can_assemble=calls_total > 0 and calls_done == calls_total,
            required_composites=required,
            error=job.error,
            error_step=job.error_step,
        )

    def generate_one(self, job_id: str, item_id: str) -> str:
        """Generate (or regenerate) one composite or one synthesis call."""
        job = self.store.get(job_id)
        if job.plan is None:
            raise ItemNotFoundError(job_id, item_id)
        job = self.composites.ensure_images(job)
        if item_id in job.composite_image_ids:
            return self.composites.generate_one(job_id, item_id)
        index = job.plan.composite_index(item_id)
        if index is not None and index < len(job.composite_image_ids):
            return self.composites.generate_one(job_id, job.composite_image_ids[index])
        if job.plan.find_call(item_id) is not None:
            return self.dispatcher.generate_one(job_id, item_id)
        raise ItemNotFoundError(job_id, item_id)

    def delete_one(self, job_id: str, item: str) -> None:
        """Remove one generated asset so it can be regenerated.

        `item` is a composite image id (or plan composite id) or a produced
        clip URL. Composite image rows stay in place with an empty image so
        ``composite_image_ids`` keeps its alignment with the plan.
        """
        job = self.store.get(job_id)
        image_id = item
        if item not in job.composite_image_ids and job.plan is not None:
            index = job.plan.composite_index(item)
            if index is not None and index < len(job.composite_image_ids):
                image_id = job.composite_image_ids[index]
        if image_id in job.composite_image_ids:
            image = self.store.get_composite_image(image_id)
            if image.image_url:
                self.object_store.delete(image.image_url)
            self.store.set_composite_image_url(image_id, "")
            self.store.remove_completed_composite(job_id, image_id)
            telemetry.emit_event("item.deleted", {"job_id": job_id, "image_id": image_id})
            return
        removed = self.store.remove_produced_clip(job_id, url=item)
        if removed is None:
            raise ItemNotFoundError(job_id, item)
        self.object_store.delete(removed.url)
        telemetry.emit_event("item.deleted", {"job_id": job_id, "call_id": removed.call_id})

    def planner_input_for(self, job: VideoJob) -> PlannerInput:
        return PlannerInput(
            product=self.catalog.get_product(job.product_id),
            avatar=self.catalog.get_avatar(job.avatar_id),
            demos=self.catalog.get_demos(job.demo_ids),
            existing_clips=[c.as_existing_clip_ref() for c in self.clip_index.list_for_product(job.product_id)],
            tone=job.tone or "energetic",
            target_duration=job.target_duration or 16,
        )

    # ----------------------------------------------------------------- stages
    def _advance(self, job_id: str) -> VideoJob:
        job = self.store.get(job_id)
        if job.status == JobStatus.COMPLETED:
            return job
        step = STEP_PLANNING
        try:
            if job.plan is None:
                job = self._run_planning(job)
            step = JobStatus.GENERATING_COMPOSITES.value
            job = self._run_composites(job)
            step = JobStatus.GENERATING_VIDEO.value
            job = self._run_video(job)
            step = STEP_ASSEMBLING
            job = self._run_assembly(job)
        except GenerationError as exc:
            # stage stays where it is; completed items remain recorded
            LOG.warning("Job %s stalled in %s: %s", job_id, exc.stage, exc)
            job = self.store.record_failure(job_id, str(exc), exc.stage)
            telemetry.emit_event("job.stalled", {"job_id": job_id, "stage": exc.stage})
        except (PlanningError, PlanValidationError) as exc:
            job = self._fail(job_id, exc, STEP_PLANNING)
        except DependencyTimeoutError as exc:
            job = self._fail(job_id, exc, JobStatus.GENERATING_VIDEO.value)
        except AssemblyError as exc:
            job = self._fail(job_id, exc, STEP_ASSEMBLING)
        except Exception as exc:
            LOG.exception("Job %s: unexpected error in %s", job_id, step)
            job = self._fail(job_id, exc, step)
        return job

    def _run_planning(self, job: VideoJob) -> VideoJob:
        self._transition(job.id, JobStatus.PLANNING)
        try:
            planner_input = self.planner_input_for(job)
        except KeyError as exc:
            raise PlanningError(f"Cannot build planner input: {exc}") from exc
        try:
            raw = self.planner.plan(planner_input)
        except PlanningError:
            raise
        except Exception as exc:
            raise PlanningError(f"Planner failed: {exc}") from exc
        context = ValidationContext.from_planner_input(planner_input, composite_reuse_warn=self.composite_reuse_warn)
        result = validate_plan(raw, context)
        for warning in result.warnings:
            LOG.warning("Job %s plan warning: %s", job.id, warning)
        plan = result.raise_for_errors()
        job = self.store.set_plan(job.id, plan, status=JobStatus.PLANNING_COMPLETED)
        telemetry.emit_event("job.status", {"job_id": job.id, "status": JobStatus.PLANNING_COMPLETED.value})
        return self.composites.ensure_images(job)

    def _run_composites(self, job: VideoJob) -> VideoJob:
        job = self.composites.ensure_images(job)
        if not job.pending_composite_image_ids():
            return job
        self._transition(job.id, JobStatus.GENERATING_COMPOSITES)
        report = self.composites.run(job.id)
        if not report.failed:
            return self.store.clear_error(job.id)
        job = self.store.get(job.id)
        assert job.plan is not None
        needed = set(required_composite_image_ids(job, job.plan.synthesis_calls))
        if needed.intersection(report.failed):
            report.raise_for_failures()
        # no synthesis call uses the failed composites
        LOG.warning("Job %s: %s", job.id, report.summary())
        return job

    def _run_video(self, job: VideoJob) -> VideoJob:
        if job.pending_call_ids():
            self._transition(job.id, JobStatus.GENERATING_VIDEO)
            report = self.dispatcher.dispatch(job.id)
            report.raise_for_failures()
            job = self.store.clear_error(job.id)
        if job.pending_call_ids():
            raise GenerationError(
                f"Synthesis calls still pending: {', '.join(job.pending_call_ids())}",
                stage=JobStatus.GENERATING_VIDEO.value,
                item_ids=job.pending_call_ids(),
            )
        if job.status != JobStatus.VEO_CLIPS_COMPLETED:
            self._transition(job.id, JobStatus.VEO_CLIPS_COMPLETED)
        return self.store.get(job.id)

    def _run_assembly(self, job: VideoJob) -> VideoJob:
        assert job.plan is not None
        self._transition(job.id, JobStatus.ASSEMBLING)
        resolver = self._resolver_for(job)
        assembled = self.assembler.assemble(job, job.plan, resolver)
        try:
            self.clip_index.index_job_clips(job, job.plan)
        except sqlite3.Error:
            LOG.warning("Job %s: clip indexing failed", job.id, exc_info=True)
        job = self.store.set_final(job.id, assembled.url, assembled.duration_s)
        telemetry.emit_event(
            "job.status",
            {"job_id": job.id, "status": JobStatus.COMPLETED.value, "final_duration_seconds": assembled.duration_s},
        )
        return job

    def _resolver_for(self, job: VideoJob) -> ClipResolver:
        assert job.plan is not None
        indexed = []
        for clip_id in {c.existing_clip_id for c in job.plan.output_clips if c.existing_clip_id}:
            found = self.clip_index.get(clip_id)
            if found is not None:
                indexed.append(found)
        return ClipResolver.for_job(job, demos=self.catalog.get_demos(job.demo_ids), indexed_clips=indexed)

    # -------------------------------------------------------------- internals
    def _transition(self, job_id: str, status: JobStatus) -> VideoJob:
        job = self.store.set_status(job_id, status)
        telemetry.emit_event("job.status", {"job_id": job_id, "status": status.value})
        return job

    def _fail(self, job_id: str, exc: Exception, step: str) -> VideoJob:
        LOG.error("Job %s failed at %s: %s", job_id, step, exc)
        telemetry.emit_event("job.status", {"job_id": job_id, "status": JobStatus.FAILED.value, "error_step": step})
        return self.store.record_failure(job_id, str(exc), step, status=JobStatus.FAILED)

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(job_id, threading.Lock())


def build_orchestrator(
    config: PipelineConfig,
    *,
    catalog: AssetCatalog,
    planner: Optional[Planner] = None,
    image_synthesizer: Optional[ImageSynthesizer] = None,
    video_synthesizer: Optional[VideoSynthesizer] = None,
    encoder: Optional[TimelineEncoder] = None,
    clock: Optional[Clock] = None,
) -> JobOrchestrator:
    """Wire the pipeline from configuration.

    Collaborators not passed explicitly are built from the configured HTTP
    endpoints, or from fixtures when fixture mode is enabled.
    """
    object_store = FilesystemObjectStore.from_config(config)
    store = JobStore(str(config.db_path))
    clip_index = ClipIndex(str(config.db_path))
    clock = clock or SystemClock()
    retry = RetryPolicy.from_config(config)
    http_opts = {"api_key": config.api_key}

    if planner is None:
        if config.planner_api_url:
            planner = TextModelPlanner(HttpTextModel(config.planner_api_url, model=config.planner_model, **http_opts))
        else:
            planner = UnconfiguredService("UGC_PLANNER_API_URL")
    if image_synthesizer is None:
        if config.use_fixture:
            image_synthesizer = FixtureImageSynthesizer(object_store)
        elif config.image_api_url:
            image_synthesizer = HttpImageSynthesizer(config.image_api_url, object_store, **http_opts)
        else:
            image_synthesizer = UnconfiguredService("UGC_IMAGE_API_URL")
    if video_synthesizer is None:
        if config.use_fixture:
            video_synthesizer = FixtureVideoSynthesizer(object_store)
        elif config.video_api_url:
            video_synthesizer = HttpVideoSynthesizer(config.video_api_url, object_store, **http_opts)
        else:
            video_synthesizer = UnconfiguredService("UGC_VIDEO_API_URL")
    if encoder is None:
        encoder = FixtureEncoder() if config.use_fixture else FFmpegEncoder(config.ffmpeg_path)

    composites = CompositeStage(store, catalog, image_synthesizer, retry=retry)
    dispatcher = SynthesisDispatcher(
        store,
        catalog,
        video_synthesizer,
        clock=clock,
        limiter=SlidingWindowRateLimiter(config.synthesis_max_per_minute, 60.0, clock=clock),
        spacing_s=config.synthesis_spacing_s,
        retry=retry,
        dependency_timeout_s=config.dependency_timeout_s,
        dependency_poll_s=config.dependency_poll_s,
    )
    assembler = ClipAssembler(
        object_store,
        encoder,
        partial(fetch_bytes, store=object_store),
        clip_index=clip_index,
    )
    return JobOrchestrator(
        store,
        catalog,
        planner,
        composites,
        dispatcher,
        assembler,
        clip_index,
        object_store,
        composite_reuse_warn=config.composite_reuse_warn,
    )


__all__ = ["JobProgress", "JobOrchestrator", "build_orchestrator"]
