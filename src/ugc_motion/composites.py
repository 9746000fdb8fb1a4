"""Composite image generation stage.

Each composite task of a plan becomes one stored image. Tasks are
independent and run concurrently; a task that exhausts its retries fails on
its own and leaves its siblings' results recorded.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from . import telemetry
from .errors import GenerationError, PipelineError
from .job_store import CompositeImage, JobStore, VideoJob
from .providers import AssetCatalog, ImageSynthesizer
from .retry import RetryPolicy
from .schemas import ImageCompositeTask, parse_image_ref

LOG = logging.getLogger(__name__)

STAGE = "generating_composites"


@dataclass
class StageReport:
    """Outcome of one stage run: ids that succeeded and ids that failed."""

    stage: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        parts = [f"{item}: {message}" for item, message in self.failed.items()]
        return f"{len(self.failed)} item(s) failed in {self.stage}: " + "; ".join(parts)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise GenerationError(self.summary(), stage=self.stage, item_ids=list(self.failed))


class CompositeStage:
    def __init__(
        self,
        store: JobStore,
        catalog: AssetCatalog,
        synthesizer: ImageSynthesizer,
        *,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.synthesizer = synthesizer
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    def ensure_images(self, job: VideoJob) -> VideoJob:
        """Create one empty composite image row per plan task (positionally aligned)."""
        if job.plan is None or job.composite_image_ids:
            return job
        rows = [
            self.store.create_composite_image(job, task.composite_id, task.prompt)
            for task in job.plan.image_composite_tasks
        ]
        if not rows:
            return job
        return self.store.set_composite_image_ids(job.id, [row.id for row in rows])

    def pending(self, job: VideoJob) -> List[Tuple[str, ImageCompositeTask]]:
        if job.plan is None:
            return []
        done = set(job.completed_composite_ids)
        return [
            (image_id, task)
            for image_id, task in zip(job.composite_image_ids, job.plan.image_composite_tasks)
            if image_id not in done
        ]

    def run(self, job_id: str, only: Optional[Iterable[str]] = None) -> StageReport:
        job = self.ensure_images(self.store.get(job_id))
        report = StageReport(stage=STAGE)
        wanted = set(only) if only is not None else None
        todo = [(i, t) for i, t in self.pending(job) if wanted is None or i in wanted]
        report.skipped = [i for i in job.composite_image_ids if i in job.completed_composite_ids]
        if not todo:
            return report

        LOG.info("Job %s: generating %d composite(s)", job_id, len(todo))
        with ThreadPoolExecutor(max_workers=len(todo), thread_name_prefix="composite") as pool:
            futures = {image_id: pool.submit(self._generate, job, image_id, task) for image_id, task in todo}
            for image_id, future in futures.items():
                try:
                    future.result()
                except PipelineError as exc:
                    report.failed[image_id] = str(exc)
                else:
                    report.succeeded.append(image_id)
        return report

    def generate_one(self, job_id: str, image_id: str) -> str:
        """Regenerate a single composite, replacing any earlier image."""
        job = self.ensure_images(self.store.get(job_id))
        if job.plan is None:
            raise GenerationError(f"Job {job_id} has no plan yet", stage=STAGE, item_ids=[image_id])
        for candidate, task in zip(job.composite_image_ids, job.plan.image_composite_tasks):
            if candidate == image_id:
                return self._generate(job, image_id, task)
        raise GenerationError(f"Unknown composite image {image_id} for job {job_id}", stage=STAGE, item_ids=[image_id])

    def _source_urls(self, job: VideoJob, task: ImageCompositeTask) -> Tuple[str, List[str]]:
        avatar = self.catalog.get_avatar(job.avatar_id)
        product = self.catalog.get_product(job.product_id)
        urls = []
        for ref in task.product_sources:
            index = parse_image_ref(ref)
            if index is None or not 0 <= index < len(product.images):
                raise ValueError(f"product image reference {ref} is out of range")
            urls.append(product.images[index])
        return avatar.image_url, urls

    def _generate(self, job: VideoJob, image_id: str, task: ImageCompositeTask) -> str:
        def _on_retry(attempt: int, exc: Exception) -> None:
            LOG.warning("Composite %s attempt %d failed: %s", task.composite_id, attempt, exc)

        try:
            avatar_url, product_urls = self._source_urls(job, task)
            url = self.retry.call(
                lambda: self.synthesizer.composite(avatar_url, product_urls, task.prompt),
                sleep=self._sleep,
                on_retry=_on_retry,
            )
        except Exception as exc:
            LOG.error("Composite %s for job %s failed: %s", task.composite_id, job.id, exc)
            telemetry.emit_event(
                "composite.failed", {"job_id": job.id, "image_id": image_id, "composite_id": task.composite_id}
            )
            if isinstance(exc, GenerationError):
                raise
            raise GenerationError(
                f"Composite {task.composite_id} failed: {exc}", stage=STAGE, item_ids=[image_id]
            ) from exc

        image: CompositeImage = self.store.set_composite_image_url(image_id, url)
        self.store.append_completed_composite(job.id, image.id)
        telemetry.emit_event(
            "composite.completed", {"job_id": job.id, "image_id": image_id, "composite_id": task.composite_id}
        )
        return url


__all__ = ["STAGE", "StageReport", "CompositeStage"]
