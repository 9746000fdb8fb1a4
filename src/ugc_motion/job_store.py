"""SQLite-backed store for video jobs and their resumability checkpoints.

Every write is one read-modify-write transaction executed under a process
lock. Writers notify a condition variable so in-process waiters (the
synthesis dispatcher waiting on composites) wake without polling; waiters
still re-read the row at a fixed interval so writes from other processes
are observed too.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .db.sqlite import ensure_schema, get_conn
from .errors import JobNotFoundError, StorageError
from .schemas import Plan

LOG = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    PLANNING_COMPLETED = "planning_completed"
    GENERATING_COMPOSITES = "generating_composites"
    GENERATING_VIDEO = "generating_video"
    VEO_CLIPS_COMPLETED = "veo_clips_completed"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobInputs(BaseModel):
    """Target inputs for a new job."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    avatar_id: str = Field(..., min_length=1)
    demo_ids: List[str] = Field(default_factory=list)
    tone: str = "energetic"
    target_duration: int = 16


class ProducedClip(BaseModel):
    model_config = ConfigDict(frozen=True)

    call_id: str
    url: str


class CompositeImage(BaseModel):
    id: str
    job_id: str
    composite_id: str
    user_id: str
    avatar_id: str
    product_id: str
    prompt: str
    image_url: str = ""
    created_at: float

    @property
    def ready(self) -> bool:
        return bool(self.image_url)


class VideoJob(BaseModel):
    id: str
    user_id: str
    product_id: str
    avatar_id: str
    demo_ids: List[str] = Field(default_factory=list)
    tone: Optional[str] = None
    target_duration: Optional[int] = None
    status: JobStatus = JobStatus.PENDING
    plan: Optional[Plan] = None
    composite_image_ids: List[str] = Field(default_factory=list)
    completed_composite_ids: List[str] = Field(default_factory=list)
    produced_clips: List[ProducedClip] = Field(default_factory=list)
    final_video_url: Optional[str] = None
    final_duration_seconds: Optional[float] = None
    error: Optional[str] = None
    error_step: Optional[str] = None
    created_at: float
    updated_at: float

    @computed_field  # type: ignore[misc]
    @property
    def produced_clip_urls(self) -> List[str]:
        return [clip.url for clip in self.produced_clips]

    @computed_field  # type: ignore[misc]
    @property
    def completed_synthesis_call_ids(self) -> List[str]:
        return [clip.call_id for clip in self.produced_clips]

    def clip_url_for(self, call_id: str) -> Optional[str]:
        for clip in self.produced_clips:
            if clip.call_id == call_id:
                return clip.url
        return None

    def pending_call_ids(self) -> List[str]:
        if self.plan is None:
            return []
        done = set(self.completed_synthesis_call_ids)
        return [call_id for call_id in self.plan.call_ids if call_id not in done]

    def pending_composite_image_ids(self) -> List[str]:
        done = set(self.completed_composite_ids)
        return [image_id for image_id in self.composite_image_ids if image_id not in done]


_JSON_COLUMNS = ("demo_ids", "composite_image_ids", "completed_composite_ids", "produced_clips")

Mutation = Callable[[VideoJob], Optional[Dict[str, Any]]]


class JobStore:
    """Durable job records with atomic append/remove on checkpoint arrays."""

    def __init__(self, db_path: Optional[str] = None, *, conn: Optional[sqlite3.Connection] = None) -> None:
        self._conn = conn if conn is not None else get_conn(db_path)
        ensure_schema(self._conn)
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)

    # ------------------------------------------------------------------ reads
    def get(self, job_id: str) -> VideoJob:
        with self._lock:
            row = self._conn.execute("SELECT * FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    def exists(self, job_id: str) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
        return row is not None

    def list_jobs(self, *, user_id: Optional[str] = None, limit: int = 50) -> List[VideoJob]:
        query = "SELECT * FROM video_jobs"
        params: List[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    # ----------------------------------------------------------------- create
    def create(self, inputs: Union[JobInputs, Mapping[str, Any]], *, job_id: Optional[str] = None) -> VideoJob:
        data = inputs if isinstance(inputs, JobInputs) else JobInputs.model_validate(inputs)
        job_id = job_id or uuid.uuid4().hex
        now = time.time()
        with self._changed:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO video_jobs (
                            id, user_id, product_id, avatar_id, demo_ids, tone,
                            target_duration, status, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            job_id,
                            data.user_id,
                            data.product_id,
                            data.avatar_id,
                            json.dumps(data.demo_ids),
                            data.tone,
                            data.target_duration,
                            JobStatus.PENDING.value,
                            now,
                            now,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                raise StorageError(f"Job already exists: {job_id}") from exc
            self._changed.notify_all()
        LOG.info("Created job %s for product %s", job_id, data.product_id)
        return self.get(job_id)

    # -------------------------------------------------------------- mutations
    def update(self, job_id: str, mutate: Mutation) -> VideoJob:
        """Apply `mutate` to the current record in one transaction.

        `mutate` receives the freshly read job and returns the column changes
        to write (or None for no change). It runs while the store lock is held
        so membership checks and the write cannot interleave with another
        writer in this process; ``BEGIN IMMEDIATE`` covers other processes.
        """
        with self._changed:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                row = self._conn.execute("SELECT * FROM video_jobs WHERE id = ?", (job_id,)).fetchone()
                if row is None:
                    raise JobNotFoundError(job_id)
                changes = mutate(_row_to_job(row))
                if changes:
                    self._write(job_id, changes)
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise
            if changes:
                self._changed.notify_all()
        return self.get(job_id)

    def set_status(self, job_id: str, status: JobStatus) -> VideoJob:
        return self.update(job_id, lambda job: None if job.status == status else {"status": status})

    def set_plan(
        self,
        job_id: str,
        plan: Plan,
        *,
        status: JobStatus = JobStatus.PLANNING_COMPLETED,
    ) -> VideoJob:
        return self.update(
            job_id,
            lambda job: {
                "plan": plan,
                "target_duration": plan.total_duration_seconds,
                "status": status,
                "error": None,
                "error_step": None,
            },
        )

    def record_failure(
        self,
        job_id: str,
        error: str,
        error_step: str,
        *,
        status: Optional[JobStatus] = None,
    ) -> VideoJob:
        def _apply(job: VideoJob) -> Dict[str, Any]:
            changes: Dict[str, Any] = {"error": error, "error_step": error_step}
            if status is not None:
                changes["status"] = status
            return changes

        return self.update(job_id, _apply)

    def clear_error(self, job_id: str) -> VideoJob:
        return self.update(job_id, lambda job: {"error": None, "error_step": None} if job.error else None)

    def set_final(self, job_id: str, url: str, duration_seconds: float) -> VideoJob:
        return self.update(
            job_id,
            lambda job: {
                "final_video_url": url,
                "final_duration_seconds": float(duration_seconds),
                "status": JobStatus.COMPLETED,
                "error": None,
                "error_step": None,
            },
        )

    def set_composite_image_ids(self, job_id: str, image_ids: List[str]) -> VideoJob:
        return self.update(job_id, lambda job: {"composite_image_ids": list(image_ids)})

    def append_completed_composite(self, job_id: str, image_id: str) -> VideoJob:
        def _apply(job: VideoJob) -> Optional[Dict[str, Any]]:
            if image_id in job.completed_composite_ids:
                return None
            return {"completed_composite_ids": job.completed_composite_ids + [image_id]}

        return self.update(job_id, _apply)

    def remove_completed_composite(self, job_id: str, image_id: str) -> VideoJob:
        def _apply(job: VideoJob) -> Optional[Dict[str, Any]]:
            if image_id not in job.completed_composite_ids:
                return None
            return {"completed_composite_ids": [i for i in job.completed_composite_ids if i != image_id]}

        return self.update(job_id, _apply)

    def append_produced_clip(self, job_id: str, call_id: str, url: str, *, replace: bool = False) -> VideoJob:
        """Record `url` as the clip for `call_id` unless one is already recorded.

        With ``replace=True`` an existing clip for the call is swapped in place.
        """

        def _apply(job: VideoJob) -> Optional[Dict[str, Any]]:
            existing = job.clip_url_for(call_id)
            if existing is not None and (not replace or existing == url):
                return None
            clips = [clip for clip in job.produced_clips if clip.call_id != call_id]
            clips.append(ProducedClip(call_id=call_id, url=url))
            return {"produced_clips": clips}

        return self.update(job_id, _apply)

    def remove_produced_clip(
        self,
        job_id: str,
        *,
        url: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> Optional[ProducedClip]:
        if url is None and call_id is None:
            raise ValueError("url or call_id is required")
        removed: List[ProducedClip] = []

        def _apply(job: VideoJob) -> Optional[Dict[str, Any]]:
            keep = []
            for clip in job.produced_clips:
                if clip.url == url or clip.call_id == call_id:
                    removed.append(clip)
                else:
                    keep.append(clip)
            return {"produced_clips": keep} if removed else None

        self.update(job_id, _apply)
        return removed[0] if removed else None

    # ------------------------------------------------------- composite images
    def create_composite_image(
        self,
        job: VideoJob,
        composite_id: str,
        prompt: str,
        *,
        image_url: str = "",
    ) -> CompositeImage:
        image_id = uuid.uuid4().hex
        with self._changed:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO composite_images (
                        id, job_id, composite_id, user_id, avatar_id, product_id,
                        prompt, image_url, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        image_id,
                        job.id,
                        composite_id,
                        job.user_id,
                        job.avatar_id,
                        job.product_id,
                        prompt,
                        image_url,
                        time.time(),
                    ),
                )
        return self.get_composite_image(image_id)

    def get_composite_image(self, image_id: str) -> CompositeImage:
        with self._lock:
            row = self._conn.execute("SELECT * FROM composite_images WHERE id = ?", (image_id,)).fetchone()
        if row is None:
            raise StorageError(f"Composite image not found: {image_id}", details={"image_id": image_id})
        return CompositeImage(**dict(row))

    def list_composite_images(self, job_id: str) -> List[CompositeImage]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM composite_images WHERE job_id = ? ORDER BY created_at ASC", (job_id,)
            ).fetchall()
        return [CompositeImage(**dict(row)) for row in rows]

    def set_composite_image_url(self, image_id: str, image_url: str) -> CompositeImage:
        with self._changed:
            with self._conn:
                cur = self._conn.execute(
                    "UPDATE composite_images SET image_url = ? WHERE id = ?", (image_url, image_id)
                )
            if cur.rowcount == 0:
                raise StorageError(f"Composite image not found: {image_id}", details={"image_id": image_id})
            self._changed.notify_all()
        return self.get_composite_image(image_id)

    # ---------------------------------------------------------------- waiting
    def wait_for(
        self,
        job_id: str,
        predicate: Callable[[VideoJob], bool],
        *,
        timeout_s: float,
        poll_interval_s: float = 5.0,
    ) -> Optional[VideoJob]:
        """Block until `predicate(job)` holds; return the job, or None on timeout."""
        deadline = time.monotonic() + timeout_s
        with self._changed:
            while True:
                job = self.get(job_id)
                if predicate(job):
                    return job
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._changed.wait(timeout=min(poll_interval_s, remaining))

    # -------------------------------------------------------------- internals
    def _write(self, job_id: str, changes: Mapping[str, Any]) -> None:
        columns = []
        values: List[Any] = []
        for key, value in changes.items():
            column, encoded = _encode_column(key, value)
            columns.append(f"{column} = ?")
            values.append(encoded)
        columns.append("updated_at = ?")
        values.append(time.time())
        values.append(job_id)
        self._conn.execute(f"UPDATE video_jobs SET {', '.join(columns)} WHERE id = ?", values)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _encode_column(key: str, value: Any) -> tuple:
    if key == "plan":
        return "plan_json", None if value is None else json.dumps(value.to_json_dict())
    if key == "status":
        return "status", JobStatus(value).value
    if key == "produced_clips":
        return key, json.dumps([clip.model_dump() for clip in value])
    if key in _JSON_COLUMNS:
        return key, json.dumps(list(value))
    return key, value


def _row_to_job(row: sqlite3.Row) -> VideoJob:
    data = dict(row)
    plan_json = data.pop("plan_json", None)
    for key in _JSON_COLUMNS:
        data[key] = json.loads(data[key] or "[]")
    data["plan"] = Plan.model_validate(json.loads(plan_json)) if plan_json else None
    return VideoJob.model_validate(data)


__all__ = [
    "JobStatus",
    "TERMINAL_STATUSES",
    "JobInputs",
    "ProducedClip",
    "CompositeImage",
    "VideoJob",
    "JobStore",
]
