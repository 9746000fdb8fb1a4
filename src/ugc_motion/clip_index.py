from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from typing import List, Optional

from pydantic import BaseModel

from .db.sqlite import ensure_schema, get_conn
from .job_store import VideoJob
from .schemas import ExistingClipRef, Plan

DEFAULT_LIST_LIMIT = 10
MOOD_VOCABULARY = ("upbeat", "calm", "energetic", "soft", "aesthetic", "dramatic", "peaceful")
REUSABLE_SEGMENT_TYPES = ("virtual_broll", "product_broll")
DEFAULT_THUMBNAIL_TEMPLATE = "https://placeholder.com/thumbnail-{product_id}.jpg"


class IndexedClip(BaseModel):
    id: str
    user_id: str
    avatar_id: Optional[str] = None
    product_id: str
    type: str
    duration: float
    description: str
    script: Optional[str] = None
    source_prompt: str
    audio_mood: Optional[str] = None
    file_url: str
    thumbnail_url: Optional[str] = None
    usage_count: int = 0
    last_used_at: Optional[float] = None
    created_at: float

    def as_existing_clip_ref(self) -> ExistingClipRef:
        return ExistingClipRef(id=self.id, description=self.description, duration=self.duration, type=self.type)


def derive_mood(prompt: str) -> Optional[str]:
    text = (prompt or "").lower()
    for mood in MOOD_VOCABULARY:
        if mood in text:
            return mood
    return None


class ClipIndex:
    """A small SQLite-backed index of generated B-roll clips for reuse.

    Entries are registered after a job is assembled and ranked by how often
    later plans reused them.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        conn: Optional[sqlite3.Connection] = None,
        thumbnail_template: str = DEFAULT_THUMBNAIL_TEMPLATE,
    ) -> None:
        self._conn = conn if conn is not None else get_conn(db_path)
        ensure_schema(self._conn)
        self._lock = threading.Lock()
        self.thumbnail_template = thumbnail_template

    def index_job_clips(self, job: VideoJob, plan: Plan) -> List[IndexedClip]:
        """Register the synthesized B-roll segments of a finished job.

        Segments that reused an existing clip are skipped. Registering the
        same job twice does not create duplicates.
        """
        now = time.time()
        added: List[IndexedClip] = []
        for segment in plan.segments:
            if segment.type not in REUSABLE_SEGMENT_TYPES or segment.existing_clip_id:
                continue
            if not segment.synthesis_call_id:
                continue
            url = job.clip_url_for(segment.synthesis_call_id)
            call = plan.find_call(segment.synthesis_call_id)
            if url is None or call is None:
                continue
            source_key = f"{job.id}:{call.call_id}:{segment.segment_index}"
            clip_id = uuid.uuid4().hex
            with self._lock, self._conn:
                cur = self._conn.execute(
                    """
                    INSERT OR IGNORE INTO indexed_clips (
                        id, user_id, avatar_id, product_id, type, duration, description,
                        script, source_prompt, audio_mood, file_url, thumbnail_url,
                        usage_count, last_used_at, created_at, source_key
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, NULL, ?, ?)
                    """,
                    (
                        clip_id,
                        job.user_id,
                        job.avatar_id,
                        job.product_id,
                        segment.type,
                        segment.duration,
                        segment.broll_prompt or "Product B-roll",
                        segment.script,
                        call.prompt,
                        derive_mood(call.prompt),
                        url,
                        self.thumbnail_template.format(product_id=job.product_id),
                        now,
                        source_key,
                    ),
                )
            if cur.rowcount:
                added.append(self._require(clip_id))
        return added

    def get(self, clip_id: str) -> Optional[IndexedClip]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM indexed_clips WHERE id = ?", (clip_id,)).fetchone()
        return None if row is None else _row_to_clip(row)

    def mark_used(self, clip_id: str) -> IndexedClip:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE indexed_clips SET usage_count = usage_count + 1, last_used_at = ? WHERE id = ?",
                (time.time(), clip_id),
            )
        if cur.rowcount == 0:
            raise KeyError(f"Unknown indexed clip: {clip_id}")
        return self._require(clip_id)

    def list_for_product(self, product_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[IndexedClip]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM indexed_clips WHERE product_id = ? ORDER BY usage_count DESC, created_at DESC LIMIT ?",
                (product_id, int(limit)),
            ).fetchall()
        return [_row_to_clip(row) for row in rows]

    def _require(self, clip_id: str) -> IndexedClip:
        clip = self.get(clip_id)
        if clip is None:
            raise KeyError(f"Unknown indexed clip: {clip_id}")
        return clip


def _row_to_clip(row: sqlite3.Row) -> IndexedClip:
    data = dict(row)
    data.pop("source_key", None)
    return IndexedClip.model_validate(data)


__all__ = ["MOOD_VOCABULARY", "IndexedClip", "ClipIndex", "derive_mood"]
