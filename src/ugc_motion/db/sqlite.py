from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Optional

PIPELINE_DDL = """
CREATE TABLE IF NOT EXISTS video_jobs (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  avatar_id TEXT NOT NULL,
  demo_ids TEXT NOT NULL DEFAULT '[]',
  tone TEXT,
  target_duration INTEGER,
  status TEXT NOT NULL,
  plan_json TEXT,
  composite_image_ids TEXT NOT NULL DEFAULT '[]',
  completed_composite_ids TEXT NOT NULL DEFAULT '[]',
  produced_clips TEXT NOT NULL DEFAULT '[]',
  final_video_url TEXT,
  final_duration_seconds REAL,
  error TEXT,
  error_step TEXT,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_video_jobs_user ON video_jobs(user_id);

CREATE TABLE IF NOT EXISTS composite_images (
  id TEXT PRIMARY KEY,
  job_id TEXT NOT NULL,
  composite_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  avatar_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  prompt TEXT NOT NULL,
  image_url TEXT NOT NULL DEFAULT '',
  created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_composite_images_job ON composite_images(job_id);

CREATE TABLE IF NOT EXISTS indexed_clips (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  avatar_id TEXT,
  product_id TEXT NOT NULL,
  type TEXT NOT NULL,
  duration REAL NOT NULL,
  description TEXT NOT NULL,
  script TEXT,
  source_prompt TEXT NOT NULL,
  audio_mood TEXT,
  file_url TEXT NOT NULL,
  thumbnail_url TEXT,
  usage_count INTEGER NOT NULL DEFAULT 0,
  last_used_at REAL,
  created_at REAL NOT NULL,
  source_key TEXT UNIQUE
);
CREATE INDEX IF NOT EXISTS ix_indexed_clips_product ON indexed_clips(product_id, usage_count DESC);
"""


def get_conn(path: Optional[str | os.PathLike[str]] = None) -> sqlite3.Connection:
    """Return a sqlite3.Connection for the given path.

    If `path` is None the function will consult the `UGC_DB_PATH`
    environment variable and fall back to `./artifacts/ugc_motion.db`.
    The special path ``:memory:`` opens a private in-memory database.
    The caller is responsible for calling `ensure_schema` once.
    """
    if path is None:
        path = os.environ.get("UGC_DB_PATH", "./artifacts/ugc_motion.db")
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    # shared across worker threads; writers serialise on the store lock
    conn = sqlite3.connect(target, timeout=5.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def ensure_schema(conn: sqlite3.Connection, ddl: Optional[str] = None) -> None:
    """Ensure the DB schema exists (defaults to the pipeline tables)."""
    conn.executescript(ddl if ddl is not None else PIPELINE_DDL)
    conn.commit()
