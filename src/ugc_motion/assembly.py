"""Cut-list assembly: slice produced clips and concatenate them with hard cuts."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

from typing_extensions import Protocol

from . import telemetry
from .clip_index import ClipIndex, IndexedClip
from .errors import AssemblyError
from .fixture_clips import FixtureClip
from .job_store import VideoJob
from .providers import ObjectStore
from .schemas import NOMINAL_CLIP_SECONDS, DemoRef, OutputClip, Plan

LOG = logging.getLogger(__name__)

ClipKind = Literal["synthesis", "demo", "indexed"]

_DURATION_TOLERANCE = 1e-6
FINAL_MIME_TYPE = "video/mp4"


@dataclass(frozen=True)
class ClipSource:
    kind: ClipKind
    source_id: str
    url: str
    duration_s: Optional[float] = None


@dataclass(frozen=True)
class TimelineEntry:
    order: int
    source: ClipSource
    start_s: float
    end_s: float

    @property
    def duration_s(self) -> float:
        return self.end_s - self.start_s


@dataclass(frozen=True)
class Timeline:
    entries: Tuple[TimelineEntry, ...]

    @property
    def duration_s(self) -> float:
        return sum(entry.duration_s for entry in self.entries)

    def sources(self) -> List[ClipSource]:
        seen: Dict[str, ClipSource] = {}
        for entry in self.entries:
            seen.setdefault(entry.source.url, entry.source)
        return list(seen.values())


@dataclass(frozen=True)
class AssembledVideo:
    url: str
    duration_s: float
    timeline: Timeline


class ClipResolver:
    """Maps cut-list references to concrete clip sources."""

    def __init__(self, sources: Iterable[ClipSource] = ()) -> None:
        self._sources: Dict[Tuple[str, str], ClipSource] = {}
        for source in sources:
            self.add(source)

    def add(self, source: ClipSource) -> None:
        self._sources[(source.kind, source.source_id)] = source

    @classmethod
    def for_job(
        cls,
        job: VideoJob,
        *,
        demos: Iterable[DemoRef] = (),
        indexed_clips: Iterable[IndexedClip] = (),
    ) -> ClipResolver:
        resolver = cls(
            ClipSource("synthesis", clip.call_id, clip.url, float(NOMINAL_CLIP_SECONDS)) for clip in job.produced_clips
        )
        for demo in demos:
            if demo.video_url:
                resolver.add(ClipSource("demo", demo.id, demo.video_url, demo.duration))
        for indexed in indexed_clips:
            resolver.add(ClipSource("indexed", indexed.id, indexed.file_url, float(NOMINAL_CLIP_SECONDS)))
        return resolver

    def resolve(self, clip: OutputClip) -> ClipSource:
        refs = clip.source_refs()
        if len(refs) != 1:
            raise AssemblyError(
                f"Output clip at order {clip.order} must name exactly one source",
                details={"order": clip.order, "sources": refs},
            )
        ((kind, ref),) = refs.items()
        source = self._sources.get((kind, ref))
        if source is None:
            raise AssemblyError(
                f"Cannot resolve {kind} source {ref} for output clip at order {clip.order}",
                details={"order": clip.order, "kind": kind, "ref": ref},
            )
        return source


def assemble_timeline(plan: Plan, resolver: ClipResolver) -> Timeline:
    """Resolve the cut list in order and re-check its total duration."""
    entries: List[TimelineEntry] = []
    for clip in plan.ordered_clips():
        source = resolver.resolve(clip)
        if clip.start_time < 0 or clip.end_time <= clip.start_time:
            raise AssemblyError(f"Output clip at order {clip.order} has an empty range")
        if source.duration_s is not None and clip.end_time > source.duration_s + _DURATION_TOLERANCE:
            raise AssemblyError(
                f"Output clip at order {clip.order} ends at {clip.end_time:g}s but source "
                f"{source.source_id} is {source.duration_s:g}s long",
                details={"order": clip.order, "source_id": source.source_id},
            )
        entries.append(TimelineEntry(clip.order, source, clip.start_time, clip.end_time))
    timeline = Timeline(entries=tuple(entries))
    if abs(timeline.duration_s - plan.total_duration_seconds) > _DURATION_TOLERANCE:
        raise AssemblyError(
            f"Cut list totals {timeline.duration_s:g}s, expected {plan.total_duration_seconds}s",
            details={"duration_s": timeline.duration_s},
        )
    return timeline


# ------------------------------------------------------------------- encoders
class TimelineEncoder(Protocol):
    def encode(self, timeline: Timeline, payloads: Mapping[str, bytes]) -> bytes:
        ...


class FixtureEncoder:
    """Slices and joins fixture clips frame-exactly; no external tools."""

    def encode(self, timeline: Timeline, payloads: Mapping[str, bytes]) -> bytes:
        pieces = []
        for entry in timeline.entries:
            try:
                clip = FixtureClip.from_bytes(payloads[entry.source.url])
                pieces.append(clip.slice(entry.start_s, entry.end_s))
            except ValueError as exc:
                raise AssemblyError(
                    f"Cannot extract [{entry.start_s:g}, {entry.end_s:g}) from {entry.source.source_id}: {exc}"
                ) from exc
        return FixtureClip.concat(pieces).to_bytes()


@dataclass(frozen=True)
class SubprocessResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_s: float
    attempts: int


class CommandError(RuntimeError):
    def __init__(self, message: str, *, stdout: str, stderr: str, exit_code: int, attempts: int) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.attempts = attempts


class CommandTimeoutError(CommandError):
    pass


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    timeout_s: Optional[float] = 600.0,
    retries: int = 0,
    sleep_between_retries_s: float = 0.2,
) -> SubprocessResult:
    attempts = 0
    last_error: Optional[CommandError] = None
    while attempts <= retries:
        attempts += 1
        start = time.monotonic()
        proc = subprocess.Popen(  # noqa: S603
            list(cmd),
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            _terminate_process(proc)
            stdout, stderr = proc.communicate()
            last_error = CommandTimeoutError(
                f"Command timed out after {timeout_s}s",
                stdout=stdout,
                stderr=stderr,
                exit_code=proc.returncode if proc.returncode is not None else -9,
                attempts=attempts,
            )
        else:
            duration = time.monotonic() - start
            if proc.returncode == 0:
                return SubprocessResult(exit_code=0, stdout=stdout, stderr=stderr, duration_s=duration, attempts=attempts)
            last_error = CommandError(
                f"Command exited with {proc.returncode}",
                stdout=stdout,
                stderr=stderr,
                exit_code=proc.returncode or -1,
                attempts=attempts,
            )
        if attempts <= retries:
            time.sleep(sleep_between_retries_s)
    assert last_error is not None
    raise last_error


def _terminate_process(proc: subprocess.Popen) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            return
        except ProcessLookupError:
            return
    proc.kill()


def build_filter_graph(timeline: Timeline, input_index: Mapping[str, int], *, audio: bool) -> str:
    """Trim each entry from its input and concatenate with hard cuts."""
    parts: List[str] = []
    labels: List[str] = []
    for n, entry in enumerate(timeline.entries):
        idx = input_index[entry.source.url]
        parts.append(
            f"[{idx}:v]trim=start={entry.start_s:g}:end={entry.end_s:g},setpts=PTS-STARTPTS[v{n}]"
        )
        labels.append(f"[v{n}]")
        if audio:
            parts.append(
                f"[{idx}:a]atrim=start={entry.start_s:g}:end={entry.end_s:g},asetpts=PTS-STARTPTS[a{n}]"
            )
            labels.append(f"[a{n}]")
    outputs = "[outv][outa]" if audio else "[outv]"
    parts.append(f"{''.join(labels)}concat=n={len(timeline.entries)}:v=1:a={1 if audio else 0}{outputs}")
    return ";".join(parts)


class FFmpegEncoder:
    """Renders a timeline with one ffmpeg invocation (trim + concat filter)."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        *,
        audio: bool = True,
        timeout_s: float = 600.0,
        retries: int = 1,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.audio = audio
        self.timeout_s = timeout_s
        self.retries = retries

    def build_command(self, timeline: Timeline, inputs: Sequence[Path], input_index: Mapping[str, int], target: Path) -> List[str]:
        cmd: List[str] = [self.ffmpeg_path, "-hide_banner", "-y"]
        for path in inputs:
            cmd += ["-i", str(path)]
        cmd += ["-filter_complex", build_filter_graph(timeline, input_index, audio=self.audio), "-map", "[outv]"]
        if self.audio:
            cmd += ["-map", "[outa]", "-c:a", "aac"]
        cmd += ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-movflags", "+faststart", str(target)]
        return cmd

    def encode(self, timeline: Timeline, payloads: Mapping[str, bytes]) -> bytes:
        with tempfile.TemporaryDirectory(prefix="ugc_assemble_") as tmp:
            tmp_dir = Path(tmp)
            inputs: List[Path] = []
            input_index: Dict[str, int] = {}
            for source in timeline.sources():
                path = tmp_dir / f"input_{len(inputs)}.mp4"
                path.write_bytes(payloads[source.url])
                input_index[source.url] = len(inputs)
                inputs.append(path)
            target = tmp_dir / "final.mp4"
            cmd = self.build_command(timeline, inputs, input_index, target)
            try:
                run_command(cmd, cwd=tmp_dir, timeout_s=self.timeout_s, retries=self.retries)
            except (CommandError, OSError) as exc:
                stderr = getattr(exc, "stderr", "") or ""
                raise AssemblyError(f"ffmpeg failed: {exc}", details={"stderr": stderr[-2000:]}) from exc
            return target.read_bytes()


# ------------------------------------------------------------------ assembler
def final_video_key(user_id: str, job_id: str) -> str:
    return f"videos/{user_id}/{job_id}/final.mp4"


class ClipAssembler:
    def __init__(
        self,
        store: ObjectStore,
        encoder: TimelineEncoder,
        fetch: Callable[[str], bytes],
        *,
        clip_index: Optional[ClipIndex] = None,
    ) -> None:
        self.store = store
        self.encoder = encoder
        self.fetch = fetch
        self.clip_index = clip_index

    def assemble(self, job: VideoJob, plan: Plan, resolver: ClipResolver) -> AssembledVideo:
        timeline = assemble_timeline(plan, resolver)
        payloads: Dict[str, bytes] = {}
        for source in timeline.sources():
            try:
                payloads[source.url] = self.fetch(source.url)
            except Exception as exc:
                raise AssemblyError(
                    f"Cannot load {source.kind} source {source.source_id}: {exc}",
                    details={"url": source.url},
                ) from exc
        try:
            data = self.encoder.encode(timeline, payloads)
        except AssemblyError:
            raise
        except Exception as exc:
            raise AssemblyError(f"Encoding failed for job {job.id}: {exc}") from exc
        key = final_video_key(job.user_id, job.id)
        try:
            url = self.store.store(data, key, FINAL_MIME_TYPE)
        except Exception as exc:
            raise AssemblyError(f"Cannot store final video {key}: {exc}", details={"key": key}) from exc
        if self.clip_index is not None:
            for source in timeline.sources():
                if source.kind != "indexed":
                    continue
                try:
                    self.clip_index.mark_used(source.source_id)
                except KeyError:
                    LOG.warning("Job %s: indexed clip %s vanished before its use was counted", job.id, source.source_id)
        telemetry.emit_event(
            "assembly.completed",
            {"job_id": job.id, "duration_s": timeline.duration_s, "entries": len(timeline.entries)},
        )
        LOG.info("Job %s assembled %.1fs from %d cut(s)", job.id, timeline.duration_s, len(timeline.entries))
        return AssembledVideo(url=url, duration_s=timeline.duration_s, timeline=timeline)


__all__ = [
    "ClipSource",
    "TimelineEntry",
    "Timeline",
    "AssembledVideo",
    "ClipResolver",
    "assemble_timeline",
    "TimelineEncoder",
    "FixtureEncoder",
    "FFmpegEncoder",
    "build_filter_graph",
    "run_command",
    "CommandError",
    "CommandTimeoutError",
    "ClipAssembler",
    "final_video_key",
]
