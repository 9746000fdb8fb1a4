from __future__ import annotations

from functools import partial
from pathlib import Path

import pytest

from conftest import plan_16s
from ugc_motion import telemetry
from ugc_motion.assembly import (
    ClipAssembler,
    ClipResolver,
    ClipSource,
    FFmpegEncoder,
    FixtureEncoder,
    Timeline,
    TimelineEntry,
    assemble_timeline,
    build_filter_graph,
    final_video_key,
)
from ugc_motion.errors import AssemblyError
from ugc_motion.fixture_clips import FixtureClip
from ugc_motion.job_store import JobStore, VideoJob
from ugc_motion.schemas import DemoRef, Plan
from ugc_motion.storage import FilesystemObjectStore, fetch_bytes


@pytest.fixture()
def produced(job_store: JobStore, object_store: FilesystemObjectStore) -> VideoJob:
    job = job_store.create({"user_id": "u1", "product_id": "p1", "avatar_id": "a1"})
    job = job_store.set_plan(job.id, Plan.model_validate(plan_16s()))
    for call_id, label in (("veo_a", "A"), ("veo_b", "B")):
        url = object_store.store(FixtureClip.generate(label, 8).to_bytes(), f"clips/{call_id}.json", "application/json")
        job_store.append_produced_clip(job.id, call_id, url)
    return job_store.get(job.id)


def _assembler(object_store: FilesystemObjectStore, **kwargs) -> ClipAssembler:
    return ClipAssembler(object_store, FixtureEncoder(), partial(fetch_bytes, store=object_store), **kwargs)


def test_cut_list_is_sliced_and_concatenated_in_order(produced: VideoJob, object_store: FilesystemObjectStore) -> None:
    resolver = ClipResolver.for_job(produced)

    result = _assembler(object_store).assemble(produced, produced.plan, resolver)

    assert result.duration_s == 16
    assert result.url == f"https://media.example.com/{final_video_key('u1', produced.id)}"
    final = FixtureClip.from_bytes(object_store.read(result.url))
    a = FixtureClip.generate("A", 8)
    b = FixtureClip.generate("B", 8)
    expected = a.slice(0, 4).frames + a.slice(4, 8).frames + b.slice(0, 8).frames
    assert final.frames == expected
    assert final.duration_s == 16
    assert [e.order for e in result.timeline.entries] == [0, 1, 2]
    assert len(telemetry.get_events("assembly.completed")) == 1


def test_timeline_follows_order_not_list_position(produced: VideoJob) -> None:
    raw = plan_16s()
    raw["clips"] = list(reversed(raw["clips"]))
    plan = Plan.model_validate(raw)
    timeline = assemble_timeline(plan, ClipResolver.for_job(produced))
    assert [(e.source.source_id, e.start_s, e.end_s) for e in timeline.entries] == [
        ("veo_a", 0, 4),
        ("veo_a", 4, 8),
        ("veo_b", 0, 8),
    ]
    assert [s.source_id for s in timeline.sources()] == ["veo_a", "veo_b"]


def test_unresolved_source_raises(produced: VideoJob, job_store: JobStore) -> None:
    job_store.remove_produced_clip(produced.id, call_id="veo_b")
    job = job_store.get(produced.id)
    with pytest.raises(AssemblyError) as info:
        assemble_timeline(job.plan, ClipResolver.for_job(job))
    assert info.value.details["ref"] == "veo_b"


def test_range_past_source_duration_raises() -> None:
    plan = Plan.model_validate(
        {
            "totalDurationSeconds": 16,
            "clips": [{"demoId": "d1", "startTime": 0, "endTime": 16, "order": 0}],
        }
    )
    resolver = ClipResolver([ClipSource("demo", "d1", "https://cdn/d1.mp4", 12.0)])
    with pytest.raises(AssemblyError):
        assemble_timeline(plan, resolver)


def test_demo_sources_come_from_catalog(produced: VideoJob) -> None:
    resolver = ClipResolver.for_job(
        produced,
        demos=[DemoRef(id="d1", video_url="https://cdn/d1.mp4", duration=20), DemoRef(id="d2")],
    )
    plan = Plan.model_validate(
        {
            "totalDurationSeconds": 16,
            "clips": [
                {"demoId": "d1", "startTime": 2, "endTime": 12, "order": 0},
                {"veoCallId": "veo_b", "startTime": 2, "endTime": 8, "order": 1},
            ],
        }
    )
    timeline = assemble_timeline(plan, resolver)
    assert timeline.duration_s == 16
    assert timeline.entries[0].source.kind == "demo"


def test_total_mismatch_raises(produced: VideoJob) -> None:
    raw = plan_16s()
    raw["clips"][2]["endTime"] = 6
    with pytest.raises(AssemblyError):
        assemble_timeline(Plan.model_validate(raw), ClipResolver.for_job(produced))


def test_missing_payload_is_an_assembly_error(produced: VideoJob, object_store: FilesystemObjectStore) -> None:
    object_store.delete(produced.clip_url_for("veo_a"))
    with pytest.raises(AssemblyError):
        _assembler(object_store).assemble(produced, produced.plan, ClipResolver.for_job(produced))


def test_filter_graph_trims_and_concatenates() -> None:
    a = ClipSource("synthesis", "veo_a", "https://m/a.mp4", 8.0)
    b = ClipSource("synthesis", "veo_b", "https://m/b.mp4", 8.0)
    timeline = Timeline(entries=(TimelineEntry(0, a, 0, 4), TimelineEntry(1, a, 4, 8), TimelineEntry(2, b, 0, 8)))
    graph = build_filter_graph(timeline, {a.url: 0, b.url: 1}, audio=False)
    assert graph == (
        "[0:v]trim=start=0:end=4,setpts=PTS-STARTPTS[v0];"
        "[0:v]trim=start=4:end=8,setpts=PTS-STARTPTS[v1];"
        "[1:v]trim=start=0:end=8,setpts=PTS-STARTPTS[v2];"
        "[v0][v1][v2]concat=n=3:v=1:a=0[outv]"
    )
    cmd = FFmpegEncoder("ffmpeg-bin", audio=True).build_command(
        timeline, [Path("in0.mp4"), Path("in1.mp4")], {a.url: 0, b.url: 1}, Path("out.mp4")
    )
    assert cmd[0] == "ffmpeg-bin"
    assert cmd.count("-i") == 2
    assert "[outa]" in cmd
    assert cmd[-1] == "out.mp4"


def test_ffmpeg_failure_becomes_assembly_error(tmp_path: Path) -> None:
    a = ClipSource("synthesis", "veo_a", "https://m/a.mp4", 8.0)
    timeline = Timeline(entries=(TimelineEntry(0, a, 0, 8),))
    encoder = FFmpegEncoder(str(tmp_path / "no-such-ffmpeg"), retries=0)
    with pytest.raises(AssemblyError):
        encoder.encode(timeline, {a.url: b"not a video"})


class _ReadOnlyStore:
    def store(self, data: bytes, key: str, mime_type: str) -> str:
        raise OSError("read-only file system")

    def delete(self, url: str) -> bool:
        return False


def test_store_failure_is_an_assembly_error(produced: VideoJob, object_store: FilesystemObjectStore) -> None:
    assembler = ClipAssembler(_ReadOnlyStore(), FixtureEncoder(), partial(fetch_bytes, store=object_store))
    with pytest.raises(AssemblyError, match="read-only file system") as excinfo:
        assembler.assemble(produced, produced.plan, ClipResolver.for_job(produced))
    assert excinfo.value.details == {"key": final_video_key("u1", produced.id)}
