"""Command-line interface for the generation pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

import httpx
import uvicorn

from .app import create_app
from .config import PipelineConfig
from .errors import PipelineError
from .job_store import JobStatus, TERMINAL_STATUSES
from .orchestrator import JobOrchestrator, build_orchestrator
from .plan_validation import ValidationContext, validate_plan
from .providers import InMemoryCatalog, StaticPlanner


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ugc-motion", description="UGC video generation pipeline")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    validate_cmd = sub.add_parser("validate", help="Validate a plan JSON document")
    validate_cmd.add_argument("plan", help="Path to the plan JSON file")
    validate_cmd.add_argument("--product-images", type=int, required=True, help="Number of product images")
    validate_cmd.add_argument("--demo-id", action="append", default=[], help="Available demo id (repeatable)")
    validate_cmd.add_argument(
        "--existing-clip-id", action="append", default=[], help="Available reusable clip id (repeatable)"
    )

    create_cmd = sub.add_parser("create", help="Create a job")
    _add_runtime_options(create_cmd)
    create_cmd.add_argument("--user", required=True, help="Owning user id")
    create_cmd.add_argument("--product", required=True, help="Product id")
    create_cmd.add_argument("--avatar", required=True, help="Avatar id")
    create_cmd.add_argument("--demo", action="append", default=[], help="Demo id (repeatable)")
    create_cmd.add_argument("--tone", default="energetic")
    create_cmd.add_argument("--duration", type=int, choices=(16, 20, 24), default=16)

    advance_cmd = sub.add_parser("advance", help="Advance a job through its next stages")
    _add_runtime_options(advance_cmd)
    advance_cmd.add_argument("job_id")
    advance_cmd.add_argument(
        "--max-rounds",
        type=int,
        default=1,
        help="Call advance repeatedly until the job is terminal or this many rounds ran",
    )

    progress_cmd = sub.add_parser("progress", help="Print job progress")
    _add_runtime_options(progress_cmd)
    progress_cmd.add_argument("job_id")

    serve_cmd = sub.add_parser("serve", help="Launch the HTTP API via uvicorn")
    _add_runtime_options(serve_cmd)
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    serve_cmd.add_argument("--port", type=int, default=7078, help="Port to bind (default: 7078)")

    health_cmd = sub.add_parser("health", help="Probe a running API's /healthz endpoint")
    health_cmd.add_argument("--url", default="http://127.0.0.1:7078/healthz")
    health_cmd.add_argument("--timeout", type=float, default=5.0)
    return parser


def _add_runtime_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--catalog", help="YAML/JSON catalog of avatars, products and demos (or UGC_CATALOG_FILE)")
    parser.add_argument("--plan", help="Use this plan JSON instead of calling the planner")
    parser.add_argument("--db", help="Override UGC_DB_PATH")
    parser.add_argument("--storage-root", help="Override UGC_STORAGE_ROOT")
    parser.add_argument("--fixture", action="store_true", help="Use fixture collaborators (UGC_USE_FIXTURE=1)")


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _resolve_config(args: argparse.Namespace) -> PipelineConfig:
    env = dict(os.environ)
    if args.db:
        env["UGC_DB_PATH"] = args.db
    if args.storage_root:
        env["UGC_STORAGE_ROOT"] = args.storage_root
    if args.fixture:
        env["UGC_USE_FIXTURE"] = "1"
    return PipelineConfig.from_env(env)


def _orchestrator(args: argparse.Namespace) -> JobOrchestrator:
    config = _resolve_config(args)
    catalog_path = args.catalog or os.environ.get("UGC_CATALOG_FILE")
    catalog = InMemoryCatalog.from_file(catalog_path) if catalog_path else InMemoryCatalog()
    planner = StaticPlanner(_load_json(args.plan)) if args.plan else None
    return build_orchestrator(config, catalog=catalog, planner=planner)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def run_validate(args: argparse.Namespace) -> int:
    context = ValidationContext(
        product_image_count=args.product_images,
        demo_ids=frozenset(args.demo_id),
        existing_clip_ids=frozenset(args.existing_clip_id),
    )
    result = validate_plan(_load_json(args.plan), context)
    _print_json({"valid": result.valid, "errors": result.errors, "warnings": result.warnings})
    return 0 if result.valid else 1


def run_create(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    job_id = orchestrator.create_job(
        {
            "user_id": args.user,
            "product_id": args.product,
            "avatar_id": args.avatar,
            "demo_ids": args.demo,
            "tone": args.tone,
            "target_duration": args.duration,
        }
    )
    print(job_id)
    return 0


def run_advance(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    job = orchestrator.store.get(args.job_id)
    for _ in range(max(1, args.max_rounds)):
        job = orchestrator.advance(args.job_id)
        if job.status in TERMINAL_STATUSES or job.error:
            break
    _print_json(job.model_dump(mode="json"))
    if job.status == JobStatus.COMPLETED:
        return 0
    return 1 if job.status == JobStatus.FAILED or job.error else 0


def run_progress(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    _print_json(orchestrator.get_progress(args.job_id).to_dict())
    return 0


def run_serve(args: argparse.Namespace) -> int:
    app = create_app(_orchestrator(args))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def run_health(args: argparse.Namespace) -> int:
    try:
        response = httpx.get(args.url, timeout=args.timeout)
    except httpx.HTTPError as exc:
        print(f"Health check failed: {exc}", file=sys.stderr)
        return 3
    if response.status_code == 200:
        print(response.text)
        return 0
    print(f"API returned {response.status_code}: {response.text}", file=sys.stderr)
    return 4


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO))
    handlers = {
        "validate": run_validate,
        "create": run_create,
        "advance": run_advance,
        "progress": run_progress,
        "serve": run_serve,
        "health": run_health,
    }
    try:
        return handlers[args.command](args)
    except PipelineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_parser", "main"]
