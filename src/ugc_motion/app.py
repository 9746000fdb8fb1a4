"""FastAPI application exposing the job orchestrator."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import ItemNotFoundError, JobNotFoundError, PipelineError, PlanValidationError
from .job_store import JobInputs, VideoJob
from .orchestrator import JobOrchestrator
from .plan_validation import ValidationContext, validate_plan


class CreateJobResponse(BaseModel):
    job_id: str
    job: VideoJob


class GenerateResponse(BaseModel):
    job_id: str
    item_id: str
    url: str


class ValidateRequest(BaseModel):
    plan: Dict[str, Any]
    product_image_count: int = Field(..., ge=0)
    demo_ids: List[str] = Field(default_factory=list)
    existing_clip_ids: List[str] = Field(default_factory=list)


class ValidateResponse(BaseModel):
    valid: bool
    errors: List[str]
    warnings: List[str]


def create_app(orchestrator: JobOrchestrator, *, title: str = "UGC Motion Pipeline") -> FastAPI:
    """Create a FastAPI app bound to `orchestrator`."""

    app = FastAPI(title=title)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:
        content = exc.detail if isinstance(exc.detail, dict) else {
            "error": {
                "code": "request_failed",
                "message": str(exc.detail),
                "details": {},
            }
        }
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(PipelineError)
    async def _pipeline_error_handler(_: Request, exc: PipelineError) -> JSONResponse:
        if isinstance(exc, (JobNotFoundError, ItemNotFoundError)):
            status_code = status.HTTP_404_NOT_FOUND
        elif isinstance(exc, PlanValidationError):
            status_code = 422
        else:
            status_code = status.HTTP_409_CONFLICT
        return JSONResponse(status_code=status_code, content=_error_body(exc.code, str(exc), exc.details))

    @app.post("/jobs", response_model=CreateJobResponse, status_code=status.HTTP_201_CREATED)
    def create_job(inputs: JobInputs) -> CreateJobResponse:
        job_id = orchestrator.create_job(inputs)
        return CreateJobResponse(job_id=job_id, job=orchestrator.store.get(job_id))

    @app.get("/jobs/{job_id}", response_model=VideoJob)
    def get_job(job_id: str) -> VideoJob:
        return orchestrator.store.get(job_id)

    @app.post("/jobs/{job_id}/advance")
    def advance_job(job_id: str, background_tasks: BackgroundTasks, background: bool = False) -> JSONResponse:
        if background:
            job = orchestrator.store.get(job_id)
            background_tasks.add_task(orchestrator.advance, job_id)
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={"job_id": job_id, "status": job.status.value, "queued": True},
            )
        job = orchestrator.advance(job_id)
        return JSONResponse(status_code=status.HTTP_200_OK, content=job.model_dump(mode="json"))

    @app.get("/jobs/{job_id}/progress")
    def get_progress(job_id: str) -> Dict[str, Any]:
        return orchestrator.get_progress(job_id).to_dict()

    @app.post("/jobs/{job_id}/items/{item_id}/generate", response_model=GenerateResponse)
    def generate_item(job_id: str, item_id: str) -> GenerateResponse:
        url = orchestrator.generate_one(job_id, item_id)
        return GenerateResponse(job_id=job_id, item_id=item_id, url=url)

    @app.delete("/jobs/{job_id}/items", status_code=status.HTTP_204_NO_CONTENT)
    def delete_item(job_id: str, item: Optional[str] = None) -> None:
        if not item:
            raise _http_error(status.HTTP_400_BAD_REQUEST, "invalid_request", "item query parameter is required")
        orchestrator.delete_one(job_id, item)

    @app.post("/plans/validate", response_model=ValidateResponse)
    def validate(request: ValidateRequest) -> ValidateResponse:
        context = ValidationContext(
            product_image_count=request.product_image_count,
            demo_ids=frozenset(request.demo_ids),
            existing_clip_ids=frozenset(request.existing_clip_ids),
            composite_reuse_warn=orchestrator.composite_reuse_warn,
        )
        result = validate_plan(request.plan, context)
        return ValidateResponse(valid=result.valid, errors=result.errors, warnings=result.warnings)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def _http_error(status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail=_error_body(code, message, details))
