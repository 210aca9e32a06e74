"""
FastAPI application factory and HTTP schemas for the mail queue.

The module exposes a `create_app` function that builds the REST API used to
submit jobs, inspect their state and control the poll loop. Authentication is
enforced through a configurable API token carried in the ``X-API-Token``
header.
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .core import AsyncMailQueue

app = FastAPI(title="Async Mail Queue")
service: AsyncMailQueue | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "invalid_request": status.HTTP_400_BAD_REQUEST,
    "job_not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` the dependency is
    bypassed; otherwise a missing or different value yields ``401``.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by every response produced by the queue."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    active: Optional[bool] = None


class SubmitPayload(BaseModel):
    """Body accepted by ``POST /jobs``.

    ``request`` is validated by the queue itself so that a malformed send
    request is reported as ``400`` together with the offending fields.
    """
    owner: Optional[str] = None
    request: Dict[str, Any]
    attachments: Optional[Any] = None
    scheduled_for: Optional[str] = None


class JobRecord(BaseModel):
    """Stored job as returned by the submission and inspection endpoints."""
    id: str
    owner: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
    scheduled_for: Optional[str] = None
    inserted_at: Optional[str] = None
    updated_at: Optional[str] = None
    claimed_at: Optional[str] = None
    completed_at: Optional[str] = None
    attachments: Optional[Any] = None
    payload: str


class JobResponse(CommandStatus):
    job: JobRecord


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


def _checked(result: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a rejected command into the matching HTTP error."""
    if isinstance(result, dict) and result.get("ok") is True:
        return result
    code = result.get("code") if isinstance(result, dict) else None
    detail = {"error": result.get("error") if isinstance(result, dict) else None, "code": code}
    raise HTTPException(status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), detail=detail)


def create_app(
    svc: AsyncMailQueue,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_mail_queue.core.AsyncMailQueue` that
        implements each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Async Mail Queue", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_status():
        """Return a health payload including whether the poll loop runs."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return BasicOkResponse(ok=True, active=service.scheduler.running)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Trigger a poll cycle without waiting for the interval."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Stop the poll loop; submitted jobs stay pending."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @api.post("/jobs", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def submit_job(payload: SubmitPayload):
        """Queue a send request for background delivery."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("submit", payload.model_dump())
        return JobResponse.model_validate(_checked(result))

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(owner: Optional[str] = None, status: Optional[str] = None):
        """List stored jobs, optionally filtered by owner and status."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("listJobs", {"owner": owner, "status": status})
        return JobsResponse.model_validate(_checked(result))

    @api.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def job_status(job_id: str):
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("status", {"id": job_id})
        return JobResponse.model_validate(_checked(result))

    @api.post(
        "/jobs/{job_id}/requeue",
        response_model=JobResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def requeue_job(job_id: str):
        """Return a failed job with attempts left to the queue."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("requeue", {"id": job_id})
        return JobResponse.model_validate(_checked(result))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the queue."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
