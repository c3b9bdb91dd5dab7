import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

# Local imports
from admission import AdmissionService, error_details
from auth import AuthServiceClient
from database import init_db
from errors import CodemodRunError, RateLimited, ValidationError
from job_queue import JobQueue
from schemas import (
    CodemodRunRequest,
    CodemodRunResponse,
    CodemodStatusResponse,
    ErrorResponse,
    HealthResponse,
    VersionResponse,
)
from status_store import RateLimiter, StatusStore
from utils import (
    CORS_ALLOWED_ORIGINS_REGEX,
    PORT,
    RATE_LIMIT_MAX,
    RATE_LIMIT_WINDOW_SECONDS,
    parse_job_ids,
)
from worker import check_broker, dispatch_job

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

__version__ = "1.0.0"

bearer_scheme = HTTPBearer(auto_error=False)
router = APIRouter()


def get_admission(request: Request) -> AdmissionService:
    return request.app.state.admission


def enforce_rate_limit(request: Request) -> None:
    limiter: Optional[RateLimiter] = request.app.state.rate_limiter
    if limiter is None:
        return
    identity = request.client.host if request.client else "anonymous"
    if not limiter.hit(identity):
        raise RateLimited("Too many requests, retry later")


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    token = credentials.credentials if credentials else None
    return request.app.state.authenticator.authenticate(token)


def _error_response(exc: CodemodRunError) -> JSONResponse:
    body = ErrorResponse(error=exc.code, error_text=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@router.get("/")
def index():
    return {"data": {}}


@router.get("/version", response_model=VersionResponse)
def version():
    return {"version": __version__}


@router.get("/health", response_model=HealthResponse)
def health_check(admission: AdmissionService = Depends(get_admission)):
    """Health check for the run service and its queue/store dependencies"""
    dependencies = {}
    for name, check in (("status_store", admission.status_store.ping), ("queue", admission.job_queue.ping)):
        try:
            check()
            dependencies[name] = "connected"
        except CodemodRunError as e:
            dependencies[name] = e.code.lower()

    healthy = all(state == "connected" for state in dependencies.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "message": "Run service is healthy." if healthy else "Some dependencies are unavailable.",
        "dependencies": dependencies,
    }


@router.post("/codemodRun", response_model=CodemodRunResponse, dependencies=[Depends(enforce_rate_limit)])
def submit_codemod_run(
    body: CodemodRunRequest,
    user_id: str = Depends(get_current_user),
    admission: AdmissionService = Depends(get_admission),
):
    """
    Start one job per submitted codemod.

    Only the jobs that were actually enqueued are returned.
    """
    created = admission.submit_run(body, user_id)
    return {"success": True, "data": created}


@router.get(
    "/codemodRun/status/{job_ids}",
    response_model=CodemodStatusResponse,
    dependencies=[Depends(enforce_rate_limit), Depends(get_current_user)],
)
def get_codemod_run_status(job_ids: str, admission: AdmissionService = Depends(get_admission)):
    """Non-destructive status of each requested job, in request order"""
    return {"success": True, "data": admission.get_status(parse_job_ids(job_ids))}


@router.get(
    "/codemodRun/output/{job_ids}",
    response_model=CodemodStatusResponse,
    dependencies=[Depends(enforce_rate_limit), Depends(get_current_user)],
)
def get_codemod_run_output(job_ids: str, admission: AdmissionService = Depends(get_admission)):
    """Final output of each job; results of non-persistent jobs are handed out once"""
    return {"success": True, "data": admission.get_output(parse_job_ids(job_ids))}


def create_app(
    admission: Optional[AdmissionService] = None,
    authenticator=None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    owns_clients = admission is None
    if admission is None:
        store = StatusStore.from_url()
        admission = AdmissionService(
            JobQueue(store, publisher=dispatch_job, broker_check=check_broker),
            store,
        )
        rate_limiter = rate_limiter or RateLimiter(store.client, RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_clients:
            init_db()
            logger.info("✅ Job table ready")
        yield

    app = FastAPI(
        title="Codemod Run Service",
        version=__version__,
        description="Runs codemods against repositories as individually tracked jobs",
        lifespan=lifespan,
    )
    app.state.admission = admission
    app.state.authenticator = authenticator or AuthServiceClient()
    app.state.rate_limiter = rate_limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=CORS_ALLOWED_ORIGINS_REGEX,
        allow_credentials=True,
        allow_methods=["POST", "PUT", "PATCH", "GET", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "access-control-allow-origin"],
    )

    @app.exception_handler(CodemodRunError)
    async def codemod_run_error_handler(request: Request, exc: CodemodRunError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(ValidationError("Invalid request", details=error_details(exc.errors())))

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    print("\n🚀 Starting Codemod Run Service...")
    print(f"📡 API: http://0.0.0.0:{PORT}")
    print(f"📚 Docs: http://0.0.0.0:{PORT}/docs")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
