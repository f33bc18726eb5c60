from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from videogen import db, jobs, ledger
from videogen.collaborators import (
    ArtifactStore,
    Authenticator,
    LocalArtifactStore,
    PurchaseVerifier,
    SignedTokenAuthenticator,
    SpeechSynthesizer,
)
from videogen.config import settings
from videogen.db import init_db
from videogen.errors import (
    InsufficientCreditsError,
    JobNotFoundError,
    JobStateError,
    PurchaseRejectedError,
    Unauthorized,
    UnknownProviderError,
    VideoGenError,
)
from videogen.logging import configure_logging
from videogen.pricing import estimate_credits
from videogen.providers.registry import ProviderRegistry, default_registry
from videogen.reconciler import Reconciler
from videogen.schemas import AdminGrantRequest, CreateJobRequest, CreditBalanceResponse, JobResponse, PurchaseRequest

configure_logging()
init_db()
Path(settings.artifact_dir).mkdir(parents=True, exist_ok=True)


@lru_cache
def get_registry() -> ProviderRegistry:
    return default_registry()


@lru_cache
def get_artifact_store() -> ArtifactStore:
    return LocalArtifactStore()


def get_authenticator() -> Authenticator:
    return SignedTokenAuthenticator()


def get_purchase_verifier() -> PurchaseVerifier | None:
    return None


def get_speech_synthesizer() -> SpeechSynthesizer | None:
    return None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    reconciler = None
    if settings.reconciler_autostart:
        reconciler = Reconciler(get_registry(), get_artifact_store())
        reconciler.start()
    yield
    if reconciler:
        reconciler.stop()


app = FastAPI(title="Video Generation Orchestrator", version=settings.app_version, lifespan=lifespan)

_STATUS_CODES: list[tuple[type[VideoGenError], int]] = [
    (InsufficientCreditsError, 402),
    (JobNotFoundError, 404),
    (JobStateError, 409),
    (Unauthorized, 401),
    (UnknownProviderError, 400),
    (PurchaseRejectedError, 402),
]


@app.exception_handler(VideoGenError)
async def _videogen_error(request: Request, exc: VideoGenError) -> JSONResponse:
    code = next((status for cls, status in _STATUS_CODES if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"service_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


def current_user(
    authenticator: Annotated[Authenticator, Depends(get_authenticator)],
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return authenticator.verify(authorization.split(" ", 1)[1].strip())


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _owned_job(job_id: str, user_id: str) -> dict:
    job = db.get_job(job_id)
    if not job or job["user_id"] != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _job_body(job: dict) -> dict:
    return JobResponse(**job).model_dump()


def _validate_request(payload: CreateJobRequest) -> None:
    if payload.kind == "text-based" and not (payload.prompt or payload.script).strip():
        raise HTTPException(status_code=400, detail="prompt is required for text-based jobs")
    if payload.kind == "avatar-based":
        if not payload.image_url:
            raise HTTPException(status_code=400, detail="image_url is required for avatar-based jobs")
        if not payload.audio_url and not payload.script.strip():
            raise HTTPException(status_code=400, detail="audio_url or script is required for avatar-based jobs")
    if len(payload.script) > settings.max_script_chars:
        raise HTTPException(status_code=400, detail=f"Script too long. Maximum {settings.max_script_chars} characters")


@app.get("/health")
def health() -> dict:
    return envelope({"service": "videogen-orchestrator"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "videogen-orchestrator", "version": settings.app_version})


@app.post("/v1/jobs", status_code=201)
def create_video_job(
    payload: CreateJobRequest,
    user_id: Annotated[str, Depends(current_user)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    synthesizer: Annotated[SpeechSynthesizer | None, Depends(get_speech_synthesizer)],
) -> dict:
    _validate_request(payload)

    params = payload.model_dump(exclude={"kind", "title", "provider"}, exclude_none=True)
    if payload.kind == "avatar-based" and not payload.audio_url and synthesizer is not None:
        params["audio_url"] = synthesizer.synthesize(payload.script, payload.voice or "default")

    amount = estimate_credits(payload.kind, payload.prompt or payload.script, payload.duration)
    job = jobs.create_job(
        user_id=user_id,
        kind=payload.kind,
        params=params,
        amount=amount,
        registry=registry,
        provider_name=payload.provider,
        title=payload.title,
    )
    job = jobs.submit_job(job["job_id"], registry)
    return envelope(_job_body(job))


@app.get("/v1/jobs")
def list_video_jobs(
    user_id: Annotated[str, Depends(current_user)],
    status: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict:
    return envelope({"jobs": [_job_body(j) for j in db.list_jobs(user_id=user_id, status=status, limit=limit)]})


@app.get("/v1/jobs/{job_id}")
def get_video_job(job_id: str, user_id: Annotated[str, Depends(current_user)]) -> dict:
    return envelope(_job_body(_owned_job(job_id, user_id)))


@app.get("/v1/jobs/{job_id}/download")
def download_video(job_id: str, user_id: Annotated[str, Depends(current_user)]) -> RedirectResponse:
    job = _owned_job(job_id, user_id)
    if job["status"] != "completed" or not job["artifact_url"]:
        raise HTTPException(status_code=409, detail="Job is not completed")
    return RedirectResponse(job["artifact_url"], status_code=307)


@app.post("/v1/jobs/{job_id}/retry")
def retry_video_job(
    job_id: str,
    user_id: Annotated[str, Depends(current_user)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
) -> dict:
    _owned_job(job_id, user_id)
    return envelope(_job_body(jobs.retry_job(job_id, registry)))


@app.post("/v1/jobs/{job_id}/cancel")
def cancel_video_job(
    job_id: str,
    user_id: Annotated[str, Depends(current_user)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
) -> dict:
    _owned_job(job_id, user_id)
    return envelope(_job_body(jobs.cancel_job(job_id, registry)))


@app.delete("/v1/jobs/{job_id}")
def delete_video_job(
    job_id: str,
    user_id: Annotated[str, Depends(current_user)],
    registry: Annotated[ProviderRegistry, Depends(get_registry)],
    store: Annotated[ArtifactStore, Depends(get_artifact_store)],
) -> dict:
    _owned_job(job_id, user_id)
    jobs.delete_job(job_id, store, registry)
    return envelope({"job_id": job_id, "deleted": True})


@app.get("/v1/credits")
def get_credits(user_id: Annotated[str, Depends(current_user)]) -> dict:
    balance = CreditBalanceResponse(**ledger.status(user_id)).model_dump()
    return envelope({"balance": balance, "recent_ledger": ledger.list_ledger(user_id, limit=20)})


@app.post("/v1/credits/purchase")
def purchase_credits(
    payload: PurchaseRequest,
    user_id: Annotated[str, Depends(current_user)],
    verifier: Annotated[PurchaseVerifier | None, Depends(get_purchase_verifier)],
) -> dict:
    if verifier is None:
        raise HTTPException(status_code=501, detail="Purchases are not configured")
    return envelope(ledger.apply_purchase(verifier, user_id, payload.receipt))


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    if payload.credits <= 0:
        raise HTTPException(status_code=400, detail="credits must be > 0")
    applied = ledger.grant(
        user_id=payload.user_id,
        amount=payload.credits,
        note=payload.note,
        external_ref=payload.external_ref,
    )
    return envelope({"applied": applied, **ledger.status(payload.user_id)})


@app.get("/v1/admin/jobs/stats")
def admin_job_stats(x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(db.get_job_stats())
