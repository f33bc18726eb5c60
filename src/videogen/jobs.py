import logging
from uuid import uuid4

import httpx

from videogen import db, ledger
from videogen.collaborators import ArtifactStore
from videogen.completion import DurationReader, Thumbnailer, complete_job
from videogen.config import settings
from videogen.errors import (
    JobNotFoundError,
    JobStateError,
    ProviderError,
    ProviderTerminalFailure,
    RetryLimitExceeded,
    SubmissionError,
    TimeoutExceeded,
    failure_code,
)
from videogen.providers.base import ProviderAdapter, SubmitRequest
from videogen.providers.registry import ProviderRegistry
from videogen.thumbnails import extract_thumbnail, read_duration

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "processing")


def _require_job(job_id: str) -> dict:
    job = db.get_job(job_id)
    if not job:
        raise JobNotFoundError(f"job {job_id} not found")
    return job


def create_job(
    user_id: str,
    kind: str,
    params: dict,
    amount: int,
    registry: ProviderRegistry,
    provider_name: str | None = None,
    title: str = "",
) -> dict:
    """Reserve credits and persist a ``pending`` job. No reservation, no job."""
    if kind not in db.JOB_KINDS:
        raise ValueError(f"unsupported job kind: {kind}")
    adapter = registry.resolve(kind, provider_name)

    job_id = str(uuid4())
    reservation_id = ledger.reserve(user_id, amount, job_id)
    try:
        db.insert_job(
            job_id=job_id,
            user_id=user_id,
            kind=kind,
            title=title,
            params=params,
            provider_name=adapter.name,
            credit_reservation_id=reservation_id,
            credits_cost=amount,
        )
    except Exception:
        ledger.return_reservation(reservation_id, reason="job creation failed")
        raise

    logger.info("job created", extra={"job_id": job_id, "user_id": user_id, "provider": adapter.name, "amount": amount})
    return _require_job(job_id)


def fail_job(job: dict, reason: str, code: str) -> bool:
    """Move an active job to ``failed`` and hand its reservation back. False if it was already terminal."""
    moved = db.transition_job(
        job["job_id"],
        ACTIVE_STATUSES,
        status="failed",
        error_message=reason,
        failure_reason_code=code,
        processing_completed_at=db.now_iso(),
        lease_until=None,
    )
    if not moved:
        return False
    ledger.return_reservation(job["credit_reservation_id"], reason=f"{code}: {reason}")
    logger.info("job failed", extra={"job_id": job["job_id"], "failure_reason_code": code, "error": reason})
    return True


def submit_job(job_id: str, registry: ProviderRegistry) -> dict:
    job = _require_job(job_id)
    if job["status"] != "pending":
        raise JobStateError(f"job {job_id} is {job['status']}; only pending jobs can be submitted")

    adapter = registry.get(job["provider_name"])
    try:
        task_id = adapter.submit(SubmitRequest.from_job(job))
    except SubmissionError as exc:
        fail_job(job, str(exc), failure_code(exc))
        return _require_job(job_id)
    except Exception as exc:
        logger.exception("unexpected submission error", extra={"job_id": job_id, "provider": adapter.name})
        err = SubmissionError(f"{adapter.name} submission failed: {exc}")
        fail_job(job, str(err), failure_code(err))
        return _require_job(job_id)

    moved = db.transition_job(
        job_id,
        ("pending",),
        status="processing",
        provider_task_id=task_id,
        processing_started_at=db.now_iso(),
    )
    if not moved:
        logger.warning("job left pending during submission; cancelling provider task", extra={"job_id": job_id, "task_id": task_id})
        _cancel_remote(registry, job["provider_name"], task_id)
    return _require_job(job_id)


def on_provider_succeeded(
    job_id: str,
    artifact_location: str,
    duration: float | None,
    adapter: ProviderAdapter,
    store: ArtifactStore,
    thumbnailer: Thumbnailer = extract_thumbnail,
    duration_reader: DurationReader = read_duration,
) -> dict:
    return complete_job(job_id, artifact_location, duration, adapter, store, thumbnailer, duration_reader)


def on_provider_failed(job_id: str, reason: str) -> bool:
    job = _require_job(job_id)
    return fail_job(job, reason, failure_code(ProviderTerminalFailure(reason)))


def on_timeout(job_id: str, detail: str | None = None) -> bool:
    job = _require_job(job_id)
    reason = detail or "provider did not finish before the processing deadline"
    return fail_job(job, reason, failure_code(TimeoutExceeded(reason)))


def retry_job(job_id: str, registry: ProviderRegistry, max_retries: int | None = None) -> dict:
    limit = settings.max_retries if max_retries is None else max_retries
    job = _require_job(job_id)
    if job["status"] != "failed":
        raise JobStateError(f"job {job_id} is {job['status']}; only failed jobs can be retried")
    if job["retry_count"] >= limit:
        raise RetryLimitExceeded(f"job {job_id} already retried {job['retry_count']} times (max {limit})")

    reservation_id = ledger.reserve(job["user_id"], job["credits_cost"], job_id)
    moved = db.transition_job(
        job_id,
        ("failed",),
        status="pending",
        retry_count=job["retry_count"] + 1,
        credit_reservation_id=reservation_id,
        provider_task_id=None,
        error_message=None,
        failure_reason_code=None,
        artifact_location=None,
        upload_attempts=0,
        lease_until=None,
        pending_since=db.now_iso(),
        processing_started_at=None,
        processing_completed_at=None,
    )
    if not moved:
        ledger.return_reservation(reservation_id, reason="concurrent retry")
        raise JobStateError(f"job {job_id} changed state during retry")

    logger.info("job retry", extra={"job_id": job_id, "retry_count": job["retry_count"] + 1})
    return submit_job(job_id, registry)


def _cancel_remote(registry: ProviderRegistry, provider_name: str, task_id: str) -> None:
    try:
        registry.get(provider_name).cancel(task_id)
    except (ProviderError, httpx.HTTPError) as exc:
        logger.warning("provider cancel failed", extra={"provider": provider_name, "task_id": task_id, "error": str(exc)})


def cancel_job(job_id: str, registry: ProviderRegistry) -> dict:
    job = _require_job(job_id)
    if job["status"] not in ACTIVE_STATUSES:
        raise JobStateError(f"job {job_id} is {job['status']}; nothing to cancel")
    if not fail_job(job, "cancelled by user", "CANCELLED"):
        raise JobStateError(f"job {job_id} finished before it could be cancelled")
    if job["provider_task_id"]:
        _cancel_remote(registry, job["provider_name"], job["provider_task_id"])
    return _require_job(job_id)


def delete_job(job_id: str, store: ArtifactStore, registry: ProviderRegistry) -> None:
    job = _require_job(job_id)
    if job["status"] in ACTIVE_STATUSES:
        try:
            cancel_job(job_id, registry)
        except JobStateError:
            job = _require_job(job_id)

    for url in (job.get("artifact_url"), job.get("thumbnail_url")):
        if not url:
            continue
        try:
            store.delete(url)
        except OSError as exc:
            logger.warning("artifact delete failed", extra={"job_id": job_id, "url": url, "error": str(exc)})
    db.delete_job_row(job_id)
