import logging
from collections.abc import Callable

from videogen import db, ledger
from videogen.collaborators import ArtifactStore
from videogen.errors import ArtifactPersistError, JobNotFoundError, JobStateError
from videogen.providers.base import ProviderAdapter
from videogen.thumbnails import extract_thumbnail, read_duration

logger = logging.getLogger(__name__)

Thumbnailer = Callable[[bytes], bytes | None]
DurationReader = Callable[[bytes], float | None]


def _thumbnail_url(job_id: str, video: bytes, store: ArtifactStore, thumbnailer: Thumbnailer) -> str | None:
    try:
        thumb = thumbnailer(video)
        if not thumb:
            return None
        return store.upload(thumb, {"job_id": job_id, "folder": "thumbnails", "content_type": "image/jpeg"})
    except Exception as exc:
        logger.warning("thumbnail skipped", extra={"job_id": job_id, "error": str(exc)})
        return None


def _measured_duration(job_id: str, video: bytes, duration_reader: DurationReader) -> float | None:
    try:
        return duration_reader(video)
    except Exception as exc:
        logger.warning("duration check skipped", extra={"job_id": job_id, "error": str(exc)})
        return None


def _discard(store: ArtifactStore, *urls: str | None) -> None:
    for url in urls:
        if not url:
            continue
        try:
            store.delete(url)
        except OSError as exc:
            logger.warning("artifact discard failed", extra={"url": url, "error": str(exc)})


def complete_job(
    job_id: str,
    artifact_location: str,
    duration: float | None,
    adapter: ProviderAdapter,
    store: ArtifactStore,
    thumbnailer: Thumbnailer = extract_thumbnail,
    duration_reader: DurationReader = read_duration,
) -> dict:
    """Fetch, store and finalize a job the provider reports as done.

    Credits are confirmed only after the job row says ``completed``. A failed fetch
    or upload leaves the job ``processing`` so the next tick can try again.
    """
    job = db.get_job(job_id)
    if not job:
        raise JobNotFoundError(f"job {job_id} not found")
    if job["status"] != "processing":
        raise JobStateError(f"job {job_id} is {job['status']}; completion rejected")

    if job.get("artifact_location") != artifact_location:
        db.update_job(job_id, artifact_location=artifact_location)

    try:
        video = adapter.fetch_artifact(artifact_location)
    except Exception:
        db.increment_upload_attempts(job_id)
        raise

    try:
        artifact_url = store.upload(video, {"job_id": job_id, "folder": "videos", "content_type": "video/mp4"})
    except Exception as exc:
        db.increment_upload_attempts(job_id)
        if isinstance(exc, ArtifactPersistError):
            raise
        raise ArtifactPersistError(f"artifact upload failed: {exc}") from exc

    thumbnail_url = _thumbnail_url(job_id, video, store, thumbnailer)
    if duration is None:
        duration = _measured_duration(job_id, video, duration_reader)
    if duration is None:
        duration = (job.get("params") or {}).get("duration")

    moved = db.transition_job(
        job_id,
        ("processing",),
        status="completed",
        artifact_url=artifact_url,
        thumbnail_url=thumbnail_url,
        actual_duration=duration,
        file_size_bytes=len(video),
        error_message=None,
        failure_reason_code=None,
        processing_completed_at=db.now_iso(),
        lease_until=None,
    )
    if not moved:
        _discard(store, artifact_url, thumbnail_url)
        raise JobStateError(f"job {job_id} left processing during completion; artifact discarded")

    ledger.confirm(job["credit_reservation_id"])
    logger.info("job completed", extra={"job_id": job_id, "artifact_url": artifact_url, "file_size_bytes": len(video)})
    return db.get_job(job_id)
