import logging
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone

from videogen import db, jobs, ledger
from videogen.collaborators import ArtifactStore
from videogen.completion import DurationReader, Thumbnailer
from videogen.config import settings
from videogen.errors import ArtifactPersistError, JobStateError, ProviderTransientError, UnknownProviderError
from videogen.providers.base import Failed, ProviderAdapter, Succeeded
from videogen.providers.registry import ProviderRegistry
from videogen.thumbnails import extract_thumbnail, read_duration

logger = logging.getLogger(__name__)


class Reconciler:
    """Single recurring pass over every ``processing`` job.

    Each job is claimed with a lease before it is polled, so overlapping ticks or a
    second process never act on the same job at once. One job's error never stops
    the rest of the tick.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: ArtifactStore,
        thumbnailer: Thumbnailer = extract_thumbnail,
        interval_sec: float | None = None,
        lease_sec: int | None = None,
        log_interval_sec: float | None = None,
        duration_reader: DurationReader = read_duration,
    ) -> None:
        self.registry = registry
        self.store = store
        self.thumbnailer = thumbnailer
        self.duration_reader = duration_reader
        self.interval_sec = interval_sec if interval_sec is not None else settings.reconcile_interval_sec
        self.lease_sec = lease_sec if lease_sec is not None else settings.reconcile_lease_sec
        self.log_interval_sec = log_interval_sec if log_interval_sec is not None else settings.still_running_log_interval_sec
        self._last_logged: dict[str, datetime] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        summary: Counter = Counter(
            {key: 0 for key in ("checked", "completed", "failed", "timed_out", "running", "skipped", "errors", "expired", "settled")}
        )

        processing = db.list_jobs_by_status("processing")
        self._evict({job["job_id"] for job in processing})

        for job in processing:
            try:
                outcome = self.reconcile_job(job, now)
            except Exception:
                logger.exception("reconcile failed", extra={"job_id": job["job_id"], "provider": job["provider_name"]})
                outcome = "errors"
            summary["checked"] += 1
            summary[outcome] += 1
            if outcome in {"completed", "failed", "timed_out"}:
                self._last_logged.pop(job["job_id"], None)

        summary["expired"] += self.expire_stuck_pending(now)
        summary["settled"] += self.settle_orphaned_reservations()
        summary["settled"] += ledger.expire_stale_reservations(settings.reservation_expiry_hours, now=now)

        if summary["checked"]:
            logger.info("reconcile tick", extra={"summary": dict(summary)})
        return dict(summary)

    def reconcile_job(self, job: dict, now: datetime) -> str:
        try:
            adapter = self.registry.get(job["provider_name"])
        except UnknownProviderError as exc:
            jobs.on_provider_failed(job["job_id"], str(exc))
            return "failed"

        started = db.parse_ts(job.get("processing_started_at")) or db.parse_ts(job["created_at"])
        age = (now - started).total_seconds()
        if age < adapter.min_poll_delay:
            return "skipped"
        lease = db.claim_job(job["job_id"], self.lease_sec, now)
        if lease is None:
            return "skipped"

        try:
            return self._reconcile_claimed(job, adapter, age, now)
        finally:
            db.release_claim(job["job_id"], lease)

    def _reconcile_claimed(self, job: dict, adapter: ProviderAdapter, age: float, now: datetime) -> str:
        job_id = job["job_id"]
        past_ceiling = age > adapter.max_processing_time

        if not job.get("provider_task_id"):
            jobs.on_provider_failed(job_id, "processing job has no provider task id")
            return "failed"

        try:
            result = adapter.poll_status(job["provider_task_id"])
        except Exception as exc:
            if past_ceiling:
                jobs.on_timeout(job_id, f"no terminal status after {int(age)}s; last error: {exc}")
                return "timed_out"
            if isinstance(exc, ProviderTransientError):
                logger.warning("transient provider error", extra={"job_id": job_id, "provider": adapter.name, "error": str(exc)})
                return "errors"
            raise

        if isinstance(result, Succeeded):
            return self._complete(job, adapter, result, age, past_ceiling)

        if isinstance(result, Failed):
            jobs.on_provider_failed(job_id, result.reason)
            return "failed"

        if past_ceiling:
            jobs.on_timeout(job_id, f"provider still running after {int(age)}s (limit {int(adapter.max_processing_time)}s)")
            return "timed_out"
        self._log_still_running(job, adapter, age, now)
        return "running"

    def _complete(self, job: dict, adapter: ProviderAdapter, result: Succeeded, age: float, past_ceiling: bool) -> str:
        job_id = job["job_id"]
        try:
            jobs.on_provider_succeeded(
                job_id,
                result.artifact_location,
                result.duration_seconds,
                adapter,
                self.store,
                self.thumbnailer,
                self.duration_reader,
            )
        except JobStateError as exc:
            logger.info("completion skipped", extra={"job_id": job_id, "error": str(exc)})
            return "skipped"
        except Exception as exc:
            if past_ceiling:
                jobs.on_timeout(job_id, f"artifact could not be stored within {int(age)}s: {exc}")
                return "timed_out"
            if isinstance(exc, (ArtifactPersistError, ProviderTransientError)):
                logger.warning("artifact not stored yet; retrying next tick", extra={"job_id": job_id, "error": str(exc)})
                return "errors"
            raise
        return "completed"

    def _log_still_running(self, job: dict, adapter: ProviderAdapter, age: float, now: datetime) -> None:
        job_id = job["job_id"]
        last = self._last_logged.get(job_id)
        if last and (now - last).total_seconds() < self.log_interval_sec:
            return
        self._last_logged[job_id] = now
        logger.info("job still processing", extra={"job_id": job_id, "provider": adapter.name, "age_sec": int(age)})

    def _evict(self, active_ids: set[str]) -> None:
        for job_id in list(self._last_logged):
            if job_id not in active_ids:
                del self._last_logged[job_id]

    def expire_stuck_pending(self, now: datetime) -> int:
        cutoff = now - timedelta(hours=settings.reservation_expiry_hours)
        expired = 0
        for job in db.list_jobs_by_status("pending"):
            pending_since = db.parse_ts(job.get("pending_since")) or db.parse_ts(job["created_at"])
            if pending_since < cutoff and jobs.on_timeout(job["job_id"], "job was never submitted to the provider"):
                expired += 1
        return expired

    def settle_orphaned_reservations(self) -> int:
        """Finish settlements interrupted by a crash: confirm for completed jobs, return for failed ones."""
        settled = 0
        for job in db.list_jobs_with_pending_reservation("completed"):
            if ledger.confirm(job["credit_reservation_id"]):
                settled += 1
        for job in db.list_jobs_with_pending_reservation("failed"):
            if ledger.return_reservation(job["credit_reservation_id"], reason=job.get("error_message") or "job failed"):
                settled += 1
        return settled

    def run_forever(self) -> None:
        logger.info("reconciler started", extra={"interval_sec": self.interval_sec})
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("reconcile tick crashed")
            self._stop.wait(self.interval_sec)
        logger.info("reconciler stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="videogen-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
