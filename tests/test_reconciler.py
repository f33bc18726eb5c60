import logging
from datetime import datetime, timedelta, timezone

import pytest

from videogen import db, jobs, ledger
from videogen.completion import complete_job
from videogen.errors import ArtifactPersistError, JobStateError, ProviderTransientError
from videogen.providers.base import Failed, StillRunning, Succeeded
from videogen.reconciler import Reconciler


def _later(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def _processing_job(registry, amount: int = 40) -> dict:
    job = jobs.create_job("u1", "text-based", {"prompt": "waves", "duration": 8}, amount, registry, provider_name="fake")
    return jobs.submit_job(job["job_id"], registry)


@pytest.fixture
def reconciler(registry, store, no_thumbnail) -> Reconciler:
    return Reconciler(registry, store, thumbnailer=no_thumbnail, log_interval_sec=300)


@pytest.fixture(autouse=True)
def _funded_user(_isolated_env):
    ledger.grant("u1", 100, note="seed")


def test_job_inside_grace_period_is_not_polled(reconciler, registry, adapter) -> None:
    _processing_job(registry)

    summary = reconciler.tick(now=_later(5))

    assert summary["skipped"] == 1
    assert adapter.polled == []


def test_success_completes_and_confirms(reconciler, registry, adapter, store) -> None:
    job = _processing_job(registry)
    adapter.poll_result = Succeeded(artifact_location="https://cdn.example/out.mp4", duration_seconds=8.0)

    summary = reconciler.tick(now=_later(30))

    assert summary["completed"] == 1
    done = db.get_job(job["job_id"])
    assert done["status"] == "completed"
    assert done["artifact_url"].startswith("http://testserver/artifacts/videos/")
    assert done["artifact_location"] == "https://cdn.example/out.mp4"
    assert done["file_size_bytes"] == len(adapter.artifact)
    assert done["actual_duration"] == 8.0
    assert done["thumbnail_url"] is None
    assert done["lease_until"] is None
    assert ledger.get_reservation(job["credit_reservation_id"])["status"] == "completed"
    s = ledger.status("u1")
    assert (s["available"], s["reserved"], s["total_used"]) == (60, 0, 40)
    assert len(list((store.root / "videos").iterdir())) == 1


def test_provider_failure_returns_credits(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    adapter.poll_result = Failed(reason="moderation rejected prompt")

    summary = reconciler.tick(now=_later(30))

    assert summary["failed"] == 1
    failed = db.get_job(job["job_id"])
    assert failed["status"] == "failed"
    assert failed["error_message"] == "moderation rejected prompt"
    s = ledger.status("u1")
    assert (s["available"], s["reserved"]) == (100, 0)


def test_still_running_stays_processing(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    adapter.poll_result = StillRunning(progress=0.4)

    summary = reconciler.tick(now=_later(30))

    assert summary["running"] == 1
    assert db.get_job(job["job_id"])["status"] == "processing"
    assert ledger.status("u1")["reserved"] == 40


def test_still_running_past_ceiling_times_out(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)

    summary = reconciler.tick(now=_later(301))

    assert summary["timed_out"] == 1
    timed_out = db.get_job(job["job_id"])
    assert timed_out["status"] == "failed"
    assert timed_out["failure_reason_code"] == "TIMEOUT"
    assert ledger.get_reservation(job["credit_reservation_id"])["status"] == "returned"


def test_transient_poll_error_retries_next_tick(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    adapter.poll_error = ProviderTransientError("fake status http_503")

    summary = reconciler.tick(now=_later(30))

    assert summary["errors"] == 1
    assert db.get_job(job["job_id"])["status"] == "processing"

    adapter.poll_error = None
    adapter.poll_result = Succeeded(artifact_location="https://cdn.example/out.mp4")
    assert reconciler.tick(now=_later(60))["completed"] == 1


def test_poll_errors_past_ceiling_time_out(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    adapter.poll_error = ProviderTransientError("fake status http_503")

    assert reconciler.tick(now=_later(400))["timed_out"] == 1
    assert db.get_job(job["job_id"])["failure_reason_code"] == "TIMEOUT"


def test_unexpected_poll_error_does_not_stop_tick(reconciler, registry, adapter) -> None:
    first = _processing_job(registry, amount=10)
    second = _processing_job(registry, amount=10)
    adapter.poll_error = RuntimeError("adapter bug")

    summary = reconciler.tick(now=_later(30))

    assert summary["checked"] == 2
    assert summary["errors"] == 2
    assert db.get_job(first["job_id"])["status"] == "processing"
    assert db.get_job(second["job_id"])["lease_until"] is None


def test_artifact_fetch_failure_retries_then_times_out(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    adapter.poll_result = Succeeded(artifact_location="https://cdn.example/out.mp4")
    adapter.fetch_error = ProviderTransientError("fake artifact download failed")

    assert reconciler.tick(now=_later(30))["errors"] == 1
    pending = db.get_job(job["job_id"])
    assert pending["status"] == "processing"
    assert pending["upload_attempts"] == 1
    assert pending["artifact_location"] == "https://cdn.example/out.mp4"

    assert reconciler.tick(now=_later(400))["timed_out"] == 1
    assert ledger.get_reservation(job["credit_reservation_id"])["status"] == "returned"
    assert ledger.status("u1")["total_used"] == 0


def test_upload_failure_keeps_job_processing(registry, adapter, no_thumbnail) -> None:
    class BrokenStore:
        def upload(self, data: bytes, metadata: dict) -> str:
            raise ArtifactPersistError("disk full")

        def delete(self, url: str) -> None:
            pass

    job = _processing_job(registry)
    adapter.poll_result = Succeeded(artifact_location="https://cdn.example/out.mp4")
    reconciler = Reconciler(registry, BrokenStore(), thumbnailer=no_thumbnail)

    assert reconciler.tick(now=_later(30))["errors"] == 1
    assert db.get_job(job["job_id"])["status"] == "processing"
    assert ledger.get_reservation(job["credit_reservation_id"])["status"] == "pending"


def test_complete_job_is_rejected_once_terminal(registry, adapter, store, no_thumbnail) -> None:
    job = _processing_job(registry)
    complete_job(job["job_id"], "https://cdn.example/out.mp4", 8.0, adapter, store, no_thumbnail)

    with pytest.raises(JobStateError):
        complete_job(job["job_id"], "https://cdn.example/out.mp4", 8.0, adapter, store, no_thumbnail)
    assert ledger.status("u1")["total_used"] == 40


def test_cancel_during_completion_discards_artifact(registry, adapter, store, no_thumbnail) -> None:
    job = _processing_job(registry)

    def cancel_mid_upload(video: bytes) -> None:
        jobs.cancel_job(job["job_id"], registry)
        return None

    with pytest.raises(JobStateError):
        complete_job(job["job_id"], "https://cdn.example/out.mp4", 8.0, adapter, store, cancel_mid_upload)

    assert db.get_job(job["job_id"])["status"] == "failed"
    assert list((store.root / "videos").iterdir()) == []
    s = ledger.status("u1")
    assert (s["available"], s["reserved"], s["total_used"]) == (100, 0, 0)


def test_thumbnail_is_stored_when_available(registry, adapter, store) -> None:
    job = _processing_job(registry)

    done = complete_job(
        job["job_id"], "https://cdn.example/out.mp4", None, adapter, store, lambda video: b"jpeg", lambda video: None
    )

    assert done["thumbnail_url"].startswith("http://testserver/artifacts/thumbnails/")
    assert done["actual_duration"] == 8


def test_claimed_job_is_skipped_by_second_worker(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    now = _later(30)
    assert db.claim_job(job["job_id"], 120, now) is not None

    summary = reconciler.tick(now=now)

    assert summary["skipped"] == 1
    assert adapter.polled == []


def test_expired_lease_can_be_reclaimed(registry) -> None:
    job = _processing_job(registry)
    now = _later(30)
    assert db.claim_job(job["job_id"], 120, now) is not None
    assert db.claim_job(job["job_id"], 120, now + timedelta(seconds=60)) is None
    assert db.claim_job(job["job_id"], 120, now + timedelta(seconds=121)) is not None


def test_unknown_provider_fails_job(reconciler, registry, store) -> None:
    job = _processing_job(registry)
    db.update_job(job["job_id"], provider_name="retired")

    assert reconciler.tick(now=_later(30))["failed"] == 1
    assert db.get_job(job["job_id"])["status"] == "failed"
    assert ledger.status("u1")["reserved"] == 0


def test_still_running_log_is_throttled(reconciler, registry, adapter, caplog) -> None:
    adapter.max_processing_time = 1000
    job = _processing_job(registry)
    caplog.set_level(logging.INFO, logger="videogen.reconciler")

    reconciler.tick(now=_later(30))
    reconciler.tick(now=_later(60))
    reconciler.tick(now=_later(331))

    messages = [r for r in caplog.records if r.getMessage() == "job still processing"]
    assert len(messages) == 2
    assert job["job_id"] in reconciler._last_logged


def test_log_throttle_forgets_finished_jobs(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    reconciler.tick(now=_later(30))
    assert job["job_id"] in reconciler._last_logged

    adapter.poll_result = Failed(reason="gone")
    reconciler.tick(now=_later(60))
    assert reconciler._last_logged == {}


def test_settlement_sweep_finishes_interrupted_completion(reconciler, registry) -> None:
    job = _processing_job(registry)
    db.transition_job(job["job_id"], ("processing",), status="completed", artifact_url="http://x/v.mp4")

    summary = reconciler.tick()

    assert summary["settled"] == 1
    assert ledger.get_reservation(job["credit_reservation_id"])["status"] == "completed"
    assert ledger.status("u1")["total_used"] == 40


def test_settlement_sweep_returns_for_failed_jobs(reconciler, registry) -> None:
    job = _processing_job(registry)
    db.transition_job(job["job_id"], ("processing",), status="failed", error_message="crashed mid-failure")

    assert reconciler.tick()["settled"] == 1
    assert ledger.get_reservation(job["credit_reservation_id"])["status"] == "returned"
    assert ledger.status("u1")["available"] == 100


def test_stuck_pending_job_expires(reconciler, registry) -> None:
    job = jobs.create_job("u1", "text-based", {"prompt": "x"}, 25, registry, provider_name="fake")

    summary = reconciler.tick(now=_later(2 * 3600))

    assert summary["expired"] == 1
    assert db.get_job(job["job_id"])["status"] == "failed"
    assert ledger.status("u1")["reserved"] == 0

def test_measured_duration_wins_over_requested(registry, adapter, store, no_thumbnail) -> None:
    job = _processing_job(registry)

    done = complete_job(job["job_id"], "https://cdn.example/out.mp4", None, adapter, store, no_thumbnail, lambda video: 12.5)

    assert done["actual_duration"] == 12.5


def test_reconciler_measures_duration_when_provider_omits_it(registry, adapter, store, no_thumbnail) -> None:
    job = _processing_job(registry)
    adapter.poll_result = Succeeded(artifact_location="https://cdn.example/out.mp4")
    measured = []

    def measure(video: bytes) -> float:
        measured.append(video)
        return 5.0

    reconciler = Reconciler(registry, store, thumbnailer=no_thumbnail, duration_reader=measure)

    assert reconciler.tick(now=_later(30))["completed"] == 1
    assert db.get_job(job["job_id"])["actual_duration"] == 5.0
    assert measured == [adapter.artifact]


def test_stale_release_keeps_newer_lease(registry) -> None:
    job = _processing_job(registry)
    now = _later(30)
    first = db.claim_job(job["job_id"], 120, now)
    second = db.claim_job(job["job_id"], 120, now + timedelta(seconds=121))

    assert db.release_claim(job["job_id"], first) is False
    assert db.get_job(job["job_id"])["lease_until"] == second
    assert db.claim_job(job["job_id"], 120, now + timedelta(seconds=150)) is None
    assert db.release_claim(job["job_id"], second) is True
    assert db.get_job(job["job_id"])["lease_until"] is None


def test_slow_poll_does_not_clear_lease_taken_over_by_another_worker(reconciler, registry, adapter) -> None:
    adapter.max_processing_time = 1000
    job = _processing_job(registry)
    now = _later(30)
    taken_over = {}

    def slow_poll(task_id: str):
        taken_over["lease"] = db.claim_job(job["job_id"], 120, now + timedelta(seconds=121))
        return StillRunning()

    adapter.poll_status = slow_poll

    assert reconciler.tick(now=now)["running"] == 1
    assert taken_over["lease"] is not None
    assert db.get_job(job["job_id"])["lease_until"] == taken_over["lease"]


def test_retried_old_job_is_not_expired_while_resubmitting(reconciler, registry, adapter) -> None:
    job = _processing_job(registry)
    jobs.on_provider_failed(job["job_id"], "boom")
    two_hours_ago = db.now_iso(datetime.now(timezone.utc) - timedelta(hours=2))
    with db.connect() as conn:
        conn.execute("UPDATE jobs SET created_at = ?, pending_since = ? WHERE job_id = ?", (two_hours_ago, two_hours_ago, job["job_id"]))
        conn.commit()

    submit = adapter.submit
    summaries = []

    def submit_while_reconciling(request):
        summaries.append(reconciler.tick())
        return submit(request)

    adapter.submit = submit_while_reconciling

    retried = jobs.retry_job(job["job_id"], registry)

    assert retried["status"] == "processing"
    assert summaries[0]["expired"] == 0
    assert adapter.cancelled == []
    assert ledger.status("u1")["reserved"] == 40



def test_start_and_stop_background_thread(reconciler) -> None:
    reconciler.interval_sec = 0.01
    reconciler.start()
    assert reconciler._thread is not None
    reconciler.stop(timeout=2)
    assert reconciler._thread is None
