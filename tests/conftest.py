import pytest

from videogen import config
from videogen.collaborators import LocalArtifactStore
from videogen.db import init_db
from videogen.providers.base import StillRunning
from videogen.providers.registry import ProviderRegistry


class FakeAdapter:
    kinds = ("text-based", "avatar-based")

    def __init__(self, name: str = "fake", min_poll_delay: float = 10, max_processing_time: float = 300) -> None:
        self.name = name
        self.min_poll_delay = min_poll_delay
        self.max_processing_time = max_processing_time
        self.poll_result = StillRunning()
        self.submit_error: Exception | None = None
        self.poll_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.artifact = b"fake-mp4-bytes"
        self.submitted = []
        self.polled: list[str] = []
        self.cancelled: list[str] = []

    def submit(self, request) -> str:
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(request)
        return f"task-{len(self.submitted)}"

    def poll_status(self, task_id: str):
        self.polled.append(task_id)
        if self.poll_error:
            raise self.poll_error
        return self.poll_result

    def fetch_artifact(self, artifact_location: str) -> bytes:
        if self.fetch_error:
            raise self.fetch_error
        return self.artifact

    def cancel(self, task_id: str) -> bool:
        self.cancelled.append(task_id)
        return True


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "videogen.db"
    artifact_dir = tmp_path / "artifacts"
    artifact_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "artifact_dir", str(artifact_dir))
    monkeypatch.setattr(config.settings, "artifact_base_url", "http://testserver/artifacts")
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "auth_secret", "test-secret")
    monkeypatch.setattr(config.settings, "runway_api_key", "test-runway-key")
    monkeypatch.setattr(config.settings, "a2e_api_token", "test-a2e-token")
    monkeypatch.setattr(config.settings, "did_api_key", "test-did-key")
    monkeypatch.setattr(config.settings, "max_retries", 3)

    init_db()
    yield


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(adapter) -> ProviderRegistry:
    return ProviderRegistry([adapter])


@pytest.fixture
def store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(root=str(tmp_path / "artifacts"), base_url="http://testserver/artifacts")


@pytest.fixture
def no_thumbnail():
    return lambda video: None
