import logging
from dataclasses import dataclass, field
from typing import Any, Union

import httpx

from videogen.config import settings
from videogen.errors import ProviderError, ProviderTransientError, SubmissionError

logger = logging.getLogger(__name__)


@dataclass
class SubmitRequest:
    job_id: str
    kind: str
    title: str = ""
    prompt: str = ""
    script: str = ""
    image_url: str | None = None
    audio_url: str | None = None
    voice: str | None = None
    duration: float | None = None
    aspect_ratio: str = "9:16"
    seed: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: dict) -> "SubmitRequest":
        params = dict(job.get("params") or {})
        reserved = {"job_id", "kind", "title", "extra"}
        known = {k: params.pop(k) for k in list(params) if k in cls.__dataclass_fields__ and k not in reserved}
        return cls(job_id=job["job_id"], kind=job["kind"], title=job.get("title") or "", extra=params, **known)


@dataclass
class Succeeded:
    artifact_location: str
    duration_seconds: float | None = None


@dataclass
class Failed:
    reason: str


@dataclass
class StillRunning:
    progress: float | None = None


PollResult = Union[Succeeded, Failed, StillRunning]


class ProviderAdapter:
    """Uniform contract over one remote generation service.

    ``submit`` calls the remote API exactly once; retrying is the caller's decision.
    ``poll_status`` only raises ``ProviderTransientError`` for local faults (network,
    auth, unexpected payloads). A remote "still working" is a ``StillRunning`` result.
    """

    name = ""
    kinds: tuple[str, ...] = ()

    def __init__(
        self,
        base_url: str,
        api_key: str,
        min_poll_delay: float,
        max_processing_time: float,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.min_poll_delay = min_poll_delay
        self.max_processing_time = max_processing_time
        self.timeout = timeout or settings.provider_http_timeout_sec
        self.transport = transport

    def _headers(self) -> dict:
        raise NotImplementedError

    def _client(self, timeout: float | None = None) -> httpx.Client:
        return httpx.Client(timeout=timeout or self.timeout, transport=self.transport)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        with self._client() as client:
            r = client.request(method, url, headers=self._headers(), **kwargs)
        r.raise_for_status()
        return r

    def _submit(self, request: SubmitRequest) -> str:
        raise NotImplementedError

    def _poll(self, task_id: str) -> PollResult:
        raise NotImplementedError

    def submit(self, request: SubmitRequest) -> str:
        try:
            task_id = self._submit(request)
        except SubmissionError:
            raise
        except httpx.HTTPStatusError as exc:
            raise SubmissionError(
                f"{self.name} rejected request (http_{exc.response.status_code}): {exc.response.text[:300]}"
            ) from exc
        except (httpx.HTTPError, ProviderError, AttributeError, KeyError, TypeError, ValueError) as exc:
            raise SubmissionError(f"{self.name} submission failed: {exc}") from exc
        if not task_id:
            raise SubmissionError(f"{self.name} returned no task id")
        logger.info("provider task submitted", extra={"provider": self.name, "job_id": request.job_id, "task_id": task_id})
        return str(task_id)

    def poll_status(self, task_id: str) -> PollResult:
        try:
            return self._poll(task_id)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return Failed(reason=f"{self.name} task {task_id} not found")
            raise ProviderTransientError(f"{self.name} status http_{exc.response.status_code}") from exc
        except (httpx.HTTPError, ProviderError, AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderTransientError(f"{self.name} status check failed: {exc}") from exc

    def fetch_artifact(self, artifact_location: str) -> bytes:
        chunks = bytearray()
        try:
            with self._client(timeout=settings.artifact_download_timeout_sec) as client:
                with client.stream("GET", artifact_location, follow_redirects=True) as r:
                    r.raise_for_status()
                    for chunk in r.iter_bytes():
                        chunks.extend(chunk)
        except httpx.HTTPError as exc:
            raise ProviderTransientError(f"{self.name} artifact download failed: {exc}") from exc
        if not chunks:
            raise ProviderTransientError(f"{self.name} artifact download returned an empty body")
        return bytes(chunks)

    def cancel(self, task_id: str) -> bool:
        return False
