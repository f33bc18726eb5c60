import httpx

from videogen.config import settings
from videogen.errors import ProviderError
from videogen.providers.base import Failed, PollResult, ProviderAdapter, StillRunning, Succeeded, SubmitRequest

DEFAULT_VOICE = "en-US-JennyNeural"


class DIDTalkingHead(ProviderAdapter):
    name = "did"
    kinds = ("avatar-based",)

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(
            base_url=settings.did_base_url,
            api_key=settings.did_api_key,
            min_poll_delay=settings.did_min_poll_delay_sec,
            max_processing_time=settings.did_max_processing_sec,
            transport=transport,
        )

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("DID_API_KEY is not set")
        return {"Authorization": f"Basic {self.api_key}", "Content-Type": "application/json"}

    def _script(self, request: SubmitRequest) -> dict:
        if request.audio_url:
            return {"type": "audio", "audio_url": request.audio_url}
        if request.script:
            return {
                "type": "text",
                "input": request.script,
                "provider": {"type": "microsoft", "voice_id": request.voice or DEFAULT_VOICE},
            }
        raise ProviderError("audio_url or script is required")

    def _submit(self, request: SubmitRequest) -> str:
        if not request.image_url:
            raise ProviderError("image_url is required")
        body = {
            "source_url": request.image_url,
            "script": self._script(request),
            "config": {"fluent": True, "pad_audio": 0.0, "stitch": True, "result_format": "mp4"},
        }
        data = self._request("POST", "/talks", json=body).json()
        return data["id"]

    def _poll(self, task_id: str) -> PollResult:
        talk = self._request("GET", f"/talks/{task_id}").json()
        state = str(talk.get("status") or "").lower()
        if state == "done":
            duration = talk.get("duration")
            return Succeeded(artifact_location=talk["result_url"], duration_seconds=float(duration) if duration else None)
        if state in {"error", "rejected"}:
            error = talk.get("error") or {}
            reason = error.get("description") if isinstance(error, dict) else str(error)
            return Failed(reason=reason or f"d-id talk {state}")
        return StillRunning()

    def cancel(self, task_id: str) -> bool:
        self._request("DELETE", f"/talks/{task_id}")
        return True
