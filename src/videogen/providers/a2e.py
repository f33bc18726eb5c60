import httpx

from videogen.config import settings
from videogen.errors import ProviderError, SubmissionError
from videogen.providers.base import Failed, PollResult, ProviderAdapter, StillRunning, Succeeded, SubmitRequest

BASE_PROMPT = "high quality, clear, cinematic, natural speaking, perfect lip sync"
BASE_NEGATIVE_PROMPT = (
    "blurry, low quality, chaotic, deformed, watermark, bad anatomy, shaky camera, distorted face, unnatural movement"
)

_STYLE_PROMPTS = {
    "business": ", professional business person, corporate setting",
    "casual": ", casual friendly person, approachable",
    "educator": ", educational presenter, clear articulation",
}


def generate_prompts(avatar_type: str = "professional") -> dict:
    return {
        "prompt": BASE_PROMPT + _STYLE_PROMPTS.get(avatar_type, ", professional presenter"),
        "negative_prompt": BASE_NEGATIVE_PROMPT + ", amateur, unprofessional, awkward expressions",
    }


class A2ETalkingPhoto(ProviderAdapter):
    """Talking-photo lip sync: one still image plus one audio track."""

    name = "a2e"
    kinds = ("avatar-based",)

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(
            base_url=settings.a2e_base_url,
            api_key=settings.a2e_api_token,
            min_poll_delay=settings.a2e_min_poll_delay_sec,
            max_processing_time=settings.a2e_max_processing_sec,
            transport=transport,
        )

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("A2E_API_TOKEN is not set")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _submit(self, request: SubmitRequest) -> str:
        if not request.image_url:
            raise ProviderError("image_url is required")
        if not request.audio_url:
            raise ProviderError("audio_url is required")

        prompts = generate_prompts(str(request.extra.get("avatar_type") or "professional"))
        body = {
            "name": request.title or f"job_{request.job_id}",
            "image_url": request.image_url,
            "audio_url": request.audio_url,
            "duration": int(request.duration or 0),
            **prompts,
        }
        data = self._request("POST", "/start", json=body).json()
        if data.get("code") not in (0, 200):
            raise SubmissionError(f"a2e rejected request: {data.get('message') or 'unknown error'}")
        task = data.get("data") or {}
        return task.get("_id") or task.get("taskId") or task.get("id")

    def _poll(self, task_id: str) -> PollResult:
        data = self._request("GET", f"/{task_id}").json()
        if data.get("code") != 0 or not data.get("data"):
            raise ProviderError(f"a2e status error: {data.get('message') or 'unknown error'}")

        task = data["data"]
        state = str(task.get("current_status") or "").lower()
        if state == "completed":
            if not task.get("result_url"):
                return Failed(reason="a2e task completed but no result url available")
            duration = task.get("duration")
            return Succeeded(artifact_location=task["result_url"], duration_seconds=float(duration) if duration else None)
        if state == "failed":
            return Failed(reason=task.get("failed_message") or "a2e task failed")
        return StillRunning()
