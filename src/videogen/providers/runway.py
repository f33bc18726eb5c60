import httpx

from videogen.config import settings
from videogen.errors import ProviderError
from videogen.providers.base import Failed, PollResult, ProviderAdapter, StillRunning, Succeeded, SubmitRequest

VEO3_MODEL = "veo3"
VEO3_DURATION_SEC = 8
GEN4_MODEL = "gen4_turbo"
GEN4_DURATIONS = (5, 10)
TALKING_PROMPT = "A person speaking naturally with realistic facial expressions and mouth movements"
MAX_PROMPT_CHARS = 1000

_PORTRAIT = "720:1280"
_LANDSCAPE = "1280:720"

_GEN4_RATIOS = {
    "16:9": "1280:720",
    "9:16": "720:1280",
    "1:1": "960:960",
    "4:3": "1104:832",
    "3:4": "832:1104",
    "21:9": "1584:672",
}


def to_runway_ratio(aspect_ratio: str) -> str:
    if aspect_ratio in {_PORTRAIT, _LANDSCAPE}:
        return aspect_ratio
    if aspect_ratio in {"16:9", "1280:768"}:
        return _LANDSCAPE
    return _PORTRAIT


def short_prompt(text: str, limit: int = MAX_PROMPT_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text.rfind(" ", 0, limit)
    return text[: cut if cut > limit // 2 else limit].rstrip()


class RunwayTextToVideo(ProviderAdapter):
    name = "runway"
    kinds = ("text-based",)
    output_duration_sec: float | None = float(VEO3_DURATION_SEC)

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(
            base_url=settings.runway_base_url,
            api_key=settings.runway_api_key,
            min_poll_delay=settings.runway_min_poll_delay_sec,
            max_processing_time=settings.runway_max_processing_sec,
            transport=transport,
        )

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderError("RUNWAY_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Runway-Version": settings.runway_api_version,
        }

    def _submit(self, request: SubmitRequest) -> str:
        prompt = short_prompt(request.prompt or request.script or request.title)
        if not prompt:
            raise ProviderError("prompt is empty")
        body = {
            "model": VEO3_MODEL,
            "promptText": prompt,
            "duration": VEO3_DURATION_SEC,
            "ratio": to_runway_ratio(request.aspect_ratio),
        }
        if request.seed is not None:
            body["seed"] = int(request.seed)
        data = self._request("POST", "/v1/text_to_video", json=body).json()
        return data["id"]

    def _poll(self, task_id: str) -> PollResult:
        task = self._request("GET", f"/v1/tasks/{task_id}").json()
        state = str(task.get("status") or "").upper()
        if state in {"SUCCEEDED", "COMPLETED"}:
            output = task.get("output") or []
            if not output:
                return Failed(reason="runway task succeeded without output")
            return Succeeded(artifact_location=output[0], duration_seconds=self.output_duration_sec)
        if state in {"FAILED", "CANCELLED"}:
            return Failed(reason=task.get("failure") or task.get("failureCode") or f"runway task {state.lower()}")
        return StillRunning(progress=task.get("progress"))

    def cancel(self, task_id: str) -> bool:
        self._request("DELETE", f"/v1/tasks/{task_id}")
        return True


def to_gen4_ratio(aspect_ratio: str) -> str:
    if aspect_ratio in _GEN4_RATIOS.values():
        return aspect_ratio
    return _GEN4_RATIOS.get(aspect_ratio, _PORTRAIT)


class RunwayImageToVideo(RunwayTextToVideo):
    """Gen-4 image-to-video for avatar jobs. Runway takes no audio track, so the result is silent."""

    name = "runway-image"
    kinds = ("avatar-based",)
    output_duration_sec = None

    def _submit(self, request: SubmitRequest) -> str:
        if not request.image_url:
            raise ProviderError("image_url is required")
        duration = int(request.duration or GEN4_DURATIONS[0])
        body = {
            "model": GEN4_MODEL,
            "promptImage": request.image_url,
            "promptText": short_prompt(request.prompt or TALKING_PROMPT),
            "ratio": to_gen4_ratio(request.aspect_ratio),
            "duration": min(GEN4_DURATIONS, key=lambda d: abs(d - duration)),
        }
        if request.seed is not None:
            body["seed"] = int(request.seed)
        data = self._request("POST", "/v1/image_to_video", json=body).json()
        return data["id"]
