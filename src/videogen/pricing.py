import math

from videogen.config import settings


def estimate_credits(kind: str, text: str, duration: float | None = None) -> int:
    """Credits to reserve for one job: estimated minutes of speech times the per-minute rate for ``kind``."""
    if duration and duration > 0:
        minutes = duration / 60.0
    else:
        minutes = len(text.strip()) / max(settings.chars_per_minute, 1)
    rate = settings.credits_per_minute_avatar if kind == "avatar-based" else settings.credits_per_minute_text
    return max(1, math.ceil(minutes * rate))
