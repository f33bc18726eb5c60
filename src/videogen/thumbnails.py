import logging
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def extract_thumbnail(video: bytes, ffmpeg_bin: str = "ffmpeg", at_sec: float = 0.1) -> bytes | None:
    """First-frame JPEG of ``video``, or None when ffmpeg is unavailable or fails."""
    if not shutil.which(ffmpeg_bin):
        logger.info("ffmpeg not available; skipping thumbnail")
        return None

    with tempfile.TemporaryDirectory(prefix="videogen-thumb-") as tmp:
        src = Path(tmp) / "input.mp4"
        out = Path(tmp) / "thumb.jpg"
        src.write_bytes(video)
        cmd = [ffmpeg_bin, "-y", "-ss", str(at_sec), "-i", str(src), "-frames:v", "1", "-q:v", "3", str(out)]
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("thumbnail extraction failed: %s", exc)
            return None
        if p.returncode != 0 or not out.exists():
            logger.warning(
                "thumbnail extraction failed",
                extra={"cmd": " ".join(shlex.quote(c) for c in cmd), "stderr": (p.stderr or "")[-500:]},
            )
            return None
        return out.read_bytes()


def read_duration(video: bytes, ffprobe_bin: str = "ffprobe") -> float | None:
    """Container duration of ``video`` in seconds, or None when ffprobe is unavailable or can't tell."""
    if not shutil.which(ffprobe_bin):
        logger.info("ffprobe not available; skipping duration check")
        return None

    with tempfile.NamedTemporaryFile(prefix="videogen-dur-", suffix=".mp4") as src:
        src.write(video)
        src.flush()
        cmd = [
            ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            src.name,
        ]
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("duration check failed: %s", exc)
            return None
    if p.returncode != 0:
        logger.warning("duration check failed", extra={"stderr": (p.stderr or "")[-500:]})
        return None
    try:
        seconds = float(p.stdout.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None
