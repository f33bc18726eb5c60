import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from videogen.config import settings
from videogen.errors import ArtifactPersistError, Unauthorized


@dataclass
class VerificationResult:
    valid: bool
    credits: int
    reference_id: str | None = None


class ArtifactStore(Protocol):
    def upload(self, data: bytes, metadata: dict) -> str:
        ...

    def delete(self, url: str) -> None:
        ...


class Authenticator(Protocol):
    def verify(self, token: str) -> str:
        ...


class PurchaseVerifier(Protocol):
    def verify(self, receipt: dict) -> VerificationResult:
        ...


class SpeechSynthesizer(Protocol):
    def synthesize(self, text: str, voice: str) -> str:
        ...


_EXTENSIONS = {"video/mp4": ".mp4", "image/jpeg": ".jpg", "image/png": ".png"}


class LocalArtifactStore:
    """Stores artifacts on local disk and serves them under ``artifact_base_url``."""

    def __init__(self, root: str | None = None, base_url: str | None = None) -> None:
        self.root = Path(root or settings.artifact_dir)
        self.base_url = (base_url or settings.artifact_base_url).rstrip("/")

    def upload(self, data: bytes, metadata: dict) -> str:
        folder = str(metadata.get("folder") or "videos").strip("/")
        ext = _EXTENSIONS.get(str(metadata.get("content_type") or "video/mp4"), ".bin")
        name = f"{metadata.get('job_id') or 'artifact'}_{uuid4().hex[:12]}{ext}"
        target = self.root / folder / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise ArtifactPersistError(f"artifact_write_failed: {exc}") from exc
        return f"{self.base_url}/{folder}/{name}"

    def delete(self, url: str) -> None:
        if not url.startswith(self.base_url + "/"):
            return
        path = self.root / url[len(self.base_url) + 1 :]
        path.unlink(missing_ok=True)


def create_signed_token(user_id: str, secret: str, ttl_seconds: int | None = None) -> str:
    ttl = settings.auth_token_ttl_sec if ttl_seconds is None else ttl_seconds
    payload = {"sub": user_id, "exp": int(time.time() + ttl)}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"{base64.urlsafe_b64encode(raw).decode('utf-8')}.{sig}"


class SignedTokenAuthenticator:
    def __init__(self, secret: str | None = None) -> None:
        self.secret = secret or settings.auth_secret

    def verify(self, token: str) -> str:
        try:
            payload_b64, sig = token.split(".", 1)
            raw = base64.urlsafe_b64decode(payload_b64.encode("utf-8"))
        except ValueError as exc:
            raise Unauthorized("malformed_token") from exc
        expected = hmac.new(self.secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, sig):
            raise Unauthorized("bad_signature")
        payload = json.loads(raw.decode("utf-8"))
        if int(payload.get("exp", 0)) < int(time.time()):
            raise Unauthorized("token_expired")
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthorized("missing_subject")
        return str(user_id)
