import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

from passlib.context import CryptContext

# pbkdf2 keeps passlib independent of the bcrypt backend version
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(raw: str) -> str:
    return pwd_context.hash(raw)


def verify_password(raw: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(raw, hashed)
    except (ValueError, TypeError):
        return False


# ---------- Session tokens ----------
def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def compute_signature(secret: str, body: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_token(secret: str, payload: Dict[str, Any]) -> str:
    body = _b64(json.dumps(payload, sort_keys=True).encode("utf-8"))
    return f"{body}.{compute_signature(secret, body)}"


def read_token(secret: str, token: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Return the payload of a valid, unexpired token, else None."""
    try:
        body, sig = token.split(".", 1)
    except ValueError:
        return None
    if not hmac.compare_digest(sig, compute_signature(secret, body)):
        return None
    try:
        payload = json.loads(_unb64(body))
    except (ValueError, UnicodeDecodeError):
        return None
    if payload.get("exp", 0) < (now if now is not None else time.time()):
        return None
    return payload
