import base64
import hashlib
import hmac
import json
import os
import time


SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
TTL_SECONDS = int(os.getenv("JWT_TTL_SECONDS", "86400"))  # 24h

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64url(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def _json_segment(obj: dict) -> str:
    return _b64url(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def _sign(signing_input: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()


def create_token(user_id: int, username: str, secret: str | None = None, ttl: int | None = None) -> str:
    now = int(time.time())
    payload = {
        "id": int(user_id),
        "username": username,
        "iat": now,
        "exp": now + int(ttl if ttl is not None else TTL_SECONDS),
    }
    signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
    sig = _sign(signing_input, secret or SECRET)
    return f"{signing_input}.{_b64url(sig)}"


def verify_token(token: str, secret: str | None = None) -> dict | None:
    """Payload of a valid, unexpired HS256 token; None otherwise."""
    try:
        header_b64, body_b64, sig_b64 = token.split(".")
        header = json.loads(_unb64url(header_b64).decode("utf-8"))
        if header.get("alg") != "HS256":
            return None
        expected = _sign(f"{header_b64}.{body_b64}", secret or SECRET)
        if not hmac.compare_digest(expected, _unb64url(sig_b64)):
            return None
        payload = json.loads(_unb64url(body_b64).decode("utf-8"))
        if int(payload.get("exp", 0)) < int(time.time()):
            return None
        if "id" not in payload:
            return None
        return payload
    except (ValueError, TypeError, AttributeError):
        return None
