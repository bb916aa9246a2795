import hashlib
import hmac
import time

from fastapi import HTTPException, Request, status

from team_api.settings import get_settings

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
NONCE_HEADER = "X-Nonce"


def body_sha256(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def canonical_string(method: str, path: str, timestamp: str, nonce: str, body_hash: str) -> str:
    return "\n".join([method, path, timestamp, nonce, body_hash])


def sign(secret: str, method: str, path: str, timestamp: str, nonce: str, body: bytes) -> str:
    canonical = canonical_string(method.upper(), path, timestamp, nonce, body_sha256(body))
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def _path_with_query(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        return f"{path}?{request.url.query}"
    return path


async def verify_payment_signature(request: Request) -> None:
    # no nonce cache: replayed notifications are absorbed by the idempotent grant
    settings = get_settings()
    signature = request.headers.get(SIGNATURE_HEADER)
    timestamp = request.headers.get(TIMESTAMP_HEADER)
    nonce = request.headers.get(NONCE_HEADER)
    if not signature or not timestamp or not nonce:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="missing signature headers"
        )

    try:
        timestamp_int = int(timestamp)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid timestamp")

    now = int(time.time())
    if abs(now - timestamp_int) > settings.payment_clock_skew_seconds:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="timestamp out of range"
        )

    body = await request.body()
    expected = sign(
        settings.payment_webhook_secret,
        request.method,
        _path_with_query(request),
        timestamp,
        nonce,
        body,
    )
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")
