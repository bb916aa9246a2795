import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt

from team_api.errors import ValidationError
from team_api.settings import Settings

PASSWORD_MIN_LENGTH = 8
# bcrypt ignores everything past 72 bytes
PASSWORD_MAX_BYTES = 72

_SPECIAL_RE = re.compile(r"[^A-Za-z0-9]")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hmac_sha256(secret: str, value: str) -> str:
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_raw_token() -> str:
    return secrets.token_urlsafe(32)


def build_expiry(seconds: int) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_password_strength(password: str) -> None:
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters",
            code="weak_password",
        )
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValidationError("password is too long", code="weak_password")
    if not any(ch.islower() for ch in password):
        raise ValidationError("password must contain a lowercase letter", code="weak_password")
    if not any(ch.isupper() for ch in password):
        raise ValidationError("password must contain an uppercase letter", code="weak_password")
    if not any(ch.isdigit() for ch in password):
        raise ValidationError("password must contain a digit", code="weak_password")
    if not _SPECIAL_RE.search(password):
        raise ValidationError("password must contain a special character", code="weak_password")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def session_cookie_kwargs(settings: Settings) -> dict:
    return {
        "key": settings.session_cookie_name,
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "max_age": settings.session_ttl_seconds,
        "path": "/",
    }


def clear_cookie_header(settings: Settings) -> dict[str, str]:
    samesite = settings.cookie_samesite.capitalize()
    parts = [
        f"{settings.session_cookie_name}=",
        "Path=/",
        "Max-Age=0",
        "Expires=Thu, 01 Jan 1970 00:00:00 GMT",
        "HttpOnly",
        f"SameSite={samesite}",
    ]
    if settings.cookie_secure:
        parts.append("Secure")
    return {"Set-Cookie": "; ".join(parts)}
