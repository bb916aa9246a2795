import json
import logging

from fastapi import Request
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.auth import (
    build_expiry,
    generate_raw_token,
    hash_password,
    hmac_sha256,
    normalize_email,
    validate_password_strength,
    verify_password,
)
from team_api.errors import EmailTakenError, ValidationError
from team_api.models import AuditLog, Session, User
from team_api.settings import Settings

logger = logging.getLogger(__name__)


class InvalidCredentialsError(Exception):
    pass


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def signup(
    session: AsyncSession,
    name: str | None,
    email: str,
    password: str,
) -> User:
    validate_password_strength(password)
    if name is not None:
        name = name.strip() or None
    if name is not None and len(name) > 255:
        raise ValidationError("name must be at most 255 characters")

    user = User(
        name=name,
        email=normalize_email(email),
        password_hash=hash_password(password),
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise EmailTakenError("an account with this email already exists") from exc
    logger.info("user signed up user_id=%s", user.id)
    return user


async def authenticate(session: AsyncSession, email: str, password: str) -> User:
    user = await get_user_by_email(session, email)
    if user is None or not verify_password(password, user.password_hash):
        raise InvalidCredentialsError()
    return user


async def open_login_session(session: AsyncSession, settings: Settings, user_id: int) -> str:
    raw_session = generate_raw_token()
    session.add(
        Session(
            user_id=user_id,
            session_hash=hmac_sha256(settings.session_secret, raw_session),
            expires_at=build_expiry(settings.session_ttl_seconds),
        )
    )
    await session.commit()
    return raw_session


async def close_login_session(session: AsyncSession, settings: Settings, raw_session: str) -> None:
    session_hash = hmac_sha256(settings.session_secret, raw_session)
    await session.execute(delete(Session).where(Session.session_hash == session_hash))
    await session.commit()


async def write_audit_log(
    session: AsyncSession,
    actor_user_id: int | None,
    team_id: int | None,
    action: str,
    target_type: str,
    target_id: int | None,
    payload_json: str,
    ip: str | None,
    user_agent: str | None,
) -> AuditLog:
    entry = AuditLog(
        actor_user_id=actor_user_id,
        team_id=team_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload_json=payload_json,
        ip=ip,
        user_agent=user_agent,
    )
    session.add(entry)
    await session.commit()
    return entry


async def audit_request(
    session: AsyncSession,
    request: Request,
    actor_user_id: int | None,
    team_id: int | None,
    action: str,
    target_type: str,
    target_id: int | None,
    payload: dict | None = None,
) -> AuditLog:
    return await write_audit_log(
        session=session,
        actor_user_id=actor_user_id,
        team_id=team_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload_json=json.dumps(payload or {}),
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
