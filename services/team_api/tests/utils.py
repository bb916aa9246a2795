from datetime import datetime, timedelta

from sqlalchemy import select

from team_api.auth import build_expiry, generate_raw_token, hash_password, hmac_sha256, utcnow
from team_api.models import (
    Invitation,
    InvitationKind,
    InvitationStatus,
    MemberCredits,
    Membership,
    Role,
    Session,
    Team,
    TeamCredits,
    User,
)
from team_api.settings import get_settings

DEFAULT_PASSWORD = "Passw0rd!"


async def create_user(
    session,
    email: str,
    name: str | None = None,
    password: str | None = DEFAULT_PASSWORD,
) -> User:
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password) if password else None,
    )
    session.add(user)
    await session.commit()
    return user


async def create_session_cookie(session, user_id: int) -> str:
    settings = get_settings()
    raw = generate_raw_token()
    session_hash = hmac_sha256(settings.session_secret, raw)
    expires_at = build_expiry(settings.session_ttl_seconds)
    record = Session(user_id=user_id, session_hash=session_hash, expires_at=expires_at)
    session.add(record)
    await session.commit()
    return raw


async def make_team(session, owner: User, name: str, slug: str) -> Team:
    team = Team(name=name, slug=slug, description=None, owner_id=owner.id)
    session.add(team)
    await session.flush()
    session.add(
        Membership(
            team_id=team.id,
            user_id=owner.id,
            role=Role.OWNER,
            joined_at=utcnow(),
            removed_at=None,
            removed_by=None,
        )
    )
    await session.commit()
    return team


async def add_member(
    session,
    team_id: int,
    user_id: int,
    role: Role = Role.MEMBER,
    joined_at: datetime | None = None,
    removed_at: datetime | None = None,
    removed_by: int | None = None,
) -> Membership:
    membership = Membership(
        team_id=team_id,
        user_id=user_id,
        role=role,
        joined_at=joined_at or utcnow(),
        removed_at=removed_at,
        removed_by=removed_by,
    )
    session.add(membership)
    await session.commit()
    return membership


async def make_invitation(
    session,
    team_id: int,
    invited_by: int,
    email: str,
    role: Role = Role.MEMBER,
    expires_at: datetime | None = None,
    status: InvitationStatus = InvitationStatus.PENDING,
    kind: InvitationKind = InvitationKind.EMAIL,
) -> tuple[str, Invitation]:
    settings = get_settings()
    raw = generate_raw_token()
    invitation = Invitation(
        team_id=team_id,
        email=email,
        role=role,
        kind=kind,
        invited_by=invited_by,
        token_hash=hmac_sha256(settings.invite_token_secret, raw),
        status=status,
        expires_at=expires_at or build_expiry(3600),
        accepted_at=None,
        accepted_by=None,
    )
    session.add(invitation)
    await session.commit()
    return raw, invitation


async def set_pool(session, team_id: int, total: int, used: int = 0) -> TeamCredits:
    pool = TeamCredits(team_id=team_id, total_credits=total, used_credits=used)
    session.add(pool)
    await session.commit()
    return pool


async def set_allocation(
    session, team_id: int, user_id: int, allocated: int, used: int = 0
) -> MemberCredits:
    row = MemberCredits(
        team_id=team_id, user_id=user_id, allocated_credits=allocated, used_credits=used
    )
    session.add(row)
    await session.commit()
    return row


async def fetch_pool(session, team_id: int) -> TeamCredits | None:
    result = await session.execute(select(TeamCredits).where(TeamCredits.team_id == team_id))
    return result.scalar_one_or_none()


async def fetch_allocation(session, team_id: int, user_id: int) -> MemberCredits | None:
    result = await session.execute(
        select(MemberCredits).where(
            MemberCredits.team_id == team_id, MemberCredits.user_id == user_id
        )
    )
    return result.scalar_one_or_none()


async def fetch_memberships(session, team_id: int, user_id: int) -> list[Membership]:
    result = await session.execute(
        select(Membership)
        .where(Membership.team_id == team_id, Membership.user_id == user_id)
        .order_by(Membership.id)
    )
    return list(result.scalars().all())


def utc_at(offset_seconds: int) -> datetime:
    return utcnow() + timedelta(seconds=offset_seconds)
