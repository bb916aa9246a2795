from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.auth import clear_cookie_header, hmac_sha256, utcnow
from team_api.db.session import get_session
from team_api.errors import ForbiddenError
from team_api.models import Membership, Role, Session, Team, User
from team_api.settings import get_settings


@dataclass(frozen=True)
class RoleCapabilities:
    manage_team: bool
    manage_members: bool
    grant_admin: bool


ROLE_CAPABILITIES: dict[Role, RoleCapabilities] = {
    Role.OWNER: RoleCapabilities(manage_team=True, manage_members=True, grant_admin=True),
    Role.ADMIN: RoleCapabilities(manage_team=False, manage_members=True, grant_admin=False),
    Role.MEMBER: RoleCapabilities(manage_team=False, manage_members=False, grant_admin=False),
}

ASSIGNABLE_ROLES = frozenset({Role.ADMIN, Role.MEMBER})


def _active(membership: Membership | None, team: Team, user_id: int) -> Membership | None:
    if membership is None:
        return None
    if membership.team_id != team.id or membership.user_id != user_id:
        return None
    if not membership.is_active:
        return None
    return membership


def is_team_owner(team: Team, user_id: int) -> bool:
    return team.owner_id == user_id


def has_team_access(team: Team, user_id: int, membership: Membership | None) -> bool:
    if is_team_owner(team, user_id):
        return True
    return _active(membership, team, user_id) is not None


def is_owner_or_admin(team: Team, user_id: int, membership: Membership | None) -> bool:
    if is_team_owner(team, user_id):
        return True
    active = _active(membership, team, user_id)
    if active is None:
        return False
    return ROLE_CAPABILITIES[active.role].manage_members


def can_grant_admin(team: Team, user_id: int, membership: Membership | None) -> bool:
    if is_team_owner(team, user_id):
        return True
    active = _active(membership, team, user_id)
    if active is None:
        return False
    return ROLE_CAPABILITIES[active.role].grant_admin


async def load_active_membership(
    session: AsyncSession, team_id: int, user_id: int
) -> Membership | None:
    result = await session.execute(
        select(Membership).where(
            Membership.team_id == team_id,
            Membership.user_id == user_id,
            Membership.is_active,
        )
    )
    return result.scalar_one_or_none()


async def require_team_access(session: AsyncSession, team: Team, user: User) -> Membership | None:
    membership = await load_active_membership(session, team.id, user.id)
    if not has_team_access(team, user.id, membership):
        raise ForbiddenError("not a member of this team")
    return membership


async def require_owner_or_admin(
    session: AsyncSession, team: Team, user: User
) -> Membership | None:
    membership = await load_active_membership(session, team.id, user.id)
    if not is_owner_or_admin(team, user.id, membership):
        raise ForbiddenError("owner or admin role required")
    return membership


def require_team_owner(team: Team, user: User) -> None:
    if not is_team_owner(team, user.id):
        raise ForbiddenError("only the team owner can do this")


async def get_current_user(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> User:
    settings = get_settings()
    raw_session = request.cookies.get(settings.session_cookie_name)
    if not raw_session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    session_hash = hmac_sha256(settings.session_secret, raw_session)
    now = utcnow()
    result = await session.execute(
        select(Session).where(
            Session.session_hash == session_hash,
            Session.expires_at > now,
        )
    )
    session_row = result.scalar_one_or_none()
    if not session_row:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
            headers=clear_cookie_header(settings),
        )

    user = await session.get(User, session_row.user_id)
    if not user:
        await session.delete(session_row)
        await session.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unknown user",
            headers=clear_cookie_header(settings),
        )
    return user
