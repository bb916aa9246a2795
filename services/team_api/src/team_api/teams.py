import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.auth import utcnow
from team_api.errors import (
    ForbiddenError,
    InvalidTargetError,
    NotFoundError,
    SlugConflictError,
    ValidationError,
)
from team_api.models import (
    AuditLog,
    Invitation,
    InvitationStatus,
    MemberCredits,
    Membership,
    Payment,
    Role,
    Team,
    TeamCredits,
    User,
)
from team_api.rbac import (
    ASSIGNABLE_ROLES,
    can_grant_admin,
    is_owner_or_admin,
    load_active_membership,
    require_team_access,
    require_team_owner,
)

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 255
DESCRIPTION_MAX_LENGTH = 1000
ACTIVITY_WINDOW_DAYS = 7

_NAME_RE = re.compile(r"^[a-zA-Z0-9\s-]+$")
_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")


def validate_team_name(name: str) -> str:
    name = name.strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationError(
            f"team name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters",
            code="invalid_name",
        )
    if not _NAME_RE.match(name):
        raise ValidationError(
            "team name can only contain letters, numbers, spaces, and hyphens",
            code="invalid_name",
        )
    return name


def validate_slug(slug: str) -> str:
    if not NAME_MIN_LENGTH <= len(slug) <= NAME_MAX_LENGTH:
        raise ValidationError(
            f"slug must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters",
            code="invalid_slug",
        )
    if not _SLUG_RE.match(slug):
        raise ValidationError(
            "slug can only contain lowercase letters, numbers, and hyphens, "
            "and must start and end with a letter or number",
            code="invalid_slug",
        )
    return slug


def validate_description(description: str | None) -> str | None:
    if description is None:
        return None
    description = description.strip()
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            code="invalid_description",
        )
    return description or None


async def create_team(
    session: AsyncSession,
    owner: User,
    name: str,
    slug: str,
    description: str | None = None,
) -> Team:
    name = validate_team_name(name)
    slug = validate_slug(slug)
    description = validate_description(description)

    existing = await get_team_by_slug(session, slug)
    if existing is not None:
        raise SlugConflictError("a team with this slug already exists")

    team = Team(name=name, slug=slug, description=description, owner_id=owner.id)
    session.add(team)
    try:
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
    except IntegrityError as exc:
        await session.rollback()
        raise SlugConflictError("a team with this slug already exists") from exc

    logger.info("team created team_id=%s owner_id=%s", team.id, owner.id)
    return team


async def list_active_teams_for_user(
    session: AsyncSession, user_id: int
) -> list[tuple[Team, Role]]:
    result = await session.execute(
        select(Team, Membership.role)
        .join(Membership, Membership.team_id == Team.id)
        .where(Membership.user_id == user_id, Membership.is_active)
        .order_by(Team.id)
    )
    return [(team, role) for team, role in result.all()]


async def get_team_by_slug(session: AsyncSession, slug: str) -> Team | None:
    result = await session.execute(select(Team).where(Team.slug == slug))
    return result.scalar_one_or_none()


async def get_team_or_404(session: AsyncSession, slug: str) -> Team:
    team = await get_team_by_slug(session, slug)
    if team is None:
        raise NotFoundError("team not found")
    return team


async def list_active_members(
    session: AsyncSession, team_id: int
) -> list[tuple[Membership, User]]:
    result = await session.execute(
        select(Membership, User)
        .join(User, User.id == Membership.user_id)
        .where(Membership.team_id == team_id, Membership.is_active)
        .order_by(Membership.joined_at, Membership.id)
    )
    return [(membership, user) for membership, user in result.all()]


async def _get_active_target(session: AsyncSession, team_id: int, member_id: int) -> Membership:
    result = await session.execute(
        select(Membership).where(
            Membership.id == member_id,
            Membership.team_id == team_id,
            Membership.is_active,
        )
    )
    target = result.scalar_one_or_none()
    if target is None:
        raise NotFoundError("member not found")
    return target


async def update_member_role(
    session: AsyncSession,
    actor: User,
    team: Team,
    member_id: int,
    new_role: Role,
) -> Membership:
    actor_membership = await load_active_membership(session, team.id, actor.id)
    if not is_owner_or_admin(team, actor.id, actor_membership):
        raise ForbiddenError("owner or admin role required")
    if new_role not in ASSIGNABLE_ROLES:
        raise ForbiddenError("the owner role cannot be assigned")
    if new_role is Role.ADMIN and not can_grant_admin(team, actor.id, actor_membership):
        raise ForbiddenError("only the owner can promote members to admin")

    target = await _get_active_target(session, team.id, member_id)
    if target.role is Role.OWNER or target.user_id == team.owner_id:
        raise InvalidTargetError("the owner's role cannot be changed")

    target.role = new_role
    await session.commit()
    logger.info(
        "member role updated team_id=%s member_id=%s role=%s",
        team.id,
        target.id,
        new_role.value,
    )
    return target


async def remove_member(
    session: AsyncSession,
    actor: User,
    team: Team,
    member_id: int,
) -> Membership:
    target = await _get_active_target(session, team.id, member_id)
    if target.role is Role.OWNER or target.user_id == team.owner_id:
        raise InvalidTargetError("the team owner cannot be removed")

    if target.user_id != actor.id:
        actor_membership = await load_active_membership(session, team.id, actor.id)
        if not is_owner_or_admin(team, actor.id, actor_membership):
            raise ForbiddenError("owner or admin role required")

    now = utcnow()
    result = await session.execute(
        update(Membership)
        .where(Membership.id == target.id, Membership.removed_at.is_(None))
        .values(removed_at=now, removed_by=actor.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise NotFoundError("member not found")
    await session.commit()
    await session.refresh(target)
    logger.info(
        "member removed team_id=%s member_id=%s by=%s",
        team.id,
        target.id,
        actor.id,
    )
    return target


async def update_team_settings(
    session: AsyncSession,
    actor: User,
    team: Team,
    name: str | None = None,
    description: str | None = None,
) -> Team:
    require_team_owner(team, actor)
    if name is not None:
        team.name = validate_team_name(name)
    if description is not None:
        team.description = validate_description(description)
    await session.commit()
    logger.info("team settings updated team_id=%s", team.id)
    return team


async def delete_team(session: AsyncSession, actor: User, team: Team) -> None:
    require_team_owner(team, actor)
    team_id = team.id
    for model in (MemberCredits, TeamCredits, Payment, Invitation, Membership, AuditLog):
        await session.execute(delete(model).where(model.team_id == team_id))
    await session.execute(delete(Team).where(Team.id == team_id))
    await session.commit()
    logger.info("team deleted team_id=%s by=%s", team_id, actor.id)


@dataclass
class DashboardStats:
    total_teams: int
    active_invitations: int
    total_members: int
    recent_activity: int


@dataclass
class DailySignups:
    day: date
    signups: int


@dataclass
class TeamAnalytics:
    total_invitations: int
    total_members: int
    weekly_invitations: int
    weekly_joins: int
    daily: list[DailySignups] = field(default_factory=list)


async def _count(session: AsyncSession, stmt) -> int:
    result = await session.execute(stmt)
    return result.scalar_one() or 0


async def dashboard_stats(
    session: AsyncSession, user: User, now: datetime | None = None
) -> DashboardStats:
    now = now or utcnow()
    since = now - timedelta(days=ACTIVITY_WINDOW_DAYS)
    user_id = user.id
    owned = select(Team.id).where(Team.owner_id == user_id)
    member_of = select(Membership.team_id).where(
        Membership.user_id == user_id, Membership.is_active
    )
    total_teams = await _count(
        session,
        select(func.count(Team.id)).where(
            or_(Team.owner_id == user_id, Team.id.in_(member_of))
        ),
    )
    # stored pending rows past their expiry no longer count
    active_invitations = await _count(
        session,
        select(func.count(Invitation.id)).where(
            Invitation.team_id.in_(owned),
            Invitation.status == InvitationStatus.PENDING,
            Invitation.expires_at > now,
        ),
    )
    # the owner holds an active membership row in each owned team
    total_members = await _count(
        session,
        select(func.count(Membership.id)).where(
            Membership.team_id.in_(owned), Membership.is_active
        ),
    )
    recent_teams = await _count(
        session,
        select(func.count(Team.id)).where(Team.owner_id == user_id, Team.created_at >= since),
    )
    recent_invitations = await _count(
        session,
        select(func.count(Invitation.id)).where(
            Invitation.team_id.in_(owned), Invitation.created_at >= since
        ),
    )
    return DashboardStats(
        total_teams=total_teams,
        active_invitations=active_invitations,
        total_members=total_members,
        recent_activity=recent_teams + recent_invitations,
    )


async def team_analytics(
    session: AsyncSession, actor: User, team: Team, now: datetime | None = None
) -> TeamAnalytics:
    await require_team_access(session, team, actor)
    now = now or utcnow()
    since = now - timedelta(days=ACTIVITY_WINDOW_DAYS)
    team_id = team.id

    total_invitations = await _count(
        session, select(func.count(Invitation.id)).where(Invitation.team_id == team_id)
    )
    weekly_invitations = await _count(
        session,
        select(func.count(Invitation.id)).where(
            Invitation.team_id == team_id, Invitation.created_at >= since
        ),
    )
    total_members = await _count(
        session,
        select(func.count(Membership.id)).where(
            Membership.team_id == team_id, Membership.is_active
        ),
    )
    result = await session.execute(
        select(Membership.joined_at).where(
            Membership.team_id == team_id,
            Membership.is_active,
            Membership.joined_at >= since,
        )
    )
    joined = [joined_at.date() for (joined_at,) in result.all()]

    today = now.date()
    days = [today - timedelta(days=offset) for offset in range(ACTIVITY_WINDOW_DAYS - 1, -1, -1)]
    return TeamAnalytics(
        total_invitations=total_invitations,
        total_members=total_members,
        weekly_invitations=weekly_invitations,
        weekly_joins=len(joined),
        daily=[DailySignups(day=day, signups=joined.count(day)) for day in days],
    )
