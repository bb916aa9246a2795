from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.db.session import get_session
from team_api.models import Membership, Role, Team, User
from team_api.rbac import get_current_user, require_team_access
from team_api.repositories import audit_request
from team_api.teams import (
    TeamAnalytics,
    create_team,
    dashboard_stats,
    delete_team,
    get_team_or_404,
    list_active_members,
    list_active_teams_for_user,
    remove_member,
    team_analytics,
    update_member_role,
    update_team_settings,
)

router = APIRouter()


class TeamCreateIn(BaseModel):
    name: str = Field(max_length=255)
    slug: str = Field(max_length=255)
    description: str | None = Field(default=None, max_length=1000)


class TeamUpdateIn(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=1000)


class MemberRoleIn(BaseModel):
    role: Role


def team_out(team: Team, role: Role | None = None) -> dict:
    data = {
        "id": team.id,
        "name": team.name,
        "slug": team.slug,
        "description": team.description,
        "owner_id": team.owner_id,
        "created_at": team.created_at.isoformat() if team.created_at else None,
    }
    if role is not None:
        data["role"] = role.value
    return data


def member_out(membership: Membership, user: User | None = None) -> dict:
    data = {
        "id": membership.id,
        "user_id": membership.user_id,
        "role": membership.role.value,
        "joined_at": membership.joined_at.isoformat(),
        "removed_at": membership.removed_at.isoformat() if membership.removed_at else None,
    }
    if user is not None:
        data["name"] = user.name
        data["email"] = user.email
    return data


@router.get("/teams")
async def list_teams(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    teams = await list_active_teams_for_user(session, current_user.id)
    return {"teams": [team_out(team, role) for team, role in teams]}


@router.post("/teams", status_code=status.HTTP_201_CREATED)
async def create_team_endpoint(
    payload: TeamCreateIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await create_team(
        session, current_user, payload.name, payload.slug, payload.description
    )
    await audit_request(
        session,
        request,
        actor_user_id=current_user.id,
        team_id=team.id,
        action="team.create",
        target_type="team",
        target_id=team.id,
        payload={"slug": team.slug},
    )
    await session.refresh(team)
    return {"team": team_out(team, Role.OWNER)}


@router.get("/teams/{slug}")
async def get_team(
    slug: str,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    membership = await require_team_access(session, team, current_user)
    members = await list_active_members(session, team.id)
    role = membership.role if membership is not None else Role.OWNER
    return {
        "team": team_out(team, role),
        "members": [member_out(m, user) for m, user in members],
    }


@router.patch("/teams/{slug}")
async def update_team(
    slug: str,
    payload: TeamUpdateIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    team = await update_team_settings(
        session, current_user, team, name=payload.name, description=payload.description
    )
    await audit_request(
        session,
        request,
        actor_user_id=current_user.id,
        team_id=team.id,
        action="team.update",
        target_type="team",
        target_id=team.id,
        payload=payload.model_dump(exclude_none=True),
    )
    await session.refresh(team)
    return {"team": team_out(team)}


@router.delete("/teams/{slug}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_team_endpoint(
    slug: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    team_id, team_slug = team.id, team.slug
    await delete_team(session, current_user, team)
    await audit_request(
        session,
        request,
        actor_user_id=current_user.id,
        team_id=None,
        action="team.delete",
        target_type="team",
        target_id=team_id,
        payload={"slug": team_slug},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/teams/{slug}/members/{member_id}")
async def update_member(
    slug: str,
    member_id: int,
    payload: MemberRoleIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    membership = await update_member_role(session, current_user, team, member_id, payload.role)
    await audit_request(
        session,
        request,
        actor_user_id=current_user.id,
        team_id=team.id,
        action="member.role_update",
        target_type="team_member",
        target_id=membership.id,
        payload={"role": payload.role.value},
    )
    return {"member": member_out(membership)}


@router.delete("/teams/{slug}/members/{member_id}")
async def remove_member_endpoint(
    slug: str,
    member_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    membership = await remove_member(session, current_user, team, member_id)
    await audit_request(
        session,
        request,
        actor_user_id=current_user.id,
        team_id=team.id,
        action="member.remove",
        target_type="team_member",
        target_id=membership.id,
        payload={"user_id": membership.user_id},
    )
    return {"member": member_out(membership)}


def analytics_out(analytics: TeamAnalytics) -> dict:
    return {
        "totals": {
            "invitations": analytics.total_invitations,
            "members": analytics.total_members,
        },
        "weekly": {
            "invitations": analytics.weekly_invitations,
            "joins": analytics.weekly_joins,
        },
        "daily": [
            {"date": entry.day.isoformat(), "signups": entry.signups}
            for entry in analytics.daily
        ],
    }


@router.get("/dashboard/stats")
async def get_dashboard_stats(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    stats = await dashboard_stats(session, current_user)
    return {
        "stats": {
            "total_teams": stats.total_teams,
            "active_invitations": stats.active_invitations,
            "total_members": stats.total_members,
            "recent_activity": stats.recent_activity,
        }
    }


@router.get("/teams/{slug}/analytics")
async def get_team_analytics(
    slug: str,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    analytics = await team_analytics(session, current_user, team)
    return analytics_out(analytics)
