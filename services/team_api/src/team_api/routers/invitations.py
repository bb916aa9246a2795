from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.db.session import get_session
from team_api.invitations import (
    accept_invitation,
    create_batch_invitations,
    create_invitation,
    generate_shareable_link,
    get_invitation_by_token,
    list_invitations,
    revoke_invitation,
)
from team_api.models import Invitation, InvitationStatus, Role, User
from team_api.rbac import get_current_user
from team_api.repositories import audit_request
from team_api.routers.teams import member_out
from team_api.settings import get_settings
from team_api.teams import get_team_or_404

settings = get_settings()

router = APIRouter()


class InvitationCreateIn(BaseModel):
    email: EmailStr
    role: Role = Role.MEMBER


class BatchInvitationIn(BaseModel):
    # addresses are validated one by one so a bad entry does not reject the batch
    emails: list[str] = Field(min_length=1)
    role: Role = Role.MEMBER


def invitation_out(
    invitation: Invitation,
    status_value: InvitationStatus | None = None,
    inviter: User | None = None,
) -> dict:
    data = {
        "id": invitation.id,
        "team_id": invitation.team_id,
        "email": invitation.email,
        "role": invitation.role.value,
        "kind": invitation.kind.value,
        "status": (status_value or invitation.status).value,
        "expires_at": invitation.expires_at.isoformat(),
        "accepted_at": invitation.accepted_at.isoformat() if invitation.accepted_at else None,
    }
    if inviter is not None:
        data["inviter"] = {"name": inviter.name, "email": inviter.email}
    return data


@router.get("/teams/{slug}/invitations")
async def list_team_invitations(
    slug: str,
    include_inactive: bool = False,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    views = await list_invitations(session, current_user, team, include_inactive)
    return {
        "invitations": [
            invitation_out(view.invitation, view.status, view.inviter) for view in views
        ]
    }


@router.post("/teams/{slug}/invitations", status_code=status.HTTP_201_CREATED)
async def create_team_invitation(
    slug: str,
    payload: InvitationCreateIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    actor_id, team_id = current_user.id, team.id
    issued = await create_invitation(
        session, settings, current_user, team, payload.email, payload.role
    )
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=team_id,
        action="invitation.create",
        target_type="invitation",
        target_id=issued.invitation.id,
        payload={"role": issued.invitation.role.value},
    )
    data = {"invitation": invitation_out(issued.invitation)}
    # Dev-only: return the link directly.
    if settings.app_env.lower() == "dev":
        data["url"] = issued.url
    return data


@router.post("/teams/{slug}/invitations/batch")
async def create_team_invitation_batch(
    slug: str,
    payload: BatchInvitationIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    actor_id, team_id = current_user.id, team.id
    batch = await create_batch_invitations(
        session, settings, current_user, team, payload.emails, payload.role
    )
    summary = batch.summary
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=team_id,
        action="invitation.batch_create",
        target_type="team",
        target_id=team_id,
        payload=summary,
    )
    return {
        "results": [
            {
                "email": item.email,
                "status": item.status,
                "success": item.success,
                "error": item.error,
                "invitation_id": item.invitation_id,
            }
            for item in batch.results
        ],
        "summary": summary,
    }


@router.post("/teams/{slug}/invitations/link", status_code=status.HTTP_201_CREATED)
async def create_team_invitation_link(
    slug: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    issued = await generate_shareable_link(session, settings, current_user, team)
    await audit_request(
        session,
        request,
        actor_user_id=current_user.id,
        team_id=team.id,
        action="invitation.link_create",
        target_type="invitation",
        target_id=issued.invitation.id,
    )
    return {
        "invitation": invitation_out(issued.invitation),
        "url": issued.url,
        "expires_at": issued.invitation.expires_at.isoformat(),
    }


@router.delete(
    "/teams/{slug}/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT
)
async def revoke_team_invitation(
    slug: str,
    invitation_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    actor_id, team_id = current_user.id, team.id
    await revoke_invitation(session, current_user, team, invitation_id)
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=team_id,
        action="invitation.revoke",
        target_type="invitation",
        target_id=invitation_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/invitations/{token}")
async def invitation_details(token: str, session: AsyncSession = Depends(get_session)):
    details = await get_invitation_by_token(session, settings, token)
    return {
        "invitation": {
            "email": details.invitation.email,
            "role": details.invitation.role.value,
            "kind": details.invitation.kind.value,
            "expires_at": details.invitation.expires_at.isoformat(),
        },
        "team": {
            "name": details.team.name,
            "slug": details.team.slug,
            "description": details.team.description,
        },
        "inviter": (
            {"name": details.inviter.name, "email": details.inviter.email}
            if details.inviter is not None
            else None
        ),
    }


@router.post("/invitations/{token}")
async def accept_invitation_endpoint(
    token: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    actor_id = current_user.id
    membership = await accept_invitation(session, settings, current_user, token)
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=membership.team_id,
        action="invitation.accept",
        target_type="team_member",
        target_id=membership.id,
    )
    return {"status": "ok", "member": member_out(membership)}
