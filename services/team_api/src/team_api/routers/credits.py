from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.credits import (
    MemberBalance,
    allocate_to_member,
    auto_distribute,
    deduct_for_generation,
    get_member_balance,
    get_team_overview,
    initialize_team_credits,
    reassign_credits,
)
from team_api.db.session import get_session
from team_api.models import User
from team_api.rbac import get_current_user, require_team_access
from team_api.repositories import audit_request
from team_api.teams import get_team_or_404

router = APIRouter()


class AllocateIn(BaseModel):
    user_id: int
    amount: int = Field(gt=0)


class ReassignIn(BaseModel):
    from_user_id: int
    to_user_id: int
    amount: int = Field(gt=0)


class DeductIn(BaseModel):
    amount: int = Field(default=1, gt=0)


def balance_out(balance: MemberBalance) -> dict:
    return {
        "allocated": balance.allocated,
        "used": balance.used,
        "available": balance.available,
    }


@router.get("/teams/{slug}/credits")
async def credits_overview(
    slug: str,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    await require_team_access(session, team, current_user)
    team_id = team.id
    overview = await get_team_overview(session, team_id)
    if overview is None:
        await initialize_team_credits(session, team_id)
        overview = await get_team_overview(session, team_id)
    return {
        "team": {
            "total": overview.total,
            "used": overview.used,
            "available": overview.available,
            "allocated_total": overview.allocated_total,
            "unallocated": overview.unallocated,
        },
        "members": [
            {
                "user_id": member.user_id,
                "name": member.name,
                "email": member.email,
                "role": member.role.value,
                **balance_out(member.balance),
            }
            for member in overview.members
        ],
    }


@router.get("/teams/{slug}/credits/me")
async def my_credits(
    slug: str,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    await require_team_access(session, team, current_user)
    balance = await get_member_balance(session, team.id, current_user.id)
    return {"balance": balance_out(balance)}


@router.post("/teams/{slug}/credits/allocate")
async def allocate_credits(
    slug: str,
    payload: AllocateIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    actor_id, team_id = current_user.id, team.id
    balance = await allocate_to_member(
        session, current_user, team, payload.user_id, payload.amount
    )
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=team_id,
        action="credits.allocate",
        target_type="user",
        target_id=payload.user_id,
        payload={"amount": payload.amount},
    )
    return {"user_id": payload.user_id, "balance": balance_out(balance)}


@router.post("/teams/{slug}/credits/auto-distribute")
async def auto_distribute_credits(
    slug: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    actor_id, team_id = current_user.id, team.id
    allocations = await auto_distribute(session, current_user, team)
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=team_id,
        action="credits.auto_distribute",
        target_type="team",
        target_id=team_id,
        payload={
            "members": len(allocations),
            "per_member": allocations[0].amount if allocations else 0,
        },
    )
    return {
        "allocations": [
            {"user_id": allocation.user_id, "amount": allocation.amount}
            for allocation in allocations
        ]
    }


@router.post("/teams/{slug}/credits/reassign")
async def reassign_team_credits(
    slug: str,
    payload: ReassignIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    actor_id, team_id = current_user.id, team.id
    from_balance, to_balance = await reassign_credits(
        session,
        current_user,
        team,
        payload.from_user_id,
        payload.to_user_id,
        payload.amount,
    )
    await audit_request(
        session,
        request,
        actor_user_id=actor_id,
        team_id=team_id,
        action="credits.reassign",
        target_type="user",
        target_id=payload.to_user_id,
        payload={"from_user_id": payload.from_user_id, "amount": payload.amount},
    )
    return {"from": balance_out(from_balance), "to": balance_out(to_balance)}


@router.post("/teams/{slug}/credits/deduct")
async def deduct_credits(
    slug: str,
    payload: DeductIn,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    team = await get_team_or_404(session, slug)
    await require_team_access(session, team, current_user)
    balance = await deduct_for_generation(session, team.id, current_user.id, payload.amount)
    return {"balance": balance_out(balance)}
