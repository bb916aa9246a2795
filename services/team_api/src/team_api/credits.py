import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.auth import utcnow
from team_api.errors import (
    InsufficientCreditsError,
    NoAllocationError,
    NotFoundError,
    ValidationError,
)
from team_api.models import (
    MemberCredits,
    Membership,
    Payment,
    PaymentStatus,
    Role,
    Team,
    TeamCredits,
    User,
)
from team_api.rbac import load_active_membership, require_owner_or_admin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberBalance:
    allocated: int
    used: int

    @property
    def available(self) -> int:
        return self.allocated - self.used


@dataclass(frozen=True)
class MemberBreakdown:
    user_id: int
    name: str | None
    email: str
    role: Role
    balance: MemberBalance


@dataclass(frozen=True)
class TeamOverview:
    total: int
    used: int
    allocated_total: int
    members: list[MemberBreakdown]

    @property
    def available(self) -> int:
        return self.total - self.used

    @property
    def unallocated(self) -> int:
        return self.total - self.allocated_total


@dataclass(frozen=True)
class GrantResult:
    payment: Payment
    applied: bool


@dataclass(frozen=True)
class Allocation:
    user_id: int
    amount: int


def _insert_ignore(session: AsyncSession, model, values: dict, index_elements: list[str]):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise RuntimeError(f"unsupported database dialect: {dialect}")
    return stmt.values(**values).on_conflict_do_nothing(index_elements=index_elements)


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive whole number", code="invalid_amount")
    return amount


async def _ensure_pool(session: AsyncSession, team_id: int) -> None:
    await session.execute(
        _insert_ignore(
            session,
            TeamCredits,
            {"team_id": team_id, "total_credits": 0, "used_credits": 0},
            ["team_id"],
        )
    )


async def _add_allocation(session: AsyncSession, team_id: int, user_id: int, amount: int) -> None:
    await session.execute(
        _insert_ignore(
            session,
            MemberCredits,
            {"team_id": team_id, "user_id": user_id, "allocated_credits": 0, "used_credits": 0},
            ["team_id", "user_id"],
        )
    )
    await session.execute(
        update(MemberCredits)
        .where(MemberCredits.team_id == team_id, MemberCredits.user_id == user_id)
        .values(allocated_credits=MemberCredits.allocated_credits + amount)
        .execution_options(synchronize_session=False)
    )


async def _member_row(session: AsyncSession, team_id: int, user_id: int) -> MemberCredits | None:
    result = await session.execute(
        select(MemberCredits)
        .where(MemberCredits.team_id == team_id, MemberCredits.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _require_active_member(session: AsyncSession, team_id: int, user_id: int) -> None:
    if await load_active_membership(session, team_id, user_id) is None:
        raise NotFoundError("user is not an active member of this team")


async def initialize_team_credits(session: AsyncSession, team_id: int) -> TeamCredits:
    await _ensure_pool(session, team_id)
    await session.commit()
    result = await session.execute(
        select(TeamCredits)
        .where(TeamCredits.team_id == team_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def grant_credits(
    session: AsyncSession,
    team_id: int,
    amount: int,
    external_transaction_id: str,
    user_id: int | None = None,
    amount_charged: int = 0,
    currency: str = "usd",
) -> GrantResult:
    # a transaction first recorded as failed is applied when it later succeeds
    _require_positive(amount)
    if not external_transaction_id:
        raise ValidationError("external transaction id is required")
    if await session.get(Team, team_id) is None:
        raise NotFoundError("team not found")
    if user_id is not None and await session.get(User, user_id) is None:
        raise NotFoundError("user not found")

    await _ensure_pool(session, team_id)
    now = utcnow()
    payment = Payment(
        team_id=team_id,
        user_id=user_id,
        external_transaction_id=external_transaction_id,
        amount=amount_charged,
        currency=currency,
        credits_granted=amount,
        status=PaymentStatus.SUCCEEDED,
        completed_at=now,
    )
    session.add(payment)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        return await _replay_grant(session, external_transaction_id, now)

    await session.execute(
        update(TeamCredits)
        .where(TeamCredits.team_id == team_id)
        .values(total_credits=TeamCredits.total_credits + amount)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info(
        "credits granted team_id=%s payment_id=%s credits=%s",
        team_id,
        payment.id,
        amount,
    )
    return GrantResult(payment=payment, applied=True)


async def _replay_grant(
    session: AsyncSession, external_transaction_id: str, now
) -> GrantResult:
    result = await session.execute(
        select(Payment)
        .where(Payment.external_transaction_id == external_transaction_id)
        .execution_options(populate_existing=True)
    )
    existing = result.scalar_one()
    if existing.status is PaymentStatus.SUCCEEDED:
        logger.info("duplicate payment notification payment_id=%s", existing.id)
        return GrantResult(payment=existing, applied=False)

    upgraded = await session.execute(
        update(Payment)
        .where(Payment.id == existing.id, Payment.status != PaymentStatus.SUCCEEDED)
        .values(status=PaymentStatus.SUCCEEDED, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if upgraded.rowcount != 1:
        await session.rollback()
        await session.refresh(existing)
        return GrantResult(payment=existing, applied=False)

    await _ensure_pool(session, existing.team_id)
    await session.execute(
        update(TeamCredits)
        .where(TeamCredits.team_id == existing.team_id)
        .values(total_credits=TeamCredits.total_credits + existing.credits_granted)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(existing)
    logger.info(
        "credits granted team_id=%s payment_id=%s credits=%s",
        existing.team_id,
        existing.id,
        existing.credits_granted,
    )
    return GrantResult(payment=existing, applied=True)


async def record_failed_payment(
    session: AsyncSession,
    team_id: int,
    external_transaction_id: str,
    credits: int,
    user_id: int | None = None,
    amount_charged: int = 0,
    currency: str = "usd",
) -> Payment:
    if await session.get(Team, team_id) is None:
        raise NotFoundError("team not found")
    payment = Payment(
        team_id=team_id,
        user_id=user_id,
        external_transaction_id=external_transaction_id,
        amount=amount_charged,
        currency=currency,
        credits_granted=credits,
        status=PaymentStatus.FAILED,
        completed_at=None,
    )
    session.add(payment)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        result = await session.execute(
            select(Payment).where(Payment.external_transaction_id == external_transaction_id)
        )
        return result.scalar_one()
    logger.info("payment failed team_id=%s payment_id=%s", team_id, payment.id)
    return payment


async def allocate_to_member(
    session: AsyncSession,
    actor: User,
    team: Team,
    user_id: int,
    amount: int,
) -> MemberBalance:
    await require_owner_or_admin(session, team, actor)
    _require_positive(amount)
    team_id = team.id
    await _require_active_member(session, team_id, user_id)

    await _add_allocation(session, team_id, user_id, amount)
    await session.commit()
    logger.info(
        "credits allocated team_id=%s user_id=%s amount=%s",
        team_id,
        user_id,
        amount,
    )
    return await get_member_balance(session, team_id, user_id)


async def auto_distribute(session: AsyncSession, actor: User, team: Team) -> list[Allocation]:
    await require_owner_or_admin(session, team, actor)
    team_id = team.id
    await _ensure_pool(session, team_id)
    total = (
        await session.execute(
            select(TeamCredits.total_credits).where(TeamCredits.team_id == team_id)
        )
    ).scalar_one()
    member_ids = (
        await session.execute(
            select(Membership.user_id)
            .where(Membership.team_id == team_id, Membership.is_active)
            .order_by(Membership.joined_at, Membership.id)
        )
    ).scalars().all()

    if not member_ids:
        await session.commit()
        return []
    per_head = total // len(member_ids)
    if per_head == 0:
        await session.commit()
        return []

    for user_id in member_ids:
        await _add_allocation(session, team_id, user_id, per_head)
    await session.commit()
    logger.info(
        "credits auto-distributed team_id=%s members=%s per_member=%s",
        team_id,
        len(member_ids),
        per_head,
    )
    return [Allocation(user_id=user_id, amount=per_head) for user_id in member_ids]


async def deduct_for_generation(
    session: AsyncSession, team_id: int, user_id: int, amount: int = 1
) -> MemberBalance:
    _require_positive(amount)
    await _ensure_pool(session, team_id)
    await session.commit()

    result = await session.execute(
        update(MemberCredits)
        .where(
            MemberCredits.team_id == team_id,
            MemberCredits.user_id == user_id,
            MemberCredits.allocated_credits - MemberCredits.used_credits >= amount,
        )
        .values(used_credits=MemberCredits.used_credits + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        if await _member_row(session, team_id, user_id) is None:
            raise NoAllocationError("no credits have been allocated to this member")
        raise InsufficientCreditsError("not enough credits available")

    await session.execute(
        update(TeamCredits)
        .where(TeamCredits.team_id == team_id)
        .values(used_credits=TeamCredits.used_credits + amount)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("credits deducted team_id=%s user_id=%s amount=%s", team_id, user_id, amount)
    return await get_member_balance(session, team_id, user_id)


async def reassign_credits(
    session: AsyncSession,
    actor: User,
    team: Team,
    from_user_id: int,
    to_user_id: int,
    amount: int,
) -> tuple[MemberBalance, MemberBalance]:
    await require_owner_or_admin(session, team, actor)
    _require_positive(amount)
    if from_user_id == to_user_id:
        raise ValidationError("cannot reassign credits to the same member")
    team_id = team.id
    await _require_active_member(session, team_id, to_user_id)

    result = await session.execute(
        update(MemberCredits)
        .where(
            MemberCredits.team_id == team_id,
            MemberCredits.user_id == from_user_id,
            MemberCredits.allocated_credits - MemberCredits.used_credits >= amount,
        )
        .values(allocated_credits=MemberCredits.allocated_credits - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        if await _member_row(session, team_id, from_user_id) is None:
            raise NoAllocationError("source member has no credit allocation")
        raise InsufficientCreditsError("source member does not have enough available credits")

    await _add_allocation(session, team_id, to_user_id, amount)
    await session.commit()
    logger.info(
        "credits reassigned team_id=%s from=%s to=%s amount=%s",
        team_id,
        from_user_id,
        to_user_id,
        amount,
    )
    return (
        await get_member_balance(session, team_id, from_user_id),
        await get_member_balance(session, team_id, to_user_id),
    )


async def get_member_balance(session: AsyncSession, team_id: int, user_id: int) -> MemberBalance:
    row = await _member_row(session, team_id, user_id)
    if row is None:
        return MemberBalance(allocated=0, used=0)
    return MemberBalance(allocated=row.allocated_credits, used=row.used_credits)


async def get_team_overview(session: AsyncSession, team_id: int) -> TeamOverview | None:
    result = await session.execute(
        select(TeamCredits)
        .where(TeamCredits.team_id == team_id)
        .execution_options(populate_existing=True)
    )
    pool = result.scalar_one_or_none()
    if pool is None:
        return None

    allocated_total = (
        await session.execute(
            select(func.coalesce(func.sum(MemberCredits.allocated_credits), 0)).where(
                MemberCredits.team_id == team_id
            )
        )
    ).scalar_one()

    rows = await session.execute(
        select(Membership.user_id, User.name, User.email, Membership.role, MemberCredits)
        .join(User, User.id == Membership.user_id)
        .outerjoin(
            MemberCredits,
            (MemberCredits.team_id == Membership.team_id)
            & (MemberCredits.user_id == Membership.user_id),
        )
        .where(Membership.team_id == team_id, Membership.is_active)
        .order_by(Membership.joined_at, Membership.id)
        .execution_options(populate_existing=True)
    )
    members = [
        MemberBreakdown(
            user_id=user_id,
            name=name,
            email=email,
            role=role,
            balance=(
                MemberBalance(allocated=credits.allocated_credits, used=credits.used_credits)
                if credits is not None
                else MemberBalance(allocated=0, used=0)
            ),
        )
        for user_id, name, email, role, credits in rows.all()
    ]
    return TeamOverview(
        total=pool.total_credits,
        used=pool.used_credits,
        allocated_total=int(allocated_total),
        members=members,
    )

