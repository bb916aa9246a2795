import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.auth import build_expiry, generate_raw_token, hmac_sha256, normalize_email, utcnow
from team_api.emailer import InvitationEmail, send_invitation, send_invitation_batch
from team_api.errors import (
    AlreadyAcceptedError,
    AlreadyMemberError,
    DuplicatePendingInvitationError,
    EmailDeliveryError,
    EmailMismatchError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    RecentlyRemovedError,
    TeamApiError,
    ValidationError,
)
from team_api.models import (
    Invitation,
    InvitationKind,
    InvitationStatus,
    Membership,
    Role,
    Team,
    User,
)
from team_api.rbac import ASSIGNABLE_ROLES, load_active_membership, require_owner_or_admin
from team_api.repositories import get_user_by_email
from team_api.settings import Settings

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
LINK_PLACEHOLDER_DOMAIN = "placeholder.local"

BATCH_SENT = "sent"
BATCH_ALREADY_MEMBER = "already_member"
BATCH_ALREADY_INVITED = "already_invited"
BATCH_EMAIL_FAILED = "email_failed"
BATCH_ERROR = "error"


@dataclass
class IssuedInvitation:
    invitation: Invitation
    token: str
    url: str


@dataclass
class InvitationDetails:
    invitation: Invitation
    team: Team
    inviter: User | None


@dataclass
class InvitationView:
    invitation: Invitation
    status: InvitationStatus
    inviter: User | None


@dataclass
class BatchItemResult:
    email: str
    status: str
    success: bool = False
    error: str | None = None
    invitation_id: int | None = None


@dataclass
class BatchResult:
    results: list[BatchItemResult] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        statuses = [item.status for item in self.results]
        successful = statuses.count(BATCH_SENT)
        return {
            "total": len(statuses),
            "successful": successful,
            "failed": len(statuses) - successful,
            "already_members": statuses.count(BATCH_ALREADY_MEMBER),
            "already_invited": statuses.count(BATCH_ALREADY_INVITED),
            "email_failed": statuses.count(BATCH_EMAIL_FAILED),
        }


def effective_status(invitation: Invitation, now: datetime) -> InvitationStatus:
    if invitation.status is InvitationStatus.PENDING and invitation.expires_at <= now:
        return InvitationStatus.EXPIRED
    return invitation.status


def invitation_url(settings: Settings, token: str) -> str:
    return f"{settings.app_base_url}/invitations/{token}"


def validate_email(email: str) -> str:
    email = normalize_email(email)
    if not EMAIL_RE.match(email) or len(email) > 320:
        raise ValidationError("invalid email address", code="invalid_email")
    return email


def _assignable(role: Role) -> Role:
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError("invitations can only grant admin or member", code="invalid_role")
    return role


def _link_placeholder_email() -> str:
    return f"link-invite-{uuid.uuid4().hex}@{LINK_PLACEHOLDER_DOMAIN}"


async def _clear_way_for(
    session: AsyncSession, settings: Settings, team_id: int, email: str, now: datetime
) -> int | None:
    # returns the user whose removed memberships are past the cooldown
    user = await get_user_by_email(session, email)
    if user is None:
        return None
    if await load_active_membership(session, team_id, user.id) is not None:
        raise AlreadyMemberError("user is already a team member")

    result = await session.execute(
        select(Membership.removed_at)
        .where(
            Membership.team_id == team_id,
            Membership.user_id == user.id,
            Membership.removed_at.is_not(None),
        )
        .order_by(Membership.removed_at.desc())
        .limit(1)
    )
    last_removed_at = result.scalar_one_or_none()
    if last_removed_at is None:
        return None
    if now - last_removed_at < timedelta(seconds=settings.rejoin_cooldown_seconds):
        raise RecentlyRemovedError("user was removed from this team recently")
    return user.id


async def _purge_removed_memberships(session: AsyncSession, team_id: int, user_id: int) -> None:
    await session.execute(
        delete(Membership).where(
            Membership.team_id == team_id,
            Membership.user_id == user_id,
            Membership.removed_at.is_not(None),
        )
    )


async def _expire_stale_pending(
    session: AsyncSession, team_id: int, email: str, now: datetime
) -> None:
    await session.execute(
        update(Invitation)
        .where(
            Invitation.team_id == team_id,
            Invitation.email == email,
            Invitation.status == InvitationStatus.PENDING,
            Invitation.expires_at <= now,
        )
        .values(status=InvitationStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )


async def _has_pending(session: AsyncSession, team_id: int, email: str) -> bool:
    result = await session.execute(
        select(Invitation.id).where(
            Invitation.team_id == team_id,
            Invitation.email == email,
            Invitation.status == InvitationStatus.PENDING,
        )
    )
    return result.first() is not None


async def _insert_invitation(
    session: AsyncSession,
    settings: Settings,
    team_id: int,
    inviter_id: int,
    email: str,
    role: Role,
    kind: InvitationKind = InvitationKind.EMAIL,
) -> tuple[Invitation, str]:
    raw_token = generate_raw_token()
    invitation = Invitation(
        team_id=team_id,
        email=email,
        role=role,
        kind=kind,
        invited_by=inviter_id,
        token_hash=hmac_sha256(settings.invite_token_secret, raw_token),
        status=InvitationStatus.PENDING,
        expires_at=build_expiry(settings.invite_ttl_seconds),
        accepted_at=None,
        accepted_by=None,
    )
    session.add(invitation)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicatePendingInvitationError("an invitation is already pending") from exc
    return invitation, raw_token


async def _prepare_email_invitation(
    session: AsyncSession, settings: Settings, team_id: int, email: str, now: datetime
) -> int | None:
    try:
        purge_user_id = await _clear_way_for(session, settings, team_id, email, now)
        await _expire_stale_pending(session, team_id, email, now)
        if await _has_pending(session, team_id, email):
            raise DuplicatePendingInvitationError(
                "an invitation has already been sent to this email"
            )
    except TeamApiError:
        await session.rollback()
        raise
    return purge_user_id


async def create_invitation(
    session: AsyncSession,
    settings: Settings,
    actor: User,
    team: Team,
    email: str,
    role: Role = Role.MEMBER,
) -> IssuedInvitation:
    await require_owner_or_admin(session, team, actor)
    role = _assignable(role)
    email = validate_email(email)
    team_id, team_name = team.id, team.name
    inviter_id, inviter_name = actor.id, actor.display_name
    now = utcnow()

    purge_user_id = await _prepare_email_invitation(session, settings, team_id, email, now)
    invitation, raw_token = await _insert_invitation(
        session, settings, team_id, inviter_id, email, role
    )
    invitation_id = invitation.id
    url = invitation_url(settings, raw_token)

    try:
        send_invitation(
            settings,
            InvitationEmail(
                to=email,
                team_name=team_name,
                inviter_name=inviter_name,
                invitation_url=url,
            ),
        )
    except EmailDeliveryError:
        await session.execute(delete(Invitation).where(Invitation.id == invitation_id))
        await session.commit()
        logger.warning(
            "invitation rolled back after email failure team_id=%s invitation_id=%s",
            team_id,
            invitation_id,
        )
        raise

    # removed-membership history goes only once the invitation is delivered
    if purge_user_id is not None:
        await _purge_removed_memberships(session, team_id, purge_user_id)
        await session.commit()

    logger.info("invitation created team_id=%s invitation_id=%s", team_id, invitation_id)
    return IssuedInvitation(invitation=invitation, token=raw_token, url=url)


async def create_batch_invitations(
    session: AsyncSession,
    settings: Settings,
    actor: User,
    team: Team,
    emails: list[str],
    role: Role = Role.MEMBER,
) -> BatchResult:
    await require_owner_or_admin(session, team, actor)
    role = _assignable(role)
    if not emails:
        raise ValidationError("at least one email is required")
    if len(emails) > settings.batch_invite_max:
        raise ValidationError(f"at most {settings.batch_invite_max} emails per batch")

    batch = BatchResult()
    valid: list[tuple[BatchItemResult, str]] = []
    seen: set[str] = set()
    for raw_email in emails:
        try:
            email = validate_email(raw_email)
        except ValidationError as exc:
            batch.results.append(
                BatchItemResult(email=raw_email.strip(), status=BATCH_ERROR, error=exc.message)
            )
            continue
        item = BatchItemResult(email=email, status=BATCH_SENT)
        batch.results.append(item)
        if email in seen:
            item.status = BATCH_ALREADY_INVITED
            item.error = "duplicate address in this batch"
            continue
        seen.add(email)
        valid.append((item, email))

    # a rejected item rolls the session back, which expires team and actor
    team_id, team_name = team.id, team.name
    inviter_id, inviter_name = actor.id, actor.display_name

    pending_emails: list[tuple[BatchItemResult, InvitationEmail, int | None]] = []
    for item, email in valid:
        now = utcnow()
        try:
            purge_user_id = await _prepare_email_invitation(
                session, settings, team_id, email, now
            )
            invitation, raw_token = await _insert_invitation(
                session, settings, team_id, inviter_id, email, role
            )
        except AlreadyMemberError as exc:
            item.status, item.error = BATCH_ALREADY_MEMBER, exc.message
            continue
        except DuplicatePendingInvitationError as exc:
            item.status, item.error = BATCH_ALREADY_INVITED, exc.message
            continue
        except TeamApiError as exc:
            item.status, item.error = BATCH_ERROR, exc.message
            continue
        item.invitation_id = invitation.id
        pending_emails.append(
            (
                item,
                InvitationEmail(
                    to=email,
                    team_name=team_name,
                    inviter_name=inviter_name,
                    invitation_url=invitation_url(settings, raw_token),
                ),
                purge_user_id,
            )
        )

    if pending_emails:
        outcomes = send_invitation_batch(
            settings, [message for _, message, _ in pending_emails]
        )
        by_recipient = {outcome.to: outcome for outcome in outcomes}
        purged = False
        for item, message, purge_user_id in pending_emails:
            outcome = by_recipient.get(message.to)
            if outcome is not None and outcome.success:
                item.status, item.success = BATCH_SENT, True
                if purge_user_id is not None:
                    await _purge_removed_memberships(session, team_id, purge_user_id)
                    purged = True
            else:
                item.status = BATCH_EMAIL_FAILED
                item.error = "invitation created but email failed"
                if outcome is not None and outcome.error:
                    item.error = f"{item.error}: {outcome.error}"
        if purged:
            await session.commit()

    summary = batch.summary
    logger.info(
        "batch invitations team_id=%s total=%s successful=%s",
        team_id,
        summary["total"],
        summary["successful"],
    )
    return batch


async def generate_shareable_link(
    session: AsyncSession, settings: Settings, actor: User, team: Team
) -> IssuedInvitation:
    await require_owner_or_admin(session, team, actor)
    invitation, raw_token = await _insert_invitation(
        session,
        settings,
        team.id,
        actor.id,
        _link_placeholder_email(),
        Role.MEMBER,
        kind=InvitationKind.LINK,
    )
    logger.info("shareable link created team_id=%s invitation_id=%s", team.id, invitation.id)
    return IssuedInvitation(
        invitation=invitation, token=raw_token, url=invitation_url(settings, raw_token)
    )


async def _find_by_token(session: AsyncSession, settings: Settings, token: str) -> Invitation:
    token_hash = hmac_sha256(settings.invite_token_secret, token)
    result = await session.execute(select(Invitation).where(Invitation.token_hash == token_hash))
    invitation = result.scalar_one_or_none()
    if invitation is None:
        raise NotFoundError("invitation not found")
    return invitation


async def _mark_expired(session: AsyncSession, invitation: Invitation) -> None:
    await session.execute(
        update(Invitation)
        .where(Invitation.id == invitation.id, Invitation.status == InvitationStatus.PENDING)
        .values(status=InvitationStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    invitation.status = InvitationStatus.EXPIRED


async def _usable(session: AsyncSession, invitation: Invitation, now: datetime) -> None:
    status = effective_status(invitation, now)
    if status is InvitationStatus.ACCEPTED:
        raise AlreadyAcceptedError("invitation has already been accepted")
    if status is InvitationStatus.EXPIRED:
        if invitation.status is InvitationStatus.PENDING:
            await _mark_expired(session, invitation)
        raise ExpiredError("invitation has expired")


async def get_invitation_by_token(
    session: AsyncSession, settings: Settings, token: str
) -> InvitationDetails:
    invitation = await _find_by_token(session, settings, token)
    await _usable(session, invitation, utcnow())
    team = await session.get(Team, invitation.team_id)
    if team is None:
        raise NotFoundError("team not found")
    inviter = await session.get(User, invitation.invited_by)
    return InvitationDetails(invitation=invitation, team=team, inviter=inviter)


async def accept_invitation(
    session: AsyncSession, settings: Settings, actor: User, token: str
) -> Membership:
    invitation = await _find_by_token(session, settings, token)
    now = utcnow()
    await _usable(session, invitation, now)

    actor_id = actor.id
    if invitation.kind is InvitationKind.EMAIL and normalize_email(actor.email) != invitation.email:
        raise EmailMismatchError("this invitation was sent to a different email address")
    if await load_active_membership(session, invitation.team_id, actor_id) is not None:
        raise AlreadyMemberError("you are already a member of this team")

    claimed = await session.execute(
        update(Invitation)
        .where(
            Invitation.id == invitation.id,
            Invitation.status == InvitationStatus.PENDING,
            Invitation.expires_at > now,
        )
        .values(status=InvitationStatus.ACCEPTED, accepted_at=now, accepted_by=actor_id)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await session.rollback()
        await session.refresh(invitation)
        if effective_status(invitation, now) is InvitationStatus.ACCEPTED:
            raise AlreadyAcceptedError("invitation has already been accepted")
        raise ExpiredError("invitation has expired")

    await _purge_removed_memberships(session, invitation.team_id, actor_id)
    membership = Membership(
        team_id=invitation.team_id,
        user_id=actor_id,
        role=invitation.role,
        joined_at=now,
        removed_at=None,
        removed_by=None,
    )
    session.add(membership)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise AlreadyMemberError("you are already a member of this team") from exc

    invitation.status = InvitationStatus.ACCEPTED
    invitation.accepted_at = now
    invitation.accepted_by = actor_id
    logger.info(
        "invitation accepted team_id=%s invitation_id=%s user_id=%s",
        invitation.team_id,
        invitation.id,
        actor_id,
    )
    return membership


async def revoke_invitation(
    session: AsyncSession, actor: User, team: Team, invitation_id: int
) -> None:
    await require_owner_or_admin(session, team, actor)
    invitation = await session.get(Invitation, invitation_id)
    if invitation is None or invitation.team_id != team.id:
        raise NotFoundError("invitation not found")

    result = await session.execute(
        delete(Invitation).where(
            Invitation.id == invitation.id,
            Invitation.status == InvitationStatus.PENDING,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidStateError("only pending invitations can be revoked")
    await session.commit()
    logger.info("invitation revoked team_id=%s invitation_id=%s", team.id, invitation_id)


async def list_invitations(
    session: AsyncSession,
    actor: User,
    team: Team,
    include_inactive: bool = False,
) -> list[InvitationView]:
    await require_owner_or_admin(session, team, actor)
    result = await session.execute(
        select(Invitation, User)
        .outerjoin(User, User.id == Invitation.invited_by)
        .where(Invitation.team_id == team.id)
        .order_by(Invitation.created_at.desc(), Invitation.id.desc())
    )
    rows = result.all()

    active_result = await session.execute(
        select(Membership.user_id).where(Membership.team_id == team.id, Membership.is_active)
    )
    active_user_ids = {user_id for (user_id,) in active_result.all()}

    now = utcnow()
    views: list[InvitationView] = []
    for invitation, inviter in rows:
        status = effective_status(invitation, now)
        # accepted, but the membership it created has since been removed
        stale = (
            status is InvitationStatus.ACCEPTED
            and invitation.accepted_by not in active_user_ids
        )
        if stale and not include_inactive:
            continue
        views.append(InvitationView(invitation=invitation, status=status, inviter=inviter))
    return views
