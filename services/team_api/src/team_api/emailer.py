import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

from team_api.errors import EmailDeliveryError
from team_api.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvitationEmail:
    to: str
    team_name: str
    inviter_name: str
    invitation_url: str


@dataclass(frozen=True)
class EmailResult:
    to: str
    success: bool
    error: str | None = None


def _build_message(settings: Settings, invitation: InvitationEmail) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"You're invited to join {invitation.team_name}"
    msg["From"] = settings.email_from
    msg["To"] = invitation.to
    msg.set_content(
        f"{invitation.inviter_name} invited you to join {invitation.team_name}.\n\n"
        f"Accept the invitation:\n\n{invitation.invitation_url}\n\n"
        "This invitation expires in 7 days."
    )
    return msg


def _open_smtp(settings: Settings) -> smtplib.SMTP:
    if not settings.smtp_host:
        raise RuntimeError("SMTP_HOST is required in production")
    server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
    if settings.smtp_use_tls:
        server.starttls()
    if settings.smtp_user and settings.smtp_password:
        server.login(settings.smtp_user, settings.smtp_password)
    return server


def send_invitation(settings: Settings, invitation: InvitationEmail) -> None:
    if settings.app_env.lower() == "dev":
        logger.info("invitation issued to=%s team=%s", invitation.to, invitation.team_name)
        return

    try:
        with _open_smtp(settings) as server:
            server.send_message(_build_message(settings, invitation))
    except (smtplib.SMTPException, OSError, RuntimeError) as exc:
        logger.warning("invitation email failed error=%s", exc.__class__.__name__)
        raise EmailDeliveryError("failed to send invitation email") from exc


def send_invitation_batch(
    settings: Settings, invitations: list[InvitationEmail]
) -> list[EmailResult]:
    if not invitations:
        return []
    if settings.app_env.lower() == "dev":
        for invitation in invitations:
            logger.info("invitation issued to=%s team=%s", invitation.to, invitation.team_name)
        return [EmailResult(to=invitation.to, success=True) for invitation in invitations]

    try:
        server = _open_smtp(settings)
    except (smtplib.SMTPException, OSError, RuntimeError) as exc:
        logger.warning("invitation batch connect failed error=%s", exc.__class__.__name__)
        return [
            EmailResult(to=invitation.to, success=False, error="email service unavailable")
            for invitation in invitations
        ]

    results: list[EmailResult] = []
    with server:
        for invitation in invitations:
            try:
                server.send_message(_build_message(settings, invitation))
            except (smtplib.SMTPException, OSError) as exc:
                logger.warning("invitation email failed error=%s", exc.__class__.__name__)
                results.append(EmailResult(to=invitation.to, success=False, error=str(exc)))
            else:
                results.append(EmailResult(to=invitation.to, success=True))
    return results
