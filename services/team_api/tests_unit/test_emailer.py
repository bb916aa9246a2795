import smtplib

import pytest

from team_api import emailer
from team_api.emailer import InvitationEmail, send_invitation, send_invitation_batch
from team_api.errors import EmailDeliveryError
from team_api.settings import get_settings


def _prod_settings(**overrides):
    values = {"app_env": "prod", "smtp_host": "smtp.example.com", "smtp_use_tls": False}
    values.update(overrides)
    return get_settings().model_copy(update=values)


def _message(to: str) -> InvitationEmail:
    return InvitationEmail(
        to=to,
        team_name="Acme",
        inviter_name="Olivia",
        invitation_url="http://test/invitations/token",
    )


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    refuse: set[str] = set()

    def __init__(self, host, port):
        self.host = host
        self.port = port
        self.sent: list[str] = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        if msg["To"] in self.refuse:
            raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})
        self.sent.append(msg["To"])


@pytest.fixture()
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.refuse = set()
    monkeypatch.setattr(emailer.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_dev_mode_only_logs(fake_smtp, caplog):
    settings = get_settings().model_copy(update={"app_env": "dev"})
    with caplog.at_level("INFO", logger="team_api.emailer"):
        send_invitation(settings, _message("bob@example.com"))
    assert fake_smtp.instances == []
    assert "invitation issued" in caplog.text


def test_send_invitation_over_smtp(fake_smtp):
    send_invitation(_prod_settings(), _message("bob@example.com"))
    assert fake_smtp.instances[0].sent == ["bob@example.com"]


def test_send_invitation_failure_raises(fake_smtp):
    fake_smtp.refuse = {"bob@example.com"}
    with pytest.raises(EmailDeliveryError):
        send_invitation(_prod_settings(), _message("bob@example.com"))


def test_missing_smtp_host_is_a_delivery_error(fake_smtp):
    with pytest.raises(EmailDeliveryError):
        send_invitation(_prod_settings(smtp_host=""), _message("bob@example.com"))


def test_batch_reports_each_recipient(fake_smtp):
    fake_smtp.refuse = {"down@example.com"}
    results = send_invitation_batch(
        _prod_settings(), [_message("up@example.com"), _message("down@example.com")]
    )
    assert [(r.to, r.success) for r in results] == [
        ("up@example.com", True),
        ("down@example.com", False),
    ]
    assert results[1].error
    assert len(fake_smtp.instances) == 1


def test_batch_connection_failure_fails_everyone(monkeypatch):
    def _refuse(host, port):
        raise ConnectionRefusedError("smtp down")

    monkeypatch.setattr(emailer.smtplib, "SMTP", _refuse)
    results = send_invitation_batch(
        _prod_settings(), [_message("a@example.com"), _message("b@example.com")]
    )
    assert [r.success for r in results] == [False, False]
    assert all(r.error == "email service unavailable" for r in results)


def test_empty_batch():
    assert send_invitation_batch(_prod_settings(), []) == []
