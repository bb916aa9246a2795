import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from team_api import invitations as invitations_module
from team_api.emailer import EmailResult
from team_api.models import Invitation
from team_api.settings import get_settings

from .utils import (
    add_member,
    create_session_cookie,
    create_user,
    fetch_memberships,
    make_invitation,
    make_team,
    utc_at,
)

pytestmark = pytest.mark.asyncio


async def _setup(session):
    owner = await create_user(session, "owner@example.com")
    team = await make_team(session, owner, "Acme", "acme")
    cookie = await create_session_cookie(session, owner.id)
    return owner, team, cookie


async def _stored_emails(engine) -> list[str]:
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        result = await session.execute(select(Invitation.email).order_by(Invitation.email))
        return list(result.scalars().all())


async def test_batch_mixed_outcomes(async_client, engine):
    settings = get_settings()
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        owner, team, cookie = await _setup(session)
        await make_invitation(session, team.id, owner.id, "pending@example.com")

    resp = await async_client.post(
        "/teams/acme/invitations/batch",
        json={"emails": ["not-an-email", "pending@example.com", "fresh@example.com"]},
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 200
    body = resp.json()
    statuses = {item["email"]: item["status"] for item in body["results"]}
    assert statuses == {
        "not-an-email": "error",
        "pending@example.com": "already_invited",
        "fresh@example.com": "sent",
    }
    assert body["summary"]["total"] == 3
    assert body["summary"]["successful"] == 1
    assert body["summary"]["failed"] == 2
    assert body["summary"]["already_invited"] == 1

    assert await _stored_emails(engine) == ["fresh@example.com", "pending@example.com"]


async def test_batch_members_and_duplicates(async_client, engine):
    settings = get_settings()
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        _owner, team, cookie = await _setup(session)
        bob = await create_user(session, "bob@example.com")
        await add_member(session, team.id, bob.id)

    resp = await async_client.post(
        "/teams/acme/invitations/batch",
        json={
            "emails": ["bob@example.com", "new@example.com", "NEW@example.com"],
            "role": "admin",
        },
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 200
    results = resp.json()["results"]
    assert [item["status"] for item in results] == ["already_member", "sent", "already_invited"]
    assert results[1]["invitation_id"] is not None
    assert resp.json()["summary"]["already_members"] == 1

    assert await _stored_emails(engine) == ["new@example.com"]


async def test_batch_email_failure_keeps_invitation(async_client, engine, monkeypatch):
    settings = get_settings()
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        _owner, _team, cookie = await _setup(session)

    def _partial(_settings, messages):
        return [
            EmailResult(to=message.to, success=message.to != "down@example.com", error=None)
            for message in messages
        ]

    monkeypatch.setattr(invitations_module, "send_invitation_batch", _partial)

    resp = await async_client.post(
        "/teams/acme/invitations/batch",
        json={"emails": ["up@example.com", "down@example.com"]},
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 200
    statuses = {item["email"]: item["status"] for item in resp.json()["results"]}
    assert statuses == {"up@example.com": "sent", "down@example.com": "email_failed"}
    assert resp.json()["summary"]["email_failed"] == 1

    assert await _stored_emails(engine) == ["down@example.com", "up@example.com"]


async def test_batch_purges_history_only_for_delivered(async_client, engine, monkeypatch):
    settings = get_settings()
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        owner, team, cookie = await _setup(session)
        team_id, owner_id = team.id, owner.id
        user_ids = {}
        for email in ("up@example.com", "down@example.com"):
            user = await create_user(session, email)
            user_ids[email] = user.id
            await add_member(
                session,
                team_id,
                user.id,
                joined_at=utc_at(-48 * 3600),
                removed_at=utc_at(-25 * 3600),
                removed_by=owner_id,
            )

    def _partial(_settings, messages):
        return [
            EmailResult(to=message.to, success=message.to != "down@example.com")
            for message in messages
        ]

    monkeypatch.setattr(invitations_module, "send_invitation_batch", _partial)

    resp = await async_client.post(
        "/teams/acme/invitations/batch",
        json={"emails": ["up@example.com", "down@example.com"]},
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 200

    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        assert await fetch_memberships(session, team_id, user_ids["up@example.com"]) == []
        kept = await fetch_memberships(session, team_id, user_ids["down@example.com"])
        assert len(kept) == 1
        assert kept[0].removed_at is not None


async def test_batch_limits(async_client, engine):
    settings = get_settings()
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        _owner, team, cookie = await _setup(session)
        member = await create_user(session, "member@example.com")
        await add_member(session, team.id, member.id)
        member_cookie = await create_session_cookie(session, member.id)

    too_many = [f"user{i}@example.com" for i in range(settings.batch_invite_max + 1)]
    resp = await async_client.post(
        "/teams/acme/invitations/batch",
        json={"emails": too_many},
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 400

    resp = await async_client.post(
        "/teams/acme/invitations/batch",
        json={"emails": ["x@example.com"]},
        cookies={settings.session_cookie_name: member_cookie},
    )
    assert resp.status_code == 403
    assert await _stored_emails(engine) == []
