import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.errors import ForbiddenError, InvalidTargetError, NotFoundError
from team_api.models import RemovedMembership, Role
from team_api.settings import get_settings
from team_api.teams import list_active_members, remove_member, update_member_role

from .utils import add_member, create_session_cookie, create_user, fetch_memberships, make_team

pytestmark = pytest.mark.asyncio


async def _team_with_roles(session):
    owner = await create_user(session, "owner@example.com")
    admin = await create_user(session, "admin@example.com")
    member = await create_user(session, "member@example.com")
    other = await create_user(session, "other@example.com")
    team = await make_team(session, owner, "Acme", "acme")
    owner_row = (await fetch_memberships(session, team.id, owner.id))[0]
    admin_row = await add_member(session, team.id, admin.id, role=Role.ADMIN)
    member_row = await add_member(session, team.id, member.id)
    other_row = await add_member(session, team.id, other.id)
    return team, {
        "owner": (owner, owner_row),
        "admin": (admin, admin_row),
        "member": (member, member_row),
        "other": (other, other_row),
    }


async def test_owner_promotes_member_to_admin(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, _ = people["owner"]
        _, member_row = people["member"]

        updated = await update_member_role(session, owner, team, member_row.id, Role.ADMIN)
        assert updated.role is Role.ADMIN


async def test_admin_cannot_promote_to_admin(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        admin, _ = people["admin"]
        _, member_row = people["member"]

        with pytest.raises(ForbiddenError):
            await update_member_role(session, admin, team, member_row.id, Role.ADMIN)


async def test_admin_can_demote_admin_to_member(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, _ = people["owner"]
        admin, _ = people["admin"]
        _, member_row = people["member"]
        await update_member_role(session, owner, team, member_row.id, Role.ADMIN)

        updated = await update_member_role(session, admin, team, member_row.id, Role.MEMBER)
        assert updated.role is Role.MEMBER


async def test_member_cannot_change_roles(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        member, _ = people["member"]
        _, other_row = people["other"]

        with pytest.raises(ForbiddenError):
            await update_member_role(session, member, team, other_row.id, Role.MEMBER)


async def test_owner_role_is_never_assignable(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, _ = people["owner"]
        _, member_row = people["member"]

        with pytest.raises(ForbiddenError):
            await update_member_role(session, owner, team, member_row.id, Role.OWNER)


async def test_owner_role_cannot_be_changed(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, owner_row = people["owner"]
        admin, _ = people["admin"]

        with pytest.raises(InvalidTargetError):
            await update_member_role(session, owner, team, owner_row.id, Role.MEMBER)
        with pytest.raises(InvalidTargetError):
            await update_member_role(session, admin, team, owner_row.id, Role.MEMBER)


async def test_owner_cannot_be_removed_by_anyone(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, owner_row = people["owner"]
        team_id, owner_id = team.id, owner.id

        for actor_key in ("owner", "admin", "member"):
            actor, _ = people[actor_key]
            with pytest.raises(InvalidTargetError):
                await remove_member(session, actor, team, owner_row.id)
            with pytest.raises((InvalidTargetError, ForbiddenError)):
                await update_member_role(session, actor, team, owner_row.id, Role.ADMIN)

    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        rows = await fetch_memberships(session, team_id, owner_id)
        assert len(rows) == 1
        assert rows[0].role is Role.OWNER
        assert rows[0].removed_at is None


async def test_admin_removes_member_soft_delete(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        admin, _ = people["admin"]
        member, member_row = people["member"]
        team_id, admin_id, member_id = team.id, admin.id, member.id

        removed = await remove_member(session, admin, team, member_row.id)
        assert removed.removed_at is not None
        assert removed.removed_by == admin_id
        assert isinstance(removed.state, RemovedMembership)

        active_ids = {m.user_id for m, _ in await list_active_members(session, team_id)}
        assert member_id not in active_ids

    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        rows = await fetch_memberships(session, team_id, member_id)
        assert len(rows) == 1
        assert rows[0].removed_at is not None


async def test_member_can_leave_but_not_remove_others(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        member, member_row = people["member"]
        _, other_row = people["other"]

        with pytest.raises(ForbiddenError):
            await remove_member(session, member, team, other_row.id)

        left = await remove_member(session, member, team, member_row.id)
        assert left.removed_by == member.id


async def test_removed_member_is_not_a_target(engine):
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, _ = people["owner"]
        _, member_row = people["member"]
        await remove_member(session, owner, team, member_row.id)

        with pytest.raises(NotFoundError):
            await remove_member(session, owner, team, member_row.id)
        with pytest.raises(NotFoundError):
            await update_member_role(session, owner, team, member_row.id, Role.ADMIN)


async def test_member_endpoints(async_client, engine):
    settings = get_settings()
    async with AsyncSession(bind=engine, expire_on_commit=False) as session:
        team, people = await _team_with_roles(session)
        owner, owner_row = people["owner"]
        _, member_row = people["member"]
        member_row_id, owner_row_id = member_row.id, owner_row.id
        cookie = await create_session_cookie(session, owner.id)

    resp = await async_client.patch(
        f"/teams/acme/members/{member_row_id}",
        json={"role": "admin"},
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 200
    assert resp.json()["member"]["role"] == "admin"

    resp = await async_client.patch(
        f"/teams/acme/members/{owner_row_id}",
        json={"role": "member"},
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "invalid_target"

    resp = await async_client.delete(
        f"/teams/acme/members/{member_row_id}",
        cookies={settings.session_cookie_name: cookie},
    )
    assert resp.status_code == 200
    assert resp.json()["member"]["removed_at"] is not None
