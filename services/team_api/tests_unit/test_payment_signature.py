import json
import time
from unittest.mock import AsyncMock

import pytest

from team_api.credits import GrantResult
from team_api.models import PaymentStatus
from team_api.payment_security import (
    NONCE_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    body_sha256,
    canonical_string,
    sign,
)
from team_api.routers import payments as payments_router
from team_api.settings import get_settings

PATH = "/payments/confirm"


def _headers(body: bytes, timestamp: int | None = None, secret: str | None = None) -> dict:
    settings = get_settings()
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "content-type": "application/json",
        SIGNATURE_HEADER: sign(
            secret or settings.payment_webhook_secret, "POST", PATH, ts, "n-1", body
        ),
        TIMESTAMP_HEADER: ts,
        NONCE_HEADER: "n-1",
    }


def test_canonical_string_layout():
    body_hash = body_sha256(b"{}")
    assert canonical_string("POST", "/p", "1", "n", body_hash) == f"POST\n/p\n1\nn\n{body_hash}"


def test_signature_depends_on_every_part():
    base = sign("s", "POST", "/p", "1", "n", b"{}")
    assert base == sign("s", "post", "/p", "1", "n", b"{}")
    variants = [
        sign("other", "POST", "/p", "1", "n", b"{}"),
        sign("s", "PUT", "/p", "1", "n", b"{}"),
        sign("s", "POST", "/q", "1", "n", b"{}"),
        sign("s", "POST", "/p", "2", "n", b"{}"),
        sign("s", "POST", "/p", "1", "m", b"{}"),
        sign("s", "POST", "/p", "1", "n", b"[]"),
    ]
    assert base not in variants


@pytest.mark.asyncio
async def test_valid_signature_reaches_grant(async_client, monkeypatch):
    payment = type("P", (), {"id": 7})()
    grant = AsyncMock(return_value=GrantResult(payment=payment, applied=False))
    monkeypatch.setattr(payments_router, "grant_credits", grant)
    monkeypatch.setattr(payments_router, "audit_request", AsyncMock())

    body = json.dumps({"external_transaction_id": "t1", "team_id": 1, "credits": 10}).encode()
    resp = await async_client.post(PATH, content=body, headers=_headers(body))

    assert resp.status_code == 200
    assert resp.json() == {
        "status": PaymentStatus.SUCCEEDED.value,
        "payment_id": 7,
        "applied": False,
    }
    grant.assert_awaited_once()
    payments_router.audit_request.assert_not_awaited()


@pytest.mark.parametrize(
    "mutate",
    [
        lambda headers: headers.pop(SIGNATURE_HEADER),
        lambda headers: headers.pop(NONCE_HEADER),
        lambda headers: headers.update({TIMESTAMP_HEADER: "not-a-number"}),
        lambda headers: headers.update({SIGNATURE_HEADER: "0" * 64}),
    ],
)
@pytest.mark.asyncio
async def test_rejected_signatures(async_client, monkeypatch, mutate):
    grant = AsyncMock()
    monkeypatch.setattr(payments_router, "grant_credits", grant)
    body = json.dumps({"external_transaction_id": "t1", "team_id": 1, "credits": 10}).encode()
    headers = _headers(body)
    mutate(headers)

    resp = await async_client.post(PATH, content=body, headers=headers)

    assert resp.status_code == 401
    grant.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_timestamp_rejected(async_client):
    settings = get_settings()
    body = b"{}"
    old = int(time.time()) - settings.payment_clock_skew_seconds - 60
    resp = await async_client.post(PATH, content=body, headers=_headers(body, timestamp=old))
    assert resp.status_code == 401
    assert resp.json()["detail"] == "timestamp out of range"
