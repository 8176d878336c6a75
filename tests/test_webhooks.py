"""Signed gateway webhooks confirm or fail escrow payments."""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from conftest import escrow_intent, make_stripe_client
from marketplace.api.escrow import get_escrow_service
from marketplace.core.errors import AuthenticationError, ValidationFailedError
from marketplace.main import app
from marketplace.services.escrow import EscrowService
from marketplace.services.stripe.webhook import verify_webhook

SECRET = "whsec_test"


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr("marketplace.api.webhooks.settings.stripe_webhook_secret", SECRET)
    return SECRET


def _sign(payload: bytes, ts: int, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()


def _signed(event: dict, secret: str = SECRET, ts: int | None = None) -> tuple[bytes, dict]:
    payload = json.dumps(event).encode()
    ts = ts or int(time.time())
    return payload, {"Stripe-Signature": f"t={ts},v1={_sign(payload, ts, secret)}", "Content-Type": "application/json"}


async def _funded(db, advertiser, campaign) -> EscrowService:
    svc = EscrowService(client=make_stripe_client())
    await svc.create_escrow_payment(
        db, advertiser,
        campaign_id=campaign.id, creator_id=campaign.creator_id, amount=Decimal("200"),
    )
    app.dependency_overrides[get_escrow_service] = lambda: svc
    return svc


async def test_succeeded_event_holds_escrow(client, db, advertiser, campaign, webhook_secret):
    await _funded(db, advertiser, campaign)
    event = {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": escrow_intent(campaign)}}
    payload, headers = _signed(event)

    resp = await client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "applied": True}
    await db.refresh(campaign)
    assert campaign.escrow_status == "held"

    replay = await client.post("/api/webhooks/stripe", content=payload, headers=headers)
    assert replay.json() == {"received": True, "applied": False}


async def test_canceled_event_reopens_funding(client, db, advertiser, campaign, webhook_secret):
    await _funded(db, advertiser, campaign)
    event = {
        "id": "evt_2",
        "type": "payment_intent.canceled",
        "data": {"object": escrow_intent(campaign, status="canceled")},
    }
    payload, headers = _signed(event)

    resp = await client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert resp.json()["applied"] is True
    await db.refresh(campaign)
    assert campaign.escrow_status == "none"
    assert campaign.payment_intent_id is None


async def test_bad_signature_rejected(client, db, advertiser, campaign, webhook_secret):
    await _funded(db, advertiser, campaign)
    event = {"id": "evt_3", "type": "payment_intent.succeeded", "data": {"object": escrow_intent(campaign)}}
    payload, headers = _signed(event, secret="whsec_other")

    resp = await client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert resp.status_code == 401
    await db.refresh(campaign)
    assert campaign.escrow_status == "payment_pending"


async def test_missing_header(client, webhook_secret):
    resp = await client.post("/api/webhooks/stripe", content=b"{}")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Missing Stripe-Signature header"}


async def test_declined_then_succeeded_on_same_intent(client, db, advertiser, campaign, webhook_secret):
    await _funded(db, advertiser, campaign)
    declined = {
        "id": "evt_4",
        "type": "payment_intent.payment_failed",
        "data": {"object": escrow_intent(campaign, status="requires_payment_method")},
    }
    succeeded = {"id": "evt_5", "type": "payment_intent.succeeded", "data": {"object": escrow_intent(campaign)}}

    payload, headers = _signed(declined)
    first = await client.post("/api/webhooks/stripe", content=payload, headers=headers)
    assert first.json() == {"received": True, "applied": False}
    await db.refresh(campaign)
    assert campaign.escrow_status == "payment_pending"

    payload, headers = _signed(succeeded)
    second = await client.post("/api/webhooks/stripe", content=payload, headers=headers)
    assert second.json() == {"received": True, "applied": True}
    await db.refresh(campaign)
    assert campaign.escrow_status == "held"


class TestVerifyWebhook:
    def test_accepts_any_matching_v1(self):
        payload = b'{"id": "evt"}'
        ts = int(time.time())
        header = f"t={ts},v1=deadbeef,v1={_sign(payload, ts)}"
        assert verify_webhook(payload, header, SECRET) == {"id": "evt"}

    def test_stale_timestamp(self):
        payload = b"{}"
        ts = int(time.time()) - 301
        with pytest.raises(AuthenticationError, match="Invalid webhook signature"):
            verify_webhook(payload, f"t={ts},v1={_sign(payload, ts)}", SECRET, tolerance_seconds=300)

    def test_unconfigured_secret(self):
        with pytest.raises(AuthenticationError, match="not configured"):
            verify_webhook(b"{}", "t=1,v1=x", "")

    def test_malformed_header(self):
        with pytest.raises(AuthenticationError, match="Invalid webhook signature"):
            verify_webhook(b"{}", "garbage", SECRET)

    def test_invalid_json(self):
        payload = b"not json"
        ts = int(time.time())
        with pytest.raises(ValidationFailedError):
            verify_webhook(payload, f"t={ts},v1={_sign(payload, ts)}", SECRET)
