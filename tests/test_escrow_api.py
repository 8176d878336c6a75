"""HTTP tests for the escrow endpoints."""

from decimal import Decimal

from sqlalchemy import select

from conftest import make_stripe_client
from marketplace.api.escrow import get_escrow_service
from marketplace.core.security import get_current_identity
from marketplace.main import app
from marketplace.models.audit_log import AuditLog
from marketplace.services.escrow import EscrowService


def _as(identity, service=None):
    app.dependency_overrides[get_current_identity] = lambda: identity
    svc = service or EscrowService(client=make_stripe_client())
    app.dependency_overrides[get_escrow_service] = lambda: svc
    return svc


class TestCreatePayment:
    async def test_unauthenticated(self, client, campaign):
        resp = await client.post(
            "/api/escrow/create-payment",
            json={"campaign_id": campaign.id, "creator_id": campaign.creator_id, "amount": 200},
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "No authorization header"}

    async def test_returns_camel_case_payment(self, client, db, advertiser, campaign):
        _as(advertiser)
        resp = await client.post(
            "/api/escrow/create-payment",
            json={
                "campaign_id": campaign.id,
                "creator_id": campaign.creator_id,
                "amount": 200,
                "cpv_rate": 0.05,
                "expected_views": 1000,
            },
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "clientSecret": "pi_123_secret_abc",
            "paymentIntentId": "pi_123",
            "platformFee": 36.0,
            "creatorPayout": 164.0,
        }

        audit = (await db.execute(select(AuditLog))).scalars().all()
        assert [a.action for a in audit] == ["escrow_create_payment"]

    async def test_string_ids_are_accepted(self, client, advertiser, campaign):
        _as(advertiser)
        resp = await client.post(
            "/api/escrow/create-payment",
            json={"campaign_id": str(campaign.id), "creator_id": str(campaign.creator_id), "amount": "200"},
        )
        assert resp.status_code == 200

    async def test_missing_fields_rejected_before_gateway(self, client, advertiser):
        svc = _as(advertiser)
        resp = await client.post("/api/escrow/create-payment", json={"amount": 200})
        assert resp.status_code == 422
        assert resp.json()["error"].startswith("campaign_id")
        svc.client.create_payment_intent.assert_not_awaited()

    async def test_non_positive_amount(self, client, advertiser, campaign):
        _as(advertiser)
        resp = await client.post(
            "/api/escrow/create-payment",
            json={"campaign_id": campaign.id, "creator_id": campaign.creator_id, "amount": 0},
        )
        assert resp.status_code == 422

    async def test_gateway_not_configured(self, client, advertiser, campaign):
        stripe = make_stripe_client()
        stripe.configured = False
        _as(advertiser, EscrowService(client=stripe))
        resp = await client.post(
            "/api/escrow/create-payment",
            json={"campaign_id": campaign.id, "creator_id": campaign.creator_id, "amount": 200},
        )
        assert resp.status_code == 503
        assert "error" in resp.json()

    async def test_creator_cannot_fund(self, client, creator, campaign):
        _as(creator)
        resp = await client.post(
            "/api/escrow/create-payment",
            json={"campaign_id": campaign.id, "creator_id": campaign.creator_id, "amount": 200},
        )
        assert resp.status_code == 403


class TestRelease:
    async def _funded_and_verified(self, db, advertiser, campaign, svc):
        await svc.create_escrow_payment(
            db, advertiser,
            campaign_id=campaign.id, creator_id=campaign.creator_id, amount=Decimal("200"),
        )
        campaign.verification_status = "verified"
        await db.commit()

    async def test_release_then_double_release(self, client, db, advertiser, campaign):
        svc = _as(advertiser)
        await self._funded_and_verified(db, advertiser, campaign, svc)

        resp = await client.post("/api/escrow/release", json={"campaign_id": campaign.id})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "payout": 164.0}

        resp = await client.post("/api/escrow/release", json={"campaign_id": campaign.id})
        assert resp.status_code == 409
        assert resp.json() == {"error": "Cannot release escrow with status: released"}

    async def test_outsider_forbidden(self, client, db, advertiser, outsider, campaign):
        svc = _as(advertiser)
        await self._funded_and_verified(db, advertiser, campaign, svc)

        _as(outsider, svc)
        resp = await client.post("/api/escrow/release", json={"campaign_id": campaign.id})
        assert resp.status_code == 403
        await db.refresh(campaign)
        assert campaign.escrow_status == "payment_pending"

    async def test_missing_campaign(self, client, advertiser):
        _as(advertiser)
        resp = await client.post("/api/escrow/release", json={"campaign_id": 424242})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Campaign not found"}


async def test_cors_preflight(client):
    resp = await client.options(
        "/api/escrow/create-payment",
        headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization,content-type",
        },
    )
    assert resp.status_code == 200
