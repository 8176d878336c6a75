"""StripeClient request options and error mapping over the stripe SDK."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from marketplace.core.config import settings
from marketplace.core.errors import GatewayNotConfiguredError, UpstreamError
from marketplace.services.stripe.client import StripeClient


async def test_create_payment_intent_sends_idempotency_key():
    client = StripeClient(secret_key="sk_test")
    with patch.object(
        stripe.PaymentIntent, "create_async", new_callable=AsyncMock, return_value={"id": "pi_1"},
    ) as create:
        intent = await client.create_payment_intent(
            amount_minor=20000, currency="brl", customer_id="cus_1",
            metadata={"campaign_id": "5"}, idempotency_key="escrow-5-20000-0",
        )

    assert intent == {"id": "pi_1"}
    kwargs = create.await_args.kwargs
    assert kwargs["idempotency_key"] == "escrow-5-20000-0"
    assert kwargs["api_key"] == "sk_test"
    assert kwargs["stripe_version"] == settings.stripe_api_version
    assert kwargs["amount"] == 20000
    assert kwargs["metadata"] == {"campaign_id": "5"}
    assert kwargs["customer"] == "cus_1"
    assert kwargs["automatic_payment_methods"] == {"enabled": True}


async def test_get_or_create_customer_reuses_existing():
    client = StripeClient(secret_key="sk_test")
    with patch.object(
        stripe.Customer, "list_async", new_callable=AsyncMock,
        return_value=SimpleNamespace(data=[{"id": "cus_existing"}]),
    ) as listed, patch.object(stripe.Customer, "create_async", new_callable=AsyncMock) as create:
        assert await client.get_or_create_customer("a@b.com") == "cus_existing"

    assert listed.await_args.kwargs["email"] == "a@b.com"
    create.assert_not_awaited()


async def test_get_or_create_customer_creates_once():
    client = StripeClient(secret_key="sk_test")
    with patch.object(
        stripe.Customer, "list_async", new_callable=AsyncMock, return_value=SimpleNamespace(data=[]),
    ), patch.object(
        stripe.Customer, "create_async", new_callable=AsyncMock, return_value={"id": "cus_new"},
    ) as create:
        assert await client.get_or_create_customer("a@b.com") == "cus_new"

    assert create.await_args.kwargs["idempotency_key"] == "customer-a@b.com"


async def test_search_returns_result_page():
    client = StripeClient(secret_key="sk_test")
    page = SimpleNamespace(data=[{"id": "pi_1"}, {"id": "pi_2"}])
    with patch.object(stripe.PaymentIntent, "search_async", new_callable=AsyncMock, return_value=page) as search:
        found = await client.search_payment_intents("metadata['type']:'escrow'", limit=10)

    assert [i["id"] for i in found] == ["pi_1", "pi_2"]
    assert search.await_args.kwargs["query"] == "metadata['type']:'escrow'"
    assert search.await_args.kwargs["limit"] == 10


async def test_api_error_maps_to_upstream():
    client = StripeClient(secret_key="sk_test")
    error = stripe.CardError("Your card was declined.", param=None, code="card_declined", http_status=402)
    with patch.object(stripe.PaymentIntent, "retrieve_async", new_callable=AsyncMock, side_effect=error):
        with pytest.raises(UpstreamError, match="request failed"):
            await client.retrieve_payment_intent("pi_1")


async def test_unreachable_maps_to_upstream():
    client = StripeClient(secret_key="sk_test")
    with patch.object(
        stripe.PaymentIntent, "search_async", new_callable=AsyncMock,
        side_effect=stripe.APIConnectionError("Network is down"),
    ):
        with pytest.raises(UpstreamError, match="unavailable"):
            await client.search_payment_intents("metadata['type']:'escrow'")


async def test_unconfigured_client_raises_before_network():
    client = StripeClient(secret_key="")
    assert client.configured is False
    with patch.object(stripe.PaymentIntent, "retrieve_async", new_callable=AsyncMock) as retrieve:
        with pytest.raises(GatewayNotConfiguredError):
            await client.retrieve_payment_intent("pi_1")
    retrieve.assert_not_called()
