"""Stripe SDK wrapper for the escrow flow (customers, payment intents)."""

import logging

import stripe

from marketplace.core.config import settings
from marketplace.core.errors import GatewayNotConfiguredError, UpstreamError

logger = logging.getLogger(__name__)

# Connection errors, 409 lock conflicts and 5xx are retried by the SDK,
# reusing the request's idempotency key
stripe.max_network_retries = settings.stripe_max_network_retries


class StripeClient:
    """Async calls against the Stripe API using the official SDK."""

    def __init__(self, secret_key: str | None = None) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _options(self, idempotency_key: str | None = None) -> dict:
        if not self.configured:
            raise GatewayNotConfiguredError("STRIPE_SECRET_KEY is not set")
        options = {"api_key": self.secret_key, "stripe_version": settings.stripe_api_version}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except stripe.APIConnectionError as exc:
            logger.error("Stripe unreachable: %s (%s)", operation, exc.user_message or exc)
            raise UpstreamError("Payment gateway unavailable") from exc
        except stripe.StripeError as exc:
            logger.error(
                "Stripe request failed",
                extra={
                    "operation": operation,
                    "status": exc.http_status,
                    "code": exc.code,
                    "stripe_request_id": exc.request_id,
                },
            )
            raise UpstreamError("Payment gateway request failed") from exc

    async def find_customer_by_email(self, email: str) -> dict | None:
        options = self._options()
        customers = await self._call(
            "customers.list", stripe.Customer.list_async(email=email, limit=1, **options),
        )
        return customers.data[0] if customers.data else None

    async def create_customer(self, email: str, idempotency_key: str | None = None) -> dict:
        options = self._options(idempotency_key)
        return await self._call("customers.create", stripe.Customer.create_async(email=email, **options))

    async def get_or_create_customer(self, email: str) -> str:
        """Return the customer id for an email, creating the customer once."""
        existing = await self.find_customer_by_email(email)
        if existing:
            return existing["id"]
        customer = await self.create_customer(email, idempotency_key=f"customer-{email}")
        return customer["id"]

    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> dict:
        options = self._options(idempotency_key)
        return await self._call(
            "payment_intents.create",
            stripe.PaymentIntent.create_async(
                amount=amount_minor,
                currency=currency,
                customer=customer_id,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                **options,
            ),
        )

    async def retrieve_payment_intent(self, intent_id: str) -> dict:
        options = self._options()
        return await self._call(
            "payment_intents.retrieve", stripe.PaymentIntent.retrieve_async(intent_id, **options),
        )

    async def search_payment_intents(self, query: str, limit: int = 100) -> list[dict]:
        options = self._options()
        result = await self._call(
            "payment_intents.search",
            stripe.PaymentIntent.search_async(query=query, limit=limit, **options),
        )
        return list(result.data)
