"""Payment provider API client.

The core only depends on ``PaymentProviderClient``; ``HttpPaymentProviderClient``
talks to the provider's REST API with httpx.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from billing_sync.errors import ProviderRequestError, ProviderUnavailableError
from billing_sync.logging_config import get_logger
from billing_sync.models import ProviderSubscription

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckoutSessionResult:
    """Hosted checkout session opened at the provider."""

    session_id: str
    url: str


class PaymentProviderClient(ABC):
    """Operations the billing core needs from the payment provider."""

    @abstractmethod
    def create_customer(self, customer_id: str) -> str:
        """Create the provider-side customer.

        Returns:
            Provider customer ID
        """

    @abstractmethod
    def create_checkout_session(
        self,
        provider_customer_id: str,
        plan_id: str,
        intent_id: str,
        idempotency_key: str,
    ) -> CheckoutSessionResult:
        """Open a hosted checkout session.

        The intent ID is passed as the client reference and comes back on
        the checkout.completed event.
        """

    @abstractmethod
    def get_subscription(self, provider_subscription_id: str) -> Optional[ProviderSubscription]:
        """Fetch the provider's canonical subscription state (None if unknown)."""


class HttpPaymentProviderClient(PaymentProviderClient):
    """REST client for the payment provider.

    Network errors, timeouts and 5xx responses raise ProviderUnavailableError
    so callers can retry; other 4xx responses raise ProviderRequestError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize provider client.

        Args:
            base_url: Provider API root
            api_key: Secret API key sent as a bearer token
            timeout_seconds: Per-request timeout
            client: Preconfigured httpx client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        allow_not_found: bool = False,
    ) -> Optional[dict[str, Any]]:
        try:
            response = self._client.request(
                method,
                f"{self.base_url}/{endpoint}",
                headers={**self.headers, **(headers or {})},
                json=data,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("provider_api_unreachable", endpoint=endpoint, error=str(e))
            raise ProviderUnavailableError(f"Provider unreachable: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 500:
            logger.warning("provider_api_server_error", endpoint=endpoint, status_code=response.status_code)
            raise ProviderUnavailableError(f"Provider returned {response.status_code} for {endpoint}")
        if response.status_code >= 400:
            logger.error("provider_api_error", endpoint=endpoint, status_code=response.status_code)
            raise ProviderRequestError(
                f"Provider rejected {method} {endpoint}: {response.text}", response.status_code
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"Invalid JSON from provider for {endpoint}") from e
        if not isinstance(payload, dict):
            raise ProviderUnavailableError(f"Unexpected payload type from provider for {endpoint}")
        return payload

    def create_customer(self, customer_id: str) -> str:
        payload = self._request(
            "POST",
            "v1/customers",
            data={"external_id": customer_id},
            headers={"Idempotency-Key": f"customer-{customer_id}"},
        )
        return str(payload["id"])

    def create_checkout_session(
        self,
        provider_customer_id: str,
        plan_id: str,
        intent_id: str,
        idempotency_key: str,
    ) -> CheckoutSessionResult:
        payload = self._request(
            "POST",
            "v1/checkout/sessions",
            data={
                "customer": provider_customer_id,
                "plan": plan_id,
                "client_reference_id": intent_id,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        return CheckoutSessionResult(session_id=str(payload["id"]), url=str(payload["url"]))

    def get_subscription(self, provider_subscription_id: str) -> Optional[ProviderSubscription]:
        payload = self._request(
            "GET",
            f"v1/subscriptions/{provider_subscription_id}",
            allow_not_found=True,
        )
        if payload is None:
            return None
        try:
            return ProviderSubscription.model_validate(payload)
        except ValidationError as e:
            logger.error(
                "provider_subscription_invalid",
                provider_subscription_id=provider_subscription_id,
                error_count=e.error_count(),
            )
            raise ProviderUnavailableError(
                f"Provider returned an invalid subscription {provider_subscription_id}"
            ) from e

    def close(self) -> None:
        self._client.close()
