"""
Outbound payment initiation and verification client (Paystack and Flutterwave).

Checkout metadata attached here (`orgId`, `planCode`) is what the webhook path
later uses to attribute a charge to an organization.
"""

from __future__ import annotations

import secrets
import string
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx
import structlog
import tenacity

from app.models.billing import PaymentProvider
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import PaymentProviderError
from app.shared.core.http import get_http_client

logger = structlog.get_logger()

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference(provider: PaymentProvider) -> str:
    """`<PROVIDER>_<epoch ms>_<6 random upper-case alphanumerics>`."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{provider.name}_{int(time.time() * 1000)}_{suffix}"


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


class PaymentClient:
    """Async wrapper over the provider REST APIs using the shared httpx client."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    def _endpoint(self, provider: PaymentProvider, path: str) -> tuple[str, dict[str, str]]:
        if provider is PaymentProvider.PAYSTACK:
            base_url, secret = self.settings.PAYSTACK_BASE_URL, self.settings.PAYSTACK_SECRET_KEY
        else:
            base_url, secret = (
                self.settings.FLUTTERWAVE_BASE_URL,
                self.settings.FLUTTERWAVE_SECRET_KEY,
            )
        if not secret:
            raise PaymentProviderError(
                f"{provider.name.title()} secret key not configured",
                details={"provider": provider.value},
            )
        headers = {
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
        }
        return f"{base_url.rstrip('/')}/{path}", headers

    async def _request(
        self,
        provider: PaymentProvider,
        method: str,
        path: str,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        url, headers = self._endpoint(provider, path)
        response = await self.client.request(
            method,
            url,
            headers=headers,
            json=data,
            timeout=self.settings.PAYMENT_HTTP_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"Invalid {provider.name.title()} response payload type")
        return payload

    async def initialize_payment(
        self,
        provider: PaymentProvider,
        email: str,
        amount: Decimal,
        currency: str,
        reference: str,
        metadata: Optional[dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> str:
        """Start a checkout and return the hosted payment page URL."""
        callback = callback_url or self.settings.PAYMENT_CALLBACK_URL
        if provider is PaymentProvider.PAYSTACK:
            path = "transaction/initialize"
            data: dict[str, Any] = {
                "email": email,
                # Paystack expects kobo/cents.
                "amount": int((Decimal(amount) * 100).quantize(Decimal(1), ROUND_HALF_UP)),
                "currency": currency,
                "reference": reference,
                "callback_url": callback,
                "metadata": metadata or {},
            }
        else:
            path = "payments"
            data = {
                "tx_ref": reference,
                "amount": str(amount),
                "currency": currency,
                "redirect_url": callback,
                "customer": {"email": email},
                "meta": metadata or {},
            }

        try:
            payload = await self._request(provider, "POST", path, data)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "payment_initialize_failed",
                provider=provider.value,
                reference=reference,
                error=str(exc),
            )
            raise PaymentProviderError(
                f"Failed to initialize {provider.name.title()} payment",
                details={"provider": provider.value, "reference": reference},
            ) from exc

        body = payload.get("data") or {}
        checkout_url = body.get("authorization_url") or body.get("link")
        if not checkout_url:
            raise PaymentProviderError(
                f"{provider.name.title()} response did not include a checkout URL",
                details={"provider": provider.value, "reference": reference},
            )

        logger.info("payment_initialized", provider=provider.value, reference=reference)
        return str(checkout_url)

    def _retry_config(self) -> dict[str, Any]:
        def _before_sleep(retry_state: tenacity.RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "payment_verify_retrying",
                attempt=retry_state.attempt_number,
                error=str(exc) if exc else None,
            )

        config: dict[str, Any] = {
            "retry": tenacity.retry_if_exception(_is_retryable),
            "wait": tenacity.wait_exponential(multiplier=1, min=1, max=5),
            "stop": tenacity.stop_after_attempt(self.settings.PAYMENT_VERIFY_MAX_ATTEMPTS),
            "before_sleep": _before_sleep,
            "reraise": True,
        }
        if self.settings.TESTING:
            # Avoid real sleeps during tests while preserving retry semantics.
            async def _no_sleep(_seconds: float) -> None:
                return None

            config["sleep"] = _no_sleep
            config["wait"] = tenacity.wait_none()
        return config

    async def verify_transaction(self, provider: PaymentProvider, reference: str) -> bool:
        """
        Ask the provider whether a transaction succeeded.

        Transport errors, 429 and 5xx responses are retried with exponential
        backoff; other client errors fail immediately.
        """
        if provider is PaymentProvider.PAYSTACK:
            path, success_status = f"transaction/verify/{reference}", "success"
        else:
            path, success_status = f"transactions/{reference}/verify", "successful"

        try:
            async for attempt in tenacity.AsyncRetrying(**self._retry_config()):
                with attempt:
                    payload = await self._request(provider, "GET", path)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "payment_verify_failed",
                provider=provider.value,
                reference=reference,
                error=str(exc),
            )
            raise PaymentProviderError(
                "Payment verification failed",
                details={"provider": provider.value, "reference": reference},
            ) from exc

        status = str((payload.get("data") or {}).get("status", "")).lower()
        verified = status == success_status
        logger.info(
            "payment_verified",
            provider=provider.value,
            reference=reference,
            status=status,
            verified=verified,
        )
        return verified
