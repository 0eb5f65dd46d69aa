"""Provider gateways that charge renewals and always return a structured result."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional, Protocol
from uuid import uuid4

from .errors import ProviderError
from .models import PaymentProviderName, RenewalRequest, RenewalResult

logger = logging.getLogger(__name__)


class ChargeClient(Protocol):
    """Transport that submits a provider-shaped charge and returns the raw response."""

    def charge(self, provider: PaymentProviderName, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        ...


class SandboxChargeClient(ChargeClient):
    """Minimal charge client for local development; every charge succeeds."""

    def charge(self, provider: PaymentProviderName, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        if provider == PaymentProviderName.STRIPE:
            return {"id": f"pi_{uuid4().hex}", "object": "payment_intent", "status": "succeeded"}
        if provider == PaymentProviderName.IYZICO:
            return {"status": "success", "paymentId": uuid4().hex[:12]}
        raise ProviderError(f"Sandbox cannot charge provider {provider.value}")


def _validate_request(request: RenewalRequest) -> Optional[str]:
    if not request.subscription_id:
        return "subscription_id is required"
    if request.amount is None or request.amount <= 0:
        return "amount must be positive"
    currency = request.currency or ""
    if len(currency) != 3 or not currency.isalpha():
        return "currency must be a 3-letter code"
    return None


class ProviderGateway:
    """Uniform renewal contract; subclasses only shape and read provider payloads."""

    provider: PaymentProviderName = PaymentProviderName.MANUAL
    requires_payment_method = True

    def __init__(
        self,
        client: Optional[ChargeClient] = None,
        *,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client or SandboxChargeClient()
        self._timeout_seconds = timeout_seconds
        self._executor: Optional[ThreadPoolExecutor] = None

    def renew(self, request: RenewalRequest) -> RenewalResult:
        """Charge a renewal. Never raises; failures come back as results."""

        error = _validate_request(request)
        if error is None and self.requires_payment_method and not request.payment_method_ref:
            error = "no payment method on file"
        if error is not None:
            logger.warning(
                "Rejected malformed renewal request",
                extra={"subscription_id": request.subscription_id, "provider": self.provider.value},
            )
            return RenewalResult.failed(error)

        payload = self.build_payload(request)
        try:
            response = self._charge_with_timeout(payload)
        except FutureTimeoutError:
            logger.warning(
                "Provider charge timed out after %ss",
                self._timeout_seconds,
                extra={"subscription_id": request.subscription_id, "provider": self.provider.value},
            )
            return RenewalResult.failed(f"provider charge timed out after {self._timeout_seconds:g}s")
        except ProviderError as exc:
            return RenewalResult.failed(exc.message)
        except Exception:
            logger.exception(
                "Provider charge raised",
                extra={"subscription_id": request.subscription_id, "provider": self.provider.value},
            )
            return RenewalResult.failed("provider charge failed")

        try:
            return self.interpret(response)
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning(
                "Malformed provider response",
                extra={"subscription_id": request.subscription_id, "provider": self.provider.value},
            )
            return RenewalResult.failed("malformed provider response")

    def _charge_with_timeout(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=4, thread_name_prefix=f"{self.provider.value}-charge"
            )
        future = self._executor.submit(self._client.charge, self.provider, payload)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise

    def build_payload(self, request: RenewalRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def interpret(self, response: Mapping[str, Any]) -> RenewalResult:
        raise NotImplementedError

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


class StripeGateway(ProviderGateway):
    provider = PaymentProviderName.STRIPE

    def build_payload(self, request: RenewalRequest) -> Dict[str, Any]:
        cents = (request.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return {
            "amount": int(cents),
            "currency": request.currency.lower(),
            "customer": request.customer_ref,
            "payment_method": request.payment_method_ref,
            "off_session": True,
            "confirm": True,
            "metadata": {"subscription_id": request.subscription_id},
        }

    def interpret(self, response: Mapping[str, Any]) -> RenewalResult:
        payment_id = str(response["id"])
        status = str(response["status"])
        if status == "succeeded":
            return RenewalResult(success=True, provider_payment_id=payment_id, payload=dict(response))
        error = response.get("last_payment_error") or {}
        message = error.get("message") if isinstance(error, Mapping) else None
        return RenewalResult.failed(message or f"charge status {status}", payload=dict(response))


class IyzicoGateway(ProviderGateway):
    provider = PaymentProviderName.IYZICO

    def build_payload(self, request: RenewalRequest) -> Dict[str, Any]:
        price = str(request.amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
        return {
            "locale": "en",
            "conversationId": request.subscription_id,
            "price": price,
            "paidPrice": price,
            "currency": request.currency.upper(),
            "cardUserKey": request.customer_ref,
            "cardToken": request.payment_method_ref,
        }

    def interpret(self, response: Mapping[str, Any]) -> RenewalResult:
        status = str(response["status"]).lower()
        if status == "success":
            return RenewalResult(
                success=True,
                provider_payment_id=str(response["paymentId"]),
                payload=dict(response),
            )
        message = response.get("errorMessage") or f"payment status {status}"
        return RenewalResult.failed(str(message), payload=dict(response))


class ManualGateway(ProviderGateway):
    """Manual billing cannot be charged automatically."""

    provider = PaymentProviderName.MANUAL
    requires_payment_method = False

    def renew(self, request: RenewalRequest) -> RenewalResult:
        return RenewalResult.failed("manual payment required")


class GatewayRegistry:
    """Maps each payment provider to the gateway that charges it."""

    def __init__(self, gateways: Mapping[PaymentProviderName, ProviderGateway]) -> None:
        self._gateways = dict(gateways)

    def for_provider(self, provider: PaymentProviderName) -> ProviderGateway:
        try:
            return self._gateways[provider]
        except KeyError as exc:
            raise LookupError(f"No gateway registered for provider {provider.value}") from exc

    def close(self) -> None:
        for gateway in self._gateways.values():
            gateway.close()


def build_gateway_registry(
    client: Optional[ChargeClient] = None,
    *,
    timeout_seconds: float = 30.0,
) -> GatewayRegistry:
    charge_client = client or SandboxChargeClient()
    return GatewayRegistry(
        {
            PaymentProviderName.STRIPE: StripeGateway(charge_client, timeout_seconds=timeout_seconds),
            PaymentProviderName.IYZICO: IyzicoGateway(charge_client, timeout_seconds=timeout_seconds),
            PaymentProviderName.MANUAL: ManualGateway(charge_client, timeout_seconds=timeout_seconds),
        }
    )


__all__ = [
    "ChargeClient",
    "GatewayRegistry",
    "IyzicoGateway",
    "ManualGateway",
    "ProviderGateway",
    "SandboxChargeClient",
    "StripeGateway",
    "build_gateway_registry",
]
