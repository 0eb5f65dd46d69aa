"""Inbound provider webhooks: verification, translation and idempotent application."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple
from urllib import error as urllib_error, request as urllib_request

import stripe
from pydantic import BaseModel, ConfigDict

from .errors import NotFoundError, SignatureError, SubscriptionValidationError
from .models import (
    LifecycleEvent,
    LifecycleTrigger,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookSource,
)
from .state_machine import SubscriptionRepository, SubscriptionStateMachine

logger = logging.getLogger(__name__)


STRIPE_SIGNATURE_HEADER = "stripe-signature"
IYZICO_SIGNATURE_HEADER = "x-iyzico-signature"
PAYPAL_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)
STRIPE_TIMESTAMP_TOLERANCE_SECONDS = 300

_STATUS_TABLES: Dict[WebhookSource, Dict[str, SubscriptionStatus]] = {
    WebhookSource.STRIPE: {
        "active": SubscriptionStatus.ACTIVE,
        "canceled": SubscriptionStatus.CANCELED,
        "incomplete": SubscriptionStatus.PENDING,
        "incomplete_expired": SubscriptionStatus.EXPIRED,
        "past_due": SubscriptionStatus.FAILED,
        "trialing": SubscriptionStatus.TRIAL,
        "unpaid": SubscriptionStatus.FAILED,
    },
    WebhookSource.IYZICO: {
        "ACTIVE": SubscriptionStatus.ACTIVE,
        "CANCELED": SubscriptionStatus.CANCELED,
        "EXPIRED": SubscriptionStatus.EXPIRED,
        "FAILED": SubscriptionStatus.FAILED,
    },
    WebhookSource.PAYPAL: {
        "ACTIVE": SubscriptionStatus.ACTIVE,
        "CANCELLED": SubscriptionStatus.CANCELED,
        "EXPIRED": SubscriptionStatus.EXPIRED,
        "SUSPENDED": SubscriptionStatus.FAILED,
    },
}


def map_provider_status(source: WebhookSource, provider_status: str) -> SubscriptionStatus:
    """Map a provider status string; anything unrecognised becomes PENDING."""

    return _STATUS_TABLES.get(source, {}).get(provider_status, SubscriptionStatus.PENDING)


# ----------------------------------------------------------------------
# Signature verification
# ----------------------------------------------------------------------
class SignatureVerifier(Protocol):
    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        ...


class StripeSignatureVerifier:
    """Checks ``Stripe-Signature`` through the Stripe SDK with a timestamp tolerance."""

    def __init__(self, secret: Optional[str], *, tolerance_seconds: int = STRIPE_TIMESTAMP_TOLERANCE_SECONDS) -> None:
        self._secret = secret
        self._tolerance_seconds = tolerance_seconds

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self._secret:
            logger.warning("Stripe webhook secret not configured")
            return False
        header = headers.get(STRIPE_SIGNATURE_HEADER)
        if not header:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                header,
                self._secret,
                tolerance=self._tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature rejected: %s", exc)
            return False
        except ValueError:
            return False
        return True


class IyzicoSignatureVerifier:
    """Checks ``X-Iyzico-Signature``: hex HMAC-SHA256 of the raw body."""

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self._secret:
            logger.warning("Iyzico webhook secret not configured")
            return False
        signature = headers.get(IYZICO_SIGNATURE_HEADER)
        if not signature:
            return False
        expected = hmac.new(self._secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))


class PayPalVerificationClient:
    """Calls PayPal's verify-webhook-signature API."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        api_base: str = "https://api-m.paypal.com",
        timeout: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def _post_json(self, path: str, body: bytes, headers: Dict[str, str]) -> Dict[str, Any]:
        request = urllib_request.Request(
            f"{self._api_base}{path}", data=body, headers=headers, method="POST"
        )
        with urllib_request.urlopen(request, timeout=self._timeout) as response:
            raw = response.read()
        return json.loads(raw.decode("utf-8"))

    def _access_token(self) -> str:
        credentials = f"{self._client_id}:{self._client_secret}".encode("utf-8")
        payload = self._post_json(
            "/v1/oauth2/token",
            b"grant_type=client_credentials",
            {
                "Authorization": f"Basic {base64.b64encode(credentials).decode('ascii')}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
        return str(payload["access_token"])

    def verify(self, *, webhook_id: str, headers: Mapping[str, str], event: Mapping[str, Any]) -> bool:
        if not self._client_id or not self._client_secret:
            logger.warning("PayPal API credentials not configured")
            return False
        body = {
            "auth_algo": headers["paypal-auth-algo"],
            "cert_url": headers["paypal-cert-url"],
            "transmission_id": headers["paypal-transmission-id"],
            "transmission_sig": headers["paypal-transmission-sig"],
            "transmission_time": headers["paypal-transmission-time"],
            "webhook_id": webhook_id,
            "webhook_event": dict(event),
        }
        try:
            token = self._access_token()
            result = self._post_json(
                "/v1/notifications/verify-webhook-signature",
                json.dumps(body).encode("utf-8"),
                {"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except (urllib_error.URLError, json.JSONDecodeError, UnicodeDecodeError, KeyError) as exc:
            logger.warning("PayPal signature verification call failed", extra={"error": str(exc)})
            return False
        return result.get("verification_status") == "SUCCESS"


class PayPalSignatureVerifier:
    """Requires every transmission header, then defers to PayPal's API."""

    def __init__(self, webhook_id: Optional[str], client: PayPalVerificationClient) -> None:
        self._webhook_id = webhook_id
        self._client = client

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self._webhook_id:
            logger.warning("PayPal webhook ID not configured")
            return False
        if any(not headers.get(name) for name in PAYPAL_SIGNATURE_HEADERS):
            return False
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return False
        if not isinstance(event, dict):
            return False
        return self._client.verify(webhook_id=self._webhook_id, headers=headers, event=event)


class UnsignedVerifier:
    """Accepts every delivery; used only by the development test endpoint."""

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return True


# ----------------------------------------------------------------------
# Translation
# ----------------------------------------------------------------------
def _require_id(value: Any, what: str) -> str:
    if not value:
        raise SubscriptionValidationError(f"Webhook payload is missing {what}")
    return str(value)


def _status_event(
    source: WebhookSource,
    external_id: str,
    provider_status: str,
    payload: Dict[str, Any],
) -> LifecycleEvent:
    return LifecycleEvent(
        trigger=LifecycleTrigger.PROVIDER_STATUS,
        target_status=map_provider_status(source, provider_status),
        external_subscription_id=external_id,
        payload=payload,
    )


def _translate_stripe(event_type: str, payload: Dict[str, Any]) -> Optional[LifecycleEvent]:
    obj = (payload.get("data") or {}).get("object") or {}
    if event_type == "customer.subscription.created":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PROVIDER_STATUS,
            target_status=SubscriptionStatus.ACTIVE,
            external_subscription_id=_require_id(obj.get("id"), "subscription id"),
            payload=obj,
        )
    if event_type == "customer.subscription.updated":
        if not obj.get("status"):
            return None
        return _status_event(
            WebhookSource.STRIPE, _require_id(obj.get("id"), "subscription id"), str(obj["status"]), obj
        )
    if event_type == "customer.subscription.deleted":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PROVIDER_STATUS,
            target_status=SubscriptionStatus.CANCELED,
            external_subscription_id=_require_id(obj.get("id"), "subscription id"),
            payload=obj,
        )
    if event_type == "invoice.payment_succeeded":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_SUCCEEDED,
            external_subscription_id=_require_id(obj.get("subscription"), "subscription id"),
            provider_payment_id=obj.get("payment_intent") or obj.get("id"),
            payload=obj,
        )
    if event_type == "invoice.payment_failed":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_FAILED,
            external_subscription_id=_require_id(obj.get("subscription"), "subscription id"),
            error="invoice payment failed",
            payload=obj,
        )
    if event_type == "customer.subscription.trial_will_end":
        return LifecycleEvent(
            trigger=LifecycleTrigger.TRIAL_WILL_END,
            external_subscription_id=_require_id(obj.get("id"), "subscription id"),
            payload=obj,
        )
    return None


def _iyzico_subscription_ref(data: Mapping[str, Any]) -> str:
    return _require_id(
        data.get("subscriptionReferenceCode") or data.get("subscriptionId"), "subscription reference"
    )


def _translate_iyzico(event_type: str, payload: Dict[str, Any]) -> Optional[LifecycleEvent]:
    data = payload.get("data") or {}
    if event_type == "SUBSCRIPTION_CREATED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PROVIDER_STATUS,
            target_status=SubscriptionStatus.ACTIVE,
            external_subscription_id=_iyzico_subscription_ref(data),
            payload=data,
        )
    if event_type == "SUBSCRIPTION_UPDATED":
        provider_status = data.get("status") or data.get("subscriptionStatus")
        if not provider_status:
            return None
        return _status_event(WebhookSource.IYZICO, _iyzico_subscription_ref(data), str(provider_status), data)
    if event_type == "SUBSCRIPTION_CANCELED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PROVIDER_STATUS,
            target_status=SubscriptionStatus.CANCELED,
            external_subscription_id=_iyzico_subscription_ref(data),
            payload=data,
        )
    if event_type == "PAYMENT_SUCCESS":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_SUCCEEDED,
            external_subscription_id=_iyzico_subscription_ref(data),
            provider_payment_id=data.get("paymentId"),
            payload=data,
        )
    if event_type == "PAYMENT_FAILED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_FAILED,
            external_subscription_id=_iyzico_subscription_ref(data),
            error="payment failed",
            payload=data,
        )
    return None


def _translate_paypal(event_type: str, payload: Dict[str, Any]) -> Optional[LifecycleEvent]:
    resource = payload.get("resource") or {}
    if event_type == "BILLING.SUBSCRIPTION.CREATED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PROVIDER_STATUS,
            target_status=SubscriptionStatus.ACTIVE,
            external_subscription_id=_require_id(resource.get("id"), "subscription id"),
            payload=resource,
        )
    if event_type == "BILLING.SUBSCRIPTION.UPDATED":
        if not resource.get("status"):
            return None
        return _status_event(
            WebhookSource.PAYPAL,
            _require_id(resource.get("id"), "subscription id"),
            str(resource["status"]),
            resource,
        )
    if event_type == "BILLING.SUBSCRIPTION.CANCELLED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PROVIDER_STATUS,
            target_status=SubscriptionStatus.CANCELED,
            external_subscription_id=_require_id(resource.get("id"), "subscription id"),
            payload=resource,
        )
    if event_type == "PAYMENT.SALE.COMPLETED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_SUCCEEDED,
            external_subscription_id=_require_id(resource.get("billing_agreement_id"), "billing agreement id"),
            provider_payment_id=resource.get("id"),
            payload=resource,
        )
    if event_type == "PAYMENT.SALE.DENIED":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_FAILED,
            external_subscription_id=_require_id(resource.get("billing_agreement_id"), "billing agreement id"),
            error="payment denied",
            payload=resource,
        )
    return None


def _translate_test(event_type: str, payload: Dict[str, Any]) -> Optional[LifecycleEvent]:
    if event_type == "test.subscription.payment_succeeded":
        return LifecycleEvent(
            trigger=LifecycleTrigger.PAYMENT_SUCCEEDED,
            external_subscription_id=_require_id(payload.get("subscription_id"), "subscription_id"),
            payload=payload,
        )
    return None


_TRANSLATORS: Dict[WebhookSource, Callable[[str, Dict[str, Any]], Optional[LifecycleEvent]]] = {
    WebhookSource.STRIPE: _translate_stripe,
    WebhookSource.IYZICO: _translate_iyzico,
    WebhookSource.PAYPAL: _translate_paypal,
    WebhookSource.TEST: _translate_test,
}


def translate(source: WebhookSource, event_type: str, payload: Dict[str, Any]) -> Optional[LifecycleEvent]:
    """Map a provider event onto a lifecycle event; ``None`` for unhandled types."""

    return _TRANSLATORS[source](event_type, payload)


def _body_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def _identify(source: WebhookSource, payload: Mapping[str, Any], raw_body: bytes) -> Tuple[str, str]:
    """Return ``(event_id, event_type)`` for a parsed delivery."""

    if source == WebhookSource.STRIPE:
        return _require_id(payload.get("id"), "event id"), str(payload.get("type") or "")
    if source == WebhookSource.IYZICO:
        event_id = payload.get("eventId") or payload.get("iyziEventId") or _body_digest(raw_body)
        return str(event_id), str(payload.get("eventType") or "")
    if source == WebhookSource.PAYPAL:
        return _require_id(payload.get("id"), "event id"), str(payload.get("event_type") or "")
    return str(payload.get("id") or _body_digest(raw_body)), str(payload.get("type") or "")


# ----------------------------------------------------------------------
# Deduplication
# ----------------------------------------------------------------------
class WebhookEventLog(Protocol):
    def seen(self, key: str) -> bool:
        ...

    def remember(self, event: WebhookEvent) -> None:
        ...


class InMemoryWebhookEventLog:
    """Remembers processed deliveries for a bounded window."""

    def __init__(
        self,
        *,
        window_seconds: int = 86400,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = Lock()
        self._entries: Dict[str, datetime] = {}

    def _purge(self, now: datetime) -> None:
        cutoff = now - self._window
        expired = [key for key, received_at in self._entries.items() if received_at < cutoff]
        for key in expired:
            del self._entries[key]

    def seen(self, key: str) -> bool:
        with self._lock:
            self._purge(self._clock())
            return key in self._entries

    def remember(self, event: WebhookEvent) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._entries[event.idempotency_key] = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ----------------------------------------------------------------------
# Ingestion
# ----------------------------------------------------------------------
class WebhookOutcome(BaseModel):
    """What happened to one delivery; every outcome is acknowledged to the provider."""

    source: WebhookSource
    event_id: str
    event_type: str
    status: str
    subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class WebhookIngestor:
    """Verifies, deduplicates, translates and applies provider webhooks."""

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        repository: SubscriptionRepository,
        verifiers: Mapping[WebhookSource, SignatureVerifier],
        *,
        event_log: Optional[WebhookEventLog] = None,
        test_endpoint_enabled: bool = False,
    ) -> None:
        self._state_machine = state_machine
        self._repository = repository
        self._verifiers = dict(verifiers)
        self._event_log = event_log or InMemoryWebhookEventLog()
        self._test_endpoint_enabled = test_endpoint_enabled

    def ingest(self, source: WebhookSource, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        if source == WebhookSource.TEST and not self._test_endpoint_enabled:
            raise NotFoundError("Test webhook endpoint is disabled")

        normalized = {str(key).lower(): str(value) for key, value in headers.items()}
        verifier = self._verifiers.get(source)
        if verifier is None or not verifier.verify(raw_body, normalized):
            logger.warning("Rejected webhook with invalid signature", extra={"source": source.value})
            raise SignatureError(f"Invalid {source.value} webhook signature")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise SubscriptionValidationError("Malformed webhook payload") from exc
        if not isinstance(payload, dict):
            raise SubscriptionValidationError("Malformed webhook payload")

        event_id, event_type = _identify(source, payload, raw_body)
        event = WebhookEvent(source=source, event_id=event_id, event_type=event_type, payload=payload)
        log_extra = {"source": source.value, "event_id": event_id, "event_type": event_type}

        if self._event_log.seen(event.idempotency_key):
            logger.info("Duplicate webhook delivery ignored", extra=log_extra)
            return self._outcome(event, "duplicate")

        lifecycle = translate(source, event_type, payload)
        if lifecycle is None:
            logger.info("Unhandled webhook event type", extra=log_extra)
            self._event_log.remember(event)
            return self._outcome(event, "ignored")

        subscription = self._find_subscription(source, lifecycle.external_subscription_id or "")
        if subscription is None:
            logger.warning(
                "Webhook references unknown subscription",
                extra={**log_extra, "external_subscription_id": lifecycle.external_subscription_id},
            )
            self._event_log.remember(event)
            return self._outcome(event, "unknown_subscription")

        result = self._state_machine.apply(
            subscription.subscription_id, lifecycle, idempotency_key=event.idempotency_key
        )
        self._event_log.remember(event)
        logger.info(
            "Webhook processed",
            extra={
                **log_extra,
                "subscription_id": subscription.subscription_id,
                "applied": result.applied,
                "status": result.subscription.status.value,
            },
        )
        return self._outcome(
            event, "applied" if result.applied else "noop", subscription.subscription_id
        )

    def _find_subscription(self, source: WebhookSource, external_id: str) -> Optional[Subscription]:
        if source in (WebhookSource.STRIPE, WebhookSource.IYZICO):
            return self._repository.find_by_external_id(source.value, external_id)
        found = self._repository.find_by_external_id("", external_id)
        if found is None and source == WebhookSource.TEST:
            found = self._repository.get_subscription(external_id)
        return found

    @staticmethod
    def _outcome(event: WebhookEvent, status: str, subscription_id: Optional[str] = None) -> WebhookOutcome:
        return WebhookOutcome(
            source=event.source,
            event_id=event.event_id,
            event_type=event.event_type,
            status=status,
            subscription_id=subscription_id,
        )


def build_verifiers(
    *,
    stripe_secret: Optional[str],
    iyzico_secret: Optional[str],
    paypal_webhook_id: Optional[str],
    paypal_client: PayPalVerificationClient,
) -> Dict[WebhookSource, SignatureVerifier]:
    return {
        WebhookSource.STRIPE: StripeSignatureVerifier(stripe_secret),
        WebhookSource.IYZICO: IyzicoSignatureVerifier(iyzico_secret),
        WebhookSource.PAYPAL: PayPalSignatureVerifier(paypal_webhook_id, paypal_client),
        WebhookSource.TEST: UnsignedVerifier(),
    }


__all__ = [
    "InMemoryWebhookEventLog",
    "IyzicoSignatureVerifier",
    "PayPalSignatureVerifier",
    "PayPalVerificationClient",
    "SignatureVerifier",
    "StripeSignatureVerifier",
    "UnsignedVerifier",
    "WebhookEventLog",
    "WebhookIngestor",
    "WebhookOutcome",
    "build_verifiers",
    "map_provider_status",
    "translate",
]
