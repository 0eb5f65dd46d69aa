from __future__ import annotations

import threading
from decimal import Decimal

from backend.app.subscriptions import (
    IyzicoGateway,
    ManualGateway,
    PaymentProviderName,
    ProviderError,
    RenewalRequest,
    StripeGateway,
    build_gateway_registry,
)


def _request(**overrides) -> RenewalRequest:
    fields = dict(
        subscription_id="sub_1",
        amount=Decimal("29.99"),
        currency="usd",
        payment_method_ref="pm_card_1",
        customer_ref="cus_1",
    )
    fields.update(overrides)
    return RenewalRequest(**fields)


class BlockingChargeClient:
    def __init__(self) -> None:
        self.release = threading.Event()

    def charge(self, provider, payload):
        self.release.wait(5)
        return {"id": "pi_late", "status": "succeeded"}


def test_stripe_gateway_shapes_payload_and_reads_success(charge_client):
    gateway = StripeGateway(charge_client, timeout_seconds=5.0)
    try:
        result = gateway.renew(_request())
    finally:
        gateway.close()

    assert result.success is True
    assert result.provider_payment_id == "pi_ok"
    provider, payload = charge_client.calls[0]
    assert provider == PaymentProviderName.STRIPE
    assert payload["amount"] == 2999
    assert payload["currency"] == "usd"
    assert payload["customer"] == "cus_1"
    assert payload["metadata"] == {"subscription_id": "sub_1"}


def test_iyzico_gateway_reports_provider_error_message(charge_client):
    charge_client.responses = [{"status": "failure", "errorMessage": "Kart limiti yetersiz"}]
    gateway = IyzicoGateway(charge_client, timeout_seconds=5.0)
    try:
        result = gateway.renew(_request(currency="try", amount=Decimal("950")))
    finally:
        gateway.close()

    assert result.success is False
    assert result.error == "Kart limiti yetersiz"
    _provider, payload = charge_client.calls[0]
    assert payload["price"] == "950.00"
    assert payload["currency"] == "TRY"
    assert payload["cardToken"] == "pm_card_1"


def test_iyzico_gateway_success(charge_client):
    charge_client.responses = [{"status": "success", "paymentId": "123456"}]
    gateway = IyzicoGateway(charge_client, timeout_seconds=5.0)
    try:
        result = gateway.renew(_request())
    finally:
        gateway.close()

    assert result.success is True
    assert result.provider_payment_id == "123456"


def test_timeout_becomes_failure_result():
    client = BlockingChargeClient()
    gateway = StripeGateway(client, timeout_seconds=0.05)
    try:
        result = gateway.renew(_request())
    finally:
        client.release.set()
        gateway.close()

    assert result.success is False
    assert "timed out" in result.error


def test_malformed_response_becomes_failure_result(charge_client):
    charge_client.responses = [{"unexpected": True}]
    gateway = StripeGateway(charge_client, timeout_seconds=5.0)
    try:
        result = gateway.renew(_request())
    finally:
        gateway.close()

    assert result.success is False
    assert result.error == "malformed provider response"


def test_client_exceptions_never_escape(charge_client):
    charge_client.responses = [ProviderError("card network unavailable"), RuntimeError("socket closed")]
    gateway = StripeGateway(charge_client, timeout_seconds=5.0)
    try:
        provider_failure = gateway.renew(_request())
        unexpected_failure = gateway.renew(_request())
    finally:
        gateway.close()

    assert provider_failure.success is False
    assert provider_failure.error == "card network unavailable"
    assert unexpected_failure.success is False
    assert unexpected_failure.error == "provider charge failed"


def test_malformed_request_rejected_without_calling_provider(charge_client):
    gateway = StripeGateway(charge_client, timeout_seconds=5.0)
    try:
        zero_amount = gateway.renew(_request(amount=Decimal("0")))
        bad_currency = gateway.renew(_request(currency="dollars"))
        no_card = gateway.renew(_request(payment_method_ref=None))
    finally:
        gateway.close()

    assert zero_amount.error == "amount must be positive"
    assert bad_currency.error == "currency must be a 3-letter code"
    assert no_card.error == "no payment method on file"
    assert charge_client.calls == []


def test_manual_gateway_always_requires_manual_payment(charge_client):
    result = ManualGateway(charge_client).renew(_request())

    assert result.success is False
    assert result.error == "manual payment required"
    assert charge_client.calls == []


def test_registry_resolves_each_provider(charge_client):
    registry = build_gateway_registry(charge_client)
    try:
        assert isinstance(registry.for_provider(PaymentProviderName.STRIPE), StripeGateway)
        assert isinstance(registry.for_provider(PaymentProviderName.IYZICO), IyzicoGateway)
        assert isinstance(registry.for_provider(PaymentProviderName.MANUAL), ManualGateway)
    finally:
        registry.close()
