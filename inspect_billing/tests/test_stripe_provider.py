"""Stripe provider and webhook verifier tests with the Stripe API patched out."""
import json
from types import SimpleNamespace

import pytest
import stripe

from inspect_billing.app.catalog import BillingCycle
from inspect_billing.app.exceptions import ExternalProviderError, ValidationError
from inspect_billing.app.services.stripe_provider import StripeBillingProvider, StripeWebhookVerifier
from inspect_billing.app.subscriptions import BillableItem, BillableKind


MODULE = BillableItem(kind=BillableKind.MODULE, item_id="white_label")


@pytest.fixture()
def provider() -> StripeBillingProvider:
    return StripeBillingProvider(api_key="sk_test_123", product_id="prod_addons")


def _add(provider: StripeBillingProvider, **overrides):
    kwargs = dict(
        provider_subscription_id="sub_1",
        item=MODULE,
        unit_amount=15000,
        currency="GBP",
        billing_cycle=BillingCycle.ANNUAL,
        idempotency_key="evt_1:module:white_label",
    )
    kwargs.update(overrides)
    return provider.add_subscription_item(**kwargs)


def test_provider_requires_api_key():
    with pytest.raises(ValueError):
        StripeBillingProvider(api_key="")


def test_add_subscription_item_sends_price_data(monkeypatch, provider):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "si_123"}

    monkeypatch.setattr(stripe.SubscriptionItem, "create", fake_create)

    line_item = _add(provider)

    assert line_item.provider_item_id == "si_123"
    assert line_item.item_id == "white_label"
    assert line_item.unit_amount == 15000
    assert captured["subscription"] == "sub_1"
    assert captured["price_data"] == {
        "currency": "gbp",
        "product": "prod_addons",
        "unit_amount": 15000,
        "recurring": {"interval": "year"},
    }
    assert captured["metadata"] == {"billable_kind": "module", "item_id": "white_label"}
    assert captured["idempotency_key"] == "evt_1:module:white_label"
    assert captured["api_key"] == "sk_test_123"


def test_add_subscription_item_requires_product():
    provider = StripeBillingProvider(api_key="sk_test_123")

    with pytest.raises(ValidationError) as excinfo:
        _add(provider)

    assert excinfo.value.code == "provider_misconfigured"


@pytest.mark.parametrize(
    "error, expected, retryable",
    [
        (stripe.APIConnectionError("network down"), ExternalProviderError, True),
        (stripe.InvalidRequestError("No such subscription", "subscription"), ValidationError, False),
    ],
)
def test_stripe_errors_are_translated(monkeypatch, provider, error, expected, retryable):
    def fake_create(**kwargs):
        raise error

    monkeypatch.setattr(stripe.SubscriptionItem, "create", fake_create)

    with pytest.raises(expected) as excinfo:
        _add(provider)

    assert excinfo.value.retryable is retryable


def test_remove_subscription_item_passes_proration(monkeypatch, provider):
    calls = []
    monkeypatch.setattr(
        stripe.SubscriptionItem,
        "delete",
        lambda item_id, **kwargs: calls.append((item_id, kwargs["proration_behavior"])),
    )

    provider.remove_subscription_item(provider_subscription_id="sub_1", provider_item_id="si_1", prorate=False)
    provider.remove_subscription_item(provider_subscription_id="sub_1", provider_item_id="si_2", prorate=True)

    assert calls == [("si_1", "none"), ("si_2", "create_prorations")]


def test_removing_missing_item_is_tolerated(monkeypatch, provider):
    def fake_delete(item_id, **kwargs):
        raise stripe.InvalidRequestError("No such subscription item", "id", code="resource_missing")

    monkeypatch.setattr(stripe.SubscriptionItem, "delete", fake_delete)

    provider.remove_subscription_item(provider_subscription_id="sub_1", provider_item_id="si_gone", prorate=False)


def test_list_pending_invoice_items_reads_billable_metadata(monkeypatch, provider):
    listed = [
        {"id": "ii_1", "metadata": {"billable_kind": "bundle", "item_id": "essential"}, "amount": 27900, "currency": "gbp"},
        {"id": "ii_2", "metadata": {}, "amount": 500, "currency": "gbp"},
    ]
    monkeypatch.setattr(
        stripe.InvoiceItem,
        "list",
        lambda **kwargs: SimpleNamespace(auto_paging_iter=lambda: iter(listed)),
    )

    [item] = provider.list_pending_invoice_items("sub_1")

    assert item.provider_item_id == "ii_1"
    assert item.kind == BillableKind.BUNDLE
    assert item.unit_amount == 27900
    assert item.currency == "GBP"
    assert item.pending is True


def test_verifier_without_secret_decodes_payload():
    verifier = StripeWebhookVerifier(None)

    assert verifier.verifies_signatures is False
    assert verifier.decode(b'{"id": "evt_1"}', None) == {"id": "evt_1"}


@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]"])
def test_verifier_rejects_non_object_payloads(payload):
    with pytest.raises(ValidationError):
        StripeWebhookVerifier(None).decode(payload, None)


def test_verifier_requires_signature_header():
    with pytest.raises(ValidationError) as excinfo:
        StripeWebhookVerifier("whsec_test").decode(b"{}", None)

    assert excinfo.value.code == "invalid_signature"


def test_verifier_rejects_bad_signature(monkeypatch):
    def fake_construct_event(payload, signature, secret):
        raise stripe.SignatureVerificationError("bad signature", signature)

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct_event)

    with pytest.raises(ValidationError) as excinfo:
        StripeWebhookVerifier("whsec_test").decode(b"{}", "t=1,v1=abc")

    assert excinfo.value.code == "invalid_signature"


def test_verifier_accepts_valid_signature(monkeypatch):
    seen = []
    monkeypatch.setattr(
        stripe.Webhook,
        "construct_event",
        lambda payload, signature, secret: seen.append((signature, secret)),
    )
    body = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode("utf-8")

    decoded = StripeWebhookVerifier("whsec_test").decode(body, "t=1,v1=abc")

    assert decoded["type"] == "invoice.paid"
    assert seen == [("t=1,v1=abc", "whsec_test")]
