"""Stripe implementations of the billing provider and webhook verification."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import stripe

from ..catalog.models import BillingCycle
from ..exceptions import ExternalProviderError, ValidationError
from ..subscriptions.models import BillableItem, BillableKind, LineItem


logger = logging.getLogger("billing")

_INTERVALS = {BillingCycle.MONTHLY: "month", BillingCycle.ANNUAL: "year"}


def _translate_stripe_error(exc: stripe.StripeError, action: str) -> Exception:
    if isinstance(exc, stripe.InvalidRequestError):
        return ValidationError(f"Stripe rejected {action}: {exc.user_message or exc}", code="provider_rejected")
    return ExternalProviderError(f"Stripe {action} failed: {exc.user_message or exc}")


def _line_item_from_stripe(obj: Mapping[str, Any], *, pending: bool = False) -> Optional[LineItem]:
    metadata = obj.get("metadata") or {}
    kind = metadata.get("billable_kind")
    item_id = metadata.get("item_id")
    if not kind or not item_id:
        return None
    try:
        billable_kind = BillableKind(kind)
    except ValueError:
        return None
    price = obj.get("price") or {}
    unit_amount = price.get("unit_amount") if price else None
    if unit_amount is None:
        unit_amount = obj.get("unit_amount") or obj.get("amount") or 0
    currency = (price.get("currency") if price else None) or obj.get("currency") or "gbp"
    return LineItem(
        provider_item_id=obj["id"],
        kind=billable_kind,
        item_id=item_id,
        unit_amount=int(unit_amount),
        currency=str(currency).upper(),
        pending=pending,
    )


class StripeBillingProvider:
    """Adds and removes recurring subscription items through the Stripe API."""

    def __init__(self, *, api_key: str, product_id: Optional[str] = None) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._api_key = api_key
        self._product_id = product_id

    def add_subscription_item(
        self,
        *,
        provider_subscription_id: str,
        item: BillableItem,
        unit_amount: int,
        currency: str,
        billing_cycle: BillingCycle,
        idempotency_key: str,
    ) -> LineItem:
        if not self._product_id:
            raise ValidationError("STRIPE_ADDON_PRODUCT_ID is not configured", code="provider_misconfigured")
        metadata = {"billable_kind": item.kind.value, "item_id": item.item_id}
        try:
            created = stripe.SubscriptionItem.create(
                subscription=provider_subscription_id,
                price_data={
                    "currency": currency.lower(),
                    "product": self._product_id,
                    "unit_amount": unit_amount,
                    "recurring": {"interval": _INTERVALS[billing_cycle]},
                },
                quantity=1,
                metadata=metadata,
                proration_behavior="create_prorations",
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc, "subscription item creation") from exc

        logger.info(
            "Stripe subscription item %s created for %s",
            created["id"],
            item.key,
            extra={"provider_subscription_id": provider_subscription_id},
        )
        return LineItem(
            provider_item_id=created["id"],
            kind=item.kind,
            item_id=item.item_id,
            unit_amount=unit_amount,
            currency=currency.upper(),
        )

    def remove_subscription_item(
        self,
        *,
        provider_subscription_id: str,
        provider_item_id: str,
        prorate: bool,
    ) -> None:
        try:
            stripe.SubscriptionItem.delete(
                provider_item_id,
                proration_behavior="create_prorations" if prorate else "none",
                api_key=self._api_key,
            )
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                logger.info("Stripe subscription item %s already removed", provider_item_id)
                return
            raise _translate_stripe_error(exc, "subscription item removal") from exc
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc, "subscription item removal") from exc

    def list_pending_invoice_items(self, provider_subscription_id: str) -> Sequence[LineItem]:
        try:
            listing = stripe.InvoiceItem.list(
                subscription=provider_subscription_id,
                pending=True,
                limit=100,
                api_key=self._api_key,
            )
            items: List[LineItem] = []
            for invoice_item in listing.auto_paging_iter():
                line = _line_item_from_stripe(invoice_item, pending=True)
                if line is not None:
                    items.append(line)
        except stripe.StripeError as exc:
            raise _translate_stripe_error(exc, "pending invoice item lookup") from exc
        return items


class StripeWebhookVerifier:
    """Checks the ``Stripe-Signature`` header and decodes the payload.

    Without a signing secret the payload is decoded unverified, which is only
    suitable for the local sandbox.
    """

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret

    @property
    def verifies_signatures(self) -> bool:
        return bool(self._secret)

    def decode(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if self._secret:
            if not signature:
                raise ValidationError("Missing Stripe-Signature header", code="invalid_signature")
            try:
                stripe.Webhook.construct_event(payload, signature, self._secret)
            except stripe.SignatureVerificationError as exc:
                raise ValidationError("Invalid webhook signature", code="invalid_signature") from exc
            except ValueError as exc:
                raise ValidationError("Invalid webhook payload") from exc
        try:
            decoded = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("Webhook payload is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        return decoded


__all__ = ["StripeBillingProvider", "StripeWebhookVerifier"]
