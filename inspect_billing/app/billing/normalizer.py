"""Normalize raw provider webhook payloads into :class:`BillingEvent` objects.

Two shapes are accepted: Stripe-style envelopes (``{id, type, created,
data: {object}}``) and flat payloads carrying the fields at the top level
(``eventId``/``event_id``, ``eventType``/``event_type``). Field names may be
snake_case or camelCase.
"""
from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..catalog.models import BillingCycle
from ..exceptions import ValidationError
from ..subscriptions.models import BillableKind, LineItem
from .models import (
    BillingEvent,
    BillingEventType,
    CheckoutCompletedDetails,
    CheckoutMode,
    PaymentFailedDetails,
    RenewalPaidDetails,
    SubscriptionDeletedDetails,
    SubscriptionUpdatedDetails,
)


EVENT_TYPE_ALIASES: Mapping[str, BillingEventType] = {
    "invoice.paid": BillingEventType.RENEWAL_PAID,
    "invoice.payment_succeeded": BillingEventType.RENEWAL_PAID,
    "invoice.payment_failed": BillingEventType.PAYMENT_FAILED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_DELETED,
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
}

_CAMEL_BOUNDARY = re.compile(r"_([a-z])")


def _camel(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(lambda match: match.group(1).upper(), name)


def _field(source: Optional[Mapping[str, Any]], *names: str) -> Any:
    """First non-empty value among ``names`` in snake_case or camelCase."""

    if not isinstance(source, Mapping):
        return None
    for name in names:
        for key in (name, _camel(name)):
            value = source.get(key)
            if value is not None and value != "":
                return value
    return None


def _identifier(value: Any) -> Optional[str]:
    # Stripe expands references into objects when requested.
    if isinstance(value, Mapping):
        value = value.get("id")
    if value is None or value == "":
        return None
    return str(value)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValidationError("Invalid timestamp", detail={"value": str(value)})
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError("Invalid timestamp", detail={"value": text}) from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValidationError("Invalid timestamp", detail={"value": str(value)})


def _parse_int(value: Any, *, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid integer for {name}", detail={"value": str(value)}) from exc


def _parse_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_id_list(value: Any) -> Tuple[str, ...]:
    """Accept lists, JSON arrays, or comma separated strings."""

    if value is None or value == "":
        return ()
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValidationError("Invalid id list", detail={"value": text}) from exc
        else:
            value = text.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValidationError("Invalid id list", detail={"value": str(value)})
    return tuple(str(item).strip() for item in value if str(item).strip())


def _currency(value: Any) -> Optional[str]:
    return str(value).upper() if value else None


def _metadata(obj: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    details = _field(obj, "subscription_details")
    for candidate in (_field(details, "metadata"), _field(obj, "metadata")):
        if isinstance(candidate, Mapping):
            merged.update(candidate)
    return merged


def _list_data(value: Any) -> List[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        value = value.get("data")
    if isinstance(value, list):
        return [entry for entry in value if isinstance(entry, Mapping)]
    return []


def _line_item(entry: Mapping[str, Any]) -> Optional[LineItem]:
    metadata = _field(entry, "metadata") or {}
    price = _field(entry, "price") or {}
    price_metadata = _field(price, "metadata") if isinstance(price, Mapping) else None
    kind_value = _field(metadata, "billable_kind", "kind") or _field(price_metadata, "billable_kind", "kind")
    item_id = _field(metadata, "item_id") or _field(price_metadata, "item_id")
    if kind_value is None or item_id is None:
        return None
    try:
        kind = BillableKind(str(kind_value))
    except ValueError:
        return None

    provider_item_id = _identifier(_field(entry, "subscription_item", "provider_item_id")) or _identifier(
        entry.get("id")
    )
    if provider_item_id is None:
        return None
    unit_amount = _field(price, "unit_amount") if isinstance(price, Mapping) else None
    if unit_amount is None:
        unit_amount = _field(entry, "unit_amount", "amount")
    currency = (_field(price, "currency") if isinstance(price, Mapping) else None) or _field(entry, "currency")
    return LineItem(
        provider_item_id=provider_item_id,
        kind=kind,
        item_id=str(item_id),
        unit_amount=max(0, _parse_int(unit_amount, name="unit_amount") or 0),
        currency=_currency(currency) or "GBP",
    )


def _line_items(obj: Mapping[str, Any]) -> Tuple[LineItem, ...]:
    entries = _list_data(_field(obj, "items")) + _list_data(_field(obj, "lines")) + _list_data(_field(obj, "line_items"))
    items = (_line_item(entry) for entry in entries)
    return tuple(item for item in items if item is not None)


def _period(obj: Mapping[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = _field(obj, "current_period_start", "period_start")
    end = _field(obj, "current_period_end", "period_end")
    if start is None or end is None:
        # Invoice periods live on their subscription lines.
        for line in _list_data(_field(obj, "lines")):
            period = _field(line, "period")
            if isinstance(period, Mapping):
                start = start if start is not None else period.get("start")
                end = end if end is not None else period.get("end")
                break
    return _parse_datetime(start), _parse_datetime(end)


def _split_envelope(raw: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str], Any, Mapping[str, Any]]:
    event_id = _field(raw, "event_id") or raw.get("id")
    event_type = _field(raw, "event_type") or raw.get("type")
    created = _field(raw, "created", "occurred_at")
    data = raw.get("data")
    if isinstance(data, Mapping) and isinstance(data.get("object"), Mapping):
        obj: Mapping[str, Any] = data["object"]
    elif isinstance(data, Mapping):
        obj = data
    else:
        obj = raw
    return (
        str(event_id) if event_id else None,
        str(event_type) if event_type else None,
        created,
        obj,
    )


def _resolve_type(value: str) -> BillingEventType:
    alias = EVENT_TYPE_ALIASES.get(value)
    if alias is not None:
        return alias
    try:
        return BillingEventType(value)
    except ValueError as exc:
        raise ValidationError("Unsupported billing event type", detail={"event_type": value}) from exc


def normalize_event(raw: Any) -> BillingEvent:
    """Build a canonical :class:`BillingEvent` from a decoded webhook payload."""

    if not isinstance(raw, Mapping):
        raise ValidationError("Webhook payload must be a JSON object")

    event_id, provider_type, created, obj = _split_envelope(raw)
    if not event_id:
        raise ValidationError("Webhook payload is missing an event id")
    if not provider_type:
        raise ValidationError("Webhook payload is missing an event type", detail={"event_id": event_id})
    event_type = _resolve_type(provider_type)
    metadata = _metadata(obj)

    # Flat payloads reuse the envelope, so their "id" is the event id.
    object_id = _identifier(obj.get("id")) if obj is not raw else None
    if event_type in {BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_DELETED}:
        provider_subscription_id = (
            _identifier(_field(obj, "provider_subscription_id", "subscription_id")) or object_id
        )
    else:
        provider_subscription_id = _identifier(
            _field(obj, "provider_subscription_id", "subscription_id", "subscription")
        )
    organization_id = _field(metadata, "organization_id", "org_id") or _field(
        obj, "organization_id", "client_reference_id"
    )

    details = _build_details(event_type, obj, metadata, object_id)
    try:
        return BillingEvent(
            event_id=event_id,
            event_type=event_type,
            provider_event_type=provider_type,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=_identifier(_field(obj, "provider_customer_id", "customer_id", "customer")),
            organization_id=str(organization_id) if organization_id else None,
            occurred_at=_parse_datetime(created) or datetime.now(timezone.utc),
            line_items=_line_items(obj),
            details=details,
        )
    except PydanticValidationError as exc:
        raise ValidationError(
            "Webhook payload failed validation",
            detail={"event_id": event_id, "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _build_details(
    event_type: BillingEventType,
    obj: Mapping[str, Any],
    metadata: Mapping[str, Any],
    object_id: Optional[str],
):
    try:
        if event_type == BillingEventType.RENEWAL_PAID:
            start, end = _period(obj)
            return RenewalPaidDetails(
                invoice_id=_identifier(_field(obj, "invoice_id")) or object_id,
                amount_paid=_parse_int(_field(obj, "amount_paid", "amount"), name="amount_paid") or 0,
                currency=_currency(_field(obj, "currency")),
                billing_reason=_field(obj, "billing_reason"),
                period_start=start,
                period_end=end,
            )
        if event_type == BillingEventType.PAYMENT_FAILED:
            return PaymentFailedDetails(
                invoice_id=_identifier(_field(obj, "invoice_id")) or object_id,
                amount_due=_parse_int(_field(obj, "amount_due", "amount"), name="amount_due") or 0,
                currency=_currency(_field(obj, "currency")),
                attempt_count=_parse_int(_field(obj, "attempt_count"), name="attempt_count"),
            )
        if event_type == BillingEventType.SUBSCRIPTION_UPDATED:
            start, end = _period(obj)
            status = _field(obj, "provider_status", "status")
            return SubscriptionUpdatedDetails(
                provider_status=str(status).lower() if status else None,
                cancel_at_period_end=_parse_bool(_field(obj, "cancel_at_period_end")),
                tier_id=_field(metadata, "tier_id") or _field(obj, "tier_id"),
                period_start=start,
                period_end=end,
            )
        if event_type == BillingEventType.SUBSCRIPTION_DELETED:
            return SubscriptionDeletedDetails()
        return _checkout_details(obj, metadata, object_id)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Webhook payload failed validation",
            detail={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _checkout_details(
    obj: Mapping[str, Any],
    metadata: Mapping[str, Any],
    object_id: Optional[str],
) -> CheckoutCompletedDetails:
    purchase_type = str(_field(metadata, "type", "purchase_type") or "").lower()
    provider_mode = str(_field(obj, "mode") or "").lower()
    credits = _parse_int(_field(metadata, "credits", "credit_quantity") or _field(obj, "credits"), name="credits") or 0
    if purchase_type in {"topup", "credits", "addon_pack"} or (provider_mode == "payment" and credits > 0):
        mode = CheckoutMode.TOPUP
    else:
        mode = CheckoutMode.SUBSCRIPTION

    cycle_value = str(_field(metadata, "billing_cycle") or _field(obj, "billing_cycle") or "monthly").lower()
    try:
        cycle = BillingCycle(cycle_value)
    except ValueError as exc:
        raise ValidationError("Invalid billing cycle", detail={"billing_cycle": cycle_value}) from exc

    start, end = _period(obj)
    return CheckoutCompletedDetails(
        mode=mode,
        session_id=_identifier(_field(obj, "session_id")) or object_id,
        tier_id=_field(metadata, "tier_id") or _field(obj, "tier_id"),
        module_ids=_parse_id_list(_field(metadata, "module_ids") or _field(obj, "module_ids")),
        bundle_ids=_parse_id_list(_field(metadata, "bundle_ids") or _field(obj, "bundle_ids")),
        credits=credits,
        pack_id=_field(metadata, "pack_id") or _field(obj, "pack_id"),
        amount_total=_parse_int(_field(obj, "amount_total", "amount"), name="amount_total") or 0,
        currency=_currency(_field(metadata, "currency") or _field(obj, "currency")),
        billing_cycle=cycle,
        period_start=start,
        period_end=end,
    )


__all__ = ["EVENT_TYPE_ALIASES", "normalize_event"]
