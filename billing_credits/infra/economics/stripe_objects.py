# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/economics/stripe_objects.py
"""
Accessors for Stripe payloads. Webhook events arrive as plain dicts, SDK calls
return StripeObjects; both are read through `field` so callers don't care.
Expandable fields may be an id string or an expanded object.
"""
from typing import Any, Dict, Optional


def field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    # StripeObject: item access first, `items` is also a dict method name
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, default)


def obj_id(ref: Any) -> Optional[str]:
    """'cus_123' or {'id': 'cus_123', ...} -> 'cus_123'."""
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref or None
    return field(ref, "id")


def metadata(obj: Any) -> Dict[str, str]:
    m = field(obj, "metadata") or {}
    try:
        items = m.items()
    except AttributeError:
        return {}
    return {str(k): str(v) for k, v in items if v is not None}


def first_item(subscription: Any) -> Any:
    items = field(field(subscription, "items"), "data") or []
    return items[0] if items else None


def subscription_price_id(subscription: Any) -> Optional[str]:
    return obj_id(field(first_item(subscription), "price"))


def subscription_customer_id(subscription: Any) -> Optional[str]:
    return obj_id(field(subscription, "customer"))


def default_payment_method(customer: Any) -> Optional[str]:
    return obj_id(field(field(customer, "invoice_settings"), "default_payment_method"))
