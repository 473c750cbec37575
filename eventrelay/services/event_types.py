"""Closed registry of event types the platform emits."""

from typing import Iterable

WILDCARD = "*"

RESOURCES = [
    "address",
    "app_version",
    "bank_account",
    "booking",
    "card",
    "cart",
    "chat",
    "chat_message",
    "coupon",
    "customer",
    "delivery_charge",
    "document",
    "enterprise_account",
    "installation",
    "job",
    "merchant",
    "notification",
    "oauth_application",
    "order",
    "order_note",
    "payment",
    "product",
    "product_category",
    "product_review",
    "product_variation",
    "rental_package",
    "restaurant",
    "review",
    "service_provider",
    "service_provider_vehicle",
    "service_type",
    "store",
    "store_review",
    "subscription",
    "user",
    "user_payment_method",
    "vehicle",
    "wallet",
    "wallet_transaction",
]

ACTIONS = ["created", "updated", "deleted"]

PING = "webhook.ping"
AUTO_DISABLED = "subscription.auto_disabled"

# Emitted on the alerts topic only; subscriptions cannot ask for them.
INTERNAL_EVENT_TYPES = frozenset({AUTO_DISABLED})

EVENT_TYPES = frozenset(
    [f"{resource}.{action}" for resource in RESOURCES for action in ACTIONS]
    + [PING]
) | INTERNAL_EVENT_TYPES

SUBSCRIBABLE_EVENT_TYPES = EVENT_TYPES - INTERNAL_EVENT_TYPES


def is_known(event_type: str) -> bool:
    return event_type in EVENT_TYPES


def normalize_filter(event_filter: Iterable[str]) -> list[str]:
    """Validate a subscription filter and return it de-duplicated, order kept.

    A filter is either exactly ``["*"]`` or a non-empty list of subscribable
    event types.
    """
    seen: list[str] = []
    for evt in event_filter:
        if evt in seen:
            continue
        if evt != WILDCARD and evt not in SUBSCRIBABLE_EVENT_TYPES:
            raise ValueError(f"Invalid event type: {evt}")
        seen.append(evt)
    if not seen:
        raise ValueError("Event filter must not be empty")
    if WILDCARD in seen and len(seen) > 1:
        raise ValueError("Wildcard filter cannot be combined with event types")
    return seen


def filter_matches(event_filter: Iterable[str], event_type: str) -> bool:
    for evt in event_filter:
        if evt == WILDCARD or evt == event_type:
            return True
    return False
