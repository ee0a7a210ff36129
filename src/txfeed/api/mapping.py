#!/usr/bin/env python3
"""
API Payload Mapping

Converts between the transactions REST API's JSON documents and the feed's
domain models. The backend is a document store: ids arrive as ``_id`` or
``id`` and ``categoryId`` may be a populated category document.
"""

import logging
from collections.abc import Mapping
from typing import Any

from ..core.dates import parse_api_date, parse_api_timestamp
from ..core.models import (
    CategoryRef,
    SyncState,
    Transaction,
    TransactionDraft,
    TransactionKind,
    default_payment_method,
)
from ..core.money import Money
from ..feed.remote import FeedPageResponse

logger = logging.getLogger(__name__)

# Partial-update keys accepted by PUT /transactions/{id}
UPDATE_FIELDS = {
    "amount": "amount",
    "category_id": "categoryId",
    "date": "date",
    "description": "description",
    "payment_method": "paymentMethod",
    "location": "location",
    "source": "source",
    "tags": "tags",
    "is_recurring": "isRecurring",
    "recurring_frequency": "recurringFrequency",
}


def _document_id(document: Mapping[str, Any]) -> str | None:
    value = document.get("_id") or document.get("id")
    return str(value) if value is not None else None


def category_from_api(data: Any) -> CategoryRef | None:
    """Category reference from a populated category document (or None)."""
    if not isinstance(data, Mapping) or not data.get("name"):
        return None
    return CategoryRef(
        id=_document_id(data) or "",
        name=data["name"],
        icon=data.get("icon"),
        color=data.get("color"),
        type=data.get("type"),
    )


def transaction_from_api(data: Mapping[str, Any], kind: TransactionKind | None = None) -> Transaction:
    """
    Build an authoritative transaction from an API document.

    Args:
        data: Transaction document
        kind: Kind to assume when the document has no ``type`` (the create
            endpoints are per kind and may omit it)

    Returns:
        Confirmed transaction carrying its server id

    Raises:
        ValueError: If the document has no id or an unusable amount/date
    """
    transaction_id = _document_id(data)
    if not transaction_id:
        raise ValueError(f"Transaction document without id: {sorted(data)}")

    if data.get("type"):
        kind = TransactionKind(data["type"])
    elif kind is None:
        raise ValueError(f"Transaction {transaction_id} has no type")

    raw_category = data.get("categoryId")
    if isinstance(raw_category, Mapping):
        category_id = _document_id(raw_category) or ""
        category = category_from_api(data.get("category")) or category_from_api(raw_category)
    else:
        category_id = str(raw_category) if raw_category is not None else ""
        category = category_from_api(data.get("category"))

    payment_method = data.get("paymentMethod") or default_payment_method(kind)

    return Transaction(
        id=transaction_id,
        server_id=transaction_id,
        kind=kind,
        amount=Money.from_decimal(data["amount"]),
        category_id=category_id,
        date=parse_api_date(data["date"]),
        sync_state=SyncState.CONFIRMED,
        description=data.get("description"),
        payment_method=payment_method,
        location=data.get("location"),
        source=data.get("source"),
        tags=tuple(data.get("tags") or ()),
        is_recurring=bool(data.get("isRecurring", False)),
        recurring_frequency=data.get("recurringFrequency"),
        category=category,
        created_at=parse_api_timestamp(data.get("createdAt")),
        updated_at=parse_api_timestamp(data.get("updatedAt")),
    )


def draft_to_api(draft: TransactionDraft) -> dict[str, Any]:
    """Request body for POST /expenses or POST /income."""
    body: dict[str, Any] = {
        "categoryId": draft.category_id,
        "amount": draft.amount.to_api(),
        "description": draft.description,
        "date": draft.date.isoformat(),
        "paymentMethod": draft.payment_method or default_payment_method(draft.kind),
        "tags": list(draft.tags) if draft.tags else None,
    }
    if draft.kind is TransactionKind.INCOME:
        body["source"] = draft.source.strip() if draft.source else draft.source
    else:
        body["location"] = draft.location
    if draft.is_recurring:
        body["isRecurring"] = True
        body["recurringFrequency"] = draft.recurring_frequency
    return {key: value for key, value in body.items() if value is not None}


def changes_to_api(changes: Mapping[str, Any]) -> dict[str, Any]:
    """
    Request body for PUT /transactions/{id}.

    Accepts model field names (``category_id``) or API names (``categoryId``)
    and converts Money, dates and tag tuples to JSON values.

    Raises:
        ValueError: If a key is not an updatable field
    """
    api_names = set(UPDATE_FIELDS.values())
    body: dict[str, Any] = {}
    for key, value in changes.items():
        name = UPDATE_FIELDS.get(key, key)
        if name not in api_names:
            raise ValueError(f"Field cannot be updated: {key}")
        if isinstance(value, Money):
            value = value.to_api()
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        body[name] = value
    return body


def page_from_api(payload: Mapping[str, Any]) -> FeedPageResponse:
    """
    Feed page from a GET /transactions envelope.

    An envelope with ``success: false`` is treated as an empty last page.
    """
    if not payload.get("success", False):
        logger.warning(f"Feed request unsuccessful: {payload.get('message', 'no message')}")
        return FeedPageResponse()

    data = payload.get("data") or {}
    items = []
    for document in data.get("transactions") or []:
        try:
            items.append(transaction_from_api(document))
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping malformed transaction document: {e}")

    total = data.get("total")
    if total is None:
        total = (data.get("pagination") or {}).get("total")

    return FeedPageResponse(
        items=tuple(items),
        next_cursor=data.get("nextCursor"),
        has_more=bool(data.get("hasMore", False)),
        total=int(total) if total is not None else None,
    )
