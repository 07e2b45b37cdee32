"""Shape probing and value coercion for loosely-shaped provider payloads.

Probe orders are data: each tuple below is tried first to last and the first
usable match wins. Adding a new provider alias means appending a key, not
adding a branch.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from contracts.errors import MalformedPayloadError

_NON_DIGITS = re.compile(r"\D+")


class DocumentStrategy(Protocol):
    def extract(self, payload: Any) -> Any: ...


@dataclass(frozen=True)
class EnvelopeKey:
    """Unwrap ``payload[key]`` when it holds an object."""

    key: str

    def extract(self, payload: Any) -> Any:
        if not isinstance(payload, Mapping):
            return None
        value = payload.get(self.key)
        return value if isinstance(value, Mapping) else None


@dataclass(frozen=True)
class WholePayload:
    """The payload already is the sale document."""

    def extract(self, payload: Any) -> Any:
        return payload


DOCUMENT_STRATEGIES: tuple[DocumentStrategy, ...] = (
    EnvelopeKey("data"),
    EnvelopeKey("sale"),
    WholePayload(),
)

ITEM_KEYS = ("items", "sale_items", "itens", "products", "order_items")
CHOICE_KEYS = ("choices", "item_choices", "options", "additionals", "complements")
PAYMENT_KEYS = ("payments", "sale_payments", "payment_methods")
DELIVERY_KEYS = ("delivery", "sale_delivery", "delivery_info")
CUSTOMER_KEYS = ("customer", "client")
STATUS_HISTORY_KEYS = ("status_histories", "sale_status_histories", "histories")
ADDRESS_KEYS = ("address", "delivery_address")


def decode_payload(payload: Any) -> Any:
    """Return the payload as Python objects (JSON text is decoded)."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayloadError(f"payload is not valid UTF-8: {exc}") from exc
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedPayloadError(f"payload is not valid JSON: {exc}") from exc
    return payload


def extract_document(
    payload: Any, strategies: Sequence[DocumentStrategy] = DOCUMENT_STRATEGIES
) -> Mapping[str, Any]:
    """Resolve the canonical sale document from a raw payload."""
    decoded = decode_payload(payload)
    document: Any = None
    for strategy in strategies:
        document = strategy.extract(decoded)
        if document is not None:
            break
    if not isinstance(document, Mapping):
        raise MalformedPayloadError(
            f"sale document is not an object (got {type(document).__name__})"
        )
    return document


def first_array(document: Mapping[str, Any], keys: Sequence[str]) -> list[Mapping[str, Any]]:
    """Return the first list found under ``keys``; object entries only."""
    for key in keys:
        value = document.get(key)
        if isinstance(value, list):
            return [entry for entry in value if isinstance(entry, Mapping)]
    return []


def first_mapping(document: Mapping[str, Any], keys: Sequence[str]) -> Mapping[str, Any] | None:
    for key in keys:
        value = document.get(key)
        if isinstance(value, Mapping):
            return value
    return None


def first_value(document: Mapping[str, Any], keys: Sequence[str]) -> Any:
    """First non-null, non-blank value under ``keys``."""
    for key in keys:
        value = document.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


# ---------------------------
# Coercion helpers
# ---------------------------

def text(value: Any) -> str | None:
    if value is None:
        return None
    out = str(value).strip()
    return out or None


def digits_only(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    out = _NON_DIGITS.sub("", str(value))
    return out or None


def phone_digits(value: Any) -> str | None:
    """Digits-only phone; for a list, the first entry that has digits."""
    if isinstance(value, (list, tuple)):
        for entry in value:
            found = phone_digits(entry.get("number") if isinstance(entry, Mapping) else entry)
            if found:
                return found
        return None
    return digits_only(value)


def email(value: Any) -> str | None:
    out = text(value)
    if out is None or "@" not in out:
        return None
    return out.lower()


def decimal_or_none(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        out = Decimal(raw)
    except (InvalidOperation, ValueError):
        return None
    return out if out.is_finite() else None


def int_or_none(value: Any) -> int | None:
    number = decimal_or_none(value)
    if number is None:
        return None
    return int(number)


def yes_no(value: Any) -> bool | None:
    """Provider flags arrive as ``"Y"``/``"N"`` or real booleans."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    flag = str(value).strip().upper()
    if flag in {"Y", "S", "TRUE", "1"}:
        return True
    if flag in {"N", "FALSE", "0"}:
        return False
    return None


def timestamp_or_none(value: Any) -> datetime | None:
    """Parse ISO-ish timestamps; naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        raw = text(value)
        if raw is None:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def date_or_none(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = text(value)
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None
