"""Map a raw snapshot into typed, normalized sale records.

Everything here is pure: no database access. ``build_sale`` either returns a
``NormalizedSale`` or raises ``MalformedPayloadError``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from contracts.queue_types import RawSnapshot
from services.normalization import extraction as ex

# Conflict-target priority for customer dedupe, strongest first.
IDENTIFIER_PRIORITY = ("document_number", "email", "phone", "external_id")


@dataclass(frozen=True)
class CustomerIdentity:
    provider: str
    external_id: str | None = None
    email: str | None = None
    phone: str | None = None
    document_number: str | None = None
    name: str | None = None

    @property
    def has_strong_identifier(self) -> bool:
        return self.conflict_key is not None

    @property
    def conflict_key(self) -> str | None:
        """Name of the first identifier present, in priority order."""
        for key in IDENTIFIER_PRIORITY:
            if getattr(self, key):
                return key
        return None


@dataclass(frozen=True)
class ChoiceRecord:
    choice_line: int
    name: str | None
    integration_code: str | None
    quantity: Decimal | None
    unit_price: Decimal | None
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class ItemRecord:
    line: int
    name: str | None
    integration_code: str | None
    quantity: Decimal | None
    unit_price: Decimal | None
    total_price: Decimal | None
    deleted: bool | None
    raw: Mapping[str, Any]
    choices: tuple[ChoiceRecord, ...] = ()


@dataclass(frozen=True)
class DeliveryRecord:
    fee: Decimal | None
    courier: str | None
    street: str | None
    number: str | None
    district: str | None
    city: str | None
    state: str | None
    postal_code: str | None
    country: str | None
    complement: str | None
    reference: str | None
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class PaymentRecord:
    line: int
    method: str | None
    amount: Decimal | None
    change_for: Decimal | None
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class StatusHistoryRecord:
    history_id: str
    status: str | None
    changed_at: datetime | None
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class OrderRecord:
    provider: str
    store_id: str
    order_id: str
    received_at: datetime
    sale_type: int | None
    shift_date: date | None
    created_at_source: datetime | None
    updated_at_source: datetime | None
    sale_number: str | None
    description: str | None
    canceled: bool | None
    count_canceled_items: int | None
    notes: str | None
    discount_reason: str | None
    increase_reason: str | None
    total_amount: Decimal | None
    total_discount: Decimal | None
    total_increase: Decimal | None
    total_amount_items: Decimal | None
    items_count: int
    customer_name: str | None


@dataclass(frozen=True)
class NormalizedSale:
    order: OrderRecord
    customer: CustomerIdentity | None
    items: tuple[ItemRecord, ...] = ()
    delivery: DeliveryRecord | None = None
    payments: tuple[PaymentRecord, ...] = ()
    status_history: tuple[StatusHistoryRecord, ...] = field(default_factory=tuple)


def _customer(provider: str, document: Mapping[str, Any]) -> tuple[CustomerIdentity | None, str | None]:
    """Return (identity, display name kept on the order)."""
    raw = ex.first_mapping(document, ex.CUSTOMER_KEYS)
    if raw is None:
        return None, None
    identity = CustomerIdentity(
        provider=provider,
        external_id=ex.text(ex.first_value(raw, ("id_customer", "external_id"))),
        email=ex.email(raw.get("email")),
        phone=ex.phone_digits(ex.first_value(raw, ("phone", "phones", "telephone"))),
        document_number=ex.digits_only(ex.first_value(raw, ("cpf_cnpj", "document_number", "cpf", "document"))),
        name=ex.text(raw.get("name")),
    )
    if not identity.has_strong_identifier:
        # A bare name is not a dedupe key; keep it on the order only.
        return None, identity.name
    return identity, None


def _choices(item: Mapping[str, Any]) -> tuple[ChoiceRecord, ...]:
    return tuple(
        ChoiceRecord(
            choice_line=idx,
            name=ex.text(ex.first_value(raw, ("name", "desc_sale_item_choice", "desc_choice", "description"))),
            integration_code=ex.text(ex.first_value(raw, ("integration_code", "cod_integration", "code"))),
            quantity=ex.decimal_or_none(ex.first_value(raw, ("quantity", "qty"))),
            unit_price=ex.decimal_or_none(ex.first_value(raw, ("unit_price", "price", "additional_price"))),
            raw=raw,
        )
        for idx, raw in enumerate(ex.first_array(item, ex.CHOICE_KEYS), start=1)
    )


def _items(document: Mapping[str, Any]) -> tuple[ItemRecord, ...]:
    return tuple(
        ItemRecord(
            line=idx,
            name=ex.text(ex.first_value(raw, ("name", "desc_sale_item", "desc_item", "description"))),
            integration_code=ex.text(ex.first_value(raw, ("integration_code", "cod_integration", "code"))),
            quantity=ex.decimal_or_none(ex.first_value(raw, ("quantity", "qty"))),
            unit_price=ex.decimal_or_none(ex.first_value(raw, ("unit_price", "price", "unit_value"))),
            total_price=ex.decimal_or_none(ex.first_value(raw, ("total_price", "total", "total_value"))),
            deleted=ex.yes_no(raw.get("deleted")),
            raw=raw,
            choices=_choices(raw),
        )
        for idx, raw in enumerate(ex.first_array(document, ex.ITEM_KEYS), start=1)
    )


def _delivery(document: Mapping[str, Any]) -> DeliveryRecord | None:
    raw = ex.first_mapping(document, ex.DELIVERY_KEYS)
    if not raw:
        return None
    address = ex.first_mapping(raw, ex.ADDRESS_KEYS) or raw
    return DeliveryRecord(
        fee=ex.decimal_or_none(ex.first_value(raw, ("delivery_fee", "fee", "delivery_value"))),
        courier=ex.text(ex.first_value(raw, ("delivery_man", "courier", "deliveryman"))),
        street=ex.text(ex.first_value(address, ("street_name", "street"))),
        number=ex.text(ex.first_value(address, ("street_number", "number"))),
        district=ex.text(ex.first_value(address, ("district", "neighborhood"))),
        city=ex.text(address.get("city")),
        state=ex.text(address.get("state")),
        postal_code=ex.digits_only(ex.first_value(address, ("postal_code", "zip_code", "cep"))),
        country=ex.text(address.get("country")),
        complement=ex.text(address.get("complement")),
        reference=ex.text(address.get("reference")),
        raw=raw,
    )


def _payments(document: Mapping[str, Any]) -> tuple[PaymentRecord, ...]:
    return tuple(
        PaymentRecord(
            line=idx,
            method=ex.text(ex.first_value(raw, ("payment_type", "desc_store_payment_type", "method", "type"))),
            amount=ex.decimal_or_none(ex.first_value(raw, ("amount", "value", "payment_amount"))),
            change_for=ex.decimal_or_none(ex.first_value(raw, ("change_for", "change"))),
            raw=raw,
        )
        for idx, raw in enumerate(ex.first_array(document, ex.PAYMENT_KEYS), start=1)
    )


def _status_history(document: Mapping[str, Any]) -> tuple[StatusHistoryRecord, ...]:
    out: list[StatusHistoryRecord] = []
    for raw in ex.first_array(document, ex.STATUS_HISTORY_KEYS):
        history_id = ex.text(ex.first_value(raw, ("id_sale_status_history", "id_status_history", "id")))
        if history_id is None:
            continue
        out.append(
            StatusHistoryRecord(
                history_id=history_id,
                status=ex.text(ex.first_value(raw, ("status", "desc_status", "id_sale_status"))),
                changed_at=ex.timestamp_or_none(ex.first_value(raw, ("created_at", "changed_at", "date"))),
                raw=raw,
            )
        )
    return tuple(out)


def build_sale(snapshot: RawSnapshot) -> NormalizedSale:
    """Extract every normalized entity from one raw snapshot."""
    document = ex.extract_document(snapshot.payload)
    customer, customer_name = _customer(snapshot.provider, document)
    items = _items(document)

    explicit_count = ex.int_or_none(document.get("total_items"))
    canceled = ex.yes_no(document.get("canceled"))

    order = OrderRecord(
        provider=snapshot.provider,
        store_id=snapshot.store_id,
        order_id=snapshot.order_id,
        received_at=snapshot.received_at,
        sale_type=ex.int_or_none(document.get("id_sale_type")),
        shift_date=ex.date_or_none(document.get("shift_date")),
        created_at_source=ex.timestamp_or_none(document.get("created_at")),
        updated_at_source=ex.timestamp_or_none(document.get("updated_at")),
        sale_number=ex.text(document.get("sale_number")),
        description=ex.text(document.get("desc_sale")),
        canceled=canceled if canceled is not None else snapshot.canceled,
        count_canceled_items=ex.int_or_none(document.get("count_canceled_items")),
        notes=ex.text(document.get("notes")),
        discount_reason=ex.text(document.get("discount_reason")),
        increase_reason=ex.text(document.get("increase_reason")),
        total_amount=ex.decimal_or_none(document.get("total_amount")),
        total_discount=ex.decimal_or_none(document.get("total_discount")),
        total_increase=ex.decimal_or_none(document.get("total_increase")),
        total_amount_items=ex.decimal_or_none(document.get("total_amount_items")),
        items_count=explicit_count if explicit_count is not None else len(items),
        customer_name=customer_name,
    )
    return NormalizedSale(
        order=order,
        customer=customer,
        items=items,
        delivery=_delivery(document),
        payments=_payments(document),
        status_history=_status_history(document),
    )
