"""Unit tests for mapping raw snapshots into normalized sale records."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from contracts.errors import MalformedPayloadError
from services.normalization.sale import CustomerIdentity, build_sale
from tests.factories import make_sale_document, make_snapshot


def test_build_sale_maps_order_fields() -> None:
    sale = build_sale(make_snapshot())
    order = sale.order

    assert (order.provider, order.store_id, order.order_id) == ("saipos", "S1", "O1")
    assert order.sale_type == 2
    assert order.shift_date == date(2024, 5, 1)
    assert order.created_at_source == datetime(2024, 5, 1, 11, 58, tzinfo=UTC)
    assert order.description == "Balcão"
    assert order.canceled is False
    assert order.total_amount == Decimal("42.50")
    assert order.total_increase == Decimal("2.50")
    assert order.items_count == 1
    assert order.customer_name is None


def test_build_sale_items_and_choices_get_one_based_lines() -> None:
    document = make_sale_document(
        items=[
            {"desc_sale_item": "A", "choices": [{"name": "c1"}, {"name": "c2"}]},
            "junk",
            {"name": "B", "qty": "3", "price": "1.5"},
        ]
    )
    sale = build_sale(make_snapshot(payload=document))

    assert [(i.line, i.name) for i in sale.items] == [(1, "A"), (2, "B")]
    assert [(c.choice_line, c.name) for c in sale.items[0].choices] == [(1, "c1"), (2, "c2")]
    assert sale.items[1].quantity == Decimal("3")
    assert sale.items[1].unit_price == Decimal("1.5")
    assert sale.order.items_count == 2


def test_build_sale_without_items_counts_zero() -> None:
    document = make_sale_document()
    del document["items"]
    sale = build_sale(make_snapshot(payload=document))
    assert sale.items == ()
    assert sale.order.items_count == 0


def test_explicit_total_items_wins_over_list_length() -> None:
    sale = build_sale(make_snapshot(payload=make_sale_document(total_items="5")))
    assert sale.order.items_count == 5


def test_customer_identifiers_are_normalized() -> None:
    customer = build_sale(make_snapshot()).customer

    assert customer == CustomerIdentity(
        provider="saipos",
        external_id="555",
        email="ana@example.com",
        phone="11988887777",
        document_number="12345678909",
        name="Ana Souza",
    )
    assert customer.conflict_key == "document_number"


@pytest.mark.parametrize(
    ("fields", "expected_key"),
    [
        ({"email": "a@b.c", "phone": "119", "id_customer": "1"}, "email"),
        ({"phone": "119", "id_customer": "1"}, "phone"),
        ({"id_customer": "1"}, "external_id"),
    ],
)
def test_conflict_key_follows_identifier_priority(fields: dict[str, str], expected_key: str) -> None:
    document = make_sale_document(customer={"name": "X", **fields})
    assert build_sale(make_snapshot(payload=document)).customer.conflict_key == expected_key


def test_name_only_customer_goes_to_order_customer_name() -> None:
    document = make_sale_document(customer={"name": "Walk-in", "email": "invalid"})
    sale = build_sale(make_snapshot(payload=document))
    assert sale.customer is None
    assert sale.order.customer_name == "Walk-in"


def test_missing_canceled_flag_falls_back_to_snapshot() -> None:
    document = make_sale_document()
    del document["canceled"]
    sale = build_sale(make_snapshot(payload=document, canceled=True))
    assert sale.order.canceled is True


def test_delivery_reads_nested_address() -> None:
    document = make_sale_document(
        delivery={
            "delivery_fee": "5.00",
            "delivery_man": "João",
            "address": {"street_name": "Rua A", "street_number": "10", "district": "Centro", "zip_code": "01000-000"},
        }
    )
    delivery = build_sale(make_snapshot(payload=document)).delivery

    assert delivery is not None
    assert delivery.fee == Decimal("5.00")
    assert delivery.courier == "João"
    assert (delivery.street, delivery.number, delivery.district) == ("Rua A", "10", "Centro")
    assert delivery.postal_code == "01000000"


def test_absent_or_empty_delivery_is_none() -> None:
    assert build_sale(make_snapshot()).delivery is None
    assert build_sale(make_snapshot(payload=make_sale_document(delivery={}))).delivery is None


def test_payments_and_status_history() -> None:
    document = make_sale_document(
        payments=[{"payment_type": "CASH", "value": "50", "change_for": "100"}, {"method": "CARD", "amount": "1"}],
        status_histories=[
            {"id_sale_status_history": 1, "desc_status": "OPEN", "created_at": "2024-05-01T11:58:00"},
            {"desc_status": "no id, skipped"},
        ],
    )
    sale = build_sale(make_snapshot(payload=document))

    assert [(p.line, p.method, p.amount) for p in sale.payments] == [
        (1, "CASH", Decimal("50")),
        (2, "CARD", Decimal("1")),
    ]
    assert sale.payments[0].change_for == Decimal("100")
    assert [(h.history_id, h.status) for h in sale.status_history] == [("1", "OPEN")]


def test_non_object_payload_is_malformed() -> None:
    with pytest.raises(MalformedPayloadError):
        build_sale(make_snapshot(payload=["not", "a", "sale"]))
