"""Persist a ``NormalizedSale`` into the relational tables.

All functions run on the caller's connection and never commit. Child
collections are replaced wholesale on every pass so a re-normalized order
carries exactly the lines of its latest snapshot.
"""

from __future__ import annotations

import logging
from typing import Any

from apps.backend.db import (
    execute_conn,
    execute_many_conn,
    fetch_one_dict_conn,
    is_unique_violation,
    to_jsonb,
)
from services.normalization.sale import (
    IDENTIFIER_PRIORITY,
    CustomerIdentity,
    DeliveryRecord,
    ItemRecord,
    NormalizedSale,
    OrderRecord,
    PaymentRecord,
    StatusHistoryRecord,
)

logger = logging.getLogger(__name__)

_CUSTOMER_SAVEPOINT = "customer_upsert_1"

_ORDER_COLUMNS = (
    "customer_id",
    "customer_name",
    "raw_id",
    "received_at",
    "sale_type",
    "shift_date",
    "created_at_source",
    "updated_at_source",
    "sale_number",
    "description",
    "canceled",
    "count_canceled_items",
    "notes",
    "discount_reason",
    "increase_reason",
    "total_amount",
    "total_discount",
    "total_increase",
    "total_amount_items",
    "items_count",
)


# ---------------------------
# customers
# ---------------------------

def _customer_sql(key: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join(["%s"] * (len(columns) + 1))
    backfill = ",\n              ".join(
        f"{col} = COALESCE(customers.{col}, EXCLUDED.{col})" for col in columns if col != key
    )
    return f"""
            INSERT INTO customers (provider, {", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (provider, {key}) WHERE {key} IS NOT NULL
            DO UPDATE SET
              {backfill},
              updated_at = now()
            RETURNING id
            """


def upsert_customer(conn: Any, customer: CustomerIdentity) -> int:
    """Insert or back-fill a customer; returns its row id.

    The conflict target is the strongest identifier present. When another
    identifier already belongs to a different customer the write is retried
    with only the conflict key and name.
    """
    key = customer.conflict_key
    if key is None:
        raise ValueError("customer has no identifier to deduplicate on")

    full_columns = (*IDENTIFIER_PRIORITY, "name")
    full_params = (customer.provider, *(getattr(customer, col) for col in full_columns))

    execute_conn(conn, f"SAVEPOINT {_CUSTOMER_SAVEPOINT}")
    try:
        row = fetch_one_dict_conn(conn, _customer_sql(key, full_columns), full_params)
    except Exception as exc:
        if not is_unique_violation(exc):
            raise
        execute_conn(conn, f"ROLLBACK TO SAVEPOINT {_CUSTOMER_SAVEPOINT}")
        logger.info(
            "customer_secondary_identifier_conflict provider=%s key=%s", customer.provider, key
        )
        narrow_columns = (key, "name")
        row = fetch_one_dict_conn(
            conn,
            _customer_sql(key, narrow_columns),
            (customer.provider, getattr(customer, key), customer.name),
        )
    execute_conn(conn, f"RELEASE SAVEPOINT {_CUSTOMER_SAVEPOINT}")

    if row is None:
        raise RuntimeError(f"customer_upsert_failed provider={customer.provider} key={key}")
    return int(row["id"])


# ---------------------------
# orders
# ---------------------------

def upsert_order(conn: Any, order: OrderRecord, *, customer_id: int | None, raw_id: int) -> int:
    """Latest-wins order upsert; ``first_seen_at`` keeps its first value."""
    values = {
        "customer_id": customer_id,
        "raw_id": int(raw_id),
        **{col: getattr(order, col) for col in _ORDER_COLUMNS if col not in ("customer_id", "raw_id")},
    }
    columns = ", ".join(_ORDER_COLUMNS)
    placeholders = ", ".join(["%s"] * (3 + len(_ORDER_COLUMNS)))
    updates = ",\n              ".join(f"{col} = EXCLUDED.{col}" for col in _ORDER_COLUMNS)
    row = fetch_one_dict_conn(
        conn,
        f"""
            INSERT INTO orders (provider, store_id, order_id, {columns}, first_seen_at, updated_at)
            VALUES ({placeholders}, now(), now())
            ON CONFLICT (provider, store_id, order_id)
            DO UPDATE SET
              {updates},
              updated_at = now()
            RETURNING id
            """,
        (order.provider, order.store_id, order.order_id, *(values[col] for col in _ORDER_COLUMNS)),
    )
    if row is None:
        raise RuntimeError(
            f"order_upsert_failed {order.provider}/{order.store_id}/{order.order_id}"
        )
    return int(row["id"])


# ---------------------------
# child collections
# ---------------------------

def replace_items(conn: Any, order_ref: int, items: tuple[ItemRecord, ...]) -> None:
    execute_conn(conn, "DELETE FROM order_item_choices WHERE order_ref = %s", (order_ref,))
    execute_conn(conn, "DELETE FROM order_items WHERE order_ref = %s", (order_ref,))

    execute_many_conn(
        conn,
        """
        INSERT INTO order_items
          (order_ref, line, name, integration_code, quantity, unit_price, total_price,
           deleted, raw)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """,
        [
            (
                order_ref,
                item.line,
                item.name,
                item.integration_code,
                item.quantity,
                item.unit_price,
                item.total_price,
                item.deleted,
                to_jsonb(item.raw),
            )
            for item in items
        ],
    )
    execute_many_conn(
        conn,
        """
        INSERT INTO order_item_choices
          (order_ref, line, choice_line, name, integration_code, quantity, unit_price, raw)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """,
        [
            (
                order_ref,
                item.line,
                choice.choice_line,
                choice.name,
                choice.integration_code,
                choice.quantity,
                choice.unit_price,
                to_jsonb(choice.raw),
            )
            for item in items
            for choice in item.choices
        ],
    )


def replace_delivery(conn: Any, order_ref: int, delivery: DeliveryRecord | None) -> None:
    execute_conn(conn, "DELETE FROM order_deliveries WHERE order_ref = %s", (order_ref,))
    if delivery is None:
        return
    execute_conn(
        conn,
        """
        INSERT INTO order_deliveries
          (order_ref, fee, courier, street, number, district, city, state, postal_code,
           country, complement, reference, raw)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (
            order_ref,
            delivery.fee,
            delivery.courier,
            delivery.street,
            delivery.number,
            delivery.district,
            delivery.city,
            delivery.state,
            delivery.postal_code,
            delivery.country,
            delivery.complement,
            delivery.reference,
            to_jsonb(delivery.raw),
        ),
    )


def replace_payments(conn: Any, order_ref: int, payments: tuple[PaymentRecord, ...]) -> None:
    execute_conn(conn, "DELETE FROM order_payments WHERE order_ref = %s", (order_ref,))
    execute_many_conn(
        conn,
        """
        INSERT INTO order_payments (order_ref, line, method, amount, change_for, raw)
        VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """,
        [
            (order_ref, p.line, p.method, p.amount, p.change_for, to_jsonb(p.raw))
            for p in payments
        ],
    )


def upsert_status_history(
    conn: Any, order: OrderRecord, order_ref: int, entries: tuple[StatusHistoryRecord, ...]
) -> None:
    """Insert or update history entries by (provider, history_id); never deletes."""
    execute_many_conn(
        conn,
        """
        INSERT INTO order_status_history
          (provider, history_id, order_ref, store_id, order_id, status, changed_at, raw)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        ON CONFLICT (provider, history_id)
        DO UPDATE SET
          order_ref = EXCLUDED.order_ref,
          status = EXCLUDED.status,
          changed_at = EXCLUDED.changed_at,
          raw = EXCLUDED.raw
        """,
        [
            (
                order.provider,
                entry.history_id,
                order_ref,
                order.store_id,
                order.order_id,
                entry.status,
                entry.changed_at,
                to_jsonb(entry.raw),
            )
            for entry in entries
        ],
    )


def write_sale(conn: Any, sale: NormalizedSale, *, raw_id: int) -> int:
    """Write every entity of ``sale``; returns the order row id."""
    customer_id = upsert_customer(conn, sale.customer) if sale.customer is not None else None
    order_ref = upsert_order(conn, sale.order, customer_id=customer_id, raw_id=raw_id)
    replace_items(conn, order_ref, sale.items)
    replace_delivery(conn, order_ref, sale.delivery)
    replace_payments(conn, order_ref, sale.payments)
    upsert_status_history(conn, sale.order, order_ref, sale.status_history)
    return order_ref
