from decimal import Decimal

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from conftest import add_swap
from treasury_domain.order_models import CashoutOrder


def test_all_tables_created(engine):
    tables = set(inspect(engine).get_table_names())
    assert {
        "inventory_lots",
        "fulfillment_orders",
        "customer_swap_orders",
        "cashout_orders",
        "system_settings",
        "audit_log",
        "audit_export_marks",
    } <= tables


def test_swap_tx_hash_is_unique(session):
    first = add_swap(session, "BUY-1")
    second = add_swap(session, "BUY-2")
    first.tx_hash = "0xabc"
    session.add(first)
    session.commit()

    second.tx_hash = "0xabc"
    session.add(second)
    with pytest.raises(IntegrityError):
        session.commit()


def test_cashout_amounts_round_trip(session):
    order = CashoutOrder(
        order_id="CO-1",
        user_id="user-1",
        bank_account_id="ba-1",
        source_asset="USDC",
        source_amount=Decimal("250.5"),
        usd_amount=Decimal("250.50"),
        fee_usd=Decimal("1.25"),
    )
    session.add(order)
    session.commit()
    session.refresh(order)

    assert order.status == "PENDING"
    assert order.usd_amount == Decimal("250.50")
    assert order.fee_usd == Decimal("1.25")
    assert len(order.id) == 26
