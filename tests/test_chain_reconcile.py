from __future__ import annotations

from decimal import Decimal

import pytest

from integrations.chain.esplora_client import EsploraTx
from settlement.reconcile import PendingDeposit, confirmations_for, reconcile

TREASURY = "bc1qtreasury"
ALICE = "bc1qalice"
BOB = "bc1qbob"
TIP = 800_002


def _tx(txid, *, sender=ALICE, sats=1_000_000, height=800_000, confirmed=True, to=TREASURY):
    return EsploraTx.from_json(
        {
            "txid": txid,
            "status": {"confirmed": confirmed, "block_height": height if confirmed else None, "block_time": 1_700_000_000},
            "vin": [{"prevout": {"scriptpubkey_address": sender, "value": sats + 500}}],
            "vout": [
                {"scriptpubkey_address": to, "value": sats},
                {"scriptpubkey_address": sender, "value": 400},
            ],
        }
    )


def test_from_json_is_lenient():
    tx = EsploraTx.from_json({"txid": "t0", "vin": [{"is_coinbase": True}], "vout": [{"value": 5}]})
    assert tx.confirmed is False
    assert tx.input_addresses == ()
    assert tx.outputs == ()
    assert tx.sender is None


@pytest.mark.parametrize(
    "height,confirmed,tip,expected",
    [
        (800_000, True, 800_002, 3),
        (800_000, True, 800_000, 1),
        (800_000, True, None, 0),
        (None, False, 800_002, 0),
    ],
)
def test_confirmations_for(height, confirmed, tip, expected):
    tx = EsploraTx(txid="t", confirmed=confirmed, block_height=height)
    assert confirmations_for(tx, tip) == expected


def test_matches_declared_sender_and_amount():
    matches = reconcile(
        [PendingDeposit("SELL-1", Decimal("0.01"), ALICE)],
        [_tx("t1")],
        TREASURY,
        tip_height=TIP,
    )
    assert len(matches) == 1
    m = matches[0]
    assert (m.order_id, m.txid, m.amount_sats, m.sender) == ("SELL-1", "t1", 1_000_000, ALICE)
    assert m.confirmations == 3 and m.confirmed


def test_two_confirmations_is_detected_but_unconfirmed():
    [m] = reconcile([PendingDeposit("SELL-1", Decimal("0.01"), ALICE)], [_tx("t1")], TREASURY, tip_height=TIP - 1)
    assert m.confirmations == 2
    assert not m.confirmed


def test_mempool_tx_matches_with_zero_confirmations():
    [m] = reconcile(
        [PendingDeposit("SELL-1", Decimal("0.01"), ALICE)], [_tx("t1", confirmed=False)], TREASURY, tip_height=TIP
    )
    assert m.confirmations == 0 and not m.confirmed


@pytest.mark.parametrize(
    "order,tx",
    [
        (PendingDeposit("SELL-1", Decimal("0.01"), BOB), _tx("t1")),  # other sender
        (PendingDeposit("SELL-1", Decimal("0.01"), None), _tx("t1")),  # no declared sender
        (PendingDeposit("SELL-1", Decimal("0.01"), ALICE), _tx("t1", sats=980_000)),  # 2 % short
        (PendingDeposit("SELL-1", Decimal("0.01"), ALICE), _tx("t1", to="bc1qelsewhere")),
    ],
)
def test_non_matching_transactions(order, tx):
    assert reconcile([order], [tx], TREASURY, tip_height=TIP) == []


def test_amount_within_one_percent_matches():
    [m] = reconcile(
        [PendingDeposit("SELL-1", Decimal("0.01"), ALICE)], [_tx("t1", sats=990_000)], TREASURY, tip_height=TIP
    )
    assert m.amount_sats == 990_000


def test_used_hashes_are_skipped():
    orders = [PendingDeposit("SELL-1", Decimal("0.01"), ALICE)]
    assert reconcile(orders, [_tx("t1")], TREASURY, tip_height=TIP, used_tx_hashes={"t1"}) == []


def test_one_transaction_settles_one_order():
    orders = [
        PendingDeposit("SELL-1", Decimal("0.01"), ALICE),
        PendingDeposit("SELL-2", Decimal("0.01"), ALICE),
    ]
    matches = reconcile(orders, [_tx("t1"), _tx("t2", height=800_001)], TREASURY, tip_height=TIP)
    assert [(m.order_id, m.txid) for m in matches] == [("SELL-1", "t1"), ("SELL-2", "t2")]

    matches = reconcile(orders, [_tx("t1")], TREASURY, tip_height=TIP)
    assert [(m.order_id, m.txid) for m in matches] == [("SELL-1", "t1")]
