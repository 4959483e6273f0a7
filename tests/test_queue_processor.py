from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func
from sqlmodel import select

from common.audit import AuditLogEntry
from conftest import add_customer, add_lot, add_swap
from fulfillment.kyc import ProfileKycDirectory
from fulfillment.providers import CustodySigner, MockSigner
from fulfillment.queue_processor import PAUSED_MESSAGE, QueueProcessor
from fulfillment.state_machine import create_fulfillment_order
from integrations.price_oracle import PriceQuote
from inventory_ledger.ledger import btc_to_sats, check_conservation
from treasury_domain.errors import PriceUnavailable
from treasury_domain.inventory_models import InventoryLot
from treasury_domain.order_models import (
    CustomerSwapOrder,
    DailyBtcSend,
    FulfillmentOrder,
    FulfillmentStatus as S,
    FulfillmentType,
    FundingSource,
    KycStatus,
    OrderKycStatus,
    SwapOrderStatus,
)
from treasury_orchestrator.controls import update_setting

NOW = datetime(2025, 6, 1, 12, 0, 0)


class _FixedOracle:
    def __init__(self, price: str):
        self.price = Decimal(price)
        self.calls = 0

    async def btc_usd(self) -> PriceQuote:
        self.calls += 1
        return PriceQuote(price=self.price, source="fixed", fetched_at=0.0)


class _DownOracle:
    async def btc_usd(self) -> PriceQuote:
        raise PriceUnavailable("no BTC/USD price available from any source")


class _FlakyKyc(ProfileKycDirectory):
    def kyc_status(self, customer_id: str) -> KycStatus:
        if customer_id == "cust-bad":
            raise RuntimeError("identity service timeout")
        return super().kyc_status(customer_id)


def _processor(session_factory, signer=None, **kw) -> QueueProcessor:
    return QueueProcessor(session_factory, signer or MockSigner(fail=False), clock=lambda: NOW, **kw)


def _redemption(session, *, customer_id="cust-1", btc_amount="0.01", usd_value="1000", destination="bc1qdest"):
    order = create_fulfillment_order(
        session,
        order_type=FulfillmentType.REDEMPTION,
        usd_value=Decimal(usd_value),
        btc_amount=Decimal(btc_amount) if btc_amount is not None else None,
        destination_address=destination,
        customer_id=customer_id,
    )
    session.commit()
    return order.id


def _audit_count(session_factory) -> int:
    with session_factory() as s:
        return s.exec(select(func.count()).select_from(AuditLogEntry)).one()


@pytest.mark.anyio
async def test_paused_run_does_nothing(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session)
    update_setting(session, "PAYOUTS_PAUSED", "true", actor="ops")
    session.commit()

    report = await _processor(session_factory).run_once()

    assert report.message == PAUSED_MESSAGE
    assert report.processed == 0
    assert report.as_dict()["results"] == []
    with session_factory() as s:
        assert s.get(FulfillmentOrder, order_id).status == S.KYC_PENDING


@pytest.mark.anyio
async def test_order_runs_through_to_sent(session_factory, session):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session)
    signer = MockSigner(fail=False)

    report = await _processor(session_factory, signer).run_once()

    assert report.success
    assert (report.processed, report.allocated, report.sent) == (1, 1, 1)
    assert report.as_dict()["inventory"]["eligible_btc"] == "0.99000000"
    assert not report.low_inventory
    with session_factory() as s:
        order = s.get(FulfillmentOrder, order_id)
        assert order.status == S.SENT
        assert order.tx_hash == signer.sent[order_id]["tx_hash"]
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.99")
        daily = s.exec(select(DailyBtcSend).where(DailyBtcSend.send_date == NOW.date())).one()
        assert daily.total_sats == btc_to_sats("0.01")
        assert daily.transaction_count == 1


@pytest.mark.anyio
async def test_second_run_is_idempotent(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    add_customer(session, "cust-2", kyc=KycStatus.PENDING)
    _redemption(session)
    waiting_id = _redemption(session, customer_id="cust-2")
    processor = _processor(session_factory)

    await processor.run_once()
    before = _audit_count(session_factory)
    report = await processor.run_once()

    assert report.sent == 0
    assert report.allocated == 0
    assert _audit_count(session_factory) == before
    with session_factory() as s:
        waiting = s.get(FulfillmentOrder, waiting_id)
        assert waiting.status == S.KYC_PENDING
        assert waiting.blocked_reason == "kyc_pending"


@pytest.mark.anyio
async def test_one_failing_order_does_not_stop_the_run(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    add_customer(session, "cust-bad")
    bad_id = _redemption(session, customer_id="cust-bad")
    good_id = _redemption(session, customer_id="cust-1")

    report = await _processor(session_factory, kyc_factory=_FlakyKyc).run_once()

    by_id = {r.order_id: r for r in report.results}
    assert by_id[bad_id].status == "ERROR"
    assert "identity service timeout" in by_id[bad_id].action
    assert report.sent == 1
    with session_factory() as s:
        assert s.get(FulfillmentOrder, good_id).status == S.SENT
        assert s.get(FulfillmentOrder, bad_id).status == S.KYC_PENDING


@pytest.mark.anyio
async def test_insufficient_inventory_waits(session_factory, session):
    lot = add_lot(session, "0.005", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session, btc_amount="0.01")

    report = await _processor(session_factory).run_once()

    assert report.allocated == 0
    assert report.low_inventory
    with session_factory() as s:
        order = s.get(FulfillmentOrder, order_id)
        assert order.status == S.WAITING_INVENTORY
        assert order.blocked_reason == "insufficient_inventory"
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.005")


@pytest.mark.anyio
async def test_signer_failure_fails_order_and_restores_inventory(session_factory, session):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session)

    report = await _processor(session_factory, MockSigner(fail=True)).run_once()

    assert report.sent == 0
    assert [r.action for r in report.results if r.order_id == order_id][-1] == "failed"
    with session_factory() as s:
        order = s.get(FulfillmentOrder, order_id)
        assert order.status == S.FAILED
        assert order.blocked_reason.startswith("send_failed")
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("1.0")
        assert s.exec(select(DailyBtcSend)).all() == []


@pytest.mark.anyio
async def test_daily_limit_defers_sends(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    ids = [_redemption(session), _redemption(session)]
    update_setting(session, "DAILY_BTC_SEND_LIMIT", "0.015", actor="ops")
    session.commit()

    report = await _processor(session_factory).run_once()

    assert report.sent == 1
    with session_factory() as s:
        orders = [s.get(FulfillmentOrder, i) for i in ids]
        statuses = sorted(o.status.value for o in orders)
        assert statuses == [S.READY_TO_SEND.value, S.SENT.value]
        deferred = next(o for o in orders if o.status == S.READY_TO_SEND)
        assert deferred.blocked_reason == "daily_limit_reached"


@pytest.mark.anyio
async def test_unpriced_redemption_uses_oracle(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session, btc_amount=None, usd_value="1000")
    oracle = _FixedOracle("50000")

    await _processor(session_factory, price_oracle=oracle).run_once()

    assert oracle.calls == 1
    with session_factory() as s:
        order = s.get(FulfillmentOrder, order_id)
        assert order.btc_amount == Decimal("0.02")
        assert order.btc_price_used == Decimal("50000")
        assert order.status == S.SENT


@pytest.mark.anyio
async def test_unpriced_redemption_waits_when_price_unavailable(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session, btc_amount=None)

    report = await _processor(session_factory, price_oracle=_DownOracle()).run_once()

    assert report.sent == 0
    with session_factory() as s:
        order = s.get(FulfillmentOrder, order_id)
        assert order.status == S.WAITING_INVENTORY
        assert order.blocked_reason == "price_unavailable"


@pytest.mark.anyio
async def test_custodial_swap_is_settled_internally(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    swap = add_swap(session, "BUY-1", funding_source=FundingSource.CUSTODIAL_BALANCE, btc_amount="0.02")
    onchain = add_swap(session, "BUY-2", funding_source=FundingSource.ONCHAIN_USDC)

    report = await _processor(session_factory).run_once()

    assert report.sent == 1
    with session_factory() as s:
        stored = s.get(CustomerSwapOrder, swap.id)
        assert stored.status == SwapOrderStatus.COMPLETED
        assert stored.inventory_allocated
        order = s.exec(select(FulfillmentOrder).where(FulfillmentOrder.swap_order_id == swap.id)).one()
        assert order.order_type == FulfillmentType.BUY_ORDER
        assert order.status == S.SENT
        assert order.btc_amount == Decimal("0.02")
        assert s.exec(
            select(AuditLogEntry).where(AuditLogEntry.event_id == f"swap:{swap.id}:settled_internally")
        ).one()
        # USDC-funded swaps wait for the verifier
        assert s.get(CustomerSwapOrder, onchain.id).status == SwapOrderStatus.PENDING
        assert s.exec(
            select(FulfillmentOrder).where(FulfillmentOrder.swap_order_id == onchain.id)
        ).first() is None


@pytest.mark.anyio
async def test_custodial_swap_without_kyc_records_reason(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    profile = add_customer(session, "cust-1", kyc=KycStatus.PENDING)
    swap = add_swap(session, "BUY-1", funding_source=FundingSource.CUSTODIAL_BALANCE)
    before = _audit_count(session_factory)
    processor = _processor(session_factory)

    report = await processor.run_once()

    assert [r.action for r in report.results] == ["kyc_pending"]
    assert _audit_count(session_factory) == before + 1
    with session_factory() as s:
        stored = s.get(CustomerSwapOrder, swap.id)
        assert stored.blocked_reason == "kyc_pending"
        assert stored.status == SwapOrderStatus.PENDING
        assert stored.inventory_allocated is False
        assert s.exec(select(FulfillmentOrder)).all() == []
        assert s.exec(
            select(AuditLogEntry).where(AuditLogEntry.event_id == f"swap:{swap.id}:blocked:kyc_pending")
        ).one()

    await processor.run_once()
    assert _audit_count(session_factory) == before + 1

    profile.kyc_status = KycStatus.APPROVED
    session.add(profile)
    session.commit()
    report = await processor.run_once()

    assert report.sent == 1
    with session_factory() as s:
        stored = s.get(CustomerSwapOrder, swap.id)
        assert stored.status == SwapOrderStatus.COMPLETED
        assert stored.blocked_reason is None


@pytest.mark.anyio
async def test_custodial_swap_without_destination_records_reason(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1", btc_address=None)
    swap = add_swap(
        session, "BUY-1", funding_source=FundingSource.CUSTODIAL_BALANCE, destination_address=None
    )

    report = await _processor(session_factory).run_once()

    assert [r.action for r in report.results] == ["missing_destination_address"]
    with session_factory() as s:
        assert s.get(CustomerSwapOrder, swap.id).blocked_reason == "missing_destination_address"
        assert s.exec(select(FulfillmentOrder)).all() == []


@pytest.mark.anyio
async def test_failed_internal_send_fails_swap(session_factory, session):
    add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    swap = add_swap(session, "BUY-1", funding_source=FundingSource.CUSTODIAL_BALANCE)

    await _processor(session_factory, MockSigner(fail=True)).run_once()

    with session_factory() as s:
        stored = s.get(CustomerSwapOrder, swap.id)
        assert stored.status == SwapOrderStatus.FAILED
        assert stored.failed_reason == "btc_send_failed"
        assert not stored.inventory_allocated


def _custody_signer(handler) -> CustodySigner:
    return CustodySigner(base_url="https://signer.test", token="sig-token", transport=httpx.MockTransport(handler))


def _timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


@pytest.mark.parametrize(
    "handler",
    [_timeout, lambda request: httpx.Response(503, text="upstream unavailable")],
    ids=["timeout", "server-error"],
)
@pytest.mark.anyio
async def test_unanswered_send_keeps_order_sending(session_factory, session, handler):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    order_id = _redemption(session)
    calls = []

    def recording(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return handler(request)

    processor = _processor(session_factory, _custody_signer(recording))
    report = await processor.run_once()

    assert report.sent == 0
    assert [r.action for r in report.results if r.order_id == order_id][-1] == "unknown"
    with session_factory() as s:
        order = s.get(FulfillmentOrder, order_id)
        assert order.status == S.SENDING
        assert order.blocked_reason == "send_outcome_unknown"
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("0.99")
        assert check_conservation(s, lot.id)

    await processor.run_once()
    assert calls == ["/v1/payouts/btc"]
    with session_factory() as s:
        assert s.get(FulfillmentOrder, order_id).status == S.SENDING


@pytest.mark.anyio
async def test_refused_send_fails_usdc_funded_swap(session_factory, session):
    lot = add_lot(session, "1.0", received_at=NOW - timedelta(days=2))
    add_customer(session, "cust-1")
    swap = add_swap(session, "BUY-1", funding_source=FundingSource.ONCHAIN_USDC)
    swap.status = SwapOrderStatus.PROCESSING
    swap.tx_hash = "0x" + "ab" * 32
    session.add(swap)
    order = create_fulfillment_order(
        session,
        order_type=FulfillmentType.BUY_ORDER,
        usd_value=swap.usdc_amount,
        destination_address=swap.destination_address,
        customer_id=swap.customer_id,
        btc_amount=swap.btc_amount,
        swap_order_id=swap.id,
        kyc_status=OrderKycStatus.APPROVED,
    )
    session.commit()

    await _processor(session_factory, MockSigner(fail=True)).run_once()

    with session_factory() as s:
        assert s.get(FulfillmentOrder, order.id).status == S.FAILED
        stored = s.get(CustomerSwapOrder, swap.id)
        assert stored.status == SwapOrderStatus.FAILED
        assert stored.failed_reason == "btc_send_failed"
        assert stored.tx_hash == "0x" + "ab" * 32
        assert s.get(InventoryLot, lot.id).amount_available_sats == btc_to_sats("1.0")
        assert s.exec(select(AuditLogEntry).where(AuditLogEntry.event_id == f"swap:{swap.id}:failed")).one()
