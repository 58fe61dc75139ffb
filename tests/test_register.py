import asyncio
from decimal import Decimal

import pytest

from conftest import Rig, count, flat_config, item, run
from pos_engine.core.domain import CheckoutState as S
from pos_engine.core.domain import ItemKind, PaymentMethod
from pos_engine.core.errors import (
    CardDeclined,
    CheckoutStateError,
    InsufficientCash,
    InvalidAmount,
    PaymentCapturedNotRecorded,
)
from pos_engine.services.recorder import InMemoryTransactionRecorder
from pos_engine.services.register import RegisterHub
from pos_engine.services.settlement import SplitTender
from pos_engine.services.terminal import SimulatedTerminal, TerminalFailure, TerminalFailureReason
from pos_engine.services.tips import TipOutcomeReason, submit_tip_selection


def _tipping_rig(**kw):
    rig = Rig(flat_config(tip_enabled=True), **kw)
    rig.drawer.open("emp-1", count({"100": 1}))
    return rig


async def _await_prompt(store):
    for _ in range(20):
        doc = await store.read("loc-1")
        if doc is not None and doc.status == "AWAITING_TIP":
            return doc
        await asyncio.sleep(0)
    raise AssertionError("tip prompt never published")


def test_cart_edits_drive_idle_and_active(rig):
    async def scenario():
        reg = rig.register()
        seen = []
        reg.machine.subscribe(lambda prev, new: seen.append(new))
        reg.add_item(item("A", "4.00"), ItemKind.PRODUCT)
        reg.remove_item(0)
        reg.add_item(item("B", "6.00"), ItemKind.SERVICE)
        await asyncio.sleep(0.01)
        doc = await rig.display_store.read("loc-1")
        await reg.close()
        return reg, seen, doc

    reg, seen, doc = run(scenario())
    assert seen == [S.ACTIVE, S.IDLE, S.ACTIVE]
    assert reg.state == S.ACTIVE
    assert doc.status == "ACTIVE"
    assert doc.payload["total"] == "6.00"


def test_cash_checkout_without_tipping(rig, open_drawer):
    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "12.50"), ItemKind.PRODUCT)
        result = await reg.checkout(PaymentMethod.CASH, cash_received=Decimal("20"))
        doc = await rig.display_store.read("loc-1")
        state = reg.state
        await reg.close()
        return reg, result, doc, state

    reg, result, doc, state = run(scenario())
    assert result.change_due == Decimal("7.50")
    assert state == S.IDLE
    assert reg.cart.snapshot.is_empty
    assert doc.status == "COMPLETED"
    assert doc.payload["transaction_id"] == result.transaction.id
    assert open_drawer.current().cash_sales_accumulated == Decimal("12.50")


def test_tip_timeout_selects_zero_tip():
    rig = _tipping_rig(tip_max_attempts=3)

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "40.00"), ItemKind.SERVICE)
        outcome = await reg.request_tip()
        state = reg.state
        result = await reg.checkout("CARD")
        await reg.close()
        return reg, outcome, state, result

    reg, outcome, state, result = run(scenario())
    assert outcome.reason == TipOutcomeReason.TIMEOUT
    assert state == S.TIP_SELECTED
    assert reg.last_tip_outcome.amount == Decimal("0.00")
    assert result.transaction.tip == Decimal("0.00")
    assert result.transaction.total == Decimal("40.00")


def test_customer_tip_is_added_to_card_charge():
    rig = _tipping_rig(tip_max_attempts=50)

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "40.00"), ItemKind.SERVICE)
        reg.start_tip_request()
        doc = await _await_prompt(rig.display_store)
        assert doc.payload["tip_prompt"] is True
        assert doc.payload["tip_suggestions"] == ["6.00", "8.00", "10.00"]
        await submit_tip_selection(rig.display_store, "loc-1", Decimal("8.00"), doc.version)
        outcome = await reg.wait_tip()
        state = reg.state
        result = await reg.checkout("CARD")
        await reg.close()
        return outcome, state, result

    outcome, state, result = run(scenario())
    assert outcome.reason == TipOutcomeReason.SELECTED
    assert state == S.TIP_SELECTED
    assert result.transaction.tip == Decimal("8.00")
    assert rig.terminal.calls[0][0] == Decimal("48.00")


def test_skip_returns_to_active_and_allows_checkout():
    rig = _tipping_rig(tip_max_attempts=50)

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "10.00"), ItemKind.PRODUCT)
        reg.start_tip_request()
        await _await_prompt(rig.display_store)
        with pytest.raises(CheckoutStateError):
            reg.add_item(item("B", "1.00"), ItemKind.PRODUCT)
        await reg.skip_tip()
        state = reg.state
        result = await reg.checkout("CASH")
        await reg.close()
        return state, result

    state, result = run(scenario())
    assert state == S.ACTIVE
    assert result.transaction.tip == Decimal("0.00")


def test_checkout_needs_a_resolved_tip_and_edits_reset_it():
    rig = _tipping_rig(tip_max_attempts=50)

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "10.00"), ItemKind.PRODUCT)
        with pytest.raises(CheckoutStateError):
            await reg.checkout("CASH")
        reg.start_tip_request()
        await _await_prompt(rig.display_store)
        await reg.skip_tip()
        reg.add_item(item("B", "2.00"), ItemKind.PRODUCT)
        with pytest.raises(CheckoutStateError):
            await reg.checkout("CASH")
        await reg.close()
        return reg

    reg = run(scenario())
    assert reg.state == S.ACTIVE
    assert rig.recorder.calls == 0


def test_declined_card_keeps_cart_for_retry(rig):
    rig.terminal = SimulatedTerminal([TerminalFailure(TerminalFailureReason.DECLINED, "insufficient funds")])

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "9.99"), ItemKind.PRODUCT)
        with pytest.raises(CardDeclined):
            await reg.checkout("CARD")
        after_decline = (reg.state, len(reg.cart.snapshot.items))
        result = await reg.checkout("CARD")
        await reg.close()
        return after_decline, result

    after_decline, result = run(scenario())
    assert after_decline == (S.ACTIVE, 1)
    assert result.transaction.total == Decimal("9.99")
    assert len(rig.terminal.calls) == 2


def test_validation_failure_leaves_state_untouched(rig, open_drawer):
    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "30.00"), ItemKind.PRODUCT)
        with pytest.raises(InsufficientCash):
            await reg.checkout("CASH", cash_received=Decimal("10"))
        with pytest.raises(InvalidAmount):
            reg.apply_global_discount(Decimal("-5"))
        state = reg.state
        await reg.close()
        return reg, state

    reg, state = run(scenario())
    assert state == S.ACTIVE
    assert reg.cart.snapshot.global_discount_amount == Decimal("0")


def test_cancel_clears_cart_back_to_idle(rig):
    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "5.00"), ItemKind.PRODUCT)
        seen = []
        reg.machine.subscribe(lambda prev, new: seen.append(new))
        await reg.cancel()
        await reg.close()
        return reg, seen

    reg, seen = run(scenario())
    assert seen == [S.CANCELLED, S.IDLE]
    assert reg.cart.snapshot.is_empty


def test_hub_keeps_one_register_per_id(rig):
    async def build(register_id):
        return rig.register()

    async def scenario():
        hub = RegisterHub(build)
        a1 = await hub.get("A")
        a2 = await hub.get("A")
        b = await hub.get("B")
        await hub.close_all()
        return a1, a2, b

    a1, a2, b = run(scenario())
    assert a1 is a2
    assert a1 is not b


def test_captured_but_unrecorded_card_is_never_charged_twice():
    recorder = InMemoryTransactionRecorder(fail_times=3)
    rig = Rig(flat_config(), recorder=recorder)

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "10.00"), ItemKind.PRODUCT)
        with pytest.raises(PaymentCapturedNotRecorded) as ei:
            await reg.checkout("CARD")
        held = (reg.state, reg.view()["unrecorded_transaction_id"])
        with pytest.raises(CheckoutStateError):
            await reg.checkout("CARD")
        with pytest.raises(CheckoutStateError):
            reg.add_item(item("B", "1.00"), ItemKind.PRODUCT)
        with pytest.raises(CheckoutStateError):
            await reg.cancel()
        result = await reg.retry_record()
        await reg.close()
        return reg, ei.value.transaction_id, held, result

    reg, tx_id, held, result = run(scenario())
    assert held == (S.SETTLING, tx_id)
    assert result.transaction.id == tx_id
    assert list(recorder.records) == [tx_id]
    assert rig.terminal.calls == [(Decimal("10.00"), tx_id)]
    assert reg.state == S.IDLE
    assert reg.unrecorded_transaction is None


def test_manual_reconciliation_releases_the_register():
    rig = Rig(flat_config(), recorder=InMemoryTransactionRecorder(fail_times=10))
    rig.drawer.open("emp-1", count({"100": 1}))

    async def scenario():
        reg = rig.register()
        reg.add_item(item("BUNDLE", "50.00"), ItemKind.PRODUCT)
        with pytest.raises(PaymentCapturedNotRecorded):
            await reg.checkout(
                "SPLIT", cash_received=Decimal("20.00"), split=SplitTender(Decimal("20.00"), Decimal("30.00"))
            )
        tx = await reg.resolve_reconciled()
        with pytest.raises(CheckoutStateError):
            await reg.retry_record()
        await reg.close()
        return reg, tx

    reg, tx = run(scenario())
    assert tx.card_amount == Decimal("30.00")
    assert reg.state == S.IDLE
    assert reg.cart.snapshot.is_empty
    assert len(rig.terminal.calls) == 1
    assert rig.recorder.records == {}
    # el efectivo ya estaba en el cajón
    assert rig.drawer.current().cash_sales_accumulated == Decimal("20.00")


def test_tip_timeout_clears_the_prompt_on_the_customer_display():
    rig = _tipping_rig(tip_max_attempts=2)

    async def scenario():
        reg = rig.register()
        reg.add_item(item("A", "40.00"), ItemKind.SERVICE)
        await reg.request_tip()
        await asyncio.sleep(0.01)
        doc = await rig.display_store.read("loc-1")
        await reg.close()
        return doc

    doc = run(scenario())
    assert doc.status == "TIP_SELECTED"
    assert doc.payload["tip_prompt"] is False
    assert doc.payload["tip_selected"] is True
    assert doc.payload["tip_amount"] == "0.00"
