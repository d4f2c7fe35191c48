"""Integration tests describing end-to-end Standkasse workflows.

These scenarios run the checkout flows, the ledger engine and the workbook
store together, reloading the workbook from disk between steps where the
production application would do the same.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from standkasse import checkout, core_logic, data_manager
from standkasse.constants import AuthMode, CancelReason, PaymentMethod, StoreKey, TaxType


PASSCODE = "4711"


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Open the same workbook afresh, as a new process would."""

    return core_logic.RuntimeContext(
        settings=context.settings,
        store=data_manager.WorkbookStore(context.settings.data_file),
    )


def test_event_day_lifecycle(runtime_context):
    """Open an event, sell, cancel, tip, count the till and archive."""

    context = runtime_context

    setup = checkout.EventSetupFlow(context)
    setup.begin_setup()
    setup.submit_name("Sommerfest")
    setup.submit_balance("50")
    core_logic.set_starting_stock(context, {"s1": 10})

    cart = checkout.Cart()
    gate = checkout.PasscodeGate(context)
    checkout.add_to_cart(context, cart, "s1")
    checkout.add_to_cart(context, cart, "s1")
    flow = checkout.CheckoutFlow(context, cart, gate)
    flow.select_payment(PaymentMethod.CASH)
    flow.select_tax_type(TaxType.ONSITE)
    flow.tap_denomination("20")
    flow.tap_denomination("5")
    order = flow.finalize()

    assert flow.last_change == Decimal("5.00")
    context = _reload(context)
    stored = context.store.load(StoreKey.ORDERS.value)
    assert stored[0]["taxRate"] == 19
    assert stored[0]["total"] == "20.00"
    assert core_logic.available_stock(context, "s1") == 8

    # A card order that gets cancelled puts its stock back.
    cart = checkout.Cart()
    gate = checkout.PasscodeGate(context)
    checkout.add_to_cart(context, cart, "s1")
    card_order = checkout.CheckoutFlow(context, cart, gate)
    card_order.select_payment(PaymentMethod.CARD)
    booked = card_order.select_tax_type(TaxType.TAKEAWAY)
    assert core_logic.available_stock(context, "s1") == 7

    cancellation = checkout.CancellationFlow(context, gate)
    cancellation.begin(booked.order_id)
    cancellation.submit_passcode(PASSCODE)
    cancellation.select_reason(CancelReason.MISBOOKING)
    cancellation.confirm()

    context = _reload(context)
    assert core_logic.available_stock(context, "s1") == 8
    assert core_logic.get_order(context, booked.order_id).is_cancelled

    tips = checkout.TipFlow(context)
    tips.quick_pick("2")
    tips.confirm()

    report = core_logic.compute_kassensturz(context, {"50_note": 1, "20_note": 1})
    assert report.expected == Decimal("70.00")
    assert report.is_balanced

    archived = core_logic.close_event(context, cash_count={"50_note": 1, "20_note": 1})
    context = _reload(context)

    assert core_logic.get_session(context).is_event_active is False
    assert core_logic.list_orders(context) == []
    event = core_logic.get_archived_event(context, archived.event_id)
    assert event.total_revenue == Decimal("20.00")
    assert event.final_difference == Decimal("0.00")
    assert [o.order_id for o in event.orders] == [order.order_id, booked.order_id]
    assert event.inventory["s1"].current == 8

    summary = core_logic.archived_event_report(context, archived.event_id)
    assert summary.tips_total == Decimal("2.00")
    assert summary.cancelled_count == 1


def test_sold_out_product_blocks_cart_and_checkout(runtime_context):
    """Stock limits hold at the cart and again at the ledger."""

    context = runtime_context
    core_logic.start_event(context, core_logic.StartEventCommand(name="Markt"))
    core_logic.set_starting_stock(context, {"s4": 1})

    cart = checkout.Cart()
    checkout.add_to_cart(context, cart, "s4")
    with pytest.raises(core_logic.SoldOutError):
        checkout.add_to_cart(context, cart, "s4")

    # A second till sells the last unit before this cart checks out.
    core_logic.finalize_order(
        context,
        core_logic.CheckoutCommand(
            lines=cart.lines,
            payment_method=PaymentMethod.CARD,
            tax_type=TaxType.ONSITE,
        ),
    )
    flow = checkout.CheckoutFlow(context, cart, checkout.PasscodeGate(context))
    flow.select_payment(PaymentMethod.CARD)
    with pytest.raises(core_logic.SoldOutError):
        flow.select_tax_type(TaxType.ONSITE)

    assert len(cart) == 1
    assert core_logic.available_stock(_reload(context), "s4") == 0
    assert len(core_logic.list_orders(_reload(context))) == 1


def test_price_override_and_free_of_charge_survive_reload(runtime_context):
    """Overridden prices and free-of-charge orders are stored as booked."""

    context = runtime_context
    core_logic.start_event(context, core_logic.StartEventCommand(name="Markt"))
    gate = checkout.PasscodeGate(context)

    cart = checkout.Cart()
    key = checkout.add_to_cart(context, cart, "s3")
    gate.request(AuthMode.PRICE_OVERRIDE, key)
    gate.submit(PASSCODE)
    cart.override_price(key, "7,50", gate.take_grant(AuthMode.PRICE_OVERRIDE, key))
    flow = checkout.CheckoutFlow(context, cart, gate)
    flow.select_payment(PaymentMethod.CARD)
    flow.select_tax_type(TaxType.ONSITE)

    checkout.add_to_cart(context, cart, "s2")
    gate.request(AuthMode.FREE_OF_CHARGE)
    gate.submit(PASSCODE)
    flow.select_payment(PaymentMethod.FREE_OF_CHARGE)
    flow.select_tax_type(TaxType.TAKEAWAY)

    reloaded = _reload(context)
    overridden, free = core_logic.list_orders(reloaded)
    assert overridden.lines[0].unit_price == Decimal("7.50")
    assert overridden.lines[0].original_price == Decimal("11.00")
    assert overridden.total == Decimal("7.50")
    assert free.total == Decimal("0.00")

    summary = core_logic.event_report(reloaded)
    assert summary.revenue == Decimal("7.50")
    assert summary.free_value == Decimal("10.00")


def test_passcode_change_persists(runtime_context):
    core_logic.update_passcode(runtime_context, PASSCODE, "2468")
    reloaded = _reload(runtime_context)
    assert core_logic.verify_passcode(reloaded, "2468")
    assert not core_logic.verify_passcode(reloaded, PASSCODE)
