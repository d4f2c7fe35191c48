"""Transient interaction state sitting between a front-end and the ledger.

Nothing in this module is persisted. A cart, an open passcode prompt, or a
half-finished setup or cancellation only lives as long as the screen that
owns it. Each flow delegates every ledger mutation to :mod:`core_logic`
and only advances its own state after that call succeeded, so a refused or
failed operation leaves the flow exactly as it was.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple, Union

from . import core_logic, log
from .constants import (
    MAX_CANCEL_NOTE_LENGTH,
    PASSCODE_ERROR_FLASH_SECONDS,
    TENDER_DENOMINATIONS,
    TIP_QUICK_PICKS,
    AuthMode,
    CancelReason,
    CheckoutStep,
    PaymentMethod,
    SetupStep,
    TaxType,
)
from .data_manager import CartLine, Order, Product, Tip, money


def parse_amount(raw: Union[str, Decimal, int, None], *, default: Optional[Decimal] = None) -> Decimal:
    """Parse user input into a non-negative two-decimal amount.

    A comma is accepted as decimal separator. Blank input yields ``default``
    when one is given.

    Raises:
        ValueError: If the input is blank without a default, not numeric, or
            negative.
    """
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = "" if raw is None else str(raw).strip().replace(",", ".")
        if not text:
            if default is None:
                raise ValueError("An amount is required")
            return money(default)
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"Not a valid amount: {raw}") from exc
    core_logic.require_nonnegative_money(value)
    return money(value)


# ---------------------------------------------------------------------------
# Authorization prompt
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthGrant:
    """Proof that the passcode was entered for one mode and target."""

    mode: AuthMode
    target: Optional[str]
    passcode: str


class PasscodeGate:
    """Passcode prompt shared by every guarded operation.

    The prompt is opened for a mode (and optionally a target such as a cart
    line or an order id). A correct code turns into a single-use
    :class:`AuthGrant`; a wrong one clears the input and raises a short-lived
    error flag. There is no attempt counter.
    """

    def __init__(self, context: core_logic.RuntimeContext, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._context = context
        self._clock = clock
        self.mode: Optional[AuthMode] = None
        self.target: Optional[str] = None
        self.input = ""
        self._error_at: Optional[float] = None
        self._grant: Optional[AuthGrant] = None

    @property
    def is_open(self) -> bool:
        return self.mode is not None

    @property
    def error_visible(self) -> bool:
        if self._error_at is None:
            return False
        return self._clock() - self._error_at < PASSCODE_ERROR_FLASH_SECONDS

    def request(self, mode: AuthMode, target: Optional[str] = None) -> None:
        self.mode = mode
        self.target = target
        self.input = ""
        self._error_at = None
        self._grant = None

    def press(self, character: str) -> None:
        self.input += character

    def backspace(self) -> None:
        self.input = self.input[:-1]

    def dismiss(self) -> None:
        self.mode = None
        self.target = None
        self.input = ""

    def submit(self, code: Optional[str] = None) -> bool:
        """Check ``code`` (or the typed input) against the shared passcode."""

        if self.mode is None:
            raise core_logic.BusinessRuleViolation("No passcode prompt is open")
        candidate = self.input if code is None else code
        self.input = ""
        if not core_logic.verify_passcode(self._context, candidate):
            self._error_at = self._clock()
            return False
        self._error_at = None
        self._grant = AuthGrant(mode=self.mode, target=self.target, passcode=candidate)
        self.mode = None
        self.target = None
        return True

    def take_grant(self, mode: AuthMode, target: Optional[str] = None) -> AuthGrant:
        """Consume the grant issued for ``mode`` and ``target``.

        Raises:
            AuthorizationError: If no matching grant is pending.
        """
        grant = self._grant
        if grant is None or grant.mode is not mode or grant.target != target:
            raise core_logic.AuthorizationError(f"No authorization for {mode.value}")
        self._grant = None
        return grant


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


class Cart:
    """Mutable selection of the current customer, keyed by line key.

    ``total`` and ``item_count`` are recomputed from the lines on every
    access.
    """

    def __init__(self) -> None:
        self._lines: Dict[str, CartLine] = {}
        self._next_key = 1

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines.values())

    def items(self) -> List[Tuple[str, CartLine]]:
        return list(self._lines.items())

    @property
    def total(self) -> Decimal:
        return core_logic.calculate_cart_total(self.lines)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def quantity_of(self, product_id: str) -> int:
        return sum(line.quantity for line in self._lines.values() if line.product_id == product_id)

    def get_line(self, line_key: str) -> CartLine:
        try:
            return self._lines[line_key]
        except KeyError as exc:
            raise core_logic.MissingReferenceError(f"Unknown cart line: {line_key}") from exc

    def add_line(self, product: Product, *, available: Optional[int] = None) -> str:
        """Add one unit of ``product`` and return the affected line key.

        A plain line of the same product is incremented; overridden lines are
        never merged. ``available`` is the tracked stock of the product, or
        ``None`` when its stock is not tracked. Units already in the cart
        count against it.

        Raises:
            SoldOutError: If no tracked unit is left. The cart is unchanged.
        """
        if available is not None and available - self.quantity_of(product.product_id) <= 0:
            log.warning("Add to cart refused: '%s' is sold out", product.product_id)
            raise core_logic.SoldOutError(f"{product.name} is sold out")

        for key, line in self._lines.items():
            if line.product_id == product.product_id and not line.is_overridden:
                self._lines[key] = replace(line, quantity=line.quantity + 1)
                return key

        key = f"L{self._next_key}"
        self._next_key += 1
        self._lines[key] = CartLine(
            product_id=product.product_id,
            name=product.name,
            unit_price=product.unit_price,
            quantity=1,
        )
        return key

    def set_quantity(self, line_key: str, quantity: int) -> None:
        core_logic.require_positive_quantity(quantity)
        self._lines[line_key] = replace(self.get_line(line_key), quantity=quantity)

    def remove_line(self, line_key: str) -> None:
        self.get_line(line_key)
        del self._lines[line_key]

    def override_price(self, line_key: str, new_price: Union[str, Decimal], grant: AuthGrant) -> CartLine:
        """Apply a manual price to one line.

        The first override remembers the catalog price in ``original_price``.

        Raises:
            AuthorizationError: If ``grant`` was not issued for this line.
            ValueError: If ``new_price`` is not a valid amount.
        """
        if grant.mode is not AuthMode.PRICE_OVERRIDE or grant.target != line_key:
            raise core_logic.AuthorizationError("Price override was not authorized for this line")
        line = self.get_line(line_key)
        price = parse_amount(new_price)
        updated = replace(
            line,
            unit_price=price,
            original_price=line.original_price if line.original_price is not None else line.unit_price,
            is_overridden=True,
        )
        self._lines[line_key] = updated
        log.info("Price of '%s' overridden: %s -> %s", line.product_id, line.unit_price, price)
        return updated

    def clear(self) -> None:
        self._lines.clear()


def add_to_cart(context: core_logic.RuntimeContext, cart: Cart, product_id: str) -> str:
    """Look up ``product_id`` and its tracked stock, then add it to ``cart``."""

    product = core_logic.get_product(context, product_id)
    return cart.add_line(product, available=core_logic.available_stock(context, product_id))


# ---------------------------------------------------------------------------
# Event setup
# ---------------------------------------------------------------------------


class EventSetupFlow:
    """Two-step wizard that collects the event name and the cash float.

    Whether an event is active is always read from the session, so a flow
    created while an event is running reports ``Active``.
    """

    def __init__(self, context: core_logic.RuntimeContext) -> None:
        self._context = context
        self._step = SetupStep.NO_EVENT
        self.event_name = ""

    @property
    def step(self) -> SetupStep:
        if core_logic.get_session(self._context).is_event_active:
            return SetupStep.ACTIVE
        return self._step

    def _require_step(self, expected: SetupStep) -> None:
        current = self.step
        if current is not expected:
            raise core_logic.BusinessRuleViolation(f"Setup is in step {current.value}, not {expected.value}")

    def begin_setup(self) -> None:
        self._require_step(SetupStep.NO_EVENT)
        self._step = SetupStep.SETTING_NAME

    def submit_name(self, name: str) -> None:
        self._require_step(SetupStep.SETTING_NAME)
        trimmed = (name or "").strip()
        if not trimmed:
            raise ValueError("Event name must not be empty")
        self.event_name = trimmed
        self._step = SetupStep.SETTING_BALANCE

    def back(self) -> None:
        self._require_step(SetupStep.SETTING_BALANCE)
        self._step = SetupStep.SETTING_NAME

    def abandon(self) -> None:
        if self.step is not SetupStep.ACTIVE:
            self._step = SetupStep.NO_EVENT
            self.event_name = ""

    def submit_balance(self, raw_balance: Union[str, Decimal, None] = None) -> None:
        self._require_step(SetupStep.SETTING_BALANCE)
        balance = parse_amount(raw_balance, default=Decimal("0"))
        core_logic.start_event(
            self._context,
            core_logic.StartEventCommand(name=self.event_name, initial_balance=balance),
        )
        self._step = SetupStep.NO_EVENT
        self.event_name = ""


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class CheckoutFlow:
    """Payment selection, tax type, and the cash change calculator.

    Cash and card go through the tax-type step; cash adds the change
    calculator. Free-of-charge needs a pending grant from the gate and then
    only asks for the tax type.
    """

    def __init__(self, context: core_logic.RuntimeContext, cart: Cart, gate: PasscodeGate) -> None:
        self._context = context
        self.cart = cart
        self.gate = gate
        self._reset()
        self.last_order: Optional[Order] = None
        self.last_change: Optional[Decimal] = None

    def _reset(self) -> None:
        self.step = CheckoutStep.IDLE
        self.payment_method: Optional[PaymentMethod] = None
        self.tax_type: Optional[TaxType] = None
        self.tendered = Decimal("0.00")
        self._passcode: Optional[str] = None

    @property
    def total(self) -> Decimal:
        if self.payment_method is PaymentMethod.FREE_OF_CHARGE:
            return Decimal("0.00")
        return self.cart.total

    @property
    def change(self) -> Decimal:
        return max(Decimal("0.00"), money(self.tendered - self.total))

    @property
    def can_finalize(self) -> bool:
        if self.step is CheckoutStep.CHANGE:
            return self.tendered >= self.total
        return self.step is CheckoutStep.TAX_TYPE and self.tax_type is not None

    def select_payment(self, method: PaymentMethod) -> None:
        """Enter the tax-type step for ``method``.

        Raises:
            BusinessRuleViolation: If the cart is empty or no event is open.
            AuthorizationError: For free-of-charge without a pending grant.
        """
        core_logic.require_active_event(core_logic.get_session(self._context))
        if not len(self.cart):
            raise core_logic.BusinessRuleViolation("Cannot check out an empty cart")
        passcode = None
        if method is PaymentMethod.FREE_OF_CHARGE:
            passcode = self.gate.take_grant(AuthMode.FREE_OF_CHARGE).passcode
        self._reset()
        self.payment_method = method
        self._passcode = passcode
        self.step = CheckoutStep.TAX_TYPE

    def select_tax_type(self, tax_type: TaxType) -> Optional[Order]:
        """Record the tax type; finalize unless the change calculator follows."""

        if self.step is not CheckoutStep.TAX_TYPE:
            raise core_logic.BusinessRuleViolation("No payment method selected")
        self.tax_type = tax_type
        if self.payment_method is PaymentMethod.CASH:
            self.step = CheckoutStep.CHANGE
            return None
        return self.finalize()

    def tap_denomination(self, value: Union[str, Decimal]) -> Decimal:
        if self.step is not CheckoutStep.CHANGE:
            raise core_logic.BusinessRuleViolation("The change calculator is not open")
        amount = parse_amount(value)
        if amount not in TENDER_DENOMINATIONS:
            raise ValueError(f"Unknown denomination: {value}")
        self.tendered = money(self.tendered + amount)
        return self.tendered

    def clear_tendered(self) -> None:
        self.tendered = Decimal("0.00")

    def abort(self) -> None:
        """Leave the checkout steps and keep the cart."""

        self._reset()

    def finalize(self) -> Order:
        """Book the cart as an order, then clear the cart and the steps.

        Raises:
            InsufficientTenderError: If cash tendered is below the total.
            BusinessRuleViolation: For any refusal by the ledger; the cart and
                the checkout state stay untouched.
        """
        if self.payment_method is None or self.tax_type is None:
            raise core_logic.BusinessRuleViolation("Checkout is incomplete")
        if self.payment_method is PaymentMethod.CASH and self.tendered < self.total:
            raise core_logic.InsufficientTenderError(f"Tendered {self.tendered} does not cover {self.total}")

        order = core_logic.finalize_order(
            self._context,
            core_logic.CheckoutCommand(
                lines=self.cart.lines,
                payment_method=self.payment_method,
                tax_type=self.tax_type,
                tendered=self.tendered if self.payment_method is PaymentMethod.CASH else None,
                passcode=self._passcode,
            ),
        )
        self.last_change = self.change if self.payment_method is PaymentMethod.CASH else None
        self.last_order = order
        self.cart.clear()
        self._reset()
        return order


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationFlow:
    """Passcode, reason, and confirmation for cancelling one order."""

    def __init__(self, context: core_logic.RuntimeContext, gate: PasscodeGate) -> None:
        self._context = context
        self.gate = gate
        self._clear()

    def _clear(self) -> None:
        self.order_id: Optional[str] = None
        self.reason: Optional[CancelReason] = None
        self.note = ""
        self._passcode: Optional[str] = None

    @property
    def is_authorized(self) -> bool:
        return self._passcode is not None

    @property
    def can_confirm(self) -> bool:
        if not self.is_authorized or self.reason is None:
            return False
        if self.reason is CancelReason.OTHER:
            text = self.note.strip()
            return bool(text) and len(text) <= MAX_CANCEL_NOTE_LENGTH
        return True

    def begin(self, order_id: str) -> None:
        order = core_logic.get_order(self._context, order_id)
        if order.is_cancelled:
            raise core_logic.AlreadyCancelledError(f"Order #{order.order_number} is already cancelled")
        self._clear()
        self.order_id = order_id
        self.gate.request(AuthMode.CANCEL_ORDER, order_id)

    def submit_passcode(self, code: Optional[str] = None) -> bool:
        if self.order_id is None:
            raise core_logic.BusinessRuleViolation("No order selected for cancellation")
        if not self.gate.submit(code):
            return False
        self._passcode = self.gate.take_grant(AuthMode.CANCEL_ORDER, self.order_id).passcode
        return True

    def select_reason(self, reason: CancelReason) -> None:
        if not self.is_authorized:
            raise core_logic.AuthorizationError("Cancellation was not authorized")
        self.reason = reason

    def set_note(self, text: str) -> None:
        self.note = (text or "")[:MAX_CANCEL_NOTE_LENGTH]

    def abort(self) -> None:
        self.gate.dismiss()
        self._clear()

    def confirm(self) -> Order:
        if not self.can_confirm or self.order_id is None or self.reason is None or self._passcode is None:
            raise core_logic.BusinessRuleViolation("Cancellation is incomplete")
        order = core_logic.cancel_order(
            self._context,
            core_logic.CancelCommand(
                order_id=self.order_id,
                reason_code=self.reason,
                passcode=self._passcode,
                note=self.note,
            ),
        )
        self._clear()
        return order


def reset_history(context: core_logic.RuntimeContext, gate: PasscodeGate) -> int:
    """Wipe the order ledger using a pending reset grant."""

    grant = gate.take_grant(AuthMode.RESET_HISTORY)
    return core_logic.reset_orders(context, grant.passcode)


# ---------------------------------------------------------------------------
# Tips
# ---------------------------------------------------------------------------


class TipFlow:
    """Quick-pick tip selection followed by a confirmation."""

    def __init__(self, context: core_logic.RuntimeContext) -> None:
        self._context = context
        self.pending: Optional[Decimal] = None

    def quick_pick(self, amount: Union[str, Decimal]) -> None:
        value = parse_amount(amount)
        if value not in TIP_QUICK_PICKS:
            raise ValueError(f"Tip amount must be one of {', '.join(str(v) for v in TIP_QUICK_PICKS)}")
        self.pending = value

    def dismiss(self) -> None:
        self.pending = None

    def confirm(self) -> Tip:
        if self.pending is None:
            raise core_logic.BusinessRuleViolation("No tip selected")
        tip = core_logic.record_tip(self._context, self.pending)
        self.pending = None
        return tip
