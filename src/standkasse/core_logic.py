"""Business logic layer for Standkasse.

This module contains the Event & Transaction Ledger Engine: the event
lifecycle, the cart to order transition, inventory decrement and
restitution, tips, passcode-gated mutations, and end-of-event archiving with
the Kassensturz reconciliation. It consumes the Data Access Layer (DAL) for
all I/O and never talks to a concrete storage medium directly.

Every operation receives an explicit :class:`RuntimeContext`. Session
observers registered on the context are called synchronously after each
``settings`` write, which keeps independently rendered views consistent
without a global event bus.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MAX_CANCEL_NOTE_LENGTH,
    SEED_CATALOG,
    TAX_RATES,
    TIP_QUICK_PICKS,
    AuthMode,
    CancelReason,
    Denomination,
    PaymentMethod,
    StoreKey,
    TaxType,
)
from .data_manager import (
    ArchivedEvent,
    CartLine,
    InventoryItem,
    InventoryRefill,
    Order,
    OrderCancelled,
    PersistenceError,
    Product,
    SessionSettings,
    Tip,
    money,
)


ZERO = Decimal("0.00")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, order, or archived event is unknown."""


class NoActiveEventError(BusinessRuleViolation):
    """Raised when an operation needs an active event and none is running."""


class EventAlreadyActiveError(BusinessRuleViolation):
    """Raised when an operation is only allowed while no event is running."""


class SoldOutError(BusinessRuleViolation):
    """Raised when a tracked product has no remaining stock."""


class InsufficientTenderError(BusinessRuleViolation):
    """Raised when the cash handed over does not cover the order total."""


class AlreadyCancelledError(BusinessRuleViolation):
    """Raised when a cancelled order is cancelled again."""


class AuthorizationError(BusinessRuleViolation):
    """Raised when the supplied passcode does not match the shared secret."""


SessionObserver = Callable[[SessionSettings], None]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the store, and session observers."""

    settings: data_manager.ConfigSettings
    store: data_manager.KeyValueStore
    _observers: List[SessionObserver] = field(default_factory=list, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class StartEventCommand:
    """User intent for opening a new event."""

    name: str
    initial_balance: Decimal = ZERO
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutCommand:
    """User intent for turning cart lines into a finalized order."""

    lines: Tuple[CartLine, ...]
    payment_method: PaymentMethod
    tax_type: TaxType
    tendered: Optional[Decimal] = None
    passcode: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CancelCommand:
    """User intent for a Storno of one finalized order."""

    order_id: str
    reason_code: CancelReason
    passcode: str
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class KassensturzReport:
    """Outcome of comparing the counted till against the ledger."""

    initial_balance: Decimal
    cash_revenue: Decimal
    expected: Decimal
    actual: Decimal
    difference: Decimal

    @property
    def is_balanced(self) -> bool:
        return self.difference == ZERO


@dataclass(frozen=True)
class TaxShare:
    """Gross takings attributed to one VAT rate and the VAT contained in them."""

    gross: Decimal
    vat: Decimal


@dataclass(frozen=True)
class EventSummary:
    """Read-side aggregates of an event's orders and tips."""

    revenue: Decimal
    cash_revenue: Decimal
    card_revenue: Decimal
    free_value: Decimal
    tips_total: Decimal
    order_count: int
    cancelled_count: int
    product_volume: Tuple[Tuple[str, int], ...]
    tax_breakdown: Mapping[int, TaxShare]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_record_id(*, prefix: str, when: Optional[datetime] = None, suffix: Optional[str] = None) -> str:
    """Generate a sortable identifier from a UTC timestamp.

    Args:
        prefix (str): Designator for the record family (``"O"`` for orders,
            ``"TIP"`` for tips).
        when (datetime | None): Timestamp used to build the identifier.
        suffix (str | None): Optional discriminator appended after a dash,
            used when several records can share one timestamp.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}[-suffix]``.
    """
    when = when or _resolve_timestamp(None)
    identifier = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    return f"{identifier}-{suffix}" if suffix else identifier


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStore(settings.data_file)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to operate on a store declared with a different schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a schema version other than
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def subscribe(context: RuntimeContext, observer: SessionObserver) -> Callable[[], None]:
    """Register ``observer`` for session changes and return its unsubscriber."""

    context._observers.append(observer)

    def _unsubscribe() -> None:
        unsubscribe(context, observer)

    return _unsubscribe


def unsubscribe(context: RuntimeContext, observer: SessionObserver) -> None:
    """Remove ``observer``. Unknown observers are ignored."""

    if observer in context._observers:
        context._observers.remove(observer)


def _notify(context: RuntimeContext, session: SessionSettings) -> None:
    # Writes are durable at this point, so observer errors are only logged.
    for observer in list(context._observers):
        try:
            observer(session)
        except Exception:
            log.exception("Session observer %r failed", observer)


def _commit(context: RuntimeContext, writes: Sequence[Tuple[StoreKey, Any]]) -> None:
    """Write several store keys as one unit.

    Keys are written in order. When a write fails, the keys already written
    are restored to their previous documents before the error propagates, so
    no half-applied state survives. Observers are notified only after every
    write succeeded and only when ``settings`` was part of the unit.
    """

    written: List[Tuple[str, Any]] = []
    for key, document in writes:
        previous = context.store.load(key.value)
        try:
            context.store.save(key.value, document)
        except PersistenceError:
            log.error("Write of '%s' failed; restoring %d previously written key(s)", key.value, len(written))
            for done_key, done_previous in reversed(written):
                try:
                    context.store.save(done_key, done_previous)
                except PersistenceError as exc:
                    log.error("Could not restore key '%s': %s", done_key, exc)
            raise
        written.append((key.value, previous))

    for key, document in writes:
        if key is StoreKey.SETTINGS:
            _notify(context, data_manager.deserialize_session(document))


# ---------------------------------------------------------------------------
# Event session
# ---------------------------------------------------------------------------


def get_session(context: RuntimeContext) -> SessionSettings:
    """Return the persisted session, defaulting to a fresh one."""

    return data_manager.load_session(context.store, default_passcode=context.settings.default_passcode)


def _save_session(context: RuntimeContext, session: SessionSettings) -> None:
    _commit(context, [(StoreKey.SETTINGS, data_manager.serialize_session(session))])


def require_active_event(session: SessionSettings) -> str:
    """Return the active event name or raise :class:`NoActiveEventError`."""

    if session.active_event_name is None:
        log.warning("Operation refused: no active event")
        raise NoActiveEventError("No event is active")
    return session.active_event_name


def start_event(context: RuntimeContext, command: StartEventCommand) -> SessionSettings:
    """Open a new event and reset the per-event ledgers.

    The name is trimmed and must not be empty; the starting cash float must
    be zero or positive. The order counter restarts at 1 and the inventory,
    refill and tip ledgers are emptied.

    Raises:
        EventAlreadyActiveError: If another event is still open.
        ValueError: On an empty name or a negative balance.
    """
    name = (command.name or "").strip()
    if not name:
        log.error("Event start refused: empty event name")
        raise ValueError("Event name must not be empty")
    require_nonnegative_money(command.initial_balance)

    session = get_session(context)
    if session.is_event_active:
        log.warning("Event start refused: '%s' is still active", session.active_event_name)
        raise EventAlreadyActiveError(f"Event '{session.active_event_name}' is still active")

    started = _resolve_timestamp(command.timestamp)
    updated = replace(
        session,
        active_event_name=name,
        active_event_start=started.isoformat(),
        active_initial_balance=money(command.initial_balance),
        next_order_number=1,
        active_inventory={},
        active_refills=(),
        active_tips=(),
    )
    _save_session(context, updated)
    log.info("Started event '%s' with initial balance %s", name, updated.active_initial_balance)
    return updated


def close_event(
    context: RuntimeContext,
    *,
    cash_count: Optional[Mapping[Union[Denomination, str], int]] = None,
    timestamp: Optional[datetime] = None,
) -> ArchivedEvent:
    """Archive the active event and return to the no-event state.

    Revenue is the sum of non-cancelled order totals. The archived record
    receives the id ``<year>-<sequence:04d>`` and snapshots orders, tips,
    inventory and refills. When ``cash_count`` is supplied the till count and
    its Kassensturz difference are stored on the record as well.

    The archive is written first. If that write fails nothing else changes
    and the event stays active.

    Raises:
        NoActiveEventError: If no event is open.
        PersistenceError: If the store cannot be written.
    """
    session = get_session(context)
    name = require_active_event(session)
    orders = data_manager.load_orders(context.store)
    closed = _resolve_timestamp(timestamp).isoformat()

    counts: Optional[Dict[str, int]] = None
    difference: Optional[Decimal] = None
    if cash_count is not None:
        counts = normalize_cash_count(cash_count)
        difference = compute_kassensturz_for(session.active_initial_balance, orders, counts).difference

    archived = ArchivedEvent(
        event_id=f"{context.settings.archive_year}-{session.event_sequence:04d}",
        name=name,
        start_date=session.active_event_start or closed,
        end_date=closed,
        closed_at=closed,
        initial_balance=session.active_initial_balance,
        total_revenue=calculate_total_revenue(orders),
        orders=tuple(orders),
        tips=tuple(session.active_tips),
        inventory=dict(session.active_inventory),
        refills=tuple(session.active_refills),
        cash_count=counts,
        final_difference=difference,
    )
    archive = [archived, *data_manager.load_archive(context.store)]
    reset = replace(
        session,
        active_event_name=None,
        active_event_start=None,
        active_initial_balance=ZERO,
        next_order_number=1,
        event_sequence=session.event_sequence + 1,
        active_inventory={},
        active_refills=(),
        active_tips=(),
    )
    _commit(
        context,
        [
            (StoreKey.ARCHIVE, [data_manager.serialize_archived_event(item) for item in archive]),
            (StoreKey.ORDERS, []),
            (StoreKey.SETTINGS, data_manager.serialize_session(reset)),
        ],
    )
    log.info(
        "Closed event '%s' as '%s' (orders=%d, revenue=%s)",
        name,
        archived.event_id,
        len(orders),
        archived.total_revenue,
    )
    return archived


def list_archive(context: RuntimeContext) -> List[ArchivedEvent]:
    """Return archived events, newest first."""

    return data_manager.load_archive(context.store)


def get_archived_event(context: RuntimeContext, event_id: str) -> ArchivedEvent:
    """Resolve an archived event by id.

    Raises:
        MissingReferenceError: If no archived event carries ``event_id``.
    """
    for event in list_archive(context):
        if event.event_id == event_id:
            return event
    log.warning("Archived event lookup failed for id '%s'", event_id)
    raise MissingReferenceError(f"Unknown archived event id: {event_id}")


# ---------------------------------------------------------------------------
# Authorization gate
# ---------------------------------------------------------------------------


def verify_passcode(context: RuntimeContext, candidate: Optional[str]) -> bool:
    """Compare ``candidate`` against the shared passcode by exact match.

    The passcode is a deliberately simple plaintext secret shared by everybody
    working the till. Failures are logged without the attempted value and
    there is no retry counter.
    """
    matches = candidate is not None and candidate == get_session(context).passcode
    if not matches:
        log.warning("Passcode verification failed")
    return matches


def require_authorization(context: RuntimeContext, candidate: Optional[str], mode: AuthMode) -> None:
    """Raise :class:`AuthorizationError` unless ``candidate`` is the passcode."""

    if not verify_passcode(context, candidate):
        raise AuthorizationError(f"Passcode rejected for {mode.value}")
    log.debug("Passcode accepted for %s", mode.value)


def update_passcode(context: RuntimeContext, current: str, new_passcode: str) -> None:
    """Replace the shared passcode after confirming the current one.

    Raises:
        AuthorizationError: If ``current`` is wrong.
        ValueError: If ``new_passcode`` is empty.
    """
    if not verify_passcode(context, current):
        raise AuthorizationError("Current passcode rejected")
    if not new_passcode:
        raise ValueError("Passcode must not be empty")
    _save_session(context, replace(get_session(context), passcode=new_passcode))
    log.info("Passcode updated")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = context._cache.setdefault("products", {})
    if "all" not in bucket:
        products = data_manager.load_products(context.store, seed=SEED_CATALOG)
        bucket["all"] = products
        bucket["by_id"] = {product.product_id: product for product in products}
        log.debug("Populated products cache with %d entries", len(products))
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    for name in names:
        context._cache.pop(name, None)


def list_products(context: RuntimeContext, *, category: Optional[str] = None) -> List[Product]:
    """Return catalog products in stored order, optionally by category."""

    products = _ensure_products_cache(context)["all"]
    if category is None:
        return list(products)
    return [product for product in products if product.category == category]


def list_categories(context: RuntimeContext) -> List[str]:
    """Return the distinct categories of the catalog in first-seen order."""

    seen: Dict[str, None] = {}
    for product in list_products(context):
        seen.setdefault(product.category, None)
    return list(seen)


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If the catalog lacks ``product_id``.
    """
    try:
        return _ensure_products_cache(context)["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def _require_catalog_editable(context: RuntimeContext) -> None:
    session = get_session(context)
    if session.is_event_active:
        log.warning("Catalog edit refused while '%s' is active", session.active_event_name)
        raise EventAlreadyActiveError("The catalog is read-only while an event is active")


def save_product(context: RuntimeContext, product: Product) -> Product:
    """Insert ``product`` or replace the entry with the same id.

    Raises:
        EventAlreadyActiveError: While an event is running.
        ValueError: On a blank id or name or a negative price.
    """
    _require_catalog_editable(context)
    if not product.product_id.strip() or not product.name.strip():
        raise ValueError("Product id and name must not be empty")
    require_nonnegative_money(product.unit_price)

    normalized = replace(product, unit_price=money(product.unit_price))
    products = list_products(context)
    for index, existing in enumerate(products):
        if existing.product_id == normalized.product_id:
            products[index] = normalized
            break
    else:
        products.append(normalized)
    data_manager.save_products(context.store, products)
    _invalidate_cache(context, "products")
    log.info("Saved product '%s' (%s at %s)", normalized.product_id, normalized.name, normalized.unit_price)
    return normalized


def remove_product(context: RuntimeContext, product_id: str) -> None:
    """Delete a product from the catalog."""

    _require_catalog_editable(context)
    get_product(context, product_id)
    products = [product for product in list_products(context) if product.product_id != product_id]
    data_manager.save_products(context.store, products)
    _invalidate_cache(context, "products")
    log.info("Removed product '%s'", product_id)


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------


def get_inventory(context: RuntimeContext) -> Dict[str, InventoryItem]:
    """Return the tracked stock of the active event keyed by product id."""

    return dict(get_session(context).active_inventory)


def available_stock(context: RuntimeContext, product_id: str) -> Optional[int]:
    """Return ``current`` for a tracked product, ``None`` when untracked."""

    item = get_session(context).active_inventory.get(product_id)
    return item.current if item is not None else None


def set_starting_stock(context: RuntimeContext, stock: Mapping[str, int]) -> Dict[str, InventoryItem]:
    """Start tracking the given products with ``start = current = amount``.

    Products not named keep their tracking state. Re-setting a tracked
    product restarts its counter.

    Raises:
        NoActiveEventError: If no event is open.
        MissingReferenceError: If a product id is not in the catalog.
        ValueError: If an amount is negative.
    """
    session = get_session(context)
    require_active_event(session)
    inventory = dict(session.active_inventory)
    for product_id, amount in stock.items():
        get_product(context, product_id)
        if int(amount) < 0:
            raise ValueError(f"Starting stock must not be negative: {product_id}={amount}")
        inventory[product_id] = InventoryItem(start=int(amount), current=int(amount))
    _save_session(context, replace(session, active_inventory=inventory))
    log.info("Set starting stock for %d product(s)", len(stock))
    return inventory


def stop_tracking(context: RuntimeContext, product_id: str) -> None:
    """Remove a product from stock tracking for the active event."""

    session = get_session(context)
    require_active_event(session)
    if product_id not in session.active_inventory:
        raise MissingReferenceError(f"Product is not tracked: {product_id}")
    inventory = {key: item for key, item in session.active_inventory.items() if key != product_id}
    _save_session(context, replace(session, active_inventory=inventory))
    log.info("Stopped stock tracking for '%s'", product_id)


def refill_inventory(
    context: RuntimeContext,
    items: Mapping[str, int],
    *,
    timestamp: Optional[datetime] = None,
) -> InventoryRefill:
    """Add stock to tracked products and log the refill.

    Both ``start`` and ``current`` grow by the refilled amount so that
    ``current <= start`` keeps holding.

    Raises:
        NoActiveEventError: If no event is open.
        MissingReferenceError: If a product is not under tracking.
        ValueError: If the refill is empty or an amount is not positive.
    """
    session = get_session(context)
    require_active_event(session)
    if not items:
        raise ValueError("A refill needs at least one product")

    inventory = dict(session.active_inventory)
    for product_id, amount in items.items():
        item = inventory.get(product_id)
        if item is None:
            log.warning("Refill refused: product '%s' is not tracked", product_id)
            raise MissingReferenceError(f"Product is not tracked: {product_id}")
        if int(amount) <= 0:
            raise ValueError(f"Refill amount must be greater than zero: {product_id}={amount}")
        inventory[product_id] = InventoryItem(start=item.start + int(amount), current=item.current + int(amount))

    refill = InventoryRefill(
        timestamp_iso=_resolve_timestamp(timestamp).isoformat(),
        items={product_id: int(amount) for product_id, amount in items.items()},
    )
    _save_session(
        context,
        replace(session, active_inventory=inventory, active_refills=(*session.active_refills, refill)),
    )
    log.info("Recorded refill for %d product(s)", len(items))
    return refill


def apply_sale_to_inventory(
    inventory: Mapping[str, InventoryItem],
    lines: Sequence[CartLine],
) -> Dict[str, InventoryItem]:
    """Return ``inventory`` with the quantities of ``lines`` taken out.

    Untracked products are ignored.

    Raises:
        SoldOutError: If a tracked product would drop below zero.
    """
    updated = dict(inventory)
    for line in lines:
        item = updated.get(line.product_id)
        if item is None:
            continue
        if item.current < line.quantity:
            log.warning(
                "Sale refused: '%s' has %d left, %d requested",
                line.product_id,
                item.current,
                line.quantity,
            )
            raise SoldOutError(f"Not enough stock for {line.name}: {item.current} left")
        updated[line.product_id] = replace(item, current=item.current - line.quantity)
    return updated


def restitute_inventory(
    inventory: Mapping[str, InventoryItem],
    lines: Sequence[CartLine],
) -> Dict[str, InventoryItem]:
    """Return ``inventory`` with the quantities of ``lines`` put back.

    ``current`` never exceeds ``start``; this only matters when tracking of a
    product was (re)started after the order was sold.
    """
    updated = dict(inventory)
    for line in lines:
        item = updated.get(line.product_id)
        if item is None:
            continue
        updated[line.product_id] = replace(item, current=min(item.start, item.current + line.quantity))
    return updated


# ---------------------------------------------------------------------------
# Order ledger
# ---------------------------------------------------------------------------


def list_orders(context: RuntimeContext, *, include_cancelled: bool = True) -> List[Order]:
    """Return the active event's orders in booking order."""

    orders = data_manager.load_orders(context.store)
    if include_cancelled:
        return orders
    return [order for order in orders if not order.is_cancelled]


def list_cancelled_orders(context: RuntimeContext) -> List[Order]:
    """Return the cancelled orders kept for audit."""

    return [order for order in data_manager.load_orders(context.store) if order.is_cancelled]


def get_order(context: RuntimeContext, order_id: str) -> Order:
    """Resolve an order of the active event by id.

    Raises:
        MissingReferenceError: If the ledger lacks ``order_id``.
    """
    for order in data_manager.load_orders(context.store):
        if order.order_id == order_id:
            return order
    log.warning("Order lookup failed for id '%s'", order_id)
    raise MissingReferenceError(f"Unknown order id: {order_id}")


def calculate_cart_total(lines: Sequence[CartLine]) -> Decimal:
    """Sum ``unit_price * quantity`` over ``lines``."""

    return money(sum((line.line_total for line in lines), ZERO))


def calculate_total_revenue(orders: Sequence[Order]) -> Decimal:
    """Sum the totals of non-cancelled orders."""

    return money(sum((order.total for order in orders if not order.is_cancelled), ZERO))


def finalize_order(context: RuntimeContext, command: CheckoutCommand) -> Order:
    """Turn cart lines into a finalized order.

    The order and the inventory decrement are written as one unit: the
    order ledger first, then the session with the reduced stock and the
    advanced order counter. If the session write fails the order ledger is
    restored, so an order never exists without its stock effect.

    Free-of-charge checkouts require the passcode and record a total of zero.
    Cash checkouts require a tendered amount covering the total.

    Raises:
        NoActiveEventError: If no event is open.
        BusinessRuleViolation: If ``lines`` is empty.
        AuthorizationError: If a free-of-charge checkout lacks the passcode.
        InsufficientTenderError: If cash tendered is below the total.
        SoldOutError: If a tracked product lacks the stock.
        ValueError: If a line has a quantity below one or a negative price.
    """
    session = get_session(context)
    event_name = require_active_event(session)
    if not command.lines:
        log.warning("Checkout refused: cart is empty")
        raise BusinessRuleViolation("Cannot check out an empty cart")
    for line in command.lines:
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.unit_price)

    if command.payment_method is PaymentMethod.FREE_OF_CHARGE:
        require_authorization(context, command.passcode, AuthMode.FREE_OF_CHARGE)
        total = ZERO
    else:
        total = calculate_cart_total(command.lines)

    if command.payment_method is PaymentMethod.CASH:
        tendered = money(command.tendered) if command.tendered is not None else None
        if tendered is None or tendered < total:
            log.warning("Checkout refused: tendered %s below total %s", tendered, total)
            raise InsufficientTenderError(f"Tendered amount {tendered} does not cover {total}")

    inventory = apply_sale_to_inventory(session.active_inventory, command.lines)
    when = _resolve_timestamp(command.timestamp)
    order = Order(
        order_id=generate_record_id(prefix="O", when=when, suffix=str(session.next_order_number)),
        order_number=session.next_order_number,
        timestamp_iso=when.isoformat(),
        lines=tuple(command.lines),
        total=total,
        payment_method=command.payment_method,
        event_name=event_name,
        tax_type=command.tax_type,
    )
    orders = [*data_manager.load_orders(context.store), order]
    updated = replace(session, next_order_number=session.next_order_number + 1, active_inventory=inventory)
    _commit(
        context,
        [
            (StoreKey.ORDERS, [data_manager.serialize_order(item) for item in orders]),
            (StoreKey.SETTINGS, data_manager.serialize_session(updated)),
        ],
    )
    log.info(
        "Finalized order #%d '%s' (%s, %s, total=%s)",
        order.order_number,
        order.order_id,
        order.payment_method.value,
        order.tax_type.value,
        order.total,
    )
    return order


def validate_cancel_reason(reason_code: CancelReason, note: Optional[str]) -> str:
    """Return the reason text stored on a cancelled order.

    ``Other`` requires a non-empty note of at most
    :data:`MAX_CANCEL_NOTE_LENGTH` characters, which becomes the reason.
    Every other code is stored as its own value.

    Raises:
        ValueError: If the note for ``Other`` is blank or too long.
    """
    if reason_code is not CancelReason.OTHER:
        return reason_code.value
    text = (note or "").strip()
    if not text:
        raise ValueError("A custom cancellation reason is required")
    if len(text) > MAX_CANCEL_NOTE_LENGTH:
        raise ValueError(f"Cancellation reason exceeds {MAX_CANCEL_NOTE_LENGTH} characters")
    return text


def cancel_order(context: RuntimeContext, command: CancelCommand) -> Order:
    """Cancel (Storno) one order and put its items back into stock.

    The order stays in the ledger with a cancelled status and is excluded
    from revenue. Cancellation cannot be undone, and cancelling twice is
    refused so stock is never restituted twice.

    Raises:
        NoActiveEventError: If no event is open.
        AuthorizationError: If the passcode is wrong.
        ValueError: If the reason is incomplete.
        MissingReferenceError: If the order is unknown.
        AlreadyCancelledError: If the order was already cancelled.
    """
    session = get_session(context)
    require_active_event(session)
    require_authorization(context, command.passcode, AuthMode.CANCEL_ORDER)
    reason = validate_cancel_reason(command.reason_code, command.note)

    orders = data_manager.load_orders(context.store)
    index = next((i for i, order in enumerate(orders) if order.order_id == command.order_id), None)
    if index is None:
        log.warning("Cancellation refused: unknown order '%s'", command.order_id)
        raise MissingReferenceError(f"Unknown order id: {command.order_id}")
    target = orders[index]
    if target.is_cancelled:
        log.warning("Cancellation refused: order '%s' is already cancelled", target.order_id)
        raise AlreadyCancelledError(f"Order #{target.order_number} is already cancelled")

    cancelled = replace(
        target,
        status=OrderCancelled(
            reason_code=command.reason_code,
            reason=reason,
            timestamp_iso=_resolve_timestamp(command.timestamp).isoformat(),
        ),
    )
    orders[index] = cancelled
    updated = replace(session, active_inventory=restitute_inventory(session.active_inventory, target.lines))
    _commit(
        context,
        [
            (StoreKey.ORDERS, [data_manager.serialize_order(item) for item in orders]),
            (StoreKey.SETTINGS, data_manager.serialize_session(updated)),
        ],
    )
    log.info("Cancelled order #%d '%s' (%s)", cancelled.order_number, cancelled.order_id, reason)
    return cancelled


def reset_orders(context: RuntimeContext, passcode: str) -> int:
    """Hard-delete every order of the active ledger.

    Meant for discarding test bookings. Unlike :func:`cancel_order` nothing
    is audited and stock and order numbering are left as they are.

    Returns:
        int: Number of orders removed.

    Raises:
        AuthorizationError: If the passcode is wrong.
    """
    require_authorization(context, passcode, AuthMode.RESET_HISTORY)
    removed = len(data_manager.load_orders(context.store))
    _commit(context, [(StoreKey.ORDERS, [])])
    log.info("Reset order ledger (%d order(s) removed)", removed)
    return removed


# ---------------------------------------------------------------------------
# Tip ledger
# ---------------------------------------------------------------------------


def record_tip(context: RuntimeContext, amount: Decimal, *, timestamp: Optional[datetime] = None) -> Tip:
    """Append a tip from the quick-pick set to the active event.

    Raises:
        NoActiveEventError: If no event is open.
        ValueError: If ``amount`` is not one of :data:`TIP_QUICK_PICKS`.
    """
    session = get_session(context)
    event_name = require_active_event(session)
    value = money(amount)
    if value not in TIP_QUICK_PICKS:
        log.error("Tip amount %s is not a quick pick", value)
        raise ValueError(f"Tip amount must be one of {', '.join(str(v) for v in TIP_QUICK_PICKS)}")

    when = _resolve_timestamp(timestamp)
    tip = Tip(
        tip_id=generate_record_id(prefix="TIP", when=when, suffix=str(len(session.active_tips) + 1)),
        amount=value,
        timestamp_iso=when.isoformat(),
        event_name=event_name,
    )
    _save_session(context, replace(session, active_tips=(*session.active_tips, tip)))
    log.info("Recorded tip '%s' of %s", tip.tip_id, tip.amount)
    return tip


def list_tips(context: RuntimeContext) -> List[Tip]:
    return list(get_session(context).active_tips)


# ---------------------------------------------------------------------------
# Reconciliation and reports
# ---------------------------------------------------------------------------


def normalize_cash_count(counts: Mapping[Union[Denomination, str], int]) -> Dict[str, int]:
    """Validate a till count and key it by denomination value.

    Raises:
        ValueError: On an unknown denomination or a negative count.
    """
    normalized = {denomination.value: 0 for denomination in Denomination}
    for key, count in counts.items():
        try:
            denomination = Denomination(key)
        except ValueError as exc:
            raise ValueError(f"Unknown denomination: {key}") from exc
        if int(count) < 0:
            raise ValueError(f"Count must not be negative: {denomination.value}={count}")
        normalized[denomination.value] = int(count)
    return normalized


def count_cash(counts: Mapping[Union[Denomination, str], int]) -> Decimal:
    """Return the value of a till count."""

    normalized = normalize_cash_count(counts)
    total = sum((Denomination(key).face_value * count for key, count in normalized.items()), ZERO)
    return money(total)


def compute_kassensturz_for(
    initial_balance: Decimal,
    orders: Sequence[Order],
    counts: Mapping[Union[Denomination, str], int],
) -> KassensturzReport:
    """Compare counted cash against ``initial_balance`` plus cash takings."""

    cash_revenue = money(
        sum(
            (o.total for o in orders if o.payment_method is PaymentMethod.CASH and not o.is_cancelled),
            ZERO,
        )
    )
    expected = money(initial_balance + cash_revenue)
    actual = count_cash(counts)
    return KassensturzReport(
        initial_balance=money(initial_balance),
        cash_revenue=cash_revenue,
        expected=expected,
        actual=actual,
        difference=money(actual - expected),
    )


def compute_kassensturz(
    context: RuntimeContext,
    counts: Mapping[Union[Denomination, str], int],
) -> KassensturzReport:
    """Run the till audit for the active event. Nothing is written.

    Raises:
        NoActiveEventError: If no event is open.
    """
    session = get_session(context)
    require_active_event(session)
    report = compute_kassensturz_for(session.active_initial_balance, list_orders(context), counts)
    log.debug(
        "Kassensturz: expected=%s actual=%s difference=%s",
        report.expected,
        report.actual,
        report.difference,
    )
    return report


def summarize_orders(orders: Sequence[Order], tips: Sequence[Tip] = ()) -> EventSummary:
    """Aggregate revenue, payment split, free goods, volume and VAT.

    Cancelled orders only count toward ``cancelled_count``. Free-of-charge
    orders add their list value to ``free_value`` instead of revenue. The
    VAT figures are the share already contained in the gross amounts.
    """
    revenue = cash = card = free = ZERO
    volume: Dict[str, int] = {}
    gross_by_rate: Dict[int, Decimal] = {rate: ZERO for rate in sorted(set(TAX_RATES.values()), reverse=True)}
    cancelled = 0
    for order in orders:
        if order.is_cancelled:
            cancelled += 1
            continue
        if order.payment_method is PaymentMethod.FREE_OF_CHARGE:
            free += order.list_value
        else:
            revenue += order.total
            gross_by_rate[order.tax_rate] += order.total
            if order.payment_method is PaymentMethod.CASH:
                cash += order.total
            else:
                card += order.total
        for line in order.lines:
            volume[line.name] = volume.get(line.name, 0) + line.quantity

    breakdown = {
        rate: TaxShare(gross=money(gross), vat=money(gross * rate / (100 + rate)))
        for rate, gross in gross_by_rate.items()
    }
    return EventSummary(
        revenue=money(revenue),
        cash_revenue=money(cash),
        card_revenue=money(card),
        free_value=money(free),
        tips_total=money(sum((tip.amount for tip in tips), ZERO)),
        order_count=len(orders) - cancelled,
        cancelled_count=cancelled,
        product_volume=tuple(sorted(volume.items(), key=lambda item: (-item[1], item[0]))),
        tax_breakdown=breakdown,
    )


def event_report(context: RuntimeContext) -> EventSummary:
    """Summarize the active event."""

    session = get_session(context)
    require_active_event(session)
    return summarize_orders(list_orders(context), session.active_tips)


def archived_event_report(context: RuntimeContext, event_id: str) -> EventSummary:
    """Summarize an archived event."""

    event = get_archived_event(context, event_id)
    return summarize_orders(event.orders, event.tips)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a line quantity is a whole number of at least one.

    Raises:
        ValueError: If ``quantity`` is below one or not an integer.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number of at least one")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValueError: If ``amount`` is negative or not a finite number.
    """
    try:
        value = Decimal(str(amount))
    except ArithmeticError as exc:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError(f"Not a valid amount: {amount}") from exc
    if not value.is_finite() or value < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")
