"""Data access layer for Standkasse.

This module provides the low-level helpers that read from and write to the
persisted store. Ledger rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record mapping: typed, immutable records and their JSON document form.
3. Key-value persistence: the narrow :class:`KeyValueStore` contract and its
   in-memory and ``openpyxl`` workbook backends.

Every store write replaces the *entire* value stored under a logical key.
There is no transactional isolation: two processes pointed at the same
workbook can overwrite each other's updates. The engine is designed for a
single device and accepts this limitation.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence, Union

from openpyxl.workbook import Workbook
from openpyxl.styles import Font
import openpyxl

from . import log
from .constants import (
    DEFAULT_ARCHIVE_YEAR,
    DEFAULT_PASSCODE,
    CancelReason,
    PaymentMethod,
    StoreKey,
    TaxType,
)


CONFIG_FILE_NAME = "config.ini"
STORE_SHEET_COLUMNS: Sequence[str] = ("Seq", "Part", "Kind", "Chunk")
# Excel refuses cell values longer than this many characters.
EXCEL_CELL_LIMIT = 32_767
CENT = Decimal("0.01")


class PersistenceError(RuntimeError):
    """Raised when the backing store cannot persist a value."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    stall_name: str
    schema_version: str
    default_passcode: str = DEFAULT_PASSCODE
    archive_year: str = DEFAULT_ARCHIVE_YEAR


@dataclass(frozen=True)
class Product:
    """Sellable catalog entry."""

    product_id: str
    name: str
    unit_price: Decimal
    category: str
    display_color: str = "#e5e7eb"


@dataclass(frozen=True)
class CartLine:
    """One line of a cart, copied by value into the order at checkout."""

    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    original_price: Optional[Decimal] = None
    is_overridden: bool = False

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class OrderActive:
    """Status of an order that still counts toward revenue and stock."""


@dataclass(frozen=True)
class OrderCancelled:
    """Status of a cancelled (Storno) order; reason and time are mandatory."""

    reason_code: CancelReason
    reason: str
    timestamp_iso: str


OrderStatus = Union[OrderActive, OrderCancelled]


@dataclass(frozen=True)
class Order:
    """Finalized order. Only its status may change after creation."""

    order_id: str
    order_number: int
    timestamp_iso: str
    lines: tuple[CartLine, ...]
    total: Decimal
    payment_method: PaymentMethod
    event_name: str
    tax_type: TaxType
    status: OrderStatus = field(default_factory=OrderActive)

    @property
    def tax_rate(self) -> int:
        return self.tax_type.rate

    @property
    def is_cancelled(self) -> bool:
        return isinstance(self.status, OrderCancelled)

    @property
    def list_value(self) -> Decimal:
        """Value of the lines at their charged prices, regardless of payment."""
        return money(sum((line.line_total for line in self.lines), Decimal("0")))


@dataclass(frozen=True)
class Tip:
    """Gratuity entry of the active event."""

    tip_id: str
    amount: Decimal
    timestamp_iso: str
    event_name: str


@dataclass(frozen=True)
class InventoryItem:
    """Running stock counter of one tracked product."""

    start: int
    current: int


@dataclass(frozen=True)
class InventoryRefill:
    """Logged addition of stock after the starting count was set."""

    timestamp_iso: str
    items: Mapping[str, int]


@dataclass(frozen=True)
class SessionSettings:
    """The event session singleton as persisted under ``settings``."""

    active_event_name: Optional[str] = None
    active_event_start: Optional[str] = None
    active_initial_balance: Decimal = Decimal("0.00")
    next_order_number: int = 1
    passcode: str = DEFAULT_PASSCODE
    event_sequence: int = 1
    active_inventory: Mapping[str, InventoryItem] = field(default_factory=dict)
    active_refills: tuple[InventoryRefill, ...] = ()
    active_tips: tuple[Tip, ...] = ()

    @property
    def is_event_active(self) -> bool:
        return self.active_event_name is not None


@dataclass(frozen=True)
class ArchivedEvent:
    """Immutable snapshot of a closed event."""

    event_id: str
    name: str
    start_date: str
    end_date: str
    closed_at: str
    initial_balance: Decimal
    total_revenue: Decimal
    orders: tuple[Order, ...] = ()
    tips: tuple[Tip, ...] = ()
    inventory: Mapping[str, InventoryItem] = field(default_factory=dict)
    refills: tuple[InventoryRefill, ...] = ()
    cash_count: Optional[Mapping[str, int]] = None
    final_difference: Optional[Decimal] = None


def money(value: Union[Decimal, int, str, float]) -> Decimal:
    """Quantize ``value`` to the two-decimal currency precision.

    Raises:
        ValueError: If ``value`` is not a number or exceeds the precision.
    """

    try:
        return Decimal(str(value)).quantize(CENT)
    except ArithmeticError as exc:
        raise ValueError(f"Not a valid amount: {value}") from exc


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``. The first match that exists on disk wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries fall back to
    the package defaults. Relative ``DataFile`` entries are anchored at
    ``base_path`` (or the working directory) and resolved.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        stall_name = parser.get("System", "StallName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_passcode = parser.get("Defaults", "Passcode", fallback=DEFAULT_PASSCODE)
    archive_year = parser.get("Defaults", "ArchiveYear", fallback=DEFAULT_ARCHIVE_YEAR)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        stall_name=stall_name,
        schema_version=schema_version,
        default_passcode=default_passcode,
        archive_year=archive_year,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def ensure_store_sheet(workbook: Workbook, key: str):
    """Return the worksheet for ``key``, creating it with headers if needed."""

    if key in workbook.sheetnames:
        return workbook[key]
    sheet = workbook.create_sheet(title=key)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(STORE_SHEET_COLUMNS, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return sheet


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------


class KeyValueStore(Protocol):
    """Synchronous get/set/list contract the ledger engine relies on."""

    def load(self, key: str) -> Optional[Any]:
        """Return the JSON-compatible value stored under ``key`` or ``None``."""

    def save(self, key: str, value: Any) -> None:
        """Replace the value stored under ``key``."""

    def keys(self) -> list[str]:
        """List the keys currently holding a value."""


class MemoryStore:
    """Process-local store keeping JSON text per key.

    Values are encoded on save and decoded on load so callers never share
    mutable structures with the store, mirroring a browser-style local store.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.save(key, value)

    def load(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Value for '{key}' is not serializable: {exc}") from exc

    def keys(self) -> list[str]:
        return list(self._data)


class WorkbookStore:
    """Store backed by an ``.xlsx`` workbook, one worksheet per logical key.

    Lists are written one element per row, other values as a single row.
    Documents longer than :data:`EXCEL_CELL_LIMIT` are split into consecutive
    ``Part`` rows sharing a ``Seq``. The workbook is written to disk after
    every :meth:`save`; when that fails the sheet is restored to its previous
    rows so memory and disk stay aligned.
    """

    def __init__(self, data_file: Path, workbook: Optional[Workbook] = None) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self.workbook = workbook if workbook is not None else open_workbook(self.data_file)

    def load(self, key: str) -> Optional[Any]:
        if key not in self.workbook.sheetnames:
            return None
        rows = list(iter_store_rows(self.workbook[key]))
        if not rows:
            return None
        return decode_rows(rows)

    def save(self, key: str, value: Any) -> None:
        sheet = ensure_store_sheet(self.workbook, key)
        previous = list(iter_store_rows(sheet))
        try:
            replace_store_rows(sheet, encode_rows(value))
        except (TypeError, ValueError) as exc:
            replace_store_rows(sheet, previous)
            raise PersistenceError(f"Value for '{key}' is not serializable: {exc}") from exc
        try:
            save_workbook(self.workbook, self.data_file)
        except OSError as exc:
            log.error("Failed to write key '%s' to '%s': %s", key, self.data_file, exc)
            replace_store_rows(sheet, previous)
            raise PersistenceError(f"Unable to write '{key}' to {self.data_file}: {exc}") from exc
        log.debug("Wrote key '%s' to '%s'", key, self.data_file)

    def keys(self) -> list[str]:
        return [name for name in self.workbook.sheetnames if list(iter_store_rows(self.workbook[name]))]


def iter_store_rows(sheet) -> Iterable[tuple[int, int, str, str]]:
    """Yield ``(seq, part, kind, chunk)`` tuples, skipping header and blank rows."""

    for raw in sheet.iter_rows(min_row=2, max_col=len(STORE_SHEET_COLUMNS), values_only=True):
        if all(cell is None for cell in raw):
            continue
        seq, part, kind, chunk = raw
        yield int(seq), int(part), str(kind), "" if chunk is None else str(chunk)


def replace_store_rows(sheet, rows: Sequence[tuple[int, int, str, str]]) -> None:
    """Drop every data row of ``sheet`` and append ``rows`` in order."""

    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row in rows:
        sheet.append(list(row))


def encode_rows(value: Any) -> list[tuple[int, int, str, str]]:
    """Encode a JSON-compatible value into worksheet rows."""

    if isinstance(value, list):
        if not value:
            # An empty list must stay distinguishable from an absent key.
            return [(0, 0, "empty", "")]
        documents = [("item", item) for item in value]
    else:
        documents = [("value", value)]

    rows: list[tuple[int, int, str, str]] = []
    for seq, (kind, document) in enumerate(documents):
        text = json.dumps(document, ensure_ascii=False)
        chunks = [text[i:i + EXCEL_CELL_LIMIT] for i in range(0, len(text), EXCEL_CELL_LIMIT)] or [""]
        for part, chunk in enumerate(chunks):
            rows.append((seq, part, kind, chunk))
    return rows


def decode_rows(rows: Sequence[tuple[int, int, str, str]]) -> Any:
    """Rebuild the value written by :func:`encode_rows`."""

    if any(kind == "empty" for _, _, kind, _ in rows):
        return []

    documents: dict[int, list[tuple[int, str]]] = {}
    kinds: dict[int, str] = {}
    for seq, part, kind, chunk in rows:
        documents.setdefault(seq, []).append((part, chunk))
        kinds[seq] = kind

    decoded = []
    for seq in sorted(documents):
        text = "".join(chunk for _, chunk in sorted(documents[seq]))
        decoded.append(json.loads(text))

    if len(decoded) == 1 and kinds[min(kinds)] == "value":
        return decoded[0]
    return decoded


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _money_text(value: Decimal) -> str:
    return str(money(value))


def _optional_money(raw: Any) -> Optional[Decimal]:
    return money(raw) if raw is not None else None


def serialize_product(record: Product) -> dict[str, Any]:
    return {
        "id": record.product_id,
        "name": record.name,
        "unitPrice": _money_text(record.unit_price),
        "category": record.category,
        "displayColor": record.display_color,
    }


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    return Product(
        product_id=str(raw["id"]),
        name=str(raw["name"]),
        unit_price=money(raw.get("unitPrice", "0")),
        category=str(raw.get("category", "")),
        display_color=str(raw.get("displayColor", "#e5e7eb")),
    )


def serialize_cart_line(record: CartLine) -> dict[str, Any]:
    return {
        "productId": record.product_id,
        "name": record.name,
        "unitPrice": _money_text(record.unit_price),
        "quantity": record.quantity,
        "originalPrice": _money_text(record.original_price) if record.original_price is not None else None,
        "isOverridden": record.is_overridden,
    }


def deserialize_cart_line(raw: Mapping[str, Any]) -> CartLine:
    return CartLine(
        product_id=str(raw["productId"]),
        name=str(raw["name"]),
        unit_price=money(raw["unitPrice"]),
        quantity=int(raw["quantity"]),
        original_price=_optional_money(raw.get("originalPrice")),
        is_overridden=bool(raw.get("isOverridden", False)),
    )


def serialize_order(record: Order) -> dict[str, Any]:
    """Convert an order into its stored document.

    The tagged status is flattened into ``cancelled`` plus the cancellation
    fields, which are only present for cancelled orders.
    """

    document: dict[str, Any] = {
        "id": record.order_id,
        "orderNumber": record.order_number,
        "timestamp": record.timestamp_iso,
        "lines": [serialize_cart_line(line) for line in record.lines],
        "total": _money_text(record.total),
        "paymentMethod": record.payment_method.value,
        "eventName": record.event_name,
        "taxType": record.tax_type.value,
        "taxRate": record.tax_rate,
        "cancelled": record.is_cancelled,
    }
    if isinstance(record.status, OrderCancelled):
        document["cancelReasonCode"] = record.status.reason_code.value
        document["cancelReason"] = record.status.reason
        document["cancelTimestamp"] = record.status.timestamp_iso
    return document


def deserialize_order(raw: Mapping[str, Any]) -> Order:
    status: OrderStatus = OrderActive()
    if raw.get("cancelled"):
        reason = str(raw.get("cancelReason") or "")
        code_raw = raw.get("cancelReasonCode")
        try:
            reason_code = CancelReason(code_raw if code_raw is not None else reason)
        except ValueError:
            reason_code = CancelReason.OTHER
        status = OrderCancelled(
            reason_code=reason_code,
            reason=reason,
            timestamp_iso=str(raw.get("cancelTimestamp") or ""),
        )
    return Order(
        order_id=str(raw["id"]),
        order_number=int(raw["orderNumber"]),
        timestamp_iso=str(raw["timestamp"]),
        lines=tuple(deserialize_cart_line(line) for line in raw.get("lines", [])),
        total=money(raw["total"]),
        payment_method=PaymentMethod(raw["paymentMethod"]),
        event_name=str(raw.get("eventName", "")),
        tax_type=TaxType(raw.get("taxType", TaxType.ONSITE.value)),
        status=status,
    )


def serialize_tip(record: Tip) -> dict[str, Any]:
    return {
        "id": record.tip_id,
        "amount": _money_text(record.amount),
        "timestamp": record.timestamp_iso,
        "eventName": record.event_name,
    }


def deserialize_tip(raw: Mapping[str, Any]) -> Tip:
    return Tip(
        tip_id=str(raw["id"]),
        amount=money(raw["amount"]),
        timestamp_iso=str(raw["timestamp"]),
        event_name=str(raw.get("eventName", "")),
    )


def serialize_inventory(inventory: Mapping[str, InventoryItem]) -> dict[str, dict[str, int]]:
    return {product_id: {"start": item.start, "current": item.current} for product_id, item in inventory.items()}


def deserialize_inventory(raw: Optional[Mapping[str, Any]]) -> dict[str, InventoryItem]:
    return {
        str(product_id): InventoryItem(start=int(item["start"]), current=int(item["current"]))
        for product_id, item in (raw or {}).items()
    }


def serialize_refill(record: InventoryRefill) -> dict[str, Any]:
    return {"timestamp": record.timestamp_iso, "items": dict(record.items)}


def deserialize_refill(raw: Mapping[str, Any]) -> InventoryRefill:
    return InventoryRefill(
        timestamp_iso=str(raw["timestamp"]),
        items={str(product_id): int(amount) for product_id, amount in raw.get("items", {}).items()},
    )


def serialize_session(record: SessionSettings) -> dict[str, Any]:
    return {
        "activeEventName": record.active_event_name,
        "activeEventStart": record.active_event_start,
        "activeInitialBalance": _money_text(record.active_initial_balance),
        "nextOrderNumber": record.next_order_number,
        "passcode": record.passcode,
        "eventSequence": record.event_sequence,
        "activeInventory": serialize_inventory(record.active_inventory),
        "activeRefills": [serialize_refill(refill) for refill in record.active_refills],
        "activeTips": [serialize_tip(tip) for tip in record.active_tips],
    }


def deserialize_session(raw: Mapping[str, Any], *, default_passcode: str = DEFAULT_PASSCODE) -> SessionSettings:
    return SessionSettings(
        active_event_name=raw.get("activeEventName"),
        active_event_start=raw.get("activeEventStart"),
        active_initial_balance=money(raw.get("activeInitialBalance") or "0"),
        next_order_number=int(raw.get("nextOrderNumber", 1)),
        passcode=str(raw.get("passcode", default_passcode)),
        event_sequence=int(raw.get("eventSequence", 1)),
        active_inventory=deserialize_inventory(raw.get("activeInventory")),
        active_refills=tuple(deserialize_refill(item) for item in raw.get("activeRefills") or []),
        active_tips=tuple(deserialize_tip(item) for item in raw.get("activeTips") or []),
    )


def serialize_archived_event(record: ArchivedEvent) -> dict[str, Any]:
    return {
        "id": record.event_id,
        "name": record.name,
        "startDate": record.start_date,
        "endDate": record.end_date,
        "closedAt": record.closed_at,
        "initialBalance": _money_text(record.initial_balance),
        "totalRevenue": _money_text(record.total_revenue),
        "orders": [serialize_order(order) for order in record.orders],
        "tips": [serialize_tip(tip) for tip in record.tips],
        "inventory": serialize_inventory(record.inventory),
        "refills": [serialize_refill(refill) for refill in record.refills],
        "cashCount": dict(record.cash_count) if record.cash_count is not None else None,
        "finalDifference": _money_text(record.final_difference) if record.final_difference is not None else None,
    }


def deserialize_archived_event(raw: Mapping[str, Any]) -> ArchivedEvent:
    cash_count = raw.get("cashCount")
    return ArchivedEvent(
        event_id=str(raw["id"]),
        name=str(raw["name"]),
        start_date=str(raw["startDate"]),
        end_date=str(raw["endDate"]),
        closed_at=str(raw.get("closedAt") or raw["endDate"]),
        initial_balance=money(raw.get("initialBalance") or "0"),
        total_revenue=money(raw.get("totalRevenue") or "0"),
        orders=tuple(deserialize_order(item) for item in raw.get("orders") or []),
        tips=tuple(deserialize_tip(item) for item in raw.get("tips") or []),
        inventory=deserialize_inventory(raw.get("inventory")),
        refills=tuple(deserialize_refill(item) for item in raw.get("refills") or []),
        cash_count={str(k): int(v) for k, v in cash_count.items()} if cash_count is not None else None,
        final_difference=_optional_money(raw.get("finalDifference")),
    )


# ---------------------------------------------------------------------------
# Typed key access
# ---------------------------------------------------------------------------


def load_products(store: KeyValueStore, *, seed: Sequence[Mapping[str, Any]] = ()) -> list[Product]:
    """Return the stored catalog, falling back to ``seed`` when absent."""

    raw = store.load(StoreKey.PRODUCTS.value)
    source = raw if raw is not None else list(seed)
    return [deserialize_product(item) for item in source]


def save_products(store: KeyValueStore, products: Iterable[Product]) -> None:
    store.save(StoreKey.PRODUCTS.value, [serialize_product(item) for item in products])


def load_orders(store: KeyValueStore) -> list[Order]:
    raw = store.load(StoreKey.ORDERS.value)
    return [deserialize_order(item) for item in raw or []]


def save_orders(store: KeyValueStore, orders: Iterable[Order]) -> None:
    store.save(StoreKey.ORDERS.value, [serialize_order(item) for item in orders])


def load_session(store: KeyValueStore, *, default_passcode: str = DEFAULT_PASSCODE) -> SessionSettings:
    """Return the stored session, or a fresh one with ``default_passcode``."""

    raw = store.load(StoreKey.SETTINGS.value)
    if raw is None:
        return SessionSettings(passcode=default_passcode)
    return deserialize_session(raw, default_passcode=default_passcode)


def save_session(store: KeyValueStore, session: SessionSettings) -> None:
    store.save(StoreKey.SETTINGS.value, serialize_session(session))


def load_archive(store: KeyValueStore) -> list[ArchivedEvent]:
    raw = store.load(StoreKey.ARCHIVE.value)
    return [deserialize_archived_event(item) for item in raw or []]


def save_archive(store: KeyValueStore, archive: Iterable[ArchivedEvent]) -> None:
    store.save(StoreKey.ARCHIVE.value, [serialize_archived_event(item) for item in archive])
