"""Enumerations and fixed value sets shared across the Standkasse modules.

Centralises domain constants so that the data access layer (DAL), the ledger
engine, the checkout flows, and the CLI rely on a single source of truth for
identifiers that end up in the persisted store.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_PASSCODE = "1234"
DEFAULT_ARCHIVE_YEAR = "2026"
MAX_CANCEL_NOTE_LENGTH = 100
# Seconds the wrong-passcode signal stays visible. Cosmetic only.
PASSCODE_ERROR_FLASH_SECONDS = 0.5


class StoreKey(str, Enum):
    """Enumerate the logical keys of the persisted key-value store."""

    PRODUCTS = "products"
    ORDERS = "orders"
    SETTINGS = "settings"
    ARCHIVE = "archive"


class PaymentMethod(str, Enum):
    """Enumerate how an order was settled."""

    CASH = "Cash"
    CARD = "Card"
    FREE_OF_CHARGE = "FreeOfCharge"


class TaxType(str, Enum):
    """Enumerate the consumption modes that decide the informational VAT rate."""

    ONSITE = "onsite"
    TAKEAWAY = "takeaway"

    @property
    def rate(self) -> int:
        return TAX_RATES[self]


TAX_RATES: dict[TaxType, int] = {
    TaxType.ONSITE: 19,
    TaxType.TAKEAWAY: 7,
}


class CancelReason(str, Enum):
    """Enumerate the reason codes accepted for a Storno."""

    MISBOOKING = "Misbooking"
    COMPLAINT = "Complaint"
    RETURN = "Return"
    BREAKAGE = "Breakage"
    OTHER = "Other"


class AuthMode(str, Enum):
    """Enumerate the operations guarded by the shared passcode."""

    PRICE_OVERRIDE = "price_override"
    FREE_OF_CHARGE = "free_of_charge"
    CANCEL_ORDER = "cancel_order"
    RESET_HISTORY = "reset_history"


class SetupStep(str, Enum):
    """Enumerate the states of the event setup state machine."""

    NO_EVENT = "NoEvent"
    SETTING_NAME = "SettingName"
    SETTING_BALANCE = "SettingBalance"
    ACTIVE = "Active"


class CheckoutStep(str, Enum):
    """Enumerate the steps of the checkout protocol."""

    IDLE = "Idle"
    TAX_TYPE = "TaxType"
    CHANGE = "Change"


class Denomination(str, Enum):
    """Enumerate the notes and coins counted during a Kassensturz."""

    NOTE_100 = "100_note"
    NOTE_50 = "50_note"
    NOTE_20 = "20_note"
    NOTE_10 = "10_note"
    NOTE_5 = "5_note"
    COIN_2 = "2_coin"
    COIN_1 = "1_coin"
    CENT_50 = "50_cent"
    CENT_20 = "20_cent"
    CENT_10 = "10_cent"
    CENT_5 = "5_cent"

    @property
    def face_value(self) -> Decimal:
        return DENOMINATION_VALUES[self]


DENOMINATION_VALUES: dict[Denomination, Decimal] = {
    Denomination.NOTE_100: Decimal("100.00"),
    Denomination.NOTE_50: Decimal("50.00"),
    Denomination.NOTE_20: Decimal("20.00"),
    Denomination.NOTE_10: Decimal("10.00"),
    Denomination.NOTE_5: Decimal("5.00"),
    Denomination.COIN_2: Decimal("2.00"),
    Denomination.COIN_1: Decimal("1.00"),
    Denomination.CENT_50: Decimal("0.50"),
    Denomination.CENT_20: Decimal("0.20"),
    Denomination.CENT_10: Decimal("0.10"),
    Denomination.CENT_5: Decimal("0.05"),
}

# Taps available in the cash change calculator.
TENDER_DENOMINATIONS: tuple[Decimal, ...] = (
    Decimal("50.00"),
    Decimal("20.00"),
    Decimal("10.00"),
    Decimal("5.00"),
    Decimal("2.00"),
    Decimal("1.00"),
    Decimal("0.50"),
)

TIP_QUICK_PICKS: tuple[Decimal, ...] = (
    Decimal("0.50"),
    Decimal("1.00"),
    Decimal("2.00"),
    Decimal("5.00"),
)

# Catalog used whenever the store holds no products yet.
SEED_CATALOG: tuple[dict[str, str], ...] = (
    {"id": "s1", "name": "Elsässer", "unitPrice": "10.00", "category": "Flammkuchen", "displayColor": "#fecaca"},
    {"id": "s2", "name": "Griechisch", "unitPrice": "10.00", "category": "Flammkuchen", "displayColor": "#e5e7eb"},
    {"id": "s3", "name": "Lachs", "unitPrice": "11.00", "category": "Flammkuchen", "displayColor": "#fef3c7"},
    {"id": "s4", "name": "Vegan", "unitPrice": "12.00", "category": "Flammkuchen", "displayColor": "#d1fae5"},
    {"id": "s5", "name": "Süß", "unitPrice": "10.00", "category": "Flammkuchen", "displayColor": "#fce7f3"},
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_PASSCODE",
    "DEFAULT_ARCHIVE_YEAR",
    "MAX_CANCEL_NOTE_LENGTH",
    "PASSCODE_ERROR_FLASH_SECONDS",
    "StoreKey",
    "PaymentMethod",
    "TaxType",
    "TAX_RATES",
    "CancelReason",
    "AuthMode",
    "SetupStep",
    "CheckoutStep",
    "Denomination",
    "DENOMINATION_VALUES",
    "TENDER_DENOMINATIONS",
    "TIP_QUICK_PICKS",
    "SEED_CATALOG",
]
