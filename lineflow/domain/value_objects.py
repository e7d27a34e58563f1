"""Value objects for the domain layer.

Immutable objects defined by their attributes: item and SIM kinds,
money, catalog items as placed on a line, and the shipping address.
"""

import re
import secrets
import string
import time
from dataclasses import MISSING, dataclass, field, fields
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Self

from lineflow.domain.base import ValueObject
from lineflow.domain.exceptions import (
    InvalidIccidError,
    InvalidSimTypeError,
    ValidationError,
)


# ============================================================================
# Enumerations
# ============================================================================


class ItemType(str, Enum):
    """Kinds of item a line can hold."""

    PLAN = "plan"
    DEVICE = "device"
    PROTECTION = "protection"
    SIM = "sim"


class SimType(str, Enum):
    """SIM form factors offered by the carrier."""

    ESIM = "ESIM"
    PSIM = "PSIM"

    @classmethod
    def parse(cls, value: "str | SimType") -> "SimType":
        """Parse a SIM type, accepting any letter case.

        Args:
            value: Raw SIM type such as "esim" or "PSIM".

        Returns:
            Matching SimType.

        Raises:
            InvalidSimTypeError: If the value is not ESIM or PSIM.
        """
        if isinstance(value, SimType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InvalidSimTypeError(str(value)) from None


class FlowStep(str, Enum):
    """Steps of the guided purchase flow, in order.

    Also used as the resume step: the place to return the user to
    after an out-of-flow question such as a coverage lookup.
    """

    LINE_COUNT = "line_count"
    PLAN_SELECTION = "plan_selection"
    DEVICE_SELECTION = "device_selection"
    PROTECTION_SELECTION = "protection_selection"
    SIM_SELECTION = "sim_selection"
    CHECKOUT = "checkout"

    @classmethod
    def for_item(cls, item_type: ItemType) -> "FlowStep":
        return {
            ItemType.PLAN: cls.PLAN_SELECTION,
            ItemType.DEVICE: cls.DEVICE_SELECTION,
            ItemType.PROTECTION: cls.PROTECTION_SELECTION,
            ItemType.SIM: cls.SIM_SELECTION,
        }[item_type]


# ============================================================================
# Session Identifier
# ============================================================================


_SESSION_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    """Mint a new session identifier.

    Returns:
        Identifier of the form ``session_<epoch-ms>_<9 chars>``.
    """
    suffix = "".join(secrets.choice(_SESSION_SUFFIX_ALPHABET) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


# ============================================================================
# Money
# ============================================================================


@dataclass(frozen=True)
class Money(ValueObject):
    """Monetary amount stored in cents.

    Attributes:
        amount_cents: Amount in cents.
        currency: ISO 4217 currency code.
    """

    amount_cents: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        if self.amount_cents < 0:
            raise ValidationError(
                f"Money amount cannot be negative: {self.amount_cents}",
                details={"amount_cents": self.amount_cents},
            )
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = "USD") -> Self:
        return cls(amount_cents=0, currency=currency)

    @classmethod
    def from_amount(cls, amount: Any, currency: str = "USD") -> Self:
        """Build money from a dollar amount as the carrier reports it.

        Carrier payloads carry prices as numbers, numeric strings or
        nothing at all. Anything unparseable counts as zero.

        Args:
            amount: Amount in major units (dollars).
            currency: Currency code.

        Returns:
            Money instance.
        """
        if amount is None or isinstance(amount, bool):
            return cls.zero(currency)
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            return cls.zero(currency)
        if not value.is_finite() or value < 0:
            return cls.zero(currency)
        cents = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return cls(amount_cents=cents, currency=currency)

    def to_decimal(self) -> Decimal:
        """Amount in major units."""
        return Decimal(self.amount_cents) / 100

    def __add__(self, other: "Money") -> "Money":
        if self.currency != other.currency:
            raise ValidationError(
                f"Cannot add {other.currency} to {self.currency}",
                details={"currencies": [self.currency, other.currency]},
            )
        return Money(self.amount_cents + other.amount_cents, self.currency)

    def __str__(self) -> str:
        return f"${self.to_decimal():.2f}"


# ============================================================================
# Catalog Items
# ============================================================================


@dataclass(frozen=True)
class CatalogItem(ValueObject):
    """A priced catalog entry as placed on a cart line.

    Attributes:
        item_type: Plan, device, protection or SIM.
        id: Carrier identifier of the item.
        name: Display name.
        price: Price (monthly for plans, one-off otherwise).
        details: Extra carrier attributes kept for rendering.
    """

    item_type: ItemType
    id: str
    name: str
    price: Money = field(default_factory=Money.zero)
    details: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.item_type.value,
            "id": self.id,
            "name": self.name,
            "price": float(self.price.to_decimal()),
            "price_cents": self.price.amount_cents,
            **({"details": self.details} if self.details else {}),
        }


def sim_catalog_item(sim_type: SimType) -> CatalogItem:
    """Cart entry for a SIM of the given type. SIMs are free."""
    names = {SimType.ESIM: "eSIM", SimType.PSIM: "Physical SIM"}
    return CatalogItem(item_type=ItemType.SIM, id=sim_type.value, name=names[sim_type])


# ============================================================================
# Protection Pricing
# ============================================================================


# (max device price in cents, monthly protection price in cents)
PROTECTION_TIERS: list[tuple[int, int]] = [
    (400_00, 5_00),
    (800_00, 9_00),
]
PROTECTION_TOP_TIER_CENTS = 11_00
PROTECTION_ITEM_ID = "device-protection"
PROTECTION_COVERAGE = [
    "Cracked screen repair",
    "Battery replacement",
    "Post-warranty malfunctions",
]


def protection_price_for(device_price: Money | None) -> Money:
    """Protection price for a device price.

    Up to $400 costs $5, up to $800 costs $9, anything above costs $11.
    A missing or zero device price falls into the lowest tier.
    """
    if device_price is None or device_price.amount_cents <= 0:
        return Money(PROTECTION_TIERS[0][1])
    for ceiling, price in PROTECTION_TIERS:
        if device_price.amount_cents <= ceiling:
            return Money(price)
    return Money(PROTECTION_TOP_TIER_CENTS)


def protection_for_device(device: CatalogItem | None) -> CatalogItem:
    """Protection offer for the device on a line."""
    return CatalogItem(
        item_type=ItemType.PROTECTION,
        id=PROTECTION_ITEM_ID,
        name="Device Protection",
        price=protection_price_for(device.price if device else None),
        details={
            "coverage": PROTECTION_COVERAGE,
            "device_id": device.id if device else None,
        },
    )


# ============================================================================
# Identifiers on the wire
# ============================================================================


_NON_DIGITS = re.compile(r"[\s\-]")


def normalize_iccid(iccid: str) -> str:
    """Strip separators from an ICCID and validate its length.

    Args:
        iccid: ICCID as typed by the user, possibly with spaces or dashes.

    Returns:
        The digits only.

    Raises:
        InvalidIccidError: If the result is not 19 or 20 digits.
    """
    cleaned = _NON_DIGITS.sub("", iccid or "")
    if not cleaned.isdigit() or not 19 <= len(cleaned) <= 20:
        raise InvalidIccidError(iccid)
    return cleaned


def normalize_imei(imei: str) -> str:
    """Strip separators from an IMEI and check it has 15 digits.

    Raises:
        ValidationError: If the IMEI is malformed.
    """
    cleaned = _NON_DIGITS.sub("", imei or "")
    if not cleaned.isdigit() or len(cleaned) != 15:
        raise ValidationError(
            "Invalid IMEI. It must contain exactly 15 digits.",
            details={"imei": imei},
        )
    return cleaned


# ============================================================================
# Shipping Address
# ============================================================================


_US_ZIP = re.compile(r"^\d{5}(-\d{4})?$")


@dataclass(frozen=True)
class ShippingAddress(ValueObject):
    """Where the SIM kits and devices are shipped.

    Attributes:
        first_name: Recipient first name.
        last_name: Recipient last name.
        street: Street line.
        city: City name.
        state: State or province code.
        zip_code: Postal code.
        country: ISO country code.
        phone: Optional contact phone.
        email: Optional contact email.
    """

    first_name: str
    last_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "US"
    phone: str | None = None
    email: str | None = None

    def __post_init__(self) -> None:
        required = {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
        }
        missing = [name for name, value in required.items() if not (value or "").strip()]
        if missing:
            raise ValidationError(
                f"Shipping address is missing: {', '.join(missing)}",
                details={"missing_fields": missing},
            )
        object.__setattr__(self, "country", self.country.upper())
        if self.country == "US" and not _US_ZIP.match(self.zip_code.strip()):
            raise ValidationError(
                f"Invalid US zip code '{self.zip_code}'.",
                details={"zip_code": self.zip_code},
            )
        if self.email and "@" not in self.email:
            raise ValidationError(
                f"Invalid email address '{self.email}'.",
                details={"email": self.email},
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Build an address from loosely-typed caller input.

        Raises:
            ValidationError: On unknown fields or missing required ones.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(
                f"Unknown shipping address fields: {', '.join(unknown)}",
                details={"unknown_fields": unknown},
            )
        values = {name: str(value).strip() for name, value in data.items() if value is not None}
        for f in fields(cls):
            if f.name not in values and f.default is MISSING:
                values[f.name] = ""
        return cls(**values)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "country": self.country,
            "phone": self.phone,
            "email": self.email,
        }
