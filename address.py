"""
Address Module
==============
Shipping address selection and validation.

Two modes: a saved address picked from the shopper's address book, or a
manually entered form. Picking a saved address pre-fills the same form
shape, so everything downstream reads one ShippingAddress.

Phone is required only for manual entry. Saved legacy addresses may lack
one and still pass. A phone that is present is format-checked in both
modes.
"""

import re
import logging
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field, fields, replace, asdict
from enum import Enum


logger = logging.getLogger(__name__)


PHONE_PATTERN = re.compile(r"^[\d\s\-+()]{8,20}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# (field, label, minimum length)
REQUIRED_FIELDS = (
    ("full_name", "Full Name", 2),
    ("street_address", "Street Address", 5),
    ("city", "City", 2),
    ("state_province", "State/Province", 2),
    ("postal_code", "Postal Code", 3),
    ("country", "Country", 1),
)


class AddressMode(Enum):
    SAVED = "saved"
    MANUAL = "manual"


# ============================================================================
# MODELS
# ============================================================================

@dataclass(frozen=True)
class Address:
    """A customer_addresses row."""
    id: str
    owner_ref: str
    full_name: str
    line1: str
    city: str
    region: str
    postal_code: str
    country: str
    line2: Optional[str] = None
    phone: Optional[str] = None
    is_default: bool = False
    label: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Address":
        return cls(
            id=str(row["id"]),
            owner_ref=str(row.get("user_id", "")),
            full_name=row.get("full_name") or "",
            line1=row.get("address_line1") or "",
            line2=row.get("address_line2") or None,
            city=row.get("city") or "",
            region=row.get("state") or "",
            postal_code=row.get("postal_code") or "",
            country=row.get("country") or "",
            phone=row.get("phone") or None,
            is_default=bool(row.get("is_default")),
            label=row.get("label")
        )


@dataclass
class ShippingAddress:
    """The form shape every address ends up in."""
    full_name: str = ""
    street_address: str = ""
    address_line2: str = ""
    city: str = ""
    state_province: str = ""
    postal_code: str = ""
    country: str = ""
    phone_number: str = ""

    @classmethod
    def from_address(cls, address: Address) -> "ShippingAddress":
        return cls(
            full_name=address.full_name,
            street_address=address.line1,
            address_line2=address.line2 or "",
            city=address.city,
            state_province=address.region,
            postal_code=address.postal_code,
            country=address.country,
            phone_number=address.phone or ""
        )

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def to_snapshot(self) -> Dict[str, str]:
        """Stripped copy stored on the order."""
        return {
            "fullName": self.full_name.strip(),
            "streetAddress": self.street_address.strip(),
            "addressLine2": self.address_line2.strip(),
            "city": self.city.strip(),
            "stateProvince": self.state_province.strip(),
            "postalCode": self.postal_code.strip(),
            "country": self.country.strip(),
            "phoneNumber": self.phone_number.strip(),
        }

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class AddressValidation:
    valid: bool
    missing: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        """Single user-facing line, or None when valid."""
        if self.missing:
            return f"Missing required fields: {', '.join(self.missing)}"
        if self.errors:
            return self.errors[0]
        return None


# ============================================================================
# VALIDATION
# ============================================================================

def validate_shipping_address(address: ShippingAddress, require_phone: bool) -> AddressValidation:
    """
    Field-level validation.

    Args:
        address: Form to check
        require_phone: True in manual mode

    Returns:
        AddressValidation listing missing fields and format errors
    """
    missing: List[str] = []
    errors: List[str] = []

    for name, label, minimum in REQUIRED_FIELDS:
        value = (getattr(address, name) or "").strip()
        if not value:
            missing.append(label)
        elif len(value) < minimum:
            errors.append(f"{label} must be at least {minimum} characters")

    phone = (address.phone_number or "").strip()
    if require_phone and not phone:
        missing.append("Phone Number")
    elif phone and not PHONE_PATTERN.match(phone):
        errors.append("Phone Number must be 8-20 digits (spaces, dashes, parentheses allowed)")

    return AddressValidation(
        valid=not missing and not errors,
        missing=missing,
        errors=errors
    )


def validate_email(email: Optional[str]) -> bool:
    if not email or not email.strip():
        return False
    return bool(EMAIL_PATTERN.match(email.strip()))


# ============================================================================
# ADDRESS MANAGER
# ============================================================================

class AddressManager:
    """
    Tracks the active address mode and form for one checkout.

    Shoppers without saved addresses (guests included) start in manual mode.
    """

    def __init__(self, saved: Optional[List[Address]] = None):
        self.saved: List[Address] = list(saved or [])
        self.mode = AddressMode.MANUAL
        self.selected_id: Optional[str] = None
        self.form = ShippingAddress()
        self._select_default()

    @property
    def require_phone(self) -> bool:
        return self.mode == AddressMode.MANUAL or self.selected_id is None

    @property
    def selected(self) -> Optional[Address]:
        for address in self.saved:
            if address.id == self.selected_id:
                return address
        return None

    def select_saved(self, address_id: str) -> ShippingAddress:
        """
        Select a saved address and pre-fill the form from it.

        Raises:
            KeyError: Unknown address id
        """
        for address in self.saved:
            if address.id == address_id:
                self.mode = AddressMode.SAVED
                self.selected_id = address.id
                self.form = ShippingAddress.from_address(address)
                logger.debug(f"Selected saved address {address_id}")
                return self.form
        raise KeyError(address_id)

    def use_manual_entry(self, form: Optional[ShippingAddress] = None) -> ShippingAddress:
        """Switch to manual entry, optionally with a filled form."""
        self.mode = AddressMode.MANUAL
        self.selected_id = None
        self.form = replace(form) if form else ShippingAddress()
        return self.form

    def update_field(self, name: str, value: str):
        """
        Edit one form field. Editing a saved address turns it into manual
        entry.
        """
        if name not in ShippingAddress.field_names():
            raise KeyError(name)
        setattr(self.form, name, value)
        if self.mode == AddressMode.SAVED:
            self.mode = AddressMode.MANUAL
            self.selected_id = None

    def validate(self) -> AddressValidation:
        return validate_shipping_address(self.form, self.require_phone)

    async def load_saved(self, db, user_id: str) -> List[Address]:
        """Fetch the shopper's saved addresses and select the default."""
        rows = await db.fetch_addresses(user_id)
        self.replace_saved([Address.from_row(row) for row in rows])
        return self.saved

    def replace_saved(self, addresses: List[Address]):
        """
        Swap in a fresh address list.

        A selection that still exists is re-applied (picking up edits). A
        removed selection falls back to the default, or to manual entry.
        """
        self.saved = list(addresses)

        if self.mode == AddressMode.SAVED and self.selected_id:
            if self.selected is not None:
                self.select_saved(self.selected_id)
                return
            logger.info(f"Selected address {self.selected_id} was removed")
            self.mode = AddressMode.MANUAL
            self.selected_id = None
            self.form = ShippingAddress()
            self._select_default()
            return

        if self.mode == AddressMode.MANUAL and self.selected_id is None and not self._form_touched():
            self._select_default()

    def _select_default(self):
        if not self.saved:
            return
        default = next((a for a in self.saved if a.is_default), self.saved[0])
        self.select_saved(default.id)

    def _form_touched(self) -> bool:
        return any(value.strip() for value in self.form.to_dict().values())
