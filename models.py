from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from config import settings


def _parse_datetime(value) -> datetime | None:
    # SQLite hands timestamps back as ISO strings
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def late_fee(checkout_date: datetime, return_date: datetime | None, checkout_days: int,
             rate: Decimal | None = None) -> Decimal | None:
    """Fee for a late return, or None while open or when returned by the due date.

    The due date is ``checkout_date + checkout_days``. Only whole days past the
    due date count; a return less than a full day late owes a fee of zero.
    """
    if return_date is None:
        return None
    rate = settings.late_fee_per_day if rate is None else rate
    due_date = checkout_date + timedelta(days=checkout_days)
    if return_date <= due_date:
        return None
    return (return_date - due_date).days * rate


def patron_balance(checkouts: Iterable[tuple[bool, Decimal | None]]) -> Decimal:
    """Sum of the fees of unpaid checkouts. ``checkouts`` yields ``(paid, fee)`` pairs."""
    total = Decimal("0")
    for paid, fee in checkouts:
        if not paid and fee is not None:
            total += fee
    return total


class Genre:
    """Subject classification of a material."""

    def __init__(self, name: str, id: int | None = None) -> None:
        self.id = id
        self.name = name.strip()

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}

    @staticmethod
    def from_dict(data: dict) -> "Genre":
        return Genre(id=data.get("id"), name=data["name"])


class MaterialType:
    """Category of material; defines the loan period in days."""

    def __init__(self, name: str, checkout_days: int, id: int | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.checkout_days = int(checkout_days)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "checkout_days": self.checkout_days}

    @staticmethod
    def from_dict(data: dict) -> "MaterialType":
        return MaterialType(id=data.get("id"), name=data["name"], checkout_days=data["checkout_days"])


class Material:
    """A circulating item: a book, periodical or CD."""

    def __init__(self, name: str, material_type_id: int, genre_id: int, id: int | None = None,
                 out_of_circulation_since: datetime | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.material_type_id = material_type_id
        self.genre_id = genre_id
        self.out_of_circulation_since = out_of_circulation_since

    def in_circulation(self, now: datetime | None = None) -> bool:
        """True while the material has not been taken out of circulation yet."""
        if self.out_of_circulation_since is None:
            return True
        return self.out_of_circulation_since > (now or datetime.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "material_type_id": self.material_type_id,
            "genre_id": self.genre_id,
            "out_of_circulation_since": _format_datetime(self.out_of_circulation_since),
        }

    @staticmethod
    def from_dict(data: dict) -> "Material":
        return Material(
            id=data.get("id"),
            name=data["name"],
            material_type_id=data["material_type_id"],
            genre_id=data["genre_id"],
            out_of_circulation_since=_parse_datetime(data.get("out_of_circulation_since")),
        )


class Patron:
    """A library member."""

    def __init__(self, first_name: str, last_name: str, address: str, email: str,
                 is_active: bool = True, id: int | None = None) -> None:
        self.id = id
        self.first_name = first_name.strip()
        self.last_name = last_name.strip()
        self.address = address.strip()
        self.email = email.strip()
        self.is_active = bool(is_active)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "address": self.address,
            "email": self.email,
            "is_active": self.is_active,
        }

    @staticmethod
    def from_dict(data: dict) -> "Patron":
        return Patron(
            id=data.get("id"),
            first_name=data["first_name"],
            last_name=data["last_name"],
            address=data["address"],
            email=data["email"],
            is_active=bool(data.get("is_active", True)),
        )


class Checkout:
    """A loan of one material to one patron. Open until return_date is set."""

    def __init__(self, material_id: int, patron_id: int, checkout_date: datetime,
                 return_date: datetime | None = None, paid: bool = False, id: int | None = None) -> None:
        self.id = id
        self.material_id = material_id
        self.patron_id = patron_id
        self.checkout_date = checkout_date
        self.return_date = return_date
        self.paid = bool(paid)

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    def days_elapsed(self, now: datetime | None = None) -> int:
        return ((now or datetime.now()) - self.checkout_date).days

    def is_overdue(self, checkout_days: int, now: datetime | None = None) -> bool:
        return self.is_open and self.days_elapsed(now) > checkout_days

    def late_fee(self, checkout_days: int) -> Decimal | None:
        return late_fee(self.checkout_date, self.return_date, checkout_days)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_id": self.material_id,
            "patron_id": self.patron_id,
            "checkout_date": _format_datetime(self.checkout_date),
            "return_date": _format_datetime(self.return_date),
            "paid": self.paid,
        }

    @staticmethod
    def from_dict(data: dict) -> "Checkout":
        return Checkout(
            id=data.get("id"),
            material_id=data["material_id"],
            patron_id=data["patron_id"],
            checkout_date=_parse_datetime(data["checkout_date"]),
            return_date=_parse_datetime(data.get("return_date")),
            paid=bool(data.get("paid", False)),
        )
