import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

import database
from database import get_db_connection, initialize_database
from models import Checkout, Genre, Material, MaterialType, Patron, patron_balance

logger = logging.getLogger(__name__)


class LibraryError(Exception):
    """Base class for circulation errors surfaced to callers."""


class NotFoundError(LibraryError, LookupError):
    pass


class InvalidStateError(LibraryError):
    pass


class ValidationError(LibraryError, ValueError):
    pass


MATERIAL_SELECT = """
    SELECT m.id AS material_id, m.name AS material_name, m.material_type_id, m.genre_id,
           m.out_of_circulation_since,
           g.name AS genre_name,
           t.name AS material_type_name, t.checkout_days
    FROM materials m
    JOIN genres g ON g.id = m.genre_id
    JOIN material_types t ON t.id = m.material_type_id
"""

CHECKOUT_SELECT = """
    SELECT c.id, c.material_id, c.patron_id, c.checkout_date, c.return_date, c.paid,
           m.name AS material_name, m.material_type_id, m.genre_id, m.out_of_circulation_since,
           t.name AS material_type_name, t.checkout_days,
           p.first_name, p.last_name, p.address, p.email, p.is_active
    FROM checkouts c
    JOIN materials m ON m.id = c.material_id
    JOIN material_types t ON t.id = m.material_type_id
    JOIN patrons p ON p.id = c.patron_id
"""


def _today() -> datetime:
    """Current date with the time of day dropped."""
    return datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)


# SQLite stores INTEGER keys as signed 64-bit values.
MAX_ROW_ID = 2 ** 63 - 1


def _in_row_range(value: int) -> bool:
    return -MAX_ROW_ID - 1 <= value <= MAX_ROW_ID


def _require_row_id(kind: str, value: int) -> int:
    """An id no row can have is reported as missing instead of overflowing the driver."""
    if not _in_row_range(value):
        raise NotFoundError(f"{kind} {value} not found.")
    return value


def _require_text(field: str, value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required.")
    return str(value).strip()


class Library:
    """Circulation desk: the catalog, the patron directory and checkouts.

    Every public method opens its own connection and commits at most once, so a
    call that raises leaves the database untouched.
    """

    def __init__(self, db_file: Optional[str] = None, seed: bool = False) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file, seed=seed)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Record builders ------------------------- #
    @staticmethod
    def _material_record(row: sqlite3.Row) -> Dict[str, Any]:
        material = Material.from_dict({
            "id": row["material_id"],
            "name": row["material_name"],
            "material_type_id": row["material_type_id"],
            "genre_id": row["genre_id"],
            "out_of_circulation_since": row["out_of_circulation_since"],
        })
        record = material.to_dict()
        record["material_type"] = MaterialType(
            id=row["material_type_id"], name=row["material_type_name"], checkout_days=row["checkout_days"]
        ).to_dict()
        if "genre_name" in row.keys():
            record["genre"] = Genre(id=row["genre_id"], name=row["genre_name"]).to_dict()
        return record

    @staticmethod
    def _patron_record(row: sqlite3.Row) -> Dict[str, Any]:
        return Patron.from_dict({
            "id": row["patron_id"],
            "first_name": row["first_name"],
            "last_name": row["last_name"],
            "address": row["address"],
            "email": row["email"],
            "is_active": row["is_active"],
        }).to_dict()

    @classmethod
    def _checkout_record(cls, row: sqlite3.Row, with_material: bool = True,
                         with_patron: bool = True) -> Dict[str, Any]:
        checkout = Checkout.from_dict(dict(row))
        record = checkout.to_dict()
        record["late_fee"] = checkout.late_fee(row["checkout_days"])
        if with_material:
            record["material"] = cls._material_record(row)
        if with_patron:
            record["patron"] = cls._patron_record(row)
        return record

    # ------------------------- Reference data ------------------------- #
    def list_genres(self) -> List[Genre]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id, name FROM genres ORDER BY id").fetchall()
            return [Genre.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_material_types(self) -> List[MaterialType]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id, name, checkout_days FROM material_types ORDER BY id").fetchall()
            return [MaterialType.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def add_genre(self, name: str) -> Genre:
        name = _require_text("Name", name)
        conn = self._connect()
        try:
            cursor = conn.execute("INSERT INTO genres (name) VALUES (?)", (name,))
            conn.commit()
            return Genre(id=cursor.lastrowid, name=name)
        finally:
            conn.close()

    def add_material_type(self, name: str, checkout_days: int) -> MaterialType:
        name = _require_text("Name", name)
        if checkout_days is None or int(checkout_days) <= 0:
            raise ValidationError("Checkout days must be greater than zero.")
        conn = self._connect()
        try:
            cursor = conn.execute(
                "INSERT INTO material_types (name, checkout_days) VALUES (?, ?)", (name, int(checkout_days))
            )
            conn.commit()
            return MaterialType(id=cursor.lastrowid, name=name, checkout_days=checkout_days)
        finally:
            conn.close()

    # ------------------------- Material catalog ------------------------- #
    def list_materials(self, material_type_id: Optional[int] = None,
                       genre_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Materials in circulation, optionally narrowed by type and genre (both must match)."""
        if any(f is not None and not _in_row_range(f) for f in (material_type_id, genre_id)):
            return []
        clauses: List[str] = []
        params: List[Any] = []
        if material_type_id is not None:
            clauses.append("m.material_type_id = ?")
            params.append(material_type_id)
        if genre_id is not None:
            clauses.append("m.genre_id = ?")
            params.append(genre_id)
        query = MATERIAL_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY m.id"

        now = datetime.now()
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        records = [self._material_record(row) for row in rows]
        return [r for r in records if Material.from_dict(r).in_circulation(now)]

    def list_available_materials(self) -> List[Dict[str, Any]]:
        """Materials in circulation that nobody currently has checked out."""
        now = datetime.now()
        conn = self._connect()
        try:
            rows = conn.execute(
                MATERIAL_SELECT
                + """
                WHERE NOT EXISTS (
                    SELECT 1 FROM checkouts c WHERE c.material_id = m.id AND c.return_date IS NULL
                )
                ORDER BY m.id
                """
            ).fetchall()
        finally:
            conn.close()
        records = [self._material_record(row) for row in rows]
        return [r for r in records if Material.from_dict(r).in_circulation(now)]

    def get_material(self, material_id: int) -> Dict[str, Any]:
        """A material with its genre, type and full checkout history."""
        _require_row_id("Material", material_id)
        conn = self._connect()
        try:
            row = conn.execute(MATERIAL_SELECT + " WHERE m.id = ?", (material_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Material {material_id} not found.")
            record = self._material_record(row)
            checkouts = conn.execute(
                CHECKOUT_SELECT + " WHERE c.material_id = ? ORDER BY c.checkout_date, c.id", (material_id,)
            ).fetchall()
            record["checkouts"] = [self._checkout_record(c, with_material=False) for c in checkouts]
            return record
        finally:
            conn.close()

    def add_material(self, name: str, material_type_id: int, genre_id: int) -> Dict[str, Any]:
        name = _require_text("Name", name)
        _require_row_id("Material type", material_type_id)
        _require_row_id("Genre", genre_id)
        conn = self._connect()
        try:
            if conn.execute("SELECT 1 FROM material_types WHERE id = ?", (material_type_id,)).fetchone() is None:
                raise NotFoundError(f"Material type {material_type_id} not found.")
            if conn.execute("SELECT 1 FROM genres WHERE id = ?", (genre_id,)).fetchone() is None:
                raise NotFoundError(f"Genre {genre_id} not found.")
            cursor = conn.execute(
                "INSERT INTO materials (name, material_type_id, genre_id, out_of_circulation_since) "
                "VALUES (?, ?, ?, NULL)",
                (name, material_type_id, genre_id),
            )
            conn.commit()
            material_id = cursor.lastrowid
        finally:
            conn.close()
        logger.info("Added material %s (%s)", material_id, name)
        return self.get_material(material_id)

    def remove_material(self, material_id: int) -> None:
        """Take a material out of circulation as of now."""
        _require_row_id("Material", material_id)
        conn = self._connect()
        try:
            cursor = conn.execute(
                "UPDATE materials SET out_of_circulation_since = ? WHERE id = ?",
                (datetime.now().isoformat(), material_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Material {material_id} not found.")
            conn.commit()
        finally:
            conn.close()
        logger.info("Material %s removed from circulation", material_id)

    # ------------------------- Patron directory ------------------------- #
    def list_patrons(self) -> List[Patron]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id, first_name, last_name, address, email, is_active FROM patrons ORDER BY id"
            ).fetchall()
            return [Patron.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_patron(self, patron_id: int) -> Optional[Patron]:
        if not _in_row_range(patron_id):
            return None
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT id, first_name, last_name, address, email, is_active FROM patrons WHERE id = ?",
                (patron_id,),
            ).fetchone()
            return Patron.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_patron(self, patron_id: int) -> Dict[str, Any]:
        """A patron with every checkout (material and type included) and the unpaid balance."""
        patron = self.find_patron(patron_id)
        if patron is None:
            raise NotFoundError(f"Patron {patron_id} not found.")
        conn = self._connect()
        try:
            rows = conn.execute(
                CHECKOUT_SELECT + " WHERE c.patron_id = ? ORDER BY c.checkout_date, c.id", (patron_id,)
            ).fetchall()
        finally:
            conn.close()
        record = patron.to_dict()
        record["checkouts"] = [self._checkout_record(row, with_patron=False) for row in rows]
        record["balance"] = patron_balance((c["paid"], c["late_fee"]) for c in record["checkouts"])
        return record

    def add_patron(self, first_name: str, last_name: str, address: str, email: str) -> Patron:
        patron = Patron(
            first_name=_require_text("First name", first_name),
            last_name=_require_text("Last name", last_name),
            address=_require_text("Address", address),
            email=_require_text("Email", email),
        )
        conn = self._connect()
        try:
            cursor = conn.execute(
                "INSERT INTO patrons (first_name, last_name, address, email, is_active) VALUES (?, ?, ?, ?, 1)",
                (patron.first_name, patron.last_name, patron.address, patron.email),
            )
            conn.commit()
            patron.id = cursor.lastrowid
        finally:
            conn.close()
        logger.info("Added patron %s (%s)", patron.id, patron.email)
        return patron

    def update_patron(self, patron_id: int, *, email: Optional[str] = None, address: Optional[str] = None,
                      is_active: Optional[bool] = None) -> Patron:
        """Update email, address and/or the active flag. Fields left as None keep their value."""
        patron = self.find_patron(patron_id)
        if patron is None:
            raise NotFoundError(f"Patron {patron_id} not found.")
        if email is not None:
            email = _require_text("Email", email)
        if address is not None:
            address = _require_text("Address", address)

        patron.email = email if email is not None else patron.email
        patron.address = address if address is not None else patron.address
        patron.is_active = is_active if is_active is not None else patron.is_active

        conn = self._connect()
        try:
            conn.execute(
                "UPDATE patrons SET email = ?, address = ?, is_active = ? WHERE id = ?",
                (patron.email, patron.address, patron.is_active, patron_id),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Updated patron %s", patron_id)
        return patron

    def deactivate_patron(self, patron_id: int) -> None:
        _require_row_id("Patron", patron_id)
        conn = self._connect()
        try:
            cursor = conn.execute("UPDATE patrons SET is_active = 0 WHERE id = ?", (patron_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Patron {patron_id} not found.")
            conn.commit()
        finally:
            conn.close()
        logger.info("Patron %s deactivated", patron_id)

    # ------------------------- Checkouts ------------------------- #
    def list_checkouts(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(CHECKOUT_SELECT + " ORDER BY c.id").fetchall()
            return [self._checkout_record(row) for row in rows]
        finally:
            conn.close()

    def get_checkout(self, checkout_id: int) -> Dict[str, Any]:
        _require_row_id("Checkout", checkout_id)
        conn = self._connect()
        try:
            row = conn.execute(CHECKOUT_SELECT + " WHERE c.id = ?", (checkout_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Checkout {checkout_id} not found.")
        return self._checkout_record(row)

    def checkout_material(self, patron_id: int, material_id: int) -> Dict[str, Any]:
        """Lend a material to a patron starting today."""
        _require_row_id("Patron", patron_id)
        _require_row_id("Material", material_id)
        conn = self._connect()
        try:
            if conn.execute("SELECT 1 FROM patrons WHERE id = ?", (patron_id,)).fetchone() is None:
                logger.warning("Checkout rejected: patron %s not found", patron_id)
                raise NotFoundError(f"Patron {patron_id} not found.")
            if conn.execute("SELECT 1 FROM materials WHERE id = ?", (material_id,)).fetchone() is None:
                logger.warning("Checkout rejected: material %s not found", material_id)
                raise NotFoundError(f"Material {material_id} not found.")
            cursor = conn.execute(
                "INSERT INTO checkouts (material_id, patron_id, checkout_date, return_date, paid) "
                "VALUES (?, ?, ?, NULL, 0)",
                (material_id, patron_id, _today().isoformat()),
            )
            conn.commit()
            checkout_id = cursor.lastrowid
        finally:
            conn.close()
        logger.info("Material %s checked out to patron %s (checkout %s)", material_id, patron_id, checkout_id)
        return self.get_checkout(checkout_id)

    def return_checkout(self, checkout_id: int) -> Dict[str, Any]:
        """Close an open checkout as of today. A checkout can only be returned once."""
        _require_row_id("Checkout", checkout_id)
        conn = self._connect()
        try:
            row = conn.execute("SELECT return_date FROM checkouts WHERE id = ?", (checkout_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Checkout {checkout_id} not found.")
            if row["return_date"] is not None:
                logger.warning("Checkout %s was already returned", checkout_id)
                raise InvalidStateError(f"Checkout {checkout_id} has already been returned.")
            cursor = conn.execute(
                "UPDATE checkouts SET return_date = ? WHERE id = ? AND return_date IS NULL",
                (_today().isoformat(), checkout_id),
            )
            if cursor.rowcount == 0:
                # Another caller closed it between the read and the update
                logger.warning("Checkout %s was returned concurrently", checkout_id)
                raise InvalidStateError(f"Checkout {checkout_id} has already been returned.")
            conn.commit()
        finally:
            conn.close()
        logger.info("Checkout %s returned", checkout_id)
        return self.get_checkout(checkout_id)

    def pay_checkout(self, checkout_id: int) -> Dict[str, Any]:
        _require_row_id("Checkout", checkout_id)
        conn = self._connect()
        try:
            cursor = conn.execute("UPDATE checkouts SET paid = 1 WHERE id = ?", (checkout_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Checkout {checkout_id} not found.")
            conn.commit()
        finally:
            conn.close()
        logger.info("Checkout %s marked paid", checkout_id)
        return self.get_checkout(checkout_id)

    def list_overdue(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open checkouts held longer than their material type allows."""
        now = now or datetime.now()
        conn = self._connect()
        try:
            rows = conn.execute(CHECKOUT_SELECT + " WHERE c.return_date IS NULL ORDER BY c.id").fetchall()
        finally:
            conn.close()
        overdue = []
        for row in rows:
            if Checkout.from_dict(dict(row)).is_overdue(row["checkout_days"], now):
                overdue.append(self._checkout_record(row))
        return overdue

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
