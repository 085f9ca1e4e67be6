import logging
import os
import sys
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

# Make sure .env is loaded before the environment is read below, regardless of
# import order (api -> library -> database -> config).
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. LIBRARY_DB_FILE overrides it; tests pass an explicit
# per-test path instead.
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or "library.db"


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with foreign keys enforced."""
    conn = sqlite3.connect(db_file or DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the circulation tables if they don't exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS genres (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL CHECK(length(trim(name)) > 0)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS material_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                checkout_days INTEGER NOT NULL CHECK(checkout_days > 0)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS materials (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                material_type_id INTEGER NOT NULL,
                genre_id INTEGER NOT NULL,
                out_of_circulation_since TIMESTAMP,
                FOREIGN KEY (material_type_id) REFERENCES material_types(id) ON DELETE RESTRICT,
                FOREIGN KEY (genre_id) REFERENCES genres(id) ON DELETE RESTRICT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS patrons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                first_name TEXT NOT NULL,
                last_name TEXT NOT NULL,
                address TEXT NOT NULL,
                email TEXT NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT 1
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS checkouts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                material_id INTEGER NOT NULL,
                patron_id INTEGER NOT NULL,
                checkout_date TIMESTAMP NOT NULL,
                return_date TIMESTAMP,
                paid BOOLEAN NOT NULL DEFAULT 0,
                FOREIGN KEY (material_id) REFERENCES materials(id) ON DELETE RESTRICT,
                FOREIGN KEY (patron_id) REFERENCES patrons(id) ON DELETE RESTRICT
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_materials_type ON materials(material_type_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_materials_genre ON materials(genre_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_material ON checkouts(material_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_patron ON checkouts(patron_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_return_date ON checkouts(return_date)")
        conn.commit()
    finally:
        conn.close()


GENRES = [
    (1, "Sports"),
    (2, "History"),
    (3, "Mathematics"),
    (4, "Sci-Fi"),
    (5, "Food"),
]

MATERIAL_TYPES = [
    (1, "Book", 30),
    (2, "Periodical", 40),
    (3, "CD", 60),
]

# (id, name, material_type_id, genre_id, days out of circulation or None)
MATERIALS = [
    (1, "Book on Sports", 1, 1, None),
    (2, "History Magazine", 2, 2, 30),
    (3, "Mathematics Textbook", 1, 3, None),
    (4, "Sci-Fi CD", 3, 4, 15),
    (5, "Food Recipe Book", 1, 5, None),
    (6, "Sports Biography", 1, 1, 60),
    (7, "Mathematics Journal", 2, 3, None),
    (8, "Sci-Fi Novel", 1, 4, 45),
    (9, "Cooking Magazine", 2, 5, None),
    (10, "History Textbook", 1, 2, 75),
]

PATRONS = [
    (1, "Clark", "Howard", "123 Main St", "clark@howard.com", False),
    (2, "Howie", "Clarkerston", "321 Branch St", "howie@clarkerston.com", True),
    (3, "Mark", "Markly", "100 Airpot Blvd", "mark@markly.com", True),
    (4, "Deion", "Sanderson", "5th Street", "deion@sanderson.com", True),
]

CHECKOUTS = [
    (1, 1, 1, datetime(2023, 7, 25)),
    (2, 2, 2, datetime(2023, 8, 20)),
    (3, 3, 3, datetime(2023, 9, 18)),
    (4, 4, 4, datetime(2023, 9, 16)),
]


def seed_database(db_file: Optional[str] = None) -> None:
    """Insert the demo data set. Rows that already exist are left alone."""
    now = datetime.now()
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.executemany("INSERT OR IGNORE INTO genres (id, name) VALUES (?, ?)", GENRES)
        cursor.executemany(
            "INSERT OR IGNORE INTO material_types (id, name, checkout_days) VALUES (?, ?, ?)",
            MATERIAL_TYPES,
        )
        cursor.executemany(
            """
            INSERT OR IGNORE INTO materials (id, name, material_type_id, genre_id, out_of_circulation_since)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (mid, name, type_id, genre_id,
                 (now - timedelta(days=days)).isoformat() if days is not None else None)
                for mid, name, type_id, genre_id, days in MATERIALS
            ],
        )
        cursor.executemany(
            """
            INSERT OR IGNORE INTO patrons (id, first_name, last_name, address, email, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            PATRONS,
        )
        cursor.executemany(
            """
            INSERT OR IGNORE INTO checkouts (id, material_id, patron_id, checkout_date, return_date, paid)
            VALUES (?, ?, ?, ?, NULL, 0)
            """,
            [(cid, mid, pid, checkout_date.isoformat()) for cid, mid, pid, checkout_date in CHECKOUTS],
        )
        conn.commit()
        logger.info("Seeded demo data into %s", db_file or DATABASE_FILE)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None, seed: bool = False) -> None:
    """Create the tables and, when asked, load the demo data.

    Seeding is skipped under pytest so every test starts from an empty database.
    """
    create_tables(db_file)
    if seed and not (os.environ.get("PYTEST_CURRENT_TEST") or "pytest" in sys.modules):
        seed_database(db_file)
