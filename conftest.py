from datetime import datetime, timedelta

import pytest

from database import get_db_connection
from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def catalog(lib):
    """A small catalog: three genres, three material types, five materials, two patrons."""
    sports = lib.add_genre("Sports")
    history = lib.add_genre("History")
    maths = lib.add_genre("Mathematics")
    book = lib.add_material_type("Book", 30)
    periodical = lib.add_material_type("Periodical", 40)
    lib.add_material_type("CD", 60)

    ids = {
        "sports": sports.id,
        "history": history.id,
        "maths": maths.id,
        "book": book.id,
        "periodical": periodical.id,
        "sports_book": lib.add_material("Book on Sports", book.id, sports.id)["id"],
        "maths_book": lib.add_material("Mathematics Textbook", book.id, maths.id)["id"],
        "maths_journal": lib.add_material("Mathematics Journal", periodical.id, maths.id)["id"],
        "history_magazine": lib.add_material("History Magazine", periodical.id, history.id)["id"],
        "sports_almanac": lib.add_material("Sports Almanac", book.id, sports.id)["id"],
        "clark": lib.add_patron("Clark", "Howard", "123 Main St", "clark@howard.com").id,
        "howie": lib.add_patron("Howie", "Clarkerston", "321 Branch St", "howie@clarkerston.com").id,
    }

    # Retired a month ago, and retiring next week (still circulating today)
    set_out_of_circulation(lib, ids["history_magazine"], datetime.now() - timedelta(days=30))
    set_out_of_circulation(lib, ids["sports_almanac"], datetime.now() + timedelta(days=7))
    return ids


def set_out_of_circulation(lib, material_id, when):
    conn = get_db_connection(lib.db_file)
    try:
        conn.execute(
            "UPDATE materials SET out_of_circulation_since = ? WHERE id = ?",
            (when.isoformat() if when else None, material_id),
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def make_checkout(lib):
    """Insert a checkout with explicit dates, bypassing the 'today' rule."""
    def _make(material_id, patron_id, checkout_date, return_date=None, paid=False):
        conn = get_db_connection(lib.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO checkouts (material_id, patron_id, checkout_date, return_date, paid) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    material_id,
                    patron_id,
                    checkout_date.isoformat(),
                    return_date.isoformat() if return_date else None,
                    paid,
                ),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()
    return _make


@pytest.fixture
def client(lib):
    from fastapi.testclient import TestClient

    import api as api_module

    api_module.app.dependency_overrides[api_module.get_library] = lambda: lib
    try:
        yield TestClient(api_module.app)
    finally:
        api_module.app.dependency_overrides.clear()
