import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from library import Library, NotFoundError
from ui_helpers import print_checkouts, print_materials, print_patron, set_output_mode

APP_NAME = "Library CLI"

app = typer.Typer(help=APP_NAME)
console = Console()

_state = {"db_file": None}


def get_library() -> Library:
    return Library(db_file=_state["db_file"] or settings.db_file)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db_file: Optional[str] = typer.Option(None, "--db-file", help="SQLite database file"),
):
    """Global CLI options (output mode, database file)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)
    _state["db_file"] = db_file


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    lib = get_library()
    console.print(f"[green]Database ready[/]: {lib.db_file}")


@app.command("seed")
def cli_seed():
    """Load the demo genres, material types, materials, patrons and checkouts."""
    lib = get_library()
    database.seed_database(lib.db_file)
    console.print(f"[green]Demo data loaded into[/] {lib.db_file}")


@app.command("materials")
def cli_materials(
    type_id: Optional[int] = typer.Option(None, "--type-id", "-t", help="Filter by material type id"),
    genre_id: Optional[int] = typer.Option(None, "--genre-id", "-g", help="Filter by genre id"),
):
    """List materials in circulation."""
    print_materials(get_library().list_materials(type_id, genre_id))


@app.command("overdue")
def cli_overdue():
    """List overdue checkouts."""
    print_checkouts(get_library().list_overdue(), empty_message="No overdue checkouts.")


@app.command("patron")
def cli_patron(patron_id: int):
    """Show a patron and their unpaid balance."""
    try:
        print_patron(get_library().get_patron(patron_id))
    except NotFoundError as e:
        console.print(f"[bold red]{e}[/]")
        raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host", help="Bind host"),
    port: int = typer.Option(settings.api_port, "--port", help="Bind port"),
):
    """Run the HTTP API with uvicorn."""
    console.print(f"[dim]Starting API on http://{host}:{port} (docs at /docs)[/]")
    env = dict(os.environ)
    if _state["db_file"]:
        env["LIBRARY_DB_FILE"] = _state["db_file"]
    subprocess.run([sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)], env=env)


if __name__ == "__main__":
    app()
