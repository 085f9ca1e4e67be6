import os
import json
from decimal import Decimal
from typing import Any, Dict, List
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _json_default(value: Any):
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def _money(value) -> str:
    return f"{Decimal(value or 0):.2f}"


def print_materials(materials: List[Dict[str, Any]]) -> None:
    """Print materials in the current output mode.
    - plain: 'id - name [type / genre]' lines, or 'No materials in circulation.'
    - json: JSON array of records
    - rich: Rich table
    """
    mode = get_output_mode()

    if not materials:
        print("No materials in circulation.")
        return

    if mode == "json":
        print(json.dumps(materials, default=_json_default, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Materials", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Genre")
        for m in materials:
            table.add_row(str(m["id"]), m["name"], m["material_type"]["name"], m.get("genre", {}).get("name", ""))
        _console.print(table)
    else:
        for m in materials:
            print(f"{m['id']} - {m['name']} [{m['material_type']['name']} / {m.get('genre', {}).get('name', '')}]")


def print_checkouts(checkouts: List[Dict[str, Any]], empty_message: str = "No checkouts.") -> None:
    mode = get_output_mode()

    if not checkouts:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(checkouts, default=_json_default, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Checkouts", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Material")
        table.add_column("Patron")
        table.add_column("Checked out")
        for c in checkouts:
            patron = c["patron"]
            table.add_row(
                str(c["id"]),
                c["material"]["name"],
                f"{patron['first_name']} {patron['last_name']}",
                c["checkout_date"][:10],
            )
        _console.print(table)
    else:
        for c in checkouts:
            patron = c["patron"]
            print(f"#{c['id']} {c['material']['name']} - {patron['first_name']} {patron['last_name']} "
                  f"since {c['checkout_date'][:10]}")


def print_patron(patron: Dict[str, Any]) -> None:
    """Print one patron with their balance in the current output mode."""
    mode = get_output_mode()
    name = f"{patron['first_name']} {patron['last_name']}"
    status = "active" if patron["is_active"] else "inactive"

    if mode == "json":
        print(json.dumps(patron, default=_json_default, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Email:[/] {patron['email']}\n"
            f"[bold]Address:[/] {patron['address']}\n"
            f"[bold]Status:[/] {status}\n"
            f"[bold]Checkouts:[/] {len(patron['checkouts'])}\n"
            f"[bold]Balance:[/] {_money(patron['balance'])}"
        )
        _console.print(Panel.fit(content, title=name, border_style="blue"))
    else:
        print(f"Patron: {name} ({status})")
        print(f"Email: {patron['email']}")
        print(f"Checkouts: {len(patron['checkouts'])}")
        print(f"Balance: {_money(patron['balance'])}")
