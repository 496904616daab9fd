"""Output formatting utilities."""

import json
from typing import Any, Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

console = Console()


def format_output(
    data: Any,
    format_type: str = "table",
    columns: Optional[List[str]] = None,
    title: Optional[str] = None,
) -> None:
    """Format and print data based on format type."""
    if format_type == "json":
        print_json(data)
    elif format_type == "yaml":
        print_yaml(data)
    else:
        if isinstance(data, list):
            print_table(data, columns, title)
        elif isinstance(data, dict):
            print_table([data], columns, title)
        else:
            console.print(data)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    json_str = json.dumps(data, indent=2, default=str)
    if console.is_terminal:
        console.print(Syntax(json_str, "json", theme="monokai", line_numbers=False))
    else:
        # Piped output stays machine readable
        click.echo(json_str)


def print_yaml(data: Any) -> None:
    """Print data as formatted YAML."""
    yaml_str = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    if console.is_terminal:
        console.print(Syntax(yaml_str, "yaml", theme="monokai", line_numbers=False))
    else:
        click.echo(yaml_str)


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "✓" if value else "✗"
    if isinstance(value, (list, dict)):
        text = json.dumps(value)
        return text[:50] + "..." if len(text) > 50 else text
    text = str(value)
    if len(text) > 50:
        text = text[:47] + "..."
    return text


def print_table(
    data: List[Dict[str, Any]],
    columns: Optional[List[str]] = None,
    title: Optional[str] = None,
) -> None:
    """Print data as a formatted table."""
    if not data:
        console.print("[dim]No data to display[/dim]")
        return

    table = Table(title=title, show_header=True, header_style="bold cyan")

    if columns:
        display_columns = columns
    else:
        all_keys = list(data[0].keys())
        priority = ["id", "type", "status"]
        display_columns = [k for k in priority if k in all_keys]
        display_columns.extend([k for k in all_keys if k not in display_columns])
        display_columns = display_columns[:8]

    for col in display_columns:
        table.add_column(col.replace("_", " ").title())

    for item in data:
        table.add_row(*[_cell(item.get(col, "")) for col in display_columns])

    console.print(table)


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]![/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]i[/blue] {message}")
