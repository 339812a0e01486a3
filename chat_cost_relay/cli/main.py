"""
CLI interface for Chat Cost Relay.

Runs the API server and offers offline access to pricing and local usage.
"""

import sqlite3
import sys
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from chat_cost_relay.config.loader import (
    DEFAULT_SQLITE_PATH,
    load_settings,
    resolve_pricing_table,
)
from chat_cost_relay.core.token_counter import TokenUsage, count_tokens
from chat_cost_relay.errors import PersistenceFailure
from chat_cost_relay.storage.repository import SqliteExchangeRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Chat Cost Relay CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Chat Cost Relay - Use --help to see available commands")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind"),
    port: int = typer.Option(3001, "--port", "-p", help="Port to listen on"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP API."""
    uvicorn.run(
        "chat_cost_relay.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@app.command()
def init(
    db_path: str = typer.Option(DEFAULT_SQLITE_PATH, "--db-path", help="SQLite database file"),
):
    """Initialize the local SQLite exchange store."""
    try:
        initialize_schema(db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    user_id: str = typer.Option(..., "--user-id", "-u", help="User whose usage to show"),
    db_path: str = typer.Option(DEFAULT_SQLITE_PATH, "--db-path", help="SQLite database file"),
    limit: int = typer.Option(10, "--limit", "-n", help="Most recent exchanges to list"),
):
    """Show a user's usage from the local SQLite store."""
    repository = SqliteExchangeRepository(db_path)
    try:
        summary = repository.get_usage_summary(user_id)
        history = repository.fetch_history(user_id)
    except PersistenceFailure as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No exchanges recorded yet[/]")
            console.print("Run `chat-cost-relay init` and send some chats through the relay.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Usage for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Messages: {summary.message_count}")
    console.print(f"Total tokens: {summary.total_tokens:,}")
    console.print(f"Total cost: {_format_currency(summary.total_cost)}")

    if history:
        table = Table(title="Recent exchanges")
        table.add_column("Time")
        table.add_column("Model")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for record in history[-limit:]:
            table.add_row(
                record.timestamp.strftime("%Y-%m-%d %H:%M") if record.timestamp else "-",
                record.model or "-",
                str(record.tokens_used) if record.tokens_used is not None else "-",
                _format_currency(record.cost) if record.cost is not None else "-",
            )
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    text: str = typer.Argument(..., help="Prompt text to price"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to price against"),
    output_text: str = typer.Option("", "--output-text", "-o", help="Expected reply text"),
):
    """Estimate tokens and cost for a prompt (and optional reply)."""
    try:
        settings = load_settings()
        pricing = resolve_pricing_table(settings)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    model = model or settings.default_model
    token_usage = TokenUsage(
        prompt_tokens=count_tokens(text, model),
        completion_tokens=count_tokens(output_text, model),
    )
    cost = pricing.calculate_cost(model, token_usage)

    console.print(f"\n[bold]Model:[/bold] {model}")
    if model not in pricing.prices:
        console.print(f"[yellow]Not in pricing table; priced as {pricing.default_model}[/]")
    console.print(f"Input tokens: {token_usage.prompt_tokens}")
    console.print(f"Output tokens: {token_usage.completion_tokens}")
    console.print(f"Total tokens: {token_usage.total_tokens}")
    console.print(f"Estimated cost: {_format_currency(cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def models():
    """List the priced models."""
    try:
        pricing = resolve_pricing_table(load_settings())
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Model pricing (per 1M tokens)")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    for name in pricing.models:
        rates = pricing.get_pricing(name)
        marker = " (default)" if name == pricing.default_model else ""
        table.add_row(
            f"{name}{marker}",
            f"${float(rates.input_rate * 1_000_000):,.2f}",
            f"${float(rates.output_rate * 1_000_000):,.2f}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with enough precision for sub-cent costs.

    Ten decimal places with trailing zeros trimmed, keeping at least cents.
    """
    whole, _, fraction = f"{abs(amount):,.10f}".rstrip("0").partition(".")
    return f"${whole}.{fraction.ljust(2, '0')}"


if __name__ == "__main__":
    app()
