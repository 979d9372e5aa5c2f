"""
CLI interface for AI Credit Guard.

Provides command-line access to admission checks, usage reports, limit
administration and usage recording.
"""

import asyncio
import logging
import sqlite3
import sys
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_credit_guard.config.loader import MeteringConfig, load_metering_config
from ai_credit_guard.core.credits import Principal
from ai_credit_guard.core.guardrails import Decision, MeteringEngine
from ai_credit_guard.core.pricing import ModelCatalog, calculate_credit_cost, estimate_cost, provider_of
from ai_credit_guard.core.token_counter import TokenUsage
from ai_credit_guard.core.usage_limits import UsageSnapshot, exceeded_limit_messages
from ai_credit_guard.storage.db import DEFAULT_DB_PATH
from ai_credit_guard.storage.models import DEFAULT_USAGE_LIMIT, UsageEvent, UsageLimit
from ai_credit_guard.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_ALLOWED = 0
EXIT_CODE_DENIED = 1
EXIT_CODE_ERROR = 1


class CliState:
    def __init__(self, db_path: str, config: MeteringConfig):
        self.db_path = db_path
        self.config = config


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database file"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Metering YAML configuration"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """AI Credit Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )

    try:
        metering_config = load_metering_config(config) if config else MeteringConfig()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {e}")
        sys.exit(EXIT_CODE_ERROR)

    ctx.obj = CliState(db, metering_config)
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Guard - Use --help to see available commands")


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _missing_tables_hint(e: sqlite3.OperationalError) -> None:
    if "no such table" in str(e).lower():
        console.print("\n[bold yellow]Database is not initialized[/]")
        console.print("Run `ai-credit-guard init` first\n")
    else:
        console.print(f"[red]Database error:[/] {e}")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Credit Guard database."""
    state = _state(ctx)
    try:
        asyncio.run(UsageRepository(state.db_path).initialize_schema())
        console.print(f"[green]✓[/] Database initialized at {state.db_path}")
        sys.exit(EXIT_CODE_ALLOWED)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


def _parse_api_keys(values: List[str]) -> Dict[str, str]:
    api_keys = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected NAME=VALUE, got '{item}'", param_hint="--api-key")
        api_keys[name.strip()] = value
    return api_keys


async def _evaluate(
    state: CliState,
    principal: Principal,
    model: str,
    api_keys: Dict[str, str],
    web_search: bool,
) -> Decision:
    engine = MeteringEngine.from_config(state.config, state.db_path)
    try:
        return await engine.evaluate(principal, model, api_keys=api_keys, web_search=web_search)
    finally:
        await engine.aclose()


@app.command()
def check(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User or anonymous session id"),
    model: str = typer.Option(..., "--model", "-m", help="Model id, e.g. openai/gpt-4o"),
    anonymous: bool = typer.Option(False, "--anonymous", help="Treat the user as an anonymous session"),
    customer_id: Optional[str] = typer.Option(None, "--customer-id", help="Legacy billing customer id"),
    api_key: List[str] = typer.Option([], "--api-key", help="Provider key supplied with the request, NAME=VALUE"),
    web_search: bool = typer.Option(False, "--web-search", help="The request asks for web search"),
):
    """
    Decide whether USER_ID may send a message to MODEL.

    Exits 0 when the request would be allowed and 1 when it would be denied.
    """
    state = _state(ctx)
    principal = Principal(user_id=user_id, is_anonymous=anonymous, legacy_customer_id=customer_id)
    decision = asyncio.run(_evaluate(state, principal, model, _parse_api_keys(api_key), web_search))

    _display_decision(user_id, model, decision, web_search)
    sys.exit(EXIT_CODE_ALLOWED if decision.allowed else EXIT_CODE_DENIED)


def _display_decision(user_id: str, model: str, decision: Decision, web_search: bool = False) -> None:
    verdict = "[green]ALLOWED[/]" if decision.allowed else "[red]DENIED[/]"
    console.print(f"\n[bold]Decision for {user_id} on {model}:[/bold] {verdict} ({decision.http_status})")
    console.print("-" * 40)
    console.print(f"Reason: {decision.reason.value}")
    console.print(f"Credit cost: {decision.credit_cost}")
    if decision.credits is not None:
        console.print(f"Credits remaining: {decision.credits}")
    if decision.message_status is not None:
        status = decision.message_status
        console.print(f"Messages remaining today: {status.remaining}/{status.limit}")
    if web_search and decision.allowed:
        console.print(f"Web search: {'enabled' if decision.web_search else 'disabled'}")
    if decision.exceeded_limits:
        console.print(f"Exceeded limits: {', '.join(decision.exceeded_limits)}")
    if decision.detail:
        console.print(f"[dim]{decision.detail}[/]")
    if decision.degraded:
        console.print("[yellow]Metering was unavailable; request allowed by default[/]")


async def _snapshot(state: CliState, user_id: str) -> UsageSnapshot:
    engine = MeteringEngine.from_config(state.config, state.db_path)
    try:
        return await engine.usage_limits.get_user_usage_and_limits(user_id)
    finally:
        await engine.aclose()


@app.command()
def usage(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
):
    """Show USER_ID's daily and monthly usage against their limits."""
    state = _state(ctx)
    snapshot = asyncio.run(_snapshot(state, user_id))
    limits = snapshot.limits

    table = Table(title=f"Usage for {user_id}")
    table.add_column("Window")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_row("Daily tokens", f"{snapshot.daily_tokens:,}", f"{limits.daily_token_limit:,}")
    table.add_row("Monthly tokens", f"{snapshot.monthly_tokens:,}", f"{limits.monthly_token_limit:,}")
    table.add_row("Daily cost", _format_currency(snapshot.daily_cost), _format_currency(limits.daily_cost_limit))
    table.add_row("Monthly cost", _format_currency(snapshot.monthly_cost), _format_currency(limits.monthly_cost_limit))
    console.print(table)

    for message in exceeded_limit_messages(snapshot):
        console.print(f"[red]{message}[/]")
    sys.exit(EXIT_CODE_DENIED if snapshot.is_over_limit else EXIT_CODE_ALLOWED)


@app.command("credit-cost")
def credit_cost(
    ctx: typer.Context,
    model_id: str = typer.Argument(..., help="Model id from the configured catalog"),
):
    """Show the per-message credit cost of MODEL_ID."""
    state = _state(ctx)
    catalog = ModelCatalog(state.config.models)
    model_info = asyncio.run(catalog.get_model_details(model_id))

    console.print(f"\n[bold]{model_id}[/bold]")
    if model_info is None:
        console.print("[dim]Not in the model catalog; charged as a standard model[/]")
    else:
        console.print(f"Premium: {'yes' if model_info.premium else 'no'}")
        console.print(f"Input price: {_format_currency(model_info.input_price_per_million)}/M tokens")
        console.print(f"Output price: {_format_currency(model_info.output_price_per_million)}/M tokens")
    console.print(f"Credits per message: [bold]{calculate_credit_cost(model_info)}[/]")


def _parse_decimal(value: Optional[str], default: Decimal, name: str) -> Decimal:
    if value is None:
        return default
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"'{value}' is not a number", param_hint=name)


@app.command("set-limit")
def set_limit(
    ctx: typer.Context,
    user_id: Optional[str] = typer.Option(None, "--user-id", "-u", help="Scope the limit to a user (global when omitted)"),
    daily_tokens: int = typer.Option(DEFAULT_USAGE_LIMIT.daily_token_limit, "--daily-tokens"),
    monthly_tokens: int = typer.Option(DEFAULT_USAGE_LIMIT.monthly_token_limit, "--monthly-tokens"),
    daily_cost: Optional[str] = typer.Option(None, "--daily-cost", help="USD, default 10"),
    monthly_cost: Optional[str] = typer.Option(None, "--monthly-cost", help="USD, default 100"),
    request_rate: int = typer.Option(DEFAULT_USAGE_LIMIT.request_rate_limit, "--request-rate"),
    description: Optional[str] = typer.Option(None, "--description"),
):
    """Create or update the usage limit for a user, or the global limit."""
    state = _state(ctx)
    try:
        limit = UsageLimit(
            daily_token_limit=daily_tokens,
            monthly_token_limit=monthly_tokens,
            daily_cost_limit=_parse_decimal(daily_cost, DEFAULT_USAGE_LIMIT.daily_cost_limit, "--daily-cost"),
            monthly_cost_limit=_parse_decimal(monthly_cost, DEFAULT_USAGE_LIMIT.monthly_cost_limit, "--monthly-cost"),
            request_rate_limit=request_rate,
            user_id=user_id,
            description=description,
        )
    except ValueError as e:
        console.print(f"[red]Invalid limit:[/] {e}")
        sys.exit(EXIT_CODE_ERROR)

    try:
        stored = asyncio.run(UsageRepository(state.db_path).upsert_limit(limit))
    except sqlite3.OperationalError as e:
        _missing_tables_hint(e)
        sys.exit(EXIT_CODE_ERROR)

    scope = f"user {stored.user_id}" if stored.user_id else "global"
    console.print(f"[green]✓[/] Saved {scope} limit (id {stored.id})")
    sys.exit(EXIT_CODE_ALLOWED)


async def _record(state: CliState, event: UsageEvent) -> None:
    engine = MeteringEngine.from_config(state.config, state.db_path)
    try:
        await engine.record_usage(event)
    finally:
        await engine.aclose()


@app.command()
def record(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    model: str = typer.Option(..., "--model", "-m", help="Model id"),
    input_tokens: int = typer.Option(..., "--input-tokens", min=0),
    output_tokens: int = typer.Option(..., "--output-tokens", min=0),
):
    """Record a completed model call for USER_ID."""
    state = _state(ctx)
    catalog = ModelCatalog(state.config.models)
    token_usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    model_info = asyncio.run(catalog.get_model_details(model))

    event = UsageEvent(
        user_id=user_id,
        model_id=model,
        provider=provider_of(model),
        input_tokens=token_usage.input_tokens,
        output_tokens=token_usage.output_tokens,
        total_tokens=token_usage.total_tokens,
        estimated_cost=estimate_cost(model_info, token_usage),
    )
    try:
        asyncio.run(_record(state, event))
    except sqlite3.OperationalError as e:
        _missing_tables_hint(e)
        sys.exit(EXIT_CODE_ERROR)

    console.print(
        f"[green]✓[/] Recorded {event.total_tokens:,} tokens "
        f"(${event.estimated_cost}) for {user_id}"
    )
    sys.exit(EXIT_CODE_ALLOWED)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(float(amount)):,.2f}"


if __name__ == "__main__":
    app()
