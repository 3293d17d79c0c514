"""
CLI entry point for parley: streaming chat across LLM vendors.
"""

import sys
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

try:
    from importlib.metadata import version as pkg_version

    _version = pkg_version("parley")
except Exception:
    _version = "0.1.0"

from parley.core.config import KNOWN_KEYS, RELAY_TOKEN_KEY, get_key_store
from parley.core.engine import SessionEngine
from parley.core.ledger import UsageLedger
from parley.core.model_registry import get_model_catalog
from parley.core.session_store import SessionStore
from parley.core.usage import calculate_cost, format_cost
from parley.models.session import SessionStatus
from parley.models.usage import UsageSnapshot

console = Console()
console_err = Console(stderr=True)


# =============================================================================
# Root CLI Group
# =============================================================================


@click.group(invoke_without_command=True)
@click.version_option(version=_version, prog_name="parley")
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """
    Parley: streaming chat sessions across Anthropic, OpenAI and Google.

    \b
        parley chat                 # Interactive session
        parley chat "question"      # One turn, then exit
        parley models               # Available models and key status
        parley usage                # Spend this month
        parley config set           # Store an API key
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    if debug:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="[%(levelname)s] %(name)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    if ctx.invoked_subcommand is None:
        console.print(
            Panel(
                "[bold]Welcome to parley[/bold]\n\n"
                "Set a vendor key with [cyan]parley config set[/cyan], then run\n"
                "[cyan]parley chat[/cyan] to start a conversation.",
                border_style="blue",
            )
        )


# =============================================================================
# Chat
# =============================================================================


class _ConsoleRenderer:
    """Prints engine events for one session as they stream in."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.in_thinking = False

    def __call__(self, session_id: str, kind: str, data: Any) -> None:
        if session_id != self.session_id:
            return
        if kind == "thinking":
            if not self.in_thinking:
                console.print("[dim italic]thinking…[/dim italic]")
                self.in_thinking = True
            return
        if kind == "text":
            self.in_thinking = False
            console.print(data, end="", markup=False, highlight=False)
        elif kind == "tool_start":
            console.print(f"\n[dim]→ {data['name']}[/dim]")
        elif kind == "tool_end":
            mark = "[green]✓[/green]" if data["ok"] else "[red]✗[/red]"
            console.print(f"{mark} [dim]{data['name']}[/dim]")
        elif kind == "error":
            console.print(f"\n[red]Error:[/red] {data}")
        elif kind == "loop_limit":
            console.print(f"\n[yellow]Stopped after {data['depth']} tool rounds (limit {data['limit']}).[/yellow]")


def _run_turn(engine: SessionEngine, session_id: str, text: str) -> None:
    engine.send(session_id, text)
    try:
        while not engine.wait_idle(session_id, timeout=0.1):
            pass
    except KeyboardInterrupt:
        engine.abort(session_id)
        console.print("\n[yellow]Aborted[/yellow]")
    console.print()


@cli.command()
@click.argument("message", required=False)
@click.option("--model", "-m", default=None, help="Catalog model id (see 'parley models')")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
@click.option("--resume", "-r", "session_id", default=None, help="Resume a stored session")
def chat(message: str | None, model: str | None, system_prompt: str | None, session_id: str | None):
    """
    Chat with a model.

    With MESSAGE, sends one turn and exits. Without it, starts an
    interactive session (type /quit to leave, /cost for spend so far).
    Ctrl+C stops the current reply.

    \b
    Examples:
        parley chat
        parley chat -m gpt-5.2 "Explain SSE framing"
        parley chat --resume 1a2b3c4d
    """
    engine = SessionEngine()
    store = SessionStore()

    if session_id:
        stored = store.load(session_id)
        if stored is None:
            console_err.print(f"[red]Error:[/red] Session '{session_id}' not found")
            sys.exit(1)
        session = engine.restore(stored.snapshot())
        console.print(f"[dim]Resumed {session.id} ({len(session.messages)} messages)[/dim]")
    else:
        session = engine.create_session(model=model, system_prompt=system_prompt)

    renderer = _ConsoleRenderer(session.id)
    engine.add_listener(renderer)

    if message:
        _run_turn(engine, session.id, message)
        store.save(session)
        if session.status == SessionStatus.ERROR:
            sys.exit(1)
        return

    console.print(f"[dim]Session {session.id} · {session.model} · /quit to exit[/dim]\n")
    while True:
        try:
            text = console.input("[bold blue]You:[/bold blue] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break
        if not text:
            continue
        if text in ("/quit", "/exit"):
            break
        if text == "/cost":
            console.print(f"[dim]{format_cost(session.usage.cost)} · {session.usage.total:,} tokens[/dim]")
            continue
        _run_turn(engine, session.id, text)
        store.save(session)

    console.print(f"[dim]Saved session {session.id}[/dim]")


# =============================================================================
# Models and Costs
# =============================================================================


@cli.command()
@click.option("--default", "default_id", default=None, help="Set the default model id")
def models(default_id: str | None):
    """List available models and whether a key is configured for each."""
    catalog = get_model_catalog()

    if default_id:
        try:
            catalog.set_default(default_id)
        except KeyError:
            console_err.print(f"[red]Error:[/red] Unknown model '{default_id}'")
            sys.exit(1)
        console.print(f"[green]✓[/green] Default model set to {default_id}")
        return

    keys = get_key_store()
    relay = bool(keys.get(RELAY_TOKEN_KEY))
    default = catalog.default_model()

    table = Table(title="Models")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Vendor")
    table.add_column("Model", style="dim")
    table.add_column("Access")

    for entry in catalog.list_models():
        provider = catalog.provider(entry.provider)
        direct = bool(provider and keys.get(provider.api_key_env))
        if direct:
            access = "[green]key[/green]"
        elif relay:
            access = "[blue]relay[/blue]"
        else:
            access = "[dim]none[/dim]"
        marker = " *" if default and entry.id == default.id else ""
        table.add_row(entry.id + marker, entry.name, entry.provider, entry.model, access)

    console.print(table)
    console.print("[dim]* default[/dim]")


@cli.command()
@click.argument("model")
@click.option("--input", "-i", "input_tokens", default=0, type=int, help="Uncached input tokens")
@click.option("--output", "-o", "output_tokens", default=0, type=int, help="Output tokens")
@click.option("--cache-read", default=0, type=int, help="Cached input tokens")
@click.option("--cache-write", default=0, type=int, help="Tokens written to the prompt cache")
def cost(model: str, input_tokens: int, output_tokens: int, cache_read: int, cache_write: int):
    """
    Price a token count for a model.

    \b
    Examples:
        parley cost claude-sonnet-4-6 -i 1000 -o 500
        parley cost sonnet -i 250000 -o 4000 --cache-read 100000
    """
    catalog = get_model_catalog()
    entry = catalog.find(model)
    vendor_model = entry.model if entry else model

    input_total = input_tokens + cache_read + cache_write
    usage = UsageSnapshot(
        input_cache_miss=input_tokens,
        input_cache_hit=cache_read,
        input_cache_write=cache_write,
        input_total=input_total,
        output=output_tokens,
        total=input_total + output_tokens,
    )
    amount = calculate_cost(usage, vendor_model, catalog.pricing)
    console.print(f"{vendor_model}: [bold]{format_cost(amount)}[/bold] ({usage.total:,} tokens)")


@cli.command()
@click.option("--month", default=None, help="Month as YYYY-MM (default: current)")
def usage(month: str | None):
    """Show recorded spend for a month."""
    catalog = get_model_catalog()
    ledger = UsageLedger(monthly_limit=catalog.engine.monthly_budget)
    summary = ledger.summary(month)

    limit = summary["limit"]
    header = f"[bold]{summary['month']}[/bold]: {format_cost(summary['total_cost'])}"
    if limit:
        header += f" of {format_cost(limit)}"
    console.print(header)
    console.print(f"[dim]{summary['calls']} calls · {summary['total_tokens']:,} tokens[/dim]")

    if not summary["calls"]:
        return

    table = Table()
    table.add_column("Model", style="cyan")
    table.add_column("Cost", justify="right")
    for name, amount in sorted(summary["by_model"].items(), key=lambda kv: kv[1], reverse=True):
        table.add_row(name, format_cost(amount))
    console.print(table)

    if ledger.is_over_budget():
        console.print("[red]Monthly budget reached; chat turns are paused.[/red]")
    elif ledger.is_near_budget():
        console.print("[yellow]Over 80% of the monthly budget used.[/yellow]")


@cli.command()
@click.option("--delete", "delete_id", default=None, help="Delete a stored session")
def sessions(delete_id: str | None):
    """List stored sessions."""
    store = SessionStore()

    if delete_id:
        if store.delete(delete_id):
            console.print(f"[green]✓[/green] Deleted {delete_id}")
        else:
            console.print(f"[yellow]Session not found:[/yellow] {delete_id}")
        return

    stored = store.list_sessions()
    if not stored:
        console.print("[dim]No sessions yet.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Model", style="dim")
    table.add_column("Messages", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Updated", style="dim")
    for s in stored:
        table.add_row(
            s.id,
            s.title or "(untitled)",
            s.model,
            str(len(s.messages)),
            format_cost(s.usage.cost),
            s.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


# =============================================================================
# Server
# =============================================================================


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", "-p", default=8000, type=int, help="Port")
def serve(host: str, port: int):
    """Run the HTTP API (AI SDK compatible /api/chat)."""
    import uvicorn

    from parley.server.app import create_app

    console.print(f"[dim]Serving on http://{host}:{port}[/dim]")
    uvicorn.run(create_app(), host=host, port=port, log_level="warning")


# =============================================================================
# Configuration
# =============================================================================


@cli.group()
def config():
    """Manage API keys."""
    pass


@config.command("set")
@click.argument("key_name", required=False)
@click.option(
    "--value",
    "-v",
    help="Set value directly (use with caution - visible in shell history)",
)
def config_set(key_name: str | None, value: str | None):
    """
    Store an API key (encrypted at rest).

    If KEY_NAME is not provided, choose from the keys parley knows.

    \b
    Examples:
        parley config set                        # Choose from a menu
        parley config set ANTHROPIC_API_KEY      # Prompt for the value
        parley config set MY_KEY -v "value"      # Set directly (not recommended)
    """
    keys = get_key_store()

    if not key_name:
        if value:
            console.print("[red]Error:[/red] KEY_NAME required when using --value")
            sys.exit(1)
        names = list(KNOWN_KEYS)
        for i, name in enumerate(names, 1):
            status = "[green]✓[/green]" if keys.get(name) else "[dim]○[/dim]"
            console.print(f"  {status} [{i}] {name} [dim]{KNOWN_KEYS[name]}[/dim]")
        choice = click.prompt("Key", type=click.IntRange(1, len(names)))
        key_name = names[choice - 1]

    if not value:
        value = click.prompt(f"Value for {key_name}", hide_input=True)

    keys.set(key_name, value)
    console.print(f"[green]✓[/green] Saved {key_name}")


@config.command("list")
def config_list():
    """List configured API keys (values are never shown)."""
    keys = get_key_store()
    stored = set(keys.list_keys())

    table = Table(title="API keys")
    table.add_column("Key", style="cyan")
    table.add_column("Description")
    table.add_column("Status")

    for name in sorted(set(KNOWN_KEYS) | stored):
        if name in stored:
            status = "[green]stored[/green]"
        elif keys.get(name):
            status = "[blue]environment[/blue]"
        else:
            status = "[dim]not set[/dim]"
        table.add_row(name, KNOWN_KEYS.get(name, ""), status)

    console.print(table)


@config.command("delete")
@click.argument("key_name")
def config_delete(key_name: str):
    """Delete a stored API key."""
    if get_key_store().delete(key_name):
        console.print(f"[green]✓[/green] Deleted {key_name}")
    else:
        console.print(f"[yellow]Key not found:[/yellow] {key_name}")


if __name__ == "__main__":
    cli()
