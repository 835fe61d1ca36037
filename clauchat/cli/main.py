"""
CLI interface for ClauChat.

A terminal front end that renders engine snapshots, plus token/cost tools.
"""

import asyncio
import signal
import sys
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from clauchat.config.loader import DEFAULT_MODEL, load_config, setup_logging
from clauchat.core.engine import ConversationEngine, EngineSnapshot, Phase
from clauchat.core.errors import UnknownModel
from clauchat.core.pricing import (
    PRICING_TABLE,
    PRICING_TABLE_URL,
    PricingTable,
    TokenKind,
    estimate,
    fetch_pricing_table,
    load_pricing_table,
)
from clauchat.core.token_counter import count_tokens
from clauchat.sdk.stream_client import OpenAIStreamTransport

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

QUIT_COMMANDS = {"/quit", "/exit"}


def _format_cost(amount: Optional[Decimal]) -> str:
    """Format a cost estimate; None means the model has no pricing."""
    if amount is None:
        return "unavailable"
    return f"${amount:,.6f}"


def _format_rate(rate: Decimal) -> str:
    return f"${rate:,.5f}"


def _load_pricing(pricing_file: Optional[str], pricing_url: Optional[str] = None) -> PricingTable:
    """A local file wins over a URL; a failed download keeps the built-in table."""
    if pricing_file is not None:
        return load_pricing_table(pricing_file)
    if pricing_url is not None:
        return fetch_pricing_table(pricing_url)
    return PRICING_TABLE


class SnapshotRenderer:
    """Prints engine snapshots as a streaming transcript."""

    def __init__(self, out: Console):
        self.out = out
        self._shown = 0
        self._in_turn = False
        self._last_error: Optional[str] = None

    def __call__(self, snapshot: EngineSnapshot) -> None:
        phase = snapshot.phase

        if snapshot.error_detail != self._last_error:
            self._last_error = snapshot.error_detail
            if snapshot.error_detail and phase is not Phase.ERRORED:
                self.out.print(f"[red]Error:[/] {snapshot.error_detail}")

        if phase is Phase.COMPOSING and not self._in_turn:
            usage = snapshot.usage
            self.out.print(
                f"[dim]{usage.pending_tokens} tokens, "
                f"session total {_format_cost(usage.estimated_cost)}[/]"
            )
        elif phase is Phase.SUBMITTING:
            self._in_turn = True
            self._shown = 0
            self.out.print("[bold cyan]Claude:[/] ", end="")
        elif phase is Phase.STREAMING:
            self._write_reply(snapshot.partial_reply or "")
        elif phase is Phase.SETTLED:
            self._write_reply(snapshot.conversation[-1].content)
            self.out.print()
            usage = snapshot.usage
            self.out.print(
                f"[dim]in {usage.input_tokens:,} / out {usage.output_tokens:,} tokens, "
                f"total {_format_cost(usage.estimated_cost)}[/]"
            )
            self._in_turn = False
        elif phase is Phase.ERRORED:
            if self._shown:
                self.out.print()
            self.out.print(f"[red]Error:[/] {snapshot.error_detail}")
            self._in_turn = False
        elif self._in_turn:
            # Left the turn without settling or failing
            self.out.print()
            self.out.print("[yellow]Reply cancelled[/]")
            self._in_turn = False

    def _write_reply(self, text: str) -> None:
        if len(text) > self._shown:
            self.out.print(text[self._shown:], end="", markup=False, highlight=False)
            self._shown = len(text)


@contextmanager
def _cancel_on_interrupt(engine: ConversationEngine):
    """Route Ctrl-C to the engine while a reply streams."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.on_cancel)
    except NotImplementedError:
        # No loop signal handlers on this platform; Ctrl-C exits instead
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _chat_session(engine: ConversationEngine) -> None:
    try:
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold]You:[/] ")
            except EOFError:
                break
            if line.strip() in QUIT_COMMANDS:
                break

            engine.on_draft_changed(line)
            if not engine.on_submit():
                continue
            with _cancel_on_interrupt(engine):
                await engine.wait_idle()
    finally:
        await engine.aclose()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """ClauChat CLI."""
    if ctx.invoked_subcommand is None:
        console.print("ClauChat - Use --help to see available commands")


@app.command()
def chat(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML config file"
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Model identifier to chat with"
    ),
    pricing_file: Optional[str] = typer.Option(
        None,
        "--pricing-file",
        "-p",
        help="Markdown pricing table to use instead of the built-in one"
    ),
    pricing_url: Optional[str] = typer.Option(
        None,
        "--pricing-url",
        help=f"Download a markdown pricing table, e.g. {PRICING_TABLE_URL}"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """
    Start an interactive chat session.

    Type a message and press Enter to send it. Ctrl-C cancels a reply
    while it streams; /quit or Ctrl-D leaves the session.
    """
    load_dotenv()
    try:
        config = load_config(config_path)
        if model:
            config = config.replace(model=model)
        if verbose:
            config = config.replace(verbose=True)
        pricing = _load_pricing(pricing_file, pricing_url)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    setup_logging(config.verbose)

    if not config.has_credentials:
        console.print("[yellow]No API key configured.[/] Set CLAUCHAT_API_KEY or add api_key to your config file.")

    engine = ConversationEngine(
        config=config,
        transport=OpenAIStreamTransport(config),
        pricing=pricing,
        on_snapshot=SnapshotRenderer(console),
    )
    console.print(f"[bold]ClauChat[/] - {config.model}. How can I help you?")

    try:
        asyncio.run(_chat_session(engine))
    except KeyboardInterrupt:
        console.print()
    sys.exit(EXIT_CODE_PASS)


@app.command("estimate")
def estimate_command(
    text: str = typer.Argument(..., help="Text to estimate"),
    model: str = typer.Option(
        DEFAULT_MODEL,
        "--model",
        "-m",
        help="Model identifier used for pricing"
    ),
    as_output: bool = typer.Option(
        False,
        "--output",
        "-o",
        help="Price the text as model output instead of input"
    ),
    pricing_file: Optional[str] = typer.Option(
        None,
        "--pricing-file",
        "-p",
        help="Markdown pricing table to use instead of the built-in one"
    ),
    pricing_url: Optional[str] = typer.Option(
        None,
        "--pricing-url",
        help=f"Download a markdown pricing table, e.g. {PRICING_TABLE_URL}"
    )
):
    """Estimate tokens and cost of a piece of text."""
    try:
        pricing = _load_pricing(pricing_file, pricing_url)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    kind = TokenKind.OUTPUT if as_output else TokenKind.INPUT
    try:
        result = estimate(text, model, kind=kind, table=pricing)
        tokens, cost = result.token_count, result.cost
    except UnknownModel:
        # Token count still works without a price
        tokens, cost = count_tokens(text), None

    console.print(f"Model: {model}")
    console.print(f"Tokens ({kind.value}): {tokens:,}")
    console.print(f"Estimated cost: {_format_cost(cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def models(
    pricing_file: Optional[str] = typer.Option(
        None,
        "--pricing-file",
        "-p",
        help="Markdown pricing table to use instead of the built-in one"
    ),
    pricing_url: Optional[str] = typer.Option(
        None,
        "--pricing-url",
        help=f"Download a markdown pricing table, e.g. {PRICING_TABLE_URL}"
    )
):
    """List models with known pricing."""
    try:
        pricing = _load_pricing(pricing_file, pricing_url)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Model pricing (USD)")
    table.add_column("Model")
    table.add_column("Input / 1K", justify="right")
    table.add_column("Output / 1K", justify="right")
    table.add_column("Max prompt", justify="right")

    for name in pricing.models():
        entry = pricing.get_pricing(name)
        max_prompt = f"{entry.max_prompt_tokens:,}" if entry.max_prompt_tokens else "-"
        table.add_row(
            name,
            _format_rate(entry.input_cost_per_1k),
            _format_rate(entry.output_cost_per_1k),
            max_prompt,
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
