# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command line interface for the delivery core.

Commands:
    deliver: Deliver an RFC 5322 message file to one or more targets.
    bench: Measure full delivery transactions per second.

Example::

    mail-delivery deliver message.eml --from alice@example.org \\
        --to bob@example.org --to carol@example.org \\
        --maildir /var/mail --smtp smtp.example.org:25

    mail-delivery bench --maildir /tmp/bench -n 200 --rcpt rcpt-X@example.org
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .buffer import BufferFactory
from .config import DeliveryConfig
from .errors import DeliveryError, PartialCommitError
from .metadata import MsgMetadata
from .pipeline import deliver, read_message
from .registry import TargetRegistry
from .status import AggregationPolicy, StatusCollector
from .testing import RecordingTarget, bench_delivery

console = Console()


def _run_async(coro: Any) -> Any:
    """Run async coroutine in synchronous Click command context."""
    return asyncio.run(coro)


def _parse_smtp(value: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep:
        return value, 25
    try:
        return host, int(port)
    except ValueError:
        raise click.BadParameter(f"Invalid port in '{value}'") from None


def _print_status(status: StatusCollector) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Detail")
    for rcpt, err in status.items():
        if err is None:
            table.add_row(rcpt, "[green]accepted[/green]", "[dim]-[/dim]")
        else:
            table.add_row(rcpt, "[red]rejected[/red]", str(err))
    console.print(table)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Mail delivery transaction core."""
    level = "DEBUG" if verbose else os.getenv("MDC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


@cli.command("deliver")
@click.argument("message", type=click.File("rb"))
@click.option("--from", "mail_from", required=True, help="Envelope sender.")
@click.option("--to", "rcpts", multiple=True, required=True, help="Envelope recipient (repeatable).")
@click.option("--maildir", type=click.Path(file_okay=False), help="Deliver into maildirs below this directory.")
@click.option("--auto-create", is_flag=True, help="Create missing mailboxes.")
@click.option("--smtp", "relays", multiple=True, help="Relay to HOST[:PORT] (repeatable).")
@click.option("--policy", type=click.Choice([p.value for p in AggregationPolicy]),
              help="Recipient aggregation policy for multiple targets.")
@click.option("--threshold-kb", type=float, help="Spool bodies larger than this to disk.")
def deliver_command(message, mail_from: str, rcpts: tuple[str, ...], maildir: str | None,
                    auto_create: bool, relays: tuple[str, ...], policy: str | None,
                    threshold_kb: float | None) -> None:
    """Deliver MESSAGE (an RFC 5322 file, '-' for stdin)."""
    config = DeliveryConfig.from_env()
    if threshold_kb is not None:
        config.buffer.memory_threshold_kb = threshold_kb

    registry = TargetRegistry(config)
    if maildir:
        registry.create("maildir", "local", root=maildir, auto_create=auto_create)
    for i, relay in enumerate(relays):
        host, port = _parse_smtp(relay)
        registry.create("smtp", f"relay{i}" if len(relays) > 1 else "relay", host=host, port=port)
    if not len(registry):
        console.print("[red]Error:[/red] No target configured. Use --maildir and/or --smtp.")
        sys.exit(1)

    if len(registry) > 1:
        options = {"policy": policy} if policy else {}
        target = registry.create("fanout", "fanout", targets=registry.names(), **options)
    else:
        target = registry.get(registry.names()[0])

    async def run() -> StatusCollector:
        factory = BufferFactory(config.buffer)
        header, buffer = await read_message(message, factory)
        try:
            return await deliver(target, MsgMetadata.new(), mail_from, rcpts, header, buffer,
                                 log_activity=config.log_delivery_activity)
        finally:
            buffer.remove()

    try:
        status = _run_async(run())
    except PartialCommitError as exc:
        console.print(f"[yellow]Partial delivery:[/yellow] {exc}")
        for name, rcpt, err in exc.failed:
            console.print(f"  [red]{rcpt}[/red] via {name}: {err}")
        sys.exit(2)
    except DeliveryError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)

    _print_status(status)


@cli.command("bench")
@click.option("--maildir", type=click.Path(file_okay=False),
              help="Benchmark a maildir target rooted here (default: in-memory target).")
@click.option("-n", "--iterations", type=int, default=100, show_default=True)
@click.option("--rcpt", "rcpt_templates", multiple=True,
              help="Recipient template, X is replaced with the index (repeatable).")
@click.option("--sender", default="sender@example.org", show_default=True)
def bench_command(maildir: str | None, iterations: int, rcpt_templates: tuple[str, ...], sender: str) -> None:
    """Run full delivery transactions and report throughput."""
    templates = list(rcpt_templates) or ["rcpt-X@example.org"]
    registry = TargetRegistry()

    async def run():
        if maildir:
            target = registry.create("maildir", "bench", root=maildir, auto_create=True)
            return await bench_delivery(target, sender, templates, iterations)
        target = registry.register(RecordingTarget("bench"))
        result = await bench_delivery(target, sender, templates, iterations)
        target.messages.clear()
        return result

    if maildir:
        os.makedirs(maildir, exist_ok=True)
    try:
        result = _run_async(run())
    except DeliveryError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)

    console.print("\n[bold]Delivery benchmark[/bold]\n")
    console.print(f"  Target:      {registry.names()[0]} ({maildir or 'in-memory'})")
    console.print(f"  Recipients:  {len(templates)}")
    console.print(f"  Iterations:  {result.iterations}")
    console.print(f"  Elapsed:     {result.elapsed:.3f}s")
    console.print(f"  Throughput:  {result.per_second:.1f} deliveries/s")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
