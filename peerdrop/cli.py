#!/usr/bin/env python3
"""
PeerDrop CLI

Command-line interface for code-paired file transfers.

Usage:
    peerdrop serve                 # Run the signaling service + relay
    peerdrop init                  # Get a fresh code
    peerdrop send FILE [--code C]  # Send a file (issues a code if none given)
    peerdrop receive CODE          # Receive a file into the download dir
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from .client import PeerDropClient
from .config import Config, load_config
from .errors import PeerDropError, describe

console = Console()


def setup_logging(level: str = "INFO", verbose: bool = False):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON configuration file')
@click.option('--signaling-url', help='Signaling WebSocket URL (ws://host:port/ws)')
@click.option('--relay', help='Relay address (host:port)')
@click.option('--relay-only', is_flag=True, help='Skip the direct channel')
@click.pass_context
def cli(ctx, verbose, config_path, signaling_url, relay, relay_only):
    """PeerDrop - send a file to someone with a short code."""
    config = load_config(Path(config_path) if config_path else None)
    if signaling_url:
        config.signaling_url = signaling_url
    if relay:
        try:
            host, port = relay.rsplit(':', 1)
            config.relay_host, config.relay_port = host, int(port)
        except ValueError:
            raise click.BadParameter(f"Invalid relay address: {relay} (use host:port)")
    if relay_only:
        config.prefer_direct = False

    setup_logging(config.log_level, verbose)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', help='Bind address')
@click.option('--port', type=int, help='HTTP/WebSocket port')
@click.option('--relay-port', type=int, help='Relay TCP port')
@click.pass_context
def serve(ctx, host, port, relay_port):
    """Run the signaling service and the relay."""
    config: Config = ctx.obj['config']
    if host:
        config.api_host = host
    if port:
        config.api_port = port
    if relay_port:
        config.relay_port = relay_port

    console.print(Panel.fit(
        f"[bold green]PeerDrop Signaling Service[/bold green]\n\n"
        f"WebSocket: [cyan]ws://{config.api_host}:{config.api_port}/ws[/cyan]\n"
        f"Relay: [yellow]{config.api_host}:{config.relay_port}[/yellow]\n"
        f"Code TTL: [yellow]{config.code_ttl:.0f}s[/yellow]",
        title="Service Info"
    ))

    from .api import run_signaling_server
    try:
        asyncio.run(run_signaling_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.pass_context
def init(ctx):
    """Get a fresh code from the signaling service."""
    client = PeerDropClient(ctx.obj['config'])
    try:
        code = asyncio.run(client.init_transfer())
    except PeerDropError as e:
        console.print(f"[red]✗ {describe(e)}[/red]")
        raise SystemExit(1)
    console.print(Panel.fit(f"[bold green]{code}[/bold green]", title="Your Code"))


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--code', '-c', help='Use this code instead of requesting one')
@click.pass_context
def send(ctx, file_path, code):
    """Send a file."""
    client = PeerDropClient(ctx.obj['config'])
    file_path = Path(file_path)

    async def run():
        nonlocal code
        if not code:
            code = await client.init_transfer()
        console.print(Panel.fit(
            f"Share this code with the receiver:\n\n[bold green]{code}[/bold green]",
            title=file_path.name
        ))

        session = await client.connect(code, 'sender')
        console.print(f"[dim]Connected over {session.kind} channel[/dim]")
        try:
            with _progress_bar() as progress:
                task = progress.add_task("Sending...", total=100)

                def update_progress(p):
                    progress.update(
                        task,
                        completed=p.progress_percent,
                        description=f"Sending... ({p.chunks_done}/{p.total_chunks} chunks)"
                    )

                result = await client.send_file(session, file_path, on_progress=update_progress)
                progress.update(task, completed=100, description="Done!")
        finally:
            await client.disconnect(session)

        console.print(f"\n[green]✓ Sent {result.file_name} "
                      f"({format_size(result.total_size)}) in {result.elapsed_seconds:.1f}s[/green]")

    _run(run())


@cli.command()
@click.argument('code')
@click.option('--output', '-o', type=click.Path(file_okay=False),
              help='Directory to save into')
@click.pass_context
def receive(ctx, code, output):
    """Receive a file sent with CODE."""
    client = PeerDropClient(ctx.obj['config'])
    output_dir: Optional[Path] = Path(output) if output else None

    async def run():
        session = await client.connect(code, 'receiver')
        console.print(f"[dim]Connected over {session.kind} channel[/dim]")
        try:
            with _progress_bar() as progress:
                task = progress.add_task("Waiting for file...", total=100)

                def update_progress(p):
                    progress.update(
                        task,
                        completed=p.progress_percent,
                        description=f"Receiving {p.file_name}... "
                                    f"({p.chunks_done}/{p.total_chunks} chunks)"
                    )

                received = await client.receive(session, on_progress=update_progress)
                progress.update(task, completed=100, description="Done!")
        finally:
            await client.disconnect(session)

        path = await client.save(received, output_dir)
        console.print(f"\n[green]✓ Saved to: {path} ({format_size(received.size)})[/green]")

    _run(run())


def _progress_bar() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    )


def _run(coro):
    """Run a transfer command, turning core errors into one red line."""
    try:
        asyncio.run(coro)
    except (PeerDropError, OSError) as e:
        console.print(f"\n[red]✗ {describe(e)}[/red]")
        raise SystemExit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        raise SystemExit(130)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
