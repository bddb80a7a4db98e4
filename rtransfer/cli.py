#!/usr/bin/env python3
"""
Resumable File Transfer CLI

Usage:
    rtransfer upload HOST PORT FILENAME      # Push a file, resuming if possible
    rtransfer download HOST PORT FILENAME    # Pull a file, appending to a partial copy
    rtransfer serve --root DIR               # Run the responder

Exit status is 0 when the transfer completed and non-zero otherwise.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.progress import (
    Progress, TextColumn, BarColumn, DownloadColumn, TransferSpeedColumn,
)
from rich.logging import RichHandler

from .config import Config, load_config, EXAMPLE_CONFIG
from .file import FileStore, ProgressLedger
from .transfer import (
    TransferInitiator, TransferResponder, TransferSession, TransferError,
)

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_time=False, show_path=False)],
        force=True,
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False, path_type=Path),
              help='JSON config file')
@click.option('--timeout', type=float, default=None,
              help='I/O timeout in seconds (0 disables)')
@click.option('--chunk-size', type=click.IntRange(min=1), default=None,
              help='Bytes per read/write')
@click.pass_context
def cli(ctx, verbose, config_path, timeout, chunk_size):
    """Resumable point-to-point file transfer."""
    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.UsageError(f"Invalid configuration: {e}")

    if timeout is not None:
        config.io_timeout = timeout if timeout > 0 else None
    if chunk_size is not None:
        config.chunk_size = chunk_size

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


def _make_initiator(config: Config, host: str, port: int) -> TransferInitiator:
    return TransferInitiator(
        host,
        port,
        chunk_size=config.chunk_size,
        io_timeout=config.io_timeout,
        ledger=ProgressLedger(config.ledger_suffix, config.ledger_tmp_suffix),
    )


def _run_transfer(ctx, label: str, transfer) -> TransferSession:
    """Run one initiator coroutine factory with a progress bar; exit 1 on failure."""

    async def run():
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(label, total=None)

            def update_progress(session: TransferSession):
                progress.update(
                    task,
                    total=session.total_size,
                    completed=session.transferred,
                )

            return await transfer(update_progress)

    try:
        return asyncio.run(run())
    except TransferError as e:
        err_console.print(f"[red]✗ {label} failed: {e}[/red]")
        ctx.exit(1)


@cli.command()
@click.argument('host')
@click.argument('port', type=click.IntRange(1, 65535))
@click.argument('filename', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--remote-name', default=None, help='Name on the server (default: base name)')
@click.pass_context
def upload(ctx, host, port, filename, remote_name):
    """Upload FILENAME to the server at HOST:PORT."""
    config = ctx.obj['config']
    initiator = _make_initiator(config, host, port)

    session = _run_transfer(
        ctx, 'Upload',
        lambda cb: initiator.upload(filename, remote_name, progress_callback=cb)
    )
    console.print(
        f"[green]✓ Upload finished: {session.filename} "
        f"sent={session.transferred:,} "
        f"(resumed at {session.agreement.offset:,})[/green]"
    )


@cli.command()
@click.argument('host')
@click.argument('port', type=click.IntRange(1, 65535))
@click.argument('filename', type=click.Path(dir_okay=False, path_type=Path))
@click.option('--remote-name', default=None, help='Name on the server (default: base name)')
@click.pass_context
def download(ctx, host, port, filename, remote_name):
    """Download FILENAME from the server at HOST:PORT."""
    config = ctx.obj['config']
    initiator = _make_initiator(config, host, port)

    session = _run_transfer(
        ctx, 'Download',
        lambda cb: initiator.download(filename, remote_name, progress_callback=cb)
    )
    console.print(
        f"[green]✓ Download complete: {filename} "
        f"(size={session.total_size:,}, resumed at {session.agreement.offset:,})[/green]"
    )


@cli.command()
@click.option('--host', default=None, help='Listen address')
@click.option('--port', type=click.IntRange(0, 65535), default=None, help='Listen port')
@click.option('--root', 'root_dir', type=click.Path(file_okay=False, path_type=Path),
              default=None, help='Directory holding canonical files')
@click.pass_context
def serve(ctx, host, port, root_dir):
    """Run the transfer server."""
    config = ctx.obj['config']
    host = host or config.host
    port = config.port if port is None else port
    root_dir = root_dir or config.root_dir

    async def run():
        responder = TransferResponder(
            FileStore(root_dir),
            host=host,
            port=port,
            chunk_size=config.chunk_size,
            io_timeout=config.io_timeout,
            max_mode_length=config.max_mode_length,
            max_filename_length=config.max_filename_length,
        )
        await responder.start()
        console.print(f"Server listening on {responder.address[0]}:{responder.address[1]}...")
        console.print(f"[dim]Serving files from {responder.store.root_dir}[/dim]")
        try:
            await responder.serve_forever()
        finally:
            await responder.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")
    except OSError as e:
        err_console.print(f"[red]Cannot start server: {e}[/red]")
        ctx.exit(1)


@cli.command('example-config')
def example_config():
    """Print an example configuration file."""
    click.echo(EXAMPLE_CONFIG.strip())


def main(argv: Optional[list] = None):
    cli(args=argv)


if __name__ == '__main__':
    main()
