"""CLI commands for SQLock."""

import asyncio
import sys
import time

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from sqlock import __logo__, __version__

app = typer.Typer(
    name="sqlock",
    help=f"{__logo__} SQLock - named locks held by a database session",
    no_args_is_help=True,
)

console = Console()

_LOG_FORMAT = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}"


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} SQLock v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    from sqlock.settings import get_settings

    level = "DEBUG" if verbose else get_settings().log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=_LOG_FORMAT)
    logger.enable("sqlock")


def _redacted(url: str) -> str:
    from sqlalchemy.engine import make_url

    return make_url(url).render_as_string(hide_password=True)


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log lock protocol details (DEBUG)"),
):
    """SQLock - named locks held by a database session."""
    _configure_logging(verbose)


# ============================================================================
# Lock Commands
# ============================================================================


@app.command()
def take(
    key: str = typer.Argument(..., help="Lock key"),
    hold: int = typer.Option(5000, "--hold", min=0, help="Milliseconds to hold the lock once acquired"),
    timeout: float = typer.Option(
        None, "--timeout", min=0, help="Seconds to wait for the lock (default: SQLOCK_LOCK_TIMEOUT_SECONDS)"
    ),
):
    """Take a named lock, hold it, then release it."""
    from sqlock.errors import LockError
    from sqlock.lock.factory import DistributedLockFactory

    start = time.perf_counter()

    def stamp(message: str) -> None:
        elapsed = int((time.perf_counter() - start) * 1000)
        console.print(f"[{elapsed}ms] {message}", markup=False, highlight=False, soft_wrap=True)

    async def run() -> bool:
        factory = DistributedLockFactory.from_settings()
        try:
            lock = factory.create_lock(key)
            async with lock:
                stamp(f"Attempting to take lock '{key}' (session {lock.session_id})")
                try:
                    await lock.take(timeout)
                except LockError as e:
                    stamp(f"Failed to take lock '{key}': {e}")
                    return False
                stamp(f"Successfully acquired lock '{key}', holding for {hold}ms")
                await asyncio.sleep(hold / 1000)
                stamp(f"Releasing lock '{key}'")
            stamp(f"Lock '{key}' released")
            return True
        finally:
            await factory.dispose()

    if not asyncio.run(run()):
        raise typer.Exit(1)


@app.command()
def check():
    """Test the database connection."""
    from sqlock.settings import get_settings
    from sqlock.storage.database import check_connection, create_lock_engine

    settings = get_settings()
    console.print(f"Connecting to {_redacted(settings.database_url)}")

    async def run() -> bool:
        engine = create_lock_engine(settings)
        try:
            return await check_connection(engine)
        finally:
            await engine.dispose()

    if asyncio.run(run()):
        console.print("[green]✓[/green] Database connection OK")
    else:
        console.print("[red]✗[/red] Database connection failed")
        raise typer.Exit(1)


@app.command()
def inspect(
    key: str = typer.Argument(..., help="Lock key"),
):
    """Show whether a key is currently locked."""
    from sqlock.backends.postgres import advisory_lock_id
    from sqlock.errors import LockTransportError
    from sqlock.settings import get_settings
    from sqlock.storage.database import advisory_lock_parts, count_granted_locks, create_lock_engine

    async def run() -> int:
        engine = create_lock_engine(get_settings())
        try:
            return await count_granted_locks(key, engine)
        finally:
            await engine.dispose()

    try:
        granted = asyncio.run(run())
    except LockTransportError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    classid, objid = advisory_lock_parts(key)
    table = Table(title="Lock Status")
    table.add_column("Key", style="cyan")
    table.add_column("Advisory lock id", style="yellow")
    table.add_column("classid / objid", style="dim")
    table.add_column("Held", style="green")
    table.add_row(
        key,
        str(advisory_lock_id(key)),
        f"{classid} / {objid}",
        "[green]yes[/green]" if granted else "[dim]no[/dim]",
    )
    console.print(table)


# ============================================================================
# Demo
# ============================================================================


@app.command()
def demo(
    scenario: list[str] = typer.Option(
        None, "--scenario", "-s", help="Scenario to run (repeatable, default: all)"
    ),
    skip_inter_process: bool = typer.Option(
        False, "--skip-inter-process", help="Skip the scenario that spawns child processes"
    ),
    in_memory: bool = typer.Option(
        False, "--in-memory", help="Run against an in-process lock server instead of the database"
    ),
):
    """Run the self-checking lock scenarios and print a summary."""
    from sqlock.backends.memory import InMemoryLockServer
    from sqlock.demo import DemoContext, DemoRunner, memory_probe, postgres_probe
    from sqlock.lock.factory import DistributedLockFactory
    from sqlock.settings import get_settings

    if in_memory:
        server = InMemoryLockServer()
        factory = DistributedLockFactory(server, default_timeout=get_settings().lock_timeout_seconds)
        ctx = DemoContext(factory=factory, probe=memory_probe(server))
        # child processes cannot see an in-process server
        skip_inter_process = True
    else:
        factory = DistributedLockFactory.from_settings()
        ctx = DemoContext(factory=factory, probe=postgres_probe(factory.source.engine))

    runner = DemoRunner(ctx)
    try:
        runner.select(scenario)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--scenario")

    async def run():
        try:
            return await runner.run(scenario, skip_processes=skip_inter_process)
        finally:
            await factory.dispose()

    results = asyncio.run(run())

    table = Table(title=f"{__logo__} Demo Results")
    table.add_column("Scenario", style="cyan")
    table.add_column("Result")
    table.add_column("Elapsed", justify="right", style="yellow")
    table.add_column("Detail")
    for result in results:
        table.add_row(
            result.name,
            "[green]PASS[/green]" if result.passed else "[red]FAIL[/red]",
            f"{result.elapsed_ms}ms",
            result.detail,
        )
    console.print(table)

    failed = [r.name for r in results if not r.passed]
    if failed:
        console.print(f"[red]{len(failed)} scenario(s) failed:[/red] {', '.join(failed)}")
        raise typer.Exit(1)
    console.print(f"[green]All {len(results)} scenario(s) passed[/green]")


if __name__ == "__main__":
    app()
