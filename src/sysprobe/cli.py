"""CLI commands for sysprobe."""

import click


def _load_config():
    """Load config, turning validation errors into a clean exit."""
    from sysprobe import logging as splog
    from sysprobe.config import Config

    try:
        return Config.load()
    except ValueError as e:
        splog.config_invalid(str(e))
        raise SystemExit(1)


def _start(config):
    """Set up file logging and build a System from `config`."""
    from sysprobe import logging as splog
    from sysprobe.system import System

    splog.configure(config)
    system = System.from_config(config)
    splog.backend_selected(type(system.source).__name__)
    return system


@click.group()
@click.version_option(package_name="sysprobe")
def main() -> None:
    """Inspect processes and system load."""
    pass


@main.command()
@click.option(
    "--sort",
    "sort_key",
    type=click.Choice(["cpu", "mem", "pid"]),
    default="cpu",
    help="Column to sort by",
)
@click.option("--limit", "-n", default=20, help="Number of processes to show")
@click.option("--interval", type=float, default=None, help="Seconds between samples")
@click.option("--name", default=None, help="Only processes whose name contains this")
def ps(sort_key: str, limit: int, interval: float | None, name: str | None) -> None:
    """Show the busiest processes.

    Takes two samples `interval` seconds apart so CPU usage covers a real
    measurement window.
    """
    import time

    from sysprobe import logging as splog
    from sysprobe.formatting import format_bytes, format_command
    from sysprobe.process import RefreshOptions

    config = _load_config()
    if interval is None:
        interval = config.refresh.interval
    if interval <= 0:
        click.echo("Error: --interval must be > 0", err=True)
        raise SystemExit(1)

    options = RefreshOptions.default().with_cmd()
    with _start(config) as system:
        if not system.refresh_all(options):
            splog.enumeration_failed("no processes could be read")
            raise SystemExit(1)
        splog.sampling(interval)
        time.sleep(interval)
        system.refresh_all(options)
        stats = system.last_stats
        splog.refresh_summary(
            stats.examined, stats.created, len(stats.removed), stats.elapsed_ms
        )

        if name is not None:
            records = system.processes_by_name(name)
        else:
            records = list(system.processes().values())
        if sort_key == "cpu":
            records.sort(key=lambda r: (-r.cpu_usage, r.pid))
        elif sort_key == "mem":
            records.sort(key=lambda r: (-r.memory, r.pid))
        else:
            records.sort(key=lambda r: r.pid)

        click.echo(
            f"{'PID':>7}  {'CPU%':>6}  {'MEM':>8}  {'THR':>4}  {'STATUS':<10}  COMMAND"
        )
        click.echo("-" * 72)
        for rec in records[:limit]:
            threads = 1 + (len(rec.tasks) if rec.tasks is not None else 0)
            click.echo(
                f"{rec.pid:>7}  {rec.cpu_usage:>6.1f}  {format_bytes(rec.memory):>8}  "
                f"{threads:>4}  {str(rec.status)[:10]:<10}  "
                f"{format_command(rec.cmd, rec.name, width=32)}"
            )


@main.command()
@click.argument("pid", type=int)
def show(pid: int) -> None:
    """Show everything known about one process."""
    from datetime import datetime

    from sysprobe import logging as splog
    from sysprobe.formatting import format_bytes, format_seconds
    from sysprobe.process import RefreshOptions

    config = _load_config()
    with _start(config) as system:
        system.refresh_some([pid], RefreshOptions.everything())
        rec = system.process(pid)
        if rec is None or not rec.exists:
            splog.process_not_found(pid)
            raise SystemExit(1)

        started = datetime.fromtimestamp(rec.start_time).strftime("%Y-%m-%d %H:%M:%S")
        disk = rec.disk_usage()
        click.echo(f"PID: {rec.pid}")
        click.echo(f"Name: {rec.name}")
        click.echo(f"Parent: {rec.parent if rec.parent is not None else '-'}")
        click.echo(f"Status: {rec.status}")
        click.echo(f"Started: {started} ({format_seconds(rec.run_time)} ago)")
        click.echo(f"CPU time: {rec.accumulated_cpu_time / 1000:.2f}s")
        click.echo(
            f"Memory: {format_bytes(rec.memory)} resident, "
            f"{format_bytes(rec.virtual_memory)} virtual"
        )
        click.echo(
            f"Disk: {format_bytes(disk.total_read_bytes)} read, "
            f"{format_bytes(disk.total_written_bytes)} written"
        )
        if rec.user_id is not None:
            click.echo(
                f"User: uid={rec.user_id} euid={rec.effective_user_id} "
                f"gid={rec.group_id} egid={rec.effective_group_id}"
            )
        click.echo(f"Exe: {rec.exe or '-'}")
        click.echo(f"Cwd: {rec.cwd or '-'}")
        click.echo(f"Root: {rec.root or '-'}")
        click.echo(f"Command: {' '.join(rec.cmd) if rec.cmd else '-'}")
        if rec.tasks is not None:
            click.echo(f"Threads: {1 + len(rec.tasks)}")
        if rec.environ:
            click.echo(f"\nEnvironment ({len(rec.environ)}):")
            for entry in rec.environ:
                click.echo(f"  {entry}")


@main.command()
@click.option("--interval", type=float, default=None, help="Seconds between CPU samples")
def stats(interval: float | None) -> None:
    """Show system-wide CPU, memory and load."""
    import time

    from sysprobe.formatting import format_bytes, format_seconds
    from sysprobe.governor import default_governor

    config = _load_config()
    if interval is None:
        interval = config.refresh.interval

    with _start(config) as system:
        system.refresh_cpu()
        time.sleep(max(0.0, interval))
        cpu = system.refresh_cpu()
        mem = system.refresh_memory()
        load = system.load_average()
        governor = default_governor()

        click.echo(f"CPU: {cpu:.1f}% of {system.cpu_count()} cores")
        per_core = " ".join(f"{usage:.0f}%" for usage in system.cpu_usages())
        click.echo(f"Per core: {per_core or '-'}")
        click.echo(
            f"Memory: {format_bytes(mem.used)} used / {format_bytes(mem.total)} "
            f"({format_bytes(mem.available)} available)"
        )
        click.echo(f"Swap: {format_bytes(mem.swap_used)} used / {format_bytes(mem.swap_total)}")
        click.echo(f"Load: {load.one:.2f} {load.five:.2f} {load.fifteen:.2f}")
        click.echo(f"Uptime: {format_seconds(system.uptime())}")
        click.echo(f"Handle budget: {governor.in_use}/{governor.budget} in use")


@main.command()
@click.argument("pid", type=int)
@click.option(
    "--signal", "-s", "sig_name", default="TERM", help="Signal to send, e.g. TERM, KILL, HUP"
)
def kill(pid: int, sig_name: str) -> None:
    """Send a signal to a process."""
    import signal

    from sysprobe import logging as splog
    from sysprobe.process import RefreshOptions

    name = sig_name.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        sig = signal.Signals[name]
    except KeyError:
        click.echo(f"Error: unknown signal {sig_name}", err=True)
        raise SystemExit(1)

    config = _load_config()
    with _start(config) as system:
        system.refresh_some([pid], RefreshOptions.nothing())
        rec = system.process(pid)
        if rec is None or not rec.exists:
            splog.process_not_found(pid)
            raise SystemExit(1)
        if not rec.kill(sig):
            splog.signal_failed(pid, sig.name)
            raise SystemExit(1)
        splog.signal_sent(pid, rec.name, sig.name)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool) -> None:
    """Write a config file with default values."""
    from sysprobe import logging as splog
    from sysprobe.config import Config

    cfg = Config()
    if cfg.config_path.exists() and not force:
        splog.config_exists(str(cfg.config_path))
        return
    cfg.save()
    splog.config_created(str(cfg.config_path))


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[refresh]")
    click.echo(f"  workers = {cfg.refresh.workers}")
    click.echo(f"  interval = {cfg.refresh.interval}")
    click.echo(f"  open_files_limit = {cfg.refresh.open_files_limit}")
    click.echo(f"  backend = {cfg.refresh.backend}")
    click.echo()
    click.echo("[logging]")
    click.echo(f"  level = {cfg.logging.level}")
    click.echo(f"  log_max_bytes = {cfg.logging.log_max_bytes}")
    click.echo(f"  log_backup_count = {cfg.logging.log_backup_count}")
