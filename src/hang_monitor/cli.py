"""CLI commands for hang-monitor."""

import click


def _load_config():
    from hang_monitor.config import Config

    try:
        return Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="hang-monitor")
def main() -> None:
    """Watch system health and diagnose freezing processes."""
    pass


@main.command()
@click.option("--duration", "-d", type=float, default=None, help="Session length in seconds")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between samples")
@click.option("--admin", is_flag=True, help="Capture kernel thread stacks in dumps")
def run(duration: float | None, interval: float | None, admin: bool) -> None:
    """Run a monitoring session."""
    import asyncio

    from hang_monitor.monitor import run_monitor

    config = _load_config()
    if duration is not None:
        if duration <= 0:
            raise click.BadParameter("must be > 0", param_hint="--duration")
        config.monitor.duration = duration
    if interval is not None:
        if interval <= 0:
            raise click.BadParameter("must be > 0", param_hint="--interval")
        config.monitor.interval = interval
    if admin:
        config.monitor.admin = True

    asyncio.run(run_monitor(config))


@main.command()
@click.argument("pid", type=int)
@click.option(
    "--duration", "-d", type=float, default=0.0, help="Seconds the process has been frozen"
)
def investigate(pid: int, duration: float) -> None:
    """Run a one-shot deep investigation of PID."""
    import psutil

    from hang_monitor.engine import create_engine

    config = _load_config()
    try:
        name = psutil.Process(pid).name()
    except psutil.NoSuchProcess as e:
        raise click.ClickException(f"No process with PID {pid}") from e
    except psutil.AccessDenied as e:
        raise click.ClickException(f"Access denied for PID {pid}") from e

    engine = create_engine(config)
    sample = engine.tick().sample
    report = engine.investigator.investigate(name, pid, duration, sample)
    if report is None:
        raise click.ClickException(f"Could not investigate {name} (PID {pid})")

    click.echo(f"Process: {report.process_name} (PID {report.process_id})")
    click.echo(f"Threads: {report.total_threads} total, {report.running_threads} running")
    if report.wait_reason_counts:
        click.echo("Wait reasons:")
        for reason, count in sorted(report.wait_reason_counts.items(), key=lambda i: -i[1]):
            click.echo(f"  {reason:15} {count:>5}")
    click.echo(f"Dominant wait: {report.dominant_wait_reason or '-'}")
    click.echo(f"Likely cause: {report.likely_root_cause}")
    if report.mini_dump_path:
        click.echo(f"Dump: {report.mini_dump_path}")
        analysis = report.mini_dump_analysis
        if analysis and analysis.flagged_modules:
            click.echo(f"Flagged modules: {', '.join(analysis.flagged_modules)}")


@main.command()
@click.option("--limit", "-n", default=10, help="Number of runs to show")
def history(limit: int) -> None:
    """List saved runs with new/fixed issues against the previous run."""
    from hang_monitor.runlog import diff_runs, load_runs

    config = _load_config()
    runs = load_runs(config.runs_dir, limit=limit + 1)
    if not runs:
        click.echo("No runs recorded.")
        return

    click.echo(f"{'Time':19}  {'Health':>6}  {'Crit':>4}  {'Warn':>4}  {'New':>4}  {'Fixed':>5}")
    click.echo("-" * 52)
    # The extra oldest run only serves as the baseline for the first diff
    shown = runs[-limit:]
    offset = len(runs) - len(shown)
    for i, run in enumerate(shown):
        previous = runs[offset + i - 1] if offset + i > 0 else None
        diff = diff_runs(run, previous)
        click.echo(
            f"{run.timestamp.strftime('%Y-%m-%d %H:%M:%S')}  {run.health_score:>6}  "
            f"{run.critical_count:>4}  {run.warning_count:>4}  "
            f"{len(diff.new):>4}  {len(diff.fixed):>5}"
        )

    latest = runs[-1]
    diff = diff_runs(latest, runs[-2] if len(runs) > 1 else None)
    for key in diff.new:
        click.echo(f"  + {key.replace('|', ': ')}")
    for key in diff.fixed:
        click.echo(f"  - {key.replace('|', ': ')}")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[monitor]")
    click.echo(f"  interval = {cfg.monitor.interval}")
    click.echo(f"  duration = {cfg.monitor.duration}")
    click.echo(f"  history_size = {cfg.monitor.history_size}")
    click.echo(f"  admin = {str(cfg.monitor.admin).lower()}")
    click.echo()
    click.echo("[hangs]")
    click.echo(f"  liveness_threshold = {cfg.hangs.liveness_threshold}")
    click.echo(f"  investigate_after = {cfg.hangs.investigate_after}")
    click.echo(f"  dump_after = {cfg.hangs.dump_after}")
    click.echo(f"  dump_cooldown = {cfg.hangs.dump_cooldown}")
    click.echo()
    click.echo("[bands]")
    click.echo(f"  pressure = {cfg.bands.pressure}")
    click.echo(f"  high = {cfg.bands.high}")
    click.echo(f"  critical = {cfg.bands.critical}")
    click.echo()
    click.echo("[dumps]")
    click.echo(f"  max_files = {cfg.dumps.max_files}")
    click.echo()
    click.echo("[history]")
    click.echo(f"  max_runs = {cfg.history.max_runs}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from hang_monitor.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
