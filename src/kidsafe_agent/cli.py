"""Command-line interface for the KidSafe agent using Click."""

import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .common import (
    FIREBASE_SYNC_CATEGORY,
    ensure_log_dir,
    get_audit_log_file,
    get_log_dir,
)
from .config import load_config
from .exceptions import (
    ConfigurationError,
    DomainValidationError,
    HostsReadError,
    KidSafeError,
)
from .normalizer import require_domain
from .rule_store import MANUAL_CATEGORY
from .service import AgentService

# =============================================================================
# LOGGING SETUP
# =============================================================================


def get_app_log_file() -> Path:
    """Get the app log file path."""
    return get_log_dir() / "app.log"


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration.

    Configures a file handler and a console handler, without adding
    duplicates if called more than once.

    Args:
        verbose: If True, sets log level to DEBUG; otherwise INFO.
    """
    ensure_log_dir()

    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(level)
        return

    root_logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(get_app_log_file())
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


logger = logging.getLogger(__name__)
console = Console(highlight=False)

CONFIG_DIR_OPTION = click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Config directory (default: auto-detect)",
)


def _load_service(config_dir: Optional[Path]) -> AgentService:
    """Load configuration and build the service; exits on config errors."""
    try:
        config = load_config(config_dir)
        return AgentService(config)
    except ConfigurationError as e:
        console.print(f"\n  [red]Config error: {e}[/red]\n", highlight=False)
        sys.exit(1)
    except KidSafeError as e:
        console.print(f"\n  [red]Error: {e}[/red]\n", highlight=False)
        sys.exit(1)


def _fail(message: Any) -> None:
    console.print(f"\n  [red]Error: {message}[/red]\n", highlight=False)
    sys.exit(1)


# =============================================================================
# CLICK CLI
# =============================================================================


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="kidsafe-agent")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.pass_context
def main(ctx: click.Context, no_color: bool) -> None:
    """KidSafe PC agent - hosts file blocking synced from the family app."""
    if no_color:
        console.no_color = True

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.command()
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.option("--no-cleanup", is_flag=True, help="Leave blocked domains in place on exit")
@CONFIG_DIR_OPTION
def run(verbose: bool, no_cleanup: bool, config_dir: Optional[Path]) -> None:
    """Run the agent until interrupted."""
    setup_logging(verbose)
    service = _load_service(config_dir)

    def _request_stop(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        service.stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        service.start()
    except HostsReadError as e:
        _fail(e)

    mode = "remote sync" if service.remote is not None else "local rules only"
    console.print(f"\n  [green]Agent running ({mode})[/green]. Press Ctrl+C to stop.\n")
    try:
        while not service.stop_event.wait(1):
            pass
    finally:
        service.stop(cleanup=not no_cleanup)


@main.command()
@click.argument("domain")
@click.option("--category", default=MANUAL_CATEGORY, show_default=True, help="Rule category")
@click.option("--reason", default="", help="Why the domain is blocked")
@CONFIG_DIR_OPTION
def block(domain: str, category: str, reason: str, config_dir: Optional[Path]) -> None:
    """Block a DOMAIN and store it as a rule."""
    service = _load_service(config_dir)
    try:
        service.initialize()
        rule = service.add_rule(domain, category=category, reason=reason)
        console.print(f"\n  [green]Blocked: {rule.domain}[/green] (rule #{rule.id})\n")
    except DomainValidationError as e:
        _fail(e)
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()


@main.command()
@click.argument("domain")
@CONFIG_DIR_OPTION
def unblock(domain: str, config_dir: Optional[Path]) -> None:
    """Remove the local rules for a DOMAIN and unblock it."""
    service = _load_service(config_dir)
    try:
        target = require_domain(domain)
        rules = [r for r in service.list_rules() if r.domain == target]
        local_rules = [r for r in rules if r.category != FIREBASE_SYNC_CATEGORY]
        if not local_rules:
            if rules:
                console.print(
                    f"\n  [yellow]'{target}' is blocked from the family app and can only be "
                    f"unblocked there[/yellow]\n"
                )
            else:
                console.print(f"\n  [yellow]'{target}' is not blocked[/yellow]\n")
            return

        service.initialize()
        for rule in local_rules:
            service.delete_rule(rule.id)
        console.print(f"\n  [green]Unblocked: {target}[/green]\n")
        if len(local_rules) < len(rules):
            console.print("  [yellow]Still blocked by a rule synced from the family app[/yellow]\n")
    except DomainValidationError as e:
        _fail(e)
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()


@main.command()
@click.option("--category", default=None, help="Only show rules of this category")
@CONFIG_DIR_OPTION
def rules(category: Optional[str], config_dir: Optional[Path]) -> None:
    """List stored block rules."""
    service = _load_service(config_dir)
    try:
        stored = service.list_rules(category)
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()

    if not stored:
        console.print("\n  No rules stored\n")
        return

    table = Table(title=f"Block rules ({len(stored)})")
    table.add_column("ID", justify="right")
    table.add_column("Domain")
    table.add_column("Category")
    table.add_column("Active")
    table.add_column("Reason")
    table.add_column("Created")
    for rule in stored:
        active = "[green]yes[/green]" if rule.is_active else "[red]no[/red]"
        table.add_row(
            str(rule.id), rule.domain, rule.category, active, rule.reason, rule.created_at
        )
    console.print(table)


@main.command()
@CONFIG_DIR_OPTION
def status(config_dir: Optional[Path]) -> None:
    """Show current blocking status."""
    service = _load_service(config_dir)
    try:
        on_disk = service.verify_hosts_file()
        stored = service.list_rules()
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()

    by_category: dict[str, int] = {}
    for rule in stored:
        if rule.is_active:
            by_category[rule.category] = by_category.get(rule.category, 0) + 1

    console.print("\n  [bold]KidSafe Agent Status[/bold]")
    console.print("  [bold]--------------------[/bold]")
    console.print(f"  Version: {__version__}")
    console.print(f"  Hosts file: {service.hosts.hosts_path}")
    console.print(f"  Hosts entries: [bold]{len(on_disk)}[/bold]")
    if service.remote is not None:
        console.print(f"  Remote sync: [green]enabled[/green] (family {service.config['family_id']})")
    else:
        console.print("  Remote sync: [yellow]disabled[/yellow]")

    console.print(f"\n  [bold]Active rules ({sum(by_category.values())}):[/bold]")
    for name, count in sorted(by_category.items()):
        console.print(f"    {name}: {count}")
    console.print()


@main.command()
@CONFIG_DIR_OPTION
def verify(config_dir: Optional[Path]) -> None:
    """Check the managed section of the hosts file."""
    service = _load_service(config_dir)
    try:
        found = service.verify_hosts_file()
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()

    if not found:
        console.print("\n  [yellow]No managed entries in the hosts file[/yellow]\n")
        return

    console.print(f"\n  [bold]Managed hosts entries ({len(found)}):[/bold]")
    bad = 0
    for hostname, ok in sorted(found.items()):
        if ok:
            console.print(f"    [green][✓][/green] {hostname}")
        else:
            bad += 1
            console.print(f"    [red][✗][/red] {hostname} (wrong address)")
    console.print()
    if bad:
        sys.exit(1)


@main.command("test")
@click.argument("domain")
@CONFIG_DIR_OPTION
def test_domain(domain: str, config_dir: Optional[Path]) -> None:
    """Check whether DOMAIN resolves to the block address."""
    service = _load_service(config_dir)
    try:
        blocked = service.test_domain_blocking(domain)
    except DomainValidationError as e:
        _fail(e)
    finally:
        service.store.close()

    if blocked:
        console.print(f"\n  [green]{domain} is blocked[/green]\n")
    else:
        console.print(f"\n  [red]{domain} is NOT blocked[/red]\n", highlight=False)
        sys.exit(1)


@main.command()
@click.option("--local", "local_only", is_flag=True, help="Only re-apply stored rules")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@CONFIG_DIR_OPTION
def sync(local_only: bool, verbose: bool, config_dir: Optional[Path]) -> None:
    """Fetch the family block list now and apply it."""
    setup_logging(verbose)
    service = _load_service(config_dir)
    try:
        service.initialize()
        if local_only or service.remote is None:
            domains = service.sync_rules_to_hosts()
        else:
            domains = service.force_sync()
        console.print(f"\n  [green]Sync complete: {len(domains)} domains blocked[/green]\n")
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()


@main.command()
@CONFIG_DIR_OPTION
def restore(config_dir: Optional[Path]) -> None:
    """Restore the hosts file saved before blocking started."""
    service = _load_service(config_dir)
    try:
        service.restore_original()
        console.print("\n  [green]Original hosts file restored[/green]\n")
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()


@main.command()
@CONFIG_DIR_OPTION
def cleanup(config_dir: Optional[Path]) -> None:
    """Remove all agent entries from the hosts file."""
    service = _load_service(config_dir)
    try:
        service.hosts.cleanup()
        console.print("\n  [green]Hosts file cleaned up[/green]\n")
    except KidSafeError as e:
        _fail(e)
    finally:
        service.store.close()


@main.command()
@CONFIG_DIR_OPTION
def health(config_dir: Optional[Path]) -> None:
    """Perform health checks."""
    console.print("\n  [bold]Health Check[/bold]")
    console.print("  [bold]------------[/bold]")

    try:
        config = load_config(config_dir)
        console.print("  [green][✓][/green] Configuration loaded")
    except ConfigurationError as e:
        console.print(f"  [red][✗][/red] Configuration: {e}")
        sys.exit(1)

    try:
        service = AgentService(config)
    except KidSafeError as e:
        console.print(f"  [red][✗][/red] Rule store: {e}")
        sys.exit(1)

    try:
        checks = service.health()
    finally:
        service.store.close()

    labels = {
        "hosts_readable": f"Hosts file readable ({service.hosts.hosts_path})",
        "hosts_writable": "Hosts file writable",
        "rule_store": f"Rule store ({config['db_path']})",
        "remote_store": "Remote store connectivity",
    }
    for name, ok in checks.items():
        mark = "[green][✓][/green]" if ok else "[red][✗][/red]"
        console.print(f"  {mark} {labels.get(name, name)}")

    passed = sum(1 for ok in checks.values() if ok) + 1
    total = len(checks) + 1
    console.print(f"\n  Result: {passed}/{total} checks passed")
    if passed == total:
        console.print("  Status: [green]HEALTHY[/green]\n")
    else:
        console.print("  Status: [red]DEGRADED[/red]\n")
        sys.exit(1)


@main.command()
def stats() -> None:
    """Show usage statistics from audit log."""
    console.print("\n  [bold]Statistics[/bold]")
    console.print("  [bold]----------[/bold]")

    audit_file = get_audit_log_file()
    if not audit_file.exists():
        console.print("  No audit log found\n")
        return

    try:
        with open(audit_file, encoding="utf-8") as f:
            lines = f.readlines()

        actions: dict[str, int] = {}
        for line in lines:
            parts = line.strip().split(" | ")
            if len(parts) >= 2:
                action = parts[1]
                # Prefixed entries: [timestamp, prefix, action, detail]
                if action == "REMOTE" and len(parts) > 2:
                    action = parts[2]
                actions[action] = actions.get(action, 0) + 1

        if actions:
            for action, count in sorted(actions.items()):
                console.print(f"    {action}: [bold]{count}[/bold]")
        else:
            console.print("  No actions recorded")

        console.print(f"\n  Total entries: {len(lines)}\n")

    except (OSError, ValueError) as e:
        console.print(f"  [red]Error reading stats: {e}[/red]\n", highlight=False)


if __name__ == "__main__":
    main()
