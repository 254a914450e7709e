"""Command-line interface for emailsnap."""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from emailsnap import __app_name__, __version__
from emailsnap.config import AppSettings, Config, load_config
from emailsnap.imap_client import MailClientError, MailErrorKind, check_connection
from emailsnap.llm_client import LLMClient
from emailsnap.models import CategoryRule, MatchType, category_display
from emailsnap.notifier import DesktopNotifier, NotificationDispatcher
from emailsnap.project_analyzer import ProjectAnalyzer
from emailsnap.scheduler import PollingScheduler, PollResult
from emailsnap.storage import Storage
from emailsnap.structured_logger import StructuredLogger

console = Console(width=200, soft_wrap=False)
logger = logging.getLogger("emailsnap")

config_option = click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True),
    help="Path to configuration YAML file",
)


def setup_logging(level: str, log_file: str | None = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load(config: str, verbose: bool = False) -> tuple[Config, Storage]:
    cfg = load_config(config)
    setup_logging("DEBUG" if verbose else cfg.logging.level, cfg.logging.log_file)
    return cfg, Storage(cfg.database_path)


def _api_key(cfg: Config, settings: AppSettings) -> str:
    """Stored key first, then the configured environment variable."""
    return settings.groq_api_key or os.environ.get(cfg.llm.api_key_env, "")


def _runtime_settings(cfg: Config, storage: Storage) -> AppSettings:
    """Stored settings with the API key resolved once for the polling run."""
    settings = storage.load_settings()
    return settings.model_copy(update={"groq_api_key": _api_key(cfg, settings)})


def _llm_factory(cfg: Config):
    def factory(api_key: str) -> LLMClient:
        return LLMClient(cfg.llm, api_key)

    return factory


def _bootstrap_projects(
    cfg: Config, storage: Storage, settings: AppSettings, diagnostics: StructuredLogger
) -> None:
    """Run the AI project analysis once when AI is on and no projects exist yet."""
    if not settings.ai_enabled or storage.get_project_names():
        return

    console.print("No projects yet, running AI project analysis...")
    with LLMClient(cfg.llm, settings.groq_api_key) as llm:
        report = ProjectAnalyzer(storage, llm, diagnostics=diagnostics).analyze_and_assign()
    console.print(
        f"Created {len(report.created_projects)} projects, assigned {report.assigned} messages"
    )


def _print_poll_result(result: PollResult) -> None:
    if result.skipped:
        console.print(f"[dim]Skipped: {result.skip_reason}[/dim]")
    elif result.error:
        console.print(f"[red]Poll failed: {result.error}[/red]")
    else:
        console.print(
            f"Fetched {result.fetched}, new {result.inserted}, notified {result.notified}"
        )
        for message in result.new_messages:
            display = category_display(message.category)
            console.print(
                f"  {display['emoji']} [cyan]{display['label']}[/cyan] "
                f"{message.sender_name or message.sender_email}: {message.subject}"
            )


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """EmailSnap - Poll a mailbox, categorize mail and group it into projects."""
    pass


@cli.command()
@config_option
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def run(config: str, verbose: bool) -> None:
    """Poll the mailbox on a timer until interrupted."""
    try:
        cfg, storage = _load(config, verbose)
        settings = _runtime_settings(cfg, storage)
        diagnostics = StructuredLogger(cfg.logging.audit_file)

        console.print(f"[bold blue]{__app_name__} v{__version__}[/bold blue]")
        console.print(f"Configuration: {config}")
        console.print(f"Account: {cfg.imap.email} ({cfg.imap.host})")
        console.print(f"Interval: {settings.polling_interval}s")
        console.print(f"AI categorization: {'on' if settings.ai_enabled else 'off'}")

        dispatcher = NotificationDispatcher(DesktopNotifier(__app_name__))
        if settings.notifications_enabled and not dispatcher.init():
            console.print("[yellow][WARNING] Desktop notifications unavailable[/yellow]")

        scheduler = PollingScheduler(
            storage,
            dispatcher=dispatcher,
            llm_client_factory=_llm_factory(cfg),
            diagnostics=diagnostics,
        )
        analyzer = ProjectAnalyzer(storage, diagnostics=diagnostics)
        scheduler.subscribe(analyzer.assign_new_messages)

        shutdown = threading.Event()

        def signal_handler(signum, frame):
            console.print("\n[yellow]Shutdown requested, stopping...[/yellow]")
            shutdown.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        diagnostics.log_startup(
            {"account": cfg.imap.email, "interval": settings.polling_interval}
        )
        _print_poll_result(scheduler.start(cfg.imap, settings))
        _bootstrap_projects(cfg, storage, settings, diagnostics)
        console.print("Press CTRL+C to stop\n")

        while not shutdown.wait(1.0):
            if not scheduler.is_running:
                break

        scheduler.stop()
        if scheduler.last_error_kind == MailErrorKind.AUTH:
            diagnostics.log_shutdown("auth_failure")
            console.print("[red]Authentication failed. Check the account credentials.[/red]")
            sys.exit(1)

        diagnostics.log_shutdown()
        console.print("[green]Polling stopped[/green]")

    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@config_option
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def poll(config: str, verbose: bool) -> None:
    """Run a single poll cycle."""
    try:
        cfg, storage = _load(config, verbose)
        settings = _runtime_settings(cfg, storage)
        diagnostics = StructuredLogger(cfg.logging.audit_file)

        scheduler = PollingScheduler(
            storage,
            llm_client_factory=_llm_factory(cfg),
            diagnostics=diagnostics,
        )
        scheduler.subscribe(ProjectAnalyzer(storage, diagnostics=diagnostics).assign_new_messages)
        scheduler.configure(cfg.imap, settings)

        result = scheduler.poll_once()
        _print_poll_result(result)
        if result.error:
            sys.exit(1)

    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command("test-connection")
@config_option
def test_connection(config: str) -> None:
    """Check IMAP credentials and AI key."""
    try:
        cfg, storage = _load(config)
        console.print("[green][OK] Configuration valid[/green]")

        console.print(f"\nChecking IMAP connection to {cfg.imap.host}...")
        try:
            check_connection(cfg.imap)
            console.print("[green][OK] IMAP login successful[/green]")
        except MailClientError as e:
            console.print(f"[red]IMAP {e.kind.value} error: {e}[/red]")
            sys.exit(1)

        api_key = _api_key(cfg, storage.load_settings())
        if api_key:
            console.print(f"\nChecking AI endpoint at {cfg.llm.base_url}...")
            with LLMClient(cfg.llm, api_key) as llm:
                if llm.check_health():
                    console.print("[green][OK] AI endpoint accepted the key[/green]")
                else:
                    console.print("[yellow][WARNING] AI endpoint not available[/yellow]")

    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@config_option
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def analyze(config: str, verbose: bool) -> None:
    """Group unassigned messages into projects with AI."""
    try:
        cfg, storage = _load(config, verbose)
        api_key = _api_key(cfg, storage.load_settings())
        if not api_key:
            console.print("[red]Error: no AI API key configured[/red]")
            sys.exit(1)

        diagnostics = StructuredLogger(cfg.logging.audit_file)
        with LLMClient(cfg.llm, api_key) as llm:
            report = ProjectAnalyzer(storage, llm, diagnostics=diagnostics).analyze_and_assign()

        console.print(
            f"Processed {report.processed} messages in {report.batches} batches, "
            f"assigned {report.assigned}"
        )
        for name in report.created_projects:
            console.print(f"  [green]+[/green] {name}")
        if report.error:
            console.print(f"[yellow]Stopped: {report.error}[/yellow]")

    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.group()
def rules() -> None:
    """Manage category rules."""
    pass


@rules.command("list")
@config_option
def rules_list(config: str) -> None:
    """List rules in evaluation order."""
    _, storage = _load(config)

    table = Table(title="Category Rules")
    table.add_column("ID", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Category", style="cyan")
    table.add_column("Match")
    table.add_column("Value")
    table.add_column("Notify")

    for rule in storage.get_category_rules():
        table.add_row(
            str(rule.id),
            str(rule.priority),
            rule.name + (" (default)" if rule.is_default else ""),
            rule.match_type,
            rule.match_value,
            "yes" if rule.notify else "no",
        )
    console.print(table)


@rules.command("add")
@config_option
@click.option("--name", required=True, help="Category the rule assigns")
@click.option("--priority", type=int, required=True, help="Lower runs first")
@click.option(
    "--match-type",
    type=click.Choice([t.value for t in MatchType]),
    required=True,
)
@click.option("--value", "match_value", required=True, help="Comma-separated terms")
@click.option("--color", default="#9CA3AF")
@click.option("--no-notify", is_flag=True, help="Do not notify for this rule")
@click.option("--id", "rule_id", type=int, default=None, help="Update an existing rule")
def rules_add(
    config: str,
    name: str,
    priority: int,
    match_type: str,
    match_value: str,
    color: str,
    no_notify: bool,
    rule_id: int | None,
) -> None:
    """Add or update a rule."""
    _, storage = _load(config)
    saved_id = storage.upsert_category_rule(
        CategoryRule(
            name=name,
            priority=priority,
            match_type=match_type,
            match_value=match_value,
            color=color,
            notify=not no_notify,
            id=rule_id,
        )
    )
    console.print(f"[green][OK][/green] Rule {saved_id} saved")


@rules.command("delete")
@config_option
@click.argument("rule_id", type=int)
def rules_delete(config: str, rule_id: int) -> None:
    """Delete a rule by id."""
    _, storage = _load(config)
    if storage.delete_category_rule(rule_id):
        console.print(f"[green][OK][/green] Rule {rule_id} deleted")
    else:
        console.print(f"[yellow]No rule with id {rule_id}[/yellow]")


@cli.group()
def settings() -> None:
    """Show or change settings."""
    pass


@settings.command("show")
@config_option
def settings_show(config: str) -> None:
    """Show effective settings."""
    _, storage = _load(config)
    current = storage.load_settings()

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in current.model_dump().items():
        if key == "groq_api_key":
            value = "********" if value else ""
        table.add_row(key, str(value))
    console.print(table)


@settings.command("set")
@config_option
@click.argument("key")
@click.argument("value")
def settings_set(config: str, key: str, value: str) -> None:
    """Persist one setting."""
    _, storage = _load(config)
    try:
        storage.save_setting(key, value)
    except KeyError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except ValidationError as e:
        console.print(f"[red]Invalid value for {key}: {e.errors()[0]['msg']}[/red]")
        sys.exit(1)
    console.print(f"[green][OK][/green] {key} saved")


@cli.command()
@config_option
def projects(config: str) -> None:
    """List projects with message counts."""
    _, storage = _load(config)

    table = Table(title="Projects")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Mail", justify="right")
    table.add_column("Unread", justify="right", style="green")
    table.add_column("Latest")
    table.add_column("Keywords")

    for project in storage.get_projects():
        table.add_row(
            str(project.id),
            project.name,
            str(project.mail_count),
            str(project.unread_count),
            project.latest_mail_at or "-",
            ", ".join(project.keywords),
        )

    unassigned = storage.get_unassigned_stats()
    table.add_row("-", "[dim]Unassigned[/dim]", str(unassigned.total), str(unassigned.unread), "", "")
    console.print(table)


@cli.command()
@config_option
def stats(config: str) -> None:
    """Show message totals."""
    _, storage = _load(config)
    total = storage.get_total_stats()
    unassigned = storage.get_unassigned_stats()

    table = Table(title="Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Total", str(total.total))
    table.add_row("Unread", str(total.unread))
    table.add_row("Unassigned", str(unassigned.total))
    table.add_row("Unassigned unread", str(unassigned.unread))
    console.print(table)


@cli.command()
@config_option
@click.option("--category", default=None, help="Filter by category")
@click.option("--project", "project_id", type=int, default=None, help="Filter by project id")
@click.option("--limit", "-l", type=int, default=20, help="Maximum messages to show")
def messages(config: str, category: str | None, project_id: int | None, limit: int) -> None:
    """List stored messages, newest first."""
    _, storage = _load(config)

    table = Table(title="Messages")
    table.add_column("Received")
    table.add_column("Category", style="cyan")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Read")

    for message in storage.get_messages(category=category, project_id=project_id, limit=limit):
        display = category_display(message.category)
        table.add_row(
            message.received_at,
            f"{display['emoji']} {display['label']}",
            message.sender_name or message.sender_email,
            message.subject[:80],
            "yes" if message.is_read else "",
        )
    console.print(table)


SAMPLE_CONFIG = """# EmailSnap configuration
# Behavioral settings (interval, work hours, AI toggle) live in the database;
# change them with `emailsnap settings set`.

imap:
  host: imap.worksmobile.com
  port: 993
  email: user@company.com
  # Read the password from an environment variable (recommended)
  password_env: EMAILSNAP_PASSWORD
  timeout: 30
  web_link: https://mail.worksmobile.com

llm:
  base_url: https://api.groq.com/openai/v1
  model: llama-3.3-70b-versatile
  api_key_env: GROQ_API_KEY

logging:
  level: INFO
  # log_file: emailsnap.log
  audit_file: audit.jsonl

database_path: emailsnap.db
"""


@cli.command("init-config")
@click.argument("output", type=click.Path())
def init_config(output: str) -> None:
    """Generate a sample configuration file."""
    with open(output, "w", encoding="utf-8") as f:
        f.write(SAMPLE_CONFIG)
    console.print(f"[green]Sample configuration written to {output}[/green]")
    console.print("\nNext steps:")
    console.print("1. Edit the configuration with your account")
    console.print("2. Set the EMAILSNAP_PASSWORD environment variable")
    console.print(f"3. Run: emailsnap test-connection --config {output}")
    console.print(f"4. Run: emailsnap run --config {output}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
