"""
Main CLI entry point for AutoSpotting.

Runs one replacement pass over every configured region and prints the report.
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler

from autospotting import __version__
from autospotting.auth.iam_auth import SessionFactory
from autospotting.cli.report import render_report
from autospotting.core.config import Config, ConfigManager
from autospotting.core.deadline import Deadline
from autospotting.core.exceptions import (
    AutoSpottingError, AuthenticationError, ConfigurationError, ServiceError
)
from autospotting.services.driver import Driver
from autospotting.services.provider import Boto3ProviderFactory
from autospotting.state.report_store import ReportStore


console = Console()

# Exit codes for different error types
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_SERVICE_ERROR = 4
EXIT_REPLACEMENT_FAILURES = 5
EXIT_USER_CANCELLED = 130


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # botocore is extremely chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_config(
    config_path: Optional[Path],
    regions: Tuple[str, ...],
    dry_run: bool,
    max_workers: Optional[int],
    timeout: Optional[float],
) -> Config:
    """Layer the configuration: file, then AUTOSPOTTING_* variables, then command line flags."""
    config_manager = ConfigManager()
    config = config_manager.load_config(config_path)
    config = config_manager.load_from_env(base=config)

    changes = {}
    if regions:
        changes["regions"] = list(regions)
    if dry_run:
        changes["dry_run"] = True
    if max_workers is not None:
        changes["max_workers"] = max_workers
    if timeout is not None:
        changes["run_timeout_seconds"] = timeout
    return config.updated(**changes) if changes else config


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (defaults to ~/.autospotting/config.json)",
)
@click.option(
    "--region",
    "regions",
    multiple=True,
    help="Region or region pattern to process, repeatable (defaults to all enabled regions)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Plan replacements without changing anything",
)
@click.option(
    "--max-workers",
    type=click.IntRange(min=1),
    help="Regions and groups processed in parallel",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    help="Run deadline in seconds",
)
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory to save the JSON run report in",
)
@click.option(
    "--keep-reports",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Run reports kept in --report-dir, older ones are deleted",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable debug logging",
)
@click.version_option(version=__version__)
def main(
    config_path: Optional[Path] = None,
    regions: Tuple[str, ...] = (),
    dry_run: bool = False,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
    report_dir: Optional[Path] = None,
    keep_reports: int = 50,
    verbose: bool = False,
) -> None:
    """
    AutoSpotting - replace on-demand autoscaling group instances with cheaper spot instances.

    Performs one pass over every opted-in Auto Scaling Group and exits.
    """
    setup_logging(verbose)
    deadline = None
    try:
        config = build_config(config_path, regions, dry_run, max_workers, timeout)
        sessions = SessionFactory(config)
        session = sessions.get_session()
        identity = sessions.get_caller_identity()
        console.print(f"[dim]Running as {identity['Arn']}[/dim]")

        deadline = Deadline(config.run_timeout_seconds)
        # First Ctrl-C lets in-flight replacements end cleanly
        signal.signal(signal.SIGINT, lambda signum, frame: deadline.cancel())

        report = Driver(config, Boto3ProviderFactory(session), deadline=deadline).run()

        if report_dir is not None:
            store = ReportStore(report_dir)
            store.save_report(report)
            store.cleanup_old_reports(keep_count=keep_reports)
        render_report(console, report)

        if deadline.cancelled:
            console.print("\n⚠️  [yellow]Run cancelled by user[/yellow]")
            sys.exit(EXIT_USER_CANCELLED)
        if report.failed or report.region_errors:
            sys.exit(EXIT_REPLACEMENT_FAILURES)
        sys.exit(EXIT_SUCCESS)

    except KeyboardInterrupt:
        console.print("\n⚠️  [yellow]Run cancelled by user[/yellow]")
        sys.exit(EXIT_USER_CANCELLED)
    except ConfigurationError as e:
        console.print(f"❌ [red]Configuration error: {e}[/red]")
        if e.details:
            console.print(f"[dim]{e.details}[/dim]")
        sys.exit(EXIT_CONFIG_ERROR)
    except AuthenticationError as e:
        console.print(f"❌ [red]Authentication error: {e}[/red]")
        sys.exit(EXIT_AUTH_ERROR)
    except ServiceError as e:
        console.print(f"❌ [red]Service error: {e}[/red]")
        sys.exit(EXIT_SERVICE_ERROR)
    except AutoSpottingError as e:
        console.print(f"❌ [red]{e}[/red]")
        sys.exit(EXIT_GENERAL_ERROR)
    except Exception as e:
        console.print(f"💥 [red]Unexpected error: {e}[/red]")
        console.print("[dim]Please report this issue with the full error message.[/dim]")
        sys.exit(EXIT_GENERAL_ERROR)
    finally:
        if deadline is not None:
            signal.signal(signal.SIGINT, signal.default_int_handler)


if __name__ == "__main__":
    main()
