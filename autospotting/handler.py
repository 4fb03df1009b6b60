"""
Serverless entry point: one replacement pass per invocation.

Configuration comes from AUTOSPOTTING_* environment variables; the event may
carry a "regions" list and a "dry_run" flag to narrow a single invocation.
"""
import logging
from typing import Any, Dict, Optional

from autospotting.auth.iam_auth import SessionFactory
from autospotting.core.config import ConfigManager
from autospotting.core.deadline import Deadline
from autospotting.services.driver import Driver
from autospotting.services.provider import Boto3ProviderFactory


logger = logging.getLogger(__name__)

# Seconds kept back from the invocation's remaining time to return the report
SAFETY_MARGIN_SECONDS = 30.0


def _deadline_seconds(context: Any, configured: Optional[float]) -> Optional[float]:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return configured
    available = max(1.0, get_remaining() / 1000.0 - SAFETY_MARGIN_SECONDS)
    return min(available, configured) if configured else available


def handler(event: Optional[Dict[str, Any]], context: Any) -> Dict[str, Any]:
    """Run one pass and return the run report as a dictionary."""
    logging.basicConfig(level=logging.INFO)
    logging.getLogger().setLevel(logging.INFO)

    event = event or {}
    config = ConfigManager().load_from_env()

    changes = {}
    if event.get("regions"):
        changes["regions"] = list(event["regions"])
    if "dry_run" in event:
        changes["dry_run"] = bool(event["dry_run"])
    if changes:
        config = config.updated(**changes)

    deadline = Deadline(_deadline_seconds(context, config.run_timeout_seconds))
    session = SessionFactory(config).get_session()

    report = Driver(config, Boto3ProviderFactory(session), deadline=deadline).run()
    logger.info(f"Run {report.run_id}: {report.replaced} replaced, {report.skipped} skipped, {report.failed} failed")
    return report.to_dict()
