"""
Run report persistence. Reports are written for people and tooling to read;
replacement decisions are never derived from them.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..services.models import RunReport
from ..core.exceptions import StateError

logger = logging.getLogger(__name__)


class ReportStore:
    """Stores run reports as JSON files, one per run."""

    def __init__(self, report_dir: Optional[Path] = None):
        """Initialize the report store.

        Args:
            report_dir: Directory to store reports. Defaults to ~/.autospotting/reports/
        """
        if report_dir is None:
            report_dir = Path.home() / ".autospotting" / "reports"

        self.report_dir = Path(report_dir)

    def save_report(self, report: RunReport) -> Path:
        """Save a run report to disk.

        Args:
            report: The finished run report

        Returns:
            Path to the saved report file

        Raises:
            StateError: If saving fails
        """
        filepath = self.report_dir / f"{report.run_id}.json"
        temp_file = filepath.with_suffix('.tmp')
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)

            # Write atomically via temp file
            with open(temp_file, 'w') as f:
                json.dump(report.to_dict(), f, indent=2, default=str)

            temp_file.replace(filepath)

        except (OSError, TypeError, ValueError) as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StateError(f"Failed to save report {report.run_id}: {e}")

        logger.info(f"Saved run report to {filepath}")
        return filepath

    def load_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Load a report by run id.

        Returns:
            The report dictionary, None if there is no such report

        Raises:
            StateError: If the file is corrupted
        """
        filepath = self.report_dir / f"{run_id}.json"
        if not filepath.exists():
            return None

        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Report file corrupted: {e}")
        except OSError as e:
            raise StateError(f"Failed to load report {run_id}: {e}")

    def list_reports(self) -> List[Dict[str, Any]]:
        """Summaries of every stored report, newest first."""
        reports = []
        if not self.report_dir.exists():
            return reports

        for filepath in self.report_dir.glob("*.json"):
            try:
                with open(filepath, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to read report {filepath}: {e}")
                continue

            reports.append({
                'run_id': data.get('run_id'),
                'started_at': data.get('started_at'),
                'dry_run': data.get('dry_run', False),
                **data.get('totals', {}),
            })

        reports.sort(key=lambda r: r.get('started_at') or '', reverse=True)
        return reports

    def load_latest_report(self) -> Optional[Dict[str, Any]]:
        for summary in self.list_reports():
            report = self.load_report(summary['run_id'])
            if report:
                return report
        return None

    def cleanup_old_reports(self, keep_count: int = 50) -> int:
        """Remove old reports, keeping only the most recent ones.

        Returns:
            Number of reports deleted
        """
        deleted = 0
        for summary in self.list_reports()[keep_count:]:
            filepath = self.report_dir / f"{summary['run_id']}.json"
            if filepath.exists():
                filepath.unlink()
                deleted += 1
        if deleted:
            logger.info(f"Deleted {deleted} old run reports")
        return deleted
