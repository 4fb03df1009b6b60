"""
Region enumeration.
"""
import logging
from fnmatch import fnmatch
from typing import List

from .interfaces import InstancesAPI
from ..core.config import Config


logger = logging.getLogger(__name__)


class RegionEnumerator:
    """Lists the enabled regions a run should process."""

    def __init__(self, instances: InstancesAPI, config: Config):
        self.instances = instances
        self.config = config

    def list_regions(self) -> List[str]:
        """Enabled regions, narrowed down by the configured region patterns.

        Returns:
            Sorted region names
        """
        enabled = self.instances.list_regions()
        if not self.config.regions:
            return sorted(enabled)

        selected = sorted(
            region for region in enabled
            if any(fnmatch(region, pattern) for pattern in self.config.regions)
        )
        if not selected:
            logger.warning(f"No enabled region matches {self.config.regions}")
        return selected
