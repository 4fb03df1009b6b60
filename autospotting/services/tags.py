"""
Tag Synchronizer: keeps spot replacements tagged like their group.
"""
import logging
from typing import Dict, Mapping, Optional

from .interfaces import InstancesAPI
from .models import LAUNCHED_BY_TAG, REPLACED_INSTANCE_TAG, AutoscalingGroup, InstanceState
from ..core.exceptions import ServiceError


logger = logging.getLogger(__name__)

# Tag keys in the aws: namespace are reserved and cannot be written
RESERVED_TAG_PREFIX = "aws:"


class TagSynchronizer:
    """Computes and applies the tag set a spot instance should carry."""

    def __init__(self, instances: InstancesAPI):
        self.instances = instances

    @staticmethod
    def propagated_tags(group: AutoscalingGroup) -> Dict[str, str]:
        return {
            tag.key: tag.value for tag in group.tags
            if tag.propagate_at_launch and not tag.key.startswith(RESERVED_TAG_PREFIX)
        }

    def desired_tags(self, group: AutoscalingGroup, replaced_instance_id: Optional[str] = None) -> Dict[str, str]:
        """Tags a replacement instance must carry.

        Args:
            group: Group whose propagate-at-launch tags are copied
            replaced_instance_id: The on-demand instance being replaced

        Returns:
            Group tags plus the bookkeeping tags
        """
        tags = self.propagated_tags(group)
        tags[LAUNCHED_BY_TAG] = "true"
        if replaced_instance_id:
            tags[REPLACED_INSTANCE_TAG] = replaced_instance_id
        return tags

    def sync(self, instance_id: str, desired: Mapping[str, str], current: Mapping[str, str]) -> Dict[str, str]:
        """Write the tags that are missing or different, nothing else.

        Args:
            instance_id: Instance to tag
            desired: Tags it should carry
            current: Tags it carries now

        Returns:
            The tags that were written, empty when already in sync
        """
        diff = {key: value for key, value in desired.items() if current.get(key) != value}
        if not diff:
            logger.debug(f"Tags of {instance_id} already in sync")
            return diff

        self.instances.create_tags(instance_id, diff)
        logger.info(f"Applied {len(diff)} tags to {instance_id}: {', '.join(sorted(diff))}")
        return diff

    def repair_group(self, group: AutoscalingGroup) -> int:
        """Re-apply group tags to running spot members that drifted.

        Failures are logged and do not stop the repair of other instances.

        Returns:
            Number of instances whose tags were changed
        """
        desired = self.propagated_tags(group)
        repaired = 0
        for member in group.members:
            instance = group.instances.get(member.instance_id)
            if instance is None or not instance.is_spot or instance.state != InstanceState.RUNNING:
                continue
            try:
                if self.sync(instance.instance_id, desired, instance.tags):
                    instance.tags.update(desired)
                    repaired += 1
            except ServiceError as e:
                logger.warning(f"Could not repair tags of {instance.instance_id} in {group.name}: {e}")

        if repaired:
            logger.info(f"Repaired tags on {repaired} spot instances of {group.name}")
        return repaired
