"""
Group Inspector: finds the autoscaling groups of a region that AutoSpotting manages.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .interfaces import CloudProvider
from .models import (
    REPLACED_INSTANCE_TAG,
    AutoscalingGroup,
    Instance,
    InstanceState,
    LaunchSource,
)
from ..core.config import Config
from ..core.exceptions import ConfigurationError, ServiceError


logger = logging.getLogger(__name__)


@dataclass
class InspectedGroup:
    group: AutoscalingGroup
    source: LaunchSource
    config: Config      # run configuration with the group's override tags applied


@dataclass
class SkippedGroup:
    name: str
    reason: str


@dataclass
class InspectionResult:
    """Managed groups of one region, plus the ones that had to be skipped."""
    region: str
    groups: List[InspectedGroup] = field(default_factory=list)
    skipped: List[SkippedGroup] = field(default_factory=list)
    # on-demand instance id -> id of the spot instance already replacing it
    reconciled: Dict[str, str] = field(default_factory=dict)


def is_managed(group: AutoscalingGroup, config: Config) -> bool:
    """Whether the group's tags opt it into (or out of) spot replacement."""
    tags = group.tag_map
    if config.tag_filtering_mode == "opt-in":
        return all(tags.get(key) == value for key, value in config.filter_tags.items())
    return not any(tags.get(key, "").lower() == "false" for key in config.filter_tags)


def required_on_demand(desired_capacity: int, config: Config) -> int:
    """Number of on-demand instances a group keeps at the given desired capacity."""
    by_percentage = math.ceil(desired_capacity * config.min_on_demand_percentage / 100.0)
    return min(desired_capacity, max(config.min_on_demand_number, by_percentage))


def running_members(group: AutoscalingGroup) -> List[Instance]:
    """Running instances that are InService and healthy members of the group."""
    instances = []
    for member in group.in_service_members():
        instance = group.instances.get(member.instance_id)
        if instance is not None and instance.state == InstanceState.RUNNING:
            instances.append(instance)
    return instances


def replacement_candidates(
    group: AutoscalingGroup,
    reconciled: Dict[str, str],
    now: Optional[datetime] = None,
) -> List[Instance]:
    """On-demand members eligible for replacement, oldest first.

    Instances still inside the group's health check grace period, instances
    AutoSpotting launched itself, and instances that already have a running
    spot replacement are left alone.
    """
    now = now or datetime.now(timezone.utc)
    grace = timedelta(seconds=group.health_check_grace_period)

    candidates = []
    for instance in running_members(group):
        if instance.is_spot or instance.launched_by_autospotting:
            continue
        if instance.instance_id in reconciled:
            continue
        if instance.launch_time is not None and instance.launch_time + grace > now:
            logger.debug(f"{instance.instance_id} in {group.name} is still within its grace period")
            continue
        candidates.append(instance)

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    candidates.sort(key=lambda i: (i.launch_time or epoch, i.instance_id))
    return candidates


def replacement_budget(group: AutoscalingGroup, config: Config) -> int:
    """How many instances of the group may be replaced in this run.

    Bounded by the per-group maximum, by the on-demand floor, and so that at
    least one running instance is never touched.
    """
    running = running_members(group)
    on_demand = len([i for i in running if not i.is_spot])
    above_floor = on_demand - required_on_demand(group.desired_capacity, config)
    return max(0, min(config.max_replacements_per_group, len(running) - 1, above_floor))


class GroupInspector:
    """Enumerates the managed groups of a region and their inventory."""

    def __init__(self, provider: CloudProvider, config: Config):
        self.provider = provider
        self.config = config

    @property
    def region(self) -> str:
        return self.provider.region

    def inspect(self) -> InspectionResult:
        """Inspect every group in the region.

        Problems with a single group are recorded in the result and never
        abort the scan.

        Returns:
            InspectionResult for the region

        Raises:
            ServiceError: If the groups themselves cannot be listed
        """
        result = InspectionResult(region=self.region)

        groups = self.provider.groups.list_groups()
        try:
            tags = self.provider.groups.list_group_tags([group.name for group in groups])
        except ServiceError as e:
            logger.warning(f"Could not list group tags in {self.region}, using the tags returned with the groups: {e}")
            tags = {}

        managed = []
        for group in groups:
            if group.name in tags:
                group.tags = tags[group.name]
            if is_managed(group, self.config):
                managed.append(group)
            else:
                logger.debug(f"Group {group.name} in {self.region} is not enabled for spot replacement")

        logger.info(f"Found {len(managed)} managed groups out of {len(groups)} in {self.region}")
        if not managed:
            return result

        try:
            result.reconciled = self._find_reconciled()
        except ServiceError as e:
            # without the replacement tags an interrupted replacement could be repeated
            reason = f"{type(e).__name__}: could not look up existing spot replacements: {e}"
            logger.warning(f"Skipping all managed groups in {self.region}: {reason}")
            result.skipped.extend(SkippedGroup(name=group.name, reason=reason) for group in managed)
            return result

        instances = self._describe_members(managed)

        for group in managed:
            try:
                if instances is None:
                    group_instances = self.provider.instances.describe_instances(
                        [member.instance_id for member in group.members]
                    )
                else:
                    group_instances = instances
                group.instances = {
                    member.instance_id: group_instances[member.instance_id]
                    for member in group.members if member.instance_id in group_instances
                }
                group_config = self.config.for_group(group.tag_map)
                source = self.resolve_launch_source(group)
            except (ConfigurationError, ServiceError) as e:
                reason = f"{type(e).__name__}: {e}"
                logger.warning(f"Skipping group {group.name} in {self.region}: {reason}")
                result.skipped.append(SkippedGroup(name=group.name, reason=reason))
                continue

            result.groups.append(InspectedGroup(group=group, source=source, config=group_config))

        return result

    def _describe_members(self, groups: List[AutoscalingGroup]) -> Optional[Dict[str, Instance]]:
        """Describe every member of the groups at once, None when that call fails."""
        member_ids = [member.instance_id for group in groups for member in group.members]
        try:
            return self.provider.instances.describe_instances(member_ids)
        except ServiceError as e:
            logger.warning(f"Could not describe group members in {self.region}, retrying group by group: {e}")
            return None

    def resolve_launch_source(self, group: AutoscalingGroup) -> LaunchSource:
        """Resolve the group's launch configuration or launch template.

        Raises:
            ConfigurationError: For mixed instances policies, for groups with
                both or neither source, or when the source does not exist
        """
        if group.has_mixed_instances_policy:
            raise ConfigurationError(f"Group {group.name} uses a mixed instances policy")

        if group.launch_configuration_name and group.launch_template:
            raise ConfigurationError(f"Group {group.name} has both a launch configuration and a launch template")

        if group.launch_configuration_name:
            return self.provider.groups.describe_launch_configuration(group.launch_configuration_name)

        if group.launch_template:
            return self.provider.instances.describe_launch_template_version(
                group.launch_template.get('LaunchTemplateId'),
                group.launch_template.get('LaunchTemplateName'),
                group.launch_template.get('Version'),
            )

        raise ConfigurationError(f"Group {group.name} has neither a launch configuration nor a launch template")

    def _find_reconciled(self) -> Dict[str, str]:
        reconciled = {}
        for instance in self.provider.instances.find_tagged_instances(REPLACED_INSTANCE_TAG).values():
            replaced = instance.tags.get(REPLACED_INSTANCE_TAG)
            if instance.is_spot and replaced:
                reconciled[replaced] = instance.instance_id
        if reconciled:
            logger.debug(f"{len(reconciled)} on-demand instances in {self.region} already have spot replacements")
        return reconciled
