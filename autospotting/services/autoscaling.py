"""
Auto Scaling Groups service manager for discovering groups and moving instances in and out of them.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .base import BaseServiceManager
from .interfaces import GroupsAPI, LifecycleHooksAPI
from .models import AutoscalingGroup, GroupMember, GroupTag, LaunchSource, LifecycleHook
from ..core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

# describe_tags accepts at most this many values per filter
TAG_FILTER_BATCH = 20


class AutoScalingServiceManager(BaseServiceManager, GroupsAPI, LifecycleHooksAPI):
    """Service manager for Auto Scaling Groups."""

    @property
    def service_name(self) -> str:
        return 'autoscaling'

    def list_groups(self) -> List[AutoscalingGroup]:
        """Discover all Auto Scaling Groups in the region.

        Returns:
            List of groups with their members

        Raises:
            ServiceError: If discovery fails
        """
        try:
            groups = []
            paginator = self.client.get_paginator('describe_auto_scaling_groups')

            for page in paginator.paginate():
                for asg in page['AutoScalingGroups']:
                    groups.append(self._parse_group(asg))

            return groups

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'group discovery')

    def list_group_tags(self, group_names: Iterable[str]) -> Dict[str, List[GroupTag]]:
        names = sorted(set(group_names))
        tags: Dict[str, List[GroupTag]] = {name: [] for name in names}
        if not names:
            return tags

        try:
            paginator = self.client.get_paginator('describe_tags')
            for start in range(0, len(names), TAG_FILTER_BATCH):
                batch = names[start:start + TAG_FILTER_BATCH]
                pages = paginator.paginate(Filters=[{'Name': 'auto-scaling-group', 'Values': batch}])
                for page in pages:
                    for tag in page['Tags']:
                        tags.setdefault(tag['ResourceId'], []).append(
                            GroupTag(
                                key=tag['Key'],
                                value=tag.get('Value', ''),
                                propagate_at_launch=bool(tag.get('PropagateAtLaunch', False)),
                            )
                        )
            return tags

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'tag discovery')

    def describe_group(self, group_name: str) -> Optional[AutoscalingGroup]:
        try:
            response = self.client.describe_auto_scaling_groups(AutoScalingGroupNames=[group_name])
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe group', group_name)

        if not response['AutoScalingGroups']:
            return None
        return self._parse_group(response['AutoScalingGroups'][0])

    def describe_launch_configuration(self, name: str) -> LaunchSource:
        try:
            response = self.client.describe_launch_configurations(LaunchConfigurationNames=[name])
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe launch configuration', name)

        configurations = response.get('LaunchConfigurations', [])
        if not configurations:
            raise ConfigurationError(f"Launch configuration {name} not found in {self.region}")

        return LaunchSource(kind='launch-configuration', name=name, data=configurations[0])

    def describe_instance_membership(self, instance_id: str) -> Optional[str]:
        try:
            response = self.client.describe_auto_scaling_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe instance membership', instance_id)

        instances = response.get('AutoScalingInstances', [])
        if not instances:
            return None
        return instances[0]['LifecycleState']

    def detach_instance(self, group_name: str, instance_id: str, decrement_desired: bool) -> None:
        logger.debug(f"Detaching {instance_id} from {group_name} (decrement desired: {decrement_desired})")
        try:
            self.client.detach_instances(
                AutoScalingGroupName=group_name,
                InstanceIds=[instance_id],
                ShouldDecrementDesiredCapacity=decrement_desired,
            )
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'detach', instance_id)

    def attach_instance(self, group_name: str, instance_id: str) -> None:
        logger.debug(f"Attaching {instance_id} to {group_name}")
        try:
            self.client.attach_instances(AutoScalingGroupName=group_name, InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'attach', instance_id)

    def terminate_instance_in_group(self, instance_id: str, decrement_desired: bool) -> None:
        logger.debug(f"Terminating {instance_id} through its group (decrement desired: {decrement_desired})")
        try:
            self.client.terminate_instance_in_auto_scaling_group(
                InstanceId=instance_id,
                ShouldDecrementDesiredCapacity=decrement_desired,
            )
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'terminate in group', instance_id)

    def describe_lifecycle_hooks(self, group_name: str) -> List[LifecycleHook]:
        try:
            response = self.client.describe_lifecycle_hooks(AutoScalingGroupName=group_name)
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe lifecycle hooks', group_name)

        return [
            LifecycleHook(
                name=hook['LifecycleHookName'],
                transition=hook['LifecycleTransition'],
                heartbeat_timeout=int(hook.get('HeartbeatTimeout', 3600)),
                default_result=hook.get('DefaultResult', 'ABANDON'),
            )
            for hook in response.get('LifecycleHooks', [])
        ]

    def _parse_group(self, asg: Dict[str, Any]) -> AutoscalingGroup:
        subnets = asg.get('VPCZoneIdentifier') or ''
        return AutoscalingGroup(
            name=asg['AutoScalingGroupName'],
            region=self.region,
            desired_capacity=asg['DesiredCapacity'],
            min_size=asg['MinSize'],
            max_size=asg['MaxSize'],
            launch_configuration_name=asg.get('LaunchConfigurationName'),
            launch_template=asg.get('LaunchTemplate'),
            has_mixed_instances_policy='MixedInstancesPolicy' in asg,
            availability_zones=list(asg.get('AvailabilityZones', [])),
            subnet_ids=[s.strip() for s in subnets.split(',') if s.strip()],
            health_check_grace_period=int(asg.get('HealthCheckGracePeriod', 0) or 0),
            members=[
                GroupMember(
                    instance_id=instance['InstanceId'],
                    lifecycle_state=instance['LifecycleState'],
                    health_status=instance.get('HealthStatus', 'Healthy'),
                    availability_zone=instance.get('AvailabilityZone', ''),
                    instance_type=instance.get('InstanceType'),
                )
                for instance in asg.get('Instances', [])
            ],
            tags=[
                GroupTag(
                    key=tag['Key'],
                    value=tag.get('Value', ''),
                    propagate_at_launch=bool(tag.get('PropagateAtLaunch', False)),
                )
                for tag in asg.get('Tags', [])
            ],
        )
