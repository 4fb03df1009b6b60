"""
Narrow capability interfaces over the AWS control plane.

The replacement logic only ever talks to these interfaces, one per cloud
resource type, so tests can substitute deterministic in-memory versions.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .models import (
    AutoscalingGroup,
    GroupTag,
    Instance,
    InstanceTypeInfo,
    LaunchSource,
    LaunchSpec,
    LifecycleHook,
    SpotPricePoint,
)


class GroupsAPI(ABC):
    """Queries and mutations on Auto Scaling Groups."""

    @abstractmethod
    def list_groups(self) -> List[AutoscalingGroup]:
        """List every group in the region, draining all pages."""

    @abstractmethod
    def list_group_tags(self, group_names: Iterable[str]) -> Dict[str, List[GroupTag]]:
        """Tags per group name, draining all pages."""

    @abstractmethod
    def describe_group(self, group_name: str) -> Optional[AutoscalingGroup]:
        """Re-read a single group, None if it no longer exists."""

    @abstractmethod
    def describe_launch_configuration(self, name: str) -> LaunchSource:
        """Resolve a launch configuration by name.

        Raises:
            ConfigurationError: If it does not exist
        """

    @abstractmethod
    def describe_instance_membership(self, instance_id: str) -> Optional[str]:
        """Lifecycle state of the instance inside its group, None if not a member."""

    @abstractmethod
    def detach_instance(self, group_name: str, instance_id: str, decrement_desired: bool) -> None:
        """Remove an instance from a group without terminating it."""

    @abstractmethod
    def attach_instance(self, group_name: str, instance_id: str) -> None:
        """Add a running instance to a group, incrementing desired capacity."""

    @abstractmethod
    def terminate_instance_in_group(self, instance_id: str, decrement_desired: bool) -> None:
        """Terminate a member through the group, running its termination hooks."""


class LifecycleHooksAPI(ABC):
    """Lifecycle hook queries."""

    @abstractmethod
    def describe_lifecycle_hooks(self, group_name: str) -> List[LifecycleHook]:
        """All lifecycle hooks defined on the group."""


class InstancesAPI(ABC):
    """EC2 instance, network and tag operations."""

    @abstractmethod
    def list_regions(self) -> List[str]:
        """Regions enabled for the account."""

    @abstractmethod
    def describe_instances(self, instance_ids: Iterable[str]) -> Dict[str, Instance]:
        """Instances by id, draining all pages. Unknown ids are omitted."""

    @abstractmethod
    def find_tagged_instances(self, tag_key: str) -> Dict[str, Instance]:
        """Pending or running instances carrying the tag key, draining all pages."""

    @abstractmethod
    def describe_instance_types(self) -> Dict[str, InstanceTypeInfo]:
        """Every instance type offered in the region."""

    @abstractmethod
    def describe_launch_template_version(
        self, template_id: Optional[str], template_name: Optional[str], version: Optional[str]
    ) -> LaunchSource:
        """Resolve a launch template version.

        Raises:
            ConfigurationError: If it does not exist
        """

    @abstractmethod
    def resolve_security_groups(self, names: Iterable[str], vpc_id: Optional[str] = None) -> Dict[str, List[str]]:
        """Map security group names to the ids carrying that name."""

    @abstractmethod
    def describe_subnets(self, subnet_ids: Iterable[str]) -> Dict[str, Dict[str, str]]:
        """Subnet id to {'availability_zone': ..., 'vpc_id': ...}."""

    @abstractmethod
    def run_spot_instance(
        self,
        spec: LaunchSpec,
        instance_type: str,
        availability_zone: str,
        subnet_id: Optional[str],
        max_price: float,
        tags: Dict[str, str],
        client_token: str,
    ) -> str:
        """Launch a one-time spot instance and return its id.

        Repeating the call with the same client_token must not launch a
        second instance.

        Raises:
            CapacityUnavailable: If no spot capacity is available
        """

    @abstractmethod
    def terminate_instance(self, instance_id: str) -> None:
        """Terminate an instance directly."""

    @abstractmethod
    def create_tags(self, instance_id: str, tags: Dict[str, str]) -> None:
        """Create or overwrite tags."""

    @abstractmethod
    def delete_tags(self, instance_id: str, keys: Iterable[str]) -> None:
        """Delete tags by key."""


class PricingAPI(ABC):
    """Spot and on-demand price queries."""

    @abstractmethod
    def describe_spot_price_history(
        self, instance_types: Iterable[str], zones: Iterable[str], product_description: str
    ) -> List[SpotPricePoint]:
        """Recent spot prices, draining all pages. Missing combinations are simply absent."""

    @abstractmethod
    def get_on_demand_price(self, instance_type: str) -> Optional[float]:
        """Hourly on-demand price in USD, None when unknown."""


@dataclass
class CloudProvider:
    """The capability set for a single region."""
    region: str
    groups: GroupsAPI
    hooks: LifecycleHooksAPI
    instances: InstancesAPI
    pricing: PricingAPI


ProviderFactory = Callable[[str], CloudProvider]
