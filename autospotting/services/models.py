"""
Data models for autoscaling groups, instances, pricing and replacement runs.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union


# Bookkeeping tags written on every spot instance AutoSpotting launches
LAUNCHED_BY_TAG = "launched-by-autospotting"
REPLACED_INSTANCE_TAG = "autospotting-replaced-instance"


class InstanceState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DETACHING = "detaching"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    STOPPED = "stopped"


class MarketType(str, Enum):
    ON_DEMAND = "on-demand"
    SPOT = "spot"


@dataclass
class Instance:
    """An EC2 instance as last observed in the cloud."""
    instance_id: str
    state: InstanceState
    market: MarketType
    instance_type: str
    availability_zone: str
    launch_time: Optional[datetime] = None
    group_name: Optional[str] = None   # back reference only
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def is_spot(self) -> bool:
        return self.market == MarketType.SPOT

    @property
    def launched_by_autospotting(self) -> bool:
        return self.tags.get(LAUNCHED_BY_TAG) == "true"


@dataclass
class GroupMember:
    """Membership record of an instance inside an Auto Scaling Group."""
    instance_id: str
    lifecycle_state: str       # 'InService', 'Pending', 'Detaching', 'Terminating:Wait', ...
    health_status: str         # 'Healthy' or 'Unhealthy'
    availability_zone: str
    instance_type: Optional[str] = None

    @property
    def in_service(self) -> bool:
        return self.lifecycle_state == "InService" and self.health_status == "Healthy"


@dataclass
class GroupTag:
    key: str
    value: str
    propagate_at_launch: bool = False


@dataclass
class AutoscalingGroup:
    """An Auto Scaling Group and its members."""
    name: str
    region: str
    desired_capacity: int
    min_size: int
    max_size: int
    launch_configuration_name: Optional[str] = None
    launch_template: Optional[Dict[str, str]] = None   # LaunchTemplateId/Name + Version
    has_mixed_instances_policy: bool = False
    availability_zones: List[str] = field(default_factory=list)
    subnet_ids: List[str] = field(default_factory=list)
    health_check_grace_period: int = 0
    members: List[GroupMember] = field(default_factory=list)
    tags: List[GroupTag] = field(default_factory=list)
    instances: Dict[str, Instance] = field(default_factory=dict)

    @property
    def tag_map(self) -> Dict[str, str]:
        return {tag.key: tag.value for tag in self.tags}

    def member(self, instance_id: str) -> Optional[GroupMember]:
        for member in self.members:
            if member.instance_id == instance_id:
                return member
        return None

    def in_service_members(self) -> List[GroupMember]:
        return [m for m in self.members if m.in_service]


@dataclass(frozen=True)
class InstanceTypeInfo:
    """Hardware profile of an EC2 instance type."""
    name: str
    vcpus: int
    memory_mib: int
    architectures: FrozenSet[str]
    gpus: int = 0
    spot_supported: bool = True


@dataclass
class LaunchSource:
    """The launch configuration or launch template version a group launches from."""
    kind: str                  # 'launch-configuration' or 'launch-template'
    name: str                  # configuration name or template id/name
    version: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)   # raw API payload


@dataclass(frozen=True)
class LaunchSpec:
    """Normalized, spot-ready launch parameters copied from a launch source."""
    image_id: str
    instance_type: str
    security_group_ids: Tuple[str, ...] = ()
    key_name: Optional[str] = None
    iam_instance_profile: Optional[str] = None     # profile name or ARN
    user_data: Optional[Union[str, bytes]] = None   # decoded
    block_device_mappings: Tuple[Dict[str, Any], ...] = ()
    subnets_by_zone: Tuple[Tuple[str, str], ...] = ()   # (zone, subnet id)
    ebs_optimized: Optional[bool] = None
    monitoring: Optional[bool] = None
    tenancy: Optional[str] = None
    associate_public_ip: Optional[bool] = None

    def subnet_for_zone(self, zone: str) -> Optional[str]:
        for subnet_zone, subnet_id in self.subnets_by_zone:
            if subnet_zone == zone:
                return subnet_id
        return None


@dataclass(frozen=True)
class SpotPricePoint:
    zone: str
    instance_type: str
    price: float
    timestamp: datetime


@dataclass(frozen=True)
class CompatibilityEnvelope:
    """Minimum requirements a replacement instance type has to satisfy."""
    min_vcpus: int
    min_memory_mib: int
    architectures: FrozenSet[str]
    allowed_zones: FrozenSet[str]
    min_gpus: int = 0
    allowed_patterns: Tuple[str, ...] = ()
    disallowed_patterns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReplacementPlan:
    """Which spot instance replaces which on-demand instance, consumed once."""
    group_name: str
    target_instance_id: str
    instance_type: str
    availability_zone: str
    max_price: float
    price_ceiling: float
    spot_price: float


@dataclass
class LifecycleHook:
    name: str
    transition: str
    heartbeat_timeout: int
    default_result: str = "CONTINUE"


class ReplacementState(str, Enum):
    SELECTED = "Selected"
    DETACHING = "Detaching"
    AWAITING_LIFECYCLE_HOOK = "AwaitingLifecycleHook"
    TERMINATING = "Terminating"
    LAUNCHING = "Launching"
    ATTACHING = "Attaching"
    TAGGING = "Tagging"
    DONE = "Done"
    FAILED = "Failed"


class FailureReason(str, Enum):
    CAPACITY_UNAVAILABLE = "CapacityUnavailable"
    INVARIANT_VIOLATION = "InvariantViolation"
    CONFIGURATION = "ConfigurationError"
    TIMEOUT = "timeout"
    TRANSIENT = "TransientProviderError"
    PROVIDER = "ServiceError"
    UNEXPECTED = "UnexpectedError"


@dataclass
class Transition:
    state: ReplacementState
    timestamp: datetime
    detail: str = ""


@dataclass
class ReplacementRecord:
    """In-memory state of one replacement attempt."""
    instance_id: str
    group_name: str
    region: str
    plan: Optional[ReplacementPlan] = None
    state: ReplacementState = ReplacementState.SELECTED
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    failed_in: Optional[ReplacementState] = None
    new_instance_id: Optional[str] = None
    detached: bool = False
    attached: bool = False
    terminated: bool = False
    history: List[Transition] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in (ReplacementState.DONE, ReplacementState.FAILED)


class OutcomeStatus(str, Enum):
    REPLACED = "replaced"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReplacementOutcome:
    """Per-instance result reported to the driver."""
    instance_id: str
    status: OutcomeStatus
    reason: Optional[str] = None
    message: str = ""
    new_instance_id: Optional[str] = None
    instance_type: Optional[str] = None
    final_state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'status': self.status.value,
            'reason': self.reason,
            'message': self.message,
            'new_instance_id': self.new_instance_id,
            'instance_type': self.instance_type,
            'final_state': self.final_state,
        }


@dataclass
class GroupReport:
    """Outcomes for one autoscaling group."""
    region: str
    group_name: str
    outcomes: List[ReplacementOutcome] = field(default_factory=list)
    skipped_reason: Optional[str] = None    # set when the whole group was skipped
    tags_repaired: int = 0

    def _count(self, status: OutcomeStatus) -> int:
        return len([o for o in self.outcomes if o.status == status])

    @property
    def replaced(self) -> int:
        return self._count(OutcomeStatus.REPLACED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'region': self.region,
            'group_name': self.group_name,
            'replaced': self.replaced,
            'skipped': self.skipped,
            'failed': self.failed,
            'skipped_reason': self.skipped_reason,
            'tags_repaired': self.tags_repaired,
            'outcomes': [o.to_dict() for o in self.outcomes],
        }


@dataclass
class RunReport:
    """Aggregate result of one pass over every region and group."""
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    groups: List[GroupReport] = field(default_factory=list)
    region_errors: Dict[str, str] = field(default_factory=dict)

    def group(self, region: str, group_name: str) -> Optional[GroupReport]:
        for report in self.groups:
            if report.region == region and report.group_name == group_name:
                return report
        return None

    @property
    def replaced(self) -> int:
        return sum(g.replaced for g in self.groups)

    @property
    def skipped(self) -> int:
        return sum(g.skipped for g in self.groups)

    @property
    def failed(self) -> int:
        return sum(g.failed for g in self.groups)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'dry_run': self.dry_run,
            'totals': {
                'replaced': self.replaced,
                'skipped': self.skipped,
                'failed': self.failed,
            },
            'region_errors': dict(self.region_errors),
            'groups': [g.to_dict() for g in self.groups],
        }
