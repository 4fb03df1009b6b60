"""
Replacement orchestrator: swaps one on-demand group member for a spot instance.

Each replacement is an explicit state machine

    Selected -> Detaching -> AwaitingLifecycleHook -> Terminating
             -> Launching -> Attaching -> Tagging -> Done

with Failed as an absorbing state reachable from every step. Records live in
a ReplacementLedger for the whole run so an interrupted replacement can be
inspected afterwards. Decisions are always taken on freshly read cloud state.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from .interfaces import CloudProvider
from .inspector import required_on_demand
from .models import (
    AutoscalingGroup,
    FailureReason,
    Instance,
    InstanceState,
    LaunchSpec,
    ReplacementPlan,
    ReplacementRecord,
    ReplacementState,
    Transition,
)
from .tags import TagSynchronizer
from ..core.config import Config
from ..core.deadline import Deadline, wait_until
from ..core.exceptions import (
    AutoSpottingError,
    CapacityUnavailable,
    ConfigurationError,
    InvariantViolation,
    ReplacementTimeout,
    ServiceError,
    StateError,
    TransientProviderError,
)
from ..core.retry import RetryPolicy


logger = logging.getLogger(__name__)

T = TypeVar("T")

TERMINATING_TRANSITION = "autoscaling:EC2_INSTANCE_TERMINATING"

# Group lifecycle states in which an instance still counts towards capacity
ACTIVE_MEMBERSHIP = {"Pending", "Pending:Wait", "Pending:Proceed", "InService"}

# Group lifecycle states after which termination hooks no longer hold the instance
HOOKS_RELEASED = {"Detached", "Terminating:Proceed", "Terminated"}

FAILURE_REASONS = [
    (InvariantViolation, FailureReason.INVARIANT_VIOLATION),
    (CapacityUnavailable, FailureReason.CAPACITY_UNAVAILABLE),
    (ReplacementTimeout, FailureReason.TIMEOUT),
    (ConfigurationError, FailureReason.CONFIGURATION),
    (TransientProviderError, FailureReason.TRANSIENT),
    (ServiceError, FailureReason.PROVIDER),
]


def failure_reason_for(error: Exception) -> FailureReason:
    for error_class, reason in FAILURE_REASONS:
        if isinstance(error, error_class):
            return reason
    return FailureReason.UNEXPECTED


class ReplacementLedger:
    """Thread-safe arena of replacement records, keyed by region and target instance id."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], ReplacementRecord] = {}
        self._lock = threading.Lock()

    def open(self, region: str, group_name: str, instance_id: str, plan: ReplacementPlan) -> ReplacementRecord:
        """Create the record for a new replacement.

        Raises:
            StateError: If an unfinished replacement of the instance exists
        """
        with self._lock:
            existing = self._records.get((region, instance_id))
            if existing is not None and not existing.finished:
                raise StateError(f"Replacement of {instance_id} in {region} is already in progress ({existing.state.value})")

            record = ReplacementRecord(instance_id=instance_id, group_name=group_name, region=region, plan=plan)
            record.history.append(Transition(ReplacementState.SELECTED, datetime.now(timezone.utc)))
            self._records[(region, instance_id)] = record
            return record

    def get(self, region: str, instance_id: str) -> Optional[ReplacementRecord]:
        with self._lock:
            return self._records.get((region, instance_id))

    def records(self) -> List[ReplacementRecord]:
        with self._lock:
            return list(self._records.values())

    def unfinished(self) -> List[ReplacementRecord]:
        return [record for record in self.records() if not record.finished]

    def transition(self, record: ReplacementRecord, state: ReplacementState, detail: str = "") -> None:
        with self._lock:
            if record.finished:
                raise StateError(f"Replacement of {record.instance_id} already ended in {record.state.value}")
            record.state = state
            record.history.append(Transition(state, datetime.now(timezone.utc), detail))
        logger.info(f"{record.group_name}/{record.instance_id}: {state.value}{' - ' + detail if detail else ''}")

    def fail(self, record: ReplacementRecord, reason: FailureReason, message: str) -> None:
        with self._lock:
            if record.finished:
                return
            record.failed_in = record.state
            record.failure_reason = reason
            record.failure_message = message
            record.state = ReplacementState.FAILED
            record.history.append(Transition(ReplacementState.FAILED, datetime.now(timezone.utc), message))


class ReplacementOrchestrator:
    """Executes replacements against one region's provider."""

    def __init__(
        self,
        provider: CloudProvider,
        config: Config,
        ledger: ReplacementLedger,
        deadline: Deadline,
        tags: Optional[TagSynchronizer] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        """Initialize the orchestrator.

        Args:
            provider: Capabilities of the region the group lives in
            config: The group's effective configuration
            ledger: Shared record arena
            deadline: Run deadline bounding every wait
            tags: Tag synchronizer, built from the provider when omitted
            retry: Retry policy, built from the configuration when omitted
        """
        self.provider = provider
        self.config = config
        self.ledger = ledger
        self.deadline = deadline
        self.tags = tags or TagSynchronizer(provider.instances)
        self.retry = retry or RetryPolicy.from_config(config)

    def execute(
        self,
        group: AutoscalingGroup,
        instance: Instance,
        plan: ReplacementPlan,
        spec: LaunchSpec,
    ) -> ReplacementRecord:
        """Replace one on-demand instance according to the plan.

        Never raises for cloud-side failures: every outcome, including
        failures, is returned as the record's final state.

        Args:
            group: The instance's group as inspected
            instance: The on-demand instance to retire
            plan: Spot type, zone and bid to use
            spec: Launch parameters copied from the group's launch source

        Returns:
            The finished ReplacementRecord
        """
        record = self.ledger.open(self.provider.region, group.name, instance.instance_id, plan)
        logger.info(
            f"Replacing {instance.instance_id} ({instance.instance_type}) in {group.name} with spot "
            f"{plan.instance_type} in {plan.availability_zone}"
        )

        try:
            self._preflight(group, instance)

            self.ledger.transition(record, ReplacementState.DETACHING)
            self._detach(record)

            self.ledger.transition(record, ReplacementState.AWAITING_LIFECYCLE_HOOK)
            self._await_lifecycle_hooks(record)

            self.ledger.transition(record, ReplacementState.TERMINATING)
            self._terminate(record)

            self.ledger.transition(record, ReplacementState.LAUNCHING)
            self._launch(record, group, plan, spec)
            self._await_running(record)

            self.ledger.transition(record, ReplacementState.ATTACHING, record.new_instance_id)
            self._attach(record)

            self.ledger.transition(record, ReplacementState.TAGGING)
            self._tag(record, group)

            self.ledger.transition(record, ReplacementState.DONE, record.new_instance_id)

        except Exception as e:
            reason = failure_reason_for(e)
            if not isinstance(e, AutoSpottingError):
                logger.exception(f"Unexpected error replacing {instance.instance_id} in {group.name}")
            self.ledger.fail(record, reason, str(e))
            self._log_failure(record)
            self._cleanup_launched(record)

        return record

    def _preflight(self, group: AutoscalingGroup, instance: Instance) -> None:
        """Refuse to start unless the live group can spare the instance."""
        live = self.provider.groups.describe_group(group.name)
        if live is None:
            raise InvariantViolation(f"Group {group.name} no longer exists")

        member = live.member(instance.instance_id)
        if member is None or not member.in_service:
            raise InvariantViolation(f"{instance.instance_id} is no longer an InService member of {group.name}")

        in_service = live.in_service_members()
        if len(in_service) < live.desired_capacity:
            raise InvariantViolation(
                f"Group {group.name} has {len(in_service)} InService instances, below desired "
                f"capacity {live.desired_capacity}"
            )
        if live.desired_capacity - 1 < live.min_size:
            raise InvariantViolation(
                f"Detaching from {group.name} would drop desired capacity below its minimum of {live.min_size}"
            )

        current = self.provider.instances.describe_instances([m.instance_id for m in in_service])
        target = current.get(instance.instance_id)
        if target is None or target.state != InstanceState.RUNNING or target.is_spot:
            raise InvariantViolation(f"{instance.instance_id} is no longer a running on-demand instance")

        on_demand = len([i for i in current.values() if not i.is_spot and i.state == InstanceState.RUNNING])
        floor = required_on_demand(live.desired_capacity, self.config)
        if on_demand - 1 < floor:
            raise InvariantViolation(f"Group {group.name} must keep {floor} on-demand instances, has {on_demand}")

    def _detach(self, record: ReplacementRecord) -> None:
        instance_id = record.instance_id
        if self.config.termination_method == "autoscaling":
            self._retry(
                lambda: self.provider.groups.terminate_instance_in_group(instance_id, decrement_desired=True),
                f"terminating {instance_id} in {record.group_name}",
                already_done=lambda: self._left_group(instance_id),
            )
        else:
            self._retry(
                lambda: self.provider.groups.detach_instance(record.group_name, instance_id, decrement_desired=True),
                f"detaching {instance_id} from {record.group_name}",
                already_done=lambda: self._left_group(instance_id),
            )
        record.detached = True

    def _await_lifecycle_hooks(self, record: ReplacementRecord) -> None:
        hooks = [
            hook for hook in self.provider.hooks.describe_lifecycle_hooks(record.group_name)
            if hook.transition == TERMINATING_TRANSITION
        ]
        if not hooks:
            logger.debug(f"No termination lifecycle hooks on {record.group_name}")
            return

        timeout = min(max(hook.heartbeat_timeout for hook in hooks), self.config.lifecycle_hook_timeout_seconds)
        instance_id = record.instance_id

        def hooks_released() -> bool:
            state = self._quietly(lambda: self.provider.groups.describe_instance_membership(instance_id), "")
            return state is None or state in HOOKS_RELEASED

        try:
            wait_until(
                hooks_released,
                timeout=timeout,
                interval=self.config.poll_interval_seconds,
                deadline=self.deadline,
                description=f"waiting for lifecycle hooks of {instance_id}",
            )
        except ReplacementTimeout:
            if self.deadline.expired:
                raise
            logger.warning(f"Lifecycle hooks of {instance_id} did not complete within {timeout:.0f}s, proceeding")

    def _terminate(self, record: ReplacementRecord) -> None:
        instance_id = record.instance_id
        if self.config.termination_method == "autoscaling" and self._terminated(instance_id):
            logger.debug(f"{instance_id} is already shutting down")
        else:
            self._retry(
                lambda: self.provider.instances.terminate_instance(instance_id),
                f"terminating {instance_id}",
                already_done=lambda: self._terminated(instance_id),
            )
        record.terminated = True

    def _launch(self, record: ReplacementRecord, group: AutoscalingGroup, plan: ReplacementPlan, spec: LaunchSpec) -> None:
        subnet_id = spec.subnet_for_zone(plan.availability_zone)
        if spec.subnets_by_zone and subnet_id is None:
            raise ConfigurationError(f"Group {group.name} has no subnet in {plan.availability_zone}")

        tags = self.tags.desired_tags(group, record.instance_id)
        client_token = f"{record.instance_id}-{uuid.uuid4().hex[:24]}"

        record.new_instance_id = self._retry(
            lambda: self.provider.instances.run_spot_instance(
                spec,
                plan.instance_type,
                plan.availability_zone,
                subnet_id,
                plan.max_price,
                tags,
                client_token,
            ),
            f"launching spot {plan.instance_type} for {record.instance_id}",
        )
        logger.info(f"Launched spot instance {record.new_instance_id} for {record.instance_id}")

    def _await_running(self, record: ReplacementRecord) -> None:
        new_id = record.new_instance_id

        def running() -> Optional[Instance]:
            current = self._quietly(lambda: self.provider.instances.describe_instances([new_id]).get(new_id), None)
            if current is None:
                return None
            if current.state in (InstanceState.TERMINATING, InstanceState.TERMINATED, InstanceState.STOPPED):
                raise CapacityUnavailable(f"Spot instance {new_id} went {current.state.value} before running")
            return current if current.state == InstanceState.RUNNING else None

        wait_until(
            running,
            timeout=self.config.launch_timeout_seconds,
            interval=self.config.poll_interval_seconds,
            deadline=self.deadline,
            description=f"waiting for {new_id} to run",
        )

    def _attach(self, record: ReplacementRecord) -> None:
        new_id = record.new_instance_id
        self._retry(
            lambda: self.provider.groups.attach_instance(record.group_name, new_id),
            f"attaching {new_id} to {record.group_name}",
            already_done=lambda: self.provider.groups.describe_instance_membership(new_id) is not None,
        )
        record.attached = True

    def _tag(self, record: ReplacementRecord, group: AutoscalingGroup) -> None:
        new_id = record.new_instance_id
        desired = self.tags.desired_tags(group, record.instance_id)

        def sync() -> Dict[str, str]:
            current = self.provider.instances.describe_instances([new_id]).get(new_id)
            return self.tags.sync(new_id, desired, current.tags if current else {})

        self._retry(sync, f"tagging {new_id}")

    def _cleanup_launched(self, record: ReplacementRecord) -> None:
        """Terminate a spot instance that was launched but never joined the group."""
        if record.new_instance_id is None or record.attached:
            return
        new_id = record.new_instance_id
        try:
            self.provider.instances.terminate_instance(new_id)
            logger.warning(f"Terminated unattached spot instance {new_id} after failed replacement")
        except AutoSpottingError as e:
            logger.error(f"Could not terminate unattached spot instance {new_id}, it needs manual cleanup: {e}")
            record.failure_message = f"{record.failure_message}; cleanup of {new_id} failed: {e}"

    def _log_failure(self, record: ReplacementRecord) -> None:
        message = (
            f"Replacement of {record.instance_id} in {record.group_name} failed in "
            f"{record.failed_in.value}: {record.failure_reason.value}: {record.failure_message}"
        )
        if record.failure_reason in (FailureReason.INVARIANT_VIOLATION, FailureReason.CAPACITY_UNAVAILABLE):
            logger.warning(message)
        else:
            logger.error(message)
        if record.detached and not record.attached:
            logger.warning(f"{record.instance_id} stays detached from {record.group_name}; desired capacity is one lower")

    def _retry(
        self,
        func: Callable[[], T],
        description: str,
        already_done: Optional[Callable[[], bool]] = None,
    ) -> Optional[T]:
        self.deadline.check(description)
        return self.retry.call(func, self.deadline, description, already_done)

    def _left_group(self, instance_id: str) -> bool:
        return self.provider.groups.describe_instance_membership(instance_id) not in ACTIVE_MEMBERSHIP

    def _terminated(self, instance_id: str) -> bool:
        current = self.provider.instances.describe_instances([instance_id]).get(instance_id)
        return current is None or current.state in (InstanceState.TERMINATING, InstanceState.TERMINATED)

    @staticmethod
    def _quietly(read: Callable[[], T], default: T) -> T:
        """Run a read-only lookup inside a polling loop, treating transient errors as 'not yet'."""
        try:
            return read()
        except TransientProviderError as e:
            logger.debug(f"Transient error while polling: {e}")
            return default
