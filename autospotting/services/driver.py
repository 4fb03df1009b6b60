"""
Driver: one full pass over every region, group and eligible instance.
"""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .inspector import GroupInspector, InspectedGroup, InspectionResult, replacement_budget, replacement_candidates
from .interfaces import CloudProvider, ProviderFactory
from .launch_spec import LaunchSpecBuilder
from .models import (
    AutoscalingGroup,
    FailureReason,
    GroupReport,
    Instance,
    LaunchSpec,
    OutcomeStatus,
    ReplacementOutcome,
    ReplacementRecord,
    ReplacementState,
    RunReport,
)
from .orchestrator import ReplacementLedger, ReplacementOrchestrator
from .pricing import SpotPriceAnalyzer
from .regions import RegionEnumerator
from .tags import TagSynchronizer
from ..core.config import Config
from ..core.deadline import Deadline
from ..core.exceptions import AutoSpottingError, CapacityUnavailable, ConfigurationError, ServiceError


logger = logging.getLogger(__name__)

SKIPPED_FAILURES = (FailureReason.CAPACITY_UNAVAILABLE, FailureReason.INVARIANT_VIOLATION)


@dataclass
class RegionContext:
    """Everything the group workers of a region share."""
    region: str
    provider: CloudProvider
    inspection: InspectionResult
    analyzer: Optional[SpotPriceAnalyzer]
    spec_builder: LaunchSpecBuilder
    tags: TagSynchronizer


def outcome_from_record(record: ReplacementRecord) -> ReplacementOutcome:
    plan = record.plan
    if record.state == ReplacementState.DONE:
        return ReplacementOutcome(
            instance_id=record.instance_id,
            status=OutcomeStatus.REPLACED,
            message=f"replaced by spot {plan.instance_type} in {plan.availability_zone} at ${plan.spot_price:.4f}/h",
            new_instance_id=record.new_instance_id,
            instance_type=plan.instance_type,
            final_state=record.state.value,
        )

    status = OutcomeStatus.SKIPPED if record.failure_reason in SKIPPED_FAILURES else OutcomeStatus.FAILED
    return ReplacementOutcome(
        instance_id=record.instance_id,
        status=status,
        reason=record.failure_reason.value if record.failure_reason else None,
        message=record.failure_message or "",
        new_instance_id=record.new_instance_id,
        instance_type=plan.instance_type if plan else None,
        final_state=record.failed_in.value if record.failed_in else record.state.value,
    )


def launch_zones(group: AutoscalingGroup, spec: LaunchSpec) -> List[str]:
    """Zones a replacement for the group can be launched into."""
    zones = set(group.availability_zones)
    if spec.subnets_by_zone:
        zones &= {zone for zone, _ in spec.subnets_by_zone}
    return sorted(zones)


class Driver:
    """Runs replacement passes over all configured regions."""

    def __init__(
        self,
        config: Config,
        provider_factory: ProviderFactory,
        deadline: Optional[Deadline] = None,
        ledger: Optional[ReplacementLedger] = None,
        regions: Optional[Sequence[str]] = None,
    ):
        """Initialize the driver.

        Args:
            config: Run configuration
            provider_factory: Maps a region name to its CloudProvider
            deadline: Run deadline, derived from the configuration when omitted
            ledger: Record arena, a fresh one when omitted
            regions: Fixed region list, enumerated from the home region when omitted
        """
        self.config = config
        self.provider_factory = provider_factory
        self.deadline = deadline or Deadline(config.run_timeout_seconds)
        self.ledger = ledger or ReplacementLedger()
        self.regions = list(regions) if regions is not None else None

    def run(self) -> RunReport:
        """Perform one replacement pass.

        Failures of single regions, groups or instances are recorded in the
        report and never stop the pass.

        Returns:
            RunReport with per-group outcomes
        """
        report = RunReport(
            run_id=f"run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}",
            started_at=datetime.now(timezone.utc),
            dry_run=self.config.dry_run,
        )
        logger.info(f"Starting run {report.run_id}{' (dry run)' if self.config.dry_run else ''}")

        try:
            regions = self._list_regions()
        except AutoSpottingError as e:
            logger.error(f"Could not list regions: {e}")
            report.region_errors[self.config.default_region] = str(e)
            return self._finish(report)

        contexts = self._prepare_regions(regions, report)
        self._process_groups(contexts, report)
        return self._finish(report)

    def _list_regions(self) -> List[str]:
        if self.regions is not None:
            return self.regions
        home = self.provider_factory(self.config.default_region)
        return RegionEnumerator(home.instances, self.config).list_regions()

    def _prepare_regions(self, regions: List[str], report: RunReport) -> List[RegionContext]:
        contexts = []
        if not regions:
            return contexts

        with ThreadPoolExecutor(max_workers=min(self.config.max_workers, len(regions))) as executor:
            future_to_region = {executor.submit(self._prepare_region, region): region for region in regions}

            for future in as_completed(future_to_region):
                region = future_to_region[future]
                try:
                    context = future.result()
                except Exception as e:
                    error_msg = f"Inspection failed in {region}: {e}"
                    report.region_errors[region] = str(e)
                    logger.error(error_msg)
                    continue

                contexts.append(context)
                for skipped in context.inspection.skipped:
                    report.groups.append(GroupReport(region=region, group_name=skipped.name, skipped_reason=skipped.reason))

        return sorted(contexts, key=lambda c: c.region)

    def _prepare_region(self, region: str) -> RegionContext:
        self.deadline.check(f"inspecting {region}")
        provider = self.provider_factory(region)
        inspection = GroupInspector(provider, self.config).inspect()

        analyzer = None
        if inspection.groups:
            catalog = provider.instances.describe_instance_types()
            zones = {zone for inspected in inspection.groups for zone in inspected.group.availability_zones}
            analyzer = SpotPriceAnalyzer(provider.pricing, catalog, zones, self.config)

        return RegionContext(
            region=region,
            provider=provider,
            inspection=inspection,
            analyzer=analyzer,
            spec_builder=LaunchSpecBuilder(provider.instances),
            tags=TagSynchronizer(provider.instances),
        )

    def _process_groups(self, contexts: List[RegionContext], report: RunReport) -> None:
        work = [(context, inspected) for context in contexts for inspected in context.inspection.groups]
        if not work:
            return

        with ThreadPoolExecutor(max_workers=min(self.config.max_workers, len(work))) as executor:
            future_to_group = {
                executor.submit(self._process_group, context, inspected): (context.region, inspected.group.name)
                for context, inspected in work
            }

            for future in as_completed(future_to_group):
                region, group_name = future_to_group[future]
                try:
                    report.groups.append(future.result())
                except Exception as e:
                    logger.exception(f"Processing of {group_name} in {region} failed")
                    report.groups.append(GroupReport(
                        region=region,
                        group_name=group_name,
                        skipped_reason=f"{type(e).__name__}: {e}",
                    ))

    def _process_group(self, context: RegionContext, inspected: InspectedGroup) -> GroupReport:
        """Replace the eligible instances of one group, one at a time."""
        group, config = inspected.group, inspected.config
        report = GroupReport(region=context.region, group_name=group.name)

        if self.deadline.expired:
            report.skipped_reason = "timeout: run deadline reached before the group was processed"
            return report

        report.tags_repaired = context.tags.repair_group(group) if not config.dry_run else 0

        try:
            spec = context.spec_builder.build(group, inspected.source)
        except (ConfigurationError, ServiceError) as e:
            report.skipped_reason = f"{type(e).__name__}: {e}"
            logger.warning(f"Skipping group {group.name} in {context.region}: {report.skipped_reason}")
            return report

        reconciled = context.inspection.reconciled
        for instance in group.instances.values():
            if instance.instance_id in reconciled and not instance.is_spot:
                report.outcomes.append(ReplacementOutcome(
                    instance_id=instance.instance_id,
                    status=OutcomeStatus.SKIPPED,
                    reason="reconciled",
                    message=f"already replaced by {reconciled[instance.instance_id]}",
                ))

        candidates = replacement_candidates(group, reconciled)
        budget = replacement_budget(group, config)
        logger.info(
            f"Group {group.name} in {context.region}: {len(candidates)} candidates, "
            f"replacing up to {budget} this run"
        )

        zones = launch_zones(group, spec)
        for instance in candidates[:budget]:
            if self.deadline.expired:
                report.outcomes.append(ReplacementOutcome(
                    instance_id=instance.instance_id,
                    status=OutcomeStatus.SKIPPED,
                    reason=FailureReason.TIMEOUT.value,
                    message="run deadline reached",
                ))
                continue
            try:
                outcome = self._replace(context, group, config, instance, spec, zones)
            except ConfigurationError as e:
                report.skipped_reason = f"ConfigurationError: {e}"
                logger.warning(f"Skipping group {group.name} in {context.region}: {e}")
                break
            except AutoSpottingError as e:
                logger.error(f"Replacement of {instance.instance_id} in {group.name} failed: {e}")
                outcome = ReplacementOutcome(
                    instance_id=instance.instance_id,
                    status=OutcomeStatus.FAILED,
                    reason=type(e).__name__,
                    message=str(e),
                )
            report.outcomes.append(outcome)

        return report

    def _replace(
        self,
        context: RegionContext,
        group: AutoscalingGroup,
        config: Config,
        instance: Instance,
        spec: LaunchSpec,
        zones: List[str],
    ) -> ReplacementOutcome:
        try:
            plan = context.analyzer.plan(group, instance, config, zones)
        except CapacityUnavailable as e:
            logger.warning(f"No spot replacement for {instance.instance_id} in {group.name}: {e}")
            return ReplacementOutcome(
                instance_id=instance.instance_id,
                status=OutcomeStatus.SKIPPED,
                reason=FailureReason.CAPACITY_UNAVAILABLE.value,
                message=str(e),
            )
        except ServiceError as e:
            logger.error(f"Could not plan a replacement for {instance.instance_id} in {group.name}: {e}")
            return ReplacementOutcome(
                instance_id=instance.instance_id,
                status=OutcomeStatus.FAILED,
                reason=type(e).__name__,
                message=str(e),
            )

        if config.dry_run:
            return ReplacementOutcome(
                instance_id=instance.instance_id,
                status=OutcomeStatus.SKIPPED,
                reason="dry-run",
                message=f"would launch spot {plan.instance_type} in {plan.availability_zone} bidding ${plan.max_price:.4f}/h",
                instance_type=plan.instance_type,
            )

        orchestrator = ReplacementOrchestrator(context.provider, config, self.ledger, self.deadline, context.tags)
        return outcome_from_record(orchestrator.execute(group, instance, plan, spec))

    def _finish(self, report: RunReport) -> RunReport:
        report.groups.sort(key=lambda g: (g.region, g.group_name))
        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Run {report.run_id} complete: {report.replaced} replaced, {report.skipped} skipped, "
            f"{report.failed} failed across {len(report.groups)} groups"
        )
        if report.region_errors:
            logger.warning(f"{len(report.region_errors)} regions could not be processed")
        return report
