"""
Spot price analysis: picks the cheapest compatible spot instance type for a replacement.

`select_spot_candidate` is a pure function of the price points and the
instance type catalog; `SpotPriceAnalyzer` gathers that data for a region
once per run and turns a selection into a ReplacementPlan.
"""
import logging
import threading
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .interfaces import PricingAPI
from .models import (
    AutoscalingGroup,
    CompatibilityEnvelope,
    Instance,
    InstanceTypeInfo,
    ReplacementPlan,
    SpotPricePoint,
)
from ..core.config import Config
from ..core.exceptions import CapacityUnavailable, ConfigurationError


logger = logging.getLogger(__name__)


def matches_any(instance_type: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(instance_type, pattern) for pattern in patterns)


def is_compatible(info: InstanceTypeInfo, envelope: CompatibilityEnvelope) -> bool:
    """Check whether an instance type satisfies the envelope's hardware and filter constraints."""
    if not info.spot_supported:
        return False
    if info.vcpus < envelope.min_vcpus or info.memory_mib < envelope.min_memory_mib:
        return False
    if info.gpus < envelope.min_gpus:
        return False
    if envelope.architectures and not (info.architectures & envelope.architectures):
        return False
    if envelope.allowed_patterns and not matches_any(info.name, envelope.allowed_patterns):
        return False
    if matches_any(info.name, envelope.disallowed_patterns):
        return False
    return True


def resource_margin(info: InstanceTypeInfo, envelope: CompatibilityEnvelope) -> float:
    """Relative headroom of an instance type over the envelope's minimum vCPU and memory."""
    vcpu_margin = (info.vcpus - envelope.min_vcpus) / max(envelope.min_vcpus, 1)
    memory_margin = (info.memory_mib - envelope.min_memory_mib) / max(envelope.min_memory_mib, 1)
    return vcpu_margin + memory_margin


def latest_prices(points: Iterable[SpotPricePoint]) -> Dict[Tuple[str, str], SpotPricePoint]:
    """Keep only the most recent price for every (zone, instance type)."""
    latest: Dict[Tuple[str, str], SpotPricePoint] = {}
    for point in points:
        key = (point.zone, point.instance_type)
        current = latest.get(key)
        # equal timestamps: the lower price wins
        if current is None or (point.timestamp, -point.price) > (current.timestamp, -current.price):
            latest[key] = point
    return latest


def select_spot_candidate(
    envelope: CompatibilityEnvelope,
    price_points: Iterable[SpotPricePoint],
    catalog: Mapping[str, InstanceTypeInfo],
    ceiling: float,
) -> Optional[SpotPricePoint]:
    """Choose the cheapest compatible (zone, instance type) priced below the ceiling.

    Equal prices are broken by the larger resource margin, then by instance
    type and zone name so the result is stable across runs. Types or zones
    missing from the price data are simply not candidates.

    Args:
        envelope: Compatibility requirements
        price_points: Spot price history, possibly partial
        catalog: Instance type hardware profiles
        ceiling: Exclusive upper bound on the spot price

    Returns:
        The winning price point, or None when nothing is eligible
    """
    candidates = []
    for (zone, instance_type), point in latest_prices(price_points).items():
        if zone not in envelope.allowed_zones:
            continue
        info = catalog.get(instance_type)
        if info is None or not is_compatible(info, envelope):
            continue
        if point.price <= 0 or point.price >= ceiling:
            continue
        candidates.append((point.price, -resource_margin(info, envelope), instance_type, zone, point))

    if not candidates:
        return None

    candidates.sort(key=lambda c: c[:4])
    return candidates[0][4]


def build_envelope(
    instance: Instance,
    catalog: Mapping[str, InstanceTypeInfo],
    config: Config,
    candidate_zones: Sequence[str],
) -> CompatibilityEnvelope:
    """Derive the compatibility envelope from the on-demand instance being replaced.

    Raises:
        ConfigurationError: If the instance type is missing from the catalog
    """
    original = catalog.get(instance.instance_type)
    if original is None:
        raise ConfigurationError(f"Instance type {instance.instance_type} of {instance.instance_id} is unknown")

    zones = set(candidate_zones)
    if config.preserve_availability_zone:
        zones &= {instance.availability_zone}

    return CompatibilityEnvelope(
        min_vcpus=original.vcpus,
        min_memory_mib=original.memory_mib,
        architectures=original.architectures,
        allowed_zones=frozenset(zones),
        min_gpus=original.gpus,
        allowed_patterns=tuple(config.allowed_instance_types),
        disallowed_patterns=tuple(config.disallowed_instance_types),
    )


def compute_bid(spot_price: float, ceiling: float, config: Config) -> float:
    """Maximum price to bid for a selected spot price."""
    if config.bidding_policy == "aggressive":
        return min(ceiling, spot_price * (1.0 + config.spot_price_buffer_percentage / 100.0))
    return ceiling


class SpotPriceAnalyzer:
    """Plans spot replacements for the groups of a single region."""

    def __init__(
        self,
        pricing: PricingAPI,
        catalog: Mapping[str, InstanceTypeInfo],
        zones: Iterable[str],
        config: Config,
    ):
        """Initialize the analyzer.

        Args:
            pricing: Pricing capability for the region
            catalog: Instance types offered in the region
            zones: Every availability zone any managed group uses
            config: Run configuration
        """
        self.pricing = pricing
        self.catalog = dict(catalog)
        self.zones = sorted(set(zones))
        self.config = config
        self._price_points: Optional[List[SpotPricePoint]] = None
        self._lock = threading.Lock()

    def price_points(self) -> List[SpotPricePoint]:
        """Spot price history for the region, fetched once and shared by every group."""
        with self._lock:
            if self._price_points is None:
                spot_types = [name for name, info in self.catalog.items() if info.spot_supported]
                self._price_points = self.pricing.describe_spot_price_history(
                    spot_types, self.zones, self.config.spot_product_description
                )
                logger.info(f"Loaded {len(self._price_points)} spot prices for {len(spot_types)} instance types")
            return self._price_points

    def price_ceiling(self, instance_type: str, config: Config) -> float:
        """Highest acceptable spot price for replacing an instance of this type.

        Raises:
            ConfigurationError: If no override exists and the on-demand price is unknown
        """
        if config.max_spot_price is not None:
            return config.max_spot_price

        on_demand = self.pricing.get_on_demand_price(instance_type)
        if on_demand is None:
            raise ConfigurationError(
                f"No on-demand price known for {instance_type}; set autospotting_max_spot_price to manage it"
            )
        return on_demand * config.on_demand_price_multiplier

    def plan(
        self,
        group: AutoscalingGroup,
        instance: Instance,
        config: Config,
        candidate_zones: Sequence[str],
    ) -> ReplacementPlan:
        """Build the replacement plan for one on-demand instance.

        Args:
            group: The instance's group
            instance: The on-demand instance to retire
            config: The group's effective configuration
            candidate_zones: Zones the group can launch into

        Returns:
            A plan naming the spot type, zone and bid

        Raises:
            CapacityUnavailable: If no compatible type is priced below the ceiling
            ConfigurationError: If the ceiling or the instance type cannot be determined
        """
        envelope = build_envelope(instance, self.catalog, config, candidate_zones)
        ceiling = self.price_ceiling(instance.instance_type, config)
        selected = select_spot_candidate(envelope, self.price_points(), self.catalog, ceiling)

        if selected is None:
            raise CapacityUnavailable(
                f"No spot instance type compatible with {instance.instance_type} is priced below "
                f"${ceiling:.4f}/h in {', '.join(sorted(envelope.allowed_zones)) or 'any allowed zone'}"
            )

        plan = ReplacementPlan(
            group_name=group.name,
            target_instance_id=instance.instance_id,
            instance_type=selected.instance_type,
            availability_zone=selected.zone,
            max_price=compute_bid(selected.price, ceiling, config),
            price_ceiling=ceiling,
            spot_price=selected.price,
        )
        logger.info(
            f"Planned {instance.instance_id} ({instance.instance_type}) -> spot {plan.instance_type} "
            f"in {plan.availability_zone} at ${plan.spot_price:.4f}/h (ceiling ${ceiling:.4f}/h)"
        )
        return plan
