"""AWS capabilities and the spot replacement engine built on them."""

from .base import BaseServiceManager
from .interfaces import CloudProvider, GroupsAPI, InstancesAPI, LifecycleHooksAPI, PricingAPI
from .models import AutoscalingGroup, Instance, ReplacementPlan, ReplacementRecord, RunReport
from .autoscaling import AutoScalingServiceManager
from .ec2 import EC2ServiceManager
from .pricing_api import PricingServiceManager
from .provider import Boto3ProviderFactory
from .driver import Driver
from .orchestrator import ReplacementLedger, ReplacementOrchestrator

__all__ = [
    'BaseServiceManager',
    'CloudProvider',
    'GroupsAPI',
    'InstancesAPI',
    'LifecycleHooksAPI',
    'PricingAPI',
    'AutoscalingGroup',
    'Instance',
    'ReplacementPlan',
    'ReplacementRecord',
    'RunReport',
    'AutoScalingServiceManager',
    'EC2ServiceManager',
    'PricingServiceManager',
    'Boto3ProviderFactory',
    'Driver',
    'ReplacementLedger',
    'ReplacementOrchestrator',
]
