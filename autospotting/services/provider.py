"""
Builds the per-region capability set on top of boto3 service managers.
"""
import threading
from typing import Dict

import boto3

from .autoscaling import AutoScalingServiceManager
from .ec2 import EC2ServiceManager
from .interfaces import CloudProvider
from .pricing_api import PricingServiceManager


class Boto3ProviderFactory:
    """Creates and caches one CloudProvider per region from a boto3 session."""

    def __init__(self, session: boto3.Session, max_sdk_attempts: int = 3):
        """Initialize the factory.

        Args:
            session: Authenticated boto3 session
            max_sdk_attempts: Attempts made by the SDK before errors surface
        """
        self.session = session
        self.max_sdk_attempts = max_sdk_attempts
        self._providers: Dict[str, CloudProvider] = {}
        self._lock = threading.Lock()

    def __call__(self, region: str) -> CloudProvider:
        with self._lock:
            if region not in self._providers:
                groups = AutoScalingServiceManager(self.session, region, self.max_sdk_attempts)
                self._providers[region] = CloudProvider(
                    region=region,
                    groups=groups,
                    hooks=groups,
                    instances=EC2ServiceManager(self.session, region, self.max_sdk_attempts),
                    pricing=PricingServiceManager(self.session, region, self.max_sdk_attempts),
                )
            return self._providers[region]
