"""
Base service manager for boto3-backed capability implementations.
"""
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..core.exceptions import CapacityUnavailable, ServiceError, TransientProviderError


# AWS error codes that are worth retrying
RETRYABLE_ERRORS = {
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'RequestThrottled',
    'RequestThrottledException',
    'TooManyRequestsException',
    'InternalError',
    'InternalFailure',
    'ServiceUnavailable',
    'Unavailable',
    'IncorrectInstanceState',
}

# AWS error codes meaning there is no spot capacity at an acceptable price
CAPACITY_ERRORS = {
    'InsufficientInstanceCapacity',
    'InsufficientCapacity',
    'SpotMaxPriceTooLow',
    'MaxSpotInstanceCountExceeded',
    'InstanceLimitExceeded',
    'Unsupported',
}

NETWORK_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


class BaseServiceManager(ABC):
    """Abstract base class for all AWS service managers."""

    def __init__(self, session: boto3.Session, region: str, max_sdk_attempts: int = 3):
        """Initialize the service manager with AWS session and region.

        Args:
            session: Authenticated boto3 session
            region: AWS region to operate in
            max_sdk_attempts: Attempts made by the SDK itself before an error surfaces
        """
        self.session = session
        self.region = region
        self.max_sdk_attempts = max_sdk_attempts
        self._client = None

    @property
    def client(self):
        """Lazy-loaded AWS service client."""
        if self._client is None:
            self._client = self.session.client(
                self.service_name,
                region_name=self.region,
                config=BotoConfig(retries={'max_attempts': self.max_sdk_attempts, 'mode': 'adaptive'}),
            )
        return self._client

    @property
    @abstractmethod
    def service_name(self) -> str:
        """AWS service name (e.g., 'ec2', 'autoscaling', 'pricing')."""
        pass

    @staticmethod
    def error_code(error: Exception) -> Optional[str]:
        if isinstance(error, ClientError):
            return error.response.get('Error', {}).get('Code')
        return None

    def _handle_aws_error(self, error: Exception, operation: str, resource_id: str = None) -> None:
        """Convert an AWS error into the AutoSpotting error taxonomy.

        Args:
            error: The original AWS error
            operation: Operation that failed
            resource_id: ID of resource being operated on (if applicable)

        Raises:
            TransientProviderError: For throttling and network failures
            CapacityUnavailable: When spot capacity is exhausted
            ServiceError: For everything else
        """
        resource_context = f" for resource {resource_id}" if resource_id else ""
        code = self.error_code(error)
        error_message = f"AWS {self.service_name} {operation} failed in {self.region}{resource_context}: {error}"

        if code in RETRYABLE_ERRORS or isinstance(error, NETWORK_ERRORS):
            raise TransientProviderError(error_message, details=str(error), error_code=code) from error
        if code in CAPACITY_ERRORS:
            raise CapacityUnavailable(error_message, details=str(error), error_code=code) from error
        if isinstance(error, (ClientError, BotoCoreError)):
            raise ServiceError(error_message, details=str(error), error_code=code) from error
        raise error
