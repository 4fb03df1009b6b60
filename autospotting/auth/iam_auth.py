"""boto3 session creation with optional STS role assumption."""

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, BotoCoreError
from typing import Dict, Optional, Any
import logging
import threading
from datetime import datetime, timedelta, timezone

from autospotting.core.config import Config
from autospotting.core.exceptions import AuthenticationError


logger = logging.getLogger(__name__)

SESSION_NAME = 'autospotting'


class SessionFactory:
    """Builds boto3 sessions, assuming the configured IAM role when there is one."""

    def __init__(self, config: Config, base_session: Optional[boto3.Session] = None):
        """Initialize the session factory.

        Args:
            config: Run configuration; role_arn selects role assumption
            base_session: Session whose credentials assume the role, the
                          default credential chain when omitted
        """
        self.config = config
        self.base_session = base_session or boto3.Session(region_name=config.default_region)
        self._cached_credentials: Optional[Dict[str, Any]] = None
        self._credentials_expiry: Optional[datetime] = None
        self._lock = threading.Lock()

    def get_session(self) -> boto3.Session:
        """Get an authenticated session in the configured home region.

        Raises:
            AuthenticationError: If no credentials are available or role assumption fails
        """
        if not self.config.role_arn:
            if self.base_session.get_credentials() is None:
                raise AuthenticationError(
                    "No AWS credentials found. Configure them with 'aws configure', "
                    "AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY, or an instance/Lambda role"
                )
            return self.base_session

        credentials = self._get_credentials(self.config.role_arn)
        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=self.config.default_region,
        )

    def get_caller_identity(self) -> Dict[str, Any]:
        try:
            return self.get_session().client('sts').get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise AuthenticationError(f"Failed to get caller identity: {e}")

    def _get_credentials(self, role_arn: str) -> Dict[str, Any]:
        """Assume the role, reusing credentials until five minutes before they expire.

        Raises:
            AuthenticationError: If role assumption fails
        """
        with self._lock:
            if self._cached_credentials and self._credentials_expiry:
                if datetime.now(timezone.utc) < self._credentials_expiry - timedelta(minutes=5):
                    logger.debug("Using cached AWS credentials")
                    return self._cached_credentials

            try:
                logger.info(f"Assuming IAM role: {role_arn}")
                response = self.base_session.client('sts', region_name=self.config.default_region).assume_role(
                    RoleArn=role_arn,
                    RoleSessionName=SESSION_NAME,
                    DurationSeconds=3600,
                )

            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                error_message = e.response.get('Error', {}).get('Message', str(e))
                if error_code == 'AccessDenied':
                    raise AuthenticationError(
                        f"Access denied when assuming role {role_arn}. Check that the role exists "
                        "and that its trust policy allows the current credentials to assume it"
                    )
                raise AuthenticationError(f"Failed to assume IAM role {role_arn}: {error_code} - {error_message}")

            except NoCredentialsError:
                raise AuthenticationError("No AWS credentials found to assume the configured role with")

            except BotoCoreError as e:
                raise AuthenticationError(f"AWS configuration error: {e}")

            credentials = response['Credentials']
            expiration = credentials['Expiration']
            if expiration.tzinfo is None:
                expiration = expiration.replace(tzinfo=timezone.utc)

            self._cached_credentials = credentials
            self._credentials_expiry = expiration
            logger.info("Successfully assumed IAM role")
            return credentials
