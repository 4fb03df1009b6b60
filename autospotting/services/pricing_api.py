"""
Pricing service manager: spot price history and on-demand list prices.
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .base import BaseServiceManager
from .interfaces import PricingAPI
from .models import SpotPricePoint


logger = logging.getLogger(__name__)

# The AWS Pricing API is only served from a few regions
PRICING_API_REGION = 'us-east-1'

SPOT_FILTER_BATCH = 200


class PricingServiceManager(BaseServiceManager, PricingAPI):
    """Service manager for spot and on-demand prices of one region."""

    def __init__(self, session: boto3.Session, region: str, max_sdk_attempts: int = 3):
        super().__init__(session, region, max_sdk_attempts)
        self._ec2_client = None
        self._on_demand_cache: Dict[str, Optional[float]] = {}
        self._cache_lock = threading.Lock()

    @property
    def service_name(self) -> str:
        return 'pricing'

    @property
    def client(self):
        """Lazy-loaded Pricing API client, always in the pricing endpoint region."""
        if self._client is None:
            self._client = self.session.client(
                'pricing',
                region_name=PRICING_API_REGION,
                config=BotoConfig(retries={'max_attempts': self.max_sdk_attempts, 'mode': 'adaptive'}),
            )
        return self._client

    @property
    def ec2_client(self):
        """Lazy-loaded EC2 client for spot price history in this region."""
        if self._ec2_client is None:
            self._ec2_client = self.session.client(
                'ec2',
                region_name=self.region,
                config=BotoConfig(retries={'max_attempts': self.max_sdk_attempts, 'mode': 'adaptive'}),
            )
        return self._ec2_client

    def describe_spot_price_history(
        self, instance_types: Iterable[str], zones: Iterable[str], product_description: str
    ) -> List[SpotPricePoint]:
        """Fetch the current spot price of every requested type in every requested zone.

        Args:
            instance_types: Instance types to price
            zones: Availability zones to consider
            product_description: e.g. 'Linux/UNIX'

        Returns:
            Price points; combinations AWS has no data for are absent

        Raises:
            ServiceError: If any page cannot be retrieved
        """
        types = sorted(set(instance_types))
        zones = sorted(set(zones))
        points: List[SpotPricePoint] = []
        if not types or not zones:
            return points

        now = datetime.now(timezone.utc)
        try:
            paginator = self.ec2_client.get_paginator('describe_spot_price_history')
            for start in range(0, len(types), SPOT_FILTER_BATCH):
                batch = types[start:start + SPOT_FILTER_BATCH]
                pages = paginator.paginate(
                    InstanceTypes=batch,
                    ProductDescriptions=[product_description],
                    Filters=[{'Name': 'availability-zone', 'Values': zones}],
                    StartTime=now,
                )
                for page in pages:
                    for entry in page['SpotPriceHistory']:
                        points.append(SpotPricePoint(
                            zone=entry['AvailabilityZone'],
                            instance_type=entry['InstanceType'],
                            price=float(entry['SpotPrice']),
                            timestamp=entry['Timestamp'],
                        ))
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe spot price history')

        logger.debug(f"Retrieved {len(points)} spot price points for {len(types)} types in {self.region}")
        return points

    def get_on_demand_price(self, instance_type: str) -> Optional[float]:
        with self._cache_lock:
            if instance_type in self._on_demand_cache:
                return self._on_demand_cache[instance_type]

        filters = [
            {'Type': 'TERM_MATCH', 'Field': 'operatingSystem', 'Value': 'Linux'},
            {'Type': 'TERM_MATCH', 'Field': 'regionCode', 'Value': self.region},
            {'Type': 'TERM_MATCH', 'Field': 'marketoption', 'Value': 'OnDemand'},
            {'Type': 'TERM_MATCH', 'Field': 'capacitystatus', 'Value': 'Used'},
            {'Type': 'TERM_MATCH', 'Field': 'tenancy', 'Value': 'Shared'},
            {'Type': 'TERM_MATCH', 'Field': 'preInstalledSw', 'Value': 'NA'},
            {'Type': 'TERM_MATCH', 'Field': 'instanceType', 'Value': instance_type},
        ]
        try:
            response = self.client.get_products(ServiceCode='AmazonEC2', Filters=filters, MaxResults=10)
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'get on-demand price', instance_type)

        price = None
        for item in response.get('PriceList', []):
            price = self._parse_on_demand_price(json.loads(item) if isinstance(item, str) else item)
            if price is not None:
                break

        if price is None:
            logger.warning(f"Could not find on-demand pricing data for {instance_type} in {self.region}")
        else:
            logger.debug(f"On-demand price for {instance_type} in {self.region} is ${price:.4f}/hour")

        with self._cache_lock:
            self._on_demand_cache[instance_type] = price
        return price

    @staticmethod
    def _parse_on_demand_price(price_data: Dict[str, Any]) -> Optional[float]:
        terms = price_data.get('terms', {}).get('OnDemand', {})
        for term in terms.values():
            for dimension in term.get('priceDimensions', {}).values():
                description = (dimension.get('description') or '').lower()
                if 'reserved' in description or 'reservation' in description:
                    continue
                price_per_unit = dimension.get('pricePerUnit', {}).get('USD')
                if price_per_unit and float(price_per_unit) > 0:
                    return float(price_per_unit)
        return None
