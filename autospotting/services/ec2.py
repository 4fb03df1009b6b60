"""
EC2 service manager for instances, instance types, launch templates and tags.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .base import BaseServiceManager
from .interfaces import InstancesAPI
from .models import Instance, InstanceState, InstanceTypeInfo, LaunchSource, LaunchSpec, MarketType
from ..core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

# EC2 filters accept at most 200 values
FILTER_BATCH = 200

STATE_MAP = {
    'pending': InstanceState.PENDING,
    'running': InstanceState.RUNNING,
    'shutting-down': InstanceState.TERMINATING,
    'terminated': InstanceState.TERMINATED,
    'stopping': InstanceState.STOPPED,
    'stopped': InstanceState.STOPPED,
}

MISSING_TEMPLATE_ERRORS = {
    'InvalidLaunchTemplateId.NotFound',
    'InvalidLaunchTemplateId.Malformed',
    'InvalidLaunchTemplateName.NotFoundException',
    'InvalidLaunchTemplateId.VersionNotFound',
}


def _batches(values: List[str], size: int = FILTER_BATCH):
    for start in range(0, len(values), size):
        yield values[start:start + size]


class EC2ServiceManager(BaseServiceManager, InstancesAPI):
    """Service manager for EC2 instances."""

    @property
    def service_name(self) -> str:
        return 'ec2'

    def list_regions(self) -> List[str]:
        try:
            response = self.client.describe_regions()
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe regions')

        return sorted(
            region['RegionName'] for region in response['Regions']
            if region.get('OptInStatus', 'opt-in-not-required') in ('opt-in-not-required', 'opted-in')
        )

    def describe_instances(self, instance_ids: Iterable[str]) -> Dict[str, Instance]:
        """Describe instances by id.

        Args:
            instance_ids: Instance ids to look up

        Returns:
            Instances keyed by id; ids that do not exist are left out

        Raises:
            ServiceError: If the lookup fails
        """
        ids = sorted(set(instance_ids))
        instances: Dict[str, Instance] = {}
        if not ids:
            return instances

        try:
            paginator = self.client.get_paginator('describe_instances')
            for batch in _batches(ids):
                for page in paginator.paginate(Filters=[{'Name': 'instance-id', 'Values': batch}]):
                    for reservation in page['Reservations']:
                        for instance in reservation['Instances']:
                            parsed = self._parse_instance(instance)
                            instances[parsed.instance_id] = parsed
            return instances

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe instances')

    def find_tagged_instances(self, tag_key: str) -> Dict[str, Instance]:
        filters = [
            {'Name': 'tag-key', 'Values': [tag_key]},
            {'Name': 'instance-state-name', 'Values': ['pending', 'running']},
        ]
        try:
            instances = {}
            paginator = self.client.get_paginator('describe_instances')
            for page in paginator.paginate(Filters=filters):
                for reservation in page['Reservations']:
                    for instance in reservation['Instances']:
                        parsed = self._parse_instance(instance)
                        instances[parsed.instance_id] = parsed
            return instances

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'find tagged instances', tag_key)

    def describe_instance_types(self) -> Dict[str, InstanceTypeInfo]:
        try:
            catalog = {}
            paginator = self.client.get_paginator('describe_instance_types')
            for page in paginator.paginate():
                for item in page['InstanceTypes']:
                    gpus = sum(gpu.get('Count', 0) for gpu in item.get('GpuInfo', {}).get('Gpus', []))
                    info = InstanceTypeInfo(
                        name=item['InstanceType'],
                        vcpus=item['VCpuInfo']['DefaultVCpus'],
                        memory_mib=item['MemoryInfo']['SizeInMiB'],
                        architectures=frozenset(item.get('ProcessorInfo', {}).get('SupportedArchitectures', [])),
                        gpus=gpus,
                        spot_supported='spot' in item.get('SupportedUsageClasses', []),
                    )
                    catalog[info.name] = info
            return catalog

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe instance types')

    def describe_launch_template_version(
        self, template_id: Optional[str], template_name: Optional[str], version: Optional[str]
    ) -> LaunchSource:
        params: Dict[str, Any] = {'Versions': [version or '$Default']}
        if template_id:
            params['LaunchTemplateId'] = template_id
        elif template_name:
            params['LaunchTemplateName'] = template_name
        else:
            raise ConfigurationError("Launch template reference has neither an id nor a name")

        reference = template_id or template_name
        try:
            response = self.client.describe_launch_template_versions(**params)
        except ClientError as e:
            if self.error_code(e) in MISSING_TEMPLATE_ERRORS:
                raise ConfigurationError(f"Launch template {reference} version {version} not found", details=str(e))
            self._handle_aws_error(e, 'describe launch template', reference)
        except BotoCoreError as e:
            self._handle_aws_error(e, 'describe launch template', reference)

        versions = response.get('LaunchTemplateVersions', [])
        if not versions:
            raise ConfigurationError(f"Launch template {reference} version {version} not found")

        return LaunchSource(
            kind='launch-template',
            name=reference,
            version=str(versions[0].get('VersionNumber', version)),
            data=versions[0].get('LaunchTemplateData', {}),
        )

    def resolve_security_groups(self, names: Iterable[str], vpc_id: Optional[str] = None) -> Dict[str, List[str]]:
        names = sorted(set(names))
        resolved: Dict[str, List[str]] = {}
        if not names:
            return resolved

        filters = [{'Name': 'group-name', 'Values': names}]
        if vpc_id:
            filters.append({'Name': 'vpc-id', 'Values': [vpc_id]})

        try:
            paginator = self.client.get_paginator('describe_security_groups')
            for page in paginator.paginate(Filters=filters):
                for group in page['SecurityGroups']:
                    resolved.setdefault(group['GroupName'], []).append(group['GroupId'])
            return resolved

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe security groups')

    def describe_subnets(self, subnet_ids: Iterable[str]) -> Dict[str, Dict[str, str]]:
        ids = sorted(set(subnet_ids))
        subnets: Dict[str, Dict[str, str]] = {}
        if not ids:
            return subnets

        try:
            paginator = self.client.get_paginator('describe_subnets')
            for batch in _batches(ids):
                for page in paginator.paginate(Filters=[{'Name': 'subnet-id', 'Values': batch}]):
                    for subnet in page['Subnets']:
                        subnets[subnet['SubnetId']] = {
                            'availability_zone': subnet['AvailabilityZone'],
                            'vpc_id': subnet.get('VpcId', ''),
                        }
            return subnets

        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'describe subnets')

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
        params = self._run_instances_params(spec, instance_type, availability_zone, subnet_id, max_price, tags)
        params['ClientToken'] = client_token

        logger.debug(f"Requesting spot {instance_type} in {availability_zone} at max ${max_price:.5f}/h")
        try:
            response = self.client.run_instances(**params)
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'spot launch', instance_type)

        return response['Instances'][0]['InstanceId']

    def terminate_instance(self, instance_id: str) -> None:
        try:
            self.client.terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'terminate', instance_id)

    def create_tags(self, instance_id: str, tags: Dict[str, str]) -> None:
        if not tags:
            return
        try:
            self.client.create_tags(
                Resources=[instance_id],
                Tags=[{'Key': key, 'Value': value} for key, value in sorted(tags.items())],
            )
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'create tags', instance_id)

    def delete_tags(self, instance_id: str, keys: Iterable[str]) -> None:
        keys = sorted(set(keys))
        if not keys:
            return
        try:
            self.client.delete_tags(Resources=[instance_id], Tags=[{'Key': key} for key in keys])
        except (ClientError, BotoCoreError) as e:
            self._handle_aws_error(e, 'delete tags', instance_id)

    @staticmethod
    def _run_instances_params(
        spec: LaunchSpec,
        instance_type: str,
        availability_zone: str,
        subnet_id: Optional[str],
        max_price: float,
        tags: Dict[str, str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'ImageId': spec.image_id,
            'InstanceType': instance_type,
            'MinCount': 1,
            'MaxCount': 1,
            'InstanceMarketOptions': {
                'MarketType': 'spot',
                'SpotOptions': {
                    'MaxPrice': f"{max_price:.5f}",
                    'SpotInstanceType': 'one-time',
                    'InstanceInterruptionBehavior': 'terminate',
                },
            },
        }

        if tags:
            params['TagSpecifications'] = [{
                'ResourceType': 'instance',
                'Tags': [{'Key': key, 'Value': value} for key, value in sorted(tags.items())],
            }]
        if spec.key_name:
            params['KeyName'] = spec.key_name
        if spec.iam_instance_profile:
            profile_key = 'Arn' if spec.iam_instance_profile.startswith('arn:') else 'Name'
            params['IamInstanceProfile'] = {profile_key: spec.iam_instance_profile}
        if spec.user_data:
            # boto3 base64-encodes UserData for run_instances
            params['UserData'] = spec.user_data
        if spec.block_device_mappings:
            params['BlockDeviceMappings'] = [dict(mapping) for mapping in spec.block_device_mappings]
        if spec.ebs_optimized is not None:
            params['EbsOptimized'] = spec.ebs_optimized
        if spec.monitoring is not None:
            params['Monitoring'] = {'Enabled': spec.monitoring}

        placement: Dict[str, str] = {}
        if spec.tenancy:
            placement['Tenancy'] = spec.tenancy

        if subnet_id and spec.associate_public_ip is not None:
            interface: Dict[str, Any] = {
                'DeviceIndex': 0,
                'SubnetId': subnet_id,
                'AssociatePublicIpAddress': spec.associate_public_ip,
            }
            if spec.security_group_ids:
                interface['Groups'] = list(spec.security_group_ids)
            params['NetworkInterfaces'] = [interface]
        else:
            if subnet_id:
                params['SubnetId'] = subnet_id
            else:
                placement['AvailabilityZone'] = availability_zone
            if spec.security_group_ids:
                params['SecurityGroupIds'] = list(spec.security_group_ids)

        if placement:
            params['Placement'] = placement
        return params

    def _parse_instance(self, instance: Dict[str, Any]) -> Instance:
        tags = {tag['Key']: tag.get('Value', '') for tag in instance.get('Tags', [])}
        market = MarketType.SPOT if instance.get('InstanceLifecycle') == 'spot' else MarketType.ON_DEMAND
        return Instance(
            instance_id=instance['InstanceId'],
            state=STATE_MAP.get(instance['State']['Name'], InstanceState.PENDING),
            market=market,
            instance_type=instance['InstanceType'],
            availability_zone=instance.get('Placement', {}).get('AvailabilityZone', ''),
            launch_time=instance.get('LaunchTime'),
            group_name=tags.get('aws:autoscaling:groupName'),
            tags=tags,
        )
