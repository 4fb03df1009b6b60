"""Tests for the boto3-backed service managers using moto and mocked clients."""

import json
from datetime import datetime, timezone
from unittest.mock import Mock

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from autospotting.core.config import Config
from autospotting.core.exceptions import (
    CapacityUnavailable,
    ConfigurationError,
    ServiceError,
    TransientProviderError,
)
from autospotting.services.autoscaling import AutoScalingServiceManager
from autospotting.services.ec2 import EC2ServiceManager
from autospotting.services.models import InstanceState, LaunchSpec, MarketType
from autospotting.services.pricing_api import PricingServiceManager
from autospotting.services.provider import Boto3ProviderFactory
from autospotting.services.regions import RegionEnumerator


REGION = "us-east-1"


def client_error(code, operation="Operation", message="failed"):
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so no real account is ever touched."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def session(aws_credentials, mock_aws_services):
    return boto3.Session(region_name=REGION)


@pytest.fixture
def network(session):
    """A VPC with one subnet and two security groups."""
    ec2 = session.client('ec2', region_name=REGION)
    vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")['Vpc']['VpcId']
    subnet = ec2.create_subnet(VpcId=vpc_id, CidrBlock="10.0.1.0/24", AvailabilityZone=f"{REGION}a")['Subnet']
    web = ec2.create_security_group(GroupName="web", Description="web", VpcId=vpc_id)['GroupId']
    ssh = ec2.create_security_group(GroupName="ssh", Description="ssh", VpcId=vpc_id)['GroupId']
    image_id = ec2.describe_images()['Images'][0]['ImageId']
    return {
        'vpc_id': vpc_id,
        'subnet_id': subnet['SubnetId'],
        'security_groups': {'web': web, 'ssh': ssh},
        'image_id': image_id,
    }


@pytest.fixture
def asg(session, network):
    """An Auto Scaling Group of two instances launched from a launch configuration."""
    client = session.client('autoscaling', region_name=REGION)
    client.create_launch_configuration(
        LaunchConfigurationName="web-lc",
        ImageId=network['image_id'],
        InstanceType="t3.micro",
        SecurityGroups=[network['security_groups']['web']],
    )
    client.create_auto_scaling_group(
        AutoScalingGroupName="web",
        LaunchConfigurationName="web-lc",
        MinSize=1,
        MaxSize=4,
        DesiredCapacity=2,
        VPCZoneIdentifier=network['subnet_id'],
        Tags=[
            {'Key': 'spot-enabled', 'Value': 'true', 'PropagateAtLaunch': False,
             'ResourceId': 'web', 'ResourceType': 'auto-scaling-group'},
            {'Key': 'team', 'Value': 'platform', 'PropagateAtLaunch': True,
             'ResourceId': 'web', 'ResourceType': 'auto-scaling-group'},
        ],
    )
    return client


class TestAutoScalingServiceManager:
    """Group discovery and membership changes against moto."""

    def test_list_groups(self, session, asg, network):
        groups = AutoScalingServiceManager(session, REGION).list_groups()

        assert [g.name for g in groups] == ["web"]
        group = groups[0]
        assert group.desired_capacity == 2
        assert (group.min_size, group.max_size) == (1, 4)
        assert group.launch_configuration_name == "web-lc"
        assert group.subnet_ids == [network['subnet_id']]
        assert len(group.members) == 2
        assert all(m.lifecycle_state == "InService" for m in group.members)

    def test_list_group_tags(self, session, asg):
        tags = AutoScalingServiceManager(session, REGION).list_group_tags(["web", "missing"])

        by_key = {tag.key: tag for tag in tags["web"]}
        assert by_key["spot-enabled"].value == "true"
        assert by_key["team"].propagate_at_launch is True
        assert tags["missing"] == []

    def test_describe_group_and_launch_configuration(self, session, asg, network):
        manager = AutoScalingServiceManager(session, REGION)

        assert manager.describe_group("nope") is None
        source = manager.describe_launch_configuration("web-lc")
        assert source.kind == 'launch-configuration'
        assert source.data['ImageId'] == network['image_id']

        with pytest.raises(ConfigurationError):
            manager.describe_launch_configuration("missing-lc")

    def test_detach_and_attach(self, session, asg):
        manager = AutoScalingServiceManager(session, REGION)
        instance_id = manager.describe_group("web").members[0].instance_id
        assert manager.describe_instance_membership(instance_id) == "InService"

        manager.detach_instance("web", instance_id, decrement_desired=True)

        group = manager.describe_group("web")
        assert group.desired_capacity == 1
        assert group.member(instance_id) is None
        assert manager.describe_instance_membership(instance_id) is None

        manager.attach_instance("web", instance_id)

        group = manager.describe_group("web")
        assert group.desired_capacity == 2
        assert group.member(instance_id) is not None

    def test_lifecycle_hooks(self, session, asg):
        asg.put_lifecycle_hook(
            LifecycleHookName="drain",
            AutoScalingGroupName="web",
            LifecycleTransition="autoscaling:EC2_INSTANCE_TERMINATING",
            HeartbeatTimeout=120,
        )

        hooks = AutoScalingServiceManager(session, REGION).describe_lifecycle_hooks("web")

        assert [(h.name, h.transition) for h in hooks] == [("drain", "autoscaling:EC2_INSTANCE_TERMINATING")]

    @pytest.mark.parametrize("code, error_class", [
        ('Throttling', TransientProviderError),
        ('ValidationError', ServiceError),
    ])
    def test_error_mapping(self, code, error_class):
        manager = AutoScalingServiceManager(Mock(), REGION)
        manager._client = Mock()
        manager._client.detach_instances.side_effect = client_error(code, 'DetachInstances')

        with pytest.raises(error_class) as exc_info:
            manager.detach_instance("web", "i-0001", decrement_desired=True)

        assert exc_info.value.error_code == code
        assert "i-0001" in str(exc_info.value)


class TestEC2ServiceManager:
    """Instances, tags and lookups against moto."""

    def _run(self, session, network, count=1):
        ec2 = session.client('ec2', region_name=REGION)
        response = ec2.run_instances(
            ImageId=network['image_id'], InstanceType="t3.micro", MinCount=count, MaxCount=count,
            SubnetId=network['subnet_id'],
        )
        return [i['InstanceId'] for i in response['Instances']]

    def test_describe_instances(self, session, network):
        instance_ids = self._run(session, network, count=2)

        instances = EC2ServiceManager(session, REGION).describe_instances(instance_ids)

        assert sorted(instances) == sorted(instance_ids)
        instance = instances[instance_ids[0]]
        assert instance.state == InstanceState.RUNNING
        assert instance.market == MarketType.ON_DEMAND
        assert instance.instance_type == "t3.micro"
        assert instance.availability_zone == f"{REGION}a"

    def test_describe_no_instances(self, session):
        assert EC2ServiceManager(session, REGION).describe_instances([]) == {}

    def test_tags_and_tagged_instance_lookup(self, session, network):
        instance_id, other_id = self._run(session, network, count=2)
        manager = EC2ServiceManager(session, REGION)

        manager.create_tags(instance_id, {"autospotting-replaced-instance": "i-0old", "Name": "web"})
        manager.delete_tags(instance_id, ["Name"])

        tagged = manager.find_tagged_instances("autospotting-replaced-instance")
        assert list(tagged) == [instance_id]
        assert tagged[instance_id].tags == {"autospotting-replaced-instance": "i-0old"}
        assert other_id not in tagged

    def test_terminate_instance(self, session, network):
        instance_id, = self._run(session, network)
        manager = EC2ServiceManager(session, REGION)

        manager.terminate_instance(instance_id)

        state = manager.describe_instances([instance_id])[instance_id].state
        assert state in (InstanceState.TERMINATING, InstanceState.TERMINATED)

    def test_resolve_security_groups_by_name(self, session, network):
        ec2 = session.client('ec2', region_name=REGION)
        other_vpc = ec2.create_vpc(CidrBlock="10.1.0.0/16")['Vpc']['VpcId']
        ec2.create_security_group(GroupName="web", Description="other web", VpcId=other_vpc)
        manager = EC2ServiceManager(session, REGION)

        resolved = manager.resolve_security_groups(["web", "ssh", "missing"], network['vpc_id'])

        assert resolved == {
            "web": [network['security_groups']['web']],
            "ssh": [network['security_groups']['ssh']],
        }
        assert len(manager.resolve_security_groups(["web"])["web"]) == 2

    def test_describe_subnets(self, session, network):
        subnets = EC2ServiceManager(session, REGION).describe_subnets([network['subnet_id']])

        assert subnets == {
            network['subnet_id']: {'availability_zone': f"{REGION}a", 'vpc_id': network['vpc_id']},
        }

    def test_list_regions(self, session):
        regions = EC2ServiceManager(session, REGION).list_regions()

        assert REGION in regions
        assert regions == sorted(regions)

    def test_launch_template_version(self, session, network):
        ec2 = session.client('ec2', region_name=REGION)
        template_id = ec2.create_launch_template(
            LaunchTemplateName="web-lt",
            LaunchTemplateData={"ImageId": network['image_id'], "InstanceType": "t3.micro"},
        )['LaunchTemplate']['LaunchTemplateId']

        source = EC2ServiceManager(session, REGION).describe_launch_template_version(template_id, None, "1")

        assert source.kind == 'launch-template'
        assert source.version == "1"
        assert source.data['ImageId'] == network['image_id']

    def test_missing_launch_template_is_a_configuration_error(self):
        manager = EC2ServiceManager(Mock(), REGION)
        manager._client = Mock()
        manager._client.describe_launch_template_versions.side_effect = client_error('InvalidLaunchTemplateId.NotFound')

        with pytest.raises(ConfigurationError):
            manager.describe_launch_template_version("lt-0missing", None, "3")

    def test_launch_template_without_reference(self):
        with pytest.raises(ConfigurationError):
            EC2ServiceManager(Mock(), REGION).describe_launch_template_version(None, None, None)

    def test_describe_instance_types(self):
        manager = EC2ServiceManager(Mock(), REGION)
        manager._client = Mock()
        manager._client.get_paginator.return_value.paginate.return_value = [{'InstanceTypes': [
            {
                'InstanceType': 'p3.2xlarge',
                'VCpuInfo': {'DefaultVCpus': 8},
                'MemoryInfo': {'SizeInMiB': 62464},
                'ProcessorInfo': {'SupportedArchitectures': ['x86_64']},
                'GpuInfo': {'Gpus': [{'Count': 1}]},
                'SupportedUsageClasses': ['on-demand', 'spot'],
            },
            {
                'InstanceType': 'm5.metal',
                'VCpuInfo': {'DefaultVCpus': 96},
                'MemoryInfo': {'SizeInMiB': 393216},
                'ProcessorInfo': {'SupportedArchitectures': ['x86_64']},
                'SupportedUsageClasses': ['on-demand'],
            },
        ]}]

        catalog = manager.describe_instance_types()

        assert catalog['p3.2xlarge'].gpus == 1
        assert catalog['p3.2xlarge'].architectures == frozenset(['x86_64'])
        assert catalog['p3.2xlarge'].spot_supported
        assert not catalog['m5.metal'].spot_supported

    @pytest.mark.parametrize("error, error_class", [
        (client_error('InsufficientInstanceCapacity', 'RunInstances'), CapacityUnavailable),
        (client_error('SpotMaxPriceTooLow', 'RunInstances'), CapacityUnavailable),
        (client_error('RequestLimitExceeded', 'RunInstances'), TransientProviderError),
        (EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"), TransientProviderError),
        (client_error('UnauthorizedOperation', 'RunInstances'), ServiceError),
    ])
    def test_spot_launch_error_mapping(self, error, error_class):
        manager = EC2ServiceManager(Mock(), REGION)
        manager._client = Mock()
        manager._client.run_instances.side_effect = error

        with pytest.raises(error_class):
            manager.run_spot_instance(LaunchSpec(image_id="ami-1", instance_type="m5.large"),
                                      "m5a.large", "us-east-1a", "subnet-a", 0.096, {}, "token-1")

    def test_spot_launch_request(self):
        manager = EC2ServiceManager(Mock(), REGION)
        manager._client = Mock()
        manager._client.run_instances.return_value = {'Instances': [{'InstanceId': 'i-spot1'}]}
        spec = LaunchSpec(
            image_id="ami-1",
            instance_type="m5.large",
            security_group_ids=("sg-0web",),
            key_name="deploy",
            iam_instance_profile="web-profile",
            user_data="#!/bin/bash\n",
            monitoring=True,
        )

        instance_id = manager.run_spot_instance(spec, "m5a.large", "us-east-1a", "subnet-a", 0.096,
                                                {"Name": "web"}, "i-0001-abc")

        assert instance_id == "i-spot1"
        params = manager._client.run_instances.call_args.kwargs
        assert params['ClientToken'] == "i-0001-abc"
        assert params['InstanceType'] == "m5a.large"
        assert params['InstanceMarketOptions']['MarketType'] == 'spot'
        assert params['InstanceMarketOptions']['SpotOptions']['MaxPrice'] == "0.09600"
        assert params['SubnetId'] == "subnet-a"
        assert params['SecurityGroupIds'] == ["sg-0web"]
        assert params['IamInstanceProfile'] == {'Name': 'web-profile'}
        assert params['TagSpecifications'][0]['Tags'] == [{'Key': 'Name', 'Value': 'web'}]
        assert params['Monitoring'] == {'Enabled': True}
        assert 'Placement' not in params


class TestRunInstancesParams:
    """Translation of launch specs into run_instances parameters."""

    def test_public_ip_uses_network_interface(self):
        spec = LaunchSpec(image_id="ami-1", instance_type="m5.large", security_group_ids=("sg-1", "sg-2"),
                          associate_public_ip=True, tenancy="dedicated",
                          iam_instance_profile="arn:aws:iam::123456789012:instance-profile/web")

        params = EC2ServiceManager._run_instances_params(spec, "m5a.large", "us-east-1a", "subnet-a", 0.1, {})

        assert params['NetworkInterfaces'] == [{
            'DeviceIndex': 0, 'SubnetId': "subnet-a", 'AssociatePublicIpAddress': True, 'Groups': ["sg-1", "sg-2"],
        }]
        assert 'SecurityGroupIds' not in params
        assert 'SubnetId' not in params
        assert params['Placement'] == {'Tenancy': "dedicated"}
        assert params['IamInstanceProfile'] == {'Arn': "arn:aws:iam::123456789012:instance-profile/web"}

    def test_classic_placement_without_subnet(self):
        spec = LaunchSpec(image_id="ami-1", instance_type="m5.large")

        params = EC2ServiceManager._run_instances_params(spec, "m5a.large", "us-east-1b", None, 0.1, {})

        assert params['Placement'] == {'AvailabilityZone': "us-east-1b"}
        assert 'TagSpecifications' not in params


class TestPricingServiceManager:
    """Spot price history and on-demand prices with mocked clients."""

    def _price_list(self, usd):
        return json.dumps({'terms': {'OnDemand': {'TERM': {'priceDimensions': {'DIM': {
            'description': '$0.096 per On Demand Linux m5.large Instance Hour',
            'pricePerUnit': {'USD': usd},
        }}}}}})

    def test_on_demand_price_is_cached(self):
        manager = PricingServiceManager(Mock(), "eu-west-1")
        manager._client = Mock()
        manager._client.get_products.return_value = {'PriceList': [self._price_list("0.0960000000")]}

        assert manager.get_on_demand_price("m5.large") == 0.096
        assert manager.get_on_demand_price("m5.large") == 0.096
        manager._client.get_products.assert_called_once()
        filters = manager._client.get_products.call_args.kwargs['Filters']
        assert {'Type': 'TERM_MATCH', 'Field': 'regionCode', 'Value': 'eu-west-1'} in filters

    def test_unknown_on_demand_price(self):
        manager = PricingServiceManager(Mock(), REGION)
        manager._client = Mock()
        manager._client.get_products.return_value = {'PriceList': [self._price_list("0.0000000000")]}

        assert manager.get_on_demand_price("x9.huge") is None

    def test_pricing_client_uses_pricing_endpoint_region(self):
        session = Mock()
        manager = PricingServiceManager(session, "ap-south-1")

        manager.client

        assert session.client.call_args.kwargs['region_name'] == "us-east-1"

    def test_spot_price_history(self):
        manager = PricingServiceManager(Mock(), REGION)
        manager._ec2_client = Mock()
        timestamp = datetime(2024, 6, 1, tzinfo=timezone.utc)
        manager._ec2_client.get_paginator.return_value.paginate.return_value = [{'SpotPriceHistory': [
            {'AvailabilityZone': 'us-east-1a', 'InstanceType': 'm5.large', 'SpotPrice': '0.0400', 'Timestamp': timestamp},
        ]}]

        points = manager.describe_spot_price_history(["m5.large"], ["us-east-1a"], "Linux/UNIX")

        assert len(points) == 1
        assert (points[0].zone, points[0].instance_type, points[0].price) == ("us-east-1a", "m5.large", 0.04)
        kwargs = manager._ec2_client.get_paginator.return_value.paginate.call_args.kwargs
        assert kwargs['ProductDescriptions'] == ["Linux/UNIX"]

    def test_spot_price_history_throttled(self):
        manager = PricingServiceManager(Mock(), REGION)
        manager._ec2_client = Mock()
        manager._ec2_client.get_paginator.return_value.paginate.side_effect = client_error('RequestLimitExceeded')

        with pytest.raises(TransientProviderError):
            manager.describe_spot_price_history(["m5.large"], ["us-east-1a"], "Linux/UNIX")


class TestProviderAndRegions:
    """Provider assembly and region selection."""

    def test_providers_are_cached_per_region(self, session):
        factory = Boto3ProviderFactory(session)

        provider = factory(REGION)

        assert factory(REGION) is provider
        assert provider.region == REGION
        assert provider.hooks is provider.groups
        assert factory("eu-west-1") is not provider

    def test_region_patterns(self):
        instances = Mock()
        instances.list_regions.return_value = ["ap-south-1", "eu-west-1", "us-east-1", "us-west-2"]

        assert RegionEnumerator(instances, Config()).list_regions() == [
            "ap-south-1", "eu-west-1", "us-east-1", "us-west-2",
        ]
        assert RegionEnumerator(instances, Config(regions=["us-*", "eu-west-1"])).list_regions() == [
            "eu-west-1", "us-east-1", "us-west-2",
        ]
        assert RegionEnumerator(instances, Config(regions=["cn-*"])).list_regions() == []
