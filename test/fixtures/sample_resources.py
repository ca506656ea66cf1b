#!/usr/bin/env python3
"""
Sample raw AWS resources for testing
"""

import copy
import threading
import time
from contextlib import contextmanager

from cloud_iac_importer.adapters import RawResource, SnapshotAdapter, make_raw
from cloud_iac_importer.registry import default_registry

REGISTRY = default_registry()

VPC = {
    "VpcId": "vpc-1",
    "CidrBlock": "10.0.0.0/16",
    "InstanceTenancy": "default",
    "Tags": [{"Key": "Name", "Value": "main"}, {"Key": "env", "Value": "prod"}]
}

SUBNET = {
    "SubnetId": "subnet-1",
    "VpcId": "vpc-1",
    "CidrBlock": "10.0.1.0/24",
    "AvailabilityZone": "us-east-1a",
    "MapPublicIpOnLaunch": False,
    "Tags": [{"Key": "env", "Value": "prod"}]
}

INSTANCE = {
    "InstanceId": "i-1",
    "ImageId": "ami-12345678",
    "InstanceType": "t3.micro",
    "SubnetId": "subnet-1",
    "Placement": {"AvailabilityZone": "us-east-1a"},
    "State": {"Name": "running"},
    "Tags": [{"Key": "env", "Value": "prod"}, {"Key": "team", "Value": "web"}]
}

SECURITY_GROUP_A = {
    "GroupId": "sg-a",
    "GroupName": "app",
    "Description": "app tier",
    "VpcId": "vpc-1",
    "IpPermissions": [
        {
            "IpProtocol": "tcp",
            "FromPort": 8080,
            "ToPort": 8080,
            "IpRanges": [],
            "UserIdGroupPairs": [{"GroupId": "sg-b"}]
        }
    ],
    "IpPermissionsEgress": [
        {
            "IpProtocol": "-1",
            "IpRanges": [{"CidrIp": "0.0.0.0/0"}]
        }
    ],
    "Tags": []
}

SECURITY_GROUP_B = {
    "GroupId": "sg-b",
    "GroupName": "lb",
    "Description": "load balancer",
    "VpcId": "vpc-1",
    "IpPermissions": [
        {
            "IpProtocol": "tcp",
            "FromPort": 443,
            "ToPort": 443,
            "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "https"}],
            "UserIdGroupPairs": [{"GroupId": "sg-a"}]
        }
    ],
    "Tags": []
}

IAM_ROLE = {
    "RoleName": "lambda-exec",
    "Path": "/service/",
    "Arn": "arn:aws:iam::123456789012:role/service/lambda-exec",
    "AssumeRolePolicyDocument": "%7B%22Version%22%3A%222012-10-17%22%2C%22Statement%22%3A%5B%5D%7D",
    "MaxSessionDuration": 3600,
    "Tags": [{"Key": "env", "Value": "prod"}]
}

LAMBDA_FUNCTION = {
    "FunctionName": "worker",
    "Role": "arn:aws:iam::123456789012:role/service/lambda-exec",
    "Runtime": "python3.11",
    "Handler": "app.handler",
    "MemorySize": 256,
    "Timeout": 30,
    "VpcConfig": {"SubnetIds": ["subnet-1"], "SecurityGroupIds": ["sg-a"]},
    "Environment": {"Variables": {"LOG_LEVEL": "info"}},
    "Tags": {"env": "prod"}
}


def raw(resource_type, attributes, **overrides):
    """RawResource built the way adapters build it"""
    data = copy.deepcopy(attributes)
    data.update(overrides)
    return make_raw(REGISTRY.require(resource_type), data)


def instance(provider_id, **overrides):
    data = copy.deepcopy(INSTANCE)
    data["InstanceId"] = provider_id
    data.update(overrides)
    return RawResource("aws_instance", provider_id, data, {})


def snapshot(*entries, denied=None, region="us-east-1"):
    """Snapshot document for SnapshotAdapter from (type, attributes) pairs"""
    return {
        "provider": {"name": "aws", "region": region},
        "resources": [
            {"type": resource_type, "attributes": copy.deepcopy(attributes)}
            for resource_type, attributes in entries
        ],
        "denied": list(denied or [])
    }


NETWORK_SNAPSHOT = snapshot(
    ("aws_vpc", VPC),
    ("aws_subnet", SUBNET),
    ("aws_instance", INSTANCE),
)


class CountingAdapter(SnapshotAdapter):
    """SnapshotAdapter recording the peak number of concurrent List/Get calls"""

    def __init__(self, registry, document, delay=0.02):
        super().__init__(registry, document)
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    @contextmanager
    def _track(self):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
            yield
        finally:
            with self._lock:
                self.in_flight -= 1

    def list_resources(self, ctx, resource_type, filter_spec=None):
        with self._track():
            return super().list_resources(ctx, resource_type, filter_spec)

    def get_resource(self, ctx, resource_type, provider_id):
        with self._track():
            return super().get_resource(ctx, resource_type, provider_id)
