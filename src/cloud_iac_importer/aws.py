#!/usr/bin/env python3
"""
AWS Provider Adapter

This module implements List and Get for every registry resource type on
top of boto3. Provider errors are translated into the importer's error
taxonomy: credential problems are fatal, everything else is scoped to the
resource type or resource that failed.

Throttling and transient failures are retried by botocore's adaptive
retry mode; nothing here retries on its own.
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)

from .adapters import ProviderAdapter, RawResource, make_raw
from .errors import (
    AccessDeniedError,
    AuthenticationError,
    ControlPlaneUnreachableError,
    DiscoveryError,
    ResourceNotFoundError,
    UnsupportedResourceTypeError,
)
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    'AuthFailure',
    'ExpiredToken',
    'ExpiredTokenException',
    'InvalidClientTokenId',
    'SignatureDoesNotMatch',
    'UnrecognizedClientException',
}

ACCESS_DENIED_CODES = {
    '403',
    'AccessDenied',
    'AccessDeniedException',
    'UnauthorizedOperation',
}

NOT_FOUND_CODES = {
    '404',
    'DBInstanceNotFound',
    'DBSubnetGroupNotFoundFault',
    'NoSuchBucket',
    'NoSuchEntity',
    'ResourceNotFoundException',
}

# resource type -> (describe operation, result key, id list parameter)
EC2_OPERATIONS = {
    'aws_vpc': ('describe_vpcs', 'Vpcs', 'VpcIds'),
    'aws_subnet': ('describe_subnets', 'Subnets', 'SubnetIds'),
    'aws_internet_gateway': ('describe_internet_gateways', 'InternetGateways', 'InternetGatewayIds'),
    'aws_route_table': ('describe_route_tables', 'RouteTables', 'RouteTableIds'),
    'aws_security_group': ('describe_security_groups', 'SecurityGroups', 'GroupIds'),
}


def translate_error(error: Exception, resource_type: Optional[str] = None,
                    provider_id: Optional[str] = None) -> Exception:
    """Map a botocore exception onto the importer error taxonomy"""
    target = f"{resource_type} {provider_id}" if provider_id else resource_type

    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return AuthenticationError(f"AWS credentials not available: {error}")

    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        message = error.response.get('Error', {}).get('Message', str(error))

        if code in AUTH_ERROR_CODES:
            return AuthenticationError(f"AWS rejected the credentials ({code}): {message}")
        if code in ACCESS_DENIED_CODES:
            return AccessDeniedError(f"Access denied for {target} ({code}): {message}",
                                     resource_type=resource_type, provider_id=provider_id)
        if code in NOT_FOUND_CODES or code.endswith('.NotFound'):
            return ResourceNotFoundError(f"{target} not found ({code})",
                                         resource_type=resource_type, provider_id=provider_id)
        return DiscoveryError(f"AWS error for {target} ({code}): {message}",
                              resource_type=resource_type, provider_id=provider_id)

    return DiscoveryError(f"AWS error for {target}: {error}",
                          resource_type=resource_type, provider_id=provider_id)


class AWSAdapter(ProviderAdapter):
    """boto3 backed provider adapter for a single region"""

    name = 'aws'

    def __init__(self,
                 registry: ResourceRegistry,
                 region: str = 'us-east-1',
                 profile: Optional[str] = None,
                 session: Optional[boto3.Session] = None):
        """
        Initialize the adapter

        Args:
            registry: Resource types this adapter may be asked for
            region: AWS region to read from
            profile: AWS profile to use for authentication
            session: Pre-built boto3 session (overrides profile)
        """
        super().__init__(registry)
        self.region = region
        self.profile = profile
        self.session = session or (
            boto3.Session(profile_name=profile, region_name=region) if profile
            else boto3.Session(region_name=region)
        )
        self._client_config = Config(
            region_name=region,
            retries={'max_attempts': 10, 'mode': 'adaptive'},
        )
        self._clients: Dict[str, Any] = {}
        self._clients_lock = threading.Lock()

        self._listers: Dict[str, Callable[..., Iterator[Dict[str, Any]]]] = {
            'aws_instance': self._list_instances,
            'aws_s3_bucket': self._list_buckets,
            'aws_iam_role': self._list_roles,
            'aws_lambda_function': self._list_functions,
            'aws_db_instance': self._list_db_instances,
            'aws_db_subnet_group': self._list_db_subnet_groups,
        }
        self._getters: Dict[str, Callable[[str], Dict[str, Any]]] = {
            'aws_instance': self._get_instance,
            'aws_s3_bucket': self._get_bucket,
            'aws_iam_role': self._get_role,
            'aws_lambda_function': self._get_function,
            'aws_db_instance': self._get_db_instance,
            'aws_db_subnet_group': self._get_db_subnet_group,
        }

        logger.info(f"Initialized AWSAdapter for region {region}")

    def _client(self, service: str):
        with self._clients_lock:
            if service not in self._clients:
                self._clients[service] = self.session.client(service, config=self._client_config)
            return self._clients[service]

    def verify(self, ctx) -> None:
        ctx.check_cancelled()
        try:
            identity = self._client('sts').get_caller_identity()
        except EndpointConnectionError as e:
            raise ControlPlaneUnreachableError(f"Cannot reach AWS: {e}") from e
        except (ClientError, NoCredentialsError, PartialCredentialsError) as e:
            translated = translate_error(e)
            if isinstance(translated, AuthenticationError):
                raise translated from e
            raise AuthenticationError(f"Cannot verify AWS identity: {translated}") from e

        logger.info(f"Authenticated as {identity.get('Arn')} in account {identity.get('Account')}")

    def list_resources(self, ctx, resource_type: str, filter_spec=None) -> List[RawResource]:
        descriptor = self.registry.require(resource_type)
        tag_filters = list(filter_spec.tag_filters) if filter_spec is not None else []

        try:
            if resource_type in EC2_OPERATIONS:
                items = self._list_ec2(ctx, resource_type, tag_filters)
            elif resource_type in self._listers:
                items = self._listers[resource_type](ctx)
            else:
                raise UnsupportedResourceTypeError(resource_type, "no AWS lister")

            resources = []
            for item in items:
                try:
                    resources.append(make_raw(descriptor, item))
                except ValueError as e:
                    logger.warning(f"Skipping {resource_type} without identity: {e}")
            return resources

        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, resource_type) from e

    def get_resource(self, ctx, resource_type: str, provider_id: str) -> RawResource:
        ctx.check_cancelled()
        descriptor = self.registry.require(resource_type)

        try:
            if resource_type in EC2_OPERATIONS:
                item = self._get_ec2(resource_type, provider_id)
            elif resource_type in self._getters:
                item = self._getters[resource_type](provider_id)
            else:
                raise UnsupportedResourceTypeError(resource_type, "no AWS getter")
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, resource_type, provider_id) from e

        if item is None:
            raise ResourceNotFoundError(f"{resource_type} {provider_id} not found",
                                        resource_type=resource_type, provider_id=provider_id)
        try:
            return make_raw(descriptor, item)
        except ValueError as e:
            raise DiscoveryError(f"{resource_type} {provider_id} has no identity: {e}",
                                 resource_type=resource_type, provider_id=provider_id) from e

    def provider_block(self) -> Dict[str, Any]:
        block = {'region': self.region}
        if self.profile:
            block['profile'] = self.profile
        return block

    def _paginate(self, ctx, service: str, operation: str, result_key: str, **kwargs) -> Iterator[Dict[str, Any]]:
        paginator = self._client(service).get_paginator(operation)
        for page in paginator.paginate(**kwargs):
            ctx.check_cancelled()
            yield from page.get(result_key, [])

    # EC2

    def _list_ec2(self, ctx, resource_type: str, tag_filters) -> Iterator[Dict[str, Any]]:
        operation, result_key, _ = EC2_OPERATIONS[resource_type]
        kwargs = {}
        if tag_filters:
            kwargs['Filters'] = [{'Name': f"tag:{t.key}", 'Values': [t.value]} for t in tag_filters]
        return self._paginate(ctx, 'ec2', operation, result_key, **kwargs)

    def _get_ec2(self, resource_type: str, provider_id: str) -> Optional[Dict[str, Any]]:
        operation, result_key, id_param = EC2_OPERATIONS[resource_type]
        response = getattr(self._client('ec2'), operation)(**{id_param: [provider_id]})
        items = response.get(result_key, [])
        return items[0] if items else None

    def _list_instances(self, ctx) -> Iterator[Dict[str, Any]]:
        for reservation in self._paginate(ctx, 'ec2', 'describe_instances', 'Reservations'):
            for instance in reservation.get('Instances', []):
                if instance.get('State', {}).get('Name') != 'terminated':
                    yield instance

    def _get_instance(self, provider_id: str) -> Optional[Dict[str, Any]]:
        response = self._client('ec2').describe_instances(InstanceIds=[provider_id])
        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                return instance
        return None

    # S3

    def _bucket_tags(self, bucket_name: str) -> List[Dict[str, str]]:
        try:
            return self._client('s3').get_bucket_tagging(Bucket=bucket_name).get('TagSet', [])
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'NoSuchTagSet':
                return []
            raise

    def _list_buckets(self, ctx) -> Iterator[Dict[str, Any]]:
        response = self._client('s3').list_buckets()
        for bucket in response.get('Buckets', []):
            ctx.check_cancelled()
            yield {'Name': bucket['Name'], 'Tags': self._bucket_tags(bucket['Name'])}

    def _get_bucket(self, provider_id: str) -> Dict[str, Any]:
        self._client('s3').head_bucket(Bucket=provider_id)
        return {'Name': provider_id, 'Tags': self._bucket_tags(provider_id)}

    # IAM

    def _list_roles(self, ctx) -> Iterator[Dict[str, Any]]:
        iam = self._client('iam')
        for role in self._paginate(ctx, 'iam', 'list_roles', 'Roles'):
            tags = iam.list_role_tags(RoleName=role['RoleName']).get('Tags', [])
            yield dict(role, Tags=tags)

    def _get_role(self, provider_id: str) -> Dict[str, Any]:
        return self._client('iam').get_role(RoleName=provider_id)['Role']

    # Lambda

    def _list_functions(self, ctx) -> Iterator[Dict[str, Any]]:
        client = self._client('lambda')
        for function in self._paginate(ctx, 'lambda', 'list_functions', 'Functions'):
            tags = client.list_tags(Resource=function['FunctionArn']).get('Tags', {})
            yield dict(function, Tags=tags)

    def _get_function(self, provider_id: str) -> Dict[str, Any]:
        response = self._client('lambda').get_function(FunctionName=provider_id)
        return dict(response['Configuration'], Tags=response.get('Tags', {}))

    # RDS

    def _list_db_instances(self, ctx) -> Iterator[Dict[str, Any]]:
        return self._paginate(ctx, 'rds', 'describe_db_instances', 'DBInstances')

    def _get_db_instance(self, provider_id: str) -> Optional[Dict[str, Any]]:
        response = self._client('rds').describe_db_instances(DBInstanceIdentifier=provider_id)
        items = response.get('DBInstances', [])
        return items[0] if items else None

    def _list_db_subnet_groups(self, ctx) -> Iterator[Dict[str, Any]]:
        return self._paginate(ctx, 'rds', 'describe_db_subnet_groups', 'DBSubnetGroups')

    def _get_db_subnet_group(self, provider_id: str) -> Optional[Dict[str, Any]]:
        response = self._client('rds').describe_db_subnet_groups(DBSubnetGroupName=provider_id)
        items = response.get('DBSubnetGroups', [])
        return items[0] if items else None
