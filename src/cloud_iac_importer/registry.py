#!/usr/bin/env python3
"""
Resource Type Registry

Static catalog of the resource types the importer understands. Each entry
declares how to read the identity of a raw provider object, how its
provider-native attributes map onto the Terraform schema, and which of
those attributes reference other resources.

New resource types are added as table entries; nothing is derived at
runtime from the provider payloads.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import unquote

from .errors import UnsupportedResourceTypeError

logger = logging.getLogger(__name__)

Extractor = Callable[[Dict[str, Any]], Any]

# Concrete location of a value inside normalized attributes, e.g. ('ingress', 0, 'security_groups', 1)
AttributePath = Tuple[Any, ...]

_SCALAR_TYPES = (str, int, float, bool)


def get_path(data: Any, path: str) -> Any:
    """Resolve a dotted field path ("Placement.AvailabilityZone", "Attachments.0.VpcId")"""
    current = data
    for segment in path.split('.'):
        if current is None:
            return None
        if isinstance(current, list):
            if not segment.isdigit():
                raise ValueError(f"expected a list index in {path!r}, got {segment!r}")
            index = int(segment)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(segment)
        else:
            raise ValueError(f"cannot descend into {type(current).__name__} at {segment!r} of {path!r}")
    return current


def sorted_list(value: Any) -> Optional[List[Any]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {type(value).__name__}")
    return sorted(value) or None


def attr(path: str, transform: Optional[Callable[[Any], Any]] = None) -> Extractor:
    """Read a single field, optionally transforming it"""
    def extract(data: Dict[str, Any]) -> Any:
        value = get_path(data, path)
        if value is not None and transform is not None:
            value = transform(value)
        return value
    return extract


def pluck(path: str, key: str) -> Extractor:
    """Collect `key` from every element of a list of objects"""
    def extract(data: Dict[str, Any]) -> Optional[List[Any]]:
        items = get_path(data, path)
        if items is None:
            return None
        if not isinstance(items, list):
            raise ValueError(f"{path} is not a list")
        values = [item[key] for item in items if isinstance(item, dict) and item.get(key)]
        return sorted(values) or None
    return extract


def to_tags(value: Any) -> Dict[str, str]:
    """Accept both AWS tag shapes: [{'Key': k, 'Value': v}] and {k: v}"""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, list):
        tags = {}
        for item in value:
            if not isinstance(item, dict) or 'Key' not in item:
                raise ValueError(f"malformed tag entry: {item!r}")
            tags[str(item['Key'])] = str(item.get('Value', ''))
        return tags
    raise ValueError(f"tags must be a list or a map, got {type(value).__name__}")


def tag_map(path: str = 'Tags') -> Extractor:
    """Tags as a map, minus the provider-reserved `aws:` keys Terraform cannot manage"""
    def extract(data: Dict[str, Any]) -> Optional[Dict[str, str]]:
        tags = to_tags(get_path(data, path))
        managed = {k: v for k, v in sorted(tags.items()) if not k.startswith('aws:')}
        return managed or None
    return extract


def json_document(path: str) -> Extractor:
    """Policy documents come back decoded or URL-encoded; emit canonical JSON text"""
    def extract(data: Dict[str, Any]) -> Optional[str]:
        document = get_path(data, path)
        if document is None:
            return None
        if isinstance(document, str):
            document = json.loads(unquote(document))
        return json.dumps(document, sort_keys=True, separators=(',', ':'))
    return extract


def nested_block(**extractors: Extractor) -> Extractor:
    """Single nested block rendered as a one-element list; omitted when empty"""
    def extract(data: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        block = {}
        for name, extractor in extractors.items():
            value = extractor(data)
            if value is not None:
                block[name] = value
        return [block] if block else None
    return extract


def ip_permissions(path: str) -> Extractor:
    """EC2 IpPermissions to the aws_security_group ingress/egress object shape"""
    def extract(data: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        permissions = get_path(data, path)
        if permissions is None:
            return None
        if not isinstance(permissions, list):
            raise ValueError(f"{path} is not a list")

        rules = []
        for permission in permissions:
            descriptions = [r.get('Description') for r in permission.get('IpRanges', []) if r.get('Description')]
            rules.append({
                'protocol': str(permission.get('IpProtocol', '-1')),
                'from_port': permission.get('FromPort', 0),
                'to_port': permission.get('ToPort', 0),
                'cidr_blocks': sorted(r['CidrIp'] for r in permission.get('IpRanges', [])),
                'ipv6_cidr_blocks': sorted(r['CidrIpv6'] for r in permission.get('Ipv6Ranges', [])),
                'prefix_list_ids': sorted(p['PrefixListId'] for p in permission.get('PrefixListIds', [])),
                'security_groups': sorted(
                    p['GroupId'] for p in permission.get('UserIdGroupPairs', []) if p.get('GroupId')
                ),
                'self': False,
                'description': descriptions[0] if descriptions else '',
            })

        rules.sort(key=lambda rule: json.dumps(rule, sort_keys=True))
        return rules or None
    return extract


def routes(path: str = 'Routes') -> Extractor:
    """Route table routes, without the implicit `local` route"""
    keys = {
        'cidr_block': 'DestinationCidrBlock',
        'ipv6_cidr_block': 'DestinationIpv6CidrBlock',
        'gateway_id': 'GatewayId',
        'nat_gateway_id': 'NatGatewayId',
        'network_interface_id': 'NetworkInterfaceId',
        'transit_gateway_id': 'TransitGatewayId',
        'vpc_peering_connection_id': 'VpcPeeringConnectionId',
    }

    def extract(data: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        raw_routes = get_path(data, path)
        if raw_routes is None:
            return None
        if not isinstance(raw_routes, list):
            raise ValueError(f"{path} is not a list")

        result = []
        for route in raw_routes:
            if route.get('GatewayId') == 'local' or route.get('Origin') == 'CreateRouteTable':
                continue
            result.append({name: route.get(source, '') for name, source in keys.items()})

        result.sort(key=lambda r: (r['cidr_block'], r['ipv6_cidr_block']))
        return result or None
    return extract


def arn_to_name(arn: str) -> str:
    """arn:aws:iam::123456789012:role/service/app -> app"""
    return arn.rsplit('/', 1)[-1] if arn.startswith('arn:') else arn


def check_value(value: Any, where: str = '') -> None:
    """Normalized values must be plain JSON data"""
    if value is None or isinstance(value, _SCALAR_TYPES):
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            check_value(item, f"{where}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"non-string key {key!r} at {where or '<root>'}")
            check_value(item, f"{where}.{key}" if where else key)
        return
    raise ValueError(f"unsupported value of type {type(value).__name__} at {where or '<root>'}")


@dataclass(frozen=True)
class ReferenceField:
    """An attribute of one resource that points at another resource"""
    attribute: str
    target_type: str
    target_attribute: str = 'id'
    soft: bool = False
    pattern: Optional[str] = None
    to_provider_id: Optional[Callable[[str], str]] = None

    def locate(self, attributes: Dict[str, Any]) -> Iterator[Tuple[AttributePath, str]]:
        """
        Yield (concrete path, raw value) for every reference value present

        The attribute may use `*` to walk every element of a list, and a
        list of strings at the end of the path yields one entry per element.
        """
        yield from self._walk(attributes, self.attribute.split('.'), ())

    def _walk(self, value: Any, segments: List[str], prefix: AttributePath):
        if not segments:
            if isinstance(value, list):
                for index, item in enumerate(value):
                    if self._accepts(item):
                        yield prefix + (index,), item
            elif self._accepts(value):
                yield prefix, value
            return

        head, rest = segments[0], segments[1:]
        if head == '*':
            if isinstance(value, list):
                for index, item in enumerate(value):
                    yield from self._walk(item, rest, prefix + (index,))
        elif isinstance(value, dict) and head in value:
            yield from self._walk(value[head], rest, prefix + (head,))

    def _accepts(self, value: Any) -> bool:
        if not isinstance(value, str) or not value:
            return False
        return self.pattern is None or re.match(self.pattern, value) is not None

    def target_id(self, value: str) -> str:
        return self.to_provider_id(value) if self.to_provider_id else value


@dataclass(frozen=True)
class ResourceTypeDescriptor:
    """Static description of one Terraform resource type"""
    name: str
    category: str
    identity_fields: Tuple[str, ...]
    attributes: Mapping[str, Extractor] = field(default_factory=dict)
    reference_fields: Tuple[ReferenceField, ...] = ()
    tags_field: Optional[str] = 'Tags'
    provider: str = 'aws'

    def identity(self, raw_attributes: Dict[str, Any]) -> str:
        """Identity used as the Terraform `id`; multiple fields are joined with ':'"""
        parts = []
        for path in self.identity_fields:
            value = get_path(raw_attributes, path)
            if value in (None, ''):
                raise ValueError(f"identity field {path!r} is missing")
            parts.append(str(value))
        return ':'.join(parts)

    def normalize(self, raw_attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Map raw attributes onto the Terraform schema; raises ValueError on malformed data"""
        if not isinstance(raw_attributes, dict):
            raise ValueError(f"attributes must be a map, got {type(raw_attributes).__name__}")

        normalized = {}
        for name, extractor in self.attributes.items():
            try:
                value = extractor(raw_attributes)
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise ValueError(f"attribute {name!r}: {e}") from e
            if value is None:
                continue
            check_value(value, name)
            normalized[name] = value
        return normalized

    def extract_tags(self, raw_attributes: Dict[str, Any]) -> Dict[str, str]:
        if not self.tags_field:
            return {}
        return to_tags(get_path(raw_attributes, self.tags_field))


class ResourceRegistry:
    """Lookup table of resource type descriptors, in declaration order"""

    def __init__(self, descriptors: Iterable[ResourceTypeDescriptor] = ()):
        self._descriptors: Dict[str, ResourceTypeDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ResourceTypeDescriptor):
        if descriptor.name in self._descriptors:
            raise ValueError(f"Resource type already registered: {descriptor.name}")
        self._descriptors[descriptor.name] = descriptor

    def get(self, resource_type: str) -> Optional[ResourceTypeDescriptor]:
        return self._descriptors.get(resource_type)

    def require(self, resource_type: str) -> ResourceTypeDescriptor:
        descriptor = self._descriptors.get(resource_type)
        if descriptor is None:
            raise UnsupportedResourceTypeError(resource_type)
        return descriptor

    def has(self, resource_type: str) -> bool:
        return resource_type in self._descriptors

    def resource_types(self, provider: Optional[str] = None) -> List[str]:
        return [
            name for name, descriptor in self._descriptors.items()
            if provider is None or descriptor.provider == provider
        ]

    def categories(self) -> List[str]:
        return sorted({d.category for d in self._descriptors.values()})

    def __contains__(self, resource_type: str) -> bool:
        return self.has(resource_type)

    def __iter__(self) -> Iterator[ResourceTypeDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)


# AWS catalog, ordered roughly from foundation to consumers
AWS_RESOURCE_TYPES = (
    ResourceTypeDescriptor(
        name='aws_vpc',
        category='network',
        identity_fields=('VpcId',),
        attributes={
            'cidr_block': attr('CidrBlock'),
            'instance_tenancy': attr('InstanceTenancy'),
            'tags': tag_map(),
        },
    ),
    ResourceTypeDescriptor(
        name='aws_subnet',
        category='network',
        identity_fields=('SubnetId',),
        attributes={
            'vpc_id': attr('VpcId'),
            'cidr_block': attr('CidrBlock'),
            'availability_zone': attr('AvailabilityZone'),
            'map_public_ip_on_launch': attr('MapPublicIpOnLaunch'),
            'tags': tag_map(),
        },
        reference_fields=(
            ReferenceField('vpc_id', 'aws_vpc'),
        ),
    ),
    ResourceTypeDescriptor(
        name='aws_internet_gateway',
        category='network',
        identity_fields=('InternetGatewayId',),
        attributes={
            'vpc_id': attr('Attachments.0.VpcId'),
            'tags': tag_map(),
        },
        reference_fields=(
            ReferenceField('vpc_id', 'aws_vpc'),
        ),
    ),
    ResourceTypeDescriptor(
        name='aws_route_table',
        category='network',
        identity_fields=('RouteTableId',),
        attributes={
            'vpc_id': attr('VpcId'),
            'route': routes(),
            'tags': tag_map(),
        },
        reference_fields=(
            ReferenceField('vpc_id', 'aws_vpc'),
            ReferenceField('route.*.gateway_id', 'aws_internet_gateway', soft=True, pattern=r'^igw-'),
        ),
    ),
    ResourceTypeDescriptor(
        name='aws_security_group',
        category='security',
        identity_fields=('GroupId',),
        attributes={
            'name': attr('GroupName'),
            'description': attr('Description'),
            'vpc_id': attr('VpcId'),
            'ingress': ip_permissions('IpPermissions'),
            'egress': ip_permissions('IpPermissionsEgress'),
            'tags': tag_map(),
        },
        reference_fields=(
            ReferenceField('vpc_id', 'aws_vpc'),
            ReferenceField('ingress.*.security_groups', 'aws_security_group', soft=True),
            ReferenceField('egress.*.security_groups', 'aws_security_group', soft=True),
        ),
    ),
    ResourceTypeDescriptor(
        name='aws_iam_role',
        category='iam',
        identity_fields=('RoleName',),
        attributes={
            'name': attr('RoleName'),
            'path': attr('Path'),
            'description': attr('Description'),
            'assume_role_policy': json_document('AssumeRolePolicyDocument'),
            'max_session_duration': attr('MaxSessionDuration'),
            'tags': tag_map(),
        },
    ),
    ResourceTypeDescriptor(
        name='aws_s3_bucket',
        category='storage',
        identity_fields=('Name',),
        attributes={
            'bucket': attr('Name'),
            'tags': tag_map(),
        },
    ),
    ResourceTypeDescriptor(
        name='aws_instance',
        category='compute',
        identity_fields=('InstanceId',),
        attributes={
            'ami': attr('ImageId'),
            'instance_type': attr('InstanceType'),
            'subnet_id': attr('SubnetId'),
            'availability_zone': attr('Placement.AvailabilityZone'),
            'key_name': attr('KeyName'),
            'vpc_security_group_ids': pluck('SecurityGroups', 'GroupId'),
            'ebs_optimized': attr('EbsOptimized'),
            'source_dest_check': attr('SourceDestCheck'),
            'tags': tag_map(),
        },
        reference_fields=(
            ReferenceField('subnet_id', 'aws_subnet'),
            ReferenceField('vpc_security_group_ids', 'aws_security_group'),
        ),
    ),
    ResourceTypeDescriptor(
        name='aws_lambda_function',
        category='compute',
        identity_fields=('FunctionName',),
        attributes={
            'function_name': attr('FunctionName'),
            'role': attr('Role'),
            'runtime': attr('Runtime'),
            'handler': attr('Handler'),
            'memory_size': attr('MemorySize'),
            'timeout': attr('Timeout'),
            'description': attr('Description'),
            'environment': nested_block(variables=attr('Environment.Variables')),
            'vpc_config': nested_block(
                subnet_ids=attr('VpcConfig.SubnetIds', sorted_list),
                security_group_ids=attr('VpcConfig.SecurityGroupIds', sorted_list),
            ),
            'tags': tag_map(),
        },
        reference_fields=(
            ReferenceField('role', 'aws_iam_role', target_attribute='arn', to_provider_id=arn_to_name),
            ReferenceField('vpc_config.*.subnet_ids', 'aws_subnet'),
            ReferenceField('vpc_config.*.security_group_ids', 'aws_security_group'),
        ),
    ),
    ResourceTypeDescriptor(
        name='aws_db_subnet_group',
        category='database',
        identity_fields=('DBSubnetGroupName',),
        attributes={
            'name': attr('DBSubnetGroupName'),
            'description': attr('DBSubnetGroupDescription'),
            'subnet_ids': pluck('Subnets', 'SubnetIdentifier'),
        },
        reference_fields=(
            ReferenceField('subnet_ids', 'aws_subnet'),
        ),
        tags_field=None,
    ),
    ResourceTypeDescriptor(
        name='aws_db_instance',
        category='database',
        identity_fields=('DBInstanceIdentifier',),
        attributes={
            'identifier': attr('DBInstanceIdentifier'),
            'engine': attr('Engine'),
            'engine_version': attr('EngineVersion'),
            'instance_class': attr('DBInstanceClass'),
            'allocated_storage': attr('AllocatedStorage'),
            'username': attr('MasterUsername'),
            'db_subnet_group_name': attr('DBSubnetGroup.DBSubnetGroupName'),
            'vpc_security_group_ids': pluck('VpcSecurityGroups', 'VpcSecurityGroupId'),
            'multi_az': attr('MultiAZ'),
            'publicly_accessible': attr('PubliclyAccessible'),
            'storage_encrypted': attr('StorageEncrypted'),
            'tags': tag_map('TagList'),
        },
        reference_fields=(
            ReferenceField('db_subnet_group_name', 'aws_db_subnet_group', target_attribute='name'),
            ReferenceField('vpc_security_group_ids', 'aws_security_group'),
        ),
        tags_field='TagList',
    ),
)


def default_registry() -> ResourceRegistry:
    """Registry with every built-in resource type"""
    return ResourceRegistry(AWS_RESOURCE_TYPES)
