#!/usr/bin/env python3
"""
Unit tests for the resource type registry
"""

import json
import unittest
import sys
import os

# Add src and fixtures directories to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../src'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../fixtures'))

from cloud_iac_importer.errors import UnsupportedResourceTypeError
from cloud_iac_importer.registry import (
    ReferenceField,
    ResourceRegistry,
    ResourceTypeDescriptor,
    arn_to_name,
    attr,
    default_registry,
    get_path,
    json_document,
    tag_map,
)
from sample_resources import IAM_ROLE, INSTANCE, LAMBDA_FUNCTION, SECURITY_GROUP_A, SUBNET


class TestExtractors(unittest.TestCase):
    """Test the attribute extractors"""

    def test_get_path_descends_dicts_and_lists(self):
        data = {'Attachments': [{'VpcId': 'vpc-1'}], 'Placement': {'AvailabilityZone': 'us-east-1a'}}

        self.assertEqual(get_path(data, 'Attachments.0.VpcId'), 'vpc-1')
        self.assertEqual(get_path(data, 'Placement.AvailabilityZone'), 'us-east-1a')
        self.assertIsNone(get_path(data, 'Attachments.3.VpcId'))
        self.assertIsNone(get_path(data, 'Missing.Field'))

    def test_get_path_rejects_scalar_descent(self):
        with self.assertRaises(ValueError):
            get_path({'CidrBlock': '10.0.0.0/16'}, 'CidrBlock.Inner')

    def test_tag_map_drops_reserved_keys_and_sorts(self):
        extract = tag_map()
        tags = extract({'Tags': [
            {'Key': 'team', 'Value': 'web'},
            {'Key': 'aws:cloudformation:stack-name', 'Value': 'stack'},
            {'Key': 'Name', 'Value': 'main'},
        ]})

        self.assertEqual(list(tags), ['Name', 'team'])

    def test_tag_map_accepts_map_shape(self):
        self.assertEqual(tag_map()({'Tags': {'env': 'prod'}}), {'env': 'prod'})
        self.assertIsNone(tag_map()({'Tags': []}))

    def test_json_document_decodes_url_encoded_policy(self):
        document = json_document('AssumeRolePolicyDocument')(IAM_ROLE)

        self.assertEqual(json.loads(document), {'Version': '2012-10-17', 'Statement': []})
        self.assertEqual(document, '{"Statement":[],"Version":"2012-10-17"}')

    def test_arn_to_name(self):
        self.assertEqual(arn_to_name('arn:aws:iam::123456789012:role/service/lambda-exec'), 'lambda-exec')
        self.assertEqual(arn_to_name('lambda-exec'), 'lambda-exec')


class TestResourceTypeDescriptor(unittest.TestCase):
    """Test normalization through descriptors"""

    def setUp(self):
        self.registry = default_registry()

    def test_normalize_subnet(self):
        attributes = self.registry.require('aws_subnet').normalize(SUBNET)

        self.assertEqual(attributes, {
            'vpc_id': 'vpc-1',
            'cidr_block': '10.0.1.0/24',
            'availability_zone': 'us-east-1a',
            'map_public_ip_on_launch': False,
            'tags': {'env': 'prod'},
        })

    def test_normalize_drops_missing_values(self):
        attributes = self.registry.require('aws_instance').normalize(INSTANCE)

        self.assertNotIn('key_name', attributes)
        self.assertNotIn('vpc_security_group_ids', attributes)
        self.assertEqual(attributes['availability_zone'], 'us-east-1a')

    def test_normalize_rejects_malformed_tags(self):
        with self.assertRaises(ValueError):
            self.registry.require('aws_subnet').normalize(dict(SUBNET, Tags='not-a-tag-list'))

    def test_normalize_rejects_unsupported_values(self):
        descriptor = ResourceTypeDescriptor(
            name='test_thing', category='test', identity_fields=('Id',),
            attributes={'created': attr('Created')},
        )
        with self.assertRaises(ValueError):
            descriptor.normalize({'Id': 'x', 'Created': object()})

    def test_identity_requires_fields(self):
        descriptor = self.registry.require('aws_vpc')

        self.assertEqual(descriptor.identity({'VpcId': 'vpc-1'}), 'vpc-1')
        with self.assertRaises(ValueError):
            descriptor.identity({'CidrBlock': '10.0.0.0/16'})

    def test_security_group_rules(self):
        attributes = self.registry.require('aws_security_group').normalize(SECURITY_GROUP_A)

        self.assertEqual(attributes['ingress'], [{
            'protocol': 'tcp',
            'from_port': 8080,
            'to_port': 8080,
            'cidr_blocks': [],
            'ipv6_cidr_blocks': [],
            'prefix_list_ids': [],
            'security_groups': ['sg-b'],
            'self': False,
            'description': '',
        }])
        self.assertEqual(attributes['egress'][0]['cidr_blocks'], ['0.0.0.0/0'])
        self.assertNotIn('tags', attributes)

    def test_lambda_nested_blocks(self):
        attributes = self.registry.require('aws_lambda_function').normalize(LAMBDA_FUNCTION)

        self.assertEqual(attributes['vpc_config'], [{'subnet_ids': ['subnet-1'], 'security_group_ids': ['sg-a']}])
        self.assertEqual(attributes['environment'], [{'variables': {'LOG_LEVEL': 'info'}}])

    def test_extract_tags(self):
        self.assertEqual(self.registry.require('aws_lambda_function').extract_tags(LAMBDA_FUNCTION),
                         {'env': 'prod'})
        self.assertEqual(self.registry.require('aws_db_subnet_group').extract_tags({'Tags': [1]}), {})


class TestReferenceField(unittest.TestCase):
    """Test reference discovery inside normalized attributes"""

    def test_locate_scalar(self):
        field = ReferenceField('vpc_id', 'aws_vpc')

        self.assertEqual(list(field.locate({'vpc_id': 'vpc-1'})), [(('vpc_id',), 'vpc-1')])
        self.assertEqual(list(field.locate({'vpc_id': ''})), [])
        self.assertEqual(list(field.locate({})), [])

    def test_locate_wildcard_list(self):
        field = ReferenceField('ingress.*.security_groups', 'aws_security_group', soft=True)
        attributes = {'ingress': [
            {'security_groups': ['sg-1', 'sg-2']},
            {'security_groups': []},
            {'security_groups': ['sg-3']},
        ]}

        self.assertEqual(list(field.locate(attributes)), [
            (('ingress', 0, 'security_groups', 0), 'sg-1'),
            (('ingress', 0, 'security_groups', 1), 'sg-2'),
            (('ingress', 2, 'security_groups', 0), 'sg-3'),
        ])

    def test_locate_respects_pattern(self):
        field = ReferenceField('route.*.gateway_id', 'aws_internet_gateway', pattern=r'^igw-')
        attributes = {'route': [{'gateway_id': 'igw-1'}, {'gateway_id': 'vgw-1'}, {'gateway_id': ''}]}

        self.assertEqual([value for _, value in field.locate(attributes)], ['igw-1'])

    def test_target_id_mapping(self):
        field = ReferenceField('role', 'aws_iam_role', target_attribute='arn', to_provider_id=arn_to_name)

        self.assertEqual(field.target_id('arn:aws:iam::123456789012:role/lambda-exec'), 'lambda-exec')


class TestResourceRegistry(unittest.TestCase):
    """Test the registry lookup table"""

    def test_default_catalog(self):
        registry = default_registry()

        for resource_type in ['aws_vpc', 'aws_subnet', 'aws_instance', 'aws_security_group',
                              'aws_iam_role', 'aws_lambda_function', 'aws_db_instance']:
            self.assertIn(resource_type, registry)
        self.assertEqual(registry.resource_types()[0], 'aws_vpc')
        self.assertIn('network', registry.categories())

    def test_reference_targets_are_registered(self):
        registry = default_registry()

        for descriptor in registry:
            for reference in descriptor.reference_fields:
                self.assertIn(reference.target_type, registry, f"{descriptor.name}.{reference.attribute}")

    def test_require_unknown_type(self):
        with self.assertRaises(UnsupportedResourceTypeError) as cm:
            default_registry().require('aws_unicorn')
        self.assertEqual(cm.exception.resource_type, 'aws_unicorn')

    def test_duplicate_registration(self):
        descriptor = ResourceTypeDescriptor(name='test_thing', category='test', identity_fields=('Id',))
        registry = ResourceRegistry([descriptor])

        with self.assertRaises(ValueError):
            registry.register(descriptor)
        self.assertEqual(len(registry), 1)


if __name__ == '__main__':
    unittest.main()
