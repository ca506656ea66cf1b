#!/usr/bin/env python3
"""
Unit tests for the closure resolver
"""

import unittest
import sys
import os
from unittest.mock import Mock

# Add src and fixtures directories to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../src'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../fixtures'))

from cloud_iac_importer.adapters import RawResource, SnapshotAdapter
from cloud_iac_importer.errors import AuthenticationError
from cloud_iac_importer.graph import RESOLVED, UNRESOLVED, GraphBuilder, NodeID
from cloud_iac_importer.orchestrator import RunContext
from cloud_iac_importer.registry import ReferenceField, ResourceRegistry, ResourceTypeDescriptor, attr
from cloud_iac_importer.resolver import ClosureResolver
from sample_resources import (
    REGISTRY,
    CountingAdapter,
    SECURITY_GROUP_A,
    SECURITY_GROUP_B,
    SUBNET,
    VPC,
    instance,
    raw,
    snapshot,
)

VPC_ID = NodeID('aws_vpc', 'vpc-1')
SUBNET_ID = NodeID('aws_subnet', 'subnet-1')


def peer_registry(a_soft=False, b_soft=False, b_target='test_a'):
    """Two test types pointing at each other through `peer`"""
    return ResourceRegistry([
        ResourceTypeDescriptor(
            name='test_a', category='test', identity_fields=('Id',),
            attributes={'peer': attr('Peer')},
            reference_fields=(ReferenceField('peer', 'test_b', soft=a_soft),),
            tags_field=None,
        ),
        ResourceTypeDescriptor(
            name='test_b', category='test', identity_fields=('Id',),
            attributes={'peer': attr('Peer')},
            reference_fields=(ReferenceField('peer', b_target, soft=b_soft),),
            tags_field=None,
        ),
    ])


def peer(resource_type, provider_id, target_id):
    return RawResource(resource_type, provider_id, {'Id': provider_id, 'Peer': target_id}, {})


class TestClosureResolver(unittest.TestCase):
    """Test dependency fetching and unresolved handling"""

    def setUp(self):
        self.builder = GraphBuilder(REGISTRY)
        self.resolver = ClosureResolver(self.builder)

    def context(self, *entries, denied=None):
        adapter = SnapshotAdapter(REGISTRY, snapshot(*entries, denied=denied))
        return RunContext(adapter, max_workers=2)

    def test_fetches_missing_dependencies_recursively(self):
        graph = self.builder.build([instance('i-1')])
        ctx = self.context(('aws_vpc', VPC), ('aws_subnet', SUBNET))

        result = self.resolver.resolve(graph, ctx)

        self.assertEqual(result.fetched, [SUBNET_ID, VPC_ID])
        self.assertEqual(result.rounds, 2)
        self.assertEqual(result.unresolved, {})
        self.assertTrue(graph.get(SUBNET_ID).dependency_only)
        self.assertTrue(graph.get(VPC_ID).dependency_only)
        self.assertTrue(all(ref.status == RESOLVED for ref in graph.references()))

    def test_discovered_targets_are_not_fetched(self):
        graph = self.builder.build([raw('aws_vpc', VPC), raw('aws_subnet', SUBNET)])
        adapter = Mock()
        ctx = RunContext(adapter)

        result = self.resolver.resolve(graph, ctx)

        adapter.get_resource.assert_not_called()
        self.assertEqual(result.fetched, [])
        self.assertEqual(result.rounds, 0)
        self.assertEqual(graph.get(SUBNET_ID).outgoing_refs[0].status, RESOLVED)

    def test_denied_target_is_unresolved(self):
        graph = self.builder.build([raw('aws_subnet', SUBNET)])
        ctx = self.context(('aws_vpc', VPC), denied=['aws_vpc'])

        result = self.resolver.resolve(graph, ctx)

        self.assertIn(VPC_ID, result.unresolved)
        self.assertIn('Access denied', result.unresolved[VPC_ID])
        ref = graph.get(SUBNET_ID).outgoing_refs[0]
        self.assertEqual(ref.status, UNRESOLVED)
        self.assertNotIn(VPC_ID, graph)

    def test_missing_target_is_unresolved(self):
        graph = self.builder.build([raw('aws_subnet', SUBNET)])

        result = self.resolver.resolve(graph, self.context())

        self.assertIn('not found', result.unresolved[VPC_ID])
        self.assertEqual(graph.unresolved, result.unresolved)

    def test_earlier_failure_reason_is_kept(self):
        other_subnet = dict(SUBNET, SubnetId='subnet-x')
        graph = self.builder.build([instance('i-1'), raw('aws_subnet', other_subnet)])
        ctx = self.context(('aws_vpc', VPC), ('aws_subnet', SUBNET), denied=['aws_vpc'])

        result = self.resolver.resolve(graph, ctx)

        self.assertEqual(result.fetched, [SUBNET_ID])
        self.assertIn('Access denied', result.unresolved[VPC_ID])
        self.assertEqual(graph.unresolved, result.unresolved)
        vpc_refs = [ref for ref in graph.references() if ref.target == VPC_ID]
        self.assertEqual(sorted(str(ref.source) for ref in vpc_refs),
                         ['aws_subnet.subnet-1', 'aws_subnet.subnet-x'])
        self.assertTrue(all(ref.status == UNRESOLVED for ref in vpc_refs))
        self.assertEqual({ref.reason for ref in vpc_refs}, {result.unresolved[VPC_ID]})

    def test_in_flight_fetches_are_bounded(self):
        entries = [('aws_vpc', VPC)] + [
            ('aws_subnet', dict(SUBNET, SubnetId=f'subnet-{n}')) for n in range(8)
        ]
        graph = self.builder.build([instance(f'i-{n}', SubnetId=f'subnet-{n}') for n in range(8)])
        adapter = CountingAdapter(REGISTRY, snapshot(*entries))

        result = self.resolver.resolve(graph, RunContext(adapter, max_workers=3))

        self.assertEqual(len(result.fetched), 9)
        self.assertEqual(adapter.calls, 9)
        self.assertGreaterEqual(adapter.peak, 1)
        self.assertLessEqual(adapter.peak, 3)

    def test_fetching_disabled(self):
        graph = self.builder.build([instance('i-1')])
        adapter = Mock()
        resolver = ClosureResolver(self.builder, fetch_dependencies=False)

        result = resolver.resolve(graph, RunContext(adapter))

        adapter.get_resource.assert_not_called()
        self.assertEqual(result.unresolved, {SUBNET_ID: 'dependency fetching disabled'})

    def test_cancelled_run_stops_fetching(self):
        graph = self.builder.build([instance('i-1')])
        ctx = self.context(('aws_subnet', SUBNET))
        ctx.cancel()

        result = self.resolver.resolve(graph, ctx)

        self.assertTrue(result.cancelled)
        self.assertEqual(result.unresolved, {SUBNET_ID: 'run cancelled'})
        self.assertNotIn(SUBNET_ID, graph)

    def test_fatal_error_propagates(self):
        graph = self.builder.build([raw('aws_subnet', SUBNET)])
        adapter = Mock()
        adapter.get_resource.side_effect = AuthenticationError("token expired")

        with self.assertRaises(AuthenticationError):
            self.resolver.resolve(graph, RunContext(adapter))

    def test_unsupported_target_type(self):
        registry = peer_registry(b_target='test_missing')
        builder = GraphBuilder(registry)
        graph = builder.build([peer('test_b', 'b-1', 'x-1')])
        adapter = Mock()

        result = ClosureResolver(builder).resolve(graph, RunContext(adapter))

        adapter.get_resource.assert_not_called()
        self.assertEqual(result.unresolved, {NodeID('test_missing', 'x-1'): 'unsupported resource type test_missing'})

    def test_unusable_fetched_resource_is_unresolved(self):
        graph = self.builder.build([raw('aws_subnet', SUBNET)])
        adapter = Mock()
        adapter.get_resource.return_value = RawResource('aws_vpc', 'vpc-1', dict(VPC, Tags='broken'), {})

        result = self.resolver.resolve(graph, RunContext(adapter))

        self.assertIn(VPC_ID, result.unresolved)
        self.assertIn('Failed to normalize', result.unresolved[VPC_ID])
        self.assertEqual(len(graph.build_errors), 1)

    def test_graph_is_frozen(self):
        graph = self.builder.build([raw('aws_vpc', VPC)])

        self.resolver.resolve(graph, self.context())

        self.assertTrue(graph.frozen)


class TestCycleDemotion(unittest.TestCase):
    """Test breaking of reference cycles"""

    def test_security_group_cycle(self):
        builder = GraphBuilder(REGISTRY)
        graph = builder.build([
            raw('aws_vpc', VPC),
            raw('aws_security_group', SECURITY_GROUP_A),
            raw('aws_security_group', SECURITY_GROUP_B),
        ])

        result = ClosureResolver(builder).resolve(graph, RunContext(Mock()))

        sg_a = NodeID('aws_security_group', 'sg-a')
        sg_b = NodeID('aws_security_group', 'sg-b')
        self.assertEqual([(ref.source, ref.target) for ref in result.demoted], [(sg_a, sg_b)])
        back = [ref for ref in graph.get(sg_b).outgoing_refs if ref.target == sg_a]
        self.assertFalse(back[0].demoted)
        self.assertTrue(back[0].orders)
        vpc_refs = [ref for ref in graph.references() if ref.target == VPC_ID]
        self.assertTrue(all(ref.orders for ref in vpc_refs))

    def test_soft_edge_demoted_before_hard_edge(self):
        registry = peer_registry(a_soft=False, b_soft=True)
        builder = GraphBuilder(registry)
        graph = builder.build([peer('test_a', 'a-1', 'b-1'), peer('test_b', 'b-1', 'a-1')])

        result = ClosureResolver(builder).resolve(graph, RunContext(Mock()))

        self.assertEqual([(str(ref.source), str(ref.target)) for ref in result.demoted],
                         [('test_b.b-1', 'test_a.a-1')])

    def test_lexical_order_breaks_ties(self):
        registry = peer_registry()
        builder = GraphBuilder(registry)
        graph = builder.build([peer('test_b', 'b-1', 'a-1'), peer('test_a', 'a-1', 'b-1')])

        result = ClosureResolver(builder).resolve(graph, RunContext(Mock()))

        self.assertEqual([(str(ref.source), str(ref.target)) for ref in result.demoted],
                         [('test_a.a-1', 'test_b.b-1')])

    def test_self_reference_is_demoted(self):
        builder = GraphBuilder(REGISTRY)
        group = dict(SECURITY_GROUP_A, IpPermissions=[{'IpProtocol': 'tcp', 'FromPort': 22, 'ToPort': 22,
                                                       'UserIdGroupPairs': [{'GroupId': 'sg-a'}]}])
        graph = builder.build([raw('aws_vpc', VPC), raw('aws_security_group', group)])

        result = ClosureResolver(builder).resolve(graph, RunContext(Mock()))

        self.assertEqual(len(result.demoted), 1)
        self.assertTrue(result.demoted[0].is_self)
        self.assertEqual(result.demoted[0].status, RESOLVED)
        self.assertFalse(result.demoted[0].orders)


if __name__ == '__main__':
    unittest.main()
