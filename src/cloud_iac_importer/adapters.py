#!/usr/bin/env python3
"""
Provider Adapters

This module defines the contract every cloud provider adapter implements
(List and Get over registry resource types) together with the raw resource
record adapters hand back to the pipeline.

SnapshotAdapter replays a previously exported set of raw resources, which
makes discovery reproducible offline and drives the test suite.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .errors import AccessDeniedError, ConfigurationError, ResourceNotFoundError
from .registry import ResourceRegistry, ResourceTypeDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawResource:
    """A resource exactly as the provider API returned it"""
    resource_type: str
    provider_id: str
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)
    tags: Dict[str, str] = field(default_factory=dict, compare=False)


def make_raw(descriptor: ResourceTypeDescriptor, attributes: Dict[str, Any],
             tags: Optional[Dict[str, str]] = None) -> RawResource:
    """
    Build a RawResource from a provider payload

    Args:
        descriptor: Registry entry for the payload's type
        attributes: Raw provider attributes
        tags: Tags fetched separately; read from the payload when omitted

    Returns:
        RawResource keyed by the descriptor's identity fields

    Raises:
        ValueError: If the identity fields are missing
    """
    provider_id = descriptor.identity(attributes)
    if tags is None:
        try:
            tags = descriptor.extract_tags(attributes)
        except ValueError as e:
            # Left to normalization to reject
            logger.debug(f"Unreadable tags on {descriptor.name} {provider_id}: {e}")
            tags = {}
    return RawResource(descriptor.name, provider_id, attributes, dict(tags))


class ProviderAdapter(ABC):
    """Per-cloud dispatch point for discovery calls"""

    name: str = 'provider'

    def __init__(self, registry: ResourceRegistry):
        self.registry = registry

    @abstractmethod
    def verify(self, ctx) -> None:
        """
        Check that the account is reachable with the configured credentials

        Raises:
            AuthenticationError: Credentials missing, invalid or expired
            ControlPlaneUnreachableError: Provider endpoint unreachable
        """

    @abstractmethod
    def list_resources(self, ctx, resource_type: str, filter_spec=None) -> List[RawResource]:
        """
        List every resource of one type

        Adapters may push tag filters down to the provider API; the filter
        engine still applies the full filter afterwards.

        Raises:
            DiscoveryError: The type could not be listed
            FatalDiscoveryError: The account became unusable
        """

    @abstractmethod
    def get_resource(self, ctx, resource_type: str, provider_id: str) -> RawResource:
        """
        Fetch a single resource by identity

        Raises:
            ResourceNotFoundError: No such resource
            AccessDeniedError: The resource is not readable
        """

    def provider_block(self) -> Dict[str, Any]:
        """Arguments for the generated `provider` block"""
        return {}


class SnapshotAdapter(ProviderAdapter):
    """
    Adapter backed by a snapshot document

    Snapshot layout (JSON or YAML):

        provider: {name: aws, region: us-east-1}
        resources:
          - {type: aws_vpc, id: vpc-1, attributes: {...}, tags: {...}}
        denied: [aws_iam_role, aws_vpc.vpc-9]

    `denied` entries make List (whole type) or Get (single resource) fail
    with AccessDeniedError, mirroring a restricted account.
    """

    def __init__(self, registry: ResourceRegistry, snapshot: Dict[str, Any]):
        super().__init__(registry)
        provider = snapshot.get('provider') or {}
        self.name = provider.get('name', 'aws')
        self._provider_config = {k: v for k, v in provider.items() if k != 'name'}
        self._denied = set(snapshot.get('denied') or [])
        self._resources: Dict[str, List[RawResource]] = {}
        self._index: Dict[tuple, RawResource] = {}

        for entry in snapshot.get('resources') or []:
            self._add(entry)

        logger.info(f"Loaded snapshot with {len(self._index)} resources")

    @classmethod
    def from_file(cls, registry: ResourceRegistry, snapshot_file: str) -> 'SnapshotAdapter':
        path = Path(snapshot_file).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Snapshot file not found: {snapshot_file}")

        with open(path, 'r') as f:
            if path.suffix.lower() in ['.yaml', '.yml']:
                snapshot = yaml.safe_load(f)
            else:
                snapshot = json.load(f)

        if not isinstance(snapshot, dict):
            raise ConfigurationError(f"Snapshot {snapshot_file} is not a mapping")
        return cls(registry, snapshot)

    def _add(self, entry: Dict[str, Any]):
        resource_type = entry.get('type')
        descriptor = self.registry.get(resource_type)
        if descriptor is None:
            logger.warning(f"Ignoring snapshot entry of unsupported type {resource_type!r}")
            return

        attributes = entry.get('attributes') or {}
        if entry.get('id'):
            provider_id = str(entry['id'])
            tags = entry.get('tags')
            if tags is None:
                try:
                    tags = descriptor.extract_tags(attributes)
                except ValueError:
                    tags = {}
            raw = RawResource(resource_type, provider_id, attributes, dict(tags))
        else:
            try:
                raw = make_raw(descriptor, attributes, entry.get('tags'))
            except ValueError as e:
                logger.warning(f"Ignoring snapshot entry of type {resource_type}: {e}")
                return

        self._resources.setdefault(resource_type, []).append(raw)
        self._index.setdefault((resource_type, raw.provider_id), raw)

    def verify(self, ctx) -> None:
        ctx.check_cancelled()

    def list_resources(self, ctx, resource_type: str, filter_spec=None) -> List[RawResource]:
        ctx.check_cancelled()
        if resource_type in self._denied:
            raise AccessDeniedError(f"Access denied listing {resource_type}", resource_type=resource_type)
        return list(self._resources.get(resource_type, []))

    def get_resource(self, ctx, resource_type: str, provider_id: str) -> RawResource:
        ctx.check_cancelled()
        if resource_type in self._denied or f"{resource_type}.{provider_id}" in self._denied:
            raise AccessDeniedError(
                f"Access denied reading {resource_type} {provider_id}",
                resource_type=resource_type, provider_id=provider_id
            )
        raw = self._index.get((resource_type, provider_id))
        if raw is None:
            raise ResourceNotFoundError(
                f"{resource_type} {provider_id} not found",
                resource_type=resource_type, provider_id=provider_id
            )
        return raw

    def provider_block(self) -> Dict[str, Any]:
        return dict(self._provider_config)


def export_snapshot(resources: Iterable[RawResource], output_file: str,
                    provider: Optional[Dict[str, Any]] = None, format: str = 'json'):
    """Write raw resources in the layout SnapshotAdapter reads back"""
    logger.info(f"Exporting snapshot to {output_file}")

    entries = [
        {
            'type': raw.resource_type,
            'id': raw.provider_id,
            'attributes': raw.attributes,
            'tags': raw.tags,
        }
        for raw in sorted(resources, key=lambda r: (r.resource_type, r.provider_id))
    ]
    snapshot = {
        'metadata': {
            'timestamp': time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime()),
            'resource_count': len(entries),
        },
        'provider': provider or {'name': 'aws'},
        'resources': entries,
    }

    with open(output_file, 'w') as f:
        if format.lower() == 'yaml':
            # Round-trip through JSON so provider datetimes become strings
            yaml.safe_dump(json.loads(json.dumps(snapshot, default=str)), f, default_flow_style=False)
        elif format.lower() == 'json':
            json.dump(snapshot, f, indent=2, default=str)
        else:
            raise ValueError(f"Unsupported format: {format}")

    logger.info(f"Snapshot with {len(entries)} resources exported to {output_file}")
