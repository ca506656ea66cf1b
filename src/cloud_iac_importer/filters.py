#!/usr/bin/env python3
"""
Filter Engine

Decides which discovered resources enter the graph. Type filters
(include / exclude) and tag filters are combined with AND semantics;
every tag filter must match exactly.

Resources pruned here may still be pulled back in by the closure resolver
as dependency-only nodes when something included references them.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import FilterError, UnsupportedResourceTypeError
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagFilter:
    """Exact key/value match on a resource tag"""
    key: str
    value: str

    def matches(self, tags: Mapping[str, str]) -> bool:
        return self.key in tags and tags[self.key] == self.value

    def __str__(self):
        return f"{self.key}:{self.value}"


@dataclass(frozen=True)
class Target:
    """A single resource named explicitly as `type.id`"""
    resource_type: str
    provider_id: str

    def __str__(self):
        return f"{self.resource_type}.{self.provider_id}"


@dataclass
class FilterSpec:
    """Include / exclude types, tag filters and explicit targets"""
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    tag_filters: List[TagFilter] = field(default_factory=list)
    targets: List[Target] = field(default_factory=list)

    @classmethod
    def from_strings(cls,
                     include: Optional[Iterable[str]] = None,
                     exclude: Optional[Iterable[str]] = None,
                     tags: Optional[Iterable[str]] = None,
                     targets: Optional[Iterable[str]] = None) -> 'FilterSpec':
        """Build a FilterSpec from CLI / configuration strings"""
        return cls(
            include=split_values(include),
            exclude=split_values(exclude),
            tag_filters=[parse_tag(t) for t in split_values(tags)],
            targets=[parse_target(t) for t in split_values(targets)],
        )


def split_values(values: Optional[Iterable[str]]) -> List[str]:
    """Flatten repeated and comma separated values, dropping blanks and duplicates"""
    result = []
    for value in values or []:
        for part in str(value).split(','):
            part = part.strip()
            if part and part not in result:
                result.append(part)
    return result


def parse_tag(value: str) -> TagFilter:
    """
    Parse a tag filter written as KEY:VALUE

    Only the first ':' separates key from value, so values may contain ':'.

    Raises:
        FilterError: If the separator or the key is missing
    """
    key, sep, tag_value = value.partition(':')
    if not sep or not key.strip():
        raise FilterError(f"Invalid tag filter {value!r}, expected KEY:VALUE")
    return TagFilter(key.strip(), tag_value.strip())


def parse_target(value: str) -> Target:
    """
    Parse an explicit target written as type.id

    Raises:
        FilterError: If the type or the id is missing
    """
    resource_type, sep, provider_id = value.partition('.')
    if not sep or not resource_type or not provider_id:
        raise FilterError(f"Invalid target {value!r}, expected TYPE.ID")
    return Target(resource_type, provider_id)


class FilterEngine:
    """Applies a FilterSpec to resource types and tags"""

    def __init__(self, spec: Optional[FilterSpec] = None):
        self.spec = spec or FilterSpec()
        self._include = set(self.spec.include)
        self._exclude = set(self.spec.exclude)
        self._targets = {(t.resource_type, t.provider_id) for t in self.spec.targets}

    def type_allowed(self, resource_type: str) -> bool:
        if self._include:
            return resource_type in self._include
        return resource_type not in self._exclude

    def tags_match(self, tags: Optional[Mapping[str, str]]) -> bool:
        """True when every tag filter matches; no filters always match"""
        tags = tags or {}
        return all(tag_filter.matches(tags) for tag_filter in self.spec.tag_filters)

    def should_include(self, resource_type: str, tags: Optional[Mapping[str, str]]) -> bool:
        """
        Decide whether a discovered resource is part of the requested set

        Args:
            resource_type: Terraform resource type
            tags: Resource tags as returned by the adapter

        Returns:
            True if the type passes include/exclude and all tag filters match
        """
        return self.type_allowed(resource_type) and self.tags_match(tags)

    def is_target(self, resource_type: str, provider_id: str) -> bool:
        return (resource_type, provider_id) in self._targets

    def has_targets(self) -> bool:
        return bool(self._targets)

    def validate(self, registry: ResourceRegistry):
        """
        Reject filter types the registry does not know

        Raises:
            UnsupportedResourceTypeError: For the first unknown type found
        """
        checks: List[Tuple[str, Iterable[str]]] = [
            ('include', self.spec.include),
            ('exclude', self.spec.exclude),
            ('target', [t.resource_type for t in self.spec.targets]),
        ]
        for context, resource_types in checks:
            for resource_type in resource_types:
                if not registry.has(resource_type):
                    raise UnsupportedResourceTypeError(resource_type, context)

    def types_to_discover(self, registry: ResourceRegistry) -> List[str]:
        """Types to List, in registry order; targeted types are fetched by Get instead"""
        if self._targets:
            return []
        return [t for t in registry.resource_types() if self.type_allowed(t)]

    def targets_by_type(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for target in self.spec.targets:
            ids = grouped.setdefault(target.resource_type, [])
            if target.provider_id not in ids:
                ids.append(target.provider_id)
        return grouped
