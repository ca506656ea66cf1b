#!/usr/bin/env python3
"""
Error Taxonomy

Exceptions raised across the import pipeline. Fatal errors abort a run,
everything else is collected into the ImportReport.
"""

from typing import Optional


class ImporterError(Exception):
    """Base class for all importer errors"""


class ConfigurationError(ImporterError):
    """Invalid configuration"""


class FilterError(ImporterError):
    """Malformed filter value (tag or target)"""


class UnsupportedResourceTypeError(ImporterError):
    """A resource type is not declared in the registry"""

    def __init__(self, resource_type: str, context: str = ""):
        self.resource_type = resource_type
        message = f"Unsupported resource type: {resource_type}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class FatalDiscoveryError(ImporterError):
    """The cloud account cannot be reached at all"""


class AuthenticationError(FatalDiscoveryError):
    """Credentials are missing, invalid or expired"""


class ControlPlaneUnreachableError(FatalDiscoveryError):
    """The provider API endpoint cannot be reached"""


class DiscoveryError(ImporterError):
    """A single List/Get call failed"""

    def __init__(self, message: str, resource_type: Optional[str] = None,
                 provider_id: Optional[str] = None):
        self.resource_type = resource_type
        self.provider_id = provider_id
        super().__init__(message)


class AccessDeniedError(DiscoveryError):
    """The caller is not allowed to read the resource"""


class ResourceNotFoundError(DiscoveryError):
    """The resource does not exist"""


class NormalizationError(ImporterError):
    """Raw provider data could not be mapped to the IaC schema"""

    def __init__(self, resource_type: str, provider_id: str, reason: str):
        self.resource_type = resource_type
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Failed to normalize {resource_type} {provider_id!r}: {reason}")


class SerializationError(ImporterError):
    """A node could not be serialized; nothing was written"""

    def __init__(self, node_id, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Failed to serialize {node_id}: {reason}")


class ImportCancelledError(ImporterError):
    """The run was cancelled or hit its deadline"""
