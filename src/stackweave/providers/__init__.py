"""Cloud providers and the resource-kind catalog."""

from .base import BaseProvider, LiveResource, ProviderRegistry, ProvisionResult
from .catalog import ResourceKindCatalog, ResourceKindSpec
from .cloudcontrol import CloudControlProvider
from .memory import InMemoryProvider

__all__ = [
    "BaseProvider",
    "LiveResource",
    "ProvisionResult",
    "ProviderRegistry",
    "ResourceKindCatalog",
    "ResourceKindSpec",
    "InMemoryProvider",
    "CloudControlProvider",
]
