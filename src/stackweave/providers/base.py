"""Base provider interface and provider registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from stackweave.utils.errors import ConfigurationError


@dataclass
class ProvisionResult:
    """Progress of a provider operation.

    Asynchronous providers return a request handle and an in-progress
    status; the caller polls the handle until the status is terminal.
    """
    handle: str
    status: str
    physical_id: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    status_reason: Optional[str] = None


@dataclass
class LiveResource:
    """Live state of a resource as reported by the provider."""
    physical_id: str
    status: str
    properties: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    status_reason: Optional[str] = None


class BaseProvider(ABC):
    """Base class for cloud providers.

    Operations raise ProviderError; the transient flag decides whether the
    caller retries.
    """

    @abstractmethod
    def create(self, kind: str, properties: Dict[str, Any]) -> ProvisionResult:
        """Start creating a resource.

        Args:
            kind: Resource type
            properties: Fully resolved properties

        Returns:
            ProvisionResult with a handle to poll
        """
        pass

    @abstractmethod
    def update(
        self,
        kind: str,
        physical_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProvisionResult:
        """Start updating a resource in place.

        Args:
            kind: Resource type
            physical_id: Provider identifier of the resource
            properties: Desired resolved properties
            previous: Properties last applied

        Returns:
            ProvisionResult with a handle to poll
        """
        pass

    @abstractmethod
    def delete(self, kind: str, physical_id: str) -> ProvisionResult:
        """Start deleting a resource. Deleting a missing resource succeeds."""
        pass

    @abstractmethod
    def poll(self, kind: str, handle: str) -> ProvisionResult:
        """Get the progress of an operation started earlier."""
        pass

    @abstractmethod
    def describe(self, kind: str, physical_id: str) -> Optional[LiveResource]:
        """Fetch live resource state.

        Returns:
            LiveResource, or None if the resource does not exist
        """
        pass


class ProviderRegistry:
    """Maps resource kinds to providers, with a default for everything else."""

    def __init__(self, default: Optional[BaseProvider] = None):
        self.default = default
        self._providers: Dict[str, BaseProvider] = {}

    def register(self, kind: str, provider: BaseProvider) -> None:
        self._providers[kind] = provider

    def for_kind(self, kind: str) -> BaseProvider:
        """Get the provider responsible for a resource kind.

        Raises:
            ConfigurationError: If no provider handles the kind
        """
        provider = self._providers.get(kind, self.default)
        if provider is None:
            raise ConfigurationError(f"No provider registered for resource type '{kind}'")
        return provider
