"""Provider protocol and type-keyed dispatch table.

A provider is the only component that performs external I/O for a resource
type. The registry maps each ResourceType to one provider instance; adding a
type means registering one more entry, the scheduler never changes.
"""

import importlib
import logging
from typing import Protocol, runtime_checkable

from blueprint import Resource, ResourceType, Status, parse_type
from common import ProviderResult
from engine.errors import InvalidResourceError, UnsupportedTypeError

logger = logging.getLogger(__name__)


@runtime_checkable
class Provider(Protocol):
    """Capability interface implemented once per resource type.

    Implementations must be safe to retry: create on an object that already
    exists either succeeds as a no-op or returns already_exists=True.
    """

    def create(self, resource: Resource) -> ProviderResult:
        """Create the external object for a resource."""

    def destroy(self, resource: Resource) -> ProviderResult:
        """Remove the external object for a resource."""

    def probe(self, resource: Resource) -> Status:
        """Report the live status of the external object."""


class ProviderRegistry:
    """Lookup table from resource type to provider."""

    def __init__(self) -> None:
        self._providers: dict[ResourceType, Provider] = {}

    def register(self, resource_type, provider: Provider) -> None:
        """Register (or replace) the provider for a type.

        Raises:
            TypeError: If provider does not implement create/destroy/probe
        """
        if not isinstance(provider, Provider):
            raise TypeError(f"{type(provider).__name__} does not implement the Provider protocol")
        rtype = parse_type(resource_type)
        self._providers[rtype] = provider
        logger.debug(f"Registered provider {type(provider).__name__} for {rtype}")

    def register_path(self, resource_type, path: str, *args) -> None:
        """Import a provider class from 'module:Class' and register an instance.

        Extra positional args are passed to the class constructor.

        Raises:
            ValueError: If path is not in 'module:Class' form
            ImportError, AttributeError: If the class cannot be loaded
        """
        module_name, sep, class_name = path.partition(':')
        if not sep or not module_name or not class_name:
            raise ValueError(f"Provider path must be 'module:Class', got '{path}'")
        module = importlib.import_module(module_name)
        provider_cls = getattr(module, class_name)
        self.register(resource_type, provider_cls(*args))

    def supports(self, resource_type) -> bool:
        try:
            return parse_type(resource_type) in self._providers
        except InvalidResourceError:
            return False

    def get(self, resource_type) -> Provider:
        """Get the provider for a type.

        Raises:
            UnsupportedTypeError: If no provider is registered
        """
        try:
            return self._providers[parse_type(resource_type)]
        except (KeyError, InvalidResourceError):
            raise UnsupportedTypeError(str(resource_type)) from None

    @property
    def types(self) -> list[ResourceType]:
        return sorted(self._providers, key=lambda t: t.value)
