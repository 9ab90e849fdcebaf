"""Resource providers and the type-keyed dispatch table."""

import logging

from blueprint import ResourceType
from config import DriverConfig
from providers.base import Provider, ProviderRegistry
from providers.exec_local import ExecLocalProvider

logger = logging.getLogger(__name__)


def default_registry(config: DriverConfig) -> ProviderRegistry:
    """Build the registry for a driver configuration.

    Registers the built-in exec_local provider, then every plugin listed in
    config.providers. Plugin classes are constructed with the config.
    """
    registry = ProviderRegistry()
    registry.register(ResourceType.EXEC_LOCAL, ExecLocalProvider(config))
    for resource_type, path in config.providers.items():
        logger.debug(f"Loading provider for {resource_type} from {path}")
        registry.register_path(resource_type, path, config)
    return registry


__all__ = [
    'Provider',
    'ProviderRegistry',
    'ExecLocalProvider',
    'default_registry',
]
