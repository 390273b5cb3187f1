"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for provider plugins and auth
strategies, handling discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from plugins.base import logger
from plugins.auth.base import AuthStrategy
from plugins.providers.base import ProviderPlugin

PROVIDER_ENTRY_POINT_GROUP = "secretsync.providers"


class PluginRegistry:
    """
    Central registry for all plugins.

    Handles discovery, registration, and instantiation of provider plugins
    and auth strategies.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._provider_plugins: Dict[str, Type[ProviderPlugin]] = {}
        self._auth_strategies: Dict[str, AuthStrategy] = {}

        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self._provider_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized provider instances
        self._provider_instances: Dict[str, ProviderPlugin] = {}

        # Plugin configurations loaded from environment
        self._provider_plugin_configs: Dict[str, Dict[str, Any]] = {}

    # Registration methods

    def register_provider_plugin(self, plugin_class: Type[ProviderPlugin]) -> None:
        """
        Register a provider plugin class.

        Args:
            plugin_class: The ProviderPlugin subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._provider_plugins:
            logger.warning(f"Overwriting existing provider plugin: {name}")

        self._provider_plugins[name] = plugin_class
        self._provider_plugin_info[name] = {"name": name, "version": version}
        self._provider_plugin_configs[name] = plugin_class.load_config_from_env()
        # Drop any instance built from a previous registration
        self._provider_instances.pop(name, None)
        logger.info(f"Registered provider plugin: {name} v{version}")

    def register_auth_strategy(self, strategy_class: Type[AuthStrategy]) -> None:
        """
        Register an auth strategy class.

        Strategies are stateless, so a single instance is kept per name.

        Args:
            strategy_class: The AuthStrategy subclass to register
        """
        strategy = strategy_class()
        name = strategy.name

        if name in self._auth_strategies:
            logger.warning(f"Overwriting existing auth strategy: {name}")

        self._auth_strategies[name] = strategy
        logger.info(f"Registered auth strategy: {name}")

    # Instantiation methods

    async def get_provider_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ProviderPlugin:
        """
        Get an initialized provider plugin instance.

        Args:
            name: The provider name to retrieve
            config: Optional configuration merged over the env-loaded config
                on first initialization

        Returns:
            An initialized ProviderPlugin instance

        Raises:
            ValueError: If the provider name is not registered
        """
        if name not in self._provider_plugins:
            available = ", ".join(self._provider_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown provider plugin: {name}. Available providers: {available}"
            )

        if name not in self._provider_instances:
            plugin_config = dict(self._provider_plugin_configs.get(name, {}))
            if config:
                plugin_config.update(config)

            plugin = self._provider_plugins[name]()
            await plugin.initialize(plugin_config)
            self._provider_instances[name] = plugin
            logger.info(f"Initialized provider plugin: {name}")

        return self._provider_instances[name]

    def get_auth_strategy(self, name: str) -> AuthStrategy:
        """
        Get the auth strategy registered under a name.

        Raises:
            ValueError: If no strategy is registered under that name
        """
        if name not in self._auth_strategies:
            available = ", ".join(self._auth_strategies.keys()) or "none"
            raise ValueError(
                f"Unknown auth strategy: {name}. Available strategies: {available}"
            )
        return self._auth_strategies[name]

    # Discovery methods

    def list_provider_plugins(self) -> list[str]:
        """List all registered provider plugin names."""
        return list(self._provider_plugins.keys())

    def list_auth_strategies(self) -> list[str]:
        """List all registered auth strategy names."""
        return list(self._auth_strategies.keys())

    def has_provider_plugin(self, name: str) -> bool:
        """Check if a provider plugin is registered."""
        return name in self._provider_plugins

    def has_auth_strategy(self, name: str) -> bool:
        """Check if an auth strategy is registered."""
        return name in self._auth_strategies

    def get_provider_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered provider plugin.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._provider_plugin_info.get(name)

    def get_provider_plugin_config(self, name: str) -> Dict[str, Any]:
        """
        Get configuration for a provider plugin.

        Returns:
            Dictionary of configuration values, or empty dict if not found
        """
        return self._provider_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins(registry: Optional[PluginRegistry] = None) -> None:
    """
    Register all built-in plugins and discover provider plugins
    via entry points.

    This function is called during application startup to register
    the auth strategies and the in-memory provider that ship with the
    operator, and to discover any installed provider plugins.
    """
    registry = registry or get_registry()

    from plugins.auth.strategies import (
        AppRoleAuthStrategy,
        CertAuthStrategy,
        TokenAuthStrategy,
    )
    from plugins.providers.memory import MemoryProviderPlugin

    for strategy_class in (TokenAuthStrategy, CertAuthStrategy, AppRoleAuthStrategy):
        registry.register_auth_strategy(strategy_class)

    registry.register_provider_plugin(MemoryProviderPlugin)

    # Discover and register provider plugins via entry points
    discovered = entry_points(group=PROVIDER_ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            provider_class = ep.load()
            registry.register_provider_plugin(provider_class)
        except Exception as e:
            logger.warning(f"Could not load provider plugin {ep.name}: {e}")
