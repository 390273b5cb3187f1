"""
Plugin system for the secretsync operator.

This package provides the plugin architecture for secret backends
(provider plugins), store authentication (auth strategies) and inputs.
"""

from plugins.base import AuthCredentials
from plugins.auth.base import AuthStrategy, CredentialReader
from plugins.providers.base import ProviderClient, ProviderPlugin
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "AuthCredentials",
    "AuthStrategy",
    "CredentialReader",
    "ProviderClient",
    "ProviderPlugin",
    "PluginRegistry",
    "get_registry",
]
