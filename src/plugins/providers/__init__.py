"""
Provider plugins package.

Provider plugins build authenticated clients for one backend family.
The in-memory backend ships built in; others are discovered via Python
entry points (group: 'secretsync.providers').
"""

from plugins.providers.base import ProviderClient, ProviderPlugin
from plugins.providers.memory import MemoryBackend, MemoryProviderPlugin

__all__ = ["ProviderClient", "ProviderPlugin", "MemoryBackend", "MemoryProviderPlugin"]
