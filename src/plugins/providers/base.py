"""
Provider Plugin Base - Abstract interface for secret backends.

A provider plugin is the factory for one backend family (vault, awssm, ...).
Given a store declaration and the credentials an auth strategy resolved, it
returns a ProviderClient. Concrete transports live in separate packages and
are discovered through the 'secretsync.providers' entry point group.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from models import SecretStore
from plugins.base import AuthCredentials


class ProviderClient(ABC):
    """
    Authenticated handle to a backend.

    Implementations map their native errors onto KeyNotFound, Unauthorized,
    Unavailable and ProviderTimeout. Clients never retry; retries are the
    controller's job.
    """

    @abstractmethod
    async def fetch(
        self,
        key: str,
        version: Optional[str] = None,
        property: Optional[str] = None,
    ) -> bytes:
        """
        Fetch the payload stored under a remote key.

        Args:
            key: Remote key.
            version: Version to read; None means the backend's latest.
            property: Property the caller will extract. Backends may use it
                to narrow access checks but must return the full document;
                extraction happens in the extractor.

        Returns:
            The raw payload bytes.
        """
        pass

    async def close(self) -> None:
        """Release the handle. The default implementation does nothing."""
        return None


class ProviderPlugin(ABC):
    """Abstract base class for provider plugins."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider variant name as used in store declarations (e.g. 'vault')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Called once when the plugin is loaded.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def new_client(
        self, store: SecretStore, credentials: AuthCredentials
    ) -> ProviderClient:
        """
        Build an authenticated client for a store.

        Args:
            store: The store declaration (provider variant already validated).
            credentials: Credentials resolved by the store's auth strategy.

        Returns:
            A ready-to-use ProviderClient.

        Raises:
            Unauthorized: If the backend rejects the credentials.
            Unavailable: If the backend cannot be reached.
            InvalidStoreConfig: If the store's connection parameters are unusable.
        """
        pass

    def validate_store(self, store: SecretStore) -> tuple[bool, Optional[str]]:
        """
        Validate provider-specific connection parameters.

        Returns:
            Tuple of (is_valid, error_message).
        """
        return True, None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
