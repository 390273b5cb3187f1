"""
Store Resolution - turn a store reference into an authenticated client.

Looks up the store declaration, checks that exactly one provider and one
auth variant are set, and hands off to the matching auth strategy.
This is the single place that decides which variant is active.
"""

import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from config import PluginConfig
from errors import InvalidStoreConfig, StoreNotFound
from models import SecretStore, SecretStoreRef, parse_secret_store
from plugins.auth.base import CredentialReader
from plugins.providers.base import ProviderClient
from plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)

Log = Union[logging.Logger, logging.LoggerAdapter]


class StoreResolver:
    """
    Resolves store references for one controller instance.

    ``plugin_config`` limits which provider families may serve stores and
    supplies their configuration when a plugin is first initialized.
    """

    def __init__(
        self,
        db: Any,
        registry: PluginRegistry,
        controller_class: Optional[str] = None,
        plugin_config: Optional[PluginConfig] = None,
    ):
        self.db = db
        self.registry = registry
        self.controller_class = controller_class
        self.plugin_config = plugin_config or PluginConfig()
        self.credentials = CredentialReader(db)

    async def get_store(self, namespace: str, store_ref: SecretStoreRef) -> SecretStore:
        """
        Load and parse the store a declaration refers to.

        Raises:
            StoreNotFound: If no such store exists. Carries the requested name.
            InvalidStoreConfig: If the stored declaration cannot be parsed.
        """
        if store_ref.kind == "ClusterSecretStore":
            row = await self.db.get_secret_store(None, store_ref.name)
            if row is None:
                raise StoreNotFound(store_ref.name)
        else:
            row = await self.db.get_secret_store(namespace, store_ref.name)
            if row is None:
                raise StoreNotFound(store_ref.name, namespace)

        try:
            return parse_secret_store(row)
        except ValidationError as e:
            raise InvalidStoreConfig(f"store '{store_ref.name}' is invalid: {e}")

    def should_process(self, store: SecretStore) -> bool:
        """
        Check whether this controller instance owns the store.

        A store without a controller class is processed by every instance.
        """
        if not store.spec.controller:
            return True
        return store.spec.controller == self.controller_class

    async def client_for(
        self, store: SecretStore, log: Optional[Log] = None
    ) -> ProviderClient:
        """
        Build an authenticated client for an already loaded store.

        Raises:
            InvalidStoreConfig: If the provider or auth selection is invalid.
        """
        log = log or logger

        providers = store.spec.provider.active()
        if len(providers) != 1:
            raise InvalidStoreConfig(
                f"store '{store.name}' must set exactly one provider, "
                f"found {len(providers)}: {providers}"
            )
        provider_name = providers[0]

        auth_methods = store.spec.auth.active()
        if len(auth_methods) != 1:
            raise InvalidStoreConfig(
                f"store '{store.name}' must set exactly one auth method, "
                f"found {len(auth_methods)}: {auth_methods}"
            )
        auth_name = auth_methods[0]

        if not self.registry.has_provider_plugin(provider_name):
            raise InvalidStoreConfig(
                f"no provider plugin registered for '{provider_name}' "
                f"(store '{store.name}')"
            )
        if not self.plugin_config.is_provider_enabled(provider_name):
            raise InvalidStoreConfig(
                f"provider plugin '{provider_name}' is disabled "
                f"(store '{store.name}')"
            )
        if not self.registry.has_auth_strategy(auth_name):
            raise InvalidStoreConfig(
                f"no auth strategy registered for '{auth_name}' "
                f"(store '{store.name}')"
            )

        provider = await self.registry.get_provider_plugin(
            provider_name, self.plugin_config.get_plugin_config(provider_name)
        )
        is_valid, error = provider.validate_store(store)
        if not is_valid:
            raise InvalidStoreConfig(f"store '{store.name}': {error}")

        strategy = self.registry.get_auth_strategy(auth_name)
        return await strategy.authenticate(store, provider, self.credentials, log)

    async def resolve(
        self,
        namespace: str,
        store_ref: SecretStoreRef,
        log: Optional[Log] = None,
    ) -> ProviderClient:
        """
        Resolve a store reference into an authenticated provider client.

        Args:
            namespace: Namespace of the declaration holding the reference.
            store_ref: The reference to resolve.
            log: Logger for this reconcile.

        Returns:
            An authenticated ProviderClient.

        Raises:
            StoreNotFound, InvalidStoreConfig, Unauthorized, Unavailable
        """
        store = await self.get_store(namespace, store_ref)
        return await self.client_for(store, log)
