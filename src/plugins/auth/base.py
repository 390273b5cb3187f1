"""
Auth Strategy Base - Abstract interface for store authentication methods.

An auth strategy turns the credential references in a store's ``auth``
block into credential material and asks the provider plugin for an
authenticated client. Strategies are interchangeable: whichever one a store
selects, callers get the same ProviderClient contract and error taxonomy.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from errors import InvalidStoreConfig
from models import CredentialRef, SecretStore
from plugins.base import AuthCredentials
from plugins.providers.base import ProviderClient, ProviderPlugin

Log = Union[logging.Logger, logging.LoggerAdapter]


class CredentialReader:
    """
    Reads fields of credential records on behalf of auth strategies.

    Namespaced stores may only read credentials in their own namespace.
    Cluster-scoped stores must name the namespace in every reference.
    """

    def __init__(self, db: Any):
        self.db = db

    async def read(self, store: SecretStore, ref: CredentialRef) -> bytes:
        """
        Read one field of a credential record.

        Raises:
            InvalidStoreConfig: If the reference is not allowed, or the
                record or field does not exist.
        """
        if store.cluster_scoped:
            if not ref.namespace:
                raise InvalidStoreConfig(
                    f"credential reference '{ref.name}' of cluster store "
                    f"'{store.name}' must set a namespace"
                )
            namespace = ref.namespace
        else:
            if ref.namespace and ref.namespace != store.namespace:
                raise InvalidStoreConfig(
                    f"store '{store.name}' cannot read credentials from "
                    f"namespace '{ref.namespace}'"
                )
            namespace = store.namespace

        record = await self.db.get_credential_record(namespace, ref.name)
        if record is None:
            raise InvalidStoreConfig(
                f"credential record '{namespace}/{ref.name}' not found"
            )
        if ref.key not in record:
            raise InvalidStoreConfig(
                f"credential record '{namespace}/{ref.name}' has no field '{ref.key}'"
            )
        return record[ref.key]

    async def read_text(self, store: SecretStore, ref: CredentialRef) -> str:
        """Read a credential field as stripped UTF-8 text."""
        value = await self.read(store, ref)
        try:
            return value.decode("utf-8").strip()
        except UnicodeDecodeError:
            raise InvalidStoreConfig(
                f"credential field '{ref.name}/{ref.key}' is not valid UTF-8"
            )


class AuthStrategy(ABC):
    """Abstract base class for auth strategies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Auth variant name as used in store declarations (e.g. 'token')."""
        pass

    @abstractmethod
    async def resolve_credentials(
        self, store: SecretStore, reader: CredentialReader
    ) -> AuthCredentials:
        """
        Resolve the credential material the store's auth block references.

        Args:
            store: Store declaration with this strategy's variant set.
            reader: Reader for credential records.

        Returns:
            The resolved credentials.
        """
        pass

    async def authenticate(
        self,
        store: SecretStore,
        provider: ProviderPlugin,
        reader: CredentialReader,
        log: Optional[Log] = None,
    ) -> ProviderClient:
        """Resolve credentials and build an authenticated provider client."""
        credentials = await self.resolve_credentials(store, reader)
        if log is not None:
            log.debug(
                f"Authenticating to store '{store.name}' via {provider.name} "
                f"using {self.name} auth"
            )
        return await provider.new_client(store, credentials)
