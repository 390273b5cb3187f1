"""
Memory Provider Plugin - in-process secret backend.

Holds versioned values in named backends so that stores can be exercised
without an external service. Each backend keeps its own set of accepted
credentials for every auth method and fails closed: a client is only
handed out, and a fetch only succeeds, for credentials the backend knows.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from errors import (
    InvalidStoreConfig,
    KeyNotFound,
    SecretSyncError,
    Unauthorized,
    Unavailable,
)
from models import SecretStore
from plugins.base import AuthCredentials
from plugins.providers.base import ProviderClient, ProviderPlugin

logger = logging.getLogger(__name__)


class MemoryBackend:
    """A named in-memory key/version store with its own credential set."""

    def __init__(self, name: str):
        self.name = name
        self.delay: float = 0.0
        self.fetch_count = 0
        # key -> ordered list of (version, value); the last entry is latest
        self._values: Dict[str, List[Tuple[str, bytes]]] = {}
        self._failures: Dict[str, SecretSyncError] = {}
        self._tokens: Set[str] = set()
        self._certificates: Set[Tuple[bytes, bytes]] = set()
        self._app_roles: Dict[str, str] = {}

    # Credentials

    def allow_token(self, token: str) -> None:
        self._tokens.add(token)

    def allow_certificate(self, client_cert: bytes, client_key: bytes) -> None:
        self._certificates.add((client_cert, client_key))

    def allow_app_role(self, role_id: str, secret_id: str) -> None:
        self._app_roles[role_id] = secret_id

    def revoke_all(self) -> None:
        """Forget every accepted credential."""
        self._tokens.clear()
        self._certificates.clear()
        self._app_roles.clear()

    def authorize(self, credentials: AuthCredentials) -> None:
        """
        Check credentials against the accepted set.

        Raises:
            Unauthorized: If the credentials are not accepted.
        """
        if credentials.method == "token":
            accepted = credentials.token in self._tokens
        elif credentials.method == "cert":
            accepted = (
                credentials.client_cert,
                credentials.client_key,
            ) in self._certificates
        elif credentials.method == "appRole":
            accepted = (
                credentials.role_id in self._app_roles
                and self._app_roles[credentials.role_id] == credentials.secret_id
            )
        else:
            accepted = False

        if not accepted:
            raise Unauthorized(
                f"backend '{self.name}' rejected {credentials.method} credentials"
            )

    # Values

    def put(
        self,
        key: str,
        value: Union[bytes, str, Dict[str, Any]],
        version: Optional[str] = None,
    ) -> str:
        """
        Store a value and return its version.

        Dicts are stored as JSON. Without an explicit version the next
        integer version is used. Writing an existing version replaces it
        without changing which version is latest.
        """
        if isinstance(value, dict):
            data = json.dumps(value).encode("utf-8")
        elif isinstance(value, str):
            data = value.encode("utf-8")
        else:
            data = value

        versions = self._values.setdefault(key, [])
        if version is None:
            version = str(len(versions) + 1)

        for i, (existing, _) in enumerate(versions):
            if existing == version:
                versions[i] = (version, data)
                return version

        versions.append((version, data))
        return version

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def read(self, key: str, version: Optional[str] = None) -> bytes:
        """
        Read a value.

        Raises:
            KeyNotFound: If the key or version does not exist.
        """
        versions = self._values.get(key)
        if not versions:
            raise KeyNotFound(key, version)
        if version is None:
            return versions[-1][1]
        for existing, data in versions:
            if existing == version:
                return data
        raise KeyNotFound(key, version)

    # Failure injection

    def fail(self, key: str, error: SecretSyncError) -> None:
        """Make every fetch of ``key`` raise ``error`` until cleared."""
        self._failures[key] = error

    def clear_failure(self, key: str) -> None:
        self._failures.pop(key, None)

    def failure_for(self, key: str) -> Optional[SecretSyncError]:
        """The error injected for ``key``, if any."""
        return self._failures.get(key)


class MemoryClient(ProviderClient):
    """Client bound to one MemoryBackend and one set of credentials."""

    def __init__(self, backend: MemoryBackend, credentials: AuthCredentials):
        self._backend = backend
        self._credentials = credentials
        self._closed = False

    async def fetch(
        self,
        key: str,
        version: Optional[str] = None,
        property: Optional[str] = None,
    ) -> bytes:
        if self._closed:
            raise Unavailable("client is closed")
        if self._backend.delay:
            await asyncio.sleep(self._backend.delay)

        self._backend.fetch_count += 1
        self._backend.authorize(self._credentials)

        failure = self._backend.failure_for(key)
        if failure is not None:
            raise failure
        return self._backend.read(key, version)

    async def close(self) -> None:
        self._closed = True


class MemoryProviderPlugin(ProviderPlugin):
    """Provider plugin serving stores declared with the 'memory' variant."""

    def __init__(self):
        self._backends: Dict[str, MemoryBackend] = {}

    @property
    def name(self) -> str:
        return "memory"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Pre-create the backends listed under ``backends`` in config."""
        for backend_name in config.get("backends", []):
            self.backend(backend_name)
        backends = list(self._backends)
        logger.debug(f"Memory provider initialized with backends: {backends}")

    def backend(self, name: str = "default") -> MemoryBackend:
        """Get or create a named backend."""
        if name not in self._backends:
            self._backends[name] = MemoryBackend(name)
        return self._backends[name]

    def validate_store(self, store: SecretStore) -> tuple[bool, Optional[str]]:
        if store.spec.provider.memory is None:
            return False, "store does not declare a memory provider"
        if not store.spec.provider.memory.backend:
            return False, "memory provider requires a backend name"
        return True, None

    async def new_client(
        self, store: SecretStore, credentials: AuthCredentials
    ) -> ProviderClient:
        is_valid, error = self.validate_store(store)
        if not is_valid:
            raise InvalidStoreConfig(error)

        backend = self.backend(store.spec.provider.memory.backend)
        backend.authorize(credentials)
        return MemoryClient(backend, credentials)
