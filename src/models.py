"""
Declared resource models.

SecretStore and ExternalSecret declarations are stored as JSON by the host
platform and parsed into these pydantic models by the controller. Field
names follow the declaration's camelCase shape through aliases.

Provider and auth selection are tagged unions expressed as optional
variant fields. Which variant is active is decided by the store resolver,
not here, so a declaration with zero or several variants still parses.
"""

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils import parse_duration

DEFAULT_REFRESH_INTERVAL = 3600

# (namespace, name) identity of a declaration
ResourceKey = Tuple[str, str]


class _Declared(BaseModel):
    """Base for declaration models: accept both alias and field names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ==================== Secret Store ====================


class CredentialRef(_Declared):
    """Reference to one field of a credential record."""

    name: str
    key: str
    namespace: Optional[str] = None


class VaultProvider(_Declared):
    """Vault-style KV backend connection parameters."""

    server: str
    path: str = "secret"
    version: Literal["v1", "v2"] = "v2"
    ca_bundle: Optional[str] = Field(default=None, alias="caBundle")
    namespace: Optional[str] = None


class AWSSMProvider(_Declared):
    """Cloud secrets manager connection parameters."""

    region: Optional[str] = None
    role: Optional[str] = None


class MemoryProvider(_Declared):
    """In-process backend, selected by name."""

    backend: str = "default"


class StoreProvider(_Declared):
    """Provider union. Exactly one field is expected to be set."""

    vault: Optional[VaultProvider] = None
    awssm: Optional[AWSSMProvider] = None
    memory: Optional[MemoryProvider] = None

    def active(self) -> List[str]:
        """Names of the populated provider variants."""
        return [
            name
            for name in ("vault", "awssm", "memory")
            if getattr(self, name) is not None
        ]


class CertAuth(_Declared):
    """Client certificate authentication."""

    client_cert: CredentialRef = Field(alias="clientCertRef")
    client_key: CredentialRef = Field(alias="clientKeyRef")


class AppRoleAuth(_Declared):
    """Role-id / secret-id authentication."""

    path: str = "approle"
    role_id: str = Field(alias="roleID")
    secret_ref: CredentialRef = Field(alias="secretRef")


class StoreAuth(_Declared):
    """Auth union. Exactly one field is expected to be set."""

    token: Optional[CredentialRef] = None
    cert: Optional[CertAuth] = None
    app_role: Optional[AppRoleAuth] = Field(default=None, alias="appRole")

    def active(self) -> List[str]:
        """Names of the populated auth variants, using declaration names."""
        variants = []
        if self.token is not None:
            variants.append("token")
        if self.cert is not None:
            variants.append("cert")
        if self.app_role is not None:
            variants.append("appRole")
        return variants

    def credential_refs(self) -> List[CredentialRef]:
        """Every credential record field referenced by any auth variant."""
        refs = []
        if self.token is not None:
            refs.append(self.token)
        if self.cert is not None:
            refs.extend([self.cert.client_cert, self.cert.client_key])
        if self.app_role is not None:
            refs.append(self.app_role.secret_ref)
        return refs


class SecretStoreSpec(_Declared):
    controller: Optional[str] = None
    provider: StoreProvider = Field(default_factory=StoreProvider)
    auth: StoreAuth = Field(default_factory=StoreAuth)


class SecretStore(_Declared):
    """A named backend connection. ``namespace`` is None for cluster stores."""

    name: str
    namespace: Optional[str] = None
    spec: SecretStoreSpec = Field(default_factory=SecretStoreSpec)

    @property
    def cluster_scoped(self) -> bool:
        return self.namespace is None

    def uses_credential(self, namespace: str, name: str) -> bool:
        """Check whether the store's auth reads the given credential record."""
        for ref in self.spec.auth.credential_refs():
            if ref.name == name and (ref.namespace or self.namespace) == namespace:
                return True
        return False


# ==================== External Secret ====================


class SecretStoreRef(_Declared):
    name: str
    kind: Literal["SecretStore", "ClusterSecretStore"] = "SecretStore"


class RemoteRef(_Declared):
    """Locates a value inside a backend."""

    key: str
    version: Optional[str] = None
    property: Optional[str] = None


class DataRequest(_Declared):
    """One remote fetch and where to place it in the target record."""

    secret_key: str = Field(alias="secretKey")
    remote_ref: RemoteRef = Field(alias="remoteRef")


class SecretTemplate(_Declared):
    """
    Per-field templates rendered over the extracted values.

    With ``Merge`` the rendered fields are laid over the extracted ones;
    with ``Replace`` they form the whole record.
    """

    data: Dict[str, str] = Field(default_factory=dict)
    merge_policy: Literal["Merge", "Replace"] = Field(
        default="Merge", alias="mergePolicy"
    )


class ExternalSecretTarget(_Declared):
    name: Optional[str] = None


class ExternalSecretSpec(_Declared):
    secret_store_ref: SecretStoreRef = Field(alias="secretStoreRef")
    target: ExternalSecretTarget = Field(default_factory=ExternalSecretTarget)
    # None means the controller default applies
    refresh_interval: Optional[int] = Field(default=None, alias="refreshInterval")
    data: List[DataRequest] = Field(default_factory=list)
    data_from: List[RemoteRef] = Field(default_factory=list, alias="dataFrom")
    template: Optional[SecretTemplate] = None

    @field_validator("refresh_interval", mode="before")
    @classmethod
    def validate_refresh_interval(cls, v: Union[int, str, None]) -> Optional[int]:
        return parse_duration(v)


class ExternalSecret(_Declared):
    """A declaration of which remote data to sync into which target record."""

    name: str
    namespace: str
    generation: int = 1
    spec: ExternalSecretSpec

    @property
    def target_name(self) -> str:
        return self.spec.target.name or self.name

    @property
    def key(self) -> ResourceKey:
        return (self.namespace, self.name)


def parse_external_secret(row: Dict[str, Any]) -> ExternalSecret:
    """Build an ExternalSecret from a database row dict."""
    return ExternalSecret.model_validate(
        {
            "name": row["name"],
            "namespace": row["namespace"],
            "generation": row.get("generation", 1),
            "spec": row.get("spec") or {},
        }
    )


def parse_secret_store(row: Dict[str, Any]) -> SecretStore:
    """Build a SecretStore from a database row dict."""
    return SecretStore.model_validate(
        {
            "name": row["name"],
            "namespace": row.get("namespace"),
            "spec": row.get("spec") or {},
        }
    )
