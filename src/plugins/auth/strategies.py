"""
Built-in auth strategies: token, client certificate and AppRole.
"""

from models import SecretStore
from plugins.auth.base import AuthStrategy, CredentialReader
from plugins.base import AuthCredentials


class TokenAuthStrategy(AuthStrategy):
    """Authenticate with a static token read from a credential record."""

    @property
    def name(self) -> str:
        return "token"

    async def resolve_credentials(
        self, store: SecretStore, reader: CredentialReader
    ) -> AuthCredentials:
        token = await reader.read_text(store, store.spec.auth.token)
        return AuthCredentials(method=self.name, token=token)


class CertAuthStrategy(AuthStrategy):
    """Authenticate with a client certificate and key pair."""

    @property
    def name(self) -> str:
        return "cert"

    async def resolve_credentials(
        self, store: SecretStore, reader: CredentialReader
    ) -> AuthCredentials:
        cert = store.spec.auth.cert
        return AuthCredentials(
            method=self.name,
            client_cert=await reader.read(store, cert.client_cert),
            client_key=await reader.read(store, cert.client_key),
        )


class AppRoleAuthStrategy(AuthStrategy):
    """Authenticate with a role id from the store and a secret id from a record."""

    @property
    def name(self) -> str:
        return "appRole"

    async def resolve_credentials(
        self, store: SecretStore, reader: CredentialReader
    ) -> AuthCredentials:
        app_role = store.spec.auth.app_role
        return AuthCredentials(
            method=self.name,
            role_id=app_role.role_id,
            secret_id=await reader.read_text(store, app_role.secret_ref),
            mount_path=app_role.path,
        )
