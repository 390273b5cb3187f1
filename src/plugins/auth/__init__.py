"""
Auth strategies package.

Each strategy resolves one kind of credential material referenced by a
store's ``auth`` block.
"""

from plugins.auth.base import AuthStrategy, CredentialReader
from plugins.auth.strategies import (
    AppRoleAuthStrategy,
    CertAuthStrategy,
    TokenAuthStrategy,
)

__all__ = [
    "AuthStrategy",
    "CredentialReader",
    "AppRoleAuthStrategy",
    "CertAuthStrategy",
    "TokenAuthStrategy",
]
