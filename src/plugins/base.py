"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class AuthCredentials:
    """
    Credential material resolved by an auth strategy.

    Only the fields for ``method`` are populated. Secret fields are kept
    out of the repr so the object can be logged safely.
    """

    method: str
    token: Optional[str] = field(default=None, repr=False)
    client_cert: Optional[bytes] = field(default=None, repr=False)
    client_key: Optional[bytes] = field(default=None, repr=False)
    role_id: Optional[str] = None
    secret_id: Optional[str] = field(default=None, repr=False)
    mount_path: Optional[str] = None
