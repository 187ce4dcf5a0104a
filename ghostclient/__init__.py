"""
Device-side Ghost Network: local key store, identity session,
message composition and the relay HTTP client.
"""

from .keystore import LocalKeyStore
from .session import IdentitySession
from .messaging import compose_message, render_messages
from .relay_client import RelayClient

__all__ = [
    'LocalKeyStore',
    'IdentitySession',
    'compose_message',
    'render_messages',
    'RelayClient',
]
