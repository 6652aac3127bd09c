"""
Identity and signing module for keyhold

This module holds the identity session state machine, the signer that
turns unsigned events into signed ones, and the external signer
capability interface for keys held outside this process.
"""

from .external import ExternalSigner, LocalKeyExternalSigner
from .signer import Signer, SigningResult
from .session import Identity, IdentitySession, SessionMode

__all__ = [
    'ExternalSigner',
    'LocalKeyExternalSigner',
    'Signer',
    'SigningResult',
    'Identity',
    'IdentitySession',
    'SessionMode',
]
