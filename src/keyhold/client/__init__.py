"""
keyhold client module

This module contains:
- The publish coordinator and transport interface
- A file-backed relay transport
- The high-level client facade
"""

from .publish import (
    EndpointFailure,
    FailureReason,
    PublishCoordinator,
    PublishOutcome,
    RelayResponse,
    Transport,
)
from .transports import DirectoryRelayTransport
from .client import KeyholdClient

__all__ = [
    'EndpointFailure',
    'FailureReason',
    'PublishCoordinator',
    'PublishOutcome',
    'RelayResponse',
    'Transport',
    'DirectoryRelayTransport',
    'KeyholdClient',
]
