"""
Error taxonomy for keyhold

Vault and session transitions raise these exceptions. Signing and
publishing report their failures through explicit result objects
(see ``keyhold.auth.signer`` and ``keyhold.client.publish``) whose error
codes are defined here as well.
"""

from enum import Enum
from typing import List, Optional


class KeyholdError(Exception):
    """Base exception for all keyhold errors"""
    pass


# Vault

class VaultError(KeyholdError):
    """Base exception for vault operations"""
    pass


class WrongPassword(VaultError):
    """Authentication tag did not verify (wrong password or corrupted blob)"""

    def __init__(self, message: str = "Incorrect password or corrupted data"):
        super().__init__(message)


class UnsupportedVersion(VaultError):
    """Blob version has no known key-derivation parameters"""

    def __init__(self, version: int):
        super().__init__(f"Unsupported encrypted blob version: {version}")
        self.version = version


class CorruptedBlob(VaultError):
    """Stored blob could not be parsed at all"""
    pass


# Session

class SessionError(KeyholdError):
    """Base exception for identity session transitions"""
    pass


class NoKeyAvailable(SessionError):
    """No key material is available for the requested operation"""

    def __init__(self, message: str = "No key available"):
        super().__init__(message)


class InvalidSecretKey(SessionError):
    """Secret key has the wrong format, length or range"""
    pass


# External signer capability

class ExternalSignerError(KeyholdError):
    """Base exception raised by external signer capabilities"""
    pass


class ExternalSignerUnavailable(ExternalSignerError):
    """External signer is missing or not responding"""
    pass


class ExternalSignerRejected(ExternalSignerError):
    """User explicitly rejected the request at the external signer"""
    pass


# Signing

class SigningErrorCode(str, Enum):
    """Failure outcomes of a signing request"""

    NO_KEY_AVAILABLE = "no_key_available"
    NEEDS_PASSWORD = "needs_password"
    WRONG_PASSWORD = "wrong_password"
    EXTERNAL_UNAVAILABLE = "external_unavailable"
    EXTERNAL_REJECTED = "external_rejected"
    TIMEOUT = "timeout"
    INVALID_SIGNATURE = "invalid_signature"


class SigningError(KeyholdError):
    """Signing failed; ``code`` tells the caller how to recover"""

    def __init__(self, code: SigningErrorCode, message: Optional[str] = None):
        super().__init__(message or code.value.replace("_", " "))
        self.code = code


class SigningTimeout(SigningError):
    """External signer did not answer in time"""

    def __init__(self, message: str = "External signer timed out"):
        super().__init__(SigningErrorCode.TIMEOUT, message)


# Publishing

class PublishErrorCode(str, Enum):
    """Overall failure outcomes of a publish call"""

    ALL_ENDPOINTS_FAILED = "all_endpoints_failed"
    QUORUM_NOT_MET = "quorum_not_met"


class PublishError(KeyholdError):
    """Base exception for publishing"""
    pass


class AllEndpointsFailed(PublishError):
    """No endpoint acknowledged the event"""

    def __init__(self, event_id: str, failures: Optional[dict] = None):
        super().__init__(f"Failed to publish event {event_id[:16]}... to any endpoint")
        self.event_id = event_id
        self.failures = failures or {}


class QuorumNotMet(PublishError):
    """Fewer endpoints acknowledged than the configured quorum"""

    def __init__(self, event_id: str, acks: int, required: int):
        super().__init__(
            f"Event {event_id[:16]}... acknowledged by {acks} endpoint(s), {required} required"
        )
        self.event_id = event_id
        self.acks = acks
        self.required = required


# Storage, events, config

class StorageError(KeyholdError):
    """Storage medium failure"""
    pass


class EventEncodingError(KeyholdError):
    """Event fields cannot be encoded as UTF-8"""
    pass


class EventValidationError(KeyholdError):
    """Event failed structural or content validation"""

    def __init__(self, issues: List["object"]):
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"Event validation failed: {summary}")


class ConfigError(KeyholdError):
    """Invalid configuration file or environment override"""
    pass
