"""
Event schema, canonical serialization and validation

Events are content-addressed: the id is the SHA-256 of the canonical
serialization ``[0, pubkey, created_at, kind, tags, content]`` and the
signature is computed over that id. Any other implementation following
the same rule derives byte-identical ids.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import hashlib
import json
import logging
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import EventEncodingError, EventValidationError

logger = logging.getLogger("keyhold.events")

HEX32_RE = re.compile(r'^[0-9a-f]{64}$')
HEX64_RE = re.compile(r'^[0-9a-f]{128}$')

MAX_FUTURE_DRIFT_SECONDS = 60
MAX_TEXT_NOTE_LENGTH = 10000
MAX_TOPIC_NAME_LENGTH = 100
MAX_TOPIC_DESCRIPTION_LENGTH = 500

Tags = Tuple[Tuple[str, ...], ...]


class EventKinds:
    """Event kind numbers used by the forum"""

    PROFILE_METADATA = 0
    TEXT_NOTE = 1
    CONTACT_LIST = 3
    DIRECT_MESSAGE = 4
    DELETION = 5
    REPOST = 6
    REACTION = 7
    POLL_RESPONSE = 1018
    POLL = 1068
    TOPIC_APPROVAL = 4550
    HIGHLIGHT = 9802
    COMMUNITY_LIST = 10004
    RELAY_LIST = 10002
    LONG_FORM = 30023
    TOPIC_DEFINITION = 34550

    # Topic posts and votes reuse the standard kinds
    TOPIC_POST = TEXT_NOTE
    TOPIC_VOTE = REACTION


class UnsignedEvent(BaseModel):
    """
    Event before signing

    Immutable once constructed; the id is derived from exactly these
    five fields.
    """

    model_config = ConfigDict(frozen=True)

    kind: int = Field(..., ge=0, description="Event kind")
    created_at: int = Field(..., ge=0, description="Unix timestamp in seconds")
    tags: Tags = Field(default=(), description="Ordered tag sequences")
    content: str = Field(default="", description="Event content")
    pubkey: str = Field(..., description="Author x-only public key, lowercase hex")

    @field_validator('pubkey')
    @classmethod
    def validate_pubkey(cls, v):
        """Ensure pubkey is 32 bytes of lowercase hex"""
        if not HEX32_RE.match(v):
            raise ValueError("pubkey must be 64 lowercase hex characters")
        return v

    @property
    def pubkey_bytes(self) -> bytes:
        return bytes.fromhex(self.pubkey)

    def tags_as_lists(self) -> List[List[str]]:
        return [list(tag) for tag in self.tags]

    def get_tag_values(self, name: str) -> List[str]:
        """Get the first value of every tag with the given name"""
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'created_at': self.created_at,
            'tags': self.tags_as_lists(),
            'content': self.content,
            'pubkey': self.pubkey,
        }


class SignedEvent(UnsignedEvent):
    """
    Event with its content hash and Schnorr signature

    The unit exchanged with relays. Never mutated after creation.
    """

    id: str = Field(..., description="SHA-256 of the canonical serialization, hex")
    sig: str = Field(..., description="64-byte Schnorr signature, hex")

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        if not HEX32_RE.match(v):
            raise ValueError("id must be 64 lowercase hex characters")
        return v

    @field_validator('sig')
    @classmethod
    def validate_sig(cls, v):
        if not HEX64_RE.match(v):
            raise ValueError("sig must be 128 lowercase hex characters")
        return v

    @property
    def id_bytes(self) -> bytes:
        return bytes.fromhex(self.id)

    @property
    def sig_bytes(self) -> bytes:
        return bytes.fromhex(self.sig)

    def unsigned(self) -> UnsignedEvent:
        """Strip id and signature"""
        return UnsignedEvent(
            kind=self.kind,
            created_at=self.created_at,
            tags=self.tags,
            content=self.content,
            pubkey=self.pubkey,
        )

    def has_valid_id(self) -> bool:
        """Check that id matches the canonical serialization"""
        try:
            return compute_id_hex(self) == self.id
        except EventEncodingError:
            return False

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['id'] = self.id
        data['sig'] = self.sig
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), ensure_ascii=False)

    def to_jsonl_line(self) -> str:
        """Convert event to JSONL line (JSON + newline)"""
        return self.to_json() + "\n"

    @classmethod
    def from_jsonl_line(cls, line: str) -> 'SignedEvent':
        """Create event from JSONL line"""
        return cls.model_validate_json(line.strip())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignedEvent':
        return cls.model_validate(data)


# Canonical serialization

def canonicalize(event: UnsignedEvent) -> bytes:
    """
    Serialize the event fields the id commits to

    Produces the UTF-8 bytes of the compact JSON array
    ``[0,pubkey,created_at,kind,tags,content]``. Non-ASCII characters are
    written literally and string escaping matches JSON.stringify, so the
    output is byte-identical to what verifiers on other platforms derive.
    """
    payload = [0, event.pubkey, event.created_at, event.kind, event.tags_as_lists(), event.content]
    serialized = json.dumps(payload, separators=(',', ':'), ensure_ascii=False)
    try:
        return serialized.encode('utf-8')
    except UnicodeEncodeError as e:
        raise EventEncodingError(f"Event contains text that is not valid UTF-8: {e.reason}") from e


def compute_id(event: UnsignedEvent) -> bytes:
    """SHA-256 of the canonical serialization"""
    return hashlib.sha256(canonicalize(event)).digest()


def compute_id_hex(event: UnsignedEvent) -> str:
    return compute_id(event).hex()


# Event factory functions

def _now_seconds() -> int:
    return int(datetime.now().timestamp())


def _normalize_tags(tags: Optional[Iterable[Sequence[str]]]) -> Tags:
    if not tags:
        return ()
    return tuple(tuple(tag) for tag in tags)


def create_event(
    kind: int,
    content: str,
    pubkey: str,
    tags: Optional[Iterable[Sequence[str]]] = None,
    created_at: Optional[int] = None
) -> UnsignedEvent:
    """Create an unsigned event stamped with the current time"""
    if created_at is None:
        created_at = _now_seconds()

    return UnsignedEvent(
        kind=kind,
        created_at=created_at,
        tags=_normalize_tags(tags),
        content=content,
        pubkey=pubkey,
    )


def create_text_note(
    pubkey: str,
    content: str,
    tags: Optional[Iterable[Sequence[str]]] = None,
    created_at: Optional[int] = None
) -> UnsignedEvent:
    """Create a text note (also used for topic posts)"""
    return create_event(EventKinds.TEXT_NOTE, content, pubkey, tags, created_at)


def create_reaction(
    pubkey: str,
    target_event_id: str,
    target_pubkey: Optional[str] = None,
    reaction: str = "+",
    created_at: Optional[int] = None
) -> UnsignedEvent:
    """Create a reaction (vote) on another event"""
    tags = [["e", target_event_id]]
    if target_pubkey:
        tags.append(["p", target_pubkey])
    return create_event(EventKinds.REACTION, reaction, pubkey, tags, created_at)


def create_deletion(
    pubkey: str,
    event_ids: Sequence[str],
    reason: str = "",
    created_at: Optional[int] = None
) -> UnsignedEvent:
    """Create a deletion request for previously published events"""
    tags = [["e", event_id] for event_id in event_ids]
    return create_event(EventKinds.DELETION, reason, pubkey, tags, created_at)


# Validation

class ValidationIssue(BaseModel):
    """A single validation problem"""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


def _validate_structure(event: UnsignedEvent, now: int) -> List[ValidationIssue]:
    issues = []

    if event.created_at > now + MAX_FUTURE_DRIFT_SECONDS:
        issues.append(ValidationIssue(
            field='created_at',
            message='Event created_at cannot be more than 1 minute in the future'
        ))

    for i, tag in enumerate(event.tags):
        if len(tag) == 0:
            issues.append(ValidationIssue(field=f'tags[{i}]', message='Tag cannot be empty'))
        elif not tag[0]:
            issues.append(ValidationIssue(field=f'tags[{i}][0]', message='Tag name cannot be empty'))

    return issues


def _has_tag(event: UnsignedEvent, name: str) -> bool:
    return any(tag and tag[0] == name for tag in event.tags)


def _validate_content(event: UnsignedEvent) -> List[ValidationIssue]:
    issues = []

    if event.kind == EventKinds.TEXT_NOTE:
        if len(event.content) > MAX_TEXT_NOTE_LENGTH:
            issues.append(ValidationIssue(
                field='content',
                message=f'Text note content exceeds maximum length ({MAX_TEXT_NOTE_LENGTH} characters)'
            ))

    elif event.kind == EventKinds.DIRECT_MESSAGE:
        if not event.content:
            issues.append(ValidationIssue(field='content', message='Direct message content cannot be empty'))
        recipients = [v for v in event.get_tag_values('p') if HEX32_RE.match(v)]
        if not recipients:
            issues.append(ValidationIssue(field='tags', message='Direct message must include a recipient (p tag)'))

    elif event.kind == EventKinds.REACTION:
        if not _has_tag(event, 'e'):
            issues.append(ValidationIssue(field='tags', message='Reaction must reference an event (e tag)'))
        if event.content not in ('+', '-', ''):
            issues.append(ValidationIssue(field='content', message='Reaction content must be "+", "-", or empty'))

    elif event.kind == EventKinds.TOPIC_APPROVAL:
        if not _has_tag(event, 'e'):
            issues.append(ValidationIssue(field='tags', message='Topic approval must reference an event (e tag)'))
        if not _has_tag(event, 'a'):
            issues.append(ValidationIssue(field='tags', message='Topic approval must reference a topic (a tag)'))

    elif event.kind == EventKinds.TOPIC_DEFINITION:
        issues.extend(_validate_topic_definition(event))

    return issues


def _validate_topic_definition(event: UnsignedEvent) -> List[ValidationIssue]:
    issues = []
    try:
        topic = json.loads(event.content)
    except ValueError:
        return [ValidationIssue(field='content', message='Topic definition must contain valid JSON')]
    if not isinstance(topic, dict):
        return [ValidationIssue(field='content', message='Topic definition must be a JSON object')]

    name = topic.get('name')
    if not name:
        issues.append(ValidationIssue(field='content.name', message='Topic name is required'))
    elif len(str(name)) > MAX_TOPIC_NAME_LENGTH:
        issues.append(ValidationIssue(
            field='content.name',
            message=f'Topic name exceeds maximum length ({MAX_TOPIC_NAME_LENGTH} characters)'
        ))

    description = topic.get('description')
    if not description:
        issues.append(ValidationIssue(field='content.description', message='Topic description is required'))
    elif len(str(description)) > MAX_TOPIC_DESCRIPTION_LENGTH:
        issues.append(ValidationIssue(
            field='content.description',
            message=f'Topic description exceeds maximum length ({MAX_TOPIC_DESCRIPTION_LENGTH} characters)'
        ))

    if not _has_tag(event, 'p'):
        issues.append(ValidationIssue(
            field='tags',
            message='Topic definition must include at least one moderator (p tag)'
        ))
    return issues


def validate_event(event: UnsignedEvent, now: Optional[int] = None) -> List[ValidationIssue]:
    """Collect every structural and kind-specific problem with an event"""
    if now is None:
        now = _now_seconds()
    return _validate_structure(event, now) + _validate_content(event)


def ensure_valid(event: UnsignedEvent, now: Optional[int] = None) -> UnsignedEvent:
    """Raise EventValidationError listing all issues, or return the event"""
    issues = validate_event(event, now)
    if issues:
        raise EventValidationError(issues)
    return event


# Utility functions

def parse_events_from_jsonl(jsonl_content: str) -> List[SignedEvent]:
    """Parse events from JSONL content, skipping lines that fail to parse"""
    events = []
    for line in jsonl_content.strip().split('\n'):
        if line.strip():
            try:
                events.append(SignedEvent.from_jsonl_line(line))
            except ValueError as e:
                logger.warning("Failed to parse event line: %s", e)
    return events


def events_to_jsonl(events: List[SignedEvent]) -> str:
    """Convert list of events to JSONL format"""
    return ''.join(event.to_jsonl_line() for event in events)
