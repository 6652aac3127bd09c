"""
File-backed relay transport

Each endpoint is a directory holding an append-only ``events.jsonl``
log. The transport behaves like a relay: it checks the event id and
signature before accepting, acknowledges duplicates without writing them
twice, and rejects anything that does not verify.

Endpoints are either ``file://`` URIs, absolute paths, or names resolved
under the transport's base directory.
"""

from pathlib import Path
from typing import Dict, List, Optional, Set, Union
import asyncio
import logging
import re

import aiofiles

from ..core.crypto import verify_event
from ..core.errors import StorageError
from ..core.events import SignedEvent, parse_events_from_jsonl
from .publish import RelayResponse, Transport

logger = logging.getLogger("keyhold.transports")

EVENTS_FILENAME = "events.jsonl"


def endpoint_dirname(endpoint: str) -> str:
    """Turn an endpoint name into a safe directory name"""
    name = re.sub(r'^[a-z]+://', '', endpoint.strip())
    return ''.join(c if c.isalnum() or c in '-_.' else '_' for c in name).strip('.') or 'relay'


class DirectoryRelayTransport(Transport):
    """Publishes events into per-endpoint JSONL logs"""

    def __init__(self, base_path: Optional[Union[str, Path]] = None):
        self.base_path = Path(base_path).expanduser() if base_path is not None else None
        self._seen: Dict[Path, Set[str]] = {}
        self._locks: Dict[Path, asyncio.Lock] = {}

    def resolve(self, endpoint: str) -> Path:
        """Map an endpoint to its directory"""
        if endpoint.startswith('file://'):
            return Path(endpoint[7:]).expanduser()
        path = Path(endpoint).expanduser()
        if path.is_absolute():
            return path
        if self.base_path is None:
            raise StorageError(f"Relative endpoint {endpoint!r} needs a base path")
        return self.base_path / endpoint_dirname(endpoint)

    def log_path(self, endpoint: str) -> Path:
        return self.resolve(endpoint) / EVENTS_FILENAME

    async def _load_seen(self, log_path: Path) -> Set[str]:
        if log_path not in self._seen:
            events = await self._read_log(log_path)
            self._seen[log_path] = {event.id for event in events}
        return self._seen[log_path]

    async def _read_log(self, log_path: Path) -> List[SignedEvent]:
        if not log_path.exists():
            return []
        async with aiofiles.open(log_path, 'r', encoding='utf-8') as f:
            content = await f.read()
        return parse_events_from_jsonl(content)

    async def send(self, endpoint: str, event: SignedEvent) -> RelayResponse:
        """Verify and append event to the endpoint's log"""
        if not verify_event(event):
            logger.info("Relay %s rejected %s...: invalid id or signature", endpoint, event.id[:8])
            return RelayResponse.reject("invalid: event id or signature does not verify")

        log_path = self.log_path(endpoint)
        lock = self._locks.setdefault(log_path, asyncio.Lock())
        async with lock:
            seen = await self._load_seen(log_path)
            if event.id in seen:
                return RelayResponse.ack("duplicate: already have this event")

            log_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(log_path, 'a', encoding='utf-8') as f:
                await f.write(event.to_jsonl_line())
            seen.add(event.id)

        logger.debug("Relay %s stored %s...", endpoint, event.id[:8])
        return RelayResponse.ack()

    async def read_events(self, endpoint: str) -> List[SignedEvent]:
        """Read every event stored at an endpoint"""
        return await self._read_log(self.log_path(endpoint))


__all__ = ['DirectoryRelayTransport', 'endpoint_dirname']
