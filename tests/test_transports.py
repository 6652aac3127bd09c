"""Tests for the directory relay transport."""

from __future__ import annotations

import asyncio

import pytest

from keyhold.client.publish import PublishCoordinator
from keyhold.client.transports import DirectoryRelayTransport, endpoint_dirname
from keyhold.core.errors import StorageError


class TestEndpointResolution:
    """Tests for mapping endpoints to directories."""

    def test_dirname_strips_scheme(self) -> None:
        assert endpoint_dirname("wss://relay.example.com/path") == "relay.example.com_path"

    def test_dirname_never_empty(self) -> None:
        assert endpoint_dirname("...") == "relay"

    def test_relative_under_base(self, tmp_path) -> None:
        transport = DirectoryRelayTransport(tmp_path)
        assert transport.resolve("alpha") == tmp_path / "alpha"

    def test_file_uri_and_absolute(self, tmp_path) -> None:
        transport = DirectoryRelayTransport(tmp_path)
        assert transport.resolve(f"file://{tmp_path}/x") == tmp_path / "x"
        assert transport.resolve(str(tmp_path / "y")) == tmp_path / "y"

    def test_relative_without_base(self) -> None:
        with pytest.raises(StorageError):
            DirectoryRelayTransport().resolve("alpha")


class TestDirectoryRelayTransport:
    """Tests for storing events like a relay."""

    @pytest.mark.asyncio
    async def test_accepts_and_stores(self, tmp_path, signed_event) -> None:
        transport = DirectoryRelayTransport(tmp_path)
        response = await transport.send("alpha", signed_event)
        assert response.accepted
        assert await transport.read_events("alpha") == [signed_event]

    @pytest.mark.asyncio
    async def test_duplicate_acked_once_stored(self, tmp_path, signed_event) -> None:
        transport = DirectoryRelayTransport(tmp_path)
        await transport.send("alpha", signed_event)
        response = await transport.send("alpha", signed_event)
        assert response.accepted
        assert response.message.startswith("duplicate:")
        assert len(await transport.read_events("alpha")) == 1

    @pytest.mark.asyncio
    async def test_duplicates_detected_across_instances(self, tmp_path, signed_event) -> None:
        await DirectoryRelayTransport(tmp_path).send("alpha", signed_event)
        response = await DirectoryRelayTransport(tmp_path).send("alpha", signed_event)
        assert response.message.startswith("duplicate:")

    @pytest.mark.asyncio
    async def test_rejects_tampered_event(self, tmp_path, signed_event) -> None:
        transport = DirectoryRelayTransport(tmp_path)
        tampered = signed_event.model_copy(update={'content': "tampered"})
        response = await transport.send("alpha", tampered)
        assert not response.accepted
        assert response.message.startswith("invalid:")
        assert await transport.read_events("alpha") == []

    @pytest.mark.asyncio
    async def test_concurrent_sends_to_one_endpoint(self, tmp_path, keypair) -> None:
        from keyhold.core.crypto import sign_event
        from keyhold.core.events import create_text_note

        events = [
            sign_event(create_text_note(keypair.public_key_hex(), f"note {i}", created_at=1_700_000_000 + i),
                       keypair.secret_bytes())
            for i in range(10)
        ]
        transport = DirectoryRelayTransport(tmp_path)
        responses = await asyncio.gather(*[transport.send("alpha", e) for e in events])
        assert all(r.accepted for r in responses)
        stored = await transport.read_events("alpha")
        assert sorted(e.id for e in stored) == sorted(e.id for e in events)

    @pytest.mark.asyncio
    async def test_with_coordinator(self, tmp_path, signed_event) -> None:
        transport = DirectoryRelayTransport(tmp_path)
        outcome = await PublishCoordinator(transport).publish(signed_event, ["alpha", "beta"])
        assert outcome.fully_succeeded
        for endpoint in ("alpha", "beta"):
            assert (tmp_path / endpoint / "events.jsonl").exists()
