"""Unit tests for the patient mapping stores."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from discharge_export.core.errors import DestinationWriteFailed, PatientResolutionFailed
from discharge_export.models.export import PatientMapping
from discharge_export.services.patient_mapping_store import InMemoryPatientMappingStore, RedisPatientMappingStore
from redis.exceptions import ConnectionError as RedisConnectionError


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client."""
    client = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client


@pytest.fixture
def redis_store(mock_redis_client):
    return RedisPatientMappingStore(
        redis_client=mock_redis_client,
        key_prefix="patient_mapping",
        commit_key_prefix="export_commit",
    )


class TestRedisPatientMappingStore:
    @pytest.mark.asyncio
    async def test_get_missing(self, redis_store, mock_redis_client):
        assert await redis_store.get("t1", "p-1") is None
        mock_redis_client.get.assert_awaited_once_with("patient_mapping:t1:p-1")

    @pytest.mark.asyncio
    async def test_get_existing(self, redis_store, mock_redis_client):
        mock_redis_client.get.return_value = PatientMapping("t1", "p-1", "dest-1").to_json()

        mapping = await redis_store.get("t1", "p-1")

        assert mapping.destination_patient_id == "dest-1"

    @pytest.mark.asyncio
    async def test_create_if_absent_uses_set_nx(self, redis_store, mock_redis_client):
        mapping = PatientMapping("t1", "p-1", "dest-1")

        stored, created = await redis_store.create_if_absent(mapping)

        assert created is True
        assert stored == mapping
        mock_redis_client.set.assert_awaited_once_with("patient_mapping:t1:p-1", mapping.to_json(), nx=True)

    @pytest.mark.asyncio
    async def test_create_if_absent_returns_winner(self, redis_store, mock_redis_client):
        mock_redis_client.set.return_value = None
        mock_redis_client.get.return_value = PatientMapping("t1", "p-1", "dest-winner").to_json()

        stored, created = await redis_store.create_if_absent(PatientMapping("t1", "p-1", "dest-loser"))

        assert created is False
        assert stored.destination_patient_id == "dest-winner"

    @pytest.mark.asyncio
    async def test_vanished_winner_is_transient_failure(self, redis_store, mock_redis_client):
        mock_redis_client.set.return_value = None
        mock_redis_client.get.return_value = None

        with pytest.raises(PatientResolutionFailed) as exc_info:
            await redis_store.create_if_absent(PatientMapping("t1", "p-1", "dest-1"))

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [RedisConnectionError("down"), asyncio.TimeoutError()])
    async def test_redis_failures_are_transient(self, redis_store, mock_redis_client, error):
        mock_redis_client.get.side_effect = error

        with pytest.raises(PatientResolutionFailed) as exc_info:
            await redis_store.get("t1", "p-1")

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_not_connected(self):
        store = RedisPatientMappingStore()

        with pytest.raises(PatientResolutionFailed, match="not connected"):
            await store.get("t1", "p-1")

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, redis_store, mock_redis_client):
        await redis_store.disconnect()

        mock_redis_client.close.assert_awaited_once()
        assert redis_store.redis_client is None


class TestRedisExportCommit:
    @pytest.mark.asyncio
    async def test_claim_uses_set_nx(self, redis_store, mock_redis_client):
        committed = await redis_store.claim_export_commit("fp-1", "dr-1")

        assert committed == "dr-1"
        mock_redis_client.set.assert_awaited_once_with("export_commit:fp-1", "dr-1", nx=True)

    @pytest.mark.asyncio
    async def test_claim_returns_winner(self, redis_store, mock_redis_client):
        mock_redis_client.set.return_value = None
        mock_redis_client.get.return_value = "dr-winner"

        assert await redis_store.claim_export_commit("fp-1", "dr-loser") == "dr-winner"
        mock_redis_client.get.assert_awaited_once_with("export_commit:fp-1")

    @pytest.mark.asyncio
    async def test_failures_are_transient_destination_errors(self, redis_store, mock_redis_client):
        mock_redis_client.set.side_effect = RedisConnectionError("down")

        with pytest.raises(DestinationWriteFailed) as exc_info:
            await redis_store.claim_export_commit("fp-1", "dr-1")

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_not_connected(self):
        store = RedisPatientMappingStore()

        with pytest.raises(DestinationWriteFailed, match="not connected"):
            await store.get_export_commit("fp-1")


class TestInMemoryPatientMappingStore:
    @pytest.mark.asyncio
    async def test_first_writer_wins(self):
        store = InMemoryPatientMappingStore()

        first, first_created = await store.create_if_absent(PatientMapping("t1", "p-1", "dest-a"))
        second, second_created = await store.create_if_absent(PatientMapping("t1", "p-1", "dest-b"))

        assert first_created is True
        assert second_created is False
        assert second.destination_patient_id == "dest-a"
        assert (await store.get("t1", "p-1")).destination_patient_id == "dest-a"

    @pytest.mark.asyncio
    async def test_keys_are_per_tenant(self):
        store = InMemoryPatientMappingStore()

        await store.create_if_absent(PatientMapping("t1", "p-1", "dest-a"))
        await store.create_if_absent(PatientMapping("t2", "p-1", "dest-b"))

        assert (await store.get("t1", "p-1")).destination_patient_id == "dest-a"
        assert (await store.get("t2", "p-1")).destination_patient_id == "dest-b"

    @pytest.mark.asyncio
    async def test_first_export_commit_wins(self):
        store = InMemoryPatientMappingStore()

        assert await store.get_export_commit("fp-1") is None
        assert await store.claim_export_commit("fp-1", "dr-a") == "dr-a"
        assert await store.claim_export_commit("fp-1", "dr-b") == "dr-a"
        assert await store.claim_export_commit("fp-1", "dr-a") == "dr-a"
        assert await store.get_export_commit("fp-1") == "dr-a"
