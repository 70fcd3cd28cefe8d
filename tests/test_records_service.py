"""RecordService behaviour against slow and failing stores."""

import time

import pytest

from hostgate.service.auth import Identity
from hostgate.service.errors import ValidationError
from hostgate.service.records import RecordService, compute_content_hash, validate_content_hash
from hostgate.storage.errors import StorageUnavailable
from hostgate.storage.file_store import FileTenantStore
from hostgate.storage.pending import PendingWriteQueue

IDENTITY = Identity(subject="u1", org_id="acme")


class SlowStore:
    """Every call blocks for longer than the service is willing to wait."""

    backend = "slow"

    def __init__(self, delay: float):
        self.delay = delay

    def upsert(self, *args, **kwargs):
        time.sleep(self.delay)

    def list_by_tenant(self, *args, **kwargs):
        time.sleep(self.delay)
        return []


@pytest.fixture
def slow_service(tmp_path):
    return RecordService(SlowStore(0.3), PendingWriteQueue(tmp_path / "pending"), timeout_seconds=0.05)


class TestStorageTimeout:
    async def test_hung_write_is_queued(self, slow_service):
        result = await slow_service.save(IDENTITY, {"v": 1})
        assert result.queued is True
        assert result.record is None
        [entry] = slow_service.pending.list_entries()
        assert entry.id == result.pending_id
        assert entry.content_hash == compute_content_hash({"v": 1})

    async def test_hung_read_is_unavailable(self, slow_service):
        with pytest.raises(StorageUnavailable) as excinfo:
            await slow_service.list_for(IDENTITY)
        assert "timed out" in str(excinfo.value)


class TestSave:
    async def test_direct_write(self, tmp_path):
        service = RecordService(FileTenantStore(tmp_path / "store"), PendingWriteQueue(tmp_path / "pending"))
        result = await service.save(IDENTITY, {"v": 1}, "journal-0001")
        assert result.queued is False
        assert result.key == "acme|u1|journal-0001"
        assert result.record.payload == {"v": 1}
        assert service.pending.list_entries() == []


class TestContentHash:
    def test_valid_hash_trimmed(self):
        assert validate_content_hash(" journal-0001 ") == "journal-0001"

    @pytest.mark.parametrize("value", ["short", "../../etc/passwd", "a" * 129, "hash with space"])
    def test_invalid_hash_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_content_hash(value)

    def test_canonical_hash_ignores_key_order(self):
        assert compute_content_hash({"a": 1, "b": 2}) == compute_content_hash({"b": 2, "a": 1})
