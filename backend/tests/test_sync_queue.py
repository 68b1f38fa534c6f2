"""
Sync queue: FIFO draining, attempts, retention purge
"""
from datetime import timedelta

import pytest

from commission_core.errors import ValidationError


class TestEnqueue:

    async def test_rejects_unknown_action(self, queue):
        """Only INSERT / UPDATE / DELETE are accepted"""
        with pytest.raises(ValidationError):
            await queue.enqueue("UPSERT", "payments", "p-1", {})

    async def test_requires_table_and_record(self, queue):
        with pytest.raises(ValidationError):
            await queue.enqueue("INSERT", "", "p-1", {})

    async def test_sequence_is_monotonic(self, queue):
        first = await queue.get(await queue.enqueue("INSERT", "payments", "p-1", {}))
        second = await queue.get(await queue.enqueue("INSERT", "payments", "p-2", {}))
        assert second.seq == first.seq + 1


class TestDrain:

    async def test_fifo_with_identical_timestamps(self, queue):
        """Items created in the same instant drain in enqueue order"""
        for n in range(5):
            await queue.enqueue("UPDATE", "payments", "p-1", {"n": n})

        items = await queue.drain_pending(50)
        assert [i.payload["n"] for i in items] == [0, 1, 2, 3, 4]

    async def test_fifo_across_time(self, queue, clock):
        await queue.enqueue("INSERT", "companies", "c-1", {})
        clock.advance(5)
        await queue.enqueue("INSERT", "contracts", "k-1", {})

        items = await queue.drain_pending(50)
        assert [i.table for i in items] == ["companies", "contracts"]

    async def test_limit_and_processed(self, queue):
        """Processed items are skipped; the limit caps the batch"""
        ids = [await queue.enqueue("INSERT", "payments", f"p-{n}", {}) for n in range(3)]
        await queue.mark_processed(ids[0])

        items = await queue.drain_pending(1)
        assert [i.id for i in items] == [ids[1]]
        assert await queue.count_pending() == 2

    async def test_increment_attempts(self, queue):
        queue_id = await queue.enqueue("INSERT", "payments", "p-1", {})
        assert await queue.increment_attempts(queue_id, "timeout") == 1
        assert await queue.increment_attempts(queue_id, "timeout") == 2

        item = await queue.get(queue_id)
        assert item.attempts == 2
        assert item.last_error == "timeout"
        assert item.processed is False


class TestPurge:

    async def test_purge_only_old_processed(self, queue, clock):
        """Pending items are never purged, recent processed ones are kept"""
        old = await queue.enqueue("INSERT", "payments", "p-old", {})
        await queue.mark_processed(old)
        still_pending = await queue.enqueue("INSERT", "payments", "p-pending", {})

        clock.advance(timedelta(days=8).total_seconds())
        recent = await queue.enqueue("INSERT", "payments", "p-recent", {})
        await queue.mark_processed(recent)

        removed = await queue.purge_processed_older_than(timedelta(days=7))
        assert removed == 1
        assert await queue.get(old) is None
        assert await queue.get(still_pending) is not None
        assert await queue.get(recent) is not None

    async def test_has_pending_delete(self, queue):
        queue_id = await queue.enqueue("DELETE", "payments", "p-1", {"id": "p-1"})
        assert await queue.has_pending_delete("payments", "p-1")

        await queue.mark_processed(queue_id)
        assert not await queue.has_pending_delete("payments", "p-1")
