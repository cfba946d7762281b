"""
Tests for the dead-letter queue and the sync event bus.
"""
from datetime import date

import pytest
from unittest.mock import AsyncMock, Mock

from attendance_sync.core.circuit_breaker import CircuitOpenError
from attendance_sync.domain.sync_window import DateRange
from attendance_sync.integrations.sis.error_handler import SISAuthenticationError
from attendance_sync.services.sync import DeadLetterQueue, DeadLetterQueueFullError, SyncEvent, SyncEventBus


WINDOW = DateRange(date(2024, 8, 15), date(2024, 8, 16))


class TestDeadLetterQueue:

    def test_add_records_unit(self):
        queue = DeadLetterQueue()

        entry = queue.add("001", WINDOW, 0, SISAuthenticationError("credentials rejected"), {"operation_id": "op-1"})

        assert entry.school_code == "001"
        assert entry.start_date == date(2024, 8, 15)
        assert entry.end_date == date(2024, 8, 16)
        assert entry.error_type == "SISAuthenticationError"
        assert entry.reason == "credentials rejected"
        assert entry.details == {"operation_id": "op-1"}
        assert len(queue) == 1

    def test_bounded(self):
        queue = DeadLetterQueue(max_size=2)
        queue.add("001", WINDOW, 0, CircuitOpenError("sis"))
        queue.add("002", WINDOW, 0, CircuitOpenError("sis"))

        with pytest.raises(DeadLetterQueueFullError):
            queue.add("003", WINDOW, 0, CircuitOpenError("sis"))

        assert len(queue) == 2
        assert queue.stats()["total_rejected"] == 1

    def test_drain_is_fifo(self):
        queue = DeadLetterQueue()
        for school in ("001", "002", "003"):
            queue.add(school, WINDOW, 0, CircuitOpenError("sis"))

        assert [e.school_code for e in queue.drain(2)] == ["001", "002"]
        assert [e.school_code for e in queue.pending()] == ["003"]
        assert [e.school_code for e in queue.drain()] == ["003"]
        assert len(queue) == 0

    def test_stats(self):
        queue = DeadLetterQueue(max_size=10)
        queue.add("001", WINDOW, 0, CircuitOpenError("sis"))
        queue.add("001", WINDOW, 1, CircuitOpenError("sis"))
        queue.add("002", WINDOW, 0, SISAuthenticationError("expired"))
        queue.drain(1)

        stats = queue.stats()
        assert stats["size"] == 2
        assert stats["max_size"] == 10
        assert stats["total_added"] == 3
        assert stats["total_drained"] == 1
        assert stats["by_error_type"] == {"CircuitOpenError": 1, "SISAuthenticationError": 1}

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            DeadLetterQueue(max_size=0)


class TestSyncEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = SyncEventBus()
        sync_handler = Mock()
        async_handler = AsyncMock()
        bus.on(SyncEvent.PROGRESS, sync_handler)
        bus.on(SyncEvent.PROGRESS, async_handler)

        await bus.emit(SyncEvent.PROGRESS, {"percentage": 50})

        sync_handler.assert_called_once_with({"percentage": 50})
        async_handler.assert_awaited_once_with({"percentage": 50})

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = SyncEventBus()
        handler = Mock()
        unsubscribe = bus.on(SyncEvent.COMPLETED, handler)

        unsubscribe()
        await bus.emit(SyncEvent.COMPLETED, "result")

        handler.assert_not_called()
        assert bus.handler_count(SyncEvent.COMPLETED) == 0

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        bus = SyncEventBus()
        later = Mock()
        bus.on(SyncEvent.INITIALIZED, Mock(side_effect=RuntimeError("boom")))
        bus.on(SyncEvent.INITIALIZED, later)

        await bus.emit(SyncEvent.INITIALIZED)

        later.assert_called_once_with()

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            SyncEventBus().on("finished", Mock())
