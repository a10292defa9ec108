"""
Tests for AggregateStore.

The store is the only writer of customer_aggregates; every write is guarded by
the per-customer last applied sequence.
"""

from decimal import Decimal

import pytest

from app.errors import NotFound
from app.store import AggregateStore


class TestGet:

    @pytest.mark.asyncio
    async def test_missing_customer_defaults_to_zero(self, store):
        assert await store.get("nobody") == Decimal("0.00")
        assert await store.get_record("nobody") is None

    @pytest.mark.asyncio
    async def test_record_fields(self, store):
        await store.apply_delta("C1", Decimal("12.34"), 7)
        record = await store.get_record("C1")

        assert record.customer_id == "C1"
        assert record.total_spent == Decimal("12.34")
        assert record.last_applied_sequence == 7
        assert record.updated_at is not None


class TestApplyDelta:

    @pytest.mark.asyncio
    async def test_deltas_accumulate(self, store):
        assert await store.apply_delta("C1", Decimal("100.00"), 1)
        assert await store.apply_delta("C1", Decimal("50.00"), 2)
        assert await store.apply_delta("C1", Decimal("-40.00"), 3)

        assert await store.get("C1") == Decimal("110.00")

    @pytest.mark.asyncio
    async def test_duplicate_sequence_is_noop(self, store):
        assert await store.apply_delta("C1", Decimal("100.00"), 1)
        assert not await store.apply_delta("C1", Decimal("100.00"), 1)

        assert await store.get("C1") == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_out_of_order_sequence_is_noop(self, store):
        """Sequence 5 then sequence 3 leaves the sequence-5 result."""
        await store.apply_delta("C1", Decimal("20.00"), 5)
        assert not await store.apply_delta("C1", Decimal("7.00"), 3)

        record = await store.get_record("C1")
        assert record.total_spent == Decimal("20.00")
        assert record.last_applied_sequence == 5

    @pytest.mark.asyncio
    async def test_customers_are_independent(self, store):
        await store.apply_delta("C1", Decimal("10.00"), 5)
        assert await store.apply_delta("C2", Decimal("3.00"), 2)

        assert await store.get("C1") == Decimal("10.00")
        assert await store.get("C2") == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_cent_arithmetic_stays_exact(self, store):
        for seq in range(1, 11):
            await store.apply_delta("C1", Decimal("0.10"), seq)
        await store.apply_delta("C1", Decimal("0.20"), 11)

        assert await store.get("C1") == Decimal("1.20")


class TestSet:

    @pytest.mark.asyncio
    async def test_set_overwrites(self, store):
        await store.apply_delta("C1", Decimal("10.00"), 1)
        assert await store.set("C1", Decimal("150.00"), 4)

        record = await store.get_record("C1")
        assert record.total_spent == Decimal("150.00")
        assert record.last_applied_sequence == 4

    @pytest.mark.asyncio
    async def test_stale_snapshot_does_not_regress_newer_event(self, store):
        """An event at sequence 10 wins over a batch snapshot taken at sequence 8."""
        await store.set("C", Decimal("100.00"), 7)
        await store.apply_delta("C", Decimal("50.00"), 10)

        assert not await store.set("C", Decimal("150.00"), 8)

        record = await store.get_record("C")
        assert record.total_spent == Decimal("150.00")
        assert record.last_applied_sequence == 10

    @pytest.mark.asyncio
    async def test_same_sequence_snapshot_is_authoritative(self, store):
        await store.apply_delta("C1", Decimal("999.00"), 6)
        assert await store.set("C1", Decimal("40.00"), 6)

        assert await store.get("C1") == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_event_after_snapshot_applies_on_top(self, store):
        await store.set("C1", Decimal("40.00"), 6)
        assert await store.apply_delta("C1", Decimal("5.00"), 7)

        assert await store.get("C1") == Decimal("45.00")


class TestRequireExisting:

    @pytest.mark.asyncio
    async def test_missing_record_raises_not_found(self, session_factory):
        strict = AggregateStore(session_factory, require_existing=True)

        with pytest.raises(NotFound):
            await strict.apply_delta("C1", Decimal("1.00"), 1)
        with pytest.raises(NotFound):
            await strict.set("C1", Decimal("1.00"), 1)

    @pytest.mark.asyncio
    async def test_existing_record_is_updated(self, session_factory, store):
        await store.set("C1", Decimal("5.00"), 1)
        strict = AggregateStore(session_factory, require_existing=True)

        assert await strict.apply_delta("C1", Decimal("1.00"), 2)
        assert not await strict.apply_delta("C1", Decimal("1.00"), 2)
        assert await strict.get("C1") == Decimal("6.00")
