"""Tests for ledger mutations: move/split, transplant, dump, adjust, archive, status.

After every mutation the touched batches must still reconcile:
initial_quantity plus the deltas of non-creation events equals quantity.
"""

import asyncio

import pytest
from sqlalchemy import select

from app.config import settings
from app.middleware.exceptions import (
    BusinessLogicError,
    ConflictError,
    ResourceNotFoundError,
)
from app.models.tenant.batch import Batch
from app.models.tenant.batch_ancestry import BatchAncestry
from app.schemas.batch import (
    AdjustRequest,
    DumpRequest,
    MoveRequest,
    NewBatchSpec,
    TransplantRequest,
    TransplantSource,
)
from app.services import ledger
from app.services.reconciliation import reconcile_batch
from app.utils.audit import history

from conftest import ORG_A, ORG_B


# ── Helpers ──────────────────────────────────────────────────

async def _load(session_factory, batch_id: str) -> Batch:
    async with session_factory() as session:
        return (
            await session.execute(select(Batch).where(Batch.id == batch_id))
        ).scalar_one()


async def _events(session_factory, batch_id: str, org_id: str = ORG_A):
    async with session_factory() as session:
        return await history(session, org_id, batch_id)


async def _assert_balanced(session_factory, *batch_ids: str):
    async with session_factory() as session:
        for batch_id in batch_ids:
            result = await reconcile_batch(session, ORG_A, batch_id)
            assert result["balanced"], result


def _transplant(sources, quantity=50, archive_remainder=False, phase="potting"):
    return TransplantRequest(
        sources=[TransplantSource(batch_id=b, units_used=u) for b, u in sources],
        new_batch=NewBatchSpec(phase=phase, quantity=quantity, location_id="L9"),
        archive_remainder=archive_remainder,
    )


# ── Check-in ─────────────────────────────────────────────────

@pytest.mark.integration
class TestCheckIn:
    @pytest.mark.asyncio
    async def test_check_in_creates_batch_and_event(self, make_batch, session_factory):
        batch = await make_batch(quantity=120, phase="propagation")

        assert batch.quantity == batch.initial_quantity == 120
        assert batch.status == "growing"
        assert batch.batch_number.startswith("1-")

        events = await _events(session_factory, batch.id)
        assert [e.type for e in events] == ["CHECKIN"]
        assert events[0].delta == 120
        assert events[0].by_user_id == "user-1"
        await _assert_balanced(session_factory, batch.id)


# ── Move / split ─────────────────────────────────────────────

@pytest.mark.integration
class TestMove:
    @pytest.mark.asyncio
    async def test_full_move_changes_location_only(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=100)

        result = await run_tx(
            lambda tx: ledger.move_batch(tx, batch.id, MoveRequest(destination="L2"))
        )

        assert result == {"movedAll": True, "newBatchId": None}
        stored = await _load(session_factory, batch.id)
        assert stored.location_id == "L2"
        assert stored.quantity == 100
        events = await _events(session_factory, batch.id)
        assert events[-1].type == "MOVE"
        assert events[-1].payload["from_location_id"] == "L1"
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_explicit_full_quantity_is_a_full_move(self, make_batch, run_tx):
        batch = await make_batch(quantity=100)
        result = await run_tx(
            lambda tx: ledger.move_batch(tx, batch.id, MoveRequest(destination="L2", quantity=100))
        )
        assert result["movedAll"] is True

    @pytest.mark.asyncio
    async def test_partial_move_splits_and_conserves(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=100)

        result = await run_tx(
            lambda tx: ledger.move_batch(
                tx, batch.id, MoveRequest(destination="L2", quantity=40, spaced=True)
            )
        )

        assert result["movedAll"] is False
        parent = await _load(session_factory, batch.id)
        child = await _load(session_factory, result["newBatchId"])
        assert parent.quantity == 60
        assert child.quantity == child.initial_quantity == 40
        assert parent.quantity + child.quantity == 100
        assert child.location_id == "L2"
        assert child.transplanted_from == parent.id
        assert child.batch_number != parent.batch_number

        async with session_factory() as session:
            edge = (await session.execute(select(BatchAncestry))).scalar_one()
        assert (edge.parent_batch_id, edge.child_batch_id) == (parent.id, child.id)
        assert edge.proportion == pytest.approx(0.4)
        assert edge.kind == "split"

        parent_events = await _events(session_factory, parent.id)
        child_events = await _events(session_factory, child.id)
        assert parent_events[-1].type == "MOVE_PARTIAL"
        assert parent_events[-1].delta == -40
        assert [e.type for e in child_events] == ["MOVE_IN"]
        await _assert_balanced(session_factory, parent.id, child.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -5, 101])
    async def test_out_of_range_quantity_rejected(self, make_batch, run_tx, session_factory, quantity):
        batch = await make_batch(quantity=100)

        with pytest.raises(BusinessLogicError):
            await run_tx(
                lambda tx: ledger.move_batch(
                    tx, batch.id, MoveRequest(destination="L2", quantity=quantity)
                )
            )

        stored = await _load(session_factory, batch.id)
        assert stored.quantity == 100
        assert stored.location_id == "L1"

    @pytest.mark.asyncio
    async def test_move_of_other_orgs_batch_is_not_found(self, make_batch, run_tx):
        batch = await make_batch(quantity=100, org_id=ORG_B)
        with pytest.raises(ResourceNotFoundError):
            await run_tx(lambda tx: ledger.move_batch(tx, batch.id, MoveRequest(destination="L2")))


# ── Transplant ───────────────────────────────────────────────

@pytest.mark.integration
class TestTransplant:
    @pytest.mark.asyncio
    async def test_single_source(self, make_batch, run_tx, session_factory):
        source = await make_batch(quantity=100)

        result = await run_tx(lambda tx: ledger.transplant(tx, _transplant([(source.id, 30)])))

        new_batch = await _load(session_factory, result["id"])
        assert result["batchNumber"] == new_batch.batch_number
        assert new_batch.batch_number.startswith("3-")
        assert new_batch.quantity == 50
        assert new_batch.transplanted_from == source.id
        assert (await _load(session_factory, source.id)).quantity == 70

        used = (await _events(session_factory, source.id))[-1]
        assert used.type == "TRANSPLANT_USED"
        assert used.payload["units_used"] == 30
        assert used.payload["units_consumed"] == 30
        assert used.delta == -30
        await _assert_balanced(session_factory, source.id, new_batch.id)

    @pytest.mark.asyncio
    async def test_over_consumption_is_clamped(self, make_batch, run_tx, session_factory):
        source = await make_batch(quantity=20)

        await run_tx(lambda tx: ledger.transplant(tx, _transplant([(source.id, 50)])))

        assert (await _load(session_factory, source.id)).quantity == 0
        used = (await _events(session_factory, source.id))[-1]
        assert used.payload["units_used"] == 50
        assert used.payload["units_consumed"] == 20
        assert used.delta == -20
        await _assert_balanced(session_factory, source.id)

    @pytest.mark.asyncio
    async def test_over_consumption_rejected_under_reject_policy(
        self, make_batch, run_tx, session_factory, monkeypatch
    ):
        monkeypatch.setattr(settings, "transplant_overdraw_policy", "reject")
        source = await make_batch(quantity=20)

        with pytest.raises(ConflictError) as exc:
            await run_tx(lambda tx: ledger.transplant(tx, _transplant([(source.id, 50)])))

        assert exc.value.error_code == "INSUFFICIENT_QUANTITY"
        assert (await _load(session_factory, source.id)).quantity == 20
        async with session_factory() as session:
            count = len((await session.execute(select(Batch.id))).all())
        assert count == 1

    @pytest.mark.asyncio
    async def test_two_sources_get_weighted_edges(self, make_batch, run_tx, session_factory):
        first = await make_batch(quantity=100)
        second = await make_batch(quantity=100)

        result = await run_tx(
            lambda tx: ledger.transplant(tx, _transplant([(first.id, 30), (second.id, 10)]))
        )

        async with session_factory() as session:
            edges = (
                await session.execute(
                    select(BatchAncestry).where(BatchAncestry.child_batch_id == result["id"])
                )
            ).scalars().all()
        proportions = {e.parent_batch_id: e.proportion for e in edges}
        assert proportions == {
            first.id: pytest.approx(0.75),
            second.id: pytest.approx(0.25),
        }
        assert all(e.kind == "transplant" for e in edges)
        assert (await _load(session_factory, first.id)).quantity == 70
        assert (await _load(session_factory, second.id)).quantity == 90
        await _assert_balanced(session_factory, first.id, second.id, result["id"])

    @pytest.mark.asyncio
    async def test_archive_remainder_keeps_remaining_quantity(
        self, make_batch, run_tx, session_factory
    ):
        source = await make_batch(quantity=100)

        await run_tx(
            lambda tx: ledger.transplant(
                tx, _transplant([(source.id, 60)], archive_remainder=True)
            )
        )

        stored = await _load(session_factory, source.id)
        assert stored.status == "archived"
        assert stored.archived_at is not None
        assert stored.quantity == 40
        archive_event = (await _events(session_factory, source.id))[-1]
        assert archive_event.type == "ARCHIVE"
        assert archive_event.delta == 0
        await _assert_balanced(session_factory, source.id)

    @pytest.mark.asyncio
    async def test_archived_source_rejected(self, make_batch, run_tx, session_factory):
        source = await make_batch(quantity=100)
        await run_tx(lambda tx: ledger.archive(tx, source.id))

        with pytest.raises(ConflictError) as exc:
            await run_tx(lambda tx: ledger.transplant(tx, _transplant([(source.id, 10)])))
        assert exc.value.error_code == "BATCH_ARCHIVED"

    @pytest.mark.asyncio
    async def test_failed_second_source_rolls_back_first(
        self, make_batch, run_tx, session_factory
    ):
        first = await make_batch(quantity=100)

        with pytest.raises(ResourceNotFoundError):
            await run_tx(
                lambda tx: ledger.transplant(
                    tx, _transplant([(first.id, 30), ("missing-batch", 10)])
                )
            )

        assert (await _load(session_factory, first.id)).quantity == 100
        assert [e.type for e in await _events(session_factory, first.id)] == ["CHECKIN"]

    @pytest.mark.unit
    def test_duplicate_sources_rejected(self):
        with pytest.raises(ValueError):
            _transplant([("b1", 10), ("b1", 5)])


# ── Dump ─────────────────────────────────────────────────────

@pytest.mark.integration
class TestDump:
    @pytest.mark.asyncio
    async def test_dump_sequence_and_auto_archive(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=100)

        def dump(units):
            return run_tx(
                lambda tx: ledger.dump(tx, batch.id, DumpRequest(units=units, reason="pest"))
            )

        assert await dump(30) == {"new_quantity": 70, "archived": False}

        with pytest.raises(ConflictError) as exc:
            await dump(80)
        assert exc.value.error_code == "INSUFFICIENT_QUANTITY"
        assert exc.value.details["available"] == 70

        assert await dump(70) == {"new_quantity": 0, "archived": True}
        stored = await _load(session_factory, batch.id)
        assert stored.status == "archived"
        assert stored.quantity == 0

        with pytest.raises(ConflictError) as exc:
            await dump(1)
        assert exc.value.error_code == "BATCH_ARCHIVED"

        types = [e.type for e in await _events(session_factory, batch.id)]
        assert types == ["CHECKIN", "DUMP", "DUMP", "ARCHIVE"]
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_dump_to_zero_without_archive(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        result = await run_tx(
            lambda tx: ledger.dump(
                tx, batch.id, DumpRequest(units=10, reason="frost", archive_if_empty=False)
            )
        )

        assert result == {"new_quantity": 0, "archived": False}
        assert (await _load(session_factory, batch.id)).status == "growing"

    @pytest.mark.asyncio
    async def test_concurrent_dumps_never_overdraw(self, make_batch, run_tx, session_factory):
        """Three dumps of 40 race for 100 units: two win, one is refused."""
        batch = await make_batch(quantity=100)

        results = await asyncio.gather(
            *(
                run_tx(lambda tx: ledger.dump(tx, batch.id, DumpRequest(units=40, reason="pest")))
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, dict)]
        refused = [r for r in results if isinstance(r, ConflictError)]
        assert len(succeeded) == 2
        assert len(refused) == 1
        assert refused[0].error_code == "INSUFFICIENT_QUANTITY"
        assert sorted(r["new_quantity"] for r in succeeded) == [20, 60]

        assert (await _load(session_factory, batch.id)).quantity == 20
        types = [e.type for e in await _events(session_factory, batch.id)]
        assert types.count("DUMP") == 2
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_emptying_a_sold_batch_keeps_it_sold(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "ready"))
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "sold"))

        result = await run_tx(
            lambda tx: ledger.dump(tx, batch.id, DumpRequest(units=10, reason="damaged"))
        )

        assert result == {"new_quantity": 0, "archived": False}
        stored = await _load(session_factory, batch.id)
        assert (stored.status, stored.quantity) == ("sold", 0)

    @pytest.mark.asyncio
    async def test_dump_missing_batch(self, run_tx):
        with pytest.raises(ResourceNotFoundError):
            await run_tx(
                lambda tx: ledger.dump(tx, "missing", DumpRequest(units=1, reason="pest"))
            )

    @pytest.mark.unit
    def test_non_positive_units_rejected(self):
        with pytest.raises(ValueError):
            DumpRequest(units=0, reason="pest")


# ── Archive ──────────────────────────────────────────────────

@pytest.mark.integration
class TestArchive:
    @pytest.mark.asyncio
    async def test_archive_zeroes_and_is_idempotent(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=35)

        await run_tx(lambda tx: ledger.archive(tx, batch.id, reason="sold off-book"))
        await run_tx(lambda tx: ledger.archive(tx, batch.id))

        stored = await _load(session_factory, batch.id)
        assert (stored.status, stored.quantity) == ("archived", 0)
        events = await _events(session_factory, batch.id)
        assert [e.type for e in events] == ["CHECKIN", "ARCHIVE"]
        assert events[-1].delta == -35
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_archive_other_org_is_not_found(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=35, org_id=ORG_B)

        with pytest.raises(ResourceNotFoundError):
            await run_tx(lambda tx: ledger.archive(tx, batch.id))
        assert (await _load(session_factory, batch.id)).quantity == 35

    @pytest.mark.asyncio
    async def test_sold_batch_cannot_be_archived(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "ready"))
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "sold"))

        with pytest.raises(ConflictError) as exc:
            await run_tx(lambda tx: ledger.archive(tx, batch.id))
        assert exc.value.error_code == "INVALID_TRANSITION"

        stored = await _load(session_factory, batch.id)
        assert (stored.status, stored.quantity) == ("sold", 10)
        assert "ARCHIVE" not in [e.type for e in await _events(session_factory, batch.id)]

    @pytest.mark.asyncio
    async def test_archive_remainder_refuses_sold_source(self, make_batch, run_tx, session_factory):
        source = await make_batch(quantity=100)
        await run_tx(lambda tx: ledger.set_status(tx, source.id, "ready"))
        await run_tx(lambda tx: ledger.set_status(tx, source.id, "sold"))

        with pytest.raises(ConflictError) as exc:
            await run_tx(
                lambda tx: ledger.transplant(
                    tx, _transplant([(source.id, 60)], archive_remainder=True)
                )
            )
        assert exc.value.error_code == "INVALID_TRANSITION"

        stored = await _load(session_factory, source.id)
        assert (stored.status, stored.quantity) == ("sold", 100)


# ── Adjust ───────────────────────────────────────────────────

@pytest.mark.integration
class TestAdjust:
    @pytest.mark.asyncio
    async def test_increase_then_decrease(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=50)

        def adjust(quantity):
            return run_tx(
                lambda tx: ledger.adjust(
                    tx, batch.id, AdjustRequest(quantity=quantity, reason="count_correction")
                )
            )

        assert await adjust(25) == {"previous_quantity": 50, "new_quantity": 75}
        assert await adjust(-15) == {"previous_quantity": 75, "new_quantity": 60}

        assert (await _load(session_factory, batch.id)).quantity == 60
        events = [e for e in await _events(session_factory, batch.id) if e.type == "ADJUSTMENT"]
        assert [e.delta for e in events] == [25, -15]
        assert events[0].payload["previous_quantity"] == 50
        assert events[0].payload["new_quantity"] == 75
        assert events[1].payload["reason"] == "count_correction"
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_below_zero_rejected(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        with pytest.raises(ConflictError) as exc:
            await run_tx(
                lambda tx: ledger.adjust(tx, batch.id, AdjustRequest(quantity=-11, reason="recount"))
            )
        assert exc.value.error_code == "INSUFFICIENT_QUANTITY"
        assert exc.value.details["available"] == 10

        assert (await _load(session_factory, batch.id)).quantity == 10
        assert [e.type for e in await _events(session_factory, batch.id)] == ["CHECKIN"]
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_down_to_exactly_zero(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        result = await run_tx(
            lambda tx: ledger.adjust(tx, batch.id, AdjustRequest(quantity=-10, reason="recount"))
        )

        assert result == {"previous_quantity": 10, "new_quantity": 0}
        assert (await _load(session_factory, batch.id)).status == "growing"
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_archived_batch_rejected(self, make_batch, run_tx):
        batch = await make_batch(quantity=10)
        await run_tx(lambda tx: ledger.archive(tx, batch.id))

        with pytest.raises(ConflictError) as exc:
            await run_tx(
                lambda tx: ledger.adjust(tx, batch.id, AdjustRequest(quantity=5, reason="found"))
            )
        assert exc.value.error_code == "BATCH_ARCHIVED"

    @pytest.mark.asyncio
    async def test_other_org_is_not_found(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10, org_id=ORG_B)

        with pytest.raises(ResourceNotFoundError):
            await run_tx(
                lambda tx: ledger.adjust(tx, batch.id, AdjustRequest(quantity=5, reason="found"))
            )
        assert (await _load(session_factory, batch.id)).quantity == 10

    @pytest.mark.unit
    def test_zero_adjustment_rejected(self):
        with pytest.raises(ValueError):
            AdjustRequest(quantity=0, reason="recount")


# ── Status ───────────────────────────────────────────────────

@pytest.mark.integration
class TestStatus:
    @pytest.mark.asyncio
    async def test_forward_transitions(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "ready"))
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "sold", note="order 42"))

        assert (await _load(session_factory, batch.id)).status == "sold"
        changes = [
            e.payload for e in await _events(session_factory, batch.id)
            if e.type == "STATUS_CHANGE"
        ]
        assert [(c["from"], c["to"]) for c in changes] == [("growing", "ready"), ("ready", "sold")]

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "growing"))
        assert [e.type for e in await _events(session_factory, batch.id)] == ["CHECKIN"]

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, make_batch, run_tx):
        batch = await make_batch(quantity=10)
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "ready"))
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "sold"))

        with pytest.raises(ConflictError) as exc:
            await run_tx(lambda tx: ledger.set_status(tx, batch.id, "growing"))
        assert exc.value.error_code == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_unknown_status(self, make_batch, run_tx):
        batch = await make_batch(quantity=10)
        with pytest.raises(BusinessLogicError):
            await run_tx(lambda tx: ledger.set_status(tx, batch.id, "composted"))

    @pytest.mark.asyncio
    async def test_archived_via_status_zeroes_quantity(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "archived"))

        stored = await _load(session_factory, batch.id)
        assert (stored.status, stored.quantity) == ("archived", 0)
        await _assert_balanced(session_factory, batch.id)

    @pytest.mark.asyncio
    async def test_archived_batch_rejects_status_change(self, make_batch, run_tx):
        batch = await make_batch(quantity=10)
        await run_tx(lambda tx: ledger.archive(tx, batch.id))

        with pytest.raises(ConflictError) as exc:
            await run_tx(lambda tx: ledger.set_status(tx, batch.id, "ready"))
        assert exc.value.error_code == "BATCH_ARCHIVED"
