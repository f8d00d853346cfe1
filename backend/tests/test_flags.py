"""Tests for batch flags."""

import pytest

from app.middleware.exceptions import BusinessLogicError, ResourceNotFoundError
from app.services import flags
from app.utils.audit import history

from conftest import ORG_A, ORG_B


@pytest.mark.integration
class TestFlags:
    @pytest.mark.asyncio
    async def test_set_and_read_flags(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "pest", True, reason="aphids"))
        result = await run_tx(lambda tx: flags.set_flag(tx, batch.id, "spacing_cm", 12))

        assert result == {"flags": {"pest": True, "spacing_cm": 12}}
        async with session_factory() as session:
            stored = await flags.get_flags(session, ORG_A, batch.id, include_history=True)
        assert stored["flags"] == {"pest": True, "spacing_cm": 12}
        assert [(h["key"], h["previous"], h["value"]) for h in stored["history"]] == [
            ("pest", None, True),
            ("spacing_cm", None, 12),
        ]
        assert stored["history"][0]["reason"] == "aphids"

    @pytest.mark.asyncio
    async def test_change_records_previous_value(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "pest", True))
        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "pest", False, notes="sprayed"))

        async with session_factory() as session:
            stored = await flags.get_flags(session, ORG_A, batch.id, include_history=True)
        assert stored["flags"] == {"pest": False}
        last = stored["history"][-1]
        assert (last["previous"], last["value"], last["notes"]) == (True, False, "sprayed")

    @pytest.mark.asyncio
    async def test_unchanged_value_writes_no_event(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "pest", True))
        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "pest", True))

        async with session_factory() as session:
            events = await history(session, ORG_A, batch.id, event_types={"FLAG_CHANGE"})
        assert len(events) == 1
        assert events[0].delta == 0

    @pytest.mark.asyncio
    async def test_value_type_change_is_recorded(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10)

        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "grade", 1))
        await run_tx(lambda tx: flags.set_flag(tx, batch.id, "grade", "1"))

        async with session_factory() as session:
            events = await history(session, ORG_A, batch.id, event_types={"FLAG_CHANGE"})
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_history_omitted_unless_requested(self, make_batch, session_factory):
        batch = await make_batch(quantity=10)
        async with session_factory() as session:
            assert await flags.get_flags(session, ORG_A, batch.id) == {"flags": {}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["Pest", "1st", "has space", "x" * 65])
    async def test_invalid_key(self, make_batch, run_tx, key):
        batch = await make_batch(quantity=10)
        with pytest.raises(BusinessLogicError):
            await run_tx(lambda tx: flags.set_flag(tx, batch.id, key, True))

    @pytest.mark.asyncio
    async def test_other_org_batch_not_found(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=10, org_id=ORG_B)

        with pytest.raises(ResourceNotFoundError):
            await run_tx(lambda tx: flags.set_flag(tx, batch.id, "pest", True))
        async with session_factory() as session:
            with pytest.raises(ResourceNotFoundError):
                await flags.get_flags(session, ORG_A, batch.id)
