"""Tests for batch number generation."""

import asyncio
from datetime import date, datetime

import pytest

from app.config import settings
from app.middleware.exceptions import BusinessLogicError, ConflictError
from app.utils.numbering import (
    LEGACY_NUMBER_RE,
    allocate_batch_number,
    format_batch_number,
    generate_batch_number,
    iso_week,
    validate_batch_number,
)


@pytest.mark.unit
class TestFormatting:
    def test_format_pads_every_field(self):
        assert format_batch_number(1, 25, 7, 3) == "1-2507-00003"

    def test_format_rejects_out_of_range_sequence(self):
        with pytest.raises(ConflictError) as exc:
            format_batch_number(1, 25, 27, 100000)
        assert exc.value.error_code == "SEQUENCE_EXHAUSTED"

    def test_format_rejects_unknown_phase_digit(self):
        with pytest.raises(BusinessLogicError):
            format_batch_number(4, 25, 27, 1)

    @pytest.mark.parametrize("number", ["1-2527-00001", "3-0101-99999"])
    def test_validate_accepts(self, number):
        assert validate_batch_number(number) == number

    @pytest.mark.parametrize("number", ["4-2527-00001", "1-252-00001", "B-2025-X7K2Q", ""])
    def test_validate_rejects(self, number):
        with pytest.raises(BusinessLogicError):
            validate_batch_number(number)


@pytest.mark.unit
class TestIsoWeek:
    def test_plain_date(self):
        assert iso_week(date(2025, 6, 30)) == (25, 27)

    def test_naive_datetime_is_utc_converted_to_reference_zone(self):
        # 23:30 UTC Sunday is 00:30 Monday in Dublin (IST, UTC+1)
        assert iso_week(datetime(2025, 6, 29, 23, 30), "Europe/Dublin") == (25, 27)
        assert iso_week(datetime(2025, 6, 29, 22, 30), "Europe/Dublin") == (25, 26)

    def test_iso_week_year_at_year_boundary(self):
        # Monday 30 Dec 2024 belongs to ISO week 1 of 2025
        assert iso_week(date(2024, 12, 30)) == (25, 1)
        # Friday 1 Jan 2021 belongs to ISO week 53 of 2020
        assert iso_week(date(2021, 1, 1)) == (20, 53)


@pytest.mark.integration
class TestAllocation:
    @pytest.mark.asyncio
    async def test_first_number_of_the_week(self, run_tx):
        number = await run_tx(
            lambda tx: generate_batch_number(tx, "propagation", date(2025, 6, 30))
        )
        assert number == "1-2527-00001"

    @pytest.mark.asyncio
    async def test_counters_are_per_phase_and_per_org(self, run_tx):
        at = date(2025, 6, 30)
        first = await run_tx(lambda tx: generate_batch_number(tx, "plugs", at))
        second = await run_tx(lambda tx: generate_batch_number(tx, "plugs", at))
        potting = await run_tx(lambda tx: generate_batch_number(tx, "potting", at))
        other_org = await run_tx(
            lambda tx: generate_batch_number(tx, "plugs", at), org_id="org-b"
        )

        assert (first, second) == ("2-2527-00001", "2-2527-00002")
        assert potting == "3-2527-00001"
        assert other_org == "2-2527-00001"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [100, 1000])
    async def test_concurrent_allocations_are_distinct_and_contiguous(self, run_tx, count):
        at = date(2025, 6, 30)
        # Caps open SQLite connections; allocations still race for the counter
        in_flight = asyncio.Semaphore(100)

        async def allocate():
            async with in_flight:
                return await run_tx(lambda tx: generate_batch_number(tx, "potting", at))

        numbers = await asyncio.gather(*[allocate() for _ in range(count)])

        assert len(set(numbers)) == count
        sequences = sorted(int(n.rsplit("-", 1)[1]) for n in numbers)
        assert sequences == list(range(1, count + 1))

    @pytest.mark.asyncio
    async def test_unknown_phase(self, run_tx):
        with pytest.raises(BusinessLogicError):
            await run_tx(lambda tx: generate_batch_number(tx, "greenhouse", date(2025, 6, 30)))

    @pytest.mark.asyncio
    async def test_legacy_scheme(self, run_tx, monkeypatch):
        monkeypatch.setattr(settings, "numbering_scheme", "legacy")
        number, scheme = await run_tx(
            lambda tx: allocate_batch_number(tx, "potting", date(2025, 6, 30))
        )
        assert scheme == "legacy"
        assert LEGACY_NUMBER_RE.match(number)
        assert number.startswith("B-2025-")

    @pytest.mark.asyncio
    async def test_check_in_records_scheme(self, make_batch):
        batch = await make_batch(phase="plugs")
        assert batch.number_scheme == "phase_week"
        assert batch.batch_number.startswith("2-")
        validate_batch_number(batch.batch_number)
