"""Batch number generation.

Two independently namespaced schemes, recorded per batch in
`batches.number_scheme` and never mixed within one allocation:

  phase_week  {phase}-{yy}{ww}-{seq:05d}   e.g. 1-2527-00001
              phase digit: 1=propagation, 2=plugs, 3=potting
              yy/ww: ISO week-year and week of `at` in the reference zone
              seq: per (org, phase, yyww) counter, atomically incremented
  legacy      B-{yyyy}-{5 random base36}   e.g. B-2025-X7K2Q
              random, non-sequential; kept for deployments still on the
              old numbering until that migration is settled

The counter increment is a single upsert statement (see
TransactionContext.increment_counter); a failure to obtain it aborts the
enclosing ledger transaction, so no batch is ever created unnumbered.
"""

import re
import secrets
import string
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from app.config import settings
from app.middleware.exceptions import BusinessLogicError, ConflictError
from app.services.transaction import TransactionContext

PHASE_DIGITS = {
    "propagation": 1,
    "plugs": 2,
    "potting": 3,
}

SCHEME_PHASE_WEEK = "phase_week"
SCHEME_LEGACY = "legacy"

BATCH_NUMBER_RE = re.compile(r"^[1-3]-\d{4}-\d{5}$")
LEGACY_NUMBER_RE = re.compile(r"^B-\d{4}-[0-9A-Z]{5}$")

_BASE36 = string.digits + string.ascii_uppercase
_LEGACY_ATTEMPTS = 5


def phase_digit(phase: str) -> int:
    try:
        return PHASE_DIGITS[phase]
    except KeyError:
        raise BusinessLogicError(f"Unknown phase: {phase!r}", field="phase")


def iso_week(at: datetime | date, tz_name: str | None = None) -> tuple[int, int]:
    """Return (yy, ww) for `at`: two-digit ISO week-year and ISO week.

    Datetimes are converted to the reference zone first; naive datetimes
    are taken as UTC.  Plain dates are used as-is.
    """
    if isinstance(at, datetime):
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        at = at.astimezone(ZoneInfo(tz_name or settings.numbering_timezone)).date()
    iso_year, week, _ = at.isocalendar()
    return iso_year % 100, week


def format_batch_number(digit: int, yy: int, ww: int, seq: int) -> str:
    if digit not in (1, 2, 3):
        raise BusinessLogicError(f"Phase digit out of range: {digit}", field="phase")
    if not 1 <= ww <= 53:
        raise BusinessLogicError(f"ISO week out of range: {ww}", field="at")
    if not 1 <= seq <= 99999:
        raise ConflictError(
            f"Batch number sequence exhausted for week {yy:02d}{ww:02d}",
            error_code="SEQUENCE_EXHAUSTED",
        )
    number = f"{digit}-{yy:02d}{ww:02d}-{seq:05d}"
    return validate_batch_number(number)


def validate_batch_number(number: str) -> str:
    if not BATCH_NUMBER_RE.match(number):
        raise BusinessLogicError(f"Malformed batch number: {number!r}", field="batch_number")
    return number


def random_legacy_number(at: datetime | date) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"B-{at.year}-{suffix}"


async def generate_batch_number(
    tx: TransactionContext,
    phase: str,
    at: datetime | date,
) -> str:
    """Allocate the next phase/week/sequence number for the transaction's org."""
    digit = phase_digit(phase)
    yy, ww = iso_week(at)
    seq = await tx.increment_counter(digit, f"{yy:02d}{ww:02d}")
    return format_batch_number(digit, yy, ww, seq)


async def generate_legacy_number(tx: TransactionContext, at: datetime | date) -> str:
    """Allocate a random legacy number not yet used in this org."""
    for _ in range(_LEGACY_ATTEMPTS):
        number = random_legacy_number(at)
        if not await tx.batch_number_taken(number):
            return number
    raise ConflictError(
        "Could not allocate a unique legacy batch number",
        error_code="DUPLICATE_BATCH_NUMBER",
    )


async def allocate_batch_number(
    tx: TransactionContext,
    phase: str,
    at: datetime | date,
    scheme: str | None = None,
) -> tuple[str, str]:
    """Return (batch_number, scheme) using the configured scheme."""
    scheme = scheme or settings.numbering_scheme
    if scheme == SCHEME_PHASE_WEEK:
        return await generate_batch_number(tx, phase, at), scheme
    if scheme == SCHEME_LEGACY:
        phase_digit(phase)
        return await generate_legacy_number(tx, at), scheme
    raise BusinessLogicError(f"Unknown numbering scheme: {scheme!r}", field="numbering_scheme")
