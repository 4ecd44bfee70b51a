"""Bank-agnostic CSV ingestion into :class:`~spending_insights.models.RawTransaction`.

Columns are located by scoring header names against candidate lists, so most
bank exports work without a per-bank adapter:

- date: ``date``, ``posted date``, ``transaction date``, ...
- description: ``description``, ``merchant``, ``payee``, ``memo``, ... (optional)
- amount: ``amount``, ``amt``, ``value``; or a ``debit``/``credit`` pair
  (``amount = credit - debit``).

Accepted dates: ``YYYY-MM-DD``, ``M/D/YYYY``, ``M/D/YY``, ``YYYY/MM/DD`` and ISO
datetimes (the time part is ignored). Money may carry ``$``, thousands
separators, or parentheses for negatives.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import re
from collections.abc import Iterable, Sequence
from decimal import Decimal, InvalidOperation
from os import PathLike
from pathlib import Path

from .errors import InputError
from .logging_setup import get_logger
from .models import RawTransaction
from .normalize import normalize_merchant

_logger = get_logger("spending_insights.ingest")

DATE_CANDIDATES: tuple[str, ...] = (
    "date",
    "posted date",
    "posting date",
    "transaction date",
    "trans date",
)
DESCRIPTION_CANDIDATES: tuple[str, ...] = (
    "description",
    "transaction description",
    "original description",
    "merchant",
    "merchant name",
    "payee",
    "payee name",
    "vendor",
    "vendor name",
    "narrative",
    "memo",
    "details",
)
AMOUNT_CANDIDATES: tuple[str, ...] = ("amount", "amt", "value")
DEBIT_CANDIDATES: tuple[str, ...] = ("debit", "withdrawal", "outflow")
CREDIT_CANDIDATES: tuple[str, ...] = ("credit", "deposit", "inflow")

_DATE_FORMATS: tuple[str, ...] = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d")
_WS_RE = re.compile(r"\s+")
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


def _norm_header(value: str | None) -> str:
    return _WS_RE.sub(" ", (value or "").strip().lower())


def _score(header: str, candidate: str) -> int:
    score = 0
    if header == candidate:
        score += 100
    if candidate in header:
        score += 60
    if header and header in candidate:
        score += 40
    if header.replace(" ", "") == candidate.replace(" ", ""):
        score += 80
    if header.startswith(candidate):
        score += 20
    return score


def find_column(headers: Iterable[str], candidates: Sequence[str]) -> str | None:
    """Return the header that best matches any candidate, or ``None``.

    Ties keep the earliest header.
    """

    best: str | None = None
    best_score = 0
    for h in headers:
        hn = _norm_header(h)
        for c in candidates:
            s = _score(hn, c)
            if s > best_score:
                best, best_score = h, s
    return best


def parse_date(raw: str) -> dt.date:
    v = raw.strip()
    for fmt in _DATE_FORMATS:
        try:
            return dt.datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    if "T" in v[1:]:
        return parse_date(v[: v.index("T", 1)])
    raise InputError(f"Unrecognized date format: {raw!r}")


def parse_money(raw: str | None) -> Decimal | None:
    """Parse a money cell; ``None`` for blank cells.

    >>> parse_money("($1,234.50)")
    Decimal('-1234.50')
    """

    if raw is None:
        return None
    v = raw.strip()
    if not v:
        return None
    negative = v.startswith("(") and v.endswith(")")
    v = _NON_NUMERIC_RE.sub("", v.replace("(", "").replace(")", ""))
    if not v or v == "-":
        return None
    try:
        amount = Decimal(v)
    except InvalidOperation as e:
        raise InputError(f"Unrecognized amount: {raw!r}") from e
    return -amount if negative else amount


def read_transactions_csv(text: str, *, source: str = "<csv>") -> list[RawTransaction]:
    """Parse one delimited export into raw rows (input order preserved)."""

    reader = csv.DictReader(io.StringIO(text, newline=""))
    headers = [h for h in (reader.fieldnames or []) if h is not None]
    if not headers:
        raise InputError(f"{source}: CSV appears to have no header row")

    date_col = find_column(headers, DATE_CANDIDATES)
    desc_col = find_column(headers, DESCRIPTION_CANDIDATES)
    amount_col = find_column(headers, AMOUNT_CANDIDATES)
    debit_col = find_column(headers, DEBIT_CANDIDATES)
    credit_col = find_column(headers, CREDIT_CANDIDATES)

    if date_col is None:
        raise InputError(f"{source}: CSV missing date column")
    if amount_col is None and debit_col is None and credit_col is None:
        raise InputError(f"{source}: CSV missing amount column")

    rows: list[RawTransaction] = []
    for line_no, record in enumerate(reader, start=2):
        date_raw = (record.get(date_col) or "").strip()
        if not date_raw:
            continue
        try:
            date = parse_date(date_raw)
            if amount_col is not None:
                amount = parse_money(record.get(amount_col))
            else:
                debit = parse_money(record.get(debit_col) if debit_col else None)
                credit = parse_money(record.get(credit_col) if credit_col else None)
                amount = abs(credit or Decimal(0)) - abs(debit or Decimal(0))
        except InputError as e:
            raise InputError(f"{source}, line {line_no}: {e}") from e
        if amount is None:
            continue
        description = (record.get(desc_col) or "").strip() if desc_col else ""
        rows.append(RawTransaction(date=date, description=description, amount=amount))

    _logger.info(
        "ingest:parsed source=%s rows=%d date_col=%r amount_col=%r",
        source,
        len(rows),
        date_col,
        amount_col or f"{credit_col}-{debit_col}",
    )
    return rows


def read_transactions_file(path: str | PathLike[str]) -> list[RawTransaction]:
    p = Path(path)
    # utf-8-sig drops a leading BOM that some bank exports include.
    text = p.read_text(encoding="utf-8-sig")
    return read_transactions_csv(text, source=p.name)


def merge_transactions(batches: Iterable[Iterable[RawTransaction]]) -> list[RawTransaction]:
    """Combine uploads, sorted by (date, description), dropping duplicates.

    Two rows are duplicates when date, amount and normalized merchant
    (case-insensitive) match; the first in sorted order wins.
    """

    combined = sorted(
        (row for batch in batches for row in batch),
        key=lambda r: (r.date, r.description),
    )
    seen: set[tuple[dt.date, Decimal, str]] = set()
    out: list[RawTransaction] = []
    for row in combined:
        key = (row.date, row.amount, normalize_merchant(row.description).casefold())
        if key in seen:
            continue
        seen.add(key)
        out.append(row)
    if len(out) != len(combined):
        _logger.info("ingest:deduplicated kept=%d dropped=%d", len(out), len(combined) - len(out))
    return out


def filter_to_month(rows: Iterable[RawTransaction], month: str | None) -> list[RawTransaction]:
    """Keep rows dated within ``month`` (``"YYYY-MM"``); all rows when blank."""

    if month is None or not month.strip():
        return list(rows)
    m = month.strip()
    if not _MONTH_RE.match(m):
        raise InputError(f"Month must look like YYYY-MM; got {month!r}")
    year, mon = int(m[:4]), int(m[5:])
    if not 1 <= mon <= 12:
        raise InputError(f"Month must look like YYYY-MM; got {month!r}")
    start = dt.date(year, mon, 1)
    end = dt.date(year + 1, 1, 1) if mon == 12 else dt.date(year, mon + 1, 1)
    return [r for r in rows if start <= r.date < end]


def filename_label(names: Iterable[str | None]) -> str:
    """Display label for a set of uploaded file names."""

    present = [n for n in names if n and n.strip()]
    if not present:
        return "uploaded files"
    if len(present) <= 3:
        return ", ".join(present)
    return f"{len(present)} files"
