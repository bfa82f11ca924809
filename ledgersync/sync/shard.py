"""Transaction shard codec.

Transactions are partitioned by ``(ledger id, UTC calendar year of date)``
and each partition is stored as one CSV file. Leading columns carry a
readable rendering for people opening the file in a spreadsheet; only the
trailing machine columns are read back.
"""

import csv
import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from ..errors import MalformedRemoteData
from ..models import Category, Ledger, Transaction

logger = logging.getLogger(__name__)

BOM = "﻿"

HUMAN_COLUMNS = ["Time", "Category", "Amount", "Type", "Ledger"]
MACHINE_COLUMNS = [
    "id",
    "ledgerId",
    "categoryId",
    "rawType",
    "rawAmount",
    "dateTs",
    "createdAtTs",
    "updatedAtTs",
    "isDeleted",
    "note",
    "attachmentIds",
    "extra",
]
HEADER = HUMAN_COLUMNS + MACHINE_COLUMNS

ATTACHMENT_SEPARATOR = "|"

DEFAULT_TYPE_LABELS = {"expense": "Expense", "income": "Income"}
# Labels written by older clients, recognised on read
KNOWN_TYPE_LABELS = {
    "expense": "expense",
    "income": "income",
    "支出": "expense",
    "收入": "income",
}

SHARD_RE = re.compile(r"^ledger_(.+)_(\d{4})\.csv$", re.IGNORECASE)
LEGACY_RE = re.compile(r"^ledger_(.+)\.csv$", re.IGNORECASE)


def shard_year(date_ms: int) -> int:
    """Calendar year of a transaction date, in UTC."""
    return datetime.fromtimestamp(date_ms / 1000, tz=timezone.utc).year


def shard_key(transaction: Transaction) -> tuple[str, int]:
    """The shard a transaction belongs to."""
    return transaction.ledger_id, shard_year(transaction.date)


def shard_filename(scope_id: str, year: int) -> str:
    return f"ledger_{scope_id}_{year}.csv"


def legacy_filename(scope_id: str) -> str:
    return f"ledger_{scope_id}.csv"


def parse_shard_filename(filename: str) -> tuple[str, int | None] | None:
    """Split a remote file name into ``(scope_id, year)``.

    Returns:
        ``(scope_id, year)`` for a year shard, ``(scope_id, None)`` for a
        legacy unsharded file, or None if the name is not a ledger file.
    """
    if match := SHARD_RE.match(filename):
        return match.group(1), int(match.group(2))
    if match := LEGACY_RE.match(filename):
        return match.group(1), None
    return None


def partition(transactions: Iterable[Transaction]) -> dict[tuple[str, int], list[Transaction]]:
    """Group transactions by shard key. Every transaction lands in exactly one shard."""
    shards: dict[tuple[str, int], list[Transaction]] = {}
    for tx in transactions:
        shards.setdefault(shard_key(tx), []).append(tx)
    return shards


def format_amount(amount: float, currency: str = "¥") -> str:
    """Readable amount: whole numbers without decimals, otherwise two places."""
    if float(amount).is_integer():
        return f"{currency}{amount:,.0f}"
    return f"{currency}{amount:,.2f}"


def encode_extra(extra: dict) -> str:
    """Fields this version does not know, as compact JSON; empty when there are none."""
    if not extra:
        return ""
    return json.dumps(extra, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ==================== Encoding ====================


def encode_shard(
    transactions: Iterable[Transaction],
    categories: Iterable[Category] = (),
    ledgers: Iterable[Ledger] = (),
    type_labels: dict[str, str] | None = None,
    currency: str = "¥",
) -> str:
    """Serialize one shard, tombstones included.

    Rows are ordered by ``(date, id)`` so unchanged data always produces the
    same text.

    Args:
        transactions: Transactions of a single shard.
        categories: Categories used to render names in the readable columns.
        ledgers: Ledgers used to render names in the readable columns.
        type_labels: Localized labels for the readable Type column.
        currency: Currency symbol for the readable Amount column.

    Returns:
        CSV text starting with a byte-order mark.
    """
    labels = type_labels or DEFAULT_TYPE_LABELS
    category_names = {c.id: c.name for c in categories}
    ledger_names = {l.id: l.name for l in ledgers}

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(HEADER)

    for tx in sorted(transactions, key=lambda t: (t.date, t.id)):
        when = datetime.fromtimestamp(tx.date / 1000, tz=timezone.utc)
        writer.writerow(
            [
                when.strftime("%Y-%m-%d %H:%M:%S"),
                category_names.get(tx.category_id, "Unknown"),
                format_amount(tx.amount, currency),
                labels.get(tx.type, tx.type),
                ledger_names.get(tx.ledger_id, "Unknown"),
                tx.id,
                tx.ledger_id,
                tx.category_id,
                tx.type,
                repr(float(tx.amount)),
                tx.date,
                tx.created_at,
                tx.updated_at,
                "1" if tx.is_deleted else "0",
                tx.note,
                ATTACHMENT_SEPARATOR.join(tx.attachment_ids),
                encode_extra(tx.extra),
            ]
        )

    return BOM + buffer.getvalue()


# ==================== Decoding ====================


class LayoutVariant(Enum):
    """Known column layouts of ledger CSV files."""

    CURRENT = "current"
    EXPORT_V1 = "export_v1"  # older split/export files: raw amount in "Amount", note in "Note"
    POSITIONAL = "positional"  # legacy files identified by position only


@dataclass(frozen=True)
class ColumnLayout:
    """Column indexes for one file, resolved once from its header."""

    variant: LayoutVariant
    id: int
    ledger_id: int
    category_id: int
    type: int
    amount: int
    date: int
    created_at: int = -1
    updated_at: int = -1
    is_deleted: int = -1
    note: int = -1
    attachment_ids: int = -1
    extra: int = -1
    time_text: int = -1
    type_label: int = -1
    category_name: int = -1
    ledger_name: int = -1
    has_header: bool = True


def resolve_layout(header: list[str]) -> ColumnLayout:
    """Choose the column layout for a file from its first row."""
    names = [h.strip() for h in header]

    def idx(name: str) -> int:
        return names.index(name) if name in names else -1

    if "rawAmount" in names:
        return ColumnLayout(
            variant=LayoutVariant.CURRENT,
            id=idx("id"),
            ledger_id=idx("ledgerId"),
            category_id=idx("categoryId"),
            type=idx("rawType"),
            amount=idx("rawAmount"),
            date=idx("dateTs"),
            created_at=idx("createdAtTs"),
            updated_at=idx("updatedAtTs"),
            is_deleted=idx("isDeleted"),
            note=idx("note"),
            attachment_ids=idx("attachmentIds"),
            extra=idx("extra"),
        )

    if "id" in names and ("dateTs" in names or "Time" in names):
        return ColumnLayout(
            variant=LayoutVariant.EXPORT_V1,
            id=idx("id"),
            ledger_id=idx("ledgerId"),
            category_id=idx("categoryId"),
            type=idx("rawType"),
            amount=idx("Amount"),
            date=idx("dateTs"),
            created_at=idx("createdAtTs"),
            updated_at=idx("updatedAtTs"),
            is_deleted=idx("isDeleted"),
            note=idx("Note"),
            time_text=idx("Time"),
            type_label=idx("Type"),
            category_name=idx("Category"),
            ledger_name=idx("Ledger"),
        )

    # No recognisable header: the oldest files used a fixed column order
    # and their first row may be a header of arbitrary names or data.
    return ColumnLayout(
        variant=LayoutVariant.POSITIONAL,
        id=0,
        ledger_id=1,
        amount=2,
        type=3,
        category_id=4,
        date=5,
        note=6,
        created_at=7,
        updated_at=8,
        has_header=_looks_like_header(names),
    )


def _looks_like_header(row: list[str]) -> bool:
    if len(row) < 3:
        return True
    try:
        float(row[2])
    except ValueError:
        return True
    return False


def _cell(row: list[str], index: int) -> str:
    if index < 0 or index >= len(row):
        return ""
    return row[index].strip()


def _int_cell(row: list[str], index: int) -> int | None:
    text = _cell(row, index)
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


def _parse_time_text(text: str) -> int | None:
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            parsed = datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
        return int(parsed.timestamp() * 1000)
    return None


def _parse_row(row: list[str], layout: ColumnLayout, line: int) -> Transaction:
    tx_id = _cell(row, layout.id)
    if not tx_id:
        raise ValueError(f"line {line}: missing id")

    amount_text = _cell(row, layout.amount)
    try:
        amount = float(amount_text.replace(",", ""))
    except ValueError:
        raise ValueError(f"line {line}: bad amount {amount_text!r}") from None

    raw_type = _cell(row, layout.type)
    if not raw_type and layout.type_label >= 0:
        raw_type = _cell(row, layout.type_label)
    tx_type = KNOWN_TYPE_LABELS.get(raw_type, raw_type or "expense")
    if tx_type not in ("expense", "income"):
        raise ValueError(f"line {line}: unknown type {raw_type!r}")

    date = _int_cell(row, layout.date)
    if date is None and layout.time_text >= 0:
        date = _parse_time_text(_cell(row, layout.time_text))
    if date is None:
        raise ValueError(f"line {line}: missing date")

    category_id = _cell(row, layout.category_id)
    ledger_id = _cell(row, layout.ledger_id)
    created_at = _int_cell(row, layout.created_at)

    if layout.variant is not LayoutVariant.CURRENT:
        # Older exports may lack ids for category/ledger; the display name is the
        # only link left. Distinct categories sharing a name collapse into one.
        category_id = category_id or _cell(row, layout.category_name) or "unknown"
        ledger_id = ledger_id or _cell(row, layout.ledger_name)
        created_at = created_at or date

    if created_at is None:
        created_at = 0
    updated_at = _int_cell(row, layout.updated_at)
    if updated_at is None:
        updated_at = created_at

    attachments = _cell(row, layout.attachment_ids)

    return Transaction(
        id=tx_id,
        ledger_id=ledger_id,
        amount=amount,
        type=tx_type,
        category_id=category_id,
        date=date,
        note=row[layout.note] if 0 <= layout.note < len(row) else "",
        created_at=created_at,
        updated_at=updated_at,
        is_deleted=_cell(row, layout.is_deleted) == "1",
        attachment_ids=attachments.split(ATTACHMENT_SEPARATOR) if attachments else [],
        extra=_parse_extra(_cell(row, layout.extra), line),
    )


def _parse_extra(text: str, line: int) -> dict:
    if not text:
        return {}
    extra = json.loads(text)
    if not isinstance(extra, dict):
        raise ValueError(f"line {line}: extra is not an object")
    return extra


def decode_shard(text: str, filename: str | None = None) -> list[Transaction]:
    """Parse a shard or legacy file back into transactions.

    The whole file is rejected if any row fails to parse, so a partially
    understood file is never written back over the remote copy.

    Args:
        text: File content, with or without a byte-order mark.
        filename: Used in error messages only.

    Returns:
        The transactions, tombstones included.

    Raises:
        MalformedRemoteData: If the content cannot be parsed.
    """
    if text.startswith(BOM):
        text = text[1:]

    if not text.strip():
        return []

    first_line = text.split("\n", 1)[0]
    delimiter = "\t" if "\t" in first_line else ","

    try:
        rows = [row for row in csv.reader(io.StringIO(text), delimiter=delimiter) if row]
    except csv.Error as e:
        raise MalformedRemoteData(f"Unreadable CSV: {e}", file=filename) from e

    layout = resolve_layout(rows[0])
    body = rows[1:] if layout.has_header else rows
    if layout.variant is not LayoutVariant.CURRENT:
        logger.debug(f"Reading {filename or 'shard'} with {layout.variant.value} layout")

    transactions = []
    for line, row in enumerate(body, start=2 if layout.has_header else 1):
        try:
            transactions.append(_parse_row(row, layout, line))
        except ValueError as e:
            raise MalformedRemoteData(f"Bad row in {filename or 'shard'}: {e}", file=filename) from e

    return transactions
