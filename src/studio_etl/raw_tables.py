"""studio_etl.raw_tables

Raw records from the studio platform's relational export, and the reader for
a directory of extracted export CSVs.

The export is a set of normalized tables keyed by opaque string IDs with
snake_case headers.  Small reference tables are loaded whole; the large
tables (orders, registrations, refunds) are streamed in bounded batches so a
run never holds more than one batch of them in memory.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, TypeVar

from studio_etl.normalize import parse_bool, parse_int, parse_money, trim

log = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ExportFileError(Exception):
    """Raised when an export CSV is present but structurally unusable."""


# ---------------------------------------------------------------------------
# Raw entities
# ---------------------------------------------------------------------------

def _s(row: dict[str, str], key: str) -> str:
    return trim(row.get(key)) or ""


def _opt(row: dict[str, str], key: str) -> str | None:
    return trim(row.get(key))


@dataclass(frozen=True)
class Membership:
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    role: str = ""
    created_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Membership:
        return cls(
            id=_s(row, "id"),
            first_name=_s(row, "first_name"),
            last_name=_s(row, "last_name"),
            email=_s(row, "email"),
            role=_s(row, "role"),
            created_at=_s(row, "created_at"),
        )


@dataclass(frozen=True)
class Pass:
    id: str
    membership_id: str | None = None
    name: str = ""
    state: str = ""
    price: Decimal = Decimal("0")
    auto_renew_unlimited: bool = False
    auto_renew_period_limit: int = 0
    pass_type_id: str | None = None
    created_at: str = ""
    canceled_at: str | None = None

    @property
    def is_auto_renew(self) -> bool:
        return self.auto_renew_unlimited or self.auto_renew_period_limit > 0

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Pass:
        return cls(
            id=_s(row, "id"),
            membership_id=_opt(row, "membership_id"),
            name=_s(row, "name"),
            state=_s(row, "state"),
            price=parse_money(row.get("price")),
            auto_renew_unlimited=parse_bool(row.get("auto_renew_unlimited")),
            auto_renew_period_limit=parse_int(row.get("auto_renew_period_limit")),
            pass_type_id=_opt(row, "pass_type_id"),
            created_at=_s(row, "created_at"),
            canceled_at=_opt(row, "canceled_at"),
        )


@dataclass(frozen=True)
class Order:
    id: str
    membership_id: str | None = None
    event_id: str | None = None
    subscription_pass_id: str | None = None
    paid_with_pass_id: str | None = None
    payment_method: str = ""
    total: Decimal = Decimal("0")
    fee_union_total: Decimal = Decimal("0")
    fee_payment_total: Decimal = Decimal("0")
    fee_outside_total: Decimal = Decimal("0")
    state: str = ""
    created_at: str = ""
    completed_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Order:
        return cls(
            id=_s(row, "id"),
            membership_id=_opt(row, "membership_id"),
            event_id=_opt(row, "event_id"),
            subscription_pass_id=_opt(row, "subscription_pass_id"),
            paid_with_pass_id=_opt(row, "paid_with_pass_id"),
            payment_method=_s(row, "payment_method"),
            total=parse_money(row.get("total")),
            fee_union_total=parse_money(row.get("fee_union_total")),
            fee_payment_total=parse_money(row.get("fee_payment_total")),
            fee_outside_total=parse_money(row.get("fee_outside_total")),
            state=_s(row, "state"),
            created_at=_s(row, "created_at"),
            completed_at=_opt(row, "completed_at"),
        )


@dataclass(frozen=True)
class Registration:
    id: str
    pass_id: str | None = None
    performance_id: str | None = None
    attended_at: str | None = None
    state: str = ""
    revenue: Decimal = Decimal("0")
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Registration:
        return cls(
            id=_s(row, "id"),
            pass_id=_opt(row, "pass_id"),
            performance_id=_opt(row, "performance_id"),
            attended_at=_opt(row, "attended_at"),
            state=_s(row, "state"),
            revenue=parse_money(row.get("revenue")),
            created_at=_opt(row, "created_at"),
        )


@dataclass(frozen=True)
class Performance:
    id: str
    event_id: str | None = None
    location_id: str | None = None
    teacher_membership_id: str | None = None
    starts_at: str = ""
    name: str = ""

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Performance:
        return cls(
            id=_s(row, "id"),
            event_id=_opt(row, "event_id"),
            location_id=_opt(row, "location_id"),
            teacher_membership_id=_opt(row, "teacher_membership_id"),
            starts_at=_s(row, "starts_at"),
            name=_s(row, "name"),
        )


@dataclass(frozen=True)
class Event:
    id: str
    name: str = ""
    revenue_category_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Event:
        return cls(
            id=_s(row, "id"),
            name=_s(row, "name"),
            revenue_category_id=_opt(row, "revenue_category_id"),
        )


@dataclass(frozen=True)
class Location:
    id: str
    name: str = ""

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Location:
        return cls(id=_s(row, "id"), name=_s(row, "name"))


@dataclass(frozen=True)
class PassType:
    id: str
    name: str = ""
    revenue_category_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, str]) -> PassType:
        return cls(
            id=_s(row, "id"),
            name=_s(row, "name"),
            revenue_category_id=_opt(row, "revenue_category_id"),
        )


@dataclass(frozen=True)
class RevenueCategoryLookup:
    id: str
    name: str = ""

    @classmethod
    def from_row(cls, row: dict[str, str]) -> RevenueCategoryLookup:
        return cls(id=_s(row, "id"), name=_s(row, "name"))


@dataclass(frozen=True)
class Refund:
    id: str
    order_id: str | None = None
    revenue_category_id: str | None = None
    amount_refunded: Decimal = Decimal("0")
    fee_union_total_refunded: Decimal = Decimal("0")
    created_at: str = ""
    state: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, str]) -> Refund:
        return cls(
            id=_s(row, "id"),
            order_id=_opt(row, "order_id"),
            revenue_category_id=_opt(row, "revenue_category_id"),
            amount_refunded=parse_money(row.get("amount_refunded")),
            fee_union_total_refunded=parse_money(row.get("fee_union_total_refunded")),
            created_at=_s(row, "created_at"),
            state=_opt(row, "state"),
        )


@dataclass
class ReferenceTables:
    """The small tables the lookup index is built from."""

    memberships: list[Membership]
    passes: list[Pass]
    performances: list[Performance]
    events: list[Event]
    locations: list[Location]
    pass_types: list[PassType]
    revenue_categories: list[RevenueCategoryLookup]


# ---------------------------------------------------------------------------
# CSV reading
# ---------------------------------------------------------------------------

# table name → (file stem, record parser)
TABLES: dict[str, tuple[str, Callable[[dict[str, str]], Any]]] = {
    "memberships":        ("memberships", Membership.from_row),
    "passes":             ("passes", Pass.from_row),
    "performances":       ("performances", Performance.from_row),
    "events":             ("events", Event.from_row),
    "locations":          ("locations", Location.from_row),
    "pass_types":         ("pass_types", PassType.from_row),
    "revenue_categories": ("revenue_categories", RevenueCategoryLookup.from_row),
    "orders":             ("orders", Order.from_row),
    "registrations":      ("registrations", Registration.from_row),
    "refunds":            ("refunds", Refund.from_row),
}


def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped and lower-cased."""
    return {(k or "").strip().lower(): v for k, v in raw.items()}


def iter_records(
    csv_path: Path,
    parse: Callable[[dict[str, str]], T],
) -> Iterator[T]:
    """Stream parsed records from one export CSV.

    Rows with a blank ``id`` are dropped with a count in the log; a file
    without an ``id`` column raises ExportFileError before any row is read.
    """
    blank_ids = 0
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        header_set = {(k or "").strip().lower() for k in (reader.fieldnames or [])}
        if "id" not in header_set:
            raise ExportFileError(f"{csv_path.name}: missing required 'id' column")
        for raw_row in reader:
            row = normalize_headers(raw_row)
            if not trim(row.get("id")):
                blank_ids += 1
                continue
            yield parse(row)
    if blank_ids:
        log.warning("%s: dropped %d rows with a blank id", csv_path.name, blank_ids)


def iter_batches(records: Iterator[T], batch_size: int) -> Iterator[list[T]]:
    """Group a record stream into lists of at most batch_size."""
    batch: list[T] = []
    for record in records:
        batch.append(record)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


class ExportDirectory:
    """A directory of extracted export CSVs, one file per table.

    File names are matched case-insensitively on their stem
    (``Orders.csv`` → ``orders``).  A missing file is an empty table.
    """

    def __init__(self, root: Path) -> None:
        if not root.is_dir():
            raise ExportFileError(f"export directory not found: {root}")
        self.root = root
        self._files = {
            p.stem.lower(): p for p in sorted(root.iterdir())
            if p.is_file() and p.suffix.lower() == ".csv"
        }

    def path_for(self, table: str) -> Path | None:
        stem, _ = TABLES[table]
        return self._files.get(stem)

    def validate_layout(self) -> None:
        """Check every present table's header before any row is processed."""
        for table in TABLES:
            path = self.path_for(table)
            if path is None:
                continue
            with path.open(encoding="utf-8-sig", newline="") as fh:
                header = next(csv.reader(fh), [])
            if "id" not in {h.strip().lower() for h in header}:
                raise ExportFileError(f"{path.name}: missing required 'id' column")

    def iter_table(self, table: str) -> Iterator[Any]:
        path = self.path_for(table)
        if path is None:
            log.warning("Missing export table: %s", table)
            return iter(())
        _, parse = TABLES[table]
        return iter_records(path, parse)

    def load_table(self, table: str) -> list[Any]:
        rows = list(self.iter_table(table))
        log.info("%s: %d rows", table, len(rows))
        return rows

    def load_reference_tables(self) -> ReferenceTables:
        return ReferenceTables(
            memberships=self.load_table("memberships"),
            passes=self.load_table("passes"),
            performances=self.load_table("performances"),
            events=self.load_table("events"),
            locations=self.load_table("locations"),
            pass_types=self.load_table("pass_types"),
            revenue_categories=self.load_table("revenue_categories"),
        )

    def iter_order_batches(self, batch_size: int) -> Iterator[list[Order]]:
        return iter_batches(self.iter_table("orders"), batch_size)

    def iter_registration_batches(self, batch_size: int) -> Iterator[list[Registration]]:
        return iter_batches(self.iter_table("registrations"), batch_size)

    def iter_refund_batches(self, batch_size: int) -> Iterator[list[Refund]]:
        return iter_batches(self.iter_table("refunds"), batch_size)
