"""studio_etl.transform

Resolve raw export records into the flat reporting rows that get persisted.

Every derived row keeps the source-system identifier it came from, exposed
through an ``identity`` property that the stores use to pick the conflict
target:

  BySourceId(source_id)     — upsert on the export's own stable ID
  ByNaturalKey(fields)      — fallback composite key when no ID is carried

Referential misses never raise.  Auto-renews and customers are skipped and
counted; orders and registrations are always emitted with blank fields where
a link does not resolve, and the miss is counted per link.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Union

from studio_etl.config import DEFAULT_PASS_STATE_MAP
from studio_etl.lookup_index import LookupIndex
from studio_etl.normalize import (
    full_name,
    normalize_email,
    normalize_space,
    parse_ts,
    round_cents,
)
from studio_etl.raw_tables import Order, Registration
from studio_etl.shared import RejectWriter

log = logging.getLogger(__name__)

EXPIRED_PASS_STATE = "Expired"


# ---------------------------------------------------------------------------
# Identity variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BySourceId:
    source_id: str


@dataclass(frozen=True)
class ByNaturalKey:
    fields: tuple[Any, ...]


RowIdentity = Union[BySourceId, ByNaturalKey]


# ---------------------------------------------------------------------------
# Derived rows
# ---------------------------------------------------------------------------

@dataclass
class AutoRenewRow:
    plan_name: str
    plan_state: str
    plan_price: Decimal
    customer_name: str
    customer_email: str
    created_at: datetime | None
    canceled_at: datetime | None = None
    source_pass_id: str | None = None

    @property
    def identity(self) -> RowIdentity:
        if self.source_pass_id:
            return BySourceId(self.source_pass_id)
        return ByNaturalKey((self.customer_email, self.plan_name, self.created_at))


@dataclass
class OrderRow:
    created_at: datetime | None
    source_order_id: str
    customer_name: str
    customer_email: str
    type: str
    payment: str
    total: Decimal

    @property
    def identity(self) -> RowIdentity:
        return BySourceId(self.source_order_id)


@dataclass
class RegistrationRow:
    event_name: str
    performance_starts_at: datetime | None
    location_name: str
    teacher_name: str
    first_name: str
    last_name: str
    email: str
    attended_at: datetime | None
    state: str
    pass_name: str
    subscription_flag: bool
    revenue: Decimal
    source_registration_id: str | None = None

    @property
    def identity(self) -> RowIdentity:
        if self.source_registration_id:
            return BySourceId(self.source_registration_id)
        return ByNaturalKey((self.email, self.attended_at))


@dataclass
class CustomerRow:
    name: str
    email: str
    role: str
    created_at: datetime | None
    # Placeholders filled by downstream aggregation; None leaves stored values alone
    order_count: int | None = None
    visit_count: int | None = None
    total_spend: Decimal | None = None

    @property
    def identity(self) -> RowIdentity:
        return ByNaturalKey((self.email,))


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class AutoRenewCounters:
    passes_read: int = 0
    emitted: int = 0
    skipped_not_auto_renew: int = 0
    skipped_expired: int = 0
    skipped_no_member: int = 0

    @property
    def processed(self) -> int:
        return self.passes_read

    def skipped(self) -> dict[str, int]:
        return {
            "not_auto_renew": self.skipped_not_auto_renew,
            "expired": self.skipped_expired,
            "no_member": self.skipped_no_member,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"passes_read": self.passes_read, "emitted": self.emitted, **self.skipped()}


@dataclass
class OrderCounters:
    processed: int = 0
    missing_membership: int = 0
    missing_pass: int = 0

    def skipped(self) -> dict[str, int]:
        return {}

    def misses(self) -> dict[str, int]:
        return {
            "missing_membership": self.missing_membership,
            "missing_pass": self.missing_pass,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, **self.misses()}


@dataclass
class RegistrationCounters:
    processed: int = 0
    missing_pass: int = 0
    missing_membership: int = 0
    missing_performance: int = 0
    missing_event: int = 0
    missing_location: int = 0
    missing_teacher: int = 0

    def skipped(self) -> dict[str, int]:
        return {}

    def misses(self) -> dict[str, int]:
        return {
            "missing_pass": self.missing_pass,
            "missing_membership": self.missing_membership,
            "missing_performance": self.missing_performance,
            "missing_event": self.missing_event,
            "missing_location": self.missing_location,
            "missing_teacher": self.missing_teacher,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, **self.misses()}


@dataclass
class CustomerCounters:
    memberships_read: int = 0
    emitted: int = 0
    skipped_no_email: int = 0

    @property
    def processed(self) -> int:
        return self.memberships_read

    def skipped(self) -> dict[str, int]:
        return {"no_email": self.skipped_no_email}

    def to_dict(self) -> dict[str, Any]:
        return {
            "memberships_read": self.memberships_read,
            "emitted": self.emitted,
            **self.skipped(),
        }


def log_referential_misses(
    entity: str, processed: int, misses: dict[str, int]
) -> None:
    """Log per-link miss rates once an entity type has been fully streamed."""
    if not processed:
        return
    for link, count in misses.items():
        if count:
            log.warning(
                "%s: %s on %d of %d rows (%.1f%%)",
                entity, link, count, processed, 100.0 * count / processed,
            )


def _reject(rejects: RejectWriter | None, record: Any, reason: str) -> None:
    if rejects is not None:
        rejects.write({k: str(v) if v is not None else "" for k, v in asdict(record).items()}, reason)


# ---------------------------------------------------------------------------
# Auto-renews
# ---------------------------------------------------------------------------

def transform_auto_renews(
    index: LookupIndex,
    counters: AutoRenewCounters,
    rejects: RejectWriter | None = None,
    state_map: dict[str, str] | None = None,
) -> list[AutoRenewRow]:
    """One row per live subscription pass whose holder has an email."""
    state_map = DEFAULT_PASS_STATE_MAP if state_map is None else state_map
    rows: list[AutoRenewRow] = []
    for p in index.passes():
        counters.passes_read += 1
        if not p.is_auto_renew:
            counters.skipped_not_auto_renew += 1
            continue
        if p.state == EXPIRED_PASS_STATE:
            counters.skipped_expired += 1
            _reject(rejects, p, "auto_renew_expired")
            continue
        member = index.get_membership(p.membership_id)
        email = normalize_email(member.email) if member else None
        if member is None or not email:
            counters.skipped_no_member += 1
            _reject(rejects, p, "auto_renew_no_member")
            continue
        rows.append(AutoRenewRow(
            plan_name=normalize_space(p.name) or "",
            plan_state=state_map.get(p.state, p.state),
            plan_price=round_cents(p.price),
            customer_name=full_name(member.first_name, member.last_name),
            customer_email=email,
            created_at=parse_ts(p.created_at),
            canceled_at=parse_ts(p.canceled_at),
            source_pass_id=p.id,
        ))
        counters.emitted += 1
    log.info(
        "auto_renews: %d passes, %d emitted, skipped not_auto_renew=%d expired=%d no_member=%d",
        counters.passes_read, counters.emitted, counters.skipped_not_auto_renew,
        counters.skipped_expired, counters.skipped_no_member,
    )
    return rows


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def transform_orders_batch(
    orders: list[Order],
    index: LookupIndex,
    counters: OrderCounters,
) -> list[OrderRow]:
    """One OrderRow per order, always; unresolved links leave fields blank."""
    rows: list[OrderRow] = []
    for o in orders:
        counters.processed += 1
        member = index.get_membership(o.membership_id)
        if member is None:
            counters.missing_membership += 1
        paid_with = index.get_pass(o.paid_with_pass_id)
        if o.paid_with_pass_id and paid_with is None:
            counters.missing_pass += 1
        if paid_with is not None and paid_with.name:
            order_type = paid_with.name
        else:
            order_type = o.payment_method or ""
        rows.append(OrderRow(
            created_at=parse_ts(o.created_at),
            source_order_id=o.id,
            customer_name=full_name(member.first_name, member.last_name) if member else "",
            customer_email=(normalize_email(member.email) or "") if member else "",
            type=order_type,
            payment=o.payment_method or "",
            total=round_cents(o.total),
        ))
    return rows


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

def transform_registrations_batch(
    registrations: list[Registration],
    index: LookupIndex,
    counters: RegistrationCounters,
) -> list[RegistrationRow]:
    """Flatten registrations through the pass and performance chains."""
    rows: list[RegistrationRow] = []
    for r in registrations:
        counters.processed += 1

        reg_pass = index.get_pass(r.pass_id)
        member = None
        if reg_pass is None:
            if r.pass_id:
                counters.missing_pass += 1
        else:
            member = index.get_membership(reg_pass.membership_id)
            if member is None:
                counters.missing_membership += 1

        perf = index.get_performance(r.performance_id)
        event = location = teacher = None
        if perf is None:
            if r.performance_id:
                counters.missing_performance += 1
        else:
            event = index.get_event(perf.event_id)
            if perf.event_id and event is None:
                counters.missing_event += 1
            location = index.get_location(perf.location_id)
            if perf.location_id and location is None:
                counters.missing_location += 1
            teacher = index.get_membership(perf.teacher_membership_id)
            if perf.teacher_membership_id and teacher is None:
                counters.missing_teacher += 1

        if event is not None and event.name:
            event_name = event.name
        else:
            event_name = perf.name if perf is not None else ""

        rows.append(RegistrationRow(
            event_name=event_name,
            performance_starts_at=parse_ts(perf.starts_at) if perf else None,
            location_name=location.name if location else "",
            teacher_name=full_name(teacher.first_name, teacher.last_name) if teacher else "",
            first_name=(normalize_space(member.first_name) or "") if member else "",
            last_name=(normalize_space(member.last_name) or "") if member else "",
            email=(normalize_email(member.email) or "") if member else "",
            attended_at=parse_ts(r.attended_at),
            state=r.state,
            pass_name=reg_pass.name if reg_pass else "",
            subscription_flag=reg_pass.is_auto_renew if reg_pass else False,
            revenue=round_cents(r.revenue),
            source_registration_id=r.id or None,
        ))
    return rows


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

def transform_customers(
    index: LookupIndex,
    counters: CustomerCounters,
    rejects: RejectWriter | None = None,
) -> list[CustomerRow]:
    """One CustomerRow per membership that has an email."""
    rows: list[CustomerRow] = []
    for m in index.memberships():
        counters.memberships_read += 1
        email = normalize_email(m.email)
        if not email:
            counters.skipped_no_email += 1
            _reject(rejects, m, "customer_no_email")
            continue
        rows.append(CustomerRow(
            name=full_name(m.first_name, m.last_name),
            email=email,
            role=m.role,
            created_at=parse_ts(m.created_at),
        ))
        counters.emitted += 1
    log.info(
        "customers: %d memberships, %d emitted, skipped no_email=%d",
        counters.memberships_read, counters.emitted, counters.skipped_no_email,
    )
    return rows
