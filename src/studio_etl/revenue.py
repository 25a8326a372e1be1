"""studio_etl.revenue

Per-month, per-category revenue attribution net of fees and refunds.

Each eligible order lands in a ``(month, category)`` bucket.  The category is
resolved by an ordered tuple of strategies, first match wins:

  1. event path      order.event_id → Event.revenue_category_id → name
  2. pass-type path  subscription_pass_id, then paid_with_pass_id →
                     Pass.pass_type_id → PassType.revenue_category_id → name
  3. "Uncategorized"

Refunds are applied in a second pass.  A refund carries its own category ID
when the platform recorded one; otherwise it inherits the category its parent
order resolved to.  Refund amounts arrive negative and are added as absolute
values.

The attributor is streaming: feed it order batches, then refund batches, and
only the bucket map plus the order → category map stay in memory.

Usage:
    attribution = compute_revenue_by_category(
        index,
        source.iter_order_batches(10_000),
        source.iter_refund_batches(10_000),
    )
    if attribution.computed:
        replace_revenue_totals(conn, attribution.totals)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Optional

from studio_etl.config import (
    DEFAULT_ELIGIBLE_ORDER_STATES,
    DEFAULT_EXCLUDED_REFUND_STATES,
)
from studio_etl.lookup_index import LookupIndex
from studio_etl.normalize import month_key, parse_date, round_cents
from studio_etl.raw_tables import Order, Refund
from studio_etl.shared import RejectWriter

log = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
REVENUE_LOOKUP_EMPTY = "revenue_category_lookup_empty"

_ZERO = Decimal("0")

CategoryResolver = Callable[[Order, LookupIndex], Optional[str]]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EmptyRevenueLookupError(Exception):
    """Raised when attribution is attempted without any revenue categories."""


# ---------------------------------------------------------------------------
# Category resolution
# ---------------------------------------------------------------------------

def _category_name(index: LookupIndex, category_id: str | None) -> str | None:
    lookup = index.get_revenue_category(category_id)
    if lookup is None or not lookup.name:
        return None
    return lookup.name


def resolve_by_event(order: Order, index: LookupIndex) -> str | None:
    event = index.get_event(order.event_id)
    if event is None:
        return None
    return _category_name(index, event.revenue_category_id)


def resolve_by_pass_type(order: Order, index: LookupIndex) -> str | None:
    for pass_id in (order.subscription_pass_id, order.paid_with_pass_id):
        p = index.get_pass(pass_id)
        if p is None:
            continue
        pass_type = index.get_pass_type(p.pass_type_id)
        if pass_type is None:
            continue
        name = _category_name(index, pass_type.revenue_category_id)
        if name:
            return name
    return None


CATEGORY_RESOLVERS: tuple[CategoryResolver, ...] = (
    resolve_by_event,
    resolve_by_pass_type,
)


def resolve_order_category(
    order: Order,
    index: LookupIndex,
    resolvers: tuple[CategoryResolver, ...] = CATEGORY_RESOLVERS,
) -> str:
    for resolver in resolvers:
        name = resolver(order, index)
        if name:
            return name
    return UNCATEGORIZED


# ---------------------------------------------------------------------------
# Totals and counters
# ---------------------------------------------------------------------------

@dataclass
class RevenueCategoryTotal:
    month: str
    category: str
    revenue: Decimal = _ZERO
    union_fees: Decimal = _ZERO
    payment_fees: Decimal = _ZERO
    other_fees: Decimal = _ZERO
    refunded: Decimal = _ZERO
    union_fees_refunded: Decimal = _ZERO

    @property
    def net_revenue(self) -> Decimal:
        return (
            self.revenue
            - self.union_fees
            - self.payment_fees
            - self.other_fees
            - self.refunded
            + self.union_fees_refunded
        )

    def rounded(self) -> RevenueCategoryTotal:
        return RevenueCategoryTotal(
            month=self.month,
            category=self.category,
            revenue=round_cents(self.revenue),
            union_fees=round_cents(self.union_fees),
            payment_fees=round_cents(self.payment_fees),
            other_fees=round_cents(self.other_fees),
            refunded=round_cents(self.refunded),
            union_fees_refunded=round_cents(self.union_fees_refunded),
        )


@dataclass
class RevenueCounters:
    orders_read: int = 0
    categorized: int = 0
    uncategorized: int = 0
    skipped_state: int = 0
    skipped_no_date: int = 0
    refunds_read: int = 0
    refunds_applied: int = 0
    refunds_skipped_no_date: int = 0
    refunds_skipped_no_category: int = 0
    refunds_skipped_state: int = 0
    uncategorized_sample: list[str] = field(default_factory=list)

    @property
    def refunds_skipped(self) -> int:
        return (
            self.refunds_skipped_no_date
            + self.refunds_skipped_no_category
            + self.refunds_skipped_state
        )

    @property
    def uncategorized_fraction(self) -> float:
        attributed = self.categorized + self.uncategorized
        return self.uncategorized / attributed if attributed else 0.0

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out.pop("uncategorized_sample")
        out["refunds_skipped"] = self.refunds_skipped
        out["uncategorized_fraction"] = round(self.uncategorized_fraction, 4)
        return out


@dataclass
class RevenueAttribution:
    """Result of one attribution pass.

    ``computed`` is False (with ``skip_reason`` set) when attribution could
    not run at all; ``totals`` is then empty.
    """

    computed: bool
    skip_reason: str | None = None
    totals: list[RevenueCategoryTotal] = field(default_factory=list)
    counters: RevenueCounters = field(default_factory=RevenueCounters)
    high_water_date: date | None = None

    @property
    def months(self) -> list[str]:
        return sorted({t.month for t in self.totals})


# ---------------------------------------------------------------------------
# Attributor
# ---------------------------------------------------------------------------

class RevenueAttributor:
    """Streaming accumulator of (month, category) revenue buckets."""

    def __init__(
        self,
        index: LookupIndex,
        counters: RevenueCounters | None = None,
        eligible_order_states: Iterable[str] = DEFAULT_ELIGIBLE_ORDER_STATES,
        excluded_refund_states: Iterable[str] = DEFAULT_EXCLUDED_REFUND_STATES,
        resolvers: tuple[CategoryResolver, ...] = CATEGORY_RESOLVERS,
        sample_size: int = 5,
        rejects: RejectWriter | None = None,
    ) -> None:
        if not index.has_revenue_categories:
            raise EmptyRevenueLookupError(
                "revenue category lookup table is empty; attribution would "
                "put every order in Uncategorized"
            )
        self.index = index
        self.counters = counters if counters is not None else RevenueCounters()
        self._eligible = frozenset(eligible_order_states)
        self._excluded_refunds = frozenset(excluded_refund_states)
        self._resolvers = resolvers
        self._sample_size = sample_size
        self._rejects = rejects
        self._buckets: dict[tuple[str, str], RevenueCategoryTotal] = {}
        self._order_categories: dict[str, str] = {}
        self.high_water_date: date | None = None

    def _bucket(self, month: str, category: str) -> RevenueCategoryTotal:
        key = (month, category)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = RevenueCategoryTotal(month=month, category=category)
        return bucket

    def _observe(self, value: date | None) -> None:
        if value is not None and (self.high_water_date is None or value > self.high_water_date):
            self.high_water_date = value

    def _reject(self, kind: str, record_id: str, reason: str) -> None:
        if self._rejects is not None:
            self._rejects.write({"record_type": kind, "id": record_id}, reason)

    def add_orders(self, orders: Iterable[Order]) -> None:
        c = self.counters
        for order in orders:
            c.orders_read += 1
            category = resolve_order_category(order, self.index, self._resolvers)
            # Remembered whatever the state, so refunds of any order can inherit it
            self._order_categories[order.id] = category

            if order.state not in self._eligible:
                c.skipped_state += 1
                continue
            month = month_key(order.completed_at) or month_key(order.created_at)
            if month is None:
                c.skipped_no_date += 1
                self._reject("order", order.id, "revenue_no_date")
                continue

            self._observe(parse_date(order.completed_at) or parse_date(order.created_at))
            bucket = self._bucket(month, category)
            bucket.revenue += order.total
            bucket.union_fees += order.fee_union_total
            bucket.payment_fees += order.fee_payment_total
            bucket.other_fees += order.fee_outside_total

            if category == UNCATEGORIZED:
                c.uncategorized += 1
                if len(c.uncategorized_sample) < self._sample_size:
                    c.uncategorized_sample.append(order.id)
            else:
                c.categorized += 1

    def add_refunds(self, refunds: Iterable[Refund]) -> None:
        c = self.counters
        for refund in refunds:
            c.refunds_read += 1
            if refund.state and refund.state in self._excluded_refunds:
                c.refunds_skipped_state += 1
                continue
            month = month_key(refund.created_at)
            if month is None:
                c.refunds_skipped_no_date += 1
                self._reject("refund", refund.id, "refund_no_date")
                continue
            category = _category_name(self.index, refund.revenue_category_id)
            if category is None and refund.order_id:
                category = self._order_categories.get(refund.order_id)
            if category is None:
                c.refunds_skipped_no_category += 1
                self._reject("refund", refund.id, "refund_no_category")
                continue

            self._observe(parse_date(refund.created_at))
            bucket = self._bucket(month, category)
            bucket.refunded += abs(refund.amount_refunded)
            bucket.union_fees_refunded += abs(refund.fee_union_total_refunded)
            c.refunds_applied += 1

    def totals(self) -> list[RevenueCategoryTotal]:
        """Rounded totals, months ascending, gross revenue descending within a month."""
        rounded = [b.rounded() for b in self._buckets.values()]
        rounded.sort(key=lambda t: t.category)
        rounded.sort(key=lambda t: t.revenue, reverse=True)
        rounded.sort(key=lambda t: t.month)
        return rounded

    def log_summary(self) -> None:
        c = self.counters
        log.info(
            "revenue: categorized=%d uncategorized=%d (%.1f%%) skipped_state=%d "
            "skipped_no_date=%d refunds_applied=%d refunds_skipped=%d",
            c.categorized, c.uncategorized, 100.0 * c.uncategorized_fraction,
            c.skipped_state, c.skipped_no_date, c.refunds_applied, c.refunds_skipped,
        )
        if c.uncategorized_sample:
            log.info("revenue: uncategorized order sample: %s", ", ".join(c.uncategorized_sample))


def compute_revenue_by_category(
    index: LookupIndex,
    order_batches: Iterable[Iterable[Order]],
    refund_batches: Iterable[Iterable[Refund]],
    eligible_order_states: Iterable[str] = DEFAULT_ELIGIBLE_ORDER_STATES,
    excluded_refund_states: Iterable[str] = DEFAULT_EXCLUDED_REFUND_STATES,
    sample_size: int = 5,
    rejects: RejectWriter | None = None,
) -> RevenueAttribution:
    """Run both attribution passes; an empty lookup yields a not-computed result."""
    try:
        attributor = RevenueAttributor(
            index,
            eligible_order_states=eligible_order_states,
            excluded_refund_states=excluded_refund_states,
            sample_size=sample_size,
            rejects=rejects,
        )
    except EmptyRevenueLookupError as exc:
        log.warning("revenue: not computed: %s", exc)
        return RevenueAttribution(computed=False, skip_reason=REVENUE_LOOKUP_EMPTY)

    for batch in order_batches:
        attributor.add_orders(batch)
    for batch in refund_batches:
        attributor.add_refunds(batch)
    attributor.log_summary()
    return RevenueAttribution(
        computed=True,
        totals=attributor.totals(),
        counters=attributor.counters,
        high_water_date=attributor.high_water_date,
    )
