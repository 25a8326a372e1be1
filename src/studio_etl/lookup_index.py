"""studio_etl.lookup_index

In-memory id → record indexes over the export's small reference tables.

Orders, registrations and refunds reference memberships, passes,
performances, events, locations, pass types and revenue categories by opaque
string ID.  Rather than joining per row, the reference tables are loaded once
into plain dicts and every transformer resolves foreign keys against them.

Scaling limit: every reference table is held in memory.  This is fine for a
single studio (thousands to tens of thousands of memberships and passes) but
is not meant for exports with millions of reference rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import TypeVar

from studio_etl.raw_tables import (
    Event,
    Location,
    Membership,
    Pass,
    PassType,
    Performance,
    ReferenceTables,
    RevenueCategoryLookup,
)

log = logging.getLogger(__name__)

R = TypeVar("R")


def _by_id(records: Iterable[R]) -> dict[str, R]:
    # Later duplicates win, matching what a re-export of the same row means
    return {r.id: r for r in records if r.id}  # type: ignore[attr-defined]


class LookupIndex:
    """Read-only id → record maps for each reference table.

    Build with :meth:`build`.  Every accessor returns None for a missing or
    empty id; absence is a normal outcome that callers count, never an error.
    """

    def __init__(
        self,
        memberships: dict[str, Membership],
        passes: dict[str, Pass],
        performances: dict[str, Performance],
        events: dict[str, Event],
        locations: dict[str, Location],
        pass_types: dict[str, PassType],
        revenue_categories: dict[str, RevenueCategoryLookup],
    ) -> None:
        self._memberships = memberships
        self._passes = passes
        self._performances = performances
        self._events = events
        self._locations = locations
        self._pass_types = pass_types
        self._revenue_categories = revenue_categories

    @classmethod
    def build(cls, tables: ReferenceTables) -> LookupIndex:
        index = cls(
            memberships=_by_id(tables.memberships),
            passes=_by_id(tables.passes),
            performances=_by_id(tables.performances),
            events=_by_id(tables.events),
            locations=_by_id(tables.locations),
            pass_types=_by_id(tables.pass_types),
            revenue_categories=_by_id(tables.revenue_categories),
        )
        for name, size in index.sizes().items():
            log.info("Lookup index %s: %d entries", name, size)
        return index

    # -- accessors ----------------------------------------------------------

    def get_membership(self, membership_id: str | None) -> Membership | None:
        return self._memberships.get(membership_id) if membership_id else None

    def get_pass(self, pass_id: str | None) -> Pass | None:
        return self._passes.get(pass_id) if pass_id else None

    def get_performance(self, performance_id: str | None) -> Performance | None:
        return self._performances.get(performance_id) if performance_id else None

    def get_event(self, event_id: str | None) -> Event | None:
        return self._events.get(event_id) if event_id else None

    def get_location(self, location_id: str | None) -> Location | None:
        return self._locations.get(location_id) if location_id else None

    def get_pass_type(self, pass_type_id: str | None) -> PassType | None:
        return self._pass_types.get(pass_type_id) if pass_type_id else None

    def get_revenue_category(
        self, category_id: str | None
    ) -> RevenueCategoryLookup | None:
        return self._revenue_categories.get(category_id) if category_id else None

    # -- iteration ----------------------------------------------------------

    def memberships(self) -> Iterator[Membership]:
        return iter(self._memberships.values())

    def passes(self) -> Iterator[Pass]:
        return iter(self._passes.values())

    def sizes(self) -> dict[str, int]:
        return {
            "memberships": len(self._memberships),
            "passes": len(self._passes),
            "performances": len(self._performances),
            "events": len(self._events),
            "locations": len(self._locations),
            "pass_types": len(self._pass_types),
            "revenue_categories": len(self._revenue_categories),
        }

    @property
    def has_revenue_categories(self) -> bool:
        return bool(self._revenue_categories)
