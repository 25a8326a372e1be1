"""Shared fixtures for unit tests: a small studio's reference tables."""

from __future__ import annotations

from decimal import Decimal

import pytest

from studio_etl.lookup_index import LookupIndex
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


def studio_tables() -> ReferenceTables:
    return ReferenceTables(
        memberships=[
            Membership(id="m1", first_name="Jane", last_name="Doe",
                       email=" JANE@Example.com ", role="student",
                       created_at="2025-01-05T10:00:00"),
            Membership(id="m2", first_name="Bob", last_name="NoEmail",
                       email="", role="student", created_at="2025-01-06"),
            Membership(id="t1", first_name="Tara", last_name="Teach",
                       email="tara@studio.com", role="teacher",
                       created_at="2024-06-01"),
        ],
        passes=[
            Pass(id="p1", membership_id="m1", name="Unlimited Monthly",
                 state="Active", price=Decimal("99.00"),
                 auto_renew_unlimited=True, pass_type_id="pt1",
                 created_at="2025-01-05T10:05:00"),
            Pass(id="p2", membership_id="m1", name="10 Class Pack",
                 state="Active", price=Decimal("180.00"), pass_type_id="pt2",
                 created_at="2025-01-07"),
            Pass(id="p3", membership_id="m1", name="Old Monthly",
                 state="Expired", auto_renew_unlimited=True, pass_type_id="pt1",
                 created_at="2024-03-01"),
            Pass(id="p4", membership_id="m2", name="Intro Trial",
                 state="Trialing", auto_renew_period_limit=3, pass_type_id="pt3",
                 created_at="2025-01-06"),
            Pass(id="p5", membership_id="ghost", name="Unlimited Monthly",
                 state="Active", auto_renew_unlimited=True, pass_type_id="pt1",
                 created_at="2025-01-08"),
        ],
        performances=[
            Performance(id="perf1", event_id="e2", location_id="l1",
                        teacher_membership_id="t1",
                        starts_at="2025-02-01T09:00:00", name="Vinyasa 9am"),
            Performance(id="perf2", event_id="e404", location_id="l1",
                        starts_at="2025-02-02T18:00:00", name="Pop-up Flow"),
        ],
        events=[
            Event(id="e1", name="Inversions Workshop", revenue_category_id="rc_ws"),
            Event(id="e2", name="Vinyasa", revenue_category_id=None),
        ],
        locations=[Location(id="l1", name="Main Studio")],
        pass_types=[
            PassType(id="pt1", name="Monthly Membership", revenue_category_id="rc_mem"),
            PassType(id="pt2", name="Class Pack", revenue_category_id="rc_packs"),
            PassType(id="pt3", name="Trial", revenue_category_id=None),
        ],
        revenue_categories=[
            RevenueCategoryLookup(id="rc_mem", name="Memberships"),
            RevenueCategoryLookup(id="rc_packs", name="Class Packs"),
            RevenueCategoryLookup(id="rc_ws", name="Workshops"),
        ],
    )


@pytest.fixture
def tables() -> ReferenceTables:
    return studio_tables()


@pytest.fixture
def index(tables) -> LookupIndex:
    return LookupIndex.build(tables)
