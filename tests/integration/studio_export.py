"""A small extracted studio export used by the integration tests.

Four memberships, three passes, five orders, three registrations and two
refunds spread over January and February 2025.
"""

from __future__ import annotations

from pathlib import Path

EXPORT_FILES = {
    "memberships.csv": """\
id,first_name,last_name,email,role,created_at
m1,Jane,Doe,Jane@Example.com,student,2025-01-05T10:00:00
m2,Bob,Smith,bob@example.com,student,2025-01-20T10:00:00
m3,No,Email,,student,2025-01-21T10:00:00
t1,Tara,Teach,tara@studio.com,teacher,2024-06-01T09:00:00
""",
    "passes.csv": """\
id,membership_id,name,state,price,auto_renew_unlimited,auto_renew_period_limit,pass_type_id,created_at,canceled_at
p1,m1,Unlimited Monthly,Active,$99.00,true,,pt1,2025-01-05T10:05:00,
p2,m2,10 Class Pack,Active,180.00,false,0,pt2,2025-01-20T10:10:00,
p3,m2,Old Monthly,Expired,99.00,true,,pt1,2024-02-01T10:00:00,2024-12-01T00:00:00
""",
    "pass_types.csv": """\
id,name,revenue_category_id
pt1,Monthly Membership,rc_mem
pt2,Class Pack,rc_packs
""",
    "revenue_categories.csv": """\
id,name
rc_mem,Memberships
rc_packs,Class Packs
rc_ws,Workshops
""",
    "events.csv": """\
id,name,revenue_category_id
e1,Inversions Workshop,rc_ws
e2,Vinyasa,
""",
    "locations.csv": """\
id,name
l1,Main Studio
""",
    "performances.csv": """\
id,event_id,location_id,teacher_membership_id,starts_at,name
perf1,e2,l1,t1,2025-02-01T09:00:00,Vinyasa 9am
perf2,e1,l1,,2025-02-08T13:00:00,Inversions
""",
    "orders.csv": """\
id,membership_id,event_id,subscription_pass_id,paid_with_pass_id,payment_method,total,fee_union_total,fee_payment_total,fee_outside_total,state,created_at,completed_at
o1,m1,,p1,,card,99.00,2.00,3.17,0,completed,2025-01-05T10:05:00,2025-01-05T10:05:30
o2,m2,,,p2,card,180.00,3.60,5.52,0,completed,2025-01-20T10:10:00,2025-01-20T10:10:30
o3,m1,e1,,,card,45.00,0.90,1.61,0,refunded,2025-02-03T08:00:00,2025-02-03T08:00:10
o4,ghost,,,,cash,20.00,0,0,0,completed,2025-02-04T12:00:00,2025-02-04T12:00:00
o5,m2,e1,,,card,45.00,0,0,0,pending,2025-02-05T12:00:00,
""",
    "registrations.csv": """\
id,pass_id,performance_id,attended_at,state,revenue,created_at
r1,p1,perf1,2025-02-01T09:01:00,attended,12.50,2025-01-30T08:00:00
r2,p2,perf1,2025-02-01T09:03:00,attended,18.00,2025-01-30T08:05:00
r3,,perf2,,late_cancel,0,2025-02-07T08:00:00
""",
    "refunds.csv": """\
id,order_id,revenue_category_id,amount_refunded,fee_union_total_refunded,created_at,state
rf1,o3,,-45.00,-0.90,2025-02-10T09:00:00,succeeded
rf2,o2,,-10.00,0,2025-02-11T09:00:00,failed
""",
}


def write_export(directory: Path, files: dict[str, str] = EXPORT_FILES) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name, text in files.items():
        (directory / name).write_text(text, encoding="utf-8")
    return directory
