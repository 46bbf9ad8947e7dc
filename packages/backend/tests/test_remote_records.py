"""View query construction tests.

Learn: The statements are compiled against the PostgreSQL dialect without
a database, so the WHERE clause the store would send can be read back as
text.
"""

import uuid

import pytest
from sqlalchemy.dialects import postgresql

from labportal.core.types import EqFilter
from labportal.remote.records import VIEW_QUERIES, plain_row


def sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect())).lower()


# ═══════════════════════════════════════════════════════════
# Filters
# ═══════════════════════════════════════════════════════════


@pytest.mark.parametrize("view_name", ["patients", "clinic_reports", "report_status_summary"])
def test_malformed_uuid_filter_matches_nothing(view_name):
    text = sql(VIEW_QUERIES[view_name](EqFilter("clinic_id", "not-a-uuid")))

    assert "where false" in text
    assert "is null" not in text


def test_valid_uuid_filter_is_an_equality():
    clinic_id = str(uuid.uuid4())
    text = sql(VIEW_QUERIES["patients"](EqFilter("clinic_id", clinic_id)))

    assert "patients.clinic_id = " in text
    assert "false" not in text


def test_unknown_filter_column_rejected():
    with pytest.raises(ValueError):
        VIEW_QUERIES["patients"](EqFilter("no_such_column", "x"))


# ═══════════════════════════════════════════════════════════
# Summary shape
# ═══════════════════════════════════════════════════════════


def test_summary_groups_by_clinic_and_status():
    text = sql(VIEW_QUERIES["report_status_summary"](None))

    assert "group by reports.clinic_id" in text
    assert " as status" in text
    assert " as count" in text


def test_plain_row_stringifies_uuids():
    clinic_id = uuid.uuid4()
    row = plain_row({"id": clinic_id, "contact_ids": [clinic_id], "name": "North"})

    assert row == {"id": str(clinic_id), "contact_ids": [str(clinic_id)], "name": "North"}
