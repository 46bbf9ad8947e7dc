"""View definitions — what a live collection holds and how it is patched.

Learn: Each view names the table whose change channel drives it, the
typed row model its collection holds, and whether a change event can be
patched in directly:

    flat     one table, one row per event → incremental merge
    derived  a join or an aggregate → the event row is not the display
             row, so every event triggers a full re-query instead

Row models are pydantic, so a partial row pushed by the database is
validated into the same shape the full query produces. merge() is the
per-entity answer to "how do these changed fields land on the row we
already have?".

The registry follows the same get/list/register shape as the rest of
the app's plug-in points:
    view = get_view("clinic_reports")
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, model_validator


# ─── Row models ───────────────────────────────────────────


class PortalRow(BaseModel):
    """Base for every row held in a ReconciledCollection."""

    id: str

    def merge(self, patch: dict[str, Any]) -> "PortalRow":
        """Overlay the fields present in `patch`; keep the rest."""
        known = {k: v for k, v in patch.items() if k in type(self).model_fields}
        return type(self).model_validate({**self.model_dump(), **known})

    def sort_value(self, field: str) -> Any:
        return getattr(self, field, None)


class ClinicRow(PortalRow):
    reference_id: Optional[str] = None
    name: str = ""
    address: Optional[str] = None
    region: Optional[str] = None
    email: Optional[str] = None
    logo_url: Optional[str] = None
    contact_ids: list[str] = []
    report_ids: list[str] = []
    created_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    def merge(self, patch: dict[str, Any]) -> "ClinicRow":
        # Array columns arrive as null when untouched by the writer
        patch = {
            k: v
            for k, v in patch.items()
            if not (k in ("contact_ids", "report_ids") and v is None)
        }
        return super().merge(patch)


class PatientRow(PortalRow):
    reference_id: Optional[str] = None
    clinic_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    created_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None


class ReportRow(PortalRow):
    reference_id: Optional[str] = None
    status: Optional[str] = None
    lab_test_type: Optional[str] = None
    processing_lab: Optional[str] = None
    invoice_number: Optional[str] = None
    sample_collection_date: Optional[date] = None
    date_picked_up_by_lab: Optional[date] = None
    date_shipped_to_lab: Optional[date] = None
    tracking_number: Optional[str] = None
    report_completion_date: Optional[date] = None
    notes: Optional[str] = None
    pdf_url: Optional[str] = None
    patient_id: Optional[str] = None
    clinic_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None


class ContactRow(PortalRow):
    """A portal user shown as a clinic contact."""

    user_id: Optional[str] = None
    name: str = ""
    email: Optional[str] = None
    role: Optional[str] = None
    clinic_id: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None


class ClinicReportRow(ReportRow):
    """Report joined with its patient's name."""

    patient_first_name: str = "N/A"
    patient_last_name: str = "N/A"


class ReportStatusSummaryRow(PortalRow):
    """Report count for one (clinic, status) pair.

    `id` is "{clinic_id}:{status}" so an unfiltered summary keeps one row
    per clinic instead of collapsing clinics that share a status.
    """

    clinic_id: Optional[str] = None
    status: str = "unknown"
    count: int = 0

    @model_validator(mode="before")
    @classmethod
    def _composite_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = {**data, "id": f"{data.get('clinic_id')}:{data.get('status') or 'unknown'}"}
        return data


# ─── View specs ───────────────────────────────────────────


@dataclass(frozen=True)
class ViewSpec:
    name: str
    entity_kind: str  # table whose change channel drives the view
    row_model: type[PortalRow]
    derived: bool = False
    key: str = "id"
    sort_key: Optional[str] = None
    descending: bool = True

    def parse(self, row: dict[str, Any]) -> PortalRow:
        if self.key != "id" and "id" not in row:
            row = {**row, "id": str(row[self.key])}
        return self.row_model.model_validate(row)

    def row_id(self, row: dict[str, Any]) -> Optional[str]:
        value = row.get(self.key)
        return str(value) if value is not None else None


_VIEWS: dict[str, ViewSpec] = {
    "clinics": ViewSpec("clinics", "clinics", ClinicRow, sort_key="created_at"),
    "patients": ViewSpec("patients", "patients", PatientRow, sort_key="created_at"),
    "reports": ViewSpec("reports", "reports", ReportRow, sort_key="created_at"),
    "contacts": ViewSpec("contacts", "users", ContactRow, sort_key="created_at"),
    "clinic_reports": ViewSpec(
        "clinic_reports", "reports", ClinicReportRow, derived=True, sort_key="created_at"
    ),
    "report_status_summary": ViewSpec(
        "report_status_summary", "reports", ReportStatusSummaryRow, derived=True
    ),
}


def get_view(name: str) -> ViewSpec:
    """Get a view spec by name.

    Raises KeyError if the view is not registered.
    """
    view = _VIEWS.get(name)
    if not view:
        available = ", ".join(sorted(_VIEWS.keys()))
        raise KeyError(f"Unknown view '{name}'. Available: {available}")
    return view


def list_views() -> list[str]:
    return sorted(_VIEWS.keys())


def register_view(view: ViewSpec) -> None:
    _VIEWS[view.name] = view
