"""Record store over SQLAlchemy async — point lookups and view queries.

Learn: Two read shapes, matching what the core asks for:

- fetch_one(kind, column, value) — `.single()`-style lookup. Zero rows is
  RecordNotFound (a business answer), anything else that goes wrong is a
  RemoteError whose code says whether retrying could help.
- fetch_view(name, filter) — the full query behind a live view, including
  the joined/aggregated ones that can't be patched incrementally.

Rows come back as plain dicts with UUIDs stringified, the same shape the
change channel delivers, so both paths feed the same row models.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import Select, false, func, select
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.exc import (
    DBAPIError,
    MultipleResultsFound,
    NoResultFound,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from labportal.core.backend import RecordStore
from labportal.core.errors import (
    CONNECTION_ERROR,
    TIMEOUT,
    RecordNotFound,
    RemoteError,
)
from labportal.core.types import EqFilter
from labportal.db.models import ENTITY_MODELS, Patient, Report

logger = structlog.get_logger()


def plain_row(mapping: Any) -> dict[str, Any]:
    """Row mapping → dict with UUIDs (and lists of them) as strings."""

    def convert(value: Any) -> Any:
        if isinstance(value, uuid.UUID):
            return str(value)
        if isinstance(value, list):
            return [convert(v) for v in value]
        return value

    return {key: convert(value) for key, value in dict(mapping).items()}


def _model_for(entity_kind: str):
    model = ENTITY_MODELS.get(entity_kind)
    if model is None:
        raise ValueError(f"Unknown entity kind '{entity_kind}'")
    return model


def _column(model, name: str):
    column = model.__table__.columns.get(name)
    if column is None:
        raise ValueError(f"'{model.__tablename__}' has no column '{name}'")
    return column


def _coerce(column, value: Any) -> Any:
    """Bind values for UUID columns must be UUIDs. None means no match."""
    if isinstance(column.type, PG_UUID) and not isinstance(value, uuid.UUID):
        try:
            return uuid.UUID(str(value))
        except ValueError:
            return None
    return value


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


# ─── View queries ─────────────────────────────────────────


def _apply_filter(stmt: Select, model, row_filter: Optional[EqFilter]) -> Select:
    """Add the view's equality filter. A value the column can't hold matches nothing."""
    if row_filter is None:
        return stmt
    col = _column(model, row_filter.column)
    bound = _coerce(col, row_filter.value)
    if bound is None:
        return stmt.where(false())
    return stmt.where(col == bound)


def _flat_query(entity_kind: str) -> Callable[[Optional[EqFilter]], Select]:
    model = _model_for(entity_kind)

    def build(row_filter: Optional[EqFilter]) -> Select:
        stmt = select(model.__table__).order_by(model.created_at.desc())
        return _apply_filter(stmt, model, row_filter)

    return build


def _clinic_reports_query(row_filter: Optional[EqFilter]) -> Select:
    stmt = (
        select(
            Report.__table__,
            func.coalesce(Patient.first_name, "N/A").label("patient_first_name"),
            func.coalesce(Patient.last_name, "N/A").label("patient_last_name"),
        )
        .select_from(Report)
        .outerjoin(Patient, Report.patient_id == Patient.id)
        .order_by(Report.created_at.desc())
    )
    return _apply_filter(stmt, Report, row_filter)


def _report_status_summary_query(row_filter: Optional[EqFilter]) -> Select:
    """Count per (clinic, status). Rows are keyed "{clinic_id}:{status}" by the row model."""
    status = func.coalesce(Report.status, "unknown")
    stmt = (
        select(
            Report.clinic_id,
            status.label("status"),
            func.count(Report.id).label("count"),
        )
        .group_by(Report.clinic_id, status)
        .order_by(Report.clinic_id, status)
    )
    return _apply_filter(stmt, Report, row_filter)


VIEW_QUERIES: dict[str, Callable[[Optional[EqFilter]], Select]] = {
    "clinics": _flat_query("clinics"),
    "patients": _flat_query("patients"),
    "reports": _flat_query("reports"),
    "contacts": _flat_query("users"),
    "clinic_reports": _clinic_reports_query,
    "report_status_summary": _report_status_summary_query,
}


# ─── Store ────────────────────────────────────────────────


class SqlRecordStore(RecordStore):
    """RecordStore backed by the portal's Postgres database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        """Yield a session; translate driver failures into RemoteError."""
        try:
            async with self.session_factory() as db:
                yield db
        except RemoteError:
            raise
        except NoResultFound:
            raise RecordNotFound()
        except MultipleResultsFound as e:
            raise RemoteError(f"Lookup matched more than one row: {e}")
        except (asyncio.TimeoutError, PoolTimeoutError) as e:
            raise RemoteError(f"Database timeout: {e}", code=TIMEOUT)
        except DBAPIError as e:
            code = _sqlstate(e)
            if code is None and e.connection_invalidated:
                code = CONNECTION_ERROR
            raise RemoteError(f"Database error: {e.orig or e}", code=code)
        except SQLAlchemyError as e:
            raise RemoteError(f"Database error: {e}")
        except OSError as e:
            raise RemoteError(f"Database unreachable: {e}", code=CONNECTION_ERROR)

    async def fetch_one(self, entity_kind: str, column: str, value: Any) -> dict[str, Any]:
        model = _model_for(entity_kind)
        col = _column(model, column)
        bound = _coerce(col, value)
        if bound is None:
            raise RecordNotFound()

        stmt = select(model.__table__).where(col == bound)
        async with self._session() as db:
            result = await db.execute(stmt)
            row = result.mappings().one()
        return plain_row(row)

    async def fetch_view(
        self, view_name: str, row_filter: Optional[EqFilter] = None
    ) -> list[dict[str, Any]]:
        build = VIEW_QUERIES.get(view_name)
        if build is None:
            raise ValueError(f"No query for view '{view_name}'")
        stmt = build(row_filter)

        async with self._session() as db:
            result = await db.execute(stmt)
            rows = [plain_row(r) for r in result.mappings().all()]
        logger.debug("records.view_fetched", view=view_name, rows=len(rows))
        return rows
