"""row change NOTIFY trigger

Learn: PostgreSQL LISTEN/NOTIFY pushes row changes out of the database.
One generic trigger function is attached to every table a live view
watches. It sends the table name, the operation (INSERT/UPDATE/DELETE)
and the changed row on the 'row_changed' channel: `record` for inserts
and updates, `old_record` for deletes. The change relay LISTENs there
and republishes onto per-table Redis channels.

NOTIFY payloads are capped at 8000 bytes and pg_notify raises past
that, which would abort the writing transaction. Oversized rows are sent
as a slim record instead: id, created_at and the columns live views
filter on (the trigger arguments), flagged "partial": true. Subscribers
refetch rather than merge a partial row.

Revision ID: 4c1e2f9a7b30
Revises:
Create Date: 2026-10-19 09:12:41.118204
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '4c1e2f9a7b30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# table → columns kept in a slim payload
WATCHED_TABLES = {
    "users": ("user_id", "clinic_id"),
    "clinics": ("reference_id",),
    "patients": ("clinic_id",),
    "reports": ("clinic_id", "patient_id"),
}

# Headroom under the 8000 byte limit for the channel name and framing
MAX_PAYLOAD_BYTES = 7900


def upgrade() -> None:
    op.execute(f"""
        CREATE OR REPLACE FUNCTION notify_row_changed()
        RETURNS TRIGGER AS $$
        DECLARE
            rec jsonb;
            payload text;
            slim jsonb;
            col text;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                rec := to_jsonb(OLD);
            ELSE
                rec := to_jsonb(NEW);
            END IF;

            payload := jsonb_build_object(
                'table', TG_TABLE_NAME,
                'type', TG_OP,
                'record', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE rec END,
                'old_record', CASE WHEN TG_OP = 'DELETE' THEN rec ELSE NULL END
            )::text;

            IF octet_length(payload) > {MAX_PAYLOAD_BYTES} THEN
                slim := jsonb_build_object('id', rec -> 'id', 'created_at', rec -> 'created_at');
                IF TG_NARGS > 0 THEN
                    FOREACH col IN ARRAY TG_ARGV LOOP
                        slim := slim || jsonb_build_object(col, rec -> col);
                    END LOOP;
                END IF;
                payload := jsonb_build_object(
                    'table', TG_TABLE_NAME,
                    'type', TG_OP,
                    'partial', true,
                    'record', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE slim END,
                    'old_record', CASE WHEN TG_OP = 'DELETE' THEN slim ELSE NULL END
                )::text;
            END IF;

            PERFORM pg_notify('row_changed', payload);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table, columns in WATCHED_TABLES.items():
        args = ", ".join(f"'{c}'" for c in columns)
        op.execute(f"""
            CREATE TRIGGER {table}_row_changed_notify
                AFTER INSERT OR UPDATE OR DELETE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION notify_row_changed({args});
        """)


def downgrade() -> None:
    for table in WATCHED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_row_changed_notify ON {table};")
    op.execute("DROP FUNCTION IF EXISTS notify_row_changed;")
