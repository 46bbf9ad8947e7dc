"""Database access — ORM models, async engine, and migrations.

Learn: The portal tables are provisioned by the hosted backend; the
models here mirror them for querying. Migrations only add what the
portal core itself needs on top (the row-change NOTIFY trigger).
"""
