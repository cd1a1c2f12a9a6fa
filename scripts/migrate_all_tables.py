"""
Best-effort schema sync for the registration tables.

- Creates missing tables and indexes via Base.metadata.create_all()
- Adds columns that exist on a model but not yet in the database

A fresh database does not need this; startup already runs create_all().
Run it against an existing database after a model gained a column:
  python scripts/migrate_all_tables.py
"""
import os
import sys
from typing import Optional

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlalchemy import inspect, text  # noqa: E402
from sqlalchemy.schema import DefaultClause  # noqa: E402
from tokoreg.database import Base, engine  # noqa: E402
from tokoreg import models  # noqa: F401,E402


def _compile_default(col) -> Optional[str]:
    if isinstance(col.server_default, DefaultClause) and col.server_default.arg is not None:
        return str(col.server_default.arg.compile(dialect=engine.dialect))
    return None


def missing_columns(inspector) -> list[tuple[str, object]]:
    """(table name, column) pairs present on the models but absent from the database."""
    existing_tables = set(inspector.get_table_names())
    missing = []
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        present = {c["name"] for c in inspector.get_columns(table.name)}
        missing.extend((table.name, col) for col in table.columns if col.name not in present)
    return missing


def main():
    Base.metadata.create_all(bind=engine)

    warnings = []
    pending = missing_columns(inspect(engine))
    with engine.begin() as conn:
        for table_name, col in pending:
            default_sql = _compile_default(col)
            parts = [f'ALTER TABLE {table_name} ADD COLUMN "{col.name}" {col.type.compile(dialect=engine.dialect)}']
            if default_sql:
                parts.append(f"DEFAULT {default_sql}")
                if not col.nullable:
                    parts.append("NOT NULL")
            elif not col.nullable:
                # Existing rows have no value to put there
                warnings.append(f"{table_name}.{col.name} is NOT NULL in the model but was added as NULL.")
            conn.execute(text(" ".join(parts)))
            print(f"  added: {table_name}.{col.name}")

    print(f"Done. {len(pending)} column(s) added.")
    for w in warnings:
        print(f" - {w}")


if __name__ == "__main__":
    main()
