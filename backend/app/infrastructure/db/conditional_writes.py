"""Conditional (compare-and-set style) writes on top of SQLAlchemy Core.

Everything that must happen at most once goes through ``create_if_absent``:
the insert is skipped by the database when the primary key already exists, and
the caller learns from ``CreateResult.created`` whether it was the writer.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.domain.errors import StoreConflictError, TransientStoreError


@dataclass(frozen=True)
class CreateResult:
    created: bool


@contextmanager
def translate_storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as exc:
        raise TransientStoreError(f"{operation} failed: {exc}") from exc
    except sa_exc.IntegrityError as exc:
        raise StoreConflictError(f"{operation} conflicted: {exc.orig}") from exc
    except sa_exc.DBAPIError as exc:
        if exc.connection_invalidated:
            raise TransientStoreError(f"{operation} failed: connection invalidated") from exc
        raise


def _dialect_insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model.__table__)
    if dialect == "sqlite":
        return sqlite_insert(model.__table__)
    raise RuntimeError(f"Conditional writes are not supported for dialect '{dialect}'")


def primary_key_columns(model) -> list[str]:
    return [column.name for column in model.__table__.primary_key.columns]


def create_if_absent(db: Session, model, values: dict) -> CreateResult:
    statement = _dialect_insert(db, model).values(**values).on_conflict_do_nothing(
        index_elements=primary_key_columns(model)
    )
    with translate_storage_errors(f"create_if_absent table={model.__tablename__}"):
        result = db.execute(statement)
    return CreateResult(created=bool(result.rowcount))


def upsert(db: Session, model, values: dict, *, update_columns: list[str] | None = None, where=None) -> bool:
    """Insert ``values`` or merge them into the existing row.

    Only ``update_columns`` (default: every non-key column present in
    ``values``) are overwritten on conflict. ``where`` guards the update; the
    return value is False when the guard rejected it.
    """
    key_columns = primary_key_columns(model)
    insert_statement = _dialect_insert(db, model).values(**values)
    columns = update_columns if update_columns is not None else [name for name in values if name not in key_columns]
    if columns:
        statement = insert_statement.on_conflict_do_update(
            index_elements=key_columns,
            set_={name: insert_statement.excluded[name] for name in columns},
            where=where,
        )
    else:
        statement = insert_statement.on_conflict_do_nothing(index_elements=key_columns)
    with translate_storage_errors(f"upsert table={model.__tablename__}"):
        result = db.execute(statement)
    return bool(result.rowcount)
