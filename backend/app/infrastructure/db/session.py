from collections.abc import Generator
from time import perf_counter

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.infrastructure.observability.metrics import observe_db_query

STATEMENT_KINDS = {"select", "insert", "update", "delete"}


def _engine_options(database_uri: str) -> dict:
    if database_uri.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def _statement_kind(statement: str) -> str:
    verb = statement.lstrip().split(" ", 1)[0].lower()
    return verb if verb in STATEMENT_KINDS else "other"


engine = create_engine(settings.sqlalchemy_database_uri, **_engine_options(settings.sqlalchemy_database_uri))
# Handlers commit per attempt and keep reading the rows they wrote.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@event.listens_for(engine, "before_cursor_execute")
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started_at_stack", []).append(perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    stack = conn.info.get("query_started_at_stack", [])
    if stack:
        observe_db_query(perf_counter() - stack.pop(), operation=_statement_kind(statement))


def get_db() -> Generator[Session, None, None]:
    with SessionLocal() as db:
        yield db
