from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from stockhold.config import DATABASE_URL, SQLITE_IMMEDIATE_TRANSACTIONS


def configure_sqlite(engine: Engine, *, immediate: bool = False) -> Engine:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer transaction on pysqlite.

    With ``immediate`` each transaction takes the write lock when it starts, so
    two ledger writers run one after the other instead of failing on lock upgrade.
    """
    begin_statement = "BEGIN IMMEDIATE" if immediate else "BEGIN"

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin_statement)

    return engine


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return configure_sqlite(
            create_engine(url, connect_args={"check_same_thread": False, "timeout": 30}),
            immediate=SQLITE_IMMEDIATE_TRANSACTIONS,
        )
    return create_engine(url, pool_pre_ping=True)


engine = _build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
