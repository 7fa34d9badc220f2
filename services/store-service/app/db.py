import os
from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import NullPool

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set")
DB_SCHEMA = os.getenv("DB_SCHEMA", "store")

_url = make_url(DATABASE_URL)
IS_POSTGRES = _url.get_backend_name() == "postgresql"

# sessions are opened by sync dependencies and used from async handlers,
# so a SQLite connection may cross threads
_connect_args = {"check_same_thread": False} if _url.get_backend_name() == "sqlite" else {}

engine = create_engine(
    _url,
    poolclass=NullPool,
    pool_pre_ping=True,
    connect_args=_connect_args,
    echo=os.getenv("DB_ECHO", "false").lower() == "true",
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def _schema_ident() -> str:
    return '"' + DB_SCHEMA.replace('"', '""') + '"'


if IS_POSTGRES:
    @event.listens_for(engine, "connect")
    def _use_service_schema(dbapi_conn, _):
        cur = dbapi_conn.cursor()
        cur.execute(f"SET search_path TO {_schema_ident()}")
        cur.close()


def init_schema():
    """Create the service schema (Postgres) and all tables."""
    if IS_POSTGRES:
        with engine.begin() as conn:
            conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {_schema_ident()}"))
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
