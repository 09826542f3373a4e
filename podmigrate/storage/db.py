from pathlib import Path

from platformdirs import user_data_dir
from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine


def get_default_db_url() -> str:
    data_dir = Path(user_data_dir("podmigrate"))
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{data_dir / 'podmigrate.db'}"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_url: str, *, echo: bool = False) -> Engine:
    # Edge inserts are written with SQLite's ON CONFLICT clause.
    if make_url(db_url).get_backend_name() != "sqlite":
        raise ValueError(f"Only SQLite databases are supported, got {db_url!r}")
    if ":memory:" in db_url:
        # A single shared connection keeps the in-memory database alive.
        engine = create_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(db_url, echo=echo)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def init_db(engine: Engine) -> None:
    # Registers the table classes on SQLModel.metadata.
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine) -> Session:
    return Session(engine)
