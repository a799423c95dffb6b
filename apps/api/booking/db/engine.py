"""Engine factory shared by the server session and the offline client store."""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url


def build_engine(database_url: str) -> Engine:
    """Create an engine with per-backend connection setup."""
    url = make_url(database_url)
    backend = url.get_backend_name()
    connect_args: dict = {}
    if backend.startswith("postgresql"):
        connect_args["options"] = "-c timezone=utc"
    elif backend == "sqlite":
        # Writers wait on the database lock instead of failing immediately
        connect_args["timeout"] = 30
        connect_args["check_same_thread"] = False

    new_engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)

    if backend == "sqlite":
        _install_sqlite_transaction_hooks(new_engine)

    return new_engine


def _install_sqlite_transaction_hooks(sqlite_engine: Engine) -> None:
    """Serialize SQLite writers with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first DML statement, which lets two
    writers read the same version and then collide on the lock upgrade.
    Taking the write lock up front makes the second writer wait and then
    observe the committed version.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
