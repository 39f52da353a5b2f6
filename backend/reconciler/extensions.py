# Overview: Flask extension instances for database and migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import MetaData, event

# Explicit names for the constraints the models leave unnamed, so Alembic
# batch operations on SQLite can find them again. "ix" keeps SQLAlchemy's
# default so index=True columns still get a name.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
}

db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))
migrate = Migrate(render_as_batch=True)


def enable_sqlite_transactions(engine) -> None:
    """
    Hand transaction control for SQLite from pysqlite to SQLAlchemy.

    pysqlite only emits BEGIN before DML, so a SAVEPOINT opened first would
    commit on RELEASE. With the driver's own handling switched off, every
    SQLAlchemy transaction starts with BEGIN IMMEDIATE, which also takes the
    write lock up front so two writers never deadlock upgrading a read lock.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
