# Overview: Flask extension instances for database and migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import event

db = SQLAlchemy()
migrate = Migrate()


def enable_sqlite_savepoints(engine) -> None:
    """
    pysqlite only issues BEGIN before the first INSERT/UPDATE/DELETE, so a
    SAVEPOINT taken earlier runs (and commits) as its own transaction. Turn
    the driver's handling off and emit BEGIN when SQLAlchemy starts one, so
    begin_nested() really nests inside the unit of work.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")
