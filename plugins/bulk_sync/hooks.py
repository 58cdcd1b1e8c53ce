"""
Airflow Integration

Resolves Airflow connection ids to DB-API connections and runs one bulk
operation per call, so a DAG task can push a batch of rows into a table:

    from bulk_sync.hooks import sync_table

    result = sync_table('warehouse_pg', 'public.customers', rows, mode='merge')

SQL Server connections are opened with pyodbc directly from the Airflow
connection, which avoids a dependency on the Microsoft SQL Server provider.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging
import sqlite3
import time

from airflow.hooks.base import BaseHook
from airflow.providers.postgres.hooks.postgres import PostgresHook
import pyodbc

from bulk_sync.bulk_operations import bulk_delete, bulk_insert, bulk_merge, bulk_update
from bulk_sync.dialects import MSSQL, POSTGRESQL, SQLITE
from bulk_sync.row_sources import RowSource

logger = logging.getLogger(__name__)

_CONN_TYPE_DIALECTS = {
    'postgres': POSTGRESQL,
    'postgresql': POSTGRESQL,
    'mssql': MSSQL,
    'odbc': MSSQL,
    'sqlite': SQLITE,
}

_OPERATIONS: Dict[str, Callable[..., int]] = {
    'insert': bulk_insert,
    'update': bulk_update,
    'merge': bulk_merge,
    'delete': bulk_delete,
}


class OdbcConnectionHelper:
    """Open pyodbc connections to SQL Server from an Airflow connection."""

    def __init__(self, odbc_conn_id: str, driver: str = '{ODBC Driver 18 for SQL Server}'):
        """
        Initialize the ODBC connection helper.

        Args:
            odbc_conn_id: Airflow connection ID for the database
            driver: ODBC driver name
        """
        self.conn_id = odbc_conn_id
        self.driver = driver
        self._conn_config: Optional[Dict[str, str]] = None

    def _get_connection_config(self) -> Dict[str, str]:
        if self._conn_config is None:
            conn = BaseHook.get_connection(self.conn_id)

            port = conn.port or 1433
            server = f"{conn.host},{port}" if port != 1433 else conn.host

            config = {
                'DRIVER': self.driver,
                'SERVER': server,
                'DATABASE': conn.schema,
                'TrustServerCertificate': 'yes',
            }

            if conn.login:
                config['UID'] = conn.login
                config['PWD'] = conn.password or ''
                config['Trusted_Connection'] = 'no'
            else:
                # Windows Authentication (Kerberos)
                config['Trusted_Connection'] = 'yes'

            self._conn_config = config

        return self._conn_config

    def build_connection_string(self) -> str:
        """
        Build ODBC connection string from the Airflow connection.

        Returns:
            ODBC connection string (empty values omitted)
        """
        config = self._get_connection_config()
        return ';'.join([f"{k}={v}" for k, v in config.items() if v])

    def get_conn(self) -> pyodbc.Connection:
        """
        Open a pyodbc connection with autocommit off.

        Returns:
            pyodbc Connection object
        """
        return pyodbc.connect(self.build_connection_string(), autocommit=False)


def get_dialect_for_conn_id(conn_id: str) -> str:
    """
    Map the connection type of an Airflow connection to a dialect name.

    Raises:
        ValueError: If the connection type is not supported
    """
    conn = BaseHook.get_connection(conn_id)
    conn_type = (conn.conn_type or '').lower()
    dialect = _CONN_TYPE_DIALECTS.get(conn_type)
    if dialect is None:
        raise ValueError(
            f"Connection '{conn_id}' has unsupported type '{conn.conn_type}'. "
            f"Supported: {', '.join(sorted(_CONN_TYPE_DIALECTS))}"
        )
    return dialect


def get_db_connection(conn_id: str) -> Any:
    """
    Open a DB-API connection for an Airflow connection id.

    Args:
        conn_id: Airflow connection ID (postgres, mssql/odbc or sqlite type)

    Returns:
        psycopg2, pyodbc or sqlite3 connection; the caller closes it
    """
    dialect = get_dialect_for_conn_id(conn_id)

    if dialect == POSTGRESQL:
        return PostgresHook(postgres_conn_id=conn_id).get_conn()

    if dialect == MSSQL:
        return OdbcConnectionHelper(conn_id).get_conn()

    conn = BaseHook.get_connection(conn_id)
    return sqlite3.connect(conn.host)


def sync_table(
    conn_id: str,
    table_name: str,
    rows: RowSource,
    mode: str = 'update',
    **kwargs: Any,
) -> Dict[str, Any]:
    """
    Run one bulk operation against an Airflow connection.

    Opens a connection, runs the operation in its own transaction and closes
    the connection again.

    Args:
        conn_id: Airflow connection ID
        table_name: Target table, optionally schema-qualified
        rows: RowReader or RowSet
        mode: 'insert', 'update', 'merge' or 'delete'
        **kwargs: Passed through to the bulk operation (qualifiers, mappings, hints, ...)

    Returns:
        Dictionary with the result summary
    """
    operation = _OPERATIONS.get(mode)
    if operation is None:
        raise ValueError(f"Unknown mode '{mode}'. Expected one of: {', '.join(_OPERATIONS)}")

    dialect = get_dialect_for_conn_id(conn_id)
    start_time = time.time()

    conn = get_db_connection(conn_id)
    try:
        rows_affected = operation(conn, table_name, rows, dialect=dialect, **kwargs)
    except Exception as e:
        logger.error(f"Error syncing {table_name} via connection '{conn_id}': {e}")
        raise
    finally:
        conn.close()

    elapsed_time = time.time() - start_time
    result = {
        'table_name': table_name,
        'mode': mode,
        'rows_affected': rows_affected,
        'elapsed_time_seconds': elapsed_time,
        'timestamp': datetime.now().isoformat(),
    }
    logger.info(
        f"Synced {table_name} ({mode}) via '{conn_id}': {rows_affected:,} rows "
        f"in {elapsed_time:.2f}s"
    )
    return result
