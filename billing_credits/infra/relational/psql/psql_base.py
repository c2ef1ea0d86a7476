# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/relational/psql/psql_base.py

import logging
import os

import psycopg2

from typing import Optional, Dict

logger = logging.getLogger(__name__)


class PostgreSqlDbMgr:
    """
    Synchronous connection used by the ops tooling (schema deploy / drop).
    Runtime code goes through the asyncpg pool instead.
    """

    def __init__(self, connection_params: Optional[Dict[str, str]] = None):
        connection_params = connection_params or {}
        self.host = connection_params.get("host") or os.environ.get("POSTGRES_HOST") or os.environ.get("PGHOST")
        self.port = connection_params.get("port") or os.environ.get("POSTGRES_PORT") or os.environ.get("PGPORT")
        self.database = connection_params.get("database") or os.environ.get("POSTGRES_DATABASE") or os.environ.get("PGDATABASE")

        self.username = connection_params.get("username") or os.environ.get("POSTGRES_USER") or os.environ.get("PGUSER")
        self.password = connection_params.get("password") or os.environ.get("POSTGRES_PASSWORD") or os.environ.get("PGPASSWORD")

        self.ssl = (os.environ.get("POSTGRES_SSL", "false").lower() == "true")
        self.appname = connection_params.get("application_name") or os.environ.get("POSTGRES_APPNAME", "billing-credits-ops")
        self.statement_timeout_ms = int(os.environ.get("POSTGRES_STATEMENT_TIMEOUT_MS", "60000"))

        # -c GUCs applied at session start
        opts = [
            "-c TimeZone=UTC",
            f"-c application_name={self.appname}",
            f"-c statement_timeout={self.statement_timeout_ms}",
        ]
        self._options = " ".join(opts)

    def get_connection(self):
        return psycopg2.connect(
            dbname=self.database,
            user=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            sslmode=("require" if self.ssl else "disable"),
            options=self._options,
        )

    def execute_sql_string(self, sql: str):
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql)
                conn.commit()
        logger.debug("Executed SQL: %s", sql)

    def execute_sql_file(self, file_path, substitutions=None):
        """
        Execute a SQL file, replacing <KEY> placeholders from `substitutions`.
        """
        self.execute_sql_string(render_sql_file(file_path, substitutions))
        logger.info("Executed SQL file: %s", file_path)


def render_sql_file(file_path: str, substitutions: Optional[Dict[str, str]] = None) -> str:
    with open(file_path, 'r') as file:
        sql = file.read()
    for key, value in (substitutions or {}).items():
        if value is not None:
            sql = sql.replace(f"<{key}>", value)
    return sql
