"""Database and cache commands for cnvrgctl."""

import re
import shlex
from typing import Callable, List, Optional

import psycopg2
from psycopg2 import sql

from cnvrgctl.constants import (
    POSTGRES_DATABASE,
    POSTGRES_MAINTENANCE_DATABASE,
    POSTGRES_RESTORE_JOBS,
    POSTGRES_USER,
    REDIS_DATA_DIR,
)
from cnvrgctl.errors import CredentialError, SQLError, TransportError


class DatabaseService:
    """Resets PostgreSQL over a tunnel and builds the in-pod dump/restore commands."""

    CONNECT_TIMEOUT_SECONDS = 10

    def __init__(
        self,
        logger,
        console,
        connect: Callable = psycopg2.connect,
        user: str = POSTGRES_USER,
        password: Optional[str] = None,
    ):
        self.logger = logger
        self.console = console
        self.connect = connect
        self.user = user
        self.password = password

    def _open_connection(self, port: int, password: Optional[str]):
        try:
            connection = self.connect(
                host="127.0.0.1",
                port=port,
                dbname=POSTGRES_MAINTENANCE_DATABASE,
                user=self.user,
                password=password or self.password,
                connect_timeout=self.CONNECT_TIMEOUT_SECONDS,
            )
        except psycopg2.Error as exc:
            raise TransportError(
                f"Could not connect to PostgreSQL through 127.0.0.1:{port}: {exc}"
            ) from exc
        connection.autocommit = True
        return connection

    def _execute(self, cursor, step: str, statement, params=None):
        self.logger.debug("SQL step: %s", step)
        try:
            cursor.execute(statement, params)
        except psycopg2.Error as exc:
            raise SQLError(f"SQL step '{step}' failed: {exc}".strip()) from exc

    def quiesce_and_recreate(
        self, tunnel, database_name: str = POSTGRES_DATABASE, password: Optional[str] = None
    ):
        """Drops ``database_name`` and creates it again, empty.

        Connections are blocked and terminated first. When the database does
        not exist only the create runs, so repeating the call is harmless.
        """
        self.console.print(f"[blue]Recreating database {database_name}...[/blue]")
        self.logger.info("Recreating database %s through local port %s", database_name, tunnel.local_port)

        connection = self._open_connection(tunnel.local_port, password)
        try:
            with connection.cursor() as cursor:
                self._execute(
                    cursor,
                    "check database",
                    "SELECT 1 FROM pg_database WHERE datname = %s",
                    (database_name,),
                )
                exists = cursor.fetchone() is not None

                if exists:
                    self._execute(
                        cursor,
                        "block connections",
                        "UPDATE pg_database SET datallowconn = false WHERE datname = %s",
                        (database_name,),
                    )
                    self._execute(
                        cursor,
                        "limit connections",
                        sql.SQL("ALTER DATABASE {} CONNECTION LIMIT 0").format(
                            sql.Identifier(database_name)
                        ),
                    )
                    self._execute(
                        cursor,
                        "terminate sessions",
                        "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                        "WHERE datname = %s AND pid <> pg_backend_pid()",
                        (database_name,),
                    )
                else:
                    self.logger.info("Database %s does not exist yet.", database_name)

                self._execute(
                    cursor,
                    "drop database",
                    sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(database_name)),
                )
                self._execute(
                    cursor,
                    "create database",
                    sql.SQL("CREATE DATABASE {}").format(sql.Identifier(database_name)),
                )
        finally:
            connection.close()

        self.logger.info("Database %s recreated.", database_name)

    @staticmethod
    def pg_dump_command(remote_path: str, database_name: str = POSTGRES_DATABASE) -> List[str]:
        script = (
            'export PGPASSWORD="$POSTGRESQL_PASSWORD"; '
            f"pg_dump -h localhost -U {shlex.quote(POSTGRES_USER)} -d {shlex.quote(database_name)} "
            f"-Fc -f {shlex.quote(remote_path)}"
        )
        return ["sh", "-c", script]

    @staticmethod
    def pg_restore_command(remote_path: str, database_name: str = POSTGRES_DATABASE) -> List[str]:
        script = (
            'export PGPASSWORD="$POSTGRESQL_PASSWORD"; '
            f"pg_restore -h localhost -U {shlex.quote(POSTGRES_USER)} -d {shlex.quote(database_name)} "
            f"-j {POSTGRES_RESTORE_JOBS} --verbose {shlex.quote(remote_path)}"
        )
        return ["sh", "-c", script]

    @staticmethod
    def redis_save_command() -> List[str]:
        # The password is read from stdin so it never shows up in the process table.
        return ["sh", "-c", "read -r REDISCLI_AUTH; export REDISCLI_AUTH; redis-cli save"]

    @staticmethod
    def redis_restore_prep_command(data_dir: str = REDIS_DATA_DIR) -> List[str]:
        data = shlex.quote(data_dir)
        script = (
            "read -r REDISCLI_AUTH; export REDISCLI_AUTH; "
            "redis-cli config set appendonly no && "
            'redis-cli config set save "" && '
            f"if [ -e {data}/appendonly.aof ]; then mv {data}/appendonly.aof {data}/appendonly.aof.old; fi && "
            f"if [ -e {data}/appendonlydir ]; then rm -rf {data}/appendonlydir.old; "
            f"mv {data}/appendonlydir {data}/appendonlydir.old; fi"
        )
        return ["sh", "-c", script]

    @staticmethod
    def redis_auth_stdin(password: str) -> bytes:
        if "\n" in password:
            raise CredentialError("Redis password must not contain a newline.")
        return f"{password}\n".encode("utf-8")

    @staticmethod
    def disable_appendonly(redis_conf: str) -> str:
        """Turns ``appendonly yes`` into ``appendonly no``, leaving other lines untouched."""
        return re.sub(
            r"^(\s*appendonly\s+)yes\b",
            r"\1no",
            redis_conf,
            flags=re.IGNORECASE | re.MULTILINE,
        )

    @staticmethod
    def postgres_password_command() -> List[str]:
        return ["sh", "-c", 'printf %s "$POSTGRESQL_PASSWORD"']
