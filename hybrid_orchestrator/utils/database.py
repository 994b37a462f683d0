"""
Database utilities for Hybrid Orchestrator

PostgreSQL persistence for job snapshots (``prompt_logs``) and encrypted
credentials (``token_records``). DatabaseManager implements both the
JobStore and CredentialStore contracts on one asyncpg connection pool.
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Any

import asyncpg

from ..core.exceptions import DatabaseError
from ..models.credential import CredentialRecord
from ..models.job import Job, JobStatus
from ..services.stores import JobStore, CredentialStore
from .logger import get_logger

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"

# Columns stored as JSON text
_JSON_COLUMNS = ("requested_models", "results", "synthesis_input", "synthesis_result", "critical_models", "variables")


def _job_from_row(row: Any) -> Job:
    data = dict(row)
    for column in _JSON_COLUMNS:
        if data.get(column) is not None:
            data[column] = json.loads(data[column])
    return Job.from_dict(data)


class DatabaseManager(JobStore, CredentialStore):
    """
    Manages database connections and persistence for the orchestrator.

    Provides job snapshot and credential record storage with connection
    pooling. Every failure surfaces as DatabaseError.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=min(5, self.pool_size),
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60
            )
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")
        self.logger.info("Database pool created", extra={"max_size": self.pool_size + self.max_overflow})

    async def initialize_schema(self) -> None:
        """Create the tables if they do not exist."""
        schema = SCHEMA_PATH.read_text(encoding="utf-8")
        try:
            async with self.get_connection() as conn:
                await conn.execute(schema)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("initialize_schema", str(e))

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as connection:
                await connection.execute("SELECT 1")
                return True
        except Exception as e:
            self.logger.warning(f"Database health check failed: {str(e)}")
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    # Job snapshot methods
    async def upsert_job(self, job: Job) -> None:
        """
        Insert or update a job snapshot.

        Every column comes from one snapshot taken before the connection is
        acquired. A row that is already terminal is never overwritten.
        """
        snapshot = job.to_dict()
        params = (
            job.job_id, job.user_id, job.workflow_name, job.prompt_text,
            json.dumps(snapshot["requested_models"]),
            json.dumps(snapshot["results"], default=str),
            json.dumps(snapshot["synthesis_input"]),
            json.dumps(snapshot["synthesis_result"], default=str) if snapshot["synthesis_result"] else None,
            job.synthesis_model,
            json.dumps(snapshot["critical_models"]),
            json.dumps(snapshot["variables"], default=str),
            snapshot["status"], snapshot["error_code"], snapshot["error_info"],
            job.created_at, job.updated_at, job.completed_at
        )
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO prompt_logs (
                        job_id, user_id, workflow_name, prompt_text, requested_models,
                        results, synthesis_input, synthesis_result, synthesis_model,
                        critical_models, variables, status, error_code, error_info,
                        created_at, updated_at, completed_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                    ON CONFLICT (job_id) DO UPDATE SET
                        results = EXCLUDED.results,
                        synthesis_input = EXCLUDED.synthesis_input,
                        synthesis_result = EXCLUDED.synthesis_result,
                        variables = EXCLUDED.variables,
                        status = EXCLUDED.status,
                        error_code = EXCLUDED.error_code,
                        error_info = EXCLUDED.error_info,
                        updated_at = GREATEST(prompt_logs.updated_at, EXCLUDED.updated_at),
                        completed_at = EXCLUDED.completed_at
                    WHERE prompt_logs.status NOT IN ('completed', 'failed')
                """, *params)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("upsert_job", str(e), table="prompt_logs")

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job snapshot by ID."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM prompt_logs WHERE job_id = $1", job_id
                )
                if row:
                    return _job_from_row(row)
                return None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_job", str(e), table="prompt_logs")

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100
    ) -> List[Job]:
        """List job snapshots, most recent first."""
        conditions = []
        params: List[Any] = []
        if user_id is not None:
            params.append(user_id)
            conditions.append(f"user_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        params.append(limit)

        query = "SELECT * FROM prompt_logs"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" ORDER BY created_at DESC LIMIT ${len(params)}"

        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(query, *params)
                return [_job_from_row(row) for row in rows]
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("list_jobs", str(e), table="prompt_logs")

    async def get_job_statistics(self) -> Dict[str, int]:
        """Get job counts by status."""
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT status, COUNT(*) as count
                    FROM prompt_logs
                    GROUP BY status
                """)
                stats = {"total": 0}
                for row in rows:
                    stats[row['status']] = row['count']
                    stats["total"] += row['count']
                return stats
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_job_statistics", str(e), table="prompt_logs")

    # Credential record methods
    async def upsert_credential(self, record: CredentialRecord) -> None:
        """Insert or replace the encrypted credential for (user_id, provider_id)."""
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO token_records (
                        id, user_id, provider_id, encrypted_payload, iv, salt, tag,
                        created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (user_id, provider_id) DO UPDATE SET
                        encrypted_payload = EXCLUDED.encrypted_payload,
                        iv = EXCLUDED.iv,
                        salt = EXCLUDED.salt,
                        tag = EXCLUDED.tag,
                        updated_at = EXCLUDED.updated_at
                """,
                record.id, record.user_id, record.provider_id,
                record.encrypted_payload, record.iv, record.salt, record.auth_tag,
                record.created_at, record.updated_at)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("upsert_credential", str(e), table="token_records")

    async def get_credential(self, user_id: str, provider_id: str) -> Optional[CredentialRecord]:
        """Get the encrypted credential for (user_id, provider_id)."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM token_records WHERE user_id = $1 AND provider_id = $2",
                    user_id, provider_id
                )
                if row:
                    return CredentialRecord(
                        id=row['id'],
                        user_id=row['user_id'],
                        provider_id=row['provider_id'],
                        encrypted_payload=bytes(row['encrypted_payload']),
                        iv=bytes(row['iv']),
                        salt=bytes(row['salt']),
                        auth_tag=bytes(row['tag']),
                        created_at=row['created_at'],
                        updated_at=row['updated_at']
                    )
                return None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_credential", str(e), table="token_records")

    async def delete_credential(self, user_id: str, provider_id: str) -> bool:
        """Delete the credential; returns True if a row was removed."""
        try:
            async with self.get_connection() as conn:
                status = await conn.execute(
                    "DELETE FROM token_records WHERE user_id = $1 AND provider_id = $2",
                    user_id, provider_id
                )
                # asyncpg returns the command tag, e.g. "DELETE 1"
                return status.split()[-1] != "0"
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("delete_credential", str(e), table="token_records")
