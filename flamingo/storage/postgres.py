from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from flamingo.logging import get_logger
from flamingo.storage.errors import ConstraintViolation, TransactionFailed
from flamingo.storage.models import (
    CollaboratorSummary,
    EmailVerification,
    NewUser,
    Project,
    ProjectCollaborator,
    ProjectRole,
    Session,
    User,
    UserStatus,
    UserType,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        name TEXT NOT NULL,
        user_type TEXT NOT NULL DEFAULT 'creator',
        provider TEXT NOT NULL DEFAULT 'email',
        provider_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        agree_terms BOOLEAN NOT NULL DEFAULT FALSE,
        agree_privacy BOOLEAN NOT NULL DEFAULT FALSE,
        agree_marketing BOOLEAN NOT NULL DEFAULT FALSE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS users_provider_idx
        ON users (provider, provider_id) WHERE provider_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS email_verifications (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        device_info TEXT,
        ip_address TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_created_idx ON sessions (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS projects (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name TEXT NOT NULL,
        owner_id BIGINT NOT NULL REFERENCES users(id),
        deleted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_collaborators (
        project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('owner', 'editor', 'viewer')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (project_id, user_id)
    )
    """,
)


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=int(row["id"]),
        email=row["email"],
        name=row["name"],
        password_hash=row.get("password_hash"),
        user_type=UserType(row.get("user_type") or UserType.CREATOR),
        provider=row.get("provider") or "email",
        provider_id=row.get("provider_id"),
        status=UserStatus(row.get("status") or UserStatus.PENDING),
        email_verified=bool(row.get("email_verified")),
        email_verified_at=row.get("email_verified_at"),
        agree_terms=bool(row.get("agree_terms")),
        agree_privacy=bool(row.get("agree_privacy")),
        agree_marketing=bool(row.get("agree_marketing")),
        failed_attempts=int(row.get("failed_attempts") or 0),
        locked_until=row.get("locked_until"),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _verification_from_row(row: Dict[str, Any]) -> EmailVerification:
    return EmailVerification(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        token=row["token"],
        expires_at=row["expires_at"],
        verified_at=row.get("verified_at"),
        created_at=row["created_at"],
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=int(row["user_id"]),
        refresh_token_hash=row["refresh_token_hash"],
        device_info=row.get("device_info"),
        ip_address=row.get("ip_address"),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _project_from_row(row: Dict[str, Any]) -> Project:
    return Project(
        id=str(row["id"]),
        name=row["name"],
        owner_id=int(row["owner_id"]),
        deleted_at=row.get("deleted_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _collaborator_from_row(row: Dict[str, Any]) -> ProjectCollaborator:
    return ProjectCollaborator(
        project_id=str(row["project_id"]),
        user_id=int(row["user_id"]),
        role=ProjectRole(row["role"]),
        created_at=row["created_at"],
    )


def _summary_from_row(row: Dict[str, Any]) -> CollaboratorSummary:
    return CollaboratorSummary(
        user_id=int(row["user_id"]),
        name=row["name"],
        email=row["email"],
        role=ProjectRole(row["role"]),
    )


class PostgresStore:
    """Postgres-backed store for users, sessions and projects.

    Each method borrows one pooled connection for its unit of work; the pool
    commits on normal exit and rolls back when an exception escapes.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def start(self) -> None:
        await self.pool.open(wait=True)
        await self._ensure_schema()
        self.logger.info("postgres_store_ready", max_size=self.pool.max_size)

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def _ensure_schema(self) -> None:
        async with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()

    async def _fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchall()

    # -- users -------------------------------------------------------------

    async def create_user(self, new_user: NewUser) -> User:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO users (
                    email, password_hash, name, user_type, provider, provider_id,
                    status, email_verified, email_verified_at,
                    agree_terms, agree_privacy, agree_marketing
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s,
                        CASE WHEN %s THEN now() ELSE NULL END, %s, %s, %s)
                ON CONFLICT (email) DO NOTHING
                RETURNING *
                """,
                (
                    new_user.email,
                    new_user.password_hash,
                    new_user.name,
                    new_user.user_type.value,
                    new_user.provider,
                    new_user.provider_id,
                    new_user.status.value,
                    new_user.email_verified,
                    new_user.email_verified,
                    new_user.agree_terms,
                    new_user.agree_privacy,
                    new_user.agree_marketing,
                ),
            )
            row = await cur.fetchone()
            if row is None:
                # lost a unique-email race; hand back the winner's row
                cur = await conn.execute(
                    "SELECT * FROM users WHERE email = %s", (new_user.email,)
                )
                row = await cur.fetchone()
        if row is None:
            raise ConstraintViolation("user insert conflicted", {"field": "email"})
        return _user_from_row(row)

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetch_one("SELECT * FROM users WHERE id = %s", (user_id,))
        return _user_from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        row = await self._fetch_one("SELECT * FROM users WHERE email = %s", (email,))
        return _user_from_row(row) if row else None

    async def get_user_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[User]:
        row = await self._fetch_one(
            "SELECT * FROM users WHERE provider = %s AND provider_id = %s",
            (provider, provider_id),
        )
        return _user_from_row(row) if row else None

    async def update_user_provider(
        self, user_id: int, provider: str, provider_id: str
    ) -> Optional[User]:
        row = await self._fetch_one(
            """
            UPDATE users SET provider = %s, provider_id = %s, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (provider, provider_id, user_id),
        )
        return _user_from_row(row) if row else None

    async def update_last_login(self, user_id: int) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE users SET last_login_at = now() WHERE id = %s", (user_id,)
            )

    async def increment_failed_attempts(self, user_id: int) -> int:
        row = await self._fetch_one(
            """
            UPDATE users SET failed_attempts = failed_attempts + 1, updated_at = now()
            WHERE id = %s
            RETURNING failed_attempts
            """,
            (user_id,),
        )
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["failed_attempts"])

    async def lock_account(self, user_id: int, minutes: int) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE users SET locked_until = now() + %s, updated_at = now() WHERE id = %s",
                (timedelta(minutes=minutes), user_id),
            )

    async def reset_login_attempts(self, user_id: int) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE users SET failed_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    # -- email verification ------------------------------------------------

    async def create_email_verification(
        self, user_id: int, token: str, expires_at: datetime
    ) -> EmailVerification:
        try:
            row = await self._fetch_one(
                """
                INSERT INTO email_verifications (user_id, token, expires_at)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (user_id, token, expires_at),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return _verification_from_row(row)

    async def get_email_verification(self, token: str) -> Optional[EmailVerification]:
        row = await self._fetch_one(
            "SELECT * FROM email_verifications WHERE token = %s", (token,)
        )
        return _verification_from_row(row) if row else None

    async def confirm_email_verification(
        self, verification_id: int, user_id: int
    ) -> User:
        """Activate the user and consume the token in a single transaction."""
        try:
            async with self._connect() as conn:
                async with conn.transaction():
                    cur = await conn.execute(
                        """
                        UPDATE users
                        SET status = 'active', email_verified = TRUE,
                            email_verified_at = now(), updated_at = now()
                        WHERE id = %s
                        RETURNING *
                        """,
                        (user_id,),
                    )
                    row = await cur.fetchone()
                    if not row:
                        raise ConstraintViolation("user does not exist", {"user_id": user_id})
                    cur = await conn.execute(
                        """
                        UPDATE email_verifications SET verified_at = now()
                        WHERE id = %s AND verified_at IS NULL
                        """,
                        (verification_id,),
                    )
                    if cur.rowcount != 1:
                        raise ConstraintViolation(
                            "verification token not consumable", {"id": verification_id}
                        )
        except Exception as exc:
            raise TransactionFailed("confirm_email_verification", exc) from exc
        return _user_from_row(row)

    # -- sessions ----------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions (
                        id, user_id, refresh_token_hash, device_info, ip_address,
                        expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.device_info,
                        session.ip_address,
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return session

    async def enforce_session_limit(self, user_id: int, max_sessions: int) -> int:
        """Drop expired sessions, then the oldest live one when at capacity."""
        async with self._connect() as conn:
            async with conn.transaction():
                cur = await conn.execute(
                    "DELETE FROM sessions WHERE user_id = %s AND expires_at <= now()",
                    (user_id,),
                )
                removed = cur.rowcount or 0
                cur = await conn.execute(
                    "SELECT COUNT(*) AS live FROM sessions WHERE user_id = %s",
                    (user_id,),
                )
                row = await cur.fetchone()
                if row and int(row["live"]) >= max_sessions:
                    cur = await conn.execute(
                        """
                        DELETE FROM sessions WHERE id = (
                            SELECT id FROM sessions WHERE user_id = %s
                            ORDER BY created_at ASC LIMIT 1
                        )
                        """,
                        (user_id,),
                    )
                    removed += cur.rowcount or 0
        return removed

    async def list_active_sessions(self) -> List[Session]:
        rows = await self._fetch_all("SELECT * FROM sessions WHERE expires_at > now()")
        return [_session_from_row(row) for row in rows]

    async def list_user_sessions(self, user_id: int) -> List[Session]:
        rows = await self._fetch_all(
            "SELECT * FROM sessions WHERE user_id = %s ORDER BY created_at ASC",
            (user_id,),
        )
        return [_session_from_row(row) for row in rows]

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = await self._fetch_one("SELECT * FROM sessions WHERE id = %s", (session_id,))
        return _session_from_row(row) if row else None

    async def delete_session(self, session_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM sessions WHERE id = %s", (session_id,))
            return bool(cur.rowcount)

    async def delete_user_sessions(self, user_id: int) -> int:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    # -- projects ----------------------------------------------------------

    async def create_project(self, name: str, owner_id: int) -> Project:
        try:
            async with self._connect() as conn:
                async with conn.transaction():
                    cur = await conn.execute(
                        "INSERT INTO projects (name, owner_id) VALUES (%s, %s) RETURNING *",
                        (name, owner_id),
                    )
                    row = await cur.fetchone()
                    await conn.execute(
                        """
                        INSERT INTO project_collaborators (project_id, user_id, role)
                        VALUES (%s, %s, 'owner')
                        """,
                        (row["id"], owner_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner does not exist", {"owner_id": owner_id})
        return _project_from_row(row)

    async def get_project(self, project_id: str) -> Optional[Project]:
        pid = _parse_uuid(project_id)
        if pid is None:
            return None
        row = await self._fetch_one(
            "SELECT * FROM projects WHERE id = %s AND deleted_at IS NULL", (pid,)
        )
        return _project_from_row(row) if row else None

    async def list_projects_for_user(self, user_id: int) -> List[Project]:
        rows = await self._fetch_all(
            """
            SELECT DISTINCT p.* FROM projects p
            LEFT JOIN project_collaborators pc ON pc.project_id = p.id
            WHERE (p.owner_id = %s OR pc.user_id = %s) AND p.deleted_at IS NULL
            ORDER BY p.created_at DESC
            """,
            (user_id, user_id),
        )
        return [_project_from_row(row) for row in rows]

    async def update_project(self, project_id: str, name: str) -> Optional[Project]:
        pid = _parse_uuid(project_id)
        if pid is None:
            return None
        row = await self._fetch_one(
            """
            UPDATE projects SET name = %s, updated_at = now()
            WHERE id = %s AND deleted_at IS NULL
            RETURNING *
            """,
            (name, pid),
        )
        return _project_from_row(row) if row else None

    async def soft_delete_project(self, project_id: str) -> Optional[Project]:
        pid = _parse_uuid(project_id)
        if pid is None:
            return None
        row = await self._fetch_one(
            """
            UPDATE projects SET deleted_at = now(), updated_at = now()
            WHERE id = %s AND deleted_at IS NULL
            RETURNING *
            """,
            (pid,),
        )
        return _project_from_row(row) if row else None

    # -- collaborators -----------------------------------------------------

    async def get_collaborator(
        self, project_id: str, user_id: int
    ) -> Optional[ProjectCollaborator]:
        pid = _parse_uuid(project_id)
        if pid is None:
            return None
        row = await self._fetch_one(
            """
            SELECT pc.* FROM project_collaborators pc
            JOIN projects p ON p.id = pc.project_id
            WHERE pc.project_id = %s AND pc.user_id = %s AND p.deleted_at IS NULL
            """,
            (pid, user_id),
        )
        return _collaborator_from_row(row) if row else None

    async def add_collaborator(
        self, project_id: str, user_id: int, role: ProjectRole
    ) -> ProjectCollaborator:
        pid = _parse_uuid(project_id)
        if pid is None:
            raise ConstraintViolation(
                "project or user does not exist",
                {"project_id": project_id, "user_id": user_id},
            )
        try:
            row = await self._fetch_one(
                """
                INSERT INTO project_collaborators (project_id, user_id, role)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (pid, user_id, role.value),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "collaborator already exists",
                {"project_id": project_id, "user_id": user_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "project or user does not exist",
                {"project_id": project_id, "user_id": user_id},
            )
        return _collaborator_from_row(row)

    async def update_collaborator_role(
        self, project_id: str, user_id: int, role: ProjectRole
    ) -> Optional[ProjectCollaborator]:
        pid = _parse_uuid(project_id)
        if pid is None:
            return None
        row = await self._fetch_one(
            """
            UPDATE project_collaborators SET role = %s
            WHERE project_id = %s AND user_id = %s
            RETURNING *
            """,
            (role.value, pid, user_id),
        )
        return _collaborator_from_row(row) if row else None

    async def remove_collaborator(self, project_id: str, user_id: int) -> bool:
        pid = _parse_uuid(project_id)
        if pid is None:
            return False
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM project_collaborators WHERE project_id = %s AND user_id = %s",
                (pid, user_id),
            )
            return bool(cur.rowcount)

    async def list_collaborators(self, project_id: str) -> List[CollaboratorSummary]:
        pid = _parse_uuid(project_id)
        if pid is None:
            return []
        rows = await self._fetch_all(
            """
            SELECT u.id AS user_id, u.name, u.email, pc.role
            FROM project_collaborators pc
            JOIN users u ON u.id = pc.user_id
            WHERE pc.project_id = %s
            ORDER BY CASE pc.role
                WHEN 'owner' THEN 1
                WHEN 'editor' THEN 2
                ELSE 3
            END, u.name
            """,
            (pid,),
        )
        return [_summary_from_row(row) for row in rows]
