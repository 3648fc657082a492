from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

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
    utcnow,
)

_ROLE_ORDER = {ProjectRole.OWNER: 0, ProjectRole.EDITOR: 1, ProjectRole.VIEWER: 2}


class MemoryStore:
    """In-process store used for tests and single-node development.

    Every public method takes ``_data_lock`` for its whole body, so each call
    is atomic with respect to the others, mirroring the row-level atomicity the
    Postgres store relies on.
    """

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self.users: Dict[int, User] = {}
        self.email_verifications: Dict[int, EmailVerification] = {}
        self.sessions: Dict[str, Session] = {}
        self.projects: Dict[str, Project] = {}
        self.collaborators: Dict[Tuple[str, int], ProjectCollaborator] = {}
        self._next_user_id = 1
        self._next_verification_id = 1
        self.logger = get_logger(__name__)

    async def start(self) -> None:
        self.logger.info("memory_store_ready")

    async def close(self) -> None:
        return None

    # -- users -------------------------------------------------------------

    async def create_user(self, new_user: NewUser) -> User:
        with self._data_lock:
            existing = self._find_user_by_email(new_user.email)
            if existing:
                # same outcome as INSERT ... ON CONFLICT (email) DO NOTHING
                return existing
            now = utcnow()
            user = User(
                id=self._next_user_id,
                email=new_user.email,
                name=new_user.name,
                password_hash=new_user.password_hash,
                user_type=new_user.user_type,
                provider=new_user.provider,
                provider_id=new_user.provider_id,
                status=new_user.status,
                email_verified=new_user.email_verified,
                email_verified_at=now if new_user.email_verified else None,
                agree_terms=new_user.agree_terms,
                agree_privacy=new_user.agree_privacy,
                agree_marketing=new_user.agree_marketing,
                created_at=now,
                updated_at=now,
            )
            self._next_user_id += 1
            self.users[user.id] = user
            return replace(user)

    async def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return replace(user) if user else None

    async def get_user_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.provider == provider and u.provider_id == provider_id
                ),
                None,
            )
            return replace(user) if user else None

    async def update_user_provider(
        self, user_id: int, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.provider = provider
            user.provider_id = provider_id
            user.updated_at = utcnow()
            return replace(user)

    async def update_last_login(self, user_id: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = utcnow()

    async def increment_failed_attempts(self, user_id: int) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.failed_attempts += 1
            user.updated_at = utcnow()
            return user.failed_attempts

    async def lock_account(self, user_id: int, minutes: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.locked_until = utcnow() + timedelta(minutes=minutes)
                user.updated_at = utcnow()

    async def reset_login_attempts(self, user_id: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.failed_attempts = 0
                user.locked_until = None
                user.updated_at = utcnow()

    def _find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    # -- email verification ------------------------------------------------

    async def create_email_verification(
        self, user_id: int, token: str, expires_at: datetime
    ) -> EmailVerification:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = EmailVerification(
                id=self._next_verification_id,
                user_id=user_id,
                token=token,
                expires_at=expires_at,
            )
            self._next_verification_id += 1
            self.email_verifications[record.id] = record
            return replace(record)

    async def get_email_verification(self, token: str) -> Optional[EmailVerification]:
        with self._data_lock:
            record = next(
                (v for v in self.email_verifications.values() if v.token == token),
                None,
            )
            return replace(record) if record else None

    async def confirm_email_verification(
        self, verification_id: int, user_id: int
    ) -> User:
        """Activate the user and consume the token as one unit of work."""
        with self._data_lock:
            users_snapshot = {k: replace(v) for k, v in self.users.items()}
            tokens_snapshot = {
                k: replace(v) for k, v in self.email_verifications.items()
            }
            now = utcnow()
            try:
                user = self._activate_user(user_id, now)
                self._consume_verification(verification_id, now)
            except Exception as exc:
                self.users = users_snapshot
                self.email_verifications = tokens_snapshot
                raise TransactionFailed("confirm_email_verification", exc) from exc
            return replace(user)

    def _activate_user(self, user_id: int, now: datetime) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        user.status = UserStatus.ACTIVE
        user.email_verified = True
        user.email_verified_at = now
        user.updated_at = now
        return user

    def _consume_verification(self, verification_id: int, now: datetime) -> None:
        record = self.email_verifications.get(verification_id)
        if not record or record.verified_at is not None:
            raise ConstraintViolation(
                "verification token not consumable", {"id": verification_id}
            )
        record.verified_at = now

    # -- sessions ----------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            self.sessions[session.id] = replace(session)
            return session

    async def enforce_session_limit(self, user_id: int, max_sessions: int) -> int:
        """Drop expired sessions, then the oldest live one when at capacity."""
        with self._data_lock:
            now = utcnow()
            removed = 0
            for sid, sess in list(self.sessions.items()):
                if sess.user_id == user_id and sess.is_expired(now):
                    self.sessions.pop(sid, None)
                    removed += 1
            live = sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )
            if len(live) >= max_sessions:
                self.sessions.pop(live[0].id, None)
                removed += 1
            return removed

    async def list_active_sessions(self) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            return [replace(s) for s in self.sessions.values() if not s.is_expired(now)]

    async def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._data_lock:
            return sorted(
                (replace(s) for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    async def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    async def delete_user_sessions(self, user_id: int) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # -- projects ----------------------------------------------------------

    async def create_project(self, name: str, owner_id: int) -> Project:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("owner does not exist", {"owner_id": owner_id})
            now = utcnow()
            project = Project(
                id=str(uuid.uuid4()),
                name=name,
                owner_id=owner_id,
                created_at=now,
                updated_at=now,
            )
            self.projects[project.id] = project
            self.collaborators[(project.id, owner_id)] = ProjectCollaborator(
                project_id=project.id, user_id=owner_id, role=ProjectRole.OWNER
            )
            return replace(project)

    async def get_project(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self._live_project(project_id)
            return replace(project) if project else None

    async def list_projects_for_user(self, user_id: int) -> List[Project]:
        with self._data_lock:
            member_of = {pid for (pid, uid) in self.collaborators if uid == user_id}
            results = [
                replace(p)
                for p in self.projects.values()
                if p.deleted_at is None and (p.owner_id == user_id or p.id in member_of)
            ]
            return sorted(results, key=lambda p: p.created_at, reverse=True)

    async def update_project(self, project_id: str, name: str) -> Optional[Project]:
        with self._data_lock:
            project = self._live_project(project_id)
            if not project:
                return None
            project.name = name
            project.updated_at = utcnow()
            return replace(project)

    async def soft_delete_project(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self._live_project(project_id)
            if not project:
                return None
            project.deleted_at = utcnow()
            project.updated_at = project.deleted_at
            return replace(project)

    def _live_project(self, project_id: str) -> Optional[Project]:
        project = self.projects.get(project_id)
        if not project or project.deleted_at is not None:
            return None
        return project

    # -- collaborators -----------------------------------------------------

    async def get_collaborator(
        self, project_id: str, user_id: int
    ) -> Optional[ProjectCollaborator]:
        with self._data_lock:
            if not self._live_project(project_id):
                return None
            edge = self.collaborators.get((project_id, user_id))
            return replace(edge) if edge else None

    async def add_collaborator(
        self, project_id: str, user_id: int, role: ProjectRole
    ) -> ProjectCollaborator:
        with self._data_lock:
            if (project_id, user_id) in self.collaborators:
                raise ConstraintViolation(
                    "collaborator already exists",
                    {"project_id": project_id, "user_id": user_id},
                )
            if project_id not in self.projects or user_id not in self.users:
                raise ConstraintViolation(
                    "project or user does not exist",
                    {"project_id": project_id, "user_id": user_id},
                )
            edge = ProjectCollaborator(project_id=project_id, user_id=user_id, role=role)
            self.collaborators[(project_id, user_id)] = edge
            return replace(edge)

    async def update_collaborator_role(
        self, project_id: str, user_id: int, role: ProjectRole
    ) -> Optional[ProjectCollaborator]:
        with self._data_lock:
            edge = self.collaborators.get((project_id, user_id))
            if not edge:
                return None
            edge.role = role
            return replace(edge)

    async def remove_collaborator(self, project_id: str, user_id: int) -> bool:
        with self._data_lock:
            return self.collaborators.pop((project_id, user_id), None) is not None

    async def list_collaborators(self, project_id: str) -> List[CollaboratorSummary]:
        with self._data_lock:
            rows = []
            for (pid, uid), edge in self.collaborators.items():
                user = self.users.get(uid)
                if pid != project_id or not user:
                    continue
                rows.append(
                    CollaboratorSummary(
                        user_id=uid, name=user.name, email=user.email, role=edge.role
                    )
                )
            return sorted(rows, key=lambda r: (_ROLE_ORDER[r.role], r.name))
