"""
Lifecycle state store.

The store is the single source of truth for manifests, sprites, tasks,
comments and sessions. Every mutation touches one record. Status transitions
use a conditional update: ``update_manifest(id, expected_status=...)`` only
applies when the stored status still matches, which is how concurrent
webhook and polling paths settle on a single winner.
"""

import dataclasses
import logging
from abc import ABC, abstractmethod
from asyncio import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from .errors import NotFoundError
from .models import (
    ACTIVE_MANIFEST_STATUSES,
    Comment,
    Manifest,
    ManifestStatus,
    OpencodeSession,
    Project,
    SessionStatus,
    Sprite,
    SpriteType,
    Task,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

R = TypeVar('R')

ExpectedStatus = Optional[Union[Any, Tuple[Any, ...], List[Any]]]


def _as_status_set(expected: ExpectedStatus) -> Optional[Tuple[Any, ...]]:
    if expected is None:
        return None
    if isinstance(expected, (tuple, list, set, frozenset)):
        return tuple(expected)
    return (expected,)


class LifecycleStore(ABC):
    """Keyed persistence for lifecycle records."""

    # Users and projects

    @abstractmethod
    async def insert_user(self, user: User) -> User:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def update_user(self, user_id: str, **fields: Any) -> User:
        pass

    @abstractmethod
    async def insert_project(self, project: Project) -> Project:
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    async def update_project(self, project_id: str, **fields: Any) -> Project:
        pass

    @abstractmethod
    async def list_projects(self, user_id: str) -> List[Project]:
        """Projects owned by a user, oldest first."""

    # Manifests

    @abstractmethod
    async def insert_manifest(self, manifest: Manifest) -> Manifest:
        pass

    @abstractmethod
    async def insert_manifest_if_none_active(
        self, manifest: Manifest
    ) -> Optional[Manifest]:
        """Insert unless the project already has a pending, active or running manifest.

        Returns the inserted record, or None when another manifest is active.
        The check and the insert are one atomic step.
        """

    @abstractmethod
    async def get_manifest(self, manifest_id: str) -> Optional[Manifest]:
        pass

    @abstractmethod
    async def update_manifest(
        self,
        manifest_id: str,
        expected_status: ExpectedStatus = None,
        **fields: Any,
    ) -> Optional[Manifest]:
        """Update a manifest.

        Returns the updated record, or None when ``expected_status`` was given
        and the stored status no longer matches. Raises NotFoundError when the
        manifest does not exist.
        """

    @abstractmethod
    async def delete_manifest(self, manifest_id: str) -> bool:
        pass

    @abstractmethod
    async def list_manifests(self, project_id: str) -> List[Manifest]:
        """Manifests of a project, newest first."""

    @abstractmethod
    async def find_active_manifest(self, project_id: str) -> Optional[Manifest]:
        """The project's manifest in pending, active or running, if any."""

    # Sprites

    @abstractmethod
    async def upsert_sprite(self, sprite: Sprite) -> Sprite:
        """Insert a sprite, replacing any record for the same branch and type."""

    @abstractmethod
    async def find_sprite(
        self, branch_name: str, type: SpriteType
    ) -> Optional[Sprite]:
        pass

    @abstractmethod
    async def update_sprite(self, sprite_id: str, **fields: Any) -> Sprite:
        pass

    @abstractmethod
    async def delete_sprite(self, sprite_id: str) -> bool:
        pass

    # Tasks and comments

    @abstractmethod
    async def insert_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def update_task(self, task_id: str, **fields: Any) -> Task:
        pass

    @abstractmethod
    async def delete_task(self, task_id: str) -> bool:
        pass

    @abstractmethod
    async def list_tasks(self, project_id: str) -> List[Task]:
        pass

    @abstractmethod
    async def insert_comment(self, comment: Comment) -> Comment:
        pass

    @abstractmethod
    async def list_comments(self, task_id: str) -> List[Comment]:
        """Comments of a task, oldest first."""

    # Sessions

    @abstractmethod
    async def insert_session(self, session: OpencodeSession) -> OpencodeSession:
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[OpencodeSession]:
        pass

    @abstractmethod
    async def get_latest_session(self, task_id: str) -> Optional[OpencodeSession]:
        pass

    @abstractmethod
    async def list_sessions(self, task_id: str) -> List[OpencodeSession]:
        pass

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        expected_status: ExpectedStatus = None,
        **fields: Any,
    ) -> Optional[OpencodeSession]:
        """Conditional update with the same contract as ``update_manifest``."""


class InMemoryLifecycleStore(LifecycleStore):
    """Dict-backed store. One lock serializes every mutation."""

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._projects: Dict[str, Project] = {}
        self._manifests: Dict[str, Manifest] = {}
        self._sprites: Dict[str, Sprite] = {}
        self._tasks: Dict[str, Task] = {}
        self._comments: Dict[str, Comment] = {}
        self._sessions: Dict[str, OpencodeSession] = {}
        self._lock = Lock()

    @staticmethod
    def _copy(record: Optional[R]) -> Optional[R]:
        return dataclasses.replace(record) if record is not None else None

    async def _insert(self, table: Dict[str, R], record: R) -> R:
        async with self._lock:
            table[record.id] = dataclasses.replace(record)
        return dataclasses.replace(record)

    async def _get(self, table: Dict[str, R], record_id: str) -> Optional[R]:
        async with self._lock:
            return self._copy(table.get(record_id))

    async def _delete(self, table: Dict[str, R], record_id: str) -> bool:
        async with self._lock:
            return table.pop(record_id, None) is not None

    async def _update(
        self,
        table: Dict[str, R],
        entity: str,
        record_id: str,
        expected_status: ExpectedStatus,
        fields: Dict[str, Any],
    ) -> Optional[R]:
        allowed = _as_status_set(expected_status)
        async with self._lock:
            current = table.get(record_id)
            if current is None:
                raise NotFoundError(
                    f'{entity} not found', entity=entity, id=record_id
                )
            if allowed is not None and current.status not in allowed:
                logger.debug(
                    f'{entity} {record_id} update skipped: status is '
                    f'{current.status.value}'
                )
                return None
            if hasattr(current, 'updated_at') and 'updated_at' not in fields:
                fields = {**fields, 'updated_at': utcnow()}
            updated = dataclasses.replace(current, **fields)
            table[record_id] = updated
            return dataclasses.replace(updated)

    @staticmethod
    def _sorted(records: Iterable[R], newest_first: bool = False) -> List[R]:
        # Ties on created_at fall back to insertion order
        ordered = list(records)
        if newest_first:
            ordered.reverse()
        return sorted(
            (dataclasses.replace(r) for r in ordered),
            key=lambda r: r.created_at,
            reverse=newest_first,
        )

    # Users and projects

    async def insert_user(self, user: User) -> User:
        return await self._insert(self._users, user)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._get(self._users, user_id)

    async def update_user(self, user_id: str, **fields: Any) -> User:
        return await self._update(self._users, 'User', user_id, None, fields)

    async def insert_project(self, project: Project) -> Project:
        return await self._insert(self._projects, project)

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._get(self._projects, project_id)

    async def update_project(self, project_id: str, **fields: Any) -> Project:
        return await self._update(self._projects, 'Project', project_id, None, fields)

    async def list_projects(self, user_id: str) -> List[Project]:
        async with self._lock:
            matches = [p for p in self._projects.values() if p.user_id == user_id]
        return self._sorted(matches)

    # Manifests

    async def insert_manifest(self, manifest: Manifest) -> Manifest:
        return await self._insert(self._manifests, manifest)

    async def insert_manifest_if_none_active(
        self, manifest: Manifest
    ) -> Optional[Manifest]:
        async with self._lock:
            for existing in self._manifests.values():
                if (
                    existing.project_id == manifest.project_id
                    and existing.status in ACTIVE_MANIFEST_STATUSES
                ):
                    return None
            self._manifests[manifest.id] = dataclasses.replace(manifest)
        return dataclasses.replace(manifest)

    async def get_manifest(self, manifest_id: str) -> Optional[Manifest]:
        return await self._get(self._manifests, manifest_id)

    async def update_manifest(
        self,
        manifest_id: str,
        expected_status: ExpectedStatus = None,
        **fields: Any,
    ) -> Optional[Manifest]:
        return await self._update(
            self._manifests, 'Manifest', manifest_id, expected_status, fields
        )

    async def delete_manifest(self, manifest_id: str) -> bool:
        return await self._delete(self._manifests, manifest_id)

    async def list_manifests(self, project_id: str) -> List[Manifest]:
        async with self._lock:
            matches = [
                m for m in self._manifests.values() if m.project_id == project_id
            ]
        return self._sorted(matches, newest_first=True)

    async def find_active_manifest(self, project_id: str) -> Optional[Manifest]:
        for manifest in await self.list_manifests(project_id):
            if manifest.status in ACTIVE_MANIFEST_STATUSES:
                return manifest
        return None

    # Sprites

    async def upsert_sprite(self, sprite: Sprite) -> Sprite:
        async with self._lock:
            for existing_id, existing in list(self._sprites.items()):
                if (
                    existing.branch_name == sprite.branch_name
                    and existing.type == sprite.type
                    and existing_id != sprite.id
                ):
                    del self._sprites[existing_id]
            self._sprites[sprite.id] = dataclasses.replace(sprite)
        return dataclasses.replace(sprite)

    async def find_sprite(
        self, branch_name: str, type: SpriteType
    ) -> Optional[Sprite]:
        async with self._lock:
            for sprite in self._sprites.values():
                if sprite.branch_name == branch_name and sprite.type == type:
                    return dataclasses.replace(sprite)
        return None

    async def update_sprite(self, sprite_id: str, **fields: Any) -> Sprite:
        return await self._update(self._sprites, 'Sprite', sprite_id, None, fields)

    async def delete_sprite(self, sprite_id: str) -> bool:
        return await self._delete(self._sprites, sprite_id)

    # Tasks and comments

    async def insert_task(self, task: Task) -> Task:
        return await self._insert(self._tasks, task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._get(self._tasks, task_id)

    async def update_task(self, task_id: str, **fields: Any) -> Task:
        return await self._update(self._tasks, 'Task', task_id, None, fields)

    async def delete_task(self, task_id: str) -> bool:
        async with self._lock:
            removed = self._tasks.pop(task_id, None) is not None
            if removed:
                # Comments and sessions belong to the task
                for table in (self._comments, self._sessions):
                    for key in [k for k, v in table.items() if v.task_id == task_id]:
                        del table[key]
        return removed

    async def list_tasks(self, project_id: str) -> List[Task]:
        async with self._lock:
            matches = [t for t in self._tasks.values() if t.project_id == project_id]
        return self._sorted(matches)

    async def insert_comment(self, comment: Comment) -> Comment:
        return await self._insert(self._comments, comment)

    async def list_comments(self, task_id: str) -> List[Comment]:
        async with self._lock:
            matches = [c for c in self._comments.values() if c.task_id == task_id]
        return self._sorted(matches)

    # Sessions

    async def insert_session(self, session: OpencodeSession) -> OpencodeSession:
        return await self._insert(self._sessions, session)

    async def get_session(self, session_id: str) -> Optional[OpencodeSession]:
        return await self._get(self._sessions, session_id)

    async def list_sessions(self, task_id: str) -> List[OpencodeSession]:
        async with self._lock:
            matches = [s for s in self._sessions.values() if s.task_id == task_id]
        return self._sorted(matches, newest_first=True)

    async def get_latest_session(self, task_id: str) -> Optional[OpencodeSession]:
        sessions = await self.list_sessions(task_id)
        return sessions[0] if sessions else None

    async def update_session(
        self,
        session_id: str,
        expected_status: ExpectedStatus = None,
        **fields: Any,
    ) -> Optional[OpencodeSession]:
        return await self._update(
            self._sessions, 'Session', session_id, expected_status, fields
        )


__all__ = [
    'InMemoryLifecycleStore',
    'LifecycleStore',
    'ManifestStatus',
    'SessionStatus',
]
