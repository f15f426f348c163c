"""
Persisted records for the lifecycle store.

Records are plain dataclasses keyed by an opaque string id. Timestamps are
timezone-aware UTC datetimes.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ManifestStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    RUNNING = 'running'
    COMPLETED = 'completed'
    ERROR = 'error'

    @property
    def is_terminal(self) -> bool:
        return self in (ManifestStatus.COMPLETED, ManifestStatus.ERROR)


ACTIVE_MANIFEST_STATUSES = (
    ManifestStatus.PENDING,
    ManifestStatus.ACTIVE,
    ManifestStatus.RUNNING,
)


class SpriteType(str, Enum):
    MANIFEST = 'manifest'
    INVOCATION = 'invocation'


class SpriteStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    RUNNING = 'running'
    ERROR = 'error'


class TaskStatus(str, Enum):
    """Board columns."""

    ABYSS = 'abyss'
    ALTAR = 'altar'
    RITUAL = 'ritual'
    CURSED = 'cursed'
    TRIAL = 'trial'
    VANQUISHED = 'vanquished'


class ExecutionState(str, Enum):
    IDLE = 'idle'
    IN_PROGRESS = 'in_progress'
    AWAITING_REVIEW = 'awaiting_review'
    COMPLETED = 'completed'
    ERROR = 'error'


class TaskType(str, Enum):
    BUG = 'bug'
    FEATURE = 'feature'
    PLAN = 'plan'
    OTHER = 'other'


class TaskModel(str, Enum):
    GROK_1 = 'grok-1'
    CLAUDE_OPUS_4_5 = 'claude-opus-4-5'
    CLAUDE_SONNET_4_5 = 'claude-sonnet-4-5'
    CLAUDE_HAIKU_4_5 = 'claude-haiku-4-5'


class SessionStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    ERROR = 'error'

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ERROR)


class Record:
    """Shared serialization for persisted dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in asdict(self).items():
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            result[key] = value
        return result


@dataclass
class User(Record):
    id: str
    name: str = ''
    email: str = ''
    # Encrypted agent-runtime auth.json
    encrypted_opencode_auth: Optional[str] = None
    anthropic_oauth_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Project(Record):
    id: str
    user_id: str
    name: str
    repository_url: str
    encrypted_github_token: str
    description: Optional[str] = None
    local_setup_script: Optional[str] = None
    local_setup_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.pop('encrypted_github_token', None)
        return result


@dataclass
class Manifest(Record):
    id: str
    project_id: str
    name: str
    prd_name: Optional[str] = None
    status: ManifestStatus = ManifestStatus.PENDING
    sprite_name: Optional[str] = None
    sprite_url: Optional[str] = None
    sprite_password: Optional[str] = None
    webhook_secret: Optional[str] = None
    error_message: Optional[str] = None
    prd_json: Optional[str] = None
    last_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        # Never hand secrets to callers
        result.pop('webhook_secret', None)
        result.pop('sprite_password', None)
        return result


@dataclass
class Sprite(Record):
    id: str
    project_id: str
    branch_name: str
    type: SpriteType
    status: SpriteStatus = SpriteStatus.PENDING
    sprite_name: Optional[str] = None
    sprite_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.pop('webhook_secret', None)
        return result


@dataclass
class Task(Record):
    id: str
    project_id: str
    title: str
    type: TaskType = TaskType.FEATURE
    model: TaskModel = TaskModel.CLAUDE_SONNET_4_5
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.ABYSS
    execution_state: ExecutionState = ExecutionState.IDLE
    branch_name: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Comment(Record):
    id: str
    task_id: str
    content: str
    user_id: Optional[str] = None
    is_agent_comment: bool = False
    agent_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OpencodeSession(Record):
    id: str
    task_id: str
    session_id: str
    status: SessionStatus = SessionStatus.PENDING
    execution_mode: str = 'sprite'
    sprite_name: Optional[str] = None
    sprite_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    branch_name: Optional[str] = None
    pull_request_url: Optional[str] = None
    error_message: Optional[str] = None
    logs: Optional[str] = None
    message_count: Optional[int] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.pop('webhook_secret', None)
        return result
