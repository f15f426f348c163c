"""
Webhook payload schemas.

Sandboxes post JSON objects discriminated by ``type``. Each endpoint accepts
a closed set of variants; anything else fails validation and is rejected
before it reaches a lifecycle handler.
"""

import json
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError


class InvalidPayloadError(Exception):
    """Body is not JSON or does not match any payload variant."""


# =============================================================================
# PRD documents
# =============================================================================


class PrdTask(BaseModel):
    """A single task tracked in a PRD."""

    id: str
    passes: bool
    category: Optional[str] = None
    description: Optional[str] = None
    title: Optional[str] = None
    steps: Optional[List[str]] = None


class PrdJson(BaseModel):
    """The ``.opencode/state/<prd>/prd.json`` document."""

    prd_name: str = Field(alias='prdName')
    tasks: List[PrdTask]
    context: Optional[Any] = None

    class Config:
        populate_by_name = True

    @property
    def all_tasks_pass(self) -> bool:
        return bool(self.tasks) and all(task.passes for task in self.tasks)


def parse_prd_json(text: Optional[str]) -> Optional[PrdJson]:
    """Parse a PRD document; malformed or missing input yields None."""
    if not text:
        return None
    try:
        return PrdJson.model_validate_json(text)
    except PydanticValidationError:
        return None


# =============================================================================
# Manifest callbacks
# =============================================================================


class ManifestStartedPayload(BaseModel):
    type: Literal['started']
    message: Optional[str] = None


class ManifestTaskLoopStartedPayload(BaseModel):
    type: Literal['task_loop_started']
    branch_name: Optional[str] = Field(default=None, alias='branchName')

    class Config:
        populate_by_name = True


class ManifestProgressPayload(BaseModel):
    type: Literal['progress']
    # JSON encoded PRD document, as produced by ``jq --arg`` in the sandbox
    prd_json: Optional[str] = Field(default=None, alias='prdJson')
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class ManifestCompletedPayload(BaseModel):
    type: Literal['completed']
    prd_json: Optional[str] = Field(default=None, alias='prdJson')

    class Config:
        populate_by_name = True


class ManifestErrorPayload(BaseModel):
    type: Literal['error']
    error: str


ManifestPayload = Annotated[
    Union[
        ManifestStartedPayload,
        ManifestTaskLoopStartedPayload,
        ManifestProgressPayload,
        ManifestCompletedPayload,
        ManifestErrorPayload,
    ],
    Field(discriminator='type'),
]


# =============================================================================
# Invocation (sprite) callbacks
# =============================================================================


class SessionStats(BaseModel):
    message_count: int = Field(default=0, alias='messageCount')
    input_tokens: int = Field(default=0, alias='inputTokens')
    output_tokens: int = Field(default=0, alias='outputTokens')

    class Config:
        populate_by_name = True


class SessionProgress(SessionStats):
    message: Optional[str] = None


class SpriteStartedPayload(BaseModel):
    type: Literal['started']
    message: Optional[str] = None


class SpriteProgressPayload(BaseModel):
    type: Literal['progress']
    progress: SessionProgress


class SpriteCompletedPayload(BaseModel):
    type: Literal['completed']
    summary: Optional[str] = None
    pull_request_url: Optional[str] = Field(default=None, alias='pullRequestUrl')
    branch_name: Optional[str] = Field(default=None, alias='branchName')
    stats: Optional[SessionStats] = None

    class Config:
        populate_by_name = True


class SpriteErrorPayload(BaseModel):
    type: Literal['error']
    error: str


class SpriteQuestionPayload(BaseModel):
    type: Literal['question']
    question: str


SpritePayload = Annotated[
    Union[
        SpriteStartedPayload,
        SpriteProgressPayload,
        SpriteCompletedPayload,
        SpriteErrorPayload,
        SpriteQuestionPayload,
    ],
    Field(discriminator='type'),
]

_manifest_adapter: TypeAdapter = TypeAdapter(ManifestPayload)
_sprite_adapter: TypeAdapter = TypeAdapter(SpritePayload)


def _parse(adapter: TypeAdapter, raw: Union[str, bytes]) -> Any:
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidPayloadError('Body is not valid JSON') from e
    if not isinstance(data, dict):
        raise InvalidPayloadError('Body must be a JSON object')
    try:
        return adapter.validate_python(data)
    except PydanticValidationError as e:
        raise InvalidPayloadError(f'Invalid payload: {e.error_count()} error(s)') from e


def parse_manifest_payload(raw: Union[str, bytes]) -> Any:
    """Parse a verified manifest callback body into its payload variant."""
    return _parse(_manifest_adapter, raw)


def parse_sprite_payload(raw: Union[str, bytes]) -> Any:
    """Parse a verified invocation callback body into its payload variant."""
    return _parse(_sprite_adapter, raw)
