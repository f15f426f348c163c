"""
Invocation (task) lifecycle.

A task runs one prompt in a one-shot sandbox. Moving a task into the
``ritual`` column spawns the sandbox; webhooks on the task's latest session
move the board status and execution state together and always tear the
sandbox down on completion or error. Session status ``completed`` and
``error`` absorb later events.
"""

import logging
from typing import Any, Dict, List, Optional

from .access import get_owned_project
from .config import ServerConfig
from .errors import NotFoundError, ValidationError
from .models import (
    Comment,
    ExecutionState,
    OpencodeSession,
    Project,
    SessionStatus,
    SpriteType,
    Task,
    TaskModel,
    TaskStatus,
    TaskType,
    new_id,
    utcnow,
)
from .spawner import SpriteSpawner
from .sprites_client import SandboxProvider, destroy_sprite_best_effort
from .store import LifecycleStore
from .webhook_payloads import (
    SpriteCompletedPayload,
    SpriteErrorPayload,
    SpriteProgressPayload,
    SpriteQuestionPayload,
    SpriteStartedPayload,
)
from .webhook_security import generate_webhook_secret

logger = logging.getLogger(__name__)

AGENT_NAME = 'Abraxas'

OPENCODE_MODELS = {
    TaskModel.GROK_1: 'xai/grok-3-beta',
    TaskModel.CLAUDE_OPUS_4_5: 'anthropic/claude-opus-4-5-20251101',
    TaskModel.CLAUDE_SONNET_4_5: 'anthropic/claude-sonnet-4-5-20250929',
    TaskModel.CLAUDE_HAIKU_4_5: 'anthropic/claude-haiku-4-5-20251001',
}
DEFAULT_OPENCODE_MODEL = OPENCODE_MODELS[TaskModel.CLAUDE_SONNET_4_5]

NON_TERMINAL_SESSION_STATUSES = (SessionStatus.PENDING, SessionStatus.IN_PROGRESS)
UPDATABLE_TASK_FIELDS = ('title', 'description', 'status', 'type', 'model', 'branch_name')


def get_opencode_model(model: Optional[str]) -> str:
    """Map a task model to the ``provider/model`` id opencode expects."""
    try:
        return OPENCODE_MODELS[TaskModel(model)]
    except ValueError:
        return DEFAULT_OPENCODE_MODEL


def build_prompt(task: Task, comments: List[Comment]) -> str:
    prompt = f'Task: {task.title}\n\n'
    if task.description:
        prompt += f'Description:\n{task.description}\n\n'
    if comments:
        prompt += 'Comments:\n'
        for comment in comments:
            if comment.is_agent_comment:
                author = f'Agent ({comment.agent_name or AGENT_NAME})'
            else:
                author = 'User'
            prompt += f'- {author}: {comment.content}\n'
    return prompt


def _format_stats(payload: SpriteCompletedPayload) -> Optional[str]:
    if payload.stats is None:
        return None
    stats = payload.stats
    return (
        f'{stats.message_count} messages, '
        f'{stats.input_tokens} input tokens, {stats.output_tokens} output tokens'
    )


class InvocationLifecycle:
    """Orchestrates task executions and their sandboxes."""

    def __init__(
        self,
        store: LifecycleStore,
        provider: SandboxProvider,
        spawner: SpriteSpawner,
        config: ServerConfig,
    ):
        self.store = store
        self.provider = provider
        self.spawner = spawner
        self.config = config

    async def _get_task(self, task_id: str) -> Task:
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError('Task not found', entity='task', id=task_id)
        return task

    async def _get_owned_task(
        self, user_id: Optional[str], task_id: str
    ) -> tuple[Task, Project]:
        task = await self._get_task(task_id)
        project = await get_owned_project(self.store, user_id, task.project_id)
        return task, project

    async def _agent_comment(self, task_id: str, content: str) -> Comment:
        return await self.store.insert_comment(
            Comment(
                id=new_id(),
                task_id=task_id,
                content=content,
                is_agent_comment=True,
                agent_name=AGENT_NAME,
            )
        )

    async def _teardown(self, session: OpencodeSession, reason: str) -> None:
        """Destroy the session's sandbox and clear its handle, best effort."""
        sprite_name = session.sprite_name
        if not sprite_name:
            return
        await destroy_sprite_best_effort(self.provider, sprite_name, reason)
        await self.store.update_session(session.id, sprite_name=None, sprite_url=None)
        if session.branch_name:
            record = await self.store.find_sprite(session.branch_name, SpriteType.INVOCATION)
            if record is not None and record.sprite_name in (None, sprite_name):
                await self.store.delete_sprite(record.id)

    async def _teardown_if_settled(self, session_id: str, reason: str) -> None:
        """Destroy a sandbox still attached to a finished session."""
        session = await self.store.get_session(session_id)
        if session is None or not session.status.is_terminal or not session.sprite_name:
            return
        logger.info(f'Session {session_id} is {session.status.value} but still holds a sprite')
        await self._teardown(session, reason)

    # =========================================================================
    # User actions
    # =========================================================================

    async def create_task(
        self,
        user_id: Optional[str],
        project_id: str,
        title: str,
        description: Optional[str] = None,
        type: str = TaskType.FEATURE.value,
        model: str = TaskModel.CLAUDE_SONNET_4_5.value,
    ) -> Dict[str, Any]:
        await get_owned_project(self.store, user_id, project_id)
        title = (title or '').strip()
        if not title:
            raise ValidationError('Title is required', field='title')
        try:
            task_type = TaskType(type)
            task_model = TaskModel(model)
        except ValueError as e:
            raise ValidationError(str(e))

        task = await self.store.insert_task(
            Task(
                id=new_id(),
                project_id=project_id,
                title=title,
                description=description or None,
                type=task_type,
                model=task_model,
            )
        )
        logger.info(f'Created task {task.id} in project {project_id}')
        return {'task': task.to_dict()}

    async def list_tasks(
        self, user_id: Optional[str], project_id: str
    ) -> Dict[str, Any]:
        """The project's board, oldest task first."""
        await get_owned_project(self.store, user_id, project_id)
        tasks = await self.store.list_tasks(project_id)
        return {'tasks': [t.to_dict() for t in tasks]}

    async def update_task(
        self, user_id: Optional[str], task_id: str, **changes: Any
    ) -> Dict[str, Any]:
        """Update task fields. Moving into ``ritual`` starts an execution."""
        task, project = await self._get_owned_task(user_id, task_id)

        unknown = set(changes) - set(UPDATABLE_TASK_FIELDS)
        if unknown:
            raise ValidationError(f'Unknown task fields: {", ".join(sorted(unknown))}')
        fields = {k: v for k, v in changes.items() if v is not None}
        try:
            if 'status' in fields:
                fields['status'] = TaskStatus(fields['status'])
            if 'type' in fields:
                fields['type'] = TaskType(fields['type'])
            if 'model' in fields:
                fields['model'] = TaskModel(fields['model'])
        except ValueError as e:
            raise ValidationError(str(e))

        entering_ritual = (
            fields.get('status') == TaskStatus.RITUAL and task.status != TaskStatus.RITUAL
        )
        if entering_ritual:
            # execute_task sets the column itself once the execution is claimed
            fields.pop('status')

        updated = await self.store.update_task(task_id, **fields) if fields else task

        if entering_ritual:
            return await self.execute_task(user_id, task_id)
        return {'task': updated.to_dict(), 'projectId': project.id}

    async def execute_task(
        self, user_id: Optional[str], task_id: str
    ) -> Dict[str, Any]:
        """Spawn a sandbox that runs the task's prompt.

        The session and its webhook secret exist before the sandbox does. The
        task moves to ``ritual``/``in_progress`` optimistically; a spawn
        failure moves it to ``cursed``/``error``.
        """
        task, project = await self._get_owned_task(user_id, task_id)
        if task.execution_state == ExecutionState.IN_PROGRESS:
            raise ValidationError('Task is already executing', field='executionState')

        comments = await self.store.list_comments(task_id)
        prompt = build_prompt(task, comments)
        logger.info(f'Built prompt for task {task_id}: {prompt[:100]}...')

        session = await self.store.insert_session(
            OpencodeSession(
                id=new_id(),
                task_id=task_id,
                session_id=task_id,
                status=SessionStatus.PENDING,
                webhook_secret=generate_webhook_secret(),
            )
        )
        task = await self.store.update_task(
            task_id,
            status=TaskStatus.RITUAL,
            execution_state=ExecutionState.IN_PROGRESS,
        )

        try:
            result = await self.spawner.spawn_task_sprite(
                task,
                session,
                project,
                prompt,
                project.user_id,
                get_opencode_model(task.model.value),
            )
        except Exception as e:
            logger.error(f'Spawn failed for task {task_id}: {e}')
            await self.store.update_task(
                task_id,
                status=TaskStatus.CURSED,
                execution_state=ExecutionState.ERROR,
            )
            await self.store.update_session(
                session.id,
                expected_status=NON_TERMINAL_SESSION_STATUSES,
                status=SessionStatus.ERROR,
                error_message=str(e),
                completed_at=utcnow(),
            )
            raise

        task = await self.store.update_task(task_id, branch_name=result.branch_name)
        await self._agent_comment(
            task_id,
            f'Execution started on sprite: {result.sprite_name}\nBranch: {result.branch_name}',
        )
        logger.info(f'Spawned sprite {result.sprite_name} for task {task_id}')
        return {
            'task': task.to_dict(),
            'spriteName': result.sprite_name,
            'branchName': result.branch_name,
        }

    async def delete_task(
        self, user_id: Optional[str], task_id: str
    ) -> Dict[str, Any]:
        task, project = await self._get_owned_task(user_id, task_id)
        for session in await self.store.list_sessions(task_id):
            if session.sprite_name:
                await self._teardown(session, 'task deleted')
        await self.store.delete_task(task_id)
        logger.info(f'Deleted task {task_id}')
        return {'projectId': project.id}

    async def destroy_sprite(
        self, user_id: Optional[str], task_id: str
    ) -> Dict[str, Any]:
        """Tear down the sandbox of the task's latest session."""
        task, _ = await self._get_owned_task(user_id, task_id)
        session = await self.store.get_latest_session(task_id)
        if session is None or not session.sprite_name:
            raise NotFoundError('No sprite found for this task', entity='sprite', id=task_id)

        await self._teardown(session, 'destroyed by user')
        await self.store.update_session(
            session.id,
            expected_status=NON_TERMINAL_SESSION_STATUSES,
            status=SessionStatus.ERROR,
            error_message='Sprite destroyed by user',
            completed_at=utcnow(),
        )
        if task.execution_state == ExecutionState.IN_PROGRESS:
            await self.store.update_task(task_id, execution_state=ExecutionState.IDLE)
        return {'taskId': task_id}

    async def add_comment(
        self, user_id: Optional[str], task_id: str, content: str
    ) -> Dict[str, Any]:
        await self._get_owned_task(user_id, task_id)
        content = (content or '').strip()
        if not content:
            raise ValidationError('Comment cannot be empty', field='content')
        comment = await self.store.insert_comment(
            Comment(id=new_id(), task_id=task_id, content=content, user_id=user_id)
        )
        return {'comment': comment.to_dict()}

    async def list_comments(
        self, user_id: Optional[str], task_id: str
    ) -> Dict[str, Any]:
        await self._get_owned_task(user_id, task_id)
        comments = await self.store.list_comments(task_id)
        return {'comments': [c.to_dict() for c in comments]}

    async def get_task_details(
        self, user_id: Optional[str], task_id: str
    ) -> Dict[str, Any]:
        task, _ = await self._get_owned_task(user_id, task_id)
        comments = await self.store.list_comments(task_id)
        session = await self.store.get_latest_session(task_id)
        return {
            'task': task.to_dict(),
            'comments': [c.to_dict() for c in comments],
            'latestSession': session.to_dict() if session else None,
        }

    # =========================================================================
    # Webhook handlers
    # =========================================================================

    async def handle_started(
        self, task_id: str, session_id: str, payload: SpriteStartedPayload
    ) -> None:
        session = await self.store.update_session(
            session_id,
            expected_status=SessionStatus.PENDING,
            status=SessionStatus.IN_PROGRESS,
        )
        if session is None:
            logger.debug(f'Started event ignored for session {session_id}')
            return
        await self._agent_comment(
            task_id,
            f'🔥 **Execution started**\n\n{payload.message or "Sprite execution started"}',
        )

    async def handle_progress(
        self, task_id: str, session_id: str, payload: SpriteProgressPayload
    ) -> None:
        progress = payload.progress
        session = await self.store.update_session(
            session_id,
            expected_status=NON_TERMINAL_SESSION_STATUSES,
            message_count=progress.message_count,
            input_tokens=progress.input_tokens,
            output_tokens=progress.output_tokens,
        )
        if session is None:
            logger.debug(f'Progress event ignored for settled session {session_id}')

    async def handle_completed(
        self, task_id: str, session_id: str, payload: SpriteCompletedPayload
    ) -> None:
        now = utcnow()
        fields: Dict[str, Any] = {
            'status': SessionStatus.COMPLETED,
            'completed_at': now,
            'pull_request_url': payload.pull_request_url,
        }
        if payload.branch_name:
            fields['branch_name'] = payload.branch_name
        if payload.stats is not None:
            fields['message_count'] = payload.stats.message_count
            fields['input_tokens'] = payload.stats.input_tokens
            fields['output_tokens'] = payload.stats.output_tokens

        session = await self.store.update_session(
            session_id, expected_status=NON_TERMINAL_SESSION_STATUSES, **fields
        )
        if session is None:
            logger.debug(f'Completed event ignored for settled session {session_id}')
            await self._teardown_if_settled(session_id, 'execution completed')
            return

        task_fields: Dict[str, Any] = {
            'status': TaskStatus.TRIAL,
            'execution_state': ExecutionState.AWAITING_REVIEW,
            'completed_at': now,
        }
        if payload.branch_name:
            task_fields['branch_name'] = payload.branch_name
        await self.store.update_task(task_id, **task_fields)

        content = (
            '✓ **Execution completed**\n\n'
            f'{payload.summary or "Task execution completed successfully"}'
        )
        if payload.pull_request_url:
            content += f'\n\n**PR:** {payload.pull_request_url}'
        stats = _format_stats(payload)
        if stats:
            content += f'\n\n**Stats:** {stats}'
        await self._agent_comment(task_id, content)

        logger.info(f'Task {task_id} execution completed')
        await self._teardown(session, 'execution completed')

    async def handle_error(
        self, task_id: str, session_id: str, payload: SpriteErrorPayload
    ) -> None:
        session = await self.store.update_session(
            session_id,
            expected_status=NON_TERMINAL_SESSION_STATUSES,
            status=SessionStatus.ERROR,
            error_message=payload.error,
            logs=payload.error,
            completed_at=utcnow(),
        )
        if session is None:
            logger.debug(f'Error event ignored for settled session {session_id}')
            await self._teardown_if_settled(session_id, 'execution error')
            return

        await self.store.update_task(
            task_id,
            status=TaskStatus.CURSED,
            execution_state=ExecutionState.ERROR,
        )
        await self._agent_comment(
            task_id,
            '✗ **Execution failed**\n\n'
            f'**Error:** {payload.error}\n\n'
            'Please review the error and try again.',
        )
        logger.info(f'Task {task_id} execution failed: {payload.error}')
        await self._teardown(session, 'execution error')

    async def handle_question(
        self, task_id: str, session_id: str, payload: SpriteQuestionPayload
    ) -> None:
        await self._get_task(task_id)
        await self._agent_comment(
            task_id,
            f'❓ **Question from Abraxas:**\n\n{payload.question}\n\n'
            'Please respond in the comments to continue execution.',
        )
