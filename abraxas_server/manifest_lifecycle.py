"""
Manifest lifecycle state machine.

Statuses move ``pending -> active -> running -> completed | error``.
``completed`` and ``error`` absorb every later event. Each transition is a
conditional update on the manifest's current status, so a webhook and the
repository polling path can race on completion and exactly one of them
performs the teardown.

User actions raise domain errors (``NotFoundError``, ``ValidationError``,
``UnauthorizedError``, ``AlreadyRunningError``); the action router turns
them into ``ActionResult`` values. Webhook handlers are called by the
dispatcher after the signature has been verified.
"""

import asyncio
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from .access import get_owned_project
from .config import ServerConfig
from .crypto import decrypt_token
from .errors import (
    AbraxasError,
    AlreadyRunningError,
    NotFoundError,
    SpriteExecutionError,
    ValidationError,
)
from .github_client import ManifestPrdData, RepositoryClient
from .models import (
    ACTIVE_MANIFEST_STATUSES,
    Manifest,
    ManifestStatus,
    Project,
    SpriteStatus,
    SpriteType,
    new_id,
    utcnow,
)
from .spawner import SpriteSpawner, get_manifest_branch_name, manifest_sprite_branch
from .sprite_scripts import (
    SANDBOX_LOG,
    WRAPPER_PATH,
    generate_task_loop_wrapper_script,
    launch_wrapper_command,
)
from .sprites_client import SandboxProvider, destroy_sprite_best_effort
from .store import LifecycleStore
from .webhook_payloads import (
    ManifestCompletedPayload,
    ManifestErrorPayload,
    ManifestProgressPayload,
    ManifestStartedPayload,
    ManifestTaskLoopStartedPayload,
)
from .webhook_security import generate_webhook_secret

logger = logging.getLogger(__name__)

KEBAB_CASE_REGEX = re.compile(r'^[a-z][a-z0-9]*(-[a-z0-9]+)*$')
PRD_EDITABLE_STATUSES = (ManifestStatus.PENDING, ManifestStatus.ACTIVE)
DEFAULT_TAIL_LINES = 20
PRD_FETCH_CONCURRENCY = 5


def validate_prd_name(prd_name: str) -> None:
    if not KEBAB_CASE_REGEX.match(prd_name or ''):
        raise ValidationError(
            'PRD name must be kebab-case (e.g., my-feature)', field='prdName'
        )


class ManifestLifecycle:
    """Orchestrates manifests and their sandboxes."""

    def __init__(
        self,
        store: LifecycleStore,
        provider: SandboxProvider,
        spawner: SpriteSpawner,
        repo: RepositoryClient,
        config: ServerConfig,
    ):
        self.store = store
        self.provider = provider
        self.spawner = spawner
        self.repo = repo
        self.config = config

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _get_manifest(self, manifest_id: str) -> Manifest:
        manifest = await self.store.get_manifest(manifest_id)
        if manifest is None:
            raise NotFoundError('Manifest not found', entity='manifest', id=manifest_id)
        return manifest

    async def _get_owned_manifest(
        self, user_id: Optional[str], manifest_id: str
    ) -> tuple[Manifest, Project]:
        manifest = await self._get_manifest(manifest_id)
        project = await get_owned_project(self.store, user_id, manifest.project_id)
        return manifest, project

    async def _teardown(self, manifest: Manifest, reason: str) -> None:
        """Destroy the manifest's sandbox and clear every handle to it.

        Destruction is best effort; the transition that triggered teardown has
        already been recorded and does not fail because of it.
        """
        sprite_name = manifest.sprite_name
        await destroy_sprite_best_effort(self.provider, sprite_name, reason)

        if sprite_name:
            await self.store.update_manifest(
                manifest.id, sprite_name=None, sprite_url=None, sprite_password=None
            )

        record = await self.store.find_sprite(
            manifest_sprite_branch(manifest), SpriteType.MANIFEST
        )
        # A newer sprite generation on the same branch is left alone
        if record is not None and record.sprite_name in (None, sprite_name):
            await self.store.delete_sprite(record.id)

    async def _teardown_if_settled(self, manifest_id: str, reason: str) -> None:
        """Destroy a sandbox still attached to a completed or failed manifest."""
        manifest = await self.store.get_manifest(manifest_id)
        if manifest is None or not manifest.status.is_terminal or not manifest.sprite_name:
            return
        logger.info(
            f'Manifest {manifest_id} is {manifest.status.value} '
            f'but still holds sprite {manifest.sprite_name}'
        )
        await self._teardown(manifest, reason)

    async def _mark_sprite(self, manifest: Manifest, status: SpriteStatus) -> None:
        record = await self.store.find_sprite(
            manifest_sprite_branch(manifest), SpriteType.MANIFEST
        )
        if record is not None and record.sprite_name == manifest.sprite_name:
            await self.store.update_sprite(record.id, status=status)

    # =========================================================================
    # User actions
    # =========================================================================

    async def create_manifest(
        self,
        user_id: Optional[str],
        project_id: str,
        name: str,
        prd_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a manifest and provision its sandbox.

        The webhook secret is persisted with the pending record before the
        sandbox exists. A spawn failure moves the manifest to ``error`` and
        re-raises.
        """
        project = await get_owned_project(self.store, user_id, project_id)

        name = (name or '').strip()
        if not name:
            raise ValidationError('Manifest name is required', field='name')
        if prd_name:
            validate_prd_name(prd_name)

        manifest = await self.store.insert_manifest_if_none_active(
            Manifest(
                id=new_id(),
                project_id=project_id,
                name=name,
                prd_name=prd_name or None,
                status=ManifestStatus.PENDING,
                webhook_secret=generate_webhook_secret(),
            )
        )
        if manifest is None:
            active = await self.store.find_active_manifest(project_id)
            status = active.status.value if active is not None else 'unknown'
            raise ValidationError(
                f'An active manifest already exists for this project (status: {status})',
                field='projectId',
            )
        logger.info(f'Created manifest {manifest.id} for project {project_id} with status=pending')

        try:
            result = await self.spawner.spawn_manifest_sprite(manifest, project, project.user_id)
        except Exception as e:
            logger.error(f'Spawn failed for manifest {manifest.id}: {e}')
            await self.store.update_manifest(
                manifest.id,
                expected_status=ACTIVE_MANIFEST_STATUSES,
                status=ManifestStatus.ERROR,
                error_message=str(e),
                completed_at=utcnow(),
            )
            raise

        # A fast 'started' webhook may already have moved it on
        await self.store.update_manifest(
            manifest.id,
            expected_status=ManifestStatus.PENDING,
            status=ManifestStatus.ACTIVE,
        )
        manifest = await self._get_manifest(manifest.id)
        logger.info(f'Manifest {manifest.id} sprite spawned: {result.sprite_name}')

        return {
            'manifest': manifest.to_dict(),
            'spriteUrl': result.sprite_url,
            'spritePassword': result.sprite_password,
        }

    async def list_manifests(
        self, user_id: Optional[str], project_id: str
    ) -> Dict[str, Any]:
        await get_owned_project(self.store, user_id, project_id)
        manifests = await self.store.list_manifests(project_id)
        return {'manifests': [m.to_dict() for m in manifests]}

    async def delete_manifest(
        self, user_id: Optional[str], manifest_id: str
    ) -> Dict[str, Any]:
        """Delete a manifest in any status, always tearing down its sandbox."""
        manifest, _ = await self._get_owned_manifest(user_id, manifest_id)

        await destroy_sprite_best_effort(self.provider, manifest.sprite_name, 'manifest deleted')
        record = await self.store.find_sprite(
            manifest_sprite_branch(manifest), SpriteType.MANIFEST
        )
        if record is not None:
            if record.sprite_name and record.sprite_name != manifest.sprite_name:
                await destroy_sprite_best_effort(
                    self.provider, record.sprite_name, 'manifest deleted'
                )
            await self.store.delete_sprite(record.id)

        await self.store.delete_manifest(manifest_id)
        logger.info(f'Deleted manifest {manifest_id}')
        return {'projectId': manifest.project_id}

    async def update_prd_name(
        self, user_id: Optional[str], manifest_id: str, prd_name: str
    ) -> Dict[str, Any]:
        """Rename the PRD. Only allowed while pending or active.

        The working branch is derived from the PRD name, so renaming during a
        run would split the agent from its branch.
        """
        validate_prd_name(prd_name)
        manifest, _ = await self._get_owned_manifest(user_id, manifest_id)

        if manifest.status not in PRD_EDITABLE_STATUSES:
            raise ValidationError(
                f'Cannot update PRD name when manifest is {manifest.status.value}',
                field='status',
            )

        updated = await self.store.update_manifest(
            manifest_id, expected_status=PRD_EDITABLE_STATUSES, prd_name=prd_name
        )
        if updated is None:
            current = await self._get_manifest(manifest_id)
            raise ValidationError(
                f'Cannot update PRD name when manifest is {current.status.value}',
                field='status',
            )

        # The sprite record is keyed by the branch the PRD name derives
        old_branch = manifest_sprite_branch(manifest)
        new_branch = manifest_sprite_branch(updated)
        if new_branch != old_branch:
            record = await self.store.find_sprite(old_branch, SpriteType.MANIFEST)
            if record is not None:
                await self.store.update_sprite(record.id, branch_name=new_branch)
                logger.info(f'Sprite record for manifest {manifest_id} moved to {new_branch}')
        logger.info(f'Updated prd name to {prd_name} for manifest {manifest_id}')
        return {'projectId': manifest.project_id, 'prdName': prd_name}

    async def start_task_loop(
        self, user_id: Optional[str], manifest_id: str
    ) -> Dict[str, Any]:
        manifest, project = await self._get_owned_manifest(user_id, manifest_id)

        if manifest.status != ManifestStatus.ACTIVE:
            raise ValidationError(
                'Manifest must be active to start task loop '
                f'(current: {manifest.status.value})',
                field='status',
            )
        if not manifest.sprite_name:
            raise ValidationError('Manifest has no sprite associated', field='spriteName')
        if not manifest.webhook_secret:
            raise ValidationError('Manifest has no webhook secret', field='webhookSecret')
        if not manifest.prd_name:
            raise ValidationError(
                'PRD name must be set before starting task loop', field='prdName'
            )

        wrapper = generate_task_loop_wrapper_script(
            prd_name=manifest.prd_name,
            webhook_url=self.config.manifest_webhook_url(manifest.id),
            webhook_secret=manifest.webhook_secret,
            has_local_setup=project.local_setup_enabled,
        )
        await self.provider.exec_command(
            manifest.sprite_name,
            ['bash', '-c', f'cat > {WRAPPER_PATH} && chmod +x {WRAPPER_PATH}'],
            stdin=wrapper,
        )
        await self.provider.exec_command(
            manifest.sprite_name, ['bash', '-c', launch_wrapper_command()]
        )

        updated = await self.store.update_manifest(
            manifest_id,
            expected_status=ManifestStatus.ACTIVE,
            status=ManifestStatus.RUNNING,
        )
        if updated is None:
            logger.info(f'Manifest {manifest_id} left active before task loop start was recorded')
        else:
            await self._mark_sprite(updated, SpriteStatus.RUNNING)
        logger.info(f'Started task loop on sprite {manifest.sprite_name}')
        return {'projectId': manifest.project_id}

    async def stop_task_loop(
        self, user_id: Optional[str], manifest_id: str
    ) -> Dict[str, Any]:
        """Kill the task loop, keeping the sandbox, and return to active."""
        manifest, _ = await self._get_owned_manifest(user_id, manifest_id)

        if manifest.status != ManifestStatus.RUNNING:
            raise ValidationError(
                'Manifest must be running to stop task loop '
                f'(current: {manifest.status.value})',
                field='status',
            )
        if not manifest.sprite_name:
            raise ValidationError('Manifest has no sprite associated', field='spriteName')

        await self.provider.exec_command(manifest.sprite_name, ['pkill', '-f', 'task-loop'])
        updated = await self.store.update_manifest(
            manifest_id,
            expected_status=ManifestStatus.RUNNING,
            status=ManifestStatus.ACTIVE,
        )
        if updated is not None:
            await self._mark_sprite(updated, SpriteStatus.ACTIVE)
        logger.info(f'Stopped task loop on sprite {manifest.sprite_name}')
        return {'projectId': manifest.project_id}

    async def spawn_sprite(
        self, user_id: Optional[str], manifest_id: str
    ) -> Dict[str, Any]:
        """Provision a new sprite generation for an existing manifest."""
        manifest, project = await self._get_owned_manifest(user_id, manifest_id)

        if manifest.status.is_terminal:
            raise ValidationError(
                f'Cannot spawn a sprite for a {manifest.status.value} manifest',
                field='status',
            )
        existing = await self.store.find_sprite(
            manifest_sprite_branch(manifest), SpriteType.MANIFEST
        )
        if manifest.sprite_name or (existing is not None and existing.sprite_name):
            raise AlreadyRunningError('Sprite already running for this manifest')
        if not manifest.webhook_secret:
            manifest = await self.store.update_manifest(
                manifest_id, webhook_secret=generate_webhook_secret()
            )

        result = await self.spawner.spawn_manifest_sprite(manifest, project, project.user_id)
        logger.info(f'Sprite spawned for manifest {manifest_id}: {result.sprite_name}')
        # Completion may have landed while the sandbox was provisioning
        await self._teardown_if_settled(manifest_id, 'manifest settled during spawn')
        return {'spriteName': result.sprite_name, 'spriteUrl': result.sprite_url}

    async def stop_sprite(
        self, user_id: Optional[str], project_id: str, branch_name: str
    ) -> Dict[str, Any]:
        await get_owned_project(self.store, user_id, project_id)

        sprite = await self.store.find_sprite(branch_name, SpriteType.MANIFEST)
        if sprite is None or sprite.project_id != project_id:
            raise NotFoundError(
                'No sprite found for this manifest', entity='sprite', id=branch_name
            )

        await destroy_sprite_best_effort(self.provider, sprite.sprite_name, 'stopped by user')
        await self.store.delete_sprite(sprite.id)

        if sprite.sprite_name:
            for manifest in await self.store.list_manifests(project_id):
                if manifest.sprite_name == sprite.sprite_name:
                    await self.store.update_manifest(
                        manifest.id, sprite_name=None, sprite_url=None, sprite_password=None
                    )
        logger.info(f'Sprite record deleted for branch {branch_name}')
        return {}

    async def get_sprite_for_branch(
        self, user_id: Optional[str], project_id: str, branch_name: str
    ) -> Dict[str, Any]:
        await get_owned_project(self.store, user_id, project_id)
        sprite = await self.store.find_sprite(branch_name, SpriteType.MANIFEST)
        if sprite is None or sprite.project_id != project_id:
            return {'sprite': None}
        return {'sprite': sprite.to_dict()}

    async def tail_log(
        self,
        user_id: Optional[str],
        manifest_id: str,
        lines: int = DEFAULT_TAIL_LINES,
    ) -> Dict[str, Any]:
        manifest, _ = await self._get_owned_manifest(user_id, manifest_id)
        if not manifest.sprite_name:
            raise ValidationError('Sprite name is required', field='spriteName')
        lines = max(1, min(int(lines), 1000))
        try:
            output = await self.provider.exec_command(
                manifest.sprite_name, ['tail', '-n', str(lines), SANDBOX_LOG]
            )
        except SpriteExecutionError:
            raise ValidationError(
                'Log file may not exist yet or sprite unavailable', field='spriteName'
            )
        return {'output': output}

    # =========================================================================
    # Completion
    # =========================================================================

    async def transition_to_completed(
        self,
        manifest_id: str,
        prd_json: Optional[str],
        expected_statuses: Iterable[ManifestStatus],
    ) -> bool:
        """Complete a manifest if its status is still one of ``expected_statuses``.

        Returns True for the caller that won the transition; only that caller
        tears the sandbox down.
        """
        fields: Dict[str, Any] = {
            'status': ManifestStatus.COMPLETED,
            'completed_at': utcnow(),
        }
        if prd_json:
            fields['prd_json'] = prd_json

        manifest = await self.store.update_manifest(
            manifest_id, expected_status=tuple(expected_statuses), **fields
        )
        if manifest is None:
            logger.debug(f'Manifest {manifest_id} already settled, completion skipped')
            await self._teardown_if_settled(manifest_id, 'manifest completed')
            return False

        logger.info(f'Manifest {manifest_id} completed')
        await self._teardown(manifest, 'manifest completed')
        return True

    async def get_manifest_prd_data(
        self, user_id: Optional[str], project_id: str
    ) -> Dict[str, Any]:
        """Fetch PRD progress from the repository for every named manifest.

        Running manifests whose PRD reports every task passing are completed
        here, for sandboxes that never delivered their final webhook.
        """
        project = await get_owned_project(self.store, user_id, project_id)
        manifests = [m for m in await self.store.list_manifests(project_id) if m.prd_name]
        if not manifests:
            return {}

        try:
            token = decrypt_token(project.encrypted_github_token, self.config.encryption_key)
        except AbraxasError as e:
            logger.warning(f'Cannot read PRD data for project {project_id}: {e.message}')
            return {m.id: ManifestPrdData().to_dict() for m in manifests}

        semaphore = asyncio.Semaphore(PRD_FETCH_CONCURRENCY)

        async def fetch(manifest: Manifest) -> ManifestPrdData:
            async with semaphore:
                try:
                    return await self.repo.fetch_prd_data(
                        project.repository_url,
                        token,
                        get_manifest_branch_name(manifest.prd_name),
                        manifest.prd_name,
                    )
                except AbraxasError as e:
                    logger.warning(f'PRD fetch failed for manifest {manifest.id}: {e.message}')
                    return ManifestPrdData()

        results: List[ManifestPrdData] = await asyncio.gather(
            *(fetch(m) for m in manifests)
        )

        data: Dict[str, Any] = {}
        for manifest, prd_data in zip(manifests, results):
            prd = prd_data.prd_json
            if (
                manifest.status == ManifestStatus.RUNNING
                and prd is not None
                and prd.all_tasks_pass
            ):
                completed = await self.transition_to_completed(
                    manifest.id,
                    prd.model_dump_json(by_alias=True),
                    expected_statuses=(ManifestStatus.RUNNING,),
                )
                if completed:
                    logger.info(f'Manifest {manifest.id} completed via PRD check')
            data[manifest.id] = prd_data.to_dict()
        return data

    # =========================================================================
    # Webhook handlers
    # =========================================================================

    async def handle_started(
        self, manifest_id: str, payload: ManifestStartedPayload
    ) -> None:
        updated = await self.store.update_manifest(
            manifest_id,
            expected_status=ManifestStatus.PENDING,
            status=ManifestStatus.ACTIVE,
            last_message=payload.message,
        )
        if updated is None:
            logger.debug(f'Started event ignored for manifest {manifest_id}')
            return
        logger.info(f'Started event handled for manifest {manifest_id}')

    async def handle_task_loop_started(
        self, manifest_id: str, payload: ManifestTaskLoopStartedPayload
    ) -> None:
        manifest = await self._get_manifest(manifest_id)
        if not manifest.prd_name:
            logger.warning(f'Task loop started for manifest {manifest_id} without a PRD name, ignored')
            return
        updated = await self.store.update_manifest(
            manifest_id,
            expected_status=(ManifestStatus.PENDING, ManifestStatus.ACTIVE),
            status=ManifestStatus.RUNNING,
        )
        if updated is None:
            logger.debug(f'Task loop started event ignored for manifest {manifest_id}')
            return
        await self._mark_sprite(updated, SpriteStatus.RUNNING)
        logger.info(
            f'Task loop started for manifest {manifest_id} on branch {payload.branch_name}'
        )

    async def handle_progress(
        self, manifest_id: str, payload: ManifestProgressPayload
    ) -> None:
        fields: Dict[str, Any] = {}
        if payload.prd_json is not None:
            fields['prd_json'] = payload.prd_json
        if payload.message is not None:
            fields['last_message'] = payload.message
        if not fields:
            return
        # Only non-terminal manifests take progress
        updated = await self.store.update_manifest(
            manifest_id, expected_status=ACTIVE_MANIFEST_STATUSES, **fields
        )
        if updated is None:
            logger.debug(f'Progress event ignored for settled manifest {manifest_id}')

    async def handle_completed(
        self, manifest_id: str, payload: ManifestCompletedPayload
    ) -> None:
        await self.transition_to_completed(
            manifest_id, payload.prd_json, expected_statuses=ACTIVE_MANIFEST_STATUSES
        )

    async def handle_error(
        self, manifest_id: str, payload: ManifestErrorPayload
    ) -> None:
        manifest = await self.store.update_manifest(
            manifest_id,
            expected_status=ACTIVE_MANIFEST_STATUSES,
            status=ManifestStatus.ERROR,
            error_message=payload.error,
            completed_at=utcnow(),
        )
        if manifest is None:
            logger.debug(f'Error event ignored for settled manifest {manifest_id}')
            await self._teardown_if_settled(manifest_id, 'manifest error')
            return
        logger.info(f'Manifest {manifest_id} failed: {payload.error}')
        await self._teardown(manifest, 'manifest error')
