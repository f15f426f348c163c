"""
Sprite spawner.

Provisions one sandbox per call: decrypts the repository token, creates the
sandbox with a public URL, records the handle on the owning record straight
away, uploads the rendered bootstrap script and starts it detached so it
keeps running after this request returns. A failure after creation destroys
the sandbox and clears the recorded handle before the error propagates.
"""

import logging
import re
import secrets
import string
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

from .config import ServerConfig
from .crypto import decrypt_token
from .errors import DecryptionError, SpriteExecutionError
from .models import (
    Manifest,
    OpencodeSession,
    Project,
    Sprite,
    SpriteStatus,
    SpriteType,
    Task,
    new_id,
)
from .sprite_scripts import (
    CALLBACK_SCRIPT_PATH,
    BaseSetupConfig,
    generate_callback_script,
    generate_manifest_bootstrap_script,
)
from .sprites_client import NetworkRule, SandboxProvider, destroy_sprite_best_effort
from .store import LifecycleStore

logger = logging.getLogger(__name__)

MANIFEST_BRANCH_PREFIX = 'manifest-'
BOOTSTRAP_SCRIPT_PATH = '/tmp/abraxas-bootstrap.sh'
PASSWORD_ALPHABET = string.ascii_letters + string.digits


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def generate_manifest_sprite_name(project_id: str) -> str:
    """Format: manifest-{first 8 of project id}-{ms timestamp}"""
    short_id = project_id.replace('-', '')[:8]
    return f'manifest-{short_id}-{_timestamp_ms()}'


def generate_sprite_name(task_id: str) -> str:
    # Sprite names are alphanumeric with dashes, max 63 chars
    short_id = task_id.replace('-', '')[:12]
    return f'abraxas-{short_id}-{_timestamp_ms()}'


def generate_sprite_password() -> str:
    """Random 32 character alphanumeric password."""
    return ''.join(secrets.choice(PASSWORD_ALPHABET) for _ in range(32))


def generate_branch_name(task_id: str, title: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', title.lower())
    slug = re.sub(r'^-|-$', '', slug)[:30]
    short_id = task_id.replace('-', '')[:8]
    return f'abraxas/{short_id}-{slug}'


def get_manifest_branch_name(prd_name: str) -> str:
    return f'{MANIFEST_BRANCH_PREFIX}{prd_name}'


def manifest_sprite_branch(manifest: Manifest) -> str:
    """Branch key for a manifest's sprite record.

    Manifests without a PRD name have no working branch yet, so their sprite
    is keyed by manifest id instead.
    """
    return get_manifest_branch_name(manifest.prd_name or manifest.id)


@dataclass
class SpawnResult:
    sprite_name: str
    sprite_url: str
    sprite_password: str
    branch_name: str

    def to_dict(self):
        return asdict(self)


HandleCallback = Callable[[Optional[str], Optional[str]], Awaitable[None]]


class SpriteSpawner:
    """Creates and bootstraps sandboxes for manifests and task invocations."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: LifecycleStore,
        config: ServerConfig,
    ):
        self.provider = provider
        self.store = store
        self.config = config

    async def _load_opencode_auth(self, user_id: str) -> Optional[str]:
        user = await self.store.get_user(user_id)
        if user is None or not user.encrypted_opencode_auth:
            return None
        try:
            return decrypt_token(user.encrypted_opencode_auth, self.config.encryption_key)
        except DecryptionError:
            logger.warning(f'Could not decrypt opencode auth for user {user_id}, skipping')
            return None

    def _base_setup(
        self,
        project: Project,
        github_token: str,
        opencode_auth: Optional[str],
        branch_name: Optional[str],
        model: Optional[str] = None,
    ) -> BaseSetupConfig:
        setup = BaseSetupConfig(
            github_token=github_token,
            repo_url=project.repository_url,
            opencode_setup_repo_url=self.config.opencode_setup_repo_url,
            opencode_auth=opencode_auth,
            local_setup_script=project.local_setup_script
            if project.local_setup_enabled
            else None,
            git_user_email=self.config.git_user_email,
            git_user_name=self.config.git_user_name,
            branch_name=branch_name,
        )
        if model:
            setup.model = model
        return setup

    async def _provision(
        self,
        sprite_name: str,
        sprite_type: SpriteType,
        branch_name: str,
        project: Project,
        webhook_secret: str,
        script: str,
        script_path: str,
        record_handle: HandleCallback,
    ) -> str:
        """Create, record, upload and start. Returns the sandbox URL."""
        try:
            info = await self.provider.create_sprite(sprite_name, 'public')
        except Exception as e:
            logger.error(f'Failed to create sprite {sprite_name}: {e}')
            raise SpriteExecutionError(
                f'Failed to create sprite: {e}', sprite_name=sprite_name
            ) from e
        logger.info(f'Sprite created: {sprite_name} ({info.url})')

        sprite_record = Sprite(
            id=new_id(),
            project_id=project.id,
            branch_name=branch_name,
            type=sprite_type,
            status=SpriteStatus.PENDING,
            sprite_name=sprite_name,
            sprite_url=info.url,
            webhook_secret=webhook_secret,
        )
        try:
            await record_handle(sprite_name, info.url)
            sprite_record = await self.store.upsert_sprite(sprite_record)

            await self._run_step(
                sprite_name,
                'write bootstrap script',
                self.provider.exec_command(
                    sprite_name,
                    ['bash', '-c', f'cat > {script_path} && chmod +x {script_path}'],
                    stdin=script,
                ),
            )
            await self._run_step(
                sprite_name,
                'start execution',
                self.provider.exec_detached(
                    sprite_name,
                    script_path,
                    [],
                    start_timeout=self.config.sprite_exec_start_timeout,
                ),
            )
            if self.config.sprite_allowed_domains:
                rules = [
                    NetworkRule(domain=domain)
                    for domain in self.config.sprite_allowed_domains
                ]
                await self._run_step(
                    sprite_name,
                    'set network policy',
                    self.provider.set_network_policy(sprite_name, rules),
                )
            await self.store.update_sprite(
                sprite_record.id, status=SpriteStatus.ACTIVE
            )
        except Exception as e:
            await self._cleanup_failed_spawn(sprite_name, sprite_record, record_handle, e)
            if isinstance(e, SpriteExecutionError):
                raise
            raise SpriteExecutionError(
                f'Failed to provision sprite: {e}', sprite_name=sprite_name
            ) from e

        logger.info(f'Execution started for {sprite_name}')
        return info.url

    async def _run_step(self, sprite_name: str, step: str, call: Awaitable) -> None:
        try:
            await call
        except SpriteExecutionError as e:
            raise SpriteExecutionError(
                f'Failed to {step}: {e.message}', sprite_name=sprite_name
            ) from e

    async def _cleanup_failed_spawn(
        self,
        sprite_name: str,
        sprite_record: Sprite,
        record_handle: HandleCallback,
        error: Exception,
    ) -> None:
        logger.error(f'Spawn of {sprite_name} failed, cleaning up: {error}')
        await destroy_sprite_best_effort(self.provider, sprite_name, 'spawn failed')
        try:
            await record_handle(None, None)
        except Exception as e:
            logger.warning(f'Failed to clear handle for {sprite_name}: {e}')
        try:
            await self.store.update_sprite(
                sprite_record.id,
                status=SpriteStatus.ERROR,
                error_message=str(error),
                sprite_name=None,
                sprite_url=None,
            )
        except Exception as e:
            logger.warning(f'Failed to mark sprite record {sprite_record.id} as error: {e}')

    async def spawn_manifest_sprite(
        self, manifest: Manifest, project: Project, user_id: str
    ) -> SpawnResult:
        """Provision the long-running sandbox for a manifest.

        The manifest's webhook secret must already be persisted, since the
        sandbox may call back before this returns.
        """
        if not manifest.webhook_secret:
            raise SpriteExecutionError(
                'Manifest has no webhook secret', sprite_name='unknown'
            )

        # Cheapest failures first
        github_token = decrypt_token(
            project.encrypted_github_token, self.config.encryption_key
        )
        opencode_auth = await self._load_opencode_auth(user_id)

        sprite_name = generate_manifest_sprite_name(project.id)
        password = generate_sprite_password()
        branch_name = manifest_sprite_branch(manifest)
        checkout = get_manifest_branch_name(manifest.prd_name) if manifest.prd_name else None

        script = generate_manifest_bootstrap_script(
            self._base_setup(project, github_token, opencode_auth, checkout),
            webhook_url=self.config.manifest_webhook_url(manifest.id),
            webhook_secret=manifest.webhook_secret,
            prd_name=manifest.prd_name,
            has_local_setup=project.local_setup_enabled,
        )

        async def record_handle(name: Optional[str], url: Optional[str]) -> None:
            await self.store.update_manifest(
                manifest.id,
                sprite_name=name,
                sprite_url=url,
                sprite_password=password if name else None,
            )

        logger.info(f'Creating manifest sprite {sprite_name} for manifest {manifest.id}')
        sprite_url = await self._provision(
            sprite_name,
            SpriteType.MANIFEST,
            branch_name,
            project,
            manifest.webhook_secret,
            script,
            BOOTSTRAP_SCRIPT_PATH,
            record_handle,
        )
        return SpawnResult(
            sprite_name=sprite_name,
            sprite_url=sprite_url,
            sprite_password=password,
            branch_name=branch_name,
        )

    async def spawn_task_sprite(
        self,
        task: Task,
        session: OpencodeSession,
        project: Project,
        prompt: str,
        user_id: str,
        model: str,
    ) -> SpawnResult:
        """Provision a one-shot sandbox that runs a single prompt for a task."""
        if not session.webhook_secret:
            raise SpriteExecutionError(
                'Session has no webhook secret', sprite_name='unknown'
            )

        github_token = decrypt_token(
            project.encrypted_github_token, self.config.encryption_key
        )
        opencode_auth = await self._load_opencode_auth(user_id)

        sprite_name = generate_sprite_name(task.id)
        password = generate_sprite_password()
        # Retries reuse the task's branch
        branch_name = task.branch_name or generate_branch_name(task.id, task.title)

        script = generate_callback_script(
            task_id=task.id,
            session_id=session.session_id,
            webhook_url=self.config.sprite_webhook_url(task.id),
            webhook_secret=session.webhook_secret,
            prompt=prompt,
            branch_name=branch_name,
            model=model,
            base_setup=self._base_setup(
                project, github_token, opencode_auth, branch_name, model
            ),
        )

        async def record_handle(name: Optional[str], url: Optional[str]) -> None:
            await self.store.update_session(
                session.id, sprite_name=name, sprite_url=url, branch_name=branch_name
            )

        logger.info(
            f'Creating sprite {sprite_name} for task {task.id} on branch {branch_name}'
        )
        sprite_url = await self._provision(
            sprite_name,
            SpriteType.INVOCATION,
            branch_name,
            project,
            session.webhook_secret,
            script,
            CALLBACK_SCRIPT_PATH,
            record_handle,
        )
        return SpawnResult(
            sprite_name=sprite_name,
            sprite_url=sprite_url,
            sprite_password=password,
            branch_name=branch_name,
        )
