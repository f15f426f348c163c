"""
Service wiring.

Handlers receive their collaborators through one ``Services`` value kept on
``app.state``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .config import ServerConfig
from .github_client import GitHubClient, RepositoryClient
from .invocation_lifecycle import InvocationLifecycle
from .manifest_lifecycle import ManifestLifecycle
from .project_actions import ProjectActions
from .spawner import SpriteSpawner
from .sprites_client import SandboxProvider, SpritesClient
from .store import InMemoryLifecycleStore, LifecycleStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: ServerConfig
    store: LifecycleStore
    provider: SandboxProvider
    repo: RepositoryClient
    spawner: SpriteSpawner
    projects: ProjectActions
    manifests: ManifestLifecycle
    invocations: InvocationLifecycle

    async def close(self):
        for client in (self.provider, self.repo):
            close = getattr(client, 'close', None)
            if close is not None:
                await close()


def build_services(
    config: ServerConfig,
    store: Optional[LifecycleStore] = None,
    provider: Optional[SandboxProvider] = None,
    repo: Optional[RepositoryClient] = None,
) -> Services:
    """Assemble the orchestrator from config, accepting overrides for any collaborator."""
    store = store or InMemoryLifecycleStore()
    provider = provider or SpritesClient(
        token=config.sprites_token,
        api_base=config.sprites_api_base,
        timeout=config.sprite_timeout_seconds,
        start_timeout=config.sprite_exec_start_timeout,
    )
    repo = repo or GitHubClient(
        api_base=config.github_api_base, timeout=config.github_timeout_seconds
    )
    spawner = SpriteSpawner(provider, store, config)
    if not config.sprites_token and isinstance(provider, SpritesClient):
        logger.warning('SPRITES_TOKEN is not set; sprite operations will fail')
    return Services(
        config=config,
        store=store,
        provider=provider,
        repo=repo,
        spawner=spawner,
        projects=ProjectActions(store, config),
        manifests=ManifestLifecycle(store, provider, spawner, repo, config),
        invocations=InvocationLifecycle(store, provider, spawner, config),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
