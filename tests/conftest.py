"""Shared fixtures: in-memory store, recording sandbox provider and repo client."""

from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from abraxas_server.config import ServerConfig
from abraxas_server.crypto import encrypt_token
from abraxas_server.github_client import RepositoryClient
from abraxas_server.models import Project, User
from abraxas_server.server import create_app
from abraxas_server.services import build_services
from abraxas_server.sprites_client import NetworkRule, SandboxProvider, SpriteInfo
from abraxas_server.store import InMemoryLifecycleStore
from abraxas_server.webhook_security import generate_webhook_signature

TEST_ENCRYPTION_KEY = '0123456789abcdef' * 4
TEST_GITHUB_TOKEN = 'ghp_testtoken123'
TEST_REPO_URL = 'https://github.com/acme/widgets'
OWNER_ID = 'user-1'
OTHER_USER_ID = 'user-2'
PROJECT_ID = 'proj-1234abcd'


class FakeSandboxProvider(SandboxProvider):
    """Records every call; ``fail_on[op]`` makes that operation raise."""

    def __init__(self):
        self.sprites: Dict[str, SpriteInfo] = {}
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.exec_output = ''

    def _maybe_fail(self, op: str):
        error = self.fail_on.get(op)
        if error is not None:
            raise error

    def calls_of(self, op: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == op]

    async def create_sprite(self, name, url_auth='sprite'):
        self.calls.append(('create', name, url_auth))
        self._maybe_fail('create')
        info = SpriteInfo(name=name, url=f'https://{name}.sprites.app', status='running')
        self.sprites[name] = info
        return info

    async def destroy_sprite(self, name):
        self.calls.append(('destroy', name))
        self._maybe_fail('destroy')
        # Already gone is fine
        self.sprites.pop(name, None)

    async def exec_command(self, name, argv, stdin=None, env=None, dir=None):
        self.calls.append(('exec', name, list(argv), stdin))
        self._maybe_fail('exec')
        return self.exec_output

    async def exec_detached(self, name, command, args=None, start_timeout=None):
        self.calls.append(('exec_detached', name, command))
        self._maybe_fail('exec_detached')

    async def set_network_policy(self, name, rules: List[NetworkRule]):
        self.calls.append(('network_policy', name, [r.to_dict() for r in rules]))
        self._maybe_fail('network_policy')


class FakeRepoClient(RepositoryClient):
    """Serves files keyed by (branch, path)."""

    def __init__(self):
        self.files: Dict[Tuple[str, str], str] = {}
        self.fail_branches: Dict[str, Exception] = {}
        self.requests: List[tuple] = []

    async def fetch_file(
        self, repository_url: str, token: str, branch: str, path: str
    ) -> Optional[str]:
        self.requests.append((repository_url, token, branch, path))
        if branch in self.fail_branches:
            raise self.fail_branches[branch]
        return self.files.get((branch, path))


def sign(body: bytes, secret: str) -> Dict[str, str]:
    return {
        'X-Webhook-Signature': generate_webhook_signature(body, secret),
        'Content-Type': 'application/json',
    }


@pytest.fixture
def config():
    return ServerConfig(
        sprites_token='test-token',
        webhook_base_url='https://abraxas.test',
        encryption_key=TEST_ENCRYPTION_KEY,
    )


@pytest.fixture
def store():
    return InMemoryLifecycleStore()


@pytest.fixture
def provider():
    return FakeSandboxProvider()


@pytest.fixture
def repo():
    return FakeRepoClient()


@pytest.fixture
def services(config, store, provider, repo):
    return build_services(config, store=store, provider=provider, repo=repo)


@pytest_asyncio.fixture
async def owner(store):
    return await store.insert_user(
        User(
            id=OWNER_ID,
            name='Owner',
            email='owner@example.com',
            encrypted_opencode_auth=encrypt_token(
                '{"anthropic": {"type": "oauth"}}', TEST_ENCRYPTION_KEY
            ),
        )
    )


@pytest_asyncio.fixture
async def project(store, owner):
    return await store.insert_project(
        Project(
            id=PROJECT_ID,
            user_id=owner.id,
            name='Widgets',
            repository_url=TEST_REPO_URL,
            encrypted_github_token=encrypt_token(TEST_GITHUB_TOKEN, TEST_ENCRYPTION_KEY),
        )
    )


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac
