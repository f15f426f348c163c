"""Tests for project settings and stored agent credentials."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from abraxas_server.crypto import decrypt_token
from abraxas_server.errors import (
    CryptoConfigError,
    UnauthenticatedError,
    UnauthorizedError,
    ValidationError,
)
from abraxas_server.models import User
from abraxas_server.project_actions import (
    DEFAULT_LOCAL_SETUP_SCRIPT,
    anthropic_oauth_expiry,
    parse_opencode_auth,
)

from conftest import OTHER_USER_ID, OWNER_ID, PROJECT_ID, TEST_ENCRYPTION_KEY, TEST_GITHUB_TOKEN

REPO_URL = 'https://github.com/acme/gadgets.git'


def _auth(expires=None) -> str:
    anthropic = {'type': 'oauth', 'refresh': 'r-token', 'access': 'a-token'}
    if expires is not None:
        anthropic['expires'] = expires
    return json.dumps({'anthropic': anthropic, 'openai': {'type': 'api', 'key': 'sk-1'}})


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


# =============================================================================
# Projects
# =============================================================================


class TestProjects:
    @pytest.mark.asyncio
    async def test_create_encrypts_token_and_hides_it(self, services, store, owner):
        result = await services.projects.create_project(
            OWNER_ID, ' Gadgets ', REPO_URL, 'ghp_new', description='Shop'
        )

        project = result['project']
        assert project['name'] == 'Gadgets'
        assert project['user_id'] == OWNER_ID
        assert 'encrypted_github_token' not in project
        stored = await store.get_project(project['id'])
        assert stored.encrypted_github_token != 'ghp_new'
        assert decrypt_token(stored.encrypted_github_token, TEST_ENCRYPTION_KEY) == 'ghp_new'

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        'name, url, token, field',
        [
            ('', REPO_URL, 'ghp_x', 'name'),
            ('Gadgets', 'https://gitlab.com/acme/gadgets', 'ghp_x', 'repositoryUrl'),
            ('Gadgets', REPO_URL, '  ', 'githubToken'),
        ],
    )
    async def test_create_validation(self, services, store, owner, name, url, token, field):
        with pytest.raises(ValidationError) as exc_info:
            await services.projects.create_project(OWNER_ID, name, url, token)

        assert exc_info.value.field == field
        assert await store.list_projects(OWNER_ID) == []

    @pytest.mark.asyncio
    async def test_create_requires_identity(self, services):
        with pytest.raises(UnauthenticatedError):
            await services.projects.create_project(None, 'Gadgets', REPO_URL, 'ghp_x')

    @pytest.mark.asyncio
    async def test_create_without_encryption_key(self, services, owner):
        services.projects.config.encryption_key = None

        with pytest.raises(CryptoConfigError):
            await services.projects.create_project(OWNER_ID, 'Gadgets', REPO_URL, 'ghp_x')

    @pytest.mark.asyncio
    async def test_list_only_own_projects(self, services, project):
        await services.projects.create_project(OTHER_USER_ID, 'Theirs', REPO_URL, 'ghp_x')

        result = await services.projects.list_projects(OWNER_ID)

        assert [p['id'] for p in result['projects']] == [PROJECT_ID]

    @pytest.mark.asyncio
    async def test_update_reencrypts_new_token(self, services, store, project):
        result = await services.projects.update_project(
            OWNER_ID, PROJECT_ID, name='Renamed', github_token='ghp_rotated'
        )

        assert result['project']['name'] == 'Renamed'
        stored = await store.get_project(PROJECT_ID)
        assert decrypt_token(stored.encrypted_github_token, TEST_ENCRYPTION_KEY) == 'ghp_rotated'
        assert stored.repository_url == project.repository_url

    @pytest.mark.asyncio
    async def test_update_keeps_token_when_omitted(self, services, store, project):
        await services.projects.update_project(OWNER_ID, PROJECT_ID, description='New')

        stored = await store.get_project(PROJECT_ID)
        assert stored.description == 'New'
        assert decrypt_token(stored.encrypted_github_token, TEST_ENCRYPTION_KEY) == TEST_GITHUB_TOKEN

    @pytest.mark.asyncio
    async def test_update_validation_and_ownership(self, services, project):
        with pytest.raises(ValidationError, match='GitHub repository'):
            await services.projects.update_project(
                OWNER_ID, PROJECT_ID, repository_url='not a url'
            )
        with pytest.raises(ValidationError, match='Unknown project fields: user_id'):
            await services.projects.update_project(OWNER_ID, PROJECT_ID, user_id=OTHER_USER_ID)
        with pytest.raises(UnauthorizedError):
            await services.projects.update_project(OTHER_USER_ID, PROJECT_ID, name='Mine')


class TestLocalSetup:
    @pytest.mark.asyncio
    async def test_toggle_installs_default_script(self, services, store, project):
        result = await services.projects.toggle_local_setup(OWNER_ID, PROJECT_ID)

        assert result == {'enabled': True}
        stored = await store.get_project(PROJECT_ID)
        assert stored.local_setup_enabled is True
        assert stored.local_setup_script == DEFAULT_LOCAL_SETUP_SCRIPT

    @pytest.mark.asyncio
    async def test_toggle_off_keeps_custom_script(self, services, store, project):
        await services.projects.update_project(
            OWNER_ID, PROJECT_ID, local_setup_script='make deps'
        )
        await services.projects.toggle_local_setup(OWNER_ID, PROJECT_ID)

        result = await services.projects.toggle_local_setup(OWNER_ID, PROJECT_ID)

        assert result == {'enabled': False}
        stored = await store.get_project(PROJECT_ID)
        assert stored.local_setup_enabled is False
        assert stored.local_setup_script == 'make deps'

    @pytest.mark.asyncio
    async def test_enabled_script_reaches_the_sandbox(self, services, provider, project):
        await services.projects.toggle_local_setup(OWNER_ID, PROJECT_ID)

        await services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'Auth', 'add-auth')

        bootstrap = provider.calls_of('exec')[0][3]
        assert 'Local setup complete' in bootstrap
        assert 'docker compose up -d' in bootstrap


# =============================================================================
# Agent runtime credentials
# =============================================================================


class TestOpencodeAuth:
    def test_parse_rejects_wrong_shape(self):
        for raw in ('not json', '[]', '{"anthropic": {"type": "password"}}'):
            with pytest.raises(ValidationError, match='Invalid auth.json format'):
                parse_opencode_auth(raw)

    def test_expiry_only_for_anthropic_oauth(self):
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert anthropic_oauth_expiry(parse_opencode_auth(_auth(_millis(expires)))) == expires
        assert anthropic_oauth_expiry(parse_opencode_auth(_auth())) is None
        assert anthropic_oauth_expiry(
            parse_opencode_auth('{"anthropic": {"type": "api", "key": "k", "expires": 1}}')
        ) is None

    @pytest.mark.asyncio
    async def test_save_creates_user_with_normalized_auth(self, services, store):
        await services.projects.save_opencode_auth('new-user', _auth())

        user = await store.get_user('new-user')
        stored = json.loads(decrypt_token(user.encrypted_opencode_auth, TEST_ENCRYPTION_KEY))
        assert stored == {
            'anthropic': {'type': 'oauth', 'refresh': 'r-token', 'access': 'a-token'},
            'openai': {'type': 'api', 'key': 'sk-1'},
        }
        assert user.anthropic_oauth_expires_at is None

    @pytest.mark.asyncio
    async def test_save_replaces_existing_auth(self, services, store, owner):
        await services.projects.save_opencode_auth(OWNER_ID, _auth())

        user = await store.get_user(OWNER_ID)
        assert user.name == 'Owner'
        assert 'openai' in decrypt_token(user.encrypted_opencode_auth, TEST_ENCRYPTION_KEY)

    @pytest.mark.asyncio
    async def test_invalid_auth_is_not_stored(self, services, store, owner):
        before = (await store.get_user(OWNER_ID)).encrypted_opencode_auth

        with pytest.raises(ValidationError):
            await services.projects.save_opencode_auth(OWNER_ID, '{"anthropic": 1}')

        assert (await store.get_user(OWNER_ID)).encrypted_opencode_auth == before

    @pytest.mark.asyncio
    async def test_status(self, services, store):
        assert await services.projects.get_opencode_auth_status('nobody') == {'status': 'none'}

        await services.projects.save_opencode_auth('u', _auth())
        assert await services.projects.get_opencode_auth_status('u') == {'status': 'no_expiry'}

        past = datetime.now(timezone.utc) - timedelta(days=1)
        await services.projects.save_opencode_auth('u', _auth(_millis(past)))
        assert (await services.projects.get_opencode_auth_status('u'))['status'] == 'expired'

        future = datetime.now(timezone.utc) + timedelta(days=1)
        await services.projects.save_opencode_auth('u', _auth(_millis(future)))
        status = await services.projects.get_opencode_auth_status('u')
        assert status['status'] == 'valid'
        assert status['expiresAt'].startswith(str(future.year))

    @pytest.mark.asyncio
    async def test_user_without_auth_has_no_status(self, services, store):
        await store.insert_user(User(id='plain'))
        assert await services.projects.get_opencode_auth_status('plain') == {'status': 'none'}
