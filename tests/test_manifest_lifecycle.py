"""Tests for the manifest state machine."""

import asyncio
import json

import pytest

from abraxas_server.errors import (
    AlreadyRunningError,
    GitHubFetchError,
    NotFoundError,
    SpriteExecutionError,
    SpritesApiError,
    UnauthenticatedError,
    UnauthorizedError,
    ValidationError,
)
from abraxas_server.models import ManifestStatus, SpriteStatus, SpriteType
from abraxas_server.sprite_scripts import SANDBOX_LOG, WRAPPER_PATH
from abraxas_server.webhook_payloads import (
    ManifestCompletedPayload,
    ManifestErrorPayload,
    ManifestProgressPayload,
    ManifestStartedPayload,
    ManifestTaskLoopStartedPayload,
)

from conftest import OTHER_USER_ID, OWNER_ID, PROJECT_ID

PRD_PATH = '.opencode/state/add-auth/prd.json'


def _prd(*passes):
    return json.dumps(
        {
            'prdName': 'add-auth',
            'tasks': [{'id': str(i), 'passes': p} for i, p in enumerate(passes)],
        }
    )


async def _create(services, prd_name='add-auth'):
    result = await services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'Auth', prd_name)
    return result['manifest']['id']


async def _set_status(store, manifest_id, status):
    await store.update_manifest(manifest_id, status=status)


# =============================================================================
# Creation
# =============================================================================


class TestCreateManifest:
    @pytest.mark.asyncio
    async def test_create_spawns_and_activates(self, services, store, provider, project):
        result = await services.manifests.create_manifest(
            OWNER_ID, PROJECT_ID, 'Auth', 'add-auth'
        )

        manifest = result['manifest']
        assert manifest['status'] == 'active'
        assert manifest['sprite_name'].startswith('manifest-')
        assert 'webhook_secret' not in manifest
        assert len(result['spritePassword']) == 32
        assert result['spriteUrl'] == f'https://{manifest["sprite_name"]}.sprites.app'

        stored = await store.get_manifest(manifest['id'])
        assert len(stored.webhook_secret) == 64
        assert len(provider.calls_of('create')) == 1

    @pytest.mark.asyncio
    async def test_second_active_manifest_is_rejected(self, services, store, project):
        first = await _create(services)
        await _set_status(store, first, ManifestStatus.RUNNING)

        with pytest.raises(ValidationError, match=r'\(status: running\)'):
            await services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'Again', 'other')

        assert [m.id for m in await store.list_manifests(PROJECT_ID)] == [first]

    @pytest.mark.asyncio
    async def test_terminal_manifest_does_not_block_creation(self, services, store, project):
        first = await _create(services)
        await _set_status(store, first, ManifestStatus.COMPLETED)

        second = await _create(services, prd_name='next-thing')

        assert second != first

    @pytest.mark.asyncio
    @pytest.mark.parametrize('prd_name', ['Add_Auth', 'add auth', '-add', 'add-', '1add'])
    async def test_invalid_prd_name_is_rejected(self, services, store, project, prd_name):
        with pytest.raises(ValidationError, match='kebab-case'):
            await services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'Auth', prd_name)
        assert await store.list_manifests(PROJECT_ID) == []

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected(self, services, project):
        with pytest.raises(ValidationError, match='name is required'):
            await services.manifests.create_manifest(OWNER_ID, PROJECT_ID, '   ')

    @pytest.mark.asyncio
    async def test_ownership_is_enforced(self, services, project):
        with pytest.raises(UnauthorizedError):
            await services.manifests.create_manifest(OTHER_USER_ID, PROJECT_ID, 'Auth')
        with pytest.raises(UnauthenticatedError):
            await services.manifests.create_manifest(None, PROJECT_ID, 'Auth')
        with pytest.raises(NotFoundError):
            await services.manifests.create_manifest(OWNER_ID, 'nope', 'Auth')

    @pytest.mark.asyncio
    async def test_spawn_failure_records_error(self, services, store, provider, project):
        provider.fail_on['create'] = SpritesApiError('quota exceeded', status=429)

        with pytest.raises(SpriteExecutionError):
            await services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'Auth', 'add-auth')

        (manifest,) = await store.list_manifests(PROJECT_ID)
        assert manifest.status == ManifestStatus.ERROR
        assert 'quota exceeded' in manifest.error_message
        assert manifest.completed_at is not None
        assert manifest.sprite_name is None


# =============================================================================
# User actions on existing manifests
# =============================================================================


class TestManifestActions:
    @pytest.mark.asyncio
    async def test_delete_destroys_sandbox_and_record(self, services, store, provider, project):
        manifest_id = await _create(services)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name

        result = await services.manifests.delete_manifest(OWNER_ID, manifest_id)

        assert result == {'projectId': PROJECT_ID}
        assert ('destroy', sprite_name) in provider.calls
        assert await store.get_manifest(manifest_id) is None
        assert await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST) is None

    @pytest.mark.asyncio
    async def test_prd_name_editable_while_active(self, services, store, project):
        manifest_id = await _create(services)

        await services.manifests.update_prd_name(OWNER_ID, manifest_id, 'renamed-prd')

        assert (await store.get_manifest(manifest_id)).prd_name == 'renamed-prd'

    @pytest.mark.asyncio
    async def test_prd_name_locked_while_running(self, services, store, project):
        manifest_id = await _create(services)
        await _set_status(store, manifest_id, ManifestStatus.RUNNING)

        with pytest.raises(
            ValidationError, match='Cannot update PRD name when manifest is running'
        ):
            await services.manifests.update_prd_name(OWNER_ID, manifest_id, 'renamed-prd')

        assert (await store.get_manifest(manifest_id)).prd_name == 'add-auth'

    @pytest.mark.asyncio
    async def test_start_task_loop_uploads_and_launches_wrapper(
        self, services, store, provider, project
    ):
        manifest_id = await _create(services)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name

        await services.manifests.start_task_loop(OWNER_ID, manifest_id)

        upload, launch = provider.calls_of('exec')[-2:]
        assert upload[1] == sprite_name
        assert upload[2] == ['bash', '-c', f'cat > {WRAPPER_PATH} && chmod +x {WRAPPER_PATH}']
        assert '"task_loop_started"' in upload[3]
        assert f'/api/webhooks/manifest/{manifest_id}' in upload[3]
        assert launch[2][:2] == ['bash', '-c']
        assert launch[2][2].startswith(f'setsid {WRAPPER_PATH}')
        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_task_loop_validations(self, services, store, project):
        manifest_id = await _create(services, prd_name=None)
        with pytest.raises(ValidationError, match='PRD name must be set'):
            await services.manifests.start_task_loop(OWNER_ID, manifest_id)

        await _set_status(store, manifest_id, ManifestStatus.PENDING)
        with pytest.raises(ValidationError, match=r'must be active to start task loop \(current: pending\)'):
            await services.manifests.start_task_loop(OWNER_ID, manifest_id)

    @pytest.mark.asyncio
    async def test_stop_task_loop_kills_loop_and_keeps_sandbox(
        self, services, store, provider, project
    ):
        manifest_id = await _create(services)
        await services.manifests.start_task_loop(OWNER_ID, manifest_id)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name

        await services.manifests.stop_task_loop(OWNER_ID, manifest_id)

        assert provider.calls_of('exec')[-1][2] == ['pkill', '-f', 'task-loop']
        assert provider.calls_of('destroy') == []
        manifest = await store.get_manifest(manifest_id)
        assert manifest.status == ManifestStatus.ACTIVE
        assert manifest.sprite_name == sprite_name

    @pytest.mark.asyncio
    async def test_stop_task_loop_requires_running(self, services, project):
        manifest_id = await _create(services)
        with pytest.raises(ValidationError, match='must be running'):
            await services.manifests.stop_task_loop(OWNER_ID, manifest_id)

    @pytest.mark.asyncio
    async def test_spawn_sprite_refuses_second_generation(self, services, project):
        manifest_id = await _create(services)
        with pytest.raises(AlreadyRunningError):
            await services.manifests.spawn_sprite(OWNER_ID, manifest_id)

    @pytest.mark.asyncio
    async def test_stop_sprite_then_respawn(self, services, store, provider, project):
        manifest_id = await _create(services)
        old_name = (await store.get_manifest(manifest_id)).sprite_name

        await services.manifests.stop_sprite(OWNER_ID, PROJECT_ID, 'manifest-add-auth')

        assert ('destroy', old_name) in provider.calls
        assert (await store.get_manifest(manifest_id)).sprite_name is None
        assert await services.manifests.get_sprite_for_branch(
            OWNER_ID, PROJECT_ID, 'manifest-add-auth'
        ) == {'sprite': None}

        result = await services.manifests.spawn_sprite(OWNER_ID, manifest_id)

        assert len(provider.calls_of('create')) == 2
        sprite = await services.manifests.get_sprite_for_branch(
            OWNER_ID, PROJECT_ID, 'manifest-add-auth'
        )
        assert sprite['sprite']['sprite_name'] == result['spriteName']
        assert 'webhook_secret' not in sprite['sprite']

    @pytest.mark.asyncio
    async def test_stop_unknown_sprite(self, services, project):
        with pytest.raises(NotFoundError, match='No sprite found for this manifest'):
            await services.manifests.stop_sprite(OWNER_ID, PROJECT_ID, 'manifest-nothing')

    @pytest.mark.asyncio
    async def test_tail_log(self, services, provider, project):
        manifest_id = await _create(services)
        provider.exec_output = 'line one\nline two\n'

        result = await services.manifests.tail_log(OWNER_ID, manifest_id)

        assert result == {'output': 'line one\nline two\n'}
        assert provider.calls_of('exec')[-1][2] == ['tail', '-n', '20', SANDBOX_LOG]

        await services.manifests.tail_log(OWNER_ID, manifest_id, lines=5000)
        assert provider.calls_of('exec')[-1][2][2] == '1000'

    @pytest.mark.asyncio
    async def test_tail_log_when_sandbox_unavailable(self, services, provider, project):
        manifest_id = await _create(services)
        provider.fail_on['exec'] = SpriteExecutionError('no such file', sprite_name='x')

        with pytest.raises(ValidationError, match='Log file may not exist yet'):
            await services.manifests.tail_log(OWNER_ID, manifest_id)


# =============================================================================
# Webhook handlers
# =============================================================================


class TestManifestWebhookHandlers:
    @pytest.mark.asyncio
    async def test_started_moves_pending_to_active_only(self, services, store, project):
        manifest_id = await _create(services)
        await _set_status(store, manifest_id, ManifestStatus.PENDING)

        await services.manifests.handle_started(
            manifest_id, ManifestStartedPayload(type='started', message='setup done')
        )
        manifest = await store.get_manifest(manifest_id)
        assert manifest.status == ManifestStatus.ACTIVE
        assert manifest.last_message == 'setup done'

        await _set_status(store, manifest_id, ManifestStatus.RUNNING)
        await services.manifests.handle_started(
            manifest_id, ManifestStartedPayload(type='started')
        )
        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.RUNNING

    @pytest.mark.asyncio
    async def test_task_loop_started_moves_to_running(self, services, store, project):
        manifest_id = await _create(services)

        await services.manifests.handle_task_loop_started(
            manifest_id,
            ManifestTaskLoopStartedPayload(type='task_loop_started', branchName='manifest-add-auth'),
        )

        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.RUNNING

    @pytest.mark.asyncio
    async def test_task_loop_started_needs_prd_name(self, services, store, project):
        manifest_id = await _create(services, prd_name=None)

        await services.manifests.handle_task_loop_started(
            manifest_id, ManifestTaskLoopStartedPayload(type='task_loop_started')
        )

        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_progress_stores_prd_and_message(self, services, store, project):
        manifest_id = await _create(services)

        await services.manifests.handle_progress(
            manifest_id,
            ManifestProgressPayload(type='progress', prdJson=_prd(True, False), message='1/2'),
        )

        manifest = await store.get_manifest(manifest_id)
        assert json.loads(manifest.prd_json)['tasks'][1]['passes'] is False
        assert manifest.last_message == '1/2'

    @pytest.mark.asyncio
    async def test_completed_tears_down_once(self, services, store, provider, project):
        manifest_id = await _create(services)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name
        payload = ManifestCompletedPayload(type='completed', prdJson=_prd(True, True))

        await services.manifests.handle_completed(manifest_id, payload)
        await services.manifests.handle_completed(manifest_id, payload)

        manifest = await store.get_manifest(manifest_id)
        assert manifest.status == ManifestStatus.COMPLETED
        assert manifest.completed_at is not None
        assert manifest.prd_json == _prd(True, True)
        assert manifest.sprite_name is None
        assert manifest.sprite_url is None
        assert manifest.sprite_password is None
        assert provider.calls_of('destroy') == [('destroy', sprite_name)]
        assert await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST) is None

    @pytest.mark.asyncio
    async def test_error_records_message_and_tears_down(self, services, store, provider, project):
        manifest_id = await _create(services)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name

        await services.manifests.handle_error(
            manifest_id, ManifestErrorPayload(type='error', error='task-loop exited with code 1')
        )

        manifest = await store.get_manifest(manifest_id)
        assert manifest.status == ManifestStatus.ERROR
        assert manifest.error_message == 'task-loop exited with code 1'
        assert ('destroy', sprite_name) in provider.calls

    @pytest.mark.asyncio
    async def test_terminal_status_absorbs_later_events(self, services, store, project):
        manifest_id = await _create(services)
        await services.manifests.handle_error(
            manifest_id, ManifestErrorPayload(type='error', error='boom')
        )

        await services.manifests.handle_started(
            manifest_id, ManifestStartedPayload(type='started')
        )
        await services.manifests.handle_task_loop_started(
            manifest_id, ManifestTaskLoopStartedPayload(type='task_loop_started')
        )
        await services.manifests.handle_progress(
            manifest_id, ManifestProgressPayload(type='progress', message='late')
        )
        await services.manifests.handle_completed(
            manifest_id, ManifestCompletedPayload(type='completed')
        )

        manifest = await store.get_manifest(manifest_id)
        assert manifest.status == ManifestStatus.ERROR
        assert manifest.last_message != 'late'

    @pytest.mark.asyncio
    async def test_webhook_and_polling_race_tears_down_once(
        self, services, store, provider, project
    ):
        manifest_id = await _create(services)
        await _set_status(store, manifest_id, ManifestStatus.RUNNING)

        await asyncio.gather(
            services.manifests.transition_to_completed(
                manifest_id, _prd(True), (ManifestStatus.RUNNING,)
            ),
            services.manifests.handle_completed(
                manifest_id, ManifestCompletedPayload(type='completed', prdJson=_prd(True))
            ),
        )

        assert len(provider.calls_of('destroy')) == 1
        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.COMPLETED


# =============================================================================
# PRD polling
# =============================================================================


class TestManifestPrdData:
    @pytest.mark.asyncio
    async def test_running_manifest_with_all_tasks_passing_completes(
        self, services, store, provider, repo, project
    ):
        manifest_id = await _create(services)
        await _set_status(store, manifest_id, ManifestStatus.RUNNING)
        repo.files[('manifest-add-auth', PRD_PATH)] = _prd(True, True)
        repo.files[('manifest-add-auth', '.opencode/state/add-auth/progress.txt')] = 'done'

        data = await services.manifests.get_manifest_prd_data(OWNER_ID, PROJECT_ID)

        assert data[manifest_id]['progress'] == 'done'
        assert data[manifest_id]['prdJson']['prdName'] == 'add-auth'
        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.COMPLETED
        assert len(provider.calls_of('destroy')) == 1
        assert repo.requests[0][1] == 'ghp_testtoken123'

    @pytest.mark.asyncio
    async def test_active_manifest_is_not_completed_by_polling(
        self, services, store, repo, project
    ):
        manifest_id = await _create(services)
        repo.files[('manifest-add-auth', PRD_PATH)] = _prd(True, True)

        await services.manifests.get_manifest_prd_data(OWNER_ID, PROJECT_ID)

        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_partial_progress_leaves_running(self, services, store, repo, project):
        manifest_id = await _create(services)
        await _set_status(store, manifest_id, ManifestStatus.RUNNING)
        repo.files[('manifest-add-auth', PRD_PATH)] = _prd(True, False)

        await services.manifests.get_manifest_prd_data(OWNER_ID, PROJECT_ID)

        assert (await store.get_manifest(manifest_id)).status == ManifestStatus.RUNNING

    @pytest.mark.asyncio
    async def test_fetch_failure_yields_empty_data(self, services, store, repo, project):
        manifest_id = await _create(services)
        repo.fail_branches['manifest-add-auth'] = GitHubFetchError('rate limited', 403)

        data = await services.manifests.get_manifest_prd_data(OWNER_ID, PROJECT_ID)

        assert data == {manifest_id: {'prdJson': None, 'progress': None}}

    @pytest.mark.asyncio
    async def test_unreadable_token_yields_empty_data(self, services, store, repo, project):
        manifest_id = await _create(services)
        services.manifests.config = services.manifests.config.model_copy(
            update={'encryption_key': 'ab' * 32}
        )

        data = await services.manifests.get_manifest_prd_data(OWNER_ID, PROJECT_ID)

        assert data == {manifest_id: {'prdJson': None, 'progress': None}}
        assert repo.requests == []


# =============================================================================
# Sandbox ownership
# =============================================================================


class TestSettledManifestSandboxes:
    @pytest.mark.asyncio
    async def test_spawn_refused_once_completed(self, services, provider, project):
        manifest_id = await _create(services)
        await services.manifests.handle_completed(
            manifest_id, ManifestCompletedPayload(type='completed')
        )

        with pytest.raises(ValidationError, match='Cannot spawn a sprite for a completed manifest'):
            await services.manifests.spawn_sprite(OWNER_ID, manifest_id)

        assert len(provider.calls_of('create')) == 1

    @pytest.mark.asyncio
    async def test_late_completion_destroys_leftover_sandbox(
        self, services, store, provider, project
    ):
        manifest_id = await _create(services)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name
        await _set_status(store, manifest_id, ManifestStatus.COMPLETED)

        completed = await services.manifests.transition_to_completed(
            manifest_id, None, (ManifestStatus.RUNNING,)
        )

        assert completed is False
        assert provider.calls_of('destroy') == [('destroy', sprite_name)]
        assert (await store.get_manifest(manifest_id)).sprite_name is None
        assert await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST) is None

    @pytest.mark.asyncio
    async def test_late_error_destroys_leftover_sandbox(self, services, store, provider, project):
        manifest_id = await _create(services)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name
        await _set_status(store, manifest_id, ManifestStatus.ERROR)

        await services.manifests.handle_error(
            manifest_id, ManifestErrorPayload(type='error', error='late')
        )

        assert ('destroy', sprite_name) in provider.calls
        manifest = await store.get_manifest(manifest_id)
        assert manifest.sprite_name is None
        assert manifest.error_message != 'late'

    @pytest.mark.asyncio
    async def test_completion_during_spawn_destroys_new_sandbox(
        self, services, store, provider, project, monkeypatch
    ):
        manifest_id = await _create(services)
        await services.manifests.stop_sprite(OWNER_ID, PROJECT_ID, 'manifest-add-auth')
        spawn = services.spawner.spawn_manifest_sprite

        async def spawn_then_complete(manifest, project, user_id):
            result = await spawn(manifest, project, user_id)
            await _set_status(store, manifest.id, ManifestStatus.COMPLETED)
            return result

        monkeypatch.setattr(services.spawner, 'spawn_manifest_sprite', spawn_then_complete)

        result = await services.manifests.spawn_sprite(OWNER_ID, manifest_id)

        assert ('destroy', result['spriteName']) in provider.calls
        assert (await store.get_manifest(manifest_id)).sprite_name is None

    @pytest.mark.asyncio
    async def test_concurrent_creates_admit_one(self, services, store, provider, project):
        results = await asyncio.gather(
            services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'One'),
            services.manifests.create_manifest(OWNER_ID, PROJECT_ID, 'Two'),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, ValidationError)]
        assert len(created) == 1
        assert len(rejected) == 1
        assert 'active manifest already exists' in rejected[0].message
        assert len(await store.list_manifests(PROJECT_ID)) == 1
        assert len(provider.calls_of('create')) == 1


class TestSpriteRecord:
    @pytest.mark.asyncio
    async def test_prd_rename_moves_sprite_record(self, services, store, provider, project):
        manifest_id = await _create(services, prd_name=None)
        sprite_name = (await store.get_manifest(manifest_id)).sprite_name
        old_branch = f'manifest-{manifest_id}'
        assert (await store.find_sprite(old_branch, SpriteType.MANIFEST)) is not None

        await services.manifests.update_prd_name(OWNER_ID, manifest_id, 'add-auth')

        assert await store.find_sprite(old_branch, SpriteType.MANIFEST) is None
        moved = await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST)
        assert moved.sprite_name == sprite_name

    @pytest.mark.asyncio
    async def test_completion_after_rename_removes_record(
        self, services, store, provider, project
    ):
        manifest_id = await _create(services, prd_name=None)
        await services.manifests.update_prd_name(OWNER_ID, manifest_id, 'add-auth')

        await services.manifests.handle_completed(
            manifest_id, ManifestCompletedPayload(type='completed')
        )

        assert await store.find_sprite(f'manifest-{manifest_id}', SpriteType.MANIFEST) is None
        assert await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST) is None

    @pytest.mark.asyncio
    async def test_task_loop_marks_record_running_and_back(self, services, store, project):
        manifest_id = await _create(services)

        await services.manifests.start_task_loop(OWNER_ID, manifest_id)
        record = await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST)
        assert record.status == SpriteStatus.RUNNING

        await services.manifests.stop_task_loop(OWNER_ID, manifest_id)
        record = await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST)
        assert record.status == SpriteStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_task_loop_started_event_marks_record_running(
        self, services, store, project
    ):
        manifest_id = await _create(services)

        await services.manifests.handle_task_loop_started(
            manifest_id, ManifestTaskLoopStartedPayload(type='task_loop_started')
        )

        record = await store.find_sprite('manifest-add-auth', SpriteType.MANIFEST)
        assert record.status == SpriteStatus.RUNNING
