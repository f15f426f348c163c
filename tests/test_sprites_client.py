"""
Tests for the Sprites REST client.

Requests are served by an in-process httpx transport; nothing leaves the
test process.
"""

import asyncio
import json
from types import SimpleNamespace
from typing import List
from unittest.mock import AsyncMock

import aiohttp
import httpx
import pytest

from abraxas_server.errors import (
    SpriteExecutionError,
    SpritesApiError,
    SpritesConfigError,
    SpritesNotFoundError,
)
from abraxas_server.sprites_client import (
    NetworkRule,
    SpritesClient,
    destroy_sprite_best_effort,
)

API_BASE = 'https://api.sprites.test/v1'


def _client(handler, token='test-token') -> SpritesClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SpritesClient(token, api_base=API_BASE, http_client=http_client)


class Recorder:
    """Transport handler that records requests and replays one response."""

    def __init__(self, status_code=200, body=None, text=None):
        self.requests: List[httpx.Request] = []
        self.status_code = status_code
        self.body = body
        self.text = text

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        if self.body is None:
            return httpx.Response(self.status_code)
        return httpx.Response(self.status_code, json=self.body)


# =============================================================================
# REST calls
# =============================================================================


class TestSpriteCrud:

    @pytest.mark.asyncio
    async def test_create_sends_name_and_url_settings(self):
        recorder = Recorder(body={'name': 'sp-1', 'url': 'https://sp-1.sprites.app', 'id': 'abc'})
        client = _client(recorder)

        info = await client.create_sprite('sp-1', url_auth='public')

        request = recorder.requests[0]
        assert request.method == 'POST'
        assert str(request.url) == f'{API_BASE}/sprites'
        assert request.headers['Authorization'] == 'Bearer test-token'
        assert json.loads(request.content) == {
            'name': 'sp-1',
            'url_settings': {'auth': 'public'},
        }
        assert info.name == 'sp-1'
        assert info.url == 'https://sp-1.sprites.app'
        assert info.id == 'abc'
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_sprite_raises_not_found(self):
        client = _client(Recorder(status_code=404))

        with pytest.raises(SpritesNotFoundError) as exc_info:
            await client.set_network_policy('gone', [NetworkRule('github.com')])

        assert exc_info.value.sprite_name == 'gone'

    @pytest.mark.asyncio
    async def test_destroy_missing_sprite_succeeds(self):
        recorder = Recorder(status_code=404)
        client = _client(recorder)

        await client.destroy_sprite('gone')

        assert recorder.requests[0].method == 'DELETE'
        assert recorder.requests[0].url.path.endswith('/sprites/gone')

    @pytest.mark.asyncio
    async def test_server_error_carries_status(self):
        client = _client(Recorder(status_code=503, text='overloaded'))

        with pytest.raises(SpritesApiError) as exc_info:
            await client.create_sprite('sp-1')

        assert exc_info.value.status == 503
        assert 'overloaded' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_token_fails_before_any_request(self):
        recorder = Recorder(body={})
        client = _client(recorder, token=None)

        with pytest.raises(SpritesConfigError):
            await client.create_sprite('sp-1')
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_network_policy_body(self):
        recorder = Recorder(status_code=204)
        client = _client(recorder)

        await client.set_network_policy(
            'sp-1', [NetworkRule('github.com'), NetworkRule('evil.test', action='deny')]
        )

        request = recorder.requests[0]
        assert request.url.path.endswith('/sprites/sp-1/policy/network')
        assert json.loads(request.content) == {
            'rules': [
                {'domain': 'github.com', 'action': 'allow'},
                {'domain': 'evil.test', 'action': 'deny'},
            ]
        }


# =============================================================================
# Command execution
# =============================================================================


class TestExecCommand:

    @pytest.mark.asyncio
    async def test_argv_and_stdin_are_forwarded(self):
        recorder = Recorder(text='ok\n')
        client = _client(recorder)

        output = await client.exec_command(
            'sp-1', ['bash', '-c', 'cat > /tmp/x'], stdin='#!/bin/bash\necho hi\n'
        )

        request = recorder.requests[0]
        assert output == 'ok\n'
        assert request.url.path.endswith('/sprites/sp-1/exec')
        assert request.url.params.get_list('cmd') == ['bash', '-c', 'cat > /tmp/x']
        assert request.url.params['stdin'] == 'true'
        assert request.content == b'#!/bin/bash\necho hi\n'

    @pytest.mark.asyncio
    async def test_without_stdin_sends_no_body(self):
        recorder = Recorder(text='')
        client = _client(recorder)

        await client.exec_command('sp-1', ['tail', '-n', '20', '/tmp/log'])

        request = recorder.requests[0]
        assert 'stdin' not in request.url.params
        assert request.content == b''

    @pytest.mark.asyncio
    async def test_failure_raises_execution_error(self):
        client = _client(Recorder(status_code=500, text='exit status 1'))

        with pytest.raises(SpriteExecutionError, match='exit status 1') as exc_info:
            await client.exec_command('sp-1', ['false'])

        assert exc_info.value.sprite_name == 'sp-1'

    def test_websocket_url_follows_api_scheme(self):
        assert SpritesClient('t', api_base='https://api.x/v1')._exec_ws_url('a') == (
            'wss://api.x/v1/sprites/a/exec'
        )
        assert SpritesClient('t', api_base='http://localhost:9/v1')._exec_ws_url('a') == (
            'ws://localhost:9/v1/sprites/a/exec'
        )


# =============================================================================
# Detached execution
# =============================================================================


class FakeWebSocket:
    def __init__(self, message, delay: float = 0):
        self.message = message
        self.delay = delay

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def receive(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.message


class FakeClientSession:
    """Stands in for ``aiohttp.ClientSession`` and records how it was built."""

    def __init__(self, ws: FakeWebSocket, **kwargs):
        self.ws = ws
        self.kwargs = kwargs
        self.connects: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def ws_connect(self, url, params=None):
        self.connects.append((url, params))
        return self.ws


@pytest.fixture
def sessions(monkeypatch):
    """Patch aiohttp so every session serves ``sessions.ws``."""
    state = SimpleNamespace(
        ws=FakeWebSocket(SimpleNamespace(type=aiohttp.WSMsgType.BINARY, data=b'\x01')),
        created=[],
    )

    def factory(**kwargs):
        session = FakeClientSession(state.ws, **kwargs)
        state.created.append(session)
        return session

    monkeypatch.setattr(aiohttp, 'ClientSession', factory)
    return state


class TestExecDetached:

    @pytest.mark.asyncio
    async def test_session_is_bounded_by_a_timeout(self, sessions):
        client = SpritesClient('test-token', api_base=API_BASE, timeout=30.0)

        await client.exec_detached('sp-1', 'bash', ['/tmp/setup.sh'], start_timeout=5.0)

        (session,) = sessions.created
        timeout = session.kwargs['timeout']
        assert isinstance(timeout, aiohttp.ClientTimeout)
        assert timeout.total == 35.0
        assert session.kwargs['headers'] == {'Authorization': 'Bearer test-token'}

    @pytest.mark.asyncio
    async def test_connects_in_tty_mode(self, sessions):
        client = SpritesClient('test-token', api_base=API_BASE)

        await client.exec_detached('sp-1', 'bash', ['/tmp/setup.sh'])

        url, params = sessions.created[0].connects[0]
        assert url == 'wss://api.sprites.test/v1/sprites/sp-1/exec'
        assert params == [('cmd', 'bash'), ('cmd', '/tmp/setup.sh'), ('tty', 'true')]

    @pytest.mark.asyncio
    async def test_command_that_never_starts_times_out(self, sessions):
        sessions.ws = FakeWebSocket(
            SimpleNamespace(type=aiohttp.WSMsgType.BINARY, data=b''), delay=1.0
        )
        client = SpritesClient('test-token', api_base=API_BASE)

        with pytest.raises(SpriteExecutionError, match='Timeout waiting'):
            await client.exec_detached('sp-1', 'bash', start_timeout=0.01)

    @pytest.mark.asyncio
    async def test_closed_session_is_an_error(self, sessions):
        sessions.ws = FakeWebSocket(SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))
        client = SpritesClient('test-token', api_base=API_BASE)

        with pytest.raises(SpriteExecutionError, match='closed before command started'):
            await client.exec_detached('sp-1', 'bash')


# =============================================================================
# Best-effort teardown
# =============================================================================


class TestDestroyBestEffort:

    @pytest.mark.asyncio
    async def test_nothing_to_destroy(self):
        provider = AsyncMock()
        assert await destroy_sprite_best_effort(provider, None) is True
        provider.destroy_sprite.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self):
        provider = AsyncMock()
        provider.destroy_sprite.side_effect = SpritesApiError('boom', status=500)

        assert await destroy_sprite_best_effort(provider, 'sp-1', 'cleanup') is False
        provider.destroy_sprite.assert_awaited_once_with('sp-1')
