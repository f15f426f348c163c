"""
Sandbox provider client.

``SandboxProvider`` is the narrow interface the orchestrator needs from the
remote sandbox host. ``SpritesClient`` implements it against the Sprites
REST API with httpx, and uses an aiohttp websocket for detached execution
because TTY exec sessions keep running after the client disconnects.

Configuration:
    SPRITES_TOKEN: Bearer token for the Sprites API
    SPRITES_API_BASE: API root (default: https://api.sprites.dev/v1)
    SPRITE_TIMEOUT_SECONDS: Per-request timeout (default: 30)
    SPRITE_EXEC_START_TIMEOUT: Wait for a detached command to start (default: 10)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import httpx

from .errors import (
    SpriteExecutionError,
    SpritesApiError,
    SpritesConfigError,
    SpritesError,
    SpritesNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class SpriteInfo:
    """A sandbox as reported by the provider."""

    name: str
    url: str
    id: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'SpriteInfo':
        return cls(
            name=data.get('name', ''),
            url=data.get('url', ''),
            id=data.get('id'),
            status=data.get('status'),
        )


@dataclass
class NetworkRule:
    """Outbound network rule; ``action`` is 'allow' or 'deny'."""

    domain: str
    action: str = 'allow'

    def to_dict(self) -> Dict[str, str]:
        return {'domain': self.domain, 'action': self.action}


class SandboxProvider(ABC):
    """Interface to a remote ephemeral sandbox host."""

    @abstractmethod
    async def create_sprite(self, name: str, url_auth: str = 'sprite') -> SpriteInfo:
        """Create a sandbox. ``url_auth='public'`` exposes its URL."""

    @abstractmethod
    async def destroy_sprite(self, name: str) -> None:
        """Destroy a sandbox. Destroying a missing sandbox succeeds."""

    @abstractmethod
    async def exec_command(
        self,
        name: str,
        argv: List[str],
        stdin: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        dir: Optional[str] = None,
    ) -> str:
        """Run a bounded command and return its stdout."""

    @abstractmethod
    async def exec_detached(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        start_timeout: Optional[float] = None,
    ) -> None:
        """Start a command that outlives this call; return once it started."""

    @abstractmethod
    async def set_network_policy(self, name: str, rules: List[NetworkRule]) -> None:
        pass


async def destroy_sprite_best_effort(
    provider: SandboxProvider, name: Optional[str], reason: str = ''
) -> bool:
    """Destroy a sandbox, logging instead of raising on failure.

    Returns True when the sandbox is gone (or was never there).
    """
    if not name:
        return True
    try:
        await provider.destroy_sprite(name)
        logger.info(f'Destroyed sprite {name}{f" ({reason})" if reason else ""}')
        return True
    except Exception as e:
        logger.warning(f'Failed to destroy sprite {name}: {e}')
        return False


class SpritesClient(SandboxProvider):
    """httpx client for the Sprites REST API."""

    def __init__(
        self,
        token: Optional[str],
        api_base: str = 'https://api.sprites.dev/v1',
        timeout: float = 30.0,
        start_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.start_timeout = start_timeout
        self._client = http_client

    def _require_token(self) -> str:
        if not self.token:
            raise SpritesConfigError('SPRITES_TOKEN not found')
        return self.token

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        sprite_name: str = 'unknown',
        json: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        token = self._require_token()
        client = self._get_client()
        try:
            response = await client.request(
                method,
                f'{self.api_base}{path}',
                headers={
                    'Authorization': f'Bearer {token}',
                    'Content-Type': 'application/json',
                },
                json=json,
            )
        except httpx.HTTPError as e:
            logger.error(f'Sprites API {method} {path} failed: {e}')
            raise SpritesApiError(f'Sprites API request failed: {e}')

        if response.status_code == 404:
            raise SpritesNotFoundError('Sprite not found', sprite_name=sprite_name)
        if response.is_error:
            message = response.text or response.reason_phrase
            logger.error(
                f'Sprites API {method} {path} returned {response.status_code}'
            )
            raise SpritesApiError(message, status=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def create_sprite(self, name: str, url_auth: str = 'sprite') -> SpriteInfo:
        data = await self._request(
            'POST',
            '/sprites',
            sprite_name=name,
            json={'name': name, 'url_settings': {'auth': url_auth}},
        )
        if not data:
            raise SpritesApiError('Create sprite returned no data')
        return SpriteInfo.from_api(data)

    async def destroy_sprite(self, name: str) -> None:
        try:
            await self._request('DELETE', f'/sprites/{name}', sprite_name=name)
        except SpritesNotFoundError:
            logger.debug(f'Sprite {name} already gone')

    async def exec_command(
        self,
        name: str,
        argv: List[str],
        stdin: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        dir: Optional[str] = None,
    ) -> str:
        token = self._require_token()
        params: List[tuple] = [('cmd', part) for part in argv]
        if stdin:
            params.append(('stdin', 'true'))
        if dir:
            params.append(('dir', dir))
        for key, value in (env or {}).items():
            params.append(('env', f'{key}={value}'))

        client = self._get_client()
        try:
            response = await client.post(
                f'{self.api_base}/sprites/{name}/exec',
                params=params,
                headers={
                    'Authorization': f'Bearer {token}',
                    'Content-Type': 'application/octet-stream',
                },
                content=stdin.encode('utf-8') if stdin else None,
            )
        except httpx.HTTPError as e:
            logger.error(f'Exec on sprite {name} failed: {e}')
            raise SpriteExecutionError(f'Command execution failed: {e}', sprite_name=name)

        if response.is_error:
            logger.error(f'Exec on sprite {name} returned {response.status_code}')
            raise SpriteExecutionError(
                response.text or 'Command execution failed', sprite_name=name
            )
        return response.text

    def _exec_ws_url(self, name: str) -> str:
        base = self.api_base
        if base.startswith('https://'):
            base = 'wss://' + base[len('https://'):]
        elif base.startswith('http://'):
            base = 'ws://' + base[len('http://'):]
        return f'{base}/sprites/{name}/exec'

    async def exec_detached(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        start_timeout: Optional[float] = None,
    ) -> None:
        token = self._require_token()
        wait = start_timeout if start_timeout is not None else self.start_timeout
        params = [('cmd', command)] + [('cmd', arg) for arg in (args or [])]
        params.append(('tty', 'true'))

        try:
            async with aiohttp.ClientSession(
                headers={'Authorization': f'Bearer {token}'},
                timeout=aiohttp.ClientTimeout(total=self.timeout + wait),
            ) as session:
                async with session.ws_connect(
                    self._exec_ws_url(name), params=params
                ) as ws:
                    # The first frame means the process is running; TTY sessions
                    # survive the disconnect below
                    msg = await asyncio.wait_for(ws.receive(), timeout=wait)
                    if msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                        raise SpriteExecutionError(
                            'Exec session closed before command started',
                            sprite_name=name,
                        )
        except asyncio.TimeoutError:
            raise SpriteExecutionError(
                'Timeout waiting for command to start', sprite_name=name
            )
        except aiohttp.ClientError as e:
            raise SpriteExecutionError(
                f'Failed to start detached command: {e}', sprite_name=name
            )
        logger.info(f'Started detached command on sprite {name}: {command}')

    async def set_network_policy(self, name: str, rules: List[NetworkRule]) -> None:
        await self._request(
            'POST',
            f'/sprites/{name}/policy/network',
            sprite_name=name,
            json={'rules': [rule.to_dict() for rule in rules]},
        )


__all__ = [
    'NetworkRule',
    'SandboxProvider',
    'SpriteInfo',
    'SpritesClient',
    'SpritesError',
    'destroy_sprite_best_effort',
]
