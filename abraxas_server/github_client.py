"""
Source repository client.

Reads raw file contents from GitHub at a branch, used to pick up the PRD
document and progress log an agent commits while it works. A missing file
is reported as None, distinct from a transport or API failure.

Configuration:
    GITHUB_API_BASE: API root (default: https://api.github.com)
    GITHUB_TIMEOUT_SECONDS: Request timeout (default: 10)
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from .errors import GitHubFetchError
from .webhook_payloads import PrdJson, parse_prd_json

logger = logging.getLogger(__name__)

REPO_URL_PATTERN = re.compile(r'github\.com/([^/]+)/([^/.]+)')
GITHUB_API_VERSION = '2022-11-28'


def parse_repo_from_url(repository_url: str) -> Tuple[str, str]:
    """Return (owner, repo) from a GitHub URL, with or without ``.git``."""
    match = REPO_URL_PATTERN.search(repository_url)
    if not match:
        raise GitHubFetchError(f'Invalid GitHub URL: {repository_url}')
    return match.group(1), match.group(2)


def prd_state_path(prd_name: str) -> str:
    return f'.opencode/state/{prd_name}'


@dataclass
class ManifestPrdData:
    prd_json: Optional[PrdJson] = None
    progress: Optional[str] = None

    def to_dict(self):
        return {
            'prdJson': self.prd_json.model_dump(by_alias=True)
            if self.prd_json
            else None,
            'progress': self.progress,
        }


class RepositoryClient(ABC):
    """Read access to files in a source repository."""

    @abstractmethod
    async def fetch_file(
        self, repository_url: str, token: str, branch: str, path: str
    ) -> Optional[str]:
        """Raw file contents, or None when the file or branch does not exist."""

    async def fetch_prd_data(
        self, repository_url: str, token: str, branch: str, prd_name: str
    ) -> ManifestPrdData:
        base_path = prd_state_path(prd_name)
        prd_raw, progress = await asyncio.gather(
            self.fetch_file(repository_url, token, branch, f'{base_path}/prd.json'),
            self.fetch_file(
                repository_url, token, branch, f'{base_path}/progress.txt'
            ),
        )
        prd_json = parse_prd_json(prd_raw)
        if prd_raw and prd_json is None:
            logger.warning(
                f'Malformed prd.json on {repository_url}@{branch}, ignoring'
            )
        return ManifestPrdData(prd_json=prd_json, progress=progress)


class GitHubClient(RepositoryClient):
    """GitHub contents API client."""

    def __init__(
        self,
        api_base: str = 'https://api.github.com',
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def fetch_file(
        self, repository_url: str, token: str, branch: str, path: str
    ) -> Optional[str]:
        owner, repo = parse_repo_from_url(repository_url)
        url = f'{self.api_base}/repos/{owner}/{repo}/contents/{path}'
        try:
            response = await self._get_client().get(
                url,
                params={'ref': branch},
                headers={
                    'Authorization': f'Bearer {token}',
                    'Accept': 'application/vnd.github.raw+json',
                    'X-GitHub-Api-Version': GITHUB_API_VERSION,
                },
            )
        except httpx.HTTPError as e:
            raise GitHubFetchError(f'Failed to fetch from GitHub: {e}')

        if response.status_code == 404:
            return None
        if response.is_error:
            raise GitHubFetchError(
                f'GitHub API error: {response.status_code} {response.reason_phrase}',
                status_code=response.status_code,
            )
        return response.text
