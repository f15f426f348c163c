"""
Configuration management for the Abraxas orchestrator.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables from .env file
load_dotenv()

DEFAULT_SPRITES_API_BASE = 'https://api.sprites.dev/v1'
DEFAULT_GITHUB_API_BASE = 'https://api.github.com'
DEFAULT_OPENCODE_SETUP_REPO_URL = (
    'https://github.com/anomalyco/abraxas-opencode-setup'
)


class ServerConfig(BaseModel):
    """Configuration for the orchestrator process."""

    host: str = '0.0.0.0'
    port: int = 8000
    log_level: str = 'INFO'

    # Sandbox provider
    sprites_token: Optional[str] = None
    sprites_api_base: str = DEFAULT_SPRITES_API_BASE
    sprite_timeout_seconds: float = 30.0
    sprite_exec_start_timeout: float = 10.0
    # Outbound domains the sandbox may reach; empty means no policy is applied
    sprite_allowed_domains: list[str] = []

    # Callbacks from sandboxes land here
    webhook_base_url: str = 'http://localhost:3000'

    # Hex encoded AES-256 key for stored tokens
    encryption_key: Optional[str] = None

    opencode_setup_repo_url: str = DEFAULT_OPENCODE_SETUP_REPO_URL

    github_api_base: str = DEFAULT_GITHUB_API_BASE
    github_timeout_seconds: float = 10.0

    git_user_email: str = 'abraxas@sprites.dev'
    git_user_name: str = 'abraxxxxas'

    def manifest_webhook_url(self, manifest_id: str) -> str:
        return f'{self.webhook_base_url.rstrip("/")}/api/webhooks/manifest/{manifest_id}'

    def sprite_webhook_url(self, task_id: str) -> str:
        return f'{self.webhook_base_url.rstrip("/")}/api/webhooks/sprite/{task_id}'


def load_config() -> ServerConfig:
    """Load configuration from environment variables."""
    return ServerConfig(
        host=os.getenv('ABRAXAS_HOST', '0.0.0.0'),
        port=int(os.getenv('ABRAXAS_PORT', '8000')),
        log_level=os.getenv('ABRAXAS_LOG_LEVEL', 'INFO'),
        sprites_token=os.getenv('SPRITES_TOKEN') or None,
        sprites_api_base=os.getenv('SPRITES_API_BASE', DEFAULT_SPRITES_API_BASE),
        sprite_timeout_seconds=float(os.getenv('SPRITE_TIMEOUT_SECONDS', '30')),
        sprite_exec_start_timeout=float(
            os.getenv('SPRITE_EXEC_START_TIMEOUT', '10')
        ),
        sprite_allowed_domains=_parse_csv(os.getenv('SPRITE_ALLOWED_DOMAINS')),
        webhook_base_url=_resolve_webhook_base_url(),
        encryption_key=os.getenv('ENCRYPTION_KEY') or None,
        opencode_setup_repo_url=os.getenv(
            'OPENCODE_SETUP_REPO_URL', DEFAULT_OPENCODE_SETUP_REPO_URL
        ),
        github_api_base=os.getenv('GITHUB_API_BASE', DEFAULT_GITHUB_API_BASE),
        github_timeout_seconds=float(os.getenv('GITHUB_TIMEOUT_SECONDS', '10')),
        git_user_email=os.getenv('GH_USER_EMAIL', 'abraxas@sprites.dev'),
        git_user_name=os.getenv('GH_USER_NAME', 'abraxxxxas'),
    )


def _resolve_webhook_base_url() -> str:
    """Explicit base URL wins, then the preview deployment host, then localhost.

    Webhooks cannot reach localhost from a sandbox, so the last fallback only
    makes sense for local development.
    """
    explicit = os.getenv('WEBHOOK_BASE_URL')
    if explicit:
        return explicit.rstrip('/')
    branch_url = os.getenv('VERCEL_BRANCH_URL')
    if branch_url:
        return f'https://{branch_url}'
    return 'http://localhost:3000'


def _parse_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]
