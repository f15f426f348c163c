"""
FastAPI application for the Abraxas orchestrator.

Mounts the signed webhook receiver and the user action API on one app.
"""

import logging
from typing import Optional

from fastapi import FastAPI

from .actions_api import actions_router
from .config import ServerConfig, load_config
from .models import utcnow
from .services import Services, build_services
from .webhooks_api import webhook_router

logger = logging.getLogger(__name__)

__version__ = '0.1.0'


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the app, building services from the environment when none are given."""
    if services is None:
        services = build_services(load_config())

    app = FastAPI(
        title='Abraxas',
        description='Sprite and manifest lifecycle orchestrator',
        version=__version__,
    )
    app.state.services = services

    app.include_router(webhook_router)
    app.include_router(actions_router)

    @app.get('/health')
    async def health_check():
        """Health check endpoint."""
        return {
            'status': 'healthy',
            'timestamp': utcnow().isoformat(),
        }

    @app.on_event('shutdown')
    async def close_clients():
        await services.close()

    logger.info(f'Webhooks will be delivered to {services.config.webhook_base_url}')
    return app


def create_default_app(config: Optional[ServerConfig] = None) -> FastAPI:
    return create_app(build_services(config or load_config()))
