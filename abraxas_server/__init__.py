"""
Abraxas - orchestrates coding-agent sandboxes (sprites) for manifests and tasks.
"""

from .config import ServerConfig, load_config
from .errors import AbraxasError, ActionResult, run_action
from .server import __version__, create_app
from .services import Services, build_services

__all__ = [
    'AbraxasError',
    'ActionResult',
    'ServerConfig',
    'Services',
    '__version__',
    'build_services',
    'create_app',
    'load_config',
    'run_action',
]
