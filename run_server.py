#!/usr/bin/env python3
"""
Abraxas Server Runner

Main entry point for running the orchestrator.
"""

import argparse
import logging

import uvicorn

from abraxas_server.config import load_config
from abraxas_server.server import create_default_app


def setup_logging(level: str = 'INFO'):
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


# Get logger after setup
logger = logging.getLogger(__name__)


def run_server(args):
    setup_logging(args.log_level)

    config = load_config()
    config = config.model_copy(
        update={
            'host': args.host or config.host,
            'port': args.port or config.port,
            'log_level': args.log_level,
        }
    )
    if not config.encryption_key:
        logger.warning('ENCRYPTION_KEY is not set; stored tokens cannot be decrypted')

    app = create_default_app(config)

    print(f'Starting Abraxas on {config.host}:{config.port}')
    print(f'Webhooks: {config.webhook_base_url}/api/webhooks/')
    print(f'Health: http://localhost:{config.port}/health')

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


def main():
    parser = argparse.ArgumentParser(description='Abraxas Server Runner')
    subparsers = parser.add_subparsers(
        dest='command', help='Available commands'
    )

    run_parser = subparsers.add_parser('run', help='Run the orchestrator')
    run_parser.add_argument('--host', default=None, help='Host to bind to')
    run_parser.add_argument(
        '--port', type=int, default=None, help='Port to bind to'
    )
    run_parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
    )

    args = parser.parse_args()

    if args.command == 'run':
        run_server(args)
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
