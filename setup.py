"""Setup script for Abraxas.

Distribution name: abraxas
Python packages: abraxas_server (orchestrator service)
"""

from setuptools import setup, find_packages


def _read_readme() -> str:
    try:
        with open('README.md', 'r', encoding='utf-8') as f:
            return f.read()
    except Exception:
        return 'Abraxas - sprite and manifest lifecycle orchestrator.'


setup(
    name='abraxas',
    version='0.1.0',
    description='Abraxas: orchestrates coding-agent sandboxes for manifests and tasks',
    long_description=_read_readme(),
    long_description_content_type='text/markdown',
    author='Abraxas Contributors',
    author_email='',
    packages=find_packages(exclude=['tests', 'tests.*']),
    # Include top-level modules used by console entrypoints.
    py_modules=['run_server'],
    python_requires='>=3.10',
    install_requires=[
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'pydantic>=2.0.0',
        'httpx>=0.25.0',
        # Sandbox exec websocket
        'aiohttp>=3.9.0',
        'python-dotenv>=1.0.0',
        # Token encryption at rest
        'cryptography>=41.0.0',
    ],
    entry_points={
        'console_scripts': [
            'abraxas=run_server:main',
        ]
    },
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
            'pytest-cov>=4.1.0',
        ],
        'dev': [
            'black>=23.0.0',
            'ruff>=0.1.0',
            'mypy>=1.6.0',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
)
