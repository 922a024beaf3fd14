from setuptools import setup, find_packages

setup(
    name="commitwatch",
    version="0.1",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click",
        "sqlalchemy[asyncio]>=2.0",
        "aiohttp",
        "aiosqlite",
        "asyncpg",
        "alembic",
        "pyyaml",
        "python-telegram-bot>=20.0",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "commitwatch=commitwatch.cli.main:cli",
        ],
    },
)
