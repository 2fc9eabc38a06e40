#!/usr/bin/env python3
"""
Setup script for SFC Stake Watcher
"""

from setuptools import setup

setup(
    name="sfc-stake-watcher",
    version="1.0.0",
    description="Staking contract event watcher and notification relay",
    py_modules=[
        "amount_utils",
        "channels_cli",
        "config_manager",
        "fetchers",
        "keepers",
        "kv_store",
        "logger_utils",
        "messages",
        "notifier",
        "rpc_failover",
        "sfc_client",
        "sfc_events",
        "stake_watcher",
        "watch_supervisor",
    ],
    package_dir={"": "src"},
    install_requires=[
        "web3>=6.0.0,<7.0.0",
        "requests>=2.28.0",
        "python-dotenv>=1.0.0",
        "duckdb>=0.9.0",
        "websockets>=11.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "stakewatch=stake_watcher:main",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
