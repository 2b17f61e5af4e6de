#!/usr/bin/env python3
"""
Setup script for the chat relay (real-time messaging and call signaling)
"""

from setuptools import setup, find_namespace_packages

setup(
    name="chat-relay",
    version="0.1.0",
    description="WebSocket relay for chat messages and call signaling",
    packages=find_namespace_packages(include=["server*", "shared*", "client*"]),
    install_requires=[
        "websockets==15.0",
        "cryptography==43.0.1",
        "PyJWT==2.9.0",
        "typer==0.12.3",
        "rich==13.9.2",
        "aioconsole==0.8.1",
        "PyYAML==6.0.2",
    ],
    extras_require={
        "test": [
            "pytest==8.4.2",
            "pytest-asyncio==1.2.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'relay-server=server.server:main',
            'relay-admin=server.admin:main',
            'relay-client=client.chat_cli:app',
        ],
    },
)
