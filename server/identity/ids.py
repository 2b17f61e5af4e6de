from __future__ import annotations
import uuid


def generate_connection_id() -> str:
    """Generate a new UUID v4 for a connection handle"""
    return str(uuid.uuid4())


def generate_message_id() -> str:
    """Generate a new UUID v4 for a stored message"""
    return str(uuid.uuid4())
