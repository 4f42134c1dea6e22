"""
Connection Registry.

Durable, policy-governed trust relationships with remote sites.
"""

from connections.schemas import (
    ApprovalMode,
    ConnectionCreate,
    ConnectionDirection,
    ConnectionResponse,
    ConnectionStatus,
    ConnectionUpdate,
    IncomingMode,
)
from connections.registry import ConnectionRegistry
from connections.notifier import ConnectionNotifier, NotifyOutcome, NotifyResult
from connections.security import generate_auth_token, hash_secret

__all__ = [
    "ApprovalMode",
    "ConnectionCreate",
    "ConnectionDirection",
    "ConnectionResponse",
    "ConnectionStatus",
    "ConnectionUpdate",
    "IncomingMode",
    "ConnectionRegistry",
    "ConnectionNotifier",
    "NotifyOutcome",
    "NotifyResult",
    "generate_auth_token",
    "hash_secret",
]
