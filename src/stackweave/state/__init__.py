"""State management module for tracking provisioned resources."""

from .manager import StateStore
from .models import PendingOperation, StackState, StateRecord

__all__ = [
    "StateRecord",
    "StackState",
    "PendingOperation",
    "StateStore",
]
