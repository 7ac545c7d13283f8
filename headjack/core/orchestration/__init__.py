"""
Orchestration Package

The long-running loops of the engine: inbound sync and outbound pacing.
"""

from .backoff import ExponentialBackoff
from .rate_governor import (
    JoinAction,
    LeaveAction,
    MessageAction,
    OutboundAction,
    OutboundRateGovernor,
    PendingAction,
    ReactionAction,
)
from .sync_loop import SyncLoopController

__all__ = [
    "ExponentialBackoff",
    "JoinAction",
    "LeaveAction",
    "MessageAction",
    "OutboundAction",
    "OutboundRateGovernor",
    "PendingAction",
    "ReactionAction",
    "SyncLoopController",
]
