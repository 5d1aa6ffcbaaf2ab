"""Public package surface for cloudagents."""

from __future__ import annotations

from .client import CloudAgentsClient
from .config import ClientSettings, PollingPolicy, QueuePolicy, RetryPolicy
from .continuity import ContinuitySnapshot, ContinuityTracker
from .errors import (
    ApiStatusError,
    AuthError,
    CloudAgentsError,
    MalformedResponseError,
    NotFoundError,
    QueueClearedError,
    QueueClosedError,
    QueueTimeoutError,
    RateLimitError,
    TransientError,
)
from .events import EventBroker, SyncEvent, SyncEventKind
from .executor import Operation, RequestExecutor
from .merge import MessageLog, merge_messages
from .models import Agent, AgentStatus, Conversation, Message, MessageType
from .poller import PollPhase, TaskPoller
from .queue import Priority, PriorityRequestQueue
from .result import Empty, Err, Ok, Result
from .session import AgentSession

__all__ = [
    "__version__",
    "Agent",
    "AgentSession",
    "AgentStatus",
    "ApiStatusError",
    "AuthError",
    "ClientSettings",
    "CloudAgentsClient",
    "CloudAgentsError",
    "ContinuitySnapshot",
    "ContinuityTracker",
    "Conversation",
    "Empty",
    "Err",
    "EventBroker",
    "MalformedResponseError",
    "Message",
    "MessageLog",
    "MessageType",
    "NotFoundError",
    "Ok",
    "Operation",
    "PollPhase",
    "PollingPolicy",
    "Priority",
    "PriorityRequestQueue",
    "QueueClearedError",
    "QueueClosedError",
    "QueuePolicy",
    "QueueTimeoutError",
    "RateLimitError",
    "RequestExecutor",
    "Result",
    "RetryPolicy",
    "SyncEvent",
    "SyncEventKind",
    "TaskPoller",
    "TransientError",
    "merge_messages",
]

__version__ = "0.1.0"
