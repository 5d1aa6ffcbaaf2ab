"""Wire schemas for the cloud agents REST API.

Every endpoint response is validated at the boundary; a mismatch is reported
by the executor as :class:`~cloudagents.errors.MalformedResponseError`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AgentStatus(str, Enum):
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


TERMINAL_STATUSES = frozenset(
    {AgentStatus.FINISHED, AgentStatus.STOPPED, AgentStatus.ERROR, AgentStatus.EXPIRED}
)


class MessageType(str, Enum):
    USER = "user_message"
    ASSISTANT = "assistant_message"


class AgentSource(ApiModel):
    repository: str
    ref: str | None = None


class AgentTarget(ApiModel):
    branch_name: str | None = None
    url: str | None = None
    pr_url: str | None = None
    auto_create_pr: bool = False
    open_as_cursor_github_app: bool = False
    skip_reviewer_request: bool = False
    commit_sha: str | None = None
    commit_url: str | None = None


class Agent(ApiModel):
    """One remote task. Replaced wholesale on every status fetch."""

    id: str
    name: str = ""
    status: AgentStatus
    summary: str | None = None
    created_at: datetime | None = None
    source: AgentSource | None = None
    target: AgentTarget | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Message(ApiModel):
    id: str
    type: MessageType
    text: str = ""


class Conversation(ApiModel):
    id: str = ""
    messages: list[Message] = Field(default_factory=list)


class Repository(ApiModel):
    owner: str
    name: str
    repository: str
    pushed_at: datetime | None = None


class ApiKeyInfo(ApiModel):
    api_key_name: str
    created_at: datetime | None = None
    user_email: str | None = None


class AgentList(ApiModel):
    agents: list[Agent] = Field(default_factory=list)
    next_cursor: str | None = None


class RepositoryList(ApiModel):
    repositories: list[Repository] = Field(default_factory=list)


class ModelList(ApiModel):
    models: list[str] = Field(default_factory=list)


class IdResponse(ApiModel):
    id: str


class ImageDimension(ApiModel):
    width: int = Field(ge=1)
    height: int = Field(ge=1)


class PromptImage(ApiModel):
    data: str
    dimension: ImageDimension


class Prompt(ApiModel):
    text: str = Field(min_length=1)
    images: list[PromptImage] | None = None


class LaunchSource(ApiModel):
    repository: str
    ref: str | None = None


class LaunchTarget(ApiModel):
    auto_create_pr: bool | None = None
    branch_name: str | None = None


class LaunchAgentRequest(ApiModel):
    prompt: Prompt
    source: LaunchSource
    target: LaunchTarget | None = None
    model: str | None = None


class FollowUpRequest(ApiModel):
    prompt: Prompt


__all__ = [
    "Agent",
    "AgentList",
    "AgentSource",
    "AgentStatus",
    "AgentTarget",
    "ApiKeyInfo",
    "ApiModel",
    "Conversation",
    "FollowUpRequest",
    "IdResponse",
    "ImageDimension",
    "LaunchAgentRequest",
    "LaunchSource",
    "LaunchTarget",
    "Message",
    "MessageType",
    "ModelList",
    "Prompt",
    "PromptImage",
    "Repository",
    "RepositoryList",
    "TERMINAL_STATUSES",
]
