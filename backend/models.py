from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Status = Literal["pending", "in_progress", "completed", "cancelled"]
Priority = Literal["low", "medium", "high", "urgent"]

STATUSES = ("pending", "in_progress", "completed", "cancelled")
PRIORITIES = ("low", "medium", "high", "urgent")

# Operation names the analyzer sometimes borrows from the function declarations
ACTION_ALIASES = {
    "create_task": "create",
    "list_tasks": "read",
    "update_task": "update",
    "complete_task": "update",
    "delete_task": "delete",
    "search_tasks": "search",
}

PRIORITY_ALIASES = {"critical": "urgent", "normal": "medium"}
STATUS_ALIASES = {
    "done": "completed",
    "todo": "pending",
    "in progress": "in_progress",
    "canceled": "cancelled",
}


def _lower_or_none(value):
    if isinstance(value, str):
        value = value.strip().lower()
        return value or None
    return value


# Store records

class Task(BaseModel):
    id: str
    owner_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: Status = "pending"
    priority: Priority = "medium"
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    due_date: Optional[str] = None  # ISO format: YYYY-MM-DD or full datetime
    created_at: str
    updated_at: str


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    status: Status = "pending"
    priority: Priority = "medium"
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    due_date: Optional[str] = None
    owner_id: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    due_date: Optional[str] = None


class TaskFilter(BaseModel):
    owner_id: Optional[str] = None
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    due_date: Optional[str] = None  # matches on the date portion
    limit: Optional[int] = Field(default=None, ge=1)


class User(BaseModel):
    id: str
    telegram_id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: Literal["user", "admin"] = "user"
    status: Literal["active", "inactive"] = "inactive"
    created_at: str
    updated_at: str


# Intent analysis

class TaskEntities(BaseModel):
    """Loosely-filled entity bag as returned by the analyzer."""
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    status: Optional[Status] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    deadline: Optional[str] = None
    due_date: Optional[str] = None
    task_references: list[str] = Field(default_factory=list)
    task_id: Optional[str] = None
    bulk_delete: bool = False
    limit: Optional[int] = None

    model_config = {"extra": "ignore"}

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value):
        value = _lower_or_none(value)
        value = PRIORITY_ALIASES.get(value, value)
        return value if value in PRIORITIES else None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        value = _lower_or_none(value)
        value = STATUS_ALIASES.get(value, value)
        return value if value in STATUSES else None


class ContextUsage(BaseModel):
    references_previous: bool = False
    continues_flow: bool = False
    needs_clarification: bool = False
    ambiguous_references: list[str] = Field(default_factory=list)


class Operation(BaseModel):
    action: str
    entities: TaskEntities = Field(default_factory=TaskEntities)
    order: int = 0

    @field_validator("action", mode="before")
    @classmethod
    def _canonical_action(cls, value):
        value = _lower_or_none(value) or "help"
        return ACTION_ALIASES.get(value, value)


class IntentAnalysis(BaseModel):
    primary_action: str = "help"
    secondary_actions: list[str] = Field(default_factory=list)
    entities: TaskEntities = Field(default_factory=TaskEntities)
    context_usage: ContextUsage = Field(default_factory=ContextUsage)
    confidence: float = 0.5
    instructions: str = ""
    clarification_needed: Optional[str] = None
    operations: Optional[list[Operation]] = None

    model_config = {"extra": "ignore"}

    @field_validator("primary_action", mode="before")
    @classmethod
    def _canonical_action(cls, value):
        value = _lower_or_none(value) or "help"
        return ACTION_ALIASES.get(value, value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        # Anything outside [0, 1] is treated as "unsure"
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.5
        if value < 0 or value > 1:
            return 0.5
        return value


# Per-action entity records, validated at the executor boundary

class CreateEntities(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    deadline: Optional[str] = None
    due_date: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value):
        return value.strip() if isinstance(value, str) else value


class ReadEntities(BaseModel):
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    deadline: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class UpdateEntities(BaseModel):
    task_id: Optional[str] = None
    task_references: list[str] = Field(default_factory=list)
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    deadline: Optional[str] = None
    due_date: Optional[str] = None


class DeleteEntities(BaseModel):
    task_id: Optional[str] = None
    task_references: list[str] = Field(default_factory=list)
    status: Optional[Status] = None
    bulk_delete: bool = False


class SearchEntities(BaseModel):
    term: str = Field(min_length=1)


# Conversation state

class MessageMetadata(BaseModel):
    action: Optional[str] = None
    success: Optional[bool] = None
    displayed_tasks: list[Task] = Field(default_factory=list)


class HistoryMessage(BaseModel):
    id: str
    timestamp: datetime
    role: Literal["user", "bot"]
    content: str
    metadata: Optional[MessageMetadata] = None


class ActionRecord(BaseModel):
    action: str
    timestamp: datetime
    data: Any = None
    reversible: bool = False


class WorkingHours(BaseModel):
    start: str = "09:00"
    end: str = "18:00"


class NotificationSettings(BaseModel):
    desktop: bool = True
    telegram: bool = False
    before_deadline: int = 2  # hours


class UserPreferences(BaseModel):
    default_category: Optional[str] = None
    default_priority: Priority = "medium"
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    timezone: str = "UTC"
    language: Literal["vi", "en"] = "en"
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)


class SessionFlow(BaseModel):
    type: Literal["creating", "updating", "bulk_operation", "planning", "searching"]
    step: int = 0
    total_steps: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    timeout: Optional[datetime] = None


class ActiveTaskContext(BaseModel):
    primary: Optional[str] = None
    secondary: list[str] = Field(default_factory=list)
    last_displayed: list[Task] = Field(default_factory=list)


class ConversationFlowHint(BaseModel):
    expecting_task_ref: bool = False
    implicit_task_id: Optional[str] = None


class TemporaryEntities(BaseModel):
    last_task: Optional[Task] = None
    last_list: Optional[list[Task]] = None
    recent_tasks: Optional[list[Task]] = None
    task_id_map: dict[str, str] = Field(default_factory=dict)
    active_task_context: ActiveTaskContext = Field(default_factory=ActiveTaskContext)
    conversation_flow: ConversationFlowHint = Field(default_factory=ConversationFlowHint)
    pending_action: Optional[dict[str, Any]] = None


class MemoryDirective(BaseModel):
    type: Literal["single", "multiple"]
    task: Optional[Task] = None
    tasks: list[Task] = Field(default_factory=list)


class EntityUpdates(BaseModel):
    """Entity changes proposed by a result; only explicitly set fields are merged."""
    last_task: Optional[Task] = None
    last_list: Optional[list[Task]] = None
    recent_tasks: Optional[list[Task]] = None
    task_id_map: Optional[dict[str, str]] = None
    active_task_context: Optional[ActiveTaskContext] = None
    conversation_flow: Optional[ConversationFlowHint] = None
    pending_action: Optional[dict[str, Any]] = None
    should_add_to_memory: Optional[MemoryDirective] = None


class ContextUpdates(BaseModel):
    entities: Optional[EntityUpdates] = None
    preferences: Optional[dict[str, Any]] = None
    flow: Optional[SessionFlow] = None


class ContextStats(BaseModel):
    total_tasks: int = 0
    completed_tasks: int = 0
    common_categories: list[str] = Field(default_factory=list)
    category_counts: dict[str, int] = Field(default_factory=dict)
    common_priorities: dict[str, int] = Field(
        default_factory=lambda: {p: 0 for p in PRIORITIES}
    )


class ExecutionResult(BaseModel):
    success: bool
    action: str
    message: str
    data: Any = None
    context_updates: Optional[ContextUpdates] = None
    follow_up_suggestions: list[str] = Field(default_factory=list)
    needs_clarification: bool = False
    error: Optional[str] = None


class ProcessingResult(BaseModel):
    success: bool
    message: str
    data: Any = None
    analysis: Optional[IntentAnalysis] = None
    context_summary: Optional[dict[str, Any]] = None
    follow_up_suggestions: list[str] = Field(default_factory=list)
    needs_clarification: bool = False


# HTTP payloads

class ChatRequest(BaseModel):
    session_id: str = "default"
    owner_id: Optional[str] = None
    message: str = Field(min_length=1)
