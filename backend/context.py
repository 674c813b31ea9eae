"""
Per-session conversation memory.

A ConversationContextManager holds everything that has to survive between
two turns of one chat session: the bounded message history, the task
reference memory used to resolve phrases like "that task", learned
preferences, running stats and the optional multi-step flow. It is purely
in-memory; one instance is created per session and dropped with it.
"""
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from models import (
    ActionRecord,
    ContextStats,
    ExecutionResult,
    HistoryMessage,
    MemoryDirective,
    MessageMetadata,
    SessionFlow,
    Task,
    TemporaryEntities,
    UserPreferences,
)

logger = logging.getLogger("taskpal.context")

MAX_HISTORY_LENGTH = 20
MAX_ACTION_HISTORY = 10
SNAPSHOT_MESSAGES = 5
DISPLAYED_BOT_TURNS = 3
FLOW_TIMEOUT = timedelta(minutes=10)
MIN_ID_PREFIX_LENGTH = 8
REVERSIBLE_ACTIONS = {"create", "update", "delete"}

# A category becomes the default once it is the most used one with this many uses
CATEGORY_DEFAULT_THRESHOLD = 2

# Phrases pointing at the task currently in focus
TASK_PRONOUNS = frozenset({
    "it", "this", "that", "this one", "that one",
    "this task", "that task", "the task", "last task", "the last task",
    "the one i just made", "the one i just created", "the task i just made",
    "the task i just created", "task i just created",
    "task đó", "task này", "này", "cái đó", "nó", "task vừa tạo", "task cuối",
})

ORDINAL_PHRASES = {
    "first task": 0, "the first task": 0, "first one": 0, "the first one": 0,
    "second task": 1, "the second task": 1, "second one": 1, "the second one": 1,
    "third task": 2, "the third task": 2, "third one": 2, "the third one": 2,
    "task đầu tiên": 0, "task đầu": 0,
}


class ReferenceRule(str, Enum):
    """How a free-text reference was resolved, in evaluation order."""
    TASK_ID_MAP = "task_id_map"
    RECENT_DISPLAY = "recent_display"
    ACTIVE_CONTEXT = "active_context"
    ORDINAL = "ordinal"
    ID_PREFIX = "id_prefix"
    TITLE_SUBSTRING = "title_substring"


def normalize_title(title: str) -> str:
    return title.strip().lower()


def _most_recent(tasks: list[Task]) -> Task:
    """Tie-break between equally valid matches: newest task wins."""
    return max(tasks, key=lambda task: (task.created_at, task.id))


class ConversationContextManager:
    def __init__(self):
        self._initialize()

    def _initialize(self) -> None:
        self.session_id = str(uuid.uuid4())
        self.start_time = datetime.now()
        self.history: list[HistoryMessage] = []
        self.action_history: list[ActionRecord] = []
        self.entities = TemporaryEntities()
        self.preferences = UserPreferences()
        self.stats = ContextStats()
        self.current_flow: Optional[SessionFlow] = None

    def reset(self) -> None:
        """Discard all state and start a fresh session."""
        old_session = self.session_id
        self._initialize()
        logger.info("Context reset (%s -> %s)", old_session, self.session_id)

    # Message history

    def add_message(
        self,
        role: str,
        content: str,
        metadata: Union[MessageMetadata, dict, None] = None,
    ) -> HistoryMessage:
        if isinstance(metadata, dict):
            metadata = MessageMetadata.model_validate(metadata)
        message = HistoryMessage(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(),
            role=role,
            content=content,
            metadata=metadata,
        )
        self.history.append(message)
        if len(self.history) > MAX_HISTORY_LENGTH:
            del self.history[: len(self.history) - MAX_HISTORY_LENGTH]
        return message

    # Snapshot for the analyzer

    def get_context_for_ai(self) -> dict[str, Any]:
        recent_messages = []
        for message in self.history[-SNAPSHOT_MESSAGES:]:
            entry = {
                "role": message.role,
                "content": message.content,
                "timestamp": message.timestamp.isoformat(),
            }
            if message.metadata and message.metadata.displayed_tasks:
                entry["displayed_tasks"] = [
                    {"id": task.id, "title": task.title}
                    for task in message.metadata.displayed_tasks
                ]
            recent_messages.append(entry)

        flow = self.current_flow if self.is_flow_active() else None

        return {
            "recent_messages": recent_messages,
            "current_flow": flow.model_dump(mode="json") if flow else None,
            "temporary_entities": self.entities.model_dump(mode="json"),
            "user_preferences": self.preferences.model_dump(mode="json"),
            "session_stats": {
                "session_duration": (datetime.now() - self.start_time).total_seconds(),
                "messages_count": len(self.history),
            },
            "user_patterns": {
                "common_categories": list(self.stats.common_categories),
                "preferred_priority": self.get_most_used_priority(),
                "typical_deadline": "1 day",
            },
        }

    def get_task_id_mapping(self) -> dict[str, str]:
        return dict(self.entities.task_id_map)

    # Absorbing execution results

    def update_context(self, result: ExecutionResult) -> None:
        updates = result.context_updates

        if updates and updates.entities:
            entity_updates = updates.entities
            protected: set[str] = set()

            # Memory population runs first and owns the fields it writes for
            # this update, so a stale generic value cannot clobber them.
            directive = entity_updates.should_add_to_memory
            if directive is not None:
                protected = self._populate_memory(directive)
                entity_updates.should_add_to_memory = None

            for name in entity_updates.model_fields_set:
                if name == "should_add_to_memory" or name in protected:
                    continue
                setattr(self.entities, name, getattr(entity_updates, name))

        if updates and updates.preferences:
            self.preferences = self.preferences.model_copy(update=updates.preferences)

        if updates and updates.flow:
            self.current_flow = updates.flow

        self.action_history.append(ActionRecord(
            action=result.action,
            timestamp=datetime.now(),
            data=result.data,
            reversible=result.action in REVERSIBLE_ACTIONS,
        ))
        if len(self.action_history) > MAX_ACTION_HISTORY:
            del self.action_history[: len(self.action_history) - MAX_ACTION_HISTORY]

    def _populate_memory(self, directive: MemoryDirective) -> set[str]:
        if directive.type == "single" and directive.task:
            return self.add_task_to_memory(directive.task)
        if directive.type == "multiple" and directive.tasks:
            return self.add_multiple_tasks_to_memory(directive.tasks)
        return set()

    # Learning

    def learn_from_task_operation(self, task: Any, action: str) -> None:
        if action == "create":
            self.stats.total_tasks += 1

            category = getattr(task, "category", None)
            if category:
                self.stats.category_counts[category] = self.stats.category_counts.get(category, 0) + 1
                if category not in self.stats.common_categories:
                    self.stats.common_categories.append(category)

            priority = getattr(task, "priority", None)
            if priority in self.stats.common_priorities:
                self.stats.common_priorities[priority] += 1

            most_used = self.get_most_used_category()
            if most_used:
                self.preferences.default_category = most_used

        elif action == "complete":
            self.stats.completed_tasks += 1

    def get_most_used_priority(self) -> str:
        priorities = self.stats.common_priorities
        if not any(priorities.values()):
            return "medium"
        # max() keeps the first of equal counts, i.e. declaration order
        return max(priorities, key=lambda name: priorities[name])

    def get_most_used_category(self) -> Optional[str]:
        counts = self.stats.category_counts
        if not counts:
            return None
        best = max(self.stats.common_categories, key=lambda name: counts.get(name, 0))
        if counts.get(best, 0) < CATEGORY_DEFAULT_THRESHOLD:
            return None
        return best

    # Task reference memory

    def add_task_to_memory(self, task: Optional[Task]) -> set[str]:
        """Make a single task the one in focus. Returns the entity fields written."""
        if not task or not task.id or not task.title:
            return set()

        self.entities.task_id_map[normalize_title(task.title)] = task.id
        self.entities.last_task = task

        active = self.entities.active_task_context
        active.primary = task.id
        active.last_displayed = [task]

        flow = self.entities.conversation_flow
        flow.expecting_task_ref = True
        flow.implicit_task_id = task.id
        return {"task_id_map", "last_task", "active_task_context", "conversation_flow"}

    def add_multiple_tasks_to_memory(self, tasks: Optional[list[Task]]) -> set[str]:
        """Remember a displayed list: first task becomes primary, the rest secondary."""
        tasks = [task for task in (tasks or []) if task and task.id and task.title]
        if not tasks:
            return set()

        for task in tasks:
            self.entities.task_id_map[normalize_title(task.title)] = task.id

        active = self.entities.active_task_context
        active.primary = tasks[0].id
        active.secondary = [task.id for task in tasks[1:]]
        active.last_displayed = list(tasks)

        flow = self.entities.conversation_flow
        flow.expecting_task_ref = True
        flow.implicit_task_id = tasks[0].id
        return {"task_id_map", "active_task_context", "conversation_flow"}

    def find_task_by_id(self, task_id: str) -> Optional[Task]:
        last_task = self.entities.last_task
        if last_task and last_task.id == task_id:
            return last_task

        collections = (
            self.entities.recent_tasks,
            self.entities.last_list,
            self.entities.active_task_context.last_displayed,
        )
        for collection in collections:
            for task in collection or []:
                if task.id == task_id:
                    return task
        return None

    def _recently_displayed_tasks(self) -> list[Task]:
        """Tasks shown in the last few bot turns, most recent turn first."""
        bot_messages = [message for message in self.history if message.role == "bot"]
        displayed: list[Task] = []
        for message in reversed(bot_messages[-DISPLAYED_BOT_TURNS:]):
            if message.metadata:
                displayed.extend(message.metadata.displayed_tasks)
        return displayed

    # Reference resolution

    def resolve_task_reference(self, reference: Optional[str]) -> Optional[Task]:
        match = self.match_task_reference(reference)
        return match[1] if match else None

    def match_task_reference(
        self, reference: Optional[str]
    ) -> Optional[tuple[ReferenceRule, Optional[Task]]]:
        """
        Resolve a reference using the first rule that claims it.

        Rules are tried in ReferenceRule order; once a rule applies its answer
        is final, even when that answer is None (e.g. a pronoun with nothing
        in focus never falls through to substring matching).
        """
        ref = (reference or "").strip().lower()
        if not ref:
            return None

        rules = (
            (ReferenceRule.TASK_ID_MAP, self._match_task_id_map),
            (ReferenceRule.RECENT_DISPLAY, self._match_recent_display),
            (ReferenceRule.ACTIVE_CONTEXT, self._match_active_context),
            (ReferenceRule.ORDINAL, self._match_ordinal),
            (ReferenceRule.ID_PREFIX, self._match_id_prefix),
            (ReferenceRule.TITLE_SUBSTRING, self._match_title_substring),
        )
        for rule, matcher in rules:
            applies, task = matcher(ref)
            if applies:
                logger.debug("Reference %r resolved by %s -> %s", ref, rule.value, task.id if task else None)
                return rule, task
        return None

    def _match_task_id_map(self, ref: str) -> tuple[bool, Optional[Task]]:
        task_id = self.entities.task_id_map.get(ref)
        if task_id is None:
            return False, None
        return True, self.find_task_by_id(task_id)

    def _match_recent_display(self, ref: str) -> tuple[bool, Optional[Task]]:
        for task in self._recently_displayed_tasks():
            if ref in task.title.lower():
                return True, task
        return False, None

    def _match_active_context(self, ref: str) -> tuple[bool, Optional[Task]]:
        if ref not in TASK_PRONOUNS:
            return False, None
        primary = self.entities.active_task_context.primary
        if primary:
            task = self.find_task_by_id(primary)
            if task:
                return True, task
        return True, self.entities.last_task

    def _match_ordinal(self, ref: str) -> tuple[bool, Optional[Task]]:
        if ref not in ORDINAL_PHRASES:
            return False, None
        index = ORDINAL_PHRASES[ref]
        last_list = self.entities.last_list or []
        return True, last_list[index] if index < len(last_list) else None

    def _match_id_prefix(self, ref: str) -> tuple[bool, Optional[Task]]:
        if len(ref) < MIN_ID_PREFIX_LENGTH:
            return False, None
        matches = [task for task in self.entities.recent_tasks or [] if task.id.lower().startswith(ref)]
        if not matches:
            return False, None
        return True, _most_recent(matches)

    def _match_title_substring(self, ref: str) -> tuple[bool, Optional[Task]]:
        matches = [task for task in self.entities.recent_tasks or [] if ref in task.title.lower()]
        if not matches:
            return False, None
        return True, _most_recent(matches)

    # Flow lifecycle

    def start_flow(self, flow_type: str, data: Optional[dict] = None, timeout: timedelta = FLOW_TIMEOUT) -> SessionFlow:
        now = datetime.now()
        self.current_flow = SessionFlow(
            type=flow_type,
            step=0,
            data=dict(data or {}),
            started_at=now,
            timeout=now + timeout,
        )
        return self.current_flow

    def update_flow(self, step: int, data: Optional[dict] = None) -> None:
        if self.current_flow is None:
            return
        self.current_flow.step = step
        if data:
            self.current_flow.data = {**self.current_flow.data, **data}

    def complete_flow(self) -> None:
        self.current_flow = None

    def is_flow_active(self) -> bool:
        """The only place the flow timeout is enforced."""
        if self.current_flow is None:
            return False
        timeout = self.current_flow.timeout
        if timeout is not None and datetime.now() > timeout:
            logger.info("Flow %s timed out", self.current_flow.type)
            self.complete_flow()
            return False
        return True

    # Summary for debugging/display

    def get_context_summary(self) -> dict[str, Any]:
        flow = self.current_flow if self.is_flow_active() else None
        last_task = self.entities.last_task
        return {
            "session_id": self.session_id,
            "messages_count": len(self.history),
            "current_flow": flow.type if flow else "none",
            "last_task": last_task.title if last_task else "none",
            "preferences": {
                "default_priority": self.preferences.default_priority,
                "default_category": self.preferences.default_category,
            },
            "stats": self.stats.model_dump(),
        }
