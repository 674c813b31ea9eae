import asyncio
import json
import logging
import os
import sqlite3
from datetime import datetime
from typing import Any, Callable, Optional

import anthropic

import database
from analyzer import IntentAnalyzer
from config import Settings
from context import ConversationContextManager
from executor import TaskExecutor, summarize_stats
from models import (
    ContextUpdates,
    EntityUpdates,
    ExecutionResult,
    IntentAnalysis,
    MemoryDirective,
    MessageMetadata,
    ProcessingResult,
    Task,
    TaskFilter,
)
from prompts import HELP_TEXT

logger = logging.getLogger("taskpal.assistant")

CLARIFICATION_THRESHOLD = 0.7
MAX_SUGGESTIONS = 3
INITIAL_RECENT_TASKS = 20
RECENT_COMMAND_LIMIT = 10
BACKUP_VERSION = "1.0"


def displayed_tasks(data: Any) -> list[Task]:
    """Tasks a reply shows to the user, used later for reference resolution."""
    if isinstance(data, Task):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, Task)]
    return []


def format_task_line(task: Task) -> str:
    line = f"[{task.status}] {task.title} ({task.priority})"
    if task.due_date:
        line += f" due {task.due_date[:10]}"
    return line + f" #{task.id[:8]}"


def format_result_text(result: ProcessingResult, with_suggestions: bool = True) -> str:
    """Plain-text rendering shared by the chat front ends."""
    lines = [result.message] if result.message else []
    tasks = displayed_tasks(result.data)
    lines.extend(f"{index}. {format_task_line(task)}" for index, task in enumerate(tasks, 1))
    if with_suggestions and result.follow_up_suggestions:
        lines.append("")
        lines.append("Suggestions: " + " | ".join(result.follow_up_suggestions))
    return "\n".join(lines)


class TaskAssistant:
    """
    One conversation: runs each turn through analyze -> execute -> absorb.

    The assistant owns its ConversationContextManager; turns must not overlap
    (SessionRegistry serializes them per session).
    """

    def __init__(
        self,
        analyzer: IntentAnalyzer,
        executor: TaskExecutor,
        context: Optional[ConversationContextManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.analyzer = analyzer
        self.executor = executor
        self.context = context or ConversationContextManager()
        self.settings = settings
        self.initialized = False
        self._commands: dict[str, Callable[[], Any]] = {
            "help": self._command_help,
            "stats": self._command_stats,
            "list": self._command_list,
            "recent": self._command_recent,
            "search": self._command_search,
            "export": self._command_export,
            "backup": self._command_backup,
            "config": self._command_config,
            "reset": self._command_reset,
            "context": self._command_context,
            "debug": self._command_context,
            "clear": self._command_clear,
        }

    @property
    def owner_id(self) -> Optional[str]:
        return self.executor.owner_id

    async def initialize(self) -> None:
        """Seed reference memory with the owner's most recent tasks, once."""
        if self.initialized:
            return
        try:
            recent = database.list_tasks_db(TaskFilter(owner_id=self.owner_id, limit=INITIAL_RECENT_TASKS))
            self.context.update_context(ExecutionResult(
                success=True,
                action="init",
                message="Context initialized",
                context_updates=ContextUpdates(entities=EntityUpdates(recent_tasks=recent)),
            ))
        except sqlite3.Error as e:
            logger.warning("Failed to load recent tasks into context: %s", e)
        self.initialized = True

    async def process_input(self, text: str) -> ProcessingResult:
        await self.initialize()
        self.context.add_message("user", text)

        try:
            analysis = await self.analyzer.analyze(text, self.context.get_context_for_ai())

            if analysis.operations and len(analysis.operations) > 1:
                return await self._handle_multi_operations(analysis)

            result = await self.executor.execute(analysis, self.context)

            self.context.update_context(result)
            if result.success and result.data is not None:
                self.learn_from_operation(analysis, result)

            self._record_reply(result)
            return ProcessingResult(
                success=result.success,
                message=result.message,
                data=result.data,
                analysis=analysis,
                context_summary=self.context.get_context_summary(),
                follow_up_suggestions=self.generate_suggestions(analysis, result),
                needs_clarification=analysis.confidence < CLARIFICATION_THRESHOLD or result.needs_clarification,
            )
        except Exception as e:  # noqa: BLE001
            logger.exception("Processing failed for %r", text)
            message = f"Processing error: {e}"
            self.context.add_message("bot", message, MessageMetadata(action="error", success=False))
            return ProcessingResult(
                success=False,
                message=message,
                context_summary=self.context.get_context_summary(),
                needs_clarification=True,
            )

    async def _handle_multi_operations(self, analysis: IntentAnalysis) -> ProcessingResult:
        result = await self.executor.execute_operations(
            analysis, self.context, after_step=self.learn_from_operation
        )
        self._record_reply(result)
        return ProcessingResult(
            success=result.success,
            message=result.message,
            data=result.data,
            analysis=analysis,
            context_summary=self.context.get_context_summary(),
            follow_up_suggestions=result.follow_up_suggestions[:MAX_SUGGESTIONS],
            needs_clarification=result.needs_clarification,
        )

    def _record_reply(self, result: ExecutionResult) -> None:
        self.context.add_message("bot", result.message, MessageMetadata(
            action=result.action,
            success=result.success,
            displayed_tasks=displayed_tasks(result.data),
        ))

    def learn_from_operation(self, analysis: IntentAnalysis, result: ExecutionResult) -> None:
        if not result.success or not isinstance(result.data, Task):
            return
        if analysis.primary_action == "create":
            self.context.learn_from_task_operation(result.data, "create")
        elif analysis.primary_action == "update" and analysis.entities.status == "completed":
            self.context.learn_from_task_operation(result.data, "complete")

    def generate_suggestions(
        self, analysis: IntentAnalysis, result: ExecutionResult, now: Optional[datetime] = None
    ) -> list[str]:
        suggestions = list(result.follow_up_suggestions)

        action = analysis.primary_action
        if action == "create" and result.success:
            suggestions += ["Create a related task", "Set a reminder for this task"]
        elif action == "read":
            suggestions += ["Filter the results", "Update a task"]
        elif action == "update":
            suggestions += ["View updated task", "Update another task"]

        hour = (now or datetime.now()).hour
        if 9 <= hour <= 11:
            suggestions.append("Plan your day")
        elif 17 <= hour <= 19:
            suggestions.append("Review today's progress")

        # dict.fromkeys keeps first occurrence order
        return list(dict.fromkeys(suggestions))[:MAX_SUGGESTIONS]

    # Conversational flows

    async def handle_conversational_flow(self, text: str) -> ProcessingResult:
        """Entry point for front ends: routes /commands, continues flows, else normal turn."""
        await self.initialize()
        stripped = text.strip()
        if stripped.startswith("/"):
            return await self.handle_special_command(stripped[1:])
        if self.context.is_flow_active():
            return await self._continue_flow(stripped)
        return await self.process_input(stripped)

    async def _continue_flow(self, text: str) -> ProcessingResult:
        result = await self.process_input(text)
        if self.context.is_flow_active():
            flow = self.context.current_flow
            self.context.update_flow(flow.step + 1)
            if flow.total_steps is not None and flow.step >= flow.total_steps:
                self.context.complete_flow()
        return result

    def get_context_summary(self) -> dict[str, Any]:
        return self.context.get_context_summary()

    def reset_context(self) -> None:
        self.context.reset()

    # Special commands

    async def handle_special_command(self, command: str) -> ProcessingResult:
        name = command.strip().lstrip("/").lower()
        handler = self._commands.get(name)
        if handler is None:
            # Not a known command: treat it as ordinary input
            return await self.process_input(command.strip())

        try:
            result = handler()
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except (sqlite3.Error, OSError) as e:
            logger.warning("Command /%s failed: %s", name, e)
            return ProcessingResult(success=False, message=f"Error running /{name}: {e}")

    def _command_help(self) -> ProcessingResult:
        return ProcessingResult(success=True, message=HELP_TEXT)

    def _command_stats(self) -> ProcessingResult:
        rows = database.task_stats_db(self.owner_id)
        summary = summarize_stats(rows)
        return ProcessingResult(
            success=True,
            message=(
                f"Total: {summary['total']} | Completed: {summary['completed']} | "
                f"Pending: {summary['pending']} | In progress: {summary['in_progress']} | "
                f"Completion rate: {summary['completion_rate']}%"
            ),
            data={"summary": summary, "breakdown": rows},
        )

    async def _command_list(self) -> ProcessingResult:
        return await self.process_input("view all tasks")

    def _command_recent(self) -> ProcessingResult:
        tasks = database.list_tasks_db(TaskFilter(owner_id=self.owner_id, limit=RECENT_COMMAND_LIMIT))
        result = ExecutionResult(
            success=True,
            action="read",
            data=tasks,
            message=f"{len(tasks)} most recent tasks",
            context_updates=ContextUpdates(entities=EntityUpdates(
                last_list=tasks,
                recent_tasks=tasks,
                should_add_to_memory=MemoryDirective(type="multiple", tasks=tasks),
            )),
        )
        self.context.update_context(result)
        self._record_reply(result)
        return ProcessingResult(
            success=True,
            message=result.message,
            data=tasks,
            follow_up_suggestions=["View task details", "Filter by status", "Create a new task"],
        )

    def _command_search(self) -> ProcessingResult:
        return ProcessingResult(
            success=True,
            message="Search mode - enter keywords to find tasks:",
            follow_up_suggestions=["Search by title", "Search by description", "Search by tag"],
        )

    def _command_export(self) -> ProcessingResult:
        tasks = database.list_tasks_db(TaskFilter(owner_id=self.owner_id))
        export_dir = self.settings.export_dir if self.settings else "."
        os.makedirs(export_dir, exist_ok=True)
        path = os.path.join(export_dir, f"task-export-{datetime.now().strftime('%Y-%m-%d')}.json")

        payload = {
            "export_time": datetime.now().isoformat(),
            "total_tasks": len(tasks),
            "tasks": [task.model_dump() for task in tasks],
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)

        logger.info("Exported %d tasks to %s", len(tasks), path)
        return ProcessingResult(
            success=True,
            message=f"Exported {len(tasks)} tasks to {path}",
            data={"file": path, "count": len(tasks)},
        )

    def _command_backup(self) -> ProcessingResult:
        tasks = database.list_tasks_db(TaskFilter(owner_id=self.owner_id))
        backup_dir = self.settings.backup_dir if self.settings else "backups"
        os.makedirs(backup_dir, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = os.path.join(backup_dir, f"backup-{stamp}.json")

        payload = {
            "backup_time": datetime.now().isoformat(),
            "version": BACKUP_VERSION,
            "context": self.get_context_summary(),
            "tasks": [task.model_dump() for task in tasks],
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False, default=str)

        logger.info("Backed up %d tasks to %s", len(tasks), path)
        return ProcessingResult(
            success=True,
            message=f"Backup written to {path}",
            data={"file": path, "tasks_count": len(tasks)},
        )

    def _command_config(self) -> ProcessingResult:
        summary = self.get_context_summary()
        environment = {}
        if self.settings:
            environment = {
                "api_key_configured": self.settings.api_key_configured,
                "model": self.settings.model,
                "database_path": self.settings.database_path,
            }
        return ProcessingResult(
            success=True,
            message="TaskPal configuration",
            data={
                "preferences": self.context.preferences.model_dump(),
                "session_info": {
                    "session_id": summary["session_id"],
                    "messages_count": summary["messages_count"],
                    "started_at": self.context.start_time.isoformat(),
                },
                "environment": environment,
            },
        )

    def _command_reset(self) -> ProcessingResult:
        self.reset_context()
        return ProcessingResult(success=True, message="Context has been reset")

    def _command_context(self) -> ProcessingResult:
        return ProcessingResult(success=True, message="Context debug info", data=self.get_context_summary())

    def _command_clear(self) -> ProcessingResult:
        return ProcessingResult(success=True, message="", data={"clear": True})


def build_assistant(
    settings: Settings,
    owner_id: Optional[str] = None,
    client: Optional[anthropic.AsyncAnthropic] = None,
) -> TaskAssistant:
    client = client or anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return TaskAssistant(
        analyzer=IntentAnalyzer(client, model=settings.model),
        executor=TaskExecutor(client, model=settings.model, owner_id=owner_id or settings.owner_id),
        settings=settings,
    )


class SessionOwnerError(Exception):
    """A turn named a different owner than the one its session was started for."""


class SessionRegistry:
    """
    One TaskAssistant per session key; turns of the same session never overlap.
    A session is bound to the owner it was started with.
    """

    def __init__(self, factory: Callable[[Optional[str]], TaskAssistant]):
        self._factory = factory
        self._assistants: dict[str, TaskAssistant] = {}
        self._owners: dict[str, Optional[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._assistants

    def get(self, key: str, owner_id: Optional[str] = None) -> TaskAssistant:
        if key not in self._assistants:
            logger.info("Starting session %s", key)
            self._assistants[key] = self._factory(owner_id)
            self._owners[key] = owner_id
            self._locks[key] = asyncio.Lock()
        return self._assistants[key]

    async def handle(self, key: str, text: str, owner_id: Optional[str] = None) -> ProcessingResult:
        assistant = self.get(key, owner_id)
        if self._owners[key] != owner_id:
            raise SessionOwnerError(f"Session {key} belongs to another owner")
        async with self._locks[key]:
            return await assistant.handle_conversational_flow(text)

    def drop(self, key: str) -> bool:
        self._locks.pop(key, None)
        self._owners.pop(key, None)
        return self._assistants.pop(key, None) is not None
