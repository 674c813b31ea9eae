import json
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

import anthropic
from pydantic import BaseModel, ValidationError, model_validator

import database
from config import DEFAULT_MODEL
from context import ORDINAL_PHRASES, TASK_PRONOUNS, ConversationContextManager
from models import (
    STATUSES,
    ContextUpdates,
    CreateEntities,
    DeleteEntities,
    EntityUpdates,
    ExecutionResult,
    IntentAnalysis,
    MemoryDirective,
    Priority,
    ReadEntities,
    SearchEntities,
    Status,
    TaskEntities,
    TaskFilter,
    UpdateEntities,
)
from prompts import FUNCTION_CALL_PROMPT, TASK_TOOLS

logger = logging.getLogger("taskpal.executor")

CONFIDENCE_THRESHOLD = 0.7
RECENT_TASKS_LIMIT = 10
# The default priority follows the most used one once it has this many uses
PRIORITY_DEFAULT_THRESHOLD = 3

TASK_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

RELATIVE_DAYS = {
    "today": 0, "tomorrow": 1, "next week": 7,
    "hôm nay": 0, "ngày mai": 1, "tuần sau": 7,
}
IN_DAYS_PATTERN = re.compile(r"^in (\d+) (day|days|week|weeks)$")

PATCH_FIELDS = ("title", "description", "status", "priority", "category", "tags")


def is_valid_task_id(value: Optional[str]) -> bool:
    return bool(value) and bool(TASK_ID_PATTERN.match(value))


def parse_deadline(value: str) -> str:
    """Normalize a deadline to an ISO string; raises ValueError when unparseable."""
    text = value.strip().lower()
    if text in RELATIVE_DAYS:
        return (date.today() + timedelta(days=RELATIVE_DAYS[text])).isoformat()
    match = IN_DAYS_PATTERN.match(text)
    if match:
        amount = int(match.group(1))
        if match.group(2).startswith("week"):
            amount *= 7
        return (date.today() + timedelta(days=amount)).isoformat()
    datetime.fromisoformat(value.strip())
    return value.strip()


def summarize_stats(rows: list[dict]) -> dict[str, Any]:
    """Collapse status x priority rows into per-status totals."""
    totals = {status: 0 for status in STATUSES}
    for row in rows:
        totals[row["status"]] = totals.get(row["status"], 0) + row["total"]
    total = sum(totals.values())
    completion_rate = round(totals["completed"] / total * 100) if total else 0
    return {"total": total, **totals, "completion_rate": completion_rate}


def failure(action: str, message: str, error: str, **kwargs) -> ExecutionResult:
    return ExecutionResult(success=False, action=action, message=message, error=error, **kwargs)


def invalid_entities(action: str, exc: ValidationError) -> ExecutionResult:
    fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
    return failure(
        action,
        f"Some details for {action} are missing or invalid: {', '.join(fields)}.",
        error="missing-required-field",
        needs_clarification=True,
    )


# Function-calling fallback: one typed decoder per supported tool

class _IdentifierCall(BaseModel):
    task_identifier: str

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_id(cls, data):
        # Older prompts called the identifier "id"
        if isinstance(data, dict) and not data.get("task_identifier") and data.get("id"):
            data = {**data, "task_identifier": data["id"]}
        return data


class CreateTaskCall(BaseModel):
    title: str
    description: Optional[str] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    deadline: Optional[str] = None
    tags: Optional[list[str]] = None


class ListTasksCall(BaseModel):
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    limit: Optional[int] = None


class UpdateTaskCall(_IdentifierCall):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    deadline: Optional[str] = None


class DeleteTaskCall(_IdentifierCall):
    pass


class SearchTasksCall(BaseModel):
    query: str


FUNCTION_CALLS: dict[str, type[BaseModel]] = {
    "create_task": CreateTaskCall,
    "list_tasks": ListTasksCall,
    "update_task": UpdateTaskCall,
    "delete_task": DeleteTaskCall,
    "search_tasks": SearchTasksCall,
}


class TaskExecutor:
    """
    Maps an IntentAnalysis onto task store operations.

    Every outcome, including store failures, comes back as an ExecutionResult;
    nothing raised inside a handler escapes execute().
    """

    def __init__(
        self,
        client: Optional[anthropic.AsyncAnthropic] = None,
        model: str = DEFAULT_MODEL,
        owner_id: Optional[str] = None,
    ):
        self.client = client
        self.model = model
        self.owner_id = owner_id
        self._handlers = {
            "create": self._execute_create,
            "read": self._execute_read,
            "update": self._execute_update,
            "delete": self._execute_delete,
            "search": self._execute_search,
            "analyze": self._execute_analyze,
        }

    async def execute(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        if analysis.confidence < CONFIDENCE_THRESHOLD:
            return failure(
                "clarification",
                analysis.clarification_needed or "Could you be a bit more specific?",
                error="low-confidence",
                needs_clarification=True,
            )

        resolved = self.resolve_context_references(analysis, context)
        action = resolved.primary_action

        try:
            handler = self._handlers.get(action)
            if handler is None:
                return await self._execute_with_function_call(resolved, context)
            result = handler(resolved, context)
        except Exception as e:  # noqa: BLE001
            logger.exception("Executing %s failed", action)
            return failure(action, f"Could not {action} the task: {e}", error="store-error")

        logger.info("Executed %s: success=%s", action, result.success)
        return result

    async def execute_operations(
        self,
        analysis: IntentAnalysis,
        context: ConversationContextManager,
        after_step: Optional[Callable[[IntentAnalysis, ExecutionResult], None]] = None,
    ) -> ExecutionResult:
        """
        Run several operations from one utterance, strictly in `order`.

        Context is updated after each successful step so later steps can refer
        to what earlier ones did. The first failure stops the run; completed
        steps are not rolled back.
        """
        operations = sorted(analysis.operations or [], key=lambda operation: operation.order)
        if not operations:
            return failure("multi", "No operations to execute.", error="missing-required-field")

        logger.info("Processing %d operations", len(operations))
        results: list[ExecutionResult] = []
        for operation in operations:
            step = IntentAnalysis(
                primary_action=operation.action,
                entities=operation.entities,
                context_usage=analysis.context_usage,
                confidence=analysis.confidence,
                instructions=f"Execute {operation.action} with entities: {operation.entities.model_dump_json(exclude_none=True)}",
            )
            result = await self.execute(step, context)
            results.append(result)
            if not result.success:
                break
            context.update_context(result)
            if after_step is not None:
                after_step(step, result)

        succeeded = [result for result in results if result.success]
        all_ok = len(succeeded) == len(operations)

        combined: list[Any] = []
        for result in succeeded:
            if isinstance(result.data, list):
                combined.extend(result.data)
            elif result.data is not None:
                combined.append(result.data)

        if all_ok:
            message = f"Successfully executed {len(succeeded)} operations."
            suggestions = ["View task list", "Continue with other operations"]
        else:
            failed = results[-1]
            message = (
                f"Executed {len(succeeded)}/{len(operations)} operations. "
                f"Step {len(results)} ({failed.action}) failed: {failed.message}"
            )
            suggestions = ["Retry the failed step", "Execute one step at a time"]

        return ExecutionResult(
            success=all_ok,
            action="multi",
            data=combined,
            message=message,
            follow_up_suggestions=suggestions,
            needs_clarification=not all_ok and results[-1].needs_clarification,
            error=None if all_ok else results[-1].error,
        )

    # Reference resolution

    def resolve_context_references(
        self, analysis: IntentAnalysis, context: ConversationContextManager
    ) -> IntentAnalysis:
        """Fill entities.task_id for update/delete from context when possible."""
        resolved = analysis.model_copy(deep=True)
        entities = resolved.entities
        if resolved.primary_action not in ("update", "delete"):
            return resolved
        if is_valid_task_id(entities.task_id):
            return resolved

        for reference in entities.task_references:
            task = context.resolve_task_reference(reference)
            if task and is_valid_task_id(task.id):
                entities.task_id = task.id
                return resolved

        # Implicit reference ("mark as done") right after a task was in focus
        hint = context.entities.conversation_flow
        primary = context.entities.active_task_context.primary
        if (
            not entities.task_id
            and not entities.task_references
            and not entities.bulk_delete
            and resolved.context_usage.references_previous
            and hint.expecting_task_ref
            and is_valid_task_id(primary)
        ):
            entities.task_id = primary
        return resolved

    def resolve_task_from_text(self, identifier: Optional[str], context: ConversationContextManager) -> Optional[str]:
        """Resolve an id, context reference or title fragment to a task id."""
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if is_valid_task_id(identifier):
            return identifier

        task = context.resolve_task_reference(identifier)
        if task and is_valid_task_id(task.id):
            return task.id

        needle = identifier.lower()
        # Pronouns and ordinals only make sense against conversation memory
        if needle in TASK_PRONOUNS or needle in ORDINAL_PHRASES:
            return None

        tasks = database.list_tasks_db(TaskFilter(owner_id=self.owner_id))
        exact = next((t for t in tasks if t.title.lower() == needle), None)
        if exact:
            return exact.id
        partial = database.find_task_by_title_db(identifier, self.owner_id)
        if partial:
            return partial.id

        for matches in (
            lambda t: bool(t.description) and needle in t.description.lower(),
            lambda t: len(needle) >= 8 and t.id.lower().startswith(needle),
        ):
            found = next((t for t in tasks if matches(t)), None)
            if found:
                return found.id
        return None

    def _resolve_task_id(self, candidates: list[Optional[str]], context: ConversationContextManager) -> Optional[str]:
        for candidate in candidates:
            task_id = self.resolve_task_from_text(candidate, context)
            if task_id:
                return task_id
        return None

    # Handlers

    def _execute_create(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        try:
            entities = CreateEntities.model_validate(analysis.entities.model_dump(exclude_none=True))
        except ValidationError:
            return failure(
                "create",
                "A task needs a title. What should the task be called?",
                error="missing-required-field",
            )

        due_date = None
        raw_due = entities.due_date or entities.deadline
        if raw_due:
            try:
                due_date = parse_deadline(raw_due)
            except ValueError:
                return failure("create", f'I could not understand the deadline "{raw_due}".', error="invalid-field")

        preferences = context.preferences
        task = database.create_task_db(
            title=entities.title,
            description=entities.description,
            priority=entities.priority or preferences.default_priority or "medium",
            category=entities.category or preferences.default_category,
            tags=entities.tags,
            due_date=due_date,
            owner_id=self.owner_id,
        )

        return ExecutionResult(
            success=True,
            action="create",
            data=task,
            message=f'Created task "{task.title}".',
            context_updates=ContextUpdates(
                entities=EntityUpdates(
                    last_task=task,
                    should_add_to_memory=MemoryDirective(type="single", task=task),
                ),
                preferences=self._learn_preferences(entities, context),
            ),
            follow_up_suggestions=["View task details", "Create another task", "View task list"],
        )

    def _learn_preferences(self, entities: CreateEntities, context: ConversationContextManager) -> Optional[dict]:
        # Category defaults are learned by the context manager from its own counts
        if not entities.priority:
            return None
        counts = dict(context.stats.common_priorities)
        counts[entities.priority] = counts.get(entities.priority, 0) + 1
        count = counts[entities.priority]
        if count >= PRIORITY_DEFAULT_THRESHOLD and count == max(counts.values()):
            return {"default_priority": entities.priority}
        return None

    def _execute_read(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        try:
            entities = ReadEntities.model_validate(analysis.entities.model_dump(exclude_none=True))
        except ValidationError as e:
            return invalid_entities("read", e)

        due_date = None
        if entities.deadline:
            try:
                due_date = parse_deadline(entities.deadline)
            except ValueError:
                return failure("read", f'I could not understand the date "{entities.deadline}".', error="invalid-field")

        filters = TaskFilter(
            owner_id=self.owner_id,
            status=entities.status,
            priority=entities.priority,
            category=entities.category,
            due_date=due_date,
            limit=entities.limit,
        )
        tasks = database.list_tasks_db(filters)

        message = f"Found {len(tasks)} task(s)"
        applied = filters.model_dump(exclude_none=True, exclude={"owner_id", "limit"})
        if applied:
            message += " (" + ", ".join(f"{key}: {value}" for key, value in applied.items()) + ")"

        return ExecutionResult(
            success=True,
            action="read",
            data=tasks,
            message=message,
            context_updates=ContextUpdates(
                entities=EntityUpdates(
                    last_list=tasks,
                    recent_tasks=tasks[:RECENT_TASKS_LIMIT],
                    should_add_to_memory=MemoryDirective(type="multiple", tasks=tasks),
                ),
            ),
            follow_up_suggestions=(
                ["View the first task", "Filter by other criteria", "Update a task"]
                if tasks else ["Create a new task", "View all tasks", "Search for another task"]
            ),
        )

    def _execute_update(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        try:
            entities = UpdateEntities.model_validate(analysis.entities.model_dump(exclude_none=True))
        except ValidationError as e:
            return invalid_entities("update", e)

        task_id = self._resolve_task_id([entities.task_id, *entities.task_references], context)
        if not task_id:
            return failure(
                "update",
                "I couldn't tell which task to update. Which task do you mean?",
                error="unresolved-reference",
                needs_clarification=True,
            )

        references = {reference.strip().lower() for reference in entities.task_references}
        patch = {}
        for field in PATCH_FIELDS:
            value = getattr(entities, field)
            if value is None:
                continue
            # A title that only names the target is a reference, not a rename
            if field == "title" and value.strip().lower() in references:
                continue
            patch[field] = value

        raw_due = entities.due_date or entities.deadline
        if raw_due:
            try:
                patch["due_date"] = parse_deadline(raw_due)
            except ValueError:
                return failure("update", f'I could not understand the deadline "{raw_due}".', error="invalid-field")

        task = database.update_task_db(task_id, **patch)
        if task is None:
            return failure("update", "That task no longer exists.", error="not-found")

        return ExecutionResult(
            success=True,
            action="update",
            data=task,
            message=f'Updated task "{task.title}".',
            context_updates=ContextUpdates(
                entities=EntityUpdates(
                    last_task=task,
                    should_add_to_memory=MemoryDirective(type="single", task=task),
                ),
            ),
            follow_up_suggestions=["View updated task", "Update another task", "View task list"],
        )

    def _execute_delete(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        try:
            entities = DeleteEntities.model_validate(analysis.entities.model_dump(exclude_none=True))
        except ValidationError as e:
            return invalid_entities("delete", e)

        if entities.bulk_delete and entities.status:
            return self._bulk_delete_by_status(entities.status)

        task_id = self._resolve_task_id(
            [entities.task_id, *entities.task_references, analysis.entities.title], context
        )
        if not task_id:
            return failure(
                "delete",
                "I couldn't tell which task to delete. Which task do you mean?",
                error="unresolved-reference",
                needs_clarification=True,
            )

        known = context.find_task_by_id(task_id)
        if not database.delete_task_db(task_id):
            return failure("delete", "That task no longer exists.", error="not-found")

        title = known.title if known else None
        return ExecutionResult(
            success=True,
            action="delete",
            data={"task_id": task_id, "title": title},
            message=f'Deleted task "{title}".' if title else "Deleted the task.",
            follow_up_suggestions=["View remaining tasks", "Create a new task"],
        )

    def _bulk_delete_by_status(self, status: str) -> ExecutionResult:
        tasks = database.list_tasks_db(TaskFilter(owner_id=self.owner_id, status=status))
        if not tasks:
            return failure(
                "delete",
                f"There are no {status} tasks to delete.",
                error="not-found",
                data={"deleted_count": 0, "failed_count": 0, "total_found": 0, "status": status},
            )

        deleted: list[str] = []
        failed: list[dict] = []
        for task in tasks:
            try:
                if database.delete_task_db(task.id):
                    deleted.append(task.id)
                else:
                    failed.append({"task_id": task.id, "title": task.title, "error": "not found"})
            except Exception as e:  # noqa: BLE001
                logger.warning("Bulk delete of %s failed: %s", task.id, e)
                failed.append({"task_id": task.id, "title": task.title, "error": str(e)})

        data = {
            "deleted_count": len(deleted),
            "failed_count": len(failed),
            "total_found": len(tasks),
            "status": status,
            "deleted": deleted,
            "failed": failed,
        }
        message = f"Deleted {len(deleted)} {status} task(s)"
        if failed:
            message += f", {len(failed)} could not be deleted"

        error = None
        if failed:
            error = "bulk-partial-failure" if deleted else "store-error"

        return ExecutionResult(
            success=bool(deleted),
            action="delete",
            data=data,
            message=message + ".",
            error=error,
            follow_up_suggestions=["View remaining tasks", "View statistics"],
        )

    def _execute_search(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        term = analysis.entities.title
        if not term:
            quoted = analysis.instructions.split('"')
            term = quoted[1] if len(quoted) > 2 else ""
        try:
            entities = SearchEntities(term=term.strip())
        except ValidationError:
            return failure("search", "What should I search for?", error="missing-required-field")

        tasks = database.search_tasks_db(entities.term, self.owner_id)
        return ExecutionResult(
            success=True,
            action="search",
            data=tasks,
            message=f'Found {len(tasks)} task(s) matching "{entities.term}".',
            context_updates=ContextUpdates(
                entities=EntityUpdates(last_list=tasks, recent_tasks=tasks),
            ),
            follow_up_suggestions=(
                ["View the first result", "Refine the search"]
                if tasks else ["Try another keyword", "View all tasks", "Create a new task"]
            ),
        )

    def _execute_analyze(self, analysis: IntentAnalysis, context: ConversationContextManager) -> ExecutionResult:
        rows = database.task_stats_db(self.owner_id)
        return ExecutionResult(
            success=True,
            action="analyze",
            data={"summary": summarize_stats(rows), "breakdown": rows},
            message="Here are your task statistics.",
            follow_up_suggestions=["Filter by time period", "View pending tasks"],
        )

    # Function-calling fallback

    async def _execute_with_function_call(
        self, analysis: IntentAnalysis, context: ConversationContextManager
    ) -> ExecutionResult:
        action = analysis.primary_action
        if self.client is None:
            return failure(action, f'"{action}" is not supported.', error="unsupported-operation")

        prompt = FUNCTION_CALL_PROMPT.format(
            analysis=analysis.model_dump_json(exclude_none=True),
            context=json.dumps(context.get_context_for_ai(), ensure_ascii=False, default=str),
        )
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=512,
                tools=TASK_TOOLS,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.warning("Function call request failed: %s", e)
            return failure(action, f"API error: {e}", error="llm-error")

        call = next((block for block in response.content if getattr(block, "type", None) == "tool_use"), None)
        if call is None:
            return failure(action, "I couldn't carry out that request.", error="llm-error")

        logger.info("Function call fallback: %s", call.name)
        return self.execute_function_call(call.name, call.input or {}, context)

    def execute_function_call(
        self, name: str, arguments: dict, context: ConversationContextManager
    ) -> ExecutionResult:
        decoder = FUNCTION_CALLS.get(name)
        if decoder is None:
            return failure(name, f'Function "{name}" is not supported.', error="unsupported-operation")
        try:
            call = decoder.model_validate(arguments)
        except ValidationError:
            return failure(name, f'Missing arguments for "{name}".', error="missing-required-field")

        if isinstance(call, CreateTaskCall):
            action, entities = "create", TaskEntities(
                title=call.title, description=call.description, priority=call.priority,
                category=call.category, deadline=call.deadline, tags=call.tags,
            )
        elif isinstance(call, ListTasksCall):
            action, entities = "read", TaskEntities(
                status=call.status, priority=call.priority, category=call.category, limit=call.limit,
            )
        elif isinstance(call, UpdateTaskCall):
            action, entities = "update", TaskEntities(
                task_references=[call.task_identifier], title=call.title, description=call.description,
                status=call.status, priority=call.priority, category=call.category, deadline=call.deadline,
            )
        elif isinstance(call, DeleteTaskCall):
            action, entities = "delete", TaskEntities(task_references=[call.task_identifier])
        else:
            action, entities = "search", TaskEntities(title=call.query)

        step = IntentAnalysis(primary_action=action, entities=entities, confidence=1.0)
        return self._handlers[action](step, context)
