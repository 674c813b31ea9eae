# Intent analysis prompt
# The analyzer only extracts structure; the executor decides what runs.
# Context (recent messages, task id map, preferences) is appended per turn.
ANALYSIS_PROMPT = """You are a task management assistant. Analyze the user's message and respond with JSON only.

Supported actions (primary_action):
- create: Create a new task
- read: List tasks, optionally filtered by status, priority, category or deadline
- update: Change fields of an existing task (including marking it completed)
- delete: Delete a task, or every task with a given status
- search: Find tasks by keyword
- analyze: Show task statistics
- help: Anything that is not a task operation

Task fields:
- priority: "low" | "medium" | "high" | "urgent"
  ("urgent", "asap", "critical" -> urgent; "important", "high" -> high; "low", "not urgent" -> low)
- status: "pending" | "in_progress" | "completed" | "cancelled"
- category: free text (e.g. "work", "personal")
- tags: list of short strings
- deadline: ISO date YYYY-MM-DD or datetime YYYY-MM-DDTHH:MM
  Convert relative dates ("today", "tomorrow", "next week", "in 3 days") to ISO.

Referring to existing tasks:
- Put every phrase that points at an existing task into entities.task_references,
  exactly as the user wrote it (e.g. "that task", "the first task", "fix bug").
- If the phrase matches a title in the TASK ID MAPPING, put that task's id into entities.task_id.
- Never invent ids. If no clear match exists, leave task_id empty.

Bulk deletion:
- "delete all completed tasks", "clear cancelled tasks", "cleanup pending tasks"
  -> primary_action "delete", entities.status set, entities.bulk_delete true.

Several operations in one message:
- "create tasks: A urgent, B, C low" or "create A and then mark it done"
  -> fill "operations" with one entry per step, each with action, entities and order (1, 2, ...).
- Use operations only when there are two or more steps.

Confidence:
- 0.9-1.0: clear intent, entities extracted
- 0.7-0.9: clear intent, some entities missing
- below 0.7: ambiguous; fill clarification_needed with a short question

Respond with this exact JSON format:
{{
    "primary_action": "create" | "read" | "update" | "delete" | "search" | "analyze" | "help",
    "entities": {{
        "title": "task title or search keyword",
        "description": "details, only if stated",
        "priority": "low" | "medium" | "high" | "urgent" | null,
        "status": "pending" | "in_progress" | "completed" | "cancelled" | null,
        "category": "category" or null,
        "tags": ["tag"] or null,
        "deadline": "YYYY-MM-DD" or null,
        "task_references": ["phrases referring to existing tasks"],
        "task_id": "id from the mapping" or null,
        "bulk_delete": true | false
    }},
    "context_usage": {{
        "references_previous": true | false,
        "continues_flow": true | false,
        "needs_clarification": true | false,
        "ambiguous_references": []
    }},
    "confidence": 0.0-1.0,
    "instructions": "one sentence describing what should be executed",
    "clarification_needed": "question for the user" or null,
    "operations": [{{"action": "create", "entities": {{...}}, "order": 1}}] or null
}}

Only respond with valid JSON, no other text.

Today's date is: {today}
"""

CONTEXT_TEMPLATE = """TASK ID MAPPING (title -> id):
{task_id_map}

RECENT CONVERSATION:
{recent_messages}

FULL CONTEXT:
{context}
"""

# Fallback for actions the executor has no direct handler for
FUNCTION_CALL_PROMPT = """Execute the following task management operation by calling exactly one tool.

ANALYSIS: {analysis}
CONTEXT: {context}

Identify existing tasks by title or id using task_identifier.
"""

_PRIORITY = {"type": "string", "enum": ["low", "medium", "high", "urgent"]}
_STATUS = {"type": "string", "enum": ["pending", "in_progress", "completed", "cancelled"]}

TASK_TOOLS = [
    {
        "name": "create_task",
        "description": "Create a new task",
        "input_schema": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Task title"},
                "description": {"type": "string", "description": "Task description"},
                "priority": _PRIORITY,
                "category": {"type": "string", "description": "Task category"},
                "deadline": {"type": "string", "description": "Due date in ISO format"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["title"],
        },
    },
    {
        "name": "list_tasks",
        "description": "List tasks with optional filtering",
        "input_schema": {
            "type": "object",
            "properties": {
                "status": _STATUS,
                "priority": _PRIORITY,
                "category": {"type": "string"},
                "limit": {"type": "integer"},
            },
        },
    },
    {
        "name": "update_task",
        "description": "Update an existing task - identify it by id, title or partial title",
        "input_schema": {
            "type": "object",
            "properties": {
                "task_identifier": {
                    "type": "string",
                    "description": "Task id, title or partial text identifying the task",
                },
                "title": {"type": "string"},
                "description": {"type": "string"},
                "status": _STATUS,
                "priority": _PRIORITY,
                "category": {"type": "string"},
                "deadline": {"type": "string"},
            },
            "required": ["task_identifier"],
        },
    },
    {
        "name": "delete_task",
        "description": "Delete a task - identify it by id, title or partial title",
        "input_schema": {
            "type": "object",
            "properties": {
                "task_identifier": {
                    "type": "string",
                    "description": "Task id, title or partial text identifying the task",
                },
            },
            "required": ["task_identifier"],
        },
    },
    {
        "name": "search_tasks",
        "description": "Search tasks by keyword",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
            },
            "required": ["query"],
        },
    },
]

HELP_TEXT = """TaskPal commands

Tasks:
  /list     - view all tasks
  /recent   - 10 most recent tasks
  /search   - search tasks

Data:
  /stats    - task statistics
  /export   - export tasks to a JSON file
  /backup   - full backup with session context

Session:
  /config   - show configuration
  /context  - show conversation context
  /reset    - reset conversation context
  /clear    - clear the screen

Natural language:
  "create task fix bug, urgent, due tomorrow"
  "show pending tasks"
  "mark that task as completed"
  "delete all completed tasks"
  "create tasks: write docs, deploy app"
"""
