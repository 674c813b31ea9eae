"""TaskPal command line: direct task commands plus the conversational chat loop."""

import asyncio
import sys

import click
from tabulate import tabulate

import database
from assistant import build_assistant, format_result_text
from config import Settings
from executor import parse_deadline, summarize_stats
from logging_config import setup_logging
from models import PRIORITIES, STATUSES, Task, TaskFilter

EXIT_WORDS = {"exit", "quit"}


def format_task_table(tasks: list[Task]) -> str:
    rows = [
        [task.id[:8], task.title, task.status, task.priority, task.category or "", (task.due_date or "")[:10]]
        for task in tasks
    ]
    return tabulate(rows, headers=["ID", "TITLE", "STATUS", "PRIORITY", "CATEGORY", "DUE"], tablefmt="simple")


def resolve_task(identifier: str) -> Task:
    """Find a task by full id or unique id prefix, exiting with an error otherwise."""
    task = database.get_task_db(identifier)
    if task:
        return task

    matches = [t for t in database.list_tasks_db() if t.id.startswith(identifier)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        click.echo(f"Error: Multiple tasks found starting with '{identifier}'", err=True)
    else:
        click.echo(f"Error: No task found with ID: {identifier}", err=True)
    sys.exit(1)


def _deadline_or_exit(value):
    if value is None:
        return None
    try:
        return parse_deadline(value)
    except ValueError:
        click.echo(f"Error: Could not understand the date '{value}'", err=True)
        sys.exit(1)


@click.group()
@click.option("--db", "db_path", help="SQLite database file")
@click.option("--log-level", default=None, help="Logging level (default from TASKPAL_LOG_LEVEL)")
@click.pass_context
def cli(ctx, db_path, log_level):
    """TaskPal - manage tasks in plain language"""
    settings = Settings.from_env()
    setup_logging(log_level or settings.log_level, settings.log_dir)
    if db_path:
        database.DATABASE_PATH = db_path
    database.init_db()
    ctx.obj = settings


@cli.command()
@click.argument("title")
@click.option("--description", "-d")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium", show_default=True)
@click.option("--category", "-c")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--due", help="Due date: YYYY-MM-DD, today, tomorrow, next week")
@click.option("--owner")
@click.pass_obj
def create(settings, title, description, priority, category, tags, due, owner):
    """Create a task"""
    task = database.create_task_db(
        title=title,
        description=description,
        priority=priority,
        category=category,
        tags=list(tags),
        due_date=_deadline_or_exit(due),
        owner_id=owner or settings.owner_id,
    )
    click.echo(f"Created task {task.id[:8]}: {task.title} (due {task.due_date[:10]})")


@cli.command(name="list")
@click.option("--status", type=click.Choice(STATUSES))
@click.option("--priority", type=click.Choice(PRIORITIES))
@click.option("--category")
@click.option("--owner")
@click.option("--limit", type=int)
@click.pass_obj
def list_tasks(settings, status, priority, category, owner, limit):
    """List tasks, newest first"""
    tasks = database.list_tasks_db(TaskFilter(
        owner_id=owner or settings.owner_id,
        status=status,
        priority=priority,
        category=category,
        limit=limit,
    ))
    if not tasks:
        click.echo("No tasks found")
        return
    click.echo(format_task_table(tasks))


@cli.command()
@click.argument("task_id")
@click.option("--title")
@click.option("--description", "-d")
@click.option("--status", type=click.Choice(STATUSES))
@click.option("--priority", "-p", type=click.Choice(PRIORITIES))
@click.option("--category", "-c")
@click.option("--due")
def update(task_id, title, description, status, priority, category, due):
    """Update fields of a task"""
    task = resolve_task(task_id)
    patch = {
        "title": title,
        "description": description,
        "status": status,
        "priority": priority,
        "category": category,
        "due_date": _deadline_or_exit(due),
    }
    patch = {field: value for field, value in patch.items() if value is not None}
    if not patch:
        click.echo("Nothing to update", err=True)
        sys.exit(1)

    updated = database.update_task_db(task.id, **patch)
    click.echo(f"Updated task {updated.id[:8]}: {updated.title} [{updated.status}]")


@cli.command()
@click.argument("task_id")
@click.confirmation_option(prompt="Are you sure you want to delete this task?")
def delete(task_id):
    """Delete a task"""
    task = resolve_task(task_id)
    database.delete_task_db(task.id)
    click.echo(f"Deleted task {task.id[:8]}: {task.title}")


@cli.command()
@click.argument("term")
@click.option("--owner")
@click.pass_obj
def search(settings, term, owner):
    """Search tasks by keyword"""
    tasks = database.search_tasks_db(term, owner or settings.owner_id)
    if not tasks:
        click.echo(f"No tasks matching '{term}'")
        return
    click.echo(format_task_table(tasks))


@cli.command()
@click.option("--owner")
@click.option("--period", type=click.Choice(["today", "week", "month"]))
@click.pass_obj
def stats(settings, owner, period):
    """Show task statistics"""
    rows = database.task_stats_db(owner or settings.owner_id, period)
    summary = summarize_stats(rows)
    click.echo(
        f"Total: {summary['total']} | Completed: {summary['completed']} | "
        f"Pending: {summary['pending']} | In progress: {summary['in_progress']} | "
        f"Completion rate: {summary['completion_rate']}%"
    )
    if rows:
        click.echo(tabulate(
            [[row["status"], row["priority"], row["total"], row["today"], row["week"], row["month"]] for row in rows],
            headers=["STATUS", "PRIORITY", "TOTAL", "TODAY", "WEEK", "MONTH"],
            tablefmt="simple",
        ))


async def _chat_loop(assistant) -> None:
    while True:
        text = click.prompt("You", prompt_suffix="> ", default="", show_default=False).strip()
        if not text:
            continue
        if text.lower() in EXIT_WORDS:
            click.echo("Bye!")
            return

        result = await assistant.handle_conversational_flow(text)
        if isinstance(result.data, dict) and result.data.get("clear"):
            click.clear()
            continue
        click.echo(format_result_text(result))


@cli.command()
@click.option("--owner")
@click.pass_obj
def chat(settings, owner):
    """Talk to TaskPal (type 'exit' to leave, /help for commands)"""
    if not settings.api_key_configured:
        click.echo("Error: ANTHROPIC_API_KEY is not configured", err=True)
        sys.exit(1)

    assistant = build_assistant(settings, owner_id=owner)
    click.echo("TaskPal chat - type /help for commands, 'exit' to leave")
    asyncio.run(_chat_loop(assistant))


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host, port):
    """Run the HTTP API (and Telegram webhook)"""
    import uvicorn
    uvicorn.run("main:app", host=host, port=port)


@cli.group()
def users():
    """Manage Telegram users"""
    pass


@users.command(name="list")
@click.option("--status", type=click.Choice(["active", "inactive"]))
@click.option("--role", type=click.Choice(["user", "admin"]))
def list_users(status, role):
    """List registered users"""
    rows = [
        [user.id[:8], user.telegram_id or "", user.name or "", user.role, user.status]
        for user in database.list_users_db(status=status, role=role)
    ]
    if not rows:
        click.echo("No users found")
        return
    click.echo(tabulate(rows, headers=["ID", "TELEGRAM", "NAME", "ROLE", "STATUS"], tablefmt="simple"))


def _set_status(user_id: str, status: str) -> None:
    user = database.get_user_db(user_id)
    if user is None:
        matches = [u for u in database.list_users_db() if u.id.startswith(user_id)]
        if len(matches) != 1:
            click.echo(f"Error: No unique user found with ID: {user_id}", err=True)
            sys.exit(1)
        user = matches[0]
    updated = database.set_user_status_db(user.id, status)
    click.echo(f"User {updated.id[:8]} ({updated.name or updated.telegram_id}) is now {updated.status}")


@users.command()
@click.argument("user_id")
def activate(user_id):
    """Activate a user"""
    _set_status(user_id, "active")


@users.command()
@click.argument("user_id")
def deactivate(user_id):
    """Deactivate a user"""
    _set_status(user_id, "inactive")


if __name__ == "__main__":
    cli()
