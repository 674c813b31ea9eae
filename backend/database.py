import json
import logging
import os
import sqlite3
import subprocess
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

from models import Task, TaskFilter, User

load_dotenv()

logger = logging.getLogger("taskpal.database")

DATABASE_PATH = os.getenv("TASKPAL_DATABASE_PATH", "taskpal.db")

TASK_FIELDS = ("title", "description", "status", "priority", "category", "tags", "due_date", "owner_id")
USER_STATUSES = ("active", "inactive")


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize database by running Alembic migrations."""
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    env = {**os.environ, "TASKPAL_DATABASE_PATH": os.path.abspath(DATABASE_PATH)}
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        env=env,
        check=True
    )


def _now() -> str:
    return datetime.now().isoformat()


def _row_to_task(row) -> Task:
    """Convert a database row to a Task model."""
    tags = json.loads(row["tags"]) if row["tags"] else []
    return Task(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        category=row["category"],
        tags=tags,
        due_date=row["due_date"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        telegram_id=row["telegram_id"],
        email=row["email"],
        name=row["name"],
        role=row["role"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# Task operations

def create_task_db(
    title: str,
    description: Optional[str] = None,
    priority: str = "medium",
    category: Optional[str] = None,
    tags: Optional[list[str]] = None,
    due_date: Optional[str] = None,
    owner_id: Optional[str] = None,
    status: str = "pending",
    task_id: Optional[str] = None,
) -> Task:
    """Create a task.
    due_date defaults to one day from now when not provided.
    """
    if task_id is None:
        task_id = str(uuid.uuid4())
    if due_date is None:
        due_date = (datetime.now() + timedelta(days=1)).isoformat()
    now = _now()

    with get_db() as conn:
        conn.execute(
            """INSERT INTO tasks
               (id, owner_id, title, description, status, priority, category, tags, due_date, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (task_id, owner_id, title, description, status, priority or "medium", category,
             json.dumps(tags or []), due_date, now, now)
        )
        conn.commit()

    return Task(
        id=task_id,
        owner_id=owner_id,
        title=title,
        description=description,
        status=status,
        priority=priority or "medium",
        category=category,
        tags=tags or [],
        due_date=due_date,
        created_at=now,
        updated_at=now,
    )


def get_task_db(task_id: str) -> Optional[Task]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None


def list_tasks_db(filters: Optional[TaskFilter] = None) -> list[Task]:
    """List tasks matching the filter, newest first."""
    filters = filters or TaskFilter()
    query = "SELECT * FROM tasks WHERE 1=1"
    values: list = []

    if filters.owner_id:
        query += " AND owner_id = ?"
        values.append(filters.owner_id)
    if filters.status:
        query += " AND status = ?"
        values.append(filters.status)
    if filters.priority:
        query += " AND priority = ?"
        values.append(filters.priority)
    if filters.category:
        query += " AND lower(category) = lower(?)"
        values.append(filters.category)
    if filters.due_date:
        query += " AND substr(due_date, 1, 10) = ?"
        values.append(filters.due_date[:10])

    query += " ORDER BY created_at DESC, rowid DESC"

    if filters.limit:
        query += " LIMIT ?"
        values.append(filters.limit)

    with get_db() as conn:
        rows = conn.execute(query, values).fetchall()
        return [_row_to_task(row) for row in rows]


def update_task_db(task_id: str, **updates) -> Optional[Task]:
    """
    Update a task with any fields provided.
    Only fields that differ from current values are written; updated_at is
    bumped whenever something changed.

    Args:
        task_id: Task ID to update
        **updates: Field names and values to update (title, description, status,
            priority, category, tags, due_date)
    """
    with get_db() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None

        changes = {}
        for field, new_value in updates.items():
            if field not in TASK_FIELDS:
                continue
            if field == "tags":
                new_value = json.dumps(new_value or [])
            if new_value != row[field]:
                changes[field] = new_value

        if changes:
            changes["updated_at"] = _now()
            set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
            values = list(changes.values()) + [task_id]
            conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ?", values)
            conn.commit()

        updated_row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(updated_row)


def delete_task_db(task_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        conn.commit()
        return cursor.rowcount > 0


def delete_tasks_by_owner_and_status_db(owner_id: Optional[str], status: Optional[str] = None) -> int:
    query = "DELETE FROM tasks WHERE 1=1"
    values: list = []
    if owner_id:
        query += " AND owner_id = ?"
        values.append(owner_id)
    if status:
        query += " AND status = ?"
        values.append(status)
    with get_db() as conn:
        cursor = conn.execute(query, values)
        conn.commit()
        return cursor.rowcount


def search_tasks_db(term: str, owner_id: Optional[str] = None) -> list[Task]:
    """Case-insensitive substring search across title, description, category and tags."""
    pattern = f"%{term.lower()}%"
    query = """
        SELECT * FROM tasks
        WHERE (lower(title) LIKE ?
           OR lower(coalesce(description, '')) LIKE ?
           OR lower(coalesce(category, '')) LIKE ?
           OR lower(coalesce(tags, '')) LIKE ?)
    """
    values: list = [pattern, pattern, pattern, pattern]
    if owner_id:
        query += " AND owner_id = ?"
        values.append(owner_id)
    query += " ORDER BY created_at DESC, rowid DESC"

    with get_db() as conn:
        rows = conn.execute(query, values).fetchall()
        return [_row_to_task(row) for row in rows]


def find_task_by_title_db(title: str, owner_id: Optional[str] = None) -> Optional[Task]:
    """Find a task by partial title match (case-insensitive)."""
    title_lower = title.lower()
    for task in list_tasks_db(TaskFilter(owner_id=owner_id)):
        if title_lower in task.title.lower():
            return task
    return None


def task_stats_db(owner_id: Optional[str] = None, period: Optional[str] = None) -> list[dict]:
    """
    Aggregate counts grouped by status and priority.
    Each row carries total, today, week and month counts (by created_at).
    period ("today", "week", "month") restricts the rows considered.
    """
    today_start = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = (today_start - timedelta(days=7)).isoformat()
    month_start = (today_start - timedelta(days=30)).isoformat()
    today = today_start.isoformat()

    query = """
        SELECT
            status,
            priority,
            COUNT(*) AS total,
            SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS today,
            SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS week,
            SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS month
        FROM tasks
        WHERE 1=1
    """
    values: list = [today, week_start, month_start]
    if owner_id:
        query += " AND owner_id = ?"
        values.append(owner_id)
    period_start = {"today": today, "week": week_start, "month": month_start}.get(period or "")
    if period_start:
        query += " AND created_at >= ?"
        values.append(period_start)
    query += " GROUP BY status, priority ORDER BY status, priority"

    with get_db() as conn:
        rows = conn.execute(query, values).fetchall()
        return [dict(row) for row in rows]


# User operations

def create_user_db(
    telegram_id: Optional[int] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
    role: str = "user",
    status: str = "inactive",
) -> User:
    user_id = str(uuid.uuid4())
    now = _now()
    with get_db() as conn:
        conn.execute(
            """INSERT INTO users (id, telegram_id, email, name, role, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (user_id, telegram_id, email, name, role, status, now, now)
        )
        conn.commit()
    logger.info("Created %s user %s (%s)", role, user_id, status)
    return User(
        id=user_id,
        telegram_id=telegram_id,
        email=email,
        name=name,
        role=role,
        status=status,
        created_at=now,
        updated_at=now,
    )


def get_user_db(user_id: str) -> Optional[User]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None


def get_user_by_telegram_id_db(telegram_id: int) -> Optional[User]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)).fetchone()
        return _row_to_user(row) if row else None


def get_user_by_email_db(email: str) -> Optional[User]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE lower(email) = lower(?)", (email,)).fetchone()
        return _row_to_user(row) if row else None


def set_user_status_db(user_id: str, status: str) -> Optional[User]:
    if status not in USER_STATUSES:
        raise ValueError(f"Unknown user status: {status}")
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE users SET status = ?, updated_at = ? WHERE id = ?",
            (status, _now(), user_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
    return get_user_db(user_id)


def list_users_db(
    status: Optional[str] = None,
    role: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[User]:
    query = "SELECT * FROM users WHERE 1=1"
    values: list = []
    if status:
        query += " AND status = ?"
        values.append(status)
    if role:
        query += " AND role = ?"
        values.append(role)
    query += " ORDER BY created_at DESC, rowid DESC"
    if limit:
        query += " LIMIT ?"
        values.append(max(1, abs(limit)))

    with get_db() as conn:
        rows = conn.execute(query, values).fetchall()
        return [_row_to_user(row) for row in rows]
