"""
Tests for cli.py using click's CliRunner.
"""
import pytest
import sys
import os

from click.testing import CliRunner

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import cli as cli_module
from assistant import TaskAssistant
from conftest import FakeAnalyzer
from database import create_task_db, create_user_db, list_tasks_db, get_task_db, get_user_db
from executor import TaskExecutor


@pytest.fixture
def runner(test_db, monkeypatch):
    monkeypatch.setattr(cli_module, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.delenv("TASKPAL_OWNER_ID", raising=False)
    return CliRunner()


def invoke(runner, *args, **kwargs):
    return runner.invoke(cli_module.cli, list(args), **kwargs)


class TestTaskCommands:
    def test_create(self, runner):
        result = invoke(runner, "create", "Write docs", "--priority", "high", "--tag", "docs", "--due", "2025-03-01")

        assert result.exit_code == 0
        assert "Created task" in result.output
        task = list_tasks_db()[0]
        assert task.priority == "high"
        assert task.tags == ["docs"]
        assert task.due_date == "2025-03-01"

    def test_create_bad_due_date(self, runner):
        result = invoke(runner, "create", "Write docs", "--due", "someday")

        assert result.exit_code == 1
        assert list_tasks_db() == []

    def test_list(self, runner):
        create_task_db("Buy groceries", status="completed")
        create_task_db("Walk dog")

        result = invoke(runner, "list", "--status", "pending")

        assert result.exit_code == 0
        assert "Walk dog" in result.output
        assert "Buy groceries" not in result.output
        assert "TITLE" in result.output

    def test_list_empty(self, runner):
        assert "No tasks found" in invoke(runner, "list").output

    def test_update_by_id_prefix(self, runner):
        task = create_task_db("Fix bug")

        result = invoke(runner, "update", task.id[:8], "--status", "completed")

        assert result.exit_code == 0
        assert get_task_db(task.id).status == "completed"

    def test_update_nothing(self, runner):
        task = create_task_db("Fix bug")
        assert invoke(runner, "update", task.id).exit_code == 1

    def test_delete(self, runner):
        task = create_task_db("Delete me")

        result = invoke(runner, "delete", task.id, "--yes")

        assert result.exit_code == 0
        assert get_task_db(task.id) is None

    def test_delete_unknown(self, runner):
        result = invoke(runner, "delete", "nope", "--yes")

        assert result.exit_code == 1
        assert "No task found" in result.output

    def test_search(self, runner):
        create_task_db("Buy groceries")
        result = invoke(runner, "search", "grocer")
        assert "Buy groceries" in result.output

    def test_stats(self, runner):
        create_task_db("A", status="completed")
        create_task_db("B")

        result = invoke(runner, "stats")

        assert "Completion rate: 50%" in result.output
        assert "completed" in result.output


class TestChat:
    def test_requires_api_key(self, runner, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "your-api-key-here")

        result = invoke(runner, "chat")

        assert result.exit_code == 1
        assert "not configured" in result.output

    def test_chat_loop(self, runner, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
        analyzer = FakeAnalyzer({
            "primary_action": "create",
            "entities": {"title": "fix bug"},
            "confidence": 0.9,
        })
        monkeypatch.setattr(
            cli_module,
            "build_assistant",
            lambda settings, owner_id=None: TaskAssistant(analyzer, TaskExecutor(client=None, owner_id=owner_id)),
        )

        result = invoke(runner, "chat", input="create fix bug\n/help\nexit\n")

        assert result.exit_code == 0
        assert 'Created task "fix bug".' in result.output
        assert "TaskPal commands" in result.output
        assert "Bye!" in result.output
        assert [t.title for t in list_tasks_db()] == ["fix bug"]


class TestUserCommands:
    def test_list_users(self, runner):
        create_user_db(telegram_id=42, name="Alex")

        result = invoke(runner, "users", "list")

        assert "Alex" in result.output
        assert "inactive" in result.output

    def test_activate_and_deactivate(self, runner):
        user = create_user_db(telegram_id=42)

        assert invoke(runner, "users", "activate", user.id[:8]).exit_code == 0
        assert get_user_db(user.id).status == "active"

        assert invoke(runner, "users", "deactivate", user.id).exit_code == 0
        assert get_user_db(user.id).status == "inactive"

    def test_activate_unknown(self, runner):
        assert invoke(runner, "users", "activate", "nope").exit_code == 1
