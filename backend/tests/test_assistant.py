"""
Tests for assistant.py - the per-turn pipeline, special commands and sessions.
"""
import asyncio
import json
import pytest
import sys
import os
from datetime import date, datetime, timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from assistant import SessionOwnerError, SessionRegistry, TaskAssistant, format_result_text
from config import Settings
from conftest import FakeAnalyzer
from database import create_task_db, list_tasks_db, get_task_db
from executor import TaskExecutor
from models import ExecutionResult, IntentAnalysis
from prompts import HELP_TEXT


def intent(action, confidence=0.95, operations=None, references_previous=False, **entities):
    return IntentAnalysis.model_validate({
        "primary_action": action,
        "confidence": confidence,
        "entities": entities,
        "context_usage": {"references_previous": references_previous},
        "operations": operations,
    })


def turn(assistant, text):
    return asyncio.run(assistant.handle_conversational_flow(text))


class TestConversation:
    """The three-turn create / complete / bulk delete conversation."""

    def test_create_then_complete_by_pronoun(self, assistant, fake_analyzer):
        fake_analyzer.queue(
            intent("create", title="fix bug", priority="urgent", deadline="tomorrow"),
            intent("update", task_references=["that task"], status="completed", references_previous=True),
        )

        created = turn(assistant, "create task fix bug, urgent, due tomorrow")
        task = created.data

        assert created.success is True
        assert task.priority == "urgent"
        assert task.due_date == (date.today() + timedelta(days=1)).isoformat()
        assert assistant.context.entities.last_task.id == task.id
        assert assistant.context.get_task_id_mapping()["fix bug"] == task.id

        completed = turn(assistant, "mark that task as completed")

        assert completed.success is True
        assert get_task_db(task.id).status == "completed"
        assert assistant.context.stats.completed_tasks == 1
        assert assistant.context.stats.total_tasks == 1

    def test_bulk_delete_completed(self, assistant, fake_analyzer):
        create_task_db("A", status="completed")
        create_task_db("B", status="completed")
        pending = create_task_db("C")
        fake_analyzer.queue(intent("delete", status="completed", bulk_delete=True))

        result = turn(assistant, "delete all completed tasks")

        assert result.success is True
        assert result.data["deleted_count"] == 2
        assert result.data["status"] == "completed"
        assert [t.id for t in list_tasks_db()] == [pending.id]

    def test_history_records_both_sides(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("read"))
        task = create_task_db("Walk dog")

        turn(assistant, "show my tasks")

        user, bot = assistant.context.history
        assert user.role == "user" and user.content == "show my tasks"
        assert bot.role == "bot"
        assert bot.metadata.displayed_tasks[0].id == task.id

    def test_displayed_tasks_resolve_next_turn(self, assistant, fake_analyzer):
        create_task_db("Prepare quarterly report")
        fake_analyzer.queue(
            intent("read"),
            intent("update", task_references=["quarterly"], priority="high"),
        )

        turn(assistant, "show my tasks")
        result = turn(assistant, "make the quarterly one high priority")

        assert result.success is True
        assert result.data.priority == "high"

    def test_low_confidence_needs_clarification(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("create", confidence=0.4, title="maybe"))

        result = turn(assistant, "hmm something")

        assert result.success is False
        assert result.needs_clarification is True
        assert list_tasks_db() == []

    def test_first_turn_loads_recent_tasks(self, assistant, fake_analyzer):
        create_task_db("Old task")
        fake_analyzer.queue(intent("help", confidence=0.3))

        turn(assistant, "hi")

        assert [t.title for t in assistant.context.entities.recent_tasks] == ["Old task"]
        assert assistant.context.resolve_task_reference("old").title == "Old task"

    def test_snapshot_passed_to_analyzer(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("help", confidence=0.3))

        turn(assistant, "hello")

        utterance, snapshot = fake_analyzer.calls[0]
        assert utterance == "hello"
        assert snapshot["recent_messages"][-1]["content"] == "hello"

    def test_unexpected_error_becomes_failure(self, test_db):
        class BrokenAnalyzer:
            async def analyze(self, utterance, context_snapshot):
                raise RuntimeError("boom")

        assistant = TaskAssistant(BrokenAnalyzer(), TaskExecutor(client=None))
        result = turn(assistant, "anything")

        assert result.success is False
        assert "boom" in result.message
        assert assistant.context.history[-1].metadata.action == "error"

    def test_create_learns_category_default(self, assistant, fake_analyzer):
        fake_analyzer.queue(
            intent("create", title="report", category="work"),
            intent("create", title="slides", category="work"),
            intent("create", title="email boss"),
        )

        turn(assistant, "create report for work")
        turn(assistant, "create slides for work")
        third = turn(assistant, "create email boss")

        assert assistant.context.preferences.default_category == "work"
        assert third.data.category == "work"


class TestMultiOperation:
    def test_all_steps_succeed(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("create", operations=[
            {"action": "create", "entities": {"title": "write docs", "priority": "urgent"}, "order": 1},
            {"action": "create", "entities": {"title": "deploy app"}, "order": 2},
        ]))

        result = turn(assistant, "create tasks: write docs urgent, deploy app")

        assert result.success is True
        assert {t.title for t in list_tasks_db()} == {"write docs", "deploy app"}
        assert assistant.context.stats.total_tasks == 2
        assert len(result.follow_up_suggestions) <= 3

    def test_stops_on_first_failure(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("create", operations=[
            {"action": "create", "entities": {"title": "A"}, "order": 1},
            {"action": "delete", "entities": {"task_references": ["missing task"]}, "order": 2},
            {"action": "create", "entities": {"title": "C"}, "order": 3},
        ]))

        result = turn(assistant, "create A, delete missing task, create C")

        assert result.success is False
        assert [t.title for t in result.data] == ["A"]
        assert [t.title for t in list_tasks_db()] == ["A"]
        assert assistant.context.history[-1].role == "bot"

    def test_single_operation_uses_normal_path(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("create", title="solo", operations=[
            {"action": "create", "entities": {"title": "ignored"}, "order": 1},
        ]))

        result = turn(assistant, "create solo")
        assert result.data.title == "solo"


class TestSuggestions:
    def test_executor_suggestions_first_and_deduplicated(self, assistant):
        result = ExecutionResult(success=True, action="create", message="ok", follow_up_suggestions=["A", "A"])

        suggestions = assistant.generate_suggestions(intent("create"), result, now=datetime(2025, 1, 1, 14))

        assert suggestions == ["A", "Create a related task", "Set a reminder for this task"]

    def test_time_of_day(self, assistant):
        result = ExecutionResult(success=True, action="read", message="ok")

        morning = assistant.generate_suggestions(intent("read"), result, now=datetime(2025, 1, 1, 10))
        evening = assistant.generate_suggestions(intent("analyze"), result, now=datetime(2025, 1, 1, 18))

        assert morning == ["Filter the results", "Update a task", "Plan your day"]
        assert evening == ["Review today's progress"]


class TestFlows:
    def test_active_flow_advances_and_completes(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("help", confidence=0.3), intent("help", confidence=0.3))
        assistant.context.start_flow("creating")
        assistant.context.current_flow.total_steps = 2

        turn(assistant, "step one")
        assert assistant.context.current_flow.step == 1

        turn(assistant, "step two")
        assert assistant.context.current_flow is None

    def test_flow_expiring_during_turn_is_not_advanced(self, assistant, fake_analyzer, monkeypatch):
        assistant.context.start_flow("creating")

        async def expire_then_analyze(utterance, context_snapshot):
            assistant.context.current_flow.timeout = datetime.now() - timedelta(seconds=1)
            return intent("help", confidence=0.3)
        monkeypatch.setattr(fake_analyzer, "analyze", expire_then_analyze)

        turn(assistant, "step one")

        assert assistant.context.current_flow is None


class TestSpecialCommands:
    @pytest.fixture
    def settings(self, tmp_path):
        return Settings(
            anthropic_api_key="test-key",
            export_dir=str(tmp_path / "exports"),
            backup_dir=str(tmp_path / "backups"),
        )

    def test_help(self, assistant):
        assert turn(assistant, "/help").message == HELP_TEXT

    def test_stats(self, assistant):
        create_task_db("A", status="completed")
        create_task_db("B")

        result = turn(assistant, "/stats")

        assert result.data["summary"]["completion_rate"] == 50
        assert "Completion rate: 50%" in result.message

    def test_list_runs_pipeline(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("read"))
        create_task_db("A")

        result = turn(assistant, "/list")

        assert fake_analyzer.calls[0][0] == "view all tasks"
        assert len(result.data) == 1

    def test_recent_feeds_memory(self, assistant, fake_analyzer):
        create_task_db("First")
        newest = create_task_db("Second")

        result = turn(assistant, "/recent")

        assert [t.title for t in result.data] == ["Second", "First"]
        assert assistant.context.resolve_task_reference("the first task").id == newest.id
        assert fake_analyzer.calls == []

    def test_search_prompt(self, assistant):
        result = turn(assistant, "/search")
        assert result.message.startswith("Search mode")

    def test_export(self, test_db, fake_analyzer, settings):
        create_task_db("Export me")
        assistant = TaskAssistant(fake_analyzer, TaskExecutor(client=None), settings=settings)

        result = turn(assistant, "/export")

        assert result.data["count"] == 1
        assert os.path.basename(result.data["file"]) == f"task-export-{date.today().isoformat()}.json"
        with open(result.data["file"], encoding="utf-8") as f:
            exported = json.load(f)
        assert exported["tasks"][0]["title"] == "Export me"

    def test_backup(self, test_db, fake_analyzer, settings):
        create_task_db("Keep me")
        assistant = TaskAssistant(fake_analyzer, TaskExecutor(client=None), settings=settings)

        result = turn(assistant, "/backup")

        with open(result.data["file"], encoding="utf-8") as f:
            backup = json.load(f)
        assert backup["version"] == "1.0"
        assert backup["tasks"][0]["title"] == "Keep me"
        assert "session_id" in backup["context"]

    def test_config(self, test_db, fake_analyzer, settings):
        assistant = TaskAssistant(fake_analyzer, TaskExecutor(client=None), settings=settings)

        result = turn(assistant, "/config")

        assert result.data["environment"]["api_key_configured"] is True
        assert result.data["preferences"]["default_priority"] == "medium"

    def test_reset(self, assistant):
        assistant.context.add_message("user", "hello")
        old_session = assistant.context.session_id

        turn(assistant, "/reset")

        assert assistant.context.session_id != old_session
        assert assistant.context.history == []

    def test_context_and_debug(self, assistant):
        assert turn(assistant, "/context").data["session_id"] == assistant.context.session_id
        assert turn(assistant, "/debug").data["session_id"] == assistant.context.session_id

    def test_clear(self, assistant):
        assert turn(assistant, "/clear").data == {"clear": True}

    def test_unknown_command_falls_through(self, assistant, fake_analyzer):
        fake_analyzer.queue(intent("help", confidence=0.3))

        turn(assistant, "/what can you do")

        assert fake_analyzer.calls[0][0] == "what can you do"


class TestSessionRegistry:
    class SlowAnalyzer:
        def __init__(self):
            self.active = 0
            self.max_active = 0

        async def analyze(self, utterance, context_snapshot):
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return IntentAnalysis(primary_action="help", confidence=0.3)

    def make_registry(self, analyzer):
        return SessionRegistry(lambda owner_id: TaskAssistant(analyzer, TaskExecutor(client=None, owner_id=owner_id)))

    def test_same_session_turns_are_sequential(self, test_db):
        analyzer = self.SlowAnalyzer()
        registry = self.make_registry(analyzer)

        async def both():
            await asyncio.gather(registry.handle("s1", "one"), registry.handle("s1", "two"))
        asyncio.run(both())

        assert analyzer.max_active == 1
        assert len(registry.get("s1").context.history) == 4

    def test_different_sessions_interleave(self, test_db):
        analyzer = self.SlowAnalyzer()
        registry = self.make_registry(analyzer)

        async def both():
            await asyncio.gather(registry.handle("s1", "one"), registry.handle("s2", "two"))
        asyncio.run(both())

        assert analyzer.max_active == 2
        assert registry.get("s1").context is not registry.get("s2").context

    def test_owner_is_bound_on_creation(self, test_db):
        registry = self.make_registry(FakeAnalyzer())
        assert registry.get("s1", owner_id="u1").owner_id == "u1"
        assert "s1" in registry

    def test_turn_from_other_owner_is_rejected(self, test_db):
        analyzer = FakeAnalyzer({"primary_action": "help", "confidence": 0.3})
        registry = self.make_registry(analyzer)
        asyncio.run(registry.handle("s1", "hi", owner_id="u1"))

        with pytest.raises(SessionOwnerError):
            asyncio.run(registry.handle("s1", "show my tasks", owner_id="u2"))
        assert len(analyzer.calls) == 1
        assert registry.get("s1").owner_id == "u1"

    def test_drop(self, test_db):
        registry = self.make_registry(FakeAnalyzer())
        registry.get("s1")

        assert registry.drop("s1") is True
        assert registry.drop("s1") is False
        assert "s1" not in registry


def test_format_result_text(assistant, fake_analyzer):
    fake_analyzer.queue(intent("read"))
    create_task_db("Walk dog", priority="high", due_date="2025-03-01")

    result = turn(assistant, "show tasks")
    text = format_result_text(result)

    assert "1. [pending] Walk dog (high) due 2025-03-01" in text
    assert "Suggestions:" in text
