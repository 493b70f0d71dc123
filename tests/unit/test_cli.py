"""Unit tests for the CLI."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from waypoint.cli import load_overrides, main
from waypoint.core.models import ExecutionMetadata, RelationshipType, RunStatus
from waypoint.database import crud, get_session_factory, session_scope
from waypoint.database.session import cleanup_db_connections
from waypoint.orchestrator import OrchestrationOutcome
from tests.unit.utils import make_plan


@pytest.fixture
def cli_settings(settings, tmp_path):
    """Settings pointing at a throwaway sqlite file."""
    cli_settings = settings.model_copy(
        update={"database_url": f"sqlite:///{tmp_path / 'waypoint.sqlite'}"}
    )
    with (
        patch("waypoint.cli.get_settings", return_value=cli_settings),
        patch("waypoint.cli.configure_logging"),
    ):
        yield cli_settings
    cleanup_db_connections()


@pytest.fixture
def runner():
    return CliRunner()


class TestLoadOverrides:
    """Tests for load_overrides."""

    def test_list_file(self, tmp_path):
        path = tmp_path / "overrides.yaml"
        path.write_text(
            "- source_task_id: t1\n"
            "  target_task_id: t2\n"
            "  relationship_type: blocks\n"
            "  confidence: 1.0\n"
        )

        overrides = load_overrides(path)

        assert len(overrides) == 1
        assert overrides[0].relationship_type == RelationshipType.BLOCKS

    def test_mapping_file(self, tmp_path):
        path = tmp_path / "overrides.json"
        path.write_text(
            '{"dependencies": [{"source_task_id": "a", "target_task_id": "b", "confidence": 1.0}]}'
        )

        overrides = load_overrides(path)

        assert overrides[0].key == ("a", "b")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_overrides(path) == []

    def test_invalid_edge(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- source_task_id: t1\n")

        with pytest.raises(ValidationError):
            load_overrides(path)


class TestCommands:
    """Tests for the click commands."""

    def test_init_db(self, runner, cli_settings):
        result = runner.invoke(main, ["init-db"])

        assert result.exit_code == 0
        assert "Database initialized" in result.output

    def test_show_session_not_found(self, runner, cli_settings):
        runner.invoke(main, ["init-db"])

        result = runner.invoke(main, ["show-session", "missing"])

        assert result.exit_code == 1
        assert "Session not found" in result.output

    def test_show_session_with_plan(self, runner, cli_settings):
        runner.invoke(main, ["init-db"])
        with session_scope(get_session_factory(cli_settings.database_url)) as session:
            crud.save_session_result(
                session,
                session_id="s-1",
                user_id="user-1",
                outcome_id="outcome-1",
                status="completed",
                prioritized_plan={"ordered_task_ids": ["t1", "t2"]},
                excluded_tasks=[],
                baseline_document_ids=[],
                execution_metadata={},
                loop_metadata=None,
                status_note="Hybrid loop failed; using legacy plan.",
                trace=None,
            )

        result = runner.invoke(main, ["show-session", "s-1"])

        assert result.exit_code == 0
        assert "completed" in result.output
        assert "using legacy plan" in result.output
        assert "t2" in result.output

    def test_prioritize_prints_plan(self, runner, cli_settings):
        runner.invoke(main, ["init-db"])
        orchestrator = Mock()
        orchestrator.session_factory = get_session_factory(cli_settings.database_url)
        orchestrator.orchestrate = AsyncMock(
            side_effect=lambda request: OrchestrationOutcome(
                session_id=request.session_id,
                status=RunStatus.COMPLETED,
                plan=make_plan(["t1", "t2"], "Revenue first"),
                execution_metadata=ExecutionMetadata(steps_taken=1),
                primary_engine="legacy",
                persisted=True,
            )
        )

        with patch("waypoint.cli.build_orchestrator", return_value=orchestrator) as build:
            result = runner.invoke(
                main, ["prioritize", "outcome-1", "--user", "user-1", "--reflection", "r-1", "--hybrid"]
            )

        assert result.exit_code == 0
        assert "Revenue first" in result.output
        build.assert_called_once_with(True)

        request = orchestrator.orchestrate.call_args.args[0]
        assert request.active_reflection_ids == ["r-1"]
        assert request.excluded_document_ids == []
        with session_scope(orchestrator.session_factory) as session:
            assert crud.get_agent_session(session, request.session_id).status == "running"

    def test_prioritize_rejects_bad_overrides(self, runner, cli_settings, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- target_task_id: t2\n")

        with patch("waypoint.cli.build_orchestrator") as build:
            result = runner.invoke(
                main, ["prioritize", "outcome-1", "--user", "user-1", "--overrides", str(path)]
            )

        assert result.exit_code == 1
        assert "Invalid overrides file" in result.output
        build.assert_not_called()

    def test_prioritize_failed_run_exits_nonzero(self, runner, cli_settings):
        runner.invoke(main, ["init-db"])
        orchestrator = Mock()
        orchestrator.session_factory = get_session_factory(cli_settings.database_url)
        orchestrator.orchestrate = AsyncMock(
            side_effect=lambda request: OrchestrationOutcome(
                session_id=request.session_id,
                status=RunStatus.FAILED,
                execution_metadata=ExecutionMetadata(error_count=1),
                status_note="Context build failed: outcome not found",
            )
        )

        with patch("waypoint.cli.build_orchestrator", return_value=orchestrator):
            result = runner.invoke(main, ["prioritize", "outcome-1", "--user", "user-1"])

        assert result.exit_code == 1
        assert "Context build failed" in result.output
