"""
Tests for the command line host.
"""

from unittest.mock import AsyncMock, patch

import pytest
from rich.console import Console

from adapter_agent import AdapterAgent, AdapterError, build_parser, main
from config_manager import UIConfig
from llm_service import STREAM_RESTARTED
from workflow_manager import LoopResult, UnitResult, UnitStatus, WorkflowManager


@pytest.fixture
def console():
    return Console(record=True, width=120)


@pytest.fixture
def agent(app_config, store, console):
    app_config.ui = UIConfig(show_progress=False, stream_output=False)
    manager = WorkflowManager(app_config, store, agent_loop=AsyncMock())
    with patch("adapter_agent.config_manager.load_config", return_value=app_config):
        return AdapterAgent("test_config.json", workflow_manager=manager, console=console)


class TestParser:

    def test_breakdown_defaults_to_one_batch(self):
        args = build_parser().parse_args(["breakdown", "proj-1"])
        assert args.command == "breakdown"
        assert args.count == 1

    def test_new_with_options(self):
        args = build_parser().parse_args(["new", "小说", "--type", "都市", "--batch-size", "4"])
        assert (args.title, args.type, args.batch_size) == ("小说", "都市", 4)

    def test_rejects_unknown_genre(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["new", "小说", "--type", "西幻"])


class TestAdapterAgent:

    @pytest.mark.asyncio
    async def test_new_import_and_show(self, agent, console, tmp_path):
        project = await agent.create_project("小说", None, "", None, None)
        (tmp_path / "2.txt").write_text("第二章", encoding="utf-8")
        (tmp_path / "1.txt").write_text("第一章", encoding="utf-8")

        updated = await agent.import_files(project.id, [str(tmp_path)])
        await agent.show_project(project.id)
        await agent.list_projects()

        assert [c.content for c in updated.chapters] == ["第一章", "第二章"]
        output = console.export_text()
        assert "Imported 2 chapters" in output
        assert project.id in output

    @pytest.mark.asyncio
    async def test_import_missing_file(self, agent):
        project = await agent.create_project("小说", None, "", None, None)
        with pytest.raises(AdapterError):
            await agent.import_files(project.id, ["/definitely/not/here.txt"])

    @pytest.mark.asyncio
    async def test_breakdown_reports_quality_failure(self, agent, console):
        failure = UnitResult(UnitStatus.FAIL, report="钩子不足")
        agent.workflow_manager.run_breakdown_loop = AsyncMock(return_value=LoopResult(1, 3, failure))

        ok = await agent.run_breakdown("proj-x", 3)

        assert not ok
        output = console.export_text()
        assert "Quality check failed" in output
        assert "钩子不足" in output
        assert "1 batches completed before stopping" in output

    @pytest.mark.asyncio
    async def test_api_error_is_reported_as_system_error(self, agent, console):
        failure = UnitResult(UnitStatus.FAIL, report="API ERROR in Worker: 403", is_api_error=True)
        agent.workflow_manager.retry_breakdown_batch = AsyncMock(return_value=failure)

        assert not await agent.retry_breakdown("proj-x", 2)
        agent.workflow_manager.retry_breakdown_batch.assert_awaited_once()
        assert agent.workflow_manager.retry_breakdown_batch.await_args.args[:2] == ("proj-x", 1)
        assert "System error: API ERROR in Worker: 403" in console.export_text()

    @pytest.mark.asyncio
    async def test_request_stop_cancels_running_token(self, agent):
        captured = {}

        async def run_loop(project_id, count, token, on_status, on_chunk):
            agent.request_stop()
            captured["cancelled"] = token.is_cancelled()
            return LoopResult(0, count, UnitResult(UnitStatus.ABORTED))

        agent.workflow_manager.run_script_loop = run_loop
        assert not await agent.run_scripts("proj-x", 2)
        assert captured["cancelled"] is True

    @pytest.mark.asyncio
    async def test_run_command_exit_codes(self, agent):
        agent.workflow_manager.run_script_loop = AsyncMock(
            return_value=LoopResult(2, 2, UnitResult(UnitStatus.SUCCESS))
        )
        args = build_parser().parse_args(["scripts", "proj-x", "-n", "2"])
        assert await agent.run_command(args) == 0

    @pytest.mark.asyncio
    async def test_running_out_of_work_exits_cleanly(self, agent, console):
        agent.workflow_manager.run_breakdown_loop = AsyncMock(
            return_value=LoopResult(2, 5, UnitResult(UnitStatus.DONE))
        )
        agent.workflow_manager.run_script_loop = AsyncMock(
            return_value=LoopResult(1, 5, UnitResult(UnitStatus.NO_DATA))
        )

        assert await agent.run_command(build_parser().parse_args(["breakdown", "proj-x", "-n", "5"])) == 0
        assert await agent.run_command(build_parser().parse_args(["scripts", "proj-x", "-n", "5"])) == 0
        output = console.export_text()
        assert "All chapters have been broken down" in output
        assert "No unused plot points left to script" in output

    @pytest.mark.asyncio
    async def test_retry_of_missing_batch_still_fails(self, agent):
        agent.workflow_manager.retry_breakdown_batch = AsyncMock(return_value=UnitResult(UnitStatus.NO_DATA))
        assert not await agent.retry_breakdown("proj-x", 9)

    def test_stream_restart_is_flagged(self, agent, console):
        agent._print_status(f"{STREAM_RESTARTED} Script Worker: partial output discarded, restarting stream")
        assert "the text above is incomplete" in console.export_text()


def test_main_exits_with_command_status(tmp_path, monkeypatch, app_config):
    monkeypatch.chdir(tmp_path)
    with patch("adapter_agent.AdapterAgent") as agent_cls:
        agent_cls.return_value.run_command = AsyncMock(return_value=1)
        with pytest.raises(SystemExit) as exc_info:
            main(["breakdown", "proj-x"])
    assert exc_info.value.code == 1
