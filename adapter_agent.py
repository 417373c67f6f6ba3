#!/usr/bin/env python3
"""
Webtoon Adapter command line host.
Turns imported novel chapters into plot breakdowns and episode scripts
through the worker/aligner loop, with rich console output.
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from config_manager import AppConfig, config_manager
from data_models import LogType, NovelType, Project
from llm_service import is_stream_restart
from project_store import JsonProjectStore
from workflow_manager import (
    CancellationToken, LoopResult, UnitResult, UnitStatus, WorkflowError, WorkflowManager,
)

logger = logging.getLogger(__name__)

LOG_FILE = "webtoon_adapter.log"


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler()
        ]
    )


class AdapterError(Exception):
    """Base exception for the command line host"""
    pass


class AdapterAgent:
    """Console host around the WorkflowManager"""

    def __init__(self, config_path: Union[str, Path] = "config.json",
                 workflow_manager: Optional[WorkflowManager] = None,
                 console: Optional[Console] = None):
        load_dotenv()
        self.console = console or Console()
        self.config = self._load_and_validate_config(config_path)
        if self.config.ui.verbose_logging:
            logging.getLogger().setLevel(logging.DEBUG)
        self.workflow_manager = workflow_manager or WorkflowManager(
            self.config, JsonProjectStore(self.config.storage.projects_dir)
        )
        self.workflow_manager.add_project_updated_callback(self._on_project_updated)
        self._token: Optional[CancellationToken] = None

        logger.info("AdapterAgent initialized successfully")

    def _load_and_validate_config(self, config_path: Union[str, Path]) -> AppConfig:
        """Load and validate configuration"""
        try:
            config = config_manager.load_config(config_path)
            logger.info(f"Configuration loaded from {config_path}")
            return config
        except Exception as e:
            self.console.print(f"[red]Error loading configuration: {e}[/red]")
            raise AdapterError(f"Configuration error: {e}") from e

    def _on_project_updated(self, project: Project):
        logger.debug(f"Project {project.id} persisted ({len(project.plot_batches)} batches, "
                     f"{len(project.scripts)} scripts)")

    # --- cancellation and progress ---

    def request_stop(self):
        """Ask the running loop to stop at its next checkpoint"""
        if self._token is not None and not self._token.is_cancelled():
            self._token.cancel()
            self.console.print("\n[yellow]⏹️ Stopping after the current step...[/yellow]")

    def _print_chunk(self, chunk: str):
        self.console.print(chunk, end="", markup=False, highlight=False)

    def _print_status(self, message: str):
        if is_stream_restart(message):
            self.console.print(f"\n[yellow]{message}; the text above is incomplete.[/yellow]")
            return
        self.console.print(f"\n[blue]{message}[/blue]")

    async def _run_cancellable(self, description: str,
                               run: Callable[..., Awaitable[Union[UnitResult, LoopResult]]]):
        """Run a workflow call with Ctrl-C wired to the cancellation token"""
        self._token = CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.request_stop)
            handler_installed = True
        except NotImplementedError:
            logger.debug("Signal handlers unavailable; Ctrl-C will interrupt immediately")
            handler_installed = False

        try:
            if self.config.ui.stream_output:
                self._print_status(description)
                return await run(self._token, self._print_status, self._print_chunk)

            if not self.config.ui.show_progress:
                return await run(self._token, self._print_status, None)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=self.console
            ) as progress:
                task = progress.add_task(description, total=None)

                def on_status(message: str):
                    progress.update(task, description=message)

                return await run(self._token, on_status, None)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            self._token = None

    def _report(self, result: UnitResult, success_message: str, exhausted_ok: bool = False) -> bool:
        """Print the outcome of a unit; True on success, or on running out of work when ``exhausted_ok``"""
        status = result.status
        if status == UnitStatus.SUCCESS:
            self.console.print(f"[green]✅ {success_message}[/green]")
            return True
        if status == UnitStatus.ABORTED:
            self.console.print("[yellow]Task stopped.[/yellow]")
        elif status == UnitStatus.DONE:
            self.console.print("[green]🎉 All chapters have been broken down![/green]")
            return exhausted_ok
        elif status == UnitStatus.NO_DATA:
            self.console.print("[green]🎉 No unused plot points left to script.[/green]")
            return exhausted_ok
        elif status == UnitStatus.BLOCKED:
            self.console.print(f"[red]❌ {result.report}[/red]")
        elif result.is_api_error:
            self.console.print(f"[red]❌ System error: {result.report}[/red]")
        else:
            self.console.print(Panel(
                result.report or "(no report)",
                title="⚠️ Quality check failed; review the report and retry manually",
                border_style="red",
            ))
        return False

    # --- commands ---

    async def create_project(self, title: str, novel_type: Optional[str], description: str,
                             batch_size: Optional[int], max_retries: Optional[int]) -> Project:
        project = await self.workflow_manager.create_project(
            title, novel_type, description, batch_size, max_retries
        )
        self.console.print(f"[green]✅ Created project {project.id}: {project.title}[/green]")
        return project

    async def list_projects(self):
        projects = await self.workflow_manager.list_projects()
        if not projects:
            self.console.print("[yellow]No projects yet. Create one with 'new'.[/yellow]")
            return

        table = Table(title="📚 Projects", show_header=True, header_style="bold blue")
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="white")
        table.add_column("Type", style="magenta")
        table.add_column("Chapters", justify="right")
        table.add_column("Batches", justify="right")
        table.add_column("Scripts", justify="right")
        table.add_column("Updated", style="dim")

        for project in projects:
            stats = project.stats()
            table.add_row(
                project.id,
                project.title,
                project.novel_type,
                f"{stats['processed_chapters']}/{stats['total_chapters']}",
                str(stats["plot_batches"]),
                str(stats["script_episodes"]),
                datetime.fromtimestamp(project.updated_at).strftime("%Y-%m-%d %H:%M"),
            )
        self.console.print(table)

    @staticmethod
    def _collect_chapter_files(paths: List[str]) -> List[Path]:
        files = []
        for raw in paths:
            path = Path(raw)
            if path.is_dir():
                files.extend(sorted(path.glob("*.txt")))
            elif path.exists():
                files.append(path)
            else:
                raise AdapterError(f"File '{path}' not found")
        return files

    async def import_files(self, project_id: str, paths: List[str]) -> Project:
        files = self._collect_chapter_files(paths)
        chapters = [(f.name, f.read_text(encoding="utf-8")) for f in files]
        project = await self.workflow_manager.import_chapters(project_id, chapters)
        self.console.print(
            f"[green]✅ Imported {len(chapters)} chapters ({len(project.chapters)} total)[/green]"
        )
        return project

    async def run_breakdown(self, project_id: str, count: int) -> bool:
        result = await self._run_cancellable(
            "Breaking down chapters...",
            lambda token, on_status, on_chunk: self.workflow_manager.run_breakdown_loop(
                project_id, count, token, on_status, on_chunk
            ),
        )
        ok = self._report(result.last, f"Completed {result.completed} breakdown batches", exhausted_ok=True)
        if not ok and result.completed:
            self.console.print(f"[cyan]{result.completed} batches completed before stopping[/cyan]")
        return ok

    async def run_scripts(self, project_id: str, count: int) -> bool:
        result = await self._run_cancellable(
            "Writing scripts...",
            lambda token, on_status, on_chunk: self.workflow_manager.run_script_loop(
                project_id, count, token, on_status, on_chunk
            ),
        )
        ok = self._report(result.last, f"Completed {result.completed} script batches", exhausted_ok=True)
        if not ok and result.completed:
            self.console.print(f"[cyan]{result.completed} script batches completed before stopping[/cyan]")
        return ok

    async def retry_breakdown(self, project_id: str, batch_number: int) -> bool:
        """Retry breakdown batch ``batch_number`` (1-based, as displayed)"""
        result = await self._run_cancellable(
            f"Retrying breakdown batch {batch_number}...",
            lambda token, on_status, on_chunk: self.workflow_manager.retry_breakdown_batch(
                project_id, batch_number - 1, token, on_status, on_chunk
            ),
        )
        return self._report(result, f"Batch {batch_number} retried successfully")

    async def retry_script(self, project_id: str, episode: int) -> bool:
        """Regenerate the scripts of the batch containing ``episode``"""
        result = await self._run_cancellable(
            f"Retrying scripts around episode {episode}...",
            lambda token, on_status, on_chunk: self.workflow_manager.retry_script_episode(
                project_id, episode, token, on_status, on_chunk
            ),
        )
        if result.status == UnitStatus.NO_DATA:
            self.console.print(f"[yellow]No plot points target episode {episode}.[/yellow]")
            return False
        return self._report(result, f"Scripts around episode {episode} regenerated")

    async def show_project(self, project_id: str, episode: Optional[int] = None):
        project = await self.workflow_manager.get_project(project_id)

        if episode is not None:
            script = project.find_script(episode)
            if script is None:
                raise AdapterError(f"No script for episode {episode}")
            self.console.print(Panel(script.content, title=f"{script.title} [{script.status.value}]"))
            if script.aligner_report:
                self.console.print(Panel(script.aligner_report, title="Aligner report", border_style="dim"))
            return

        stats = project.stats()
        self.console.print(Panel(
            f"[bold]{project.title}[/bold] ({project.novel_type})\n"
            f"{project.description or ''}\n\n"
            f"Chapters: {stats['processed_chapters']}/{stats['total_chapters']} processed  "
            f"Batch size: {project.batch_size}  Max retries: {project.max_retries}",
            title=f"📖 {project.id}",
        ))

        if project.plot_batches:
            table = Table(title="Plot batches", show_header=True, header_style="bold blue")
            table.add_column("Batch", justify="right")
            table.add_column("Chapters")
            table.add_column("Points", justify="right")
            table.add_column("Episodes")
            table.add_column("Unused", justify="right")
            table.add_column("Status")
            for batch in project.plot_batches:
                episodes = f"{batch.first_episode}-{batch.last_episode}" if batch.points else "-"
                style = "green" if batch.status.value == "approved" else "red"
                table.add_row(
                    str(batch.index + 1),
                    batch.chapter_range,
                    str(len(batch.points)),
                    episodes,
                    str(sum(1 for p in batch.points if not p.is_used)),
                    f"[{style}]{batch.status.value}[/{style}]",
                )
            self.console.print(table)

        if project.scripts:
            table = Table(title="Scripts", show_header=True, header_style="bold blue")
            table.add_column("Episode", justify="right")
            table.add_column("Title")
            table.add_column("Length", justify="right")
            table.add_column("Status")
            for script in project.scripts:
                table.add_row(str(script.episode), script.title, str(len(script.content)), script.status.value)
            self.console.print(table)

    async def show_logs(self, project_id: str, log_type: Optional[str] = None,
                        reference_id: Optional[str] = None, limit: int = 20, detail: bool = False):
        logs = await self.workflow_manager.get_logs(
            project_id, LogType(log_type) if log_type else None, reference_id
        )
        if not logs:
            self.console.print("[yellow]No execution logs.[/yellow]")
            return

        table = Table(title="🧾 Execution logs", show_header=True, header_style="bold blue")
        table.add_column("Time", style="dim")
        table.add_column("Type")
        table.add_column("Ref")
        table.add_column("Verdict")
        table.add_column("Turns", justify="right")
        table.add_column("API error")
        for log in logs[:limit]:
            style = "green" if log.status.value == "PASS" else "red"
            table.add_row(
                datetime.fromtimestamp(log.timestamp).strftime("%Y-%m-%d %H:%M:%S"),
                log.type.value,
                log.reference_id,
                f"[{style}]{log.status.value}[/{style}]",
                str(len(log.entries)),
                "yes" if log.is_api_error else "",
            )
        self.console.print(table)

        if detail:
            latest = logs[0]
            for entry in latest.entries:
                self.console.print(Panel(
                    entry.content or "(empty)",
                    title=f"#{entry.attempt} {entry.role.value} · {entry.agent_name}",
                    border_style="dim",
                ))
            if latest.report:
                self.console.print(Panel(latest.report, title="Final report"))

    async def run_command(self, args) -> int:
        """Dispatch a parsed command line; returns the process exit code"""
        command = args.command
        if command == "new":
            await self.create_project(args.title, args.type, args.description, args.batch_size, args.max_retries)
        elif command == "list":
            await self.list_projects()
        elif command == "import":
            await self.import_files(args.project, args.files)
        elif command == "breakdown":
            return 0 if await self.run_breakdown(args.project, args.count) else 1
        elif command == "scripts":
            return 0 if await self.run_scripts(args.project, args.count) else 1
        elif command == "retry-breakdown":
            return 0 if await self.retry_breakdown(args.project, args.batch) else 1
        elif command == "retry-script":
            return 0 if await self.retry_script(args.project, args.episode) else 1
        elif command == "show":
            await self.show_project(args.project, args.episode)
        elif command == "logs":
            await self.show_logs(args.project, args.type, args.ref, args.limit, args.detail)
        else:
            raise AdapterError(f"Unknown command: {command}")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Webtoon Adapter: novel to plot breakdown to episode scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s new "My Novel" --type 玄幻          # Create a project
  %(prog)s import proj-1a2b3c chapters/       # Import every .txt in a folder
  %(prog)s breakdown proj-1a2b3c -n 3         # Break down the next 3 batches
  %(prog)s scripts proj-1a2b3c -n 2           # Script the next 2 batches
  %(prog)s retry-breakdown proj-1a2b3c 2      # Regenerate batch 2 in place
        """
    )
    parser.add_argument(
        "--config", "-c",
        default="config.json",
        help="Path to configuration file (default: config.json)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", help="Create a project")
    new.add_argument("title")
    new.add_argument("--type", choices=[t.value for t in NovelType], help="Novel genre")
    new.add_argument("--description", default="", help="Short description of the novel")
    new.add_argument("--batch-size", type=int, help="Chapters per breakdown batch (1-20)")
    new.add_argument("--max-retries", type=int, help="Worker/aligner cycles per unit (1-10)")

    sub.add_parser("list", help="List projects")

    imp = sub.add_parser("import", help="Import chapter text files")
    imp.add_argument("project")
    imp.add_argument("files", nargs="+", help=".txt files or folders containing them")

    for name, help_text in (("breakdown", "Break down the next chapter batches"),
                            ("scripts", "Write scripts for the next plot batches")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("project")
        cmd.add_argument("-n", "--count", type=int, default=1, help="Number of batches (default: 1)")

    retry_b = sub.add_parser("retry-breakdown", help="Regenerate one breakdown batch")
    retry_b.add_argument("project")
    retry_b.add_argument("batch", type=int, help="Batch number as shown by 'show' (1-based)")

    retry_s = sub.add_parser("retry-script", help="Regenerate the scripts around one episode")
    retry_s.add_argument("project")
    retry_s.add_argument("episode", type=int)

    show = sub.add_parser("show", help="Show a project or one episode script")
    show.add_argument("project")
    show.add_argument("--episode", type=int)

    logs = sub.add_parser("logs", help="Show execution logs, newest first")
    logs.add_argument("project")
    logs.add_argument("--type", choices=[t.value for t in LogType])
    logs.add_argument("--ref", help="Reference id, e.g. batch index or '3-5'")
    logs.add_argument("--limit", type=int, default=20)
    logs.add_argument("--detail", action="store_true", help="Print every turn of the newest log")

    return parser


def main(argv: Optional[List[str]] = None):
    """Entry point for the webtoon-adapter command"""
    console = Console()
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)
    if args.verbose:
        logger.debug("Verbose logging enabled")

    try:
        agent = AdapterAgent(args.config, console=console)
        exit_code = asyncio.run(agent.run_command(args))
    except (AdapterError, WorkflowError, ValueError) as e:
        console.print(f"[red]❌ {e}[/red]")
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]❌ Fatal error: {e}[/red]")
        logger.exception("Fatal error in main")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
