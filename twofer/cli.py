"""Click CLI — orchestrates config loading, runtime startup, health check, debate, and output."""

import asyncio
import logging
import sys
import webbrowser
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AgentConfig, AppConfig, load_config, parse_agent_spec
from twofer.broadcast import Broadcaster
from twofer.debate import DebateConfig, run_debate
from twofer.healthcheck import run_health_checks
from twofer.models import ConvergenceState, DebateResult, RoundResult
from twofer.output import export_to_markdown, print_result, print_round_summary, save_to_file
from twofer.protocol import export_message
from twofer.runtime.opencode import OpencodeRuntime
from twofer.server import create_app, start_server
from twofer.session import PromptDispatcher

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _resolve_agents(config: AppConfig, agent_flags: tuple[str, ...]) -> list[AgentConfig]:
    """--agent flags win over the agents listed in settings.yaml.

    Raises:
        click.BadParameter: If a flag is malformed.
    """
    if not agent_flags:
        return list(config.defaults.agents)
    try:
        return [parse_agent_spec(value, i) for i, value in enumerate(agent_flags)]
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--agent") from exc


def _check_agents(results: dict[str, tuple[bool, str]]) -> bool:
    """Print health check results. Returns True if every agent passed."""
    all_ok = True
    for name in results:
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            console.print(f"  [red]FAIL[/red] {name}: {err}")
            all_ok = False
    return all_ok


async def _run(
    config: AppConfig,
    debate_config: DebateConfig,
    serve: bool,
    port: int,
    open_browser: bool,
    skip_health_check: bool,
    output_dir: Path,
    output_name: str | None,
) -> DebateResult | None:
    broadcaster = Broadcaster()
    debate_result: DebateResult | None = None
    runner = None

    async with OpencodeRuntime(config.runtime) as runtime:
        if not skip_health_check:
            console.print("\n[bold]Checking agents...[/bold]")
            results = await run_health_checks(runtime, debate_config.agents)
            if not _check_agents(results):
                console.print("\n[bold red]Error:[/bold red] Fix the agents above or use --agent flags.")
                return None
            console.print()

        if serve:
            runner = await start_server(create_app(broadcaster, lambda: debate_result), port)
            url = f"http://localhost:{port}"
            console.print(f"[dim]Server on {url}[/dim]")
            if open_browser:
                webbrowser.open(url)

        dispatcher = PromptDispatcher(
            runtime,
            timeout_sec=config.timeouts.prompt_timeout_sec,
            busy_grace_sec=config.timeouts.busy_grace_sec,
            poll_interval_sec=config.timeouts.poll_interval_sec,
        )

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TimeElapsedColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Round 1: agents proposing...", total=None)

                def on_round_complete(rnd: RoundResult, convergence: ConvergenceState) -> None:
                    progress.update(task, description=f"Round {rnd.round + 1}: agents reviewing...")
                    print_round_summary(rnd, convergence)

                debate_result = await run_debate(
                    runtime,
                    debate_config,
                    broadcaster,
                    config.prompts,
                    on_round_complete=on_round_complete,
                    dispatcher=dispatcher,
                )

            print_result(debate_result)
            saved = save_to_file(debate_result, output_dir, filename=output_name)
            console.print(f"\n[dim]Saved to: {saved}[/dim]")
            broadcaster.broadcast(export_message(export_to_markdown(debate_result), saved.name))

            if serve:
                console.print("\n[dim]Press Ctrl+C to exit[/dim]")
                await asyncio.Event().wait()
        finally:
            broadcaster.close()
            if runner is not None:
                await runner.cleanup()

    return debate_result


@click.command()
@click.argument("prompt")
@click.option("--agent", "-a", "agent_flags", multiple=True,
              help="Add an agent: provider/model or name=provider/model (repeatable)")
@click.option("--max-rounds", "-r", default=None, type=click.IntRange(min=1),
              help="Safety limit on debate rounds (default: from config)")
@click.option("--stack", "-s", default=None, help="Preferred tech stack")
@click.option("--dir", "-d", "project_dir", default=None, type=click.Path(exists=True, file_okay=False),
              help="Project directory agents may explore with read-only tools")
@click.option("--context-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="File with codebase context to include in round 1 prompts")
@click.option("--output", "-o", "output_path", default=None, help="Write the markdown spec to this file")
@click.option("--serve/--no-serve", default=True, help="Serve the live event feed and result over HTTP")
@click.option("--port", default=None, type=int, help="HTTP port (default: from config)")
@click.option("--open/--no-open", "open_browser", default=False, help="Open the browser on the server URL")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Alternate settings.yaml")
@click.option("--opencode-url", default=None, help="OpenCode server URL (default: from config or OPENCODE_URL)")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip checking agents against connected providers")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    prompt: str,
    agent_flags: tuple[str, ...],
    max_rounds: int | None,
    stack: str | None,
    project_dir: str | None,
    context_file: str | None,
    output_path: str | None,
    serve: bool,
    port: int | None,
    open_browser: bool,
    config_path: str | None,
    opencode_url: str | None,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Twofer -- multi-agent design debate.

    \b
    Examples:
      twofer "Realtime notifications service" -a anthropic/claude-opus-4-6 -a openai/gpt-5.2-codex
      twofer "Auth redesign" -a A=anthropic/claude-opus-4-6 -a B=openrouter/z-ai/glm-5 -r 4
      twofer "Add a plugin system" -d . --no-serve -o spec.md
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(Path(config_path)) if config_path else load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if opencode_url:
        config.runtime.base_url = opencode_url.rstrip("/")

    agents = _resolve_agents(config, agent_flags)
    if len(agents) < 2:
        console.print(
            f"[bold red]Error:[/bold red] Need at least 2 agents for a debate, got {len(agents)}. "
            "Add --agent flags or list agents in settings.yaml."
        )
        sys.exit(1)

    debate_config = DebateConfig(
        prompt=prompt,
        max_rounds=max_rounds if max_rounds is not None else config.defaults.max_rounds,
        agents=agents,
        stack=stack,
        codebase_context=Path(context_file).read_text(encoding="utf-8") if context_file else None,
        project_dir=str(Path(project_dir).resolve()) if project_dir else None,
    )

    console.print("\n[bold]TWOFER[/bold][dim] -- multi-agent design debate[/dim]")
    for i, agent in enumerate(agents):
        console.print(f"[dim]  Agent {chr(ord('A') + i)} ({agent.name})[/dim] [dim italic]{agent.provider_id}/{agent.model_id}[/dim italic]")

    try:
        result = asyncio.run(
            _run(
                config,
                debate_config,
                serve=serve,
                port=port if port is not None else config.defaults.http_port,
                open_browser=open_browser,
                skip_health_check=skip_health_check,
                output_dir=Path(output_path).parent if output_path else config.defaults.output_dir,
                output_name=Path(output_path).name if output_path else None,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        sys.exit(130)

    if result is None:
        sys.exit(1)

    if result.outcome == "aborted":
        sys.exit(2)


if __name__ == "__main__":
    main()
