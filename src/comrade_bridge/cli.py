"""comrade-bridge command line: one-shot chat, streaming and connection checks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from comrade_bridge import __version__
from comrade_bridge.bridge import ChatBridge
from comrade_bridge.config import BridgeConfig, load_config
from comrade_bridge.errors import BridgeError
from comrade_bridge.types import ChatResponse, Message, RequestOptions

console = Console()
# Streamed text goes straight to stdout without markup processing
_raw = Console(highlight=False, markup=False, soft_wrap=True)

EXIT_UNREACHABLE = 1
EXIT_BRIDGE_ERROR = 2


def _build_bridge(config: BridgeConfig, agent_name: str | None) -> ChatBridge:
    return ChatBridge.from_config(config, agent_name)


def _print_error(err: BridgeError) -> None:
    body = f"[bold]{err.message}[/bold]\n[dim]code: {err.to_dict()['code']}[/dim]"
    if err.suggested_fix:
        body += f"\n\n{err.suggested_fix}"
    console.print(Panel(body, title="Error", border_style="red"))


def _print_usage(response: ChatResponse) -> None:
    meta = response.metadata
    parts = [f"{meta.get('provider', '?')}/{meta.get('model', '?')}"]
    parts.append(f"finish: {response.finish_reason.value}")
    if response.usage:
        u = response.usage
        parts.append(f"tokens: {u.prompt_tokens}+{u.completion_tokens}={u.total_tokens}")
    if "latency_ms" in meta:
        parts.append(f"{meta['latency_ms']} ms")
    if meta.get("tool_calls"):
        parts.append(f"tools: {', '.join(tc['name'] for tc in meta['tool_calls'])}")
    console.print(f"[dim]{' | '.join(parts)}[/dim]")


def _messages(prompt: str, system: str | None) -> list[Message]:
    msgs = [Message.system(system)] if system else []
    msgs.append(Message.user(prompt))
    return msgs


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to comrade_bridge.yaml (auto-detected from CWD or ~/.comrade_bridge/)")
@click.option("--agent", "-a", "agent_name", default=None, help="Agent name from the config")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="comrade-bridge")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, agent_name: str | None, verbose: bool):
    """Comrade Bridge - one chat interface for OpenAI, Anthropic, Ollama and custom endpoints."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e
    if verbose:
        console.print(f"[dim]Config: {config_file or 'defaults'}[/dim]")
    ctx.obj = {"config": config, "agent": agent_name}


@main.command()
@click.argument("prompt")
@click.option("--system", "-s", default=None, help="System prompt for this message")
@click.option("--temperature", "-t", type=float, default=None)
@click.option("--max-tokens", "-m", type=int, default=None)
@click.pass_context
def chat(ctx: click.Context, prompt: str, system: str | None,
         temperature: float | None, max_tokens: int | None):
    """Send PROMPT and print the complete reply."""
    options = RequestOptions(temperature=temperature, max_tokens=max_tokens)

    async def _run() -> ChatResponse:
        async with _build_bridge(ctx.obj["config"], ctx.obj["agent"]) as bridge:
            return await bridge.send_message(_messages(prompt, system), options)

    try:
        response = asyncio.run(_run())
    except BridgeError as e:
        _print_error(e)
        sys.exit(EXIT_BRIDGE_ERROR)
    console.print(Markdown(response.content))
    _print_usage(response)


@main.command()
@click.argument("prompt")
@click.option("--system", "-s", default=None, help="System prompt for this message")
@click.pass_context
def stream(ctx: click.Context, prompt: str, system: str | None):
    """Stream the reply to PROMPT as it arrives (Ctrl-C stops it)."""

    def on_chunk(chunk: str, done: bool) -> None:
        if done:
            _raw.print()
        else:
            _raw.print(chunk, end="")

    async def _run() -> ChatResponse:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        # add_signal_handler is unavailable on some platforms (Windows)
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, cancel.set)
        try:
            async with _build_bridge(ctx.obj["config"], ctx.obj["agent"]) as bridge:
                return await bridge.stream_message(
                    _messages(prompt, system), on_chunk, cancel_event=cancel,
                )
        finally:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGINT)

    try:
        response = asyncio.run(_run())
    except BridgeError as e:
        if e.partial_content:
            console.print("[dim](partial output kept above)[/dim]")
        _print_error(e)
        sys.exit(EXIT_BRIDGE_ERROR)
    _print_usage(response)


@main.command()
@click.pass_context
def validate(ctx: click.Context):
    """Check that the agent's provider is reachable with the configured credentials."""

    async def _run():
        async with _build_bridge(ctx.obj["config"], ctx.obj["agent"]) as bridge:
            return await bridge.validate_connection()

    status = asyncio.run(_run())
    if status.ok:
        code = f" (HTTP {status.status_code})" if status.status_code else ""
        console.print(f"[green]Connection OK{code}[/green]")
        return
    console.print(f"[red]Connection failed: {status.reason}[/red]")
    sys.exit(EXIT_UNREACHABLE)


@main.command()
@click.pass_context
def agents(ctx: click.Context):
    """List configured agents."""
    config: BridgeConfig = ctx.obj["config"]
    table = Table(title="Agents", border_style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Endpoint", style="dim")
    table.add_column("Key")
    for name, agent in config.agents.items():
        marker = " *" if name == config.default_agent else ""
        table.add_row(
            f"{name}{marker}",
            agent.provider,
            agent.model,
            agent.endpoint or "(default)",
            "set" if agent.resolved_api_key() else "-",
        )
    console.print(table)


if __name__ == "__main__":
    main()
