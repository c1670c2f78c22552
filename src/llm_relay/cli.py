"""Command-line entry point: send one prompt and stream the answer."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from llm_relay.config import load_config
from llm_relay.errors import ProviderError
from llm_relay.llm.wrapper import SendChatOptions, get_provider_wrapper
from llm_relay.types import AssembledResponse, ChatMessage

console = Console()
err_console = Console(stderr=True)


def render_tool_calls(response: AssembledResponse) -> Table:
    table = Table(title="Tool calls", show_lines=False)
    table.add_column("id", style="dim")
    table.add_column("function", style="bold cyan")
    table.add_column("arguments")
    for tc in response.tool_calls:
        table.add_row(tc.id, tc.function_name, tc.arguments)
    return table


def render_error(err: ProviderError) -> str:
    hint = "retrying later may help" if err.retryable else "not retryable"
    return (
        f"[bold red]{err.provider_name}[/bold red] "
        f"[red]{err.category.value}[/red]: {err.message} [dim]({hint})[/dim]"
    )


async def _run(
    prompt: str,
    provider: str | None,
    model: str | None,
    system: str | None,
    config_path: str | None,
) -> int:
    config, _ = load_config(config_path)
    name = provider or config.default_provider
    profile = config.providers.get(name)
    model_name = model or (profile.default_model if profile else "")

    messages: list[ChatMessage] = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    messages.append(ChatMessage(role="user", content=prompt))

    try:
        wrapper = get_provider_wrapper(name, config)
    except ProviderError as e:
        err_console.print(render_error(e))
        return 1

    async with wrapper:
        try:
            response = await wrapper.send_chat(
                messages,
                SendChatOptions(
                    model=model_name,
                    on_text=lambda text: console.print(text, end="", markup=False),
                ),
            )
        except ProviderError as e:
            console.print()
            err_console.print(render_error(e))
            return 1

    console.print()
    if response.has_tool_calls:
        console.print(render_tool_calls(response))
    if response.metadata and response.metadata.usage:
        usage = response.metadata.usage
        console.print(
            f"[dim]tokens: prompt={usage.prompt} completion={usage.completion} "
            f"total={usage.total}[/dim]"
        )
    return 0


@click.command()
@click.argument("prompt")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to llm_relay.yaml (auto-detected from CWD or ~/.llm_relay/)")
@click.option("--provider", "-p", default=None, help="Provider profile name")
@click.option("--model", "-m", default=None, help="Model (defaults to the profile's default_model)")
@click.option("--system", "-s", default=None, help="Optional system prompt")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(prompt: str, config_path: str | None, provider: str | None,
         model: str | None, system: str | None, verbose: bool):
    """Send PROMPT to an LLM backend and stream the reply."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        code = asyncio.run(_run(prompt, provider, model, system, config_path))
    except (FileNotFoundError, ValueError) as e:
        err_console.print(f"[red]{e}[/red]")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
