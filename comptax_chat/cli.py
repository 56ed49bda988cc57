"""CLI interface for the ComptaX chat client."""

import asyncio
import sys
from typing import Optional

import click

from comptax_chat import __version__
from comptax_chat.models.chat import RetrievalOptions
from comptax_chat.services.api_client import OhadaApiClient
from comptax_chat.services.auth import SettingsTokenProvider, StaticTokenProvider
from comptax_chat.services.config import Settings
from comptax_chat.services.conversations import ConversationManager
from comptax_chat.services.errors import ApiError
from comptax_chat.services.orchestrator import QueryOrchestrator
from comptax_chat.services.reconciler import sort_sources_for_display
from comptax_chat.services.session import SessionListener, StreamSession, StreamState
from comptax_chat.services.storage import create_sink
from comptax_chat.utils.logging import setup_logging


class EchoListener(SessionListener):
    """Prints the answer as it streams in"""

    def __init__(self):
        self.printed = False

    def on_chunk(self, session: StreamSession, text: str) -> None:
        if text:
            click.echo(text, nl=False)
            self.printed = True

    def on_complete(self, session: StreamSession) -> None:
        if not self.printed:
            click.echo(session.text, nl=False)
        click.echo()
        sources = sort_sources_for_display(session.sources)
        if sources:
            click.echo()
            click.echo(click.style("Sources", bold=True))
            for source in sources:
                position = []
                if source.metadata.partie is not None:
                    position.append(f"partie {source.metadata.partie}")
                if source.metadata.chapitre is not None:
                    position.append(f"chapitre {source.metadata.chapitre}")
                suffix = f" ({', '.join(position)})" if position else ""
                click.echo(f"  [{source.relevance_score:.2f}] {source.title}{suffix}")

    def on_failure(self, session: StreamSession) -> None:
        if self.printed:
            click.echo()
        click.echo(f"Error: {session.error}", err=True)

    def on_cancel(self, session: StreamSession) -> None:
        if self.printed:
            click.echo()
        click.echo("Cancelled.", err=True)


def _settings() -> Settings:
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    return settings


def _token_provider(settings: Settings, token: Optional[str]):
    return StaticTokenProvider(token) if token else SettingsTokenProvider(settings)


@click.group()
@click.version_option(version=__version__, prog_name="comptax-chat")
def cli():
    """comptax-chat: ask the OHADA accounting assistant from a terminal."""
    pass


@cli.command()
@click.argument("text")
@click.option("--partie", type=int, default=None, help="Restrict retrieval to a part of the plan")
@click.option("--chapitre", type=int, default=None, help="Restrict retrieval to a chapter")
@click.option("--n-results", type=int, default=None, help="Number of documents to retrieve")
@click.option("--no-sources", is_flag=True, help="Do not ask for sources")
@click.option("--token", default=None, help="Bearer token (defaults to COMPTAX_API_TOKEN)")
@click.option("--new", "new_conversation", is_flag=True, help="Start a new conversation")
def ask(text: str, partie: Optional[int], chapitre: Optional[int], n_results: Optional[int],
        no_sources: bool, token: Optional[str], new_conversation: bool):
    """Stream the answer to a question.

    Example:
        comptax-chat ask "Comment fonctionne l'amortissement dégressif ?"
    """
    settings = _settings()
    options = RetrievalOptions(
        n_results=n_results or settings.DEFAULT_N_RESULTS,
        include_sources=settings.INCLUDE_SOURCES and not no_sources,
        partie=partie,
        chapitre=chapitre,
    )
    try:
        state = asyncio.run(_ask(settings, text, options, token, new_conversation))
    except KeyboardInterrupt:
        sys.exit(130)
    if state != StreamState.COMPLETE:
        sys.exit(1)


async def _ask(settings: Settings, text: str, options: RetrievalOptions,
               token: Optional[str], new_conversation: bool) -> StreamState:
    provider = _token_provider(settings, token)
    api = OhadaApiClient(settings, provider)
    manager = ConversationManager(settings, sink=create_sink(settings), api=api, token_provider=provider)
    await manager.load()
    if new_conversation:
        manager.store.current_id = None

    try:
        async with QueryOrchestrator(settings, manager) as orchestrator:
            handle = await orchestrator.submit(text, options=options, listeners=[EchoListener()])
            try:
                return await handle.wait()
            except asyncio.CancelledError:
                # Ctrl-C goes through the same path as a user cancel
                handle.cancel()
                raise
    finally:
        await api.close()
        await manager.sink.close()


@cli.command()
def info():
    """Show the API service information."""
    settings = _settings()
    try:
        api_info = asyncio.run(_info(settings))
    except ApiError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(click.style(f"{api_info.service} {api_info.version}", bold=True))
    click.echo(f"  Status: {api_info.status}")
    for name, path in api_info.endpoints.items():
        click.echo(f"  {name}: {path}")


async def _info(settings: Settings):
    api = OhadaApiClient(settings)
    try:
        return await api.get_api_info()
    finally:
        await api.close()


@cli.command()
@click.option("--limit", type=int, default=10, show_default=True)
@click.option("--token", default=None, help="Bearer token (defaults to COMPTAX_API_TOKEN)")
def history(limit: int, token: Optional[str]):
    """Show recent questions and answers."""
    settings = _settings()
    try:
        result = asyncio.run(_history(settings, limit, token))
    except ApiError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not result.history:
        click.echo("No history.")
        return
    for entry in result.history:
        click.echo(click.style(entry.query, bold=True))
        click.echo(f"  {entry.answer[:200]}")


async def _history(settings: Settings, limit: int, token: Optional[str]):
    api = OhadaApiClient(settings, _token_provider(settings, token))
    try:
        return await api.get_history(limit)
    finally:
        await api.close()


def main():
    cli()


if __name__ == "__main__":
    main()
