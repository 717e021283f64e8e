"""CLI entry point for newsletter courier."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer

from newsletter_courier.config import Settings, get_settings
from newsletter_courier.container import Container, build_extraction_rules
from newsletter_courier.core import CourierError, LinkExtractor
from newsletter_courier.use_cases import format_dispatch_result, format_pull_result

T = TypeVar("T")

app = typer.Typer(help="Relay newsletter issues from an inbox to Discord channels.")

ConfigOption = typer.Option(Path("config.yaml"), "--config", help="Path to config.yaml")


def _setup(config_path: Path) -> Container:
    settings = get_settings(config_path)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return Container(settings)


def _run(start: Callable[[], Awaitable[T]]) -> T:
    """Build and run a coroutine, turning courier errors into a clean exit.

    Takes a factory so errors raised while building services, such as
    missing credentials, exit the same way as runtime failures.
    """
    try:
        return asyncio.run(start())
    except CourierError as e:
        print(f"❌ {e}")
        raise typer.Exit(code=1)


@app.command()
def pull(config: Path = ConfigOption) -> None:
    """Check the inbox once and store new issues."""
    container = _setup(config)
    result = _run(lambda: container.pull_inbox_service().execute())
    print(format_pull_result(result))


@app.command()
def dispatch(
    issue_id: Optional[str] = typer.Option(None, "--issue-id", help="Dispatch only this issue"),
    config: Path = ConfigOption,
) -> None:
    """Post unprocessed issues to subscribed channels."""
    container = _setup(config)

    if issue_id:
        result = _run(lambda: container.dispatch_service().dispatch_issue(issue_id))
        print(f"✓ Posted to {result.channels_dispatched} channel(s)")
        for error in result.errors:
            print(f"  ✗ {error.guild_id}/{error.channel_id}: {error.error}")
        return

    result = _run(lambda: container.dispatch_service().dispatch_unprocessed())
    print(format_dispatch_result(result))


async def _pull_and_dispatch(container: Container, timeout: float) -> None:
    async def cycle() -> None:
        pull_result = await container.pull_inbox_service().execute()
        print(format_pull_result(pull_result))
        dispatch_result = await container.dispatch_service().dispatch_unprocessed()
        print(format_dispatch_result(dispatch_result))

    await asyncio.wait_for(cycle(), timeout=timeout)


@app.command()
def run(
    timeout: float = typer.Option(300.0, "--timeout", help="Wall-clock budget in seconds"),
    config: Path = ConfigOption,
) -> None:
    """Run one full cycle: pull the inbox, then dispatch."""
    container = _setup(config)
    try:
        _run(lambda: _pull_and_dispatch(container, timeout))
    except asyncio.TimeoutError:
        print(f"⚠️  Cycle exceeded {timeout:.0f}s and was stopped")
        raise typer.Exit(code=1)


@app.command("add-newsletter")
def add_newsletter(
    name: str,
    url: str,
    sender_email: str,
    pattern: Optional[str] = typer.Option(None, "--pattern", help="Regex with one capture group"),
    config: Path = ConfigOption,
) -> None:
    """Register a newsletter by its sender address."""
    container = _setup(config)
    newsletter = _run(
        lambda: container.newsletter_service().add_newsletter(name, url, sender_email, pattern)
    )
    print(f"✓ Added {newsletter.name} ({newsletter.id})")


@app.command("list-newsletters")
def list_newsletters(config: Path = ConfigOption) -> None:
    """List registered newsletters."""
    container = _setup(config)
    newsletters = _run(lambda: container.newsletter_service().list_newsletters())
    if not newsletters:
        print("No newsletters registered")
        return
    for newsletter in sorted(newsletters, key=lambda n: n.name.lower()):
        print(f"  • {newsletter.name} <{newsletter.sender_email}>")
        print(f"    └─ {newsletter.id}")


@app.command()
def subscribe(
    guild_id: str,
    channel_id: str,
    newsletter_id: str,
    config: Path = ConfigOption,
) -> None:
    """Send a newsletter's issues to a guild channel."""
    container = _setup(config)
    subscription = _run(
        lambda: container.subscription_service().subscribe(guild_id, channel_id, newsletter_id)
    )
    print(f"✓ Channel {subscription.channel_id} subscribed ({subscription.id})")


@app.command()
def unsubscribe(guild_id: str, newsletter_id: str, config: Path = ConfigOption) -> None:
    """Stop sending a newsletter to a guild."""
    container = _setup(config)
    _run(lambda: container.subscription_service().unsubscribe(guild_id, newsletter_id))
    print("✓ Unsubscribed")


@app.command()
def extract(
    file: Path,
    pattern: Optional[str] = typer.Option(None, "--pattern", help="Custom extraction regex"),
    name: Optional[str] = typer.Option(None, "--name", help="Newsletter name"),
    config: Path = ConfigOption,
) -> None:
    """Show which link would be extracted from a saved email body."""
    settings: Settings = get_settings(config)
    extractor = LinkExtractor(build_extraction_rules(settings.extraction))

    content = file.read_text(encoding="utf-8", errors="replace")
    is_html = file.suffix.lower() in (".html", ".htm")
    match = extractor.find(
        html=content if is_html else None,
        text=None if is_html else content,
        extraction_pattern=pattern,
        newsletter_name=name,
    )

    if not match:
        print("✗ No URL found")
        raise typer.Exit(code=1)
    print(f"✓ {match.url}")
    print(f"  └─ tier: {match.tier.value}")


if __name__ == "__main__":
    app()
