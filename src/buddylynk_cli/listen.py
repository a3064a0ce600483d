"""
Socket session CLI for watching realtime events.

Usage:
    buddylynk listen --user-id u1 --token <token>
    buddylynk listen --user-id u1 --token <token> --watch u2 --watch u3
"""

import asyncio
import json
import signal

import click

from buddylynk_client.http import BuddylynkClient
from buddylynk_client.inbox import Inbox
from buddylynk_client.presence import PresenceTracker
from buddylynk_client.session import ClientSocketSession, SessionState
from buddylynk_types.events import DOMAIN_EVENT_CLASSES


def ws_url(api_url: str) -> str:
    url = api_url.rstrip("/")
    url = url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{url}/ws"


class EventPrinter:
    """Prints every frame the session dispatches."""

    def __init__(self, session: ClientSocketSession):
        self.session = session
        self.events = sorted({cls.client_event for cls in DOMAIN_EVENT_CLASSES} | {"registered", "error"})

    def attach(self):
        for event in self.events:
            self.session.on(event, self._printer(event))
        self.session.add_state_listener(self._on_state)

    def _printer(self, event: str):
        def handler(data):
            if event == "message":
                self._display_message(data)
            elif event == "userOnline":
                click.echo(f"[online] {data.get('user_id')}")
            elif event == "userOffline":
                click.echo(f"[offline] {data.get('user_id')} (last seen {data.get('last_seen_at')})")
            elif event == "unreadCountUpdated":
                click.echo(f"[unread] {data.get('count')}")
            elif event == "error":
                click.echo(f"[error] {data.get('code')}: {data.get('message')}")
            else:
                click.echo(f"[{event}] {json.dumps(data)}")
        return handler

    def _display_message(self, data: dict):
        click.echo("")
        click.echo(f"┌─ NEW MESSAGE [{str(data.get('message_id', ''))[:8]}...]")
        click.echo(f"│ From: {data.get('sender_id')}")
        click.echo(f"│ {data.get('content')}")
        click.echo("└─")

    def _on_state(self, state: SessionState):
        if state is SessionState.DISCONNECTED and self.session.gave_up:
            click.echo("[offline] Gave up reconnecting")
        else:
            click.echo(f"[state] {state.value}")


async def _listen(api_url: str, user_id: str, token: str, watch: tuple):
    session = ClientSocketSession(ws_url(api_url), user_id, token)
    api = BuddylynkClient(api_url, token)

    await session.start()
    EventPrinter(session).attach()
    inbox = Inbox(session, api)
    inbox.attach()
    presence = PresenceTracker(session, api)
    presence.attach()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    if await session.wait_until_connected(timeout=30):
        click.echo(f"[connected] server={session.server_id} connection={session.connection_id}")
        if watch:
            statuses = await presence.load(watch)
            for watched, online in statuses.items():
                label = "unknown" if online is None else ("online" if online else "offline")
                click.echo(f"[presence] {watched}: {label}")
    else:
        click.echo("[error] Could not connect")
        stop.set()

    stop_waiter = asyncio.ensure_future(stop.wait())
    gave_up_waiter = asyncio.ensure_future(session.wait_until_stopped())
    await asyncio.wait({stop_waiter, gave_up_waiter}, return_when=asyncio.FIRST_COMPLETED)
    stop_waiter.cancel()
    gave_up_waiter.cancel()

    await session.close()
    await api.close()


@click.command()
@click.option("--api-url", envvar="BUDDYLYNK_API_URL", default="http://localhost:8000", show_default=True)
@click.option("--user-id", envvar="BUDDYLYNK_USER_ID", required=True, help="Authenticated user id")
@click.option("--token", envvar="BUDDYLYNK_TOKEN", required=True, help="Bearer token")
@click.option("--watch", multiple=True, help="User id whose presence to show (repeatable)")
def listen(api_url: str, user_id: str, token: str, watch: tuple):
    """Open a socket session and print incoming events."""
    click.echo(f"[debug] Connecting to: {ws_url(api_url)}?token=***")
    asyncio.run(_listen(api_url, user_id, token, watch))
