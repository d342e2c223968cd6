"""Interactive terminal client for a handoff session.

Run as the end user to chat with the AI and escalate with ``/human``, or as
an operator (``--role operator --resume-url ...``) to pick up an escalated
session through the relay.
"""

import argparse
import asyncio
import logging
import sys
import uuid
from collections.abc import Awaitable, Callable

import requests
from dotenv import load_dotenv

from handoff.app_logging import init_logging
from handoff.config import get_settings
from handoff.errors import EscalationRoutingError
from handoff.factory import build_controller
from handoff.models import Role
from handoff.session import SessionController

logger = logging.getLogger(__name__)

HELP = "Commands: /human  /join  /edit <message-id> <text>  /quit"


def _echo(message: str) -> None:
    sys.stdout.write(f"{message}\n")


class TranscriptPrinter:
    """Print each confirmed message once, and again when it is edited."""

    def __init__(self, echo: Callable[[str], None] = _echo) -> None:
        self.echo = echo
        self._seen: dict[str, str] = {}
        self._mode: str | None = None

    def __call__(self, controller: SessionController) -> None:
        for message in controller.messages:
            if message.is_optimistic:
                continue
            previous = self._seen.get(message.id)
            if previous == message.content:
                continue
            label = message.metadata.get("sender_name") or message.role.value
            suffix = " (edited)" if previous is not None else ""
            self.echo(f"[{label}] {message.content}{suffix}")
            self._seen[message.id] = message.content
        mode = controller.mode.value
        if mode != self._mode:
            if self._mode is not None:
                self.echo(f"-- session is now {mode} --")
            self._mode = mode


def fetch_resume(base_url: str, session_id: str, session: requests.Session | None = None) -> dict:
    http = session or requests.Session()
    response = http.get(f"{base_url.rstrip('/')}/api/sessions/{session_id}", timeout=10)
    response.raise_for_status()
    return response.json()


async def handle_line(controller: SessionController, line: str) -> bool:
    """Apply one line of input; returns ``False`` when the user quits."""

    text = line.strip()
    if not text:
        return True
    if text == "/quit":
        return False
    if text == "/help":
        _echo(HELP)
    elif text == "/human":
        try:
            if not await controller.request_human():
                _echo("A handoff is not available right now.")
        except EscalationRoutingError as exc:
            logger.warning("Escalation failed: %s", exc)
    elif text == "/join":
        await controller.join()
    elif text.startswith("/edit "):
        parts = text.split(" ", 2)
        if len(parts) < 3 or not await controller.edit(parts[1], parts[2]):
            _echo("Could not edit that message.")
    else:
        await controller.send(text)
    return True


async def run(
    controller: SessionController,
    read_line: Callable[[str], Awaitable[str]] | None = None,
) -> int:
    async def _read(prompt: str) -> str:
        return await asyncio.to_thread(input, prompt)

    reader = read_line or _read
    _echo(HELP)
    try:
        while True:
            try:
                line = await reader("> ")
            except EOFError:
                break
            if not await handle_line(controller, line):
                break
    finally:
        await controller.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat handoff terminal client")
    parser.add_argument("--session", default=None, help="Session id (new one if omitted)")
    parser.add_argument(
        "--role",
        choices=[Role.END_USER.value, Role.OPERATOR.value],
        default=Role.END_USER.value,
        help="Participant role",
    )
    parser.add_argument("--sender-id", default=None, help="Participant id")
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument(
        "--resume-url",
        default=None,
        help="Relay base URL to load the session history from",
    )
    parser.add_argument(
        "--welcome",
        default="Hello! How can I help you today?",
        help="Greeting shown in a new session",
    )
    return parser


async def _main(args: argparse.Namespace) -> int:
    session_id = args.session or uuid.uuid4().hex
    printer = TranscriptPrinter()
    controller = build_controller(
        session_id,
        get_settings(),
        role=args.role,
        sender_id=args.sender_id or f"{args.role}-{uuid.uuid4().hex[:8]}",
        sender_name=args.name,
        welcome_message=args.welcome if args.role == Role.END_USER.value else None,
        on_change=printer,
    )
    _echo(f"Session {session_id}")
    if args.resume_url:
        payload = await asyncio.to_thread(fetch_resume, args.resume_url, session_id)
        await controller.load(payload)
    printer(controller)
    return await run(controller)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    init_logging()
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
