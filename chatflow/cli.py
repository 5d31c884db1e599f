"""
Command-line interface for chatflow.

Usage:
    chatflow validate flows/support.json
    chatflow simulate flows/support.json --channel whatsapp
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from chatflow.config import get_log_format, get_log_level
from chatflow.errors import FlowDefinitionError
from chatflow.graph.edge import FlowSpec
from chatflow.observability import configure_logging

SIMULATOR_CHANNEL_ID = "console"


def _load_flows(path: Path) -> list[FlowSpec]:
    """Parse one flow record or a list of them; flows without an id take the file name."""
    data = json.loads(path.read_text(encoding="utf-8"))
    records = data if isinstance(data, list) else [data]
    flows = []
    for index, record in enumerate(records):
        record = dict(record)
        record.setdefault("id", path.stem if len(records) == 1 else f"{path.stem}-{index}")
        flows.append(FlowSpec.from_record(record))
    return flows


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate flow definitions."""
    try:
        flows = _load_flows(Path(args.flow_file))
    except (OSError, json.JSONDecodeError, FlowDefinitionError) as e:
        print(f"✗ Could not load {args.flow_file}: {e}", file=sys.stderr)
        return 1

    failed = False
    for flow in flows:
        errors = flow.validate()
        if errors:
            failed = True
            print(f"✗ Flow '{flow.name or flow.id}' has {len(errors)} problem(s):")
            for error in errors:
                print(f"   • {error}")
        else:
            print(
                f"✓ Flow '{flow.name or flow.id}' is valid "
                f"({len(flow.nodes)} nodes, {len(flow.edges)} edges)"
            )
    return 1 if failed else 0


class ConsoleDispatcher:
    """Prints outbound messages to the terminal."""

    async def send_message(
        self, channel_connection, conversation, contact, content: str, **options: Any
    ) -> None:
        print(f"bot> {content}")

    async def send_media(
        self, channel_connection, conversation, contact, media_type, media_url, caption=""
    ) -> None:
        suffix = f" {caption}" if caption else ""
        print(f"bot> [{media_type}] {media_url}{suffix}")


async def _simulate(args: argparse.Namespace) -> int:
    from chatflow.runtime.engine import FlowEngine
    from chatflow.schemas.messaging import (
        ChannelConnection,
        Contact,
        Conversation,
        InboundMessage,
    )
    from chatflow.storage.flow_provider import InMemoryFlowProvider
    from chatflow.storage.session_store import InMemorySessionStore

    provider = InMemoryFlowProvider()
    for flow in _load_flows(Path(args.flow_file)):
        provider.add_flow(flow, channels=[SIMULATOR_CHANNEL_ID])

    engine = FlowEngine(InMemorySessionStore(), provider, ConsoleDispatcher())
    engine.start()

    connection = ChannelConnection(id=SIMULATOR_CHANNEL_ID, channel_type=args.channel)
    contact = Contact(id="console-contact", name=args.contact_name)
    conversation = Conversation(
        id="console-conversation", contact_id=contact.id, channel_type=args.channel
    )

    print("Type messages for the flow; /quit to exit.")
    turn = 0
    try:
        while True:
            try:
                text = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break
            if text.strip() == "/quit":
                break
            turn += 1
            message = InboundMessage(
                id=f"console-{turn}", conversation_id=conversation.id, content=text
            )
            result = await engine.process_message(message, conversation, contact, connection)
            if not result.handled:
                print(f"   (not handled: {result.reason})")
    finally:
        await engine.stop()
    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    """Chat with a flow in the terminal."""
    try:
        return asyncio.run(_simulate(args))
    except (OSError, json.JSONDecodeError, FlowDefinitionError) as e:
        print(f"✗ Could not load {args.flow_file}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0


def main():
    parser = argparse.ArgumentParser(
        prog="chatflow",
        description="chatflow - Run conversational flows",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: configuration file, else INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a flow definition")
    validate_parser.add_argument("flow_file", help="Path to a flow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    simulate_parser = subparsers.add_parser(
        "simulate", help="Run a flow interactively in the terminal"
    )
    simulate_parser.add_argument("flow_file", help="Path to a flow JSON file")
    simulate_parser.add_argument(
        "--channel",
        default="whatsapp",
        help="Channel type the simulated conversation uses (default: whatsapp)",
    )
    simulate_parser.add_argument(
        "--contact-name",
        default="Console User",
        help="Name of the simulated contact",
    )
    simulate_parser.set_defaults(func=cmd_simulate)

    args = parser.parse_args()
    configure_logging(level=args.log_level or get_log_level(), format=get_log_format())

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
