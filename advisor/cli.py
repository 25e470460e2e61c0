"""
Advisor CLI

Interactive loop for exercising one user's agent locally.

    advisor chat --user-id alice

Commands inside the loop:
    /event <type> <json>   queue an event (e.g. /event gmail {"from": "a@b.com"})
    /cycle                 run one periodic cycle now
    /status                show agent status
    /quit                  exit
"""

import argparse
import asyncio
import json
import logging
import os

from dotenv import load_dotenv

from .agent import WorkerRegistry, build_services
from .common.broadcaster import agent_topic
from .common.config import load_config

logger = logging.getLogger("advisor.cli")


async def _print_notifications(queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        print(f"\n[proactive] {message['title']} -> {message['status']}: {message.get('result') or message.get('error')}")


async def _handle_command(registry: WorkerRegistry, user_id: str, line: str) -> bool:
    """Run a slash command. Returns False when the loop should exit."""
    command, _, rest = line.partition(" ")

    if command == "/quit":
        return False

    if command == "/status":
        print(json.dumps(registry.get_status(user_id), indent=2))
    elif command == "/cycle":
        report = await registry.get_or_create(user_id).run_cycle()
        executed = report.executed.title if report.executed else "nothing"
        outcome = report.outcome.kind.value if report.outcome else "-"
        print(f"Executed: {executed} ({outcome}); events drained: {report.events_drained}; "
              f"tasks created: {len(report.tasks_created)}")
    elif command == "/event":
        event_type, _, payload = rest.strip().partition(" ")
        if not event_type:
            print("Usage: /event <type> <json>")
            return True
        try:
            data = json.loads(payload) if payload.strip() else {}
        except json.JSONDecodeError as e:
            print(f"Invalid JSON payload: {e}")
            return True
        event = registry.handle_event(user_id, event_type, data)
        print(f"Queued {event.type} event {event.id}")
    else:
        print(f"Unknown command: {command}")
    return True


async def chat(user_id: str) -> None:
    config = load_config()
    registry = WorkerRegistry(build_services(config))
    registry.get_or_create(user_id)

    queue = registry.services.broadcaster.subscribe(agent_topic(user_id))
    notifier = asyncio.create_task(_print_notifications(queue))

    print(f"Advisor agent for {user_id}. Type /quit to exit.")
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await _handle_command(registry, user_id, line):
                    break
                continue
            reply = await registry.process_message(user_id, line)
            print(reply.text)
            if reply.error:
                print(f"  ({reply.error.value})")
    finally:
        notifier.cancel()
        registry.services.broadcaster.unsubscribe(agent_topic(user_id), queue)
        await registry.stop_all()


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run a per-user advisor agent interactively.")
    parser.add_argument(
        "--log-level",
        default=os.getenv("ADVISOR_LOG_LEVEL", "WARNING"),
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    chat_parser = subparsers.add_parser("chat", help="Chat with one user's agent.")
    chat_parser.add_argument(
        "--user-id",
        default=os.getenv("ADVISOR_USER_ID", "local"),
        help="User the agent acts for.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "chat":
        asyncio.run(chat(args.user_id))


if __name__ == "__main__":
    main()
