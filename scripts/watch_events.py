#!/usr/bin/env python3
"""Connect to the messaging namespace and print every inbox push event.

Useful for checking what the server emits while reproducing a sync issue.
"""

import asyncio
import json
import os
import sys
from datetime import datetime
from typing import Any, Optional

from inbox_sync.realtime.channel import CATALOGUE_EVENTS, ChannelStatus, RealtimeChannel


def format_event(event: str, data: Any) -> str:
    stamp = datetime.now().strftime("%H:%M:%S")
    try:
        body = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        body = repr(data)
    return f"[{stamp}] {event}\n{body}"


async def watch(token: str, url: Optional[str] = None, events: Optional[list] = None):
    channel = RealtimeChannel(url=url)
    scope = channel.scope()
    for event in events or CATALOGUE_EVENTS:
        scope.on(event, lambda data, event=event: print(format_event(event, data), flush=True))

    paused = asyncio.Event()

    def on_status(status: ChannelStatus):
        print(f"Channel status: {status.value}", flush=True)
        if status == ChannelStatus.PAUSED:
            paused.set()

    channel.on_status(on_status)

    print(f"Connecting to {channel.url}{channel.namespace} ...")
    await channel.connect(token)
    print("Listening for events (Ctrl+C to stop)")
    print("=" * 60)
    try:
        await paused.wait()
        print("Reconnect attempts exhausted, giving up")
    finally:
        scope.close()
        await channel.disconnect()


def main():
    import argparse

    parser = argparse.ArgumentParser(
        description="Print realtime inbox events for a session token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Watch every event
  python scripts/watch_events.py --token $INBOX_TOKEN

  # Only messages and conversation updates
  python scripts/watch_events.py --event new_message --event conversation_updated
        """
    )
    parser.add_argument(
        "--token",
        default=os.getenv("INBOX_TOKEN"),
        help="Bearer token (defaults to $INBOX_TOKEN)"
    )
    parser.add_argument(
        "--url",
        help="Socket server URL (defaults to SOCKET_URL / API_URL from config)"
    )
    parser.add_argument(
        "--event",
        action="append",
        choices=CATALOGUE_EVENTS,
        help="Event to print; repeat for several (default: all)"
    )
    args = parser.parse_args()

    if not args.token:
        parser.print_help()
        print("\nError: no token given")
        sys.exit(1)

    try:
        asyncio.run(watch(args.token, args.url, args.event))
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()
