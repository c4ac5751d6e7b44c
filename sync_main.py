#!/usr/bin/env python3
"""
Real-time conversation sync with console notifications

Connects to the Maathai backend as the given user, keeps the conversation
list in sync over the realtime channel and prints a line whenever a new
message or notification arrives.

Usage:
    python sync_main.py --viewer-id <uuid> --access-token <jwt>
    python sync_main.py --once          # reconcile once and print the inbox
    python sync_main.py --demo          # run against the in-memory backend
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Dict, Optional

from maathai_sync.gateway import InMemoryGateway, SupabaseGateway
from maathai_sync.messaging import AuthenticationError, MessagingError, load_config
from maathai_sync.notifications import NotificationFeed
from maathai_sync.presentation import PresentationAdapter, ViewState
from maathai_sync.sync import ConversationStore, SyncController
from maathai_sync.utils.load_env import load_env
from maathai_sync.utils.logger_config import setup_logging

logger = logging.getLogger(__name__)


def format_message_content(content: Optional[str], max_length: int = 80) -> str:
    """Format message content for display"""
    if not content:
        return "[No text content]"

    content = content.strip()
    if len(content) > max_length:
        content = content[:max_length - 3] + "..."

    return content


class ConsoleReporter:
    """Prints inbox changes as they show up in the view state."""

    def __init__(self, viewer_id: str):
        self.viewer_id = viewer_id
        self._last_seen: Dict[str, Optional[str]] = {}
        self._notification_badge = 0
        self._connection_state = None
        self._notices_seen = 0

    def __call__(self, views: ViewState) -> None:
        if views.connection_state != self._connection_state:
            self._connection_state = views.connection_state
            print(f"🔌 Realtime: {views.connection_state}")

        for summary in views.conversations:
            previous = self._last_seen.get(summary.conversation_id)
            preview = summary.last_message_preview
            self._last_seen[summary.conversation_id] = preview
            if preview is None or preview == previous:
                continue
            if summary.last_message_sender_id == self.viewer_id:
                continue
            print(f"\n📥 {summary.title}: {format_message_content(preview)}")
            print(f"   Unread: {summary.unread_count} (total {views.unread_badge})")

        if views.notification_badge > self._notification_badge and views.notifications:
            latest = views.notifications[0]
            print(f"\n🔔 {latest.title}: {format_message_content(latest.message)}")
        self._notification_badge = views.notification_badge

        for notice in views.notices[self._notices_seen:]:
            print(f"ℹ️  {notice}")
        self._notices_seen = len(views.notices)


def print_inbox(views: ViewState):
    """Print the conversation list"""
    print("\n" + "=" * 50)
    print("INBOX")
    print("=" * 50)
    if not views.conversations:
        print("📭 No conversations")
    for summary in views.conversations:
        when = summary.last_activity_at.strftime("%Y-%m-%d %H:%M") if summary.last_activity_at else "-"
        unread = f" ({summary.unread_count} unread)" if summary.unread_count else ""
        print(f"  {summary.title}{unread} - {when}")
        if summary.last_message_preview:
            print(f"     💬 {format_message_content(summary.last_message_preview)}")
    print(f"\nUnread messages: {views.unread_badge}")
    print(f"Unread notifications: {views.notification_badge}")
    print("=" * 50)


def build_demo_gateway(viewer_id: str) -> InMemoryGateway:
    """Seed an in-memory backend with a couple of conversations"""
    gateway = InMemoryGateway(viewer_id)
    gateway.add_profile("amina", online=True)
    gateway.add_profile("otieno")
    direct = gateway.add_conversation([viewer_id, "amina"])
    group = gateway.add_conversation([viewer_id, "amina", "otieno"], is_group=True, name="Tree planting")
    gateway.insert_message(direct, "amina", "Habari! Are you coming on Saturday?", publish=False)
    gateway.insert_message(group, "otieno", "Seedlings arrive Friday morning", publish=False)
    gateway.add_notification("Welcome", "Your account is ready", kind="system", publish=False)
    return gateway


async def stop_task(task: asyncio.Task) -> None:
    """Cancel a helper task and log anything it raised."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Background task failed")


async def run(args) -> int:
    config = load_config()
    viewer_id = args.viewer_id

    if args.demo:
        gateway = build_demo_gateway(viewer_id)
    else:
        try:
            gateway = SupabaseGateway(viewer_id, args.access_token, config_override=config)
        except MessagingError as e:
            print(f"❌ {e}")
            return 1

    store = ConversationStore(viewer_id)
    feed = NotificationFeed(limit=config.notification_page_size)
    controller = SyncController(gateway, store, config_override=config, notifications=feed)
    adapter = PresentationAdapter(store, gateway, controller=controller, notifications=feed, config_override=config)

    peer_task = None
    try:
        if args.once:
            await controller.reconcile()
            print_inbox(adapter.views)
            return 0

        adapter.add_view_listener(ConsoleReporter(viewer_id))

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        task = controller.start()
        print("\n🚀 Listening for new messages...")
        print("   Press Ctrl+C to stop\n")

        if args.demo:
            async def simulate_peer():
                await asyncio.sleep(2)
                direct = next((c.conversation_id for c in store.get_conversations() if not c.is_group), None)
                if direct is not None:
                    gateway.insert_message(direct, "amina", "Bring gloves, the soil is rocky")
            peer_task = asyncio.create_task(simulate_peer())

        stopper = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if task in done:
            task.result()
        print("\n🛑 Stopping sync...")
        await controller.stop()
        return 0
    except AuthenticationError as e:
        print(f"❌ Session rejected: {e}")
        return 2
    except MessagingError as e:
        print(f"❌ Error: {e}")
        logger.error("Error in main: %s", e)
        return 1
    finally:
        if peer_task is not None:
            await stop_task(peer_task)
        await gateway.aclose()
        print("👋 Sync stopped. Goodbye!")


def main():
    load_env()

    parser = argparse.ArgumentParser(description="Maathai real-time conversation sync")
    parser.add_argument("--viewer-id", default=os.getenv("MAATHAI_VIEWER_ID"),
                        help="Signed-in user id (default: $MAATHAI_VIEWER_ID)")
    parser.add_argument("--access-token", default=os.getenv("MAATHAI_ACCESS_TOKEN"),
                        help="Session JWT (default: $MAATHAI_ACCESS_TOKEN)")
    parser.add_argument("--once", action="store_true", help="Reconcile once, print the inbox and exit")
    parser.add_argument("--demo", action="store_true", help="Use the in-memory backend")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-dir", default="logs", help="Directory for log files")
    args = parser.parse_args()

    if args.demo and not args.viewer_id:
        args.viewer_id = "demo-user"
    if not args.viewer_id or (not args.demo and not args.access_token):
        parser.error("--viewer-id and --access-token are required unless --demo is used")

    setup_logging(log_level=getattr(logging, args.log_level), log_dir=args.log_dir)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
