#!/usr/bin/env python3
"""
Move emails from the failed queue back onto the email queue.

Messages land in the failed queue after a permanent SMTP failure or once
they exhaust MAX_DELIVERY_ATTEMPTS. Replayed messages start again at
attempt 1. Fix the underlying problem (credentials, SMTP relay, recipient
data) before replaying, or the messages will simply fail again.
"""
import sys
import os
import argparse
import logging

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from stronghold.notifications.broker import replay_failed_messages
from stronghold.notifications.config import get_notification_settings


def main():
    parser = argparse.ArgumentParser(
        description='Replay emails from the failed queue',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Replay everything in the failed queue
  python replay_failed_emails.py

  # Replay at most 10 messages
  python replay_failed_emails.py --limit 10
        """
    )

    parser.add_argument(
        '--limit',
        type=int,
        help='Maximum number of messages to move (default: all)',
        default=None
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = get_notification_settings()
    print(f"Replaying from '{settings.EMAIL_FAILED_QUEUE}' to '{settings.EMAIL_QUEUE}'")
    try:
        moved = replay_failed_messages(settings, limit=args.limit)
    except Exception as e:
        print(f"❌ Replay failed: {e}")
        return 1

    print(f"✅ Moved {moved} message(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
