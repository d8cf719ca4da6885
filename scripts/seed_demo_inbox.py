#!/usr/bin/env python3
"""Seed demo contacts, conversations and messages into the configured inbox store."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from inbox_web.config import get_settings
from inbox_web.inbound import InboundMessage
from inbox_web.inbox_store import ContactConflictError, InboxRepository, UserConflictError, create_inbox_repository

# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------
DEMO_USER_NAME = "Demo Agent"
DEMO_USER_EMAIL = "agent@example.com"


@dataclass(frozen=True)
class DemoMessage:
    minutes_ago: int
    direction: str
    content: str


@dataclass(frozen=True)
class DemoThread:
    name: str
    phone: str | None
    email: str | None
    channel: str
    assigned: bool
    state: str
    messages: tuple[DemoMessage, ...]


DEMO_THREADS = (
    DemoThread(
        name="Sarah Johnson",
        phone="+14155238886",
        email="sarah.johnson@example.com",
        channel="SMS",
        assigned=False,
        state="OPEN",
        messages=(
            DemoMessage(60, "INBOUND", "Hi! I have a question about your product pricing."),
            DemoMessage(45, "OUTBOUND", "Hello Sarah! I'd be happy to help. What are you looking for?"),
            DemoMessage(30, "INBOUND", "I'm interested in the enterprise plan. Can you send me more details?"),
        ),
    ),
    DemoThread(
        name="Mike Chen",
        phone="+14155552222",
        email="mike.chen@example.com",
        channel="WHATSAPP",
        assigned=True,
        state="OPEN",
        messages=(
            DemoMessage(180, "INBOUND", "Hey! Thanks for reaching out. I'd like to schedule a demo."),
            DemoMessage(120, "OUTBOUND", "Great! Does Thursday at 2pm work for you?"),
        ),
    ),
    DemoThread(
        name="Emily Rodriguez",
        phone="+14155553333",
        email="emily.rodriguez@example.com",
        channel="EMAIL",
        assigned=True,
        state="WAITING",
        messages=(
            DemoMessage(300, "INBOUND", "Could you resend the invoice for last month?"),
            DemoMessage(290, "OUTBOUND", "Sure, I've asked billing to resend it. I'll follow up once it's out."),
        ),
    ),
    DemoThread(
        name="Alex Thompson",
        phone=None,
        email="alex.thompson@example.com",
        channel="EMAIL",
        assigned=False,
        state="CLOSED",
        messages=(
            DemoMessage(1440, "INBOUND", "Thanks for the help yesterday, all sorted now."),
            DemoMessage(1430, "OUTBOUND", "Glad to hear it! Closing this out."),
        ),
    ),
    DemoThread(
        name="Jessica Martinez",
        phone="+14155554444",
        email="jessica.martinez@example.com",
        channel="SMS",
        assigned=False,
        state="OPEN",
        messages=(DemoMessage(2880, "INBOUND", "Is the spring promotion still running?"),),
    ),
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed demo inbox data into INBOX_STORE_BACKEND/DATABASE_URL.")
    parser.add_argument("--reset", action="store_true", help="Delete all inbox rows before seeding")
    return parser.parse_args()


def _ensure_demo_user(repository: InboxRepository) -> str:
    try:
        return repository.create_user(name=DEMO_USER_NAME, email=DEMO_USER_EMAIL, role="agent").user_id
    except UserConflictError:
        existing = next(user for user in repository.list_users() if user.email == DEMO_USER_EMAIL)
        return existing.user_id


def seed_thread(repository: InboxRepository, thread: DemoThread, *, user_id: str, now: datetime) -> int | None:
    """Seed one thread and return its message count, or None when the contact is already present."""
    try:
        contact = repository.create_contact(name=thread.name, email=thread.email, phone=thread.phone)
    except ContactConflictError:
        return None
    for index, message in enumerate(thread.messages):
        occurred_at = now - timedelta(minutes=message.minutes_ago)
        if message.direction == "INBOUND":
            repository.ingest_inbound(
                InboundMessage(
                    channel=thread.channel,  # type: ignore[arg-type]
                    sender_phone=contact.phone if thread.channel != "EMAIL" else None,
                    sender_email=contact.email if thread.channel == "EMAIL" else None,
                    sender_name=thread.name,
                    body_text=message.content,
                    provider_message_id=f"seed-{contact.contact_id}-{index}",
                    provider_status=None,
                ),
                status="DELIVERED",
                occurred_at=occurred_at,
            )
        else:
            repository.record_outbound(
                contact_id=contact.contact_id,
                channel=thread.channel,  # type: ignore[arg-type]
                content=message.content,
                external_id=f"seed-{contact.contact_id}-{index}",
                status="DELIVERED",
                user_id=user_id,
                occurred_at=occurred_at,
            )

    conversation = repository.get_or_create_conversation(contact.contact_id)
    if thread.assigned:
        repository.assign_conversation(conversation.conversation_id, user_id=user_id)
    if thread.state != "OPEN":
        repository.set_conversation_state(conversation.conversation_id, state=thread.state)  # type: ignore[arg-type]
    return len(thread.messages)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main() -> None:
    args = parse_args()
    settings = get_settings()
    repository = create_inbox_repository(backend=settings.inbox_store_backend, database_url=settings.database_url)
    if settings.inbox_store_backend == "inmemory":
        print("WARN: INBOX_STORE_BACKEND=inmemory, seeded data is discarded when this script exits.")
    if args.reset:
        repository.reset()

    print("=" * 60)
    print("Seeding demo inbox")
    print("=" * 60)

    user_id = _ensure_demo_user(repository)
    print(f"  Demo user: {DEMO_USER_EMAIL} ({user_id})")

    now = datetime.now(timezone.utc)
    total_messages = 0
    seeded = 0
    for thread in DEMO_THREADS:
        count = seed_thread(repository, thread, user_id=user_id, now=now)
        if count is None:
            print(f"  {thread.name:20s} already present, skipped (use --reset to reseed)")
            continue
        seeded += 1
        total_messages += count
        print(f"  {thread.name:20s} {thread.channel:9s} {thread.state:8s} {count} messages")

    print()
    print(f"  Contacts: {seeded}")
    print(f"  Messages: {total_messages}")
    print("=" * 60)


if __name__ == "__main__":
    main()
