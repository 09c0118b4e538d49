"""Shared fixtures for chat-stash tests."""

import time
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest

from chat_stash.config import Config, PathsConfig
from chat_stash.models import Conversation, Message
from chat_stash.storage.backend import LocalStorage
from chat_stash.storage.store import ConversationStore
from chat_stash.sync.fingerprint import apply_fingerprint
from chat_stash.sync.ledger import SyncLedger
from chat_stash.sync.resolver import ConflictResolver
from chat_stash.workflow.context import RunContext

# 2026-10-17 01:00:00 UTC
T0 = 1792198800

ConversationFactory = Callable[..., Conversation]


def build_conversation(
    contents: Sequence[str],
    machine_id: str = "laptop",
    conversation_id: str = "conv-1",
    title: str = "Trip planning",
    created_at: int = T0,
    updated_at: int | None = None,
    start_sequence: int = 1,
    fingerprinted: bool = True,
) -> Conversation:
    """Alternating user/assistant messages one minute apart."""
    messages = tuple(
        Message(
            role="user" if i % 2 == 0 else "assistant",
            content=content,
            timestamp=created_at + i * 60,
            sequence=start_sequence + i,
        )
        for i, content in enumerate(contents)
    )
    conversation = Conversation(
        conversation_id=conversation_id,
        machine_id=machine_id,
        title=title,
        created_at=created_at,
        updated_at=updated_at if updated_at is not None else (messages[-1].timestamp if messages else created_at),
        messages=messages,
        raw={"id": conversation_id},
    )
    return apply_fingerprint(conversation) if fingerprinted else conversation


@pytest.fixture
def make_conversation() -> ConversationFactory:
    """Provide a conversation factory."""
    return build_conversation


@pytest.fixture
def base_contents() -> list[str]:
    """Four messages of a short exchange."""
    return [
        "Help me plan a trip to Lisbon",
        "Sure. How many days do you have?",
        "Five days in May",
        "Here is a five day itinerary for Lisbon",
    ]


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    """Provide a LocalStorage rooted in a temp directory."""
    return LocalStorage(tmp_path / "store")


@pytest.fixture
def store(storage: LocalStorage) -> ConversationStore:
    """Provide a ConversationStore over temp storage."""
    return ConversationStore(storage)


@pytest.fixture
def ledger(tmp_path: Path) -> Iterator[SyncLedger]:
    """Provide a SyncLedger with temporary database."""
    with SyncLedger(tmp_path / "state" / "ledger.db") as ledger:
        yield ledger


@pytest.fixture
def resolver(store: ConversationStore, ledger: SyncLedger) -> ConflictResolver:
    """Provide a ConflictResolver with a short lock timeout."""
    return ConflictResolver(store, ledger, lock_timeout=5.0)


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with every path under tmp_path."""
    return Config(
        machine_id="test-machine",
        paths=PathsConfig(
            inbox=tmp_path / "inbox",
            archive=tmp_path / "archive",
            store=tmp_path / "store",
            ledger_db=tmp_path / "state" / "ledger.db",
            log_dir=tmp_path / "logs",
        ),
    )


@pytest.fixture
def run_context(
    test_config: Config,
    store: ConversationStore,
    ledger: SyncLedger,
    resolver: ConflictResolver,
) -> RunContext:
    """Provide a RunContext wired to temp services."""
    return RunContext(
        config=test_config,
        run_id="test-run",
        started_at=time.time(),
        store=store,
        ledger=ledger,
        resolver=resolver,
    )
