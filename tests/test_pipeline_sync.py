"""End-to-end tests for sync runs over real inbox, store and ledger directories."""

import json
import os
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from chat_stash.config import Config, TypesenseConfig
from chat_stash.models import SyncOperation, SyncStatus
from chat_stash.pipeline.daemon import run_sync
from chat_stash.storage.backend import LocalStorage
from chat_stash.storage.store import ConversationStore
from chat_stash.sync.ledger import SyncLedger
from chat_stash.workflow.orchestrator import EXIT_CONFLICTS, EXIT_HALTED, EXIT_OK, EXIT_STEP_FAILED
from chat_stash.workflow.steps import StepStatus

T0 = 1792198800

BASE = [
    "Help me plan a trip to Lisbon",
    "Sure. How many days do you have?",
    "Five days in May",
    "Here is a five day itinerary for Lisbon",
]


def write_batch(config: Config, machine_id: str, contents: list[str], name: str = "batch.json", mtime: float | None = None) -> Path:
    """Deliver a native batch with one conversation to the inbox."""
    messages = [
        {
            "role": "user" if i % 2 == 0 else "assistant",
            "content": content,
            "timestamp": T0 + i * 60,
            "sequence": i + 1,
        }
        for i, content in enumerate(contents)
    ]
    data = {
        "machine_id": machine_id,
        "window_end": T0 + 3600,
        "conversations": [
            {
                "id": "conv-1",
                "title": "Trip planning",
                "create_time": T0,
                "update_time": T0 + len(contents) * 60,
                "messages": messages,
            }
        ],
    }
    path = config.paths.inbox / machine_id / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def active_records(config: Config) -> list:
    return list(ConversationStore(LocalStorage(config.paths.store)).iter_records())


class TestSyncRun:
    """Tests for complete sync runs."""

    def test_empty_inbox_succeeds(self, test_config: Config) -> None:
        """A run with nothing to do succeeds and creates the working directories."""
        result, exit_code = run_sync(test_config, run_id="r1")

        assert exit_code == EXIT_OK
        assert result.succeeded
        assert test_config.paths.inbox.is_dir()
        assert test_config.paths.archive.is_dir()

    def test_continuation_is_merged(self, test_config: Config) -> None:
        """Machine B's longer capture supersedes machine A's in one run."""
        laptop = write_batch(test_config, "laptop", BASE, mtime=1000)
        desktop = write_batch(test_config, "desktop", BASE + ["Day one", "Day two", "Day three"], mtime=2000)

        result, exit_code = run_sync(test_config, run_id="r1")

        assert exit_code == EXIT_OK
        records = active_records(test_config)
        assert len(records) == 1
        assert len(records[0].conversation.messages) == 7
        assert records[0].conversation.machines == ("desktop", "laptop")

        with SyncLedger(test_config.paths.ledger_db) as ledger:
            operations = [e.operation for e in ledger.list_entries(run_id="r1")]
            assert operations == [SyncOperation.STORE, SyncOperation.MERGE]
            assert {m.machine_id for m in ledger.list_machines()} == {"desktop", "laptop"}

        assert not laptop.exists()
        assert not desktop.exists()
        assert len(list(test_config.paths.archive.rglob("*.json"))) == 2

    def test_conflict_is_flagged_and_batch_kept(self, test_config: Config) -> None:
        """Diverging content exits with the conflicts status and both versions are kept."""
        write_batch(test_config, "laptop", BASE + ["Answer A"], mtime=1000)
        desktop = write_batch(test_config, "desktop", BASE + ["Completely different"], mtime=2000)

        result, exit_code = run_sync(test_config, run_id="r1")

        assert result.succeeded
        assert exit_code == EXIT_CONFLICTS
        records = active_records(test_config)
        assert len(records) == 2
        assert all(r.needs_review for r in records)
        with SyncLedger(test_config.paths.ledger_db) as ledger:
            reviews = ledger.list_entries(status=SyncStatus.NEEDS_REVIEW)
            assert len(reviews) == 1
            assert reviews[0].machine_id == "desktop"
        # The conflicting batch stays in the inbox for the next run
        assert desktop.exists()

        result, exit_code = run_sync(test_config, run_id="r2")
        assert exit_code == EXIT_OK
        assert not desktop.exists()
        assert len(active_records(test_config)) == 2

    def test_redelivered_batch_is_noop(self, test_config: Config) -> None:
        """Delivering the same batch again changes nothing."""
        write_batch(test_config, "laptop", BASE)
        run_sync(test_config, run_id="r1")
        write_batch(test_config, "laptop", BASE)

        result, exit_code = run_sync(test_config, run_id="r2")

        assert exit_code == EXIT_OK
        assert len(active_records(test_config)) == 1
        with SyncLedger(test_config.paths.ledger_db) as ledger:
            assert ledger.list_entries(run_id="r2") == []

    def test_malformed_batch_halts_with_cleanup(self, test_config: Config) -> None:
        """An unreadable batch halts the run but teardown still runs."""
        bad = test_config.paths.inbox / "laptop" / "bad.json"
        bad.parent.mkdir(parents=True)
        bad.write_text("{not json")

        result, exit_code = run_sync(test_config, run_id="r1")

        assert exit_code == EXIT_HALTED
        assert result.halted_by == "load_batches"
        assert result.step("load_batches").attempts == 1
        assert result.step("reconcile").status == StepStatus.SKIPPED
        assert result.step("cleanup").status == StepStatus.SUCCEEDED
        assert bad.exists()

    def test_custom_workflow_file(self, test_config: Config, tmp_path: Path) -> None:
        """A workflow file replaces the built-in step table."""
        workflow = tmp_path / "wf.yaml"
        workflow.write_text("steps:\n  - name: check\n    action: environment_check\n")

        result, exit_code = run_sync(test_config, workflow_path=workflow)

        assert exit_code == EXIT_OK
        assert [s.name for s in result.steps] == ["check"]


class TestIndexUpdate:
    """Tests for the index step within a run."""

    @pytest.fixture
    def indexed_config(self, test_config: Config) -> Config:
        """Provide a config with Typesense indexing enabled."""
        return replace(test_config, typesense=TypesenseConfig(enabled=True))

    def test_indexes_active_and_removes_superseded(self, indexed_config: Config) -> None:
        """Active versions are upserted and superseded ones deleted."""
        with patch("chat_stash.pipeline.actions.TypesenseIndexer") as mock_cls:
            indexer = MagicMock()
            indexer.upsert_conversations.return_value = {"success": 1, "failed": 0}
            indexer.delete_conversations.return_value = 1
            mock_cls.return_value = indexer

            write_batch(indexed_config, "laptop", BASE)
            run_sync(indexed_config)
            old_id = active_records(indexed_config)[0].id
            indexer.reset_mock()

            write_batch(indexed_config, "desktop", BASE + ["More"])
            result, exit_code = run_sync(indexed_config)

        assert exit_code == EXIT_OK
        indexer.ensure_collection.assert_called_once()
        upserted = indexer.upsert_conversations.call_args[0][0]
        assert [c.id for c in upserted] == [r.conversation.id for r in active_records(indexed_config)]
        indexer.delete_conversations.assert_called_once_with([old_id])

    def test_index_failure_does_not_halt(self, indexed_config: Config, tmp_path: Path) -> None:
        """Indexing failures are reported but later steps still run."""
        workflow = tmp_path / "wf.yaml"
        workflow.write_text(
            """
steps:
  - name: load_batches
  - name: fingerprint
  - name: reconcile
  - name: update_index
    on_failure: continue
  - name: archive_batches
"""
        )
        batch = write_batch(indexed_config, "laptop", BASE)

        with patch("chat_stash.pipeline.actions.TypesenseIndexer") as mock_cls:
            mock_cls.return_value.upsert_conversations.return_value = {"success": 0, "failed": 1}
            mock_cls.return_value.delete_conversations.return_value = 0
            result, exit_code = run_sync(indexed_config, workflow_path=workflow)

        assert exit_code == EXIT_STEP_FAILED
        assert result.step("update_index").status == StepStatus.FAILED
        assert result.step("archive_batches").status == StepStatus.SUCCEEDED
        assert not batch.exists()
