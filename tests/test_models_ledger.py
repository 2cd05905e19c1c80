from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from taskmill.errors import LedgerError
from taskmill.runtime.domain.models import Candidate, LedgerDocument, TaskRecord, slugify
from taskmill.io_utils import FileLock
from taskmill.runtime.storage.events import FileEventRepository
from taskmill.runtime.storage.ledger import FileLedger


def _ledger(tmp_path: Path) -> FileLedger:
    return FileLedger(tmp_path / "ledger.yaml", tmp_path / "ledger.lock", session="mill-test")


def _record(task_id: str, **overrides) -> TaskRecord:  # noqa: ANN003
    values = dict(task_id=task_id, slug=f"task-{task_id}", branch=f"task/{task_id}", worktree=f"/tmp/wt/{task_id}")
    values.update(overrides)
    return TaskRecord(**values)


class TestFileLedger:
    def test_ensure_creates_document_once(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)

        first = ledger.ensure()
        assert ledger.path.exists()
        assert first.session == "mill-test"
        assert first.tasks == {}

        ledger.put(_record("A"))
        second = ledger.ensure()
        assert list(second.tasks) == ["A"]

    def test_put_and_reload_round_trip(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.put(_record("A", phase="awaiting_review", review_ref="17", reservation=6, conflict_domain="Area: ui"))

        reloaded = _ledger(tmp_path).get("A")

        assert reloaded is not None
        assert reloaded.phase == "awaiting_review"
        assert reloaded.review_ref == "17"
        assert reloaded.reservation == 6
        assert reloaded.conflict_domain == "Area: ui"

    def test_snapshots_are_isolated(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.put(_record("A"))

        snapshot = ledger.load()
        snapshot.tasks["A"].phase = "merged"
        snapshot.tasks.pop("A")

        assert ledger.get("A") is not None
        assert ledger.get("A").phase == "selected"

    def test_set_phase_updates_fields(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.put(_record("A", phase="executing"))

        updated = ledger.set_phase("A", "awaiting_review", review_ref="9", status="in_review")

        assert updated is not None
        assert updated.review_ref == "9"
        assert ledger.get("A").status == "in_review"
        assert ledger.set_phase("missing", "merged") is None

    def test_remove_is_idempotent(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.put(_record("A"))

        assert ledger.remove("A") is True
        assert ledger.remove("A") is False
        assert ledger.load().tasks == {}

    def test_update_can_replace_document(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.put(_record("A"))

        written = ledger.update(lambda _doc: LedgerDocument(session="other"))

        assert written.tasks == {}
        assert ledger.load().session == "other"

    def test_invalid_yaml_raises_ledger_error(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.path.write_text("tasks: [unclosed\n", encoding="utf-8")

        with pytest.raises(LedgerError):
            ledger.load()

    def test_non_mapping_raises_ledger_error(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.path.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(LedgerError):
            ledger.load()

    def test_file_is_plain_yaml(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path)
        ledger.put(_record("A", reservation=3))

        raw = yaml.safe_load(ledger.path.read_text(encoding="utf-8"))

        assert raw["session"] == "mill-test"
        assert raw["tasks"]["A"]["reservation"] == 3
        assert not list(tmp_path.glob("*.tmp"))


def test_unknown_phase_is_normalized_to_executing() -> None:
    record = TaskRecord.from_dict({"task_id": "A", "phase": "launching", "reservation": "x"})

    assert record.phase == "executing"
    assert record.reservation is None


def test_ledger_document_helpers() -> None:
    document = LedgerDocument(
        session="s",
        tasks={
            "A": _record("A", phase="executing", conflict_domain="Area: ui", reservation=4),
            "B": _record("B", phase="merged"),
            "C": _record("C", phase="cleaned", conflict_domain="Area: api"),
        },
    )

    assert [record.task_id for record in document.active()] == ["A", "B"]
    assert document.claimed_domains() == {"Area: ui"}
    assert document.reservations() == [4]


def test_ledger_document_from_dict_uses_keys_as_ids() -> None:
    document = LedgerDocument.from_dict({"tasks": {"A": {"slug": "a"}, "B": "garbage"}}, session="fallback")

    assert list(document.tasks) == ["A"]
    assert document.session == "fallback"


class TestCandidateFromDict:
    def test_derives_fields_from_labels_relations_and_description(self) -> None:
        candidate = Candidate.from_dict(
            {
                "identifier": "ENG-1",
                "title": "Rebuild auth",
                "priority": "2",
                "estimate": 5,
                "labels": {"nodes": [{"name": "Area: auth"}, {"name": "Architecture"}]},
                "relations": {"nodes": [{"type": "blocks"}, {"type": "blocks"}, {"type": "blocked"}]},
                "description": "## Objective\nDo it",
                "state": {"name": "Todo"},
            }
        )

        assert candidate.task_id == "ENG-1"
        assert candidate.priority == 2
        assert candidate.estimate == 5.0
        assert candidate.conflict_domain == "Area: auth"
        assert candidate.foundational is True
        assert candidate.blocks_count == 2
        assert candidate.blocked_by_count == 1
        assert candidate.fully_specified is True
        assert candidate.state == "Todo"

    def test_explicit_keys_win(self) -> None:
        candidate = Candidate.from_dict(
            {
                "id": "7",
                "tags": ["Area: ui", "epic"],
                "conflict_domain": "billing",
                "foundational": False,
                "blocked_by_count": 3,
                "priority": "high",
            }
        )

        assert candidate.conflict_domain == "billing"
        assert candidate.foundational is False
        assert candidate.blocked_by_count == 3
        assert candidate.priority == 0
        assert candidate.estimate is None


@pytest.mark.parametrize(
    "title,expected",
    [
        ("Add Login Page", "add-login-page"),
        ("  Fix: crash on /api/v2 ", "fix-crash-on-api-v2"),
        ("!!!", "task"),
        ("x" * 80, "x" * 60),
    ],
)
def test_slugify(title: str, expected: str) -> None:
    assert slugify(title) == expected


def test_event_log_skips_torn_lines_and_filters_newest_last(tmp_path: Path) -> None:
    repo = FileEventRepository(tmp_path / "events.jsonl", tmp_path / "events.lock")
    for index in range(4):
        repo.append(channel="tasks", event_type="task.phase", entity_id="A" if index % 2 else "B", payload={"i": index}, session="s1")
    with (tmp_path / "events.jsonl").open("a", encoding="utf-8") as handle:
        handle.write('{"id": "evt-torn", "type"')

    assert [event["payload"]["i"] for event in repo.list_recent(10, task_id="A")] == [1, 3]
    assert [event["payload"]["i"] for event in repo.list_recent(1, task_id="B")] == [2]
    assert len(repo.list_recent(10)) == 4
    assert repo.list_recent(10, session="s2") == []
    assert repo.list_recent(0) == []


def test_file_lock_can_be_reacquired(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "state" / "x.lock")

    with lock:
        assert (tmp_path / "state" / "x.lock").exists()
    with lock:
        pass


def test_candidate_slug_leads_with_task_id() -> None:
    first = Candidate(task_id="ENG-1", title="Fix flaky test")
    second = Candidate(task_id="ENG-2", title="Fix flaky test")

    assert first.slug == "eng-1-fix-flaky-test"
    assert first.slug != second.slug
    assert Candidate(task_id="ENG-3", title="!!!").slug == "eng-3"
