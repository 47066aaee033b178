"""Тесты in-memory хранилища: create-if-absent, копии моделей, сортировка."""

from __future__ import annotations

from conftest import make_stored_case
from qaboard.models.common import AnalysisStatus, RunStatus, RunType
from qaboard.models.manual import ManualTestCase, ManualTestExecution, ManualTestRun
from qaboard.models.manual import TestSuite as Suite
from qaboard.storage.base import IdGenerator, ManualTestStore, SequentialIdGenerator
from qaboard.storage.base import TestRunStore as RunStore
from qaboard.storage.memory import InMemoryStore


def test_memory_store_implements_protocol(store) -> None:
    assert isinstance(store, RunStore)
    assert isinstance(SequentialIdGenerator(), IdGenerator)


def test_sequential_ids_per_entity() -> None:
    ids = SequentialIdGenerator()

    assert [ids.next_id("test_run"), ids.next_id("test_run")] == [1, 2]
    assert ids.next_id("test_case") == 1


def test_custom_id_generator_is_used() -> None:
    class _FromHundred:
        def __init__(self) -> None:
            self._next = 100

        def next_id(self, entity: str) -> int:
            self._next += 1
            return self._next

    store = InMemoryStore(id_generator=_FromHundred())

    run = store.create_test_run(name="r", run_type=RunType.AUTOMATED, status=RunStatus.RUNNING)

    assert run.id == 101


def test_add_test_case_is_create_if_absent(store) -> None:
    first, created = store.add_test_case(make_stored_case(case_key="k"))
    second, created_again = store.add_test_case(make_stored_case(case_key="k", name="other"))

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert second.name == "test_example"
    assert len(store.list_test_cases()) == 1


def test_same_key_in_different_runs_is_distinct(store) -> None:
    store.add_test_case(make_stored_case(test_run_id=1, case_key="k"))
    store.add_test_case(make_stored_case(test_run_id=2, case_key="k"))

    assert len(store.list_test_cases(1)) == 1
    assert len(store.list_test_cases(2)) == 1
    assert len(store.list_test_cases()) == 2


def test_returned_models_are_copies(store) -> None:
    run = store.create_test_run(name="r", run_type=RunType.AUTOMATED, status=RunStatus.RUNNING)

    run.total_tests = 99

    assert store.get_test_run(run.id).total_tests == 0


def test_update_test_run_and_unknown_run(store) -> None:
    run = store.create_test_run(name="r", run_type=RunType.MANUAL, status=RunStatus.PENDING)

    updated = store.update_test_run(run.id, status=RunStatus.RUNNING, total_tests=3)

    assert updated.status is RunStatus.RUNNING
    assert updated.total_tests == 3
    assert store.update_test_run(404, status=RunStatus.FAILED) is None


def test_runs_listed_newest_first(store) -> None:
    for name in ("first", "second", "third"):
        store.create_test_run(name=name, run_type=RunType.AUTOMATED, status=RunStatus.RUNNING)

    assert [r.name for r in store.list_test_runs()] == ["third", "second", "first"]


def test_failure_analysis_create_if_absent(store) -> None:
    case, _ = store.add_test_case(make_stored_case())

    first, created = store.create_failure_analysis_if_absent(case.id)
    second, created_again = store.create_failure_analysis_if_absent(case.id)

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert first.status is AnalysisStatus.NEW
    assert store.get_failure_analysis_by_case(case.id).id == first.id
    assert len(store.list_failure_analyses()) == 1


def test_update_failure_analysis_refreshes_updated_at(store) -> None:
    case, _ = store.add_test_case(make_stored_case())
    analysis, _ = store.create_failure_analysis_if_absent(case.id)

    updated = store.update_failure_analysis(
        analysis.id, status=AnalysisStatus.RESOLVED, resolution="fixed in #12",
    )

    assert updated.status is AnalysisStatus.RESOLVED
    assert updated.resolution == "fixed in #12"
    assert updated.updated_at >= analysis.updated_at
    assert store.update_failure_analysis(999, status=AnalysisStatus.NEW) is None


def test_update_attachments(store) -> None:
    case, _ = store.add_test_case(make_stored_case())

    updated = store.update_test_case_attachments(case.id, ["a.png"])

    assert updated.attachments == ["a.png"]
    assert store.update_test_case_attachments(999, ["x"]) is None


# ---------------------------------------------------------------------------
# Ручное тестирование
# ---------------------------------------------------------------------------


def test_memory_store_implements_manual_protocol(store) -> None:
    assert isinstance(store, ManualTestStore)


def test_delete_suite_moves_children_and_cases_to_root(store) -> None:
    parent = store.create_test_suite(Suite(id=0, name="UI"))
    child = store.create_test_suite(Suite(id=0, name="Login", parent_id=parent.id))
    case = store.create_manual_case(
        ManualTestCase(id=0, title="Open form", content="1. open", test_suite_id=parent.id),
    )

    assert store.delete_test_suite(parent.id) is True
    assert store.delete_test_suite(parent.id) is False

    assert store.get_test_suite(child.id).parent_id is None
    assert store.get_manual_case(case.id).test_suite_id is None
    assert [s.id for s in store.list_test_suites()] == [child.id]


def test_delete_manual_case_removes_its_executions(store) -> None:
    run = store.create_manual_run(ManualTestRun(id=0, name="Regression"))
    kept = store.create_manual_case(ManualTestCase(id=0, title="a", content="x"))
    dropped = store.create_manual_case(ManualTestCase(id=0, title="b", content="y"))
    store.create_manual_execution(
        ManualTestExecution(id=0, test_run_id=run.id, test_case_id=kept.id),
    )
    store.create_manual_execution(
        ManualTestExecution(id=0, test_run_id=run.id, test_case_id=dropped.id),
    )

    assert store.delete_manual_case(dropped.id) is True

    assert [e.test_case_id for e in store.list_manual_executions(run.id)] == [kept.id]
    assert store.delete_manual_case(dropped.id) is False


def test_manual_case_filter_by_suite_and_copies(store) -> None:
    suite = store.create_test_suite(Suite(id=0, name="API"))
    in_suite = store.create_manual_case(
        ManualTestCase(id=0, title="a", content="x", tags=["smoke"], test_suite_id=suite.id),
    )
    store.create_manual_case(ManualTestCase(id=0, title="b", content="y"))

    listed = store.list_manual_cases(suite.id)
    listed[0].tags.append("mutated")

    assert [c.id for c in listed] == [in_suite.id]
    assert store.get_manual_case(in_suite.id).tags == ["smoke"]
    assert len(store.list_manual_cases()) == 2


def test_update_unknown_manual_records_returns_none(store) -> None:
    assert store.update_test_suite(1, name="x") is None
    assert store.update_manual_case(1, title="x") is None
    assert store.update_manual_run(1, name="x") is None
    assert store.update_manual_execution(1, notes="x") is None
