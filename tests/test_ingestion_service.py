"""Тесты сервиса загрузки: пакеты, идемпотентность, сверка счётчиков, статусы запуска."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import SAMPLE_REPORT, make_case_xml, make_report, make_submission, make_suite_xml
from qaboard.exceptions import (
    MalformedDocumentError,
    RunClosedError,
    StorageError,
    UnknownRunError,
)
from qaboard.models.common import (
    MAX_DURATION_MS,
    AnalysisStatus,
    CaseStatus,
    RunStatus,
    RunType,
)
from qaboard.services.aggregation import flatten_cases
from qaboard.services.ingestion_service import IngestionService, cases_to_submissions
from qaboard.services.junit_parser import parse_report


def _sample_submissions():
    return cases_to_submissions(flatten_cases(parse_report(SAMPLE_REPORT)))


def _assert_counter_invariant(run) -> None:
    assert run.total_tests == run.passed_tests + run.failed_tests + run.skipped_tests


# ---------------------------------------------------------------------------
# create_run
# ---------------------------------------------------------------------------


def test_create_run_starts_running_with_zero_counters(service, store) -> None:
    run = service.create_run("Nightly", xml_content="<testsuites/>")

    assert run.status is RunStatus.RUNNING
    assert run.type is RunType.AUTOMATED
    assert (run.total_tests, run.passed_tests, run.failed_tests, run.skipped_tests) == (0, 0, 0, 0)
    assert store.get_test_run(run.id).xml_content == "<testsuites/>"


def test_manual_run_does_not_keep_xml(service) -> None:
    run = service.create_run("Manual pass", RunType.MANUAL, xml_content="<x/>")

    assert run.type is RunType.MANUAL
    assert run.xml_content is None


# ---------------------------------------------------------------------------
# ingest_report — полный цикл
# ---------------------------------------------------------------------------


def test_ingest_sample_report(service, store) -> None:
    result = service.ingest_report(SAMPLE_REPORT, name="Regression")

    run = result.run
    assert run.name == "Regression"
    assert run.status is RunStatus.COMPLETED
    assert run.total_tests == 15
    assert run.passed_tests == 11
    assert run.failed_tests == 4
    assert run.skipped_tests == 0
    _assert_counter_invariant(run)

    analyses = store.list_failure_analyses()
    assert len(analyses) == 4
    assert {a.status for a in analyses} == {AnalysisStatus.NEW}

    assert result.summary.total_tests == 15
    assert len(result.batches) == 1


def test_ingest_stores_raw_xml_and_sums_durations(service, store) -> None:
    result = service.ingest_report(SAMPLE_REPORT)

    stored = store.get_test_run(result.run.id)
    assert stored.xml_content == SAMPLE_REPORT
    assert stored.name.startswith("Test Run ")
    # 1234 + 500 + 750 + 250 + 300 + 1000 + 1000 + 2000 + 500 + 1000 + 5 * 600
    assert stored.duration == 11534


def test_ingest_error_case_stored_as_failed(service, store) -> None:
    result = service.ingest_report(SAMPLE_REPORT)

    checkout = next(
        c for c in store.list_test_cases(result.run.id) if c.name == "test_checkout"
    )
    assert checkout.status is CaseStatus.FAILED
    assert checkout.error_message == "ConnectionRefusedError"
    assert checkout.stack_trace == "connect ECONNREFUSED 127.0.0.1:5432"


def test_ingest_in_several_batches_only_last_is_final(service) -> None:
    result = service.ingest_report(SAMPLE_REPORT, batch_size=4)

    assert len(result.batches) == 4
    assert [b.run_status for b in result.batches] == [
        RunStatus.RUNNING,
        RunStatus.RUNNING,
        RunStatus.RUNNING,
        RunStatus.COMPLETED,
    ]
    assert [b.total_processed for b in result.batches] == [4, 8, 12, 15]
    assert result.run.total_tests == 15


def test_ingest_malformed_xml_creates_nothing(service, store) -> None:
    with pytest.raises(MalformedDocumentError):
        service.ingest_report("<testsuites><testsuite>")

    assert store.list_test_runs() == []
    assert store.list_test_cases() == []


def test_ingest_empty_report_completes_with_zero_counters(service) -> None:
    result = service.ingest_report("<testsuites/>")

    assert result.run.status is RunStatus.COMPLETED
    assert result.run.total_tests == 0
    assert len(result.batches) == 1


def test_ingest_marks_run_failed_when_storage_breaks(service, store, monkeypatch) -> None:
    original = store.add_test_case
    calls = {"n": 0}

    def flaky_add(case):
        calls["n"] += 1
        if calls["n"] > 5:
            raise StorageError("connection lost")
        return original(case)

    monkeypatch.setattr(store, "add_test_case", flaky_add)

    with pytest.raises(StorageError):
        service.ingest_report(SAMPLE_REPORT, batch_size=5)

    [run] = store.list_test_runs()
    assert run.status is RunStatus.FAILED
    assert run.total_tests == 5
    _assert_counter_invariant(run)


def test_ingest_keeps_original_error_when_marking_failed_breaks(
    service, store, monkeypatch,
) -> None:
    def broken_add(case):
        raise StorageError("connection lost")

    original_update = store.update_test_run

    def update_without_failed(run_id, **changes):
        if changes.get("status") is RunStatus.FAILED:
            raise StorageError("connection still lost")
        return original_update(run_id, **changes)

    monkeypatch.setattr(store, "add_test_case", broken_add)
    monkeypatch.setattr(store, "update_test_run", update_without_failed)

    with pytest.raises(StorageError, match="^connection lost$"):
        service.ingest_report(SAMPLE_REPORT)

    [run] = store.list_test_runs()
    assert run.status is RunStatus.RUNNING


def test_ingest_marks_failed_under_run_lock(service, store, monkeypatch) -> None:
    held: list[bool] = []
    original_update = store.update_test_run

    def broken_add(case):
        raise StorageError("connection lost")

    def recording_update(run_id, **changes):
        if changes.get("status") is RunStatus.FAILED:
            held.append(service._locks[run_id].locked())
        return original_update(run_id, **changes)

    monkeypatch.setattr(store, "add_test_case", broken_add)
    monkeypatch.setattr(store, "update_test_run", recording_update)

    with pytest.raises(StorageError):
        service.ingest_report(SAMPLE_REPORT)

    assert held == [True]
    assert store.list_test_runs()[0].status is RunStatus.FAILED


# ---------------------------------------------------------------------------
# submit_batch — идемпотентность и сверка
# ---------------------------------------------------------------------------


def test_resubmitting_same_batch_changes_nothing(service, store) -> None:
    run = service.create_run("Retry")
    submissions = _sample_submissions()

    first = service.submit_batch(run.id, submissions, is_final_batch=False)
    second = service.submit_batch(run.id, submissions, is_final_batch=True)

    assert (first.accepted, first.duplicates) == (15, 0)
    assert (second.accepted, second.duplicates) == (0, 15)
    final = store.get_test_run(run.id)
    assert (final.total_tests, final.passed_tests, final.failed_tests) == (15, 11, 4)
    assert len(store.list_test_cases(run.id)) == 15
    assert len(store.list_failure_analyses()) == 4


def test_out_of_order_batches_give_same_totals(service, store) -> None:
    submissions = _sample_submissions()
    run = service.create_run("Shuffled")

    service.submit_batch(run.id, submissions[10:], is_final_batch=False)
    service.submit_batch(run.id, submissions[:5], is_final_batch=False)
    service.submit_batch(run.id, submissions[5:10], is_final_batch=False)
    result = service.submit_batch(run.id, [], is_final_batch=True)

    final = store.get_test_run(run.id)
    assert result.run_status is RunStatus.COMPLETED
    assert (final.total_tests, final.passed_tests, final.failed_tests) == (15, 11, 4)


def test_run_completes_only_on_explicit_final_batch(service, store) -> None:
    run = service.create_run("Explicit")

    result = service.submit_batch(run.id, _sample_submissions(), is_final_batch=False)

    assert result.run_status is RunStatus.RUNNING
    assert store.get_test_run(run.id).status is RunStatus.RUNNING

    done = service.submit_batch(run.id, [], is_final_batch=True)
    assert done.run_status is RunStatus.COMPLETED


def test_counter_invariant_holds_after_every_batch(service) -> None:
    run = service.create_run("Invariant")
    statuses = ["passed", "failed", "skipped", "flaky", "error"]

    for i, status in enumerate(statuses):
        service.submit_batch(
            run.id,
            [make_submission(name=f"test_{i}", status=status)],
            is_final_batch=i == len(statuses) - 1,
        )
        _assert_counter_invariant(service._store.get_test_run(run.id))

    final = service._store.get_test_run(run.id)
    assert (final.passed_tests, final.failed_tests, final.skipped_tests) == (1, 3, 1)


def test_flaky_and_failed_cases_get_analysis(service, store) -> None:
    run = service.create_run("Statuses")
    service.submit_batch(
        run.id,
        [
            make_submission(name="ok", status="passed"),
            make_submission(name="bad", status="failed"),
            make_submission(name="wobbly", status="flaky"),
            make_submission(name="later", status="skipped"),
        ],
        is_final_batch=True,
    )

    analysed = {
        store.get_test_case(a.test_case_id).name for a in store.list_failure_analyses()
    }
    assert analysed == {"bad", "wobbly"}


def test_resubmission_keeps_analysis_status(service, store) -> None:
    run = service.create_run("Board")
    batch = [make_submission(name="bad", status="failed")]
    service.submit_batch(run.id, batch, is_final_batch=False)

    [analysis] = store.list_failure_analyses()
    store.update_failure_analysis(analysis.id, status=AnalysisStatus.INVESTIGATING)

    service.submit_batch(run.id, batch, is_final_batch=True)

    [after] = store.list_failure_analyses()
    assert after.id == analysis.id
    assert after.status is AnalysisStatus.INVESTIGATING


def test_same_name_twice_in_batch_creates_two_cases(service, store) -> None:
    run = service.create_run("Params")
    batch = [make_submission(name="test_param"), make_submission(name="test_param")]

    service.submit_batch(run.id, batch, is_final_batch=False)
    service.submit_batch(run.id, batch, is_final_batch=True)

    assert len(store.list_test_cases(run.id)) == 2


def test_explicit_case_key_is_used(service, store) -> None:
    run = service.create_run("Keys")

    service.submit_batch(
        run.id,
        [make_submission(name="a", case_key="k-1"), make_submission(name="renamed", case_key="k-1")],
        is_final_batch=True,
    )

    [case] = store.list_test_cases(run.id)
    assert case.case_key == "k-1"
    assert case.name == "a"


def test_duplicate_backfills_missing_attachments(service, store) -> None:
    run = service.create_run("Attachments")

    service.submit_batch(run.id, [make_submission(name="shot")], is_final_batch=False)
    service.submit_batch(
        run.id,
        [make_submission(name="shot", attachments=["img/fail.png"])],
        is_final_batch=True,
    )

    [case] = store.list_test_cases(run.id)
    assert case.attachments == ["img/fail.png"]


def test_invalid_cases_rejected_individually(service, store) -> None:
    run = service.create_run("Partial")

    result = service.submit_batch(
        run.id,
        [
            make_submission(name="good"),
            make_submission(name="   "),
            make_submission(name="weird", status="exploded"),
            make_submission(name="no_status", status=None),
        ],
        is_final_batch=True,
    )

    assert result.accepted == 1
    assert [r.index for r in result.rejected] == [1, 2, 3]
    assert "name" in result.rejected[0].reason
    assert "exploded" in result.rejected[1].reason


def test_implicit_key_duplicate_with_other_status_is_reported(service, store) -> None:
    run = service.create_run("Conflicts")
    service.submit_batch(run.id, [make_submission(name="login")], is_final_batch=False)

    result = service.submit_batch(
        run.id,
        [make_submission(name="login", status="failed", error_message="timeout")],
        is_final_batch=True,
    )

    assert result.accepted == 0
    assert result.duplicates == 1
    [conflict] = result.conflicts
    assert conflict.index == 0
    assert conflict.name == "login"
    assert conflict.stored_status is CaseStatus.PASSED
    assert conflict.submitted_status is CaseStatus.FAILED
    [stored] = store.list_test_cases(run.id)
    assert conflict.test_case_id == stored.id
    assert stored.status is CaseStatus.PASSED


def test_identical_or_explicit_key_duplicates_are_not_conflicts(service) -> None:
    run = service.create_run("No conflicts")
    service.submit_batch(
        run.id,
        [make_submission(name="a"), make_submission(name="b", case_key="k-b")],
        is_final_batch=False,
    )

    result = service.submit_batch(
        run.id,
        [make_submission(name="a"), make_submission(name="b", case_key="k-b", status="failed")],
        is_final_batch=True,
    )

    assert result.duplicates == 2
    assert result.conflicts == []


@pytest.mark.parametrize("duration", [-1, 2**63])
def test_out_of_range_duration_is_rejected(service, store, duration: int) -> None:
    run = service.create_run("Durations")

    result = service.submit_batch(
        run.id, [make_submission(name="slow", duration=duration)], is_final_batch=True,
    )

    assert result.accepted == 0
    assert "duration" in result.rejected[0].reason
    assert store.list_test_cases(run.id) == []


def test_run_duration_is_capped_to_storable_value(service, store) -> None:
    run = service.create_run("Huge")

    service.submit_batch(
        run.id,
        [
            make_submission(name="a", duration=MAX_DURATION_MS),
            make_submission(name="b", duration=MAX_DURATION_MS),
        ],
        is_final_batch=True,
    )

    assert store.get_test_run(run.id).duration == MAX_DURATION_MS
    assert "status" in result.rejected[2].reason
    assert store.get_test_run(run.id).total_tests == 1


def test_camel_case_submission_fields() -> None:
    from qaboard.models.records import CaseSubmission

    submission = CaseSubmission.model_validate(
        {"name": "t", "className": "pkg.T", "status": "failed", "errorMessage": "boom"},
    )

    assert submission.class_name == "pkg.T"
    assert submission.error_message == "boom"


# ---------------------------------------------------------------------------
# submit_batch — ошибки
# ---------------------------------------------------------------------------


def test_unknown_run_raises_and_writes_nothing(service, store) -> None:
    with pytest.raises(UnknownRunError, match="#999"):
        service.submit_batch(999, [make_submission()], is_final_batch=True)

    assert store.list_test_cases() == []
    assert store.list_failure_analyses() == []


def test_unknown_run_ids_do_not_accumulate_locks(service) -> None:
    for run_id in range(1000, 1100):
        with pytest.raises(UnknownRunError):
            service.submit_batch(run_id, [make_submission()], is_final_batch=True)
        with pytest.raises(UnknownRunError):
            service.fail_run(run_id)

    assert service._locks == {}

    run = service.create_run("Real")
    service.submit_batch(run.id, [], is_final_batch=False)
    assert list(service._locks) == [run.id]


def test_retry_of_final_batch_on_completed_run_is_accepted(service, store) -> None:
    run = service.create_run("Done")
    batch = _sample_submissions()
    service.submit_batch(run.id, batch, is_final_batch=True)

    retry = service.submit_batch(run.id, batch, is_final_batch=True)

    assert retry.accepted == 0
    assert retry.duplicates == 15
    assert retry.run_status is RunStatus.COMPLETED
    assert store.get_test_run(run.id).total_tests == 15


def test_new_cases_on_completed_run_are_refused(service, store) -> None:
    run = service.create_run("Closed")
    service.submit_batch(run.id, [make_submission(name="a")], is_final_batch=True)

    with pytest.raises(RunClosedError):
        service.submit_batch(run.id, [make_submission(name="b")], is_final_batch=True)

    assert [c.name for c in store.list_test_cases(run.id)] == ["a"]


def test_failed_run_refuses_any_batch(service) -> None:
    run = service.create_run("Aborted")
    service.fail_run(run.id, "runner crashed")

    with pytest.raises(RunClosedError):
        service.submit_batch(run.id, [], is_final_batch=True)


# ---------------------------------------------------------------------------
# fail_run
# ---------------------------------------------------------------------------


def test_fail_run_transitions(service) -> None:
    run = service.create_run("To fail")

    failed = service.fail_run(run.id)
    again = service.fail_run(run.id)

    assert failed.status is RunStatus.FAILED
    assert again.status is RunStatus.FAILED


def test_fail_run_on_completed_run_is_refused(service) -> None:
    run = service.create_run("Finished")
    service.submit_batch(run.id, [], is_final_batch=True)

    with pytest.raises(RunClosedError):
        service.fail_run(run.id)


def test_fail_unknown_run(service) -> None:
    with pytest.raises(UnknownRunError):
        service.fail_run(42)


# ---------------------------------------------------------------------------
# Конкурентность
# ---------------------------------------------------------------------------


def test_concurrent_batches_for_one_run(store) -> None:
    service = IngestionService(store)
    run = service.create_run("Parallel")
    submissions = _sample_submissions()
    chunks = [submissions[i:i + 3] for i in range(0, 15, 3)]
    # Каждый пакет отправляется дважды: повторы не должны создавать дублей
    work = chunks + chunks

    start = threading.Barrier(len(work))

    def send(chunk):
        start.wait()
        return service.submit_batch(run.id, chunk, is_final_batch=False)

    with ThreadPoolExecutor(max_workers=len(work)) as pool:
        list(pool.map(send, work))

    service.submit_batch(run.id, [], is_final_batch=True)

    final = store.get_test_run(run.id)
    assert (final.total_tests, final.passed_tests, final.failed_tests) == (15, 11, 4)
    assert len(store.list_failure_analyses()) == 4


def test_batches_for_different_runs_are_independent(service, store) -> None:
    runs = [service.create_run(f"run-{i}") for i in range(4)]
    submissions = _sample_submissions()

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(
            lambda r: service.submit_batch(r.id, submissions, is_final_batch=True), runs,
        ))

    for run in runs:
        stored = store.get_test_run(run.id)
        assert stored.total_tests == 15
        assert stored.status is RunStatus.COMPLETED


def test_single_suite_report_via_ingest(service) -> None:
    xml = make_report(
        make_suite_xml("Solo", make_case_xml("a"), make_case_xml("b", body="<skipped/>")),
        wrapper=False,
    )

    run = service.ingest_report(xml).run

    assert (run.total_tests, run.passed_tests, run.skipped_tests) == (2, 1, 1)
