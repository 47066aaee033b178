"""Тесты CLI: подкоманды parse/ingest, форматы вывода, коды выхода."""

from __future__ import annotations

import json

import pytest

from conftest import SAMPLE_REPORT
from qaboard.cli import build_parser, run


@pytest.fixture
def report_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)  # изоляция от .env в корне проекта
    path = tmp_path / "junit.xml"
    path.write_text(SAMPLE_REPORT, encoding="utf-8")
    return path


def _run(*argv: str) -> int:
    return run(build_parser().parse_args(list(argv)))


def test_parse_text_output(report_file, capsys) -> None:
    code = _run("parse", str(report_file))

    out = capsys.readouterr().out
    assert code == 0
    assert "Всего: 15" in out
    assert "Провалено: 3" in out
    assert "Падения (4):" in out
    assert "[ERROR]  cart.CartTest.test_checkout (CartSuite)" in out


def test_parse_json_output(report_file, capsys) -> None:
    code = _run("parse", str(report_file), "--output-format", "json")

    data = json.loads(capsys.readouterr().out)
    assert code == 0
    assert data["summary"]["total_tests"] == 15
    assert len(data["suites"]) == 3
    assert data["suites"][0]["cases"][0]["duration_ms"] == 1234


def test_parse_malformed_report_exit_1(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    broken = tmp_path / "broken.xml"
    broken.write_text("<testsuites><testsuite", encoding="utf-8")

    assert _run("parse", str(broken)) == 1


def test_missing_file_exit_2(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert _run("parse", str(tmp_path / "nope.xml")) == 2


def test_no_command_exit_2(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert _run() == 2


def test_ingest_into_memory_store(report_file, capsys) -> None:
    code = _run("ingest", str(report_file), "--name", "Nightly", "--batch-size", "4")

    out = capsys.readouterr().out
    assert code == 0
    assert "Запуск #1 (Nightly): completed" in out
    assert "Пакетов: 4" in out


def test_ingest_json_output(report_file, capsys) -> None:
    code = _run("ingest", str(report_file), "--output-format", "json")

    data = json.loads(capsys.readouterr().out)
    assert code == 0
    assert data["run"]["failed_tests"] == 4
    assert data["run"]["status"] == "completed"


def test_ingest_postgres_without_dsn_exit_2(report_file, monkeypatch) -> None:
    monkeypatch.setenv("QABOARD_STORAGE_BACKEND", "postgres")
    monkeypatch.delenv("QABOARD_POSTGRES_DSN", raising=False)

    assert _run("ingest", str(report_file)) == 2


def test_invalid_batch_size_is_configuration_error(report_file) -> None:
    assert _run("ingest", str(report_file), "--batch-size", "0") == 2


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        build_parser().parse_args(["--version"])

    assert exc_info.value.code == 0
    assert "qaboard" in capsys.readouterr().out
