"""Точка входа CLI qaboard: разбор и загрузка JUnit XML-отчётов."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from qaboard import __version__

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qaboard",
        description="QA-дашборд — разбор и загрузка JUnit XML-отчётов",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Уровень логирования (переопределяет QABOARD_LOG_LEVEL)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"qaboard {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    parse_cmd = subparsers.add_parser(
        "parse", help="Разобрать отчёт и вывести сводку (без записи в хранилище)",
    )
    parse_cmd.add_argument("report", help="Путь к JUnit XML-файлу")
    parse_cmd.add_argument(
        "--output-format",
        choices=["text", "json"],
        default="text",
        help="Формат вывода (по умолчанию: text)",
    )

    ingest_cmd = subparsers.add_parser(
        "ingest", help="Загрузить отчёт в хранилище как новый запуск",
    )
    ingest_cmd.add_argument("report", help="Путь к JUnit XML-файлу")
    ingest_cmd.add_argument("--name", default=None, help="Имя запуска")
    ingest_cmd.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Кейсов в пакете (переопределяет QABOARD_BATCH_SIZE)",
    )
    ingest_cmd.add_argument(
        "--output-format",
        choices=["text", "json"],
        default="text",
        help="Формат вывода (по умолчанию: text)",
    )
    return parser


def run(args: argparse.Namespace) -> int:
    """Выполнить подкоманду. Возвращает код выхода."""
    # Отложенные импорты — чтобы --help работал быстро
    from qaboard.config import Settings
    from qaboard.exceptions import ConfigurationError, MalformedDocumentError, QaboardError
    from qaboard.logging_config import setup_logging
    from qaboard.services.junit_parser import decode_report

    # 1. Загрузка настроек
    try:
        overrides: dict[str, object] = {}
        if getattr(args, "batch_size", None) is not None:
            overrides["batch_size"] = args.batch_size
        settings = Settings(**overrides)  # type: ignore[arg-type]
    except Exception as exc:
        print(
            f"Ошибка конфигурации: {exc}\n\n"
            f"Переменные окружения: QABOARD_STORAGE_BACKEND, QABOARD_POSTGRES_DSN, "
            f"QABOARD_BATCH_SIZE\n"
            f"Подробности см. в .env.example.",
            file=sys.stderr,
        )
        return 2

    # 2. Настройка логирования
    setup_logging(args.log_level or settings.log_level)

    if args.command is None:
        logger.error("Не указана команда. Используйте: qaboard parse|ingest <report.xml>")
        return 2

    # 3. Чтение файла
    path = Path(args.report)
    try:
        xml_text = decode_report(path.read_bytes())
    except OSError as exc:
        logger.error("Не удалось прочитать %s: %s", path, exc)
        return 2

    # 4. Команда
    try:
        if args.command == "parse":
            return _run_parse(xml_text, args.output_format)
        return _run_ingest(xml_text, settings, args)
    except MalformedDocumentError as exc:
        logger.error("Некорректный отчёт %s: %s", path, exc)
        return 1
    except ConfigurationError as exc:
        logger.error("Ошибка конфигурации: %s", exc)
        return 2
    except QaboardError as exc:
        logger.error("Ошибка: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Прервано пользователем")
        return 130


def _run_parse(xml_text: str, output_format: str) -> int:
    from qaboard.services.aggregation import summarize
    from qaboard.services.junit_parser import parse_report

    suites = parse_report(xml_text)
    summary = summarize(suites)

    if output_format == "json":
        import json

        output = {
            "summary": summary.model_dump(),
            "suites": [s.model_dump() for s in suites],
        }
        print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    else:
        _print_summary(summary)
        _print_failures(suites)
    return 0


def _run_ingest(xml_text: str, settings, args: argparse.Namespace) -> int:  # noqa: ANN001
    from qaboard.services.ingestion_service import IngestionService
    from qaboard.storage.factory import create_store

    store = create_store(settings)
    service = IngestionService(store, batch_size=settings.batch_size)
    result = service.ingest_report(xml_text, name=args.name)

    rejected = sum(len(b.rejected) for b in result.batches)
    if args.output_format == "json":
        import json

        output = {
            "run": result.run.model_dump(mode="json", exclude={"xml_content"}),
            "summary": result.summary.model_dump(),
            "batches": [b.model_dump(mode="json") for b in result.batches],
        }
        print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    else:
        run = result.run
        print()
        print(f"Запуск #{run.id} ({run.name}): {run.status.value}")
        print(
            f"Всего: {run.total_tests}"
            f" | Успешно: {run.passed_tests}"
            f" | Провалено: {run.failed_tests}"
            f" | Пропущено: {run.skipped_tests}"
            f" | Пакетов: {len(result.batches)}"
            f" | Отклонено: {rejected}"
        )
        print()
    return 0


def _print_summary(summary) -> None:  # noqa: ANN001
    """Сводка отчёта в stdout."""
    print()
    print("=== Сводка JUnit-отчёта ===")
    print(
        f"Сюитов: {summary.suite_count}"
        f" | Всего: {summary.total_tests}"
        f" | Успешно: {summary.passed_tests}"
        f" | Провалено: {summary.failed_tests}"
        f" | Ошибок: {summary.error_tests}"
        f" | Пропущено: {summary.skipped_tests}"
    )
    print(
        f"Pass rate: {summary.pass_rate}%"
        f" | Время: {summary.total_time:.3f} с"
        f" | Средняя длительность кейса: {summary.average_duration_ms} мс"
    )
    print()


def _print_failures(suites) -> None:  # noqa: ANN001
    failures = [(s.name, c) for s in suites for c in s.cases if c.is_failure]
    if not failures:
        print("Падения не найдены.")
        print()
        return

    print(f"Падения ({len(failures)}):")
    for suite_name, case in failures:
        print(f"  [{case.outcome.value.upper()}]  {case.class_name}.{case.name} ({suite_name})")
        if case.error_message:
            # Обрезка длинных сообщений
            msg = case.error_message
            if len(msg) > 200:
                msg = msg[:200] + "..."
            print(f"            {msg}")
    print()


def main() -> None:
    """Точка входа для консольного скрипта."""
    parser = build_parser()
    args = parser.parse_args()
    sys.exit(run(args))


if __name__ == "__main__":
    main()
