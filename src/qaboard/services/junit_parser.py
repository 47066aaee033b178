"""Разбор JUnit XML: структурный парсер и нормализация тест-кейсов.

Поддерживаемые формы документа:
- обёртка ``<testsuites>`` с дочерними ``<testsuite>``;
- одиночный корневой ``<testsuite>``;
- произвольный корень, внутри которого лежат ``<testsuite>`` без общей обёртки.

Все функции модуля чистые: читают только переданный документ/элемент и
возвращают значения, поэтому безопасны для параллельного вызова.
"""

from __future__ import annotations

import codecs
import logging
import math
import re
import xml.etree.ElementTree as ET
from collections import Counter
from decimal import ROUND_HALF_UP, Decimal, DecimalException, InvalidOperation
from typing import Iterator

from qaboard.exceptions import MalformedDocumentError
from qaboard.models.common import MAX_DURATION_MS, CaseOutcome
from qaboard.models.junit import CaseRecord, SuiteRecord
from qaboard.utils.case_key import compute_case_key

logger = logging.getLogger(__name__)

UNKNOWN_TEST = "Unknown Test"
UNKNOWN_CLASS = "Unknown Class"
UNKNOWN_SUITE = "Unknown Suite"

_DEFAULT_MESSAGES = {
    CaseOutcome.FAILED: "Test failed",
    CaseOutcome.ERROR: "Test error",
    CaseOutcome.SKIPPED: "Test skipped",
}

# Порядок важен: первый найденный маркер определяет исход
_OUTCOME_TAGS = (
    ("failure", CaseOutcome.FAILED),
    ("error", CaseOutcome.ERROR),
    ("skipped", CaseOutcome.SKIPPED),
)

_ATTACHMENT_MARKERS = ("attachment", "screenshot", "file")

_ENCODING_RE = re.compile(rb"""^\s*<\?xml[^>]*\bencoding\s*=\s*["']([A-Za-z0-9._-]+)["']""")


def parse_report(xml_text: str | bytes) -> list[SuiteRecord]:
    """Разобрать JUnit XML в список сюитов с нормализованными кейсами.

    Args:
        xml_text: Текст отчёта. ``bytes`` декодируются по XML-декларации.

    Returns:
        Список SuiteRecord в порядке документа. Пустой список, если
        ``<testsuite>`` не найден (пустой отчёт валиден).

    Raises:
        MalformedDocumentError: Документ не является well-formed XML.
    """
    root = _parse_root(xml_text)

    suites = [
        _build_suite(element, index)
        for index, element in enumerate(_iter_suite_elements(root))
    ]

    logger.debug(
        "Parsed JUnit report: root=<%s>, suites=%d, cases=%d",
        _local_name(root.tag),
        len(suites),
        sum(s.tests for s in suites),
    )
    return suites


def validate_report(xml_text: str | bytes) -> bool:
    """Быстрая проверка перед загрузкой: well-formed и похож на JUnit."""
    try:
        root = _parse_root(xml_text)
    except MalformedDocumentError:
        return False
    return any(
        _local_name(el.tag) in ("testsuites", "testsuite") for el in root.iter()
    )


def decode_report(raw: bytes) -> str:
    """Декодировать загруженный файл в текст по объявленной кодировке.

    BOM UTF-8 снимается; без декларации ``encoding`` — UTF-8. Неизвестная
    или неверная кодировка не роняет загрузку: недекодируемые байты
    заменяются, а некорректный XML позже отловит ``parse_report``.
    """
    if raw.startswith(codecs.BOM_UTF8):
        raw = raw[len(codecs.BOM_UTF8):]

    encoding = "utf-8"
    match = _ENCODING_RE.match(raw)
    if match:
        encoding = match.group(1).decode("ascii")

    try:
        return raw.decode(encoding)
    except (LookupError, UnicodeDecodeError) as exc:
        logger.warning(
            "Не удалось декодировать отчёт как %s (%s), используется utf-8 с заменой",
            encoding,
            exc,
        )
        return raw.decode("utf-8", errors="replace")


def normalize_case(
    element: ET.Element,
    *,
    case_key: str | None = None,
) -> CaseRecord:
    """Преобразовать элемент ``<testcase>`` в CaseRecord.

    Отсутствующие атрибуты заменяются плейсхолдерами, никогда не None:
    код отображения может полагаться на заполненные name/class_name.
    """
    name = element.get("name") or UNKNOWN_TEST
    class_name = element.get("classname") or UNKNOWN_CLASS
    duration_ms = _seconds_to_ms(element.get("time"))

    outcome = CaseOutcome.PASSED
    error_message: str | None = None
    stack_trace: str | None = None

    for tag, candidate in _OUTCOME_TAGS:
        marker = _find_child(element, tag)
        if marker is None:
            continue
        outcome = candidate
        inner_text = _inner_text(marker)
        if candidate is CaseOutcome.SKIPPED:
            error_message = marker.get("message") or _DEFAULT_MESSAGES[candidate]
        else:
            error_message = (
                marker.get("message")
                or inner_text
                or _DEFAULT_MESSAGES[candidate]
            )
            stack_trace = inner_text
        break

    system_out = _child_text(element, "system-out")
    system_err = _child_text(element, "system-err")

    return CaseRecord(
        name=name,
        class_name=class_name,
        outcome=outcome,
        duration_ms=duration_ms,
        error_message=error_message,
        stack_trace=stack_trace,
        system_out=system_out,
        system_err=system_err,
        attachments=_collect_attachments(element),
        case_key=case_key,
    )


# --- Внутренние вспомогательные функции ---


def _parse_root(xml_text: str | bytes) -> ET.Element:
    try:
        return ET.fromstring(xml_text)  # noqa: S314 - отчёты загружают сами пользователи дашборда
    except ET.ParseError as exc:
        raise MalformedDocumentError(f"Invalid XML format: {exc}") from exc


def _local_name(tag: object) -> str:
    """Имя тега без namespace: ``{urn:x}testsuite`` → ``testsuite``."""
    if not isinstance(tag, str):
        # Комментарии и processing instructions
        return ""
    return tag.rsplit("}", 1)[-1]


def _find_child(element: ET.Element, tag: str) -> ET.Element | None:
    for child in element:
        if _local_name(child.tag) == tag:
            return child
    return None


def _inner_text(element: ET.Element) -> str | None:
    text = "".join(element.itertext()).strip()
    return text or None


def _child_text(element: ET.Element, tag: str) -> str | None:
    child = _find_child(element, tag)
    return _inner_text(child) if child is not None else None


def _iter_suite_elements(root: ET.Element) -> Iterator[ET.Element]:
    """Найти сюиты верхнего уровня, не заходя внутрь найденных.

    Если корень — обёртка ``<testsuites>``, сюитами считаются только её
    потомки; повторного сканирования от корня документа нет.
    """
    root_name = _local_name(root.tag)
    if root_name == "testsuite":
        yield from _flatten_suite(root)
        return

    stack = list(reversed(list(root)))
    while stack:
        element = stack.pop()
        if _local_name(element.tag) == "testsuite":
            yield from _flatten_suite(element)
        else:
            stack.extend(reversed(list(element)))


def _flatten_suite(suite: ET.Element) -> Iterator[ET.Element]:
    """Сюит и вложенные в него сюиты — каждый отдельной записью."""
    yield suite
    for child in suite:
        if _local_name(child.tag) == "testsuite":
            yield from _flatten_suite(child)


def _iter_suite_cases(suite: ET.Element) -> Iterator[ET.Element]:
    """Все ``<testcase>`` сюита, кроме принадлежащих вложенным сюитам."""
    stack = list(reversed(list(suite)))
    while stack:
        element = stack.pop()
        name = _local_name(element.tag)
        if name == "testcase":
            yield element
        elif name != "testsuite":
            stack.extend(reversed(list(element)))


def _build_suite(element: ET.Element, index: int) -> SuiteRecord:
    name = element.get("name") or UNKNOWN_SUITE
    scope = f"{index}:{name}"

    occurrences: Counter[tuple[str | None, str | None]] = Counter()
    cases: list[CaseRecord] = []
    for case_element in _iter_suite_cases(element):
        identity = (case_element.get("classname"), case_element.get("name"))
        ordinal = occurrences[identity]
        occurrences[identity] += 1
        key = compute_case_key(
            identity[0],
            identity[1] or UNKNOWN_TEST,
            scope=scope,
            ordinal=ordinal,
        )
        cases.append(normalize_case(case_element, case_key=key))

    suite = SuiteRecord(
        name=name,
        declared_tests=_int_attr(element, "tests"),
        declared_failures=_int_attr(element, "failures"),
        declared_errors=_int_attr(element, "errors"),
        declared_skipped=_int_attr(element, "skipped"),
        time=_float_attr(element, "time"),
        timestamp=element.get("timestamp") or None,
        cases=cases,
    )
    _log_declared_mismatch(suite)
    return suite


def _log_declared_mismatch(suite: SuiteRecord) -> None:
    """Сверка объявленных счётчиков с фактическими — только лог."""
    declared = (
        suite.declared_tests,
        suite.declared_failures,
        suite.declared_errors,
        suite.declared_skipped,
    )
    actual = (suite.tests, suite.failures, suite.errors, suite.skipped)
    if declared != actual:
        logger.debug(
            "Suite '%s': declared tests/failures/errors/skipped=%s, recomputed=%s",
            suite.name,
            declared,
            actual,
        )


def _float_attr(element: ET.Element, attr: str) -> float:
    raw = element.get(attr)
    if raw is None:
        return 0.0
    try:
        value = float(raw.strip())
    except ValueError:
        return 0.0
    return value if math.isfinite(value) else 0.0


def _int_attr(element: ET.Element, attr: str) -> int:
    return int(_float_attr(element, attr))


def _seconds_to_ms(raw: str | None) -> int:
    """Секунды (строка атрибута) → целые миллисекунды, округление half-up.

    Считаем в Decimal по исходной строке: ``float("1.234") * 1000`` даёт
    1233.9999…  Значение, не влезающее в ``MAX_DURATION_MS``, считается
    мусором и даёт 0, как и нечисловая строка.
    """
    if raw is None:
        return 0
    try:
        seconds = Decimal(raw.strip())
    except InvalidOperation:
        return 0
    if not seconds.is_finite():
        return 0
    try:
        ms = int((seconds * 1000).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except DecimalException:
        logger.debug("Длительность %r вне допустимого диапазона, берём 0", raw)
        return 0
    if ms > MAX_DURATION_MS:
        logger.debug("Длительность %r вне допустимого диапазона, берём 0", raw)
        return 0
    return max(ms, 0)


def _collect_attachments(element: ET.Element) -> list[str] | None:
    """Значения ``<property>`` с именем, похожим на аттачмент.

    Returns:
        Список значений в порядке документа или None, если совпадений нет.
    """
    attachments: list[str] = []
    for properties in element.iter():
        if _local_name(properties.tag) != "properties":
            continue
        for prop in properties:
            if _local_name(prop.tag) != "property":
                continue
            prop_name = (prop.get("name") or "").lower()
            prop_value = prop.get("value")
            if not prop_value:
                continue
            if any(marker in prop_name for marker in _ATTACHMENT_MARKERS):
                attachments.append(prop_value)
    return attachments or None
