"""Общие фабрики и фикстуры для тестов qaboard."""

from __future__ import annotations

import pytest

from qaboard.models.common import CaseStatus
from qaboard.models.records import CaseSubmission
from qaboard.models.records import TestCase as StoredCase
from qaboard.services.ingestion_service import IngestionService
from qaboard.storage.memory import InMemoryStore

# 3 сюита × 5 кейсов: 3 failure + 1 error, остальные успешны
SAMPLE_REPORT = """<?xml version="1.0" encoding="UTF-8"?>
<testsuites name="regression" tests="15" failures="3" errors="1" time="12.5">
  <testsuite name="AuthSuite" tests="5" failures="1" errors="0" skipped="0" time="4.0"
             timestamp="2024-05-01T10:00:00">
    <testcase name="test_login" classname="auth.LoginTest" time="1.234"/>
    <testcase name="test_logout" classname="auth.LoginTest" time="0.5"/>
    <testcase name="test_bad_password" classname="auth.LoginTest" time="0.75">
      <failure message="expected 401 but was 500" type="AssertionError">Traceback (most recent call last):
  File "test_login.py", line 42, in test_bad_password
AssertionError: expected 401 but was 500</failure>
    </testcase>
    <testcase name="test_refresh" classname="auth.TokenTest" time="0.25"/>
    <testcase name="test_revoke" classname="auth.TokenTest" time="0.3"/>
  </testsuite>
  <testsuite name="CartSuite" tests="5" failures="1" errors="1" skipped="0" time="5.5">
    <testcase name="test_add_item" classname="cart.CartTest" time="1.0"/>
    <testcase name="test_remove_item" classname="cart.CartTest" time="1.0">
      <failure message="item still present"/>
    </testcase>
    <testcase name="test_checkout" classname="cart.CartTest" time="2.0">
      <error message="ConnectionRefusedError" type="ConnectionRefusedError">connect ECONNREFUSED 127.0.0.1:5432</error>
    </testcase>
    <testcase name="test_empty_cart" classname="cart.CartTest" time="0.5"/>
    <testcase name="test_discount" classname="cart.CartTest" time="1.0"/>
  </testsuite>
  <testsuite name="SearchSuite" tests="5" failures="1" errors="0" skipped="0" time="3.0">
    <testcase name="test_search_by_name" classname="search.SearchTest" time="0.6"/>
    <testcase name="test_search_by_tag" classname="search.SearchTest" time="0.6"/>
    <testcase name="test_search_empty" classname="search.SearchTest" time="0.6">
      <failure>results list is not empty</failure>
    </testcase>
    <testcase name="test_search_paging" classname="search.SearchTest" time="0.6"/>
    <testcase name="test_search_sorting" classname="search.SearchTest" time="0.6"/>
  </testsuite>
</testsuites>
"""


def make_report(*suites: str, wrapper: bool = True) -> str:
    """Собрать JUnit XML из готовых фрагментов ``<testsuite>``."""
    body = "\n".join(suites)
    if wrapper:
        body = f"<testsuites>\n{body}\n</testsuites>"
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}\n'


def make_suite_xml(name: str = "Suite", *cases: str, **attrs: str) -> str:
    """Фрагмент ``<testsuite>`` с произвольными атрибутами."""
    rendered = "".join(f' {k}="{v}"' for k, v in attrs.items())
    return f'<testsuite name="{name}"{rendered}>\n' + "\n".join(cases) + "\n</testsuite>"


def make_case_xml(
    name: str = "test_example",
    classname: str = "pkg.ExampleTest",
    time: str = "0.1",
    body: str = "",
) -> str:
    """Фрагмент ``<testcase>``; ``body`` — вложенные элементы."""
    return f'<testcase name="{name}" classname="{classname}" time="{time}">{body}</testcase>'


def make_submission(**overrides) -> CaseSubmission:
    """Фабрика CaseSubmission с разумными дефолтами."""
    defaults: dict = {
        "name": "test_example",
        "class_name": "pkg.ExampleTest",
        "status": "passed",
        "duration": 100,
    }
    defaults.update(overrides)
    return CaseSubmission.model_validate(defaults)


def make_stored_case(**overrides) -> StoredCase:
    """Фабрика сохраняемого TestCase (id назначает хранилище)."""
    defaults: dict = {
        "id": 0,
        "test_run_id": 1,
        "case_key": "key-1",
        "name": "test_example",
        "class_name": "pkg.ExampleTest",
        "status": CaseStatus.PASSED,
        "duration": 100,
    }
    defaults.update(overrides)
    return StoredCase.model_validate(defaults)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def service(store: InMemoryStore) -> IngestionService:
    return IngestionService(store, batch_size=100)
