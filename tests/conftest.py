from __future__ import annotations

import json
import random
from collections import defaultdict, deque
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any, Deque, Dict, List

import pytest

from titlesearch.config import Settings
from titlesearch.gateway import AIGateway
from titlesearch.ledger import (
    DEFAULT_PLANS,
    AIUsageRecord,
    ApiLimits,
    DailyUsage,
    Plan,
    QuotaLedger,
    UsageStoreError,
)
from titlesearch.llm import LLMResponse
from titlesearch.notifications import Notifier
from titlesearch.observability import MetricsRecorder
from titlesearch.projects import ProjectStore, UploadedFile
from titlesearch.scheduler import TaskScheduler
from titlesearch.storage import LocalStorage

PDF_MIME = "application/pdf"

DEFAULT_REPLIES: Dict[str, str] = {
    "extractTextFromFile": "Extracted text of the sale deed.",
    "classifyDocument": "Sale Deed",
    "extractProjectDetailsAndScenario": json.dumps(
        {
            "projectName": "Search for A. Kulkarni",
            "propertyAddress": "Plot 12, Baner, Pune",
            "clientName": "A. Kulkarni",
            "searchPeriod": "30 years",
            "scenario": "CLEAR_FREEHOLD_PLOT",
        }
    ),
    "generateReport": json.dumps(
        {
            "content": "# Title Search Report\n\n| Item | Detail |\n|---|---|\n| Owner | A. Kulkarni |",
            "summary": "Title is clear.",
            "strCategory": "Clear",
            "riskFlags": [],
        }
    ),
    "reformatReport": "# Reformatted Report",
}


class FakeBackend:
    """Scripted stand-in for :class:`titlesearch.llm.LLMBackend`."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._scripted: Dict[str, Deque[Any]] = defaultdict(deque)

    def model_for(self, operation: str) -> str:
        return f"fake-{operation}"

    def script(self, operation: str, *replies: Any) -> None:
        """Queue replies for ``operation``: strings, ``LLMResponse`` objects or exceptions."""

        self._scripted[operation].extend(replies)

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["operation"] == operation]

    async def generate(self, operation: str, prompt: str, **kwargs: Any) -> LLMResponse:
        self.calls.append({"operation": operation, "prompt": prompt, **kwargs})
        queue = self._scripted.get(operation)
        reply: Any = queue.popleft() if queue else DEFAULT_REPLIES.get(operation, "")
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, LLMResponse):
            return reply
        return LLMResponse(text=str(reply))


class InMemoryUsageRepository:
    """Dictionary-backed usage repository; ``fail_on`` names methods that raise."""

    def __init__(self, plans: tuple[Plan, ...] = DEFAULT_PLANS) -> None:
        self.plans: Dict[int, Plan] = {plan.id: plan for plan in plans}
        self.limits: Dict[str, ApiLimits] = {}
        self.daily: Dict[tuple[str, str], DailyUsage] = {}
        self.ai_usage: List[AIUsageRecord] = []
        self.fail_on: set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise UsageStoreError(f"{name} unavailable")

    def get_plan(self, plan_id: int) -> Plan | None:
        self._check("get_plan")
        return self.plans.get(plan_id)

    def get_plan_by_name(self, name: str) -> Plan | None:
        self._check("get_plan_by_name")
        return next((plan for plan in self.plans.values() if plan.name == name), None)

    def get_limits(self, user_id: str) -> ApiLimits | None:
        self._check("get_limits")
        limits = self.limits.get(user_id)
        return replace(limits) if limits else None

    def insert_limits(self, limits: ApiLimits) -> None:
        self._check("insert_limits")
        self.limits[limits.user_id] = replace(limits)

    def reset_limits(self, user_id: str, reset_date: str) -> None:
        self._check("reset_limits")
        current = self.limits[user_id]
        self.limits[user_id] = replace(
            current,
            strs_used_monthly=0,
            input_tokens_used_monthly=0,
            output_tokens_used_monthly=0,
            reset_date=reset_date,
        )

    def increment_limits(self, user_id: str, *, strs: int, input_tokens: int, output_tokens: int) -> None:
        self._check("increment_limits")
        current = self.limits.get(user_id)
        if current is None:
            return
        current.strs_used_monthly += strs
        current.input_tokens_used_monthly += input_tokens
        current.output_tokens_used_monthly += output_tokens

    def get_daily_usage(self, user_id: str, day: str) -> DailyUsage | None:
        self._check("get_daily_usage")
        row = self.daily.get((user_id, day))
        return replace(row) if row else None

    def increment_daily_usage(
        self,
        user_id: str,
        day: str,
        *,
        strs: int,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        self._check("increment_daily_usage")
        row = self.daily.setdefault((user_id, day), DailyUsage(user_id=user_id, day=day))
        row.str_count += strs
        row.input_tokens += input_tokens
        row.output_tokens += output_tokens

    def insert_ai_usage(self, record: AIUsageRecord) -> None:
        self._check("insert_ai_usage")
        self.ai_usage.append(record)

    def list_ai_usage(self, user_id: str) -> list[AIUsageRecord]:
        return [record for record in self.ai_usage if record.user_id == user_id]


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedDay:
    def __init__(self, value: date) -> None:
        self.value = value

    def __call__(self) -> date:
        return self.value


async def no_sleep(_seconds: float) -> None:
    return None


def make_upload(name: str = "deed.pdf", *, size: int = 8192, mime_type: str = PDF_MIME) -> UploadedFile:
    return UploadedFile(name=name, data=b"x" * size, mime_type=mime_type)


@pytest.fixture()
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture()
def repository() -> InMemoryUsageRepository:
    return InMemoryUsageRepository()


@pytest.fixture()
def today() -> FixedDay:
    return FixedDay(date(2025, 3, 14))


@pytest.fixture()
def ledger(repository: InMemoryUsageRepository, notifier: Notifier, today: FixedDay) -> QuotaLedger:
    return QuotaLedger(repository, notifier=notifier, today=today)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def metrics() -> MetricsRecorder:
    return MetricsRecorder(enabled=True, namespace="titlesearch.test")


@pytest.fixture()
def gateway(backend: FakeBackend, ledger: QuotaLedger, metrics: MetricsRecorder) -> AIGateway:
    return AIGateway(backend, ledger, metrics=metrics)  # type: ignore[arg-type]


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def scheduler(clock: ManualClock) -> TaskScheduler:
    return TaskScheduler(clock=clock)


@pytest.fixture()
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "storage")


@pytest.fixture()
def store(storage: LocalStorage, notifier: Notifier) -> ProjectStore:
    return ProjectStore(storage, notifier=notifier)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        usage_db_path=str(tmp_path / "data" / "usage.sqlite"),
        upload_failure_chance=0.0,
        observability_namespace="titlesearch.test",
    )


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(7)
