"""Plan quotas and usage accounting.

The :class:`QuotaLedger` answers "may this user spend N more units of X?"
against the active plan, and records every AI call. Monthly counters reset
lazily: the first read or write after the calendar month changes zeroes them
and moves ``reset_date`` forward. STR counts are also tracked per day.

Persistence goes through a :class:`UsageRepository`; the bundled
:class:`SQLiteUsageRepository` keeps plans, limits, daily usage and the AI
call audit trail in one SQLite file.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import closing
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

from .notifications import Notifier

logger = logging.getLogger(__name__)

UPGRADE_HINT = " Please upgrade your plan or wait for the next cycle."
LIMITS_NOT_LOADED = "API limits not loaded. Please try again later."
STR_ENDPOINT = "generateReport"


class UsageStoreError(RuntimeError):
    """Raised when the usage store cannot be read or written."""


class UsageType(str, Enum):
    STR_GENERATION = "STR_GEN"
    INPUT_TOKENS = "TOKENS_INPUT"
    OUTPUT_TOKENS = "TOKENS_OUTPUT"
    FILE_SIZE_PER_DOCUMENT = "FILE_SIZE_DOC"
    FILE_SIZE_TOTAL_PER_PROJECT = "FILE_SIZE_TOTAL"


@dataclass(slots=True, frozen=True)
class Plan:
    id: int
    name: str
    price_monthly: float
    monthly_limit: int
    max_strs_per_month: int
    max_strs_per_day: int
    max_input_tokens_per_month: int
    max_output_tokens_per_month: int
    max_file_size_mb_per_document: float
    max_total_upload_mb_per_str: float


@dataclass(slots=True)
class ApiLimits:
    user_id: str
    plan_id: int
    reset_date: str
    strs_used_monthly: int = 0
    input_tokens_used_monthly: int = 0
    output_tokens_used_monthly: int = 0
    monthly_limit: int = 0
    used: int = 0


@dataclass(slots=True)
class DailyUsage:
    user_id: str
    day: str
    str_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class AIUsageRecord:
    user_id: str
    model: str
    api_endpoint_type: str
    prompt_tokens: int
    completion_tokens: int
    success: bool
    error_message: str | None = None
    created_at: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True)
class UsageSnapshot:
    """Dashboard view of the signed-in user's consumption against their plan."""

    plan_name: str
    strs_used_monthly: int
    max_strs_per_month: int
    daily_strs_used: int
    max_strs_per_day: int
    input_tokens_used_monthly: int
    max_input_tokens_per_month: int
    output_tokens_used_monthly: int
    max_output_tokens_per_month: int
    max_file_size_mb_per_document: float
    max_total_upload_mb_per_str: float
    reset_date: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "planName": self.plan_name,
            "strsUsedMonthly": self.strs_used_monthly,
            "maxStrsMonthly": self.max_strs_per_month,
            "dailyStrsUsed": self.daily_strs_used,
            "maxStrsDaily": self.max_strs_per_day,
            "inputTokensUsedMonthly": self.input_tokens_used_monthly,
            "maxInputTokensMonthly": self.max_input_tokens_per_month,
            "outputTokensUsedMonthly": self.output_tokens_used_monthly,
            "maxOutputTokensMonthly": self.max_output_tokens_per_month,
            "maxFileSizeDocMB": self.max_file_size_mb_per_document,
            "maxTotalUploadMB": self.max_total_upload_mb_per_str,
            "resetDate": self.reset_date,
        }


DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        id=1,
        name="Basic",
        price_monthly=999.0,
        monthly_limit=20,
        max_strs_per_month=20,
        max_strs_per_day=3,
        max_input_tokens_per_month=2_000_000,
        max_output_tokens_per_month=400_000,
        max_file_size_mb_per_document=10,
        max_total_upload_mb_per_str=50,
    ),
    Plan(
        id=2,
        name="Professional",
        price_monthly=2999.0,
        monthly_limit=100,
        max_strs_per_month=100,
        max_strs_per_day=10,
        max_input_tokens_per_month=10_000_000,
        max_output_tokens_per_month=2_000_000,
        max_file_size_mb_per_document=25,
        max_total_upload_mb_per_str=200,
    ),
    Plan(
        id=3,
        name="Unlimited",
        price_monthly=9999.0,
        monthly_limit=100_000,
        max_strs_per_month=100_000,
        max_strs_per_day=1_000,
        max_input_tokens_per_month=1_000_000_000,
        max_output_tokens_per_month=200_000_000,
        max_file_size_mb_per_document=100,
        max_total_upload_mb_per_str=1_000,
    ),
)


class UsageRepository(Protocol):
    """Relational store for plans and usage. Implementations raise :class:`UsageStoreError`."""

    def get_plan(self, plan_id: int) -> Plan | None: ...

    def get_plan_by_name(self, name: str) -> Plan | None: ...

    def get_limits(self, user_id: str) -> ApiLimits | None: ...

    def insert_limits(self, limits: ApiLimits) -> None: ...

    def reset_limits(self, user_id: str, reset_date: str) -> None: ...

    def increment_limits(self, user_id: str, *, strs: int, input_tokens: int, output_tokens: int) -> None: ...

    def get_daily_usage(self, user_id: str, day: str) -> DailyUsage | None: ...

    def increment_daily_usage(
        self,
        user_id: str,
        day: str,
        *,
        strs: int,
        input_tokens: int,
        output_tokens: int,
    ) -> None: ...

    def insert_ai_usage(self, record: AIUsageRecord) -> None: ...

    def list_ai_usage(self, user_id: str) -> list[AIUsageRecord]: ...


class SQLiteUsageRepository:
    """SQLite implementation of :class:`UsageRepository`."""

    def __init__(self, db_path: Path | str, *, seed_plans: bool = True) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        if seed_plans:
            self._seed_plans(DEFAULT_PLANS)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            with closing(self._connect()) as conn, conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise UsageStoreError(str(exc)) from exc

    def _ensure_schema(self) -> None:
        statements = (
            """
            CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                price_monthly REAL NOT NULL DEFAULT 0,
                monthly_limit INTEGER NOT NULL DEFAULT 0,
                max_strs_per_month INTEGER NOT NULL,
                max_strs_per_day INTEGER NOT NULL,
                max_input_tokens_per_month INTEGER NOT NULL,
                max_output_tokens_per_month INTEGER NOT NULL,
                max_file_size_mb_per_document REAL NOT NULL,
                max_total_upload_mb_per_str REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS api_limits (
                user_id TEXT PRIMARY KEY,
                plan_id INTEGER NOT NULL REFERENCES plans(id),
                monthly_limit INTEGER NOT NULL DEFAULT 0,
                used INTEGER NOT NULL DEFAULT 0,
                strs_used_monthly INTEGER NOT NULL DEFAULT 0,
                input_tokens_used_monthly INTEGER NOT NULL DEFAULT 0,
                output_tokens_used_monthly INTEGER NOT NULL DEFAULT 0,
                reset_date TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS daily_usage (
                user_id TEXT NOT NULL,
                day TEXT NOT NULL,
                str_count INTEGER NOT NULL DEFAULT 0,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, day)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS ai_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                model TEXT NOT NULL,
                api_endpoint_type TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                success INTEGER NOT NULL,
                error_message TEXT,
                created_at TEXT NOT NULL
            )
            """,
        )
        for statement in statements:
            self._execute(statement)

    def _seed_plans(self, plans: tuple[Plan, ...]) -> None:
        for plan in plans:
            self._execute(
                """
                INSERT OR IGNORE INTO plans (
                    id, name, price_monthly, monthly_limit, max_strs_per_month, max_strs_per_day,
                    max_input_tokens_per_month, max_output_tokens_per_month,
                    max_file_size_mb_per_document, max_total_upload_mb_per_str
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                tuple(asdict(plan).values()),
            )

    def get_plan(self, plan_id: int) -> Plan | None:
        rows = self._execute("SELECT * FROM plans WHERE id = ?", (plan_id,))
        return Plan(**dict(rows[0])) if rows else None

    def get_plan_by_name(self, name: str) -> Plan | None:
        rows = self._execute("SELECT * FROM plans WHERE name = ?", (name,))
        return Plan(**dict(rows[0])) if rows else None

    def get_limits(self, user_id: str) -> ApiLimits | None:
        rows = self._execute("SELECT * FROM api_limits WHERE user_id = ?", (user_id,))
        return ApiLimits(**dict(rows[0])) if rows else None

    def insert_limits(self, limits: ApiLimits) -> None:
        self._execute(
            """
            INSERT INTO api_limits (
                user_id, plan_id, monthly_limit, used, strs_used_monthly,
                input_tokens_used_monthly, output_tokens_used_monthly, reset_date
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                limits.user_id,
                limits.plan_id,
                limits.monthly_limit,
                limits.used,
                limits.strs_used_monthly,
                limits.input_tokens_used_monthly,
                limits.output_tokens_used_monthly,
                limits.reset_date,
            ),
        )

    def reset_limits(self, user_id: str, reset_date: str) -> None:
        self._execute(
            """
            UPDATE api_limits
            SET strs_used_monthly = 0, input_tokens_used_monthly = 0,
                output_tokens_used_monthly = 0, reset_date = ?
            WHERE user_id = ?
            """,
            (reset_date, user_id),
        )

    def increment_limits(self, user_id: str, *, strs: int, input_tokens: int, output_tokens: int) -> None:
        self._execute(
            """
            UPDATE api_limits
            SET strs_used_monthly = strs_used_monthly + ?,
                input_tokens_used_monthly = input_tokens_used_monthly + ?,
                output_tokens_used_monthly = output_tokens_used_monthly + ?
            WHERE user_id = ?
            """,
            (strs, input_tokens, output_tokens, user_id),
        )

    def get_daily_usage(self, user_id: str, day: str) -> DailyUsage | None:
        rows = self._execute(
            "SELECT * FROM daily_usage WHERE user_id = ? AND day = ?",
            (user_id, day),
        )
        return DailyUsage(**dict(rows[0])) if rows else None

    def increment_daily_usage(
        self,
        user_id: str,
        day: str,
        *,
        strs: int,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        self._execute(
            """
            INSERT INTO daily_usage (user_id, day, str_count, input_tokens, output_tokens)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, day) DO UPDATE SET
                str_count = str_count + excluded.str_count,
                input_tokens = input_tokens + excluded.input_tokens,
                output_tokens = output_tokens + excluded.output_tokens
            """,
            (user_id, day, strs, input_tokens, output_tokens),
        )

    def insert_ai_usage(self, record: AIUsageRecord) -> None:
        self._execute(
            """
            INSERT INTO ai_usage (
                user_id, model, api_endpoint_type, prompt_tokens, completion_tokens,
                total_tokens, success, error_message, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.user_id,
                record.model,
                record.api_endpoint_type,
                record.prompt_tokens,
                record.completion_tokens,
                record.total_tokens,
                int(record.success),
                record.error_message,
                record.created_at,
            ),
        )

    def list_ai_usage(self, user_id: str) -> list[AIUsageRecord]:
        rows = self._execute(
            """
            SELECT user_id, model, api_endpoint_type, prompt_tokens, completion_tokens,
                   success, error_message, created_at
            FROM ai_usage WHERE user_id = ? ORDER BY id
            """,
            (user_id,),
        )
        records = []
        for row in rows:
            data = dict(row)
            data["success"] = bool(data["success"])
            records.append(AIUsageRecord(**data))
        return records


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaLedger:
    """Per-user plan limits and usage counters for the signed-in session."""

    def __init__(
        self,
        repository: UsageRepository,
        *,
        notifier: Notifier | None = None,
        default_plan_name: str = "Basic",
        today: Callable[[], date] | None = None,
    ) -> None:
        self._repo = repository
        self._notifier = notifier or Notifier()
        self._default_plan_name = default_plan_name
        self._today = today or _utc_today
        self._user_id: str | None = None
        self._plan: Plan | None = None
        self._limits: ApiLimits | None = None
        self._daily_strs_used = 0
        self._loaded_day: date | None = None

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def plan(self) -> Plan | None:
        return self._plan

    @property
    def limits(self) -> ApiLimits | None:
        return self._limits

    @property
    def is_loaded(self) -> bool:
        return self._user_id is not None and self._plan is not None and self._limits is not None

    async def load(self, user_id: str) -> UsageSnapshot | None:
        """Fetch plan, limits and today's STR count for ``user_id``.

        Creates a default-plan limits row when none exists yet.
        """

        self._user_id = user_id
        today = self._today()
        try:
            limits = await asyncio.to_thread(self._repo.get_limits, user_id)
            if limits is not None:
                plan = await asyncio.to_thread(self._repo.get_plan, limits.plan_id)
                if plan is None:
                    raise UsageStoreError(f"Plan {limits.plan_id} not found")
                self._plan = plan
                self._limits = limits
                await self._rollover_if_needed(today)
                daily = await self._read_daily_strs(user_id, today)
                self._daily_strs_used = daily if daily is not None else 0
            else:
                await self._assign_default_plan(user_id, today)
                self._daily_strs_used = 0
        except UsageStoreError as exc:
            logger.error("ledger.load.failed user=%s error=%s", user_id, exc)
            self._notifier.error(f"Failed to load plan: {exc}")
            self._plan = None
            self._limits = None
            return None
        self._loaded_day = today
        logger.info(
            "ledger.loaded user=%s plan=%s strs=%s daily_strs=%s",
            user_id,
            self._plan.name if self._plan else None,
            self._limits.strs_used_monthly if self._limits else None,
            self._daily_strs_used,
        )
        return self.snapshot()

    async def refresh_if_day_changed(self) -> bool:
        """Reload limits when the calendar day moved on since the last load."""

        if self._user_id is None:
            return False
        if self._loaded_day == self._today():
            return False
        logger.info("ledger.day_changed user=%s", self._user_id)
        await self.load(self._user_id)
        return True

    def clear(self) -> None:
        self._user_id = None
        self._plan = None
        self._limits = None
        self._daily_strs_used = 0
        self._loaded_day = None

    async def check_allowance(self, usage_type: UsageType | str, value: float = 1) -> bool:
        """Return True when spending ``value`` units of ``usage_type`` stays within the plan.

        Denials raise a notification naming the exceeded cap.
        """

        usage_type = UsageType(usage_type)
        if not self.is_loaded:
            self._notifier.error(LIMITS_NOT_LOADED)
            return False
        await self._rollover_if_needed(self._today())
        plan = self._plan
        limits = self._limits
        if plan is None or limits is None:  # pragma: no cover - defensive guard
            self._notifier.error(LIMITS_NOT_LOADED)
            return False

        message: str | None = None
        if usage_type is UsageType.STR_GENERATION:
            if limits.strs_used_monthly + value > plan.max_strs_per_month:
                message = (
                    f"Monthly STR generation limit ({plan.max_strs_per_month:,}) "
                    f"exceeded for your {plan.name} plan."
                    + _usage_note(limits.strs_used_monthly, plan.max_strs_per_month)
                )
            else:
                try:
                    daily = await asyncio.to_thread(
                        self._repo.get_daily_usage,
                        limits.user_id,
                        self._today().isoformat(),
                    )
                except UsageStoreError as exc:
                    logger.error("ledger.daily_usage.read_failed user=%s error=%s", limits.user_id, exc)
                    message = f"Error checking daily usage: {exc}. Please try again."
                else:
                    self._daily_strs_used = daily.str_count if daily else 0
                    if self._daily_strs_used + value > plan.max_strs_per_day:
                        message = (
                            f"Daily STR generation limit ({plan.max_strs_per_day}) "
                            f"exceeded for your {plan.name} plan."
                            + _usage_note(self._daily_strs_used, plan.max_strs_per_day)
                        )
        elif usage_type is UsageType.INPUT_TOKENS:
            if limits.input_tokens_used_monthly + value > plan.max_input_tokens_per_month:
                message = (
                    f"Monthly input token limit ({plan.max_input_tokens_per_month:,}) "
                    f"exceeded for your {plan.name} plan."
                    + _usage_note(limits.input_tokens_used_monthly, plan.max_input_tokens_per_month)
                )
        elif usage_type is UsageType.OUTPUT_TOKENS:
            if limits.output_tokens_used_monthly + value > plan.max_output_tokens_per_month:
                message = (
                    f"Monthly output token limit ({plan.max_output_tokens_per_month:,}) "
                    f"exceeded for your {plan.name} plan."
                    + _usage_note(limits.output_tokens_used_monthly, plan.max_output_tokens_per_month)
                )
        elif usage_type is UsageType.FILE_SIZE_PER_DOCUMENT:
            if value > plan.max_file_size_mb_per_document:
                message = (
                    f"Single document file size limit ({_format_mb(plan.max_file_size_mb_per_document)}MB) "
                    f"exceeded for your {plan.name} plan. "
                    f"This file is {_format_mb(round(value, 2))}MB."
                )
        elif usage_type is UsageType.FILE_SIZE_TOTAL_PER_PROJECT:
            if value > plan.max_total_upload_mb_per_str:
                message = (
                    "Total upload size limit for this project "
                    f"({_format_mb(plan.max_total_upload_mb_per_str)}MB) exceeded for your {plan.name} plan. "
                    f"This upload is {_format_mb(round(value, 2))}MB."
                )

        if message is None:
            return True
        logger.info("ledger.denied user=%s type=%s value=%s", limits.user_id, usage_type.value, value)
        self._notifier.error(message + UPGRADE_HINT)
        return False

    async def check_token_allowance(self, input_tokens: int, output_tokens: int) -> bool:
        if not await self.check_allowance(UsageType.INPUT_TOKENS, input_tokens):
            return False
        return await self.check_allowance(UsageType.OUTPUT_TOKENS, output_tokens)

    async def record_usage(
        self,
        endpoint: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        success: bool,
        error: str | None = None,
    ) -> None:
        """Append the audit row and, for successful calls, bump the usage counters.

        Storage failures are logged; they never reach the caller.
        """

        user_id = self._user_id
        if user_id is None:
            logger.warning("ledger.record.skipped endpoint=%s reason=no_user", endpoint)
            return
        prompt_tokens = max(int(prompt_tokens), 0)
        completion_tokens = max(int(completion_tokens), 0)
        record = AIUsageRecord(
            user_id=user_id,
            model=model,
            api_endpoint_type=endpoint,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            success=success,
            error_message=error,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        try:
            await asyncio.to_thread(self._repo.insert_ai_usage, record)
        except UsageStoreError as exc:
            logger.error("ledger.ai_usage.insert_failed endpoint=%s error=%s", endpoint, exc)

        if not success:
            return

        today = self._today()
        await self._rollover_if_needed(today)
        strs = 1 if endpoint == STR_ENDPOINT else 0
        if self._limits is not None and self._limits.user_id == user_id:
            self._limits.strs_used_monthly += strs
            self._limits.input_tokens_used_monthly += prompt_tokens
            self._limits.output_tokens_used_monthly += completion_tokens
        self._daily_strs_used += strs

        try:
            await asyncio.to_thread(
                self._repo.increment_daily_usage,
                user_id,
                today.isoformat(),
                strs=strs,
                input_tokens=prompt_tokens,
                output_tokens=completion_tokens,
            )
        except UsageStoreError as exc:
            logger.error("ledger.daily_usage.upsert_failed endpoint=%s error=%s", endpoint, exc)
        try:
            await asyncio.to_thread(
                self._repo.increment_limits,
                user_id,
                strs=strs,
                input_tokens=prompt_tokens,
                output_tokens=completion_tokens,
            )
        except UsageStoreError as exc:
            logger.error("ledger.limits.update_failed endpoint=%s error=%s", endpoint, exc)
        logger.info(
            "ledger.recorded user=%s endpoint=%s prompt=%s completion=%s strs=%s",
            user_id,
            endpoint,
            prompt_tokens,
            completion_tokens,
            strs,
        )

    def snapshot(self) -> UsageSnapshot | None:
        plan = self._plan
        limits = self._limits
        if self._user_id is None or plan is None or limits is None:
            return None
        return UsageSnapshot(
            plan_name=plan.name,
            strs_used_monthly=limits.strs_used_monthly,
            max_strs_per_month=plan.max_strs_per_month,
            daily_strs_used=self._daily_strs_used,
            max_strs_per_day=plan.max_strs_per_day,
            input_tokens_used_monthly=limits.input_tokens_used_monthly,
            max_input_tokens_per_month=plan.max_input_tokens_per_month,
            output_tokens_used_monthly=limits.output_tokens_used_monthly,
            max_output_tokens_per_month=plan.max_output_tokens_per_month,
            max_file_size_mb_per_document=plan.max_file_size_mb_per_document,
            max_total_upload_mb_per_str=plan.max_total_upload_mb_per_str,
            reset_date=limits.reset_date,
        )

    async def _assign_default_plan(self, user_id: str, today: date) -> None:
        logger.warning("ledger.limits.missing user=%s plan=%s", user_id, self._default_plan_name)
        plan = await asyncio.to_thread(self._repo.get_plan_by_name, self._default_plan_name)
        if plan is None:
            plan = next(
                (item for item in DEFAULT_PLANS if item.name == self._default_plan_name),
                DEFAULT_PLANS[0],
            )
            logger.warning("ledger.plan.builtin_default plan=%s", plan.name)
        limits = ApiLimits(
            user_id=user_id,
            plan_id=plan.id,
            reset_date=today.isoformat(),
            monthly_limit=plan.monthly_limit,
        )
        try:
            await asyncio.to_thread(self._repo.insert_limits, limits)
        except UsageStoreError as exc:
            logger.error("ledger.limits.insert_failed user=%s error=%s", user_id, exc)
            self._notifier.error(
                f"Account created, but failed to assign plan: {exc}. Please contact support."
            )
        else:
            logger.info("ledger.limits.created user=%s plan=%s", user_id, plan.name)
        self._plan = plan
        self._limits = limits

    async def _rollover_if_needed(self, today: date) -> bool:
        limits = self._limits
        if limits is None:
            return False
        try:
            reset = date.fromisoformat(limits.reset_date[:10])
        except ValueError:
            reset = None
        if reset is not None and (reset.year, reset.month) == (today.year, today.month):
            return False

        logger.info("ledger.monthly_reset user=%s previous=%s", limits.user_id, limits.reset_date)
        self._limits = replace(
            limits,
            strs_used_monthly=0,
            input_tokens_used_monthly=0,
            output_tokens_used_monthly=0,
            reset_date=today.isoformat(),
        )
        try:
            await asyncio.to_thread(self._repo.reset_limits, limits.user_id, today.isoformat())
        except UsageStoreError as exc:
            logger.error("ledger.monthly_reset.persist_failed user=%s error=%s", limits.user_id, exc)
            self._notifier.error(f"Failed to reset monthly usage in DB: {exc}.")
        else:
            self._notifier.info("Monthly API usage has been reset!")
        return True

    async def _read_daily_strs(self, user_id: str, today: date) -> int | None:
        try:
            daily = await asyncio.to_thread(self._repo.get_daily_usage, user_id, today.isoformat())
        except UsageStoreError as exc:
            logger.error("ledger.daily_usage.read_failed user=%s error=%s", user_id, exc)
            return None
        return daily.str_count if daily else 0


def _format_mb(value: float) -> str:
    return f"{value:g}"


def _usage_note(used: int, limit: int) -> str:
    return f" Used {used:,} of {limit:,}."


__all__ = [
    "AIUsageRecord",
    "ApiLimits",
    "DEFAULT_PLANS",
    "DailyUsage",
    "Plan",
    "QuotaLedger",
    "SQLiteUsageRepository",
    "UsageRepository",
    "UsageSnapshot",
    "UsageStoreError",
    "UsageType",
]
