"""
Agent usage tracking and cost calculation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import settings
from .models import UsageLog

logger = logging.getLogger(__name__)


@dataclass
class ModelPricing:
    """Pricing per million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> Decimal:
        input_cost = (Decimal(input_tokens) / Decimal(1_000_000)) * self.input_per_million
        output_cost = (Decimal(output_tokens) / Decimal(1_000_000)) * self.output_per_million
        return input_cost + output_cost


MODEL_PRICING: dict[str, ModelPricing] = {
    "gemini-2.5-flash": ModelPricing(
        input_per_million=Decimal("0.10"),
        output_per_million=Decimal("0.40"),
    ),
    "gemini-2.5-pro": ModelPricing(
        input_per_million=Decimal("1.25"),
        output_per_million=Decimal("10.00"),
    ),
    "gemini-3-flash": ModelPricing(
        input_per_million=Decimal("0.10"),
        output_per_million=Decimal("0.40"),
    ),
    "gemini-3-pro": ModelPricing(
        input_per_million=Decimal("1.25"),
        output_per_million=Decimal("10.00"),
    ),
    "gpt-5.2-codex": ModelPricing(
        input_per_million=Decimal("2.00"),
        output_per_million=Decimal("8.00"),
    ),
    "claude-haiku": ModelPricing(
        input_per_million=Decimal("0.80"),
        output_per_million=Decimal("4.00"),
    ),
    "claude-sonnet": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
    ),
}

ZERO = Decimal("0")


def pricing_table() -> dict[str, ModelPricing]:
    """Built-in pricing merged with ``CHANGELOOP_PRICING_OVERRIDES``."""
    table = dict(MODEL_PRICING)
    for key, prices in settings.pricing_overrides.items():
        if len(prices) != 2:
            continue
        table[key.lower()] = ModelPricing(input_per_million=prices[0], output_per_million=prices[1])
    return table


def get_pricing(model: str, table: dict[str, ModelPricing] | None = None) -> ModelPricing | None:
    """Find pricing by model-name substring; the longest matching key wins."""
    model_lower = model.lower()
    table = table if table is not None else pricing_table()
    matches = [key for key in table if key in model_lower]
    if not matches:
        return None
    return table[max(matches, key=len)]


@dataclass
class TokenUsage:
    """Token usage reported by one agent call."""

    input_tokens: int
    output_tokens: int
    model: str
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageRecord:
    step: str
    model: str
    tokens_in: int
    tokens_out: int
    cost: Decimal
    duration: int  # milliseconds
    timestamp: datetime

    @classmethod
    def from_log(cls, log: UsageLog) -> UsageRecord:
        return cls(
            step=log.step,
            model=log.model,
            tokens_in=log.tokens_in,
            tokens_out=log.tokens_out,
            cost=log.cost,
            duration=log.duration_ms,
            timestamp=log.created_at,
        )


@dataclass(frozen=True)
class UsageTotals:
    calls: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost: Decimal = ZERO

    def to_dict(self) -> dict[str, object]:
        return {
            "calls": self.calls,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost": str(self.cost),
        }


def summarize(records: list[UsageRecord]) -> UsageTotals:
    """Totals derived from individual records, never stored separately."""
    return UsageTotals(
        calls=len(records),
        tokens_in=sum(r.tokens_in for r in records),
        tokens_out=sum(r.tokens_out for r in records),
        cost=sum((r.cost for r in records), ZERO),
    )


class UsageLedger:
    """Append-only usage records for one change.

    Unpriced models are recorded at zero cost instead of being skipped, so
    call counts and token totals stay complete.
    """

    def __init__(
        self,
        session: AsyncSession,
        change_id: str,
        pricing: dict[str, ModelPricing] | None = None,
    ):
        self.session = session
        self.change_id = change_id
        self.pricing = pricing if pricing is not None else pricing_table()

    def cost_for(self, model: str, tokens_in: int, tokens_out: int) -> Decimal:
        model_pricing = get_pricing(model, self.pricing)
        if model_pricing is None:
            return ZERO
        return model_pricing.calculate_cost(tokens_in, tokens_out)

    async def record(
        self,
        step: str,
        model: str,
        tokens_in: int,
        tokens_out: int,
        duration: int,
    ) -> UsageRecord:
        if tokens_in < 0 or tokens_out < 0:
            logger.warning(
                "Negative token counts for %s (%s): in=%d out=%d; recording as 0",
                step,
                model,
                tokens_in,
                tokens_out,
            )
            tokens_in = max(tokens_in, 0)
            tokens_out = max(tokens_out, 0)
        log = UsageLog(
            change_id=self.change_id,
            step=step,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=self.cost_for(model, tokens_in, tokens_out),
            duration_ms=duration,
            created_at=datetime.now(UTC),
        )
        self.session.add(log)
        await self.session.flush()
        return UsageRecord.from_log(log)

    async def record_usage(self, step: str, usage: TokenUsage) -> UsageRecord:
        return await self.record(
            step, usage.model, usage.input_tokens, usage.output_tokens, usage.duration_ms
        )

    async def records(self) -> list[UsageRecord]:
        return [UsageRecord.from_log(log) for log in await db.get_usage_logs(self.session, self.change_id)]

    async def totals(self) -> UsageTotals:
        return summarize(await self.records())
