from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR

from loguru import logger

from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import HUNDRED


class CapitalTier(str, enum.Enum):
    SMALL = "SMALL"
    MEDIUM = "MEDIUM"
    LARGE = "LARGE"


@dataclass(frozen=True)
class ExecutionMode:
    chunks: int = 1

    @classmethod
    def single(cls) -> "ExecutionMode":
        return cls(chunks=1)

    @classmethod
    def split(cls, chunks: int) -> "ExecutionMode":
        if chunks < 2:
            raise ValueError("a split needs at least 2 chunks")
        return cls(chunks=chunks)

    @property
    def is_split(self) -> bool:
        return self.chunks > 1

    def __str__(self) -> str:
        return f"SPLIT({self.chunks})" if self.is_split else "SINGLE"


@dataclass(frozen=True)
class TierDecision:
    tier: CapitalTier
    mode: ExecutionMode
    notional: Decimal
    chunk_notional: Decimal
    reason: str


class CapitalTierEvaluator:
    """
    Pure mapping from a trade notional to a tier and an execution mode.

    SMALL  < medium breakpoint
    MEDIUM < large breakpoint
    LARGE  otherwise, always split so every chunk is MEDIUM or below.

    Available liquidity lowers the large breakpoint to the share of it a
    single order may take.
    """

    def __init__(
        self,
        *,
        medium_breakpoint: Decimal,
        large_breakpoint: Decimal,
        min_trade_notional: Decimal,
        max_liquidity_share_pct: Decimal | None = None,
        max_chunks: int = 10,
    ) -> None:
        self.medium_breakpoint = medium_breakpoint
        self.large_breakpoint = large_breakpoint
        self.min_trade_notional = min_trade_notional
        self.max_liquidity_share_pct = max_liquidity_share_pct
        self.max_chunks = max_chunks

    @classmethod
    def from_config(cls, config: StrategyConfig) -> "CapitalTierEvaluator":
        return cls(
            medium_breakpoint=config.medium_tier_notional,
            large_breakpoint=config.large_tier_notional,
            min_trade_notional=config.min_trade_notional,
            max_liquidity_share_pct=config.max_liquidity_share_pct,
            max_chunks=config.max_chunks,
        )

    def breakpoints(self, available_liquidity: Decimal | None = None) -> tuple[Decimal, Decimal]:
        large = self.large_breakpoint
        if available_liquidity is not None and self.max_liquidity_share_pct is not None:
            large = min(large, available_liquidity * self.max_liquidity_share_pct / HUNDRED)
        medium = min(self.medium_breakpoint, large)
        return medium, large

    def classify(self, notional: Decimal, available_liquidity: Decimal | None = None) -> CapitalTier:
        medium, large = self.breakpoints(available_liquidity)
        if notional < medium:
            return CapitalTier.SMALL
        if notional < large:
            return CapitalTier.MEDIUM
        return CapitalTier.LARGE

    def evaluate(self, notional: Decimal, available_liquidity: Decimal | None = None) -> TierDecision:
        tier = self.classify(notional, available_liquidity)
        if tier != CapitalTier.LARGE:
            return TierDecision(
                tier=tier,
                mode=ExecutionMode.single(),
                notional=notional,
                chunk_notional=notional,
                reason=f"{tier.value} tier: single-shot for {notional:.2f}",
            )

        _, large = self.breakpoints(available_liquidity)
        if large <= 0:
            chunks = self.max_chunks
        else:
            # floor + 1 keeps every chunk strictly below the large breakpoint,
            # so an exact multiple rounds the chunk count up.
            chunks = int((notional / large).to_integral_value(rounding=ROUND_FLOOR)) + 1

        if chunks > self.max_chunks:
            logger.warning(
                f"Split capped at {self.max_chunks} chunks | notional={notional:.2f} | wanted={chunks}"
            )
            chunks = self.max_chunks

        while chunks > 1 and notional / chunks < self.min_trade_notional:
            chunks -= 1

        if chunks > 1:
            mode = ExecutionMode.split(chunks)
            reason = f"LARGE tier: {mode} of ~{notional / chunks:.2f} for {notional:.2f}"
        else:
            mode = ExecutionMode.single()
            reason = (
                f"LARGE tier: cannot split {notional:.2f} into chunks of at least "
                f"{self.min_trade_notional}, executing single-shot"
            )
            logger.warning(f"⚠️ {reason}")
        decision = TierDecision(
            tier=tier,
            mode=mode,
            notional=notional,
            chunk_notional=notional / chunks,
            reason=reason,
        )
        logger.info(f"🧩 {decision.reason}")
        return decision
