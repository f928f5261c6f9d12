from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from itertools import count

from buybackbot.domain.models import (
    LiquidityParams,
    LiquidityResult,
    SwapParams,
    SwapQuote,
    SwapResult,
)

logger = logging.getLogger(__name__)


class SwapProvider(ABC):
    @abstractmethod
    def initialize(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_quote(self, params: SwapParams) -> SwapQuote:
        raise NotImplementedError

    @abstractmethod
    def swap(self, params: SwapParams) -> SwapResult:
        raise NotImplementedError

    def shutdown(self) -> None:
        return None


class LiquidityProvider(ABC):
    @abstractmethod
    def initialize(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_liquidity(self, params: LiquidityParams) -> LiquidityResult:
        raise NotImplementedError

    def get_pool_liquidity(self, token_asset: str, quote_asset: str) -> int | None:
        """Quote-side pool depth in lamports, or None when the pool cannot report it."""
        del token_asset, quote_asset
        return None

    def shutdown(self) -> None:
        return None


class TokenBurner(ABC):
    @abstractmethod
    def burn(self, owner_credential: str, asset_id: str, amount: int) -> str:
        """Burn ``amount`` smallest units of ``asset_id``; return the transaction reference."""
        raise NotImplementedError


def _mock_reference(prefix: str, seq: int, *parts: object) -> str:
    raw = ":".join(str(part) for part in (prefix, seq, *parts))
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"mock-{prefix}-{digest[:24]}"


class _InitializedMixin:
    _initialized = False

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(f"{type(self).__name__} not initialized")


class MockSwapProvider(_InitializedMixin, SwapProvider):
    """Fixed-rate swaps: ``rate`` output units per input unit, 1% fee."""

    def __init__(self, *, rate: int = 1000, price_impact_bps: int = 200) -> None:
        self.rate = rate
        self.price_impact_bps = price_impact_bps
        self._seq = count(1)
        self.swaps: list[SwapParams] = []

    def initialize(self) -> None:
        self._initialized = True
        logger.info("mock_swap_provider_initialized")

    def get_quote(self, params: SwapParams) -> SwapQuote:
        self._require_initialized()
        return SwapQuote(
            output_amount=params.amount_in * self.rate,
            price_impact_bps=self.price_impact_bps,
            fee=params.amount_in // 100,
        )

    def swap(self, params: SwapParams) -> SwapResult:
        quote = self.get_quote(params)
        if params.min_output_amount is not None and quote.output_amount < params.min_output_amount:
            raise RuntimeError(
                f"mock swap output {quote.output_amount} below minimum {params.min_output_amount}"
            )
        self.swaps.append(params)
        result = SwapResult(
            reference=_mock_reference("swap", next(self._seq), params.amount_in),
            amount_in=params.amount_in,
            amount_out=quote.output_amount,
            price_impact_bps=quote.price_impact_bps,
        )
        logger.info(
            "mock_swap_executed",
            extra={
                "extra": {
                    "amount_in": str(result.amount_in),
                    "amount_out": str(result.amount_out),
                    "reference": result.reference,
                }
            },
        )
        return result

    def shutdown(self) -> None:
        self._initialized = False


class MockLiquidityProvider(_InitializedMixin, LiquidityProvider):
    """LP tokens minted at 1% of the deposited units."""

    def __init__(self, *, pool_liquidity: int | None = None) -> None:
        self.pool_liquidity = pool_liquidity
        self._seq = count(1)
        self.deposits: list[LiquidityParams] = []

    def initialize(self) -> None:
        self._initialized = True
        logger.info("mock_liquidity_provider_initialized")

    def get_pool_liquidity(self, token_asset: str, quote_asset: str) -> int | None:
        del token_asset, quote_asset
        return self.pool_liquidity

    def add_liquidity(self, params: LiquidityParams) -> LiquidityResult:
        self._require_initialized()
        self.deposits.append(params)
        result = LiquidityResult(
            reference=_mock_reference("lp", next(self._seq), params.quote_amount),
            token_amount=params.token_amount,
            quote_amount=params.quote_amount,
            lp_tokens_received=(params.token_amount + params.quote_amount) // 100,
        )
        logger.info(
            "mock_liquidity_added",
            extra={
                "extra": {
                    "token_amount": str(result.token_amount),
                    "quote_amount": str(result.quote_amount),
                    "lp_tokens_received": str(result.lp_tokens_received),
                }
            },
        )
        return result

    def shutdown(self) -> None:
        self._initialized = False


class MockTokenBurner(TokenBurner):
    def __init__(self) -> None:
        self._seq = count(1)
        self.burned: list[tuple[str, int]] = []

    def burn(self, owner_credential: str, asset_id: str, amount: int) -> str:
        del owner_credential
        if amount <= 0:
            raise ValueError("burn amount must be > 0")
        self.burned.append((asset_id, amount))
        reference = _mock_reference("burn", next(self._seq), asset_id, amount)
        logger.info(
            "mock_tokens_burned",
            extra={"extra": {"asset_id": asset_id, "amount": str(amount), "reference": reference}},
        )
        return reference
