from __future__ import annotations

import pytest

from buybackbot.adapters.dex import MockLiquidityProvider, MockSwapProvider, MockTokenBurner
from buybackbot.domain.models import LiquidityParams, SwapParams


def _swap_params(**overrides: object) -> SwapParams:
    values: dict[str, object] = {
        "input_asset": "native",
        "output_asset": "token",
        "amount_in": 1_000,
        "max_slippage_bps": 300,
    }
    values.update(overrides)
    return SwapParams(**values)  # type: ignore[arg-type]


def test_swap_provider_requires_initialize() -> None:
    with pytest.raises(RuntimeError, match="not initialized"):
        MockSwapProvider().get_quote(_swap_params())


def test_quote_and_swap_at_fixed_rate() -> None:
    provider = MockSwapProvider(rate=10, price_impact_bps=50)
    provider.initialize()

    quote = provider.get_quote(_swap_params())
    result = provider.swap(_swap_params(min_output_amount=9_000))

    assert (quote.output_amount, quote.price_impact_bps, quote.fee) == (10_000, 50, 10)
    assert result.amount_out == 10_000
    assert result.reference.startswith("mock-swap-")


def test_swap_enforces_minimum_output() -> None:
    provider = MockSwapProvider(rate=10)
    provider.initialize()

    with pytest.raises(RuntimeError, match="below minimum"):
        provider.swap(_swap_params(min_output_amount=10_001))
    assert provider.swaps == []


def test_liquidity_provider_mints_lp_tokens() -> None:
    provider = MockLiquidityProvider()
    provider.initialize()

    result = provider.add_liquidity(
        LiquidityParams(
            token_asset="token", quote_asset="native", token_amount=900, quote_amount=100
        )
    )

    assert result.lp_tokens_received == 10
    assert provider.get_pool_liquidity("token", "native") is None


def test_burner_rejects_non_positive_amount() -> None:
    burner = MockTokenBurner()

    with pytest.raises(ValueError):
        burner.burn("key", "token", 0)

    reference = burner.burn("key", "token", 5)
    assert reference.startswith("mock-burn-")
    assert burner.burned == [("token", 5)]
