from __future__ import annotations

import pytest

from buybackbot.adapters.dex import MockLiquidityProvider, MockSwapProvider, MockTokenBurner
from buybackbot.config import Settings
from buybackbot.services.component_factory import build_dex, build_fee_source
from buybackbot.services.errors import ConfigurationError
from buybackbot.services.fee_sources import ApiFeeSource, InMemoryFeeSource, WebhookFeeSource


def test_mock_fee_source_generates_synthetic_fees() -> None:
    source = build_fee_source(Settings(MOCK_FEE_BASE_LAMPORTS="5000"))

    assert isinstance(source, InMemoryFeeSource)
    assert source.generate_on_get is True
    assert source.base_amount == 5000


def test_webhook_fee_source_selected() -> None:
    source = build_fee_source(Settings(FEE_SOURCE_TYPE="webhook", WEBHOOK_SECRET="hook-secret"))

    assert isinstance(source, WebhookFeeSource)
    assert source.secret == "hook-secret"


def test_webhook_fee_source_without_secret() -> None:
    source = build_fee_source(Settings(FEE_SOURCE_TYPE="webhook"))

    assert isinstance(source, WebhookFeeSource)
    assert source.secret is None


def test_api_fee_source_selected() -> None:
    source = build_fee_source(
        Settings(FEE_SOURCE_TYPE="api", FEE_API_URL="https://fees.example", FEE_API_KEY="k")
    )

    assert isinstance(source, ApiFeeSource)
    assert source.client.headers["Authorization"] == "Bearer k"
    source.client.close()


def test_build_dex_returns_mocks() -> None:
    dex = build_dex(Settings())

    assert isinstance(dex.swap_provider, MockSwapProvider)
    assert isinstance(dex.liquidity_provider, MockLiquidityProvider)
    assert isinstance(dex.token_burner, MockTokenBurner)


def test_build_dex_rejects_unknown_provider() -> None:
    with pytest.raises(ConfigurationError, match="raydium"):
        build_dex(Settings(DEX_PROVIDER="raydium"))
