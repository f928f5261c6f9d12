from __future__ import annotations

import logging
from dataclasses import dataclass

from buybackbot.adapters.dex import (
    LiquidityProvider,
    MockLiquidityProvider,
    MockSwapProvider,
    MockTokenBurner,
    SwapProvider,
    TokenBurner,
)
from buybackbot.config import Settings
from buybackbot.services.errors import ConfigurationError
from buybackbot.services.fee_sources import (
    ApiFeeSource,
    FeeSource,
    InMemoryFeeSource,
    WebhookFeeSource,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DexComponents:
    swap_provider: SwapProvider
    liquidity_provider: LiquidityProvider
    token_burner: TokenBurner


def build_fee_source(settings: Settings) -> FeeSource:
    source: FeeSource
    if settings.fee_source_type == "webhook":
        source = WebhookFeeSource(
            secret=settings.webhook_secret.get_secret_value() if settings.webhook_secret else None
        )
    elif settings.fee_source_type == "api":
        if not settings.fee_api_url:
            raise ConfigurationError("FEE_API_URL required for api fee source")
        source = ApiFeeSource(
            settings.fee_api_url,
            api_key=settings.fee_api_key.get_secret_value() if settings.fee_api_key else None,
        )
    else:
        source = InMemoryFeeSource(
            generate_on_get=True,
            base_amount=settings.mock_fee_base_lamports,
            asset_id=settings.native_asset_id,
        )
    logger.info(
        "fee_source_selected",
        extra={"extra": {"fee_source_type": settings.fee_source_type}},
    )
    return source


def build_dex(settings: Settings) -> DexComponents:
    provider = settings.dex_provider.strip().lower()
    if provider != "mock":
        raise ConfigurationError(
            f"DEX_PROVIDER={settings.dex_provider!r} has no adapter in this build; use 'mock'"
        )
    if not settings.dry_run:
        logger.warning(
            "mock_dex_live_mode",
            extra={"extra": {"dex_provider": provider, "reason": "no real adapter configured"}},
        )
    return DexComponents(
        swap_provider=MockSwapProvider(),
        liquidity_provider=MockLiquidityProvider(),
        token_burner=MockTokenBurner(),
    )
