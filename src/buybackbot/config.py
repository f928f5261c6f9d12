from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from buybackbot.domain.models import NATIVE_SOL_MINT, AllocationConfig
from buybackbot.risk.circuit_breaker import CircuitBreakerOptions
from buybackbot.risk.manager import RiskParameters

_PCT_SUM_TOLERANCE = Decimal("0.01")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    fee_source_type: Literal["mock", "webhook", "api"] = Field(
        default="mock", alias="FEE_SOURCE_TYPE"
    )
    fee_api_url: str | None = Field(default=None, alias="FEE_API_URL")
    fee_api_key: SecretStr | None = Field(default=None, alias="FEE_API_KEY")
    webhook_secret: SecretStr | None = Field(default=None, alias="WEBHOOK_SECRET")
    mock_fee_base_lamports: int = Field(default=100_000_000, alias="MOCK_FEE_BASE_LAMPORTS")

    native_asset_id: str = Field(default=NATIVE_SOL_MINT, alias="NATIVE_ASSET_ID")
    token_mint_address: str | None = Field(default=None, alias="TOKEN_MINT_ADDRESS")
    token_decimals: int = Field(default=9, alias="TOKEN_DECIMALS")
    operator_credential: SecretStr | None = Field(default=None, alias="OPERATOR_CREDENTIAL")
    dex_provider: str = Field(default="mock", alias="DEX_PROVIDER")

    epoch_interval_seconds: float = Field(default=1800.0, alias="EPOCH_INTERVAL_SECONDS")
    dry_run: bool = Field(default=True, alias="DRY_RUN")

    buyback_pct: Decimal = Field(default=Decimal("60"), alias="BUYBACK_PCT")
    add_lp_pct: Decimal = Field(default=Decimal("40"), alias="ADD_LP_PCT")
    treasury_pct: Decimal = Field(default=Decimal("0"), alias="TREASURY_PCT")
    burn_pct_of_buyback: Decimal = Field(default=Decimal("25"), alias="BURN_PCT_OF_BUYBACK")

    max_budget_per_epoch_sol: Decimal = Field(
        default=Decimal("1.0"), alias="MAX_BUDGET_PER_EPOCH_SOL"
    )
    min_interval_seconds: float = Field(default=900.0, alias="MIN_INTERVAL_SECONDS")
    max_slippage_bps: int = Field(default=300, alias="MAX_SLIPPAGE_BPS")
    max_price_impact_bps: int = Field(default=500, alias="MAX_PRICE_IMPACT_BPS")
    min_liquidity_threshold_sol: Decimal = Field(
        default=Decimal("10.0"), alias="MIN_LIQUIDITY_THRESHOLD_SOL"
    )
    swap_slippage_bps: int = Field(default=300, alias="SWAP_SLIPPAGE_BPS")

    circuit_breaker_failure_threshold: int = Field(
        default=3, alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD"
    )
    circuit_breaker_timeout_seconds: float = Field(
        default=3600.0, alias="CIRCUIT_BREAKER_TIMEOUT_SECONDS"
    )

    reports_dir: str = Field(default="./reports", alias="REPORTS_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("buyback_pct", "add_lp_pct", "treasury_pct", "burn_pct_of_buyback")
    def validate_pct(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 100:
            raise ValueError("percentages must be within [0, 100]")
        return value

    @field_validator("epoch_interval_seconds")
    def validate_epoch_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("EPOCH_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("min_interval_seconds", "circuit_breaker_timeout_seconds")
    def validate_non_negative_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("interval seconds must be >= 0")
        return value

    @field_validator("max_slippage_bps", "max_price_impact_bps", "swap_slippage_bps")
    def validate_bps(cls, value: int) -> int:
        if value < 1 or value > 10_000:
            raise ValueError("bps values must be within [1, 10000]")
        return value

    @field_validator("max_budget_per_epoch_sol")
    def validate_budget(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("MAX_BUDGET_PER_EPOCH_SOL must be > 0")
        return value

    @field_validator("min_liquidity_threshold_sol")
    def validate_liquidity_threshold(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("MIN_LIQUIDITY_THRESHOLD_SOL must be >= 0")
        return value

    @field_validator("token_decimals")
    def validate_token_decimals(cls, value: int) -> int:
        if value < 0 or value > 18:
            raise ValueError("TOKEN_DECIMALS must be within [0, 18]")
        return value

    @field_validator("circuit_breaker_failure_threshold")
    def validate_failure_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CIRCUIT_BREAKER_FAILURE_THRESHOLD must be >= 1")
        return value

    @model_validator(mode="after")
    def validate_allocation_sum(self) -> Settings:
        total = self.buyback_pct + self.add_lp_pct + self.treasury_pct
        if abs(total - Decimal(100)) > _PCT_SUM_TOLERANCE:
            raise ValueError(
                f"Fee allocation must sum to 100%. Got: {total}% "
                f"(buyback: {self.buyback_pct}%, add_lp: {self.add_lp_pct}%, "
                f"treasury: {self.treasury_pct}%)"
            )
        if self.fee_source_type == "api" and not self.fee_api_url:
            raise ValueError("FEE_API_URL required for api fee source")
        if not self.dry_run:
            if not self.token_mint_address:
                raise ValueError("TOKEN_MINT_ADDRESS required when DRY_RUN=false")
            if self.operator_credential is None:
                raise ValueError("OPERATOR_CREDENTIAL required when DRY_RUN=false")
        return self

    def allocation_config(self) -> AllocationConfig:
        return AllocationConfig(
            buyback_pct=self.buyback_pct,
            add_liquidity_pct=self.add_lp_pct,
            treasury_pct=self.treasury_pct,
            burn_pct_of_buyback=self.burn_pct_of_buyback,
        )

    def risk_parameters(self) -> RiskParameters:
        return RiskParameters.from_sol(
            max_budget_per_epoch_sol=self.max_budget_per_epoch_sol,
            min_interval_seconds=self.min_interval_seconds,
            max_slippage_bps=self.max_slippage_bps,
            max_price_impact_bps=self.max_price_impact_bps,
            min_liquidity_threshold_sol=self.min_liquidity_threshold_sol,
        )

    def circuit_breaker_options(self) -> CircuitBreakerOptions:
        return CircuitBreakerOptions(
            failure_threshold=self.circuit_breaker_failure_threshold,
            timeout_seconds=self.circuit_breaker_timeout_seconds,
        )

    def target_asset_id(self) -> str:
        return self.token_mint_address or "UNSET_TOKEN_MINT"
