from __future__ import annotations

import hmac
import logging
import random
import threading
from abc import ABC, abstractmethod
from collections import Counter, OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from buybackbot.domain.models import NATIVE_SOL_MINT, FeeEvent
from buybackbot.services.errors import FeeSourceError
from buybackbot.services.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "x-webhook-secret"


class FeeSource(ABC):
    """Supplier of pending fee events.

    ``get_available_fees`` is safe to call repeatedly: until events are
    acknowledged they keep being returned, and once acknowledged they never
    come back.
    """

    def __init__(self) -> None:
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        self._initialized = True
        logger.info("fee_source_initialized", extra={"extra": {"source": type(self).__name__}})

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise FeeSourceError(f"{type(self).__name__} not initialized")

    @abstractmethod
    def get_available_fees(self) -> list[FeeEvent]:
        raise NotImplementedError

    @abstractmethod
    def acknowledge_fees(self, events: Iterable[FeeEvent]) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        self._initialized = False
        logger.info("fee_source_shutdown", extra={"extra": {"source": type(self).__name__}})


class _QueuedFeeSource(FeeSource):
    """Pending events kept in memory until acknowledged.

    Sources that may see the same event twice (API re-polls, webhook
    redelivery) enqueue through ``_enqueue_new``, which ignores keys that are
    already pending or were acknowledged recently.
    """

    acknowledged_memory = 10_000

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._pending: list[FeeEvent] = []
        self._acknowledged: OrderedDict[str, None] = OrderedDict()

    def _enqueue(self, event: FeeEvent) -> None:
        with self._lock:
            self._pending.append(event)

    def _enqueue_new(self, event: FeeEvent) -> bool:
        key = event.fee_key
        with self._lock:
            if key in self._acknowledged:
                return False
            if any(pending.fee_key == key for pending in self._pending):
                return False
            self._pending.append(event)
            return True

    def _remember_acknowledged(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._acknowledged[key] = None
            self._acknowledged.move_to_end(key)
        while len(self._acknowledged) > self.acknowledged_memory:
            self._acknowledged.popitem(last=False)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_available_fees(self) -> list[FeeEvent]:
        self._require_initialized()
        with self._lock:
            return list(self._pending)

    def acknowledge_fees(self, events: Iterable[FeeEvent]) -> None:
        self._require_initialized()
        to_remove = Counter(event.fee_key for event in events)
        acknowledged = sum(to_remove.values())
        with self._lock:
            self._remember_acknowledged(to_remove)
            remaining: list[FeeEvent] = []
            for event in self._pending:
                if to_remove[event.fee_key] > 0:
                    to_remove[event.fee_key] -= 1
                    continue
                remaining.append(event)
            self._pending = remaining
        logger.info(
            "fees_acknowledged",
            extra={"extra": {"source": type(self).__name__, "count": acknowledged}},
        )

    def shutdown(self) -> None:
        super().shutdown()
        with self._lock:
            self._pending = []
            self._acknowledged.clear()


class InMemoryFeeSource(_QueuedFeeSource):
    """Reference source: injected events, optionally a synthetic one per empty poll."""

    def __init__(
        self,
        *,
        generate_on_get: bool = False,
        base_amount: int = 100_000_000,
        max_variance: int = 50_000_000,
        asset_id: str = NATIVE_SOL_MINT,
        seed: int = 0,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__()
        self.generate_on_get = generate_on_get
        self.base_amount = base_amount
        self.max_variance = max_variance
        self.asset_id = asset_id
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._prng = random.Random(seed)
        self._generated = 0

    def inject_fee(self, event: FeeEvent) -> None:
        self._enqueue(event)
        logger.debug("fee_injected", extra={"extra": event.to_payload()})

    def get_available_fees(self) -> list[FeeEvent]:
        self._require_initialized()
        if self.generate_on_get and self.pending_count() == 0:
            self._generated += 1
            variance = self._prng.randint(0, self.max_variance) if self.max_variance > 0 else 0
            event = FeeEvent(
                amount=self.base_amount + variance,
                asset_id=self.asset_id,
                observed_at=self.now_provider(),
                source_ref=f"synthetic-{self._generated}",
                metadata={"source": "synthetic"},
            )
            self._enqueue(event)
            logger.info("synthetic_fee_generated", extra={"extra": event.to_payload()})
        return super().get_available_fees()


class FeePayload(BaseModel):
    """Wire shape shared by webhook pushes and fee API responses."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    amount: str = Field(min_length=1)
    mint: str = Field(min_length=1)
    timestamp: float = Field(gt=0)
    signature: str | None = None
    metadata: dict[str, object] | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, value: object) -> str:
        raw = str(value).strip() if isinstance(value, (str, int)) else ""
        if not raw.isdigit():
            raise ValueError("amount must be a non-negative integer string")
        return raw

    def to_fee_event(self) -> FeeEvent:
        return FeeEvent(
            amount=int(self.amount),
            asset_id=self.mint,
            observed_at=datetime.fromtimestamp(self.timestamp / 1000.0, tz=UTC),
            source_ref=self.signature,
            metadata=self.metadata,
        )


class WebhookPayloadError(ValueError):
    pass


def parse_fee_payload(body: object) -> FeeEvent:
    if not isinstance(body, Mapping):
        raise WebhookPayloadError("payload must be a JSON object")
    try:
        payload = FeePayload.model_validate(dict(body))
        return payload.to_fee_event()
    except (ValidationError, ValueError, OverflowError, OSError) as exc:
        raise WebhookPayloadError(str(exc)) from exc


class WebhookFeeSource(_QueuedFeeSource):
    """Queue fed by the webhook ingress; drained by the orchestrator.

    ``secret`` is the shared value callers must present in the
    ``X-Webhook-Secret`` header; ``handle_webhook_request`` checks it unless
    an explicit secret is passed.
    """

    def __init__(self, *, secret: str | None = None) -> None:
        super().__init__()
        self.secret = secret

    def receive_webhook_event(self, body: object) -> FeeEvent:
        self._require_initialized()
        event = parse_fee_payload(body)
        if not self._enqueue_new(event):
            logger.info("webhook_fee_duplicate", extra={"extra": {"key": event.fee_key}})
            return event
        logger.info(
            "webhook_fee_received",
            extra={"extra": {"amount": str(event.amount), "asset_id": event.asset_id}},
        )
        return event


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, object]


def handle_webhook_request(
    source: WebhookFeeSource,
    *,
    headers: Mapping[str, str],
    body: object,
    secret: str | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> WebhookResponse:
    """Transport-agnostic handler for ``POST /webhook/fees``."""

    if secret is None:
        secret = source.secret
    if secret:
        normalized = {str(key).lower(): value for key, value in headers.items()}
        provided = normalized.get(WEBHOOK_SECRET_HEADER) or ""
        if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
            logger.warning("webhook_invalid_secret")
            return WebhookResponse(401, {"error": "Unauthorized"})

    try:
        source.receive_webhook_event(body)
    except WebhookPayloadError as exc:
        logger.warning("webhook_invalid_payload", extra={"extra": {"error": str(exc)}})
        return WebhookResponse(400, {"error": "Invalid payload"})

    now = (now_provider or (lambda: datetime.now(UTC)))()
    return WebhookResponse(200, {"success": True, "timestamp": int(now.timestamp() * 1000)})


class _TransientFeeApiError(Exception):
    def __init__(self, message: str, *, retry_after: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ApiFeeSource(_QueuedFeeSource):
    """Polls a fee API page by page; fetched events stay pending until acknowledged."""

    def __init__(
        self,
        api_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        super().__init__()
        self.api_url = api_url
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep_fn = sleep_fn
        self._cursor: str | None = None
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    @property
    def cursor(self) -> str | None:
        return self._cursor

    def _fetch_page(self) -> dict[str, object]:
        params = {"cursor": self._cursor} if self._cursor else None
        try:
            response = self.client.get(self.api_url, params=params)
        except httpx.TransportError as exc:
            raise _TransientFeeApiError(f"fee api transport error: {type(exc).__name__}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientFeeApiError(
                f"fee api status {response.status_code}",
                retry_after=response.headers.get("Retry-After"),
            )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise FeeSourceError("fee api response must be a JSON object")
        return data

    def get_available_fees(self) -> list[FeeEvent]:
        self._require_initialized()
        try:
            data = retry_with_backoff(
                self._fetch_page,
                policy=self.retry_policy,
                retry_on=(_TransientFeeApiError,),
                label="fee_api_poll",
                sleep_fn=self._sleep_fn,
                retry_after_getter=lambda exc: getattr(exc, "retry_after", None),
            )
        except (_TransientFeeApiError, httpx.HTTPStatusError) as exc:
            raise FeeSourceError(f"fee api poll failed: {exc}") from exc

        raw_fees = data.get("fees") or []
        if not isinstance(raw_fees, list):
            raise FeeSourceError("fee api 'fees' must be a list")
        try:
            fetched = [parse_fee_payload(item) for item in raw_fees]
        except WebhookPayloadError as exc:
            raise FeeSourceError(f"fee api returned malformed fee: {exc}") from exc
        added = 0
        for event in fetched:
            if self._enqueue_new(event):
                added += 1
            else:
                logger.debug("fee_api_duplicate_skipped", extra={"extra": {"key": event.fee_key}})
        next_cursor = data.get("cursor")
        if isinstance(next_cursor, str) and next_cursor:
            self._cursor = next_cursor
        logger.info(
            "fee_api_polled",
            extra={
                "extra": {
                    "fetched": len(fetched),
                    "added": added,
                    "pending": self.pending_count(),
                }
            },
        )
        return super().get_available_fees()

    def shutdown(self) -> None:
        super().shutdown()
        self.client.close()
