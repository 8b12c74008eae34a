"""External data gateway.

This module wraps the two upstream services the game depends on:

- ``BlockExplorerClient`` reads block data from a mempool.space-compatible
  REST API and resolves a block height to its transaction count.
- ``AnnouncementClient`` posts round announcements to the Warpcast casts API.

Both clients share the same mechanics: a lazily created ``httpx.AsyncClient``,
bounded retry with backoff from :mod:`bitcoin_blocks.services.retry`, a
per-attempt timeout, a capped response reader and request metrics.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx

from bitcoin_blocks.core.security import is_admin
from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.services.errors import (
    UnauthorizedError,
    UpstreamUnavailableError,
    ValidationError,
)
from bitcoin_blocks.services.rate_limit import RateLimiter, get_rate_limiter
from bitcoin_blocks.services.retry import (
    RetryExhaustedError,
    RetryPolicy,
    SleepFn,
    TransientError,
    retry_async,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ANNOUNCEMENT_LENGTH = 320
MAX_ANNOUNCEMENT_EMBEDS = 2
ANNOUNCEMENT_WINDOW_SECONDS = 3600

_BLOCK_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class ResponseTooLargeError(TransientError):
    """Upstream body exceeded the configured ceiling."""


class UnexpectedStatusError(TransientError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status_code: int, path: str) -> None:
        super().__init__(f"{path} responded with {status_code}")
        self.status_code = status_code


@dataclass
class GatewayMetrics:
    """Request counters for one upstream."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    max_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(self, response_time: float, success: bool, error_type: str | None) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.max_response_time = max(self.max_response_time, response_time)
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "average_response_time": self.get_average_response_time(),
            "max_response_time": self.max_response_time,
            "errors_by_type": dict(self.error_counts_by_type),
        }


async def read_capped(response: httpx.Response, limit: int) -> bytes:
    """Read a streamed response body, refusing anything larger than ``limit`` bytes."""
    declared = response.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise ResponseTooLargeError(f"Response declares {declared} bytes (limit {limit})")

    body = bytearray()
    async for chunk in response.aiter_bytes():
        body.extend(chunk)
        if len(body) > limit:
            raise ResponseTooLargeError(f"Response exceeded {limit} bytes")
    return bytes(body)


def _parse_json(body: bytes, what: str) -> Any:
    try:
        return json.loads(body)
    except ValueError as exc:
        raise TransientError(f"Malformed JSON in {what}") from exc


class _HttpGateway:
    """Shared lazy client, capped single-attempt requests and metrics."""

    def __init__(
        self,
        *,
        base_url: str,
        max_response_bytes: int,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._base_url = base_url
        self._max_response_bytes = max_response_bytes
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._metrics = GatewayMetrics()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                # Per-attempt deadlines come from the retry policy.
                self._client = httpx.AsyncClient(
                    base_url=self._base_url,
                    timeout=httpx.Timeout(None),
                    transport=self._transport,
                )
        return self._client

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        json_data: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> bytes:
        client = await self._ensure_client()
        start_time = time.monotonic()
        success = False
        error_type: str | None = None

        try:
            async with client.stream(method, path, json=json_data, headers=headers) as response:
                if not response.is_success:
                    error_type = f"http_{response.status_code}"
                    raise UnexpectedStatusError(response.status_code, path)
                body = await read_capped(response, self._max_response_bytes)
                success = True
                return body
        except ResponseTooLargeError:
            error_type = "response_too_large"
            raise
        except httpx.HTTPError:
            error_type = "network_error"
            raise
        finally:
            self._metrics.record_request(time.monotonic() - start_time, success, error_type)

    def get_metrics(self) -> dict[str, Any]:
        """Return request metrics for health reporting."""
        return self._metrics.as_dict()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


@dataclass(frozen=True)
class ExplorerConfig:
    """Immutable configuration for block explorer access."""

    base_url: str
    timeout_seconds: float
    max_attempts: int
    backoff_seconds: float
    max_response_bytes: int
    block_cache_seconds: float
    recent_cache_seconds: float

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_seconds,
            timeout=self.timeout_seconds,
        )


@dataclass(frozen=True)
class BlockInfo:
    """Resolved block summary."""

    height: int
    block_hash: str
    tx_count: int
    timestamp: int | None = None


def load_explorer_config() -> ExplorerConfig:
    """Build explorer configuration from global settings."""

    return ExplorerConfig(
        base_url=settings.explorer_base_url,
        timeout_seconds=float(settings.explorer_timeout_seconds),
        max_attempts=settings.explorer_max_attempts,
        backoff_seconds=float(settings.explorer_backoff_seconds),
        max_response_bytes=settings.explorer_max_response_bytes,
        block_cache_seconds=float(settings.explorer_block_cache_seconds),
        recent_cache_seconds=float(settings.explorer_recent_cache_seconds),
    )


class BlockExplorerClient(_HttpGateway):
    """Read-only client for a mempool.space-compatible explorer."""

    def __init__(
        self,
        config: ExplorerConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or load_explorer_config()
        super().__init__(
            base_url=self.config.base_url,
            max_response_bytes=self.config.max_response_bytes,
            transport=transport,
            sleep=sleep,
        )
        self._clock = clock
        self._cache: dict[object, tuple[float, Any]] = {}

    def _cache_get(self, key: object) -> Any | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at < self._clock():
            self._cache.pop(key, None)
            return None
        return value

    def _cache_put(self, key: object, value: Any, ttl: float) -> None:
        if ttl > 0:
            self._cache[key] = (self._clock() + ttl, value)

    async def _call(self, label: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await retry_async(
                operation,
                self.config.retry_policy,
                label=f"explorer {label}",
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            raise UpstreamUnavailableError(
                f"Block explorer unavailable ({label}): {exc.last_error}",
                last_error=exc.last_error,
            ) from exc

    async def _fetch_block_hash(self, height: int) -> str:
        body = await self._send_once("GET", f"/api/block-height/{height}")
        text = body.decode("utf-8", errors="replace").strip()
        if not _BLOCK_HASH_RE.match(text):
            raise TransientError(f"Malformed block hash for height {height}")
        return text.lower()

    async def _fetch_block(self, block_hash: str, height: int) -> BlockInfo:
        payload = _parse_json(await self._send_once("GET", f"/api/block/{block_hash}"), "block")
        if not isinstance(payload, dict):
            raise TransientError("Block payload is not an object")

        reported_height = payload.get("height", height)
        if reported_height != height:
            raise TransientError(f"Explorer returned height {reported_height} for {height}")

        tx_count = payload.get("tx_count")
        if not isinstance(tx_count, int) or isinstance(tx_count, bool):
            txids = _parse_json(
                await self._send_once("GET", f"/api/block/{block_hash}/txids"), "txids"
            )
            if not isinstance(txids, list):
                raise TransientError("Transaction id payload is not a list")
            tx_count = len(txids)

        timestamp = payload.get("timestamp")
        return BlockInfo(
            height=height,
            block_hash=block_hash,
            tx_count=tx_count,
            timestamp=timestamp if isinstance(timestamp, int) else None,
        )

    async def resolve_block(self, height: int) -> BlockInfo:
        """Return hash and transaction count for the block at ``height``.

        The hash lookup and the block fetch share one retry budget; a hash
        resolved by an earlier attempt is reused by the next one.

        Raises:
            ValidationError: for a non-positive height.
            UpstreamUnavailableError: when the explorer keeps failing.
        """
        if height <= 0:
            raise ValidationError("Block height must be positive")

        cached = self._cache_get(("block", height))
        if cached is not None:
            return cached

        block_hash: str | None = None

        async def attempt() -> BlockInfo:
            nonlocal block_hash
            if block_hash is None:
                block_hash = await self._fetch_block_hash(height)
            return await self._fetch_block(block_hash, height)

        info = await self._call(f"block {height}", attempt)
        self._cache_put(("block", height), info, self.config.block_cache_seconds)
        return info

    async def _fetch_tip_height(self) -> int:
        text = (await self._send_once("GET", "/api/blocks/tip/height")).decode().strip()
        if not text.isdigit():
            raise TransientError("Malformed tip height")
        return int(text)

    async def tip_height(self) -> int:
        """Return the height of the most recent block known to the explorer."""
        return await self._call("tip height", self._fetch_tip_height)

    async def _fetch_recent(self) -> list[BlockInfo]:
        payload = _parse_json(await self._send_once("GET", "/api/blocks"), "blocks")
        if not isinstance(payload, list):
            raise TransientError("Blocks payload is not a list")
        blocks = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                blocks.append(
                    BlockInfo(
                        height=int(item["height"]),
                        block_hash=str(item["id"]),
                        tx_count=int(item["tx_count"]),
                        timestamp=item.get("timestamp"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed block entry: %r", item)
        return blocks

    async def recent_blocks(self, limit: int = 10) -> list[BlockInfo]:
        """Return the most recent blocks, newest first."""
        cached = self._cache_get("recent")
        if cached is None:
            cached = await self._call("recent blocks", self._fetch_recent)
            self._cache_put("recent", cached, self.config.recent_cache_seconds)
        return list(cached[: max(1, limit)])

    async def health_check(self) -> dict[str, Any]:
        """Probe the explorer and report reachability with metrics."""
        try:
            tip = await self.tip_height()
        except UpstreamUnavailableError as exc:
            return {"healthy": False, "error": str(exc), "metrics": self.get_metrics()}
        return {"healthy": True, "tip_height": tip, "metrics": self.get_metrics()}


@dataclass(frozen=True)
class AnnouncementConfig:
    """Immutable configuration for the social announcement feed."""

    enabled: bool
    base_url: str
    api_key: str | None
    timeout_seconds: float
    max_attempts: int
    backoff_seconds: float
    max_response_bytes: int
    rate_limit_per_hour: int

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.api_key)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_seconds,
            timeout=self.timeout_seconds,
        )


@dataclass(frozen=True)
class AnnouncementResult:
    """Outcome of a best-effort announcement."""

    success: bool
    cast_hash: str | None = None
    error: str | None = None
    attempts: int = 0


def load_announcement_config() -> AnnouncementConfig:
    """Build announcement configuration from global settings."""

    return AnnouncementConfig(
        enabled=settings.announce_enabled,
        base_url=settings.announce_base_url,
        api_key=settings.announce_api_key,
        timeout_seconds=float(settings.announce_timeout_seconds),
        max_attempts=settings.announce_max_attempts,
        backoff_seconds=float(settings.announce_backoff_seconds),
        max_response_bytes=settings.announce_max_response_bytes,
        rate_limit_per_hour=settings.announce_rate_limit_per_hour,
    )


class AnnouncementClient(_HttpGateway):
    """Posts casts on behalf of administrators; never raises on upstream failure."""

    def __init__(
        self,
        config: AnnouncementConfig | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.config = config or load_announcement_config()
        super().__init__(
            base_url=self.config.base_url,
            max_response_bytes=self.config.max_response_bytes,
            transport=transport,
            sleep=sleep,
        )
        self._rate_limiter = rate_limiter

    @property
    def enabled(self) -> bool:
        return self.config.active

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    async def _post_cast_once(self, body: dict[str, Any]) -> dict[str, Any]:
        raw = await self._send_once(
            "POST",
            "/v2/casts",
            json_data=body,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )
        payload = _parse_json(raw, "cast response") if raw else {}
        return payload if isinstance(payload, dict) else {}

    async def post_announcement(
        self,
        message: str,
        author: str,
        embeds: Sequence[str] | None = None,
    ) -> AnnouncementResult:
        """Post ``message`` to the feed as ``author``.

        Raises:
            ValidationError: for an empty or over-long message or too many embeds.
            UnauthorizedError: if ``author`` is not an administrator.
        """
        if not message or not message.strip():
            raise ValidationError("Announcement message is required")
        if len(message) > MAX_ANNOUNCEMENT_LENGTH:
            raise ValidationError(
                f"Announcement exceeds {MAX_ANNOUNCEMENT_LENGTH} characters"
            )
        embed_list = [str(url) for url in embeds or []]
        if len(embed_list) > MAX_ANNOUNCEMENT_EMBEDS:
            raise ValidationError(f"At most {MAX_ANNOUNCEMENT_EMBEDS} embeds are allowed")
        if not is_admin(author):
            raise UnauthorizedError("Only administrators may post announcements")

        if not self.enabled:
            logger.info("Announcements disabled; skipping post by %s", author)
            return AnnouncementResult(success=False, error="disabled")

        if not self.rate_limiter.hit(
            f"announce:{author}",
            self.config.rate_limit_per_hour,
            ANNOUNCEMENT_WINDOW_SECONDS,
        ):
            logger.warning("Announcement rate limit reached for %s", author)
            return AnnouncementResult(success=False, error="rate_limited")

        body = {"text": message, "embeds": embed_list}
        try:
            payload = await retry_async(
                lambda: self._post_cast_once(body),
                self.config.retry_policy,
                label="announcement",
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            logger.error("Announcement failed after %d attempts: %s", exc.attempts, exc.last_error)
            return AnnouncementResult(
                success=False,
                error=str(exc.last_error or exc),
                attempts=exc.attempts,
            )

        result = payload.get("result")
        cast = result.get("cast") if isinstance(result, dict) else None
        cast_hash = cast.get("hash") if isinstance(cast, dict) else None
        logger.info("Announcement posted by %s (cast %s)", author, cast_hash)
        return AnnouncementResult(success=True, cast_hash=cast_hash)


class _BlockExplorerSingleton:
    """Singleton wrapper for BlockExplorerClient."""

    _instance: BlockExplorerClient | None = None

    @classmethod
    def get_instance(cls) -> BlockExplorerClient:
        if cls._instance is None:
            cls._instance = BlockExplorerClient()
        return cls._instance


class _AnnouncementClientSingleton:
    """Singleton wrapper for AnnouncementClient."""

    _instance: AnnouncementClient | None = None

    @classmethod
    def get_instance(cls) -> AnnouncementClient:
        if cls._instance is None:
            cls._instance = AnnouncementClient()
        return cls._instance


def get_block_explorer() -> BlockExplorerClient:
    """Return a singleton block explorer client."""
    return _BlockExplorerSingleton.get_instance()


def get_announcement_client() -> AnnouncementClient:
    """Return a singleton announcement client."""
    return _AnnouncementClientSingleton.get_instance()
