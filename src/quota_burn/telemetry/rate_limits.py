"""Rate-limit probe: a minimal authenticated API call whose response headers carry quota state."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import httpx

from quota_burn.telemetry.snapshot import (
    HTTP_TOO_MANY_REQUESTS,
    RateLimitSnapshot,
    UsageWindow,
)

logger = logging.getLogger(__name__)

HEADER_PREFIX = "anthropic-ratelimit-unified-"
ANTHROPIC_VERSION = "2023-06-01"
OAUTH_BETA = "oauth-2025-04-20"

WINDOW_LABELS = {
    "5h": "5-hour window",
    "7d": "7-day window",
    "7d_sonnet": "7-day Sonnet",
    "overage": "Overage",
}


class CredentialsError(RuntimeError):
    """Raised when the CLI OAuth credentials are missing or unusable."""


@dataclass(slots=True)
class OAuthCredentials:
    """Subset of the CLI credentials file used by the probe."""

    access_token: str
    expires_at_ms: int | None = None
    subscription_type: str | None = None
    rate_limit_tier: str | None = None

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at_ms is not None and now_ms > self.expires_at_ms


def load_credentials(path: Path) -> OAuthCredentials:
    """Read OAuth credentials written by the CLI's login flow."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise CredentialsError(f"Credentials file not found: {path}") from error
    except (OSError, ValueError) as error:
        raise CredentialsError(f"Unreadable credentials file {path}: {error}") from error

    oauth = raw.get("claudeAiOauth") if isinstance(raw, dict) else None
    if not isinstance(oauth, dict) or not oauth.get("accessToken"):
        raise CredentialsError("No OAuth access token found in credentials")
    expires_at = oauth.get("expiresAt")
    return OAuthCredentials(
        access_token=str(oauth["accessToken"]),
        expires_at_ms=int(expires_at) if isinstance(expires_at, (int, float)) else None,
        subscription_type=oauth.get("subscriptionType"),
        rate_limit_tier=oauth.get("rateLimitTier"),
    )


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitSnapshot:
    """Turn `anthropic-ratelimit-unified-*` headers into windows and meta fields.

    Window keys look like `5h-utilization`, `5h-status`, `7d-reset`; keys without a
    window prefix (`status`, `representative-claim`, `reset`, `fallback-percentage`)
    describe the response as a whole.
    """

    snapshot = RateLimitSnapshot()
    for name, value in headers.items():
        key = name.lower()
        if not key.startswith(HEADER_PREFIX):
            continue
        key = key[len(HEADER_PREFIX) :]

        if key == "status":
            snapshot.overall_status = value
            continue
        if key == "representative-claim":
            snapshot.representative_claim = value
            continue
        if key == "fallback-percentage":
            snapshot.fallback_percentage = _parse_float(value)
            continue
        if key == "reset":
            snapshot.reset_at = _parse_int(value)
            continue

        window_name, _, metric = key.rpartition("-")
        if not window_name:
            continue
        window = snapshot.windows.setdefault(window_name, UsageWindow())
        if metric == "utilization":
            window.utilization = _parse_float(value)
        elif metric == "reset":
            window.reset_at = _parse_int(value)
        elif metric == "status":
            window.status = value
    return snapshot


class RateLimitProbe:
    """Fetch quota state with a 1-token completion using the CLI's OAuth token."""

    def __init__(
        self,
        *,
        credentials_path: Path,
        api_base_url: str,
        model: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.credentials_path = credentials_path
        self.model = model
        self._client = httpx.Client(
            base_url=api_base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            transport=transport,
        )

    def fetch(self) -> RateLimitSnapshot | None:
        try:
            credentials = load_credentials(self.credentials_path)
        except CredentialsError as error:
            logger.error("Failed to fetch rate limits: %s", error)
            return None
        if credentials.is_expired(int(time.time() * 1000)):
            logger.warning("OAuth token may be expired. Run the CLI once to refresh it.")

        try:
            response = self._client.post(
                "/v1/messages",
                headers={
                    "anthropic-version": ANTHROPIC_VERSION,
                    "anthropic-beta": OAUTH_BETA,
                    "Authorization": f"Bearer {credentials.access_token}",
                },
                json={
                    "model": self.model,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "."}],
                },
            )
        except httpx.TimeoutException:
            logger.error("Timeout fetching rate limits from %s", self._client.base_url)
            return None
        except httpx.HTTPError as error:
            logger.error("Failed to fetch rate limits: %s", error)
            return None

        snapshot = parse_rate_limit_headers(response.headers)
        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            snapshot.overall_status = "RATE LIMITED"
        elif response.status_code != httpx.codes.OK:
            logger.error("API error %s: %s", response.status_code, response.text[:500])
            return None

        snapshot.status_code = response.status_code
        snapshot.subscription = credentials.subscription_type
        snapshot.tier = credentials.rate_limit_tier
        return snapshot

    def close(self) -> None:
        self._client.close()


def _parse_float(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def _parse_int(value: str) -> int | None:
    try:
        return int(float(value))
    except ValueError:
        return None
