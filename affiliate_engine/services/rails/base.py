"""Common capability interface for payout rails.

The dispatcher and the payout account registry only talk to `PayoutRail`;
readiness flags, error shapes and idempotency headers stay inside each
adapter.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from affiliate_engine.errors import PermanentFailure, TransientFailure, UserInputError
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class RailStatus:
    """Readiness normalized to the two booleans the dispatcher cares about."""
    connected: bool
    payouts_enabled: bool
    # not_started | pending | completed | failed
    onboarding_status: str = "pending"
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class OnboardingLink:
    url: Optional[str]
    external_account_id: Optional[str] = None


@dataclass
class OAuthGrant:
    external_account_id: str
    access_token: str
    refresh_token: Optional[str] = None


@dataclass
class TransferRequest:
    commission_id: str
    amount_minor: int
    currency: str
    destination: str
    idempotency_key: str
    description: str = ""

    @property
    def transfer_group(self) -> str:
        return f"commission_{self.commission_id}"


@dataclass
class TransferResult:
    transfer_id: str
    amount_minor: int
    currency: str
    raw: dict[str, Any] = field(default_factory=dict)


class PayoutRail(ABC):
    """One external payout provider."""

    name: str = ""
    automated: bool = True
    supports_lookup: bool = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Tests inject httpx.MockTransport here
        self._transport = transport

    @abstractmethod
    async def start_onboarding(self, affiliate, account, state: str) -> OnboardingLink:
        """Begin connecting an account; returns where to send the affiliate."""

    @abstractmethod
    async def check_ready(self, account) -> RailStatus:
        """Ask the rail whether the stored account can receive funds now."""

    @abstractmethod
    async def transfer(self, request: TransferRequest) -> TransferResult:
        """Move funds. Raises TransientFailure or PermanentFailure."""

    async def lookup_transfer(self, request: TransferRequest) -> Optional[TransferResult]:
        """Find a transfer already made for this idempotency key, if the rail can tell."""
        return None

    async def complete_onboarding(self, account, params: dict[str, str]) -> OAuthGrant:
        raise UserInputError(f"{self.name} has no onboarding callback")

    # ── HTTP plumbing ────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.PAYOUT_RAIL_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue one request; transport problems become TransientFailure."""
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            # The rail may have acted on a request whose response we never saw
            connect_phase = isinstance(e, (httpx.ConnectTimeout, httpx.PoolTimeout))
            logger.warning("%s %s %s timed out", self.name, method, url)
            raise TransientFailure(
                f"{self.name} timed out", rail_code="timeout", outcome_unknown=not connect_phase,
            )
        except httpx.ConnectError as e:
            raise TransientFailure(f"{self.name} unreachable: {e}", rail_code="network_error")
        except httpx.TransportError as e:
            raise TransientFailure(
                f"{self.name} connection failed: {e}", rail_code="network_error", outcome_unknown=True,
            )

    def _raise_for_response(self, resp: httpx.Response, transient_codes: frozenset = frozenset()) -> None:
        """5xx/429/409 and listed rail codes are transient, other 4xx permanent."""
        if resp.status_code < 400:
            return
        code, message = self._error_details(resp)
        if resp.status_code >= 500 or resp.status_code in (409, 429) or code in transient_codes:
            raise TransientFailure(f"{self.name}: {message}", rail_code=code or str(resp.status_code))
        raise PermanentFailure(f"{self.name}: {message}", rail_code=code or str(resp.status_code))

    def _error_details(self, resp: httpx.Response) -> tuple[Optional[str], str]:
        try:
            body = resp.json()
        except ValueError:
            return None, f"HTTP {resp.status_code}"
        if not isinstance(body, dict):
            return None, f"HTTP {resp.status_code}"
        return body.get("error") or None, body.get("message") or f"HTTP {resp.status_code}"
