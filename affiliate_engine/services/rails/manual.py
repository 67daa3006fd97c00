"""Manual rail: an operator pays by bank transfer or PIX and records the proof."""
from __future__ import annotations

from affiliate_engine.errors import PermanentFailure
from affiliate_engine.services.rails.base import (
    OnboardingLink, PayoutRail, RailStatus, TransferRequest, TransferResult,
)


class ManualRail(PayoutRail):
    name = "manual"
    automated = False

    async def start_onboarding(self, affiliate, account, state: str) -> OnboardingLink:
        # Nothing to redirect to: the affiliate submits pix key / bank details directly
        return OnboardingLink(url=None)

    async def check_ready(self, account) -> RailStatus:
        details = account.details or {}
        has_destination = bool(details.get("pix_key") or details.get("bank_account"))
        return RailStatus(
            connected=has_destination,
            payouts_enabled=has_destination,
            onboarding_status="completed" if has_destination else "not_started",
            details={k: details[k] for k in ("pix_key_type",) if k in details},
        )

    async def transfer(self, request: TransferRequest) -> TransferResult:
        raise PermanentFailure("manual rail is settled by an operator", rail_code="manual_only")
