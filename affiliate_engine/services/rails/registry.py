"""Rail lookup by name. Tests swap in fakes with `register_rail`."""
from __future__ import annotations

from affiliate_engine.errors import UnknownRail
from affiliate_engine.models import RailName
from affiliate_engine.services.rails.base import PayoutRail
from affiliate_engine.services.rails.manual import ManualRail
from affiliate_engine.services.rails.mercadopago import MercadoPagoSplitRail
from affiliate_engine.services.rails.stripe_connect import StripeConnectRail

_rails: dict[str, PayoutRail] = {}


def _defaults() -> dict[str, PayoutRail]:
    return {
        RailName.STRIPE_CONNECT.value: StripeConnectRail(),
        RailName.MERCADOPAGO_SPLIT.value: MercadoPagoSplitRail(),
        RailName.MANUAL.value: ManualRail(),
    }


def get_rail(name: str) -> PayoutRail:
    if not _rails:
        _rails.update(_defaults())
    rail = _rails.get(name)
    if rail is None:
        raise UnknownRail(f"Unknown payout rail '{name}'", rail=name)
    return rail


def all_rails() -> list[PayoutRail]:
    if not _rails:
        _rails.update(_defaults())
    return list(_rails.values())


def automated_rail_names() -> list[str]:
    return [r.name for r in all_rails() if r.automated]


def register_rail(rail: PayoutRail) -> None:
    if not _rails:
        _rails.update(_defaults())
    _rails[rail.name] = rail


def reset_rails() -> None:
    _rails.clear()
