from __future__ import annotations

import json
import math
from dataclasses import dataclass, field

import structlog
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.services.settings_service import PRICING_POLICY_KEY, get_setting

log = structlog.get_logger(__name__)

# (max billed kg, DDP shipping SAR)
DEFAULT_DDP_MATRIX: list[tuple[float, float]] = [
    (0.5, 25.0),
    (1.0, 35.0),
    (1.5, 45.0),
    (2.0, 55.0),
    (3.0, 75.0),
    (5.0, 110.0),
]


@dataclass(frozen=True)
class PricingPolicy:
    margin: float = 0.35
    handling_sar: float = 0.0
    round_to: float = 0.05
    endings: list[float] = field(default_factory=lambda: [0.95, 0.99])
    floor_sar: float = 9.0


@dataclass(frozen=True)
class RetailQuote:
    billed_weight_kg: float
    ddp_shipping_sar: float
    landed_cost_sar: float
    retail_sar: float


def _round2(value: float) -> float:
    return round(value, 2)


def ddp_matrix() -> list[tuple[float, float]]:
    raw = settings.ddp_matrix_json
    if raw:
        try:
            parsed = json.loads(raw)
            tiers = [(float(t['maxKg']), float(t['priceSAR'])) for t in parsed]
        except (ValueError, TypeError, KeyError) as exc:
            log.warning('pricing.ddp_matrix_invalid', error=str(exc))
        else:
            if tiers:
                return sorted(tiers)
    return DEFAULT_DDP_MATRIX


def compute_volumetric_weight_kg(length_cm: float, width_cm: float, height_cm: float, divisor: float | None = None) -> float:
    divisor = divisor or settings.ddp_divisor or 6000
    return round(length_cm * width_cm * height_cm / divisor, 3)


def compute_billed_weight_kg(
    actual_kg: float, length_cm: float, width_cm: float, height_cm: float, divisor: float | None = None
) -> float:
    return round(max(actual_kg, compute_volumetric_weight_kg(length_cm, width_cm, height_cm, divisor)), 3)


def resolve_ddp_shipping_sar(billed_weight_kg: float, matrix: list[tuple[float, float]] | None = None) -> float:
    matrix = matrix or ddp_matrix()
    for max_kg, price in matrix:
        if billed_weight_kg <= max_kg + 1e-9:
            return price
    # Past the top tier, extend the slope of the last step.
    last_kg, last_price = matrix[-1]
    prev_kg, prev_price = matrix[-2] if len(matrix) > 1 else (0.0, 0.0)
    per_kg = (last_price - prev_price) / max(last_kg - prev_kg, 1)
    return _round2(last_price + per_kg * max(0.0, billed_weight_kg - last_kg))


def round_to_step(value: float, step: float = 0.05) -> float:
    return _round2(round(value / step) * step)


def pretty_price(value: float, endings: list[float] | None = None) -> float:
    endings = endings or [0.95, 0.99]
    base = math.floor(value)
    best = min((base + e for e in endings), key=lambda candidate: abs(candidate - value))
    return _round2(best)


def compute_retail_from_landed(
    landed_cost_sar: float, margin: float = 0.35, round_to: float = 0.05, endings: list[float] | None = None
) -> float:
    prelim = landed_cost_sar / max(1e-6, 1 - margin)
    return pretty_price(round_to_step(prelim, round_to), endings)


def calculate_retail_sar(
    supplier_cost_sar: float,
    *,
    actual_kg: float,
    length_cm: float,
    width_cm: float,
    height_cm: float,
    policy: PricingPolicy | None = None,
) -> RetailQuote:
    policy = policy or PricingPolicy()
    billed = compute_billed_weight_kg(actual_kg, length_cm, width_cm, height_cm)
    ddp = resolve_ddp_shipping_sar(billed)
    landed = supplier_cost_sar + ddp + policy.handling_sar
    retail = compute_retail_from_landed(landed, policy.margin, policy.round_to, policy.endings)
    return RetailQuote(
        billed_weight_kg=billed,
        ddp_shipping_sar=ddp,
        landed_cost_sar=_round2(landed),
        retail_sar=max(retail, policy.floor_sar),
    )


def usd_to_sar(usd: float, rate: float | None = None) -> float:
    return _round2(usd * (rate or settings.exchange_usd_to_sar))


def convert_to_sar(amount: float, currency: str | None) -> float:
    if (currency or 'USD').upper() == 'SAR':
        return _round2(amount)
    return usd_to_sar(amount)


def load_pricing_policy(db: Session) -> PricingPolicy:
    defaults = PricingPolicy()
    raw = get_setting(db, PRICING_POLICY_KEY, None)
    if not isinstance(raw, dict):
        return defaults

    def _num(key: str, fallback: float) -> float:
        try:
            value = float(raw.get(key, fallback))
        except (TypeError, ValueError):
            return fallback
        return value if math.isfinite(value) else fallback

    endings = raw.get('endings')
    if not isinstance(endings, list) or not all(isinstance(e, (int, float)) for e in endings) or not endings:
        endings = defaults.endings
    return PricingPolicy(
        margin=min(0.95, max(0.0, _num('margin', defaults.margin))),
        handling_sar=max(0.0, _num('handling_sar', defaults.handling_sar)),
        round_to=_num('round_to', defaults.round_to) or defaults.round_to,
        endings=[float(e) for e in endings],
        floor_sar=max(0.0, _num('floor_sar', defaults.floor_sar)),
    )
