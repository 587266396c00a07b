"""Conservative ROI projection driven by a volume figure and a per-variant model.

The dollar arithmetic depends on volume only. The score result picks the
messaging tier and never changes a figure.
"""

import math
import re
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from leadmagnet.scoring.numbers import round_half_up

if TYPE_CHECKING:  # pragma: no cover
    from leadmagnet.scoring.scorer import ScoreResult

WEEKS_PER_YEAR = 52
MONTHS_PER_YEAR = 12

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
DEFAULT_MAX_VOLUME = 100_000


@dataclass(frozen=True)
class TaskSaving:
    key: str
    label: str
    basis: str  # per_transaction | per_week
    current_hours: float
    reduced_hours: float
    hourly_value: float


@dataclass(frozen=True)
class DealProtection:
    at_risk_rate: float
    at_risk_floor: int
    protected_fraction: float
    protected_floor: int
    avg_deal_value: float


@dataclass(frozen=True)
class RiskItem:
    key: str
    label: str
    kind: str  # event | per_volume_unit | fixed
    rate: float = 0.0
    floor: int = 0
    unit_value: float = 0.0
    amount: float = 0.0


@dataclass(frozen=True)
class PriceBand:
    monthly: float
    up_to: Optional[float] = None


@dataclass(frozen=True)
class RoiModel:
    product_name: str
    volume_unit: str
    min_volume: int
    transactions_per_unit: float
    tasks: Tuple[TaskSaving, ...]
    deal_protection: DealProtection
    risk_items: Tuple[RiskItem, ...]
    pricing: Tuple[PriceBand, ...]
    ideal_min: float
    ideal_max: float
    fit_messages: Mapping[str, str] = field(default_factory=dict)
    positive_message: str = ""
    negative_message: str = ""
    tier_messages: Mapping[str, str] = field(default_factory=dict)
    max_volume: int = DEFAULT_MAX_VOLUME

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RoiModel":
        tasks = tuple(
            TaskSaving(
                key=item["key"],
                label=item.get("label", item["key"]),
                basis=item.get("basis", "per_transaction"),
                current_hours=float(item["current_hours"]),
                reduced_hours=float(item["reduced_hours"]),
                hourly_value=float(item["hourly_value"]),
            )
            for item in config.get("tasks", [])
        )
        for task in tasks:
            if task.basis not in ("per_transaction", "per_week"):
                raise ValueError(f"Unknown time-savings basis '{task.basis}' for {task.key}")

        risk_items = tuple(
            RiskItem(
                key=item["key"],
                label=item.get("label", item["key"]),
                kind=item["kind"],
                rate=float(item.get("rate", 0.0)),
                floor=int(item.get("floor", 0)),
                unit_value=float(item.get("unit_value", 0.0)),
                amount=float(item.get("amount", 0.0)),
            )
            for item in config.get("risk_items", [])
        )
        for item in risk_items:
            if item.kind not in ("event", "per_volume_unit", "fixed"):
                raise ValueError(f"Unknown risk item kind '{item.kind}' for {item.key}")

        pricing = tuple(
            PriceBand(
                monthly=float(band["monthly"]),
                up_to=float(band["up_to"]) if band.get("up_to") is not None else None,
            )
            for band in config.get("pricing", [])
        )
        if not pricing or pricing[-1].up_to is not None:
            raise ValueError("Pricing bands must end with an open-ended band")
        if any(band.monthly <= 0 for band in pricing):
            raise ValueError("Pricing bands must have a positive monthly price")

        deal = config.get("deal_protection", {})
        fit = config.get("market_fit", {})
        messaging = config.get("messaging", {})
        min_volume = int(config.get("min_volume", 1))
        if min_volume < 1:
            raise ValueError("min_volume must be at least 1")
        max_volume = int(config.get("max_volume", DEFAULT_MAX_VOLUME))
        if max_volume < min_volume:
            raise ValueError("max_volume must not be below min_volume")
        if float(config.get("transactions_per_unit", 1)) <= 0:
            raise ValueError("transactions_per_unit must be positive")
        return cls(
            product_name=config.get("product_name", ""),
            volume_unit=config.get("volume_unit", "transactions"),
            min_volume=min_volume,
            transactions_per_unit=float(config.get("transactions_per_unit", 1)),
            tasks=tasks,
            deal_protection=DealProtection(
                at_risk_rate=float(deal.get("at_risk_rate", 0.0)),
                at_risk_floor=int(deal.get("at_risk_floor", 0)),
                protected_fraction=float(deal.get("protected_fraction", 0.0)),
                protected_floor=int(deal.get("protected_floor", 0)),
                avg_deal_value=float(deal.get("avg_deal_value", 0.0)),
            ),
            risk_items=risk_items,
            pricing=pricing,
            ideal_min=float(fit["ideal_min"]),
            ideal_max=float(fit["ideal_max"]),
            fit_messages=dict(fit.get("messages", {})),
            positive_message=messaging.get("positive", ""),
            negative_message=messaging.get("negative", ""),
            tier_messages=dict(messaging.get("tiers", {})),
            max_volume=max_volume,
        )

    def monthly_price(self, volume: float) -> float:
        for band in self.pricing:
            if band.up_to is None or volume <= band.up_to:
                return band.monthly
        return self.pricing[-1].monthly

    def market_fit(self, volume: float) -> str:
        if volume < self.ideal_min:
            return "below"
        if volume > self.ideal_max:
            return "above"
        return "ideal"


@dataclass(frozen=True)
class TaskSavingResult:
    key: str
    label: str
    hours_saved: int
    value: int


@dataclass(frozen=True)
class RiskItemResult:
    key: str
    label: str
    events: Optional[int]
    value: int


@dataclass(frozen=True)
class ROIProjection:
    volume: int
    volume_unit: str
    volume_defaulted: bool
    volume_clamped: bool
    monthly_transactions: float
    annual_transactions: float
    time_savings: Tuple[TaskSavingResult, ...]
    time_savings_value: int
    hours_saved: int
    hours_saved_per_transaction: float
    value_per_transaction: int
    deals_at_risk: int
    deals_protected: int
    deal_protection_value: int
    risk_items: Tuple[RiskItemResult, ...]
    risk_mitigation_value: int
    monthly_investment: float
    investment_cost: float
    total_value: int
    net_benefit: int
    roi_ratio: float
    roi_label: str
    is_positive: bool
    break_even_deals: float
    target_market_fit: str
    target_market_message: str
    messaging_tier: str
    key_message: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_volume(value: Any) -> Optional[int]:
    """Read a volume figure from a number or a form label such as ``"11-25"``.

    Ranges resolve to their lower bound, like the select options they come from.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = _NUMBER.search(value.replace(",", ""))
        if match:
            number = float(match.group(0))
            return int(number) if math.isfinite(number) else None
    return None


def _format(template: str, **values: Any) -> str:
    if not template:
        return ""
    return " ".join(template.format(**values).split())


def estimate_roi(volume: Any, result: Optional["ScoreResult"], model: RoiModel) -> ROIProjection:
    """Project the annual value, investment and ROI ratio for ``volume``.

    Zero, negative, absent or unreadable volume falls back to ``model.min_volume``
    and sets ``volume_defaulted``. Volume above ``model.max_volume`` is capped
    there and sets ``volume_clamped``.
    """
    parsed = parse_volume(volume)
    defaulted = parsed is None or parsed <= 0
    units = model.min_volume if defaulted else parsed
    clamped = units > model.max_volume
    if clamped:
        units = model.max_volume

    monthly = units * model.transactions_per_unit
    annual = monthly * MONTHS_PER_YEAR

    task_results: List[TaskSavingResult] = []
    total_hours = 0.0
    per_transaction_hours = 0.0
    for task in model.tasks:
        span = annual if task.basis == "per_transaction" else WEEKS_PER_YEAR
        hours = (task.current_hours - task.reduced_hours) * span
        total_hours += hours
        if task.basis == "per_transaction":
            per_transaction_hours += hours
        task_results.append(
            TaskSavingResult(
                key=task.key,
                label=task.label,
                hours_saved=round_half_up(hours),
                value=round_half_up(hours * task.hourly_value),
            )
        )
    time_value = sum(item.value for item in task_results)

    deal = model.deal_protection
    at_risk = max(deal.at_risk_floor, round_half_up(annual * deal.at_risk_rate))
    protected = max(deal.protected_floor, round_half_up(at_risk * deal.protected_fraction))
    deal_value = round_half_up(protected * deal.avg_deal_value)

    risk_results: List[RiskItemResult] = []
    for item in model.risk_items:
        events: Optional[int] = None
        if item.kind == "event":
            events = max(item.floor, round_half_up(annual * item.rate))
            value = round_half_up(events * item.unit_value)
        elif item.kind == "per_volume_unit":
            value = round_half_up(units * item.unit_value)
        else:
            value = round_half_up(item.amount)
        risk_results.append(RiskItemResult(key=item.key, label=item.label, events=events, value=value))
    risk_value = sum(item.value for item in risk_results)

    monthly_price = model.monthly_price(units)
    annual_price = monthly_price * MONTHS_PER_YEAR

    total = time_value + deal_value + risk_value
    net = round_half_up(total - annual_price)
    ratio = round_half_up(net / annual_price, 1)
    roi_label = f"{ratio:.1f}:1"
    positive = net > 0

    if deal.avg_deal_value:
        break_even = math.ceil(annual_price / deal.avg_deal_value * 10) / 10
    else:
        break_even = 0.0

    fit = model.market_fit(units)
    values = {
        "product": model.product_name,
        "volume": units,
        "volume_unit": model.volume_unit,
        "monthly_transactions": round_half_up(monthly),
        "annual_transactions": round_half_up(annual),
        "roi_label": roi_label,
    }
    risk_tier = result.risk_tier if result is not None else ""
    return ROIProjection(
        volume=units,
        volume_unit=model.volume_unit,
        volume_defaulted=defaulted,
        volume_clamped=clamped,
        monthly_transactions=monthly,
        annual_transactions=annual,
        time_savings=tuple(task_results),
        time_savings_value=time_value,
        hours_saved=round_half_up(total_hours),
        hours_saved_per_transaction=round_half_up(per_transaction_hours / annual, 1),
        value_per_transaction=round_half_up(time_value / annual),
        deals_at_risk=at_risk,
        deals_protected=protected,
        deal_protection_value=deal_value,
        risk_items=tuple(risk_results),
        risk_mitigation_value=risk_value,
        monthly_investment=monthly_price,
        investment_cost=annual_price,
        total_value=total,
        net_benefit=net,
        roi_ratio=ratio,
        roi_label=roi_label,
        is_positive=positive,
        break_even_deals=break_even,
        target_market_fit=fit,
        target_market_message=_format(model.fit_messages.get(fit, ""), **values),
        messaging_tier=model.tier_messages.get(risk_tier, ""),
        key_message=_format(model.positive_message if positive else model.negative_message, **values),
    )
