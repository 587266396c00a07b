from typing import Any, Dict, Optional

from sqlalchemy import func, select

from leadmagnet.db import Assessment, get_session, utcnow
from leadmagnet.scoring.numbers import round_half_up


def _apply_variant_defaults(by_variant: Dict[str, int], variants) -> Dict[str, int]:
    for key in variants:
        by_variant.setdefault(key, 0)
    return by_variant


async def assessment_stats(variant: Optional[str] = None, *, variants=()) -> Dict[str, Any]:
    """Aggregate submission counts, email conversion and average score.

    Only unexpired reports are counted as live; totals include everything.
    """
    async with get_session() as session:
        base = select(func.count(Assessment.id))
        completed_stmt = select(func.count(Assessment.id)).where(Assessment.email.is_not(None))
        average_stmt = select(func.avg(Assessment.overall_percentage))
        live_stmt = select(func.count(Assessment.id)).where(Assessment.expires_at > utcnow())
        variant_stmt = select(Assessment.variant, func.count(Assessment.id)).group_by(Assessment.variant)
        tier_stmt = select(Assessment.risk_tier, func.count(Assessment.id)).group_by(Assessment.risk_tier)
        if variant:
            base = base.where(Assessment.variant == variant)
            completed_stmt = completed_stmt.where(Assessment.variant == variant)
            average_stmt = average_stmt.where(Assessment.variant == variant)
            live_stmt = live_stmt.where(Assessment.variant == variant)
            variant_stmt = variant_stmt.where(Assessment.variant == variant)
            tier_stmt = tier_stmt.where(Assessment.variant == variant)

        total = (await session.execute(base)).scalar_one() or 0
        completed = (await session.execute(completed_stmt)).scalar_one() or 0
        average = (await session.execute(average_stmt)).scalar_one()
        live = (await session.execute(live_stmt)).scalar_one() or 0
        by_variant = {row[0]: row[1] for row in (await session.execute(variant_stmt)).all()}
        by_risk_tier = {row[0]: row[1] for row in (await session.execute(tier_stmt)).all()}

    return {
        "total": total,
        "completed": completed,
        "live": live,
        "conversion_rate": round_half_up(completed / total * 100, 1) if total else 0.0,
        "average_score": round_half_up(float(average), 1) if average is not None else 0.0,
        "by_variant": _apply_variant_defaults(by_variant, variants if not variant else [variant]),
        "by_risk_tier": by_risk_tier,
    }
