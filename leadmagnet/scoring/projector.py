import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from leadmagnet.scoring.numbers import percentage
from leadmagnet.scoring.scorer import ScoreResult

logger = logging.getLogger("scoring.projector")


@dataclass(frozen=True)
class CategoryProjection:
    key: str
    title: str
    current_score: int
    current_percentage: int
    max: int
    ceiling: float
    ceiling_percentage: int
    point_gain: float
    percentage_gain: int
    clamped: bool = False
    bonus: bool = False


@dataclass(frozen=True)
class Projection:
    categories: Tuple[CategoryProjection, ...]
    current_score: int
    optimized_score: float
    max_score: int
    current_percentage: int
    optimized_percentage: int
    improvement_points: float
    improvement_percentage: int

    @property
    def clamped_categories(self) -> List[str]:
        return [category.key for category in self.categories if category.clamped]

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["clamped_categories"] = self.clamped_categories
        return data


def project_optimized(result: ScoreResult, ceilings: Optional[Mapping[str, float]] = None) -> Projection:
    """Compare the current score with the configured best-achievable score.

    A category without a ceiling projects to its maximum. A ceiling below the
    actual score, or above the category maximum, is clamped into range and the
    category is flagged.
    """
    ceilings = ceilings or {}
    projections = []
    for category in result.categories:
        configured = ceilings.get(category.key, category.max)
        ceiling = configured
        clamped = False
        if ceiling > category.max:
            ceiling = category.max
            clamped = True
        if ceiling < category.score:
            ceiling = category.score
            clamped = True
        if clamped:
            logger.warning(
                "Ceiling for %s/%s clamped from %s to %s (score %s, max %s)",
                result.variant,
                category.key,
                configured,
                ceiling,
                category.score,
                category.max,
            )
        ceiling_percentage = percentage(ceiling, category.max)
        projections.append(
            CategoryProjection(
                key=category.key,
                title=category.title,
                current_score=category.score,
                current_percentage=category.percentage,
                max=category.max,
                ceiling=ceiling,
                ceiling_percentage=ceiling_percentage,
                point_gain=ceiling - category.score,
                percentage_gain=ceiling_percentage - category.percentage,
                clamped=clamped,
                bonus=category.bonus,
            )
        )

    scored = [projection for projection in projections if not projection.bonus]
    optimized = sum(projection.ceiling for projection in scored)
    improvement = optimized - result.total_score
    return Projection(
        categories=tuple(projections),
        current_score=result.total_score,
        optimized_score=optimized,
        max_score=result.max_possible_score,
        current_percentage=result.overall_percentage,
        optimized_percentage=percentage(optimized, result.max_possible_score),
        improvement_points=improvement,
        improvement_percentage=percentage(improvement, result.total_score),
    )
