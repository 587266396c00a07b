"""Deterministic scoring of a response set against a question bank."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from leadmagnet.scoring.numbers import percentage
from leadmagnet.scoring.question_bank import QuestionBank

GAP_THRESHOLD = 0.5
HIGH_SEVERITY_RATIO = 0.3


@dataclass(frozen=True)
class QuestionResult:
    question_id: str
    category: str
    prompt: str
    answer: Optional[str]
    points: int
    max_points: int
    best_answer: str

    @property
    def matches_best(self) -> bool:
        return self.answer == self.best_answer


@dataclass(frozen=True)
class CategoryScore:
    key: str
    title: str
    score: int
    max: int
    percentage: int
    bonus: bool = False


@dataclass(frozen=True)
class ScoreResult:
    variant: str
    categories: Tuple[CategoryScore, ...]
    total_score: int
    max_possible_score: int
    overall_percentage: int
    risk_tier: str
    risk_profile: str
    profile_summary: str
    percentile_bucket: str
    questions: Tuple[QuestionResult, ...]

    def category(self, key: str) -> Optional[CategoryScore]:
        for category in self.categories:
            if category.key == key:
                return category
        return None

    @property
    def aligned_answers(self) -> int:
        return sum(1 for question in self.questions if question.matches_best)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for question, result in zip(data["questions"], self.questions):
            question["matches_best"] = result.matches_best
        data["aligned_answers"] = self.aligned_answers
        data["alignment_percentage"] = percentage(self.aligned_answers, len(self.questions))
        return data


@dataclass(frozen=True)
class Gap:
    question_id: str
    category: str
    prompt: str
    current_answer: Optional[str]
    best_possible_answer: str
    points: int
    max_points: int
    points_lost: int
    severity: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def score(responses: Optional[Mapping[str, Any]], bank: QuestionBank) -> ScoreResult:
    """Score ``responses`` against ``bank``.

    Missing or unrecognized answers earn zero points; nothing in a response set
    can make this raise. Bonus categories are reported but kept out of the
    overall percentage.
    """
    answers: Mapping[str, Any] = responses if isinstance(responses, Mapping) else {}

    question_results: List[QuestionResult] = []
    category_scores: List[CategoryScore] = []
    for category in bank.categories:
        earned = 0
        for question in category.questions:
            raw = answers.get(question.id)
            answer = raw if isinstance(raw, str) else None
            points = question.points_for(answer)
            earned += points
            question_results.append(
                QuestionResult(
                    question_id=question.id,
                    category=category.key,
                    prompt=question.prompt,
                    answer=answer,
                    points=points,
                    max_points=question.max_points,
                    best_answer=question.best_option.label,
                )
            )
        category_scores.append(
            CategoryScore(
                key=category.key,
                title=category.title,
                score=earned,
                max=category.max_points,
                percentage=percentage(earned, category.max_points),
                bonus=category.bonus,
            )
        )

    scored = [category for category in category_scores if not category.bonus]
    total = sum(category.score for category in scored)
    maximum = sum(category.max for category in scored)
    overall = percentage(total, maximum)

    tier = bank.risk_tiers.lookup(overall)
    return ScoreResult(
        variant=bank.variant,
        categories=tuple(category_scores),
        total_score=total,
        max_possible_score=maximum,
        overall_percentage=overall,
        risk_tier=tier.label,
        risk_profile=tier.profile,
        profile_summary=tier.summary,
        percentile_bucket=bank.percentiles.lookup(overall).label,
        questions=tuple(question_results),
    )


def _severity(points: int, max_points: int) -> str:
    if points == 0:
        return "CRITICAL"
    if points <= max_points * HIGH_SEVERITY_RATIO:
        return "HIGH"
    return "MEDIUM"


def identify_gaps(result: ScoreResult) -> List[Gap]:
    """Questions that earned at most half of their points, biggest loss first."""
    gaps = [
        Gap(
            question_id=question.question_id,
            category=question.category,
            prompt=question.prompt,
            current_answer=question.answer,
            best_possible_answer=question.best_answer,
            points=question.points,
            max_points=question.max_points,
            points_lost=question.max_points - question.points,
            severity=_severity(question.points, question.max_points),
        )
        for question in result.questions
        if question.max_points > 0 and question.points <= question.max_points * GAP_THRESHOLD
    ]
    # sorted() is stable, so ties keep bank order
    return sorted(gaps, key=lambda gap: gap.points_lost, reverse=True)
