"""Question banks for each assessment variant, loaded from the bundled YAML files.

A variant is pure data: its questions and categories plus the threshold
tables, projector ceilings, ROI model, narrative wording and CRM mapping that
go with them. The scorer, projector and ROI estimator are generic over it.
"""

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from leadmagnet.errors import ValidationError
from leadmagnet.scoring.roi import RoiModel

logger = logging.getLogger("scoring.question_bank")

BANK_DIR = Path(__file__).resolve().parent / "banks"


@dataclass(frozen=True)
class Option:
    label: str
    points: int


@dataclass(frozen=True)
class Question:
    id: str
    category: str
    prompt: str
    options: Tuple[Option, ...]

    @property
    def max_points(self) -> int:
        return max(option.points for option in self.options)

    @property
    def best_option(self) -> Option:
        # first listed option wins a tie
        top = self.max_points
        return next(option for option in self.options if option.points == top)

    def points_for(self, answer: Any) -> int:
        for option in self.options:
            if option.label == answer:
                return option.points
        return 0


@dataclass(frozen=True)
class Category:
    key: str
    title: str
    questions: Tuple[Question, ...]
    bonus: bool = False

    @property
    def max_points(self) -> int:
        return sum(question.max_points for question in self.questions)


@dataclass(frozen=True)
class Tier:
    min: float
    label: str
    profile: str = ""
    summary: str = ""


@dataclass(frozen=True)
class ThresholdTable:
    """Cut points ordered from the highest ``min`` down; the first row reached wins."""

    rows: Tuple[Tier, ...]

    def lookup(self, value: float) -> Tier:
        for row in self.rows:
            if value >= row.min:
                return row
        return self.rows[-1]

    def rank(self, label: str) -> int:
        """Position of ``label`` in the table, 0 being the best row."""
        for index, row in enumerate(self.rows):
            if row.label == label:
                return index
        raise KeyError(label)


@dataclass(frozen=True)
class IdentifyingField:
    id: str
    label: str
    required: bool = True
    options: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QuestionBank:
    variant: str
    title: str
    version: str
    audience: str
    categories: Tuple[Category, ...]
    risk_tiers: ThresholdTable
    percentiles: ThresholdTable
    identifying_fields: Tuple[IdentifyingField, ...]
    name_field: str
    market_field: str
    volume_field: str
    roi_model: RoiModel
    ceilings: Mapping[str, float] = field(default_factory=dict)
    narrative: Mapping[str, Any] = field(default_factory=dict)
    crm: Mapping[str, Any] = field(default_factory=dict)

    @property
    def questions(self) -> List[Question]:
        return [question for category in self.categories for question in category.questions]

    def category(self, key: str) -> Optional[Category]:
        for category in self.categories:
            if category.key == key:
                return category
        return None

    def question(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def public_view(self) -> Dict[str, Any]:
        """Bank layout for the front end; point values stay server side."""
        return {
            "variant": self.variant,
            "title": self.title,
            "version": self.version,
            "identifying_fields": [
                {
                    "id": item.id,
                    "label": item.label,
                    "required": item.required,
                    "options": list(item.options),
                }
                for item in self.identifying_fields
            ],
            "categories": [
                {
                    "key": category.key,
                    "title": category.title,
                    "bonus": category.bonus,
                    "questions": [
                        {
                            "id": question.id,
                            "prompt": question.prompt,
                            "options": [option.label for option in question.options],
                        }
                        for question in category.questions
                    ],
                }
                for category in self.categories
            ],
        }


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _threshold_table(rows: List[Dict[str, Any]], name: str, source: Path) -> ThresholdTable:
    if not rows:
        raise ValueError(f"{source.name}: '{name}' table is empty")
    tiers = tuple(
        Tier(
            min=float(row["min"]),
            label=str(row["label"]),
            profile=row.get("profile", ""),
            summary=row.get("summary", ""),
        )
        for row in rows
    )
    mins = [tier.min for tier in tiers]
    if mins != sorted(mins, reverse=True) or len(set(mins)) != len(mins):
        raise ValueError(f"{source.name}: '{name}' thresholds must be strictly descending")
    return ThresholdTable(rows=tiers)


def _parse_bank(data: Dict[str, Any], source: Path) -> QuestionBank:
    seen: set[str] = set()
    categories = []
    for raw_category in data.get("categories", []):
        key = raw_category["key"]
        questions = []
        for raw_question in raw_category.get("questions", []):
            question_id = raw_question["id"]
            if question_id in seen:
                raise ValueError(f"{source.name}: duplicate question id '{question_id}'")
            seen.add(question_id)
            options = tuple(
                Option(label=str(option["label"]), points=int(option["points"]))
                for option in raw_question.get("options", [])
            )
            if not options:
                raise ValueError(f"{source.name}: question '{question_id}' has no options")
            questions.append(
                Question(
                    id=question_id,
                    category=key,
                    prompt=raw_question.get("prompt", question_id),
                    options=options,
                )
            )
        categories.append(
            Category(
                key=key,
                title=raw_category.get("title", key),
                questions=tuple(questions),
                bonus=bool(raw_category.get("bonus", False)),
            )
        )

    if not any(not category.bonus for category in categories):
        raise ValueError(f"{source.name}: at least one scored category is required")

    ceilings = {str(key): float(value) for key, value in (data.get("ceilings") or {}).items()}
    category_keys = {category.key for category in categories}
    unknown = set(ceilings) - category_keys
    if unknown:
        raise ValueError(f"{source.name}: ceilings for unknown categories {sorted(unknown)}")

    identifying_fields = tuple(
        IdentifyingField(
            id=item["id"],
            label=item.get("label", item["id"]),
            required=bool(item.get("required", True)),
            options=tuple(str(option) for option in item.get("options", [])),
        )
        for item in data.get("identifying_fields", [])
    )

    return QuestionBank(
        variant=data["variant"],
        title=data.get("title", data["variant"]),
        version=str(data.get("version", "1")),
        audience=data.get("audience", ""),
        categories=tuple(categories),
        risk_tiers=_threshold_table(data.get("risk_tiers", []), "risk_tiers", source),
        percentiles=_threshold_table(data.get("percentiles", []), "percentiles", source),
        identifying_fields=identifying_fields,
        name_field=data.get("name_field", "company_name"),
        market_field=data.get("market_field", "location"),
        volume_field=data["volume_field"],
        roi_model=RoiModel.from_config(data["roi"]),
        ceilings=ceilings,
        narrative=data.get("narrative") or {},
        crm=data.get("crm") or {},
    )


def available_variants() -> List[str]:
    return sorted(path.stem for path in BANK_DIR.glob("*.yaml"))


@lru_cache(maxsize=None)
def load_bank(variant: str) -> QuestionBank:
    """Return the immutable question bank for ``variant``.

    Raises:
        ValidationError: the variant has no bank file.
        ValueError: the bank file is malformed.
    """
    if variant not in available_variants():
        raise ValidationError(f"Unknown assessment variant '{variant}'")
    path = BANK_DIR / f"{variant}.yaml"
    bank = _parse_bank(_load_yaml(path), path)
    logger.info(
        "Loaded question bank %s v%s (%d questions)", bank.variant, bank.version, len(bank.questions)
    )
    return bank
