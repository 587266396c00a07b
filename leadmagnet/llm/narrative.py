"""Narrative generation for assessment reports.

The hosted model writes against an anonymized payload. Responses are cached
by a fingerprint of the scored answers (never by who answered) and the
caller's name and market are substituted back in afterwards.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import openai
from openai import AsyncOpenAI

from leadmagnet import monitoring
from leadmagnet.errors import NarrativeGenerationError, NarrativeParseError
from leadmagnet.llm.cache import InMemoryNarrativeCache, NarrativeCache
from leadmagnet.llm.prompts import (
    COMPANY_PLACEHOLDER,
    DEEP_DIVE_REQUIRED_KEYS,
    FULL_ANALYSIS_REQUIRED_KEYS,
    MARKET_PLACEHOLDER,
    Prompt,
    deep_dive_prompt,
    executive_summary_prompt,
    full_analysis_prompt,
)
from leadmagnet.scoring.projector import Projection
from leadmagnet.scoring.question_bank import QuestionBank
from leadmagnet.scoring.roi import ROIProjection
from leadmagnet.scoring.scorer import Gap, ScoreResult

logger = logging.getLogger("narrative")

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_ATTEMPTS = 3

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_FENCED = re.compile(r"```\s*(.*?)\s*```", re.DOTALL)
_PLACEHOLDERS = re.compile("|".join(re.escape(token) for token in (COMPANY_PLACEHOLDER, MARKET_PLACEHOLDER)))

# errors that another attempt cannot fix
NON_RETRYABLE = (openai.AuthenticationError, openai.PermissionDeniedError)


@dataclass(frozen=True)
class Identity:
    company: str
    market: str


@dataclass(frozen=True)
class ParsedStructured:
    data: Dict[str, Any]


@dataclass(frozen=True)
class FallbackPlainText:
    text: str


NarrativeResult = Union[ParsedStructured, FallbackPlainText]


@lru_cache(maxsize=1)
def _get_client() -> Optional[AsyncOpenAI]:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None
    return AsyncOpenAI(api_key=api_key)


def _format_field(template: str, fields: Mapping[str, Any]) -> str:
    try:
        return template.format(**fields)
    except (KeyError, IndexError):
        return template


def build_prompt_payload(
    bank: QuestionBank,
    result: ScoreResult,
    projection: Projection,
    roi: ROIProjection,
    gaps: Sequence[Gap],
    identifying_fields: Mapping[str, Any],
) -> Dict[str, Any]:
    """Serialize everything a prompt needs, with the name and market left as placeholders."""
    guidance = dict(bank.narrative)
    fields = {
        key: value
        for key, value in identifying_fields.items()
        if key not in (bank.name_field, bank.market_field)
    }
    return {
        "variant": bank.variant,
        "subject_label": guidance.get("subject_label", bank.audience),
        "company": COMPANY_PLACEHOLDER,
        "market": MARKET_PLACEHOLDER,
        "size": _format_field(guidance.get("size_template", ""), fields),
        "volume": _format_field(guidance.get("volume_template", ""), fields),
        "overall_percentage": result.overall_percentage,
        "risk_tier": result.risk_tier,
        "risk_profile": result.risk_profile,
        "percentile_bucket": result.percentile_bucket,
        "categories": [
            {
                "key": category.key,
                "title": category.title,
                "score": category.score,
                "max": category.max,
                "percentage": category.percentage,
                "bonus": category.bonus,
            }
            for category in result.categories
        ],
        "responses": [
            {
                "question_id": question.question_id,
                "category": question.category,
                "prompt": question.prompt,
                "answer": question.answer,
                "points": question.points,
                "max_points": question.max_points,
            }
            for question in result.questions
        ],
        "gaps": [gap.as_dict() for gap in gaps],
        "projection": {
            "current_percentage": projection.current_percentage,
            "optimized_percentage": projection.optimized_percentage,
            "improvement_points": projection.improvement_points,
        },
        "roi": {
            "volume": roi.volume,
            "time_savings_value": roi.time_savings_value,
            "hours_saved": roi.hours_saved,
            "deal_protection_value": roi.deal_protection_value,
            "risk_mitigation_value": roi.risk_mitigation_value,
            "investment_cost": roi.investment_cost,
            "net_benefit": roi.net_benefit,
            "roi_label": roi.roi_label,
            "target_market_fit": roi.target_market_fit,
        },
        "guidance": {
            "advisor_role": guidance.get("advisor_role"),
            "leaders_label": guidance.get("leaders_label"),
            "capabilities": list(guidance.get("capabilities", [])),
            "outcomes": list(guidance.get("outcomes", [])),
        },
    }


def response_fingerprint(payload: Mapping[str, Any]) -> List[str]:
    return sorted(
        f"{item['question_id']}:{item['answer'] or ''}:{item['points']}" for item in payload["responses"]
    )


def cache_key(kind: str, payload: Mapping[str, Any]) -> str:
    """Stable hash of the scored content; identifying fields never take part."""
    material = {
        "kind": kind,
        "variant": payload["variant"],
        "overall": payload["overall_percentage"],
        "risk_tier": payload["risk_tier"],
        "categories": {category["key"]: category["percentage"] for category in payload["categories"]},
        "fingerprint": response_fingerprint(payload),
        "volume": payload["roi"]["volume"],
    }
    encoded = json.dumps(material, sort_keys=True, ensure_ascii=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def personalize(text: str, identity: Identity) -> str:
    # single pass, so substituted names are never rescanned for placeholders
    values = {COMPANY_PLACEHOLDER: identity.company, MARKET_PLACEHOLDER: identity.market}
    return _PLACEHOLDERS.sub(lambda match: values[match.group(0)], text)


def _personalize_value(value: Any, identity: Identity) -> Any:
    if isinstance(value, str):
        return personalize(value, identity)
    if isinstance(value, list):
        return [_personalize_value(item, identity) for item in value]
    if isinstance(value, dict):
        return {key: _personalize_value(item, identity) for key, item in value.items()}
    return value


def personalize_result(result: NarrativeResult, identity: Identity) -> NarrativeResult:
    if isinstance(result, ParsedStructured):
        return ParsedStructured(data=_personalize_value(result.data, identity))
    return FallbackPlainText(text=personalize(result.text, identity))


def extract_json_text(raw: str) -> str:
    match = _FENCED_JSON.search(raw) or _FENCED.search(raw)
    if match:
        return match.group(1).strip()
    return raw.strip()


def parse_structured(raw: str, required_keys: Sequence[str] = ()) -> ParsedStructured:
    """Parse a JSON object from a raw model response, fenced or not.

    Raises:
        NarrativeParseError: no JSON object, or required keys are missing.
    """
    candidate = extract_json_text(raw or "")
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise NarrativeParseError(f"Narrative response is not valid JSON: {exc}", raw=raw) from exc
    if not isinstance(data, dict):
        raise NarrativeParseError("Narrative response is not a JSON object", raw=raw)
    missing = [key for key in required_keys if key not in data]
    if missing:
        raise NarrativeParseError(f"Narrative response missing keys: {', '.join(missing)}", raw=raw)
    return ParsedStructured(data=data)


def interpret(raw: str, required_keys: Sequence[str] = ()) -> NarrativeResult:
    try:
        return parse_structured(raw, required_keys)
    except NarrativeParseError:
        return FallbackPlainText(text=(raw or "").strip())


class NarrativeGenerator:
    """Calls the hosted model with retries and serves repeats from the cache."""

    def __init__(
        self,
        *,
        cache: Optional[NarrativeCache] = None,
        client_factory: Optional[Callable[[], Optional[AsyncOpenAI]]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.cache = cache or InMemoryNarrativeCache()
        self._client_factory = client_factory
        self.model = model or os.getenv("NARRATIVE_MODEL", DEFAULT_MODEL)
        self.temperature = (
            temperature
            if temperature is not None
            else float(os.getenv("NARRATIVE_TEMPERATURE", str(DEFAULT_TEMPERATURE)))
        )
        self.max_attempts = max_attempts or int(os.getenv("NARRATIVE_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
        self._sleep = sleep

    def _client(self) -> Optional[AsyncOpenAI]:
        factory = self._client_factory or _get_client
        return factory()

    async def complete(self, prompt: Prompt) -> str:
        client = self._client()
        if client is None:
            raise NarrativeGenerationError("Narrative service not configured")

        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.responses.create(
                    model=self.model,
                    instructions=prompt.instructions,
                    input=prompt.text,
                    temperature=self.temperature,
                    max_output_tokens=prompt.max_output_tokens,
                )
                text = (response.output_text or "").strip()
                if not text:
                    raise NarrativeGenerationError("Narrative service returned an empty response")
                logger.info(
                    "narrative",
                    extra={"narrative": {"kind": prompt.kind, "status": "success", "attempt": attempt}},
                )
                return text
            except NON_RETRYABLE as exc:
                monitoring.capture_exception(exc, step=prompt.kind)
                raise NarrativeGenerationError(f"Narrative service rejected the request: {exc}") from exc
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "narrative",
                    extra={
                        "narrative": {"kind": prompt.kind, "status": "error", "attempt": attempt, "error": str(exc)}
                    },
                )
                if attempt >= self.max_attempts:
                    break
                await self._sleep(2 ** attempt)

        raise NarrativeGenerationError(
            f"Narrative generation failed after {self.max_attempts} attempts: {last_exc}"
        ) from last_exc

    async def _generate(self, prompt: Prompt, payload: Mapping[str, Any], required_keys: Sequence[str] = ()) -> str:
        key = cache_key(prompt.kind, payload)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.info("narrative", extra={"narrative": {"kind": prompt.kind, "status": "cache_hit"}})
            return cached
        raw = await self.complete(prompt)
        if required_keys:
            # only well-formed structured output is worth caching
            parse_structured(raw, required_keys)
        await self.cache.set(key, raw)
        return raw

    async def executive_summary(self, payload: Mapping[str, Any], identity: Identity) -> str:
        raw = await self._generate(executive_summary_prompt(payload), payload)
        return personalize(raw, identity)

    async def full_analysis(self, payload: Mapping[str, Any], identity: Identity) -> ParsedStructured:
        raw = await self._generate(full_analysis_prompt(payload), payload, FULL_ANALYSIS_REQUIRED_KEYS)
        parsed = parse_structured(raw, FULL_ANALYSIS_REQUIRED_KEYS)
        return ParsedStructured(data=_personalize_value(parsed.data, identity))

    async def deep_dive(self, payload: Mapping[str, Any], category_key: str, identity: Identity) -> NarrativeResult:
        raw = await self._generate(deep_dive_prompt(payload, category_key), payload)
        return personalize_result(interpret(raw, DEEP_DIVE_REQUIRED_KEYS), identity)

    async def evict_expired(self) -> int:
        return await self.cache.evict_expired()

    async def cache_stats(self) -> Dict[str, Any]:
        return await self.cache.stats()
