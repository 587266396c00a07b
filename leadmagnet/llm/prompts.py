"""Prompt builders for the assessment narratives.

Builders only ever see the anonymized payload: the company and market appear
as ``[COMPANY]`` and ``[MARKET]`` so the generated text can be cached and
personalized afterwards.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

COMPANY_PLACEHOLDER = "[COMPANY]"
MARKET_PLACEHOLDER = "[MARKET]"

SUMMARY_MAX_TOKENS = 1000
FULL_ANALYSIS_MAX_TOKENS = 16000
DEEP_DIVE_MAX_TOKENS = 2000

FULL_ANALYSIS_SHAPE = """{
  "whatWeFound": "string (2-3 sentences on the overall pattern in their answers)",
  "gapAnalysis": [
    {
      "category": "string",
      "issue": "string (specific problem based on their answer)",
      "evidence": "string (quote the answer that reveals it)",
      "businessImpact": {"timeWasted": "string", "financialCost": "string", "riskCreated": "string"},
      "rootCause": "string",
      "industryBestPractice": "string (what leaders do operationally, not which tool they buy)",
      "severity": "CRITICAL|HIGH|MEDIUM"
    }
  ],
  "roadmap": {
    "quickWins": [{"action": "string", "addresses": "string", "implementation": "string", "expectedOutcome": "string"}],
    "foundationBuilding": [],
    "transformation": []
  },
  "competitivePositioning": {
    "strengths": ["string"],
    "weaknesses": ["string"],
    "percentileAnalysis": "string",
    "gapToLeaders": "string"
  },
  "optimizedComparison": {"currentScore": "string", "optimizedScore": "string", "whatChanges": "string"},
  "financialImpact": {
    "currentStateCosts": {"totalAnnual": "string"},
    "projectedSavings": {"timeReclaimed": "string", "dealsProtected": "string", "riskReduction": "string", "totalAnnual": "string", "roi": "string"},
    "implementationNote": "string"
  },
  "archetype": {"type": "string", "description": "string", "typicalChallenges": ["string"], "pathForward": "string"},
  "keyInsight": "string (one memorable insight about their situation)"
}"""

FULL_ANALYSIS_REQUIRED_KEYS = ("gapAnalysis", "keyInsight")
DEEP_DIVE_REQUIRED_KEYS = ("subject", "body")


@dataclass(frozen=True)
class Prompt:
    kind: str
    instructions: str
    text: str
    max_output_tokens: int


def system_prompt(payload: Mapping[str, Any]) -> str:
    guidance = payload.get("guidance") or {}
    role = guidance.get("advisor_role", "real estate operations consultant")
    leaders = guidance.get("leaders_label", "top performers")
    return (
        f"You are an expert {role} analyzing self-assessment data.\n\n"
        "Provide genuinely useful, specific insight. Describe what "
        f"{leaders} do operationally and which capabilities make it possible, "
        "without pitching a product, naming vendors or using urgency tactics.\n\n"
        "Tone: consultative, data-driven, honest about challenges, never hyperbolic. "
        f"Refer to the respondent as {COMPANY_PLACEHOLDER} and their market as "
        f"{MARKET_PLACEHOLDER}, exactly as written, including the brackets."
    )


def _profile_block(payload: Mapping[str, Any]) -> str:
    return "\n".join(
        [
            f"Respondent Profile ({payload.get('subject_label', 'Respondent')}):",
            f"- Name: {COMPANY_PLACEHOLDER}",
            f"- Size: {payload.get('size', 'n/a')}",
            f"- Volume: {payload.get('volume', 'n/a')}",
            f"- Market: {MARKET_PLACEHOLDER}",
            f"- Overall Score: {payload['overall_percentage']}/100",
            f"- Risk Level: {payload['risk_tier']} ({payload.get('risk_profile', '')})",
            f"- Percentile: {payload.get('percentile_bucket', '')}",
        ]
    )


def _category_lines(categories: List[Dict[str, Any]]) -> str:
    lines = []
    for category in categories:
        suffix = " [bonus, not in overall]" if category.get("bonus") else ""
        lines.append(
            f"- {category['title']}: {category['percentage']}% ({category['score']}/{category['max']}){suffix}"
        )
    return "\n".join(lines)


def _response_lines(responses: List[Dict[str, Any]]) -> str:
    return "\n\n".join(
        f"Q: {item['prompt']}\nA: {item['answer'] or '(no answer)'}\nPoints: {item['points']}/{item['max_points']}"
        for item in responses
    )


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def executive_summary_prompt(payload: Mapping[str, Any]) -> Prompt:
    categories = [category for category in payload["categories"] if not category.get("bonus")]
    weakest = sorted(categories, key=lambda category: category["percentage"])[:2]
    critical = [gap for gap in payload.get("gaps", []) if gap["severity"] in ("CRITICAL", "HIGH")][:3]

    critical_lines = _response_lines(
        [
            {
                "prompt": gap["prompt"],
                "answer": gap["current_answer"],
                "points": gap["points"],
                "max_points": gap["max_points"],
            }
            for gap in critical
        ]
    )
    all_categories = _category_lines(payload["categories"])

    text = f"""{_profile_block(payload)}

Category Performance:
{all_categories}

Weakest Areas:
{_category_lines(weakest)}

Critical Low-Scoring Responses:
{critical_lines or "- none"}

TASK: Write an executive summary of 2-3 paragraphs.
1. Acknowledge {COMPANY_PLACEHOLDER}'s situation using their data and name the operational pattern you see.
2. Diagnose the weakest area with evidence from their answers and quantify the hidden cost. Do not offer solutions.
3. Close with a curiosity hook: leaders approach this area differently, and the full report shows how.

Requirements: specific to their data, 200-250 words, no headings.
OUTPUT FORMAT: plain text paragraphs only (no JSON, no markdown)."""
    return Prompt(
        kind="executive_summary",
        instructions=system_prompt(payload),
        text=text,
        max_output_tokens=SUMMARY_MAX_TOKENS,
    )


def full_analysis_prompt(payload: Mapping[str, Any]) -> Prompt:
    guidance = payload.get("guidance") or {}
    projection = payload.get("projection") or {}
    roi = payload.get("roi") or {}

    text = f"""{_profile_block(payload)}

Category Scores:
{_category_lines(payload["categories"])}

All Responses:
{_response_lines(payload["responses"])}

Optimized Comparison:
- Current: {projection.get("current_percentage")}% -> achievable: {projection.get("optimized_percentage")}%
- Improvement: +{projection.get("improvement_points")} points

Conservative ROI Model:
- Time savings: ${roi.get("time_savings_value")}/year ({roi.get("hours_saved")} hours)
- Deals protected: ${roi.get("deal_protection_value")}/year
- Risk mitigation: ${roi.get("risk_mitigation_value")}/year
- Investment: ${roi.get("investment_cost")}/year
- Net benefit: ${roi.get("net_benefit")} ({roi.get("roi_label")})
- Market fit: {roi.get("target_market_fit")}

Capabilities leaders rely on (frame as industry best practice):
{_bullets(guidance.get("capabilities", []))}

Outcomes leaders report:
{_bullets(guidance.get("outcomes", []))}

TASK: Produce a comprehensive analysis as JSON with exactly this shape:
{FULL_ANALYSIS_SHAPE}

Requirements:
- 5-7 gaps drawn from their lowest-scoring answers
- Conservative financial estimates consistent with the ROI model above
- Educational consultant tone; never pitch a product

OUTPUT FORMAT: return ONLY valid JSON. Start with {{ and end with }}."""
    return Prompt(
        kind="full_analysis",
        instructions=system_prompt(payload),
        text=text,
        max_output_tokens=FULL_ANALYSIS_MAX_TOKENS,
    )


def deep_dive_prompt(payload: Mapping[str, Any], category_key: str) -> Prompt:
    category = next(item for item in payload["categories"] if item["key"] == category_key)
    responses = [item for item in payload["responses"] if item["category"] == category_key]

    text = f"""DEEP DIVE: {category["title"]} for {COMPANY_PLACEHOLDER}

Category Score: {category["percentage"]}% ({category["score"]}/{category["max"]})

Their Specific Answers:
{_response_lines(responses)}

TASK: Write an engaging email of 400-500 words with:
1. A compelling subject line
2. An opening that acknowledges their situation in this category
3. What their answers reveal, specifically
4. The time, money and risk cost it creates
5. How leaders solve it, described as an operational approach
6. A soft call to action ("Want to see how this works in practice?")

OUTPUT FORMAT: JSON only, {{"subject": "string", "body": "string (paragraphs, ready for email)"}}"""
    return Prompt(
        kind=f"deep_dive:{category_key}",
        instructions=system_prompt(payload),
        text=text,
        max_output_tokens=DEEP_DIVE_MAX_TOKENS,
    )
