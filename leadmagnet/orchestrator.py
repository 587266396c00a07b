import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import select

from leadmagnet import monitoring
from leadmagnet.db import (
    Assessment,
    AssessmentCategoryScore,
    AssessmentGap,
    AssessmentResponse,
    get_session,
    utcnow,
)
from leadmagnet.errors import NotFoundError, PersistenceError, ReportLockedError, ValidationError
from leadmagnet.integrations import activecampaign
from leadmagnet.llm.narrative import Identity, NarrativeGenerator, NarrativeResult, build_prompt_payload
from leadmagnet.scoring.projector import Projection, project_optimized
from leadmagnet.scoring.question_bank import QuestionBank, load_bank
from leadmagnet.scoring.roi import ROIProjection, estimate_roi
from leadmagnet.scoring.scorer import Gap, ScoreResult, identify_gaps, score

REPORT_TTL_HOURS = float(os.getenv("REPORT_TTL_HOURS", "48"))
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

_email_adapter = TypeAdapter(EmailStr)


@dataclass
class Evaluation:
    bank: QuestionBank
    result: ScoreResult
    gaps: List[Gap]
    projection: Projection
    roi: ROIProjection
    payload: Dict[str, Any]
    identity: Identity


def report_url(token: str) -> str:
    return f"{FRONTEND_URL.rstrip('/')}/report?token={token}"


def validate_submission(
    variant: str, identifying_fields: Any, responses: Any
) -> Tuple[QuestionBank, Dict[str, str], Dict[str, str]]:
    """Reject malformed submissions before anything is computed."""
    bank = load_bank(variant)
    if not isinstance(identifying_fields, Mapping):
        raise ValidationError("identifying_fields must be an object")
    if not isinstance(responses, Mapping):
        raise ValidationError("responses must be an object")
    for key, value in responses.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValidationError("responses must map question ids to answer labels")

    fields: Dict[str, str] = {}
    for item in bank.identifying_fields:
        value = identifying_fields.get(item.id)
        if value is None or (isinstance(value, str) and not value.strip()):
            if item.required:
                raise ValidationError(f"Missing required field '{item.id}'")
            continue
        if not isinstance(value, str):
            raise ValidationError(f"Field '{item.id}' must be a string")
        value = value.strip()
        if item.options and value not in item.options:
            raise ValidationError(f"Field '{item.id}' must be one of: {', '.join(item.options)}")
        fields[item.id] = value
    return bank, fields, dict(responses)


def evaluate(bank: QuestionBank, fields: Mapping[str, str], responses: Mapping[str, str]) -> Evaluation:
    result = score(responses, bank)
    gaps = identify_gaps(result)
    projection = project_optimized(result, bank.ceilings)
    roi = estimate_roi(fields.get(bank.volume_field), result, bank.roi_model)
    return Evaluation(
        bank=bank,
        result=result,
        gaps=gaps,
        projection=projection,
        roi=roi,
        payload=build_prompt_payload(bank, result, projection, roi, gaps, fields),
        identity=Identity(company=fields.get(bank.name_field, ""), market=fields.get(bank.market_field, "")),
    )


class AssessmentOrchestrator:
    """Score, persist and narrate a submission; serve the email-gated report."""

    def __init__(
        self,
        narrative: Optional[NarrativeGenerator] = None,
        *,
        report_ttl_hours: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.narrative = narrative or NarrativeGenerator()
        self.report_ttl = timedelta(hours=report_ttl_hours if report_ttl_hours is not None else REPORT_TTL_HOURS)
        self.logger = logger or logging.getLogger("submission")

    async def submit(self, variant: str, identifying_fields: Any, responses: Any) -> Dict[str, Any]:
        """Run the full submission flow.

        Scoring, projection and ROI run synchronously. The primary record insert
        is the only fatal write; narrative, detail rows and logging degrade.

        Raises:
            ValidationError: unknown variant or malformed input.
            PersistenceError: the assessment record could not be stored.
        """
        bank, fields, answers = validate_submission(variant, identifying_fields, responses)
        evaluation = evaluate(bank, fields, answers)
        result = evaluation.result

        token = uuid4().hex
        created_at = utcnow()
        record = Assessment(
            variant=bank.variant,
            bank_version=bank.version,
            company_name=evaluation.identity.company,
            market=evaluation.identity.market,
            volume_label=fields.get(bank.volume_field, ""),
            shareable_token=token,
            inputs={"identifying_fields": fields, "responses": answers},
            score_result=result.as_dict(),
            projection=evaluation.projection.as_dict(),
            roi_projection=evaluation.roi.as_dict(),
            gaps=[gap.as_dict() for gap in evaluation.gaps],
            overall_percentage=result.overall_percentage,
            risk_tier=result.risk_tier,
            percentile_bucket=result.percentile_bucket,
            created_at=created_at,
            expires_at=created_at + self.report_ttl,
        )
        try:
            async with get_session() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except Exception as exc:
            monitoring.capture_exception(exc, step="persist", variant=bank.variant)
            self._log("persist", "failed", token, error=str(exc))
            raise PersistenceError("Failed to save assessment") from exc
        self._log("persist", "success", token, assessment_id=record.id, overall=result.overall_percentage)

        summary, analysis, status, error = await self._generate_narrative(evaluation, token)
        await self._store_narrative(record.id, token, summary, analysis, status, error)
        await self._store_details(record.id, token, evaluation)

        return {
            "success": True,
            "assessment_id": record.id,
            "shareable_token": token,
            "shareable_url": report_url(token),
            "expires_at": record.expires_at,
            "executive_summary": summary,
            "narrative_status": status,
            "score_result": record.score_result,
            "gaps": record.gaps,
            "projection": record.projection,
            "roi": record.roi_projection,
        }

    async def _generate_narrative(
        self, evaluation: Evaluation, token: str
    ) -> Tuple[str, Optional[Dict[str, Any]], str, Optional[str]]:
        summary_result, analysis_result = await asyncio.gather(
            self.narrative.executive_summary(evaluation.payload, evaluation.identity),
            self.narrative.full_analysis(evaluation.payload, evaluation.identity),
            return_exceptions=True,
        )

        errors = []
        if isinstance(summary_result, Exception):
            errors.append(f"executive_summary: {summary_result}")
            monitoring.capture_exception(summary_result, step="executive_summary", variant=evaluation.bank.variant)
            summary = evaluation.result.profile_summary
        else:
            summary = summary_result

        if isinstance(analysis_result, Exception):
            errors.append(f"full_analysis: {analysis_result}")
            monitoring.capture_exception(analysis_result, step="full_analysis", variant=evaluation.bank.variant)
            analysis = None
        else:
            analysis = analysis_result.data

        if not errors:
            status = "complete"
        elif len(errors) == 1:
            status = "partial"
        else:
            status = "fallback"
        error = "; ".join(errors) or None
        self._log("narrative", status, token, error=error)
        return summary, analysis, status, error

    async def _store_narrative(
        self,
        assessment_id: int,
        token: str,
        summary: str,
        analysis: Optional[Dict[str, Any]],
        status: str,
        error: Optional[str],
    ) -> None:
        try:
            async with get_session() as session:
                record = await session.get(Assessment, assessment_id)
                record.executive_summary = summary
                record.full_analysis = analysis
                record.narrative_status = status
                record.narrative_error = error[:2000] if error else None
                session.add(record)
                await session.commit()
        except Exception as exc:
            monitoring.capture_exception(exc, step="narrative_update")
            self._log("narrative_update", "failed", token, error=str(exc))

    async def _store_details(self, assessment_id: int, token: str, evaluation: Evaluation) -> None:
        result = evaluation.result
        rows = {
            "category_scores": [
                AssessmentCategoryScore(
                    assessment_id=assessment_id,
                    category=category.key,
                    title=category.title,
                    score=category.score,
                    max_score=category.max,
                    percentage=category.percentage,
                    bonus=category.bonus,
                )
                for category in result.categories
            ],
            "responses": [
                AssessmentResponse(
                    assessment_id=assessment_id,
                    question_id=question.question_id,
                    category=question.category,
                    question_text=question.prompt,
                    answer=question.answer,
                    points_earned=question.points,
                    max_points=question.max_points,
                )
                for question in result.questions
            ],
            "gaps": [
                AssessmentGap(
                    assessment_id=assessment_id,
                    question_id=gap.question_id,
                    category=gap.category,
                    question_text=gap.prompt,
                    current_answer=gap.current_answer,
                    best_answer=gap.best_possible_answer,
                    points_lost=gap.points_lost,
                    severity=gap.severity,
                )
                for gap in evaluation.gaps
            ],
        }
        for step, items in rows.items():
            if not items:
                continue
            try:
                async with get_session() as session:
                    session.add_all(items)
                    await session.commit()
            except Exception as exc:
                monitoring.capture_exception(exc, step=step)
                self._log(step, "failed", token, error=str(exc))

    async def _load_active(self, session, token: str) -> Assessment:
        if not token:
            raise NotFoundError("Report not found")
        statement = select(Assessment).where(Assessment.shareable_token == token)
        record = (await session.exec(statement)).first()
        # expiry and absence look the same to the caller
        if record is None or record.expires_at <= utcnow():
            raise NotFoundError("Report not found")
        return record

    async def get_report(self, token: str) -> Dict[str, Any]:
        async with get_session() as session:
            record = await self._load_active(session, token)
        locked = record.email is None
        return {
            "assessment_id": record.id,
            "variant": record.variant,
            "company_name": record.company_name,
            "market": record.market,
            "locked": locked,
            "created_at": record.created_at,
            "expires_at": record.expires_at,
            "completed_at": record.completed_at,
            "score_result": record.score_result,
            "gaps": record.gaps,
            "projection": record.projection,
            "roi": record.roi_projection,
            "executive_summary": record.executive_summary,
            "full_analysis": None if locked else record.full_analysis,
            "narrative_status": record.narrative_status,
        }

    async def capture_email(self, token: str, email: Any) -> Dict[str, Any]:
        """Record the email that unlocks the full report, then sync the lead to the CRM.

        Raises:
            ValidationError: the email address is malformed.
            NotFoundError: unknown or expired token.
            PersistenceError: the email could not be stored.
        """
        try:
            address = str(_email_adapter.validate_python(email))
        except PydanticValidationError as exc:
            raise ValidationError("Invalid email address") from exc

        async with get_session() as session:
            record = await self._load_active(session, token)
            if record.email is not None:
                # the first captured address owns the lead
                self._log("email_capture", "already_captured", token, assessment_id=record.id)
                return {"success": True, "report_url": report_url(token), "crm_synced": False}
            record.email = address
            record.completed_at = utcnow()
            session.add(record)
            try:
                await session.commit()
                await session.refresh(record)
            except Exception as exc:
                monitoring.capture_exception(exc, step="email_capture", variant=record.variant)
                raise PersistenceError("Failed to save email") from exc
        self._log("email_capture", "success", token, assessment_id=record.id)

        crm_synced = await self._sync_crm(record)
        return {"success": True, "report_url": report_url(token), "crm_synced": crm_synced}

    async def _sync_crm(self, record: Assessment) -> bool:
        if not activecampaign.is_configured():
            self._log("crm", "skipped", record.shareable_token, reason="not configured")
            return False

        crm = load_bank(record.variant).crm
        context: Dict[str, Any] = dict(record.inputs.get("identifying_fields", {}))
        context.update(
            {
                "overall_percentage": record.overall_percentage,
                "risk_tier": record.risk_tier,
                "assessment_id": record.id,
                "report_url": report_url(record.shareable_token),
                "lead_source": crm.get("lead_source", ""),
                "audience_label": crm.get("audience_label", ""),
            }
        )
        fields = {title: context.get(key, "") for title, key in (crm.get("fields") or {}).items()}
        names = record.company_name.split()
        first_name = names[0] if names else crm.get("first_name_fallback", "User")
        try:
            await activecampaign.sync_lead(
                email=record.email,
                first_name=first_name,
                risk_level=record.risk_tier,
                fields=fields,
                tag_prefix=crm.get("tag_prefix", ""),
                automation_id=os.getenv("AC_AUTOMATION_ID"),
            )
        except Exception as exc:
            monitoring.capture_exception(exc, step="crm", variant=record.variant)
            self._log("crm", "failed", record.shareable_token, error=str(exc))
            return False
        self._log("crm", "success", record.shareable_token)
        return True

    async def category_deep_dive(self, token: str, category: str) -> Tuple[str, NarrativeResult]:
        """Generate the follow-up email content for one category of an unlocked report.

        Raises:
            NotFoundError: unknown or expired token.
            ReportLockedError: no email captured yet.
            ValidationError: unknown category.
            NarrativeGenerationError: the narrative service failed.
        """
        async with get_session() as session:
            record = await self._load_active(session, token)
        if record.email is None:
            raise ReportLockedError("Report is locked until an email is provided")

        bank = load_bank(record.variant)
        if bank.category(category) is None:
            raise ValidationError(f"Unknown category '{category}'")
        inputs = record.inputs or {}
        evaluation = evaluate(bank, inputs.get("identifying_fields", {}), inputs.get("responses", {}))
        content = await self.narrative.deep_dive(evaluation.payload, category, evaluation.identity)
        self._log("deep_dive", "success", token, category=category)
        return category, content

    def _log(self, step: str, status: str, token: str, **extra: Any) -> None:
        payload = {"step": step, "status": status, "token": token[:8]}
        payload.update({key: value for key, value in extra.items() if value is not None})
        self.logger.info("submission", extra={"submission": payload})
