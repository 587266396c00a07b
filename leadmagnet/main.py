"""FastAPI application serving the assessment lead magnet."""

import os
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from leadmagnet import monitoring
from leadmagnet.analytics import assessment_stats
from leadmagnet.auth import AdminAuthMiddleware
from leadmagnet.db import init_db
from leadmagnet.errors import (
    NarrativeGenerationError,
    NotFoundError,
    PersistenceError,
    ReportLockedError,
    ValidationError,
)
from leadmagnet.llm.cache import build_cache
from leadmagnet.llm.narrative import NarrativeGenerator, ParsedStructured
from leadmagnet.orchestrator import AssessmentOrchestrator
from leadmagnet.schemas import (
    DeepDiveOut,
    EmailCaptureIn,
    EmailCaptureOut,
    ReportOut,
    StatsOut,
    SubmissionIn,
    SubmissionOut,
)
from leadmagnet.scoring.question_bank import available_variants, load_bank

API_PORT = int(os.getenv("API_PORT", "8000"))

monitoring.init_monitoring()

scheduler = AsyncIOScheduler()
narrative_generator = NarrativeGenerator(cache=build_cache())
orchestrator = AssessmentOrchestrator(narrative_generator)

app = FastAPI(title="Assessment Lead Magnet API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(AdminAuthMiddleware, protected_prefixes={"/admin"})


@app.on_event("startup")
async def on_startup():
    await init_db()
    for variant in available_variants():
        load_bank(variant)
    if not scheduler.running:
        scheduler.start()
    if not scheduler.get_job("narrative-cache-evict"):
        scheduler.add_job(
            narrative_generator.evict_expired,
            "interval",
            hours=1,
            id="narrative-cache-evict",
        )


@app.on_event("shutdown")
async def on_shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/healthz")
async def health_check():
    return {"status": "ok"}


@app.get("/assessments")
async def list_assessments():
    return [
        {"variant": bank.variant, "title": bank.title, "audience": bank.audience}
        for bank in (load_bank(variant) for variant in available_variants())
    ]


@app.get("/assessments/{variant}/questions")
async def get_questions(variant: str):
    try:
        bank = load_bank(variant)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return bank.public_view()


@app.post("/assessments/{variant}", response_model=SubmissionOut)
async def submit_assessment(variant: str, payload: SubmissionIn):
    """Score a submission, store it and return the shareable report link.

    Narrative failures never fail the request; the response carries the
    fallback summary and ``narrative_status`` instead.
    """
    try:
        result = await orchestrator.submit(variant, payload.identifying_fields, payload.responses)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail="Failed to save assessment") from exc
    return SubmissionOut(**result)


@app.get("/reports/{token}", response_model=ReportOut)
async def get_report(token: str):
    try:
        report = await orchestrator.get_report(token)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Report not found or expired") from exc
    return ReportOut(**report)


@app.post("/reports/{token}/email", response_model=EmailCaptureOut)
async def capture_email(token: str, payload: EmailCaptureIn):
    try:
        result = await orchestrator.capture_email(token, payload.email)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Report not found or expired") from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail="Failed to save email") from exc
    return EmailCaptureOut(**result)


@app.get("/reports/{token}/deep-dive/{category}", response_model=DeepDiveOut)
async def category_deep_dive(token: str, category: str):
    try:
        key, content = await orchestrator.category_deep_dive(token, category)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReportLockedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Report not found or expired") from exc
    except NarrativeGenerationError as exc:
        raise HTTPException(status_code=503, detail="Narrative service unavailable") from exc

    if isinstance(content, ParsedStructured):
        return DeepDiveOut(
            category=key,
            structured=True,
            subject=str(content.data.get("subject", "")),
            body=str(content.data.get("body", "")),
        )
    return DeepDiveOut(category=key, structured=False, body=content.text)


@app.get("/admin/stats", response_model=StatsOut)
async def admin_stats(variant: Optional[str] = None):
    if variant and variant not in available_variants():
        raise HTTPException(status_code=400, detail=f"Unknown assessment variant '{variant}'")
    stats = await assessment_stats(variant, variants=available_variants())
    return StatsOut(**stats)


@app.get("/admin/cache")
async def admin_cache_stats() -> Dict[str, Any]:
    return await narrative_generator.cache_stats()


@app.post("/admin/cache/evict")
async def admin_cache_evict() -> Dict[str, Any]:
    evicted = await narrative_generator.evict_expired()
    return {"evicted": evicted}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
