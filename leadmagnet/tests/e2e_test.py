import inspect
import json
import os
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlmodel import select

pytestmark = pytest.mark.asyncio

SECRET = "test-secret-with-at-least-32-bytes!"

ANALYSIS = {
    "whatWeFound": "[COMPANY] tracks deadlines by hand.",
    "gapAnalysis": [{"category": "Risk Management", "issue": "Manual tracking", "severity": "HIGH"}],
    "keyInsight": "Agents in [MARKET] win on responsiveness.",
}

AGENT_FIELDS = {"company_name": "Jane Realty", "monthly_deals": "4", "location": "Austin"}


class FakeModel:
    """Stands in for the hosted model; the token budget tells the prompt kinds apart."""

    def __init__(self):
        self.fail = False
        self.calls = []
        self.responses = self

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise RuntimeError("model unavailable")
        if kwargs["max_output_tokens"] == 16000:
            return SimpleNamespace(output_text=f"```json\n{json.dumps(ANALYSIS)}\n```")
        if kwargs["max_output_tokens"] == 2000:
            body = {"subject": "[COMPANY], about your deadlines", "body": "Brokers in [MARKET] ..."}
            return SimpleNamespace(output_text=json.dumps(body))
        return SimpleNamespace(output_text="[COMPANY] in [MARKET] relies on memory for deadlines.")


class DummyScheduler:
    def __init__(self):
        self.running = False
        self.jobs = {}

    def start(self):
        self.running = True

    def add_job(self, func, trigger, **kwargs):
        self.jobs[kwargs["id"]] = (func, trigger, kwargs)
        return None

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def shutdown(self, wait=False):
        self.running = False


async def _no_sleep(seconds):
    return None


@pytest_asyncio.fixture
async def app_context(monkeypatch, tmp_path):
    db_path = tmp_path / "test_e2e.db"

    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)
    monkeypatch.setenv("SENTRY_DSN", "")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("AC_API_URL", raising=False)
    monkeypatch.delenv("AC_API_KEY", raising=False)

    import leadmagnet.db as db
    import leadmagnet.llm.narrative as narrative
    import leadmagnet.main as main
    from leadmagnet.llm.cache import InMemoryNarrativeCache
    from leadmagnet.orchestrator import AssessmentOrchestrator

    db.configure(f"sqlite+aiosqlite:///{db_path}")

    model = FakeModel()
    monkeypatch.setattr(narrative, "_get_client", lambda: model)
    generator = narrative.NarrativeGenerator(cache=InMemoryNarrativeCache(), sleep=_no_sleep)
    monkeypatch.setattr(main, "narrative_generator", generator)
    monkeypatch.setattr(main, "orchestrator", AssessmentOrchestrator(generator))

    scheduler = DummyScheduler()
    monkeypatch.setattr(main, "scheduler", scheduler)
    await main.on_startup()

    try:
        yield {"app": main.app, "db": db, "model": model, "scheduler": scheduler}
    finally:
        await main.on_shutdown()
        await db.engine.dispose()
        if Path(db_path).exists():
            os.remove(db_path)


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _responses(client, variant, pick):
    bank = (await client.get(f"/assessments/{variant}/questions")).json()
    return {
        question["id"]: pick(question["options"])
        for category in bank["categories"]
        for question in category["questions"]
    }


def _admin_headers():
    token = jwt.encode({"sub": "admin-1", "email": "admin@example.com"}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


async def test_startup_schedules_cache_eviction(app_context):
    scheduler = app_context["scheduler"]
    assert scheduler.running is True
    func, trigger, kwargs = scheduler.jobs["narrative-cache-evict"]
    assert trigger == "interval"
    assert kwargs["hours"] == 1
    # AsyncIOScheduler only runs coroutine functions on the event loop
    assert inspect.iscoroutinefunction(func)
    assert await func() == 0


async def test_submission_report_and_email_gate(app_context):
    db = app_context["db"]
    async with _client(app_context["app"]) as client:
        health = await client.get("/healthz")
        assert health.status_code == 200

        questions = await client.get("/assessments/agent/questions")
        assert questions.status_code == 200
        assert "points" not in questions.text

        # the worst answer is listed last in the agent bank
        responses = await _responses(client, "agent", lambda options: options[-1])
        submit = await client.post(
            "/assessments/agent",
            json={"identifying_fields": AGENT_FIELDS, "responses": responses},
        )
        assert submit.status_code == 200
        body = submit.json()
        token = body["shareable_token"]
        assert body["shareable_url"].endswith(f"/report?token={token}")
        assert body["narrative_status"] == "complete"
        assert body["executive_summary"] == "Jane Realty in Austin relies on memory for deadlines."
        assert body["score_result"]["overall_percentage"] == 17
        assert body["score_result"]["risk_tier"] == "CRITICAL"
        assert body["projection"]["optimized_percentage"] == 98
        assert body["roi"]["volume"] == 4
        assert body["gaps"][0]["question_id"] == "transaction_failures"

        report = await client.get(f"/reports/{token}")
        assert report.status_code == 200
        locked = report.json()
        assert locked["locked"] is True
        assert locked["full_analysis"] is None
        assert locked["executive_summary"].startswith("Jane Realty")
        assert locked["roi"]["roi_label"] == body["roi"]["roi_label"]

        gated = await client.get(f"/reports/{token}/deep-dive/risk_management")
        assert gated.status_code == 403

        capture = await client.post(f"/reports/{token}/email", json={"email": "jane@example.com"})
        assert capture.status_code == 200
        assert capture.json() == {
            "success": True,
            "report_url": body["shareable_url"],
            "crm_synced": False,
        }

        unlocked = (await client.get(f"/reports/{token}")).json()
        assert unlocked["locked"] is False
        assert unlocked["completed_at"] is not None
        assert unlocked["full_analysis"]["whatWeFound"] == "Jane Realty tracks deadlines by hand."
        assert unlocked["full_analysis"]["keyInsight"] == "Agents in Austin win on responsiveness."

        deep_dive = await client.get(f"/reports/{token}/deep-dive/risk_management")
        assert deep_dive.status_code == 200
        assert deep_dive.json() == {
            "category": "risk_management",
            "structured": True,
            "subject": "Jane Realty, about your deadlines",
            "body": "Brokers in Austin ...",
        }

        unknown_category = await client.get(f"/reports/{token}/deep-dive/marketing")
        assert unknown_category.status_code == 400

    async with db.get_session() as session:
        record = (await session.exec(select(db.Assessment).where(db.Assessment.shareable_token == token))).one()
        categories = (await session.exec(select(db.AssessmentCategoryScore))).all()
        answers = (await session.exec(select(db.AssessmentResponse))).all()
        gaps = (await session.exec(select(db.AssessmentGap))).all()
    assert record.email == "jane@example.com"
    assert record.narrative_status == "complete"
    assert {row.category for row in categories} == {"process_efficiency", "risk_management", "client_experience"}
    assert len(answers) == 10
    assert len(gaps) == 10
    assert all(row.assessment_id == record.id for row in categories + answers + gaps)


async def test_identical_answers_reuse_cached_narrative(app_context):
    model = app_context["model"]
    async with _client(app_context["app"]) as client:
        responses = await _responses(client, "agent", lambda options: options[1])
        first = await client.post(
            "/assessments/agent",
            json={"identifying_fields": AGENT_FIELDS, "responses": responses},
        )
        other = {"company_name": "Bob Homes", "monthly_deals": "4", "location": "Denver"}
        second = await client.post(
            "/assessments/agent",
            json={"identifying_fields": other, "responses": responses},
        )
    assert first.json()["executive_summary"].startswith("Jane Realty in Austin")
    assert second.json()["executive_summary"].startswith("Bob Homes in Denver")
    assert first.json()["shareable_token"] != second.json()["shareable_token"]
    assert len(model.calls) == 2


async def test_narrative_failure_falls_back_to_profile_summary(app_context):
    from leadmagnet.scoring.question_bank import load_bank

    app_context["model"].fail = True
    async with _client(app_context["app"]) as client:
        responses = await _responses(client, "brokerage", lambda options: options[0])
        fields = {"company_name": "Acme Brokers", "agent_count": "11-25", "monthly_deals": "21-50", "location": "Reno"}
        submit = await client.post("/assessments/brokerage", json={"identifying_fields": fields, "responses": responses})
        assert submit.status_code == 200
        body = submit.json()

        report = (await client.get(f"/reports/{body['shareable_token']}")).json()

    tier = load_bank("brokerage").risk_tiers.lookup(body["score_result"]["overall_percentage"])
    assert body["narrative_status"] == "fallback"
    assert body["executive_summary"] == tier.summary
    assert body["roi"]["volume"] == 11
    assert report["executive_summary"] == tier.summary
    assert report["narrative_status"] == "fallback"


async def test_invalid_submissions_are_rejected(app_context):
    async with _client(app_context["app"]) as client:
        unknown = await client.post("/assessments/mortgage", json={"identifying_fields": {}, "responses": {}})
        assert unknown.status_code == 400

        missing = await client.post(
            "/assessments/agent",
            json={"identifying_fields": {"company_name": "Jane Realty", "location": "  "}, "responses": {}},
        )
        assert missing.status_code == 400
        assert "monthly_deals" in missing.json()["detail"]

        bad_option = await client.post(
            "/assessments/brokerage",
            json={
                "identifying_fields": {
                    "company_name": "Acme",
                    "agent_count": "a few",
                    "monthly_deals": "1-10",
                    "location": "Reno",
                },
                "responses": {},
            },
        )
        assert bad_option.status_code == 400

        questions = await client.get("/assessments/mortgage/questions")
        assert questions.status_code == 404


async def test_oversized_free_text_volume_is_capped(app_context):
    fields = dict(AGENT_FIELDS, monthly_deals="9" * 306)
    async with _client(app_context["app"]) as client:
        submit = await client.post("/assessments/agent", json={"identifying_fields": fields, "responses": {}})
    assert submit.status_code == 200
    roi = submit.json()["roi"]
    assert roi["volume_clamped"] is True
    assert roi["volume"] == 100_000


async def test_unknown_and_expired_reports_are_not_found(app_context):
    db = app_context["db"]
    async with _client(app_context["app"]) as client:
        assert (await client.get("/reports/does-not-exist")).status_code == 404
        assert (await client.post("/reports/does-not-exist/email", json={"email": "a@example.com"})).status_code == 404

        submit = await client.post(
            "/assessments/agent",
            json={"identifying_fields": AGENT_FIELDS, "responses": {}},
        )
        token = submit.json()["shareable_token"]

        bad_email = await client.post(f"/reports/{token}/email", json={"email": "not-an-email"})
        assert bad_email.status_code == 422

        async with db.get_session() as session:
            record = (await session.exec(select(db.Assessment).where(db.Assessment.shareable_token == token))).one()
            record.expires_at = db.utcnow() - timedelta(minutes=1)
            session.add(record)
            await session.commit()

        expired = await client.get(f"/reports/{token}")
        assert expired.status_code == 404
        assert expired.json()["detail"] == (await client.get("/reports/does-not-exist")).json()["detail"]


async def test_email_capture_syncs_crm_when_configured(app_context, monkeypatch):
    from leadmagnet.integrations import activecampaign

    monkeypatch.setenv("AC_API_URL", "https://example.api-us1.com")
    monkeypatch.setenv("AC_API_KEY", "key")
    monkeypatch.setenv("AC_AUTOMATION_ID", "12")
    synced = []

    async def fake_sync_lead(**kwargs):
        synced.append(kwargs)
        return {"contact_id": "1", "tags": [], "fields_updated": 0, "automation": True}

    monkeypatch.setattr(activecampaign, "sync_lead", fake_sync_lead)

    async with _client(app_context["app"]) as client:
        submit = await client.post(
            "/assessments/agent",
            json={"identifying_fields": AGENT_FIELDS, "responses": {}},
        )
        token = submit.json()["shareable_token"]
        capture = await client.post(f"/reports/{token}/email", json={"email": "jane@example.com"})
        first_completed = (await client.get(f"/reports/{token}")).json()["completed_at"]
        repeat = await client.post(f"/reports/{token}/email", json={"email": "someone@example.com"})
        after_repeat = (await client.get(f"/reports/{token}")).json()

    assert capture.json()["crm_synced"] is True
    assert repeat.status_code == 200
    assert repeat.json()["crm_synced"] is False
    assert after_repeat["completed_at"] == first_completed
    assert len(synced) == 1
    db = app_context["db"]
    async with db.get_session() as session:
        record = (await session.exec(select(db.Assessment).where(db.Assessment.shareable_token == token))).one()
    assert record.email == "jane@example.com"
    call = synced[0]
    assert call["email"] == "jane@example.com"
    assert call["first_name"] == "Jane"
    assert call["risk_level"] == "CRITICAL"
    assert call["tag_prefix"] == "Agent - "
    assert call["automation_id"] == "12"
    assert call["fields"]["Overall Score"] == 0
    assert call["fields"]["City"] == "Austin"
    assert call["fields"]["Monthly Transactions"] == "4"
    assert call["fields"]["Report URL"].endswith(token)


async def test_crm_failure_does_not_fail_email_capture(app_context, monkeypatch):
    from leadmagnet.integrations import activecampaign

    monkeypatch.setenv("AC_API_URL", "https://example.api-us1.com")
    monkeypatch.setenv("AC_API_KEY", "key")

    async def failing_sync_lead(**kwargs):
        raise RuntimeError("ActiveCampaign contact sync failed")

    monkeypatch.setattr(activecampaign, "sync_lead", failing_sync_lead)

    async with _client(app_context["app"]) as client:
        submit = await client.post(
            "/assessments/agent",
            json={"identifying_fields": AGENT_FIELDS, "responses": {}},
        )
        token = submit.json()["shareable_token"]
        capture = await client.post(f"/reports/{token}/email", json={"email": "jane@example.com"})
        report = await client.get(f"/reports/{token}")

    assert capture.status_code == 200
    assert capture.json()["crm_synced"] is False
    assert report.json()["locked"] is False


async def test_admin_endpoints_require_a_token(app_context):
    async with _client(app_context["app"]) as client:
        assert (await client.get("/admin/stats")).status_code == 401
        assert (await client.get("/admin/stats", headers={"Authorization": "Bearer nope"})).status_code == 401

        submit = await client.post(
            "/assessments/agent",
            json={"identifying_fields": AGENT_FIELDS, "responses": {}},
        )
        token = submit.json()["shareable_token"]
        await client.post(f"/reports/{token}/email", json={"email": "jane@example.com"})
        await client.post(
            "/assessments/transaction_risk",
            json={
                "identifying_fields": {"company_name": "Acme", "agent_count": "26-50", "location": "Reno"},
                "responses": {},
            },
        )

        stats = await client.get("/admin/stats", headers=_admin_headers())
        assert stats.status_code == 200
        data = stats.json()
        assert data["total"] == 2
        assert data["completed"] == 1
        assert data["live"] == 2
        assert data["conversion_rate"] == 50.0
        assert data["average_score"] == 0.0
        assert data["by_variant"] == {"agent": 1, "brokerage": 0, "transaction_risk": 1}
        assert data["by_risk_tier"] == {"CRITICAL": 2}

        filtered = (await client.get("/admin/stats?variant=agent", headers=_admin_headers())).json()
        assert filtered["total"] == 1
        assert filtered["by_variant"] == {"agent": 1}

        cache = await client.get("/admin/cache", headers=_admin_headers())
        assert cache.status_code == 200
        assert cache.json()["backend"] == "memory"
        assert cache.json()["total_entries"] >= 1

        evict = await client.post("/admin/cache/evict", headers=_admin_headers())
        assert evict.json() == {"evicted": 0}
