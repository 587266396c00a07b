from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr


class SubmissionIn(BaseModel):
    identifying_fields: Dict[str, str]
    responses: Dict[str, str]


class SubmissionOut(BaseModel):
    success: bool = True
    assessment_id: int
    shareable_token: str
    shareable_url: str
    expires_at: datetime
    executive_summary: Optional[str] = None
    narrative_status: str
    score_result: Dict[str, Any]
    gaps: List[Dict[str, Any]]
    projection: Dict[str, Any]
    roi: Dict[str, Any]


class ReportOut(BaseModel):
    assessment_id: int
    variant: str
    company_name: str
    market: str
    locked: bool
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    score_result: Dict[str, Any]
    gaps: List[Dict[str, Any]]
    projection: Dict[str, Any]
    roi: Dict[str, Any]
    executive_summary: Optional[str] = None
    full_analysis: Optional[Dict[str, Any]] = None
    narrative_status: str


class EmailCaptureIn(BaseModel):
    email: EmailStr


class EmailCaptureOut(BaseModel):
    success: bool = True
    report_url: str
    crm_synced: bool


class DeepDiveOut(BaseModel):
    category: str
    structured: bool
    subject: Optional[str] = None
    body: str


class StatsOut(BaseModel):
    total: int
    completed: int
    live: int
    conversion_rate: float
    average_score: float
    by_variant: Dict[str, int]
    by_risk_tier: Dict[str, int]
