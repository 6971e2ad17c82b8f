from datetime import datetime
from pydantic import BaseModel
from typing import List, Optional

from audit_log import AuditRecord
from policy import PolicyRule, PolicySummary


class DeniedResponse(BaseModel):
    detail: str            # human-readable reason
    rule: str              # geo | bot | method | path | injection


class HealthResponse(BaseModel):
    status: str


class LogsResponse(BaseModel):
    logs: List[AuditRecord]


class DashboardResponse(BaseModel):
    rules: List[PolicyRule]
    summary: PolicySummary
    logs: List[AuditRecord]
    policy_available: bool
    policy_error: Optional[str] = None
    logs_available: bool
    generated_at: datetime


class ErrorResponse(BaseModel):
    detail: str
