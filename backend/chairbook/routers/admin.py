from typing import Optional

from fastapi import APIRouter, Header

from chairbook.auth import assert_system_caller
from chairbook.models import RemediationReport
from chairbook.services.remediation import remediation_scheduler

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/remediation/run", response_model=RemediationReport)
def run_remediation(authorization: Optional[str] = Header(default=None)):
    assert_system_caller(authorization=authorization)
    return remediation_scheduler.run_once()
