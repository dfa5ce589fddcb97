from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from flowlane.api.errors import error_response
from flowlane.automations.errors import StorageFailureError
from flowlane.automations.schemas import AutomationLogRead, AutomationReport, RunAutomationsRequest
from flowlane.automations.service import AutomationService, build_automation_service
from flowlane.core.database import get_session_factory


router = APIRouter(prefix="/api", tags=["automations"])


def get_automation_service(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> AutomationService:
    return build_automation_service(session_factory)


@router.post("/automations/run", response_model=AutomationReport)
def run_automations(
    dto: RunAutomationsRequest,
    request: Request,
    service: AutomationService = Depends(get_automation_service),
):
    try:
        return service.run(dto.trigger_type, dto.card_id, dto.pipe_id, dto.context)
    except StorageFailureError as exc:
        return error_response(
            request,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="automation_storage_unavailable",
            message="automation storage is unavailable",
            details={"error": exc.message[:500]},
        )


@router.get("/cards/{card_id}/automation-logs", response_model=list[AutomationLogRead])
def list_automation_logs(
    card_id: uuid.UUID,
    request: Request,
    service: AutomationService = Depends(get_automation_service),
):
    try:
        return service.list_logs(card_id)
    except StorageFailureError as exc:
        return error_response(
            request,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="automation_storage_unavailable",
            message="automation storage is unavailable",
            details={"error": exc.message[:500]},
        )
