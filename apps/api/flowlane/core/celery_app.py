from typing import Any

from celery import Celery

from flowlane.core.config import get_settings

RUN_CASCADE_TASK = "flowlane.automations.run_cascade"

settings = get_settings()

celery_app = Celery("flowlane_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name=RUN_CASCADE_TASK)
def run_cascade_task(payload: dict[str, Any]) -> dict[str, Any]:
    # Imported here: the automations package enqueues through this module.
    from flowlane.automations.cascade import CascadeRequest
    from flowlane.automations.service import build_automation_service

    report = build_automation_service().run_cascade(CascadeRequest.from_payload(payload))
    return report.model_dump(mode="json")
