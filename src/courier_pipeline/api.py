"""
Courier Pipeline - REST API Endpoints.

``POST /api/send-notification`` validates a request, assigns its tier
and places it on the tier stream. The request is accepted (202) once
it is on the log; delivery happens asynchronously.
"""
from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import pydantic
import structlog

from courier_common.exceptions import PublishError, ValidationError

from .ingress import NotificationIngress
from .models import NotificationRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["notifications"])


class AcceptedResponse(BaseModel):
    """API response for an accepted notification."""
    status: str = "accepted"
    priority: int
    topic: str
    partition: int
    offset: int


class HealthResponse(BaseModel):
    status: str
    dependencies: dict[str, Any] = {}


def _get_ingress() -> NotificationIngress:
    """Dependency to get the ingress instance."""
    from .main import get_ingress
    return get_ingress()


def _bad_request(detail: Any) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness plus the state of the backing stores."""
    from .main import get_resources
    resources = get_resources()
    dependencies = await resources.check_health() if resources is not None else {}
    return HealthResponse(status="running", dependencies=dependencies)


@router.post("/send-notification", status_code=status.HTTP_202_ACCEPTED, response_model=AcceptedResponse)
async def send_notification(
    http_request: Request,
    ingress: NotificationIngress = Depends(_get_ingress),
) -> Any:
    """Accept a notification for asynchronous delivery."""
    try:
        body = await http_request.json()
        request = NotificationRequest.model_validate(body)
    except json.JSONDecodeError:
        logger.warning("api_invalid_json")
        return _bad_request("Request body must be JSON")
    except pydantic.ValidationError as e:
        logger.warning("api_invalid_request", errors=e.error_count())
        return _bad_request(json.loads(e.json(include_url=False, include_input=False)))

    try:
        accepted = await ingress.accept(request)
    except ValidationError as e:
        return _bad_request(e.message)
    except PublishError:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Error processing notification."},
        )

    return AcceptedResponse(
        priority=accepted.priority,
        topic=accepted.record.topic,
        partition=accepted.record.partition,
        offset=accepted.record.offset,
    )
