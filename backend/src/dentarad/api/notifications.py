"""API endpoint for sending case notifications."""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_db
from ..notifications.email import EmailError
from ..notifications.service import NotificationData, NotificationResult, NotificationService
from . import ExternalServiceError
from .auth import CurrentUser

router = APIRouter(prefix="/notifications", tags=["notifications"])


class SendNotificationRequest(BaseModel):
    type: str
    recipient_id: UUID
    data: NotificationData = NotificationData()


def get_notification_service(session: AsyncSession = Depends(get_db)) -> NotificationService:
    return NotificationService(session=session)


@router.post("/send", response_model=NotificationResult)
async def send_notification(
    body: SendNotificationRequest,
    user: CurrentUser,
    service: NotificationService = Depends(get_notification_service),
) -> NotificationResult:
    try:
        return await service.send_notification(body.type, body.recipient_id, body.data)
    except EmailError as e:
        raise ExternalServiceError("Resend", str(e))
