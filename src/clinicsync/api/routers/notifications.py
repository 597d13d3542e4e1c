"""Notification inbox endpoints for the authenticated user."""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from clinicsync.api.dependencies import IdentityDep, ServicesDep
from clinicsync.api.middleware.errors import NotFoundError
from clinicsync.api.schemas.notifications import (
    MarkReadResponse,
    NotificationListResponse,
    NotificationResponse,
    SendNotificationRequest,
    SendNotificationResponse,
)
from clinicsync.services.notifications import notification_to_wire

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    services: ServicesDep,
    identity: IdentityDep,
    unread_only: Annotated[bool, Query(alias="unreadOnly")] = False,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> NotificationListResponse:
    rows = await services.notifications.list_for_user(
        identity.user_id, unread_only=unread_only, limit=limit
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(notification_to_wire(r)) for r in rows],
        unread_count=await services.notifications.unread_count(identity.user_id),
    )


@router.post("/{notification_id}/read", response_model=MarkReadResponse)
async def mark_read(
    notification_id: UUID, services: ServicesDep, identity: IdentityDep
) -> MarkReadResponse:
    if not await services.notifications.mark_read(notification_id, identity.user_id):
        raise NotFoundError("notification", str(notification_id))
    return MarkReadResponse(updated=1)


@router.post("/read-all", response_model=MarkReadResponse)
async def mark_all_read(services: ServicesDep, identity: IdentityDep) -> MarkReadResponse:
    return MarkReadResponse(updated=await services.notifications.mark_all_read(identity.user_id))


@router.post(
    "",
    response_model=SendNotificationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_notification(
    request: SendNotificationRequest,
    services: ServicesDep,
    identity: IdentityDep,
) -> SendNotificationResponse:
    """Store a notification for every resolved recipient and push it to those online.

    Recipients are the explicit users plus connected holders of the target
    roles, minus ``excludeUsers``.
    """
    result = await services.notifications.send_notification(request.notification, request.target)
    logger.info(
        "Notification sent by %s to %d recipients",
        identity.user_id,
        len(result.recipients),
    )
    return SendNotificationResponse(
        recipients=sorted(result.recipients),
        delivered=sorted(result.delivered),
        notification_ids={user: str(nid) for user, nid in result.notification_ids.items()},
    )
