# /engage/routes/conversations.py

import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status

from engage.campaigns.smart_window import OUTSIDE_WINDOW_ERROR, is_in_free_window
from engage.config.settings import settings
from engage.dependencies.tenant import get_tenant_id
from engage.models.api import APIResponse, AutoReplyRuleRequest, ReplyRequest
from engage.models.common import utc_now
from engage.models.inbox import AutoReplyRule
from engage.services.db_service import db_service
from engage.services.whatsapp_service import whatsapp_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conversations",
    tags=["Inbox"]
)


@router.get("/", response_model=APIResponse)
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    store_id: str = Depends(get_tenant_id)
):
    conversations = await db_service.list_conversations(store_id, limit)
    return APIResponse(
        success=True,
        message="Conversations retrieved",
        data={"conversations": conversations},
        version=settings.api_version
    )


@router.get("/{conversation_id}/messages", response_model=APIResponse)
async def get_conversation_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=500),
    store_id: str = Depends(get_tenant_id)
):
    conversation = await db_service.get_conversation(store_id, conversation_id)
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    messages = await db_service.list_messages(conversation_id, limit)
    return APIResponse(
        success=True,
        message="Messages retrieved",
        data={"conversation": conversation, "messages": messages},
        version=settings.api_version
    )


@router.post("/{conversation_id}/reply", response_model=APIResponse)
async def reply_to_conversation(
    conversation_id: str,
    body: ReplyRequest,
    store_id: str = Depends(get_tenant_id)
):
    """Agent reply. Free-form text is only allowed inside the 24 hour window."""
    now = utc_now()
    conversation = await db_service.get_conversation(store_id, conversation_id)
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    contact = await db_service.get_contact(store_id, conversation["phone"])
    if not is_in_free_window(contact, now):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=OUTSIDE_WINDOW_ERROR)
    if not whatsapp_service.is_configured:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="WhatsApp is not configured")

    wamid = await whatsapp_service.send_text_message(
        conversation["phone"],
        body.message,
        metadata={"store_id": store_id, "conversation_id": conversation_id, "source": "agent"}
    )
    if not wamid:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="WhatsApp API rejected the message")

    await db_service.record_outbound_on_conversation(conversation_id, body.message[:100], now)
    logger.info(f"Agent reply sent on conversation {conversation_id}")
    return APIResponse(
        success=True,
        message="Reply sent",
        data={"message_id": wamid},
        version=settings.api_version
    )


@router.post("/auto-replies", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def create_auto_reply_rule(body: AutoReplyRuleRequest, store_id: str = Depends(get_tenant_id)):
    rule = AutoReplyRule(store_id=store_id, **body.model_dump())
    await db_service.create_auto_reply_rule(rule.model_dump())
    return APIResponse(
        success=True,
        message="Auto-reply rule created",
        data={"rule": rule.model_dump(mode="json")},
        version=settings.api_version
    )
