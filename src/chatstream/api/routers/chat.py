from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from ...domain.chat_models import DEFAULT_CONVERSATION_TITLE, ChatStreamRequest, Conversation
from ...infrastructure.attachment_store import AttachmentStore, get_attachment_store
from ...infrastructure.chat_store import ChatStore, get_chat_store
from ...infrastructure.context_buffer import ContextBuffer, ContextBufferEntry, get_context_buffer
from ...security.auth import User, get_current_user
from ...services.context_assembler import ContextAssembler, with_chart_protocol
from ...services.model_registry import (
    DEFAULT_MODEL,
    AdapterKind,
    ReasoningStyle,
    coerce_stored_model,
    get_model_token_limit,
    normalize_model_for_api,
    reasoning_style,
)
from ...services.orchestrator import ChatTurnPlan, StreamOrchestrator
from ...services.providers import ProviderAdapter, ProviderConfigError, StreamRequest, build_adapter
from ...services.streaming import EventEmitter
from ...services.web_search import WebSearchConfig, safety_settings_from_env


logger = logging.getLogger("chatstream.api")

router = APIRouter(prefix="/chat", tags=["chat"])

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-store, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Turns keep running after a disconnect; hold references until they finish.
_inflight: Set[asyncio.Task] = set()


def _error(message: str, status_code: int, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, "code": code})


def get_adapter_factory() -> Callable[[str], ProviderAdapter]:
    return build_adapter


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()))
    return f"Validation error: {field} - {first.get('msg', 'invalid')}"


def _reasoning_level(model: str, requested: Optional[str]) -> Optional[str]:
    if not requested or requested == "off":
        return None
    if reasoning_style(model) is ReasoningStyle.NONE:
        return None
    return requested


async def _load_or_create(store: ChatStore, user_id: str, conversation_id: Optional[str], model: Optional[str]) -> tuple[Conversation, bool]:
    conversation: Optional[Conversation] = None
    if conversation_id:
        try:
            conversation = await store.get_conversation(user_id, conversation_id)
        except Exception as exc:
            logger.warning("conversation_load_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
    if conversation is not None:
        return conversation, False
    created = await store.create_conversation(user_id, title=DEFAULT_CONVERSATION_TITLE, model=model)
    return created, True


async def _apply_truncation(
    store: ChatStore, buffer: ContextBuffer, user_id: str, conversation_id: str, body: ChatStreamRequest
) -> None:
    if body.truncate_message_id:
        try:
            await store.delete_messages_including_and_after(user_id, conversation_id, body.truncate_message_id)
        except Exception as exc:
            logger.error("truncate_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
    elif body.regenerate:
        try:
            await store.delete_last_assistant_message(user_id, conversation_id)
        except Exception as exc:
            logger.warning("regenerate_delete_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
        await buffer.remove_last_if_role(conversation_id, "assistant")


@router.post("/stream")
async def chat_stream(
    request: Request,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_chat_store),
    buffer: ContextBuffer = Depends(get_context_buffer),
    attachments: AttachmentStore = Depends(get_attachment_store),
    adapter_factory: Callable[[str], ProviderAdapter] = Depends(get_adapter_factory),
):
    try:
        raw = await request.json()
    except ValueError:
        return _error("Invalid request body", 400, "VALIDATION_ERROR")
    try:
        body = ChatStreamRequest.model_validate(raw)
    except ValidationError as exc:
        return _error(_validation_message(exc), 400, "VALIDATION_ERROR")

    try:
        conversation, is_new = await _load_or_create(store, user.id, body.conversation_id, body.model)
    except Exception as exc:
        logger.error("conversation_create_failed", extra={"user_id": user.id, "err": str(exc)})
        return _error(str(exc) or "Failed to load/create conversation", 500, "CONVERSATION_ERROR")
    conversation_id = conversation.conversation_id
    should_generate_title = (is_new or conversation.is_untitled()) and not body.regenerate

    requested_model = body.model or conversation.model or DEFAULT_MODEL
    model = normalize_model_for_api(requested_model)
    try:
        adapter = adapter_factory(model)
    except ProviderConfigError as exc:
        logger.error("provider_config_missing", extra={"model": model, "err": str(exc)})
        return _error(str(exc), 500, "CONFIG_ERROR")

    await _apply_truncation(store, buffer, user.id, conversation_id, body)

    if not body.skip_save_user_message:
        try:
            await store.save_message(conversation_id, user.id, "user", body.content)
        except Exception as exc:
            logger.error("user_message_save_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
            return _error(str(exc) or "Failed to save user message", 500, "MESSAGE_SAVE_ERROR")
        await buffer.append(conversation_id, ContextBufferEntry(role="user", text=body.content))

    gem_error = ""
    instructions = ""
    gem_id = conversation.gem_id
    try:
        profile = await store.get_gem_profile(user.id, conversation_id)
        instructions = profile.instructions
        gem_id = profile.gem_id or gem_id
        gem_error = profile.error
    except Exception as exc:
        gem_error = str(exc)
    logger.info(
        "gem_instructions_loaded",
        extra={"conversation_id": conversation_id, "active": bool(instructions), "chars": len(instructions)},
    )

    assembler = ContextAssembler(store, attachments, buffer)
    context = await assembler.assemble(
        user_id=user.id,
        conversation_id=conversation_id,
        current_message=body.content,
        system_prompt=instructions,
        token_limit=get_model_token_limit(requested_model),
    )

    web_search = WebSearchConfig.from_cookies(request.cookies)
    tools = web_search.tools() if adapter.kind is AdapterKind.GEMINI else []
    safety = safety_settings_from_env() if adapter.kind is AdapterKind.GEMINI else []

    gem_meta: Dict[str, Any] = {
        "gemId": gem_id,
        "hasSystemInstruction": bool(instructions.strip()),
        "systemInstructionChars": len(instructions),
        "error": gem_error,
    }
    model_meta: Dict[str, Any] = {
        "model": coerce_stored_model(requested_model),
        "isDefault": model == normalize_model_for_api(DEFAULT_MODEL),
    }
    plan = ChatTurnPlan(
        user_id=user.id,
        conversation_id=conversation_id,
        content=body.content,
        request=StreamRequest(
            model=model,
            turns=context.turns,
            system_prompt=with_chart_protocol(context.system_prompt),
            tools=tools,
            safety_settings=safety,
            reasoning_level=_reasoning_level(model, body.thinking_level),
            attachment_parts=context.attachment_parts,
        ),
        web_search=web_search,
        history=context.history,
        gem=gem_meta,
        model=model_meta,
        created_conversation=conversation if is_new else None,
        should_generate_title=should_generate_title,
    )

    emitter = EventEmitter()
    orchestrator = StreamOrchestrator(adapter, emitter, store=store, buffer=buffer)
    task = asyncio.create_task(orchestrator.run(plan))
    _inflight.add(task)
    task.add_done_callback(_inflight.discard)

    async def event_stream():
        try:
            async for frame in emitter.frames():
                yield frame
        finally:
            if not task.done():
                logger.info("client_disconnected", extra={"conversation_id": conversation_id})
            emitter.close()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)
