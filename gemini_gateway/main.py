from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError

from gemini_gateway.config import ModelKind, load_route_table
from gemini_gateway.errors import (
    GatewayError,
    NotFoundError,
    ValidationError,
    WrongEndpointError,
)
from gemini_gateway.extractors import GenerationResult
from gemini_gateway.gateway.audit import GatewayAuditLog, GatewayRequestEvent
from gemini_gateway.gateway.client import GeminiGateway
from gemini_gateway.gateway.cors import ALLOW_METHODS, CorsPolicy
from gemini_gateway.model_router import ENDPOINT_BY_KIND, ModelRouter
from gemini_gateway.payloads import (
    GenerationRequest,
    InlineAttachment,
    sanitize_base64_image,
    sniff_image_mime_type,
)
from gemini_gateway.settings import get_settings
from gemini_gateway.storage.documents import build_document_store
from gemini_gateway.storage.repositories import (
    ChatMessage,
    ChatRepository,
    ModelConfigRepository,
    PipelineConfig,
)

app = FastAPI(
    title="Gemini Chat Gateway",
    description="Chat gateway over Google's Gemini, Imagen and Vertex AI image APIs.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_IMAGE_MODEL = "imagen-4"
DEFAULT_STREAM_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_AUDIO_MODEL = "gemini-2.5-flash-audio"
GENERATION_PATHS = frozenset(
    {
        "/api/chat",
        "/api/generate",
        "/api/generateImage",
        "/api/generateAudio",
        "/api/nanobananaImage",
    }
)
STORE_ALLOW_METHODS = "GET, POST, PATCH, DELETE, OPTIONS"

OperationOutcome = tuple[GenerationResult, dict[str, Any]]

_KIND_LABELS: dict[ModelKind, str] = {
    ModelKind.TEXT: "a text model",
    ModelKind.IMAGE_PREDICT: "an image model",
    ModelKind.IMAGE_STREAM: "a streaming image model",
    ModelKind.AUDIO: "an audio model",
}


@app.middleware("http")
async def cors_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    policy: CorsPolicy | None = getattr(app.state, "cors_policy", None)
    if policy is None or not request.url.path.startswith("/api"):
        return await call_next(request)

    is_generation_path = request.url.path in GENERATION_PATHS
    cors_headers = policy.response_headers(
        request.headers,
        ALLOW_METHODS if is_generation_path else STORE_ALLOW_METHODS,
    )
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=cors_headers)

    if is_generation_path and request.method != "POST":
        response: Response = JSONResponse(
            status_code=405, content={"error": "Method not allowed"}
        )
    else:
        try:
            response = await call_next(request)
        except Exception as exc:
            response = _internal_error_response(request, exc)
    response.headers.update(cors_headers)
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    route_table = load_route_table(settings.model_routes_path)
    router = ModelRouter(route_table)
    audit_log = GatewayAuditLog(
        path=settings.gateway_audit_log_path,
        enabled=settings.gateway_audit_log_enabled,
    )
    store = build_document_store(settings.document_store_path)
    app.state.settings = settings
    app.state.model_router = router
    app.state.cors_policy = CorsPolicy(settings.cors_allowed_origins_list)
    app.state.audit_log = audit_log
    app.state.document_store = store
    app.state.model_configs = ModelConfigRepository(store)
    app.state.chats = ChatRepository(store)
    app.state.gateway = GeminiGateway(
        settings=settings,
        router=router,
        audit_hook=audit_log.record,
    )
    logger.info(
        "startup complete routes=%d default_model=%s cors_origins=%d "
        "audit_log_enabled=%s document_store=%s",
        len(router.routes()),
        router.default_model,
        len(settings.cors_allowed_origins_list),
        settings.gateway_audit_log_enabled,
        settings.document_store_path or "memory",
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    gateway: GeminiGateway | None = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.close()
    audit_log: GatewayAuditLog | None = getattr(app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.close()
    logger.info("shutdown complete")


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise ValidationError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object request body.")
    return payload


def _optional_number(body: dict[str, Any], key: str) -> float | None:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f'Invalid "{key}" field: expected a number')
    return float(value)


def _first_number(body: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = _optional_number(body, key)
        if value is not None:
            return value
    return None


def _optional_int(body: dict[str, Any], key: str) -> int | None:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'Invalid "{key}" field: expected an integer')
    return value


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'Invalid "{key}" field: expected a string')
    return value


def _parse_attachment(raw: Any, field_name: str) -> InlineAttachment:
    if not isinstance(raw, dict) or not isinstance(raw.get("data"), str):
        raise ValidationError(
            f'Invalid "{field_name}" entry: expected an object with a string "data"'
        )
    mime_type = raw.get("mimeType")
    if mime_type is not None and not isinstance(mime_type, str):
        raise ValidationError(
            f'Invalid "{field_name}" entry: "mimeType" must be a string'
        )
    return InlineAttachment(data=raw["data"], mime_type=mime_type or None)


def _require_prompt(body: dict[str, Any]) -> str:
    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise ValidationError('Missing or invalid "prompt" field')
    return prompt


def _ensure_endpoint_kind(
    router: ModelRouter, model: str, expected: ModelKind
) -> None:
    if router.is_known(model) and router.resolve(model).kind == expected:
        return
    correct = router.endpoint_for(model)
    if correct is None:
        others = [path for kind, path in ENDPOINT_BY_KIND.items() if kind != expected]
        suggestion = ", ".join(others)
    else:
        suggestion = correct
    raise WrongEndpointError(
        f'Wrong endpoint: model "{model}" is not {_KIND_LABELS[expected]}. '
        f"Use {suggestion} instead.",
        model=model,
        correct_endpoint=correct or "",
    )


def _parse_chat_request(body: dict[str, Any]) -> GenerationRequest:
    model = body.get("model")
    contents = body.get("contents")
    if not model or not contents:
        raise ValidationError("Missing required fields: model, contents")
    if not isinstance(model, str):
        raise ValidationError('Invalid "model" field: expected a string')
    if isinstance(contents, dict):
        contents = [contents]
    if not isinstance(contents, list) or not all(
        isinstance(item, dict) for item in contents
    ):
        raise ValidationError('Invalid "contents" field: expected a list of objects')

    raw_images = body.get("images") or []
    if not isinstance(raw_images, list):
        raise ValidationError('Invalid "images" field: expected a list')

    return GenerationRequest(
        model=model,
        contents=contents,
        temperature=_optional_number(body, "temperature"),
        top_p=_first_number(body, "top_p", "topP"),
        max_output_tokens=_optional_int(body, "maxOutputTokens"),
        system_instruction=body.get("systemInstruction"),
        images=[_parse_attachment(item, "images") for item in raw_images],
        chat_id=_optional_str(body, "chatId"),
    )


async def _apply_saved_model_config(request: GenerationRequest, model_id: str) -> None:
    repository: ModelConfigRepository = app.state.model_configs
    try:
        saved = await asyncio.to_thread(repository.load_saved, model_id)
    except Exception as exc:
        logger.warning("model_config_load_failed model=%s error=%s", model_id, exc)
        return
    if saved is None:
        return
    if not saved.enabled:
        raise ValidationError(f'Model "{model_id}" is disabled')
    if not request.system_instruction and saved.system_prompt:
        request.system_instruction = saved.system_prompt
    if request.temperature is None:
        request.temperature = saved.temperature
    if request.top_p is None:
        request.top_p = saved.top_p
    if request.max_output_tokens is None:
        request.max_output_tokens = saved.max_output_tokens


def _last_user_message(request: GenerationRequest) -> ChatMessage | None:
    for item in reversed(request.contents):
        if item.get("role") != "user":
            continue
        parts = item.get("parts")
        texts = [
            part["text"]
            for part in (parts if isinstance(parts, list) else [])
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        images = []
        for attachment in request.images:
            sanitized = sanitize_base64_image(attachment.data)
            mime_type = attachment.mime_type or sniff_image_mime_type(sanitized)
            images.append(f"data:{mime_type};base64,{sanitized}")
        return ChatMessage(role="user", content="\n".join(texts), images=images or None)
    return None


async def _persist_chat_turn(
    request: GenerationRequest, result: GenerationResult
) -> None:
    if not request.chat_id:
        return
    messages: list[ChatMessage] = []
    user_message = _last_user_message(request)
    if user_message is not None:
        messages.append(user_message)
    messages.append(ChatMessage(role="assistant", content=result.reply or ""))
    repository: ChatRepository = app.state.chats
    try:
        await asyncio.to_thread(repository.append_messages, request.chat_id, messages)
    except Exception as exc:
        logger.warning(
            "chat_persist_failed chat_id=%s error=%s", request.chat_id, exc
        )


def _emit_request_event(
    *,
    request_id: str,
    path: str,
    status: int,
    started: float,
    result: GenerationResult | None = None,
    error_type: str | None = None,
) -> None:
    audit_log: GatewayAuditLog | None = getattr(app.state, "audit_log", None)
    if audit_log is None:
        return
    audit_log.record(
        GatewayRequestEvent(
            request_id=request_id,
            path=path,
            status=status,
            latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
            model_used=result.model_used if result is not None else None,
            fallback_applied=result.fallback_applied if result is not None else None,
            error_type=error_type or None,
        )
    )


async def _handle_generation(
    request: Request,
    operation: Callable[[dict[str, Any]], Awaitable[OperationOutcome]],
) -> JSONResponse:
    request_id = _request_id(request)
    path = request.url.path
    started = time.perf_counter()
    try:
        body = await _read_json_object(request)
        result, content = await operation(body)
    except ValidationError as exc:
        logger.info(
            "request_rejected request_id=%s path=%s error_type=%s error=%s",
            request_id,
            path,
            exc.__class__.__name__,
            exc,
        )
        _emit_request_event(
            request_id=request_id,
            path=path,
            status=400,
            started=started,
            error_type=exc.__class__.__name__,
        )
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except Exception as exc:
        logger.exception(
            "request_failed request_id=%s path=%s error_type=%s",
            request_id,
            path,
            exc.__class__.__name__,
        )
        _emit_request_event(
            request_id=request_id,
            path=path,
            status=500,
            started=started,
            error_type=exc.__class__.__name__,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(exc)},
        )

    logger.info(
        "request_complete request_id=%s path=%s model=%s fallback_applied=%s",
        request_id,
        path,
        result.model_used,
        result.fallback_applied,
    )
    _emit_request_event(
        request_id=request_id, path=path, status=200, started=started, result=result
    )
    return JSONResponse(status_code=200, content=content)


async def _chat_operation(body: dict[str, Any]) -> OperationOutcome:
    router: ModelRouter = app.state.model_router
    gateway: GeminiGateway = app.state.gateway
    generation_request = _parse_chat_request(body)
    if router.is_known(generation_request.model):
        _ensure_endpoint_kind(router, generation_request.model, ModelKind.TEXT)
    route = router.resolve(generation_request.model)
    await _apply_saved_model_config(generation_request, route.model_id)

    result = await gateway.generate_text(generation_request)
    await _persist_chat_turn(generation_request, result)
    return result, {
        "reply": result.reply,
        "modelUsed": result.model_used,
        "fallbackApplied": result.fallback_applied,
    }


async def _image_operation(body: dict[str, Any]) -> OperationOutcome:
    router: ModelRouter = app.state.model_router
    gateway: GeminiGateway = app.state.gateway
    prompt = _require_prompt(body)
    model = _optional_str(body, "model") or DEFAULT_IMAGE_MODEL
    _ensure_endpoint_kind(router, model, ModelKind.IMAGE_PREDICT)
    image_type = _optional_str(body, "imageType")
    if image_type is not None and image_type not in {"imagen", "gemini"}:
        raise ValidationError(
            'Invalid "imageType" field: expected "imagen" or "gemini"'
        )

    result = await gateway.generate_image(
        GenerationRequest(model=model, prompt=prompt, image_type=image_type)
    )
    return result, {"image": result.image, "imageBase64": result.image}


async def _audio_operation(body: dict[str, Any]) -> OperationOutcome:
    router: ModelRouter = app.state.model_router
    gateway: GeminiGateway = app.state.gateway
    model = _optional_str(body, "model") or DEFAULT_AUDIO_MODEL
    _ensure_endpoint_kind(router, model, ModelKind.AUDIO)
    message = _optional_str(body, "message")
    raw_audio = body.get("audioData")
    audio = _parse_attachment(raw_audio, "audioData") if raw_audio is not None else None
    if not message and audio is None:
        raise ValidationError('Missing "message" or "audioData" field')

    result = await gateway.generate_audio(
        GenerationRequest(model=model, message=message, audio=audio)
    )
    return result, {
        "transcript": result.transcript,
        "audioUrl": result.audio_url,
        "model": model,
    }


async def _nanobanana_operation(body: dict[str, Any]) -> OperationOutcome:
    router: ModelRouter = app.state.model_router
    gateway: GeminiGateway = app.state.gateway
    prompt = _require_prompt(body)
    model = _optional_str(body, "model") or DEFAULT_STREAM_IMAGE_MODEL
    _ensure_endpoint_kind(router, model, ModelKind.IMAGE_STREAM)

    result = await gateway.generate_stream_image(
        GenerationRequest(model=model, prompt=prompt)
    )
    return result, {"image": result.image, "imageBase64": result.image}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/chat")
async def chat(request: Request) -> Response:
    return await _handle_generation(request, _chat_operation)


@app.post("/api/generate")
async def generate(request: Request) -> Response:
    return await _handle_generation(request, _chat_operation)


@app.post("/api/generateImage")
async def generate_image(request: Request) -> Response:
    return await _handle_generation(request, _image_operation)


@app.post("/api/generateAudio")
async def generate_audio(request: Request) -> Response:
    return await _handle_generation(request, _audio_operation)


@app.post("/api/nanobananaImage")
async def nanobanana_image(request: Request) -> Response:
    return await _handle_generation(request, _nanobanana_operation)


@app.get("/api/models")
async def models() -> dict[str, Any]:
    router: ModelRouter = app.state.model_router
    return {
        "object": "list",
        "default_model": router.default_model,
        "data": [
            {
                "id": route.model_id,
                "kind": route.kind.value,
                "endpoint": ENDPOINT_BY_KIND[route.kind],
                "upstream_model": route.upstream_model,
                "display_name": route.display_name or route.model_id,
            }
            for route in router.routes()
        ],
    }


@app.get("/api/modelConfigs/{model_id}")
async def get_model_config(model_id: str) -> dict[str, Any]:
    repository: ModelConfigRepository = app.state.model_configs
    document = await asyncio.to_thread(repository.load, model_id.strip().lower())
    return document.to_document()


@app.post("/api/modelConfigs/{model_id}")
async def save_model_config(model_id: str, request: Request) -> dict[str, Any]:
    repository: ModelConfigRepository = app.state.model_configs
    updates = await _read_json_object(request)
    document = await asyncio.to_thread(
        repository.save, model_id.strip().lower(), updates
    )
    return document.to_document()


@app.get("/api/chats")
async def list_chats() -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    chats = await asyncio.to_thread(repository.list_chats)
    return {"object": "list", "data": [chat.to_document() for chat in chats]}


@app.post("/api/chats")
async def create_chat(request: Request) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    body = await _read_json_object(request)
    chat = await asyncio.to_thread(repository.create_chat, _optional_str(body, "title"))
    return chat.to_document()


@app.post("/api/chats/reorder")
async def reorder_chats(request: Request) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    body = await _read_json_object(request)
    chat_ids = body.get("chatIds")
    if not isinstance(chat_ids, list) or not all(isinstance(i, str) for i in chat_ids):
        raise ValidationError('Invalid "chatIds" field: expected a list of strings')
    chats = await asyncio.to_thread(repository.reorder, chat_ids)
    return {"object": "list", "data": [chat.to_document() for chat in chats]}


@app.get("/api/chats/{chat_id}")
async def get_chat(chat_id: str) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    chat = await asyncio.to_thread(repository.get_chat, chat_id)
    if chat is None:
        raise NotFoundError(f"Chat '{chat_id}' not found.")
    return chat.to_document()


@app.patch("/api/chats/{chat_id}")
async def update_chat(chat_id: str, request: Request) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    body = await _read_json_object(request)
    title = _optional_str(body, "title")
    pinned = body.get("pinned")
    if pinned is not None and not isinstance(pinned, bool):
        raise ValidationError('Invalid "pinned" field: expected a boolean')
    try:
        if title is not None:
            await asyncio.to_thread(repository.rename_chat, chat_id, title)
        if pinned is not None:
            await asyncio.to_thread(repository.set_pinned, chat_id, pinned)
    except KeyError as exc:
        raise NotFoundError(f"Chat '{chat_id}' not found.") from exc
    return await get_chat(chat_id)


@app.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: str) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    deleted = await asyncio.to_thread(repository.delete_chat, chat_id)
    if not deleted:
        raise NotFoundError(f"Chat '{chat_id}' not found.")
    return {"id": chat_id, "deleted": True}


@app.get("/api/chats/{chat_id}/pipeline")
async def get_pipeline(chat_id: str) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    config = await asyncio.to_thread(repository.load_pipeline, chat_id)
    return config.to_document()


@app.post("/api/chats/{chat_id}/pipeline")
async def save_pipeline(chat_id: str, request: Request) -> dict[str, Any]:
    repository: ChatRepository = app.state.chats
    body = await _read_json_object(request)
    config = PipelineConfig.model_validate(body)
    saved = await asyncio.to_thread(repository.save_pipeline, chat_id, config)
    return saved.to_document()


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code < 500:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "Internal server error", "message": str(exc)},
    )


@app.exception_handler(PydanticValidationError)
async def document_validation_handler(
    _: Request, exc: PydanticValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(Exception)
def _internal_error_response(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request_failed path=%s error_type=%s",
        request.url.path,
        exc.__class__.__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return _internal_error_response(request, exc)


def run() -> None:
    import uvicorn

    uvicorn.run("gemini_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
