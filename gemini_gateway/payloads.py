from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from gemini_gateway.config import ModelKind

logger = logging.getLogger("uvicorn.error")

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9
DEFAULT_MAX_OUTPUT_TOKENS = 2048
DEFAULT_AUDIO_MIME_TYPE = "audio/mpeg"

_DATA_URL_PREFIX = re.compile(r"^data:[\w.+-]+/[\w.+-]+;base64,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s")

# Leading base64 text -> declared MIME type. "/9j/" is really a JPEG
# signature; existing clients depend on it mapping to image/png.
_MIME_SNIFF_TABLE: tuple[tuple[tuple[str, ...], str], ...] = (
    (("/9j/", "iVBORw0KGgo"), "image/png"),
    (("UklGR",), "image/webp"),
)
_FALLBACK_IMAGE_MIME_TYPE = "image/jpeg"


@dataclass(slots=True)
class InlineAttachment:
    data: str
    mime_type: str | None = None


@dataclass(slots=True)
class GenerationRequest:
    model: str
    contents: list[dict[str, Any]] = field(default_factory=list)
    message: str | None = None
    prompt: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    system_instruction: Any = None
    images: list[InlineAttachment] = field(default_factory=list)
    audio: InlineAttachment | None = None
    image_type: str | None = None
    chat_id: str | None = None


def sanitize_base64_image(data: str) -> str:
    cleaned = _DATA_URL_PREFIX.sub("", data.strip(), count=1)
    return _WHITESPACE.sub("", cleaned)


def sniff_image_mime_type(data: str) -> str:
    header = data[:30]
    for prefixes, mime_type in _MIME_SNIFF_TABLE:
        if header.startswith(prefixes):
            return mime_type
    return _FALLBACK_IMAGE_MIME_TYPE


def image_part(attachment: InlineAttachment) -> dict[str, Any]:
    sanitized = sanitize_base64_image(attachment.data)
    return {
        "inline_data": {
            "mime_type": attachment.mime_type or sniff_image_mime_type(sanitized),
            "data": sanitized,
        }
    }


def attach_images(
    contents: list[dict[str, Any]], images: list[InlineAttachment]
) -> list[dict[str, Any]]:
    prepared = copy.deepcopy(contents)
    if not images:
        return prepared

    first_user = next(
        (
            item
            for item in prepared
            if isinstance(item, dict)
            and item.get("role") == "user"
            and isinstance(item.get("parts"), list)
        ),
        None,
    )
    if first_user is None:
        logger.warning(
            "images_dropped reason=no_user_content count=%d", len(images)
        )
        return prepared

    for attachment in images:
        first_user["parts"].append(image_part(attachment))
    return prepared


def _generation_config(request: GenerationRequest) -> dict[str, Any]:
    return {
        "temperature": (
            DEFAULT_TEMPERATURE if request.temperature is None else request.temperature
        ),
        "topP": DEFAULT_TOP_P if request.top_p is None else request.top_p,
        "maxOutputTokens": (
            DEFAULT_MAX_OUTPUT_TOKENS
            if request.max_output_tokens is None
            else request.max_output_tokens
        ),
    }


def _system_instruction(value: Any) -> Any:
    if isinstance(value, str):
        return {"parts": [{"text": value}]}
    return value


def _user_prompt_contents(prompt: str) -> list[dict[str, Any]]:
    return [{"role": "user", "parts": [{"text": prompt}]}]


def build_text_payload(request: GenerationRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "contents": attach_images(request.contents, request.images),
        "generationConfig": _generation_config(request),
    }
    if request.system_instruction:
        payload["systemInstruction"] = _system_instruction(request.system_instruction)
    return payload


def build_image_predict_payload(
    request: GenerationRequest, image_type: str
) -> dict[str, Any]:
    prompt = request.prompt or ""
    if image_type == "imagen":
        return {"prompt": prompt, "sampleCount": 1}
    return {
        "contents": _user_prompt_contents(prompt),
        "generationConfig": {
            "temperature": DEFAULT_TEMPERATURE,
            "maxOutputTokens": DEFAULT_MAX_OUTPUT_TOKENS,
        },
    }


def build_image_stream_payload(request: GenerationRequest) -> dict[str, Any]:
    return {"contents": _user_prompt_contents(request.prompt or "")}


def build_audio_payload(request: GenerationRequest) -> dict[str, Any]:
    parts: list[dict[str, Any]] = []
    if request.message:
        parts.append({"text": request.message})
    if request.audio is not None:
        parts.append(
            {
                "inline_data": {
                    "mime_type": request.audio.mime_type or DEFAULT_AUDIO_MIME_TYPE,
                    "data": request.audio.data,
                }
            }
        )
    return {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": _generation_config(request),
    }


def default_image_type(model_id: str) -> str:
    return "imagen" if model_id.strip().lower().startswith("imagen-") else "gemini"


def build_payload(kind: ModelKind, request: GenerationRequest) -> dict[str, Any]:
    if kind == ModelKind.TEXT:
        return build_text_payload(request)
    if kind == ModelKind.IMAGE_PREDICT:
        image_type = request.image_type or default_image_type(request.model)
        return build_image_predict_payload(request, image_type)
    if kind == ModelKind.IMAGE_STREAM:
        return build_image_stream_payload(request)
    return build_audio_payload(request)
