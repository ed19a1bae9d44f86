from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from gemini_gateway.config import ModelKind
from gemini_gateway.errors import NoImageDataError

logger = logging.getLogger("uvicorn.error")

NO_REPLY_PLACEHOLDER = "No response generated"
NO_TRANSCRIPT_PLACEHOLDER = "No transcript generated"

_Path = tuple[str | int, ...]

# Tried in order against a whole predict/generateImage response body.
PREDICT_IMAGE_STRATEGIES: tuple[tuple[str, _Path], ...] = (
    ("generatedImages.imageBase64", ("generatedImages", 0, "imageBase64")),
    ("generatedImages.image", ("generatedImages", 0, "image")),
    ("image", ("image",)),
    (
        "candidates.inlineData",
        ("candidates", 0, "content", "parts", 0, "inlineData", "data"),
    ),
)

# Tried in order against every part of a streamed chunk.
STREAM_PART_STRATEGIES: tuple[tuple[str, _Path], ...] = (
    ("inlineData.data", ("inlineData", "data")),
    ("inline_data.data", ("inline_data", "data")),
    ("media.data", ("media", "data")),
)


class LineStream(Protocol):
    def aiter_lines(self) -> AsyncIterator[str]: ...


@dataclass(slots=True)
class GenerationResult:
    model_used: str
    fallback_applied: bool = False
    reply: str | None = None
    transcript: str | None = None
    audio_url: str | None = None
    image: str | None = None


def dig(value: Any, path: _Path) -> Any:
    current = value
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
            continue
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _non_empty_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _first_candidate_parts(data: Any) -> list[dict[str, Any]]:
    parts = dig(data, ("candidates", 0, "content", "parts"))
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def extract_text_reply(data: Any, placeholder: str = NO_REPLY_PLACEHOLDER) -> str:
    text = _non_empty_str(dig(data, ("candidates", 0, "content", "parts", 0, "text")))
    return text if text is not None else placeholder


def extract_predict_image(data: Any) -> str:
    for label, path in PREDICT_IMAGE_STRATEGIES:
        image = _non_empty_str(dig(data, path))
        if image is not None:
            logger.info("image_extracted strategy=%s length=%d", label, len(image))
            return image
    keys = sorted(data.keys()) if isinstance(data, dict) else []
    logger.error("image_missing response_keys=%s", ",".join(keys))
    raise NoImageDataError("No image data found in API response")


def extract_chunk_image(chunk: Any) -> str | None:
    parts = _first_candidate_parts(chunk)
    for label, path in STREAM_PART_STRATEGIES:
        for part in parts:
            image = _non_empty_str(dig(part, path))
            if image is not None:
                logger.debug("stream_image_extracted strategy=%s", label)
                return image
    return None


def extract_audio(data: Any) -> tuple[str, str | None]:
    transcript = extract_text_reply(data, NO_TRANSCRIPT_PLACEHOLDER)
    audio_part = next(
        (part for part in _first_candidate_parts(data) if part.get("inlineData")),
        None,
    )
    audio_url: str | None = None
    if audio_part is not None:
        inline = audio_part["inlineData"]
        audio_data = _non_empty_str(inline.get("data")) if isinstance(inline, dict) else None
        if audio_data is not None:
            audio_url = f"data:{inline.get('mimeType')};base64,{audio_data}"
    return transcript, audio_url


async def iter_json_lines(upstream: LineStream) -> AsyncIterator[dict[str, Any]]:
    async for raw_line in upstream.aiter_lines():
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError as exc:
            logger.warning("stream_chunk_unparsable error=%s", exc)
            continue
        if isinstance(parsed, dict):
            yield parsed


async def extract_stream_image(upstream: LineStream) -> str:
    image: str | None = None
    chunks = 0
    async for chunk in iter_json_lines(upstream):
        chunks += 1
        extracted = extract_chunk_image(chunk)
        if extracted is not None:
            image = extracted
    if image is None:
        logger.error("stream_image_missing chunks=%d", chunks)
        raise NoImageDataError(
            "No image data found in Nanobanana API streaming response"
        )
    logger.info("stream_image_extracted chunks=%d length=%d", chunks, len(image))
    return image


def extract_result(kind: ModelKind, data: Any, *, model_used: str) -> GenerationResult:
    if kind == ModelKind.TEXT:
        return GenerationResult(model_used=model_used, reply=extract_text_reply(data))
    if kind == ModelKind.AUDIO:
        transcript, audio_url = extract_audio(data)
        return GenerationResult(
            model_used=model_used, transcript=transcript, audio_url=audio_url
        )
    if kind == ModelKind.IMAGE_PREDICT:
        return GenerationResult(model_used=model_used, image=extract_predict_image(data))
    raise ValueError(f"Streaming kind '{kind.value}' needs extract_stream_image().")
