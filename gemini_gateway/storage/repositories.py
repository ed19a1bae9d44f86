from __future__ import annotations

import logging
import time
from typing import Any, Callable, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from gemini_gateway.storage.documents import Document, DocumentStore

logger = logging.getLogger("uvicorn.error")

MODEL_CONFIGS_COLLECTION = "modelConfigs"
CHATS_COLLECTION = "chats"
DEFAULT_CHAT_TITLE = "New Chat"
CHAT_TITLE_MAX_CHARS = 50


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def is_image_model(model_id: str) -> bool:
    lowered = model_id.lower()
    return "image" in lowered or "imagen" in lowered or "nanobanana" in lowered


class ModelConfigDocument(_CamelModel):
    model_id: str
    display_name: str = ""
    description: str = ""
    system_prompt: str = ""
    temperature: float = 0.7
    top_p: float = 0.95
    max_output_tokens: int = 8192
    output_type: Literal["TEXT", "IMAGE"] = "TEXT"
    aspect_ratio: str = "1:1"
    sample_count: int = 1
    safety_settings: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    updated_at: int = 0

    @classmethod
    def defaults(cls, model_id: str, *, now_millis: int) -> ModelConfigDocument:
        return cls(
            model_id=model_id,
            display_name=model_id,
            output_type="IMAGE" if is_image_model(model_id) else "TEXT",
            updated_at=now_millis,
        )


class PipelineConfig(_CamelModel):
    enabled: bool = False
    model: str | None = None
    system_instruction: str = ""
    temperature: float = 0.8
    top_p: float = 0.95
    max_tokens: int = 2048


class ChatMessage(_CamelModel):
    role: Literal["user", "assistant"]
    content: str
    images: list[str] | None = None
    timestamp: int = 0


class Chat(_CamelModel):
    id: str
    title: str = DEFAULT_CHAT_TITLE
    pinned: bool = False
    order: int = 0
    messages: list[ChatMessage] = Field(default_factory=list)
    pipeline: PipelineConfig | None = None


def _epoch_millis(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


class ModelConfigRepository:
    def __init__(
        self, store: DocumentStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._store = store
        self._clock = clock

    def load_saved(self, model_id: str) -> ModelConfigDocument | None:
        raw = self._store.get(MODEL_CONFIGS_COLLECTION, model_id)
        if raw is None:
            return None
        return ModelConfigDocument.model_validate({**raw, "modelId": model_id})

    def load(self, model_id: str) -> ModelConfigDocument:
        try:
            saved = self.load_saved(model_id)
        except Exception as exc:
            logger.warning(
                "model_config_load_failed model=%s error=%s", model_id, exc
            )
            saved = None
        if saved is not None:
            return saved
        return ModelConfigDocument.defaults(
            model_id, now_millis=_epoch_millis(self._clock)
        )

    def save(self, model_id: str, updates: dict[str, Any]) -> ModelConfigDocument:
        current = self.load_saved(model_id) or ModelConfigDocument.defaults(
            model_id, now_millis=_epoch_millis(self._clock)
        )
        merged = ModelConfigDocument.model_validate(
            {
                **current.to_document(),
                **updates,
                "modelId": model_id,
                "updatedAt": _epoch_millis(self._clock),
            }
        )
        self._store.set(MODEL_CONFIGS_COLLECTION, model_id, merged.to_document())
        logger.info("model_config_saved model=%s", model_id)
        return merged


class ChatRepository:
    def __init__(
        self, store: DocumentStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._store = store
        self._clock = clock

    def _new_chat(self, title: str | None = None, chat_id: str | None = None) -> Chat:
        top_order = min((chat.order for chat in self.list_chats()), default=1)
        return Chat(
            id=chat_id or uuid4().hex,
            title=(title or "").strip() or DEFAULT_CHAT_TITLE,
            order=top_order - 1,
        )

    def _update_chat(
        self,
        chat_id: str,
        change: Callable[[Chat], None],
        *,
        create_missing: bool = False,
    ) -> Chat:
        def mutate(raw: Document | None) -> Document:
            if raw is not None:
                chat = Chat.model_validate({**raw, "id": chat_id})
            elif create_missing:
                chat = self._new_chat(chat_id=chat_id)
                logger.info("chat_created chat_id=%s", chat_id)
            else:
                raise KeyError(chat_id)
            change(chat)
            return chat.to_document()

        document = self._store.update(CHATS_COLLECTION, chat_id, mutate)
        return Chat.model_validate({**document, "id": chat_id})

    def get_chat(self, chat_id: str) -> Chat | None:
        raw = self._store.get(CHATS_COLLECTION, chat_id)
        if raw is None:
            return None
        return Chat.model_validate({**raw, "id": chat_id})

    def list_chats(self) -> list[Chat]:
        chats = [
            Chat.model_validate({**raw, "id": chat_id})
            for chat_id, raw in self._store.list(CHATS_COLLECTION).items()
        ]
        return sorted(chats, key=lambda chat: (not chat.pinned, chat.order, chat.id))

    def create_chat(self, title: str | None = None, chat_id: str | None = None) -> Chat:
        chat = self._new_chat(title, chat_id)
        self._store.set(CHATS_COLLECTION, chat.id, chat.to_document())
        logger.info("chat_created chat_id=%s", chat.id)
        return chat

    def append_messages(self, chat_id: str, messages: list[ChatMessage]) -> Chat:
        stamp = _epoch_millis(self._clock)
        for message in messages:
            if not message.timestamp:
                message.timestamp = stamp
        first_user = next(
            (message for message in messages if message.role == "user"), None
        )

        def change(chat: Chat) -> None:
            if not chat.messages and chat.title == DEFAULT_CHAT_TITLE and first_user:
                chat.title = first_user.content[:CHAT_TITLE_MAX_CHARS] or chat.title
            chat.messages.extend(messages)

        return self._update_chat(chat_id, change, create_missing=True)

    def rename_chat(self, chat_id: str, title: str) -> Chat:
        def change(chat: Chat) -> None:
            chat.title = title.strip() or DEFAULT_CHAT_TITLE

        return self._update_chat(chat_id, change)

    def set_pinned(self, chat_id: str, pinned: bool) -> Chat:
        def change(chat: Chat) -> None:
            chat.pinned = pinned

        return self._update_chat(chat_id, change)

    def reorder(self, chat_ids: list[str]) -> list[Chat]:
        for index, chat_id in enumerate(chat_ids):

            def change(chat: Chat, order: int = index) -> None:
                chat.order = order

            try:
                self._update_chat(chat_id, change)
            except KeyError:
                continue
        return self.list_chats()

    def delete_chat(self, chat_id: str) -> bool:
        deleted = self._store.delete(CHATS_COLLECTION, chat_id)
        if deleted:
            logger.info("chat_deleted chat_id=%s", chat_id)
        return deleted

    def load_pipeline(self, chat_id: str) -> PipelineConfig:
        try:
            chat = self.get_chat(chat_id)
        except Exception as exc:
            logger.warning("pipeline_load_failed chat_id=%s error=%s", chat_id, exc)
            return PipelineConfig()
        if chat is None or chat.pipeline is None:
            return PipelineConfig()
        return chat.pipeline

    def save_pipeline(self, chat_id: str, config: PipelineConfig) -> PipelineConfig:
        self._store.set(
            CHATS_COLLECTION,
            chat_id,
            {"pipeline": config.to_document()},
            merge=True,
        )
        logger.info("pipeline_saved chat_id=%s", chat_id)
        return config
