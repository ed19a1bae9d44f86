from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest
from pydantic import ValidationError

from gemini_gateway.storage.documents import InMemoryDocumentStore
from gemini_gateway.storage.repositories import (
    CHATS_COLLECTION,
    ChatMessage,
    ChatRepository,
    ModelConfigRepository,
    PipelineConfig,
)


def _clock() -> float:
    return 1_700_000_000.0


def test_model_config_defaults_are_lazy() -> None:
    store = InMemoryDocumentStore()
    repository = ModelConfigRepository(store, clock=_clock)

    text = repository.load("gemini-2.5-flash")
    image = repository.load("imagen-4")

    assert text.temperature == 0.7
    assert text.top_p == 0.95
    assert text.max_output_tokens == 8192
    assert text.output_type == "TEXT"
    assert text.enabled is True
    assert text.updated_at == 1_700_000_000_000
    assert image.output_type == "IMAGE"
    assert repository.load_saved("gemini-2.5-flash") is None
    assert store.list("modelConfigs") == {}


def test_model_config_save_merges_and_uses_camel_case() -> None:
    store = InMemoryDocumentStore()
    repository = ModelConfigRepository(store, clock=_clock)

    repository.save("gemini-2.5-pro", {"systemPrompt": "Be brief.", "temperature": 0.2})
    saved = repository.save("gemini-2.5-pro", {"enabled": False})

    assert saved.system_prompt == "Be brief."
    assert saved.temperature == 0.2
    assert saved.enabled is False
    document = store.get("modelConfigs", "gemini-2.5-pro")
    assert document is not None
    assert document["systemPrompt"] == "Be brief."
    assert document["modelId"] == "gemini-2.5-pro"
    assert document["updatedAt"] == 1_700_000_000_000


def test_model_config_save_validates_types() -> None:
    repository = ModelConfigRepository(InMemoryDocumentStore(), clock=_clock)

    with pytest.raises(ValidationError):
        repository.save("gemini-2.5-pro", {"temperature": "warm"})


def test_append_messages_creates_chat_and_titles_it() -> None:
    repository = ChatRepository(InMemoryDocumentStore(), clock=_clock)
    long_prompt = "Explain the difference between processes and threads in detail please"

    chat = repository.append_messages(
        "chat-1",
        [
            ChatMessage(role="user", content=long_prompt),
            ChatMessage(role="assistant", content="Sure."),
        ],
    )
    chat = repository.append_messages(
        "chat-1", [ChatMessage(role="user", content="And fibers?")]
    )

    assert chat.title == long_prompt[:50]
    assert [message.role for message in chat.messages] == ["user", "assistant", "user"]
    assert all(message.timestamp == 1_700_000_000_000 for message in chat.messages)


def test_explicit_title_is_not_overwritten() -> None:
    repository = ChatRepository(InMemoryDocumentStore(), clock=_clock)
    repository.create_chat("Trip planning", chat_id="c1")

    chat = repository.append_messages("c1", [ChatMessage(role="user", content="hi")])

    assert chat.title == "Trip planning"


def test_list_chats_orders_pinned_then_order() -> None:
    repository = ChatRepository(InMemoryDocumentStore(), clock=_clock)
    first = repository.create_chat("first")
    second = repository.create_chat("second")
    third = repository.create_chat("third")
    repository.set_pinned(first.id, True)

    titles = [chat.title for chat in repository.list_chats()]
    assert titles == ["first", "third", "second"]

    repository.reorder([second.id, third.id])
    assert [chat.title for chat in repository.list_chats()] == [
        "first",
        "second",
        "third",
    ]


def test_rename_delete_and_missing_chat() -> None:
    repository = ChatRepository(InMemoryDocumentStore(), clock=_clock)
    chat = repository.create_chat()

    assert chat.title == "New Chat"
    assert repository.rename_chat(chat.id, "  Renamed ").title == "Renamed"
    assert repository.delete_chat(chat.id) is True
    assert repository.get_chat(chat.id) is None
    with pytest.raises(KeyError):
        repository.rename_chat(chat.id, "again")


def test_pipeline_defaults_and_merge_save() -> None:
    store = InMemoryDocumentStore()
    repository = ChatRepository(store, clock=_clock)
    repository.create_chat("with pipeline", chat_id="c1")

    assert repository.load_pipeline("c1") == PipelineConfig()
    assert repository.load_pipeline("missing").temperature == 0.8

    repository.save_pipeline(
        "c1", PipelineConfig(enabled=True, model="gemini-2.5-pro", max_tokens=512)
    )

    loaded = repository.load_pipeline("c1")
    assert loaded.enabled is True
    assert loaded.model == "gemini-2.5-pro"
    assert loaded.max_tokens == 512
    document = store.get(CHATS_COLLECTION, "c1")
    assert document is not None
    assert document["title"] == "with pipeline"
    assert document["pipeline"]["maxTokens"] == 512


class _SlowReadStore(InMemoryDocumentStore):
    def _load_all(self) -> dict[str, dict[str, Any]]:
        data = super()._load_all()
        time.sleep(0.05)
        return data


def test_concurrent_appends_keep_every_message() -> None:
    repository = ChatRepository(_SlowReadStore(), clock=_clock)
    repository.create_chat("busy", chat_id="c1")

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(
                repository.append_messages,
                "c1",
                [ChatMessage(role="user", content=f"m{index}")],
            )
            for index in range(2)
        ]
        for future in futures:
            future.result()

    chat = repository.get_chat("c1")
    assert chat is not None
    assert sorted(message.content for message in chat.messages) == ["m0", "m1"]


def test_pin_does_not_drop_appended_messages() -> None:
    repository = ChatRepository(_SlowReadStore(), clock=_clock)
    repository.create_chat("busy", chat_id="c1")

    with ThreadPoolExecutor(max_workers=2) as pool:
        appended = pool.submit(
            repository.append_messages, "c1", [ChatMessage(role="user", content="hi")]
        )
        pinned = pool.submit(repository.set_pinned, "c1", True)
        appended.result()
        pinned.result()

    chat = repository.get_chat("c1")
    assert chat is not None
    assert chat.pinned is True
    assert [message.content for message in chat.messages] == ["hi"]
