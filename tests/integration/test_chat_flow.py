"""Multi-turn chat flow over the HTTP API.

Runs two chat turns on the same conversation (the second carrying the first
as history), then walks the conversation management routes.
"""

import json
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from src.assistant.chat import TurnOrchestrator
from src.assistant.conversations import InMemoryConversationStore
from src.assistant.cv_chat import CvBuilder
from src.assistant.http_api import setup_api_routes
from src.assistant.llm import ModelTurn
from src.assistant.models import ToolCall
from src.assistant.tools import ToolDispatcher
from src.assistant.vision import ImageAnalyzer
from tests.helpers.fakes import FakeCapabilities, ScriptedChatModel


ChatApp = tuple[test_utils.TestClient, ScriptedChatModel, FakeCapabilities]


@pytest_asyncio.fixture
async def chat_app() -> AsyncIterator[ChatApp]:
    capabilities = FakeCapabilities()
    model = ScriptedChatModel()
    store = InMemoryConversationStore()
    app = web.Application()
    orchestrator = TurnOrchestrator(model, ToolDispatcher(capabilities), capabilities, store)
    setup_api_routes(app, orchestrator, CvBuilder(model), ImageAnalyzer(model), store)
    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    try:
        yield client, model, capabilities
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_service_request_conversation(chat_app: ChatApp) -> None:
    client, model, capabilities = chat_app
    first_reply = {
        "intent": "find_service",
        "userType": "customer",
        "serviceKey": "cleaning",
        "needsMoreInfo": True,
        "aiResponse": "Temizlik için hangi bölgedesiniz?",
        "quickReplyOptions": [{"label": "London", "value": "London"}],
    }
    second_reply = {
        "intent": "find_service",
        "userType": "customer",
        "serviceKey": "cleaning",
        "locationArea": "London",
        "readyToAction": True,
        "requiresRegistration": True,
        "aiResponse": "Londra'da 2 temizlikçi buldum.",
    }
    model.turns = [
        ModelTurn(text=json.dumps(first_reply, ensure_ascii=False)),
        ModelTurn(
            tool_calls=[
                ToolCall(
                    name="search_providers", args={"serviceSlug": "cleaning", "location": "London"}
                )
            ]
        ),
        ModelTurn(text=json.dumps(second_reply, ensure_ascii=False)),
    ]

    resp = await client.post(
        "/ai/chat", json={"message": "temizlik istiyorum", "locale": "tr", "userId": "u1"}
    )
    first = await resp.json()
    assert first["progress"]["currentPhase"] == "details"
    assert first["quickReplies"]["options"][0]["value"] == "London"
    conversation_id = first["conversationId"]

    resp = await client.post(
        "/ai/chat",
        json={
            "message": "Londra",
            "locale": "tr",
            "userId": "u1",
            "conversationId": conversation_id,
            "history": [
                {"role": "user", "content": "temizlik istiyorum"},
                {"role": "assistant", "content": first["aiResponse"]},
            ],
        },
    )
    second = await resp.json()

    assert second["conversationId"] == conversation_id
    assert second["suggestedAction"] == "show_providers"
    assert second["progress"]["currentPhase"] == "complete"
    assert second["toolResults"][0]["name"] == "search_providers"
    assert capabilities.calls == [
        ("search_providers", {"service_slug": "cleaning", "location": "London"})
    ]
    history_sent = model.requests[1][1]
    assert [m.text for m in history_sent[:2]] == ["temizlik istiyorum", first["aiResponse"]]

    resp = await client.get(f"/ai/conversations/{conversation_id}", params={"ownerId": "u1"})
    conversation = await resp.json()
    assert conversation["title"] == "temizlik istiyorum"
    assert [m["role"] for m in conversation["messages"]] == [
        "user",
        "assistant",
        "user",
        "assistant",
    ]
    assert conversation["messages"][3]["content"] == "Londra'da 2 temizlikçi buldum."

    resp = await client.patch(
        f"/ai/conversations/{conversation_id}", json={"ownerId": "u1", "title": "Cleaning"}
    )
    assert (await resp.json())["title"] == "Cleaning"

    resp = await client.get("/ai/conversations", params={"ownerId": "u1"})
    assert [c["title"] for c in (await resp.json())["conversations"]] == ["Cleaning"]

    resp = await client.delete(f"/ai/conversations/{conversation_id}", params={"ownerId": "u1"})
    assert resp.status == 200
    resp = await client.get("/ai/conversations", params={"ownerId": "u1"})
    assert (await resp.json())["conversations"] == []
