"""Unit tests for the text chat turn loop."""

import asyncio
import json

import pytest

from src.assistant.chat import (
    ChatRequest,
    ModelAnswer,
    TurnOrchestrator,
    compute_progress,
    derive_suggested_action,
    parse_answer,
    welcome_response,
)
from src.assistant.config import ChatConfig
from src.assistant.conversations import InMemoryConversationStore
from src.assistant.errors import InputValidationError, UpstreamModelError
from src.assistant.llm import ModelTurn
from src.assistant.models import HistoryMessage, ToolCall
from src.assistant.tools import ToolDispatcher
from tests.helpers.fakes import FakeCapabilities, ScriptedChatModel


def answer(**fields: object) -> ModelTurn:
    """Final model turn carrying a JSON answer."""
    body = {"understood": True, "needsMoreInfo": False, "readyToAction": False}
    body.update(fields)
    return ModelTurn(text=json.dumps(body, ensure_ascii=False))


def tool_turn(*calls: ToolCall) -> ModelTurn:
    return ModelTurn(tool_calls=list(calls))


@pytest.fixture
def capabilities() -> FakeCapabilities:
    return FakeCapabilities()


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def model() -> ScriptedChatModel:
    return ScriptedChatModel()


@pytest.fixture
def orchestrator(
    model: ScriptedChatModel, capabilities: FakeCapabilities, store: InMemoryConversationStore
) -> TurnOrchestrator:
    return TurnOrchestrator(model, ToolDispatcher(capabilities), capabilities, store, ChatConfig())


class TestValidation:
    """Input is rejected before any model call."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "   ", "\n\t"])
    async def test_empty_message(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel, message: str
    ) -> None:
        with pytest.raises(InputValidationError, match="empty"):
            await orchestrator.handle(ChatRequest(message=message))
        assert model.requests == []

    @pytest.mark.asyncio
    async def test_message_too_long(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        with pytest.raises(InputValidationError, match="2000"):
            await orchestrator.handle(ChatRequest(message="a" * 2001))
        assert model.requests == []

    @pytest.mark.asyncio
    async def test_message_at_limit_accepted(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [answer(aiResponse="ok")]
        response = await orchestrator.handle(ChatRequest(message="a" * 2000))
        assert response.ai_response == "ok"


class TestHistory:
    """Only the most recent history entries reach the model."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("length", [0, 1, 9, 10, 11, 25])
    async def test_history_truncated(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel, length: int
    ) -> None:
        history = [
            HistoryMessage(role="user" if i % 2 == 0 else "assistant", content=f"m{i}")
            for i in range(length)
        ]
        model.turns = [answer(aiResponse="ok")]

        await orchestrator.handle(ChatRequest(message="hello", history=history))

        _, contents = model.requests[0]
        used = contents[:-1]
        kept = min(length, 10)
        assert [m.text for m in used] == [f"m{i}" for i in range(length - kept, length)]
        assert [m.role for m in used] == [
            "user" if i % 2 == 0 else "model" for i in range(length - kept, length)
        ]
        assert contents[-1].text.startswith("hello")


class TestToolLoop:
    """Test the bounded model/tool loop."""

    @pytest.mark.asyncio
    async def test_round_cap(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
    ) -> None:
        """A model that never stops calling tools gets at most 5 round-trips."""
        model.default = lambda: ModelTurn(
            text=json.dumps({"aiResponse": "Searching...", "readyToAction": True}),
            tool_calls=[ToolCall(name="search_jobs", args={"search": "react"})],
        )

        response = await orchestrator.handle(ChatRequest(message="find me a job"))

        assert len(model.requests) == 5
        assert response.ready_to_action is False
        assert response.loop_exhausted is True
        assert response.ai_response == "Searching..."

    @pytest.mark.asyncio
    async def test_round_cap_without_text_uses_fallback_reply(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.default = lambda: tool_turn(ToolCall(name="search_jobs", args={}))

        response = await orchestrator.handle(ChatRequest(message="jobs please"))

        assert len(model.requests) == 5
        assert response.ready_to_action is False
        assert response.ai_response

    @pytest.mark.asyncio
    async def test_configured_round_cap(
        self, capabilities: FakeCapabilities, store: InMemoryConversationStore
    ) -> None:
        model = ScriptedChatModel()
        model.default = lambda: tool_turn(ToolCall(name="search_jobs", args={}))
        orchestrator = TurnOrchestrator(
            model, ToolDispatcher(capabilities), capabilities, store, ChatConfig(max_tool_rounds=2)
        )

        response = await orchestrator.handle(ChatRequest(message="jobs"))

        assert len(model.requests) == 2
        assert response.loop_exhausted is True

    @pytest.mark.asyncio
    async def test_tool_results_fed_back(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        capabilities: FakeCapabilities,
    ) -> None:
        call = ToolCall(id="call-1", name="search_jobs", args={"search": "react"})
        model.turns = [tool_turn(call), answer(aiResponse="Found one job", intent="find_job")]

        response = await orchestrator.handle(ChatRequest(message="react jobs"))

        assert capabilities.names() == ["search_jobs"]
        _, second_contents = model.requests[1]
        assert second_contents[-2].tool_calls == [call]
        assert second_contents[-1].role == "tool"
        assert second_contents[-1].tool_results[0].id == "call-1"
        assert response.tool_results[0].name == "search_jobs"
        assert response.tool_results[0].result["count"] == 1

    @pytest.mark.asyncio
    async def test_identical_tool_calls_run_once(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        capabilities: FakeCapabilities,
    ) -> None:
        first = ToolCall(id="a", name="search_jobs", args={"search": "react", "location": "London"})
        second = ToolCall(id="b", name="search_jobs", args={"location": "London", "search": "react"})
        model.turns = [tool_turn(first, second), answer(aiResponse="done")]

        await orchestrator.handle(ChatRequest(message="jobs"))

        assert capabilities.names() == ["search_jobs"]
        results = model.requests[1][1][-1].tool_results
        assert [r.id for r in results] == ["a", "b"]
        assert results[0].payload == results[1].payload

    @pytest.mark.asyncio
    async def test_same_tool_different_args_not_given_first_result(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        capabilities: FakeCapabilities,
    ) -> None:
        cleaning = ToolCall(id="a", name="search_providers", args={"serviceSlug": "cleaning"})
        plumbing = ToolCall(id="b", name="search_providers", args={"serviceSlug": "plumbing"})
        retry = ToolCall(id="c", name="search_providers", args={"serviceSlug": "plumbing"})
        model.turns = [
            tool_turn(cleaning, plumbing),
            tool_turn(retry),
            answer(aiResponse="done"),
        ]

        response = await orchestrator.handle(ChatRequest(message="cleaning and plumbing"))

        first_round = model.requests[1][1][-1].tool_results
        assert first_round[0].id == "a"
        assert first_round[0].payload["serviceSlug"] == "cleaning"
        assert first_round[1].id == "b"
        assert first_round[1].payload == {"error": "search_providers already called this round"}

        second_round = model.requests[2][1][-1].tool_results
        assert second_round[0].payload["serviceSlug"] == "plumbing"
        assert [kwargs["service_slug"] for _, kwargs in capabilities.calls] == [
            "cleaning",
            "plumbing",
        ]
        assert response.ai_response == "done"

    @pytest.mark.asyncio
    async def test_tools_in_one_round_run_concurrently(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        capabilities: FakeCapabilities,
    ) -> None:
        capabilities.release = asyncio.Event()
        model.turns = [
            tool_turn(
                ToolCall(name="search_jobs", args={}),
                ToolCall(name="search_providers", args={"serviceSlug": "cleaning"}),
            ),
            answer(aiResponse="done"),
        ]

        task = asyncio.create_task(orchestrator.handle(ChatRequest(message="both")))
        for _ in range(100):
            if len(capabilities.calls) == 2:
                break
            await asyncio.sleep(0.01)

        assert sorted(capabilities.names()) == ["search_jobs", "search_providers"]
        capabilities.release.set()
        response = await asyncio.wait_for(task, timeout=2.0)
        assert response.ai_response == "done"

    @pytest.mark.asyncio
    async def test_tool_error_does_not_abort_loop(
        self, capabilities: FakeCapabilities, store: InMemoryConversationStore
    ) -> None:
        failing = FakeCapabilities(fail={"search_jobs"})
        model = ScriptedChatModel(
            [tool_turn(ToolCall(name="search_jobs", args={})), answer(aiResponse="Sorry")]
        )
        orchestrator = TurnOrchestrator(model, ToolDispatcher(failing), failing, store)

        response = await orchestrator.handle(ChatRequest(message="jobs"))

        assert response.ai_response == "Sorry"
        assert "error" in response.tool_results[0].result


class TestTurkishScenario:
    @pytest.mark.asyncio
    async def test_cleaning_request_in_turkish(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        capabilities: FakeCapabilities,
    ) -> None:
        model.turns = [
            tool_turn(ToolCall(name="search_providers", args={"serviceSlug": "cleaning"})),
            answer(
                intent="find_service",
                userType="customer",
                serviceKey="cleaning",
                needsMoreInfo=True,
                aiResponse="Temizlik hizmeti için hangi bölgedesiniz?",
            ),
        ]

        response = await orchestrator.handle(
            ChatRequest(message="temizlik istiyorum", history=[], locale="tr")
        )

        assert capabilities.calls == [
            ("search_providers", {"service_slug": "cleaning", "location": None})
        ]
        assert response.ai_response == "Temizlik hizmeti için hangi bölgedesiniz?"
        assert response.service_key == "cleaning"
        assert response.progress.current_phase == "details"
        system_prompt, contents = model.requests[0]
        assert "fotoğraf" in system_prompt
        assert "locale=tr" in contents[-1].text

    @pytest.mark.asyncio
    async def test_turkish_detected_from_message(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [UpstreamModelError("down")]

        response = await orchestrator.handle(ChatRequest(message="boyacı lazım", locale="en"))

        assert response.ai_response.startswith("Merhaba")


class TestDegradation:
    @pytest.mark.asyncio
    async def test_upstream_failure_returns_fallback(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [UpstreamModelError("timeout")]

        response = await orchestrator.handle(ChatRequest(message="hello", isLoggedIn=True))

        assert response.degraded is True
        assert response.ready_to_action is False
        assert response.ai_response == "Hello! I'm the WorkBee assistant. How can I help you today?"
        assert [o.value for o in response.quick_replies.options] == [
            "find_service",
            "find_job",
            "post_job",
        ]
        assert response.auth_state.is_logged_in is True

    @pytest.mark.asyncio
    async def test_upstream_failure_after_tool_round(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [tool_turn(ToolCall(name="search_jobs", args={})), UpstreamModelError("x")]

        response = await orchestrator.handle(ChatRequest(message="jobs"))

        assert response.degraded is True

    @pytest.mark.asyncio
    async def test_plain_text_answer(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [ModelTurn(text="Sure, where do you live?")]

        response = await orchestrator.handle(ChatRequest(message="hi"))

        assert response.ai_response == "Sure, where do you live?"
        assert response.degraded is False
        assert response.needs_more_info is True


class TestPersistence:
    @pytest.mark.asyncio
    async def test_new_conversation_created(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        store: InMemoryConversationStore,
    ) -> None:
        model.turns = [answer(aiResponse="Hi there")]
        message = "I need someone to fix the leaking pipe under my kitchen sink today please"

        response = await orchestrator.handle(ChatRequest(message=message, userId="u1"))

        conversation = await store.get(response.conversation_id, "u1")
        assert conversation is not None
        assert conversation.title == message[:60]
        messages = await store.messages(conversation.id, "u1")
        assert [(m.role, m.content) for m in messages] == [
            ("user", message),
            ("assistant", "Hi there"),
        ]

    @pytest.mark.asyncio
    async def test_existing_conversation_appended(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        store: InMemoryConversationStore,
    ) -> None:
        conversation = await store.create("u1", "Earlier")
        model.turns = [answer(aiResponse="Again")]

        response = await orchestrator.handle(
            ChatRequest(message="hello", userId="u1", conversationId=conversation.id)
        )

        assert response.conversation_id == conversation.id
        assert len(await store.messages(conversation.id, "u1")) == 2

    @pytest.mark.asyncio
    async def test_foreign_conversation_not_reused(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        store: InMemoryConversationStore,
    ) -> None:
        foreign = await store.create("someone-else", "Theirs")
        model.turns = [answer(aiResponse="ok")]

        response = await orchestrator.handle(
            ChatRequest(message="hello", userId="u1", conversationId=foreign.id)
        )

        assert response.conversation_id != foreign.id
        assert await store.messages(foreign.id, "someone-else") == []

    @pytest.mark.asyncio
    async def test_guest_turns_not_persisted(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        store: InMemoryConversationStore,
    ) -> None:
        """Guests never share a stored conversation with other guests."""
        member = await store.create("u1", "Members only")
        model.default = lambda: answer(aiResponse="ok")

        first = await orchestrator.handle(ChatRequest(message="guest A private note"))
        second = await orchestrator.handle(
            ChatRequest(message="guest B", conversationId=member.id)
        )

        assert first.conversation_id is None
        assert second.conversation_id is None
        assert first.ai_response == "ok"
        assert await store.list("") == []
        assert await store.messages(member.id, "u1") == []

    @pytest.mark.asyncio
    async def test_fallback_reply_persisted(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        store: InMemoryConversationStore,
    ) -> None:
        model.turns = [UpstreamModelError("down")]

        response = await orchestrator.handle(ChatRequest(message="hello", userId="u1"))

        messages = await store.messages(response.conversation_id, "u1")
        assert messages[-1].content == response.ai_response

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_turn(
        self, model: ScriptedChatModel, capabilities: FakeCapabilities
    ) -> None:
        class BrokenStore(InMemoryConversationStore):
            async def create(self, owner_id, title):  # type: ignore[no-untyped-def]
                raise ConnectionError("redis down")

        orchestrator = TurnOrchestrator(
            model, ToolDispatcher(capabilities), capabilities, BrokenStore()
        )
        model.turns = [answer(aiResponse="still here")]

        response = await orchestrator.handle(ChatRequest(message="hello", userId="u1"))

        assert response.ai_response == "still here"
        assert response.conversation_id is None

    @pytest.mark.asyncio
    async def test_concurrent_turns_same_conversation(
        self,
        orchestrator: TurnOrchestrator,
        model: ScriptedChatModel,
        store: InMemoryConversationStore,
    ) -> None:
        """Concurrent turns all persist; each reply follows its own message."""
        conversation = await store.create("u1", "Shared")
        model.default = lambda: answer(aiResponse="reply")

        await asyncio.gather(
            *(
                orchestrator.handle(
                    ChatRequest(message=f"msg-{i}", userId="u1", conversationId=conversation.id)
                )
                for i in range(4)
            )
        )

        messages = await store.messages(conversation.id, "u1")
        assert len(messages) == 8
        user_positions = {m.content: i for i, m in enumerate(messages) if m.role == "user"}
        assert set(user_positions) == {f"msg-{i}" for i in range(4)}
        for position in user_positions.values():
            assert any(
                m.role == "assistant" for m in messages[position + 1 :]
            )


class TestResponseShaping:
    def test_parse_fenced_json(self) -> None:
        parsed = parse_answer('```json\n{"aiResponse": "Hi", "intent": "help"}\n```')
        assert parsed.ai_response == "Hi"
        assert parsed.intent == "help"

    def test_parse_json_with_bad_field_keeps_the_rest(self) -> None:
        parsed = parse_answer('{"aiResponse": "Hi", "intent": "help", "understood": "maybe-ish"}')

        assert parsed.ai_response == "Hi"
        assert parsed.intent == "help"
        assert parsed.understood is True

    def test_parse_json_drops_incomplete_quick_reply(self) -> None:
        raw = json.dumps(
            {
                "aiResponse": "Merhaba! Hangi bolgedesiniz?",
                "locationArea": "Londra",
                "quickReplyOptions": [
                    {"label": "Londra"},
                    {"label": "Manchester", "value": "Manchester"},
                ],
            }
        )

        parsed = parse_answer(raw)

        assert parsed.ai_response == "Merhaba! Hangi bolgedesiniz?"
        assert parsed.location_area == "Londra"
        assert [o.value for o in parsed.quick_reply_options or []] == ["Manchester"]

    def test_parse_json_with_bad_ai_response_never_leaks_json(self) -> None:
        parsed = parse_answer('{"aiResponse": ["not", "text"], "nextQuestion": "Where?"}')

        assert parsed.ai_response == "Where?"

    def test_parse_snake_case_keys(self) -> None:
        parsed = parse_answer('{"ai_response": "Hi", "quick_reply_options": "none"}')

        assert parsed.ai_response == "Hi"
        assert parsed.quick_reply_options is None

    def test_suggested_action_derivation(self) -> None:
        assert derive_suggested_action(ModelAnswer(suggestedAction="create_cv")) == "create_cv"
        assert (
            derive_suggested_action(ModelAnswer(readyToAction=True, intent="find_job"))
            == "show_jobs"
        )
        assert (
            derive_suggested_action(ModelAnswer(readyToAction=True, intent="find_service"))
            == "show_providers"
        )
        assert derive_suggested_action(ModelAnswer(intent="find_service")) == "continue_chat"

    def test_progress_phases(self) -> None:
        assert compute_progress(ModelAnswer()).current_phase == "userType"
        assert (
            compute_progress(ModelAnswer(userType="provider", intent="find_job")).current_phase
            == "service"
        )
        assert (
            compute_progress(ModelAnswer(userType="customer", serviceKey="hvac")).current_phase
            == "details"
        )
        progress = compute_progress(
            ModelAnswer(userType="customer", serviceKey="hvac", locationArea="London")
        )
        assert progress.current_phase == "complete"
        assert progress.completion_percent == 100
        assert progress.missing_fields == []

    @pytest.mark.asyncio
    async def test_service_key_keyword_fallback(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [answer(intent="find_service", aiResponse="Where?")]

        response = await orchestrator.handle(ChatRequest(message="my boiler is broken"))

        assert response.service_key == "hvac"

    @pytest.mark.asyncio
    async def test_coordinates_and_navigation(
        self, orchestrator: TurnOrchestrator, model: ScriptedChatModel
    ) -> None:
        model.turns = [
            tool_turn(ToolCall(name="navigate_user", args={"page": "/jobs"})),
            answer(aiResponse="Opening jobs", readyToAction=True, intent="find_job"),
        ]

        response = await orchestrator.handle(
            ChatRequest(message="show jobs", latitude=51.5, longitude=-0.12)
        )

        assert response.special_actions.navigate_to == "/jobs"
        assert response.location.coordinates.latitude == 51.5
        assert response.suggested_action == "show_jobs"

    def test_wire_format_is_camel_case(self) -> None:
        data = json.loads(welcome_response("pl").model_dump_json(by_alias=True))
        assert data["aiResponse"].startswith("Cześć")
        assert data["readyToAction"] is False
        assert data["quickReplies"]["options"][0]["description"]
        assert "loopExhausted" in data
