"""Text chat turn loop.

``TurnOrchestrator.handle`` runs one chat request: validate, build the model
context, then ask the model, run any requested tools and re-ask, for at most
``max_tool_rounds`` round-trips. The final model text is interpreted as a JSON
object of intent fields plus ``aiResponse``; plain text is accepted as the
reply. Upstream failures and round exhaustion never escape: the caller always
receives a ChatResponse.
"""

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import ConfigDict, Field, ValidationError

from src.assistant.capabilities import DEFAULT_REGIONS, Capabilities
from src.assistant.config import ChatConfig
from src.assistant.conversations import Conversation, ConversationStore, title_from_message
from src.assistant.errors import InputValidationError, LoopExhaustedError, UpstreamModelError
from src.assistant.llm import ChatModel, ModelMessage
from src.assistant.models import CamelModel, HistoryMessage, ToolCall, ToolResult, truncate_history
from src.assistant.prompts import (
    build_chat_system_prompt,
    build_session_context,
    detect_locale,
    entry_copy,
    infer_service_key,
)
from src.assistant.tools import TOOL_DECLARATIONS, ToolContext, ToolDispatcher

logger = logging.getLogger(__name__)

# Fields tracked by the progress summary, in collection order
PROGRESS_FIELDS = ("userType", "serviceKey", "location")


class ChatRequest(CamelModel):
    message: str
    history: list[HistoryMessage] = Field(default_factory=list)
    locale: str = "en"
    latitude: float | None = None
    longitude: float | None = None
    conversation_id: str | None = None
    session_id: str | None = None
    user_id: str | None = None
    is_logged_in: bool = False


class QuickReplyOption(CamelModel):
    label: str
    value: str
    description: str | None = None


class QuickReplies(CamelModel):
    type: str = "buttons"
    options: list[QuickReplyOption]


class AuthState(CamelModel):
    is_logged_in: bool = False
    user_id: str | None = None
    user_name: str | None = None
    requires_auth: bool = False
    auth_step: str = "none"


class Coordinates(CamelModel):
    latitude: float
    longitude: float


class LocationGuess(CamelModel):
    area: str | None = None
    postcode: str | None = None
    full_address: str | None = None
    coordinates: Coordinates | None = None


class SpecialActions(CamelModel):
    navigate_to: str | None = None


class Progress(CamelModel):
    collected_fields: list[str] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    completion_percent: int = 0
    current_phase: str = "userType"


class ToolOutcome(CamelModel):
    name: str
    result: dict[str, Any]


class ChatResponse(CamelModel):
    """Structured reply for one chat turn (camelCase on the wire)."""

    session_id: str
    conversation_id: str | None = None
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    auth_state: AuthState = Field(default_factory=AuthState)
    requires_registration: bool = False
    user_type: str | None = None
    intent: str | None = None
    category: str | None = None
    service_type: str | None = None
    service_key: str | None = None
    profession: str | None = None
    location: LocationGuess | None = None
    quick_replies: QuickReplies | None = None
    special_actions: SpecialActions | None = None
    progress: Progress = Field(default_factory=Progress)
    understood: bool = False
    needs_more_info: bool = True
    ready_to_action: bool = False
    request_photo: bool = False
    suggested_action: str = "continue_chat"
    ai_response: str
    next_question: str | None = None
    tool_results: list[ToolOutcome] = Field(default_factory=list)
    loop_exhausted: bool = False
    degraded: bool = False


class ModelAnswer(CamelModel):
    """Final JSON answer produced by the model. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    understood: bool = True
    intent: str | None = None
    user_type: str | None = None
    profession: str | None = None
    service_type: str | None = None
    service_key: str | None = None
    location_area: str | None = None
    needs_more_info: bool = False
    ready_to_action: bool = False
    requires_registration: bool = False
    request_photo: bool = False
    suggested_action: str | None = None
    navigate_to: str | None = None
    ai_response: str = ""
    next_question: str | None = None
    quick_reply_options: list[QuickReplyOption] | None = None
    quick_reply_type: str | None = None


def parse_answer(text: str | None) -> ModelAnswer:
    """Interpret final model text, accepting fenced JSON or plain prose."""
    if not text:
        return ModelAnswer(understood=False, needs_more_info=True)

    candidate = text.strip()
    if candidate.startswith("```"):
        candidate = candidate.strip("`")
        if candidate.lower().startswith("json"):
            candidate = candidate[4:]
        candidate = candidate.strip()

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        answer = _validate_answer(data)
        if not answer.ai_response:
            answer.ai_response = answer.next_question or ""
        return answer

    return ModelAnswer(ai_response=text.strip(), needs_more_info=True)


def _field_key(data: dict[str, Any], loc: Any) -> str | None:
    """Key of ``data`` holding the field named (by alias or name) in ``loc``."""
    if loc in data:
        return loc
    for name, info in ModelAnswer.model_fields.items():
        if loc in (name, info.alias):
            for key in (name, info.alias):
                if key in data:
                    return key
    return None


def _validate_answer(data: dict[str, Any]) -> ModelAnswer:
    """Validate the model's JSON answer, dropping values that do not fit.

    A bad list item (such as a quick reply without ``value``) drops only that
    item; any other bad value drops its field, which then takes its default.
    """
    fields = dict(data)
    while True:
        try:
            return ModelAnswer.model_validate(fields)
        except ValidationError as e:
            dropped_keys: set[str] = set()
            dropped_items: dict[str, set[int]] = {}
            for error in e.errors():
                loc = error["loc"]
                key = _field_key(fields, loc[0]) if loc else None
                if key is None:
                    continue
                value = fields[key]
                if len(loc) > 1 and isinstance(loc[1], int) and isinstance(value, list):
                    dropped_items.setdefault(key, set()).add(loc[1])
                else:
                    dropped_keys.add(key)

            if not dropped_keys and not dropped_items:
                logger.warning("Model answer did not match schema; ignoring its fields")
                return ModelAnswer()

            for key, indexes in dropped_items.items():
                fields[key] = [item for i, item in enumerate(fields[key]) if i not in indexes]
            for key in dropped_keys:
                fields.pop(key, None)
            logger.warning(
                "Dropped invalid values from model answer",
                extra={"fields": sorted(dropped_keys | set(dropped_items))},
            )


def call_key(call: ToolCall) -> tuple[str, str]:
    """Identity of a tool call for de-duplication: name plus canonical args."""
    return call.name, json.dumps(call.args, sort_keys=True, default=str)


def derive_suggested_action(answer: ModelAnswer) -> str:
    if answer.suggested_action:
        return answer.suggested_action
    if answer.ready_to_action:
        if answer.intent == "find_job":
            return "show_jobs"
        if answer.intent == "find_service":
            return "show_providers"
    return "continue_chat"


def compute_progress(answer: ModelAnswer) -> Progress:
    values = {
        "userType": answer.user_type,
        "serviceKey": answer.service_key,
        "location": answer.location_area,
    }
    collected = [name for name in PROGRESS_FIELDS if values[name]]
    missing = [name for name in PROGRESS_FIELDS if not values[name]]

    if not answer.user_type:
        phase = "userType"
    elif answer.intent == "find_job" or not answer.service_key:
        phase = "service"
    elif not answer.location_area:
        phase = "details"
    else:
        phase = "complete"

    return Progress(
        collected_fields=collected,
        missing_fields=missing,
        completion_percent=round(len(collected) / len(PROGRESS_FIELDS) * 100),
        current_phase=phase,
    )


def entry_quick_replies(locale: str, with_descriptions: bool = False) -> QuickReplies:
    copy = entry_copy(locale)
    entries = [
        (copy.find_service, "find_service", copy.find_service_desc),
        (copy.find_job, "find_job", copy.find_job_desc),
        (copy.post_job, "post_job", copy.post_job_desc),
    ]
    return QuickReplies(
        options=[
            QuickReplyOption(
                label=label, value=value, description=desc if with_descriptions else None
            )
            for label, value, desc in entries
        ]
    )


def welcome_response(locale: str = "en") -> ChatResponse:
    """Opening message shown before the user has typed anything."""
    return ChatResponse(
        session_id=str(uuid.uuid4()),
        quick_replies=entry_quick_replies(locale, with_descriptions=True),
        progress=Progress(missing_fields=["userType"]),
        understood=True,
        ai_response=entry_copy(locale).welcome,
    )


class TurnOrchestrator:
    """Runs the bounded model/tool loop for a single chat request.

    Holds no per-conversation state; everything a turn needs comes from the
    request and the conversation store.
    """

    def __init__(
        self,
        model: ChatModel,
        dispatcher: ToolDispatcher,
        capabilities: Capabilities,
        store: ConversationStore,
        config: ChatConfig | None = None,
    ) -> None:
        self.model = model
        self.dispatcher = dispatcher
        self.capabilities = capabilities
        self.store = store
        self.config = config or ChatConfig()

    def validate(self, request: ChatRequest) -> str:
        """Return the message to process or raise InputValidationError."""
        message = request.message.strip()
        if not message:
            raise InputValidationError("Message must not be empty")
        if len(request.message) > self.config.max_message_length:
            raise InputValidationError(
                f"Message exceeds {self.config.max_message_length} characters"
            )
        return message

    async def handle(self, request: ChatRequest) -> ChatResponse:
        """Process one chat request.

        Args:
            request: Parsed chat request

        Returns:
            ChatResponse, degraded when the model is unavailable

        Raises:
            InputValidationError: If the message is empty or too long
        """
        message = self.validate(request)
        locale = detect_locale(message, request.locale)
        session_id = request.session_id or str(uuid.uuid4())
        history = truncate_history(request.history, self.config.max_history_messages)
        context = ToolContext(
            user_id=request.user_id, is_logged_in=request.is_logged_in, locale=locale
        )

        logger.info(
            "Chat turn started",
            extra={
                "session_id": session_id,
                "locale": locale,
                "history_used": len(history),
                "history_received": len(request.history),
            },
        )

        conversation = await self._open_conversation(request, message)
        outcomes: list[ToolResult] = []

        try:
            final_text = await self._run_loop(message, history, locale, context, outcomes)
        except LoopExhaustedError as e:
            logger.warning(
                "Tool loop exhausted",
                extra={"session_id": session_id, "rounds": e.rounds},
            )
            response = self._build_response(request, session_id, locale, e.last_text, outcomes)
            response.ready_to_action = False
            response.loop_exhausted = True
            if response.suggested_action in ("show_jobs", "show_providers"):
                response.suggested_action = "continue_chat"
        except UpstreamModelError as e:
            logger.error("Chat model unavailable", extra={"session_id": session_id, "error": str(e)})
            response = self._fallback_response(request, session_id, locale)
        else:
            response = self._build_response(request, session_id, locale, final_text, outcomes)

        if conversation is not None:
            response.conversation_id = conversation.id
            await self._persist(conversation, message, response.ai_response)

        return response

    async def _run_loop(
        self,
        message: str,
        history: list[HistoryMessage],
        locale: str,
        context: ToolContext,
        outcomes: list[ToolResult],
    ) -> str | None:
        system_prompt = build_chat_system_prompt(await self._active_regions(), locale)
        contents = [
            ModelMessage(role="user" if entry.role == "user" else "model", text=entry.content)
            for entry in history
        ]
        contents.append(
            ModelMessage(
                role="user", text=message + build_session_context(locale, context.is_logged_in)
            )
        )

        last_text: str | None = None
        for round_number in range(1, self.config.max_tool_rounds + 1):
            turn = await self.model.generate(system_prompt, contents, TOOL_DECLARATIONS)
            if turn.text:
                last_text = turn.text
            if not turn.tool_calls:
                logger.debug("Model answered", extra={"rounds": round_number})
                return turn.text

            if round_number == self.config.max_tool_rounds:
                # Results could not be shown to the model any more
                break

            results = await self._run_tools(turn.tool_calls, context)
            outcomes.extend(results)
            contents.append(ModelMessage(role="model", tool_calls=turn.tool_calls, raw=turn.raw))
            contents.append(ModelMessage(role="tool", tool_results=results))

        raise LoopExhaustedError(self.config.max_tool_rounds, last_text)

    async def _run_tools(self, calls: list[ToolCall], context: ToolContext) -> list[ToolResult]:
        """Dispatch one round of tool calls concurrently, each tool at most once.

        A repeat of an executed call with the same arguments shares its
        result. A repeat with different arguments is not run; it gets an error
        result so the model can ask again in the next round.
        """
        executed: dict[str, ToolCall] = {}
        for call in calls:
            executed.setdefault(call.name, call)

        results = await asyncio.gather(
            *(self.dispatcher.dispatch(call, context) for call in executed.values())
        )
        by_name = dict(zip(executed, results, strict=True))

        round_results = []
        for call in calls:
            first = executed[call.name]
            if call is first or call_key(call) == call_key(first):
                payload = by_name[call.name].payload
            else:
                payload = {"error": f"{call.name} already called this round"}
            round_results.append(ToolResult(id=call.id, name=call.name, payload=payload))

        if len(executed) < len(calls):
            logger.info(
                "Repeated tool calls in one round not executed",
                extra={"calls": len(calls), "executed": len(executed)},
            )
        return round_results

    async def _active_regions(self) -> list[str]:
        try:
            return await self.capabilities.active_regions()
        except Exception:
            logger.warning("Active regions unavailable; using defaults", exc_info=True)
            return list(DEFAULT_REGIONS)

    def _build_response(
        self,
        request: ChatRequest,
        session_id: str,
        locale: str,
        text: str | None,
        outcomes: list[ToolResult],
    ) -> ChatResponse:
        answer = parse_answer(text)
        if not answer.ai_response:
            answer.ai_response = entry_copy(locale).welcome

        if not answer.service_key and answer.intent == "find_service":
            answer.service_key = infer_service_key(request.message)
            if answer.service_key:
                logger.info("serviceKey inferred from keywords", extra={"key": answer.service_key})

        navigate_to = answer.navigate_to
        for outcome in outcomes:
            if outcome.name == "navigate_user" and not outcome.is_error:
                navigate_to = navigate_to or outcome.payload.get("page")

        coordinates = None
        if request.latitude is not None and request.longitude is not None:
            coordinates = Coordinates(latitude=request.latitude, longitude=request.longitude)
        location = None
        if answer.location_area or coordinates:
            location = LocationGuess(area=answer.location_area, coordinates=coordinates)

        quick_replies = None
        if answer.quick_reply_options:
            quick_replies = QuickReplies(
                type=answer.quick_reply_type or "buttons", options=answer.quick_reply_options
            )

        return ChatResponse(
            session_id=session_id,
            auth_state=AuthState(is_logged_in=request.is_logged_in, user_id=request.user_id),
            requires_registration=answer.requires_registration,
            user_type=answer.user_type,
            intent=answer.intent,
            service_type=answer.service_type,
            service_key=answer.service_key,
            profession=answer.profession,
            location=location,
            quick_replies=quick_replies,
            special_actions=SpecialActions(navigate_to=navigate_to) if navigate_to else None,
            progress=compute_progress(answer),
            understood=answer.understood,
            needs_more_info=answer.needs_more_info,
            ready_to_action=answer.ready_to_action,
            request_photo=answer.request_photo,
            suggested_action=derive_suggested_action(answer),
            ai_response=answer.ai_response,
            next_question=answer.next_question,
            tool_results=[ToolOutcome(name=o.name, result=o.payload) for o in outcomes],
        )

    def _fallback_response(
        self, request: ChatRequest, session_id: str, locale: str
    ) -> ChatResponse:
        return ChatResponse(
            session_id=session_id,
            auth_state=AuthState(is_logged_in=request.is_logged_in, user_id=request.user_id),
            quick_replies=entry_quick_replies(locale),
            progress=Progress(missing_fields=list(PROGRESS_FIELDS)),
            understood=False,
            needs_more_info=True,
            ai_response=entry_copy(locale).welcome,
            degraded=True,
        )

    async def _open_conversation(
        self, request: ChatRequest, message: str
    ) -> Conversation | None:
        if not request.user_id:
            # Guests are not persisted; there is no owner to scope them to
            return None
        try:
            if request.conversation_id:
                conversation = await self.store.get(request.conversation_id, request.user_id)
                if conversation is not None:
                    return conversation
                logger.info(
                    "Conversation not found for owner; starting a new one",
                    extra={"conversation_id": request.conversation_id},
                )
            return await self.store.create(request.user_id, title_from_message(message))
        except Exception:
            logger.exception("Conversation store unavailable")
            return None

    async def _persist(self, conversation: Conversation, message: str, reply: str) -> None:
        try:
            await self.store.append(conversation.id, "user", message)
            await self.store.append(conversation.id, "assistant", reply)
        except Exception:
            logger.exception(
                "Failed to persist chat turn", extra={"conversation_id": conversation.id}
            )
