"""Conversational CV builder.

One ``CvBuilder.handle`` call is one model round-trip without tools: the model
reads the current CV draft plus recent history and answers with a JSON
document holding its reply and any CV fields it extracted. The client merges
``extractedData`` into its draft and saves through the ``save_cv_data`` tool or
its own CV endpoint once ``readyToSave`` is set.
"""

import json
import logging
from typing import Any

from pydantic import Field

from src.assistant.config import ChatConfig
from src.assistant.errors import InputValidationError, UpstreamModelError
from src.assistant.llm import ChatModel, ModelMessage
from src.assistant.models import CamelModel, HistoryMessage, truncate_history
from src.assistant.prompts import build_cv_chat_prompt, cv_copy, detect_locale

logger = logging.getLogger(__name__)


class UserInfo(CamelModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None

    @property
    def full_name(self) -> str | None:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or None


class CvChatRequest(CamelModel):
    message: str
    conversation_history: list[HistoryMessage] = Field(default_factory=list)
    current_cv_data: dict[str, Any] | None = None
    user_info: UserInfo | None = None
    locale: str = "en"


class CvChatResponse(CamelModel):
    response: str
    extracted_data: dict[str, Any] | None = None
    ready_to_save: bool = False
    suggested_questions: list[str] = Field(default_factory=list)
    degraded: bool = False


class CvBuilder:
    """Runs CV builder turns against the chat model."""

    def __init__(self, model: ChatModel, config: ChatConfig | None = None) -> None:
        self.model = model
        self.config = config or ChatConfig()

    async def handle(self, request: CvChatRequest) -> CvChatResponse:
        """Process one CV builder message.

        Raises:
            InputValidationError: If the message is empty or too long
        """
        message = request.message.strip()
        if not message:
            raise InputValidationError("Message must not be empty")
        if len(request.message) > self.config.max_message_length:
            raise InputValidationError(
                f"Message exceeds {self.config.max_message_length} characters"
            )

        locale = detect_locale(message, request.locale)
        history = truncate_history(request.conversation_history, self.config.max_history_messages)
        user = request.user_info
        system_prompt = build_cv_chat_prompt(
            request.current_cv_data,
            user.full_name if user else None,
            user.email if user else None,
            locale,
        )
        contents = [
            ModelMessage(role="user" if entry.role == "user" else "model", text=entry.content)
            for entry in history
        ]
        contents.append(ModelMessage(role="user", text=message))

        try:
            turn = await self.model.generate(system_prompt, contents, [], json_response=True)
        except UpstreamModelError as e:
            logger.error("CV builder model unavailable", extra={"error": str(e)})
            return self._fallback(locale)

        try:
            data = json.loads(turn.text or "")
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            logger.warning("CV builder answer was not a JSON object")
            return self._fallback(locale)

        reply = data.get("response")
        if not isinstance(reply, str) or not reply.strip():
            reply = cv_copy(locale).acknowledged

        extracted = data.get("extractedData")
        if not isinstance(extracted, dict) or not extracted:
            extracted = None

        questions = data.get("suggestedQuestions")
        if not isinstance(questions, list):
            questions = []

        return CvChatResponse(
            response=reply,
            extracted_data=extracted,
            ready_to_save=data.get("readyToSave") is True,
            suggested_questions=[q for q in questions if isinstance(q, str)],
        )

    def _fallback(self, locale: str) -> CvChatResponse:
        return CvChatResponse(response=cv_copy(locale).fallback, degraded=True)
