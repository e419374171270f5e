"""HTTP API for text chat and conversation management.

Routes:
    POST   /ai/chat                       run one chat turn
    POST   /ai/cv-chat                    one CV builder turn
    POST   /ai/analyze-image              detect the service shown in a photo
    GET    /ai/welcome?locale=            opening message
    GET    /ai/conversations?ownerId=     list an owner's conversations
    GET    /ai/conversations/{id}         conversation with its messages
    DELETE /ai/conversations/{id}         delete
    PATCH  /ai/conversations/{id}         rename ({"ownerId", "title"})

Conversation routes require ``ownerId`` (400 without it) and are scoped to
it; a conversation owned by someone else is reported as not found.
"""

import json
import logging
from typing import Any

from aiohttp import web
from pydantic import Field, ValidationError

from src.assistant.chat import ChatRequest, TurnOrchestrator, welcome_response
from src.assistant.conversations import ConversationStore
from src.assistant.cv_chat import CvBuilder, CvChatRequest
from src.assistant.errors import InputValidationError
from src.assistant.models import CamelModel
from src.assistant.vision import ImageAnalysisRequest, ImageAnalyzer

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", TurnOrchestrator)
CV_BUILDER_KEY = web.AppKey("cv_builder", CvBuilder)
IMAGE_ANALYZER_KEY = web.AppKey("image_analyzer", ImageAnalyzer)
STORE_KEY = web.AppKey("store", object)

MAX_LIST_LIMIT = 100


class RenameRequest(CamelModel):
    owner_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)


def _json(model: Any, status: int = 200) -> web.Response:
    return web.Response(
        text=model.model_dump_json(by_alias=True),
        content_type="application/json",
        status=status,
    )


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _owner(request: web.Request) -> str | None:
    return request.query.get("ownerId") or None


def _owner_required() -> web.Response:
    return _error("ownerId is required", 400)


def _invalid(e: ValidationError) -> web.Response:
    first = e.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return _error(f"Invalid request: {field} {first['msg']}", 400)


async def chat(request: web.Request) -> web.Response:
    try:
        body = await request.json()
        chat_request = ChatRequest.model_validate(body)
        response = await request.app[ORCHESTRATOR_KEY].handle(chat_request)
    except json.JSONDecodeError:
        return _error("Request body must be JSON", 400)
    except ValidationError as e:
        return _invalid(e)
    except InputValidationError as e:
        return _error(str(e), 400)
    return _json(response)


async def cv_chat(request: web.Request) -> web.Response:
    try:
        cv_request = CvChatRequest.model_validate(await request.json())
        response = await request.app[CV_BUILDER_KEY].handle(cv_request)
    except json.JSONDecodeError:
        return _error("Request body must be JSON", 400)
    except ValidationError as e:
        return _invalid(e)
    except InputValidationError as e:
        return _error(str(e), 400)
    return _json(response)


async def analyze_image(request: web.Request) -> web.Response:
    try:
        image_request = ImageAnalysisRequest.model_validate(await request.json())
        analysis = await request.app[IMAGE_ANALYZER_KEY].analyze(image_request)
    except json.JSONDecodeError:
        return _error("Request body must be JSON", 400)
    except ValidationError as e:
        return _invalid(e)
    except InputValidationError as e:
        return _error(str(e), 400)
    return _json(analysis)


async def welcome(request: web.Request) -> web.Response:
    return _json(welcome_response(request.query.get("locale", "en")))


async def list_conversations(request: web.Request) -> web.Response:
    store: ConversationStore = request.app[STORE_KEY]  # type: ignore[assignment]
    owner_id = _owner(request)
    if owner_id is None:
        return _owner_required()
    try:
        limit = min(int(request.query.get("limit", "20")), MAX_LIST_LIMIT)
    except ValueError:
        return _error("limit must be an integer", 400)

    conversations = await store.list(owner_id, limit=max(limit, 1))
    return web.json_response(
        {"conversations": [c.model_dump(mode="json", by_alias=True) for c in conversations]}
    )


async def get_conversation(request: web.Request) -> web.Response:
    store: ConversationStore = request.app[STORE_KEY]  # type: ignore[assignment]
    conversation_id = request.match_info["conversation_id"]
    owner_id = _owner(request)
    if owner_id is None:
        return _owner_required()

    conversation = await store.get(conversation_id, owner_id)
    if conversation is None:
        return _error("Conversation not found", 404)

    messages = await store.messages(conversation_id, owner_id)
    data = conversation.model_dump(mode="json", by_alias=True)
    data["messages"] = [m.model_dump(mode="json", by_alias=True) for m in messages]
    return web.json_response(data)


async def delete_conversation(request: web.Request) -> web.Response:
    store: ConversationStore = request.app[STORE_KEY]  # type: ignore[assignment]
    owner_id = _owner(request)
    if owner_id is None:
        return _owner_required()
    deleted = await store.delete(request.match_info["conversation_id"], owner_id)
    if not deleted:
        return _error("Conversation not found", 404)
    return web.json_response({"success": True})


async def rename_conversation(request: web.Request) -> web.Response:
    store: ConversationStore = request.app[STORE_KEY]  # type: ignore[assignment]
    try:
        rename = RenameRequest.model_validate(await request.json())
    except json.JSONDecodeError:
        return _error("Request body must be JSON", 400)
    except ValidationError as e:
        return _error(f"Invalid request: {e.errors()[0]['msg']}", 400)

    conversation = await store.rename(
        request.match_info["conversation_id"], rename.owner_id, rename.title.strip()
    )
    if conversation is None:
        return _error("Conversation not found", 404)
    return _json(conversation)


def setup_api_routes(
    app: web.Application,
    orchestrator: TurnOrchestrator,
    cv_builder: CvBuilder,
    image_analyzer: ImageAnalyzer,
    store: ConversationStore,
) -> None:
    """Set up chat, CV builder, photo and conversation routes on application.

    Args:
        app: aiohttp Application instance
        orchestrator: Chat turn orchestrator
        cv_builder: CV builder chat
        image_analyzer: Photo service detection
        store: Conversation store
    """
    app[ORCHESTRATOR_KEY] = orchestrator
    app[CV_BUILDER_KEY] = cv_builder
    app[IMAGE_ANALYZER_KEY] = image_analyzer
    app[STORE_KEY] = store

    app.router.add_post("/ai/chat", chat)
    app.router.add_post("/ai/cv-chat", cv_chat)
    app.router.add_post("/ai/analyze-image", analyze_image)
    app.router.add_get("/ai/welcome", welcome)
    app.router.add_get("/ai/conversations", list_conversations)
    app.router.add_get("/ai/conversations/{conversation_id}", get_conversation)
    app.router.add_delete("/ai/conversations/{conversation_id}", delete_conversation)
    app.router.add_patch("/ai/conversations/{conversation_id}", rename_conversation)

    logger.info("Chat API endpoints configured under /ai")
