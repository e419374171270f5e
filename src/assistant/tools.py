"""Tool declarations and the tool dispatcher.

The model is told about a fixed set of tools through ``TOOL_DECLARATIONS``.
When it calls one, ``ToolDispatcher.dispatch`` validates the model-supplied
arguments against the tool's schema, invokes the matching capability and
returns a ``ToolResult``. Both the text chat loop and the voice bridge treat
the dispatcher as infallible: every failure becomes ``{"error": ...}``.
"""

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from src.assistant.capabilities import Capabilities
from src.assistant.errors import ToolExecutionError
from src.assistant.models import CamelModel, ToolCall, ToolResult

logger = logging.getLogger(__name__)

SERVICE_SLUGS = [
    "cleaning",
    "plumbing",
    "electrical",
    "painting",
    "moving",
    "appliance-repair",
    "carpentry",
    "hvac",
    "locksmith",
    "gardening",
    "handyman",
    "tutoring",
    "photography",
    "personal-training",
    "pet-care",
]

# Declarations sent to the model. Names and required arguments must match the
# argument schemas below; tests check the two stay in sync.
TOOL_DECLARATIONS: list[dict[str, Any]] = [
    {
        "name": "search_jobs",
        "description": "Search for job listings when user is looking for work.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "search": {"type": "STRING", "description": "Search keyword"},
                "location": {"type": "STRING", "description": "Location"},
            },
        },
    },
    {
        "name": "search_providers",
        "description": "Search for service providers when user needs a service.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "serviceSlug": {
                    "type": "STRING",
                    "description": "Service type: " + ", ".join(SERVICE_SLUGS),
                },
                "location": {"type": "STRING", "description": "Location"},
            },
        },
    },
    {
        "name": "save_cv_data",
        "description": (
            "Save CV data. Use when enough info collected (headline + skill/experience)."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "headline": {"type": "STRING"},
                "summary": {"type": "STRING"},
                "location": {"type": "STRING"},
                "skills": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "name": {"type": "STRING"},
                            "level": {"type": "STRING"},
                        },
                        "required": ["name"],
                    },
                },
            },
            "required": ["headline"],
        },
    },
    {
        "name": "navigate_user",
        "description": "Navigate user to a page.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "page": {
                    "type": "STRING",
                    "description": "Page path like /jobs, /profile, /providers",
                },
                "reason": {"type": "STRING"},
            },
            "required": ["page"],
        },
    },
    {
        "name": "get_service_locations",
        "description": (
            "Get available locations for a service. Call after search_providers returns "
            "0 results, or when user asks which cities have a service."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "serviceSlug": {"type": "STRING", "description": "Service slug (optional)"},
            },
        },
    },
]


class ToolArgs(CamelModel):
    """Base schema for model-supplied tool arguments.

    Model output is untrusted: unknown keys are ignored, numbers are accepted
    where strings are expected and blank strings count as missing.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
        str_strip_whitespace=True,
    )

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class SearchJobsArgs(ToolArgs):
    search: str | None = None
    location: str | None = None


class SearchProvidersArgs(ToolArgs):
    service_slug: str | None = None
    location: str | None = None

    @field_validator("service_slug")
    @classmethod
    def normalize_slug(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.lower().replace("_", "-").replace(" ", "-")


class Skill(ToolArgs):
    name: str
    level: str | None = None


class SaveCvDataArgs(ToolArgs):
    headline: str
    summary: str | None = None
    location: str | None = None
    skills: list[Skill] = Field(default_factory=list)

    @field_validator("skills", mode="before")
    @classmethod
    def coerce_skills(cls, v: Any) -> Any:
        """Accept "a, b", ["a", "b"] or [{"name": "a"}]."""
        if v is None:
            return []
        if isinstance(v, str):
            v = [part for part in (p.strip() for p in v.split(",")) if part]
        if isinstance(v, list):
            return [{"name": item} if isinstance(item, str) else item for item in v]
        return v


class NavigateUserArgs(ToolArgs):
    page: str
    reason: str | None = None

    @field_validator("page")
    @classmethod
    def ensure_path(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"


class GetServiceLocationsArgs(ToolArgs):
    service_slug: str | None = None

    @field_validator("service_slug")
    @classmethod
    def normalize_slug(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.lower().replace("_", "-").replace(" ", "-")


TOOL_SCHEMAS: dict[str, type[ToolArgs]] = {
    "search_jobs": SearchJobsArgs,
    "search_providers": SearchProvidersArgs,
    "save_cv_data": SaveCvDataArgs,
    "navigate_user": NavigateUserArgs,
    "get_service_locations": GetServiceLocationsArgs,
}


@dataclass
class ToolContext:
    """Caller identity a tool runs on behalf of."""

    user_id: str | None = None
    is_logged_in: bool = False
    locale: str = "en"


class ToolDispatcher:
    """Maps tool calls to capability calls.

    ``dispatch`` never raises: unknown tools, invalid arguments and capability
    failures all produce a ToolResult whose payload carries an ``error`` key.
    """

    def __init__(self, capabilities: Capabilities) -> None:
        self.capabilities = capabilities

    async def dispatch(self, call: ToolCall, context: ToolContext | None = None) -> ToolResult:
        """Execute one tool call.

        Args:
            call: Tool call issued by the model
            context: Caller identity (anonymous when omitted)

        Returns:
            ToolResult correlated to ``call.id``
        """
        context = context or ToolContext()
        schema = TOOL_SCHEMAS.get(call.name)
        if schema is None:
            logger.warning("Unknown tool requested", extra={"tool": call.name})
            return ToolResult(
                id=call.id, name=call.name, payload={"error": f"Unknown tool: {call.name}"}
            )

        try:
            args = schema.model_validate(call.args if isinstance(call.args, dict) else {})
        except ValidationError as e:
            logger.warning(
                "Invalid tool arguments",
                extra={"tool": call.name, "errors": e.error_count()},
            )
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            return ToolResult(
                id=call.id,
                name=call.name,
                payload={"error": f"Invalid arguments for {call.name}: {field} {first['msg']}"},
            )

        try:
            payload = await self._execute(call.name, args, context)
        except ToolExecutionError as e:
            logger.warning("Tool execution failed", extra={"tool": call.name, "error": str(e)})
            payload = {"error": str(e)}
        except Exception as e:
            logger.exception("Unexpected tool error", extra={"tool": call.name})
            payload = {"error": f"{call.name} failed: {e}"}

        logger.info(
            "Tool call completed",
            extra={"tool": call.name, "call_id": call.id, "ok": "error" not in payload},
        )
        return ToolResult(id=call.id, name=call.name, payload=payload)

    async def _execute(self, name: str, args: ToolArgs, context: ToolContext) -> dict[str, Any]:
        if isinstance(args, SearchJobsArgs):
            return await self.capabilities.search_jobs(args.search, args.location)

        if isinstance(args, SearchProvidersArgs):
            return await self.capabilities.search_providers(args.service_slug, args.location)

        if isinstance(args, SaveCvDataArgs):
            cv = args.model_dump(by_alias=True, exclude_none=True)
            if not context.is_logged_in or not context.user_id:
                # Guests can draft a CV; it is saved after sign-up
                return {"success": True, "saved": False, "requiresLogin": True, "draft": cv}
            return await self.capabilities.save_cv_data(context.user_id, cv)

        if isinstance(args, NavigateUserArgs):
            return {"page": args.page, "reason": args.reason}

        if isinstance(args, GetServiceLocationsArgs):
            return await self.capabilities.get_service_locations(args.service_slug)

        raise ToolExecutionError(name, "no handler registered")
