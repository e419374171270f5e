"""Service detection from a customer photo.

The chat loop may set ``requestPhoto``; the client then posts the photo here
and gets back the service it most likely shows, how urgent it looks and a few
suggestions. Model failures produce an unsuccessful analysis rather than an
error so the chat can continue without it.
"""

import base64
import binascii
import json
import logging
from typing import Literal

from pydantic import Field

from src.assistant.config import ChatConfig
from src.assistant.errors import InputValidationError, UpstreamModelError
from src.assistant.llm import ChatModel, InlineMedia, ModelMessage
from src.assistant.models import CamelModel
from src.assistant.prompts import (
    SERVICE_KEYWORDS,
    URGENCY_LEVELS,
    build_image_analysis_prompt,
    image_analysis_fallback,
    infer_service_key,
)

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/heic", "image/heif")


class ImageAnalysisRequest(CamelModel):
    image: str
    mime_type: str = "image/jpeg"
    locale: str = "en"


class ImageAnalysis(CamelModel):
    service_type: str | None = None
    service_key: str | None = None
    description: str
    urgency: Literal["low", "medium", "high", "emergency"] = "medium"
    suggestions: list[str] = Field(default_factory=list)
    success: bool = False


class ImageAnalyzer:
    def __init__(self, model: ChatModel, config: ChatConfig | None = None) -> None:
        self.model = model
        self.config = config or ChatConfig()

    def decode(self, request: ImageAnalysisRequest) -> bytes:
        """Return the raw photo bytes or raise InputValidationError."""
        mime_type = request.mime_type.lower()
        if mime_type not in SUPPORTED_IMAGE_TYPES:
            raise InputValidationError(f"Unsupported image type: {request.mime_type}")

        encoded = request.image
        if encoded.startswith("data:"):
            # data:image/png;base64,....
            encoded = encoded.partition(",")[2]
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InputValidationError("Image must be base64 encoded") from e

        if not data:
            raise InputValidationError("Image must not be empty")
        if len(data) > self.config.max_image_bytes:
            raise InputValidationError(
                f"Image exceeds {self.config.max_image_bytes} bytes"
            )
        return data

    async def analyze(self, request: ImageAnalysisRequest) -> ImageAnalysis:
        """Detect the service a photo calls for.

        Args:
            request: Base64 photo with its MIME type and the reply locale

        Returns:
            ImageAnalysis; ``success`` is set when a known service was found

        Raises:
            InputValidationError: If the photo is missing, malformed or too large
        """
        data = self.decode(request)
        locale = request.locale

        try:
            turn = await self.model.generate(
                build_image_analysis_prompt(locale),
                [
                    ModelMessage(
                        role="user",
                        media=[InlineMedia(data=data, mime_type=request.mime_type.lower())],
                    )
                ],
                [],
                json_response=True,
            )
            parsed = json.loads(turn.text or "")
        except (UpstreamModelError, json.JSONDecodeError) as e:
            logger.error("Image analysis failed", extra={"error": str(e)})
            return ImageAnalysis(description=image_analysis_fallback(locale))

        if not isinstance(parsed, dict):
            logger.warning("Image analysis answer was not a JSON object")
            return ImageAnalysis(description=image_analysis_fallback(locale))

        service_type = parsed.get("serviceType")
        if not isinstance(service_type, str) or not service_type.strip():
            service_type = None

        service_key = parsed.get("serviceKey")
        if not isinstance(service_key, str) or service_key not in SERVICE_KEYWORDS:
            service_key = infer_service_key(service_type) if service_type else None

        description = parsed.get("description")
        if not isinstance(description, str) or not description.strip():
            description = "Görsel analiz edildi." if locale == "tr" else "Image analyzed."

        urgency = parsed.get("urgency")
        suggestions = parsed.get("suggestions")
        if not isinstance(suggestions, list):
            suggestions = []

        analysis = ImageAnalysis(
            service_type=service_type,
            service_key=service_key,
            description=description,
            urgency=urgency if urgency in URGENCY_LEVELS else "medium",
            suggestions=[s for s in suggestions if isinstance(s, str)],
            success=service_key is not None,
        )
        logger.info(
            "Image analyzed",
            extra={"service_key": analysis.service_key, "urgency": analysis.urgency},
        )
        return analysis
