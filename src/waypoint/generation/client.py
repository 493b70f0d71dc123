"""Anthropic Messages API wrapper used by the plan engines."""

import asyncio

import structlog
from anthropic import Anthropic, APIConnectionError, InternalServerError, RateLimitError
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from waypoint.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class GenerationResponse(BaseModel):
    """Text plus usage returned by one generation call."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str | None = None
    stop_reason: str | None = None


class GenerationClient:
    """Thin async wrapper around the synchronous Anthropic client."""

    def __init__(self, settings: Settings | None = None, anthropic_client: Anthropic | None = None):
        """Initialize the client.

        Args:
            settings: Settings configuration (defaults to get_settings())
            anthropic_client: Anthropic client instance (optional, will create if not provided)
        """
        self.settings = settings or get_settings()
        self.anthropic_client = anthropic_client or Anthropic(
            api_key=self.settings.anthropic_api_key
        )

    @retry(
        retry=retry_if_exception_type((APIConnectionError, RateLimitError, InternalServerError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def generate(
        self, prompt: str, system: str | None = None, max_tokens: int | None = None
    ) -> GenerationResponse:
        """Send one user prompt and collect the text blocks of the reply.

        Args:
            prompt: User message content
            system: Optional system prompt
            max_tokens: Override for the configured max tokens

        Returns:
            GenerationResponse with concatenated text and usage

        Raises:
            anthropic.APIError: If the call fails after retries
        """
        logger.info("generation_request", prompt_length=len(prompt))

        kwargs = {
            "model": self.settings.anthropic_model,
            "max_tokens": max_tokens or self.settings.anthropic_max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        try:
            response = await asyncio.to_thread(self.anthropic_client.messages.create, **kwargs)
        except Exception as e:
            logger.error("generation_error", error=str(e), error_type=type(e).__name__)
            raise

        text = "".join(block.text for block in response.content if hasattr(block, "text"))

        logger.info(
            "generation_success",
            response_length=len(text),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

        return GenerationResponse(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
            stop_reason=response.stop_reason,
        )
