import json
from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from botflow.core.config import settings
from botflow.core.exceptions import ConfigurationError, ReasoningError


class LLMClient:
    """
    Thin wrapper over the OpenAI chat completions API.

    One instance per organization credential; provider failures surface as
    ReasoningError so callers never see SDK exception types.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str | None = None,
        timeout: float | None = None,
        client: AsyncOpenAI | None = None,
    ):
        if client is None and not api_key:
            raise ConfigurationError("No OpenAI API key configured")
        self.model = model or settings.OPENAI_MODEL
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            timeout=timeout or settings.OPENAI_TIMEOUT_SECONDS,
        )

    async def _complete(self, messages: list[dict], **kwargs) -> str:
        try:
            response = await self.client.chat.completions.create(messages=messages, **kwargs)
        except OpenAIError as e:
            logger.error(f"OpenAI request failed ({kwargs.get('model')}): {e}")
            raise ReasoningError(str(e)) from e

        return response.choices[0].message.content or ""

    async def call_llm(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> str:
        """
        Call OpenAI API and return the response text.

        Args:
            system_prompt: Instructions for the AI (who it is, how to behave)
            user_message: The user's message to respond to
            temperature: Creativity level (0=deterministic, 1=creative)
            max_tokens: Optional response length cap
            model: Which OpenAI model to use (defaults to the client's model)

        Returns:
            The AI's response as a string
        """
        kwargs = {"model": model or self.model, "temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await self._complete(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message}
            ],
            **kwargs
        )

    async def call_llm_with_history(
        self,
        system_prompt: str,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> str:
        """
        Call OpenAI API with full conversation history.

        Args:
            system_prompt: Instructions for the AI
            messages: List of {"role": "user"|"assistant", "content": "..."}
            temperature: Creativity level
            max_tokens: Optional response length cap
            model: Which OpenAI model to use

        Returns:
            The AI's response as a string
        """
        full_messages = [{"role": "system", "content": system_prompt}] + [
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in messages
        ]
        kwargs = {"model": model or self.model, "temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await self._complete(full_messages, **kwargs)

    async def extract_json_from_llm(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float = 0.0,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> dict:
        """
        Call OpenAI API in JSON mode and parse the response.
        Used for structured extraction and evaluation.

        Returns:
            Parsed JSON object, or an empty dict when the model returned
            something that is not a JSON object
        """
        kwargs = {
            "model": model or self.model,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        content = await self._complete(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message}
            ],
            **kwargs
        )

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"LLM returned malformed JSON: {content[:200]!r}")
            return {}

        if not isinstance(parsed, dict):
            logger.warning(f"LLM returned non-object JSON: {content[:200]!r}")
            return {}
        return parsed
