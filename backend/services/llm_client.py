"""LLM Client for Groq API integration."""
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
from groq import Groq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError
import logging

from config import GROQ_API_KEY, LLM_MAX_RETRIES, LLM_INITIAL_DELAY
from models.search import QueryMode
from services.prompts import answer_prompt, system_prompt_for

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)


class LLMClient:
    """Client for interfacing with Groq API for text generation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_retries: int = LLM_MAX_RETRIES,
        initial_delay: float = LLM_INITIAL_DELAY
    ):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            max_retries: Retries after a rate-limit response before giving up
            initial_delay: First backoff delay in seconds, doubled per retry
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.client = Groq(api_key=self.api_key)
        logger.info("LLMClient initialized successfully")

    @staticmethod
    def _messages(prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _create_with_retry(self, model: str, **kwargs):
        """Call chat.completions.create, backing off on RateLimitError."""
        delay = self.initial_delay
        for attempt in range(self.max_retries + 1):
            try:
                return self.client.chat.completions.create(model=model, **kwargs)
            except RateLimitError:
                if attempt >= self.max_retries:
                    raise
                logger.warning(
                    f"Rate limited by Groq (attempt {attempt + 1}/{self.max_retries + 1}), "
                    f"retrying in {delay:.1f}s"
                )
                time.sleep(delay)
                delay *= 2

    def generate(
        self,
        model: str,
        prompt: str,
        max_tokens: int = 500,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        json_mode: bool = False
    ) -> LLMResponse:
        """
        Generate response using Groq API.

        Args:
            model: Model name (llama-3.1-8b-instant or llama-3.3-70b-versatile)
            prompt: User message
            max_tokens: Maximum tokens to generate
            system_prompt: Optional system message
            temperature: Sampling temperature
            json_mode: Ask the model for a JSON object response

        Returns:
            LLMResponse with text, token counts, and latency

        Raises:
            LLMClientError: Structured error with code, message, and details
        """
        start_time = time.time()

        kwargs: Dict[str, Any] = {
            "messages": self._messages(prompt, system_prompt),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            logger.debug(f"Generating response with model: {model}")
            response = self._create_with_retry(model, **kwargs)
        except Exception as e:
            raise self._to_client_error(e, model, start_time)

        latency_ms = int((time.time() - start_time) * 1000)
        text = response.choices[0].message.content or ""
        tokens_input = response.usage.prompt_tokens
        tokens_output = response.usage.completion_tokens

        logger.info(
            f"Generated response: model={model}, "
            f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
            f"latency={latency_ms}ms"
        )

        return LLMResponse(
            text=text,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            latency_ms=latency_ms,
            model_used=model
        )

    def generate_stream(
        self,
        model: str,
        prompt: str,
        max_tokens: int = 500,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7
    ) -> Iterator[Dict[str, Any]]:
        """
        Stream a response token by token.

        Yields:
            {"type": "token", "content": str} for each delta, then one
            {"type": "metadata", "data": {...}} with token counts and latency

        Raises:
            LLMClientError: If the stream cannot be opened or breaks mid-way
        """
        start_time = time.time()
        tokens_input = 0
        tokens_output = 0
        token_events = 0

        try:
            stream = self._create_with_retry(
                model,
                messages=self._messages(prompt, system_prompt),
                max_tokens=max_tokens,
                temperature=temperature,
                stream=True
            )

            for chunk in stream:
                if chunk.choices:
                    content = chunk.choices[0].delta.content
                    if content:
                        token_events += 1
                        yield {"type": "token", "content": content}

                # Groq reports usage on the final chunk
                usage = getattr(getattr(chunk, "x_groq", None), "usage", None)
                if usage is not None:
                    tokens_input = usage.prompt_tokens
                    tokens_output = usage.completion_tokens
        except LLMClientError:
            raise
        except Exception as e:
            raise self._to_client_error(e, model, start_time)

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Streamed response: model={model}, chunks={token_events}, latency={latency_ms}ms")

        yield {
            "type": "metadata",
            "data": {
                "tokens_input": tokens_input,
                "tokens_output": tokens_output or token_events,
                "latency_ms": latency_ms,
                "model_used": model,
            }
        }

    def _to_client_error(self, e: Exception, model: str, start_time: float) -> LLMClientError:
        """Map a Groq exception onto a structured LLMClientError and log it."""
        latency_ms = int((time.time() - start_time) * 1000)
        details: Dict[str, Any] = {
            "model": model,
            "latency_ms": latency_ms,
            "original_error": str(e)
        }

        if isinstance(e, RateLimitError):
            details["retry_after"] = 60
            details["attempts"] = self.max_retries + 1
            error = LLMError(
                code="RATE_LIMIT_ERROR",
                message="Rate limit exceeded. Please try again in a few moments.",
                details=details
            )
        elif isinstance(e, AuthenticationError):
            error = LLMError(
                code="AUTHENTICATION_ERROR",
                message="Authentication failed. Please check your API key.",
                details=details
            )
        elif isinstance(e, APITimeoutError):
            error = LLMError(
                code="TIMEOUT_ERROR",
                message="Request timed out. Please try again.",
                details=details
            )
        elif isinstance(e, APIError):
            error = LLMError(
                code="API_ERROR",
                message=f"Groq API error: {str(e)}",
                details=details
            )
        else:
            details["error_type"] = type(e).__name__
            error = LLMError(
                code="UNKNOWN_ERROR",
                message=f"Unexpected error during generation: {str(e)}",
                details=details
            )

        logger.error(
            f"{error.code}: model={model}, latency={latency_ms}ms, error={e}",
            exc_info=True,
            extra={"error_code": error.code, "error_details": error.details}
        )
        return LLMClientError(error)

    @staticmethod
    def build_prompt(query: str, context: str, mode: QueryMode = QueryMode.SIMPLE) -> Dict[str, str]:
        """
        Build the grounded system and user prompts for a query.

        Args:
            query: User question
            context: Assembled, cited context from the ContextAssembler
            mode: Query mode selecting the system prompt

        Returns:
            {"system": ..., "user": ...}
        """
        return {
            "system": system_prompt_for(mode),
            "user": answer_prompt(query, context),
        }
