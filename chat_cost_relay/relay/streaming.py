"""
Token-accounted streaming relay.

Forwards an upstream chat-completion event stream to the caller byte for
byte while rebuilding the assistant reply, then prices the exchange,
persists it and appends a trailer carrying the computed metrics.

One ``StreamingRelay`` is shared by the process; every request gets its
own ``RelayStream`` holding the tokenizer, the upstream response and the
accumulated reply, none of which is shared with another request.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, List, Literal, Optional

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from chat_cost_relay.config.loader import RelaySettings
from chat_cost_relay.core.pricing import PricingTable
from chat_cost_relay.core.token_counter import (
    TokenUsage,
    Tokenizer,
    TokenizerFactory,
    open_tokenizer,
)
from chat_cost_relay.errors import (
    BadRequest,
    Misconfigured,
    Unauthenticated,
    UpstreamSetupFailure,
    UpstreamStreamFailure,
)
from chat_cost_relay.storage.models import ExchangeStore

from .sse import DeltaAccumulator, format_error_event, format_trailer

logger = logging.getLogger(__name__)

# The client timeout's ``read`` value bounds the gap between two upstream chunks.
CONNECT_TIMEOUT = 10.0


class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """Inbound body of the streaming chat endpoint."""
    messages: Optional[List[ChatTurn]] = None
    prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None

    @classmethod
    def from_body(cls, body: Any) -> "ChatRequest":
        """Validate a decoded JSON body.

        Raises:
            BadRequest: If the body has the wrong shape
        """
        if not isinstance(body, dict):
            raise BadRequest("Request body must be a JSON object.")
        try:
            return cls.model_validate(body)
        except ValidationError as e:
            raise BadRequest(f"Missing or invalid messages array: {e.error_count()} validation error(s).")

    def normalized_turns(self) -> List[ChatTurn]:
        """The turns to send upstream; a bare prompt becomes one user turn.

        Raises:
            BadRequest: If neither messages nor a non-blank prompt is given
        """
        if self.messages:
            return list(self.messages)
        if self.prompt is not None and self.prompt.strip():
            return [ChatTurn(role="user", content=self.prompt)]
        raise BadRequest("Missing or invalid messages array.")


class RelayState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    TOKENIZING_INPUT = "tokenizing_input"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    STREAM_ERROR = "stream_error"
    SETUP_ERROR = "setup_error"
    DONE = "done"


@dataclass(frozen=True)
class ExchangeMetrics:
    """Token counts and cost of one completed exchange."""
    usage: TokenUsage
    cost: float
    model: str

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens


def compose_exchange_text(turns: List[ChatTurn], reply: str) -> str:
    """Text stored for an exchange: the latest user turn and the reply."""
    user_turns = [turn for turn in turns if turn.role == "user"]
    last = user_turns[-1] if user_turns else turns[-1]
    return f"User: {last.content}\n\nAssistant: {reply}"


def _describe_upstream_error(error: Exception) -> str:
    if isinstance(error, openai.APIStatusError):
        return f"Upstream returned {error.status_code}: {error.message}"
    return str(error) or error.__class__.__name__


class RelayStream:
    """A single relay invocation after the upstream stream has opened.

    Iterate ``chunks()`` exactly once; resources are released when the
    iteration ends, fails or is abandoned.
    """

    def __init__(
        self,
        relay: "StreamingRelay",
        stack: AsyncExitStack,
        response,
        tokenizer: Tokenizer,
        user_id: str,
        turns: List[ChatTurn],
        model: str,
        input_tokens: int,
    ):
        self._relay = relay
        self._stack = stack
        self._response = response
        self._tokenizer = tokenizer
        self.user_id = user_id
        self.turns = turns
        self.model = model
        self.input_tokens = input_tokens
        self.state = RelayState.STREAMING
        self.reply: Optional[str] = None
        self.metrics: Optional[ExchangeMetrics] = None
        self.error: Optional[UpstreamStreamFailure] = None

    def _transition(self, state: RelayState) -> None:
        logger.debug("relay %s -> %s", self.state.value, state.value)
        self.state = state

    async def chunks(self) -> AsyncIterator[bytes]:
        """Relay upstream bytes, then the trailer (or one error event)."""
        accumulator = DeltaAccumulator()
        try:
            try:
                async for chunk in self._response.iter_bytes():
                    yield chunk
                    accumulator.feed(chunk)
            except (httpx.HTTPError, openai.APIError) as e:
                self._transition(RelayState.STREAM_ERROR)
                self.error = UpstreamStreamFailure(_describe_upstream_error(e))
                logger.warning("Upstream stream failed for model %s: %s", self.model, self.error.message)
                yield format_error_event(self.error.message)
                return

            self._transition(RelayState.FINALIZING)
            self.reply = accumulator.finish()
            if accumulator.ignored_lines:
                logger.debug("Ignored %d unparseable data lines", accumulator.ignored_lines)

            output_tokens = self._tokenizer.count(self.reply)
            self._tokenizer.release()

            usage = TokenUsage(prompt_tokens=self.input_tokens, completion_tokens=output_tokens)
            self.metrics = ExchangeMetrics(
                usage=usage,
                cost=self._relay.pricing.calculate_cost(self.model, usage),
                model=self.model,
            )
            logger.info(
                "Exchange complete: model=%s input_tokens=%d output_tokens=%d cost=%.8f",
                self.model, usage.prompt_tokens, usage.completion_tokens, self.metrics.cost,
            )

            await self._relay.persist(
                self.user_id,
                compose_exchange_text(self.turns, self.reply),
                self.metrics,
            )
            yield format_trailer(self.metrics.total_tokens, self.metrics.cost, self.model)
        finally:
            await self._stack.aclose()
            self._transition(RelayState.DONE)


class StreamingRelay:
    """Opens relay invocations against the configured provider.

    The pricing table, settings and exchange store are injected and only
    read; the OpenAI client is shared for its connection pool.
    """

    def __init__(
        self,
        settings: RelaySettings,
        pricing: PricingTable,
        store: ExchangeStore,
        http_client: Optional[httpx.AsyncClient] = None,
        tokenizer_factory: TokenizerFactory = open_tokenizer,
    ):
        self.settings = settings
        self.pricing = pricing
        self.store = store
        self._tokenizer_factory = tokenizer_factory
        self._client: Optional[AsyncOpenAI] = None
        if settings.openai_api_key:
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                max_retries=0,
                timeout=httpx.Timeout(settings.upstream_idle_timeout, connect=CONNECT_TIMEOUT),
                http_client=http_client,
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def open(self, user_id: Optional[str], request: ChatRequest) -> RelayStream:
        """Validate, count input tokens and open the upstream stream.

        Nothing is sent to the caller until this returns, so every error
        raised here can still be answered with a JSON status response.

        Raises:
            Unauthenticated: No caller identity
            BadRequest: The request resolves to no turns
            Misconfigured: No upstream credential
            UpstreamSetupFailure: The provider failed before streaming
        """
        logger.debug("relay %s -> %s", RelayState.IDLE.value, RelayState.VALIDATING.value)
        if not user_id:
            raise Unauthenticated("User not authenticated.")
        turns = request.normalized_turns()
        if self._client is None:
            raise Misconfigured("OpenAI API key not configured.")

        model = request.model or self.settings.default_model
        temperature = (
            request.temperature if request.temperature is not None else self.settings.default_temperature
        )

        stack = AsyncExitStack()
        try:
            logger.debug("relay %s -> %s", RelayState.VALIDATING.value, RelayState.TOKENIZING_INPUT.value)
            # Loading an encoding may download and parse a BPE file.
            try:
                tokenizer = await asyncio.to_thread(stack.enter_context, self._tokenizer_factory(model))
            except Exception as e:
                logger.error("Tokenizer unavailable for model %s: %s", model, e)
                raise Misconfigured(f"Tokenizer unavailable for model {model}.") from e
            input_tokens = await asyncio.to_thread(
                tokenizer.count, " ".join(turn.content for turn in turns)
            )
            logger.info(
                "Relaying chat: model=%s turns=%d input_tokens=%d", model, len(turns), input_tokens
            )

            response = await stack.enter_async_context(
                self._client.chat.completions.with_streaming_response.create(
                    model=model,
                    messages=[turn.model_dump() for turn in turns],
                    temperature=temperature,
                    stream=True,
                )
            )
        except (openai.APIError, httpx.HTTPError) as e:
            await stack.aclose()
            logger.debug("relay %s -> %s", RelayState.TOKENIZING_INPUT.value, RelayState.SETUP_ERROR.value)
            message = _describe_upstream_error(e)
            logger.error("Upstream setup failed for model %s: %s", model, message)
            raise UpstreamSetupFailure(message) from e
        except BaseException:
            await stack.aclose()
            raise

        logger.debug("relay %s -> %s", RelayState.TOKENIZING_INPUT.value, RelayState.STREAMING.value)
        return RelayStream(
            relay=self,
            stack=stack,
            response=response,
            tokenizer=tokenizer,
            user_id=user_id,
            turns=turns,
            model=model,
            input_tokens=input_tokens,
        )

    async def persist(self, user_id: str, message: str, metrics: ExchangeMetrics) -> None:
        """Write the exchange; failures are logged and never reach the caller."""
        try:
            await asyncio.to_thread(
                self.store.record_exchange,
                user_id,
                message,
                metrics.model,
                metrics.total_tokens,
                metrics.cost,
            )
        except Exception:
            logger.exception("Error saving chat message for user %s", user_id)
