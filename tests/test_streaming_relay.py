"""
Unit tests for the streaming relay.

Drives StreamingRelay directly against a fake upstream provider.
"""

import json
import threading
from contextlib import contextmanager
from unittest.mock import Mock

import httpx
import pytest

from chat_cost_relay.config.loader import RelaySettings, StorageBackend
from chat_cost_relay.core.pricing import DEFAULT_PRICING_TABLE
from chat_cost_relay.core.token_counter import TokenUsage, Tokenizer, count_tokens
from chat_cost_relay.errors import (
    BadRequest,
    Misconfigured,
    PersistenceFailure,
    Unauthenticated,
    UpstreamSetupFailure,
)
from chat_cost_relay.relay.sse import extract_trailer
from chat_cost_relay.relay.streaming import (
    ChatRequest,
    ChatTurn,
    RelayState,
    StreamingRelay,
    compose_exchange_text,
)

from conftest import HELLO_CHUNKS, USER_ID, FakeUpstream, WordEncoding, unavailable_tokenizer


async def collect(stream) -> bytes:
    body = b""
    async for chunk in stream.chunks():
        body += chunk
    return body


def hello_request(**overrides):
    data = {"messages": [{"role": "user", "content": "hello"}], "model": "gpt-3.5-turbo"}
    data.update(overrides)
    return ChatRequest.from_body(data)


class TestChatRequest:
    """Test request normalization."""

    def test_messages_used_as_given(self):
        request = ChatRequest.from_body({
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "hi"},
            ]
        })
        turns = request.normalized_turns()
        assert [t.role for t in turns] == ["system", "user"]

    def test_prompt_becomes_single_user_turn(self):
        turns = ChatRequest.from_body({"prompt": "what is 2+2?"}).normalized_turns()
        assert turns == [ChatTurn(role="user", content="what is 2+2?")]

    def test_blank_prompt_rejected(self):
        with pytest.raises(BadRequest, match="messages"):
            ChatRequest.from_body({"prompt": "   "}).normalized_turns()

    def test_missing_messages_and_prompt_rejected(self):
        with pytest.raises(BadRequest):
            ChatRequest.from_body({"model": "gpt-4o"}).normalized_turns()

    def test_empty_messages_fall_back_to_prompt(self):
        turns = ChatRequest.from_body({"messages": [], "prompt": "hey"}).normalized_turns()
        assert turns[0].content == "hey"

    def test_unknown_role_is_bad_request(self):
        with pytest.raises(BadRequest):
            ChatRequest.from_body({"messages": [{"role": "robot", "content": "x"}]})

    def test_non_object_body_is_bad_request(self):
        with pytest.raises(BadRequest):
            ChatRequest.from_body(["hello"])


class TestComposeExchangeText:
    def test_uses_last_user_turn(self):
        turns = [
            ChatTurn(role="user", content="first"),
            ChatTurn(role="assistant", content="answer"),
            ChatTurn(role="user", content="second"),
        ]
        assert compose_exchange_text(turns, "reply") == "User: second\n\nAssistant: reply"

    def test_falls_back_to_last_turn_without_user(self):
        turns = [ChatTurn(role="system", content="only system")]
        assert compose_exchange_text(turns, "ok") == "User: only system\n\nAssistant: ok"


class TestRelayValidation:
    """Failures raised before any upstream call."""

    @pytest.mark.asyncio
    async def test_missing_identity(self, make_relay, upstream):
        relay = make_relay(upstream)
        with pytest.raises(Unauthenticated):
            await relay.open(None, hello_request())
        assert upstream.call_count == 0

    @pytest.mark.asyncio
    async def test_no_turns(self, make_relay, upstream):
        relay = make_relay(upstream)
        with pytest.raises(BadRequest):
            await relay.open(USER_ID, ChatRequest.from_body({}))
        assert upstream.call_count == 0

    @pytest.mark.asyncio
    async def test_missing_credential(self, make_relay, upstream, temp_db_path):
        settings = RelaySettings(
            openai_api_key=None,
            storage_backend=StorageBackend.SQLITE,
            sqlite_path=temp_db_path,
        )
        relay = make_relay(upstream, relay_settings=settings)
        with pytest.raises(Misconfigured, match="API key"):
            await relay.open(USER_ID, hello_request())
        assert upstream.call_count == 0


class TestRelayStreaming:
    """Happy path: relay, accounting, persistence, trailer."""

    @pytest.mark.asyncio
    async def test_body_minus_trailer_equals_upstream_bytes(self, make_relay, upstream):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        body = await collect(stream)

        content, trailer = extract_trailer(body.decode("utf-8"))
        assert content.encode("utf-8") == b"".join(HELLO_CHUNKS)
        assert trailer is not None
        assert body.endswith(b"-->")

    @pytest.mark.asyncio
    async def test_reply_and_metrics(self, make_relay, upstream, store):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        body = await collect(stream)

        assert stream.reply == "Hi there"
        assert stream.input_tokens == 1  # "hello"
        usage = TokenUsage(prompt_tokens=1, completion_tokens=2)  # "Hi there"
        expected_cost = DEFAULT_PRICING_TABLE.calculate_cost("gpt-3.5-turbo", usage)
        assert stream.metrics.total_tokens == 3
        assert stream.metrics.cost == expected_cost

        _, trailer = extract_trailer(body.decode("utf-8"))
        assert trailer == {
            "assistantMessage": {"tokens": 3, "cost": expected_cost, "model": "gpt-3.5-turbo"}
        }
        assert stream.state is RelayState.DONE

    @pytest.mark.asyncio
    async def test_exchange_persisted_once(self, make_relay, upstream, store):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        await collect(stream)

        records = store.fetch_history(USER_ID)
        assert len(records) == 1
        record = records[0]
        assert record.message == "User: hello\n\nAssistant: Hi there"
        assert record.model == "gpt-3.5-turbo"
        assert record.tokens_used == 3
        assert record.cost == stream.metrics.cost

    @pytest.mark.asyncio
    async def test_upstream_request_body(self, make_relay, upstream):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request(temperature=0.2))
        await collect(stream)

        assert upstream.call_count == 1
        sent = upstream.requests[0]
        assert sent.url.path.endswith("/chat/completions")
        assert sent.headers["authorization"] == "Bearer sk-test"
        payload = json.loads(sent.content)
        assert payload["stream"] is True
        assert payload["model"] == "gpt-3.5-turbo"
        assert payload["temperature"] == 0.2
        assert payload["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_defaults_applied(self, make_relay, upstream):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, ChatRequest.from_body({"prompt": "hello"}))
        await collect(stream)

        payload = json.loads(upstream.requests[0].content)
        assert payload["model"] == "gpt-3.5-turbo"
        assert payload["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_unknown_model_priced_at_fallback(self, make_relay, upstream):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request(model="foo-bar"))
        body = await collect(stream)

        usage = TokenUsage(prompt_tokens=1, completion_tokens=2)
        expected = DEFAULT_PRICING_TABLE.calculate_cost("gpt-3.5-turbo", usage)
        assert stream.metrics.cost == expected
        assert stream.metrics.cost > 0
        _, trailer = extract_trailer(body.decode("utf-8"))
        assert trailer["assistantMessage"]["model"] == "foo-bar"

    @pytest.mark.asyncio
    async def test_malformed_lines_do_not_interrupt_relay(self, make_relay):
        chunks = [
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
            b"data: {not json\n\n",
            b": keep-alive comment\n\n",
            b'data: {"choices":[{"delta":{"content":"!"}}]}\n\n',
            b"data: [DONE]\n\n",
        ]
        upstream = FakeUpstream(chunks=chunks)
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        body = await collect(stream)

        content, _ = extract_trailer(body.decode("utf-8"))
        assert content.encode("utf-8") == b"".join(chunks)
        assert stream.reply == "Hi!"

    @pytest.mark.asyncio
    async def test_event_split_across_chunks(self, make_relay):
        chunks = [
            b'data: {"choices":[{"delta":{"con',
            b'tent":"Hello"}}]}\n\ndata: {"choices":[{"delta":{"content":" world"}}]}\n',
            b"\ndata: [DONE]\n\n",
        ]
        upstream = FakeUpstream(chunks=chunks)
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        await collect(stream)

        assert stream.reply == "Hello world"

    @pytest.mark.asyncio
    async def test_tokenizer_released(self, make_relay, upstream, tokenizers):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        await collect(stream)

        assert len(tokenizers.issued) == 1
        assert tokenizers.issued[0].released

    @pytest.mark.asyncio
    async def test_tokenizer_loaded_off_event_loop(self, make_relay, upstream):
        loop_thread = threading.get_ident()
        loading_threads = []

        @contextmanager
        def recording_tokenizer(model):
            loading_threads.append(threading.get_ident())
            tokenizer = Tokenizer(model, WordEncoding())
            try:
                yield tokenizer
            finally:
                tokenizer.release()

        relay = make_relay(upstream, tokenizer_factory=recording_tokenizer)
        stream = await relay.open(USER_ID, hello_request())
        await collect(stream)

        assert len(loading_threads) == 1
        assert loading_threads[0] != loop_thread
        assert stream.metrics.usage.prompt_tokens == 1


class TestRelayFailures:
    """Setup failures, stream failures and persistence failures."""

    @pytest.mark.asyncio
    async def test_connection_refused_is_setup_failure(self, make_relay, store, tokenizers):
        upstream = FakeUpstream(connect_error=httpx.ConnectError("Connection refused"))
        relay = make_relay(upstream)

        with pytest.raises(UpstreamSetupFailure):
            await relay.open(USER_ID, hello_request())

        assert store.fetch_history(USER_ID) == []
        assert all(t.released for t in tokenizers.issued)

    @pytest.mark.asyncio
    async def test_unavailable_tokenizer_is_misconfigured(self, make_relay, store):
        upstream = FakeUpstream()
        relay = make_relay(upstream, tokenizer_factory=unavailable_tokenizer)

        with pytest.raises(Misconfigured, match="Tokenizer unavailable for model gpt-3.5-turbo"):
            await relay.open(USER_ID, hello_request())
        assert upstream.call_count == 0
        assert store.fetch_history(USER_ID) == []

    @pytest.mark.asyncio
    async def test_upstream_error_status_is_setup_failure(self, make_relay, store):
        upstream = FakeUpstream(status_code=401, error_body={"error": {"message": "bad key"}})
        relay = make_relay(upstream)

        with pytest.raises(UpstreamSetupFailure, match="Upstream returned 401"):
            await relay.open(USER_ID, hello_request())
        assert upstream.call_count == 1
        assert store.fetch_history(USER_ID) == []

    @pytest.mark.asyncio
    async def test_mid_stream_failure_emits_error_event(self, make_relay, store, tokenizers):
        upstream = FakeUpstream(fail_after=1)
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())
        body = await collect(stream)

        assert body.startswith(HELLO_CHUNKS[0])
        assert body.endswith(
            b'event: error\ndata: {"error":"connection reset by peer"}\n\n'
        )
        assert b"CONVERSATION_DATA" not in body
        assert stream.state is RelayState.DONE
        assert store.fetch_history(USER_ID) == []
        assert stream.error.message == "connection reset by peer"
        assert tokenizers.issued[0].released

    @pytest.mark.asyncio
    async def test_persistence_failure_still_sends_trailer(self, make_relay, upstream, caplog):
        failing_store = Mock()
        failing_store.record_exchange.side_effect = PersistenceFailure("db down")
        relay = make_relay(upstream, relay_store=failing_store)

        stream = await relay.open(USER_ID, hello_request())
        body = await collect(stream)

        failing_store.record_exchange.assert_called_once()
        _, trailer = extract_trailer(body.decode("utf-8"))
        assert trailer["assistantMessage"]["tokens"] == 3
        assert "Error saving chat message" in caplog.text

    @pytest.mark.asyncio
    async def test_abandoned_stream_releases_resources(self, make_relay, upstream, store, tokenizers):
        relay = make_relay(upstream)
        stream = await relay.open(USER_ID, hello_request())

        chunks = stream.chunks()
        first = await chunks.__anext__()
        assert first == HELLO_CHUNKS[0]
        await chunks.aclose()

        assert tokenizers.issued[0].released
        assert stream.state is RelayState.DONE
        assert store.fetch_history(USER_ID) == []


class TestRelayWithTiktoken:
    """End-to-end accounting with the real tokenizer."""

    @pytest.mark.asyncio
    async def test_trailer_tokens_match_tokenizer(self, tiktoken_available, settings, store, upstream):
        relay = StreamingRelay(
            settings=settings,
            pricing=DEFAULT_PRICING_TABLE,
            store=store,
            http_client=upstream.http_client(),
        )
        stream = await relay.open(USER_ID, hello_request())
        body = await collect(stream)

        input_tokens = count_tokens("hello", "gpt-3.5-turbo")
        output_tokens = count_tokens("Hi there", "gpt-3.5-turbo")
        _, trailer = extract_trailer(body.decode("utf-8"))
        assert trailer["assistantMessage"]["tokens"] == input_tokens + output_tokens

        expected_cost = (input_tokens / 1000) * (0.5 / 1_000_000) + (output_tokens / 1000) * (1.5 / 1_000_000)
        assert trailer["assistantMessage"]["cost"] == pytest.approx(expected_cost)
