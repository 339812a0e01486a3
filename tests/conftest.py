"""
Shared fixtures: a fake upstream provider, a deterministic tokenizer and
an app wired to a temporary SQLite store.
"""

import os
import tempfile
from contextlib import contextmanager
from typing import List

import httpx
import pytest
import tiktoken

from chat_cost_relay.api.app import create_app
from chat_cost_relay.api.auth import Identity
from chat_cost_relay.config.loader import RelaySettings, StorageBackend
from chat_cost_relay.core.pricing import DEFAULT_PRICING_TABLE
from chat_cost_relay.core.token_counter import Tokenizer
from chat_cost_relay.errors import Unauthenticated
from chat_cost_relay.relay.streaming import StreamingRelay
from chat_cost_relay.storage.repository import SqliteExchangeRepository, initialize_schema

VALID_TOKEN = "valid-token"
USER_ID = "user-123"

HELLO_CHUNKS = [
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":" there"}}]}\n\n',
    b"data: [DONE]\n\n",
]


class WordEncoding:
    """Stand-in encoding: one token per whitespace-separated word."""

    def encode(self, text, disallowed_special=()):
        return text.split()


class TokenizerTracker:
    """Tokenizer factory that remembers every tokenizer it handed out."""

    def __init__(self):
        self.issued: List[Tokenizer] = []

    @contextmanager
    def __call__(self, model):
        tokenizer = Tokenizer(model, WordEncoding())
        self.issued.append(tokenizer)
        try:
            yield tokenizer
        finally:
            tokenizer.release()


class FakeUpstream:
    """Programmable OpenAI chat-completions endpoint for httpx.MockTransport."""

    def __init__(self, chunks=None, status_code=200, error_body=None,
                 connect_error=None, fail_after=None, fail_with=None):
        self.chunks = list(HELLO_CHUNKS if chunks is None else chunks)
        self.status_code = status_code
        self.error_body = error_body or {"error": {"message": "upstream exploded"}}
        self.connect_error = connect_error
        self.fail_after = fail_after
        self.fail_with = fail_with or httpx.ReadError("connection reset by peer")
        self.requests: List[httpx.Request] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def _body(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise self.fail_with
            yield chunk

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.connect_error is not None:
            raise self.connect_error
        if self.status_code != 200:
            return httpx.Response(self.status_code, json=self.error_body)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=self._body(),
        )

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@contextmanager
def unavailable_tokenizer(model):
    """Tokenizer factory whose encoding cannot be loaded (e.g. offline)."""
    raise OSError(f"could not fetch encoding for {model}")
    yield


class FakeAuthenticator:
    def authenticate(self, token: str) -> Identity:
        if token != VALID_TOKEN:
            raise Unauthenticated("Invalid token")
        return Identity(id=USER_ID, email="user@example.com")


@pytest.fixture
def temp_db_path():
    temp_dir = tempfile.TemporaryDirectory()
    db_path = os.path.join(temp_dir.name, "test.db")
    initialize_schema(db_path)
    yield db_path
    temp_dir.cleanup()


@pytest.fixture
def store(temp_db_path):
    return SqliteExchangeRepository(temp_db_path)


@pytest.fixture
def settings(temp_db_path):
    return RelaySettings(
        openai_api_key="sk-test",
        storage_backend=StorageBackend.SQLITE,
        sqlite_path=temp_db_path,
    )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def tokenizers():
    return TokenizerTracker()


@pytest.fixture
def make_relay(settings, store, tokenizers):
    def _make(upstream, relay_settings=None, relay_store=None, tokenizer_factory=None):
        return StreamingRelay(
            settings=relay_settings or settings,
            pricing=DEFAULT_PRICING_TABLE,
            store=relay_store or store,
            http_client=upstream.http_client(),
            tokenizer_factory=tokenizer_factory or tokenizers,
        )
    return _make


@pytest.fixture
def make_app(settings, store, make_relay):
    def _make(upstream, relay_store=None, relay_settings=None, tokenizer_factory=None):
        return create_app(
            settings=relay_settings or settings,
            pricing=DEFAULT_PRICING_TABLE,
            store=relay_store or store,
            authenticator=FakeAuthenticator(),
            relay=make_relay(
                upstream,
                relay_settings=relay_settings,
                relay_store=relay_store,
                tokenizer_factory=tokenizer_factory,
            ),
        )
    return _make


@pytest.fixture(scope="session")
def tiktoken_available():
    try:
        tiktoken.get_encoding("cl100k_base")
    except Exception as e:  # BPE files are fetched on first use
        pytest.skip(f"tiktoken encoding unavailable: {e}")


def auth_headers(token: str = VALID_TOKEN):
    return {"Authorization": f"Bearer {token}"}
