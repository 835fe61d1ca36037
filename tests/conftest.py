"""
Shared pytest fixtures for the ClauChat test suite.

Provides a deterministic encoding, a scripted transport and small pricing
tables so tests never touch the network or download tokenizer data.
"""

import asyncio
import re
from decimal import Decimal

import pytest

from clauchat.config.loader import ClientConfig
from clauchat.core.pricing import ModelPricing, PricingTable
from clauchat.sdk.stream_client import BaseTransport, Fragment


class FakeEncoding:
    """Stand-in for a tiktoken encoding.

    One token per run of word characters and one per punctuation mark, so
    "Hel" + "lo!" counts 3 tokens while "Hello!" counts 2.
    """

    def encode(self, text, disallowed_special=()):
        return re.findall(r"\w+|[^\w\s]", text)


class ScriptedTransport(BaseTransport):
    """Transport that replays a fixed list of fragments.

    ``hold_after`` pauses the stream after that many fragments until
    ``release`` is set. ``error`` is raised after the fragments; ``end``
    controls whether a final fragment is sent.
    """

    def __init__(self, fragments=(), error=None, end=True, hold_after=None):
        self.fragments = list(fragments)
        self.error = error
        self.end = end
        self.hold_after = hold_after
        self.release = asyncio.Event()
        self.calls = []
        self.closed = False

    async def open(self, messages, api_key, model):
        self.calls.append((tuple(messages), api_key, model))
        try:
            for index, text in enumerate(self.fragments):
                if self.hold_after is not None and index == self.hold_after:
                    await self.release.wait()
                yield Fragment(text)
            if self.hold_after is not None and self.hold_after >= len(self.fragments):
                await self.release.wait()
            if self.error is not None:
                raise self.error
            if self.end:
                yield Fragment("", is_final=True, stop_reason="stop")
        finally:
            self.closed = True


async def wait_until(predicate, timeout=1.0):
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def fake_encoding():
    return FakeEncoding()


@pytest.fixture
def config():
    """Config with credentials and a model present in ``pricing``."""
    return ClientConfig(api_key="test-key", model="test-model")


@pytest.fixture
def pricing():
    """$0.01 per 1K tokens both ways, 50 token prompt limit."""
    return PricingTable({
        "test-model": ModelPricing(
            input_cost_per_1k=Decimal("0.01"),
            output_cost_per_1k=Decimal("0.01"),
            max_prompt_tokens=50,
            max_output_tokens=100,
        ),
    })
