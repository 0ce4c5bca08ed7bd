import asyncio

import numpy as np
import pytest
from aiohttp import test_utils, web

from feedrecs.embedding import EmbeddingService, OpenAIEmbeddingProvider, build_profile_text, make_provider
from feedrecs.errors import ConfigError, DataError, ProviderError, ProviderTimeout
from feedrecs.models import EventKind
from feedrecs.profile import aggregate_interests
from feedrecs.settings import Settings

from conftest import D_HIGH, NOW, FakeProvider, event, make_item


def test_profile_text_repeats_by_floor_weight():
    a = make_item("a", "sports", snippet="x" * 500)
    b = make_item("b", "cooking")
    interests = aggregate_interests(
        [event("u", "a", EventKind.LIKE), event("u", "b", EventKind.VIEW)], {}, now=NOW
    )
    lines = build_profile_text(interests, {"a": a, "b": b}).splitlines()
    a_line = f"{a.title} - {'x' * 200}"
    assert lines.count(a_line) == 3
    assert lines.count(f"{b.title} - {b.snippet}") == 1
    assert len(lines) == 4


def test_profile_text_repeats_low_weight_once_and_skips_unknown():
    interests = aggregate_interests([event("u", "a", EventKind.READ, duration=2)], {}, now=NOW)
    assert interests.items[0].weight < 1
    assert build_profile_text(interests, {"a": make_item("a")}).count("\n") == 0
    assert build_profile_text(interests, {}) == ""


def test_embed_returns_float32_vector():
    svc = EmbeddingService(FakeProvider(), D_HIGH)
    vec = asyncio.run(svc.embed("sports - match report"))
    assert vec.dtype == np.float32
    assert vec.shape == (D_HIGH,)


def test_embed_rejects_blank_text():
    svc = EmbeddingService(FakeProvider(), D_HIGH)
    with pytest.raises(DataError):
        asyncio.run(svc.embed("   "))


def test_embed_rejects_wrong_dimension():
    svc = EmbeddingService(FakeProvider(), D_HIGH + 1)
    with pytest.raises(ProviderError):
        asyncio.run(svc.embed("sports"))


def test_embed_propagates_provider_failure_without_retry():
    provider = FakeProvider(fail=ProviderError("boom"))
    svc = EmbeddingService(provider, D_HIGH)
    with pytest.raises(ProviderError):
        asyncio.run(svc.embed("sports"))
    assert len(provider.calls) == 1


def test_embed_times_out():
    class Slow(FakeProvider):
        async def embed(self, text):
            await asyncio.sleep(1)
            return [0.0] * D_HIGH

    svc = EmbeddingService(Slow(), D_HIGH, timeout=0.01)
    with pytest.raises(ProviderTimeout):
        asyncio.run(svc.embed("sports"))


def test_openai_provider_requires_key():
    with pytest.raises(ConfigError):
        OpenAIEmbeddingProvider(api_key="", url="http://localhost", model="m")
    with pytest.raises(ConfigError):
        make_provider(Settings(embed_backend="openai", embed_api_key=None))


def test_openai_provider_rejects_undecodable_body():
    async def handler(request):
        return web.Response(body=b"{not json", content_type="application/json")

    async def main():
        app = web.Application()
        app.router.add_post("/v1/embeddings", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        provider = OpenAIEmbeddingProvider("key", str(server.make_url("/v1/embeddings")), "m", timeout=5.0)
        try:
            with pytest.raises(ProviderError) as exc:
                await provider.embed("hello")
            return exc.value
        finally:
            await provider.close()
            await server.close()

    err = asyncio.run(main())
    assert err.retryable is False
    assert "undecodable" in str(err)
