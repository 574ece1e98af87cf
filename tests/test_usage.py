import json

import httpx
import pytest

from inbox.errors import UpstreamError, ValidationError
from inbox.usage import GeminiProvider, MeteredProvider, UsageLedger


def _gemini_transport(seen):
    def handler(request):
        seen.append(request)
        if request.url.params.get("key") != "k-123":
            return httpx.Response(403, json={"error": {"message": "bad key"}})
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Sure, "}, {"text": "it ships tomorrow."}]}}],
                "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 7},
            },
        )

    return httpx.MockTransport(handler)


def test_metered_calls_land_in_the_ledger(runtime, run):
    seen = []

    async def scenario():
        provider = MeteredProvider(
            GeminiProvider("k-123", "gemini-test", base_url="https://gemini.test", transport=_gemini_transport(seen)),
            UsageLedger(runtime.db),
        )
        result = await provider.generate("text", "When will it ship?", {"temperature": 0.2}, operation="reply_suggestion")
        await provider.generate("text", "Again?", operation="reply_suggestion")
        totals = await runtime.ledger.totals()
        await provider.close()
        return result, totals

    result, totals = run(scenario)
    assert result.text == "Sure, it ships tomorrow."
    assert result.model == "gemini-test"
    assert totals == [
        {
            "service": "gemini",
            "operation": "reply_suggestion",
            "calls": 2,
            "input_tokens": 24,
            "output_tokens": 14,
            "images_generated": 0,
        }
    ]
    body = json.loads(seen[0].content)
    assert body["generationConfig"] == {"temperature": 0.2}
    assert seen[0].url.path == "/models/gemini-test:generateContent"


def test_provider_errors_are_upstream_errors_and_not_metered(runtime, run):
    async def scenario():
        provider = MeteredProvider(
            GeminiProvider("wrong", base_url="https://gemini.test", transport=_gemini_transport([])),
            UsageLedger(runtime.db),
        )
        with pytest.raises(UpstreamError):
            await provider.generate("text", "hi")
        with pytest.raises(ValidationError):
            await provider.generate("image", "a cat")
        totals = await runtime.ledger.totals()
        await provider.close()
        return totals

    assert run(scenario) == []


def test_runtime_meters_its_configured_provider(runtime_factory, driver, run):
    seen = []
    rt = runtime_factory(
        driver,
        generator=GeminiProvider("k-123", "gemini-test", base_url="https://gemini.test", transport=_gemini_transport(seen)),
    )
    assert isinstance(rt.generator, MeteredProvider)

    async def scenario():
        result = await rt.generator.generate("text", "Draft a reply", operation="reply_suggestion", agent_id="agent-1")
        return result, await rt.ledger.totals()

    result, totals = run(scenario, rt=rt)
    assert result.media_url is None
    assert [(t["operation"], t["calls"], t["input_tokens"]) for t in totals] == [("reply_suggestion", 1, 12)]
    assert len(seen) == 1


def test_runtime_has_no_provider_without_an_api_key(runtime):
    assert runtime.generator is None
