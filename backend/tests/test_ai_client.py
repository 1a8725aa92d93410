import json

import httpx
import pytest

from delivery_locations.core.errors import AIRequestError, UnparsableAIResponse
from delivery_locations.services.ai_client import GeminiClient, parse_ai_location


def gemini_reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_parse_clamps_confidence_and_blanks():
    answer = parse_ai_location(
        json.dumps(
            {
                "city": "بغداد",
                "region": "  ",
                "confidence": 1.7,
                "suggestions": [{"city": "البصرة", "confidence": -2}],
            }
        )
    )
    assert answer.city == "بغداد"
    assert answer.region is None
    assert answer.confidence == 1.0
    assert answer.suggestions[0].confidence == 0.0


@pytest.mark.parametrize("text", ["", "city: Baghdad", '```json\n{"city": "x"}\n```', '["بغداد"]'])
def test_parse_rejects_anything_but_the_json_document(text):
    with pytest.raises(UnparsableAIResponse):
        parse_ai_location(text)


@pytest.mark.anyio
async def test_generate_requests_json_mode():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=gemini_reply('{"city": "بغداد"}'))

    client = GeminiClient(
        "key-123",
        base_url="https://ai.test/v1beta",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        temperature=0.1,
        max_output_tokens=500,
    )

    text = await client.generate("prompt", "gemini-2.5-flash")

    assert text == '{"city": "بغداد"}'
    assert seen["path"] == "/v1beta/models/gemini-2.5-flash:generateContent"
    assert seen["key"] == "key-123"
    assert seen["body"]["generationConfig"] == {
        "temperature": 0.1,
        "maxOutputTokens": 500,
        "responseMimeType": "application/json",
    }


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"error": {"message": "overloaded"}}),
        httpx.Response(200, json={"candidates": []}),
        httpx.Response(200, json=gemini_reply("   ")),
    ],
)
async def test_generate_failures_raise_ai_request_error(response):
    client = GeminiClient(
        "key-123",
        base_url="https://ai.test/v1beta",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)),
    )
    with pytest.raises(AIRequestError):
        await client.generate("prompt", "gemini-2.0-flash")


@pytest.mark.anyio
async def test_generate_without_key_is_an_error():
    with pytest.raises(AIRequestError):
        await GeminiClient("").generate("prompt", "gemini-2.0-flash")
