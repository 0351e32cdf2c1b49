"""Tests for the Ollama adapter."""

import httpx
import pytest

from civic_pipeline.config import LLMConfig
from civic_pipeline.errors import RemotePromptServiceError
from civic_pipeline.llm_client import GenerateOptions, OllamaClient


def _dummy_client(response_factory, calls):
    class DummyAsyncClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, **kwargs):
            calls.append((method, url, kwargs))
            request = httpx.Request(method, url)
            response = response_factory(request)
            response.raise_for_status()
            return response

    return DummyAsyncClient


@pytest.mark.asyncio
async def test_generate_posts_non_streaming_request(monkeypatch):
    calls = []

    def respond(request):
        return httpx.Response(
            200,
            request=request,
            json={
                "response": '{"containerSelector": "main"}',
                "eval_count": 40,
                "prompt_eval_count": 60,
                "done": True,
                "done_reason": "stop",
            },
        )

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(respond, calls))
    client = OllamaClient(LLMConfig(url="http://ollama.local:11434/", model="llama3.2"))

    result = await client.generate("Analyze this page", GenerateOptions(max_tokens=512, temperature=0.2, top_p=0.9))

    assert result.text == '{"containerSelector": "main"}'
    assert result.tokens_used == 100
    assert result.finish_reason == "stop"

    method, url, kwargs = calls[0]
    assert method == "POST"
    assert url == "http://ollama.local:11434/api/generate"
    assert kwargs["json"] == {
        "model": "llama3.2",
        "prompt": "Analyze this page",
        "stream": False,
        "options": {"num_predict": 512, "temperature": 0.2, "top_p": 0.9},
    }


@pytest.mark.asyncio
async def test_generate_without_token_counts(monkeypatch):
    calls = []

    def respond(request):
        return httpx.Response(200, request=request, json={"response": "{}", "done": False})

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(respond, calls))

    result = await OllamaClient().generate("p", GenerateOptions())

    assert result.tokens_used is None
    assert result.finish_reason == "length"


@pytest.mark.asyncio
async def test_non_2xx_becomes_remote_service_error(monkeypatch):
    calls = []

    def respond(request):
        return httpx.Response(404, request=request, text='{"error": "model \\"nope\\" not found"}')

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(respond, calls))
    client = OllamaClient(LLMConfig(model="nope", max_retries=0))

    with pytest.raises(RemotePromptServiceError) as excinfo:
        await client.generate("p", GenerateOptions())

    assert excinfo.value.service == "Ollama"
    assert excinfo.value.status_code == 404
    assert excinfo.value.message.startswith("Ollama returned 404")


def test_names():
    client = OllamaClient(LLMConfig(model="mistral"))

    assert client.get_name() == "Ollama"
    assert client.get_model_name() == "mistral"
