import json
import asyncio
from types import SimpleNamespace

import httpx
import pytest

from storybook.image_client import FALLBACK_IMAGE_URL, StorybookImageGenerator, build_image_prompt, illustrate
from storybook.llm import ChatTextGenerator
from storybook.models import TextRequest

from conftest import FakeImageGenerator


def _image_generator(handler):
    return StorybookImageGenerator(
        api_key="key", url="https://images.example.com/v1/images/generations", model="flux",
        steps=4, transport=httpx.MockTransport(handler),
    )


def test_image_prompt_prefixes_style_and_suffixes_text():
    prompt = build_image_prompt("A robot in a forest.", "watercolor")
    assert prompt == "Children's storybook illustration, watercolor: A robot in a forest."


def test_image_generator_requests_single_fast_base64_image():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"data": [{"b64_json": "aGVsbG8="}]})

    url = asyncio.run(_image_generator(handler).generate("a prompt"))
    assert url == "data:image/jpeg;base64,aGVsbG8="
    assert seen["auth"] == "Bearer key"
    assert seen["body"] == {
        "model": "flux", "prompt": "a prompt", "n": 1, "steps": 4, "response_format": "b64_json",
    }


def test_image_generator_raises_on_provider_error():
    generator = _image_generator(lambda request: httpx.Response(429, json={"error": "quota exceeded"}))
    with pytest.raises(RuntimeError):
        asyncio.run(generator.generate("a prompt"))


def test_image_generator_raises_without_image_data():
    generator = _image_generator(lambda request: httpx.Response(200, json={"data": []}))
    with pytest.raises(RuntimeError):
        asyncio.run(generator.generate("a prompt"))


def test_illustrate_short_circuits_on_empty_text():
    generator = FakeImageGenerator()
    assert asyncio.run(illustrate("   ", "cartoon", generator)) == FALLBACK_IMAGE_URL
    assert generator.prompts == []


def test_illustrate_falls_back_when_generator_fails():
    generator = FakeImageGenerator(error=RuntimeError("quota exceeded"))
    assert asyncio.run(illustrate("A story.", "cartoon", generator)) == FALLBACK_IMAGE_URL
    assert generator.prompts == ["Children's storybook illustration, cartoon: A story."]


class _FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.content is None:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


def _text_request():
    return TextRequest(template="initial", system="sys", prompt="write", max_tokens=250, temperature=0.7)


def test_text_generator_requests_json_mode():
    completions = _FakeCompletions('  {"story": "x"}  ')
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    generator = ChatTextGenerator(api_key="key", model="llama", client=client)

    assert generator.complete(_text_request()) == '{"story": "x"}'
    assert completions.kwargs["model"] == "llama"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert completions.kwargs["max_tokens"] == 250
    assert [m["role"] for m in completions.kwargs["messages"]] == ["system", "user"]


def test_text_generator_rejects_empty_completion():
    client = SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions(None)))
    with pytest.raises(RuntimeError):
        ChatTextGenerator(api_key="key", client=client).complete(_text_request())


def test_text_generator_requires_api_key():
    with pytest.raises(RuntimeError):
        ChatTextGenerator(api_key="").complete(_text_request())
