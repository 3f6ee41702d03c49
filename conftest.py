import json
import asyncio

import pytest
from fastapi.testclient import TestClient

from storybook.app import create_app
from storybook.kv_storage import MemorySessionStore

FAKE_IMAGE_URL = "data:image/jpeg;base64,ZmFrZS1pbWFnZQ=="

START_BODY = {
    "style": "fantasy",
    "character": "robot",
    "setting": "forest",
    "theme": "friendship",
    "visualStylePrompt": "cartoon",
}


class FakeTextGenerator:
    """Scripted stand-in for ChatTextGenerator; answers in the requested schema."""

    def __init__(self, responder=None, error: Exception = None):
        self.responder = responder
        self.error = error
        self.requests = []

    def complete(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.responder is not None:
            return self.responder(request)
        n = len(self.requests)
        if request.template == "final":
            return json.dumps({"story": f"Part {n}: and everyone went home happy."})
        return json.dumps({
            "story": f"Part {n}: the robot walked deeper into the forest.",
            "question": "What should the robot do?",
            "choices": ["Climb a tree", "Follow the river", "Ask an owl"],
        })


class FakeImageGenerator:
    def __init__(self, error: Exception = None, delay: float = 0):
        self.error = error
        self.delay = delay
        self.prompts = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FAKE_IMAGE_URL


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def text_generator():
    return FakeTextGenerator()


@pytest.fixture
def image_generator():
    return FakeImageGenerator()


@pytest.fixture
def client(store, text_generator, image_generator):
    app = create_app(store=store, text_generator=text_generator, image_generator=image_generator, target_steps=5)
    with TestClient(app) as c:
        yield c
