import httpx, logging
from typing import Optional

from . import settings

logger = logging.getLogger(__name__)

# 1x1 PNG shown when no illustration could be produced.
FALLBACK_IMAGE_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="
)

DEFAULT_VISUAL_STYLE = "simple cartoon style"


def build_image_prompt(text: str, visual_style: Optional[str]) -> str:
    style = (visual_style or "").strip() or DEFAULT_VISUAL_STYLE
    return f"Children's storybook illustration, {style}: {text.strip()}"


class StorybookImageGenerator:
    """Image generation through an OpenAI-compatible ``/images/generations`` endpoint."""

    def __init__(self, api_key: Optional[str] = None, url: Optional[str] = None, model: Optional[str] = None,
                 steps: Optional[int] = None, timeout: Optional[float] = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.api_key = api_key if api_key is not None else settings.IMAGE_API_KEY
        self.url = url or settings.IMAGE_API_URL
        self.model = model or settings.IMAGE_MODEL
        self.steps = steps or settings.IMAGE_STEPS
        self.timeout = timeout or settings.IMAGE_TIMEOUT_S
        self._transport = transport

    def _headers(self):
        if not self.api_key:
            raise RuntimeError("IMAGE_API_KEY (or TOGETHER_API_KEY) is not set; please configure your .env")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def generate(self, prompt: str) -> str:
        logger.info(f"Starting image generation with {self.model} for prompt: {prompt[:100]}...")
        json_body = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "steps": self.steps,
            "response_format": "b64_json",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(self.url, headers=self._headers(), json=json_body)
        if r.status_code >= 400:
            logger.error(f"Image generation failed {r.status_code}: {r.text}")
            raise RuntimeError(f"Image generation failed {r.status_code}: {r.text}")

        data = r.json().get("data") or []
        first = data[0] if data and isinstance(data[0], dict) else {}
        if first.get("b64_json"):
            logger.info("Image generation succeeded")
            return f"data:image/jpeg;base64,{first['b64_json']}"
        if first.get("url"):
            logger.info(f"Image generation succeeded, got output URL: {first['url']}")
            return first["url"]
        logger.error("Image generation succeeded but returned no image")
        raise RuntimeError("Image generation succeeded but returned no image")


async def illustrate(text: str, visual_style: Optional[str], generator) -> str:
    """Return an image URL for ``text``; never raises."""
    if not text or not text.strip():
        logger.warning("Illustration requested for empty text, returning fallback image")
        return FALLBACK_IMAGE_URL
    prompt = build_image_prompt(text, visual_style)
    try:
        return await generator.generate(prompt)
    except Exception as e:
        message = str(e)
        logger.error(f"Error calling image generation API: {message}")
        if "quota" in message.lower():
            logger.warning("Image generation quota may be exceeded")
        return FALLBACK_IMAGE_URL
