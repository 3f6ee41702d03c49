import logging
from typing import Optional

from . import settings
from .models import TextRequest

logger = logging.getLogger(__name__)


class ChatTextGenerator:
    """Text generation through an OpenAI-compatible chat completions API.

    ``complete`` returns the raw message content and raises on any provider
    error; turning failures into fallback content is the caller's job.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, timeout: Optional[float] = None, client=None):
        self.api_key = api_key if api_key is not None else settings.TEXT_API_KEY
        self.base_url = base_url if base_url is not None else settings.TEXT_API_BASE_URL
        self.model = model or settings.TEXT_MODEL
        self.timeout = timeout or settings.TEXT_TIMEOUT_S
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            if not self.api_key:
                raise RuntimeError("TEXT_API_KEY (or TOGETHER_API_KEY) is not set; please configure your .env")
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url or None, timeout=self.timeout)
        return self._client

    def complete(self, request: TextRequest) -> str:
        logger.info(f"Calling text model {self.model} ({request.template}) with prompt: {request.prompt[:150]}...")
        messages = [
            {"role": "system", "content": request.system},
            {"role": "user", "content": request.prompt},
        ]
        kwargs = {}
        if request.json_output:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            client = self._get_client()
            resp = client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                **kwargs
            )
        except Exception as e:
            logger.error(f"Text generation API call failed: {str(e)}")
            raise
        if not resp.choices or not resp.choices[0].message or not resp.choices[0].message.content:
            logger.error(f"Text generation returned an unexpected response structure: {resp!r}")
            raise RuntimeError("Unexpected response structure from text generation API")
        content = resp.choices[0].message.content.strip()
        logger.info("Successfully received response from text generation API")
        return content
