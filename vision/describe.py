"""
Client for the external image description service, an OpenAI style chat
completions endpoint with vision support.

Each call sends one image, base64 encoded in a data URL, along with a fixed
prompt, and returns the text of the first completion choice.
"""

import asyncio
import base64
import logging
from http import HTTPStatus
from typing import Self

import httpx

from utils.config import DEFAULT_DESCRIPTION_MODEL
from utils.config import DEFAULT_DESCRIPTION_URL
from utils.errors import DescriptionError
from utils.errors import DescriptionTimeoutError
from utils.errors import MalformedResponseError
from utils.errors import RateLimitError
from utils.errors import UnauthorizedError
from vision.models import ChatCompletion
from vision.models import ChatCompletionRequest

logger = logging.getLogger(__name__)


class DescriptionClient:
    """
    Wraps the description service.  Handles the session and the bearer
    credential, and classifies every failure into the description errors.
    """

    DEFAULT_PROMPT = "Describe this image"
    DEFAULT_MEDIA_TYPE = "image/jpeg"

    # Wall clock bound for a single describe call (seconds)
    API_TIMEOUT = 30.0

    def __init__(
        self,
        api_key: str,
        *,
        url: str = DEFAULT_DESCRIPTION_URL,
        model: str = DEFAULT_DESCRIPTION_MODEL,
        prompt: str = DEFAULT_PROMPT,
        max_tokens: int = 300,
        timeout: float = API_TIMEOUT,
    ) -> None:
        self.url = url
        self.model = model
        self.prompt = prompt
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client: httpx.AsyncClient = httpx.AsyncClient(
            http2=True,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """
        Ensures the credential is cleaned up no matter the reason for the exit
        """
        if "Authorization" in self._client.headers:
            del self._client.headers["Authorization"]

        await self._client.aclose()

    def build_request(self, image: bytes, media_type: str = DEFAULT_MEDIA_TYPE) -> ChatCompletionRequest:
        # Only image types make sense in the data URL, anything else is sent
        # as JPEG, which is what the service assumes by default
        if not media_type.startswith("image/"):
            media_type = self.DEFAULT_MEDIA_TYPE

        encoded = base64.b64encode(image).decode("ascii")
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{media_type};base64,{encoded}"},
                        },
                    ],
                },
            ],
            "max_tokens": self.max_tokens,
        }

    async def describe(self, image: bytes, media_type: str = DEFAULT_MEDIA_TYPE) -> str:
        """
        Returns the service's description of the given image.

        Raises:
            UnauthorizedError: the credential was refused (401)
            RateLimitError: the service is rate limiting (429)
            MalformedResponseError: any other non-success status, or a body
                without a usable first choice
            DescriptionTimeoutError: no answer within the timeout
            DescriptionError: any other transport failure
        """
        payload = self.build_request(image, media_type)

        logger.debug(f"Calling description service {self.url} with model {self.model}")
        try:
            # httpx only bounds each phase, the whole call gets one deadline
            async with asyncio.timeout(self.timeout):
                resp = await self._client.post(self.url, json=payload)
        except (httpx.TimeoutException, TimeoutError) as e:
            raise DescriptionTimeoutError(f"Description service timed out ({self.timeout}s): {e}") from e
        except httpx.HTTPError as e:
            raise DescriptionError(f"Description service request failed: {e}") from e

        if resp.status_code != HTTPStatus.OK:
            msg = f"Description service returned HTTP {resp.status_code}"
            if resp.status_code == HTTPStatus.UNAUTHORIZED:
                raise UnauthorizedError(msg, status_code=resp.status_code)
            if resp.status_code == HTTPStatus.TOO_MANY_REQUESTS:
                raise RateLimitError(msg, status_code=resp.status_code)
            raise MalformedResponseError(msg, status_code=resp.status_code)

        return self._first_choice_text(resp)

    @staticmethod
    def _first_choice_text(resp: httpx.Response) -> str:
        try:
            result: ChatCompletion = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Description service response is not JSON: {e}") from e

        choices = result.get("choices") if isinstance(result, dict) else None
        if not isinstance(choices, list) or len(choices) == 0:
            raise MalformedResponseError("Description service returned no choices")

        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise MalformedResponseError("Description service choice has no text content")

        return content
