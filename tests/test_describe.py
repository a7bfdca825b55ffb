import asyncio
import base64
import json
import time
from collections.abc import AsyncIterator
from http import HTTPStatus

import httpx
import pytest
from factories import DESCRIPTION_URL
from factories import MOCK_API_KEY
from factories import completion
from pytest_httpx import HTTPXMock

from utils.errors import DescriptionError
from utils.errors import DescriptionTimeoutError
from utils.errors import MalformedResponseError
from utils.errors import RateLimitError
from utils.errors import UnauthorizedError
from vision.describe import DescriptionClient

IMAGE = b"\xff\xd8\xff\xe0 pretend jpeg"


class TrickleStream(httpx.AsyncByteStream):
    """
    A valid completion body, sent a few bytes at a time
    """

    def __init__(self, body: bytes, chunk_size: int = 8, delay: float = 0.05) -> None:
        self.body = body
        self.chunk_size = chunk_size
        self.delay = delay

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for start in range(0, len(self.body), self.chunk_size):
            await asyncio.sleep(self.delay)
            yield self.body[start : start + self.chunk_size]


class TestDescribe:
    @pytest.mark.asyncio
    async def test_success(self, httpx_mock: HTTPXMock, describer: DescriptionClient):
        httpx_mock.add_response(method="POST", url=DESCRIPTION_URL, json=completion("a red car"))

        assert await describer.describe(IMAGE) == "a red car"

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == f"Bearer {MOCK_API_KEY}"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o"
        assert body["max_tokens"] == 300
        text, image = body["messages"][0]["content"]
        assert body["messages"][0]["role"] == "user"
        assert text == {"type": "text", "text": "Describe this image"}
        assert image["image_url"]["url"] == f"data:image/jpeg;base64,{base64.b64encode(IMAGE).decode()}"

    @pytest.mark.parametrize(
        ("media_type", "expected"),
        [
            ("image/png", "image/png"),
            ("image/jpeg", "image/jpeg"),
            ("application/vnd.oci.image.layer.v1.tar", "image/jpeg"),
            ("", "image/jpeg"),
        ],
    )
    def test_data_url_media_type(self, media_type: str, expected: str):
        request = DescriptionClient(MOCK_API_KEY).build_request(b"img", media_type)
        url = request["messages"][0]["content"][1]["image_url"]["url"]  # type: ignore[typeddict-item]
        assert url == f"data:{expected};base64,aW1n"

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (HTTPStatus.UNAUTHORIZED, UnauthorizedError),
            (HTTPStatus.TOO_MANY_REQUESTS, RateLimitError),
            (HTTPStatus.INTERNAL_SERVER_ERROR, MalformedResponseError),
            (HTTPStatus.BAD_REQUEST, MalformedResponseError),
        ],
    )
    @pytest.mark.asyncio
    async def test_error_status(
        self,
        httpx_mock: HTTPXMock,
        describer: DescriptionClient,
        status: HTTPStatus,
        error: type[MalformedResponseError],
    ):
        httpx_mock.add_response(method="POST", url=DESCRIPTION_URL, status_code=status)

        with pytest.raises(error) as exc_info:
            await describer.describe(IMAGE)

        # Every non-success status is a malformed response, with its status
        assert isinstance(exc_info.value, MalformedResponseError)
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize(
        "body",
        [
            {"choices": []},
            {"choices": None},
            {},
            {"choices": [{"message": {"role": "assistant", "content": None}}]},
            {"choices": [{"finish_reason": "stop"}]},
            [],
        ],
    )
    @pytest.mark.asyncio
    async def test_no_usable_choice(self, httpx_mock: HTTPXMock, describer: DescriptionClient, body):
        httpx_mock.add_response(method="POST", url=DESCRIPTION_URL, json=body)

        with pytest.raises(MalformedResponseError) as exc_info:
            await describer.describe(IMAGE)

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_not_json(self, httpx_mock: HTTPXMock, describer: DescriptionClient):
        httpx_mock.add_response(method="POST", url=DESCRIPTION_URL, text="<html>oops</html>")

        with pytest.raises(MalformedResponseError, match="not JSON"):
            await describer.describe(IMAGE)

    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock: HTTPXMock, describer: DescriptionClient):
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), method="POST", url=DESCRIPTION_URL)

        with pytest.raises(DescriptionTimeoutError):
            await describer.describe(IMAGE)

    @pytest.mark.asyncio
    async def test_unreachable(self, httpx_mock: HTTPXMock, describer: DescriptionClient):
        httpx_mock.add_exception(httpx.ConnectError("refused"), method="POST", url=DESCRIPTION_URL)

        with pytest.raises(DescriptionError) as exc_info:
            await describer.describe(IMAGE)

        assert not isinstance(exc_info.value, (DescriptionTimeoutError, MalformedResponseError))


class TestClientLifecycle:
    @pytest.mark.asyncio
    async def test_credential_removed_on_exit(self):
        async with DescriptionClient(MOCK_API_KEY, url=DESCRIPTION_URL) as client:
            assert "Authorization" in client._client.headers
        assert "Authorization" not in client._client.headers
        assert client._client.is_closed

    def test_defaults(self):
        client = DescriptionClient(MOCK_API_KEY)
        assert client.url == "https://api.openai.com/v1/chat/completions"
        assert client.model == "gpt-4o"
        assert client.timeout == DescriptionClient.API_TIMEOUT


class TestDeadline:
    @pytest.mark.asyncio
    async def test_trickled_body_is_cut_off(self, httpx_mock: HTTPXMock):
        body = json.dumps(completion("slow")).encode()

        def trickle(request: httpx.Request) -> httpx.Response:
            return httpx.Response(HTTPStatus.OK, stream=TrickleStream(body, delay=0.1))

        httpx_mock.add_callback(trickle, method="POST", url=DESCRIPTION_URL)

        async with DescriptionClient(MOCK_API_KEY, url=DESCRIPTION_URL, timeout=0.5) as client:
            start = time.monotonic()
            with pytest.raises(DescriptionTimeoutError):
                await client.describe(IMAGE)
            elapsed = time.monotonic() - start

        # Every chunk arrives well inside the timeout, only the total is too long
        assert len(body) // 8 * 0.1 > 1.0
        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_slow_answer_is_cut_off(self, httpx_mock: HTTPXMock):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(HTTPStatus.OK, json=completion("too late"))

        httpx_mock.add_callback(slow, method="POST", url=DESCRIPTION_URL)

        async with DescriptionClient(MOCK_API_KEY, url=DESCRIPTION_URL, timeout=0.2) as client:
            with pytest.raises(DescriptionTimeoutError, match="0.2s"):
                await client.describe(IMAGE)

    @pytest.mark.asyncio
    async def test_quick_trickle_completes(self, httpx_mock: HTTPXMock):
        body = json.dumps(completion("a red car")).encode()

        def trickle(request: httpx.Request) -> httpx.Response:
            return httpx.Response(HTTPStatus.OK, stream=TrickleStream(body, chunk_size=64, delay=0.001))

        httpx_mock.add_callback(trickle, method="POST", url=DESCRIPTION_URL)

        async with DescriptionClient(MOCK_API_KEY, url=DESCRIPTION_URL, timeout=5.0) as client:
            assert await client.describe(IMAGE) == "a red car"
