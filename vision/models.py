"""
Shapes of the chat completions request and response used to describe an image.
See https://platform.openai.com/docs/api-reference/chat
"""

from typing import Literal
from typing import NotRequired
from typing import TypedDict


class ImageUrl(TypedDict):
    url: str


class TextPart(TypedDict):
    type: Literal["text"]
    text: str


class ImagePart(TypedDict):
    type: Literal["image_url"]
    image_url: ImageUrl


class UserMessage(TypedDict):
    role: Literal["user"]
    content: list[TextPart | ImagePart]


class ChatCompletionRequest(TypedDict):
    model: str
    messages: list[UserMessage]
    max_tokens: int


class AssistantMessage(TypedDict):
    role: str
    content: str | None


class Choice(TypedDict):
    index: NotRequired[int]
    message: AssistantMessage
    finish_reason: NotRequired[str]


class ChatCompletion(TypedDict):
    id: NotRequired[str]
    model: NotRequired[str]
    choices: list[Choice]
