"""Content model -- tagged-union content blocks and conversation messages.

Blocks serialize to the Anthropic Messages API wire shape via to_api(),
so they can be sent to the provider without a separate codec.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]

_IMAGE_MARKER = re.compile(r"<<IMG:(.*?)>>")

_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
}


# --- Image sources ---


class Base64ImageSource(BaseModel):
    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class UrlImageSource(BaseModel):
    type: Literal["url"] = "url"
    url: str


ImageSource = Annotated[
    Union[Base64ImageSource, UrlImageSource], Field(discriminator="type")
]


# --- Content blocks ---


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock, ImageBlock],
    Field(discriminator="type"),
]


def is_empty_text(block: BaseModel) -> bool:
    """True for text blocks with no text. Providers reject these."""
    return isinstance(block, TextBlock) and not block.text


# --- Messages ---


class Message(BaseModel):
    """One conversation turn: a role and an ordered list of content blocks."""

    role: Role
    content: list[ContentBlock] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role="assistant", content=[TextBlock(text=text)])

    def text(self) -> str:
        """Non-blank text blocks joined with blank lines."""
        return join_text(self.content)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def is_tool_result_message(self) -> bool:
        return (
            self.role == "user"
            and bool(self.content)
            and isinstance(self.content[0], ToolResultBlock)
        )

    def without_empty_text(self) -> Message:
        return Message(
            role=self.role,
            content=[b for b in self.content if not is_empty_text(b)],
        )

    def to_api(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": [block.model_dump() for block in self.content],
        }


def join_text(blocks: list[Any]) -> str:
    """Join the text of non-blank text blocks with blank lines."""
    parts = [
        b.text for b in blocks
        if isinstance(b, TextBlock) and b.text.strip()
    ]
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# User message construction with image attachments
# ---------------------------------------------------------------------------


async def build_user_message(text: str) -> Message:
    """Build a user Message, attaching images from <<IMG:path>> markers.

    URL markers become URL image sources. Local paths are read and
    base64-encoded; unreadable files are skipped. Markers are always
    stripped from the text. Text comes first, then images.
    """
    images: list[ImageBlock] = []

    for match in _IMAGE_MARKER.finditer(text):
        target = match.group(1).strip()
        if target.startswith(("http://", "https://")):
            images.append(ImageBlock(source=UrlImageSource(url=target)))
            logger.info("Auto-attached image URL: %s", target)
            continue

        try:
            data = await asyncio.to_thread(Path(target).read_bytes)
        except OSError:
            logger.warning("Could not read image file: %s", target)
            continue

        extension = target.rsplit(".", 1)[-1].lower() if "." in target else ""
        media_type = _MEDIA_TYPES.get(extension, "application/octet-stream")
        images.append(ImageBlock(source=Base64ImageSource(
            media_type=media_type,
            data=base64.b64encode(data).decode("ascii"),
        )))
        logger.info("Auto-attached image: %s (%s, %d bytes)", target, media_type, len(data))

    clean_text = _IMAGE_MARKER.sub("", text).strip()
    if not images:
        return Message.user(clean_text)
    return Message(role="user", content=[TextBlock(text=clean_text), *images])
