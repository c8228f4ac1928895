"""Preprocessing of message attachments before a request is dispatched.

Providers only understand text, image and base64 audio parts, so user
messages are rewritten first: ``file_url`` parts become a text part holding
the parsed document, and ``input_audio`` parts that point at a URL are
downloaded and inlined as base64.
"""

import asyncio
import base64
import importlib.util
import io
import logging
import re
from pathlib import PurePosixPath

import httpx

from tributary.message import ContentPart, GenerationRequest, Message, MessageRole

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 10_000
MARKITDOWN_EXTENSIONS = {".pdf", ".docx", ".xlsx", ".xls", ".pptx"}

_RTF_CONTROL = re.compile(r"\\[a-z]+-?\d*\s?")
_WHITESPACE = re.compile(r"\s+")


class DocumentParser:
    """Downloads documents and extracts their text.

    Plain-text formats are decoded directly. Office and PDF formats are
    converted with ``markitdown`` (``pip install tributary[documents]``).

    Args:
        http_client: Client used for downloads. A short-lived client is
            opened per download when omitted.
        timeout: Download timeout in seconds.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ):
        self.http_client = http_client
        self.timeout = timeout

    async def fetch(self, url: str) -> bytes:
        if self.http_client is not None:
            response = await self.http_client.get(url)
        else:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True,
            ) as http:
                response = await http.get(url)
        response.raise_for_status()
        return response.content

    async def parse_from_url(self, url: str, name: str) -> str:
        return self.parse(await self.fetch(url), name)

    def parse(self, data: bytes, name: str) -> str:
        extension = PurePosixPath(name).suffix.lower()
        if extension == ".rtf":
            return self._strip_rtf(data.decode("utf-8", errors="replace"))
        if extension in MARKITDOWN_EXTENSIONS:
            return self._convert(data, extension)
        # .txt, .md, .json, .csv and anything unrecognised.
        return data.decode("utf-8")

    @staticmethod
    def _strip_rtf(text: str) -> str:
        text = _RTF_CONTROL.sub("", text).replace("{", "").replace("}", "")
        return _WHITESPACE.sub(" ", text).strip()

    @staticmethod
    def _convert(data: bytes, extension: str) -> str:
        if importlib.util.find_spec("markitdown") is None:
            raise ImportError(
                f"markitdown is required to read {extension} files. "
                "Install it with: pip install tributary[documents]"
            )
        from markitdown import MarkItDown

        result = MarkItDown().convert_stream(
            io.BytesIO(data), file_extension=extension,
        )
        return result.text_content or ""

    @staticmethod
    def format_document_prompt(name: str, content: str) -> str:
        if len(content) > MAX_DOCUMENT_CHARS:
            content = content[:MAX_DOCUMENT_CHARS] + "\n...(content truncated)"
        return (
            f"\n\n--- Document: {name} ---\n{content}\n"
            f"--- End of Document ---\n\n"
        )


class AttachmentPreprocessor:
    """Rewrites ``file_url`` and ``input_audio`` parts of user messages.

    Failures never abort the request: an unreadable document becomes a
    placeholder text part and an audio download failure leaves the part
    as it was. Both are logged.
    """

    def __init__(self, parser: DocumentParser | None = None):
        self.parser = parser or DocumentParser()

    async def process(self, request: GenerationRequest) -> GenerationRequest:
        if not any(self._has_parts(m) for m in request.messages):
            return request
        messages = await asyncio.gather(
            *(self._process_message(m) for m in request.messages)
        )
        return request.with_messages(list(messages))

    @staticmethod
    def _has_parts(message: Message) -> bool:
        return message.role is MessageRole.USER and isinstance(
            message.content, list
        )

    async def _process_message(self, message: Message) -> Message:
        if not self._has_parts(message):
            return message
        parts = await asyncio.gather(
            *(self._process_part(p) for p in message.content)
        )
        return message.model_copy(update={"content": list(parts)})

    async def _process_part(self, part: ContentPart) -> ContentPart:
        if part.type == "file_url":
            return await self.file_to_text(part)
        if part.type == "input_audio":
            return await self.audio_to_base64(part)
        return part

    async def file_to_text(self, part: ContentPart) -> ContentPart:
        nested = getattr(part, "file_url", None) or {}
        url = part.url or nested.get("url")
        name = part.name or nested.get("name") or url or "document"
        try:
            if not url:
                raise ValueError("file_url part has no url")
            text = await self.parser.parse_from_url(url, name)
        except Exception as e:
            logger.error(f"Failed to parse document {name}: {e}")
            return ContentPart(
                type="text", text=f"[Unable to parse document: {name}]",
            )
        return ContentPart(
            type="text",
            text=DocumentParser.format_document_prompt(name, text),
        )

    async def audio_to_base64(self, part: ContentPart) -> ContentPart:
        audio = part.input_audio or {}
        data = audio.get("data") or ""
        if not data.startswith(("http://", "https://")):
            return part
        try:
            raw = await self.parser.fetch(data)
        except Exception as e:
            logger.error(f"Failed to download audio {data!r}: {e!r}")
            return part
        return ContentPart(
            type="input_audio",
            input_audio={
                "data": base64.b64encode(raw).decode("ascii"),
                "format": audio.get("format"),
            },
        )
