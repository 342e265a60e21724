"""
Multi-modal input normalization.

Incoming message parts (text, image, audio, generic file) arrive with
base64 payloads; they are converted into provider-neutral content parts.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Literal

from ..llm.base import ContentPart, FilePart, ImagePart, TextPart

DEFAULT_AUDIO_INSTRUCTION = "Listen to this voice message and reply."


@dataclass
class IncomingPart:
    """A message part as received from a client."""

    type: Literal["text", "image", "audio", "file"]
    text: str | None = None
    data: str | None = None
    url: str | None = None
    media_type: str | None = None
    filename: str | None = None


def strip_codec(media_type: str) -> str:
    """'audio/webm;codecs=opus' -> 'audio/webm'."""
    return media_type.split(";", 1)[0].strip().lower()


def _split_data_uri(value: str) -> tuple[str | None, str]:
    if not value.startswith("data:"):
        return None, value
    header, _, payload = value.partition(",")
    return header[len("data:"):].split(";", 1)[0] or None, payload


def decode_base64(value: str) -> bytes:
    """Decode a base64 payload (plain or data URI).

    Raises:
        ValueError: the payload is not valid base64.
    """
    _, payload = _split_data_uri(value.strip())
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def is_audio(part: IncomingPart) -> bool:
    if part.type == "audio":
        return True
    return part.type == "file" and bool(part.media_type) and strip_codec(part.media_type).startswith("audio/")


def _normalize_part(part: IncomingPart) -> ContentPart | None:
    if part.type == "text":
        return TextPart(text=part.text) if part.text else None

    if part.type == "image":
        if part.url:
            return ImagePart(url=part.url, media_type=part.media_type)
        if part.data:
            if part.data.startswith("data:"):
                return ImagePart(url=part.data, media_type=part.media_type)
            media_type = part.media_type or "image/png"
            return ImagePart(url=f"data:{media_type};base64,{part.data}", media_type=media_type)
        raise ValueError("Image part has neither url nor data")

    if not part.data:
        raise ValueError(f"{part.type} part has no data")

    uri_media_type, _ = _split_data_uri(part.data)
    declared = part.media_type or uri_media_type
    if is_audio(part):
        media_type = strip_codec(declared or "audio/webm")
    else:
        media_type = strip_codec(declared or "application/octet-stream")

    return FilePart(data=decode_base64(part.data), media_type=media_type, filename=part.filename)


def normalize_user_content(text: str | None, parts: list[IncomingPart] | None = None) -> list[ContentPart]:
    """Turn a user message plus its attachments into model content parts.

    An audio part without any accompanying text gets a default
    instruction text part placed first.
    """
    normalized: list[ContentPart] = []
    if text and text.strip():
        normalized.append(TextPart(text=text))

    for part in parts or []:
        converted = _normalize_part(part)
        if converted is not None:
            normalized.append(converted)

    has_text = any(isinstance(p, TextPart) for p in normalized)
    has_audio = any(isinstance(p, FilePart) and p.media_type.startswith("audio/") for p in normalized)
    if has_audio and not has_text:
        normalized.insert(0, TextPart(text=DEFAULT_AUDIO_INSTRUCTION))

    return normalized


def describe_parts(text: str | None, parts: list[IncomingPart] | None = None) -> str:
    """Plain-text rendering of a multi-modal message for history storage."""
    pieces = [text.strip()] if text and text.strip() else []
    for part in parts or []:
        if part.type == "text" and part.text:
            pieces.append(part.text)
        elif is_audio(part):
            pieces.append("[voice message]")
        elif part.type == "image":
            pieces.append("[image]")
        else:
            pieces.append(f"[file: {part.filename or part.media_type or 'attachment'}]")
    return "\n".join(pieces)


def message_text(text: str | None, parts: list[IncomingPart] | None = None) -> str:
    """The written words of a message: ``text`` plus every text part."""
    pieces = [text.strip()] if text and text.strip() else []
    pieces.extend(p.text.strip() for p in parts or [] if p.type == "text" and p.text and p.text.strip())
    return "\n".join(pieces)
