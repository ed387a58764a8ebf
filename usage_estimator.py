"""Usage estimation for proxied requests.

The upstream reports exact usage for most chat and embedding calls, but image
generation, transcription and rerank responses usually carry no ``usage``
block.  For those (and for streamed completions, where usage is rarely sent)
we fall back to deterministic character-class heuristics so every request is
accounted in the same unit, even if only approximately.

Requests are classified once by route into a small tagged union; the
estimators dispatch on the variant instead of probing request fields.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

# ── Routes ────────────────────────────────────────────────────────────────────────────


class RouteKind(str, Enum):
    CHAT = "chat"
    EMBEDDINGS = "embeddings"
    IMAGES = "images"
    MODELS = "models"
    AUDIO = "audio"
    USER_INFO = "userInfo"
    RERANK = "rerank"


API_ROUTES: dict[RouteKind, str] = {
    RouteKind.CHAT: "/v1/chat/completions",
    RouteKind.EMBEDDINGS: "/v1/embeddings",
    RouteKind.IMAGES: "/v1/images/generations",
    RouteKind.MODELS: "/v1/models",
    RouteKind.AUDIO: "/v1/audio/transcriptions",
    RouteKind.USER_INFO: "/v1/user/info",
    RouteKind.RERANK: "/v1/rerank",
}


def route_kind(path: str) -> Optional[RouteKind]:
    """Return the route family an upstream path belongs to."""
    for kind, endpoint in API_ROUTES.items():
        if endpoint in path:
            return kind
    return None


def resolve_upstream_path(path: str) -> Optional[str]:
    """Map an inbound path to an upstream path.

    ``/chat`` style aliases expand to the full upstream endpoint (anything after
    the alias is kept), literal upstream paths pass through unchanged.
    """
    for kind, endpoint in API_ROUTES.items():
        alias = f"/{kind.value}"
        if path.startswith(alias):
            return endpoint + path[len(alias):]
        if path == endpoint:
            return path
    return None


# ── Text estimation ───────────────────────────────────────────────────────────────────


class TextType(str, Enum):
    NORMAL = "normal"
    CODE = "code"
    COMPLETION = "completion"
    IMAGE_PROMPT = "image_prompt"


_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_SYMBOL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?\d]")
_WHITESPACE_RE = re.compile(r"\s")

DEFAULT_UNITS = 10
IMAGE_BASE_UNITS = 1000
IMAGE_FALLBACK_UNITS = 4500
IMAGE_MAX_N = 10_000
TRANSCRIPTION_OVERHEAD_UNITS = 500
TRANSCRIPTION_FALLBACK_UNITS = 1500
RERANK_MIN_UNITS = 100
RERANK_FALLBACK_UNITS = 500
CHAT_ROLE_OVERHEAD = 3
CHAT_FRAMING_OVERHEAD = 10

IMAGE_SIZE_MULTIPLIERS: dict[str, float] = {
    "256x256": 0.6,
    "512x512": 1.0,
    "1024x1024": 2.0,
    "1792x1024": 2.5,
    "1024x1792": 2.5,
}
HD_QUALITY_MULTIPLIER = 1.5


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_text_units(
    text: str,
    chat_message: bool = False,
    text_type: TextType = TextType.NORMAL,
) -> int:
    """Estimate the token-equivalent size of ``text``.

    CJK characters, fenced code, symbols and whitespace are counted
    separately and weighted per ``text_type``.  ``chat_message`` adds the
    per-message framing overhead of chat formats.  Empty text is 0, anything
    else is at least 1.
    """
    if not text:
        return 0

    cjk_chars = len(_CJK_RE.findall(text))
    code_chars = sum(len(block) for block in _CODE_BLOCK_RE.findall(text))
    symbol_chars = len(_SYMBOL_RE.findall(text))
    whitespace_chars = len(_WHITESPACE_RE.findall(text))
    total_chars = len(text)
    other_chars = total_chars - cjk_chars

    if text_type is TextType.IMAGE_PROMPT:
        estimated = math.ceil(cjk_chars * 0.6) + math.ceil(other_chars / 5)
    elif text_type is TextType.CODE:
        estimated = (
            math.ceil(cjk_chars * 0.7)
            + math.ceil((other_chars - code_chars) / 4)
            + math.ceil(code_chars / 6)
        )
    elif text_type is TextType.COMPLETION:
        estimated = math.ceil(cjk_chars * 0.65) + math.ceil(other_chars / 3.5)
        # punctuation-heavy output tokenizes worse
        if symbol_chars > total_chars * 0.3:
            estimated = math.ceil(estimated * 1.1)
    else:
        estimated = math.ceil(cjk_chars * 0.7) + math.ceil((other_chars - code_chars) / 4)
        if code_chars > 0:
            estimated += math.ceil(code_chars / 5.5)
        if whitespace_chars > total_chars * 0.2:
            estimated = math.ceil(estimated * 0.95)

    if chat_message:
        if total_chars > 1000:
            estimated += 3
        elif total_chars < 20:
            estimated += 5
        else:
            estimated += 4

    return max(1, _round_half_up(estimated))


def _text_type_for(text: str) -> TextType:
    return TextType.CODE if "```" in text else TextType.NORMAL


def _compact_json_length(payload: Any) -> int:
    return len(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


# ── Request classification ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChatRequest:
    contents: tuple[str, ...]


@dataclass(frozen=True)
class EmbeddingRequest:
    inputs: tuple[str, ...]


@dataclass(frozen=True)
class ImageRequest:
    parsed: bool
    prompt: str = ""
    n: int = 1
    size: Optional[str] = None
    quality: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionRequest:
    pass


@dataclass(frozen=True)
class RerankRequest:
    parsed: bool
    query: str = ""
    documents: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GenericRequest:
    payload: Any = None
    raw_length: int = 0


ClassifiedRequest = Union[
    ChatRequest,
    EmbeddingRequest,
    ImageRequest,
    TranscriptionRequest,
    RerankRequest,
    GenericRequest,
]


def _message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    return str(content)


def _as_text_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, list):
        return tuple(str(v) for v in value)
    return (str(value),)


def _parse_json(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def is_multipart(content_type: str) -> bool:
    return "multipart/form-data" in (content_type or "").lower()


def is_stream_request(body: bytes, content_type: str = "") -> bool:
    """True when a JSON request body asks for streamed output."""
    if is_multipart(content_type):
        return False
    payload = _parse_json(body)
    return isinstance(payload, dict) and payload.get("stream") is True


def classify_request(path: str, body: bytes, content_type: str = "") -> ClassifiedRequest:
    """Classify an upstream request by route, keeping only what estimation needs."""
    kind = route_kind(path)
    if kind is RouteKind.AUDIO:
        return TranscriptionRequest()
    if is_multipart(content_type):
        return GenericRequest(payload=None, raw_length=len(body))

    payload = _parse_json(body)
    raw_length = len(body.decode("utf-8", errors="replace")) if body else 0

    if kind is RouteKind.IMAGES:
        if not isinstance(payload, dict):
            return ImageRequest(parsed=False)
        try:
            n = int(payload.get("n") or 1)
        except (TypeError, ValueError, OverflowError):
            n = 1
        size = payload.get("size")
        quality = payload.get("quality")
        return ImageRequest(
            parsed=True,
            prompt=str(payload.get("prompt") or ""),
            n=min(IMAGE_MAX_N, max(1, n)),
            size=size if isinstance(size, str) else None,
            quality=quality if isinstance(quality, str) else None,
        )
    if kind is RouteKind.RERANK:
        if not isinstance(payload, dict):
            return RerankRequest(parsed=False)
        docs = payload.get("documents")
        return RerankRequest(
            parsed=True,
            query=str(payload.get("query") or ""),
            documents=_as_text_tuple(docs) if isinstance(docs, list) else (),
        )
    if isinstance(payload, dict):
        messages = payload.get("messages")
        if kind is RouteKind.CHAT and isinstance(messages, list):
            return ChatRequest(
                contents=tuple(
                    _message_text(m.get("content")) if isinstance(m, dict) else ""
                    for m in messages
                )
            )
        if kind is RouteKind.EMBEDDINGS and payload.get("input") is not None:
            return EmbeddingRequest(inputs=_as_text_tuple(payload.get("input")))
    return GenericRequest(payload=payload, raw_length=raw_length)


# ── Usage extraction / estimation ─────────────────────────────────────────────────────


def reported_usage(response_json: Any) -> Optional[int]:
    """Return upstream-reported usage, or None when the response has none.

    Prefers an explicit total, then prompt + completion, then prompt only.
    """
    if not isinstance(response_json, dict):
        return None
    usage = response_json.get("usage")
    if not isinstance(usage, dict) or not usage:
        return None
    try:
        if usage.get("total_tokens"):
            return int(usage["total_tokens"])
        if "prompt_tokens" in usage and "completion_tokens" in usage:
            return int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)
        if "prompt_tokens" in usage:
            return int(usage.get("prompt_tokens") or 0)
    except (TypeError, ValueError):
        return None
    return None


def _generic_units(request: GenericRequest) -> int:
    payload = request.payload
    if payload is None:
        if request.raw_length == 0:
            return DEFAULT_UNITS
        return max(DEFAULT_UNITS, math.ceil(request.raw_length / 3))
    if isinstance(payload, dict) and (payload.get("input") or payload.get("prompt")):
        text = " ".join(_as_text_tuple(payload.get("input") or payload.get("prompt")))
        return max(1, estimate_text_units(text, text_type=_text_type_for(text)))
    return max(DEFAULT_UNITS, math.ceil(_compact_json_length(payload) / 4))


def _rerank_units(request: RerankRequest) -> int:
    total = estimate_text_units(request.query)
    total += sum(estimate_text_units(doc) for doc in request.documents)
    return total


def estimate_prompt_units(request: ClassifiedRequest) -> int:
    """Estimate the prompt side of a request (used for streamed completions)."""
    if isinstance(request, ChatRequest):
        units = 0
        for content in request.contents:
            if content:
                units += estimate_text_units(
                    content, chat_message=True, text_type=_text_type_for(content)
                )
            units += CHAT_ROLE_OVERHEAD
        return units + CHAT_FRAMING_OVERHEAD
    if isinstance(request, EmbeddingRequest):
        text = " ".join(request.inputs)
        return estimate_text_units(text, text_type=_text_type_for(text)) or DEFAULT_UNITS
    if isinstance(request, ImageRequest):
        if request.prompt:
            return estimate_text_units(request.prompt, text_type=TextType.IMAGE_PROMPT)
        return DEFAULT_UNITS
    if isinstance(request, RerankRequest):
        return max(1, _rerank_units(request)) if request.parsed else DEFAULT_UNITS
    if isinstance(request, TranscriptionRequest):
        return DEFAULT_UNITS
    return _generic_units(request)


def estimate_completion_units(text: str) -> int:
    """Estimate units for streamed completion text (0 when nothing was streamed)."""
    return estimate_text_units(text, text_type=TextType.COMPLETION)


def estimate_exchange_units(request: ClassifiedRequest, response_json: Any) -> int:
    """Units consumed by a finished non-streaming exchange.

    ``response_json`` is the decoded response body, or None when the body was
    not JSON.
    """
    if response_json is None:
        return DEFAULT_UNITS

    reported = reported_usage(response_json)
    if reported is not None:
        return reported

    if isinstance(request, ImageRequest):
        if not request.parsed:
            return IMAGE_FALLBACK_UNITS
        base = IMAGE_BASE_UNITS
        if request.prompt:
            base += estimate_text_units(request.prompt, text_type=TextType.IMAGE_PROMPT)
        size_mult = IMAGE_SIZE_MULTIPLIERS.get(request.size or "", 1.0)
        quality_mult = HD_QUALITY_MULTIPLIER if request.quality == "hd" else 1.0
        return max(1, _round_half_up(base * request.n * size_mult * quality_mult))

    if isinstance(request, TranscriptionRequest):
        text = response_json.get("text") if isinstance(response_json, dict) else None
        if text:
            return max(
                TRANSCRIPTION_OVERHEAD_UNITS,
                estimate_text_units(str(text)) + TRANSCRIPTION_OVERHEAD_UNITS,
            )
        return TRANSCRIPTION_FALLBACK_UNITS

    if isinstance(request, RerankRequest):
        if not request.parsed:
            return RERANK_FALLBACK_UNITS
        return max(RERANK_MIN_UNITS, _rerank_units(request))

    if isinstance(request, ChatRequest):
        units = sum(
            estimate_text_units(content, chat_message=True)
            for content in request.contents
            if content
        )
        return max(1, units)

    if isinstance(request, EmbeddingRequest):
        return max(1, estimate_text_units(" ".join(request.inputs)))

    return _generic_units(request)
