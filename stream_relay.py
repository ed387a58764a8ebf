"""Paced re-emission of upstream server-sent-event streams.

The relay reads the upstream SSE body incrementally and re-emits each
``choices[0].delta.content`` fragment in smaller pieces with a short adaptive
delay between them, so bursty upstream output reaches the client as a smooth
stream.  Independently of pacing it collects the streamed text; once the
stream has fully drained the :attr:`SSERelay.completion` future resolves with
the collected text and its estimated completion units.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import math
import random
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from usage_estimator import estimate_completion_units

LOG = logging.getLogger("pool-proxy.stream")

DONE_FRAME = b"data: [DONE]\n\n"


class StreamProcessingError(Exception):
    """Failure while relaying an upstream stream."""

    error_type = "stream_processing_error"


@dataclass
class PacingConfig:
    """Pacing parameters; all delays are in milliseconds."""

    min_delay_ms: float = 3.0
    max_delay_ms: float = 30.0
    adaptive_delay_factor: float = 0.5
    chunk_buffer_size: int = 15
    min_content_length_for_fast_output: int = 500
    fast_output_delay_ms: float = 2.0
    final_low_delay_ms: float = 1.0
    inter_message_delay_ms: float = 5.0
    fast_mode_threshold: int = 3000
    intelligent_batching: bool = True
    batching_threshold: int = 20
    max_batch_size: int = 5


@dataclass
class RelayResult:
    completion_text: str
    completion_units: int
    error: Optional[StreamProcessingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def adapt_delay(
    chunk_size: float,
    since_last_chunk_ms: float,
    config: PacingConfig,
    rng: Optional[random.Random] = None,
    stream_ending: bool = False,
) -> float:
    """Compute the inter-piece delay in ms.

    Bigger upstream chunks shorten the delay (log scale), longer gaps between
    upstream chunks lengthen it, with ±10% jitter.  The result is clamped to
    ``[min_delay_ms, max_delay_ms]``.
    """
    if chunk_size <= 0:
        return config.min_delay_ms
    if stream_ending:
        return max(1.0, config.final_low_delay_ms)

    min_delay = max(1.0, config.min_delay_ms)
    max_delay = max(min_delay, config.max_delay_ms)
    factor = max(0.0, min(2.0, config.adaptive_delay_factor))

    log_size = math.log2(max(1.0, chunk_size))
    size_factor = 1.5 if log_size == 0 else max(0.2, min(1.5, 4 / log_size))
    time_factor = math.sqrt(min(2000.0, max(50.0, since_last_chunk_ms)) / 200)

    delay = min_delay + (max_delay - min_delay) * size_factor * time_factor * factor
    delay *= 0.9 + (rng or random).random() * 0.2
    return min(max_delay, max(min_delay, delay))


_BLOCK_END_RE = re.compile(rb"\r?\n\r?\n")
_LINE_RE = re.compile(r"\r?\n")


def split_blocks(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Split complete SSE blocks off ``buffer``.

    Each block keeps its original bytes including the blank line that ends
    it; the unterminated remainder is returned separately.  Separators are
    ASCII, so a multi-byte character is never cut between blocks.
    """
    blocks: list[bytes] = []
    start = 0
    for m in _BLOCK_END_RE.finditer(buffer):
        blocks.append(buffer[start:m.end()])
        start = m.end()
    return blocks, buffer[start:]


def _data_payload(lines: list[str]) -> str:
    return "\n".join(line[5:].strip() for line in lines if line.startswith("data:"))


def _delta_content(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


def _content_frame(template: dict[str, Any], piece: str) -> bytes:
    frame = copy.deepcopy(template)
    frame["choices"][0]["delta"]["content"] = piece
    body = json.dumps(frame, ensure_ascii=False, separators=(",", ":"))
    return f"data: {body}\n\n".encode("utf-8")


def error_frame(error: StreamProcessingError) -> bytes:
    body = json.dumps(
        {"error": {"message": str(error), "type": error.error_type}},
        ensure_ascii=False,
    )
    return f"data: {body}\n\n".encode("utf-8")


class SSERelay:
    """Relay one upstream SSE body to one client."""

    def __init__(
        self,
        config: Optional[PacingConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or PacingConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._collected: list[str] = []
        self._completion: Optional[asyncio.Future[RelayResult]] = None

    @property
    def completion(self) -> asyncio.Future[RelayResult]:
        if self._completion is None:
            self._completion = asyncio.get_running_loop().create_future()
        return self._completion

    @property
    def collected_text(self) -> str:
        return "".join(self._collected)

    async def _pause(self, delay_ms: float) -> None:
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    def _finish(self, error: Optional[StreamProcessingError] = None) -> RelayResult:
        text = self.collected_text
        result = RelayResult(
            completion_text=text,
            completion_units=estimate_completion_units(text),
            error=error,
        )
        if not self.completion.done():
            self.completion.set_result(result)
        return result

    async def relay(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield paced SSE frames for ``source``; always ends with [DONE] or an error frame."""
        cfg = self.config
        buffer = b""
        last_chunk_at = self._clock()
        recent_sizes: deque[int] = deque(maxlen=max(1, cfg.chunk_buffer_size))
        current_delay = cfg.min_delay_ms
        total_received = 0
        first_block = True

        try:
            async for raw in source:
                if not raw:
                    continue
                now = self._clock()
                since_last_ms = (now - last_chunk_at) * 1000
                last_chunk_at = now
                total_received += len(raw)
                recent_sizes.append(len(raw))

                blocks, buffer = split_blocks(buffer + raw)
                for block in blocks:
                    if not block.strip():
                        continue
                    delay = min(cfg.min_delay_ms, 2.0) if first_block else current_delay
                    first_block = False
                    async for frame in self._emit_block(block, delay, stream_ending=False):
                        yield frame
                    await self._pause(cfg.inter_message_delay_ms)

                avg_size = sum(recent_sizes) / len(recent_sizes)
                current_delay = adapt_delay(avg_size, since_last_ms, cfg, self._rng)
                if total_received > cfg.fast_mode_threshold:
                    current_delay = min(current_delay, cfg.fast_output_delay_ms)

            if buffer.strip():
                tail = buffer + (b"\n" if buffer.endswith(b"\n") else b"\n\n")
                async for frame in self._emit_block(tail, cfg.final_low_delay_ms, stream_ending=True):
                    yield frame
            yield DONE_FRAME
            result = self._finish()
            LOG.debug(
                "Stream relay finished: %d chars, ~%d completion units",
                len(result.completion_text),
                result.completion_units,
            )
        except Exception as exc:
            error = exc if isinstance(exc, StreamProcessingError) else StreamProcessingError(str(exc))
            LOG.error("Stream relay failed: %s", exc)
            self._finish(error)
            yield error_frame(error)

    async def _emit_block(
        self, raw: bytes, delay: float, stream_ending: bool
    ) -> AsyncIterator[bytes]:
        """Emit one SSE block; ``raw`` includes its terminating blank line."""
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            LOG.debug("Forwarding undecodable SSE block as-is")
            yield raw
            return

        lines = _LINE_RE.split(text.rstrip("\r\n"))
        data_lines = [line for line in lines if line.startswith("data:")]
        if not data_lines:
            yield raw
            return

        payload_text = _data_payload(lines)
        if payload_text == "[DONE]":
            # the relay emits its own terminal marker
            return

        try:
            payload = json.loads(payload_text)
        except ValueError:
            LOG.debug("Forwarding non-JSON SSE block as-is")
            yield raw
            return

        content = _delta_content(payload)
        if content is None:
            yield raw
            return

        self._collected.append(content)
        if len(data_lines) != len(lines):
            yield raw
            return

        cfg = self.config
        if cfg.intelligent_batching and len(content) > cfg.batching_threshold and not stream_ending:
            async for frame in self._emit_batches(content, payload, delay):
                yield frame
        else:
            async for frame in self._emit_chars(content, payload, delay, stream_ending):
                yield frame

    async def _emit_batches(
        self, content: str, template: dict[str, Any], delay: float
    ) -> AsyncIterator[bytes]:
        cfg = self.config
        if len(content) > 100:
            size = cfg.max_batch_size
            delay = min(delay, cfg.fast_output_delay_ms)
        elif len(content) > 50:
            size = 3
        else:
            size = 2
        for start in range(0, len(content), size):
            yield _content_frame(template, content[start:start + size])
            if start + size < len(content):
                await self._pause(delay)

    async def _emit_chars(
        self, content: str, template: dict[str, Any], delay: float, stream_ending: bool
    ) -> AsyncIterator[bytes]:
        cfg = self.config
        quick = len(content) > cfg.min_content_length_for_fast_output
        if quick:
            delay = cfg.fast_output_delay_ms
            size = 5 if stream_ending else 3
        else:
            size = 1
        for start in range(0, len(content), size):
            yield _content_frame(template, content[start:start + size])
            if start + size < len(content):
                if stream_ending and len(content) - start < 10:
                    await self._pause(min(delay, cfg.final_low_delay_ms))
                else:
                    await self._pause(delay)
