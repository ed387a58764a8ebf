"""Token Pool Proxy – credential-pooling reverse proxy for OpenAI-compatible APIs.

A single upstream API is fronted by a pool of access tokens.  Each inbound
request is routed to one pooled token (round-robin by recency for image
generation, health/usage score for everything else), forwarded with retry on
transport failure, and accounted against the token and the global usage
windows.  Streamed completions are re-emitted with adaptive pacing.

Features:
- Token pool persisted in a SQLite key/value table with per-resource TTL cache
- Fail-fast advisory lock around persisting mutations (HTTP 429 when busy)
- Automatic disable after consecutive upstream errors, timed recovery
- Minute / day usage windows with UTC+8 natural-day rollover
- Balance refresh with validity fallback and bounded fan-out
- HS256 session cookie for the admin API
- Structured audit logging for admin operations
- In-process maintenance loop
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import os
import re
import sqlite3
import sys
import threading
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from session_tokens import SessionCheck, SessionSigner, new_session_secret
from stream_relay import PacingConfig, SSERelay
from usage_estimator import (
    API_ROUTES,
    RouteKind,
    classify_request,
    estimate_completion_units,
    estimate_exchange_units,
    estimate_prompt_units,
    is_stream_request,
    resolve_upstream_path,
)

# ── Logging ───────────────────────────────────────────────────────────────────────────

LOG = logging.getLogger("pool-proxy")

# ── Version ───────────────────────────────────────────────────────────────────────────

__version__ = "1.0.0"

# ── Constants ─────────────────────────────────────────────────────────────────────────

TOKENS_KEY = "tokens"
STATS_KEY = "stats"
ADMIN_PASSWORD_KEY = "admin_password"
SESSION_SECRET_KEY = "session_secret"

UTC8 = timezone(timedelta(hours=8))
MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_ADMIN_PASSWORD = "change-me-admin-password"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def level_name(value: str) -> str:
    """Map a logging level name onto a ``LOG_LEVELS`` key."""
    v = (value or "").strip().lower()
    if v == "warning":
        return "warn"
    if v == "critical":
        return "error"
    return v if v in LOG_LEVELS else "info"


# ── Settings ──────────────────────────────────────────────────────────────────────────


@dataclass
class ScoreWeights:
    success: float = 0.7
    usage: float = 0.3
    decay: float = 0.8


@dataclass
class AppSettings:
    db_path: str
    port: int
    upstream_base_url: str
    client_api_key: str
    admin_password: str
    max_attempts: int = 3
    retry_delay_seconds: float = 0.5
    upstream_timeout_seconds: float = 120.0
    max_connections: int = 200
    max_keepalive: int = 50
    max_consecutive_errors: int = 3
    tokens_cache_ttl_seconds: float = 300.0
    stats_cache_ttl_seconds: float = 120.0
    stats_save_interval_seconds: float = 600.0
    recovery_window_seconds: float = 24 * 60 * 60
    balance_cache_seconds: float = 60 * 60
    balance_check_concurrency: int = 5
    validity_check_model: str = "Qwen/Qwen2.5-7B-Instruct"
    score_weights: ScoreWeights = field(default_factory=ScoreWeights)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_request_body_bytes: int = 25 * 1024 * 1024  # 25 MB, audio uploads
    log_level: str = "INFO"
    maintenance_interval_seconds: float = 0.0
    session_ttl_seconds: int = 24 * 60 * 60


# ── Custom Exceptions ───────────────────────────────────────────────────────────────


class PoolProxyError(Exception):
    """Base exception for proxy errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_type: str = "internal_error",
        code: Optional[str] = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type
        self.code = code or error_type

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.detail, "type": self.error_type, "code": self.code}


class AuthenticationError(PoolProxyError):
    def __init__(self, detail: str = "invalid api key", code: str = "invalid_api_key") -> None:
        super().__init__(detail, 401, "authentication_error", code)


class NoTokenAvailable(PoolProxyError):
    def __init__(self, detail: str = "no enabled upstream token available") -> None:
        super().__init__(detail, 503, "api_error", "no_token_available")


class UpstreamError(PoolProxyError):
    def __init__(self, detail: str, details: str = "") -> None:
        super().__init__(detail, 502, "api_error", "upstream_error")
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "details": self.details}


class RequestBusy(PoolProxyError):
    def __init__(self, detail: str = "another update is in progress, please retry") -> None:
        super().__init__(detail, 429, "busy", "request_busy")


class MalformedRequest(PoolProxyError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, 400, "invalid_request_error", "malformed_request")


class TokenNotFound(PoolProxyError):
    def __init__(self, detail: str = "token not found") -> None:
        super().__init__(detail, 404, "invalid_request_error", "token_not_found")


# ── Helpers ───────────────────────────────────────────────────────────────────────────


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Return current UTC time in ISO 8601 format."""
    return now_utc().isoformat()


def epoch_ms(moment: Optional[datetime] = None) -> int:
    return int((moment or now_utc()).timestamp() * 1000)


def utc8_date(timestamp_ms: int) -> str:
    """Calendar date (YYYY-MM-DD) of a timestamp in UTC+8."""
    return datetime.fromtimestamp(timestamp_ms / 1000, UTC8).strftime("%Y-%m-%d")


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def parse_bearer_token(value: Optional[str]) -> str:
    """Extract bearer token from Authorization header."""
    if not value:
        return ""
    parts = value.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def normalize_base_url(value: str) -> str:
    """Normalize and validate a base URL."""
    url = (value or "").strip().rstrip("/")
    if not url:
        raise ValueError("base_url is required")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValueError("base_url must start with http:// or https://")
    return url


def join_url(base: str, path: str, query: str = "") -> str:
    url = f"{base.rstrip('/')}/{path.lstrip('/')}"
    return f"{url}?{query}" if query else url


def obfuscate_key(value: str) -> str:
    """Show only the first and last four characters of a secret."""
    s = value or ""
    if len(s) <= 8:
        return "***"
    return f"{s[:4]}...{s[-4:]}"


_KEY_SPLIT_RE = re.compile(r"[\n,]")


def split_key_input(raw: Union[str, list[str], None]) -> list[str]:
    """Split newline/comma separated key input, dropping blanks."""
    if raw is None:
        return []
    parts = raw if isinstance(raw, list) else _KEY_SPLIT_RE.split(raw)
    return [p.strip() for p in parts if isinstance(p, str) and p.strip()]


_BLOCKED_REQUEST_HEADERS = {
    "host", "connection", "content-length", "authorization", "cookie",
    "accept-encoding", "transfer-encoding", "keep-alive", "proxy-authorization",
    "te", "trailer", "upgrade",
}


def build_upstream_headers(
    incoming: Any, token_key: str, request_id: str = "", has_body: bool = True
) -> dict[str, str]:
    """Build headers for the upstream call, swapping client credentials for the pool token."""
    headers: dict[str, str] = {}
    for k, v in incoming.items():
        if k.lower() in _BLOCKED_REQUEST_HEADERS or k.lower().startswith("x-pool-"):
            continue
        headers[k] = v
    headers["Authorization"] = f"Bearer {token_key}"
    if has_body and "content-type" not in {h.lower() for h in headers}:
        headers["Content-Type"] = "application/json"
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


def filtered_response_headers(
    headers: httpx.Headers, token_key: str, request_id: str = ""
) -> dict[str, str]:
    """Filter upstream response headers and add proxy metadata."""
    out: dict[str, str] = {}
    _passthrough = {"content-type", "cache-control", "retry-after"}
    for k, v in headers.items():
        lo = k.lower()
        if lo in _passthrough:
            out[k] = v
        elif lo.startswith("x-ratelimit"):
            out[k] = v
    out["X-Pool-Token"] = obfuscate_key(token_key)
    out["X-Pool-Version"] = __version__
    if request_id:
        out["X-Request-ID"] = request_id
    return out


def is_admin_path(path: str) -> bool:
    return path in ("/", "/login", "/dashboard") or path.startswith("/api/")


# ── Audit Logger ─────────────────────────────────────────────────────────────────


class AuditLogger:
    """Structured audit logging for admin operations."""

    def __init__(self) -> None:
        self._log = logging.getLogger("pool-proxy.audit")

    def log(
        self,
        action: str,
        request_id: str = "",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": now_iso(),
            "action": action,
            "request_id": request_id,
        }
        if details:
            entry["details"] = details
        self._log.info(json.dumps(entry, ensure_ascii=False))


# ── Key/Value Store ──────────────────────────────────────────────────────────────


class KVStore:
    """Durable JSON key/value storage.

    Uses WAL mode for better concurrent read performance and
    thread-safe access via a threading lock.  Calls block; async callers go
    through ``asyncio.to_thread``.
    """

    def __init__(self, db_path: str) -> None:
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(p, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        """Close the database connection and run optimize."""
        with self._lock:
            try:
                self._conn.execute("PRAGMA optimize")
            except sqlite3.Error as exc:
                LOG.debug("PRAGMA optimize failed: %s", exc)
            self._conn.close()

    def get_json(self, key: str) -> Any:
        with self._lock:
            r = self._conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        if r is None:
            return None
        try:
            return json.loads(r["value"])
        except ValueError:
            LOG.warning("Stored value for %r is not valid JSON; ignoring it", key)
            return None

    def put_json(self, key: str, value: Any) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO kv(key,value,updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE "
                "SET value=excluded.value, updated_at=excluded.updated_at",
                (key, json.dumps(value, ensure_ascii=False), now_iso()),
            )
            self._conn.commit()

    def delete(self, key: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM kv WHERE key=?", (key,))
            self._conn.commit()
        return cur.rowcount > 0


# ── Resource Cache ───────────────────────────────────────────────────────────────


class ResourceCache:
    """One ``(data, timestamp)`` line per resource, each with its own TTL."""

    def __init__(self, ttl_seconds: dict[str, float], clock=time.time) -> None:
        self._ttl = dict(ttl_seconds)
        self._clock = clock
        self._lines: dict[str, tuple[Any, float]] = {}

    def get(self, resource: str) -> Optional[Any]:
        entry = self._lines.get(resource)
        if entry is None:
            return None
        data, ts = entry
        if self._clock() - ts >= self._ttl.get(resource, 0.0):
            return None
        return data

    def put(self, resource: str, data: Any) -> None:
        self._lines[resource] = (data, self._clock())

    def invalidate(self, resource: str) -> None:
        self._lines.pop(resource, None)


# ── Advisory Lock ────────────────────────────────────────────────────────────────


class AdvisoryLock:
    """Non-blocking in-process lock for persisting mutations.

    There is no wait queue: a caller that finds the lock held gets
    :class:`RequestBusy` and is expected to retry later.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self.try_acquire():
            raise RequestBusy()
        try:
            yield
        finally:
            self.release()


# ── Token Records ────────────────────────────────────────────────────────────────


class TokenRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    key: str
    enabled: bool = True
    added_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    last_checked: Optional[datetime] = None
    last_error_time: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    usage_count: int = 0
    success_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    total_tokens: int = 0
    balance: Optional[float] = None
    is_valid: Optional[bool] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("key must not be empty")
        return v

    @field_validator(
        "added_at", "last_used", "last_checked", "last_error_time", "last_modified"
    )
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


_SUMMARY_FIELDS = (
    "enabled", "usageCount", "errorCount", "successCount",
    "totalTokens", "consecutiveErrors", "lastUsed",
)


def token_summary(record: TokenRecord) -> dict[str, Any]:
    data = record.to_store()
    return {"key": obfuscate_key(record.key), **{k: data[k] for k in _SUMMARY_FIELDS}}


# ── Token Pool ───────────────────────────────────────────────────────────────────


class TokenPool:
    """In-memory token list backed by the ``tokens`` key.

    In-memory mutation never suspends; anything that persists holds the
    advisory lock for the whole load → mutate → write sequence.
    """

    def __init__(
        self,
        store: KVStore,
        cache: ResourceCache,
        lock: AdvisoryLock,
        max_consecutive_errors: int = 3,
        recovery_window_seconds: float = 24 * 60 * 60,
    ) -> None:
        self._store = store
        self._cache = cache
        self._lock = lock
        self.max_consecutive_errors = max_consecutive_errors
        self.recovery_window_seconds = recovery_window_seconds
        self.tokens: list[TokenRecord] = []

    async def load(self, force_refresh: bool = False) -> list[TokenRecord]:
        if not force_refresh:
            cached = self._cache.get(TOKENS_KEY)
            if cached is not None:
                self.tokens = cached
                return self.tokens
        raw = await asyncio.to_thread(self._store.get_json, TOKENS_KEY)
        records: list[TokenRecord] = []
        for item in raw if isinstance(raw, list) else []:
            if not isinstance(item, dict):
                continue
            try:
                records.append(TokenRecord.model_validate(item))
            except ValueError as exc:
                LOG.warning("Skipping unreadable token record: %s", exc)
        self.tokens = records
        self._cache.put(TOKENS_KEY, self.tokens)
        LOG.debug("Loaded %d tokens from store", len(records))
        return self.tokens

    async def _write(self) -> None:
        """Persist the full list; the advisory lock must be held."""
        payload = [t.to_store() for t in self.tokens]
        await asyncio.to_thread(self._store.put_json, TOKENS_KEY, payload)
        self._cache.put(TOKENS_KEY, self.tokens)

    async def save(self) -> None:
        with self._lock.hold():
            await self._write()

    def find(self, key: str) -> Optional[TokenRecord]:
        for t in self.tokens:
            if t.key == key:
                return t
        return None

    def resolve(self, ref: Union[str, int, None]) -> Optional[TokenRecord]:
        """Resolve an index-or-key reference."""
        if ref is None:
            return None
        s = str(ref).strip()
        if s.isdigit() and int(s) < len(self.tokens):
            return self.tokens[int(s)]
        return self.find(s)

    async def add(self, raw_input: Union[str, list[str], None]) -> dict[str, Any]:
        keys = split_key_input(raw_input)
        if not keys:
            raise MalformedRequest("no valid token provided")
        with self._lock.hold():
            await self.load()
            existing = {t.key for t in self.tokens}
            added = duplicates = 0
            now = now_utc()
            for key in keys:
                if key in existing:
                    duplicates += 1
                    continue
                self.tokens.append(TokenRecord(key=key, added_at=now))
                existing.add(key)
                added += 1
            if added:
                await self._write()
        LOG.info("Added %d tokens (%d duplicates)", added, duplicates)
        return {
            "success": True,
            "added": added,
            "duplicates": duplicates,
            "message": f"added {added} token(s), skipped {duplicates} duplicate(s)",
        }

    async def remove(
        self, keys: Union[str, list[str], None], lock_held: bool = False
    ) -> dict[str, Any]:
        as_list = isinstance(keys, list)
        wanted = split_key_input(keys)
        if not wanted:
            raise MalformedRequest("no valid token provided")
        if lock_held:
            return await self._remove(wanted, as_list)
        with self._lock.hold():
            await self.load()
            return await self._remove(wanted, as_list)

    async def _remove(self, wanted: list[str], report_failed: bool) -> dict[str, Any]:
        present = {t.key for t in self.tokens}
        drop = set(wanted)
        before = len(self.tokens)
        self.tokens = [t for t in self.tokens if t.key not in drop]
        removed = before - len(self.tokens)
        if removed:
            await self._write()
        result: dict[str, Any] = {
            "success": removed > 0 or report_failed,
            "removed": removed,
            "message": f"removed {removed}/{len(dict.fromkeys(wanted))} token(s)",
        }
        if report_failed:
            failed = [k for k in dict.fromkeys(wanted) if k not in present]
            result["failed"] = len(failed)
            result["messages"] = [f"token [{obfuscate_key(k)}] not found" for k in failed]
        elif not removed:
            result["message"] = "token not found"
        return result

    async def toggle(self, ref: Union[str, int]) -> TokenRecord:
        with self._lock.hold():
            await self.load()
            record = self.resolve(ref)
            if record is None:
                raise TokenNotFound()
            record.enabled = not record.enabled
            await self._write()
        LOG.info(
            "Token %s %s", obfuscate_key(record.key), "enabled" if record.enabled else "disabled"
        )
        return record

    async def batch_toggle(self, refs: list[Union[str, int]], target_enabled: bool) -> dict[str, Any]:
        with self._lock.hold():
            await self.load()
            updated = skipped = 0
            messages: list[str] = []
            now = now_utc()
            for ref in refs:
                record = self.resolve(ref)
                if record is None:
                    messages.append(f"token [{obfuscate_key(str(ref))}] not found")
                    continue
                if record.enabled == target_enabled:
                    skipped += 1
                    continue
                record.enabled = target_enabled
                record.last_modified = now
                updated += 1
            if updated:
                await self._write()
        verb = "enabled" if target_enabled else "disabled"
        return {
            "success": True,
            "updated": updated,
            "skipped": skipped,
            "failed": len(messages),
            "messages": messages,
            "message": f"{verb} {updated}/{len(refs)} token(s), skipped {skipped} already {verb}",
        }

    def apply_outcome(
        self, key: str, success: bool, units: int, now: Optional[datetime] = None
    ) -> Optional[TokenRecord]:
        """Update counters for one finished request (in memory only)."""
        record = self.find(key)
        if record is None:
            return None
        record.last_used = now or now_utc()
        record.usage_count += 1
        record.total_tokens += max(0, int(units))
        if success:
            record.success_count += 1
            record.consecutive_errors = 0
        else:
            record.error_count += 1
            record.consecutive_errors += 1
            record.last_error_time = record.last_used
            if record.enabled and record.consecutive_errors >= self.max_consecutive_errors:
                record.enabled = False
                LOG.warning(
                    "Token %s disabled after %d consecutive errors",
                    obfuscate_key(key),
                    record.consecutive_errors,
                )
        return record

    def recover_disabled(self, now: Optional[datetime] = None) -> int:
        """Re-enable tokens whose last error is older than the recovery window."""
        now = now or now_utc()
        window = timedelta(seconds=self.recovery_window_seconds)
        recovered = 0
        for t in self.tokens:
            if t.enabled or t.last_error_time is None:
                continue
            if now - t.last_error_time > window:
                t.enabled = True
                t.consecutive_errors = 0
                recovered += 1
                LOG.info("Token %s re-enabled after recovery window", obfuscate_key(t.key))
        return recovered

    def apply_balance(
        self,
        key: str,
        balance: Optional[float],
        is_valid: Optional[bool],
        now: Optional[datetime] = None,
    ) -> Optional[TokenRecord]:
        record = self.find(key)
        if record is None:
            return None
        record.balance = balance
        record.is_valid = is_valid
        record.last_checked = now or now_utc()
        return record


# ── Token Selection ──────────────────────────────────────────────────────────────

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def select_round_robin(tokens: list[TokenRecord]) -> Optional[TokenRecord]:
    """Least recently used enabled token; never-used tokens first."""
    enabled = [t for t in tokens if t.enabled]
    if not enabled:
        return None
    return min(enabled, key=lambda t: (t.last_used is not None, t.last_used or _NEVER))


def token_score(record: TokenRecord, max_usage: int, weights: ScoreWeights) -> float:
    error_rate = record.error_count / record.usage_count if record.usage_count else 0.0
    success_rate = 1.0 - error_rate
    relative_usage = record.usage_count / max_usage if max_usage else 0.0
    score = weights.success * success_rate + weights.usage * (1.0 - relative_usage)
    return score * (weights.decay ** record.consecutive_errors)


def select_by_score(
    tokens: list[TokenRecord], weights: Optional[ScoreWeights] = None
) -> Optional[TokenRecord]:
    weights = weights or ScoreWeights()
    enabled = [t for t in tokens if t.enabled]
    if not enabled:
        return None
    max_usage = max(t.usage_count for t in enabled)
    # max() keeps the first of equal scores
    return max(enabled, key=lambda t: token_score(t, max_usage, weights))


def select_token(
    tokens: list[TokenRecord], path: str, weights: Optional[ScoreWeights] = None
) -> Optional[TokenRecord]:
    if API_ROUTES[RouteKind.IMAGES] in path:
        return select_round_robin(tokens)
    return select_by_score(tokens, weights)


# ── Usage Statistics ─────────────────────────────────────────────────────────────


class UsageWindow:
    """Parallel timestamp / unit lists covering a fixed horizon."""

    def __init__(self, horizon_ms: int) -> None:
        self.horizon_ms = horizon_ms
        self.timestamps: list[int] = []
        self.units: list[int] = []

    def add(self, timestamp_ms: int, units: int) -> None:
        self.timestamps.append(int(timestamp_ms))
        self.units.append(int(units))

    def repair(self) -> None:
        n = min(len(self.timestamps), len(self.units))
        if n != len(self.timestamps) or n != len(self.units):
            LOG.warning("Usage window length mismatch; truncating to %d", n)
            del self.timestamps[n:]
            del self.units[n:]

    def trim(self, now_ms: int) -> None:
        cutoff = now_ms - self.horizon_ms
        last_stale = -1
        for i in range(len(self.timestamps) - 1, -1, -1):
            if self.timestamps[i] < cutoff:
                last_stale = i
                break
        if last_stale >= 0:
            del self.timestamps[: last_stale + 1]
            del self.units[: last_stale + 1]

    def clear(self) -> None:
        self.timestamps.clear()
        self.units.clear()

    @property
    def count(self) -> int:
        return len(self.timestamps)

    @property
    def total(self) -> int:
        return sum(self.units)


class StatsAggregator:
    """Global request/unit counters over the last minute and the current UTC+8 day."""

    def __init__(
        self,
        store: KVStore,
        cache: ResourceCache,
        lock: AdvisoryLock,
        save_interval_seconds: float = 600.0,
        clock=time.time,
    ) -> None:
        self._store = store
        self._cache = cache
        self._lock = lock
        self._clock = clock
        self.save_interval_seconds = save_interval_seconds
        self.minute = UsageWindow(MINUTE_MS)
        self.day = UsageWindow(DAY_MS)
        self.last_processed_date = utc8_date(self._now_ms())
        self.last_updated: Optional[datetime] = None
        self._last_saved_at = 0.0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _roll_day(self, now_ms: int) -> None:
        today = utc8_date(now_ms)
        if today != self.last_processed_date:
            LOG.info("Day rollover %s -> %s; resetting daily usage", self.last_processed_date, today)
            self.day.clear()
            self.last_processed_date = today

    def record(self, timestamp_ms: int, units: int) -> None:
        self._roll_day(timestamp_ms)
        self.minute.add(timestamp_ms, units)
        self.day.add(timestamp_ms, units)

    def cleanup(self, now_ms: Optional[int] = None) -> None:
        now_ms = self._now_ms() if now_ms is None else now_ms
        self.minute.repair()
        self.day.repair()
        self._roll_day(now_ms)
        self.minute.trim(now_ms)
        self.day.trim(now_ms)

    def snapshot(self, tokens: list[TokenRecord]) -> dict[str, Any]:
        self.cleanup()
        active = sum(1 for t in tokens if t.enabled)
        return {
            "current": {
                "rpm": self.minute.count,
                "tpm": self.minute.total,
                "rpd": self.day.count,
                "tpd": self.day.total,
            },
            "tokens": {
                "total": len(tokens),
                "active": active,
                "disabled": len(tokens) - active,
                "details": [token_summary(t) for t in tokens[:5]],
            },
            "updated": now_iso(),
        }

    def to_store(self) -> dict[str, Any]:
        return {
            "requestTimestamps": list(self.minute.timestamps),
            "tokenCounts": list(self.minute.units),
            "requestTimestampsDay": list(self.day.timestamps),
            "tokenCountsDay": list(self.day.units),
            "lastProcessedDate": self.last_processed_date,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

    def _apply_stored(self, blob: dict[str, Any]) -> None:
        def ints(name: str) -> list[int]:
            value = blob.get(name)
            return [int(v) for v in value] if isinstance(value, list) else []

        self.minute.timestamps = ints("requestTimestamps")
        self.minute.units = ints("tokenCounts")
        self.day.timestamps = ints("requestTimestampsDay")
        self.day.units = ints("tokenCountsDay")
        if isinstance(blob.get("lastProcessedDate"), str):
            self.last_processed_date = blob["lastProcessedDate"]

    async def load(self, force_refresh: bool = False) -> None:
        if not force_refresh and self._cache.get(STATS_KEY) is not None:
            return
        blob = await asyncio.to_thread(self._store.get_json, STATS_KEY)
        if isinstance(blob, dict):
            stored_at: Optional[datetime] = None
            try:
                if blob.get("lastUpdated"):
                    stored_at = datetime.fromisoformat(str(blob["lastUpdated"]).replace("Z", "+00:00"))
            except ValueError:
                stored_at = None
            # last writer wins
            if self.last_updated is None or (stored_at is not None and stored_at > self.last_updated):
                self._apply_stored(blob)
                self.last_updated = stored_at
        self.cleanup()
        self._cache.put(STATS_KEY, self.to_store())

    async def save(self, force: bool = False) -> bool:
        """Persist the windows; unforced saves are throttled."""
        now = self._clock()
        if not force and now - self._last_saved_at < self.save_interval_seconds:
            return False
        with self._lock.hold():
            self.cleanup()
            self.last_updated = now_utc()
            blob = self.to_store()
            await asyncio.to_thread(self._store.put_json, STATS_KEY, blob)
            self._cache.put(STATS_KEY, blob)
            self._last_saved_at = now
        LOG.debug("Stats saved (rpm=%d, rpd=%d)", self.minute.count, self.day.count)
        return True


# ── Upstream Forwarder ───────────────────────────────────────────────────────────


class RequestForwarder:
    """Owns the upstream HTTP client; forwards with retry and runs token checks."""

    def __init__(
        self,
        settings: AppSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.base_url = normalize_base_url(settings.upstream_base_url)
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(self.settings.upstream_timeout_seconds),
            transport=self._transport,
            limits=httpx.Limits(
                max_connections=self.settings.max_connections,
                max_keepalive_connections=self.settings.max_keepalive,
            ),
        )

    async def startup(self) -> None:
        self._client = self._make_client()
        LOG.info(
            "Forwarder started: upstream=%s, max_connections=%d",
            self.base_url,
            self.settings.max_connections,
        )

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        LOG.info("Forwarder shutdown complete")

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("HTTP client not initialised")
        return self._client

    async def send(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        body: bytes = b"",
        query: str = "",
        token_key: str = "",
        stream: bool = False,
    ) -> httpx.Response:
        """Send one upstream request, retrying transport failures.

        Any HTTP status is returned as-is.  When every attempt fails at the
        transport level :class:`UpstreamError` is raised.
        """
        url = join_url(self.base_url, path, query)
        attempts = max(1, self.settings.max_attempts)
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            request = self.client.build_request(method, url, headers=headers, content=body or None)
            try:
                return await self.client.send(request, stream=stream)
            except httpx.TransportError as exc:
                last_exc = exc
                LOG.warning(
                    "Upstream attempt %d/%d via %s failed: %s: %s",
                    attempt, attempts, obfuscate_key(token_key), type(exc).__name__, exc,
                )
                if attempt < attempts:
                    await self._sleep(attempt * self.settings.retry_delay_seconds)
        raise UpstreamError(
            f"upstream request failed after {attempts} attempts",
            details=f"{type(last_exc).__name__}: {last_exc}",
        )

    async def check_validity(self, token_key: str) -> bool:
        """Minimal non-streaming chat completion; any 2xx means the token works."""
        payload = {
            "model": self.settings.validity_check_model,
            "messages": [{"role": "user", "content": "hi"}],
            "max_tokens": 100,
            "stream": False,
        }
        try:
            r = await self.client.post(
                join_url(self.base_url, API_ROUTES[RouteKind.CHAT]),
                json=payload,
                headers={"Authorization": f"Bearer {token_key}"},
            )
        except httpx.HTTPError as exc:
            LOG.warning("Validity check for %s failed: %s", obfuscate_key(token_key), exc)
            return False
        return r.is_success

    async def check_balance(self, record: TokenRecord, force: bool = False) -> dict[str, Any]:
        """Query the upstream balance, falling back to a validity check."""
        if (
            not force
            and record.balance is not None
            and record.last_checked is not None
            and (now_utc() - record.last_checked).total_seconds() < self.settings.balance_cache_seconds
        ):
            return {"balance": record.balance, "isValid": record.is_valid, "cached": True}

        try:
            r = await self.client.get(
                join_url(self.base_url, API_ROUTES[RouteKind.USER_INFO]),
                headers={"Authorization": f"Bearer {record.key}"},
            )
            if r.is_success:
                data = r.json().get("data") or {}
                balance = float(data["totalBalance"])
                LOG.info("Balance for %s: %s", obfuscate_key(record.key), balance)
                return {"balance": balance, "isValid": True, "cached": False}
            LOG.info("Balance query for %s returned HTTP %d", obfuscate_key(record.key), r.status_code)
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            LOG.warning("Balance query for %s failed: %s", obfuscate_key(record.key), exc)

        valid = await self.check_validity(record.key)
        return {"balance": None, "isValid": valid, "cached": False}


# ── Admin Authentication ─────────────────────────────────────────────────────────


class PasswordAuthenticator:
    """Admin password check.

    A sha256 hex digest stored under ``admin_password`` overrides the
    configured password.
    """

    def __init__(self, store: KVStore, configured_password: str) -> None:
        self._store = store
        self._configured = configured_password

    async def verify(self, password: str) -> bool:
        if not password:
            return False
        stored = await asyncio.to_thread(self._store.get_json, ADMIN_PASSWORD_KEY)
        if isinstance(stored, str) and stored:
            digest = hashlib.sha256(password.encode("utf-8")).hexdigest()
            return constant_time_compare(digest, stored.strip().lower())
        if not self._configured:
            return False
        return constant_time_compare(password, self._configured)


# ── Proxy State ──────────────────────────────────────────────────────────────────


class ProxyState:
    """Per-process context shared by all request handlers."""

    def __init__(
        self,
        settings: AppSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        authenticator: Optional[PasswordAuthenticator] = None,
    ) -> None:
        self.settings = settings
        self.store = KVStore(settings.db_path)
        self.cache = ResourceCache(
            {
                TOKENS_KEY: settings.tokens_cache_ttl_seconds,
                STATS_KEY: settings.stats_cache_ttl_seconds,
            }
        )
        self.lock = AdvisoryLock()
        self.pool = TokenPool(
            self.store,
            self.cache,
            self.lock,
            max_consecutive_errors=settings.max_consecutive_errors,
            recovery_window_seconds=settings.recovery_window_seconds,
        )
        self.stats = StatsAggregator(
            self.store,
            self.cache,
            self.lock,
            save_interval_seconds=settings.stats_save_interval_seconds,
        )
        self.forwarder = RequestForwarder(settings, transport=transport)
        self.authenticator = authenticator or PasswordAuthenticator(
            self.store, settings.admin_password
        )
        self.audit = AuditLogger()
        self.log_level = level_name(settings.log_level)
        self.started_at = time.time()
        self._signer: Optional[SessionSigner] = None
        self._maintenance_task: Optional[asyncio.Task] = None

    async def startup(self) -> None:
        await self.forwarder.startup()
        await self.pool.load(force_refresh=True)
        await self.stats.load(force_refresh=True)
        if self.settings.maintenance_interval_seconds > 0:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        self.started_at = time.time()

    async def shutdown(self) -> None:
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
        try:
            await self.pool.save()
            await self.stats.save(force=True)
        except RequestBusy:
            LOG.warning("Final save skipped: store busy")
        await self.forwarder.shutdown()
        self.store.close()

    def set_log_level(self, level: str) -> None:
        self.log_level = level
        LOG.setLevel(LOG_LEVELS[level])

    async def session_signer(self) -> SessionSigner:
        if self._signer is None:
            secret = await asyncio.to_thread(self.store.get_json, SESSION_SECRET_KEY)
            if not isinstance(secret, str) or not secret:
                secret = new_session_secret()
                await asyncio.to_thread(self.store.put_json, SESSION_SECRET_KEY, secret)
                LOG.info("Generated new session secret")
            self._signer = SessionSigner(secret, self.settings.session_ttl_seconds)
        return self._signer

    def record_outcome_nowait(self, key: str, success: bool, units: int) -> None:
        """Account a request in memory only; the next save persists it."""
        now = now_utc()
        self.pool.apply_outcome(key, success, units, now)
        self.stats.record(epoch_ms(now), units)

    async def record_outcome(self, key: str, success: bool, units: int) -> None:
        self.record_outcome_nowait(key, success, units)
        try:
            await self.pool.save()
            await self.stats.save()
        except RequestBusy:
            LOG.debug("Store busy; outcome for %s saved later", obfuscate_key(key))

    async def refresh_balance(self, record: TokenRecord, force: bool = True) -> dict[str, Any]:
        result = await self.forwarder.check_balance(record, force=force)
        if not result["cached"]:
            self.pool.apply_balance(record.key, result["balance"], result["isValid"])
        return {"key": obfuscate_key(record.key), **result}

    async def refresh_balances(
        self, records: list[TokenRecord], force: bool = True
    ) -> list[dict[str, Any]]:
        """Refresh many balances with bounded concurrency, then persist once."""
        sem = asyncio.Semaphore(max(1, self.settings.balance_check_concurrency))

        async def one(record: TokenRecord) -> dict[str, Any]:
            async with sem:
                return await self.refresh_balance(record, force)

        results = await asyncio.gather(*(one(r) for r in records))
        await self.pool.save()
        return list(results)

    async def run_maintenance(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Clean stats windows, recover long-disabled tokens, force a stats save."""
        now = now or now_utc()
        await self.pool.load()
        await self.stats.load()
        self.stats.cleanup(epoch_ms(now))
        recovered = self.pool.recover_disabled(now)
        if recovered:
            await self.pool.save()
        await self.stats.save(force=True)
        LOG.info("Maintenance done: %d token(s) recovered", recovered)
        return {"recovered": recovered}

    async def _maintenance_loop(self) -> None:
        interval = self.settings.maintenance_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except RequestBusy:
                LOG.info("Maintenance skipped: store busy")
            except Exception:
                LOG.exception("Maintenance run failed")


# ── Request Models ───────────────────────────────────────────────────────────────


class LoginPayload(BaseModel):
    password: str = Field("", max_length=1024)


class TokenAction(BaseModel):
    action: str
    token: Optional[Union[str, int]] = None
    tokens: Optional[Union[str, list[Union[str, int]]]] = None
    enable: Optional[bool] = None

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("add", "remove", "toggle", "refresh_balance"):
            raise ValueError("action must be add, remove, toggle or refresh_balance")
        return v


class LogSettings(BaseModel):
    logLevel: Optional[str] = None


# ── Pages ────────────────────────────────────────────────────────────────────────

LOGIN_HTML = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>Token Pool Proxy – Login</title></head>
<body>
  <h1>Token Pool Proxy</h1>
  <form id="loginForm">
    <input type="password" id="password" placeholder="Admin password" required>
    <button type="submit">Log in</button>
  </form>
  <p id="message"></p>
  <script>
    document.getElementById("loginForm").addEventListener("submit", async (e) => {
      e.preventDefault();
      const r = await fetch("/login", {
        method: "POST",
        headers: {"Content-Type": "application/json"},
        body: JSON.stringify({password: document.getElementById("password").value}),
      });
      const data = await r.json();
      if (data.success) { window.location.href = "/dashboard"; }
      else { document.getElementById("message").textContent = data.message; }
    });
  </script>
</body>
</html>
"""

DASHBOARD_HTML = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>Token Pool Proxy – Dashboard</title></head>
<body>
  <h1>Token Pool Proxy</h1>
  <pre id="stats">loading…</pre>
  <script>
    fetch("/api/stats").then((r) => r.json()).then((d) => {
      document.getElementById("stats").textContent = JSON.stringify(d.stats, null, 2);
    });
  </script>
</body>
</html>
"""


# ── App Factory ─────────────────────────────────────────────────────────────────


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> AppSettings:
    """Load settings from environment variables with validation."""
    cors_raw = os.getenv("POOL_CORS_ORIGINS", "*")
    cors = [o.strip() for o in cors_raw.split(",") if o.strip()]

    settings = AppSettings(
        db_path=os.getenv("POOL_DB_PATH", "./data/pool_proxy.db"),
        port=int(os.getenv("POOL_PORT", "8787")),
        upstream_base_url=os.getenv("POOL_UPSTREAM_BASE_URL", "https://api.siliconflow.cn"),
        client_api_key=os.getenv("POOL_API_KEY", "").strip(),
        admin_password=os.getenv("POOL_ADMIN_PASSWORD", DEFAULT_ADMIN_PASSWORD).strip(),
        max_attempts=max(1, int(os.getenv("POOL_MAX_ATTEMPTS", "3"))),
        retry_delay_seconds=max(0.0, float(os.getenv("POOL_RETRY_DELAY_SECONDS", "0.5"))),
        upstream_timeout_seconds=max(5.0, float(os.getenv("POOL_UPSTREAM_TIMEOUT_SECONDS", "120"))),
        max_connections=max(10, int(os.getenv("POOL_MAX_CONNECTIONS", "200"))),
        max_keepalive=max(10, int(os.getenv("POOL_MAX_KEEPALIVE", "50"))),
        max_consecutive_errors=max(1, int(os.getenv("POOL_MAX_CONSECUTIVE_ERRORS", "3"))),
        tokens_cache_ttl_seconds=max(0.0, float(os.getenv("POOL_TOKENS_CACHE_TTL_SECONDS", "300"))),
        stats_cache_ttl_seconds=max(0.0, float(os.getenv("POOL_STATS_CACHE_TTL_SECONDS", "120"))),
        stats_save_interval_seconds=max(0.0, float(os.getenv("POOL_STATS_SAVE_INTERVAL_SECONDS", "600"))),
        recovery_window_seconds=max(60.0, float(os.getenv("POOL_RECOVERY_WINDOW_SECONDS", "86400"))),
        balance_cache_seconds=max(0.0, float(os.getenv("POOL_BALANCE_CACHE_SECONDS", "3600"))),
        balance_check_concurrency=max(1, int(os.getenv("POOL_BALANCE_CHECK_CONCURRENCY", "5"))),
        validity_check_model=os.getenv("POOL_VALIDITY_CHECK_MODEL", "Qwen/Qwen2.5-7B-Instruct"),
        score_weights=ScoreWeights(
            success=float(os.getenv("POOL_SCORE_SUCCESS_WEIGHT", "0.7")),
            usage=float(os.getenv("POOL_SCORE_USAGE_WEIGHT", "0.3")),
            decay=min(1.0, max(0.0, float(os.getenv("POOL_SCORE_ERROR_DECAY", "0.8")))),
        ),
        pacing=PacingConfig(
            min_delay_ms=max(0.0, float(os.getenv("POOL_STREAM_MIN_DELAY_MS", "3"))),
            max_delay_ms=max(0.0, float(os.getenv("POOL_STREAM_MAX_DELAY_MS", "30"))),
            fast_mode_threshold=max(0, int(os.getenv("POOL_STREAM_FAST_MODE_THRESHOLD", "3000"))),
            intelligent_batching=_env_bool("POOL_STREAM_INTELLIGENT_BATCHING", True),
        ),
        cors_origins=cors,
        max_request_body_bytes=int(os.getenv("POOL_MAX_REQUEST_BODY_BYTES", str(25 * 1024 * 1024))),
        log_level=os.getenv("POOL_LOG_LEVEL", "INFO").upper(),
        maintenance_interval_seconds=max(0.0, float(os.getenv("POOL_MAINTENANCE_INTERVAL_SECONDS", "3600"))),
        session_ttl_seconds=max(60, int(os.getenv("POOL_SESSION_TTL_SECONDS", "86400"))),
    )

    if settings.log_level == "WARN":
        settings.log_level = "WARNING"
    if settings.admin_password == DEFAULT_ADMIN_PASSWORD:
        LOG.warning("POOL_ADMIN_PASSWORD uses the default - set a strong password!")
    if not settings.client_api_key:
        LOG.warning("POOL_API_KEY is empty - the proxy accepts unauthenticated clients")

    return settings


def create_app(
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    authenticator: Optional[PasswordAuthenticator] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    state = ProxyState(cfg, transport=transport, authenticator=authenticator)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await state.startup()
        LOG.info(
            "Token Pool Proxy v%s ready on port %s (%d tokens)",
            __version__, cfg.port, len(state.pool.tokens),
        )
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(
        title="Token Pool Proxy",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = cfg
    app.state.proxy = state

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Pool-Token", "X-Pool-Version", "X-Request-ID"],
    )

    # Security headers middleware
    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Request-ID"] = req_id
        response.headers["X-Pool-Version"] = __version__
        return response

    # Request size limit middleware
    @app.middleware("http")
    async def body_size_middleware(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > cfg.max_request_body_bytes:
            err = MalformedRequest(f"request body too large (max {cfg.max_request_body_bytes} bytes)")
            return JSONResponse({"error": err.to_dict()}, status_code=413)
        return await call_next(request)

    def render_error(request: Request, exc: PoolProxyError) -> JSONResponse:
        if is_admin_path(request.url.path):
            body: dict[str, Any] = {"success": False, "message": exc.detail, "code": exc.code}
        else:
            body = {"error": exc.to_dict()}
        return JSONResponse(body, status_code=exc.status_code)

    # Exception handlers
    @app.exception_handler(PoolProxyError)
    async def pool_error_handler(request: Request, exc: PoolProxyError):
        if exc.status_code >= 500:
            LOG.warning("%s: %s [req=%s]", exc.code, exc.detail, getattr(request.state, "request_id", ""))
        return render_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        msg = str(errors[0].get("msg", "invalid request")) if errors else "invalid request"
        return render_error(request, MalformedRequest(msg))

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return render_error(request, PoolProxyError(str(exc.detail), exc.status_code, "http_error"))

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "")
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        return render_error(request, PoolProxyError("internal server error"))

    # Auth dependencies
    async def check_session(request: Request) -> SessionCheck:
        token = request.cookies.get("session", "")
        if not token:
            return SessionCheck(False, "missing_session")
        signer = await state.session_signer()
        return signer.verify(token)

    async def require_session(request: Request) -> None:
        check = await check_session(request)
        if not check.valid:
            raise AuthenticationError("unauthorized", code=check.reason)

    def require_client(request: Request) -> None:
        if not cfg.client_api_key:
            return
        tok = parse_bearer_token(request.headers.get("authorization"))
        if not tok:
            raise AuthenticationError("api key required", code="missing_api_key")
        if not constant_time_compare(tok, cfg.client_api_key):
            raise AuthenticationError()

    # Proxy
    async def proxy(request: Request, upstream_path: str) -> Response:
        req_id = getattr(request.state, "request_id", "")
        require_client(request)

        body = await request.body()
        content_type = request.headers.get("content-type", "")
        classified = classify_request(upstream_path, body, content_type)
        stream = request.method == "POST" and is_stream_request(body, content_type)

        tokens = await state.pool.load()
        record = select_token(tokens, upstream_path, cfg.score_weights)
        if record is None:
            raise NoTokenAvailable()
        key = record.key
        headers = build_upstream_headers(request.headers, key, req_id, has_body=bool(body))
        start = time.perf_counter()
        LOG.debug(
            "Forwarding %s %s via %s stream=%s [req=%s]",
            request.method, upstream_path, obfuscate_key(key), stream, req_id,
        )

        try:
            up = await state.forwarder.send(
                request.method,
                upstream_path,
                headers,
                body=body,
                query=request.url.query,
                token_key=key,
                stream=stream,
            )
        except UpstreamError:
            await state.record_outcome(key, False, 0)
            raise

        if stream and up.is_success:
            return relay_stream(up, key, estimate_prompt_units(classified), req_id, start)

        if stream:
            try:
                await up.aread()
            except httpx.TransportError as exc:
                await state.record_outcome(key, False, 0)
                raise UpstreamError(
                    "upstream response could not be read",
                    details=f"{type(exc).__name__}: {exc}",
                ) from exc
            finally:
                await up.aclose()
        content = up.content
        try:
            response_json = json.loads(content) if content else None
        except ValueError:
            response_json = None
        units = estimate_exchange_units(classified, response_json)
        await state.record_outcome(key, up.is_success, units)
        lat = (time.perf_counter() - start) * 1000
        LOG.info(
            "%s %s -> %d via %s, units=%d, %.0fms [req=%s]",
            request.method, upstream_path, up.status_code, obfuscate_key(key), units, lat, req_id,
        )
        return Response(
            content=content,
            status_code=up.status_code,
            headers=filtered_response_headers(up.headers, key, req_id),
            media_type=up.headers.get("content-type", "application/json"),
        )

    def relay_stream(
        up: httpx.Response, key: str, prompt_units: int, req_id: str, start: float
    ) -> StreamingResponse:
        relay = SSERelay(cfg.pacing)

        async def gen():
            finished = False
            try:
                async for frame in relay.relay(up.aiter_bytes()):
                    yield frame
                result = await relay.completion
                finished = True
                units = prompt_units + result.completion_units
                await state.record_outcome(key, result.ok, units)
                LOG.info(
                    "Stream via %s done: units=%d (prompt %d, completion %d), %.0fms [req=%s]",
                    obfuscate_key(key), units, prompt_units, result.completion_units,
                    (time.perf_counter() - start) * 1000, req_id,
                )
            finally:
                await up.aclose()
                if not finished:
                    LOG.info("Client left stream via %s early [req=%s]", obfuscate_key(key), req_id)
                    state.record_outcome_nowait(
                        key, True, prompt_units + estimate_completion_units(relay.collected_text)
                    )

        rh = filtered_response_headers(up.headers, key, req_id)
        rh["Cache-Control"] = "no-cache"
        return StreamingResponse(
            gen(), status_code=up.status_code, headers=rh, media_type="text/event-stream"
        )

    # Routes: pages
    @app.get("/", include_in_schema=False)
    async def root():
        return HTMLResponse(LOGIN_HTML)

    @app.get("/login", include_in_schema=False)
    async def login_page():
        return HTMLResponse(LOGIN_HTML)

    @app.post("/login")
    async def login(request: Request, payload: LoginPayload):
        req_id = getattr(request.state, "request_id", "")
        if not await state.authenticator.verify(payload.password):
            state.audit.log("login_failed", req_id)
            raise AuthenticationError("invalid password", code="invalid_password")
        signer = await state.session_signer()
        resp = JSONResponse({"success": True, "message": "login successful"})
        resp.set_cookie(
            "session",
            signer.issue(),
            max_age=cfg.session_ttl_seconds,
            path="/",
            httponly=True,
            samesite="strict",
        )
        state.audit.log("login", req_id)
        return resp

    @app.get("/dashboard", include_in_schema=False)
    async def dashboard(request: Request):
        check = await check_session(request)
        if not check.valid:
            return RedirectResponse("/login", status_code=302)
        return HTMLResponse(DASHBOARD_HTML)

    @app.get("/health")
    async def health():
        """Health check endpoint with pool status."""
        tokens = await state.pool.load()
        active = sum(1 for t in tokens if t.enabled)
        healthy = active > 0
        return JSONResponse(
            {
                "status": "ok" if healthy else "degraded",
                "version": __version__,
                "tokens": len(tokens),
                "active": active,
                "uptime_seconds": round(time.time() - state.started_at, 1),
            },
            status_code=200 if healthy else 503,
        )

    # Routes: admin API
    @app.get("/api/tokens", dependencies=[Depends(require_session)])
    async def list_tokens(force: bool = False):
        tokens = await state.pool.load(force_refresh=force)
        items = [
            {**t.to_store(), "id": i, "originalKey": t.key, "key": obfuscate_key(t.key)}
            for i, t in enumerate(tokens)
        ]
        return {"success": True, "tokens": items, "count": len(items), "refreshed": force}

    @app.post("/api/tokens", dependencies=[Depends(require_session)])
    async def token_action(request: Request, payload: TokenAction):
        req_id = getattr(request.state, "request_id", "")

        if payload.action == "add":
            raw = payload.tokens if payload.tokens is not None else payload.token
            if isinstance(raw, list):
                raw = [str(r) for r in raw]
            result = await state.pool.add(raw if raw is None or isinstance(raw, list) else str(raw))
            state.audit.log("tokens_add", req_id, {"added": result["added"], "duplicates": result["duplicates"]})
            return result

        if payload.action == "remove":
            if isinstance(payload.tokens, list):
                with state.lock.hold():
                    await state.pool.load()
                    keys = []
                    for ref in payload.tokens:
                        rec = state.pool.resolve(ref)
                        keys.append(rec.key if rec else str(ref))
                    result = await state.pool.remove(keys, lock_held=True)
            else:
                target = payload.token if payload.token is not None else payload.tokens
                rec = state.pool.resolve(target)
                ref = rec.key if rec else (str(target) if target is not None else None)
                result = await state.pool.remove(ref)
            state.audit.log("tokens_remove", req_id, {"removed": result["removed"]})
            return result

        if payload.action == "toggle":
            if isinstance(payload.tokens, list) and payload.enable is not None:
                result = await state.pool.batch_toggle(list(payload.tokens), payload.enable)
                state.audit.log(
                    "tokens_batch_toggle", req_id,
                    {"enable": payload.enable, "updated": result["updated"], "skipped": result["skipped"]},
                )
                return result
            if payload.token is None:
                raise MalformedRequest("token is required")
            record = await state.pool.toggle(payload.token)
            state.audit.log("token_toggle", req_id, {"token": obfuscate_key(record.key), "enabled": record.enabled})
            return {
                "success": True,
                "enabled": record.enabled,
                "message": f"token {'enabled' if record.enabled else 'disabled'}",
            }

        # refresh_balance
        await state.pool.load()
        if payload.token is not None:
            record = state.pool.resolve(payload.token)
            if record is None:
                raise TokenNotFound()
            result = await state.refresh_balance(record, force=True)
            await state.pool.save()
            state.audit.log("balance_refresh", req_id, {"token": result["key"]})
            return {"success": True, **result}
        results = await state.refresh_balances(list(state.pool.tokens), force=True)
        state.audit.log("balance_refresh_all", req_id, {"count": len(results)})
        return {"success": True, "results": results, "count": len(results)}

    @app.get("/api/stats", dependencies=[Depends(require_session)])
    async def get_stats(force: bool = False):
        await state.stats.load(force_refresh=force)
        tokens = await state.pool.load(force_refresh=force)
        body: dict[str, Any] = {"success": True, "stats": state.stats.snapshot(tokens)}
        if force:
            body["refreshed"] = True
        return body

    @app.post("/api/logs/settings", dependencies=[Depends(require_session)])
    async def log_settings(request: Request, payload: LogSettings):
        level = (payload.logLevel or "").lower()
        if level not in LOG_LEVELS:
            return JSONResponse(
                {
                    "success": False,
                    "message": "invalid log level",
                    "validLevels": list(LOG_LEVELS),
                    "currentLevel": state.log_level,
                },
                status_code=400,
            )
        state.set_log_level(level)
        state.audit.log("log_level", getattr(request.state, "request_id", ""), {"level": level})
        return {"success": True, "message": f"log level set to {level}", "logLevel": level}

    # Routes: CORS preflight and proxy catch-all
    @app.options("/{full_path:path}", include_in_schema=False)
    async def preflight(full_path: str):
        return Response(
            status_code=204,
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type, Authorization",
                "Access-Control-Max-Age": "86400",
            },
        )

    @app.api_route(
        "/{full_path:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        include_in_schema=False,
    )
    async def proxy_route(request: Request, full_path: str):
        path = request.url.path
        upstream_path = None if path.startswith("/api/") else resolve_upstream_path(path)
        if upstream_path is None:
            return JSONResponse(
                {"error": "Not Found", "message": f"no route for {request.method} {path}"},
                status_code=404,
            )
        return await proxy(request, upstream_path)

    return app


app = create_app()

if __name__ == "__main__":
    s = load_settings()
    uvicorn.run(
        "pool_proxy:app",
        host="0.0.0.0",
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )
