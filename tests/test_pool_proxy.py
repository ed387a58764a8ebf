"""Tests for the token pool proxy service."""

import asyncio
import hashlib
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from pool_proxy import (
    UTC8,
    AdvisoryLock,
    AppSettings,
    KVStore,
    ProxyState,
    RequestBusy,
    ResourceCache,
    ScoreWeights,
    StatsAggregator,
    TokenPool,
    TokenRecord,
    __version__,
    create_app,
    obfuscate_key,
    select_by_score,
    select_round_robin,
    select_token,
    split_key_input,
    utc8_date,
)
from stream_relay import PacingConfig
from usage_estimator import (
    classify_request,
    estimate_completion_units,
    estimate_exchange_units,
    estimate_prompt_units,
)

ADMIN_PASSWORD = "admin-test-password"
CLIENT_KEY = "client-test-key"
KEY_A = "sk-aaaaaaaaaaaaaaaa"
KEY_B = "sk-bbbbbbbbbbbbbbbb"
KEY_C = "sk-cccccccccccccccc"


def make_settings(db_path: Path, **kw) -> AppSettings:
    base = dict(
        db_path=str(db_path),
        port=8787,
        upstream_base_url="https://upstream.example",
        client_api_key=CLIENT_KEY,
        admin_password=ADMIN_PASSWORD,
        retry_delay_seconds=0.0,
        log_level="INFO",
        pacing=PacingConfig(
            min_delay_ms=0,
            max_delay_ms=0,
            fast_output_delay_ms=0,
            final_low_delay_ms=0,
            inter_message_delay_ms=0,
        ),
    )
    base.update(kw)
    return AppSettings(**base)


def client_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CLIENT_KEY}"}


def login(c: TestClient) -> None:
    r = c.post("/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200, r.text


def add_tokens(c: TestClient, *keys: str) -> dict:
    r = c.post("/api/tokens", json={"action": "add", "tokens": "\n".join(keys)})
    assert r.status_code == 200, r.text
    return r.json()


def list_tokens(c: TestClient) -> list[dict]:
    r = c.get("/api/tokens")
    assert r.status_code == 200, r.text
    return r.json()["tokens"]


def ok_handler(req: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "choices": [{"message": {"content": "ok"}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 100, "total_tokens": 110},
        },
        headers={"content-type": "application/json"},
    )


def ok_transport() -> httpx.MockTransport:
    return httpx.MockTransport(ok_handler)


def make_pool(tmp_path: Path, **kw) -> tuple[KVStore, TokenPool]:
    store = KVStore(str(tmp_path / "pool.db"))
    cache = ResourceCache({"tokens": 300.0, "stats": 120.0})
    return store, TokenPool(store, cache, AdvisoryLock(), **kw)


# ── 1. Admin session ──────────────────────────────────────────────────────


def test_admin_api_requires_session(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        r = c.get("/api/tokens")
        assert r.status_code == 401
        assert r.json()["success"] is False

        r = c.post("/login", json={"password": "wrong"})
        assert r.status_code == 401
        assert r.json()["success"] is False

        r = c.post("/login", json={"password": ADMIN_PASSWORD})
        assert r.status_code == 200
        cookie = r.headers["set-cookie"]
        assert cookie.startswith("session=")
        assert "HttpOnly" in cookie
        assert "Max-Age=86400" in cookie
        assert "Path=/" in cookie
        assert "samesite=strict" in cookie.lower()

        r = c.get("/api/tokens")
        assert r.status_code == 200
        assert r.json() == {"success": True, "tokens": [], "count": 0, "refreshed": False}


def test_dashboard_redirects_without_session(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        r = c.get("/dashboard", follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "/login"
        login(c)
        r = c.get("/dashboard")
        assert r.status_code == 200
        assert "text/html" in r.headers["content-type"]


def test_login_page_served(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        for path in ("/", "/login"):
            r = c.get(path)
            assert r.status_code == 200
            assert "<form" in r.text


def test_stored_password_digest_overrides_configured(tmp_path: Path) -> None:
    db = tmp_path / "p.db"
    store = KVStore(str(db))
    store.put_json("admin_password", hashlib.sha256(b"stored-secret").hexdigest())
    store.close()
    app = create_app(settings=make_settings(db), transport=ok_transport())
    with TestClient(app) as c:
        assert c.post("/login", json={"password": ADMIN_PASSWORD}).status_code == 401
        assert c.post("/login", json={"password": "stored-secret"}).status_code == 200


# ── 2. Token management end to end ────────────────────────────────────────


def test_token_add_list_toggle_remove(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        r = c.post("/api/tokens", json={"action": "add", "tokens": f"{KEY_A}\n{KEY_B}, {KEY_A}\n\n"})
        assert r.status_code == 200
        body = r.json()
        assert body["added"] == 2
        assert body["duplicates"] == 1

        tokens = list_tokens(c)
        assert [t["originalKey"] for t in tokens] == [KEY_A, KEY_B]
        assert tokens[0]["key"] == obfuscate_key(KEY_A) == "sk-a...aaaa"
        assert tokens[0]["id"] == 0
        assert tokens[0]["enabled"] is True
        assert tokens[0]["usageCount"] == 0

        r = c.post("/api/tokens", json={"action": "toggle", "token": "0"})
        assert r.status_code == 200
        assert r.json()["enabled"] is False
        assert list_tokens(c)[0]["enabled"] is False

        r = c.post("/api/tokens", json={"action": "toggle", "tokens": [0, KEY_B], "enable": True})
        body = r.json()
        assert body["updated"] == 1
        assert body["skipped"] == 1
        assert body["failed"] == 0
        tokens = list_tokens(c)
        assert all(t["enabled"] for t in tokens)
        assert tokens[0]["lastModified"] is not None

        r = c.post("/api/tokens", json={"action": "remove", "tokens": [KEY_A, "sk-missing-key-000"]})
        body = r.json()
        assert body["removed"] == 1
        assert body["failed"] == 1
        assert [t["originalKey"] for t in list_tokens(c)] == [KEY_B]


def test_token_persisted_across_restart(tmp_path: Path) -> None:
    db = tmp_path / "p.db"
    app = create_app(settings=make_settings(db), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
    app = create_app(settings=make_settings(db), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        assert [t["originalKey"] for t in list_tokens(c)] == [KEY_A]


def test_toggle_unknown_token_returns_404(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        r = c.post("/api/tokens", json={"action": "toggle", "token": "sk-does-not-exist"})
        assert r.status_code == 404
        assert r.json()["code"] == "token_not_found"


def test_add_without_keys_is_rejected(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        r = c.post("/api/tokens", json={"action": "add", "tokens": " ,\n "})
        assert r.status_code == 400
        assert r.json()["success"] is False
        r = c.post("/api/tokens", json={"action": "explode"})
        assert r.status_code == 400


def test_admin_mutation_while_locked_returns_429(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        state: ProxyState = app.state.proxy
        assert state.lock.try_acquire()
        try:
            r = c.post("/api/tokens", json={"action": "add", "tokens": KEY_A})
            assert r.status_code == 429
            assert r.json()["code"] == "request_busy"
        finally:
            state.lock.release()
        assert add_tokens(c, KEY_A)["added"] == 1


# ── 3. Proxying ───────────────────────────────────────────────────────────


def test_proxy_requires_client_key(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        r = c.post("/v1/chat/completions", json={"messages": []})
        assert r.status_code == 401
        assert r.json()["error"]["type"] == "authentication_error"
        r = c.post(
            "/v1/chat/completions",
            json={"messages": []},
            headers={"Authorization": "Bearer wrong"},
        )
        assert r.status_code == 401


def test_no_tokens_returns_503(tmp_path: Path) -> None:
    calls: list[httpx.Request] = []

    def handler(req: httpx.Request) -> httpx.Response:
        calls.append(req)
        return ok_handler(req)

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        r = c.post("/chat", headers=client_headers(), json={"messages": []})
        assert r.status_code == 503
        assert r.json()["error"]["code"] == "no_token_available"
    assert calls == []


def test_proxy_forwards_with_pool_token_and_records_usage(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []

    def handler(req: httpx.Request) -> httpx.Response:
        seen.append(req)
        return ok_handler(req)

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post(
            "/chat",
            headers=client_headers(),
            json={"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        )
        assert r.status_code == 200
        assert r.json()["usage"]["total_tokens"] == 110
        assert r.headers["X-Pool-Token"] == obfuscate_key(KEY_A)
        assert r.headers["X-Pool-Version"] == __version__

        assert len(seen) == 1
        assert seen[0].url.path == "/v1/chat/completions"
        assert seen[0].headers["authorization"] == f"Bearer {KEY_A}"
        assert "cookie" not in seen[0].headers

        tok = list_tokens(c)[0]
        assert tok["usageCount"] == 1
        assert tok["successCount"] == 1
        assert tok["totalTokens"] == 110
        assert tok["lastUsed"] is not None

        stats = c.get("/api/stats").json()["stats"]
        assert stats["current"]["rpm"] == 1
        assert stats["current"]["tpm"] == 110
        assert stats["current"]["rpd"] == 1
        assert stats["tokens"] == {
            "total": 1,
            "active": 1,
            "disabled": 0,
            "details": [
                {
                    "key": obfuscate_key(KEY_A),
                    "enabled": True,
                    "usageCount": 1,
                    "errorCount": 0,
                    "successCount": 1,
                    "totalTokens": 110,
                    "consecutiveErrors": 0,
                    "lastUsed": tok["lastUsed"],
                }
            ],
        }


def test_query_string_and_literal_path_preserved(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []

    def handler(req: httpx.Request) -> httpx.Response:
        seen.append(req)
        return httpx.Response(200, json={"object": "list", "data": []})

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.get("/v1/models?type=text", headers=client_headers())
        assert r.status_code == 200
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/v1/models"
        assert seen[0].url.query == b"type=text"


def test_retry_exhaustion_returns_502(tmp_path: Path) -> None:
    attempts = {"n": 0}

    def handler(req: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        raise httpx.ConnectError("connection refused", request=req)

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post("/chat", headers=client_headers(), json={"messages": []})
        assert r.status_code == 502
        err = r.json()["error"]
        assert err["type"] == "api_error"
        assert err["code"] == "upstream_error"
        assert "ConnectError" in err["details"]
        assert attempts["n"] == 3

        tok = list_tokens(c)[0]
        assert tok["errorCount"] == 1
        assert tok["consecutiveErrors"] == 1
        assert tok["totalTokens"] == 0


def test_transient_failure_is_retried(tmp_path: Path) -> None:
    attempts = {"n": 0}

    def handler(req: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise httpx.ReadTimeout("slow", request=req)
        return ok_handler(req)

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post("/chat", headers=client_headers(), json={"messages": []})
        assert r.status_code == 200
        assert attempts["n"] == 2
        assert list_tokens(c)[0]["errorCount"] == 0


def test_consecutive_upstream_errors_disable_token(tmp_path: Path) -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "upstream down"}})

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        for _ in range(3):
            r = c.post("/chat", headers=client_headers(), json={"messages": []})
            assert r.status_code == 500
            assert r.json()["error"]["message"] == "upstream down"

        tok = list_tokens(c)[0]
        assert tok["enabled"] is False
        assert tok["consecutiveErrors"] == 3
        assert tok["lastErrorTime"] is not None

        r = c.post("/chat", headers=client_headers(), json={"messages": []})
        assert r.status_code == 503


def test_image_generation_rotates_tokens(tmp_path: Path) -> None:
    used: list[str] = []

    def handler(req: httpx.Request) -> httpx.Response:
        used.append(req.headers["authorization"].split(" ", 1)[1])
        return httpx.Response(200, json={"data": [{"url": "https://img.example/1.png"}]})

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A, KEY_B)
        for _ in range(3):
            r = c.post("/images", headers=client_headers(), json={"prompt": "a cat", "size": "512x512"})
            assert r.status_code == 200
        assert used == [KEY_A, KEY_B, KEY_A]
        tokens = list_tokens(c)
        # 1000 base + 1 unit for the five-character prompt
        assert tokens[1]["totalTokens"] == 1001


def test_streaming_response_is_paced_and_accounted(tmp_path: Path) -> None:
    sse = (
        'data: {"id":"1","choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\n'
        'data: {"id":"1","choices":[{"index":0,"delta":{"content":"Hello"}}]}\n\n'
        'data: {"id":"1","choices":[{"index":0,"delta":{"content":" world"}}]}\n\n'
        "data: [DONE]\n\n"
    )

    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse.encode(), headers={"content-type": "text/event-stream"})

    payload = {"model": "m", "stream": True, "messages": [{"role": "user", "content": "hi"}]}
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post("/v1/chat/completions", headers=client_headers(), json=payload)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")

        frames = [f for f in r.text.split("\n\n") if f]
        assert frames[-1] == "data: [DONE]"
        assert sum(1 for f in frames if f == "data: [DONE]") == 1

        text = ""
        for f in frames[:-1]:
            delta = json.loads(f[len("data: "):])["choices"][0]["delta"]
            text += delta.get("content", "")
        assert text == "Hello world"

        body = json.dumps(payload).encode()
        expected = estimate_prompt_units(
            classify_request("/v1/chat/completions", body, "application/json")
        ) + estimate_completion_units("Hello world")
        tok = list_tokens(c)[0]
        assert tok["totalTokens"] == expected
        assert tok["successCount"] == 1


def test_stream_request_with_upstream_error_is_passed_through(tmp_path: Path) -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "rate limited"}})

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post("/chat", headers=client_headers(), json={"stream": True, "messages": []})
        assert r.status_code == 429
        assert r.json()["error"]["message"] == "rate limited"
        assert list_tokens(c)[0]["errorCount"] == 1


class BrokenBody(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b'{"error": {"mess'
        raise httpx.ReadError("connection reset by peer")


def test_stream_request_with_unreadable_error_body_returns_502(tmp_path: Path) -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(500, headers={"content-type": "application/json"}, stream=BrokenBody())

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post("/chat", headers=client_headers(), json={"stream": True, "messages": []})
        assert r.status_code == 502
        err = r.json()["error"]
        assert err["code"] == "upstream_error"
        assert "ReadError" in err["details"]
        tok = list_tokens(c)[0]
        assert tok["usageCount"] == 1
        assert tok["errorCount"] == 1
        assert tok["totalTokens"] == 0


def test_image_request_with_odd_field_types_keeps_upstream_status(tmp_path: Path) -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "invalid size"}})

    raw = b'{"prompt": "cat", "size": ["1024x1024"], "quality": {"hd": true}, "n": 1e400}'
    expected = estimate_exchange_units(
        classify_request("/v1/images/generations", raw, "application/json"),
        {"error": {"message": "invalid size"}},
    )
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post(
            "/v1/images/generations",
            headers={**client_headers(), "Content-Type": "application/json"},
            content=raw,
        )
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "invalid size"
        tok = list_tokens(c)[0]
        assert tok["usageCount"] == 1
        assert tok["errorCount"] == 1
        assert tok["totalTokens"] == expected


# ── 4. Balance refresh ────────────────────────────────────────────────────


def test_refresh_balance_reads_user_info(tmp_path: Path) -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path == "/v1/user/info":
            return httpx.Response(200, json={"data": {"totalBalance": "12.50"}})
        return ok_handler(req)

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A)
        r = c.post("/api/tokens", json={"action": "refresh_balance", "token": "0"})
        assert r.status_code == 200
        body = r.json()
        assert body["balance"] == 12.5
        assert body["isValid"] is True
        tok = list_tokens(c)[0]
        assert tok["balance"] == 12.5
        assert tok["isValid"] is True
        assert tok["lastChecked"] is not None


def test_refresh_balance_falls_back_to_validity_check(tmp_path: Path) -> None:
    paths: list[str] = []

    def handler(req: httpx.Request) -> httpx.Response:
        paths.append(req.url.path)
        if req.url.path == "/v1/user/info":
            return httpx.Response(404, json={"message": "not supported"})
        body = json.loads(req.content)
        assert body["max_tokens"] == 100
        return httpx.Response(401, json={"error": "invalid key"})

    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=httpx.MockTransport(handler))
    with TestClient(app) as c:
        login(c)
        add_tokens(c, KEY_A, KEY_B)
        r = c.post("/api/tokens", json={"action": "refresh_balance"})
        assert r.status_code == 200
        body = r.json()
        assert body["count"] == 2
        assert all(res["isValid"] is False and res["balance"] is None for res in body["results"])
        assert paths.count("/v1/chat/completions") == 2
        assert all(t["isValid"] is False for t in list_tokens(c))


def test_refresh_balance_unknown_token_returns_404(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        r = c.post("/api/tokens", json={"action": "refresh_balance", "token": "sk-nope-nope-nope"})
        assert r.status_code == 404


# ── 5. Misc routes ────────────────────────────────────────────────────────


def test_unknown_route_returns_404(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        r = c.get("/nowhere", headers=client_headers())
        assert r.status_code == 404
        assert r.json()["error"] == "Not Found"
        assert c.get("/api/unknown").status_code == 404


def test_options_preflight(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        r = c.options("/v1/chat/completions")
        assert r.status_code == 204
        assert r.headers["access-control-allow-origin"] == "*"
        assert "POST" in r.headers["access-control-allow-methods"]


def test_health_endpoint(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        r = c.get("/health")
        assert r.status_code == 503
        assert r.json()["status"] == "degraded"
        login(c)
        add_tokens(c, KEY_A)
        r = c.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["active"] == 1


def test_log_level_settings(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        r = c.post("/api/logs/settings", json={"logLevel": "verbose"})
        assert r.status_code == 400
        assert r.json()["validLevels"] == ["debug", "info", "warn", "error"]
        r = c.post("/api/logs/settings", json={"logLevel": "warn"})
        assert r.status_code == 200
        assert r.json()["logLevel"] == "warn"
        assert app.state.proxy.log_level == "warn"


def test_configured_warning_level_reported_as_accepted_name(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db", log_level="WARNING"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        r = c.post("/api/logs/settings", json={"logLevel": "nope"})
        assert r.status_code == 400
        body = r.json()
        assert body["currentLevel"] == "warn"
        assert body["currentLevel"] in body["validLevels"]


def test_stats_force_refresh_flag(tmp_path: Path) -> None:
    app = create_app(settings=make_settings(tmp_path / "p.db"), transport=ok_transport())
    with TestClient(app) as c:
        login(c)
        body = c.get("/api/stats").json()
        assert body["success"] is True
        assert "refreshed" not in body
        assert set(body["stats"]["current"]) == {"rpm", "tpm", "rpd", "tpd"}
        assert c.get("/api/stats?force=true").json()["refreshed"] is True


# ── 6. Token pool units ───────────────────────────────────────────────────


def test_add_counts_duplicates(tmp_path: Path) -> None:
    async def _test():
        store, pool = make_pool(tmp_path)
        await pool.load()
        first = await pool.add(f"{KEY_A},{KEY_B}")
        second = await pool.add([KEY_B, KEY_C, KEY_C])
        assert first["added"] + first["duplicates"] == 2
        assert second["added"] == 1
        assert second["duplicates"] == 2
        keys = [t.key for t in await pool.load(force_refresh=True)]
        assert keys == [KEY_A, KEY_B, KEY_C]
        store.close()

    asyncio.run(_test())


def test_failure_threshold_disables_and_success_does_not_reenable(tmp_path: Path) -> None:
    async def _test():
        store, pool = make_pool(tmp_path, max_consecutive_errors=3)
        await pool.add(KEY_A)
        pool.apply_outcome(KEY_A, False, 0)
        pool.apply_outcome(KEY_A, False, 0)
        assert pool.find(KEY_A).enabled is True
        rec = pool.apply_outcome(KEY_A, False, 0)
        assert rec.enabled is False
        assert rec.consecutive_errors == 3

        rec = pool.apply_outcome(KEY_A, True, 7)
        assert rec.consecutive_errors == 0
        assert rec.enabled is False
        assert rec.usage_count == 4
        assert rec.success_count == 1
        assert rec.error_count == 3
        assert rec.total_tokens == 7
        store.close()

    asyncio.run(_test())


def test_lock_contention_rejects_second_mutation(tmp_path: Path) -> None:
    async def _test():
        store, pool = make_pool(tmp_path)
        results = await asyncio.gather(pool.add(KEY_A), pool.add(KEY_B), return_exceptions=True)
        assert results[0]["added"] == 1
        assert isinstance(results[1], RequestBusy)
        keys = [t.key for t in await pool.load(force_refresh=True)]
        assert keys == [KEY_A]
        store.close()

    asyncio.run(_test())


def test_recover_disabled_after_window(tmp_path: Path) -> None:
    async def _test():
        store, pool = make_pool(tmp_path, recovery_window_seconds=24 * 3600)
        await pool.add([KEY_A, KEY_B])
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        for _ in range(3):
            pool.apply_outcome(KEY_A, False, 0, now - timedelta(hours=25))
            pool.apply_outcome(KEY_B, False, 0, now - timedelta(hours=2))
        assert pool.recover_disabled(now) == 1
        assert pool.find(KEY_A).enabled is True
        assert pool.find(KEY_A).consecutive_errors == 0
        assert pool.find(KEY_B).enabled is False
        store.close()

    asyncio.run(_test())


def test_resolve_by_index_or_key(tmp_path: Path) -> None:
    async def _test():
        store, pool = make_pool(tmp_path)
        await pool.add([KEY_A, KEY_B])
        assert pool.resolve("1").key == KEY_B
        assert pool.resolve(0).key == KEY_A
        assert pool.resolve(KEY_A).key == KEY_A
        assert pool.resolve("5") is None
        assert pool.resolve("sk-unknown") is None
        store.close()

    asyncio.run(_test())


def test_stored_records_ignore_unknown_fields(tmp_path: Path) -> None:
    async def _test():
        store, pool = make_pool(tmp_path)
        store.put_json(
            "tokens",
            [
                {"key": KEY_A, "enabled": False, "usageCount": 4, "legacyField": 1,
                 "lastModified": 1714560000000},
                "garbage",
            ],
        )
        tokens = await pool.load()
        assert len(tokens) == 1
        assert tokens[0].usage_count == 4
        assert tokens[0].enabled is False
        assert tokens[0].last_modified.tzinfo is not None
        assert "legacyField" not in tokens[0].to_store()
        store.close()

    asyncio.run(_test())


def test_run_maintenance_recovers_and_saves(tmp_path: Path) -> None:
    async def _test():
        state = ProxyState(make_settings(tmp_path / "p.db"))
        await state.pool.add(KEY_A)
        past = datetime.now(timezone.utc) - timedelta(days=2)
        for _ in range(3):
            state.pool.apply_outcome(KEY_A, False, 0, past)
        result = await state.run_maintenance()
        assert result["recovered"] == 1
        stored = state.store.get_json("tokens")
        assert stored[0]["enabled"] is True
        assert state.store.get_json("stats")["lastProcessedDate"] == state.stats.last_processed_date
        state.store.close()

    asyncio.run(_test())


# ── 7. Token selection ────────────────────────────────────────────────────


def test_round_robin_prefers_least_recent() -> None:
    t1 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    a = TokenRecord(key=KEY_A)
    b = TokenRecord(key=KEY_B, last_used=t1)
    c = TokenRecord(key=KEY_C, last_used=t1 + timedelta(minutes=1))
    assert select_round_robin([a, b, c]) is a
    a.last_used = t1 + timedelta(minutes=2)
    assert select_round_robin([a, b, c]) is b


def test_score_prefers_fewer_consecutive_errors() -> None:
    a = TokenRecord(key=KEY_A, usage_count=10, error_count=2, consecutive_errors=2)
    b = TokenRecord(key=KEY_B, usage_count=10, error_count=2, consecutive_errors=0)
    assert select_by_score([a, b]) is b


def test_score_ties_keep_pool_order() -> None:
    a = TokenRecord(key=KEY_A)
    b = TokenRecord(key=KEY_B)
    assert select_by_score([a, b], ScoreWeights()) is a


def test_selection_skips_disabled_and_returns_none() -> None:
    a = TokenRecord(key=KEY_A, enabled=False)
    b = TokenRecord(key=KEY_B)
    assert select_token([a, b], "/v1/chat/completions") is b
    assert select_token([a, b], "/v1/images/generations") is b
    b.enabled = False
    assert select_token([a, b], "/v1/chat/completions") is None
    assert select_token([a, b], "/v1/images/generations") is None


# ── 8. Statistics ─────────────────────────────────────────────────────────


def make_stats(tmp_path: Path, clock) -> tuple[KVStore, StatsAggregator]:
    store = KVStore(str(tmp_path / "stats.db"))
    cache = ResourceCache({"tokens": 300.0, "stats": 120.0})
    return store, StatsAggregator(store, cache, AdvisoryLock(), save_interval_seconds=600, clock=clock)


def test_cleanup_is_idempotent(tmp_path: Path) -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC8).timestamp()
    store, stats = make_stats(tmp_path, lambda: now)
    now_ms = int(now * 1000)
    stats.record(now_ms - 2 * 60_000, 5)
    stats.record(now_ms - 10_000, 7)
    stats.cleanup(now_ms)
    first = stats.to_store()
    stats.cleanup(now_ms)
    assert stats.to_store() == first
    assert stats.minute.timestamps == [now_ms - 10_000]
    assert stats.day.count == 2
    store.close()


def test_day_rollover_resets_daily_window(tmp_path: Path) -> None:
    late = datetime(2024, 5, 1, 23, 59, 30, tzinfo=UTC8)
    store, stats = make_stats(tmp_path, lambda: late.timestamp())
    late_ms = int(late.timestamp() * 1000)
    assert stats.last_processed_date == "2024-05-01"
    stats.record(late_ms, 42)
    stats.cleanup(late_ms)
    assert stats.day.count == 1

    after_midnight = late_ms + 45_000
    stats.cleanup(after_midnight)
    assert stats.day.count == 0
    assert stats.day.total == 0
    assert stats.minute.count == 1
    assert stats.last_processed_date == "2024-05-02"
    store.close()


def test_records_after_midnight_survive_next_cleanup(tmp_path: Path) -> None:
    late = datetime(2024, 5, 1, 23, 59, 30, tzinfo=UTC8)
    store, stats = make_stats(tmp_path, lambda: late.timestamp())
    stats.record(int(late.timestamp() * 1000), 5)

    first = int(datetime(2024, 5, 2, 0, 0, 30, tzinfo=UTC8).timestamp() * 1000)
    stats.record(first, 42)
    stats.record(first + 1000, 8)
    assert stats.last_processed_date == "2024-05-02"
    stats.cleanup(first + 2000)
    assert stats.day.count == 2
    assert stats.day.total == 50
    store.close()


def test_utc8_date_boundary() -> None:
    # 16:00 UTC is midnight in UTC+8
    ms = int(datetime(2024, 5, 1, 16, 0, tzinfo=timezone.utc).timestamp() * 1000)
    assert utc8_date(ms - 1) == "2024-05-01"
    assert utc8_date(ms) == "2024-05-02"


def test_window_length_mismatch_repaired(tmp_path: Path) -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC8).timestamp()
    store, stats = make_stats(tmp_path, lambda: now)
    now_ms = int(now * 1000)
    stats.minute.timestamps = [now_ms - 1000, now_ms - 500]
    stats.minute.units = [3]
    stats.cleanup(now_ms)
    assert stats.minute.timestamps == [now_ms - 1000]
    assert stats.minute.units == [3]
    store.close()


def test_stats_save_is_throttled(tmp_path: Path) -> None:
    clock = {"t": datetime(2024, 5, 1, 12, 0, tzinfo=UTC8).timestamp()}

    async def _test():
        store, stats = make_stats(tmp_path, lambda: clock["t"])
        stats.record(int(clock["t"] * 1000), 3)
        assert await stats.save() is True
        clock["t"] += 60
        stats.record(int(clock["t"] * 1000), 4)
        assert await stats.save() is False
        assert store.get_json("stats")["tokenCountsDay"] == [3]
        assert await stats.save(force=True) is True
        assert store.get_json("stats")["tokenCountsDay"] == [3, 4]
        store.close()

    asyncio.run(_test())


def test_stats_save_busy_when_locked(tmp_path: Path) -> None:
    async def _test():
        store = KVStore(str(tmp_path / "stats.db"))
        lock = AdvisoryLock()
        stats = StatsAggregator(store, ResourceCache({"stats": 120.0}), lock)
        assert lock.try_acquire()
        with pytest.raises(RequestBusy):
            await stats.save(force=True)
        lock.release()
        assert await stats.save(force=True) is True
        store.close()

    asyncio.run(_test())


# ── 9. Helpers ────────────────────────────────────────────────────────────


def test_resource_cache_ttl() -> None:
    now = {"t": 1000.0}
    cache = ResourceCache({"tokens": 300.0, "stats": 120.0}, clock=lambda: now["t"])
    cache.put("tokens", [1])
    cache.put("stats", {"a": 1})
    now["t"] += 150
    assert cache.get("tokens") == [1]
    assert cache.get("stats") is None
    cache.invalidate("tokens")
    assert cache.get("tokens") is None


def test_advisory_lock_never_waits() -> None:
    lock = AdvisoryLock()
    with lock.hold():
        assert lock.held
        assert lock.try_acquire() is False
        with pytest.raises(RequestBusy):
            with lock.hold():
                pass
        assert lock.held
    assert not lock.held


def test_obfuscate_key() -> None:
    assert obfuscate_key("sk-1234567890abcdef") == "sk-1...cdef"
    assert obfuscate_key("12345678") == "***"
    assert obfuscate_key("") == "***"


def test_split_key_input() -> None:
    assert split_key_input(" a ,b\n\nc,, ") == ["a", "b", "c"]
    assert split_key_input(["x", " ", "y "]) == ["x", "y"]
    assert split_key_input(None) == []


def test_version_constant() -> None:
    assert __version__ == "1.0.0"
