from __future__ import annotations

import asyncio
import json
import time

import aiohttp
import pytest

from chatrelay.engine.model_aliases import (
    FALLBACK_MODELS,
    ApiAuth,
    ModelCatalog,
    find_auth,
    pick_latest,
)

MODELS = [
    {"id": "claude-opus-4-1", "display_name": "Claude Opus 4.1", "created_at": "2025-08-01T00:00:00Z"},
    {"id": "claude-opus-4-5", "display_name": "Claude Opus 4.5", "created_at": "2025-11-01T00:00:00Z"},
    {"id": "claude-sonnet-4-5", "display_name": "Claude Sonnet 4.5", "created_at": "2025-09-01T00:00:00Z"},
]


class StubFetcher:
    def __init__(self, result=None, error=None):
        self.calls = 0
        self.result = MODELS if result is None else result
        self.error = error

    async def __call__(self, auth: ApiAuth):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def _no_api_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


def test_pick_latest_per_family():
    picked = {m.alias: m for m in pick_latest(MODELS)}
    assert picked["opus"].model_id == "claude-opus-4-5"
    assert picked["opus"].label == "Claude Opus 4.5 (most capable)"
    assert picked["sonnet"].model_id == "claude-sonnet-4-5"
    assert "haiku" not in picked


def test_pick_latest_without_matches_falls_back():
    assert pick_latest([{"id": "other"}]) == list(FALLBACK_MODELS)


def test_find_auth_prefers_api_key(monkeypatch, tmp_path):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    auth = find_auth(tmp_path)
    assert auth.kind == "api-key"
    assert auth.headers()["x-api-key"] == "sk-test"


def test_find_auth_oauth_and_expiry(tmp_path):
    creds = tmp_path / ".credentials.json"
    future = (time.time() + 3600) * 1000
    creds.write_text(json.dumps({"claudeAiOauth": {"accessToken": "tok", "expiresAt": future}}))
    auth = find_auth(tmp_path)
    assert auth.kind == "oauth"
    assert auth.headers()["Authorization"] == "Bearer tok"

    creds.write_text(json.dumps({"claudeAiOauth": {"accessToken": "tok", "expiresAt": 1}}))
    assert find_auth(tmp_path) is None


@pytest.mark.asyncio
async def test_catalog_without_credentials_skips_fetch(tmp_path):
    fetcher = StubFetcher()
    catalog = ModelCatalog(claude_home=tmp_path, fetcher=fetcher)
    assert await catalog.resolve("sonnet") == "sonnet"
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_catalog_caches_until_ttl(monkeypatch, tmp_path):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    now = [100.0]
    fetcher = StubFetcher()
    catalog = ModelCatalog(claude_home=tmp_path, fetcher=fetcher, ttl_seconds=60, clock=lambda: now[0])

    assert await catalog.resolve("opus") == "claude-opus-4-5"
    assert await catalog.resolve("custom-model") == "custom-model"
    assert fetcher.calls == 1

    now[0] += 61
    await catalog.models()
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_catalog_fetch_failure_falls_back(monkeypatch, tmp_path):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    catalog = ModelCatalog(
        claude_home=tmp_path,
        fetcher=StubFetcher(error=aiohttp.ClientConnectionError("offline")),
    )
    assert await catalog.models() == list(FALLBACK_MODELS)


@pytest.mark.asyncio
async def test_resolve_cached_never_fetches_and_picks_up_refresh(monkeypatch, tmp_path):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    fetcher = StubFetcher()
    catalog = ModelCatalog(claude_home=tmp_path, fetcher=fetcher)

    assert catalog.resolve_cached("opus") == "opus"
    assert fetcher.calls == 0

    task = catalog.refresh_in_background()
    assert task is not None
    assert catalog.refresh_in_background() is task
    await task

    assert fetcher.calls == 1
    assert catalog.resolve_cached("opus") == "claude-opus-4-5"
    assert catalog.resolve_cached("custom-model") == "custom-model"
    assert catalog.refresh_in_background() is None


@pytest.mark.asyncio
async def test_close_cancels_pending_refresh(monkeypatch, tmp_path):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    started = asyncio.Event()

    async def hangs(auth):
        started.set()
        await asyncio.Event().wait()

    catalog = ModelCatalog(claude_home=tmp_path, fetcher=hangs)
    task = catalog.refresh_in_background()
    await started.wait()
    await catalog.close()
    assert task.cancelled()
    assert catalog.resolve_cached("haiku") == "haiku"
