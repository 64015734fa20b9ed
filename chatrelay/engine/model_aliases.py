"""Model alias lookup (opus / sonnet / haiku to concrete model ids).

The newest model of each family is discovered from the Anthropic models
endpoint when credentials are available, and cached for an hour. Any
failure falls back to the bare aliases, which the agent CLI accepts too.

Credentials, in order: ``ANTHROPIC_API_KEY``, then the OAuth token the
agent CLI keeps in ``<claude home>/.credentials.json``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

MODELS_URL = "https://api.anthropic.com/v1/models?limit=100"
ANTHROPIC_VERSION = "2023-06-01"
CACHE_TTL_SECONDS = 60 * 60

FAMILY_LABELS = {
    "opus": "most capable",
    "sonnet": "default",
    "haiku": "fastest",
}


@dataclass
class ModelInfo:
    alias: str
    label: str
    model_id: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["modelId"] = data.pop("model_id")
        return data


FALLBACK_MODELS: tuple[ModelInfo, ...] = tuple(
    ModelInfo(alias=family, label=f"{family.title()} ({label})", model_id=family)
    for family, label in FAMILY_LABELS.items()
)


@dataclass
class ApiAuth:
    kind: str  # "api-key" or "oauth"
    token: str

    def headers(self) -> dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if self.kind == "api-key":
            headers["x-api-key"] = self.token
        else:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers


def find_auth(claude_home: Path | None = None) -> ApiAuth | None:
    key = os.getenv("ANTHROPIC_API_KEY")
    if key:
        return ApiAuth(kind="api-key", token=key)
    home = claude_home or Path.home() / ".claude"
    cred_path = home / ".credentials.json"
    try:
        data = json.loads(cred_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.debug("Unreadable credentials file %s: %s", cred_path, exc)
        return None
    oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
    if not isinstance(oauth, dict) or not oauth.get("accessToken"):
        return None
    expires_at = oauth.get("expiresAt")
    # expiresAt is epoch milliseconds.
    if isinstance(expires_at, (int, float)) and time.time() * 1000 > expires_at:
        logger.warning("OAuth token in %s has expired", cred_path)
        return None
    return ApiAuth(kind="oauth", token=str(oauth["accessToken"]))


def pick_latest(models: list[dict[str, Any]]) -> list[ModelInfo]:
    """Newest model per family by ``created_at``; fallback when none match."""
    result: list[ModelInfo] = []
    for family, label in FAMILY_LABELS.items():
        matching = [
            m for m in models
            if isinstance(m, dict) and family in str(m.get("id", ""))
        ]
        if not matching:
            continue
        latest = max(matching, key=lambda m: str(m.get("created_at", "")))
        result.append(ModelInfo(
            alias=family,
            label=f"{latest.get('display_name') or latest['id']} ({label})",
            model_id=str(latest["id"]),
        ))
    return result or list(FALLBACK_MODELS)


async def fetch_models(auth: ApiAuth, *, timeout: float = 10.0) -> list[dict[str, Any]]:
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(MODELS_URL, headers=auth.headers()) as resp:
            resp.raise_for_status()
            payload = await resp.json()
    data = payload.get("data") if isinstance(payload, dict) else None
    return data if isinstance(data, list) else []


Fetcher = Callable[[ApiAuth], Awaitable[list[dict[str, Any]]]]


class ModelCatalog:
    """Cached alias table."""

    def __init__(
        self,
        *,
        claude_home: Path | None = None,
        fetcher: Fetcher | None = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._claude_home = claude_home
        self._fetcher = fetcher or fetch_models
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: list[ModelInfo] | None = None
        self._cached_at = 0.0
        self._refresh: asyncio.Task | None = None

    @property
    def fresh(self) -> bool:
        return self._cached is not None and self._clock() - self._cached_at < self._ttl

    async def models(self) -> list[ModelInfo]:
        if self.fresh:
            return self._cached
        auth = find_auth(self._claude_home)
        if auth is None:
            return list(FALLBACK_MODELS)
        try:
            raw = await self._fetcher(auth)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Model list fetch failed, using fallback aliases: %s", exc)
            return list(FALLBACK_MODELS)
        self._cached = pick_latest(raw)
        self._cached_at = self._clock()
        logger.info(
            "Model aliases: %s",
            ", ".join(f"{m.alias}->{m.model_id}" for m in self._cached),
        )
        return self._cached

    async def resolve(self, alias: str) -> str:
        """Concrete model id for *alias*; unknown names pass through."""
        for info in await self.models():
            if info.alias == alias:
                return info.model_id
        return alias

    def resolve_cached(self, alias: str) -> str:
        """Like resolve(), from whatever table is cached; never does I/O.

        Before the first successful fetch the bare alias is returned.
        """
        for info in self._cached or FALLBACK_MODELS:
            if info.alias == alias:
                return info.model_id
        return alias

    def refresh_in_background(self) -> asyncio.Task | None:
        """Start a models() fetch unless the cache is fresh or one is running."""
        if self.fresh:
            return None
        if self._refresh is None or self._refresh.done():
            self._refresh = asyncio.create_task(self.models())
            self._refresh.add_done_callback(_log_refresh_failure)
        return self._refresh

    async def close(self) -> None:
        task, self._refresh = self._refresh, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


def _log_refresh_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Background model refresh failed", exc_info=task.exception())
