import time

import pytest

from main import app
from routers.rate_limit import FixedWindowLimiter


UNREACHABLE_REDIS = "redis://127.0.0.1:1/0"


@pytest.mark.asyncio
async def test_limiter_falls_back_to_local_counters():
    limiter = FixedWindowLimiter(UNREACHABLE_REDIS)

    results = [await limiter.hit("upload_url", "user:a", limit=2, window_seconds=60) for _ in range(3)]
    other_caller = await limiter.hit("upload_url", "user:b", limit=2, window_seconds=60)

    assert results == [True, True, False]
    assert other_caller is True

    limiter.reset()
    assert await limiter.hit("upload_url", "user:a", limit=2, window_seconds=60) is True


@pytest.mark.asyncio
async def test_upload_url_returns_429_when_limited(api_client, seed, auth_header):
    await seed.user("owner-1")
    await seed.project("project-1", "owner-1")
    limiter = FixedWindowLimiter(UNREACHABLE_REDIS)
    app.state.rate_limiter = limiter
    app.state.disable_rate_limits = False
    body = {
        "project_id": "project-1",
        "file_name": "a.glb",
        "mime_type": "model/gltf-binary",
        "asset_category": "single_model",
    }

    try:
        allowed = await api_client.post("/upload-url", json=body, headers=auth_header("owner-1"))
        # Exhaust the remaining allowance for this caller.
        limiter._local["geo:rate:upload_url:user:owner-1"] = (120, time.time() + 3600)
        limited = await api_client.post("/upload-url", json=body, headers=auth_header("owner-1"))
    finally:
        app.state.rate_limiter = None

    assert allowed.status_code == 200
    assert limited.status_code == 429


@pytest.mark.asyncio
async def test_local_counters_drop_expired_windows():
    limiter = FixedWindowLimiter(UNREACHABLE_REDIS)
    limiter._local["geo:rate:upload_url:user:gone"] = (3, time.time() - 1)
    limiter._local["geo:rate:upload_url:user:active"] = (1, time.time() + 60)

    assert await limiter.hit("upload_url", "user:new", limit=2, window_seconds=60) is True

    assert set(limiter._local) == {"geo:rate:upload_url:user:active", "geo:rate:upload_url:user:new"}
    assert limiter._local["geo:rate:upload_url:user:active"][0] == 1
