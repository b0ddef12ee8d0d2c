from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from jose import jwt


@pytest.fixture
def anyio_backend() -> str:
    # Run AnyIO-managed tests on asyncio only
    return "asyncio"


@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make(**claims: Any) -> str:
        return jwt.encode(claims, "test-secret", algorithm="HS256")

    return _make


@pytest.fixture(autouse=True)
def isolate_webtask_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in (
        "WEBTASK_URL",
        "WEBTASK_CONTAINER",
        "WEBTASK_TOKEN",
        "WEBTASK_PROFILE",
        "WEBTASK_CONFIG_PATH",
        "WEBTASK_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
