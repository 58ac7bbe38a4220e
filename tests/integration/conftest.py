from __future__ import annotations

from typing import Any, Callable

import pytest


class FakeClient:
    """Stands in for HttpClient; ``respond`` maps each call to a payload or raises."""

    def __init__(self, respond: Callable[[str, str, dict], Any]) -> None:
        self.respond = respond
        self.calls: list[tuple[str, str, dict]] = []
        self.closed = False

    def _call(self, method: str, url: str, detail: dict | None) -> Any:
        detail = dict(detail or {})
        self.calls.append((method, url, detail))
        return self.respond(method, url, detail)

    def get_json(self, url, *, params=None, headers=None, timeout=None):
        return self._call("GET", url, params)

    def post_json(self, url, *, body, headers=None, timeout=None):
        return self._call("POST", url, body)

    def get_text(self, url, *, params=None, headers=None, timeout=None):
        return self._call("GET", url, params)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeClient
