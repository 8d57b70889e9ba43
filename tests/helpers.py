"""Shared fakes and assertions for the proxy test suite."""

from __future__ import annotations

from typing import Any

import requests

from cmc_proxy import CORS_HEADERS

TEST_API_KEY = "test-cmc-key"
TEST_API_BASE = "https://cmc.example.test/v1"


def assert_cors(response) -> None:
    for name, value in CORS_HEADERS.items():
        assert response.headers.get(name) == value


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code: int = 200, body: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._body = body
        self._text = text

    def json(self) -> Any:
        if self._text is not None:
            raise requests.exceptions.JSONDecodeError("Expecting value", self._text, 0)
        return self._body


class FakeSession:
    """Records upstream calls and answers with a scripted response.

    Each call keeps the URL that ``requests`` would actually send, so the
    query-string encoding is checked without touching the network.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.response = FakeResponse(200, {"data": {}})
        self.error: Exception | None = None

    def reply(self, status_code: int, body: Any = None, text: str | None = None) -> None:
        self.response = FakeResponse(status_code, body, text)

    def fail(self, error: Exception) -> None:
        self.error = error

    def get(
        self,
        url: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> FakeResponse:
        prepared = requests.Request("GET", url, params=params, headers=headers).prepare()
        self.calls.append({
            "url": prepared.url,
            "params": params or {},
            "headers": headers or {},
            "timeout": timeout,
        })
        if self.error is not None:
            raise self.error
        return self.response
