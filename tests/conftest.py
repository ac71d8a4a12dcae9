"""Shared fixtures: a scripted HTTP session and a fresh state database."""

import sqlite3
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from stickyproxy.database import init_db


def _build_response(url: str, status: int, body: bytes, headers: dict | None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.reason = "OK" if status == 200 else "Error"
    response._content = body
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    return response


@pytest.fixture
def routes() -> dict:
    """URL -> (status, body, headers) or an exception to raise."""
    return {}


@pytest.fixture
def session(routes: dict) -> MagicMock:
    """A requests.Session whose get() answers from the routes fixture.

    Unknown URLs answer 404.
    """
    mock = MagicMock(spec=requests.Session)

    def get(url, **kwargs):
        route = routes.get(url)
        if route is None:
            return _build_response(url, 404, b"not found", {})
        if isinstance(route, Exception):
            raise route
        status, body, headers = route
        return _build_response(url, status, body, headers)

    mock.get.side_effect = get
    return mock


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(str(tmp_path / "state.db"))
    yield conn
    conn.close()
