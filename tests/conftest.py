from __future__ import annotations

import hashlib
import io
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

import sonar_prep.constants as constants
from sonar_prep.config import ConfigFile
from sonar_prep.console import reset_console
from sonar_prep.settings import build_settings


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv(constants.USER_HOME_ENV_VAR, str(tmp_path / "sonar-home"))
    monkeypatch.setenv(constants.CONFIG_ENV_VAR, str(tmp_path / "config" / "config.toml"))
    for name in (
        constants.SCANNER_PARAMS_ENV_VAR,
        constants.BUILD_DIR_ENV_VAR,
        constants.JAVA_HOME_ENV_VAR,
        constants.SCANNER_OPTS_ENV_VAR,
    ):
        monkeypatch.delenv(name, raising=False)
    reset_console()
    yield
    reset_console()


Handler = Callable[[httpx.Request], httpx.Response]


class Router:
    """Routes mock requests by URL path; records every request it sees."""

    def __init__(self) -> None:
        self.routes: Dict[str, List[Handler]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, handler: Handler) -> "Router":
        self.routes.setdefault(path, []).append(handler)
        return self

    def json(self, path: str, payload: Any, status_code: int = 200) -> "Router":
        return self.add(path, lambda request: httpx.Response(status_code, json=payload))

    def text(self, path: str, body: str, status_code: int = 200) -> "Router":
        return self.add(path, lambda request: httpx.Response(status_code, text=body))

    def content(self, path: str, body: bytes, status_code: int = 200) -> "Router":
        return self.add(path, lambda request: httpx.Response(status_code, content=body))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handlers = self.routes.get(request.url.path)
        if not handlers:
            return httpx.Response(404, json={"errors": [{"msg": "not mocked"}]})
        # the last handler for a path keeps answering
        handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]
        return handler(request)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    def client_factory(self) -> Callable[[httpx.Timeout], httpx.Client]:
        def factory(timeout: httpx.Timeout) -> httpx.Client:
            return httpx.Client(transport=httpx.MockTransport(self), timeout=timeout)

        return factory


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def make_settings(tmp_path):
    def _make(
        *properties: str,
        key: str = "my-project",
        organization: Optional[str] = None,
        config: Optional[ConfigFile] = None,
        environ: Optional[Dict[str, str]] = None,
        settings_file: Optional[Path] = None,
    ):
        env = {constants.USER_HOME_ENV_VAR: str(tmp_path / "sonar-home")}
        env.update(environ or {})
        return build_settings(
            project_key=key,
            organization=organization,
            property_args=list(properties),
            settings_file=settings_file,
            cwd=tmp_path,
            config=config,
            environ=env,
        )

    return _make


def _zip_bytes(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def _rules_page(
    rules: List[Dict[str, Any]],
    actives: Optional[Dict[str, Any]] = None,
    *,
    total: Optional[int] = None,
    page_size: int = 500,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "paging": {
            "pageIndex": 1,
            "pageSize": page_size,
            "total": len(rules) if total is None else total,
        },
        "rules": rules,
    }
    if actives is not None:
        payload["actives"] = actives
    return payload


@pytest.fixture
def make_zip():
    return _zip_bytes


@pytest.fixture
def rules_page():
    return _rules_page


@pytest.fixture
def sha256():
    return lambda data: hashlib.sha256(data).hexdigest()
