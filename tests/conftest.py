"""Shared pytest fixtures for nodeboxer tests."""

from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path

import pytest
import requests
import urllib3


class RecordingLogger:
    """Step logger that records events instead of printing them."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []
        self.progress: list[int] = []

    def step_starting(self, info: str) -> None:
        self.events.append(("start", info))

    def step_completed(self) -> None:
        self.events.append(("done", None))

    def step_failed(self, err: BaseException) -> None:
        self.events.append(("failed", err))

    def start_progress(self, total: int) -> None:
        self.events.append(("progress", total))

    def do_progress(self, completed: int) -> None:
        self.progress.append(completed)

    def failures(self) -> list[BaseException]:
        return [e for kind, e in self.events if kind == "failed"]


class FakeRaw(io.BytesIO):
    decode_content = True


class FakeResponse:
    def __init__(self, body: bytes = b"", status_code: int = 200, headers: dict | None = None,
                 fail_after: int | None = None, fail_with: Exception | None = None) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self.content = body
        if fail_after is not None:
            self.raw = _FailingRaw(body, fail_after, fail_with)
        else:
            self.raw = FakeRaw(body)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self):
        return json.loads(self.content)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


class _FailingRaw:
    """Raw stream that breaks the way urllib3 does on a short body."""

    decode_content = True

    def __init__(self, body: bytes, fail_after: int, error: Exception | None = None) -> None:
        self._buf = io.BytesIO(body[:fail_after])
        self._expected = len(body)
        self._error = error

    def read(self, size: int = -1) -> bytes:
        chunk = self._buf.read(size)
        if not chunk:
            if self._error is not None:
                raise self._error
            read = self._buf.tell()
            raise urllib3.exceptions.ProtocolError(
                "Connection broken: IncompleteRead",
                urllib3.exceptions.IncompleteRead(read, self._expected - read))
        return chunk


class FakeSession:
    """Serves queued responses per URL; the last one is repeated."""

    def __init__(self, routes: dict[str, object] | None = None) -> None:
        self.routes: dict[str, list] = {}
        self.calls: list[str] = []
        for url, response in (routes or {}).items():
            self.add(url, response)

    def add(self, url: str, *responses) -> None:
        self.routes.setdefault(url, []).extend(responses)

    def get(self, url: str, **kwargs):
        self.calls.append(url)
        queue = self.routes.get(url)
        if not queue:
            raise requests.ConnectionError(f"no route for {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return response


def make_tarball(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def fake_node_tree(version: str) -> dict[str, str]:
    root = f"node-{version}"
    return {
        f"{root}/configure": "#!/bin/sh\n",
        f"{root}/node.gypi": "{\n  'dependencies': [ 'deps/uv/uv.gyp:libuv' ],\n}\n",
        f"{root}/src/node.h": "#ifndef SRC_NODE_H_\n#define SRC_NODE_H_\n#endif\n",
        f"{root}/src/node_api.h": "#ifndef SRC_NODE_API_H_\n#define SRC_NODE_API_H_\n#endif\n",
        f"{root}/src/node_main.cc": "int main() { return 0; }\n",
    }


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def node_tarball() -> bytes:
    return make_tarball(fake_node_tree("v20.11.1"))


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """An unpacked, minimal Node.js source tree."""
    root = tmp_path / "node-v20.11.1"
    for name, content in fake_node_tree("v20.11.1").items():
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def addon_dir(tmp_path: Path) -> Path:
    """A native addon checkout with a binding.gyp."""
    addon = tmp_path / "weak-napi"
    (addon / "src").mkdir(parents=True)
    (addon / "src" / "weakref.cc").write_text("// addon source\n")
    (addon / "package.json").write_text('{"name": "weak-napi"}\n')
    (addon / "binding.gyp").write_text(
        """{
  # comments are allowed in gyp files
  'targets': [
    {
      'target_name': 'weakref',
      'sources': [ 'src/weakref.cc' ],
      'defines': [ 'BUILDING_NODE_EXTENSION', 'NAPI_VERSION=3' ],
      'dependencies': [
        "<!(node -p \\"require('node-addon-api').gyp\\")",
      ],
    },
    {
      'target_name': 'helper',
      'type': 'none',
    },
  ],
}
"""
    )
    return addon
