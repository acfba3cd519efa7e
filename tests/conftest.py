"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import os
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import yaml

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_gateway.errors import StorageFault  # noqa: E402


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend:
    """Completion backend answering per model from a script.

    A script value may be a string (the answer), an exception instance to
    raise, or a callable taking the messages list.
    """

    def __init__(self, script: Optional[Dict[str, Any]] = None, default: Any = "ok") -> None:
        self.script = dict(script or {})
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def complete(self, model: str, messages: List[Dict[str, Any]], *, timeout: Optional[float] = None) -> str:
        self.calls.append({"model": model, "messages": messages, "timeout": timeout})
        outcome = self.script.get(model, self.default)
        if callable(outcome):
            outcome = outcome(messages)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def models_called(self) -> List[str]:
        return [c["model"] for c in self.calls]


class BrokenStore:
    """Store whose reads and/or writes always fail."""

    def __init__(self, fail_get: bool = True, fail_put: bool = True) -> None:
        self.fail_get = fail_get
        self.fail_put = fail_put
        self.data: Dict[str, Any] = {}

    def get(self, key: str) -> Any:
        if self.fail_get:
            raise StorageFault(f"get {key} failed")
        return self.data.get(key)

    def put(self, key: str, value: Any) -> None:
        if self.fail_put:
            raise StorageFault(f"put {key} failed")
        self.data[key] = value


class _CompletionHandler(BaseHTTPRequestHandler):
    """Local ``/chat/completions``: models named ``slow*`` trickle the body one byte per 50 ms."""

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        model = json.loads(self.rfile.read(length) or b"{}").get("model", "")
        answer = {"choices": [{"message": {"role": "assistant", "content": f"hello from {model}"}}]}
        body = json.dumps(answer).encode("utf-8") + b" " * 200
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        try:
            if not model.startswith("slow"):
                self.wfile.write(body)
                return
            for i in range(len(body)):
                self.wfile.write(body[i:i + 1])
                self.wfile.flush()
                time.sleep(0.05)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture(scope="function")
def provider_url():
    """Base URL of a local OpenAI-compatible server (see _CompletionHandler)."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _CompletionHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/v1"
    server.shutdown()
    server.server_close()


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for the JSON store during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def config_path(tmp_path: Path, tmp_data_dir: Path) -> Path:
    """Small, deterministic config: two text models, one vision model, 3 msgs / hour."""
    cfg = {
        "store": {"backend": "file", "data_dir": str(tmp_data_dir)},
        "provider": {"base_url": "http://provider.test/v1", "api_key": "test-key", "timeout": 2.0},
        "models": {"text": ["model-a", "model-b"], "vision": ["model-v"]},
        "quota": {
            "plans": {
                "free": {"message_limit": 3, "window_seconds": 3600},
                "unlimited": {"message_limit": None, "window_seconds": 3600},
            }
        },
        "memory": {"max_sessions": 3},
        "persona": {"system_prompt": "You are a test coach."},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["CHAT_GATEWAY_CONFIG", "OPENROUTER_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    for var in [v for v in os.environ if v.startswith("CHAT_GATEWAY__")]:
        monkeypatch.delenv(var, raising=False)
    yield

