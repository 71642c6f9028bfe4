"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from typing import Any, Dict, List

import pytest

from app import build_engine, make_app
from concepts import ListCreation, Requesting
from config import ServerConfig
from engine import ActionRecord, Concept, Engine
from store import DocumentStore


class Echo(Concept):
    """A tiny concept whose actions just report what they were given."""

    interface = ("ping", "pong", "bump", "note", "fail", "boom", "_peek")

    def __init__(self, name: str = "Echo"):
        super().__init__(name)
        self.notes: List[Any] = []

    def ping(self, value: Any) -> Dict[str, Any]:
        return {"value": value}

    def pong(self, value: Any) -> Dict[str, Any]:
        return {"echo": value}

    def bump(self, value: int) -> Dict[str, Any]:
        return {"value": value + 1}

    def note(self, value: Any = None) -> Dict[str, Any]:
        self.notes.append(value)
        return {"noted": value}

    def fail(self, value: Any) -> Dict[str, Any]:
        return {"error": f"cannot handle {value}"}

    def boom(self, value: Any) -> Dict[str, Any]:
        raise RuntimeError("kaboom")

    def _peek(self) -> Dict[str, Any]:
        return {"notes": list(self.notes)}


def make_record(seq: int, ref: str, input: Dict[str, Any] = None, output: Dict[str, Any] = None, flow: str = "f") -> ActionRecord:
    concept, action = ref.split(".")
    return ActionRecord(
        id=f"r{seq}", concept=concept, action=action,
        input=dict(input or {}), output=dict(output or {}),
        flow=flow, sequence=seq,
    )


@pytest.fixture
def echo() -> Echo:
    return Echo()


@pytest.fixture
def engine(echo: Echo) -> Engine:
    """An engine with Requesting, ListCreation and Echo registered but no syncs."""
    eng = Engine(max_depth=8, max_actions=50)
    eng.register_concept(Requesting("Requesting", timeout=0.05))
    eng.register_concept(ListCreation("ListCreation", DocumentStore()))
    eng.register_concept(echo)
    return eng


@pytest.fixture
def cfg() -> ServerConfig:
    return ServerConfig(
        request_timeout=0.05,
        passthrough=(
            "/api/ListCreation/_getLists",
            "/api/ListCreation/_missing",
            "/api/Session/_getSession",
        ),
    )


@pytest.fixture
def server_engine(cfg: ServerConfig) -> Engine:
    return build_engine(cfg)


@pytest.fixture
def client(server_engine: Engine, cfg: ServerConfig):
    """Flask test client over a fully wired engine."""
    app = make_app(server_engine, cfg)
    app.testing = True
    return app.test_client()
