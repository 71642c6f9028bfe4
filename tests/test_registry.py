"""
tests/test_registry.py — Action Registry
=========================================

Registration from explicit interfaces, the introspection fallback,
query flagging, hot-reload replacement and resolution failures.
"""

from __future__ import annotations

import pytest

from engine import ActionNotFound, ActionRegistry, Concept

from conftest import Echo


class Bare:
    """No declared interface: the registry has to look at the class."""

    def __init__(self):
        self.hits = 0

    def act(self):
        self.hits += 1
        return {"hits": self.hits}

    def _count(self):
        return {"hits": self.hits}


class Broken(Concept):
    interface = ("missing",)


class TestRegister:
    def test_explicit_interface(self):
        reg = ActionRegistry()
        names = reg.register("Echo", Echo())
        assert names == Echo.interface
        assert reg.resolve("Echo", "ping")(value=3) == {"value": 3}

    def test_queries_are_flagged_but_dispatchable(self):
        reg = ActionRegistry()
        reg.register("Echo", Echo())
        peek = reg.resolve("Echo", "_peek")
        assert peek.is_query
        assert not reg.resolve("Echo", "ping").is_query
        assert peek() == {"notes": []}

    def test_interface_argument_overrides_class(self):
        reg = ActionRegistry()
        reg.register("Echo", Echo(), interface=["ping"])
        assert reg.interface("Echo") == ("ping",)
        with pytest.raises(ActionNotFound):
            reg.resolve("Echo", "pong")

    def test_discovery_fallback_skips_dunders(self):
        reg = ActionRegistry()
        names = reg.register("Bare", Bare())
        assert set(names) == {"act", "_count"}
        assert reg.resolve("Bare", "_count").is_query

    def test_declared_name_must_be_callable(self):
        with pytest.raises(TypeError, match="Broken.missing"):
            ActionRegistry().register("Broken", Broken("Broken"))


class TestReRegister:
    def test_same_instance_twice_is_idempotent(self):
        reg = ActionRegistry()
        echo = Echo()
        reg.register("Echo", echo)
        reg.register("Echo", echo)
        assert reg.interface("Echo") == Echo.interface
        assert reg.concepts() == ["Echo"]

    def test_reload_replaces_instance_and_drops_stale_actions(self):
        reg = ActionRegistry()
        old, new = Echo(), Echo()
        reg.register("Echo", old)
        reg.register("Echo", new, interface=["note"])
        reg.resolve("Echo", "note")(value=1)
        assert new.notes == [1]
        assert old.notes == []
        assert ("Echo", "ping") not in reg


class TestResolve:
    def test_unknown_action(self):
        reg = ActionRegistry()
        reg.register("Echo", Echo())
        with pytest.raises(ActionNotFound) as info:
            reg.resolve("Echo", "nope")
        assert isinstance(info.value, LookupError)
        assert str(info.value) == "Echo.nope not found"

    def test_unknown_concept(self):
        reg = ActionRegistry()
        with pytest.raises(ActionNotFound):
            reg.resolve("Ghost", "haunt")
        with pytest.raises(ActionNotFound):
            reg.interface("Ghost")
        with pytest.raises(ActionNotFound):
            reg.instance("Ghost")

    def test_instance_is_the_registered_object(self):
        reg = ActionRegistry()
        echo = Echo()
        reg.register("Echo", echo)
        assert reg.instance("Echo") is echo
