"""
Tests for listener registries and the logging listener.
"""

import logging

from stepagent.agent import FunctionAgent
from stepagent.config import LoopConfig
from stepagent.listeners import ListenerRegistry
from stepagent.types import Finish, FunctionAction, Thought


class TestListenerRegistry:
    """Tests for ListenerRegistry."""

    def test_notify_in_registration_order(self):
        registry: ListenerRegistry[str] = ListenerRegistry()
        calls: list[str] = []
        registry.register("a")
        registry.register("b")

        registry.notify(lambda listener: calls.append(listener))

        assert calls == ["a", "b"]
        assert len(registry) == 2

    def test_failure_is_logged_and_delivery_continues(self, caplog):
        registry: ListenerRegistry[str] = ListenerRegistry()
        registry.register("bad")
        registry.register("good")
        calls: list[str] = []

        def callback(listener):
            if listener == "bad":
                raise RuntimeError("listener failed")
            calls.append(listener)

        with caplog.at_level(logging.ERROR, logger="stepagent.listeners"):
            registry.notify(callback)

        assert calls == ["good"]
        assert "Fail to invoke listener" in caplog.text

    def test_unregister_during_notify_uses_snapshot(self):
        registry: ListenerRegistry[str] = ListenerRegistry()
        registry.register("first")
        registry.register("second")
        calls: list[str] = []

        def callback(listener):
            calls.append(listener)
            registry.unregister("second")

        registry.notify(callback)

        assert calls == ["first", "second"]
        assert registry.snapshot() == ["first"]

    def test_clear(self):
        registry: ListenerRegistry[str] = ListenerRegistry()
        registry.register("a")
        registry.clear()
        assert len(registry) == 0


class TestLoggingListener:
    """Tests for the default progress logging."""

    def test_logs_thought_action_observation(self, caplog):
        thoughts = [
            Thought(text="look around", action=FunctionAction(fn=lambda ctx: "a tree", name="look")),
            Thought(text="seen enough", action=Finish("a tree")),
        ]
        agent = FunctionAgent(
            "scout",
            think=lambda agent, input: thoughts.pop(0),
            config=LoopConfig(),
        )

        with caplog.at_level(logging.INFO, logger="stepagent.agent.scout"):
            agent.run("what is there?")

        messages = [r.getMessage() for r in caplog.records if r.name == "stepagent.agent.scout"]
        assert "Thought #1: look around" in messages
        assert "Action #1: look" in messages
        assert "Observation #1: a tree" in messages
        assert "Thought #2: seen enough" in messages
        assert any(m.startswith("Agent scout run finished after 2 loop(s)") for m in messages)
