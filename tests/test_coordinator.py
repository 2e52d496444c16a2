"""
Tests for multi-agent coordination.
"""

import threading

import pytest

from stepagent.agent import FunctionAgent
from stepagent.config import LoopConfig
from stepagent.coordinator import AgentGroup, CoordinateAgent, FanOutCoordinateAgent
from stepagent.errors import AgentExecutionError
from stepagent.state import RunStatus
from stepagent.strategies import RetryFallback
from stepagent.types import Finish, Thought


def answering_agent(name: str, answer: str) -> FunctionAgent:
    return FunctionAgent(
        name,
        think=lambda agent, input: Thought(text="", action=Finish(f"{answer}:{input}")),
        config=LoopConfig(),
        log_progress=False,
    )


def failing_agent(name: str) -> FunctionAgent:
    def think(agent, input):
        raise RuntimeError(f"{name} cannot answer")

    return FunctionAgent(name, think=think, config=LoopConfig(), log_progress=False)


class TestAgentGroup:
    """Tests for AgentGroup."""

    def test_add_get_remove(self):
        alpha = answering_agent("alpha", "a")
        group = AgentGroup([alpha, answering_agent("beta", "b")])

        assert group.names == ["alpha", "beta"]
        assert group.get("alpha") is alpha
        assert "beta" in group
        assert len(group) == 2

        assert group.remove("alpha") is alpha
        assert group.names == ["beta"]
        assert group.get("alpha") is None

    def test_remove_unknown_raises(self):
        with pytest.raises(KeyError):
            AgentGroup().remove("ghost")

    def test_duplicate_name_rejected(self):
        group = AgentGroup([answering_agent("alpha", "a")])
        with pytest.raises(ValueError):
            group.add(answering_agent("alpha", "other"))


class TestCoordinateAgent:
    """Tests for CoordinateAgent."""

    def test_runs_all_members_by_default(self):
        group = AgentGroup([answering_agent("alpha", "a"), answering_agent("beta", "b")])
        coordinator = CoordinateAgent("lead", group, config=LoopConfig(), log_progress=False)

        output = coordinator.run("q")

        assert output == {"alpha": "a:q", "beta": "b:q"}
        assert list(output) == ["alpha", "beta"]
        assert coordinator.status is RunStatus.FINISHED
        assert coordinator.state.loop_count == 1

    def test_selector_routes_to_one_member(self):
        group = AgentGroup([answering_agent("math", "m"), answering_agent("prose", "p")])
        coordinator = CoordinateAgent(
            "router",
            group,
            selector=lambda group, input: ["math"] if input.isdigit() else ["prose"],
            config=LoopConfig(),
            log_progress=False,
        )

        assert coordinator.run("42") == "m:42"
        assert group.get("prose").status is RunStatus.NOT_STARTED

    def test_unknown_selection_fails(self):
        coordinator = CoordinateAgent(
            "router",
            AgentGroup(),
            selector=lambda group, input: ["ghost"],
            config=LoopConfig(),
            log_progress=False,
        )

        with pytest.raises(AgentExecutionError, match="unknown agent ghost"):
            coordinator.run("q")

    def test_members_run_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)

        def meet(agent, input):
            barrier.wait()
            return Thought(text="", action=Finish(agent.name))

        group = AgentGroup([
            FunctionAgent(name, think=meet, config=LoopConfig(), log_progress=False)
            for name in ("left", "right")
        ])
        coordinator = CoordinateAgent("lead", group, max_workers=2, config=LoopConfig(), log_progress=False)

        assert coordinator.run("go") == {"left": "left", "right": "right"}

    def test_member_failure_fails_coordinator(self):
        group = AgentGroup([answering_agent("ok", "fine"), failing_agent("bad")])
        coordinator = CoordinateAgent("lead", group, config=LoopConfig(), log_progress=False)

        with pytest.raises(AgentExecutionError, match="bad cannot answer"):
            coordinator.run("q")

        assert coordinator.status is RunStatus.FAILED
        assert group.get("ok").status is RunStatus.FINISHED
        assert group.get("bad").status is RunStatus.FAILED

    def test_retry_reruns_failed_member(self):
        calls = []

        def flaky(agent, input):
            calls.append(input)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return Thought(text="", action=Finish(f"recovered:{input}"))

        group = AgentGroup([
            answering_agent("steady", "s"),
            FunctionAgent("flaky", think=flaky, config=LoopConfig(), log_progress=False),
        ])
        coordinator = CoordinateAgent(
            "lead", group, config=LoopConfig(), fallback=RetryFallback(max_retries=2), log_progress=False,
        )

        assert coordinator.run("q") == {"steady": "s:q", "flaky": "recovered:q"}
        assert len(calls) == 2
        assert coordinator.state.retry_count == 1
        assert group.get("flaky").status is RunStatus.FINISHED

    def test_finished_member_is_not_rerun_on_retry(self):
        steady_calls = []

        def steady(agent, input):
            steady_calls.append(input)
            return Thought(text="", action=Finish("ok"))

        group = AgentGroup([
            FunctionAgent("steady", think=steady, config=LoopConfig(), log_progress=False),
            failing_agent("bad"),
        ])
        coordinator = CoordinateAgent(
            "lead", group, config=LoopConfig(), fallback=RetryFallback(max_retries=2), log_progress=False,
        )

        with pytest.raises(AgentExecutionError, match="bad cannot answer"):
            coordinator.run("q")

        assert steady_calls == ["q"]
        assert coordinator.state.retry_count == 2

    def test_streamed_run_keeps_combined_outputs(self):
        group = AgentGroup([answering_agent("a", "A"), answering_agent("b", "B")])
        coordinator = CoordinateAgent("lead", group, config=LoopConfig(), log_progress=False)

        stream = coordinator.run_stream("q")
        while True:
            try:
                next(stream)
            except StopIteration as stop:
                output = stop.value
                break

        assert output == {"a": "A:q", "b": "B:q"}

    def test_reset_resets_members(self):
        group = AgentGroup([answering_agent("alpha", "a")])
        coordinator = CoordinateAgent("lead", group, config=LoopConfig(), log_progress=False)
        coordinator.run("first")

        coordinator.reset()

        assert coordinator.status is RunStatus.NOT_STARTED
        assert group.get("alpha").status is RunStatus.NOT_STARTED
        assert coordinator.run("second") == "a:second"


class TestFanOutCoordinateAgent:
    """Tests for FanOutCoordinateAgent."""

    def test_default_reducer_joins_text(self):
        group = AgentGroup([answering_agent("alpha", "a"), answering_agent("beta", "b")])
        coordinator = FanOutCoordinateAgent("fan", group, config=LoopConfig(), log_progress=False)

        assert coordinator.run("q") == "[alpha]\na:q\n\n[beta]\nb:q"

    def test_custom_reducer(self):
        group = AgentGroup([answering_agent("alpha", "a"), answering_agent("beta", "b")])
        coordinator = FanOutCoordinateAgent(
            "fan",
            group,
            reducer=lambda outputs: sorted(outputs.values()),
            config=LoopConfig(),
            log_progress=False,
        )

        assert coordinator.run("q") == ["a:q", "b:q"]
