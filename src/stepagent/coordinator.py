"""
Multi-agent coordination.

A CoordinateAgent is itself an agent: one step selects members of its
AgentGroup, runs them on a bounded pool, and combines their outputs.
Members are independent agents with their own state and loop; the
coordinator only sees their final outputs.

The default loop bound for a coordinator is one step, and the default
``combine`` marks that step finished.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from stepagent.agent import BaseAgent
from stepagent.config import LoopConfig
from stepagent.errors import AgentExecutionError
from stepagent.state import RunStatus
from stepagent.strategies import MaxLoopCountControl
from stepagent.types import StepOutput

logger = logging.getLogger(__name__)


class AgentGroup:
    """Named members of a coordinated group, in insertion order."""

    def __init__(self, agents: list[BaseAgent] | None = None):
        self._agents: dict[str, BaseAgent] = {}
        for agent in agents or []:
            self.add(agent)

    def add(self, agent: BaseAgent) -> None:
        if agent.name in self._agents:
            raise ValueError(f"Agent {agent.name} is already a member of the group")
        self._agents[agent.name] = agent

    def remove(self, name: str) -> BaseAgent:
        """
        Raises:
            KeyError: if no member has that name
        """
        return self._agents.pop(name)

    def get(self, name: str) -> BaseAgent | None:
        return self._agents.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._agents)

    def __iter__(self) -> Iterator[BaseAgent]:
        return iter(list(self._agents.values()))

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, name: str) -> bool:
        return name in self._agents


Selector = Callable[[AgentGroup, Any], list[str]]


class CoordinateAgent(BaseAgent):
    """
    Runs selected members of a group and combines their outputs.

    ``selector`` picks member names for an input; without one every
    member runs. Members run concurrently on at most ``max_workers``
    threads. If any member fails the step fails with the first failure
    in member order, after every member has finished.
    """

    def __init__(
        self,
        name: str,
        group: AgentGroup,
        *,
        selector: Selector | None = None,
        max_workers: int = 4,
        config: LoopConfig | None = None,
        **kwargs: Any,
    ):
        config = config or LoopConfig.from_env()
        kwargs.setdefault("loop_control", MaxLoopCountControl(1))
        super().__init__(name, config=config, **kwargs)
        self.group = group
        self.selector = selector
        self.max_workers = max_workers

    def select(self, input: Any) -> list[str]:
        if self.selector is not None:
            return list(self.selector(self.group, input))
        return self.group.names

    def member_input(self, member: BaseAgent, input: Any) -> Any:
        return input

    def combine(self, input: Any, outputs: dict[str, Any]) -> StepOutput:
        if len(outputs) == 1:
            return StepOutput(content=next(iter(outputs.values())), finished=True)
        return StepOutput(content=outputs, finished=True)

    def _do_step(self, input: Any) -> StepOutput:
        names = self.select(input)
        members = []
        for name in names:
            member = self.group.get(name)
            if member is None:
                raise AgentExecutionError(f"Coordinator {self.name} selected unknown agent {name}")
            members.append(member)

        if not members:
            logger.info(f"Coordinator {self.name} selected no agents")
            return self.combine(input, {})

        logger.info(f"Coordinator {self.name} dispatching to {', '.join(names)}")
        outputs = self._run_members(input, members)
        return self.combine(input, outputs)

    def _run_members(self, input: Any, members: list[BaseAgent]) -> dict[str, Any]:
        # Members settled by a failure run again; finished members keep
        # their cached output.
        for member in members:
            if member.status.is_finished and member.status is not RunStatus.FINISHED:
                logger.debug(f"Coordinator {self.name} resetting {member.name} ({member.status.value})")
                member.reset()

        if len(members) == 1:
            member = members[0]
            return {member.name: member.run(self.member_input(member, input))}

        results: dict[str, Any] = {}
        errors: dict[str, Exception] = {}
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(members)),
            thread_name_prefix=f"{self.name}-member",
        ) as pool:
            future_to_name = {
                pool.submit(member.run, self.member_input(member, input)): member.name
                for member in members
            }
            for future in as_completed(future_to_name):
                name = future_to_name[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.warning(f"Member {name} of {self.name} failed: {e}")
                    errors[name] = e

        for member in members:
            if member.name in errors:
                raise errors[member.name]
        return {member.name: results[member.name] for member in members}

    def reset(self) -> None:
        super().reset()
        for member in self.group:
            member.reset()


def join_text_outputs(outputs: dict[str, Any]) -> str:
    return "\n\n".join(f"[{name}]\n{output}" for name, output in outputs.items() if output is not None)


class FanOutCoordinateAgent(CoordinateAgent):
    """
    Sends the same input to every member and reduces their outputs.

    The reducer receives the ``{name: output}`` map in group order; the
    default joins the text of each output under its member's name.
    """

    def __init__(
        self,
        name: str,
        group: AgentGroup,
        *,
        reducer: Callable[[dict[str, Any]], Any] = join_text_outputs,
        **kwargs: Any,
    ):
        kwargs.pop("selector", None)
        super().__init__(name, group, **kwargs)
        self.reducer = reducer

    def combine(self, input: Any, outputs: dict[str, Any]) -> StepOutput:
        return StepOutput(content=self.reducer(outputs), finished=True)
