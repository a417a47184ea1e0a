"""
Graph Runner.

Responsibility:
- Walk a workflow graph depth-first from a matched trigger (or, for
  scheduled entries, from the successors of every trigger)
- Route condition results to the ``output_1`` / ``output_2`` slots
- Contain node failures to the branch they occur in
- Fail fast on cycles instead of recursing forever

``WorkflowDispatcher`` tries every enabled workflow for one inbound message,
in document order, honouring ``stop_propagation``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable

import httpx

from memory.store import KeyValueStore
from observability.logger import Observability
from shared.capabilities import ReplyCapabilities
from shared.models import (
    ActionNode,
    ConditionNode,
    DelayNode,
    GlobalStorageNode,
    LeaderboardNode,
    ListRandomNode,
    MessageEvent,
    SetVarNode,
    StorageNode,
    TriggerNode,
    Workflow,
    WorkflowConnection,
    WorkflowNode,
)
from workflow.actions import ActionDispatcher, ClientFactory
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.node_bodies import NodeBodyLibrary
from workflow.templates import TemplateEngine
from workflow.triggers import first_matching_trigger

logger = logging.getLogger(__name__)

MAX_TRAVERSAL_DEPTH = 64
MAX_DELAY_SECONDS = 10.0

Sleeper = Callable[[float], Awaitable[None]]


class WorkflowExecutionError(RuntimeError):
    """Raised when a workflow cannot be traversed at all."""


class WorkflowCycleError(WorkflowExecutionError):
    """A traversal revisited a node on its own path or went too deep."""


class _Graph:
    """Node lookup and outgoing edges, indexed once per execution."""

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self.nodes: dict[str, WorkflowNode] = {node.id: node for node in workflow.nodes}
        self.outgoing: dict[str, list[WorkflowConnection]] = defaultdict(list)
        for connection in workflow.connections:
            self.outgoing[connection.from_node].append(connection)

    def successors(self, node_id: str, slot: str) -> list[str]:
        return [conn.to_node for conn in self.outgoing.get(node_id, []) if conn.from_output == slot]


class GraphRunner:
    """Executes workflow graphs against one event and one capability set."""

    def __init__(
        self,
        store: KeyValueStore,
        now: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
        client_factory: ClientFactory = httpx.AsyncClient,
        sleep: Sleeper = asyncio.sleep,
        obs: Observability | None = None,
    ):
        rng = rng or random.Random()
        self.templates = TemplateEngine(store, now=now, rng=rng)
        self.conditions = ConditionEvaluator(store, self.templates, now=now, rng=rng)
        self.bodies = NodeBodyLibrary(store, self.templates, rng=rng)
        self.actions = ActionDispatcher(self.templates, self.bodies, client_factory=client_factory, rng=rng)
        self.sleep = sleep
        self.obs = obs or Observability()

    async def execute(
        self,
        workflow: Workflow,
        event: MessageEvent,
        content: str,
        caps: ReplyCapabilities,
    ) -> ExecutionContext | None:
        """Run the workflow if one of its triggers matches ``content``.

        Returns the execution context, or ``None`` when nothing matched.
        """
        matched = first_matching_trigger(workflow.trigger_nodes(), content)
        if matched is None:
            return None

        trigger, captures = matched
        ctx = ExecutionContext(captures=captures)
        obs = self.obs.span(ctx.trace_id)
        obs.log_event(
            "workflow_matched",
            {"workflow_id": workflow.id, "trigger_id": trigger.id, "user_id": event.user_id},
        )
        await self._run_from_node(_Graph(workflow), trigger.id, event, content, ctx, caps, (), obs)
        return ctx

    async def execute_from_trigger(
        self,
        workflow: Workflow,
        event: MessageEvent,
        caps: ReplyCapabilities,
    ) -> ExecutionContext:
        """Enter the graph past trigger matching (scheduled execution).

        All ``output_1`` successors of every trigger node run against one
        shared context with empty content.
        """
        graph = _Graph(workflow)
        ctx = ExecutionContext()
        obs = self.obs.span(ctx.trace_id)
        for trigger in workflow.trigger_nodes():
            for next_id in graph.successors(trigger.id, "output_1"):
                await self._run_from_node(graph, next_id, event, "", ctx, caps, (trigger.id,), obs)
        return ctx

    async def _run_from_node(
        self,
        graph: _Graph,
        node_id: str,
        event: MessageEvent,
        content: str,
        ctx: ExecutionContext,
        caps: ReplyCapabilities,
        path: tuple[str, ...],
        obs: Observability,
    ) -> None:
        if node_id in path:
            raise WorkflowCycleError(
                f"Workflow '{graph.workflow.id}' revisits node '{node_id}' via {' -> '.join(path)}"
            )
        if len(path) >= MAX_TRAVERSAL_DEPTH:
            raise WorkflowCycleError(
                f"Workflow '{graph.workflow.id}' exceeded traversal depth {MAX_TRAVERSAL_DEPTH}"
            )

        node = graph.nodes.get(node_id)
        if node is None:
            logger.debug("Connection points at missing node '%s', branch ends", node_id)
            return

        logger.debug("Executing node %s (%s)", node.id, node.type)
        ctx.executed_nodes.append(node.id)
        try:
            proceed = await self._execute_node(node, event, content, ctx, caps)
        except Exception as exc:
            ctx.failed_nodes.append(node.id)
            obs.log_event(
                "node_failed",
                {
                    "workflow_id": graph.workflow.id,
                    "node_id": node.id,
                    "node_type": node.type,
                    "error": str(exc),
                },
                level="WARNING",
            )
            return

        slot = "output_1" if proceed else "output_2"
        for next_id in graph.successors(node.id, slot):
            await self._run_from_node(graph, next_id, event, content, ctx, caps, path + (node.id,), obs)

    async def _execute_node(
        self,
        node: WorkflowNode,
        event: MessageEvent,
        content: str,
        ctx: ExecutionContext,
        caps: ReplyCapabilities,
    ) -> bool:
        """Run the node body; the return value selects the output slot."""
        if isinstance(node, TriggerNode):
            return True
        if isinstance(node, ConditionNode):
            return self.conditions.evaluate(node.data, event, content, ctx)
        if isinstance(node, ActionNode):
            await self.actions.dispatch(node.data, event, content, ctx, caps)
        elif isinstance(node, DelayNode):
            await self.sleep(max(0.0, min(node.data.seconds, MAX_DELAY_SECONDS)))
        elif isinstance(node, SetVarNode):
            self.bodies.set_var(node.data, event, content, ctx)
        elif isinstance(node, StorageNode):
            self.bodies.storage(node.data, event, content, ctx)
        elif isinstance(node, GlobalStorageNode):
            self.bodies.global_storage(node.data, event, content, ctx)
        elif isinstance(node, LeaderboardNode):
            self.bodies.leaderboard(node.data, event, content, ctx)
        elif isinstance(node, ListRandomNode):
            self.bodies.list_random(node.data, event, content, ctx)
        return True


class WorkflowDispatcher:
    """Routes one inbound message through the enabled workflows."""

    def __init__(
        self,
        runner: GraphRunner,
        load_workflows: Callable[[], list[Workflow]],
        enabled: bool = True,
    ):
        self.runner = runner
        self.load_workflows = load_workflows
        self.enabled = enabled

    async def handle_message(self, event: MessageEvent, caps: ReplyCapabilities) -> bool:
        """Returns True when a workflow ran and stopped propagation."""
        if not self.enabled:
            return False

        content = (event.raw_message or "").strip()
        if not content:
            return False

        for workflow in self.load_workflows():
            if not workflow.enabled:
                continue
            try:
                ctx = await self.runner.execute(workflow, event, content, caps)
            except Exception as exc:
                self.runner.obs.log_event(
                    "workflow_failed",
                    {"workflow_id": workflow.id, "name": workflow.name, "error": str(exc)},
                    level="ERROR",
                )
                continue
            if ctx is None:
                continue
            logger.debug("Workflow [%s] executed: %s", workflow.name, ctx.executed_nodes)
            if workflow.stop_propagation:
                return True
        return False
