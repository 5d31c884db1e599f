"""
Flow Executor - walks a flow graph for one session.

The executor:
1. Runs the node's executor and merges its variables into the session
2. Suspends the session at nodes that need a reply (or in AI mode)
3. Selects outgoing edges by the node's branching policy
4. Commits the new position and recurses into each selected target
5. Finalizes the session once the walk unwinds (re-arm or complete)

A later message resumes a waiting session from the edge-selection step of
the node it waits at; that node is not executed again.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from chatflow.config import EngineConfig
from chatflow.errors import (
    ChatflowError,
    FlowExecutionError,
    NodeExecutionError,
    SessionNotFoundError,
)
from chatflow.executors.ai import takeover_settings, task_handles
from chatflow.graph.conditions import NO_HANDLES, YES_HANDLES, evaluate_condition_node
from chatflow.graph.edge import EdgeSpec, FlowSpec
from chatflow.graph.node import (
    SELECTION_NODE_TYPES,
    ExecutionContext,
    NodeSpec,
    NodeType,
    keyword_handle,
    requires_user_input,
)
from chatflow.graph.user_input import ExpectedInputType, expected_input_type, match_waiting_input
from chatflow.observability import set_trace_context
from chatflow.runtime.concurrency import TraversalGuard
from chatflow.runtime.trigger import TriggerConfig
from chatflow.schemas.session_state import (
    FlowSessionState,
    NodeExecutionStatus,
    NodeState,
    SessionStatus,
    WaitingContext,
    utc_now,
)

if TYPE_CHECKING:
    from chatflow.executors.registry import NodeExecutorRegistry
    from chatflow.runtime.session_manager import SessionManager
    from chatflow.schemas.messaging import (
        ChannelConnection,
        Contact,
        Conversation,
        InboundMessage,
    )

# Context keys describing the inbound turn; never merged into session variables
SYSTEM_VARIABLES = frozenset({"message", "contact", "conversation"})


@dataclass
class ExecutionResult:
    """Outcome of one traversal run."""

    session_id: str
    status: SessionStatus
    path: list[str] = field(default_factory=list)  # Node IDs entered in this run
    waiting_node_id: str | None = None
    error: str | None = None

    @property
    def is_waiting(self) -> bool:
        return self.status == SessionStatus.WAITING


class FlowExecutor:
    """
    Executes flow graphs against sessions.

    Example:
        executor = FlowExecutor(session_manager, NodeExecutorRegistry.with_defaults(dispatcher))

        result = await executor.execute(
            flow, session_id, flow.trigger_nodes()[0].id,
            message, conversation, contact, channel_connection,
        )
        if result.is_waiting:
            ...  # the next message goes through executor.resume()
    """

    def __init__(
        self,
        session_manager: "SessionManager",
        registry: "NodeExecutorRegistry",
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sessions = session_manager
        self.registry = registry
        self.config = config or EngineConfig()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # === ENTRY POINTS ===

    async def execute(
        self,
        flow: FlowSpec,
        session_id: str,
        start_node_id: str,
        message: "InboundMessage",
        conversation: "Conversation",
        contact: "Contact",
        channel_connection: "ChannelConnection",
    ) -> ExecutionResult:
        """
        Walk the flow starting at (and executing) start_node_id.

        Used for a freshly created session (start = trigger) and for a
        reused active session (start = its current node).

        Raises:
            FlowExecutionError: the session failed; it is already marked failed
        """
        session = await self._require_session(session_id)
        set_trace_context(session_id=session_id, flow_id=str(flow.id))
        ctx = self._build_context(session, message, conversation, contact, channel_connection)
        guard = TraversalGuard(max_depth=self.config.max_depth)

        node = flow.get_node(start_node_id)
        if node is None:
            raise FlowExecutionError(f"Start node '{start_node_id}' not in flow {flow.id}")

        self.logger.info(f"🚀 Session {session_id}: flow '{flow.name or flow.id}' from {node.id}")
        walk = self._step(flow, node, ctx, guard, session_id)
        return await self._run(flow, session_id, guard, walk)

    async def resume(
        self,
        flow: FlowSpec,
        session: FlowSessionState,
        message: "InboundMessage",
        conversation: "Conversation",
        contact: "Contact",
        channel_connection: "ChannelConnection",
    ) -> ExecutionResult | None:
        """
        Offer a message to a waiting session.

        Returns:
            The traversal result, or None when the message does not answer
            the waiting node (session left untouched)

        Raises:
            FlowExecutionError: the continued walk failed the session
        """
        if session.ai_session_active:
            return await self._resume_ai(
                flow, session, message, conversation, contact, channel_connection
            )

        node_id = session.waiting_context.node_id if session.waiting_context else None
        node = flow.get_node(node_id or session.current_node_id)
        if node is None:
            self.logger.warning(
                f"Session {session.session_id} waits at unknown node '{node_id}'; ignoring"
            )
            return None

        handles = {e.source_handle for e in flow.get_outgoing_edges(node.id) if e.source_handle}
        match = match_waiting_input(node, message, handles)
        if not match.matched:
            self.logger.debug(f"Reply does not answer '{node.id}' of session {session.session_id}")
            return None

        session_id = session.session_id
        set_trace_context(session_id=session_id, flow_id=str(flow.id), node_id=node.id)
        self.logger.info(
            f"🔄 Resuming session {session_id} at '{node.id}' (handle={match.handle})"
        )

        ctx = self._build_context(session, message, conversation, contact, channel_connection)
        ctx.variables.update(match.variables)
        ctx.selection = match.selection()
        guard = TraversalGuard(max_depth=self.config.max_depth)

        async def continue_walk() -> None:
            await self._merge_variables(session_id, ctx)
            state = session.node_states.setdefault(node.id, NodeState())
            state.selection = ctx.selection
            await self.sessions.update_session(
                session_id,
                status=SessionStatus.ACTIVE,
                waiting_context=None,
                node_states=session.node_states,
                user_interaction_count=session.user_interaction_count + 1,
            )
            await self._follow(flow, node, ctx, guard, session_id)

        return await self._run(flow, session_id, guard, continue_walk())

    async def _resume_ai(
        self,
        flow: FlowSpec,
        session: FlowSessionState,
        message: "InboundMessage",
        conversation: "Conversation",
        contact: "Contact",
        channel_connection: "ChannelConnection",
    ) -> ExecutionResult:
        """Every message in AI mode is an AI turn; the stop keyword or a task ends it."""
        session_id = session.session_id
        node = flow.get_node(session.ai_node_id)
        set_trace_context(session_id=session_id, flow_id=str(flow.id), node_id=session.ai_node_id)
        ctx = self._build_context(session, message, conversation, contact, channel_connection)
        guard = TraversalGuard(max_depth=self.config.max_depth)

        async def ai_turn() -> None:
            interactions = session.user_interaction_count + 1
            if node is None:
                self.logger.warning(f"AI node '{session.ai_node_id}' vanished; leaving AI mode")
                await self._leave_ai_mode(session_id, user_interaction_count=interactions)
                return

            stop_keyword = (session.ai_stop_keyword or "").strip().lower()
            if stop_keyword and (message.content or "").strip().lower() == stop_keyword:
                exit_handle = session.ai_exit_output_handle
                self.logger.info(f"🛑 Stop keyword ends AI mode of session {session_id}")
                await self._leave_ai_mode(session_id, user_interaction_count=interactions)
                edges = [
                    e
                    for e in flow.get_outgoing_edges(node.id)
                    if e.source_handle == exit_handle and e.condition_holds(ctx.variables)
                ]
                await self._follow_edges(flow, edges, ctx, guard, session_id)
                return

            await self._execute_node(flow, node, ctx, session_id)
            if self._halted(session_id):
                self.logger.info(f"⏹ Session {session_id} ended during the AI turn")
                return
            if ctx.triggered_tasks:
                self.logger.info(f"🤖 Tasks {ctx.triggered_tasks} end AI mode of {session_id}")
                await self._leave_ai_mode(session_id, user_interaction_count=interactions)
                await self._follow(flow, node, ctx, guard, session_id)
                return

            current = await self.sessions.update_session(
                session_id,
                user_interaction_count=interactions,
                waiting_context=WaitingContext(
                    node_id=node.id,
                    expected_input_type=ExpectedInputType.AI_CONVERSATION.value,
                    timestamp=self.clock(),
                ),
            )
            await self.sessions.renew_session_timeout(current)

        return await self._run(flow, session_id, guard, ai_turn())

    # === TRAVERSAL ===

    async def _run(
        self,
        flow: FlowSpec,
        session_id: str,
        guard: TraversalGuard,
        walk: Awaitable[None],
    ) -> ExecutionResult:
        """Run a walk, then fail or finalize the session."""
        try:
            await walk
        except Exception as e:
            error = e if isinstance(e, ChatflowError) else FlowExecutionError(str(e))
            await self._fail(session_id, error)
            if error is e:
                raise
            raise error from e
        return await self._finalize(flow, session_id, guard)

    async def _step(
        self,
        flow: FlowSpec,
        node: NodeSpec,
        ctx: ExecutionContext,
        guard: TraversalGuard,
        session_id: str,
    ) -> None:
        guard.enter(node.id)
        set_trace_context(node_id=node.id)
        self.logger.info(f"▶ Step {guard.depth}: {node.label} ({node.type})")

        await self._execute_node(flow, node, ctx, session_id)

        if self._halted(session_id):
            self.logger.info(f"⏹ Session {session_id} ended while '{node.id}' ran; halting")
            return

        if node.stops_execution:
            self.logger.info(f"⏹ '{node.id}' stops execution")
            await self.sessions.finish_session(session_id, SessionStatus.COMPLETED)
            return

        if requires_user_input(node):
            await self._suspend(session_id, node, expected_input_type(node))
            return

        if node.type == NodeType.AI_ASSISTANT and ctx.ai_takeover and not ctx.triggered_tasks:
            await self._enter_ai_mode(session_id, node, ctx.ai_takeover)
            return

        await self._follow(flow, node, ctx, guard, session_id)

    async def _execute_node(
        self,
        flow: FlowSpec,
        node: NodeSpec,
        ctx: ExecutionContext,
        session_id: str,
    ) -> None:
        """Dispatch to the node's executor and record the outcome on the session."""
        ctx.selection = None
        ctx.condition_result = None
        ctx.triggered_tasks = []
        ctx.ai_takeover = None

        session = await self._require_session(session_id)
        state = session.node_states.setdefault(node.id, NodeState())
        state.status = NodeExecutionStatus.RUNNING
        state.started_at = self.clock()
        state.completed_at = None
        state.error = None
        state.selection = None

        executor = self.registry.get(node.type)
        start = time.perf_counter()
        try:
            await executor.execute(
                node, ctx, ctx.conversation, ctx.contact, ctx.channel_connection
            )
        except Exception as e:
            state.status = NodeExecutionStatus.FAILED
            state.error = str(e)
            state.completed_at = self.clock()
            self.logger.error(f"   ✗ Failed: {node.id} ({node.type}): {e}")
            raise NodeExecutionError(node.id, str(node.type), e) from e
        latency_ms = int((time.perf_counter() - start) * 1000)

        await self._merge_variables(session_id, ctx)
        state.status = NodeExecutionStatus.COMPLETED
        state.completed_at = self.clock()
        state.execution_count += 1
        await self.sessions.update_session(
            session_id,
            node_states=session.node_states,
            node_execution_count=session.node_execution_count + 1,
        )
        self.logger.info(
            f"   ✓ {node.id} done",
            extra={
                "event": "node_completed",
                "node_type": str(node.type),
                "latency_ms": latency_ms,
            },
        )

    async def _follow(
        self,
        flow: FlowSpec,
        node: NodeSpec,
        ctx: ExecutionContext,
        guard: TraversalGuard,
        session_id: str,
    ) -> None:
        session = await self._require_session(session_id)
        edges = self.select_edges(flow, node, ctx, session)
        if not edges:
            self.logger.info(f"   → No eligible edges after '{node.id}'")
        await self._follow_edges(flow, edges, ctx, guard, session_id)

    async def _follow_edges(
        self,
        flow: FlowSpec,
        edges: list[EdgeSpec],
        ctx: ExecutionContext,
        guard: TraversalGuard,
        session_id: str,
    ) -> None:
        """Fan out sequentially while the session stays active."""
        for edge in edges:
            session = self.sessions.get_session(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                break

            target = flow.get_node(edge.target)
            if target is None:
                self.logger.warning(f"Edge {edge.id} points at unknown node '{edge.target}'")
                continue

            self.logger.info(
                f"   → Next: {target.label}",
                extra={"event": "edge_followed", "handle": edge.source_handle},
            )
            await self.sessions.update_session(
                session_id,
                current_node_id=target.id,
                execution_path=[*session.execution_path, target.id],
            )
            await self._step(flow, target, ctx, guard, session_id)

    def select_edges(
        self,
        flow: FlowSpec,
        node: NodeSpec,
        ctx: ExecutionContext,
        session: FlowSessionState,
    ) -> list[EdgeSpec]:
        """
        Outgoing edges to follow from node, by its branching policy.

        Args:
            flow: Flow being walked
            node: Node whose outgoing edges are considered
            ctx: Context after the node ran (or after its reply matched)
            session: Session, for the recorded selection of waiting nodes

        Returns:
            Edges in priority order whose declarative condition holds
        """
        outgoing = flow.get_outgoing_edges(node.id)
        if not outgoing:
            return []

        if node.type == NodeType.CONDITION:
            selected = self._condition_edges(node, ctx, outgoing)
        elif node.type in SELECTION_NODE_TYPES or node.keyword_triggers_enabled:
            selection = ctx.selection
            if selection is None and node.id in session.node_states:
                selection = session.node_states[node.id].selection
            wanted = {v for v in (selection or {}).values() if v}
            selected = [e for e in outgoing if e.source_handle in wanted]
        elif node.type == NodeType.TRIGGER:
            selected = self._trigger_edges(ctx, outgoing)
        elif node.type == NodeType.AI_ASSISTANT:
            selected = self._ai_edges(node, ctx, outgoing)
        else:
            selected = outgoing

        return [e for e in selected if e.condition_holds(ctx.variables)]

    def _condition_edges(
        self, node: NodeSpec, ctx: ExecutionContext, outgoing: list[EdgeSpec]
    ) -> list[EdgeSpec]:
        result = ctx.condition_result
        if result is None:
            result = evaluate_condition_node(
                node.data, ctx.message, ctx.variables, ctx.contact, self.clock()
            )
        branch_handles = YES_HANDLES | NO_HANDLES
        if not any(e.source_handle in branch_handles for e in outgoing):
            self.logger.warning(
                f"Condition '{node.id}' has no yes/no handles; following all {len(outgoing)} edges"
            )
            return outgoing
        wanted = YES_HANDLES if result else NO_HANDLES
        return [e for e in outgoing if e.source_handle in wanted]

    def _trigger_edges(self, ctx: ExecutionContext, outgoing: list[EdgeSpec]) -> list[EdgeSpec]:
        untagged = [e for e in outgoing if not (e.source_handle or "").startswith("keyword-")]
        keyword = ctx.message.matched_keyword
        if not keyword or ctx.message.skip_keyword_evaluation:
            return untagged
        handle = keyword_handle(keyword)
        tagged = [e for e in outgoing if e.source_handle == handle]
        return tagged or untagged

    def _ai_edges(
        self, node: NodeSpec, ctx: ExecutionContext, outgoing: list[EdgeSpec]
    ) -> list[EdgeSpec]:
        if ctx.triggered_tasks:
            return [e for e in outgoing if e.source_handle in ctx.triggered_tasks]
        reserved = task_handles(node)
        settings = takeover_settings(node)
        if settings:
            reserved.add(settings["exit_handle"])
        return [e for e in outgoing if e.source_handle not in reserved]

    # === STATE TRANSITIONS ===

    async def _suspend(self, session_id: str, node: NodeSpec, kind: ExpectedInputType) -> None:
        session = await self.sessions.update_session(
            session_id,
            status=SessionStatus.WAITING,
            waiting_context=WaitingContext(
                node_id=node.id, expected_input_type=kind.value, timestamp=self.clock()
            ),
        )
        self.sessions.event_bus.emit_session_waiting(
            session_id,
            node_id=node.id,
            flow_id=session.flow_id,
            conversation_id=session.conversation_id,
            expected_input_type=kind,
        )
        self.logger.info(f"⏸ Session {session_id} waiting at '{node.id}' ({kind})")

    async def _enter_ai_mode(
        self, session_id: str, node: NodeSpec, settings: dict[str, str]
    ) -> None:
        session = await self.sessions.update_session(
            session_id,
            status=SessionStatus.WAITING,
            ai_session_active=True,
            ai_node_id=node.id,
            ai_stop_keyword=settings["stop_keyword"],
            ai_exit_output_handle=settings["exit_handle"],
            waiting_context=WaitingContext(
                node_id=node.id,
                expected_input_type=ExpectedInputType.AI_CONVERSATION.value,
                timestamp=self.clock(),
            ),
        )
        self.sessions.event_bus.emit_session_waiting(
            session_id,
            node_id=node.id,
            flow_id=session.flow_id,
            conversation_id=session.conversation_id,
            expected_input_type=ExpectedInputType.AI_CONVERSATION,
        )
        self.logger.info(f"🤖 Session {session_id} handed to AI node '{node.id}'")

    async def _leave_ai_mode(self, session_id: str, **changes: Any) -> None:
        await self.sessions.update_session(
            session_id,
            status=SessionStatus.ACTIVE,
            ai_session_active=False,
            ai_node_id=None,
            ai_stop_keyword=None,
            ai_exit_output_handle=None,
            waiting_context=None,
            **changes,
        )

    async def _finalize(
        self, flow: FlowSpec, session_id: str, guard: TraversalGuard
    ) -> ExecutionResult:
        """Re-arm a persistent trigger or complete the session once the walk unwinds."""
        session = self.sessions.get_session(session_id)
        if session is not None and session.status == SessionStatus.ACTIVE:
            trigger = flow.get_node(session.trigger_node_id)
            if trigger is not None and TriggerConfig.from_node(trigger).enable_session_persistence:
                session = await self.sessions.update_session(
                    session_id, current_node_id=trigger.id, status=SessionStatus.ACTIVE
                )
                self.logger.info(f"🔄 Session {session_id} re-armed at trigger '{trigger.id}'")
            else:
                session = await self.sessions.finish_session(session_id, SessionStatus.COMPLETED)
                self.logger.info(f"✓ Session {session_id} complete: {' → '.join(guard.path)}")

        if session is None:
            session = await self.sessions.load_session(session_id)
        if session is None:
            return ExecutionResult(
                session_id=session_id, status=SessionStatus.COMPLETED, path=list(guard.path)
            )

        return ExecutionResult(
            session_id=session_id,
            status=session.status,
            path=list(guard.path),
            waiting_node_id=(
                session.waiting_context.node_id if session.waiting_context else None
            ),
            error=session.last_error_message,
        )

    async def _fail(self, session_id: str, error: Exception) -> None:
        session = self.sessions.get_session(session_id)
        if session is None or session.status.is_terminal:
            return
        self.logger.error(f"❌ Session {session_id} failed: {error}")
        await self.sessions.finish_session(session_id, SessionStatus.FAILED, error=str(error))

    # === HELPERS ===

    def _halted(self, session_id: str) -> bool:
        """True once the session left memory or reached a terminal status (timeout, reset)."""
        session = self.sessions.get_session(session_id)
        return session is None or session.status.is_terminal

    async def _require_session(self, session_id: str) -> FlowSessionState:
        session = await self.sessions.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _merge_variables(self, session_id: str, ctx: ExecutionContext) -> None:
        changes = {k: v for k, v in ctx.variables.items() if k not in SYSTEM_VARIABLES}
        await self.sessions.set_variables(session_id, changes)

    def _build_context(
        self,
        session: FlowSessionState,
        message: "InboundMessage",
        conversation: "Conversation",
        contact: "Contact",
        channel_connection: "ChannelConnection",
    ) -> ExecutionContext:
        variables: dict[str, Any] = dict(session.variables)
        variables["message"] = {
            "id": message.id,
            "content": message.content or "",
            "type": message.message_type,
            "media_url": message.media_url,
        }
        variables["contact"] = {
            "id": contact.id,
            "name": contact.name,
            "phone": contact.phone,
            "email": contact.email,
            **contact.attributes,
        }
        variables["conversation"] = {"id": conversation.id, "channel": conversation.channel_type}
        return ExecutionContext(
            session_id=session.session_id,
            flow_id=session.flow_id,
            message=message,
            conversation=conversation,
            contact=contact,
            channel_connection=channel_connection,
            variables=variables,
        )
