"""
Flow Engine - the message-processing entrypoint.

One ``FlowEngine`` owns everything a host application needs to run flows:
session manager, trigger resolver, message deduplication, per-conversation
locking, the flow executor and the expiry sweep. Hosts construct it
explicitly and feed it every inbound message through ``process_message``.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from chatflow.config import EngineConfig
from chatflow.errors import ChatflowError
from chatflow.executors.base import AIResponder, ChannelDispatcher, Translator
from chatflow.executors.registry import NodeExecutorRegistry
from chatflow.graph.edge import FlowSpec
from chatflow.graph.executor import ExecutionResult, FlowExecutor
from chatflow.graph.node import NodeSpec
from chatflow.observability import clear_trace_context, set_trace_context
from chatflow.runtime.concurrency import ConversationLocks, MessageDeduplicator
from chatflow.runtime.event_bus import EventBus
from chatflow.runtime.session_manager import SessionManager
from chatflow.runtime.trigger import TriggerConfig, TriggerResolver, is_hard_reset
from chatflow.schemas.messaging import ChannelConnection, Contact, Conversation, InboundMessage
from chatflow.schemas.session_state import SessionStatus, utc_now
from chatflow.storage.flow_provider import FlowProvider
from chatflow.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """What happened to one inbound message."""

    handled: bool = False
    session_ids: list[str] = field(default_factory=list)
    duplicate: bool = False
    reason: str | None = None  # e.g. "resumed", "triggered", "bot_disabled"
    results: list[ExecutionResult] = field(default_factory=list)


class FlowEngine:
    """
    Routes inbound messages into flow sessions.

    Example:
        engine = FlowEngine(
            store=FileSessionStore(Path("./sessions")),
            flow_provider=InMemoryFlowProvider.from_file(Path("flow.json"), channels=[1]),
            dispatcher=my_whatsapp_dispatcher,
        )
        engine.start()

        result = await engine.process_message(message, conversation, contact, connection)

        await engine.stop()
    """

    def __init__(
        self,
        store: SessionStore,
        flow_provider: FlowProvider,
        dispatcher: ChannelDispatcher,
        registry: NodeExecutorRegistry | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        ai_responder: AIResponder | None = None,
        translator: Translator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the engine.

        Args:
            store: Session persistence
            flow_provider: Source of flow definitions
            dispatcher: Outbound channel messaging
            registry: Node executors (defaults to the built-ins)
            event_bus: Session event fan-out (a private one by default)
            config: Engine configuration (read from ~/.chatflow by default)
            http_client: Shared client for HTTP request / webhook nodes
            ai_responder: AI provider bridge for AI assistant nodes
            translator: Translation backend for translation nodes
            clock: Time source, injectable for tests
        """
        self.config = config or EngineConfig()
        self.flow_provider = flow_provider
        self.dispatcher = dispatcher
        self.event_bus = event_bus or EventBus(max_history=self.config.event_history_size)

        self.sessions = SessionManager(
            store, flow_provider, event_bus=self.event_bus, config=self.config, clock=clock
        )
        self.resolver = TriggerResolver(self.sessions)
        self.registry = registry or NodeExecutorRegistry.with_defaults(
            dispatcher,
            http_client=http_client,
            ai_responder=ai_responder,
            translator=translator,
            config=self.config,
            clock=clock,
        )
        self.executor = FlowExecutor(self.sessions, self.registry, config=self.config, clock=clock)
        self.deduplicator = MessageDeduplicator(retention=self.config.dedup_retention)
        self.locks = ConversationLocks()

    # === LIFECYCLE ===

    def start(self) -> None:
        """Start the expiry sweep. Requires a running event loop."""
        self.sessions.start()
        logger.info("Flow engine started")

    async def stop(self) -> None:
        """Stop the sweep, cancel expiry timers and drain pending events."""
        await self.sessions.stop()
        await self.event_bus.drain()
        logger.info("Flow engine stopped")

    # === MESSAGE PIPELINE ===

    async def process_message(
        self,
        message: InboundMessage,
        conversation: Conversation,
        contact: Contact,
        channel_connection: ChannelConnection,
    ) -> ProcessingResult:
        """
        Process one inbound message.

        Node failures never propagate out of this call: the affected session
        is marked failed and the error is logged.
        """
        clear_trace_context()
        set_trace_context(conversation_id=str(conversation.id), message_id=message.id)

        async with self.deduplicator.claim(conversation.id, message.id) as first:
            if not first:
                logger.info(f"Duplicate message {message.id} skipped")
                return ProcessingResult(duplicate=True, reason="duplicate")

            async with self.locks.hold(conversation.id):
                try:
                    return await self._process(message, conversation, contact, channel_connection)
                except Exception as e:
                    logger.error(f"❌ Failed to process message {message.id}: {e}", exc_info=True)
                    return ProcessingResult(reason="error")

    async def _process(
        self,
        message: InboundMessage,
        conversation: Conversation,
        contact: Contact,
        channel_connection: ChannelConnection,
    ) -> ProcessingResult:
        try:
            flows = await self.flow_provider.get_flows_for_channel(channel_connection.id)
        except Exception as e:
            logger.error(f"Failed to load flows for channel {channel_connection.id}: {e}")
            flows = []

        if await self._handle_hard_reset(flows, message, conversation, contact, channel_connection):
            return ProcessingResult(handled=True, reason="hard_reset")

        if conversation.bot_disabled:
            logger.info(f"Bot disabled for conversation {conversation.id}; message ignored")
            return ProcessingResult(reason="bot_disabled")

        resumed = await self._resume_waiting(message, conversation, contact, channel_connection)
        if resumed is not None:
            return resumed

        return await self._match_triggers(flows, message, conversation, contact, channel_connection)

    async def _handle_hard_reset(
        self,
        flows: list[FlowSpec],
        message: InboundMessage,
        conversation: Conversation,
        contact: Contact,
        channel_connection: ChannelConnection,
    ) -> bool:
        config = next(
            (
                c
                for flow in flows
                for c in (TriggerConfig.from_node(t) for t in flow.trigger_nodes())
                if is_hard_reset(c, message)
            ),
            None,
        )
        if config is None:
            return False

        live = await self.sessions.live_sessions_for_conversation(conversation.id)
        for session in live:
            await self.sessions.abandon_session(session.session_id)
        conversation.bot_disabled = False
        logger.info(
            f"🔄 Hard reset of conversation {conversation.id}: {len(live)} session(s) abandoned"
        )

        await self.dispatcher.send_message(
            channel_connection, conversation, contact, config.hard_reset_confirmation_message
        )
        return True

    async def _resume_waiting(
        self,
        message: InboundMessage,
        conversation: Conversation,
        contact: Contact,
        channel_connection: ChannelConnection,
    ) -> ProcessingResult | None:
        """Offer the message to waiting sessions, most recent first; first taker wins."""
        live = await self.sessions.live_sessions_for_conversation(conversation.id, contact.id)
        for session in (s for s in live if s.status == SessionStatus.WAITING):
            flow = await self._get_flow(session.flow_id)
            if flow is None:
                logger.warning(
                    f"Flow {session.flow_id} of waiting session {session.session_id} is gone"
                )
                continue

            try:
                result = await self.executor.resume(
                    flow, session, message, conversation, contact, channel_connection
                )
            except ChatflowError as e:
                logger.error(f"Session {session.session_id} failed while resuming: {e}")
                return ProcessingResult(
                    handled=True, session_ids=[session.session_id], reason="resumed"
                )

            if result is not None:
                return ProcessingResult(
                    handled=True,
                    session_ids=[session.session_id],
                    reason="resumed",
                    results=[result],
                )
        return None

    async def _match_triggers(
        self,
        flows: list[FlowSpec],
        message: InboundMessage,
        conversation: Conversation,
        contact: Contact,
        channel_connection: ChannelConnection,
    ) -> ProcessingResult:
        """Cold trigger matching: the first matching trigger of every flow runs."""
        outcome = ProcessingResult(reason="no_match")

        for flow in flows:
            for trigger in flow.trigger_nodes():
                message.matched_keyword = None
                message.skip_keyword_evaluation = False
                matched = await self.resolver.matches_trigger_with_session(
                    trigger, message, conversation, contact, channel_connection
                )
                if not matched:
                    continue

                session_id, result = await self._start_or_continue(
                    flow, trigger, message, conversation, contact, channel_connection
                )
                if session_id is not None:
                    outcome.handled = True
                    outcome.reason = "triggered"
                    outcome.session_ids.append(session_id)
                if result is not None:
                    outcome.results.append(result)
                break

        return outcome

    async def _start_or_continue(
        self,
        flow: FlowSpec,
        trigger: NodeSpec,
        message: InboundMessage,
        conversation: Conversation,
        contact: Contact,
        channel_connection: ChannelConnection,
    ) -> tuple[str | None, ExecutionResult | None]:
        """
        Continue the reusable session of a matched trigger or start a new one.

        Returns:
            (session id, traversal result); (None, None) when a waiting
            session owns the trigger and is left untouched
        """
        session = await self.resolver.find_reusable_session(trigger, conversation, contact)

        if session is not None:
            if session.status == SessionStatus.WAITING:
                logger.debug(
                    f"Session {session.session_id} is waiting at "
                    f"'{session.current_node_id}'; trigger {trigger.id} left untouched"
                )
                return None, None
            session_id = session.session_id
            start_node_id = session.current_node_id or trigger.id
            logger.info(f"Continuing session {session_id} from '{start_node_id}'")
        else:
            for stale in await self.sessions.live_sessions_for_conversation(
                conversation.id, contact.id
            ):
                if stale.trigger_node_id == trigger.id:
                    await self.sessions.abandon_session(stale.session_id)

            session_id = await self.sessions.create_session(
                flow_id=flow.id,
                conversation_id=conversation.id,
                contact_id=contact.id,
                trigger_node_id=trigger.id,
                trigger_config=TriggerConfig.from_node(trigger),
                company_id=flow.company_id or conversation.company_id,
            )
            start_node_id = trigger.id

        try:
            result = await self.executor.execute(
                flow, session_id, start_node_id, message, conversation, contact, channel_connection
            )
        except ChatflowError as e:
            logger.error(f"Session {session_id} failed: {e}")
            return session_id, None
        return session_id, result

    async def _get_flow(self, flow_id) -> FlowSpec | None:
        try:
            return await self.flow_provider.get_flow(flow_id)
        except Exception as e:
            logger.error(f"Failed to load flow {flow_id}: {e}")
            return None
