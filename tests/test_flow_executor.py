"""Tests for graph traversal, suspension, resumption and AI mode."""

import pytest

from chatflow.config import EngineConfig
from chatflow.errors import CycleDetectedError, MaxDepthExceededError, NodeExecutionError
from chatflow.executors.base import AIReply
from chatflow.executors.registry import NodeExecutorRegistry
from chatflow.graph.executor import FlowExecutor
from chatflow.runtime.event_bus import EventType
from chatflow.runtime.session_manager import SessionManager
from chatflow.runtime.trigger import TriggerConfig
from chatflow.schemas.session_state import NodeExecutionStatus, SessionStatus

ONE_SHOT = {"enableSessionPersistence": False}


def n(node_id, node_type, **data):
    return {"id": node_id, "type": node_type, "data": data}


def menu_flow(flow_builder, trigger_data=ONE_SHOT):
    return flow_builder(
        [
            n("trigger", "trigger", **trigger_data),
            n(
                "menu",
                "quickReply",
                message="Pick one",
                options=[
                    {"text": "Sales", "value": "sales"},
                    {"text": "Support", "value": "support"},
                ],
            ),
            n("sales", "message", message="Sales here"),
            n("support", "message", message="Support here"),
        ],
        [("trigger", "menu"), ("menu", "sales", "option-1"), ("menu", "support", "option-2")],
    )


class ScriptedResponder:
    """AI responder returning canned replies in order."""

    def __init__(self, *replies: AIReply):
        self.replies = list(replies)
        self.calls = 0

    async def respond(self, node, context):
        self.calls += 1
        return self.replies.pop(0)


@pytest.fixture
def make_walker(manager, dispatcher, clock):
    def _make(config=None, **registry_kwargs) -> FlowExecutor:
        registry = NodeExecutorRegistry.with_defaults(dispatcher, **registry_kwargs)
        return FlowExecutor(manager, registry, config=config, clock=clock)

    return _make


@pytest.fixture
def walker(make_walker) -> FlowExecutor:
    return make_walker()


@pytest.fixture
def start(manager, flows, make_message, conversation, contact, channel):
    """Create a session at the flow's first trigger and walk it."""

    async def _start(walker, flow, content="hi", **message_fields):
        flows.add_flow(flow)
        trigger = flow.trigger_nodes()[0]
        session_id = await manager.create_session(
            flow.id,
            conversation.id,
            contact.id,
            trigger.id,
            trigger_config=TriggerConfig.from_node(trigger),
        )
        message = make_message(content, **message_fields)
        return await walker.execute(
            flow, session_id, trigger.id, message, conversation, contact, channel
        )

    return _start


@pytest.fixture
def reply(manager, make_message, conversation, contact, channel):
    """Offer a message to the live waiting session of the conversation."""

    async def _reply(walker, flow, content, sessions=None):
        sessions = sessions or manager
        live = await sessions.live_sessions_for_conversation(conversation.id, contact.id)
        waiting = next(s for s in live if s.status == SessionStatus.WAITING)
        return await walker.resume(
            flow, waiting, make_message(content), conversation, contact, channel
        )

    return _reply


class TestLinearTraversal:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, walker, start, manager, dispatcher, flow_builder):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("welcome", "message", message="Welcome {{contact.name}}"),
                n("bye", "message", message="Bye"),
            ],
            [("trigger", "welcome"), ("welcome", "bye")],
        )

        result = await start(walker, flow)

        assert result.status == SessionStatus.COMPLETED
        assert result.path == ["trigger", "welcome", "bye"]
        assert dispatcher.texts == ["Welcome Ada", "Bye"]
        assert manager.get_session(result.session_id) is None

        stored = await manager.load_session(result.session_id)
        assert stored.execution_path == ["trigger", "welcome", "bye"]
        assert stored.node_execution_count == 3
        assert stored.node_states["bye"].status == NodeExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_system_variables_are_not_persisted(
        self, walker, start, manager, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("set", "action", variableName="greeted", value="yes"),
            ],
            [("trigger", "set")],
        )

        result = await start(walker, flow)

        stored = await manager.load_session(result.session_id)
        assert stored.variables == {"greeted": "yes"}

    @pytest.mark.asyncio
    async def test_fan_out_follows_priority_order(
        self, walker, start, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("a", "message", message="A"),
                n("b", "message", message="B"),
            ],
            [
                {"id": "to-a", "source": "trigger", "target": "a"},
                {"id": "to-b", "source": "trigger", "target": "b", "priority": 1},
            ],
        )

        result = await start(walker, flow)

        assert dispatcher.texts == ["B", "A"]
        assert result.path == ["trigger", "b", "a"]

    @pytest.mark.asyncio
    async def test_fan_out_stops_once_session_waits(
        self, walker, start, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("menu", "quickReply", message="Pick one", options=["Sales", "Support"]),
                n("late", "message", message="Never sent"),
            ],
            [("trigger", "menu"), ("trigger", "late")],
        )

        result = await start(walker, flow)

        assert result.is_waiting
        assert dispatcher.texts == ["Pick one\n1. Sales\n2. Support"]

    @pytest.mark.asyncio
    async def test_edge_conditions_filter_targets(self, walker, start, dispatcher, flow_builder):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("set", "action", actions=[{"variable": "plan", "value": "pro"}]),
                n("pro", "message", message="Pro perks"),
                n("free", "message", message="Upgrade?"),
            ],
            [
                ("trigger", "set"),
                {
                    "id": "e-pro",
                    "source": "set",
                    "target": "pro",
                    "condition": {"variable": "plan", "value": "pro"},
                },
                {
                    "id": "e-free",
                    "source": "set",
                    "target": "free",
                    "condition": {"variable": "plan", "value": "free"},
                },
            ],
        )

        await start(walker, flow)

        assert dispatcher.texts == ["Pro perks"]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_persistent_trigger_re_arms(self, walker, start, manager, flow_builder):
        flow = flow_builder(
            [n("trigger", "trigger"), n("hello", "message", message="Hello")],
            [("trigger", "hello")],
        )

        result = await start(walker, flow)

        assert result.status == SessionStatus.ACTIVE
        session = manager.get_session(result.session_id)
        assert session.current_node_id == "trigger"
        assert manager.expiry.has_timer(result.session_id)

    @pytest.mark.asyncio
    async def test_re_armed_session_runs_again(
        self, walker, start, manager, dispatcher, flow_builder, make_message,
        conversation, contact, channel,
    ):
        flow = flow_builder(
            [n("trigger", "trigger"), n("hello", "message", message="Hello")],
            [("trigger", "hello")],
        )
        first = await start(walker, flow)

        second = await walker.execute(
            flow, first.session_id, "trigger", make_message("again"), conversation, contact,
            channel,
        )

        assert second.session_id == first.session_id
        assert dispatcher.texts == ["Hello", "Hello"]


class TestBranching:
    @pytest.fixture
    def condition_flow(self, flow_builder):
        return flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("refund?", "condition", condition="Contains('refund')"),
                n("refunds", "message", message="Refund desk"),
                n("other", "message", message="General desk"),
            ],
            [("trigger", "refund?"), ("refund?", "refunds", "yes"), ("refund?", "other", "no")],
        )

    @pytest.mark.asyncio
    async def test_condition_true(self, walker, start, dispatcher, condition_flow):
        await start(walker, condition_flow, "I want a refund")
        assert dispatcher.texts == ["Refund desk"]

    @pytest.mark.asyncio
    async def test_condition_false(self, walker, start, dispatcher, condition_flow):
        await start(walker, condition_flow, "Where is my parcel?")
        assert dispatcher.texts == ["General desk"]

    @pytest.mark.asyncio
    async def test_condition_without_branch_handles_follows_all(
        self, walker, start, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("check", "condition", condition="Contains('refund')"),
                n("a", "message", message="A"),
                n("b", "message", message="B"),
            ],
            [("trigger", "check"), ("check", "a"), ("check", "b")],
        )

        await start(walker, flow, "nothing relevant")

        assert dispatcher.texts == ["A", "B"]

    @pytest.mark.asyncio
    async def test_trigger_keyword_edge(self, walker, start, dispatcher, flow_builder):
        flow = flow_builder(
            [
                n("trigger", "trigger", conditionType="multiple_keywords", **ONE_SHOT),
                n("demo", "message", message="Booking a demo"),
                n("default", "message", message="Hi!"),
            ],
            [("trigger", "demo", "keyword-demo"), ("trigger", "default")],
        )

        await start(walker, flow, "demo please", matched_keyword="demo")
        await start(walker, flow, "hello")

        assert dispatcher.texts == ["Booking a demo", "Hi!"]

    @pytest.mark.asyncio
    async def test_trigger_keyword_skipped_for_reused_session(
        self, walker, start, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("demo", "message", message="Booking a demo"),
                n("default", "message", message="Hi!"),
            ],
            [("trigger", "demo", "keyword-demo"), ("trigger", "default")],
        )

        await start(walker, flow, "demo", matched_keyword="demo", skip_keyword_evaluation=True)

        assert dispatcher.texts == ["Hi!"]


class TestWaitingAndResume:
    @pytest.mark.asyncio
    async def test_suspends_at_quick_reply(
        self, walker, start, manager, event_bus, dispatcher, flow_builder
    ):
        result = await start(walker, menu_flow(flow_builder))

        assert result.is_waiting
        assert result.waiting_node_id == "menu"
        session = manager.get_session(result.session_id)
        assert session.waiting_context.expected_input_type == "selection"
        assert dispatcher.sent[0]["options"]["interactive"]["type"] == "quick_reply"

        await event_bus.drain()
        waiting = event_bus.get_history(EventType.SESSION_WAITING)[0]
        assert waiting.node_id == "menu"
        assert waiting.data == {"expected_input_type": "selection"}

    @pytest.mark.asyncio
    async def test_numeric_reply_follows_option(
        self, walker, start, reply, manager, dispatcher, flow_builder
    ):
        flow = menu_flow(flow_builder)
        first = await start(walker, flow)

        result = await reply(walker, flow, "2")

        assert result.status == SessionStatus.COMPLETED
        assert result.path == ["support"]
        assert dispatcher.texts[1:] == ["Support here"]

        stored = await manager.load_session(first.session_id)
        assert stored.node_states["menu"].selection == {"handle": "option-2", "option_id": None}
        assert stored.variables["selectedOption"] == "support"
        assert stored.user_interaction_count == 1
        assert stored.execution_path == ["trigger", "menu", "support"]

    @pytest.mark.asyncio
    async def test_unmatched_reply_leaves_session_untouched(
        self, walker, start, reply, manager, dispatcher, flow_builder
    ):
        flow = menu_flow(flow_builder)
        first = await start(walker, flow)

        assert await reply(walker, flow, "9") is None

        session = manager.get_session(first.session_id)
        assert session.status == SessionStatus.WAITING
        assert session.user_interaction_count == 0
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_keyword_reply(self, walker, start, reply, dispatcher, flow_builder):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n(
                    "promo",
                    "message",
                    message="Ask about pricing",
                    enableKeywordTriggers=True,
                    keywords=[{"value": "Pricing"}],
                ),
                n("price", "message", message="It is 10 EUR"),
                n("help", "message", message="Try 'pricing'"),
            ],
            [
                ("trigger", "promo"),
                ("promo", "price", "keyword-pricing"),
                ("promo", "help", "no-match"),
            ],
        )
        await start(walker, flow)

        await reply(walker, flow, "pricing please")

        assert dispatcher.texts == ["Ask about pricing", "It is 10 EUR"]

    @pytest.mark.asyncio
    async def test_input_captures_reply(
        self, walker, start, reply, manager, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("ask", "input", question="Your email?", variableName="email"),
                n("thanks", "message", message="Thanks, {{email}}"),
            ],
            [("trigger", "ask"), ("ask", "thanks")],
        )
        first = await start(walker, flow)
        assert manager.get_session(first.session_id).waiting_context.expected_input_type == (
            "free_text"
        )

        await reply(walker, flow, "ada@example.com")

        assert dispatcher.texts == ["Your email?", "Thanks, ada@example.com"]

    @pytest.mark.asyncio
    async def test_resume_after_restart_matches_in_memory(
        self, walker, start, reply, store, flows, event_bus, clock, dispatcher, flow_builder
    ):
        flow = menu_flow(flow_builder)
        first = await start(walker, flow)
        await walker.sessions.stop()

        restarted = SessionManager(store, flows, event_bus=event_bus, clock=clock)
        registry = NodeExecutorRegistry.with_defaults(dispatcher)
        fresh_walker = FlowExecutor(restarted, registry, clock=clock)

        result = await reply(fresh_walker, flow, "Support", sessions=restarted)

        assert result.session_id == first.session_id
        assert result.status == SessionStatus.COMPLETED
        assert dispatcher.texts[1:] == ["Support here"]
        stored = await restarted.load_session(first.session_id)
        assert stored.variables["selectedOptionText"] == "Support"
        await restarted.stop()


class TestFailures:
    @pytest.mark.asyncio
    async def test_cycle_fails_session(self, walker, start, manager, event_bus, flow_builder):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("a", "message", message="A"),
                n("b", "message", message="B"),
            ],
            [("trigger", "a"), ("a", "b"), ("b", "a")],
        )

        with pytest.raises(CycleDetectedError) as exc_info:
            await start(walker, flow)

        assert exc_info.value.path == ["trigger", "a", "b", "a"]
        await event_bus.drain()
        failed = event_bus.get_history(EventType.SESSION_FAILED)[0]
        stored = await manager.load_session(failed.session_id)
        assert stored.status == SessionStatus.FAILED
        assert "Cycle detected" in stored.last_error_message

    @pytest.mark.asyncio
    async def test_max_depth(self, make_walker, start, flow_builder):
        walker = make_walker(config=EngineConfig(max_depth=2))
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("a", "message", message="A"),
                n("b", "message", message="B"),
            ],
            [("trigger", "a"), ("a", "b")],
        )

        with pytest.raises(MaxDepthExceededError):
            await start(walker, flow)

    @pytest.mark.asyncio
    async def test_node_failure_marks_node_and_session(
        self, walker, start, manager, event_bus, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("photo", "image"),
                n("after", "message", message="Never sent"),
            ],
            [("trigger", "photo"), ("photo", "after")],
        )

        with pytest.raises(NodeExecutionError) as exc_info:
            await start(walker, flow)

        assert exc_info.value.node_id == "photo"
        assert dispatcher.sent == []
        await event_bus.drain()
        session_id = event_bus.get_history(EventType.SESSION_FAILED)[0].session_id
        stored = await manager.load_session(session_id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error_count == 1
        assert stored.node_states["photo"].status == NodeExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_session_expired_mid_node_stays_timed_out(
        self, start, manager, store, clock, dispatcher, flow_builder
    ):
        class ExpiringDispatcher(type(dispatcher)):
            """Times the conversation out while the question is being delivered."""

            async def send_message(self, *args, **kwargs):
                await super().send_message(*args, **kwargs)
                for session_id in list(manager.sessions):
                    await manager.expire_session(session_id)

        dispatcher = ExpiringDispatcher()
        walker = FlowExecutor(manager, NodeExecutorRegistry.with_defaults(dispatcher), clock=clock)
        flow = flow_builder(
            [
                n("trigger", "trigger"),
                n("ask", "input", question="Your email?", variableName="email"),
                n("thanks", "message", message="Thanks"),
            ],
            [("trigger", "ask"), ("ask", "thanks")],
        )

        result = await start(walker, flow)

        assert result.status == SessionStatus.TIMEOUT
        assert result.waiting_node_id is None
        assert dispatcher.texts == ["Your email?"]
        record = await store.get_session(result.session_id)
        assert record["status"] == "timeout"
        assert record["waiting_context"] is None
        assert await manager.live_sessions_for_conversation(42) == []

    @pytest.mark.asyncio
    async def test_bot_disable_stops_traversal(
        self, walker, start, conversation, dispatcher, flow_builder
    ):
        flow = flow_builder(
            [
                n("trigger", "trigger"),
                n("handoff", "botDisable", message="Connecting you to an agent"),
                n("after", "message", message="Never sent"),
            ],
            [("trigger", "handoff"), ("handoff", "after")],
        )

        result = await start(walker, flow)

        assert result.status == SessionStatus.COMPLETED
        assert conversation.bot_disabled is True
        assert dispatcher.texts == ["Connecting you to an agent"]


class TestAIMode:
    TASKS = [{"id": "book", "outputHandle": "task-book"}]

    def ai_flow(self, flow_builder):
        return flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("ai", "aiAssistant", enableTaskExecution=True, tasks=self.TASKS),
                n("bye", "message", message="Bye from the bot"),
                n("booking", "message", message="Opening the calendar"),
                n("next", "message", message="Moving on"),
            ],
            [
                ("trigger", "ai"),
                ("ai", "bye", "ai-stopped"),
                ("ai", "booking", "task-book"),
                ("ai", "next"),
            ],
        )

    @pytest.mark.asyncio
    async def test_takeover_keeps_session_waiting(
        self, make_walker, start, reply, manager, dispatcher, flow_builder
    ):
        responder = ScriptedResponder(AIReply(text="How can I help?"), AIReply(text="Sure"))
        walker = make_walker(ai_responder=responder)
        flow = self.ai_flow(flow_builder)

        first = await start(walker, flow)
        assert first.is_waiting
        session = manager.get_session(first.session_id)
        assert session.ai_session_active
        assert session.ai_stop_keyword == "stop"

        second = await reply(walker, flow, "what are your hours?")

        assert second.is_waiting
        assert responder.calls == 2
        assert dispatcher.texts == ["How can I help?", "Sure"]
        assert manager.get_session(first.session_id).user_interaction_count == 1

    @pytest.mark.asyncio
    async def test_stop_keyword_exits(
        self, make_walker, start, reply, manager, dispatcher, flow_builder
    ):
        responder = ScriptedResponder(AIReply(text="Hi"))
        walker = make_walker(ai_responder=responder)
        flow = self.ai_flow(flow_builder)
        first = await start(walker, flow)

        result = await reply(walker, flow, "  STOP ")

        assert result.status == SessionStatus.COMPLETED
        assert result.path == ["bye"]
        assert responder.calls == 1
        assert dispatcher.texts == ["Hi", "Bye from the bot"]
        stored = await manager.load_session(first.session_id)
        assert not stored.ai_session_active

    @pytest.mark.asyncio
    async def test_triggered_task_exits_through_task_edge(
        self, make_walker, start, reply, dispatcher, flow_builder
    ):
        responder = ScriptedResponder(
            AIReply(text="Hi"), AIReply(text="Let me book that", triggered_tasks=["book"])
        )
        walker = make_walker(ai_responder=responder)
        flow = self.ai_flow(flow_builder)
        await start(walker, flow)

        result = await reply(walker, flow, "book me for Monday")

        assert result.path == ["booking"]
        assert dispatcher.texts == ["Hi", "Let me book that", "Opening the calendar"]

    @pytest.mark.asyncio
    async def test_without_takeover_follows_plain_edges(
        self, make_walker, start, dispatcher, flow_builder
    ):
        walker = make_walker(ai_responder=ScriptedResponder(AIReply(text="One-off answer")))
        flow = flow_builder(
            [
                n("trigger", "trigger", **ONE_SHOT),
                n("ai", "aiAssistant", enableSessionTakeover=False),
                n("next", "message", message="Moving on"),
            ],
            [("trigger", "ai"), ("ai", "next")],
        )

        result = await start(walker, flow)

        assert result.status == SessionStatus.COMPLETED
        assert dispatcher.texts == ["One-off answer", "Moving on"]
