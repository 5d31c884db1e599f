"""
Waiting-input protocol - what a suspended node expects from the contact.

When traversal suspends at a node (quick reply, poll, input, keyword-enabled
message) the session records a ``WaitingContext``. The next inbound message
is tested against the node's contract here:

- SELECTION: interactive reply id, 1-based option number, or option
  label/value (case-insensitive); the node's go-back value; otherwise the
  ``invalid-response`` port if the flow wired one
- KEYWORD: first configured keyword found in the reply, otherwise the
  ``no-match`` port if the flow wired one
- FREE_TEXT: always accepted
- AI_CONVERSATION: always accepted (the AI node handles the turn)

A successful match yields the edge handle to follow and the variables to
merge into the session. A failed match changes nothing.
"""

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from chatflow.graph.node import (
    GO_BACK_HANDLE,
    INVALID_RESPONSE_HANDLE,
    NO_MATCH_HANDLE,
    SELECTION_NODE_TYPES,
    NodeSpec,
    NodeType,
    keyword_handle,
    option_handle,
)

if TYPE_CHECKING:
    from chatflow.schemas.messaging import InboundMessage


class ExpectedInputType(StrEnum):
    """Type of input a waiting node expects."""

    SELECTION = "selection"  # Choose from numbered options
    KEYWORD = "keyword"  # Reply containing a configured keyword
    FREE_TEXT = "free_text"  # Any reply
    AI_CONVERSATION = "ai_conversation"  # Every reply is an AI turn


@dataclass
class SelectionOption:
    """One choosable option of a selection node."""

    index: int  # Zero-based
    label: str
    value: str
    option_id: str | None = None

    @property
    def handle(self) -> str:
        return option_handle(self.index)


@dataclass
class InputMatch:
    """Outcome of testing a reply against a waiting node."""

    matched: bool
    handle: str | None = None
    option_id: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def no_match(cls) -> "InputMatch":
        return cls(matched=False)

    def selection(self) -> dict[str, Any] | None:
        """The routing record stored on the node state."""
        if not self.matched or self.handle is None:
            return None
        return {"handle": self.handle, "option_id": self.option_id}


def expected_input_type(node: NodeSpec) -> ExpectedInputType:
    if node.type in SELECTION_NODE_TYPES:
        return ExpectedInputType.SELECTION
    if node.type == NodeType.AI_ASSISTANT:
        return ExpectedInputType.AI_CONVERSATION
    if node.keyword_triggers_enabled:
        return ExpectedInputType.KEYWORD
    return ExpectedInputType.FREE_TEXT


def _option_from(index: int, raw: Any) -> SelectionOption:
    if not isinstance(raw, dict):
        return SelectionOption(index=index, label=str(raw), value=str(raw))
    label = raw.get("text") or raw.get("title") or raw.get("label") or raw.get("value") or ""
    value = raw.get("value") or raw.get("payload") or raw.get("id") or label
    option_id = raw.get("id") or raw.get("payload")
    return SelectionOption(
        index=index,
        label=str(label),
        value=str(value),
        option_id=str(option_id) if option_id else None,
    )


def selection_options(node: NodeSpec) -> list[SelectionOption]:
    """Options of a selection node in display order."""
    data = node.data
    if node.type == NodeType.WHATSAPP_INTERACTIVE_LIST:
        raw_options = [
            row
            for section in data.get("sections") or []
            if isinstance(section, dict)
            for row in section.get("rows") or []
        ]
    elif node.type == NodeType.WHATSAPP_INTERACTIVE_BUTTONS:
        raw_options = data.get("buttons") or data.get("options") or []
    else:
        raw_options = data.get("options") or []
    return [_option_from(i, raw) for i, raw in enumerate(raw_options)]


def _normalize(text: str) -> str:
    return " ".join(text.strip().lower().split())


def _go_back_requested(node: NodeSpec, content: str) -> bool:
    if node.data.get("enableGoBack") is False:
        return False
    candidates = {node.data.get("goBackValue") or "go_back", node.data.get("goBackText")}
    return _normalize(content) in {_normalize(c) for c in candidates if c}


def match_selection(
    node: NodeSpec,
    message: "InboundMessage",
    outgoing_handles: set[str],
) -> InputMatch:
    """Match a reply against the options of a selection node."""
    content = (message.content or "").strip()
    options = selection_options(node)

    chosen: SelectionOption | None = None
    reply_id = message.interactive_reply_id
    if reply_id:
        chosen = next(
            (o for o in options if reply_id in (o.option_id, o.value, o.handle)),
            None,
        )
    if chosen is None and content.isdigit():
        index = int(content) - 1
        if 0 <= index < len(options):
            chosen = options[index]
    if chosen is None and content:
        normalized = _normalize(content)
        chosen = next(
            (o for o in options if normalized in (_normalize(o.label), _normalize(o.value))),
            None,
        )

    if chosen is not None:
        variables = {
            "selectedOptionIndex": chosen.index,
            "selectedOption": chosen.value,
            "selectedOptionText": chosen.label,
            "userResponse": content,
        }
        if node.data.get("variableName"):
            variables[str(node.data["variableName"])] = chosen.value
        return InputMatch(
            matched=True,
            handle=chosen.handle,
            option_id=chosen.option_id,
            variables=variables,
        )

    if GO_BACK_HANDLE in outgoing_handles and _go_back_requested(node, content):
        return InputMatch(matched=True, handle=GO_BACK_HANDLE, variables={"userResponse": content})

    if INVALID_RESPONSE_HANDLE in outgoing_handles:
        return InputMatch(
            matched=True,
            handle=INVALID_RESPONSE_HANDLE,
            variables={"userResponse": content},
        )

    return InputMatch.no_match()


def contains_keyword(content: str, keyword: str, case_sensitive: bool = False) -> bool:
    """Whole-word (or whole-phrase) occurrence of keyword in content."""
    keyword = keyword.strip()
    if not keyword:
        return False
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", content, flags) is not None


def find_keyword(node: NodeSpec, content: str) -> dict[str, Any] | None:
    """First configured keyword (declared order) present in content, honouring case flags."""
    for keyword in node.keywords:
        value = str(keyword.get("value") or keyword.get("text"))
        if contains_keyword(content, value, bool(keyword.get("caseSensitive"))):
            return keyword
    return None


def match_keyword_reply(
    node: NodeSpec,
    message: "InboundMessage",
    outgoing_handles: set[str],
) -> InputMatch:
    """Match a reply against a message/media node's keyword list."""
    content = (message.content or "").strip()
    keyword = find_keyword(node, content)
    if keyword is not None:
        value = str(keyword.get("value") or keyword.get("text")).strip()
        return InputMatch(
            matched=True,
            handle=keyword_handle(value),
            variables={"matchedKeyword": value, "userResponse": content},
        )
    if NO_MATCH_HANDLE in outgoing_handles:
        return InputMatch(matched=True, handle=NO_MATCH_HANDLE, variables={"userResponse": content})
    return InputMatch.no_match()


def match_free_text(node: NodeSpec, message: "InboundMessage") -> InputMatch:
    """Input nodes accept any reply."""
    content = message.content or ""
    variables: dict[str, Any] = {"userInput": content, "userResponse": content}
    if message.media_url:
        variables["userInputMediaUrl"] = message.media_url
    if node.data.get("variableName"):
        variables[str(node.data["variableName"])] = content
    return InputMatch(matched=True, variables=variables)


def match_waiting_input(
    node: NodeSpec,
    message: "InboundMessage",
    outgoing_handles: set[str],
) -> InputMatch:
    """Dispatch to the matcher for the node's expected input type."""
    kind = expected_input_type(node)
    if kind == ExpectedInputType.SELECTION:
        return match_selection(node, message, outgoing_handles)
    if kind == ExpectedInputType.KEYWORD:
        return match_keyword_reply(node, message, outgoing_handles)
    return match_free_text(node, message)
