"""Chatflow exception hierarchy."""


class ChatflowError(Exception):
    """Base exception for all chatflow errors."""


class FlowDefinitionError(ChatflowError):
    """A flow definition could not be parsed into a usable graph."""


class FlowExecutionError(ChatflowError):
    """A traversal could not continue; the owning session is failed."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class CycleDetectedError(FlowExecutionError):
    """A node was re-entered within a single traversal."""

    def __init__(self, node_id: str, path: list[str]):
        self.path = list(path)
        super().__init__(
            f"Cycle detected: node '{node_id}' already visited ({' -> '.join(path)})",
            node_id=node_id,
        )


class MaxDepthExceededError(FlowExecutionError):
    """A traversal went deeper than the configured maximum."""

    def __init__(self, node_id: str, max_depth: int):
        self.max_depth = max_depth
        super().__init__(
            f"Maximum traversal depth {max_depth} exceeded at node '{node_id}'",
            node_id=node_id,
        )


class NodeExecutionError(FlowExecutionError):
    """A node executor raised while running a node."""

    def __init__(self, node_id: str, node_type: str, cause: BaseException):
        self.node_type = node_type
        self.cause = cause
        super().__init__(f"Node '{node_id}' ({node_type}) failed: {cause}", node_id=node_id)


class NodeExecutorNotFoundError(ChatflowError):
    """No executor is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type '{node_type}'")


class SessionNotFoundError(ChatflowError):
    """A session id is unknown to both memory and the store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")
