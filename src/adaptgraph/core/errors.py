"""AdaptGraph · Unified Error Hierarchy.

All custom exceptions inherit from AdaptGraphError, which carries an
error_code and optional details dict for programmatic handling.

Propagation rules:
  - Synthesis-time errors (GraphSynthesisParseError, UnknownNodeReferenceError)
    are always recovered by substituting a static fallback graph.
  - Execution-time errors (MissingRequiredInputError, NodeExecutionError)
    abort the whole run and are never recovered by the engine itself.

Usage::

    from adaptgraph.core.errors import MissingRequiredInputError

    raise MissingRequiredInputError("draft_email", "selected_messages")
"""

from __future__ import annotations


class AdaptGraphError(Exception):
    """Base exception for all AdaptGraph errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "ADAPTGRAPH_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigError(AdaptGraphError):
    """Configuration-related errors (loading, validation)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class LLMError(AdaptGraphError):
    """Completion service errors (timeouts, HTTP status, empty responses)."""

    def __init__(
        self,
        message: str,
        error_code: str = "LLM_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class MissingRequiredInputError(AdaptGraphError):
    """A node was invoked while one of its declared input keys was absent.

    Signals a graph-construction defect. Fatal for the run.
    """

    def __init__(self, node_id: str, key: str) -> None:
        super().__init__(
            f"Node '{node_id}' is missing required input '{key}'",
            error_code="MISSING_REQUIRED_INPUT",
            details={"node": node_id, "key": key},
        )
        self.node_id = node_id
        self.key = key


class UnknownNodeReferenceError(AdaptGraphError):
    """A graph references a node id that is not registered."""

    def __init__(self, node_id: str) -> None:
        super().__init__(
            f"Node '{node_id}' is not registered",
            error_code="UNKNOWN_NODE_REFERENCE",
            details={"node": node_id},
        )
        self.node_id = node_id


class GraphSynthesisParseError(AdaptGraphError):
    """The graph synthesis service returned a malformed response."""

    def __init__(
        self,
        message: str,
        error_code: str = "GRAPH_SYNTHESIS_PARSE_FAILURE",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class NodeExecutionError(AdaptGraphError):
    """Opaque failure raised by a node's own logic. Aborts the run."""

    def __init__(self, node_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Node '{node_id}' failed: {cause}",
            error_code="NODE_EXECUTION_FAILURE",
            details={"node": node_id, "cause": type(cause).__name__},
        )
        self.node_id = node_id
        self.cause = cause
