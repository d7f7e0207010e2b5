"""
Error taxonomy for the approval agent.

Policy violations are data (see ``models.Violation``), never exceptions.
Everything here either becomes a failed tool observation inside the
orchestration loop or an HTTP error at the API edge.
"""


class ApprovalFlowError(Exception):
    """Base class for all domain errors."""

    code = "approvalflow_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ParseError(ApprovalFlowError):
    """Model output could not be turned into an action."""

    code = "parse_error"


class UnknownToolError(ApprovalFlowError):
    """The model named a tool that is not in the catalog."""

    code = "unknown_tool"

    def __init__(self, name: str, available: list[str]):
        super().__init__(
            f"Unknown tool: {name}. Available tools: {', '.join(available)}",
            {"tool": name},
        )
        self.name = name


class ToolExecutionError(ApprovalFlowError):
    """A tool raised while executing."""

    code = "tool_execution_error"


class ToolValidationError(ToolExecutionError):
    """Tool arguments were missing or malformed. Raised before any side effect."""

    code = "invalid_arguments"


class ConfirmationRequiredError(ToolExecutionError):
    """A forced submission was attempted without a prior explicit confirmation."""

    code = "confirmation_required"


class NotFoundError(ApprovalFlowError):
    code = "not_found"


class AuthorizationError(ApprovalFlowError):
    """Caller tried to act on a record that belongs to someone else."""

    code = "forbidden"


class InvalidTransitionError(ApprovalFlowError):
    """A terminal request was sent back into a decision path."""

    code = "invalid_transition"


class IterationLimitExceeded(ApprovalFlowError):
    code = "iteration_limit"

    def __init__(self, max_iterations: int):
        super().__init__(
            f"Reached maximum of {max_iterations} reasoning iterations",
            {"max_iterations": max_iterations},
        )
        self.max_iterations = max_iterations


class ModelUnavailableError(ApprovalFlowError):
    """Inference call failed or the model circuit is open."""

    code = "model_unavailable"


class ReceiptExtractionError(ApprovalFlowError):
    code = "receipt_unreadable"


class UnsafeInputError(ValueError):
    """Raised by the input guard for prompt-injection attempts."""
