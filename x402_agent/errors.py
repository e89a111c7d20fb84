"""
Exception hierarchy for the x402 agent.

Expected failures (bad payment, upstream 4xx, unparseable directive) are
returned as structured outcomes by the components. These exceptions cover
the cases that abort a pass or that callers must tell apart.
"""


class AgentError(Exception):
    """Base class for every error raised by the agent core."""


class ConfigurationError(AgentError):
    """Invalid or inconsistent environment configuration."""


class UnknownToolError(AgentError):
    def __init__(self, tool_id):
        super().__init__(f"Tool {tool_id} not found")
        self.tool_id = tool_id


class ModelServiceError(AgentError):
    """The language model could not be reached or returned garbage."""


class LedgerError(AgentError):
    """Transport or contract failure talking to the ledger."""


class DuplicateTaskError(LedgerError):
    """The validation registry already holds a record for this task id."""

    def __init__(self, task_id, message=None):
        super().__init__(message or f"Validation already recorded for task {task_id}")
        self.task_id = task_id


class ConfirmationTimeoutError(LedgerError):
    """A submitted transaction was not confirmed in time."""
