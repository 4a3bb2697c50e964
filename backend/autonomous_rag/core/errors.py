"""
Error taxonomy for a single turn.

These are raised inside services and converted to ToolResult envelopes at the
executor / dispatcher boundary. None of them cross process().
"""


class AgentError(Exception):
    """Base class. str(exc) is safe to show to the user."""


class DecisionParseError(AgentError):
    """The model response held no usable JSON decision."""


class EntityNotFoundError(AgentError):
    def __init__(self, entity_name: str):
        self.entity_name = entity_name
        super().__init__(f"Model {entity_name} not found")


class UnknownFieldError(AgentError):
    """Aggregate field is neither a stored column nor a computed value."""

    def __init__(self, field: str, entity_name: str):
        self.field = field
        self.entity_name = entity_name
        super().__init__(
            f"Field '{field}' not found in database and no computed value '{field}' exists on {entity_name}"
        )


class PermissionDeniedError(AgentError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Permission denied: {operation}")
