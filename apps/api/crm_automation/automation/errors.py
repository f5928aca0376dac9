from __future__ import annotations


class AutomationError(Exception):
    """Base error for automation engine failures visible to callers."""


class AutomationNotFoundError(AutomationError):
    """Raised when a rule id is unknown for the requesting tenant."""

    def __init__(self, automation_id: str) -> None:
        self.automation_id = automation_id
        super().__init__(f"automation not found: {automation_id}")


class AutomationInactiveError(AutomationError):
    """Raised when a manual run targets a disabled rule."""

    def __init__(self, automation_id: str) -> None:
        self.automation_id = automation_id
        super().__init__(f"automation is not active: {automation_id}")


class ActionFailedError(AutomationError):
    """Raised by an action handler; the executor turns it into an ActionError."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind}: {message}")


class EntityNotFoundError(AutomationError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")
