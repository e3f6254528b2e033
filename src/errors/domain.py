"""Typed domain exceptions for service-layer failures.

These exceptions give callers (CLI commands, the operation facade) stronger
contracts than string matching on error messages.

Usage:
    # In service layer
    raise NotFoundError("Connection", connection_id)

    # In a CLI command
    try:
        connection = registry.get(connection_id)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., duplicate name)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure on operator input."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class DuplicateConnectionNameError(ConflictError):
    """Connection name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Connection '{name}' already exists")
        self.name = name


class UnknownOperationError(DomainError):
    """Operation name is not one of the registered sync operations."""

    def __init__(self, name: str, known: list[str]) -> None:
        super().__init__(
            f"Unknown operation '{name}'. Must be one of: {', '.join(known)}"
        )
        self.name = name
