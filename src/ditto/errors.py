from __future__ import annotations


class DittoError(RuntimeError):
    pass


class TransportError(DittoError):
    """Network failure, timeout or HTTP error status on an external call."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodeError(DittoError):
    pass


class ToolNotFound(DittoError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ToolInvocationError(DittoError):
    pass


class PlatformRejected(DittoError):
    """The chat platform answered with ok=false."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"{method} rejected: {error}")
        self.method = method
        self.error = error


class StreamEnded(TransportError):
    """The provider closed the event stream without a completion frame."""
