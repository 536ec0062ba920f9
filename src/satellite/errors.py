"""Error types shared by plugins and the process supervisor."""

from __future__ import annotations

from satellite.protocol.contracts import Code


class PluginError(RuntimeError):
    """Expected job failure that maps onto one terminal record."""

    def __init__(self, message: str, *, code: Code = 1) -> None:
        super().__init__(message)
        self.code = code


def describe_error(error: BaseException) -> str:
    """Human-readable error text, never empty."""

    message = str(error).strip()
    if not message:
        return type(error).__name__
    return message
