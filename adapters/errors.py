"""Shared failure type for external collaborator adapters."""

from __future__ import annotations


class AdapterError(RuntimeError):
    """Typed adapter failure with retryability hint."""

    def __init__(self, message: str, *, adapter: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.adapter = adapter
        self.retryable = retryable
