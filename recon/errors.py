"""Error taxonomy for the reconciliation controller."""

from __future__ import annotations

from typing import Any, Optional


class ReconcileError(Exception):
    """Base exception for all controller errors."""
    pass


class ConfigError(ReconcileError):
    """Raised for invalid or unreadable controller configuration."""
    pass


class TopologyError(ReconcileError):
    """Raised for unknown nodes and illegal join-state transitions."""

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class TransientInfraError(ReconcileError):
    """Network blips, rate limits, unavailable resources. Safe to retry."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.attempts = attempts


class HandshakeTimeout(TransientInfraError):
    """Raised when a joining node never shows up Ready on the cluster API."""
    pass


class SpecValidationError(ReconcileError):
    """Raised for a workload spec that can never be applied as written."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value


class TokenError(ReconcileError):
    """Raised for join tokens that are unknown or bound elsewhere."""

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class TokenExpired(TokenError):
    pass


class TokenAlreadyUsed(TokenError):
    pass


class ConflictError(ReconcileError):
    """Applied generation moved between diff and apply."""

    def __init__(self, message: str, workload: Optional[str] = None, current_generation: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.workload = workload
        self.current_generation = current_generation


class Cancelled(ReconcileError):
    """Raised when a cancellation signal interrupts a long-running operation."""
    pass
