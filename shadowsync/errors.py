# shadowsync/errors.py
"""
Error taxonomy shared by the shadow ledger, the mediator and the relay.

Recovery policy is keyed on the exception type:

  - AuthorizationError     fatal to the call, never retried automatically
  - ValidationError        fatal to the call, never resubmitted unchanged
  - SequenceConflictError  batch already reflected downstream; discard it
  - TransientIOError       keep the batch, retry on the next trigger
  - ConfigurationError     abort before entering the scheduling loop
"""

from __future__ import annotations

from typing import Optional


class ShadowSyncError(RuntimeError):
    pass


class AuthorizationError(ShadowSyncError):
    def __init__(self, message: str, *, caller: Optional[str] = None):
        super().__init__(message)
        self.caller = caller


class ValidationError(ShadowSyncError, ValueError):
    pass


class SequenceConflictError(ShadowSyncError):
    """Supplied sequence number is not strictly greater than the stored one."""

    def __init__(self, supplied: int, stored: int):
        super().__init__(
            f"sequence {supplied} is not greater than last processed block {stored}"
        )
        self.supplied = int(supplied)
        self.stored = int(stored)


class TransientIOError(ShadowSyncError):
    pass


class RpcError(TransientIOError):
    """JSON-RPC error reply from the primary endpoint."""

    def __init__(self, method: str, code: Optional[int], message: str):
        super().__init__(f"{method}: rpc error {code}: {message}")
        self.method = method
        self.code = code
        self.rpc_message = message

    @property
    def reverted(self) -> bool:
        return "revert" in (self.rpc_message or "").lower()


class ConfigurationError(ShadowSyncError):
    pass


__all__ = [
    "ShadowSyncError",
    "AuthorizationError",
    "ValidationError",
    "SequenceConflictError",
    "TransientIOError",
    "RpcError",
    "ConfigurationError",
]
