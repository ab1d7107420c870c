from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store refused a write that would break an account or session invariant.

    ``field`` names the unique column that collided (``username``, ``email``
    or ``access_token_hash``); it is None for missing-row failures such as a
    session bound to a deleted account.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.account_id = account_id
        self.session_id = session_id

    @property
    def detail(self) -> Dict[str, Any]:
        """Non-empty identifying attributes, as returned in error envelopes."""
        return {
            key: value
            for key, value in (
                ("field", self.field),
                ("account_id", self.account_id),
                ("session_id", self.session_id),
            )
            if value is not None
        }


__all__ = ["ConstraintViolation"]
