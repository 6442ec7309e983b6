from __future__ import annotations


class GenerationMismatch(Exception):
    """Compare-and-increment on a session lost: the presented generation is stale."""

    def __init__(self, session_id: str, expected: int, actual: int):
        super().__init__(
            f"session {session_id} is at generation {actual}, expected {expected}"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


__all__ = ["GenerationMismatch"]
