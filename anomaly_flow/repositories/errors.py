"""
Store errors.
"""

from typing import Any


class RecordNotFound(LookupError):
    """Requested record does not exist."""

    def __init__(self, kind: str, record_id: Any):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")
