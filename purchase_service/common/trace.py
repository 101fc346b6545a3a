from __future__ import annotations

import uuid


def new_id() -> str:
    """Generate an opaque identifier (UUID4 hex, 32 chars)."""
    return uuid.uuid4().hex


def new_trace_id() -> str:
    """Generate trace_id (same format as IDs)."""
    return new_id()
