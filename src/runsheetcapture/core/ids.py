from __future__ import annotations

import uuid


def new_uuid() -> str:
    """Generate a new UUID4 as a string."""
    return str(uuid.uuid4())


def new_job_id() -> str:
    """Generate an opaque analysis job identifier."""
    return f"analysis_{uuid.uuid4().hex}"
