"""Built-in steps shared by workflows."""

from .emit_event import emit_event_step
from .remote_query import use_remote_query_step

__all__ = ["emit_event_step", "use_remote_query_step"]
