"""Runtime state for the serial ingest bridge."""

from .context import RuntimeState, create_runtime_state

__all__ = ["RuntimeState", "create_runtime_state"]
