"""Services for the serial ingest bridge."""

from .pipeline import ForwardingPipeline
from .task_supervisor import supervise_task

__all__ = ["ForwardingPipeline", "supervise_task"]
