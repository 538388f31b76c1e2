"""shellmate: a terminal coding assistant that runs model-requested shell commands."""

from .session import Result, Session

__all__ = ["Session", "Result"]
