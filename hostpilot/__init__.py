"""hostpilot: let an agent drive a live host application, reversibly."""

from .report import AgentError, ConfigError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "Result", "Session"]
