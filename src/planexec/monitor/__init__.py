"""Remote monitor for headless planexec sessions."""

from .server import create_app, run_server
from .state import MonitorSession, MonitorState

__all__ = ["MonitorSession", "MonitorState", "create_app", "run_server"]
