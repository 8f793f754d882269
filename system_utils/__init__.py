"""
System Utils Package

Shared runtime plumbing for Earshot:
    state.py      - Shared trackers (background tasks)
    helpers.py    - Thread executor and task helpers
"""

from .state import _background_tasks
from .helpers import (
    run_in_daemon_executor,
    shutdown_daemon_executor,
    create_tracked_task,
    cancel_background_tasks,
)

__all__ = [
    '_background_tasks',
    'run_in_daemon_executor',
    'shutdown_daemon_executor',
    'create_tracked_task',
    'cancel_background_tasks',
]
