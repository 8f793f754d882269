"""
Shared State Module for system_utils package.

It imports NOTHING from the system_utils package to prevent circular imports.
"""
from __future__ import annotations
import asyncio
from typing import Set

# Strong references to fire-and-forget tasks so they are not garbage collected
# mid-flight, and so shutdown can cancel them.
_background_tasks: Set[asyncio.Task] = set()
