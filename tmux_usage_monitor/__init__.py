"""
tmux Usage Monitor
==================

Shows Claude OAuth rate-limit usage (5-hour and 7-day windows) in a tmux
pane next to the agent you are working with.
"""
from __future__ import annotations

import logging

__version__ = '0.3.0'

logger = logging.getLogger('tmux_usage_monitor')
logger.addHandler(logging.NullHandler())
