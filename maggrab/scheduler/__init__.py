"""
Maggrab Scheduler
=================

Long-running daemon that fires per-feed pipeline runs on their intervals.
"""

from .daemon import DaemonState, GrabberDaemon

__all__ = ["DaemonState", "GrabberDaemon"]
