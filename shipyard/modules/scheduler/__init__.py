"""
Scheduler Module - Black Box Interface

Purpose: Accept run requests and start them within concurrency limits
Interface: submit(), dispatch_once(), cancel(), start(), stop()
Hidden: Dispatch loop, in-process task bookkeeping, stale slot recovery
"""

from .scheduler import Scheduler

__all__ = ["Scheduler"]
