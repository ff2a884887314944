"""
Runs Module - Black Box Interface

Purpose: Persist pipeline definitions and run records
Interface: PipelineStore.register()/get(), RunStore.create_run()/get_run()/save_result()
Hidden: Redis key layout, TTL handling, event publishing

Replaceable with any backend that stores JSON documents.
"""

from .store import EVENTS_CHANNEL, PipelineNotFoundError, PipelineStore, RunStore

__all__ = ["EVENTS_CHANNEL", "PipelineNotFoundError", "PipelineStore", "RunStore"]
