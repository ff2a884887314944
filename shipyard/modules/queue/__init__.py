"""
Queue Module - Black Box Interface

Purpose: Queue pipeline runs and enforce per-pipeline concurrency limits
Interface: enqueue(), pop(), remove(), acquire_slot(), release_slot()
Hidden: Queue implementation, slot bookkeeping, metrics

Can be replaced with RabbitMQ, Kafka, or any message queue.
"""

from .queue import RunQueue

__all__ = ["RunQueue"]
