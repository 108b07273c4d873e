"""Jobflow - deferred job scheduler and multi-step workflow engine.

Schedules one-time and recurring units of work (outbound HTTP calls,
internal routines, sandboxed scripts), runs them under contention from
many concurrent pollers, retries them with exponential backoff, and
chains them into durable workflows that can pause and resume later.
"""

__version__ = "0.1.0"
