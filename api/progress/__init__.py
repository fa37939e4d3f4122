"""Live progress and cancellation channel for pipeline runs."""

from api.progress.channel import ProgressHub, SessionChannel, iter_events

__all__ = ["ProgressHub", "SessionChannel", "iter_events"]
