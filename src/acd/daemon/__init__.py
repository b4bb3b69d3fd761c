"""Daemon supervision (CLI side) and the daemon runtime (server side)."""

from .pidfile import DaemonRecord, PidRegistry

__all__ = ["DaemonRecord", "PidRegistry"]
