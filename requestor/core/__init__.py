"""Core primitives shared across all subsystems.

This module aggregates enums, common types, utility helpers and error classes
used by the market, activity and runtime packages. Higher level packages
import from here to avoid circular dependencies.
"""

from . import enums, errors, retry, time_utils, types

__all__ = ["enums", "errors", "retry", "time_utils", "types"]
