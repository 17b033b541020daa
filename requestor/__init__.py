"""Top-level package for the yagna-style requestor.

Subpackages mirror the flow of a run: ``clients`` speak HTTP to the daemon,
``market`` negotiates an agreement, ``activity`` drives the execution and
``runtime`` ties them together. ``config``, ``core`` and ``telemetry`` are
shared by all of them.
"""

__all__: list[str] = []
