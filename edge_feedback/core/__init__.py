"""Core mathematics for the Edge Feedback loop.

This package contains pure, storage-agnostic building blocks:

- ``stats_math``: bucketing hash, chi-square significance, drawdown
- ``platt``: Platt-scaling fit and apply
- ``bootstrap``: percentile bootstrap confidence intervals

Nothing in this package imports from ``edge_feedback.services`` or
``edge_feedback.models``.  All modules are unit-testable in isolation.
"""
