"""
Core modules for Minute Guard.

This package contains usage recording, limit policy evaluation,
threshold detection and alert dispatch.
"""
