"""
Minute Guard: call-minute metering, limit policies and usage alerts.
"""

__version__ = "0.1.0"
