"""
Usage telemetry for hosted language-model endpoints.
"""

__version__ = "0.1.0"
