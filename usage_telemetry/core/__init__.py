"""
Core modules for usage telemetry.

This package contains record parsing, usage aggregation and the
ingestion pipeline.
"""
