"""cachemgr - operation orchestration and live log monitoring for a caching proxy."""

__version__ = "0.4.0"
