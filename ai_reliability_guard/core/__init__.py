"""
Core modules for AI Reliability Guard.

This package contains retry, circuit breaker, timeout, fallback orchestration
and budget governance logic.
"""
