"""
Core modules for AI Credit Guard.

This package contains credit costs, usage limits, message caps, the
request-scoped and process-wide caches, and the admission decision.
"""
