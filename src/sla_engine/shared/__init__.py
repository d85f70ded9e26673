"""
Shared Kernel Module
====================

Generic infrastructure used by every bounded context of the service:
structured logging and HTTP middleware.

DO NOT add SLA business logic to the shared kernel.
"""
