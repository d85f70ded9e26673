"""
SLA Engine
==========

SLA clock and escalation engine for the retail-operations backend.
"""

__version__ = "1.0.0"
