"""
SLA Engine Module
=================

Bounded Context for SLA clocks and escalation.

Responsibilities:
- Compute first-response and resolution due dates over business hours and holidays
- Freeze and resume SLA clocks across pause statuses
- Detect warning and breach thresholds without double-firing
- Drive the multi-level escalation matrix (watchers, priority, reassignment, lock)
- Report compliance, MTTA and MTTR
"""

__version__ = "1.0.0"
