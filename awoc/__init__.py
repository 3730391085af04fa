"""
AWOC — Async Work Orchestration Core
======================================
Turns emitted events, manual requests and completed tasks into sandboxed
work executions, tracks their lifecycle and classifies their failures.
"""

__version__ = "0.1.0"
