"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA engine's bounded context: structured
logging, the in-process event bus and the Grafana metrics exporter.

DO NOT add SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
