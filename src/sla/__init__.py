"""
SLA Engine Module
=================

Bounded context for service level agreement tracking and compliance.

Responsibilities:
- Register SLA definitions and poll their metrics
- Aggregate measurements into windowed metrics with compliance and trend
- Detect breaches, escalate them and notify through configured channels
- Score compliance and grade it
- Analyze history for trends, seasonality, anomalies and predictions
- Persist engine state and hot-reload engine configuration
"""

__version__ = "1.0.0"
