"""
SLA Application Layer
======================

Application services of the SLA engine.

Contains:
- Interfaces: Repository, config provider, data source, prediction and channel ports
- Tracking: SLA registry and metric calculation
- Breaches: Detection, escalation and lifecycle
- Scoring: Compliance scoring and grading
- Analysis: Historical analysis and predictions
- Orchestrator: Facade over the engine and owner of its loops

This layer depends on the domain layer and the port interfaces,
not on concrete repositories.
"""

from sla.application.interfaces import (
    ISLAStateRepository,
    ISLAConfigProvider,
    IDataSource,
    IPredictionModel,
    INotificationChannel,
    utc_now,
)
from sla.application.measurements import MeasurementStore, validate_measurement
from sla.application.tracking import SLARegistry, MetricCalculator
from sla.application.breaches import BreachDetector
from sla.application.notifications import NotificationDispatcher
from sla.application.scoring import ComplianceScorer, ScoringContext
from sla.application.analysis import AnalysisRequest, HistoricalAnalyzer
from sla.application.predictions import LinearTrendModel, MovingAverageModel
from sla.application.orchestrator import CalculationQueue, TrackingOrchestrator

__all__ = [
    # Interfaces
    "ISLAStateRepository",
    "ISLAConfigProvider",
    "IDataSource",
    "IPredictionModel",
    "INotificationChannel",
    "utc_now",
    # Services
    "MeasurementStore",
    "validate_measurement",
    "SLARegistry",
    "MetricCalculator",
    "BreachDetector",
    "NotificationDispatcher",
    "ComplianceScorer",
    "ScoringContext",
    "AnalysisRequest",
    "HistoricalAnalyzer",
    "LinearTrendModel",
    "MovingAverageModel",
    # Facade
    "CalculationQueue",
    "TrackingOrchestrator",
]
