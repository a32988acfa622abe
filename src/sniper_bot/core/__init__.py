"""
Core - Orchestration of the exit engine and the acquisition path.

This module provides:
    - PositionMonitor: Fixed-cadence exit evaluation over held positions
    - MonitorConfig: Monitor cadence configuration
    - ScanReport: Per-cycle counters
    - AcquisitionHandler: PairCreated event -> snipe -> tracked position
    - AcquisitionConfig / AcquisitionOutcome
"""

from .acquisition import AcquisitionConfig, AcquisitionHandler, AcquisitionOutcome
from .position_monitor import MonitorConfig, PositionMonitor, ScanReport

__all__ = [
    "AcquisitionConfig",
    "AcquisitionHandler",
    "AcquisitionOutcome",
    "MonitorConfig",
    "PositionMonitor",
    "ScanReport",
]
