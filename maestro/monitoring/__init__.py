"""Run monitoring - loggers for wave and task events."""

from maestro.monitoring.loggers import (
    CompositeRunLogger,
    LoguruRunLogger,
    RichSummaryLogger,
    RunLogger,
)

__all__ = [
    "CompositeRunLogger",
    "LoguruRunLogger",
    "RichSummaryLogger",
    "RunLogger",
]
