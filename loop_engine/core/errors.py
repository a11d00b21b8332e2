"""
Typed failures of the dosing algorithm.

Every error here is reported to the caller of the top-level recommendation
call; the algorithm never returns a partial result alongside one.
"""


class AlgorithmError(Exception):
    """Base class for failures that prevent a recommendation."""

    kind = "algorithmError"


class MissingGlucose(AlgorithmError):
    kind = "missingGlucose"

    def __init__(self, message: str = "At least one glucose sample is required to make a prediction"):
        super().__init__(message)


class GlucoseTooOld(AlgorithmError):
    kind = "glucoseTooOld"

    def __init__(self, latest, prediction_start, recency_interval):
        self.latest = latest
        self.prediction_start = prediction_start
        self.recency_interval = recency_interval
        super().__init__(
            f"Latest glucose at {latest.isoformat()} is older than "
            f"{recency_interval} relative to {prediction_start.isoformat()}"
        )


class TimelineCoverageError(AlgorithmError):
    """A schedule does not cover an instant the algorithm cannot do without."""

    kind = "timelineCoverage"


class BasalTimelineIncomplete(TimelineCoverageError):
    kind = "basalTimelineIncomplete"


class ScheduleGap(TimelineCoverageError):
    kind = "scheduleGap"

    def __init__(self, schedule: str, date):
        self.schedule = schedule
        self.date = date
        super().__init__(f"No {schedule} schedule segment covers {date.isoformat()}")


__all__ = [
    "AlgorithmError",
    "MissingGlucose",
    "GlucoseTooOld",
    "TimelineCoverageError",
    "BasalTimelineIncomplete",
    "ScheduleGap",
]
