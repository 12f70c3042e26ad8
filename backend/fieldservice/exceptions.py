class SchedulingError(Exception):
    """Base class for errors raised by the scheduling core."""


class InvalidRuleError(SchedulingError):
    """Recurrence rule text could not be parsed or is not supported."""


class InvalidTimeError(SchedulingError):
    """A civil date/time/zone combination has no usable UTC instant."""


class InvalidRangeError(SchedulingError):
    pass


class ConcurrentMaterializationConflict(SchedulingError):
    def __init__(self, series_id: str):
        self.series_id = series_id
        super().__init__(f"Concurrent materialization detected for series {series_id}")


class SeriesNotFound(SchedulingError):
    def __init__(self, series_id: str):
        self.series_id = series_id
        super().__init__(f"Job series {series_id} not found")


class OccurrenceNotFound(SchedulingError):
    def __init__(self, occurrence_id: str):
        self.occurrence_id = occurrence_id
        super().__init__(f"Job occurrence {occurrence_id} not found")
