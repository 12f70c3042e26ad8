from fieldservice.models.series import JobSeries
from fieldservice.models.occurrence import JobOccurrence

__all__ = ["JobSeries", "JobOccurrence"]
