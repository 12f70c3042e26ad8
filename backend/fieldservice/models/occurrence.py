from sqlalchemy import Column, Float, ForeignKey, Text
from sqlalchemy.orm import relationship
from fieldservice.database import Base


class JobOccurrence(Base):
    __tablename__ = "job_occurrences"

    id = Column(Text, primary_key=True)
    series_id = Column(Text, ForeignKey("job_series.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(Text, nullable=False)
    start_at = Column(Text, nullable=False)  # ISO UTC, trailing Z
    end_at = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="scheduled")
    priority = Column(Text, nullable=False, default="medium")
    assigned_to = Column(Text)
    actual_cost = Column(Float)
    completion_notes = Column(Text)
    override_title = Column(Text)
    override_description = Column(Text)
    override_estimated_cost = Column(Float)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)

    series = relationship("JobSeries", back_populates="occurrences")

    @property
    def display_title(self) -> str:
        return self.override_title or self.series.title

    @property
    def display_description(self) -> str | None:
        if self.override_description is not None:
            return self.override_description
        return self.series.description

    @property
    def display_estimated_cost(self) -> float | None:
        if self.override_estimated_cost is not None:
            return self.override_estimated_cost
        return self.series.estimated_cost
