from sqlalchemy import Boolean, Column, Float, Integer, Text
from sqlalchemy.orm import relationship
from fieldservice.database import Base


class JobSeries(Base):
    __tablename__ = "job_series"

    id = Column(Text, primary_key=True)
    tenant_id = Column(Text, nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    customer_id = Column(Text)
    customer_name = Column(Text)
    priority = Column(Text, nullable=False, default="medium")
    estimated_cost = Column(Float)
    assigned_to = Column(Text)
    service_type = Column(Text)

    is_recurring = Column(Boolean, nullable=False, default=False)
    rrule = Column(Text, nullable=False)
    start_date = Column(Text, nullable=False)  # YYYY-MM-DD, civil
    local_start_time = Column(Text, nullable=False)  # HH:MM:SS, civil
    duration_minutes = Column(Integer, nullable=False)
    timezone = Column(Text, nullable=False)  # IANA name
    until_date = Column(Text)  # exclusive, civil

    # Every rule instant strictly before this has been persisted.
    last_generated_until = Column(Text)
    active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False)

    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)

    occurrences = relationship(
        "JobOccurrence",
        back_populates="series",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __mapper_args__ = {"version_id_col": version}
