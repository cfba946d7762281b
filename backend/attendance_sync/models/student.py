from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from sqlalchemy.sql import func

from attendance_sync.core.database import Base


class Student(Base):
    """A locally enrolled student. Only these students receive synced attendance."""

    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String(50), unique=True, index=True, nullable=False)  # SIS identifier
    school_code = Column(String(20), nullable=False)
    school_year = Column(String(9), nullable=False)  # "2024-2025"
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    grade_level = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('idx_student_school_year', school_code, school_year),
    )
