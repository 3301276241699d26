import enum

from .base import (
    Base, Column, String, Integer, Boolean, DateTime, Text, ForeignKey,
    relationship, enum_type, new_id,
)


class JobStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class JobExecution(Base):
    __tablename__ = "job_executions"

    id = Column(String(255), primary_key=True, default=new_id)
    job_name = Column(String(100), index=True, nullable=False)
    description = Column(String(500), nullable=True)
    status = Column(enum_type(JobStatus), nullable=False, default=JobStatus.RUNNING, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    items_processed = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    stack_trace = Column(Text, nullable=True)
    manually_triggered = Column(Boolean, nullable=False, default=False)
    triggered_by = Column(String(100), nullable=True)
    metadata_json = Column(Text, nullable=True)

    failures = relationship(
        "JobExecutionFailure",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="JobExecutionFailure.created_at",
    )


class JobExecutionFailure(Base):
    """批次内单个租户的失败明细。"""

    __tablename__ = "job_execution_failures"

    id = Column(String(255), primary_key=True, default=new_id)
    execution_id = Column(String(255), ForeignKey("job_executions.id"), index=True, nullable=False)
    tenant_id = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    stack_trace = Column(Text, nullable=True)
    created_at = Column(DateTime)

    execution = relationship("JobExecution", back_populates="failures")
