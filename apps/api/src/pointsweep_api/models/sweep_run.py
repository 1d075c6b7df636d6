from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, JSON, String, func

from pointsweep_api.db.base import Base


class SweepRunStatusEnum(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class SweepRun(Base):
    """One orchestrator execution against one prepare batch."""

    __tablename__ = "sweep_runs"

    id = Column(String(64), primary_key=True)
    batch_id = Column(String(64), ForeignKey("prepare_batches.id", ondelete="SET NULL"), nullable=True, index=True)
    merchant_filter = Column(String(64), nullable=True)
    triggered_by = Column(String(64), nullable=False, server_default="admin")
    status = Column(
        SqlEnum(
            SweepRunStatusEnum,
            name="sweep_run_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=SweepRunStatusEnum.RUNNING.value,
        default=SweepRunStatusEnum.RUNNING,
    )
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    merchants_processed = Column(Integer, nullable=False, server_default="0", default=0)
    orders_processed = Column(Integer, nullable=False, server_default="0", default=0)
    orders_confirmed = Column(Integer, nullable=False, server_default="0", default=0)
    orders_failed = Column(Integer, nullable=False, server_default="0", default=0)
    brokers_notified = Column(JSON, nullable=False, default=list)
    errors = Column(JSON, nullable=False, default=list)
