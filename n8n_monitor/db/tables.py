from datetime import timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from n8n_monitor.db.database import Base


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back timezone-aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Instance(Base):
    __tablename__ = "instances"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    api_key = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_check = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)

    workflows = relationship(
        "Workflow", back_populates="instance", cascade="all, delete-orphan"
    )
    executions = relationship(
        "Execution", back_populates="instance", cascade="all, delete-orphan"
    )


class Workflow(Base):
    __tablename__ = "workflows"
    __table_args__ = (
        UniqueConstraint("instance_id", "remote_id", name="uq_workflow_remote"),
    )

    id = Column(String, primary_key=True)
    instance_id = Column(
        String, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False
    )
    remote_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    last_sync = Column(UTCDateTime, nullable=True)
    last_execution = Column(UTCDateTime, nullable=True)

    instance = relationship("Instance", back_populates="workflows")
    executions = relationship("Execution", back_populates="workflow")
    error_counter = relationship(
        "WorkflowErrorCounter",
        back_populates="workflow",
        uselist=False,
        cascade="all, delete-orphan",
    )


class Execution(Base):
    __tablename__ = "executions"
    __table_args__ = (
        UniqueConstraint("instance_id", "remote_id", name="uq_execution_remote"),
    )

    id = Column(String, primary_key=True)
    instance_id = Column(
        String, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False
    )
    workflow_id = Column(
        String, ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True
    )
    remote_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    started_at = Column(UTCDateTime, nullable=True)
    finished_at = Column(UTCDateTime, nullable=True)
    data = Column(Text, nullable=True)

    instance = relationship("Instance", back_populates="executions")
    workflow = relationship("Workflow", back_populates="executions")


class WorkflowErrorCounter(Base):
    __tablename__ = "workflow_error_counters"

    id = Column(String, primary_key=True)
    workflow_id = Column(
        String,
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    consecutive_errors = Column(Integer, nullable=False, default=0)
    total_errors = Column(Integer, nullable=False, default=0)
    last_error_at = Column(UTCDateTime, nullable=True)
    last_success_at = Column(UTCDateTime, nullable=True)
    is_auto_deactivated = Column(Boolean, nullable=False, default=False)

    workflow = relationship("Workflow", back_populates="error_counter")


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    workflow_id = Column(String, nullable=True)
    instance_id = Column(String, nullable=True)
    execution_id = Column(String, nullable=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    meta = Column("metadata", Text, nullable=True)
    sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)


class UserSettings(Base):
    __tablename__ = "user_settings"

    user_id = Column(String, primary_key=True)
    notification_email = Column(String, nullable=True)
    notify_on_error = Column(Boolean, nullable=False, default=True)
    error_threshold = Column(Integer, nullable=False, default=1)
    notify_on_success = Column(Boolean, nullable=False, default=False)
    notify_on_warning = Column(Boolean, nullable=False, default=True)
    auto_deactivate_workflow = Column(Boolean, nullable=False, default=False)
    auto_deactivate_threshold = Column(Integer, nullable=False, default=3)
    push_notifications_enabled = Column(Boolean, nullable=False, default=True)
    email_notifications_enabled = Column(Boolean, nullable=False, default=False)


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    endpoint = Column(String, nullable=False, unique=True)
    p256dh = Column(String, nullable=False)
    auth = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False)
