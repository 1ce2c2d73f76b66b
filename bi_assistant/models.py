import uuid
from sqlalchemy import Column, Text, Integer, Float, Boolean, TIMESTAMP, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from bi_assistant.utils import utcnow

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")

def new_id() -> str:
    return uuid.uuid4().hex

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"


class QueueItem(Base):
    __tablename__ = "message_queue"
    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Text, nullable=False)
    phone_number = Column(Text, nullable=False)
    message_content = Column(Text, nullable=False)
    conversation = Column(JSONType, nullable=False, default=list)
    respond_with_audio = Column(Boolean, nullable=False, default=False)
    connection_id = Column(Text, nullable=True)
    dataset_id = Column(Text, nullable=True)
    system_prompt = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=QUEUE_PENDING)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    error_message = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_message_queue_drain", "status", "next_retry_at", "created_at"),
    )


class Alert(Base):
    __tablename__ = "alerts"
    id = Column(Text, primary_key=True, default=new_id)
    tenant_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    connection_id = Column(Text, nullable=True)
    dataset_id = Column(Text, nullable=True)
    dax_query = Column(Text, nullable=True)
    message_template = Column(Text, nullable=True)
    condition = Column(Text, nullable=True)
    threshold = Column(Float, nullable=True)
    check_times = Column(JSONType, nullable=False, default=list)
    check_days_of_week = Column(JSONType, nullable=False, default=list)
    check_days_of_month = Column(JSONType, nullable=False, default=list)
    phone_numbers = Column(JSONType, nullable=False, default=list)
    group_ids = Column(JSONType, nullable=False, default=list)
    is_enabled = Column(Boolean, nullable=False, default=True)
    last_triggered_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_checked_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class AlertHistory(Base):
    __tablename__ = "alert_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Text, nullable=False, index=True)
    triggered_at = Column(TIMESTAMP(timezone=True), nullable=False)
    trigger_type = Column(Text, nullable=False)
    alert_value = Column(Text, nullable=True)
    alert_message = Column(Text, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)
    recipients_reached = Column(Integer, nullable=False, default=0)


class QueryLearningRecord(Base):
    __tablename__ = "query_learning"
    id = Column(Integer, primary_key=True, autoincrement=True)
    dataset_id = Column(Text, nullable=False)
    tenant_id = Column(Text, nullable=False)
    user_question = Column(Text, nullable=False)
    question_intent = Column(Text, nullable=False)
    dax_query = Column(Text, nullable=False)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    result_rows = Column(Integer, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_query_learning_lookup", "dataset_id", "question_intent", "success"),
    )


# Rows below are owned by the admin layer; the pipeline only reads them,
# except whatsapp_messages which it appends to.

class Connection(Base):
    __tablename__ = "powerbi_connections"
    id = Column(Text, primary_key=True, default=new_id)
    tenant_id = Column(Text, nullable=False)
    directory_tenant_id = Column(Text, nullable=False)
    client_id = Column(Text, nullable=False)
    client_secret = Column(Text, nullable=False)
    workspace_id = Column(Text, nullable=False)


class MessagingInstance(Base):
    __tablename__ = "whatsapp_instances"
    id = Column(Text, primary_key=True, default=new_id)
    tenant_id = Column(Text, nullable=True)
    instance_name = Column(Text, nullable=False)
    api_url = Column(Text, nullable=False)
    api_key = Column(Text, nullable=False)
    is_connected = Column(Boolean, nullable=False, default=True)


class AuthorizedNumber(Base):
    __tablename__ = "authorized_numbers"
    id = Column(Text, primary_key=True, default=new_id)
    tenant_id = Column(Text, nullable=False)
    phone_number = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=True)
    instance_id = Column(Text, nullable=True)
    connection_id = Column(Text, nullable=True)
    dataset_id = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class ModelContext(Base):
    __tablename__ = "model_contexts"
    id = Column(Text, primary_key=True, default=new_id)
    tenant_id = Column(Text, nullable=False)
    connection_id = Column(Text, nullable=True)
    dataset_id = Column(Text, nullable=True)
    context_content = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Message(Base):
    __tablename__ = "whatsapp_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Text, nullable=False)
    phone_number = Column(Text, nullable=False)
    direction = Column(Text, nullable=False)
    message_content = Column(Text, nullable=False)
    sender_name = Column(Text, nullable=True)
    instance_id = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_whatsapp_messages_thread", "tenant_id", "phone_number", "created_at"),
    )
