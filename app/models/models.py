# app/models/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Numeric, ForeignKey,
    CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from app.repo.db import Base
from app.utils.clock import utcnow
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


# === USERS ===
class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(Text)
    # старый баланс (до кошелька); читается только сверкой legacy vs wallet
    credits = Column(Integer, nullable=False, default=0)
    is_admin = Column(Integer, nullable=False, default=0)   # tinyint(1)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    wallet = relationship("Wallet", back_populates="user", uselist=False)


# === WALLET: permanent + bonus (с истечением) ===
class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("permanent_credits >= 0", name="ck_wallet_permanent_nonneg"),
        CheckConstraint("bonus_credits >= 0", name="ck_wallet_bonus_nonneg"),
    )
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    permanent_credits = Column(Integer, nullable=False, default=0)
    bonus_credits = Column(Integer, nullable=False, default=0)
    bonus_expires_at = Column(DateTime(timezone=True), nullable=True)
    plan_id = Column(String(20), nullable=False, default="free")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="wallet")


# === LEDGER: только append ===
class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        # одна запись на (тип, причина) — повторное начисление падает на уровне БД
        UniqueConstraint("ref_type", "ref_id", name="uq_ledger_ref"),
        Index("ix_ledger_user_created", "user_id", "created_at"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    delta_permanent = Column(Integer, nullable=False, default=0)
    delta_bonus = Column(Integer, nullable=False, default=0)
    reason = Column(Text, nullable=False)
    # purchase | render_spend | render_refund | batch_upfront | batch_refund | welcome_bonus | admin_adjustment
    ref_type = Column(String(32), nullable=False)
    ref_id = Column(String(128), nullable=False)
    balance_permanent_after = Column(Integer, nullable=False)
    balance_bonus_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# === CONSUMPTION: одна запись на платное действие ===
class ConsumptionRecord(Base):
    __tablename__ = "consumption_records"
    __table_args__ = (
        Index("ix_consumption_user_model_created", "user_id", "model_id", "created_at"),
    )
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    video_task_id = Column(String(36), nullable=True, index=True)
    model_id = Column(String(32), nullable=False)
    credits = Column(Integer, nullable=False)
    bonus_used = Column(Integer, nullable=False, default=0)
    permanent_used = Column(Integer, nullable=False, default=0)
    device_id = Column(String(128), nullable=True, index=True)
    ip_hash = Column(String(128), nullable=True, index=True)
    description = Column(Text)
    status = Column(String(20), nullable=False, default="completed")   # completed | refunded
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    refunded_at = Column(DateTime(timezone=True), nullable=True)


# === QUOTA LOCK: строка на (модель, аккаунт/устройство/ip) под FOR UPDATE ===
class QuotaLock(Base):
    __tablename__ = "quota_locks"
    key = Column(String(200), primary_key=True)   # model:kind:value
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# === RECHARGE: одна запись на попытку оплаты ===
class RechargeRecord(Base):
    __tablename__ = "recharge_records"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="usd")
    credits = Column(Integer, nullable=False, default=0)
    plan_id = Column(String(32), nullable=True)
    payment_method = Column(String(20), nullable=False, default="stripe")
    payment_id = Column(String(128), unique=True, nullable=False)    # checkout session / payment intent
    status = Column(String(20), nullable=False, default="pending")   # pending | completed | failed
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


# === VIDEO TASKS (одиночные и в составе batch) ===
class VideoTask(Base):
    __tablename__ = "video_tasks"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    grsai_task_id = Column(Text, nullable=True, index=True)   # внешний id задачи у Grsai
    model_id = Column(String(32), nullable=False)
    prompt = Column(Text)
    status = Column(String(20), nullable=False, default="pending")  # pending | processing | succeeded | failed
    progress = Column(Integer, nullable=False, default=0)
    video_url = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    consumption_id = Column(String(36), nullable=True)
    batch_job_id = Column(String(36), ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=True, index=True)
    batch_index = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)


# === BATCH JOBS (enterprise) ===
class BatchJob(Base):
    __tablename__ = "batch_jobs"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    model_id = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default="queued")   # queued | processing | completed | partial | failed
    total_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    cost_per_video = Column(Integer, nullable=False)
    credits_frozen = Column(Integer, nullable=False, default=0)
    credits_spent = Column(Integer, nullable=False, default=0)
    settlement_status = Column(String(20), nullable=False, default="pending")  # pending | finalized | refunded

    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(Text, nullable=True)
    webhook_status = Column(String(20), nullable=False, default="unset")  # unset | pending | sent | failed
    webhook_attempts = Column(Integer, nullable=False, default=0)
    webhook_last_error = Column(Text, nullable=True)
    webhook_last_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    tasks = relationship("VideoTask", order_by="VideoTask.batch_index")


class EnterpriseApiKey(Base):
    __tablename__ = "enterprise_api_keys"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
