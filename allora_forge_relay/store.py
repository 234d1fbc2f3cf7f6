"""SQLAlchemy models and the relational store used by the relay."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, create_engine, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import CreatedWallet, ModelSigningDetails, PerformanceMetric, SubmissionRecord, SubmissionStatus

logger = logging.getLogger(__name__)

__all__ = ["Base", "WalletRow", "ModelRow", "SubmissionRow", "PerformanceMetricRow", "RelayStore"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all tables."""
    pass


class WalletRow(Base):
    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=_new_id)
    address = Column(String(128), unique=True, nullable=False, index=True)
    secret_ref = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ModelRow(Base):
    __tablename__ = "models"

    id = Column(String(36), primary_key=True, default=_new_id)
    topic_id = Column(Integer, nullable=False, index=True)
    webhook_url = Column(Text, nullable=False)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False)
    model_type = Column(String(32), nullable=False, default="inference")
    max_gas_price = Column(String(64))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SubmissionRow(Base):
    """Append-only audit trail; rows are never updated."""

    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    model_id = Column(String(36), ForeignKey("models.id"), nullable=False, index=True)
    topic_id = Column(Integer, nullable=False, index=True)
    nonce_height = Column(Integer)
    tx_hash = Column(String(128))
    status = Column(String(16), nullable=False)
    raw_log = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)



class PerformanceMetricRow(Base):
    """One EMA score sample per model and timestamp."""

    __tablename__ = "performance_metrics"

    model_id = Column(String(36), ForeignKey("models.id", ondelete="CASCADE"), primary_key=True)
    timestamp = Column(DateTime(timezone=True), primary_key=True, default=_utcnow, index=True)
    ema_score = Column(Numeric(30, 18))

def _engine_for(url: str) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)
    database = parsed.database or ""
    if database in ("", ":memory:"):
        # One shared connection so every thread sees the same in-memory database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Path(database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args={"check_same_thread": False})


class RelayStore:
    """Wallet, model and submission persistence.

    Methods are blocking; async code calls them through ``asyncio.to_thread``.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> "RelayStore":
        store = cls(_engine_for(url))
        store.init_db()
        return store

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self._sessions()

    # Wallets ---------------------------------------------------------

    def insert_wallet(self, address: str, secret_ref: str) -> str:
        with self.session() as db:
            row = WalletRow(address=address, secret_ref=secret_ref)
            db.add(row)
            db.commit()
            return row.id

    def get_wallet(self, wallet_id: str) -> Optional[CreatedWallet]:
        with self.session() as db:
            row = db.get(WalletRow, wallet_id)
            if row is None:
                return None
            return CreatedWallet(id=row.id, address=row.address, secret_ref=row.secret_ref)

    # Models ----------------------------------------------------------

    def add_model(
        self,
        topic_id: int,
        webhook_url: str,
        wallet_id: str,
        max_gas_price: Optional[str] = None,
        model_type: str = "inference",
        is_active: bool = True,
    ) -> str:
        with self.session() as db:
            row = ModelRow(
                topic_id=topic_id,
                webhook_url=webhook_url,
                wallet_id=wallet_id,
                max_gas_price=max_gas_price,
                model_type=model_type,
                is_active=is_active,
            )
            db.add(row)
            db.commit()
            return row.id

    def get_model(self, model_id: str) -> Optional[ModelRow]:
        with self.session() as db:
            return db.get(ModelRow, model_id)

    def set_model_active(self, model_id: str, is_active: bool) -> bool:
        with self.session() as db:
            row = db.get(ModelRow, model_id)
            if row is None:
                return False
            row.is_active = is_active
            db.commit()
            return True

    def _signing_query(self):
        return select(ModelRow, WalletRow).join(WalletRow, ModelRow.wallet_id == WalletRow.id)

    @staticmethod
    def _details(model: ModelRow, wallet: WalletRow) -> ModelSigningDetails:
        return ModelSigningDetails(
            model_id=model.id,
            topic_id=model.topic_id,
            webhook_url=model.webhook_url,
            wallet_id=wallet.id,
            address=wallet.address,
            secret_ref=wallet.secret_ref,
            max_gas_price=model.max_gas_price,
            is_active=model.is_active,
        )

    def model_signing_details(self, model_id: str) -> Optional[ModelSigningDetails]:
        with self.session() as db:
            result = db.execute(self._signing_query().where(ModelRow.id == model_id)).first()
            if result is None:
                return None
            return self._details(*result)

    def active_models(self, topic_id: Optional[int] = None) -> List[ModelSigningDetails]:
        query = self._signing_query().where(ModelRow.is_active.is_(True))
        if topic_id is not None:
            query = query.where(ModelRow.topic_id == topic_id)
        with self.session() as db:
            return [self._details(model, wallet) for model, wallet in db.execute(query.order_by(ModelRow.created_at))]

    def active_topic_ids(self) -> List[int]:
        with self.session() as db:
            query = select(ModelRow.topic_id).where(ModelRow.is_active.is_(True)).distinct().order_by(ModelRow.topic_id)
            return [int(topic_id) for topic_id in db.scalars(query)]

    # Submissions -----------------------------------------------------

    def record_submission(
        self,
        model_id: str,
        topic_id: int,
        status: SubmissionStatus,
        nonce_height: Optional[int] = None,
        tx_hash: Optional[str] = None,
        raw_log: Optional[str] = None,
    ) -> SubmissionRecord:
        status = SubmissionStatus(status)
        if status is SubmissionStatus.SUCCESS and not tx_hash:
            raise ValueError("successful submissions need a tx hash")
        if status is SubmissionStatus.FAILED:
            tx_hash = None
        with self.session() as db:
            row = SubmissionRow(
                model_id=model_id,
                topic_id=topic_id,
                nonce_height=nonce_height,
                tx_hash=tx_hash,
                status=status.value,
                raw_log=raw_log,
            )
            db.add(row)
            db.commit()
            logger.info(
                "Recorded %s submission for model %s topic %s nonce %s", row.status, model_id, topic_id, nonce_height
            )
            return self._record(row)

    def submissions_for_model(self, model_id: str) -> List[SubmissionRecord]:
        with self.session() as db:
            query = select(SubmissionRow).where(SubmissionRow.model_id == model_id).order_by(SubmissionRow.id)
            return [self._record(row) for row in db.scalars(query)]

    # Performance metrics -----------------------------------------------

    def record_performance(
        self, model_id: str, ema_score: Decimal, timestamp: Optional[datetime] = None
    ) -> Optional[PerformanceMetric]:
        """Insert one sample; a second sample at the same timestamp is ignored."""

        timestamp = timestamp or _utcnow()
        with self.session() as db:
            db.add(PerformanceMetricRow(model_id=model_id, timestamp=timestamp, ema_score=ema_score))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.debug("Performance sample for model %s at %s already stored", model_id, timestamp)
                return None
        return PerformanceMetric(model_id=model_id, timestamp=timestamp, ema_score=ema_score)

    def performance_history(self, model_id: str) -> List[PerformanceMetric]:
        """Samples of one model, newest first."""

        with self.session() as db:
            query = (
                select(PerformanceMetricRow)
                .where(PerformanceMetricRow.model_id == model_id)
                .order_by(PerformanceMetricRow.timestamp.desc())
            )
            return [
                PerformanceMetric(model_id=row.model_id, timestamp=row.timestamp, ema_score=row.ema_score)
                for row in db.scalars(query)
            ]

    @staticmethod
    def _record(row: SubmissionRow) -> SubmissionRecord:
        return SubmissionRecord(
            model_id=row.model_id,
            topic_id=row.topic_id,
            status=SubmissionStatus(row.status),
            nonce_height=row.nonce_height,
            tx_hash=row.tx_hash,
            raw_log=row.raw_log,
            created_at=row.created_at,
            id=row.id,
        )
