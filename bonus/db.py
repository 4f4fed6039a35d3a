import logging

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    bonus_balance = Column(Integer, default=0, nullable=False)  # projection of completed transactions
    referral_code = Column(String(16), unique=True, index=True, nullable=True)
    referred_by_id = Column(String(64), ForeignKey("users.id", ondelete="SET NULL"), index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BonusTransactionRow(Base):
    __tablename__ = "bonus_transactions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    description = Column(Text, nullable=True)
    appointment_id = Column(String(64), index=True, nullable=True)
    referred_user_id = Column(String(64), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    idempotency_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), index=True, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class BonusSettingsRow(Base):
    __tablename__ = "bonus_settings"

    id = Column(String(32), primary_key=True, default="default")
    booking_reward_amount = Column(Integer, nullable=False, default=300)
    referrer_reward_amount = Column(Integer, nullable=False, default=2000)
    referral_reward_amount = Column(Integer, nullable=False, default=2000)
    updated_at = Column(DateTime(timezone=True), nullable=False)


def make_engine(database_url: str, echo: bool = False):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(database_url, echo=echo, pool_pre_ping=True, pool_recycle=300)
    logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def init_db(engine) -> None:
    """Create the ledger tables if they are missing."""
    Base.metadata.create_all(bind=engine)
