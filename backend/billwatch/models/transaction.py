"""
Transaction database model.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Date, Numeric, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from billwatch.database import Base


class Transaction(Base):
    """Transaction model. Written by bank sync, read-only for detection."""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # Positive = expense, negative = income/refund
    raw_description = Column(Text, nullable=False)
    merchant_name = Column(String(255), nullable=True)
    ai_merchant_name = Column(String(255), nullable=True)
    ai_category_tag = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        Index("idx_transaction_user_date", "user_id", "date"),
    )
