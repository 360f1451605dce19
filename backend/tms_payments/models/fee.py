"""
Transport Fee Model — Priced semester fee per route (optionally per stop).
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, Date, DateTime, Boolean

from tms_payments.database import Base


class TransportFee(Base):
    __tablename__ = "transport_fees"

    id = Column(String(64), primary_key=True, index=True)
    route_id = Column(String(64), nullable=False, index=True)
    stop_name = Column(String(128), nullable=True)   # NULL = same fee for every stop on the route

    academic_year = Column(String(8), nullable=False)   # 2025-26
    semester = Column(String(2), nullable=False)        # 1 | 2
    amount = Column(Integer, nullable=False)            # Minor units (paisa)
    currency = Column(String(3), nullable=False, default="INR")

    is_active = Column(Boolean, default=True, nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def billing_period(self) -> str:
        return f"{self.academic_year}/S{self.semester}"
