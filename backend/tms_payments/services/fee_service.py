"""
Fee Service — Resolves the authoritative price for a route/stop/semester.
The amount charged always comes from here, never from the client.
"""
from datetime import date
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tms_payments.exceptions import FeeNotFound
from tms_payments.models.fee import TransportFee


def current_billing_period(today: Optional[date] = None) -> tuple[str, str]:
    """Academic year and semester for a date.

    June to November is semester 1 of YYYY-YY; December to May is semester 2
    of the academic year that began the preceding June.
    """
    today = today or date.today()
    month, year = today.month, today.year
    if 6 <= month <= 11:
        return f"{year}-{str(year + 1)[-2:]}", "1"
    start = year if month == 12 else year - 1
    return f"{start}-{str(start + 1)[-2:]}", "2"


class FeeService:
    """Active, non-expired fee lookups."""

    @staticmethod
    def resolve(
        db: Session,
        fee_id: str,
        route_id: str,
        stop_name: str,
        today: Optional[date] = None,
    ) -> TransportFee:
        """The fee to charge, or FeeNotFound if it is inactive, expired or for another route/stop."""
        today = today or date.today()
        fee = (
            db.query(TransportFee)
            .filter(TransportFee.id == fee_id, TransportFee.is_active.is_(True))
            .first()
        )
        if fee is None:
            raise FeeNotFound("Transport fee not found or inactive")
        if fee.route_id != route_id:
            raise FeeNotFound("Transport fee does not apply to this route")
        if fee.stop_name is not None and fee.stop_name != stop_name:
            raise FeeNotFound("Transport fee does not apply to this stop")
        if not (fee.effective_from <= today <= fee.effective_until):
            raise FeeNotFound("Transport fee is not in effect")
        if fee.amount <= 0:
            raise FeeNotFound("Transport fee has no payable amount")
        return fee

    @staticmethod
    def list_current(
        db: Session,
        route_id: str,
        stop_name: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[TransportFee]:
        """Active fees of the current billing period for a route."""
        today = today or date.today()
        academic_year, semester = current_billing_period(today)
        query = db.query(TransportFee).filter(
            TransportFee.route_id == route_id,
            TransportFee.is_active.is_(True),
            TransportFee.academic_year == academic_year,
            TransportFee.semester == semester,
            TransportFee.effective_until >= today,
        )
        if stop_name:
            query = query.filter(or_(TransportFee.stop_name.is_(None), TransportFee.stop_name == stop_name))
        return query.order_by(TransportFee.effective_from.asc()).all()
