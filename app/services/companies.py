"""Company subscription record store."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload

from app.errors import NotFound, OperationConflict
from app.models.company import Company, CompanyStripeSubscription, CompanySubscription
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)

_GUARDS = {
    "can_update": Company.can_update,
    "can_cancel": Company.can_cancel,
}


class Companies:
    @staticmethod
    def find_by_id(
        db: Session, company_id: Any, *, for_update: bool = False
    ) -> Company | None:
        stmt = (
            select(Company)
            .options(selectinload(Company.subscription), selectinload(Company.stripe_subscription))
            .where(Company.id == coerce_uuid(company_id))
        )
        if for_update:
            stmt = stmt.with_for_update()
        return db.scalars(stmt).first()

    @staticmethod
    def find_by_email(db: Session, email: str) -> Company | None:
        stmt = (
            select(Company)
            .options(selectinload(Company.subscription), selectinload(Company.stripe_subscription))
            .where(Company.company_email == email)
        )
        return db.scalars(stmt).first()

    @staticmethod
    def find_by_stripe_customer(db: Session, customer_id: str) -> Company | None:
        stmt = (
            select(Company)
            .join(CompanyStripeSubscription)
            .options(selectinload(Company.subscription), selectinload(Company.stripe_subscription))
            .where(CompanyStripeSubscription.stripe_customer_id == customer_id)
        )
        return db.scalars(stmt).first()

    @staticmethod
    def get(db: Session, company_id: Any, *, for_update: bool = False) -> Company:
        company = Companies.find_by_id(db, company_id, for_update=for_update)
        if not company:
            raise NotFound("Company not found")
        return company

    @staticmethod
    def get_for_owner(db: Session, company_id: Any, email: str) -> Company:
        """Load the caller's company; both id and billing email must match."""
        try:
            company = Companies.find_by_id(db, company_id)
        except ValueError:
            company = None
        if not company or company.company_email != email:
            raise NotFound("Company not found")
        return company

    @staticmethod
    def update(
        db: Session,
        company: Company,
        values: dict[str, Any],
        subscription: dict[str, Any] | None = None,
    ) -> Company:
        """Patch top-level fields and the subscription row in the caller's transaction."""
        for key, value in values.items():
            setattr(company, key, value)
        if subscription:
            if company.subscription is None:
                company.subscription = CompanySubscription(tenant_id=company.tenant_id)
            for key, value in subscription.items():
                setattr(company.subscription, key, value)
        db.flush()
        return company

    @staticmethod
    def update_stripe(db: Session, company: Company, values: dict[str, Any]) -> CompanyStripeSubscription:
        """Patch the Stripe billing row, creating it on first use."""
        if company.stripe_subscription is None:
            company.stripe_subscription = CompanyStripeSubscription(tenant_id=company.tenant_id)
        for key, value in values.items():
            setattr(company.stripe_subscription, key, value)
        db.flush()
        return company.stripe_subscription

    @staticmethod
    def guarded_update(
        db: Session,
        company: Company,
        guard: str,
        values: dict[str, Any],
        subscription: dict[str, Any] | None = None,
    ) -> Company:
        """Apply ``values`` only while ``guard`` is still true on the row.

        Flag check and write are one UPDATE statement; zero affected rows means a
        concurrent request already took the operation.
        """
        column = _GUARDS[guard]
        result = db.execute(
            update(Company)
            .where(Company.id == company.id, column.is_(True))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            logger.warning(
                "Conditional update lost on %s", guard, extra={"company_id": str(company.id)}
            )
            raise OperationConflict("Another subscription change is already in progress")
        if subscription:
            Companies.update(db, company, {}, subscription)
        else:
            db.flush()
        return company

    @staticmethod
    def with_pending_operations(db: Session) -> list[Company]:
        stmt = select(Company).where(
            or_(
                Company.pending_plan_update.is_not(None),
                Company.scheduled_deactivation.is_not(None),
            )
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def due_plan_updates(db: Session, now: datetime) -> list[Company]:
        stmt = select(Company).where(
            Company.pending_plan_update.is_not(None),
            Company.next_billing_date <= now,
            Company.scheduled_deactivation.is_(None),
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def due_deactivations(db: Session, now: datetime) -> list[Company]:
        stmt = select(Company).where(
            Company.scheduled_deactivation.is_not(None),
            Company.scheduled_deactivation <= now,
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def clear_stale_plan_updates(db: Session, cutoff: datetime) -> int:
        result = db.execute(
            update(Company)
            .where(
                Company.pending_plan_update.is_not(None),
                Company.next_billing_date < cutoff,
            )
            .values(pending_plan_update=None, next_billing_date=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0


companies = Companies()
