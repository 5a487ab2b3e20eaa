"""Finance alerts: raising (deduplicated) and acknowledging."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import InvalidStateError, NotFoundError
from billing_engine.events import EventEmitter, EventMetadata, FinanceAlertRaised, default_emitter
from billing_engine.models import FinanceAlert, utcnow
from billing_engine.services.base import Actor, Clock

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    BUDGET_EXCEEDED = "budget_exceeded"
    BUDGET_WARNING = "budget_warning"
    LOW_MARGIN = "low_margin"
    NEGATIVE_DUE = "negative_due"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertService:
    """Raises and acknowledges finance alerts.

    At most one unacknowledged alert exists per (project, subject user,
    alert type); raising again refreshes its values.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utcnow,
        emitter: EventEmitter | None = None,
    ):
        self.session = session
        self.clock = clock
        self.emitter = emitter or default_emitter

    async def raise_alert(
        self,
        organization_id: UUID,
        alert_type: AlertType,
        severity: AlertSeverity,
        project_id: UUID | None = None,
        subject_user_id: UUID | None = None,
        threshold: Decimal | None = None,
        current_value: Decimal | None = None,
        currency: str | None = None,
        notes: str | None = None,
    ) -> FinanceAlert:
        query = select(FinanceAlert).where(
            FinanceAlert.organization_id == organization_id,
            FinanceAlert.alert_type == alert_type.value,
            FinanceAlert.acknowledged.is_(False),
        )
        query = query.where(
            FinanceAlert.project_id.is_(None) if project_id is None else FinanceAlert.project_id == project_id
        )
        query = query.where(
            FinanceAlert.subject_user_id.is_(None)
            if subject_user_id is None
            else FinanceAlert.subject_user_id == subject_user_id
        )
        alert = (await self.session.execute(query.limit(1))).scalars().first()

        if alert is not None:
            alert.severity = severity.value
            alert.threshold = threshold
            alert.current_value = current_value
            alert.currency = currency
            alert.notes = notes
            await self.session.flush()
            return alert

        alert = FinanceAlert(
            organization_id=organization_id,
            project_id=project_id,
            subject_user_id=subject_user_id,
            alert_type=alert_type.value,
            severity=severity.value,
            threshold=threshold,
            current_value=current_value,
            currency=currency,
            acknowledged=False,
            notes=notes,
            created_at=self.clock(),
        )
        self.session.add(alert)
        await self.session.flush()

        logger.warning(
            "Finance alert %s (%s) raised for project %s user %s: %s",
            alert_type.value,
            severity.value,
            project_id,
            subject_user_id,
            current_value,
        )
        self.emitter.emit(
            FinanceAlertRaised(
                metadata=EventMetadata.create(organization_id, timestamp=self.clock()),
                alert_id=alert.id,
                alert_type=alert.alert_type,
                severity=alert.severity,
                project_id=project_id,
                subject_user_id=subject_user_id,
                current_value=current_value,
            )
        )
        return alert

    async def list_alerts(
        self,
        organization_id: UUID,
        project_id: UUID | None = None,
        acknowledged: bool | None = None,
    ) -> list[FinanceAlert]:
        query = select(FinanceAlert).where(FinanceAlert.organization_id == organization_id)
        if project_id is not None:
            query = query.where(FinanceAlert.project_id == project_id)
        if acknowledged is not None:
            query = query.where(FinanceAlert.acknowledged.is_(acknowledged))
        result = await self.session.execute(query.order_by(FinanceAlert.created_at.desc()))
        return list(result.scalars().all())

    async def acknowledge(
        self, actor: Actor, alert_id: UUID, notes: str | None = None
    ) -> FinanceAlert:
        alert = await self.session.get(FinanceAlert, alert_id)
        if alert is None or alert.organization_id != actor.organization_id:
            raise NotFoundError(f"Alert {alert_id} not found", alert_id=alert_id)
        if alert.acknowledged:
            raise InvalidStateError("Alert is already acknowledged", current_state="acknowledged")

        alert.acknowledged = True
        alert.acknowledged_at = self.clock()
        alert.acknowledged_by = actor.user_id
        if notes:
            alert.notes = notes
        await self.session.flush()
        logger.info("Alert %s acknowledged by %s", alert_id, actor.user_id)
        return alert
