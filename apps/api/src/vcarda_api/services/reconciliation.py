"""Balance reconciliation between the canonical card balance and its derived copies.

A sweep walks every card in id order, compares ``loyalty_cards.points_balance``
with the balance view, the enrollment mirror and the ledger sum, and records a
:class:`BalanceDiscrepancy` for each drift. With repair enabled the view and
the enrollment mirror are rewritten from the canonical value; ledger-sum and
duplicate-card findings are only reported. The sweep finishes with token
hygiene (archival and signature spot checks) and failed-notification retries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.settings import settings
from vcarda_api.models.loyalty import CardBalanceView, LoyaltyCard, PointTransaction, ProgramEnrollment
from vcarda_api.models.reconciliation import (
    BalanceDiscrepancy,
    DiscrepancyKind,
    ReconciliationRun,
    ReconciliationRunStatus,
)
from vcarda_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from vcarda_api.observability.tracing import loyalty_tracer
from vcarda_api.services.notifications import Notifier
from vcarda_api.services.tokens import TokenService

_tracer = loyalty_tracer(__name__)

_REPAIRABLE = {
    DiscrepancyKind.VIEW_MISMATCH,
    DiscrepancyKind.VIEW_MISSING,
    DiscrepancyKind.ENROLLMENT_MISMATCH,
}


class ReconcilerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    REPAIRING = "repairing"


@dataclass(slots=True)
class Finding:
    kind: DiscrepancyKind
    card_id: UUID | None
    canonical_value: int | None
    observed_value: int | None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReconciliationSummary:
    run_id: UUID
    cards_scanned: int = 0
    discrepancies_found: int = 0
    discrepancies_repaired: int = 0
    tokens_archived: int = 0
    tokens_revoked: int = 0
    notifications_redelivered: int = 0
    findings: list[Finding] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "cards_scanned": self.cards_scanned,
            "discrepancies_found": self.discrepancies_found,
            "discrepancies_repaired": self.discrepancies_repaired,
            "tokens_archived": self.tokens_archived,
            "tokens_revoked": self.tokens_revoked,
            "notifications_redelivered": self.notifications_redelivered,
        }


class BalanceReconciler:
    """Runs one sweep at a time: ``idle -> scanning -> repairing -> idle``."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        batch_size: int | None = None,
        repair: bool | None = None,
        token_service: TokenService | None = None,
        notifier: Notifier | None = None,
        observability: LoyaltyObservabilityStore | None = None,
        token_sample_size: int | None = None,
        archive_grace_days: int | None = None,
        archive_batch_size: int | None = None,
    ) -> None:
        self._db = session
        self._batch_size = batch_size or settings.reconciler_batch_size
        self._repair = settings.reconciler_repair_enabled if repair is None else repair
        self._observability = observability or get_loyalty_store()
        self._tokens = token_service or TokenService(session, observability=self._observability)
        self._notifier = notifier or Notifier(session, observability=self._observability)
        self._token_sample_size = (
            settings.reconciler_token_sample_size if token_sample_size is None else token_sample_size
        )
        self._archive_grace_days = (
            settings.token_archive_grace_days if archive_grace_days is None else archive_grace_days
        )
        self._archive_batch_size = archive_batch_size or settings.token_archive_batch_size
        self.state = ReconcilerState.IDLE

    async def run(self, *, triggered_by: str = "manual") -> ReconciliationSummary:
        with _tracer.start_as_current_span("reconciliation.sweep") as span:
            span.set_attribute("vcarda.reconciliation.trigger", triggered_by)
            span.set_attribute("vcarda.reconciliation.repair", self._repair)
            summary = await self._sweep(triggered_by)
            span.set_attribute("vcarda.reconciliation.discrepancies", summary.discrepancies_found)
        return summary

    async def _sweep(self, triggered_by: str) -> ReconciliationSummary:
        if self.state is not ReconcilerState.IDLE:
            raise RuntimeError("Reconciliation sweep already in progress")

        run = ReconciliationRun(
            trigger=triggered_by,
            status=ReconciliationRunStatus.RUNNING.value,
            repair=self._repair,
        )
        self._db.add(run)
        await self._db.commit()
        summary = ReconciliationSummary(run_id=run.id)

        try:
            self.state = ReconcilerState.SCANNING
            summary.cards_scanned, findings = await self._scan()
            findings.extend(await self._find_duplicate_cards())
            summary.findings = findings
            summary.discrepancies_found = len(findings)
            records = await self._persist_findings(run, findings)

            if self._repair and records:
                self.state = ReconcilerState.REPAIRING
                summary.discrepancies_repaired = await self._repair_findings(records)

            summary.tokens_archived = await self._archive_tokens()
            if self._token_sample_size > 0:
                summary.tokens_revoked = len(
                    await self._tokens.audit_active_signatures(sample_size=self._token_sample_size)
                )
            summary.notifications_redelivered = await self._notifier.redeliver_failed(
                limit=self._batch_size
            )

            run.status = ReconciliationRunStatus.SUCCEEDED.value
            run.cards_scanned = summary.cards_scanned
            run.discrepancies_found = summary.discrepancies_found
            run.discrepancies_repaired = summary.discrepancies_repaired
            run.tokens_archived = summary.tokens_archived
            run.tokens_revoked = summary.tokens_revoked
            run.notifications_redelivered = summary.notifications_redelivered
            run.completed_at = datetime.now(timezone.utc)
            run.metadata_json = {"batch_size": self._batch_size, "triggered_by": triggered_by}
            self._db.add(run)
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            run.status = ReconciliationRunStatus.FAILED.value
            run.error = type(exc).__name__
            run.completed_at = datetime.now(timezone.utc)
            self._db.add(run)
            await self._db.commit()
            logger.exception("Reconciliation sweep failed", run_id=str(summary.run_id))
            raise
        finally:
            self.state = ReconcilerState.IDLE

        self._observability.record_reconciliation(
            discrepancies=summary.discrepancies_found,
            repaired=summary.discrepancies_repaired,
        )
        logger.info("Reconciliation sweep completed", **summary.as_dict())
        return summary

    async def _scan(self) -> tuple[int, list[Finding]]:
        findings: list[Finding] = []
        scanned = 0
        last_id: UUID | None = None
        while True:
            stmt = (
                select(
                    LoyaltyCard.id,
                    LoyaltyCard.enrollment_id,
                    LoyaltyCard.points_balance,
                )
                .order_by(LoyaltyCard.id)
                .limit(self._batch_size)
            )
            if last_id is not None:
                stmt = stmt.where(LoyaltyCard.id > last_id)
            cards = (await self._db.execute(stmt)).all()
            if not cards:
                break
            scanned += len(cards)
            last_id = cards[-1].id
            findings.extend(await self._check_batch(cards))
            await self._db.commit()
            if len(cards) < self._batch_size:
                break
        return scanned, findings

    async def _check_batch(self, cards: Sequence[Any]) -> list[Finding]:
        card_ids = [card.id for card in cards]
        views = dict(
            (
                await self._db.execute(
                    select(CardBalanceView.card_id, CardBalanceView.points_balance).where(
                        CardBalanceView.card_id.in_(card_ids)
                    )
                )
            ).all()
        )
        mirrors = dict(
            (
                await self._db.execute(
                    select(ProgramEnrollment.id, ProgramEnrollment.current_points).where(
                        ProgramEnrollment.id.in_([card.enrollment_id for card in cards])
                    )
                )
            ).all()
        )
        ledger_sums = dict(
            (
                await self._db.execute(
                    select(PointTransaction.card_id, func.sum(PointTransaction.delta))
                    .where(PointTransaction.card_id.in_(card_ids))
                    .group_by(PointTransaction.card_id)
                )
            ).all()
        )

        findings: list[Finding] = []
        for card in cards:
            canonical = int(card.points_balance)
            view_balance = views.get(card.id)
            if view_balance is None:
                if canonical != 0:
                    findings.append(Finding(DiscrepancyKind.VIEW_MISSING, card.id, canonical, None))
            elif int(view_balance) != canonical:
                findings.append(Finding(DiscrepancyKind.VIEW_MISMATCH, card.id, canonical, int(view_balance)))

            mirror = mirrors.get(card.enrollment_id)
            if mirror is not None and int(mirror) != canonical:
                findings.append(
                    Finding(
                        DiscrepancyKind.ENROLLMENT_MISMATCH,
                        card.id,
                        canonical,
                        int(mirror),
                        {"enrollment_id": str(card.enrollment_id)},
                    )
                )

            ledger_total = int(ledger_sums.get(card.id) or 0)
            if ledger_total != canonical:
                findings.append(Finding(DiscrepancyKind.LEDGER_SUM_MISMATCH, card.id, canonical, ledger_total))
        return findings

    async def _find_duplicate_cards(self) -> list[Finding]:
        rows = (
            await self._db.execute(
                select(LoyaltyCard.customer_id, LoyaltyCard.program_id, func.count(LoyaltyCard.id))
                .where(LoyaltyCard.is_active.is_(True))
                .group_by(LoyaltyCard.customer_id, LoyaltyCard.program_id)
                .having(func.count(LoyaltyCard.id) > 1)
            )
        ).all()
        await self._db.commit()
        return [
            Finding(
                DiscrepancyKind.DUPLICATE_CARD,
                None,
                None,
                int(count),
                {"customer_id": str(customer_id), "program_id": str(program_id)},
            )
            for customer_id, program_id, count in rows
        ]

    async def _persist_findings(
        self, run: ReconciliationRun, findings: Sequence[Finding]
    ) -> list[tuple[Finding, BalanceDiscrepancy]]:
        records: list[tuple[Finding, BalanceDiscrepancy]] = []
        for finding in findings:
            logger.warning(
                "Balance discrepancy detected",
                run_id=str(run.id),
                card_id=str(finding.card_id) if finding.card_id else None,
                kind=finding.kind.value,
                canonical=finding.canonical_value,
                observed=finding.observed_value,
            )
            record = BalanceDiscrepancy(
                run_id=run.id,
                card_id=finding.card_id,
                kind=finding.kind.value,
                canonical_value=finding.canonical_value,
                observed_value=finding.observed_value,
                details=finding.details or None,
            )
            self._db.add(record)
            records.append((finding, record))
        await self._db.commit()
        return records

    async def _repair_findings(self, records: Sequence[tuple[Finding, BalanceDiscrepancy]]) -> int:
        repaired = 0
        for finding, record in records:
            if finding.kind not in _REPAIRABLE or finding.card_id is None:
                continue
            if finding.kind is DiscrepancyKind.ENROLLMENT_MISMATCH:
                canonical = select(LoyaltyCard.points_balance).where(LoyaltyCard.id == finding.card_id)
                await self._db.execute(
                    update(ProgramEnrollment)
                    .where(ProgramEnrollment.id == UUID(finding.details["enrollment_id"]))
                    .values(current_points=canonical.scalar_subquery())
                    .execution_options(synchronize_session=False)
                )
                await self._db.commit()
                value = await self._db.scalar(canonical)
            else:
                value = await self._notifier.refresh_view(finding.card_id)
                if value is None:
                    continue

            record.repaired = True
            self._db.add(record)
            await self._db.commit()
            repaired += 1
            logger.info(
                "Repaired derived balance",
                card_id=str(finding.card_id),
                kind=finding.kind.value,
                before=finding.observed_value,
                after=value,
            )
        return repaired

    async def _archive_tokens(self) -> int:
        total = 0
        # at most ten batches per sweep
        for _ in range(10):
            archived = await self._tokens.store.archive_retired(
                grace_days=self._archive_grace_days,
                limit=self._archive_batch_size,
            )
            total += archived
            if archived < self._archive_batch_size:
                break
        return total


__all__ = [
    "BalanceReconciler",
    "Finding",
    "ReconcilerState",
    "ReconciliationSummary",
]
