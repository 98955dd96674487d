"""
Overdue sweep: the periodic reconciliation of loans, account locks and
reservation holds.

One sweep runs inside a single transaction. Each loan that has become overdue
(or is overdue while its owner got unblocked) goes through
``apply_overdue_transition``, which marks the loan overdue, locks the account
and emits at most one unread overdue notification per user as one combined
step. Any failure rolls the whole sweep back; the next tick starts over from
fresh state, so partial progress is never assumed.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from circulation.core.config import settings
from circulation.core.exceptions import TransientStoreError
from circulation.core.logging import get_logger, sweep_id_ctx
from circulation.core.timeutils import utcnow
from circulation.db.models import Loan, LoanStatus, NotificationType
from circulation.services.loan import (
    find_loans_due_soon,
    find_overdue_loans,
    find_reengageable_overdue_loans,
    mark_loan_overdue,
)
from circulation.services.notification import notify_once
from circulation.services.reservation import expire_reservations
from circulation.services.user import lock_account

logger = get_logger("services.overdue")


@dataclass
class SweepResult:
    processed: int = 0
    newly_overdue: int = 0
    accounts_locked: int = 0
    notifications_created: int = 0
    reservations_expired: int = 0
    reminders_sent: int = 0
    ok: bool = True
    skipped: bool = False
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


@dataclass
class OverdueOutcome:
    marked_overdue: bool
    account_locked: bool
    notified: bool


def block_reason_for(loan: Loan) -> str:
    return f"Overdue book {loan.book_id} (loan {loan.id})"


async def apply_overdue_transition(
    db: AsyncSession, loan: Loan, as_of: datetime
) -> OverdueOutcome:
    """Loan became overdue: mark it, lock its owner, tell the owner once.

    The three effects share the caller's transaction, so they are persisted
    together or not at all.
    """
    marked = False
    if loan.status != LoanStatus.OVERDUE:
        marked = await mark_loan_overdue(db, loan.id, as_of)

    user = await lock_account(db, loan.user_id, block_reason_for(loan))

    notification = await notify_once(
        db,
        user_id=user.id,
        title="Overdue book",
        message=(
            "You have an overdue book. Your account is blocked until it is "
            "returned to the library."
        ),
        notification_type=NotificationType.OVERDUE,
    )
    return OverdueOutcome(
        marked_overdue=marked,
        account_locked=True,
        notified=notification is not None,
    )


async def send_return_reminders(db: AsyncSession, as_of: datetime) -> int:
    """Remind patrons of loans due within RETURN_REMINDER_DAYS; one unread reminder per user."""
    loans = await find_loans_due_soon(
        db, as_of, timedelta(days=settings.RETURN_REMINDER_DAYS)
    )
    sent = 0
    for loan in loans:
        reminder = await notify_once(
            db,
            user_id=loan.user_id,
            title="Return reminder",
            message="A book you borrowed is due soon. Please return it on time.",
            notification_type=NotificationType.RETURN_REMINDER,
        )
        if reminder is not None:
            sent += 1
    return sent


class SweepEngine:
    """Runs overdue sweeps. Holds no entity state between invocations.

    Sweeps are single-flight: a call made while another sweep is in progress
    returns a skipped result instead of interleaving with it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        timeout: float = settings.SWEEP_TIMEOUT,
    ):
        self._session_factory = session_factory
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self.last_result: Optional[SweepResult] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_sweep(self) -> SweepResult:
        if self._lock.locked():
            logger.info("Sweep already in progress; skipping")
            return SweepResult(skipped=True, finished_at=utcnow())

        async with self._lock:
            token = sweep_id_ctx.set(uuid.uuid4().hex[:8])
            try:
                result = await self._run_guarded()
            finally:
                sweep_id_ctx.reset(token)
            self.last_result = result
            return result

    async def _run_guarded(self) -> SweepResult:
        result = SweepResult()
        context: Dict[str, object] = {}
        try:
            await asyncio.wait_for(self._sweep(result, context), timeout=self._timeout)
        except asyncio.TimeoutError:
            return self._failed(result, context, f"Sweep timed out after {self._timeout}s")
        except TransientStoreError as e:
            return self._failed(result, context, str(e))
        except Exception as e:
            return self._failed(result, context, f"{type(e).__name__}: {e}")

        result.finished_at = utcnow()
        logger.info(
            f"Overdue sweep completed: processed={result.processed} "
            f"newly_overdue={result.newly_overdue} notified={result.notifications_created} "
            f"holds_expired={result.reservations_expired} reminders={result.reminders_sent}"
        )
        return result

    def _failed(self, result: SweepResult, context: Dict[str, object], error: str) -> SweepResult:
        logger.error(
            f"Overdue sweep failed and was rolled back: {error}",
            exc_info=True,
            extra={"extra_data": context},
        )
        return SweepResult(
            ok=False,
            error=error,
            started_at=result.started_at,
            finished_at=utcnow(),
        )

    async def _sweep(self, result: SweepResult, context: Dict[str, object]) -> None:
        async with self._session_factory() as db:
            try:
                await self._reconcile(db, result, context)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise TransientStoreError(f"Store error during sweep: {e}") from e
            except BaseException:
                # includes cancellation by wait_for
                await db.rollback()
                raise

    async def _reconcile(
        self, db: AsyncSession, result: SweepResult, context: Dict[str, object]
    ) -> None:
        now = utcnow()

        newly_due = await find_overdue_loans(db, now, lock=True)
        reengage = await find_reengageable_overdue_loans(db, lock=True)
        context.update(candidates_overdue=len(newly_due), candidates_reengage=len(reengage))

        candidates: Dict[str, Loan] = {}
        for loan in (*newly_due, *reengage):
            candidates.setdefault(loan.id, loan)

        locked_users = set()
        for loan in candidates.values():
            context["loan_id"] = loan.id
            outcome = await apply_overdue_transition(db, loan, now)
            result.processed += 1
            result.newly_overdue += int(outcome.marked_overdue)
            result.notifications_created += int(outcome.notified)
            locked_users.add(loan.user_id)
        context.pop("loan_id", None)
        result.accounts_locked = len(locked_users)

        expired = await expire_reservations(db, now)
        result.reservations_expired = len(expired)

        result.reminders_sent = await send_return_reminders(db, now)

