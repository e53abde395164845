"""Database access for recommendation generation."""

from collections.abc import Sequence
from datetime import date, datetime
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_engine.logger import async_log_timing, get_logger
from transfer_engine.models import (
    Account,
    AdvisoryTag,
    Category,
    Goal,
    RecommendationKind,
    RecommendationStatus,
    Transaction,
    TransferPreference,
    TransferRecommendationRecord,
    User,
)
from transfer_engine.schemas.context import (
    AccountSnapshot,
    CategorySnapshot,
    GoalSnapshot,
    RecommendationContext,
    TransactionSnapshot,
    TransferPreferenceSnapshot,
)
from transfer_engine.schemas.recommendation import AdvisoryRecommendation, Recommendation

logger = get_logger(__name__)


class RecommendationStore:
    """Loads a user's financial context and persists recommendation sets."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def user_exists(self, user_id: UUID) -> bool:
        result = await self.db.execute(select(User.id).where(User.id == user_id))
        return result.scalar_one_or_none() is not None

    async def load_context(
        self,
        user_id: UUID,
        *,
        as_of: date,
        lookback_months: int,
    ) -> RecommendationContext:
        """Snapshot everything generation needs in one pass."""
        async with async_log_timing("store.load_context", logger=logger, level="debug") as timing:
            context = await self._load_context(user_id, as_of, lookback_months)
            timing["accounts"] = len(context.accounts)
            timing["transactions"] = len(context.transactions)
        return context

    async def _load_context(
        self, user_id: UUID, as_of: date, lookback_months: int
    ) -> RecommendationContext:
        accounts = (
            (await self.db.execute(select(Account).where(Account.user_id == user_id)))
            .scalars()
            .all()
        )
        account_ids = [a.id for a in accounts]

        transactions: Sequence[Transaction] = []
        if account_ids:
            window_start = as_of - relativedelta(months=lookback_months)
            transactions = (
                (
                    await self.db.execute(
                        select(Transaction)
                        .where(Transaction.account_id.in_(account_ids))
                        .where(Transaction.txn_date >= window_start)
                        .order_by(Transaction.txn_date)
                    )
                )
                .scalars()
                .all()
            )

        goals = (
            (
                await self.db.execute(
                    select(Goal).where(Goal.user_id == user_id).order_by(Goal.priority)
                )
            )
            .scalars()
            .all()
        )
        preferences = (
            (
                await self.db.execute(
                    select(TransferPreference)
                    .where(TransferPreference.user_id == user_id)
                    .order_by(TransferPreference.priority)
                )
            )
            .scalars()
            .all()
        )
        categories = (
            (await self.db.execute(select(Category).where(Category.user_id == user_id)))
            .scalars()
            .all()
        )

        return RecommendationContext(
            user_id=user_id,
            as_of=as_of,
            accounts=[AccountSnapshot.model_validate(a) for a in accounts],
            transactions=[TransactionSnapshot.model_validate(t) for t in transactions],
            goals=[GoalSnapshot.model_validate(g) for g in goals],
            preferences=[TransferPreferenceSnapshot.model_validate(p) for p in preferences],
            categories=[CategorySnapshot.model_validate(c) for c in categories],
        )

    async def replace_pending(
        self,
        user_id: UUID,
        recommendations: Sequence[Recommendation],
        *,
        generated_at: datetime,
    ) -> int:
        """Supersede the user's pending set with ``recommendations``.

        Both steps commit together; on failure the previous set stays pending.

        Returns:
            Number of previously pending rows marked as replaced.
        """
        try:
            result = await self.db.execute(
                update(TransferRecommendationRecord)
                .where(TransferRecommendationRecord.user_id == user_id)
                .where(TransferRecommendationRecord.status == RecommendationStatus.PENDING)
                .values(status=RecommendationStatus.REPLACED)
            )
            replaced = result.rowcount or 0
            self.db.add_all(
                [_to_record(user_id, rec, generated_at) for rec in recommendations]
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Recommendation set replaced",
            user_id=str(user_id),
            replaced=replaced,
            inserted=len(recommendations),
        )
        return replaced

    async def list_pending(self, user_id: UUID) -> list[TransferRecommendationRecord]:
        result = await self.db.execute(
            select(TransferRecommendationRecord)
            .where(TransferRecommendationRecord.user_id == user_id)
            .where(TransferRecommendationRecord.status == RecommendationStatus.PENDING)
            .order_by(TransferRecommendationRecord.created_at)
        )
        return list(result.scalars().all())


def _to_record(
    user_id: UUID,
    recommendation: Recommendation,
    generated_at: datetime,
) -> TransferRecommendationRecord:
    advisory_tag: AdvisoryTag | None = None
    if isinstance(recommendation, AdvisoryRecommendation):
        advisory_tag = recommendation.advisory_tag
    return TransferRecommendationRecord(
        user_id=user_id,
        kind=RecommendationKind(recommendation.kind),
        advisory_tag=advisory_tag,
        recommendation_type=recommendation.recommendation_type,
        from_account_id=recommendation.from_account_id,
        to_account_id=recommendation.to_account_id,
        goal_id=recommendation.goal_id,
        amount=recommendation.amount,
        purpose=recommendation.purpose,
        priority=recommendation.priority,
        urgency=recommendation.urgency,
        confidence=recommendation.confidence,
        status=RecommendationStatus.PENDING,
        generated_at=generated_at,
        valid_until=recommendation.valid_until,
    )
