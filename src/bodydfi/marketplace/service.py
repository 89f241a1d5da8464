"""Marketplace transaction coordinator.

A purchase walks Requested -> Validated -> Funded -> Granted inside one
database transaction, then attempts settlement after commit:

1. Validate listing, buyer and existing grants (rejections leave no trace)
2. Split price into provider amount and platform fee
3. Move funds with a single multi-party ledger operation
4. Create the access grant with an encrypted access key
5. Commit, then submit to the settlement layer best-effort
"""

from __future__ import annotations

import math
import uuid
from collections import Counter
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import Select, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.config import Settings, get_settings
from bodydfi.db.models import (
    DataListing,
    DataPoint,
    DataPurchase,
    MarketplaceSettings,
    PurchaseAccessLog,
    TokenTransaction,
    User,
)
from bodydfi.errors import (
    AccessDenied,
    AccessExpired,
    AlreadyPurchased,
    AlreadyRated,
    IntegrityViolation,
    InvalidAmount,
    ListingNotActive,
    ListingNotFound,
    NoDataPoints,
    PurchaseNotFound,
    RatingNotAllowed,
    RefundNotAllowed,
    SelfPurchaseNotAllowed,
)
from bodydfi.identity import ADMIN_ROLE, require_platform_account, require_user
from bodydfi.ledger.amounts import ZERO, split_platform_fee, to_amount
from bodydfi.ledger.schemas import LedgerEntry, TransactionType, TxMeta
from bodydfi.ledger.service import LedgerStore
from bodydfi.marketplace.schemas import (
    AccessPayload,
    CategoriesAndTags,
    CategoryShare,
    CreateListingRequest,
    DailyCount,
    DataPointView,
    ListingFilters,
    ListingPage,
    ListingView,
    MarketplaceStats,
    NamedCount,
    PriceBucket,
    PurchaseRequest,
    PurchaseResult,
    PurchaseView,
    RatingRequest,
    RatingResult,
    RefundResult,
    UpdateListingRequest,
)
from bodydfi.redis_client import publish_event
from bodydfi.security.encryption import AccessKeyCipher, DecryptionError, generate_access_key, get_cipher
from bodydfi.settlement.gateway import SettlementGateway, apply_outcome, submit_best_effort
from bodydfi.settlement.schemas import InstructionKind, SettlementInstruction

logger = structlog.get_logger()

PURCHASE_CHANNEL = "pubsub:data_purchase"

LISTING_ACTIVE = "active"
LISTING_INACTIVE = "inactive"

PURCHASE_ACTIVE = "active"
PURCHASE_EXPIRED = "expired"
PURCHASE_REVOKED = "revoked"
PURCHASE_REFUNDED = "refunded"

TOP_TAGS = 20
TREND_DAYS = 7
# (label, inclusive upper bound); the last bucket is open-ended.
PRICE_BUCKETS: list[tuple[str, int | None]] = [("0-10", 10), ("11-50", 50), ("51-100", 100), ("101+", None)]

_SORT_COLUMNS = {
    "price": DataListing.price,
    "rating": DataListing.rating_avg,
    "purchases": DataListing.purchases_count,
    "date": DataListing.created_at,
}


def _purchase_view(purchase: DataPurchase) -> PurchaseView:
    view = PurchaseView.model_validate(purchase)
    view.listing_title = purchase.listing.title if purchase.listing is not None else None
    return view


def _page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


class MarketplaceCoordinator:
    """Listings, purchases, access grants, ratings and refunds."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: SettlementGateway,
        cipher: AccessKeyCipher | None = None,
        redis: object = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.cipher = cipher or get_cipher()
        self.redis = redis
        self.settings = settings or get_settings()
        self.ledger = LedgerStore(db)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def purchase_listing(self, request: PurchaseRequest, now: datetime | None = None) -> PurchaseResult:
        """Buy time-limited access to a listing.

        Either funds move and the grant exists, or nothing happened.
        Settlement problems never undo a committed purchase.
        """
        now = now or datetime.now(timezone.utc)
        try:
            buyer = await require_user(self.db, request.buyer_id)
            listing = await self._get_listing(request.listing_id)
            if listing.status != LISTING_ACTIVE:
                raise ListingNotActive(
                    "Listing is not available for purchase",
                    listing_id=listing.id,
                    status=listing.status,
                )
            if listing.provider_id == buyer.id:
                raise SelfPurchaseNotAllowed(
                    "Cannot purchase your own listing", listing_id=listing.id, user_id=buyer.id
                )
            await self._check_no_active_grant(buyer.id, listing.id, now)

            provider = await require_user(self.db, listing.provider_id)
            platform = await require_platform_account(self.db, self.settings.platform_account_id)

            fee_rate = await self.get_fee_rate()
            platform_fee, provider_amount = split_platform_fee(listing.price, fee_rate)
            purchase_id = str(uuid.uuid4())

            transactions = await self._fund(buyer, provider, platform, listing, purchase_id, platform_fee, provider_amount)

            access_key = generate_access_key(self.settings.access_key_bytes)
            purchase = DataPurchase(
                id=purchase_id,
                buyer_id=buyer.id,
                listing_id=listing.id,
                provider_id=provider.id,
                price=listing.price,
                platform_fee=platform_fee,
                provider_amount=provider_amount,
                access_start_date=now,
                access_end_date=now + timedelta(days=listing.access_period_days),
                status=PURCHASE_ACTIVE,
                access_key=self.cipher.encrypt(access_key),
                created_at=now,
            )
            purchase.listing = listing
            self.db.add(purchase)
            self.db.add(PurchaseAccessLog(purchase_id=purchase_id, action="purchase", created_at=now))
            await self.db.execute(
                update(DataListing)
                .where(DataListing.id == listing.id)
                .values(purchases_count=DataListing.purchases_count + 1)
                .execution_options(synchronize_session=False)
            )
            try:
                await self.db.flush()
            except IntegrityError as exc:
                # a concurrent purchase of the same listing won the unique active-grant index
                raise AlreadyPurchased(
                    "You already have an active purchase of this listing",
                    listing_id=listing.id,
                    user_id=buyer.id,
                ) from exc

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "purchase_completed",
            purchase_id=purchase_id,
            listing_id=listing.id,
            buyer_id=buyer.id,
            provider_id=provider.id,
            price=str(listing.price),
            platform_fee=str(platform_fee),
        )

        outcome = await submit_best_effort(
            self.gateway,
            SettlementInstruction(
                kind=InstructionKind.PURCHASE_ACCESS,
                amount=listing.price,
                reference_id=purchase_id,
                source_wallet=buyer.wallet_address,
                destination_wallet=provider.wallet_address,
                memo=f"Data purchase: {listing.title}"[:120],
                extra={"listing_id": listing.id, "platform_fee": str(platform_fee)},
            ),
            timeout=self.settings.settlement_timeout_seconds,
        )
        apply_outcome(purchase, outcome)
        for tx in transactions:
            apply_outcome(tx, outcome)
        await self.db.commit()

        await publish_event(self.redis, PURCHASE_CHANNEL, {
            "purchase_id": purchase_id,
            "listing_id": listing.id,
            "buyer_id": buyer.id,
            "provider_id": provider.id,
            "price": str(listing.price),
        })

        balance = await self.ledger.get_balance(buyer.id)
        await self.db.commit()
        return PurchaseResult(
            purchase_id=purchase_id,
            listing_id=listing.id,
            buyer_id=buyer.id,
            provider_id=provider.id,
            price=purchase.price,
            platform_fee=platform_fee,
            provider_amount=provider_amount,
            access_start_date=purchase.access_start_date,
            access_end_date=purchase.access_end_date,
            status=purchase.status,
            access_key=access_key,
            settlement_state=purchase.settlement_state,
            buyer_balance=balance.balance,
        )

    async def get_access_payload(
        self, purchase_id: str, requester_id: int, now: datetime | None = None
    ) -> AccessPayload:
        """Decrypted access key plus the listing's data points for the buyer.

        An elapsed grant is flipped to expired (and committed) before the
        rejection is raised.
        """
        now = now or datetime.now(timezone.utc)
        purchase = await self._get_purchase(purchase_id)
        if purchase.buyer_id != requester_id:
            raise AccessDenied("Only the buyer can access purchased data", purchase_id=purchase_id)

        if purchase.status == PURCHASE_ACTIVE and purchase.access_end_date < now:
            purchase.status = PURCHASE_EXPIRED
            purchase.updated_at = now
            await self.db.commit()
            logger.info("purchase_expired", purchase_id=purchase_id)
        if purchase.status == PURCHASE_EXPIRED:
            raise AccessExpired(
                "Access to this data has expired",
                purchase_id=purchase_id,
                access_end_date=purchase.access_end_date.isoformat(),
            )
        if purchase.status != PURCHASE_ACTIVE:
            raise AccessDenied("Purchase is no longer valid", purchase_id=purchase_id, status=purchase.status)

        try:
            access_key = self.cipher.decrypt(purchase.access_key)
        except DecryptionError as exc:
            logger.error("access_key_decrypt_failed", purchase_id=purchase_id)
            raise IntegrityViolation(f"Access key for purchase {purchase_id} cannot be decrypted") from exc

        listing = purchase.listing
        result = await self.db.execute(
            self._catalog_data_points()
            .where(
                DataPoint.user_id == purchase.provider_id,
                DataPoint.data_hash.in_(listing.data_hashes or []),
            )
            .order_by(DataPoint.recorded_at)
            .limit(self.settings.max_listing_data_points)
        )
        points = [DataPointView.model_validate(dp) for dp in result.scalars()]

        self.db.add(PurchaseAccessLog(
            purchase_id=purchase.id,
            action="view",
            details="Accessed purchased data",
            created_at=now,
        ))
        await self.db.commit()

        return AccessPayload(
            purchase_id=purchase.id,
            access_key=access_key,
            listing_id=listing.id,
            listing_title=listing.title,
            data_type=listing.data_type,
            category=listing.category,
            access_expires=purchase.access_end_date,
            data_points=points,
        )

    async def rate_purchase(self, request: RatingRequest) -> RatingResult:
        """Rate a purchase once and fold the score into the listing's running mean."""
        try:
            purchase = await self._get_purchase(request.purchase_id, lock=True)
            if purchase.buyer_id != request.buyer_id:
                raise AccessDenied("Only the buyer can rate a purchase", purchase_id=purchase.id)
            if purchase.status not in (PURCHASE_ACTIVE, PURCHASE_EXPIRED):
                raise RatingNotAllowed(
                    "Purchase cannot be rated", purchase_id=purchase.id, status=purchase.status
                )
            if purchase.rating_score is not None:
                raise AlreadyRated("Purchase has already been rated", purchase_id=purchase.id)

            result = await self.db.execute(
                select(DataListing)
                .where(DataListing.id == purchase.listing_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            listing = result.scalar_one()

            now = datetime.now(timezone.utc)
            old_avg, old_count = listing.rating_avg, listing.rating_count
            listing.rating_avg = (old_avg * old_count + request.score) / (old_count + 1)
            listing.rating_count = old_count + 1
            listing.updated_at = now

            purchase.rating_score = request.score
            purchase.rating_comment = request.comment
            purchase.rated_at = now
            purchase.updated_at = now
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("purchase_rated", purchase_id=purchase.id, listing_id=listing.id, score=request.score)
        return RatingResult(
            purchase_id=purchase.id,
            listing_id=listing.id,
            score=request.score,
            rating_avg=listing.rating_avg,
            rating_count=listing.rating_count,
        )

    async def refund_purchase(
        self, purchase_id: str, actor_id: int, reason: str | None = None, now: datetime | None = None
    ) -> RefundResult:
        """Compensate a purchase: provider and platform pay the buyer back.

        History is never rewritten; REFUND entries are appended instead. The
        listing's purchase counter is left as is.
        """
        now = now or datetime.now(timezone.utc)
        try:
            actor = await require_user(self.db, actor_id)
            purchase = await self._get_purchase(purchase_id, lock=True)
            if actor.role != ADMIN_ROLE and actor.id != purchase.provider_id:
                raise AccessDenied("Only the provider or an admin can refund", purchase_id=purchase_id)
            if purchase.status not in (PURCHASE_ACTIVE, PURCHASE_EXPIRED):
                raise RefundNotAllowed(
                    "Purchase cannot be refunded", purchase_id=purchase_id, status=purchase.status
                )

            platform_id = self.settings.platform_account_id
            memo = reason or "Purchase refund"
            legs = []
            if purchase.provider_amount > ZERO:
                legs.append(LedgerEntry(
                    from_user_id=purchase.provider_id,
                    to_user_id=purchase.buyer_id,
                    amount=purchase.provider_amount,
                    meta=TxMeta(TransactionType.REFUND, f"refund:{purchase_id}:provider", memo, {"purchase_id": purchase_id}),
                ))
            if purchase.platform_fee > ZERO:
                legs.append(LedgerEntry(
                    from_user_id=platform_id,
                    to_user_id=purchase.buyer_id,
                    amount=purchase.platform_fee,
                    meta=TxMeta(TransactionType.REFUND, f"refund:{purchase_id}:platform", memo, {"purchase_id": purchase_id}),
                ))
            transactions: list[TokenTransaction] = []
            if legs:
                transactions = (await self.ledger.apply_transfers(legs)).transactions

            purchase.status = PURCHASE_REFUNDED
            purchase.updated_at = now
            self.db.add(PurchaseAccessLog(
                purchase_id=purchase_id, action="refund", details=memo[:256], created_at=now
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("purchase_refunded", purchase_id=purchase_id, actor_id=actor_id, amount=str(purchase.price))

        wallets = await self._wallets({tx.from_user_id for tx in transactions} | {purchase.buyer_id})
        for tx in transactions:
            outcome = await submit_best_effort(
                self.gateway,
                SettlementInstruction(
                    kind=InstructionKind.REFUND,
                    amount=tx.amount,
                    reference_id=tx.reference_id,
                    source_wallet=wallets.get(tx.from_user_id),
                    destination_wallet=wallets.get(purchase.buyer_id),
                    memo=memo[:120],
                ),
                timeout=self.settings.settlement_timeout_seconds,
            )
            apply_outcome(tx, outcome)
        await self.db.commit()

        return RefundResult(
            purchase_id=purchase_id,
            status=purchase.status,
            refunded_amount=sum((tx.amount for tx in transactions), ZERO),
            transaction_ids=[tx.id for tx in transactions],
            settlement_state=transactions[0].settlement_state if transactions else "skipped",
        )

    async def revoke_purchase(self, purchase_id: str, actor_id: int, reason: str | None = None) -> PurchaseView:
        """Admin-only: cut off access without moving any funds."""
        try:
            actor = await require_user(self.db, actor_id)
            if actor.role != ADMIN_ROLE:
                raise AccessDenied("Admin role required", user_id=actor_id)
            purchase = await self._get_purchase(purchase_id, lock=True)
            if purchase.status not in (PURCHASE_ACTIVE, PURCHASE_EXPIRED):
                raise AccessDenied("Purchase cannot be revoked", purchase_id=purchase_id, status=purchase.status)
            now = datetime.now(timezone.utc)
            purchase.status = PURCHASE_REVOKED
            purchase.updated_at = now
            self.db.add(PurchaseAccessLog(
                purchase_id=purchase_id, action="revoke", details=(reason or "")[:256] or None, created_at=now
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("purchase_revoked", purchase_id=purchase_id, actor_id=actor_id)
        return _purchase_view(purchase)

    async def expire_stale_purchases(self, now: datetime | None = None, buyer_id: int | None = None) -> int:
        """Flip every elapsed active grant to expired. Returns the number flipped."""
        now = now or datetime.now(timezone.utc)
        stmt = (
            update(DataPurchase)
            .where(DataPurchase.status == PURCHASE_ACTIVE, DataPurchase.access_end_date < now)
            .values(status=PURCHASE_EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if buyer_id is not None:
            stmt = stmt.where(DataPurchase.buyer_id == buyer_id)
        result = await self.db.execute(stmt)
        await self.db.commit()
        if result.rowcount:
            logger.info("purchases_expired", count=result.rowcount, buyer_id=buyer_id)
        return result.rowcount

    async def get_user_purchases(
        self, user_id: int, status: str | None = None, now: datetime | None = None
    ) -> list[PurchaseView]:
        """A buyer's purchases, newest first. Elapsed grants are flipped first."""
        await self.expire_stale_purchases(now, buyer_id=user_id)
        stmt = select(DataPurchase).where(DataPurchase.buyer_id == user_id)
        if status is not None:
            stmt = stmt.where(DataPurchase.status == status)
        result = await self.db.execute(
            stmt.order_by(DataPurchase.access_start_date.desc()).execution_options(populate_existing=True)
        )
        return [_purchase_view(p) for p in result.unique().scalars()]

    async def get_user_sales(
        self,
        user_id: int,
        status: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list[PurchaseView]:
        stmt = select(DataPurchase).where(DataPurchase.provider_id == user_id)
        if status is not None:
            stmt = stmt.where(DataPurchase.status == status)
        if start_date is not None:
            stmt = stmt.where(DataPurchase.access_start_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(DataPurchase.access_start_date <= end_date)
        result = await self.db.execute(stmt.order_by(DataPurchase.access_start_date.desc()))
        return [_purchase_view(p) for p in result.unique().scalars()]

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def create_listing(self, request: CreateListingRequest) -> ListingView:
        """Publish a listing over the provider's confirmed data points in a time range."""
        provider = await require_user(self.db, request.provider_id)

        stmt = self._catalog_data_points().where(
            DataPoint.user_id == provider.id,
            DataPoint.status == "confirmed",
            DataPoint.recorded_at >= request.timeframe_start,
            DataPoint.recorded_at <= request.timeframe_end,
        )
        if request.data_type:
            stmt = stmt.where(DataPoint.device_type == request.data_type)
        result = await self.db.execute(
            stmt.order_by(DataPoint.recorded_at).limit(self.settings.max_listing_data_points)
        )
        hashes = [dp.data_hash for dp in result.scalars()]
        if not hashes:
            raise NoDataPoints(
                "No confirmed data points in the requested timeframe",
                user_id=provider.id,
                timeframe_start=request.timeframe_start.isoformat(),
                timeframe_end=request.timeframe_end.isoformat(),
            )

        listing = DataListing(
            provider_id=provider.id,
            title=request.title,
            description=request.description,
            data_type=request.data_type or "basic",
            category=request.category,
            price=to_amount(request.price),
            access_period_days=request.access_period_days or self.settings.default_access_period_days,
            data_hashes=hashes,
            data_points_count=len(hashes),
            timeframe_start=request.timeframe_start,
            timeframe_end=request.timeframe_end,
            tags=list(request.tags),
            status=LISTING_ACTIVE,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(listing)
        await self.db.commit()
        logger.info("listing_created", listing_id=listing.id, provider_id=provider.id, data_points=len(hashes))
        return ListingView.model_validate(listing)

    async def update_listing(self, listing_id: str, provider_id: int, request: UpdateListingRequest) -> ListingView:
        """Edit provider-owned fields. Hashes, counters and ratings are never touched here."""
        listing = await self._get_owned_listing(listing_id, provider_id)
        changes = request.model_dump(exclude_none=True)
        if "price" in changes:
            changes["price"] = to_amount(changes["price"])
        for key, value in changes.items():
            setattr(listing, key, value)
        listing.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        return ListingView.model_validate(listing)

    async def deactivate_listing(self, listing_id: str, provider_id: int) -> ListingView:
        """Soft-deactivate. Listings with purchases are never deleted."""
        listing = await self._get_owned_listing(listing_id, provider_id)
        listing.status = LISTING_INACTIVE
        listing.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.info("listing_deactivated", listing_id=listing_id, provider_id=provider_id)
        return ListingView.model_validate(listing)

    async def set_listing_featured(self, listing_id: str, featured: bool, admin_id: int) -> ListingView:
        admin = await require_user(self.db, admin_id)
        if admin.role != ADMIN_ROLE:
            raise AccessDenied("Admin role required", user_id=admin_id)
        listing = await self._get_listing(listing_id)
        listing.featured = featured
        listing.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        return ListingView.model_validate(listing)

    async def get_listings(self, filters: ListingFilters | None = None, page: int = 1, limit: int = 20) -> ListingPage:
        """Browse purchasable listings. Only active listings are ever returned."""
        filters = filters or ListingFilters()
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        stmt = self._active_listings()
        if filters.data_type:
            stmt = stmt.where(DataListing.data_type == filters.data_type)
        if filters.category:
            stmt = stmt.where(DataListing.category == filters.category)
        if filters.provider_id is not None:
            stmt = stmt.where(DataListing.provider_id == filters.provider_id)
        if filters.price_min is not None:
            stmt = stmt.where(DataListing.price >= filters.price_min)
        if filters.price_max is not None:
            stmt = stmt.where(DataListing.price <= filters.price_max)
        if filters.featured:
            stmt = stmt.where(DataListing.featured.is_(True))
        if filters.search:
            pattern = f"%{filters.search}%"
            stmt = stmt.where(or_(DataListing.title.ilike(pattern), DataListing.description.ilike(pattern)))

        total = (
            await self.db.execute(select(func.count()).select_from(stmt.subquery()))
        ).scalar_one()

        column = _SORT_COLUMNS[filters.sort_by]
        order = column.desc() if filters.sort_order == "desc" else column.asc()
        result = await self.db.execute(
            stmt.order_by(order, DataListing.id).offset((page - 1) * limit).limit(limit)
        )
        return ListingPage(
            listings=[ListingView.model_validate(listing) for listing in result.scalars()],
            total=total,
            page=page,
            limit=limit,
            pages=_page_count(total, limit),
        )

    async def get_listing(self, listing_id: str) -> ListingView:
        """Listing detail. Each call counts as a view."""
        listing = await self._get_listing(listing_id)
        await self.db.execute(
            update(DataListing)
            .where(DataListing.id == listing_id)
            .values(views_count=DataListing.views_count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(listing)
        return ListingView.model_validate(listing)

    async def get_user_listings(self, provider_id: int, status: str | None = None) -> list[ListingView]:
        stmt = select(DataListing).where(DataListing.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(DataListing.status == status)
        result = await self.db.execute(stmt.order_by(DataListing.created_at.desc()))
        return [ListingView.model_validate(listing) for listing in result.scalars()]

    # ------------------------------------------------------------------
    # Marketplace settings and stats
    # ------------------------------------------------------------------

    async def get_fee_rate(self) -> float:
        """Platform fee percent: the global settings row when present, else configuration."""
        result = await self.db.execute(
            select(MarketplaceSettings.platform_fee_rate).where(MarketplaceSettings.scope == "global")
        )
        rate = result.scalar_one_or_none()
        return self.settings.platform_fee_rate if rate is None else rate

    async def set_fee_rate(self, platform_fee_rate: float, admin_id: int) -> float:
        admin = await require_user(self.db, admin_id)
        if admin.role != ADMIN_ROLE:
            raise AccessDenied("Admin role required", user_id=admin_id)
        if not 0 <= platform_fee_rate <= 100:
            raise InvalidAmount("Fee rate must be between 0 and 100", rate=platform_fee_rate)
        result = await self.db.execute(select(MarketplaceSettings).where(MarketplaceSettings.scope == "global"))
        row = result.scalar_one_or_none()
        if row is None:
            row = MarketplaceSettings(scope="global")
            self.db.add(row)
        row.platform_fee_rate = platform_fee_rate
        row.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.info("platform_fee_rate_updated", rate=platform_fee_rate, admin_id=admin_id)
        return platform_fee_rate

    async def get_categories_and_tags(self) -> CategoriesAndTags:
        """Active listing counts by category, data type and the most used tags."""
        categories = await self._count_active_by(DataListing.category)
        data_types = await self._count_active_by(DataListing.data_type)

        tag_counts: Counter[str] = Counter()
        tag_rows = await self.db.execute(
            select(DataListing.tags).where(DataListing.status == LISTING_ACTIVE)
        )
        for tags in tag_rows.scalars():
            tag_counts.update(set(tags or []))
        top_tags = sorted(tag_counts.items(), key=lambda item: (-item[1], item[0]))[:TOP_TAGS]

        return CategoriesAndTags(
            categories=[NamedCount(name=name, count=count) for name, count in categories],
            tags=[NamedCount(name=name, count=count) for name, count in top_tags],
            data_types=[NamedCount(name=name, count=count) for name, count in data_types],
        )

    async def get_marketplace_stats(self, now: datetime | None = None) -> MarketplaceStats:
        now = now or datetime.now(timezone.utc)
        active = (
            await self.db.execute(select(func.count()).select_from(self._active_listings().subquery()))
        ).scalar_one()
        purchases, volume, fees = (
            await self.db.execute(
                select(
                    func.count(DataPurchase.id),
                    func.coalesce(func.sum(DataPurchase.price), 0),
                    func.coalesce(func.sum(DataPurchase.platform_fee), 0),
                ).where(DataPurchase.status != PURCHASE_REFUNDED)
            )
        ).one()
        categories = await self._count_active_by(DataListing.category)

        return MarketplaceStats(
            active_listings=active,
            total_purchases=purchases,
            total_volume=to_amount(volume),
            total_platform_fees=to_amount(fees),
            categories=dict(categories),
            category_distribution=[
                CategoryShare(category=name, count=count, percentage=math.floor(count * 100 / active + 0.5))
                for name, count in categories
            ],
            price_distribution=await self._price_distribution(),
            purchase_trend=await self._purchase_trend(now),
        )

    async def _count_active_by(self, column) -> list[tuple[str, int]]:
        result = await self.db.execute(
            select(column, func.count())
            .where(DataListing.status == LISTING_ACTIVE, column.is_not(None))
            .group_by(column)
            .order_by(func.count().desc(), column)
        )
        return [(name, count) for name, count in result.all()]

    async def _price_distribution(self) -> list[PriceBucket]:
        bucket = case(
            *[(DataListing.price <= upper, label) for label, upper in PRICE_BUCKETS if upper is not None],
            else_=PRICE_BUCKETS[-1][0],
        )
        result = await self.db.execute(
            select(bucket, func.count()).where(DataListing.status == LISTING_ACTIVE).group_by(bucket)
        )
        counts = dict(result.all())
        return [PriceBucket(range=label, count=counts.get(label, 0)) for label, _ in PRICE_BUCKETS]

    async def _purchase_trend(self, now: datetime) -> list[DailyCount]:
        """Purchases per UTC day over the last seven days, oldest first."""
        today = now.astimezone(timezone.utc).date()
        days = [today - timedelta(days=offset) for offset in range(TREND_DAYS - 1, -1, -1)]
        start = datetime.combine(days[0], time.min, tzinfo=timezone.utc)
        result = await self.db.execute(
            select(DataPurchase.created_at).where(
                DataPurchase.created_at >= start,
                DataPurchase.created_at < start + timedelta(days=TREND_DAYS),
            )
        )
        per_day = Counter(created.astimezone(timezone.utc).date() for created in result.scalars())
        return [DailyCount(day=day, count=per_day.get(day, 0)) for day in days]

    # ------------------------------------------------------------------
    # Repository helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _active_listings() -> Select:
        return select(DataListing).where(DataListing.status == LISTING_ACTIVE)

    @staticmethod
    def _catalog_data_points() -> Select:
        """Data catalog query that always excludes deleted points."""
        return select(DataPoint).where(DataPoint.deleted.is_(False))

    async def _get_listing(self, listing_id: str) -> DataListing:
        result = await self.db.execute(select(DataListing).where(DataListing.id == listing_id))
        listing = result.scalar_one_or_none()
        if listing is None:
            raise ListingNotFound("Listing not found", listing_id=listing_id)
        return listing

    async def _get_owned_listing(self, listing_id: str, provider_id: int) -> DataListing:
        result = await self.db.execute(
            select(DataListing).where(DataListing.id == listing_id, DataListing.provider_id == provider_id)
        )
        listing = result.scalar_one_or_none()
        if listing is None:
            raise ListingNotFound("Listing not found or not owned by you", listing_id=listing_id)
        return listing

    async def _get_purchase(self, purchase_id: str, lock: bool = False) -> DataPurchase:
        stmt = (
            select(DataPurchase)
            .where(DataPurchase.id == purchase_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update(of=DataPurchase)
        result = await self.db.execute(stmt)
        purchase = result.unique().scalar_one_or_none()
        if purchase is None:
            raise PurchaseNotFound("Purchase not found", purchase_id=purchase_id)
        return purchase

    async def _check_no_active_grant(self, buyer_id: int, listing_id: str, now: datetime) -> None:
        result = await self.db.execute(
            select(DataPurchase).where(
                DataPurchase.buyer_id == buyer_id,
                DataPurchase.listing_id == listing_id,
                DataPurchase.status == PURCHASE_ACTIVE,
            )
        )
        existing = result.unique().scalar_one_or_none()
        if existing is None:
            return
        if existing.access_end_date < now:
            existing.status = PURCHASE_EXPIRED
            existing.updated_at = now
            await self.db.flush()
            return
        raise AlreadyPurchased(
            "You already have an active purchase of this listing",
            listing_id=listing_id,
            purchase_id=existing.id,
        )

    async def _fund(
        self,
        buyer: User,
        provider: User,
        platform: User,
        listing: DataListing,
        purchase_id: str,
        platform_fee: Decimal,
        provider_amount: Decimal,
    ) -> list[TokenTransaction]:
        metadata = {"listing_id": listing.id, "purchase_id": purchase_id}
        legs = []
        if provider_amount > ZERO:
            legs.append(LedgerEntry(
                from_user_id=buyer.id,
                to_user_id=provider.id,
                amount=provider_amount,
                meta=TxMeta(TransactionType.PURCHASE, purchase_id, f"Purchase: {listing.title}"[:256], metadata),
            ))
        if platform_fee > ZERO:
            legs.append(LedgerEntry(
                from_user_id=buyer.id,
                to_user_id=platform.id,
                amount=platform_fee,
                meta=TxMeta(TransactionType.PLATFORM_FEE, purchase_id, f"Platform fee: {listing.title}"[:256], metadata),
            ))
        if not legs:
            return []
        posting = await self.ledger.apply_transfers(legs)
        return posting.transactions

    async def _wallets(self, user_ids: set[int | None]) -> dict[int, str | None]:
        ids = [uid for uid in user_ids if uid is not None]
        result = await self.db.execute(select(User.id, User.wallet_address).where(User.id.in_(ids)))
        return {uid: wallet for uid, wallet in result.all()}
