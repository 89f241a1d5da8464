"""Marketplace inputs and results."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    listing_id: str
    buyer_id: int


class PurchaseResult(BaseModel):
    purchase_id: str
    listing_id: str
    buyer_id: int
    provider_id: int
    price: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    access_start_date: datetime
    access_end_date: datetime
    status: str
    access_key: str
    settlement_state: str
    buyer_balance: Decimal


class CreateListingRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: int
    title: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=2000)
    data_type: str | None = Field(default=None, max_length=32)
    category: str | None = Field(default=None, max_length=32)
    price: Decimal = Field(ge=0)
    access_period_days: int | None = Field(default=None, ge=1, le=3650)
    timeframe_start: datetime
    timeframe_end: datetime
    tags: list[str] = Field(default_factory=list, max_length=20)

    @model_validator(mode="after")
    def _check_timeframe(self) -> CreateListingRequest:
        if self.timeframe_end < self.timeframe_start:
            raise ValueError("timeframe_end must not be before timeframe_start")
        return self


class UpdateListingRequest(BaseModel):
    """Provider-editable fields. ``None`` leaves a field unchanged."""

    model_config = ConfigDict(frozen=True)

    title: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=2000)
    price: Decimal | None = Field(default=None, ge=0)
    access_period_days: int | None = Field(default=None, ge=1, le=3650)
    status: Literal["active", "inactive"] | None = None
    category: str | None = Field(default=None, max_length=32)
    tags: list[str] | None = Field(default=None, max_length=20)


class ListingFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_type: str | None = None
    category: str | None = None
    provider_id: int | None = None
    price_min: Decimal | None = None
    price_max: Decimal | None = None
    featured: bool | None = None
    search: str | None = None
    sort_by: Literal["price", "rating", "purchases", "date"] = "date"
    sort_order: Literal["asc", "desc"] = "desc"


class ListingView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_id: int
    title: str
    description: str | None = None
    data_type: str
    category: str | None = None
    price: Decimal
    access_period_days: int
    data_points_count: int
    timeframe_start: datetime | None = None
    timeframe_end: datetime | None = None
    tags: list[str]
    status: str
    featured: bool
    purchases_count: int
    views_count: int
    rating_avg: float
    rating_count: int
    created_at: datetime


class ListingPage(BaseModel):
    listings: list[ListingView]
    total: int
    page: int
    limit: int
    pages: int


class PurchaseView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    buyer_id: int
    provider_id: int
    price: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    access_start_date: datetime
    access_end_date: datetime
    status: str
    rating_score: int | None = None
    rating_comment: str | None = None
    settlement_state: str
    listing_title: str | None = None


class DataPointView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    data_hash: str
    recorded_at: datetime
    metrics: dict[str, Any]


class AccessPayload(BaseModel):
    purchase_id: str
    access_key: str
    listing_id: str
    listing_title: str
    data_type: str
    category: str | None = None
    access_expires: datetime
    data_points: list[DataPointView]


class RatingRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    purchase_id: str
    buyer_id: int
    score: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=500)


class RatingResult(BaseModel):
    purchase_id: str
    listing_id: str
    score: int
    rating_avg: float
    rating_count: int


class RefundResult(BaseModel):
    purchase_id: str
    status: str
    refunded_amount: Decimal
    transaction_ids: list[int]
    settlement_state: str


class NamedCount(BaseModel):
    name: str
    count: int


class CategoriesAndTags(BaseModel):
    categories: list[NamedCount]
    tags: list[NamedCount]
    data_types: list[NamedCount]


class CategoryShare(BaseModel):
    category: str
    count: int
    percentage: int


class PriceBucket(BaseModel):
    range: str
    count: int


class DailyCount(BaseModel):
    day: date
    count: int


class MarketplaceStats(BaseModel):
    active_listings: int
    total_purchases: int
    total_volume: Decimal
    total_platform_fees: Decimal
    categories: dict[str, int]
    category_distribution: list[CategoryShare] = Field(default_factory=list)
    price_distribution: list[PriceBucket] = Field(default_factory=list)
    purchase_trend: list[DailyCount] = Field(default_factory=list)
