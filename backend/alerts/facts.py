"""
Fact Source — read-only view of stock levels and expiry dates.

The alerting core never writes product data. Any inventory backend can
plug in by implementing FactSource; SqlFactSource reads the local
products table.
"""

from abc import ABC, abstractmethod
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.rules import MIN_DERIVED_REORDER_LEVEL, ExpiryFact, HealthCheckFacts, StockFact
from db.models import Product, utcnow


class FactSource(ABC):
    """Boundary to the inventory data store."""

    @abstractmethod
    async def list_low_stock_candidates(self) -> list[StockFact]:
        """Products at or below their reorder threshold, including those out of stock."""
        ...

    @abstractmethod
    async def list_expiring_candidates(self, window_days: int) -> list[ExpiryFact]:
        """Products expiring between today and today + window_days, inclusive."""
        ...

    async def list_stock_levels(self) -> list[StockFact]:
        """Every tracked product's stock level. Used for dashboard statistics only."""
        return await self.list_low_stock_candidates()


class SqlFactSource(FactSource):
    def __init__(self, db: AsyncSession, today: date | None = None):
        self.db = db
        self.today = today or utcnow().date()

    @staticmethod
    def _to_stock_fact(product: Product) -> StockFact:
        return StockFact(
            subject_id=str(product.product_id),
            current_quantity=product.stock_quantity or 0,
            reorder_threshold=product.reorder_level,
            name=product.name,
        )

    async def list_low_stock_candidates(self) -> list[StockFact]:
        # Without a configured level the derived threshold max(20% of stock, 5)
        # only ever admits quantities <= 5, so the SQL filter can be exact.
        result = await self.db.execute(
            select(Product)
            .where(
                Product.is_active.is_(True),
                Product.stock_quantity <= func.coalesce(Product.reorder_level, MIN_DERIVED_REORDER_LEVEL),
            )
            .order_by(Product.product_id)
        )
        return [self._to_stock_fact(p) for p in result.scalars().all()]

    async def list_stock_levels(self) -> list[StockFact]:
        result = await self.db.execute(
            select(Product).where(Product.is_active.is_(True)).order_by(Product.product_id)
        )
        return [self._to_stock_fact(p) for p in result.scalars().all()]

    async def list_expiring_candidates(self, window_days: int) -> list[ExpiryFact]:
        horizon = date.fromordinal(self.today.toordinal() + window_days)
        result = await self.db.execute(
            select(Product)
            .where(
                Product.is_active.is_(True),
                Product.expiry_date.is_not(None),
                Product.expiry_date >= self.today,
                Product.expiry_date <= horizon,
            )
            .order_by(Product.expiry_date, Product.product_id)
        )
        return [
            ExpiryFact(
                subject_id=str(p.product_id),
                days_until_expiry=p.days_until_expiry(self.today),
                expiry_date=p.expiry_date.isoformat(),
                name=p.name,
            )
            for p in result.scalars().all()
        ]


async def gather_facts(
    source: FactSource,
    *,
    include_stock: bool = True,
    include_expiry: bool = True,
    expiry_window_days: int = 30,
) -> HealthCheckFacts:
    """Collect the snapshot for one pass. Fact queries are the pass's only reads of inventory data."""
    facts = HealthCheckFacts()
    if include_stock:
        facts.stock = await source.list_low_stock_candidates()
    if include_expiry:
        facts.expiring = await source.list_expiring_candidates(expiry_window_days)
    return facts
