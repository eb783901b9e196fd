from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import column, inspect, select, table, update
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import InsufficientStock, ProductNotFound
from storefront.models import Product
from storefront.observability import increment_counter, record_event
from storefront.services.pricing import LineItem

STOCK_COLUMN_CANDIDATES = ("quantity", "stock", "qty", "amount", "inventory")

_stock_column_cache: Dict[str, Optional[str]] = {}


@dataclass
class StockReservation:
    updated: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    adjustments: List[Tuple[int, int]] = field(default_factory=list)


class InventoryService:
    """
    Stock ledger used by checkout.

    Every decrement is a single conditional UPDATE so concurrent checkouts can
    never push a product below zero. A reservation spanning several products
    runs in one transaction and is rolled back as a whole when any product
    falls short.
    """

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def reserve(self, line_items: Iterable[LineItem]) -> StockReservation:
        stock_col = self._stock_column()
        if not stock_col:
            reason = "No stock/quantity column detected on products table"
            self.logger.warning("Stock update skipped: %s", reason)
            increment_counter("stock_reservations_total", labels={"result": "skipped"})
            return StockReservation(skipped=True, reason=reason)

        demands = self._aggregate(line_items)
        if not demands:
            return StockReservation(skipped=True, reason="No purchasable items found")

        products = self._products_table(stock_col)
        stock = products.c[stock_col]
        adjustments: List[Tuple[int, int]] = []
        try:
            for product_id, (name, requested) in demands.items():
                result = self.db.execute(
                    update(products)
                    .where(products.c.productID == product_id)
                    .where(stock >= requested)
                    .values({stock_col: stock - requested})
                )
                if result.rowcount == 0:
                    self._raise_shortfall(products, stock, product_id, name, requested)
                adjustments.append((product_id, requested))
            self.db.commit()
        except (InsufficientStock, ProductNotFound) as exc:
            self.db.rollback()
            increment_counter("stock_reservations_total", labels={"result": exc.reason})
            self.logger.info("Stock reservation rejected: %s", exc.message)
            raise
        except Exception:
            self.db.rollback()
            increment_counter("stock_reservations_total", labels={"result": "error"})
            raise

        increment_counter("stock_reservations_total", labels={"result": "reserved"})
        record_event("stock_reserved", {"adjustments": adjustments})
        self.logger.info(
            "Stock reserved for %d products",
            len(adjustments),
            extra={"adjustments": adjustments},
        )
        return StockReservation(updated=len(adjustments), adjustments=adjustments)

    def release(self, line_items: Iterable[LineItem]) -> int:
        """Put previously reserved quantities back on the shelf."""
        stock_col = self._stock_column()
        if not stock_col:
            return 0

        products = self._products_table(stock_col)
        stock = products.c[stock_col]
        released = 0
        try:
            for product_id, (_name, quantity) in self._aggregate(line_items).items():
                result = self.db.execute(
                    update(products)
                    .where(products.c.productID == product_id)
                    .values({stock_col: stock + quantity})
                )
                released += result.rowcount or 0
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Failed to release reserved stock")
            raise

        self.logger.info("Released reserved stock for %d products", released)
        return released

    def get_stock(self, product_id: int) -> Optional[int]:
        product = self.db.query(Product).filter_by(productID=product_id).first()
        return None if product is None else product.stock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _stock_column(self) -> Optional[str]:
        if not self.config.STOCK_ENFORCEMENT_ENABLED:
            return None
        bind = self.db.get_bind()
        cache_key = str(bind.url)
        if cache_key not in _stock_column_cache:
            names = {col["name"] for col in inspect(bind).get_columns(Product.__tablename__)}
            _stock_column_cache[cache_key] = next(
                (candidate for candidate in STOCK_COLUMN_CANDIDATES if candidate in names),
                None,
            )
        return _stock_column_cache[cache_key]

    @staticmethod
    def _products_table(stock_col: str):
        return table(
            Product.__tablename__,
            column("productID"),
            column("name"),
            column(stock_col),
        )

    def _raise_shortfall(self, products, stock, product_id: int, name: Optional[str], requested: int) -> None:
        row = self.db.execute(
            select(stock, products.c.name).where(products.c.productID == product_id)
        ).first()
        if row is None:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, name or row[1], int(row[0] or 0), requested)

    @staticmethod
    def _aggregate(line_items: Iterable[LineItem]) -> Dict[int, Tuple[Optional[str], int]]:
        demands: Dict[int, Tuple[Optional[str], int]] = {}
        for item in line_items:
            if item.product_id is None or item.quantity <= 0:
                continue
            try:
                product_id = int(item.product_id)
            except (TypeError, ValueError):
                raise ProductNotFound(item.product_id) from None
            name, quantity = demands.get(product_id, (item.name, 0))
            demands[product_id] = (name, quantity + item.quantity)
        return demands


def reset_stock_column_cache() -> None:
    """Testing helper."""
    _stock_column_cache.clear()
