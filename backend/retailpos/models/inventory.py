from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z

# Stock pools: sales floor and warehouse
STOCK_TYPE_VENTA = "venta"
STOCK_TYPE_DEPOSITO = "deposito"
STOCK_TYPES = (STOCK_TYPE_VENTA, STOCK_TYPE_DEPOSITO)

MOVEMENT_SALE = "sale"
MOVEMENT_RETURN = "return"
MOVEMENT_RESTOCK = "restock"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_TYPES = (MOVEMENT_SALE, MOVEMENT_RETURN, MOVEMENT_RESTOCK, MOVEMENT_ADJUSTMENT)

RETURN_CUSTOMER_MISTAKE = "customer_mistake"
RETURN_DEFECTIVE = "defective"
RETURN_TYPES = (RETURN_CUSTOMER_MISTAKE, RETURN_DEFECTIVE)


def stock_field(stock_type: str) -> str:
    """Column name on Product holding the quantity of a stock pool."""
    if stock_type == STOCK_TYPE_VENTA:
        return "stock_venta"
    if stock_type == STOCK_TYPE_DEPOSITO:
        return "stock_deposito"
    raise ValueError(f"unknown stock_type {stock_type!r}")


class Product(db.Model):
    """
    Product master data plus the two stock pools.

    stock_venta / stock_deposito are a materialized cache of the stock movement
    ledger. They are only written through inventory_service, which updates them
    with a conditional UPDATE and appends the matching StockMovement in the
    same transaction. Both are CHECKed non-negative at the database level too.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.Index("ix_products_store_barcode", "store_id", "barcode"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        db.CheckConstraint("stock_venta >= 0", name="ck_products_stock_venta_non_negative"),
        db.CheckConstraint("stock_deposito >= 0", name="ck_products_stock_deposito_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(128), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    stock_venta = db.Column(db.Integer, nullable=False, default=0)
    stock_deposito = db.Column(db.Integer, nullable=False, default=0)
    min_stock_venta = db.Column(db.Integer, nullable=False, default=5)
    min_stock_deposito = db.Column(db.Integer, nullable=False, default=10)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} store_id={self.store_id}>"

    def stock_for(self, stock_type: str) -> int:
        return int(getattr(self, stock_field(stock_type)) or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "price": money_str(self.price),
            "cost": money_str(self.cost),
            "stock_venta": self.stock_venta,
            "stock_deposito": self.stock_deposito,
            "min_stock_venta": self.min_stock_venta,
            "min_stock_deposito": self.min_stock_deposito,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only ledger row: one inventory change of one stock pool.

    IMMUTABLE: rows are never updated or deleted.
    quantity_after = quantity_before + quantity_change, except for defective
    returns, which book quantity_change for returned-quantity accounting while
    leaving the pool untouched (quantity_before == quantity_after).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_store", "product_id", "store_id"),
        db.Index("ix_stock_movements_store_sale", "store_id", "sale_id"),
        db.Index("ix_stock_movements_store_created", "store_id", "created_at"),
        db.Index("ix_stock_movements_sale_item_type", "sale_item_id", "movement_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(20), nullable=False, index=True)
    stock_type = db.Column(db.String(10), nullable=False)

    quantity_change = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    performed_by = db.Column(db.Integer, nullable=False, index=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=True)

    # Stored explicitly on return rows (customer_mistake | defective)
    return_type = db.Column(db.String(20), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "store_id": self.store_id,
            "movement_type": self.movement_type,
            "stock_type": self.stock_type,
            "quantity_change": self.quantity_change,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "reason": self.reason,
            "notes": self.notes,
            "performed_by": self.performed_by,
            "sale_id": self.sale_id,
            "sale_item_id": self.sale_item_id,
            "return_type": self.return_type,
            "created_at": to_utc_z(self.created_at),
        }
