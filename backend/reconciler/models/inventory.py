from __future__ import annotations

from ..extensions import db
from reconciler.time_utils import to_utc_z, utcnow


class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "stock": self.stock,
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryMove(db.Model):
    """
    Reserve/release ledger row.

    move_key is reserve:<order>:<product> or release:<order>:<product>, so
    each direction can be recorded at most once per order line.
    """
    __tablename__ = "inventory_moves"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", "type", name="uq_inventory_moves_order_product_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    move_key = db.Column(db.String(128), nullable=False, unique=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    type = db.Column(db.String(16), nullable=False)  # reserve | release
    quantity = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "move_key": self.move_key,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity": self.quantity,
            "created_at": to_utc_z(self.created_at),
        }
