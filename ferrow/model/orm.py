from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False, unique=True)
    price = Column(Integer, nullable=False)  # rupiah
    stock = Column(Integer, nullable=False, default=0)
    image_url = Column(String(500), nullable=True)
    category = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    ingredients = Column(Text, nullable=True)
    health_benefits = Column(Text, nullable=True)

    # nutrition facts, free text ("32%", "min 1.2%")
    protein = Column(String(50), nullable=True)
    fat = Column(String(50), nullable=True)
    fiber = Column(String(50), nullable=True)
    moisture = Column(String(50), nullable=True)
    ash = Column(String(50), nullable=True)
    calcium = Column(String(50), nullable=True)
    phosphorus = Column(String(50), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)
    user_id = Column(String, nullable=True, index=True)

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    shipping_address = Column(String, nullable=False)
    shipping_city = Column(String, nullable=False)
    shipping_province = Column(String, nullable=False)
    shipping_postal_code = Column(String, nullable=False)
    shipping_city_id = Column(String, nullable=True)
    shipping_province_id = Column(String, nullable=True)

    subtotal = Column(Integer, nullable=False)
    shipping_cost = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)

    courier = Column(String, nullable=True)
    service = Column(String, nullable=True)
    estimated_delivery = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)

    payment_method = Column(String, nullable=False, default="midtrans")
    # pending | paid | failed | expired | refunded
    payment_status = Column(String, nullable=False, default="pending")
    payment_token = Column(String, nullable=True)
    payment_url = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)

    # pending | confirmed | processing | shipped | delivered | completed
    # | cancelled
    status = Column(String, nullable=False, default="pending", index=True)
    notes = Column(Text, nullable=True)
    stock_committed = Column(Boolean, nullable=False, default=False)

    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    # no FK: deleting a product must not rewrite order history
    product_id = Column(Integer, nullable=False)
    product_name = Column(String(255), nullable=False)
    product_code = Column(String(50), nullable=False)
    product_image_url = Column(String(500), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    verification_token = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Admin(Base):
    __tablename__ = "admin"
    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True)
    password = Column(String, nullable=False)  # bcrypt hash
    role = Column(String, nullable=False, default="admin")
    token_invalidated_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


# ----------------------------
# payment sessions (PAYSESSION_BACKEND=sql)
# ----------------------------
class PaymentSessionHot(Base):
    __tablename__ = "payment_sessions_hot"
    token = Column(String, primary_key=True)
    order_id = Column(String, nullable=False)
    order_number = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    customer_email = Column(String, nullable=False)
    redirect_url = Column(String, nullable=True)
    provider = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)


class PaymentSessionPending(Base):
    __tablename__ = "payment_sessions_pending"
    token = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


Index("idx_ps_hot_created_at", PaymentSessionHot.created_at.desc())
