"""
SQLAlchemy models and data access for AgriConnect.

A `Database` is constructed once by the app and handed to request handlers
through the `get_db` dependency. It owns the engine and the session factory;
every public method runs in its own short-lived session, and multi-row writes
commit once.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Request
from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from schemas import (
    Farm,
    FarmerStats,
    Location,
    Order,
    OrderItem,
    Product,
    ProductUpdate,
    Quality,
    QualityUpdate,
    User,
    UserUpdate,
)

logger = logging.getLogger("agriconnect.database")

Base = declarative_base()


class DuplicateEmailError(Exception):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands DateTime columns back without tzinfo; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def update_fields(update: BaseModel) -> Dict[str, Any]:
    """Fields the caller actually set, without nulls or empty nested updates."""
    fields = {}
    for name in sorted(update.model_fields_set):
        value = getattr(update, name)
        if value is None:
            continue
        if isinstance(value, QualityUpdate) and not update_fields(value):
            continue
        fields[name] = value
    return fields


class LocatedMixin:
    location_lat = Column(Float)
    location_lng = Column(Float)
    location_address = Column(String)

    def get_location(self) -> Location:
        default = Location()
        return Location(
            lat=self.location_lat if self.location_lat is not None else default.lat,
            lng=self.location_lng if self.location_lng is not None else default.lng,
            address=self.location_address or "",
        )

    def set_location(self, location: Location) -> None:
        self.location_lat = location.lat
        self.location_lng = location.lng
        self.location_address = location.address


class UserRow(LocatedMixin, Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('farmer', 'customer', 'admin', 'superadmin')", name="ck_users_role"),
    )

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)
    role = Column(String, nullable=False)
    phone = Column(String)
    avatar = Column(String)
    farm_name = Column(String)
    farm_description = Column(String)
    farm_certifications = Column(JSON)
    farm_established_year = Column(Integer)
    stats_total_orders = Column(Integer, default=0)
    stats_rating = Column(Float, default=0)
    stats_total_revenue = Column(Float, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def get_farm(self) -> Farm:
        return Farm(
            name=self.farm_name or "",
            description=self.farm_description,
            certifications=self.farm_certifications or [],
            established_year=self.farm_established_year,
        )

    def set_farm(self, farm: Farm) -> None:
        self.farm_name = farm.name
        self.farm_description = farm.description
        self.farm_certifications = list(farm.certifications)
        self.farm_established_year = farm.established_year

    def get_stats(self) -> FarmerStats:
        return FarmerStats(
            total_orders=self.stats_total_orders or 0,
            rating=self.stats_rating or 0,
            total_revenue=self.stats_total_revenue or 0,
        )

    def set_stats(self, stats: FarmerStats) -> None:
        self.stats_total_orders = stats.total_orders
        self.stats_rating = stats.rating
        self.stats_total_revenue = stats.total_revenue

    def to_user(self) -> User:
        user = User(
            id=self.id,
            name=self.name,
            email=self.email,
            role=self.role,
            phone=self.phone,
            avatar=self.avatar,
            location=self.get_location(),
            is_active=bool(self.is_active),
            created_at=_utc(self.created_at),
            updated_at=_utc(self.updated_at),
        )
        if user.role == "farmer":
            user.farm = self.get_farm()
            user.stats = self.get_stats()
        return user

    @classmethod
    def from_user(cls, user: User, password_hash: str) -> "UserRow":
        row = cls(
            id=user.id,
            name=user.name,
            email=str(user.email).lower(),
            password=password_hash,
            role=user.role,
            phone=user.phone,
            avatar=user.avatar,
            is_active=user.is_active,
            created_at=user.created_at or utcnow(),
            updated_at=user.updated_at or utcnow(),
        )
        row.set_location(user.location)
        if user.farm is not None:
            row.set_farm(user.farm)
        if user.stats is not None:
            row.set_stats(user.stats)
        return row


class ProductRow(LocatedMixin, Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("category IN ('chicken', 'eggs', 'manure')", name="ck_products_category"),
    )

    id = Column(String, primary_key=True)
    farmer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    images = Column(JSON)
    stock = Column(Integer, nullable=False, default=0)
    quality_rating = Column(Float, default=0)
    quality_reviews = Column(Integer, default=0)
    quality_organic = Column(Boolean, default=False)
    quality_freshness = Column(Integer, default=100)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def get_quality(self) -> Quality:
        return Quality(
            rating=self.quality_rating or 0,
            reviews=self.quality_reviews or 0,
            organic=bool(self.quality_organic),
            freshness=self.quality_freshness if self.quality_freshness is not None else 100,
        )

    def set_quality(self, quality) -> None:
        """Takes a full `Quality` or only the fields set on a `QualityUpdate`."""
        if isinstance(quality, QualityUpdate):
            fields = update_fields(quality)
        else:
            fields = quality.model_dump()
        for name, value in fields.items():
            setattr(self, f"quality_{name}", value)

    def to_product(self) -> Product:
        return Product(
            id=self.id,
            farmer_id=self.farmer_id,
            name=self.name,
            category=self.category,
            price=self.price,
            unit=self.unit,
            description=self.description,
            images=self.images or [],
            stock=self.stock,
            quality=self.get_quality(),
            location=self.get_location(),
            is_active=bool(self.is_active),
            created_at=_utc(self.created_at),
            updated_at=_utc(self.updated_at),
        )

    @classmethod
    def from_product(cls, product: Product) -> "ProductRow":
        row = cls(
            id=product.id,
            farmer_id=product.farmer_id,
            name=product.name,
            category=product.category,
            price=product.price,
            unit=product.unit,
            description=product.description,
            images=list(product.images),
            stock=product.stock,
            is_active=product.is_active,
            created_at=product.created_at or utcnow(),
            updated_at=product.updated_at or utcnow(),
        )
        row.set_quality(product.quality)
        row.set_location(product.location)
        return row


class OrderRow(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'shipped', 'delivered', 'cancelled')",
            name="ck_orders_status",
        ),
    )

    id = Column(String, primary_key=True)
    customer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    customer_name = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False, default="")
    farmer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    total = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="pending")
    delivery_address = Column(String, nullable=False)
    estimated_delivery = Column(DateTime(timezone=True))
    notes = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "OrderItemRow",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemRow.id",
        lazy="selectin",
    )

    def to_order(self) -> Order:
        return Order(
            id=self.id,
            customer_id=self.customer_id,
            customer_name=self.customer_name,
            customer_phone=self.customer_phone,
            farmer_id=self.farmer_id,
            items=[i.to_item() for i in self.items],
            total=self.total,
            status=self.status,
            delivery_address=self.delivery_address,
            estimated_delivery=_utc(self.estimated_delivery),
            notes=self.notes,
            created_at=_utc(self.created_at),
        )

    @classmethod
    def from_order(cls, order: Order) -> "OrderRow":
        return cls(
            id=order.id,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            farmer_id=order.farmer_id,
            total=order.total,
            status=order.status,
            delivery_address=order.delivery_address,
            estimated_delivery=order.estimated_delivery,
            notes=order.notes,
            created_at=order.created_at or utcnow(),
            items=[
                OrderItemRow(
                    product_id=i.product_id,
                    product_name=i.product_name,
                    quantity=i.quantity,
                    price=i.price,
                )
                for i in order.items
            ],
        )


class OrderItemRow(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)

    order = relationship("OrderRow", back_populates="items")

    def to_item(self) -> OrderItem:
        return OrderItem(
            product_id=self.product_id,
            product_name=self.product_name,
            quantity=self.quantity,
            price=self.price,
        )


# Partial updates

def _apply(row, update: BaseModel, setters: Dict[str, Callable[[Any, Any], None]]) -> None:
    for name, value in update_fields(update).items():
        if name in setters:
            setters[name](row, value)
        else:
            setattr(row, name, value)
    row.updated_at = utcnow()


def apply_user_update(row: UserRow, update: UserUpdate, hash_password: Callable[[str], str]) -> None:
    _apply(row, update, {
        "email": lambda r, value: setattr(r, "email", str(value).lower()),
        "password": lambda r, value: setattr(r, "password", hash_password(value)),
        "location": UserRow.set_location,
        "farm": UserRow.set_farm,
    })


def apply_product_update(row: ProductRow, update: ProductUpdate) -> None:
    _apply(row, update, {
        "images": lambda r, value: setattr(r, "images", list(value)),
        "quality": ProductRow.set_quality,
        "location": ProductRow.set_location,
    })


def _is_duplicate_email(error: IntegrityError) -> bool:
    return "users.email" in str(error.orig)


class Database:
    def __init__(self, path: str):
        self.path = path
        self.engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("schema_ready path=%s", self.path)

    # Users

    def list_users(self) -> List[User]:
        with self.SessionLocal() as session:
            rows = session.scalars(select(UserRow).order_by(UserRow.created_at)).all()
            return [r.to_user() for r in rows]

    def get_user(self, user_id: str) -> Optional[User]:
        with self.SessionLocal() as session:
            row = session.get(UserRow, user_id)
            return row.to_user() if row else None

    def get_user_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        """The user and their password hash. The hash never leaves the auth handlers."""
        with self.SessionLocal() as session:
            row = session.scalars(select(UserRow).where(UserRow.email == email.lower())).first()
            return (row.to_user(), row.password) if row else None

    def insert_user(self, user: User, password_hash: str) -> User:
        try:
            with self.SessionLocal.begin() as session:
                session.add(UserRow.from_user(user, password_hash))
        except IntegrityError as e:
            if _is_duplicate_email(e):
                raise DuplicateEmailError(str(user.email).lower()) from e
            raise
        return self.get_user(user.id)

    def update_user(self, user_id: str, update: UserUpdate, hash_password: Callable[[str], str]) -> bool:
        try:
            with self.SessionLocal.begin() as session:
                row = session.get(UserRow, user_id)
                if row is None:
                    return False
                apply_user_update(row, update, hash_password)
        except IntegrityError as e:
            if _is_duplicate_email(e):
                raise DuplicateEmailError(str(update.email)) from e
            raise
        return True

    def delete_user(self, user_id: str) -> bool:
        return self._delete(UserRow, user_id)

    # Products

    def list_products(
        self,
        farmer_id: Optional[str] = None,
        category: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Product]:
        query = select(ProductRow)
        if active_only:
            query = query.where(ProductRow.is_active.is_(True))
        if farmer_id:
            query = query.where(ProductRow.farmer_id == farmer_id)
        if category:
            query = query.where(ProductRow.category == category)
        with self.SessionLocal() as session:
            rows = session.scalars(query.order_by(ProductRow.created_at.desc())).all()
            return [r.to_product() for r in rows]

    def get_product(self, product_id: str) -> Optional[Product]:
        with self.SessionLocal() as session:
            row = session.get(ProductRow, product_id)
            return row.to_product() if row else None

    def get_products(self, product_ids: List[str]) -> Dict[str, Product]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}
        with self.SessionLocal() as session:
            rows = session.scalars(select(ProductRow).where(ProductRow.id.in_(ids))).all()
            return {r.id: r.to_product() for r in rows}

    def insert_product(self, product: Product) -> Product:
        with self.SessionLocal.begin() as session:
            session.add(ProductRow.from_product(product))
        return self.get_product(product.id)

    def update_product(self, product_id: str, update: ProductUpdate) -> bool:
        with self.SessionLocal.begin() as session:
            row = session.get(ProductRow, product_id)
            if row is None:
                return False
            apply_product_update(row, update)
        return True

    def delete_product(self, product_id: str) -> bool:
        return self._delete(ProductRow, product_id)

    # Orders

    def list_orders(self, farmer_id: Optional[str] = None, customer_id: Optional[str] = None) -> List[Order]:
        query = select(OrderRow)
        if farmer_id:
            query = query.where(OrderRow.farmer_id == farmer_id)
        if customer_id:
            query = query.where(OrderRow.customer_id == customer_id)
        with self.SessionLocal() as session:
            rows = session.scalars(query.order_by(OrderRow.created_at.desc())).all()
            return [r.to_order() for r in rows]

    def get_order(self, order_id: str) -> Optional[Order]:
        with self.SessionLocal() as session:
            row = session.get(OrderRow, order_id)
            return row.to_order() if row else None

    def insert_orders(self, orders: List[Order]) -> List[Order]:
        """Write every order header and item row, committing once."""
        rows = [OrderRow.from_order(o) for o in orders]
        with self.SessionLocal.begin() as session:
            session.add_all(rows)
        return [r.to_order() for r in rows]

    def update_order_status(self, order_id: str, status: str) -> bool:
        with self.SessionLocal.begin() as session:
            row = session.get(OrderRow, order_id)
            if row is None:
                return False
            row.status = status
        return True

    # Seeding

    def seed_users(self, users: List[User], password_hash: str) -> int:
        inserted = 0
        for user in users:
            if self.get_user_credentials(str(user.email)) is not None:
                continue
            self.insert_user(user, password_hash)
            inserted += 1
        if inserted:
            logger.info("seeded_users count=%s", inserted)
        return inserted

    def _delete(self, model, row_id: str) -> bool:
        with self.SessionLocal.begin() as session:
            row = session.get(model, row_id)
            if row is None:
                return False
            session.delete(row)
        return True


def get_db(request: Request) -> Database:
    return request.app.state.db
