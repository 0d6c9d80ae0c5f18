from sqlalchemy import (
    Column, String, Integer, DateTime, Text, Boolean, Float, Numeric,
    Enum, Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, ImageType


class Category(Base):
    """
    Product category, resolved by case-insensitive name.

    Rows are created on demand by the transform stage; a single active
    writer per category namespace is assumed.
    """
    __tablename__ = "categories"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    parent_id = Column(BigIntPK, ForeignKey("categories.id"), nullable=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_category_name", "name"),
    )


class Supplier(Base):
    """Store that lists products on a rendered-page source."""
    __tablename__ = "suppliers"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Natural key
    source_name = Column(String(100), nullable=False)
    external_id = Column(String(100), nullable=False)

    name = Column(String(255), nullable=True)
    home_page_url = Column(String(1000), nullable=True)
    all_product_url = Column(String(1000), nullable=True)
    top_rated_product_url = Column(String(1000), nullable=True)
    positive_number = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("source_name", "external_id", name="uq_suppliers_natural_key"),
    )


class MasterProductType(Base):
    """Product type with the keyword list used to classify product names."""
    __tablename__ = "m_types"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    keywords = Column(JSONType, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Product(Base):
    """
    One SKU variant of an external catalog item.

    Design:
    - Natural key is (source_name, external_id, sku): an external item
      yields one row per purchasable variant
    - parent_sku groups the variants of the same item
    - price/sale_price are decimal currency, never float
    """
    __tablename__ = "products"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Natural key
    source_name = Column(String(100), nullable=False)
    external_id = Column(String(100), nullable=False)
    sku = Column(String(255), nullable=False)

    parent_sku = Column(String(255), nullable=False, index=True)
    supplier_id = Column(BigIntPK, ForeignKey("suppliers.id"), nullable=True)
    category_id = Column(BigIntPK, ForeignKey("categories.id"), nullable=True, index=True)
    product_type_id = Column(BigIntPK, ForeignKey("m_types.id"), nullable=True, index=True)

    # Content
    name = Column(Text, nullable=False)
    source_url = Column(String(1000), nullable=True)
    description = Column(Text, nullable=True)
    gender = Column(String(50), nullable=True)
    size = Column(JSONType, nullable=True)  # ordered list of normalized size strings
    size_kind = Column(String(20), nullable=True)
    specification = Column(JSONType, nullable=True)
    attributes = Column(JSONType, nullable=True)

    # Pricing and engagement
    price = Column(Numeric(12, 2), nullable=True)
    sale_price = Column(Numeric(12, 2), nullable=True)
    star_point = Column(Float, nullable=True)
    like_number = Column(Integer, nullable=True)
    number_of_purchased = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=True)
    is_top = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    images = relationship("ProductImage", back_populates="product", cascade="all, delete-orphan")
    reviews = relationship("ProductReview", back_populates="product", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("source_name", "external_id", "sku", name="uq_products_natural_key"),
        Index("idx_products_external", "source_name", "external_id"),
    )


class ProductImage(Base):
    """Locally stored image file plus the external URL it came from."""
    __tablename__ = "product_images"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    image_type = Column(Enum(ImageType), nullable=False, default=ImageType.MAIN)

    url = Column(String(500), nullable=True)
    thumb_url = Column(String(500), nullable=True)
    source_url = Column(String(1000), nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", back_populates="images")

    __table_args__ = (
        UniqueConstraint("product_id", "source_url", name="uq_product_images_natural_key"),
        Index("idx_product_images_type", "product_id", "image_type"),
    )


class ProductReview(Base):
    """Customer review attached to one product variant."""
    __tablename__ = "product_reviews"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    review_key = Column(String(64), nullable=False)

    user_name = Column(String(100), nullable=True)
    user_review = Column(Text, nullable=True)
    star = Column(Float, nullable=True)
    review_date = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", back_populates="reviews")
    images = relationship("ProductReviewImage", back_populates="review", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("product_id", "review_key", name="uq_product_reviews_natural_key"),
    )


class ProductReviewImage(Base):
    __tablename__ = "product_review_images"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    review_id = Column(BigIntPK, ForeignKey("product_reviews.id", ondelete="CASCADE"), nullable=False)

    url = Column(String(500), nullable=True)
    thumb_url = Column(String(500), nullable=True)
    source_url = Column(String(1000), nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    review = relationship("ProductReview", back_populates="images")

    __table_args__ = (
        UniqueConstraint("review_id", "source_url", name="uq_product_review_images_natural_key"),
    )
