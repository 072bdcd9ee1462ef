"""
Catalog read access for the pricing validator.

The catalog itself is managed elsewhere; this module only reads the
canonical product rows and hands them out as ``ProductData``.
"""
from typing import List, Optional
from sqlalchemy.orm import Session
from . import models, schemas


def get_product(db: Session, product_id: str) -> Optional[models.Product]:
    """
    Retrieve a single product by ID.

    Args:
        db: Database session
        product_id: ID of the product to retrieve

    Returns:
        Product object or None if not found
    """
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_products(db: Session, skip: int = 0, limit: int = 100) -> List[models.Product]:
    return db.query(models.Product).offset(skip).limit(limit).all()


def create_product(db: Session, product: schemas.ProductData) -> models.Product:
    """
    Create a catalog product. Used by seeding scripts and tests.

    Args:
        db: Database session
        product: Product data to create

    Returns:
        Created Product object
    """
    db_product = models.Product(**product.model_dump())
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


class SqlCatalog:
    """``get_product`` backed by the products table."""

    def __init__(self, db: Session):
        self.db = db

    def get_product(self, product_id: str) -> Optional[schemas.ProductData]:
        db_product = get_product(self.db, product_id)
        if db_product is None:
            return None
        return schemas.ProductData.model_validate(db_product)
