"""Create tables and seed the default product."""
import logging

from sqlalchemy.orm import Session

from vpnshop.db.base import Base
from vpnshop.db.session import engine, SessionLocal
from vpnshop.models import Product

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT = {
    "name": "X-RAY MODE",
    "country_flag": "🌍",
    "base_price": 450,
    "marzban_tag": "xray_mode",
    "description": "VLESS + Reality, все локации",
    "sort_order": 1,
}


def seed_products(db: Session) -> None:
    if db.query(Product).filter(Product.name == DEFAULT_PRODUCT["name"]).first():
        return
    db.add(Product(**DEFAULT_PRODUCT))
    db.commit()
    logger.info(f"Seeded product {DEFAULT_PRODUCT['name']}")


def init_db(bind=None) -> None:
    Base.metadata.create_all(bind=bind or engine)
    db = SessionLocal(bind=bind) if bind is not None else SessionLocal()
    try:
        seed_products(db)
    finally:
        db.close()
