from sqlalchemy import Column, Integer, String, Numeric, Text
from vpnshop.db.base import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    country_flag = Column(String(16), nullable=True)
    base_price = Column(Numeric(10, 2), nullable=False)
    marzban_tag = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, default=0)
