"""Product and product variant schemas"""

from typing import List, Optional

from pydantic import BaseModel, Field


class ProductColor(BaseModel):
    name: str
    hex: str
    thumbnail_url: Optional[str] = None


class Product(BaseModel):
    """Shop product, keyed by its fulfillment-provider id"""
    printful_id: str = Field(..., min_length=1)
    product_template_id: str
    name: str
    thumbnail_url: str = ""
    description: str = ""
    price: int = Field(..., ge=0)  # cents
    active: bool = True
    colors: Optional[List[ProductColor]] = None


class ProductUpdate(BaseModel):
    printful_id: str = Field(..., min_length=1)
    product_template_id: Optional[str] = None
    name: Optional[str] = None
    thumbnail_url: Optional[str] = None
    description: Optional[str] = None
    price: Optional[int] = Field(default=None, ge=0)
    active: Optional[bool] = None
    colors: Optional[List[ProductColor]] = None


class VariantColor(BaseModel):
    name: str
    hex: str


class ProductVariant(BaseModel):
    """Purchasable variant; optionally indexed by its payment-provider product id"""
    variant_id: str = Field(..., min_length=1)
    printful_product_id: str = Field(..., min_length=1)
    product_template_id: str
    price: int = Field(..., ge=0)  # cents
    color: VariantColor
    size: str
    images: List[str] = Field(default_factory=list)
    stripe_product_id: Optional[str] = None
