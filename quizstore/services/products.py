"""
Product service

Variants are stored under their product and, when they carry a payment
provider product id, copied into a second keyspace indexed by that id so a
checkout webhook can find the variant. Both copies change in the same commit.
"""

import logging
from typing import List, Optional, Union

from quizstore.core.exceptions import ConflictException, DuplicateException, NotFoundException
from quizstore.db.kv import KvEntry, KvStore, with_conflict_retry
from quizstore.db.redis import get_kv
from quizstore.schemas.products import Product, ProductUpdate, ProductVariant
from quizstore.utils.validators import validate_model

logger = logging.getLogger(__name__)

PRODUCTS = "products"
VARIANTS = "variants"
STRIPE_VARIANTS = "stripe_variants"


def variant_key(printful_product_id: str, variant_id: str):
    return (VARIANTS, printful_product_id, variant_id)


def stripe_key(stripe_product_id: str, variant_id: str):
    return (STRIPE_VARIANTS, stripe_product_id, variant_id)


class ProductStore:
    """Products, their variants and the payment-provider index"""

    def __init__(self, kv: KvStore):
        self.kv = kv

    @classmethod
    async def make(cls, kv: Optional[KvStore] = None) -> "ProductStore":
        return cls(kv or await get_kv())

    # Products

    async def add_product(self, product: Union[Product, dict]) -> Product:
        product = validate_model(Product, product)
        await self.kv.set((PRODUCTS, product.printful_id), product.model_dump(mode="json"))
        logger.info(f"Saved product {product.printful_id}")
        return product

    async def _get_product_entry(self, printful_id: str) -> KvEntry:
        entry = await self.kv.get((PRODUCTS, printful_id))
        if not entry.exists:
            raise NotFoundException("Product", details={"printful_id": printful_id})
        return entry

    async def get_product(self, printful_id: str) -> Product:
        entry = await self._get_product_entry(printful_id)
        return Product.model_validate(entry.value)

    async def list_products(self) -> List[Product]:
        return [Product.model_validate(entry.value) async for entry in self.kv.list((PRODUCTS,))]

    @with_conflict_retry()
    async def update_product(self, update: Union[ProductUpdate, dict]) -> Product:
        """
        Merge a partial product update

        A new product_template_id is pushed to every variant of the product
        in the same commit.
        """
        update = validate_model(ProductUpdate, update)
        entry = await self._get_product_entry(update.printful_id)
        current = Product.model_validate(entry.value)
        product = validate_model(
            Product, {**current.model_dump(), **update.model_dump(exclude_none=True)}
        )

        op = self.kv.atomic().check(entry.key, entry.versionstamp).set(entry.key, product.model_dump(mode="json"))
        if product.product_template_id != current.product_template_id:
            async for variant_entry in self.kv.list((VARIANTS, product.printful_id)):
                variant = ProductVariant.model_validate(variant_entry.value)
                variant.product_template_id = product.product_template_id
                data = variant.model_dump(mode="json")
                op.check(variant_entry.key, variant_entry.versionstamp)
                op.set(variant_entry.key, data)
                if variant.stripe_product_id:
                    op.set(stripe_key(variant.stripe_product_id, variant.variant_id), data)

        result = await op.commit()
        if not result.ok:
            raise ConflictException(details={"printful_id": product.printful_id})
        return product

    @with_conflict_retry()
    async def delete_product(self, printful_id: str) -> None:
        """Delete a product with all of its variants and their index entries"""
        entry = await self._get_product_entry(printful_id)
        op = self.kv.atomic().check(entry.key, entry.versionstamp).delete(entry.key)
        async for variant_entry in self.kv.list((VARIANTS, printful_id)):
            variant = ProductVariant.model_validate(variant_entry.value)
            op.check(variant_entry.key, variant_entry.versionstamp)
            op.delete(variant_entry.key)
            if variant.stripe_product_id:
                op.delete(stripe_key(variant.stripe_product_id, variant.variant_id))

        result = await op.commit()
        if not result.ok:
            raise ConflictException(details={"printful_id": printful_id})
        logger.info(f"Deleted product {printful_id} and {op.mutation_count - 1} variant keys")

    # Variants

    async def add_variant(self, variant: Union[ProductVariant, dict]) -> ProductVariant:
        """
        Raises:
            DuplicateException: the variant already exists; use update_variant
        """
        variant = validate_model(ProductVariant, variant)
        key = variant_key(variant.printful_product_id, variant.variant_id)
        data = variant.model_dump(mode="json")

        op = self.kv.atomic().check(key, None).set(key, data)
        if variant.stripe_product_id:
            op.set(stripe_key(variant.stripe_product_id, variant.variant_id), data)

        result = await op.commit()
        if not result.ok:
            raise DuplicateException("Variant", details={"variant_id": variant.variant_id})
        return variant

    async def _get_variant_entry(self, printful_product_id: str, variant_id: str) -> KvEntry:
        entry = await self.kv.get(variant_key(printful_product_id, variant_id))
        if not entry.exists:
            raise NotFoundException(
                "Variant",
                details={"printful_product_id": printful_product_id, "variant_id": variant_id},
            )
        return entry

    async def get_variant(self, printful_product_id: str, variant_id: str) -> ProductVariant:
        entry = await self._get_variant_entry(printful_product_id, variant_id)
        return ProductVariant.model_validate(entry.value)

    @with_conflict_retry()
    async def update_variant(self, variant: Union[ProductVariant, dict]) -> ProductVariant:
        """
        Merge into an existing variant, moving its payment-provider index
        entry when stripe_product_id changes
        """
        if isinstance(variant, ProductVariant):
            variant = variant.model_dump(exclude_unset=True)
        entry = await self._get_variant_entry(
            variant.get("printful_product_id"), variant.get("variant_id")
        )
        current = ProductVariant.model_validate(entry.value)
        updated = validate_model(ProductVariant, {**current.model_dump(), **variant})
        data = updated.model_dump(mode="json")

        op = self.kv.atomic().check(entry.key, entry.versionstamp).set(entry.key, data)
        if current.stripe_product_id and current.stripe_product_id != updated.stripe_product_id:
            op.delete(stripe_key(current.stripe_product_id, current.variant_id))
        if updated.stripe_product_id:
            op.set(stripe_key(updated.stripe_product_id, updated.variant_id), data)

        result = await op.commit()
        if not result.ok:
            raise ConflictException(details={"variant_id": updated.variant_id})
        return updated

    @with_conflict_retry()
    async def delete_variant(self, printful_product_id: str, variant_id: str) -> None:
        entry = await self._get_variant_entry(printful_product_id, variant_id)
        current = ProductVariant.model_validate(entry.value)
        op = self.kv.atomic().check(entry.key, entry.versionstamp).delete(entry.key)
        if current.stripe_product_id:
            op.delete(stripe_key(current.stripe_product_id, variant_id))
        result = await op.commit()
        if not result.ok:
            raise ConflictException(details={"variant_id": variant_id})

    async def list_product_variants(self, printful_product_id: str) -> List[ProductVariant]:
        return [
            ProductVariant.model_validate(entry.value)
            async for entry in self.kv.list((VARIANTS, printful_product_id))
        ]

    async def get_variant_by_stripe_product_id(self, stripe_product_id: str) -> ProductVariant:
        """First variant indexed under a payment-provider product id"""
        async for entry in self.kv.list((STRIPE_VARIANTS, stripe_product_id), limit=1):
            return ProductVariant.model_validate(entry.value)
        raise NotFoundException("Variant", details={"stripe_product_id": stripe_product_id})
