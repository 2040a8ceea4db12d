"""Price list types and a fake pricing API for tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from .atomic import AtomicError, AtomicPtr

REGION = "eastus"
REGION_NON_ZONAL = "westcentralus"


@dataclass
class PriceItem:
    """One entry of a retail price list."""

    arm_sku_name: str = ""
    retail_price: float = 0.0
    sku_name: str = ""


@dataclass
class ProductsPricePage:
    """One page of price list entries."""

    items: list[PriceItem] = field(default_factory=list)


class FakePricingAPI:
    """A pricing API that serves a configured page or a configured error."""

    def __init__(self) -> None:
        self.next_error = AtomicError()
        self.products_price_page: AtomicPtr[ProductsPricePage] = AtomicPtr()

    def reset(self) -> None:
        self.next_error.reset()
        self.products_price_page.reset()

    def get_products_price_pages(
        self,
        filters: list | None,
        callback: Callable[[ProductsPricePage], None],
    ) -> None:
        """Pass the configured page to callback; raise if an error or no data is set."""
        if not self.next_error.is_nil():
            err = self.next_error.get()
            if err is not None:
                raise err
            return
        if not self.products_price_page.is_nil():
            callback(self.products_price_page.clone())
            return
        raise LookupError("no pricing data provided")


def new_product_price(instance_type: str, price: float) -> PriceItem:
    return PriceItem(arm_sku_name=instance_type, retail_price=price)


def new_spot_product_price(instance_type: str, price: float) -> PriceItem:
    return PriceItem(
        sku_name=f"{instance_type} Spot",
        arm_sku_name=instance_type,
        retail_price=price,
    )