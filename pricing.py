"""
Combo pricing.

Every function here is pure: the result depends only on the arguments and the
``PricingConfig`` the engine was built with. The order form preview and the
server-side charge use the same rules and must agree to the taka.
"""

from enum import Enum
from typing import NamedTuple, Optional, Union

from settings import PricingConfig

CUSTOM_TIER = "custom"

Tier = Union[int, str]


class Location(str, Enum):
    NEAR = "near"
    FAR = "far"


class Quote(NamedTuple):
    tier: Tier
    quantity: int
    price: int
    delivery_charge: int
    total: int

    @property
    def ready(self) -> bool:
        # a zero price means the selection is incomplete, never a free order
        return self.price > 0

    def to_dict(self):
        return {
            "tier": self.tier,
            "quantity": self.quantity,
            "price": self.price,
            "deliveryCharge": self.delivery_charge,
            "total": self.total,
            "ready": self.ready,
        }


def parse_location(value) -> Location:
    if isinstance(value, Location):
        return value
    try:
        return Location(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown delivery location: {value!r}")


class PricingEngine:
    def __init__(self, config: Optional[PricingConfig] = None):
        self.config = config or PricingConfig()

    @property
    def fixed_tiers(self):
        return sorted(self.config.fixed_prices)

    def parse_tier(self, value) -> Tier:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == CUSTOM_TIER:
                return CUSTOM_TIER
        if isinstance(value, bool):
            raise ValueError(f"Unknown combo tier: {value!r}")
        try:
            units = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Unknown combo tier: {value!r}")
        if units not in self.config.fixed_prices:
            raise ValueError(f"Unknown combo tier: {value!r}")
        return units

    def tier_for_quantity(self, quantity: int) -> Tier:
        if quantity in self.config.fixed_prices:
            return quantity
        return CUSTOM_TIER

    def price(self, tier: Tier, custom_quantity: Optional[int] = None) -> int:
        if tier != CUSTOM_TIER:
            return self.config.fixed_prices.get(tier, 0)
        quantity = custom_quantity or 0
        if quantity < 2:
            return 0
        if quantity in self.config.fixed_prices:
            return self.config.fixed_prices[quantity]
        if quantity <= max(self.config.fixed_prices):
            # gap in a reconfigured table; nothing sensible to charge
            return 0
        return quantity * self.config.per_unit_price

    def actual_quantity(self, tier: Tier, custom_quantity: Optional[int] = None) -> int:
        if tier == CUSTOM_TIER:
            return custom_quantity or 0
        return tier

    def delivery_charge(self, quantity: int, location) -> int:
        location = parse_location(location)
        if quantity >= self.config.free_delivery_quantity:
            return 0
        return self.config.delivery_fees[location.value]

    def total(self, tier: Tier, custom_quantity: Optional[int], location) -> int:
        return self.price(tier, custom_quantity) + self.delivery_charge(
            self.actual_quantity(tier, custom_quantity), location
        )

    def quote(self, tier: Tier, custom_quantity: Optional[int], location) -> Quote:
        quantity = self.actual_quantity(tier, custom_quantity)
        price = self.price(tier, custom_quantity)
        delivery_charge = self.delivery_charge(quantity, location)
        return Quote(tier, quantity, price, delivery_charge, price + delivery_charge)

    def price_table(self):
        return {
            "tiers": [
                {"tier": str(units), "quantity": units, "price": self.config.fixed_prices[units]}
                for units in self.fixed_tiers
            ]
            + [{"tier": CUSTOM_TIER, "minQuantity": max(self.fixed_tiers) + 1,
                "unitPrice": self.config.per_unit_price,
                "maxQuantity": self.config.max_quantity}],
            "delivery": {
                "freeFromQuantity": self.config.free_delivery_quantity,
                "fees": dict(self.config.delivery_fees),
            },
        }
