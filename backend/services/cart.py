from typing import Dict, List

import structlog

from schemas.domain import Cart, Caller, CartItem
from storage.repositories import ICartStore


class CartService:
    """Per-user cart; the whole item list is replaced on every save"""

    def __init__(self, carts: ICartStore):
        self._carts = carts
        self._logger = structlog.get_logger().bind(component="cart_service")

    async def get(self, caller: Caller) -> Cart:
        return await self._carts.get(caller.user_id)

    async def replace(self, caller: Caller, items: List[CartItem]) -> Cart:
        # Same product twice collapses into one line
        merged: Dict[str, CartItem] = {}
        for item in items:
            if item.product_id in merged:
                current = merged[item.product_id]
                merged[item.product_id] = current.model_copy(
                    update={"quantity": current.quantity + item.quantity}
                )
            else:
                merged[item.product_id] = item

        cart = await self._carts.save(caller.user_id, list(merged.values()))
        self._logger.info("cart_saved", user_id=caller.user_id, items=len(cart.items))
        return cart
