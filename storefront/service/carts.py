from __future__ import annotations

from storefront.logging import get_logger
from storefront.service.errors import NotFoundError
from storefront.storage.models import Cart

logger = get_logger(__name__)


class CartService:
    """Cart collaborator of account creation; every user owns exactly one cart."""

    def __init__(self, store) -> None:
        self.store = store

    def create_cart(self, user_id: str) -> Cart:
        cart = self.store.create_cart(user_id)
        logger.info("cart_created", cart_id=cart.id, user_id=user_id)
        return cart

    def get_cart(self, user_id: str) -> Cart:
        cart = self.store.get_cart_by_user(user_id)
        if cart is None:
            raise NotFoundError("cart not found", detail={"user_id": user_id})
        return cart
