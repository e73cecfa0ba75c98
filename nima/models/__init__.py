from nima.models.user import User
from nima.models.item import Item
from nima.models.look import Look
from nima.models.look_image import LookImage
from nima.models.item_try_on import ItemTryOn
from nima.models.credit_purchase import CreditPurchase
from nima.models.generation_task import GenerationTask
from nima.models.push_token import PushToken

__all__ = [
    "User", "Item", "Look", "LookImage", "ItemTryOn",
    "CreditPurchase", "GenerationTask", "PushToken",
]
