"""In-memory product and order records shared by the simulator."""

import copy
from typing import Any, Dict, List


def _default_products() -> List[Dict[str, Any]]:
    return [
        {
            "id": "1",
            "name": "Margherita Pizza",
            "description": "Fresh tomato sauce, mozzarella, and basil",
            "price": 18.99,
            "category": "Pizza",
            "available": True,
        },
        {
            "id": "2",
            "name": "Caesar Salad",
            "description": "Crisp romaine lettuce with parmesan and croutons",
            "price": 14.99,
            "category": "Salads",
            "available": True,
        },
        {
            "id": "3",
            "name": "Grilled Salmon",
            "description": "Atlantic salmon with lemon herb seasoning",
            "price": 28.99,
            "category": "Main Course",
            "available": True,
        },
        {
            "id": "4",
            "name": "Chocolate Brownie",
            "description": "Warm chocolate brownie with vanilla ice cream",
            "price": 8.99,
            "category": "Desserts",
            "available": True,
        },
    ]


class DataStore:
    """Products and orders; the records the data corruption scenario targets."""

    def __init__(self, products: List[Dict[str, Any]] = None,
                 orders: List[Dict[str, Any]] = None):
        self.products = products if products is not None else _default_products()
        self.orders = orders if orders is not None else []

    def product_catalog(self) -> List[Dict[str, Any]]:
        """Copies of the fields virtual users need."""
        return [
            {"id": p["id"], "name": p.get("name"), "price": p.get("price"), "category": p.get("category")}
            for p in self.products
        ]

    def add_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        order = copy.deepcopy(order)
        order.setdefault("id", str(len(self.orders) + 1))
        self.orders.append(order)
        return order

    def __repr__(self):
        return f"DataStore(products={len(self.products)}, orders={len(self.orders)})"
