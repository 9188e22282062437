"""
Storage access layer.

One method per query shape over the MongoDB collections. Methods return plain
dicts with the ``_id`` replaced by a string ``id``. Nothing here enforces
cross-entity rules; the order workflow and the routes do that.
"""
import logging
from typing import List, Optional
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import DuplicateKeyError

import database
from database import create_document, get_documents, utcnow
from errors import ValidationError

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def to_obj_id(id_str) -> Optional[ObjectId]:
    # ObjectId(None) would mint a fresh id
    if not isinstance(id_str, str):
        return None
    try:
        return ObjectId(id_str)
    except InvalidId:
        return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


class Storage:
    def __init__(self, db):
        if db is None:
            raise RuntimeError("Database not configured")
        self.db = db

    def ensure_indexes(self) -> None:
        """Create the unique indexes. Safe to call repeatedly."""
        self.db["user"].create_index("username", unique=True)
        self.db["user"].create_index("email", unique=True, sparse=True)
        self.db["category"].create_index("name", unique=True)

    def _find_by_id(self, collection: str, id_str: str) -> Optional[dict]:
        oid = to_obj_id(id_str)
        if oid is None:
            return None
        return serialize(self.db[collection].find_one({"_id": oid}))

    def _insert(self, collection: str, data: dict) -> dict:
        new_id = create_document(collection, data, database=self.db)
        return self._find_by_id(collection, new_id)

    def _update(self, collection: str, id_str: str, data: dict) -> Optional[dict]:
        oid = to_obj_id(id_str)
        if oid is None:
            return None
        doc = self.db[collection].find_one_and_update(
            {"_id": oid},
            {"$set": {**data, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(doc)

    def _find(self, collection: str, query: Optional[dict] = None, sort: Optional[list] = None) -> List[dict]:
        docs = get_documents(collection, query, sort=sort, database=self.db)
        return [serialize(d) for d in docs]

    # Users
    def get_user(self, user_id: str) -> Optional[dict]:
        return self._find_by_id("user", user_id)

    def get_user_by_username(self, username: str) -> Optional[dict]:
        return serialize(self.db["user"].find_one({"username": username}))

    def get_user_by_email(self, email: str) -> Optional[dict]:
        return serialize(self.db["user"].find_one({"email": email}))

    def create_user(self, data: dict) -> dict:
        try:
            return self._insert("user", {"is_verified": False, **data})
        except DuplicateKeyError:
            logger.warning("Duplicate registration for username %s", data.get("username"))
            raise ValidationError("Username or email already registered")

    def update_user(self, user_id: str, data: dict) -> Optional[dict]:
        return self._update("user", user_id, data)

    def get_users_by_type(self, user_type: str) -> List[dict]:
        return self._find("user", {"user_type": user_type})

    # Products
    def get_products(self) -> List[dict]:
        return self._find("product")

    def get_product(self, product_id: str) -> Optional[dict]:
        return self._find_by_id("product", product_id)

    def get_products_by_farmer(self, farmer_id: str) -> List[dict]:
        return self._find("product", {"farmer_id": farmer_id})

    def get_products_by_category(self, category_id: str) -> List[dict]:
        return self._find("product", {"category_id": category_id})

    def create_product(self, data: dict) -> dict:
        return self._insert("product", {"rating": 0.0, "rating_count": 0, **data})

    def update_product(self, product_id: str, data: dict) -> Optional[dict]:
        return self._update("product", product_id, data)

    def delete_product(self, product_id: str) -> bool:
        oid = to_obj_id(product_id)
        if oid is None:
            return False
        return self.db["product"].delete_one({"_id": oid}).deleted_count > 0

    def decrement_stock(self, product_id: str, quantity: float) -> Optional[dict]:
        """Take ``quantity`` off the product only if it is in stock and has enough left.

        Returns the updated product, or None when the condition did not hold.
        """
        oid = to_obj_id(product_id)
        if oid is None:
            return None
        doc = self.db["product"].find_one_and_update(
            {"_id": oid, "in_stock": True, "available_quantity": {"$gte": quantity}},
            {"$inc": {"available_quantity": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(doc)

    def restore_stock(self, product_id: str, quantity: float) -> None:
        oid = to_obj_id(product_id)
        if oid is None:
            return
        self.db["product"].update_one(
            {"_id": oid},
            {"$inc": {"available_quantity": quantity}, "$set": {"updated_at": utcnow()}},
        )

    def set_product_rating(self, product_id: str, rating: float, rating_count: int) -> None:
        oid = to_obj_id(product_id)
        if oid is None:
            return
        self.db["product"].update_one({"_id": oid}, {"$set": {"rating": rating, "rating_count": rating_count}})

    # Categories
    def get_categories(self) -> List[dict]:
        return self._find("category")

    def get_category(self, category_id: str) -> Optional[dict]:
        return self._find_by_id("category", category_id)

    def get_category_by_name(self, name: str) -> Optional[dict]:
        return serialize(self.db["category"].find_one({"name": name}))

    def create_category(self, data: dict) -> dict:
        try:
            return self._insert("category", data)
        except DuplicateKeyError:
            raise ValidationError(f"Category {data.get('name')} already exists")

    # Orders
    def get_orders(self) -> List[dict]:
        return self._find("order", sort=NEWEST_FIRST)

    def get_order(self, order_id: str) -> Optional[dict]:
        return self._find_by_id("order", order_id)

    def get_orders_by_buyer(self, buyer_id: str) -> List[dict]:
        return self._find("order", {"buyer_id": buyer_id}, sort=NEWEST_FIRST)

    def get_orders_for_farmer(self, farmer_id: str) -> List[dict]:
        product_ids = [p["id"] for p in self.get_products_by_farmer(farmer_id)]
        if not product_ids:
            return []
        order_ids = self.db["order_item"].distinct("order_id", {"product_id": {"$in": product_ids}})
        if not order_ids:
            return []
        oids = [to_obj_id(o) for o in order_ids]
        return self._find("order", {"_id": {"$in": oids}}, sort=NEWEST_FIRST)

    def create_order(self, order: dict, items: List[dict]) -> dict:
        """Insert the order and its items together.

        If the items cannot be written the order document is removed again,
        so neither exists without the other.
        """
        order_id = create_document("order", order, database=self.db)
        try:
            if items:
                now = utcnow()
                self.db["order_item"].insert_many([
                    {**item, "order_id": order_id, "total": item["price_per_unit"] * item["quantity"], "created_at": now}
                    for item in items
                ])
        except Exception:
            logger.warning("Rolling back order %s after item insert failure", order_id)
            self.db["order_item"].delete_many({"order_id": order_id})
            self.db["order"].delete_one({"_id": ObjectId(order_id)})
            raise
        return self.get_order(order_id)

    def update_order_status(self, order_id: str, status: str, from_status: Optional[str] = None) -> Optional[dict]:
        """Set the status. With ``from_status`` the write only applies while the order is still in it."""
        oid = to_obj_id(order_id)
        if oid is None:
            return None
        query = {"_id": oid}
        if from_status is not None:
            query["status"] = from_status
        doc = self.db["order"].find_one_and_update(
            query,
            {"$set": {"status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(doc)

    # Order items
    def get_order_items(self, order_id: str) -> List[dict]:
        return self._find("order_item", {"order_id": order_id}, sort=[("_id", 1)])

    # Reviews
    def get_reviews(self, product_id: str) -> List[dict]:
        return self._find("review", {"product_id": product_id}, sort=NEWEST_FIRST)

    def create_review(self, data: dict) -> dict:
        return self._insert("review", data)


def get_storage() -> Storage:
    return Storage(database.db)
