"""MongoDB-backed stores for users, catalog, saved items and orders.

Each store wraps the collections it owns and is handed a database handle at
construction time, so the Flask layer never touches a module-level client.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import CheckoutFailed, DuplicateEntry, NotFound, ValidationError

module_logger = logging.getLogger(__name__)

NEWEST_FIRST = [("createdAt", DESCENDING), ("_id", DESCENDING)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def parse_object_id(value, label: str) -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} identifier.")


def parse_quantity(value, default: Optional[int] = None) -> int:
    if value is None and default is not None:
        return default
    if isinstance(value, bool):
        raise ValidationError("Quantity must be a positive whole number.")
    if isinstance(value, str) and value.strip().isdecimal():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError("Quantity must be a positive whole number.")
    return value


def serialize_document(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {key: serialize_document(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_document(item) for item in value]
    return value


def write_result(result) -> Dict[str, object]:
    """Shape a pymongo write result the way the storefront client reads it."""
    body: Dict[str, object] = {"acknowledged": bool(result.acknowledged)}
    if hasattr(result, "inserted_id"):
        body["insertedId"] = serialize_document(result.inserted_id)
    if hasattr(result, "matched_count"):
        body["matchedCount"] = result.matched_count
        body["modifiedCount"] = result.modified_count
        body["upsertedId"] = serialize_document(result.upserted_id)
    if hasattr(result, "deleted_count"):
        body["deletedCount"] = result.deleted_count
    return body


def _session_options(session) -> Dict[str, object]:
    return {"session": session} if session is not None else {}


def _without(payload: Dict, *keys: str) -> Dict:
    return {key: value for key, value in payload.items() if key not in keys}


def _require_mapping(payload, message: str) -> Dict:
    if not isinstance(payload, dict):
        raise ValidationError(message)
    return payload


class UserStore:
    def __init__(self, db):
        self._users = db["users"]

    def ensure_indexes(self):
        self._users.create_index("email", unique=True)

    def find_by_email(self, email: Optional[str]) -> Optional[Dict]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self._users.find_one({"email": normalized})

    def register(self, payload: Dict) -> Optional[ObjectId]:
        """Insert the user unless the email is already known.

        Returns the new id, or ``None`` when the email was taken. The role is
        always ``"user"`` regardless of what the payload says.
        """
        payload = _require_mapping(payload, "A JSON user payload is required.")
        email = normalize_email(payload.get("email"))
        if not email:
            raise ValidationError("An email is required.")

        profile = _without(payload, "_id", "email", "role", "createdAt")
        profile["role"] = "user"
        profile["createdAt"] = utcnow()

        try:
            result = self._users.update_one(
                {"email": email}, {"$setOnInsert": profile}, upsert=True
            )
        except DuplicateKeyError:
            return None
        return result.upserted_id

    def get_role(self, email: Optional[str]) -> str:
        user = self.find_by_email(email)
        if not user:
            return "user"
        return user.get("role") or "user"

    def list_users(self) -> List[Dict]:
        return list(self._users.find().sort(NEWEST_FIRST))

    def promote(self, user_id: str):
        return self._users.update_one(
            {"_id": parse_object_id(user_id, "user")}, {"$set": {"role": "admin"}}
        )

    def delete(self, user_id: str, protected_email: Optional[str] = None):
        object_id = parse_object_id(user_id, "user")
        if protected_email:
            target = self._users.find_one({"_id": object_id})
            if target and normalize_email(target.get("email")) == normalize_email(
                protected_email
            ):
                raise ValidationError(
                    "The default administrator account cannot be deleted."
                )
        return self._users.delete_one({"_id": object_id})

    def ensure_admin(self, email: str):
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self._users.update_one(
            {"email": normalized},
            {"$set": {"role": "admin"}, "$setOnInsert": {"createdAt": utcnow()}},
            upsert=True,
        )


class CatalogStore:
    def __init__(self, db):
        self._products = db["products"]

    def ensure_indexes(self):
        self._products.create_index([("createdAt", DESCENDING)])

    def create(self, data: Dict):
        data = _require_mapping(data, "A JSON product payload is required.")
        document = _without(data, "_id")
        document["createdAt"] = utcnow()
        document["status"] = "active"
        return self._products.insert_one(document)

    def list(self) -> List[Dict]:
        return list(self._products.find().sort(NEWEST_FIRST))

    def get(self, product_id: str) -> Dict:
        product = self._products.find_one({"_id": parse_object_id(product_id, "product")})
        if not product:
            raise NotFound("Product not found.")
        return product

    def update(self, product_id: str, fields: Dict):
        object_id = parse_object_id(product_id, "product")
        fields = _without(
            _require_mapping(fields, "A JSON product payload is required."), "_id"
        )
        if not fields:
            raise ValidationError("No fields to update.")
        fields["updatedAt"] = utcnow()
        return self._products.update_one({"_id": object_id}, {"$set": fields})

    def delete(self, product_id: str):
        return self._products.delete_one({"_id": parse_object_id(product_id, "product")})


class SavedItemStore:
    """Per-owner product references: the cart and the wishlist.

    At most one record exists per ``(email, productId)``. ``add`` is a single
    conditional upsert, and the unique index turns a concurrent second insert
    into a ``DuplicateKeyError`` instead of a second record.
    """

    def __init__(self, collection, duplicate_message: str, track_quantity: bool = False):
        self._items = collection
        self._duplicate_message = duplicate_message
        self._track_quantity = track_quantity

    def ensure_indexes(self):
        self._items.create_index(
            [("email", ASCENDING), ("productId", ASCENDING)], unique=True
        )

    def add(self, email: str, payload: Dict) -> ObjectId:
        payload = _require_mapping(payload, "A JSON item payload is required.")
        product_id = payload.get("productId")
        if not isinstance(product_id, str) or not product_id.strip():
            raise ValidationError("A productId is required.")
        product_id = product_id.strip()

        extra = _without(payload, "_id", "email", "productId", "createdAt")
        if self._track_quantity:
            extra["quantity"] = parse_quantity(payload.get("quantity"), default=1)
        extra["createdAt"] = utcnow()

        try:
            result = self._items.update_one(
                {"email": email, "productId": product_id},
                {"$setOnInsert": extra},
                upsert=True,
            )
        except DuplicateKeyError:
            raise DuplicateEntry(self._duplicate_message)
        if result.upserted_id is None:
            raise DuplicateEntry(self._duplicate_message)
        return result.upserted_id

    def list(self, email: str) -> List[Dict]:
        return list(self._items.find({"email": email}).sort("_id", ASCENDING))

    def update_quantity(self, item_id: str, email: str, quantity):
        object_id = parse_object_id(item_id, "item")
        return self._items.update_one(
            {"_id": object_id, "email": email},
            {"$set": {"quantity": parse_quantity(quantity)}},
        )

    def remove(self, item_id: str, email: str):
        return self._items.delete_one(
            {"_id": parse_object_id(item_id, "item"), "email": email}
        )

    def clear(self, email: str, session=None):
        return self._items.delete_many({"email": email}, **_session_options(session))

    def restore(self, documents: List[Dict]):
        for document in documents:
            self._items.replace_one({"_id": document["_id"]}, document, upsert=True)


class OrderStore:
    """Checkout and order bookkeeping.

    ``checkout`` inserts the order, empties the owner's cart and decrements
    product stock as one unit. With ``use_transactions`` the three writes share
    a MongoDB transaction (replica sets only). Without it, a failure after the
    insert is undone by compensating writes before ``CheckoutFailed`` is
    raised.
    """

    def __init__(
        self,
        db,
        carts: SavedItemStore,
        client=None,
        use_transactions: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self._logger = logger or module_logger
        self._orders = db["orders"]
        self._products = db["products"]
        self._carts = carts
        self._client = client
        self._use_transactions = bool(use_transactions and client is not None)

    def ensure_indexes(self):
        self._orders.create_index([("email", ASCENDING), ("createdAt", DESCENDING)])

    def checkout(self, email: str, payload: Dict) -> Dict:
        payload = _require_mapping(payload, "A JSON order payload is required.")
        order, lines = self._build_order(email, payload)

        if self._use_transactions:
            self._checkout_in_transaction(order, lines)
        else:
            self._checkout_with_compensation(order, lines)

        self._logger.info(
            "Order %s placed by %s with %d line(s)", order["_id"], email, len(lines)
        )
        return order

    def _build_order(self, email: str, payload: Dict) -> Tuple[Dict, List[Tuple[ObjectId, int]]]:
        raw_products = payload.get("products")
        if not isinstance(raw_products, list) or not raw_products:
            raise ValidationError("Include at least one product to place an order.")

        products: List[Dict] = []
        lines: List[Tuple[ObjectId, int]] = []
        for entry in raw_products:
            entry = _require_mapping(entry, "Each order line must be an object.")
            product_id = parse_object_id(entry.get("productId"), "product")
            quantity = parse_quantity(entry.get("quantity"), default=1)
            products.append({**entry, "productId": str(product_id), "quantity": quantity})
            lines.append((product_id, quantity))

        total_amount = payload.get("totalAmount")
        if isinstance(total_amount, bool) or not isinstance(total_amount, (int, float)):
            raise ValidationError("totalAmount must be a number.")

        order = _without(payload, "_id", "email", "status", "createdAt")
        order.update(
            {
                "products": products,
                "totalAmount": total_amount,
                "email": email,
                "status": "pending",
                "createdAt": utcnow(),
            }
        )
        return order, lines

    def _decrement_stock(self, product_id: ObjectId, quantity: int, session=None) -> bool:
        result = self._products.update_one(
            {"_id": product_id, "stock": {"$exists": True}},
            {"$inc": {"stock": -quantity}},
            **_session_options(session),
        )
        if not result.matched_count:
            self._logger.debug("Product %s has no tracked stock, skipping", product_id)
        return bool(result.matched_count)

    def _checkout_in_transaction(self, order: Dict, lines: List[Tuple[ObjectId, int]]):
        try:
            with self._client.start_session() as session:
                with session.start_transaction():
                    self._orders.insert_one(order, session=session)
                    self._carts.clear(order["email"], session=session)
                    for product_id, quantity in lines:
                        self._decrement_stock(product_id, quantity, session=session)
        except PyMongoError as exc:
            self._logger.error("Checkout transaction for %s aborted: %s", order["email"], exc)
            order.pop("_id", None)
            raise CheckoutFailed() from exc

    def _checkout_with_compensation(self, order: Dict, lines: List[Tuple[ObjectId, int]]):
        email = order["email"]
        removed_items = self._carts.list(email)
        try:
            self._orders.insert_one(order)
        except PyMongoError as exc:
            self._logger.error("Could not record order for %s: %s", email, exc)
            raise CheckoutFailed() from exc

        applied: List[Tuple[ObjectId, int]] = []
        try:
            self._carts.clear(email)
            for product_id, quantity in lines:
                if self._decrement_stock(product_id, quantity):
                    applied.append((product_id, quantity))
        except PyMongoError as exc:
            self._logger.error(
                "Checkout for %s failed after order %s was recorded, rolling back: %s",
                email,
                order["_id"],
                exc,
            )
            self._roll_back(order.pop("_id"), removed_items, applied)
            raise CheckoutFailed() from exc

    def _roll_back(self, order_id: ObjectId, removed_items: List[Dict], applied: List[Tuple[ObjectId, int]]):
        try:
            for product_id, quantity in applied:
                self._products.update_one({"_id": product_id}, {"$inc": {"stock": quantity}})
            self._carts.restore(removed_items)
            self._orders.delete_one({"_id": order_id})
        except PyMongoError:
            self._logger.exception("Rollback of order %s is incomplete", order_id)

    def set_status(self, order_id: str, status):
        object_id = parse_object_id(order_id, "order")
        if not isinstance(status, str) or not status.strip():
            raise ValidationError("A status is required.")
        return self._orders.update_one({"_id": object_id}, {"$set": {"status": status.strip()}})

    def list_for_owner(self, email: str) -> List[Dict]:
        return list(self._orders.find({"email": email}).sort(NEWEST_FIRST))

    def list_all(self) -> List[Dict]:
        return list(self._orders.find().sort(NEWEST_FIRST))

    def get(self, order_id: str) -> Dict:
        order = self._orders.find_one({"_id": parse_object_id(order_id, "order")})
        if not order:
            raise NotFound("Order not found.")
        return order


class AdminStats:
    def __init__(self, db):
        self._users = db["users"]
        self._products = db["products"]
        self._orders = db["orders"]

    def stats(self) -> Dict[str, object]:
        """Collection counts plus revenue over every order, whatever its status."""
        revenue_rows = list(
            self._orders.aggregate(
                [{"$group": {"_id": None, "revenue": {"$sum": "$totalAmount"}}}]
            )
        )
        return {
            "totalUsers": self._users.count_documents({}),
            "totalProducts": self._products.count_documents({}),
            "totalOrders": self._orders.count_documents({}),
            "revenue": revenue_rows[0]["revenue"] if revenue_rows else 0,
        }
