import os
from typing import Dict, Optional

from flask import Flask
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError

from auth import admin_required
from config import load_config
from errors import register_error_handlers
from media import MediaUploader
from routes import (
    register_catalog_routes,
    register_order_routes,
    register_saved_item_routes,
    register_session_routes,
    register_user_routes,
)
from stores import (
    AdminStats,
    CatalogStore,
    OrderStore,
    SavedItemStore,
    UserStore,
    normalize_email,
)


def create_app(
    config: Optional[Dict] = None,
    db=None,
    client=None,
    uploader: Optional[MediaUploader] = None,
) -> Flask:
    """Create and configure the Flask application.

    ``db`` and ``client`` replace the Flask-PyMongo connection when given,
    which is how tests run against an in-memory database. ``uploader``
    replaces the Cloudinary-backed media uploader.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config.update(load_config())
    if config:
        app.config.update(config)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=app.config["CORS_ORIGINS"] or "*")
    JWTManager(app)

    if db is None:
        mongo = PyMongo(app)
        client = mongo.cx
        db = mongo.db if mongo.db is not None else mongo.cx[app.config["MONGO_DBNAME"]]

    # --- Stores ---
    users = UserStore(db)
    catalog = CatalogStore(db)
    carts = SavedItemStore(db["carts"], "Already added to cart", track_quantity=True)
    wishlist = SavedItemStore(db["wishlist"], "Already in wishlist")
    orders = OrderStore(
        db,
        carts,
        client=client,
        use_transactions=app.config["MONGO_TRANSACTIONS"],
        logger=app.logger,
    )
    stats = AdminStats(db)

    for store in (users, catalog, carts, wishlist, orders):
        try:
            store.ensure_indexes()
        except PyMongoError as exc:
            app.logger.warning(
                "Unable to ensure indexes for %s: %s", type(store).__name__, exc
            )

    default_admin_email = normalize_email(app.config["DEFAULT_ADMIN_EMAIL"])
    if default_admin_email:
        try:
            users.ensure_admin(default_admin_email)
        except PyMongoError as exc:
            app.logger.warning(
                "Unable to ensure default admin %s: %s", default_admin_email, exc
            )

    if uploader is None:
        uploader = MediaUploader.from_config(app.config, logger=app.logger)
    if not uploader.configured:
        app.logger.info("Cloudinary credentials missing, /upload will answer 500")

    # --- Routes ---
    register_error_handlers(app)
    admin_only = admin_required(users)
    register_session_routes(app, users)
    register_user_routes(app, users, admin_only, protected_email=default_admin_email)
    register_catalog_routes(app, catalog, uploader, admin_only)
    register_saved_item_routes(app, carts, wishlist)
    register_order_routes(app, orders, stats, admin_only)

    @app.route("/")
    def read_root():
        return "Z-Tech Server is Running..."

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
