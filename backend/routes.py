from flask import Flask, g, jsonify, request

from auth import (
    admin_required,
    attach_session_cookie,
    clear_session_cookie,
    current_email,
    issue_token,
    token_required,
)
from errors import UploadFailure, ValidationError
from stores import serialize_document, write_result


def request_payload():
    return request.get_json(silent=True) or {}


def request_field(name: str):
    payload = request_payload()
    return payload.get(name) if isinstance(payload, dict) else None


def register_session_routes(app: Flask, users):
    @app.route("/jwt", methods=["POST"])
    @app.route("/auth/jwt", methods=["POST"])
    def start_session():
        token = issue_token(request_payload())
        response = jsonify({"success": True})
        return attach_session_cookie(response, token)

    @app.route("/logout", methods=["GET"])
    @app.route("/auth/logout", methods=["GET"])
    def end_session():
        return clear_session_cookie(jsonify({"success": True}))

    @app.route("/auth/me", methods=["GET"])
    @token_required
    def session_identity():
        return jsonify({"identity": g.identity, "role": users.get_role(current_email())})


def register_user_routes(app: Flask, users, admin_only, protected_email: str = ""):
    @app.route("/users", methods=["POST"])
    def register_user():
        new_user_id = users.register(request_payload())
        if new_user_id is None:
            return jsonify({"message": "User exists"})
        app.logger.info("Registered user %s", new_user_id)
        return jsonify({"success": True, "insertedId": str(new_user_id)})

    @app.route("/user/role/<email>", methods=["GET"])
    def get_user_role(email: str):
        return jsonify({"role": users.get_role(email)})

    @app.route("/admin/users", methods=["GET"])
    @admin_only
    def list_users():
        return jsonify([serialize_document(user) for user in users.list_users()])

    @app.route("/users/admin/<user_id>", methods=["PATCH"])
    @admin_only
    def promote_user(user_id: str):
        result = users.promote(user_id)
        app.logger.info(
            "%s promoted user %s to admin (matched %d)",
            current_email(),
            user_id,
            result.matched_count,
        )
        return jsonify(write_result(result))

    @app.route("/users/<user_id>", methods=["DELETE"])
    @admin_only
    def delete_user(user_id: str):
        result = users.delete(user_id, protected_email=protected_email)
        app.logger.info("%s deleted user %s", current_email(), user_id)
        return jsonify(write_result(result))


def register_catalog_routes(app: Flask, catalog, uploader, admin_only):
    @app.route("/products", methods=["POST"])
    @admin_only
    def create_product():
        result = catalog.create(request_payload())
        app.logger.info("%s created product %s", current_email(), result.inserted_id)
        return jsonify(write_result(result)), 201

    @app.route("/products", methods=["GET"])
    def list_products():
        return jsonify([serialize_document(product) for product in catalog.list()])

    @app.route("/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return jsonify(serialize_document(catalog.get(product_id)))

    @app.route("/products/<product_id>", methods=["PUT"])
    @admin_only
    def update_product(product_id: str):
        return jsonify(write_result(catalog.update(product_id, request_payload())))

    @app.route("/products/<product_id>", methods=["DELETE"])
    @admin_only
    def delete_product(product_id: str):
        result = catalog.delete(product_id)
        app.logger.info("%s deleted product %s", current_email(), product_id)
        return jsonify(write_result(result))

    @app.route("/upload", methods=["POST"])
    @admin_only
    def upload_images():
        image_files = [
            image_file
            for image_file in request.files.getlist("images")
            or request.files.getlist("image")
            if image_file and image_file.filename
        ]
        if not image_files:
            raise ValidationError("Please upload at least one image.")
        for image_file in image_files:
            uploader.check_file(image_file)

        uploads = []
        try:
            for image_file in image_files:
                uploads.append(uploader.upload(image_file))
        except UploadFailure:
            for uploaded in uploads:
                uploader.discard(uploaded.get("public_id"))
            raise
        return jsonify(uploads)


def register_saved_item_routes(app: Flask, carts, wishlist):
    @app.route("/cart", methods=["POST"])
    @token_required
    def add_to_cart():
        item_id = carts.add(current_email(), request_payload())
        return jsonify({"success": True, "insertedId": str(item_id)})

    @app.route("/cart", methods=["GET"])
    @token_required
    def get_cart():
        return jsonify([serialize_document(item) for item in carts.list(current_email())])

    @app.route("/cart/<item_id>", methods=["PATCH"])
    @token_required
    def update_cart_item(item_id: str):
        quantity = request_field("quantity")
        return jsonify(write_result(carts.update_quantity(item_id, current_email(), quantity)))

    @app.route("/cart/<item_id>", methods=["DELETE"])
    @token_required
    def remove_cart_item(item_id: str):
        return jsonify(write_result(carts.remove(item_id, current_email())))

    @app.route("/wishlist", methods=["POST"])
    @token_required
    def add_to_wishlist():
        item_id = wishlist.add(current_email(), request_payload())
        return jsonify({"success": True, "insertedId": str(item_id)})

    @app.route("/wishlist", methods=["GET"])
    @token_required
    def get_wishlist():
        return jsonify(
            [serialize_document(item) for item in wishlist.list(current_email())]
        )

    @app.route("/wishlist/<item_id>", methods=["DELETE"])
    @token_required
    def remove_wishlist_item(item_id: str):
        return jsonify(write_result(wishlist.remove(item_id, current_email())))


def register_order_routes(app: Flask, orders, stats, admin_only):
    @app.route("/order", methods=["POST"])
    @token_required
    def place_order():
        order = orders.checkout(current_email(), request_payload())
        return (
            jsonify(
                {
                    "acknowledged": True,
                    "insertedId": str(order["_id"]),
                    "order": serialize_document(order),
                }
            ),
            201,
        )

    @app.route("/orders", methods=["GET"])
    @token_required
    def list_own_orders():
        return jsonify(
            [serialize_document(order) for order in orders.list_for_owner(current_email())]
        )

    @app.route("/admin/orders", methods=["GET"])
    @admin_only
    def list_all_orders():
        return jsonify([serialize_document(order) for order in orders.list_all()])

    @app.route("/admin/orders/<order_id>", methods=["GET"])
    @admin_only
    def get_order(order_id: str):
        return jsonify(serialize_document(orders.get(order_id)))

    @app.route("/admin/orders/<order_id>", methods=["PATCH"])
    @app.route("/orders/<order_id>/status", methods=["PATCH"])
    @admin_only
    def update_order_status(order_id: str):
        status = request_field("status")
        result = orders.set_status(order_id, status)
        app.logger.info("%s set order %s to %r", current_email(), order_id, status)
        return jsonify(write_result(result))

    @app.route("/admin/stats", methods=["GET"])
    @admin_only
    def admin_stats():
        return jsonify(stats.stats())
