from typing import Dict, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """Base for failures that map onto an HTTP status and JSON body."""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, **details):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {
            "success": False,
            "statusCode": self.status_code,
            "message": self.message,
        }
        body.update(self.details)
        return body


class ValidationError(ApiError):
    status_code = 400
    message = "Invalid request."


class DuplicateEntry(ApiError):
    status_code = 400
    message = "Already added."


class Unauthenticated(ApiError):
    status_code = 401
    message = "Unauthorized"


class InvalidToken(ApiError):
    status_code = 401
    message = "Invalid Token"


class Forbidden(ApiError):
    status_code = 403
    message = "Admin only"


class NotFound(ApiError):
    status_code = 404
    message = "Not found."


class UploadFailure(ApiError):
    status_code = 500
    message = "Image upload failed."


class CheckoutFailed(ApiError):
    status_code = 500
    message = "We could not complete the order. Nothing was charged or changed."


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        status_code = error.code or 500
        return (
            jsonify(
                {
                    "success": False,
                    "statusCode": status_code,
                    "message": error.description or error.name,
                }
            ),
            status_code,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception("Unhandled error: %s", error)
        return (
            jsonify(
                {
                    "success": False,
                    "statusCode": 500,
                    "message": "Internal Server Error",
                }
            ),
            500,
        )
