from datetime import datetime

import mongomock
import pytest

from app import create_app
from errors import UploadFailure
from media import MediaUploader

TEST_SECRET = "test-signing-secret-that-is-long-enough-for-hs256"


class FakeUploader(MediaUploader):
    """Stands in for Cloudinary; records what was pushed and discarded."""

    def __init__(self):
        super().__init__()
        self.configured = True
        self.fail_on = None
        self.uploaded = []
        self.discarded = []

    def upload(self, image_file):
        filename = self.check_file(image_file)
        if filename == self.fail_on:
            raise UploadFailure(error="quota exceeded")
        record = {
            "public_id": f"products/{filename.rsplit('.', 1)[0]}",
            "url": f"https://res.cloudinary.com/demo/image/upload/{filename}",
            "width": 640,
            "height": 480,
            "format": filename.rsplit(".", 1)[1],
        }
        self.uploaded.append(record)
        return record

    def discard(self, public_id):
        self.discarded.append(public_id)


@pytest.fixture
def db():
    return mongomock.MongoClient()["ztech"]


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def app(db, uploader):
    app = create_app(
        config={
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_SECRET,
            "JWT_COOKIE_SECURE": False,
            "JWT_COOKIE_SAMESITE": "Strict",
            "MONGO_TRANSACTIONS": False,
            "DEFAULT_ADMIN_EMAIL": "",
        },
        db=db,
        uploader=uploader,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def sign_in(client, email, **claims):
    response = client.post("/jwt", json={"email": email, **claims})
    assert response.status_code == 200
    return client


@pytest.fixture
def admin_client(app, db):
    db.users.insert_one(
        {"email": "admin@ztech.io", "role": "admin", "createdAt": datetime(2024, 1, 1)}
    )
    return sign_in(app.test_client(), "admin@ztech.io")


@pytest.fixture
def user_client(app, db):
    db.users.insert_one(
        {"email": "shopper@ztech.io", "role": "user", "createdAt": datetime(2024, 1, 2)}
    )
    return sign_in(app.test_client(), "shopper@ztech.io")


@pytest.fixture
def product_id(db):
    result = db.products.insert_one(
        {"name": "Mechanical Keyboard", "price": 120, "stock": 10, "createdAt": datetime(2024, 2, 1)}
    )
    return str(result.inserted_id)
