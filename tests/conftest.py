from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
import media
from schemas import Product as ProductSchema

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["marketplace_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def media_store(monkeypatch):
    store = SimpleNamespace(uploaded=[], deleted=[])

    async def fake_upload_images(files, folder=media.MEDIA_FOLDER):
        images = []
        for f in files:
            store.uploaded.append(f.filename)
            images.append({
                "url": f"https://res.cloudinary.com/demo/image/upload/{f.filename}",
                "public_id": f"{folder}/{f.filename}",
            })
        return images

    def fake_delete_images(public_ids):
        store.deleted.extend(public_ids)
        return []

    monkeypatch.setattr(media, "upload_images", fake_upload_images)
    monkeypatch.setattr(media, "delete_images", fake_delete_images)
    return store


@pytest.fixture
def client(mongo, media_store):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(mongo):
    def _make(role="customer", name="Ada"):
        res = mongo["user"].insert_one({
            "name": name,
            "email": f"{name.lower()}@example.com",
            "password_hash": "not-a-real-hash",
            "role": role,
            "avatar": f"https://example.com/{name.lower()}.png",
            "bio": f"{name} makes things",
        })
        user_id = str(res.inserted_id)
        token = main.create_access_token({"sub": user_id})
        return SimpleNamespace(id=user_id, headers={"Authorization": f"Bearer {token}"})
    return _make


@pytest.fixture
def make_product(mongo):
    counter = {"n": 0}

    def _make(seller_id, **overrides):
        counter["n"] += 1
        fields = {
            "name": f"Bottle lamp {counter['n']}",
            "description": "Lamp made from a wine bottle",
            "price": 25.0,
            "category": "home-decor",
            "materials_used": ["glass"],
            "seller": seller_id,
            "created_at": BASE_TIME + timedelta(minutes=counter["n"]),
        }
        fields.update(overrides)
        doc = ProductSchema(**fields).model_dump()
        return str(mongo["product"].insert_one(doc).inserted_id)
    return _make
