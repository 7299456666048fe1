import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
import main


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient().db
    database.ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    return mock_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture
def register(client):
    counter = {"n": 0}

    def _register(role="customer", email=None, password="secret123"):
        counter["n"] += 1
        body = {
            "first_name": "Amina",
            "last_name": "Alaoui",
            "email": email or f"user{counter['n']}@example.com",
            "password": password,
            "role": role,
        }
        res = client.post("/api/auth/register", json=body)
        assert res.status_code == 201, res.text
        data = res.json()
        return {"Authorization": f"Bearer {data['access_token']}"}, data["user"]

    return _register


@pytest.fixture
def make_admin(mongo, register):
    def _make_admin():
        headers, user = register()
        mongo["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"role": "admin"}})
        return headers, user

    return _make_admin


def shop_payload(**overrides):
    body = {
        "name": "Atelier Fes Pottery",
        "description": "Hand thrown pottery from the old medina",
        "contact": {"phone": "+212 600-000000"},
        "address": {"street": "12 Rue Talaa", "city": "Fes", "postal_code": "30000"},
        "categories": ["pottery", "ceramics"],
    }
    body.update(overrides)
    return body


def product_payload(**overrides):
    body = {
        "name": "Blue Tagine",
        "description": "Glazed clay tagine painted by hand",
        "price": 100.0,
        "category": "ceramics",
        "stock": 5,
        "images": [{"url": "https://img.example.com/tagine.jpg", "alt": "tagine"}],
    }
    body.update(overrides)
    return body


def order_payload(*items, **overrides):
    body = {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        "shipping_address": {
            "first_name": "Youssef",
            "last_name": "Benali",
            "street": "5 Avenue Hassan II",
            "city": "Rabat",
            "postal_code": "10000",
            "phone": "+212 611 223344",
        },
    }
    body.update(overrides)
    return body


@pytest.fixture
def seller_shop(client, register):
    def _seller_shop(**shop_overrides):
        headers, user = register(role="seller")
        res = client.post("/api/shops", json=shop_payload(**shop_overrides), headers=headers)
        assert res.status_code == 201, res.text
        return headers, user, res.json()

    return _seller_shop


@pytest.fixture
def product(client):
    def _product(headers, **overrides):
        res = client.post("/api/products", json=product_payload(**overrides), headers=headers)
        assert res.status_code == 201, res.text
        return res.json()

    return _product
