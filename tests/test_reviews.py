import pytest
from bson import ObjectId


@pytest.fixture
def product(make_user, make_product):
    seller = make_user(role="seller", name="Sam")
    return make_product(seller.id, name="Pallet bench", category="furniture")


def average_of(mongo, product_id):
    return mongo["product"].find_one({"_id": ObjectId(product_id)})["average_rating"]


def post_review(client, product_id, user, rating, text="Solid work"):
    return client.post(f"/api/products/{product_id}/reviews", json={"rating": rating, "review": text}, headers=user.headers)


def test_create_review_updates_average(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    cal = make_user(name="Cal")

    res = post_review(client, product, bea, 4)
    assert res.status_code == 201
    review = res.json()["data"]
    assert review["product"] == product
    assert review["user"] == bea.id
    assert average_of(mongo, product) == 4

    post_review(client, product, cal, 5)
    assert average_of(mongo, product) == 4.5

    stored = mongo["product"].find_one({"_id": ObjectId(product)})
    assert len(stored["reviews"]) == 2


def test_duplicate_review_is_rejected(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    post_review(client, product, bea, 4)

    res = post_review(client, product, bea, 1)
    assert res.status_code == 400
    assert res.json()["message"] == "Already reviewed this product"
    assert mongo["review"].count_documents({"user": bea.id, "product": product}) == 1
    assert average_of(mongo, product) == 4


def test_review_for_missing_product(client, make_user):
    bea = make_user(name="Bea")
    assert post_review(client, str(ObjectId()), bea, 3).status_code == 404


def test_review_requires_auth(client, product):
    res = client.post(f"/api/products/{product}/reviews", json={"rating": 3, "review": "ok"})
    assert res.status_code == 401


@pytest.mark.parametrize("rating", [0, 6])
def test_review_rating_out_of_range(client, make_user, product, rating):
    bea = make_user(name="Bea")
    res = post_review(client, product, bea, rating)
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_list_reviews_populates_user(client, make_user, product):
    bea = make_user(name="Bea")
    post_review(client, product, bea, 2, "Wobbly")

    body = client.get(f"/api/products/{product}/reviews").json()
    assert body["count"] == 1
    assert body["data"][0]["review"] == "Wobbly"
    assert body["data"][0]["user"] == {"id": bea.id, "name": "Bea", "avatar": "https://example.com/bea.png"}


def test_update_review_recomputes(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    cal = make_user(name="Cal")
    review_id = post_review(client, product, bea, 2).json()["data"]["id"]
    post_review(client, product, cal, 4)

    res = client.put(f"/api/reviews/{review_id}", json={"rating": 5}, headers=bea.headers)
    assert res.status_code == 200
    assert res.json()["data"]["rating"] == 5
    assert res.json()["data"]["review"] == "Solid work"
    assert average_of(mongo, product) == 4.5


def test_update_review_validates(client, make_user, product):
    bea = make_user(name="Bea")
    review_id = post_review(client, product, bea, 2).json()["data"]["id"]
    res = client.put(f"/api/reviews/{review_id}", json={"rating": 9}, headers=bea.headers)
    assert res.status_code == 400


def test_update_review_by_other_user_is_unauthorized(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    cal = make_user(name="Cal")
    review_id = post_review(client, product, bea, 2).json()["data"]["id"]

    res = client.put(f"/api/reviews/{review_id}", json={"rating": 5, "user": cal.id}, headers=cal.headers)
    assert res.status_code == 401
    assert average_of(mongo, product) == 2


def test_update_missing_review(client, make_user):
    bea = make_user(name="Bea")
    assert client.put(f"/api/reviews/{ObjectId()}", json={"rating": 3}, headers=bea.headers).status_code == 404


def test_delete_only_review_resets_average(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    cal = make_user(name="Cal")
    first = post_review(client, product, bea, 4).json()["data"]["id"]
    second = post_review(client, product, cal, 5).json()["data"]["id"]
    assert average_of(mongo, product) == 4.5

    client.delete(f"/api/reviews/{second}", headers=cal.headers)
    assert average_of(mongo, product) == 4

    res = client.delete(f"/api/reviews/{first}", headers=bea.headers)
    assert res.status_code == 200
    assert res.json() == {"success": True, "data": {}}
    assert average_of(mongo, product) == 0
    assert mongo["product"].find_one({"_id": ObjectId(product)})["reviews"] == []


def test_admin_can_delete_any_review(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    admin = make_user(role="admin", name="Ann")
    review_id = post_review(client, product, bea, 3).json()["data"]["id"]

    assert client.delete(f"/api/reviews/{review_id}", headers=admin.headers).status_code == 200
    assert mongo["review"].count_documents({}) == 0


def test_delete_review_by_other_user_is_unauthorized(client, make_user, product, mongo):
    bea = make_user(name="Bea")
    cal = make_user(name="Cal")
    review_id = post_review(client, product, bea, 3).json()["data"]["id"]

    assert client.delete(f"/api/reviews/{review_id}", headers=cal.headers).status_code == 401
    assert mongo["review"].count_documents({}) == 1
