from decimal import Decimal

from sqlalchemy import select

from app.models import Album, Order, Photo
from conftest import auth_headers, checkout, merchant_order, signed_headers


def test_photographer_endpoints_need_a_token(client, catalog):
    assert client.get("/albums").status_code == 401
    assert client.get("/albums", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_unknown_user_has_no_photographer_profile(client, catalog):
    r = client.get("/albums", headers=auth_headers("stranger"))
    assert r.status_code == 403


def test_album_lifecycle(client, catalog, db):
    h = auth_headers()
    r = client.post(
        "/albums",
        json={"name": "Graduation", "event_date": "2026-11-20", "price_per_photo": "12.50"},
        headers=h,
    )
    assert r.status_code == 201
    album_id = r.json()["id"]

    names = {a["name"]: a["photo_count"] for a in client.get("/albums", headers=h).json()}
    assert names == {"Spring 2026": 2, "Graduation": 0}

    r = client.put(f"/albums/{album_id}", json={"description": "Class of 2026"}, headers=h)
    assert r.json()["description"] == "Class of 2026"

    assert client.delete(f"/albums/{album_id}", headers=h).json() == {"ok": True}
    assert db.get(Album, album_id) is None


def test_album_of_other_photographer_is_invisible(client, catalog):
    r = client.put("/albums/album-2", json={"name": "mine now"}, headers=auth_headers())
    assert r.status_code == 404


def test_album_price_change_reprices_photos(client, catalog, db):
    r = client.put("/albums/album-1", json={"price_per_photo": "18.00"}, headers=auth_headers())
    assert r.status_code == 200

    db.expire_all()
    prices = db.scalars(select(Photo.price).where(Photo.album_id == "album-1")).all()
    assert prices == [Decimal("18.00"), Decimal("18.00")]
    assert db.get(Photo, "photo-x").price == Decimal("10.00")


def test_invalid_album_payload(client, catalog):
    r = client.post("/albums", json={"name": "", "event_date": "20-11-2026"}, headers=auth_headers())
    assert r.status_code == 422


def test_public_gallery(client, catalog):
    r = client.get("/albums/album-1/photos")

    assert r.status_code == 200
    photos = r.json()
    assert [p["id"] for p in photos] == ["photo-1", "photo-2"]
    assert photos[0]["watermarked_url"] == "https://cdn.example/albums/album-1/watermarked/1.jpg"
    assert "original_file_path" not in photos[0]

    assert client.get("/albums/nope/photos").status_code == 404


def test_albums_with_photos_newest_event_first(client, catalog, db):
    db.get(Album, "album-1").event_date = "2026-03-20"
    db.add(Album(id="album-3", photographer_id="ph-1", name="Graduation", event_date="2026-10-01"))
    db.commit()

    r = client.get("/albums-with-photos", headers=auth_headers())

    assert r.status_code == 200
    albums = r.json()
    assert [a["id"] for a in albums] == ["album-3", "album-1"]
    assert albums[0]["photos"] == []
    assert albums[1]["photos"] == [
        {"id": "photo-1", "public_watermarked_url": "https://cdn.example/albums/album-1/watermarked/1.jpg"},
        {"id": "photo-2", "public_watermarked_url": "https://cdn.example/albums/album-1/watermarked/2.jpg"},
    ]
    assert client.get("/albums-with-photos").status_code == 401


def test_upload_stores_original_and_watermarked_copy(client, catalog, db, storage):
    files = [
        ("files", ("kid.jpg", b"jpeg-bytes", "image/jpeg")),
        ("files", ("notes.txt", b"hello", "text/plain")),
    ]
    r = client.post("/albums/album-1/photos", files=files, headers=auth_headers())

    assert r.status_code == 200
    body = r.json()
    assert body["uploaded"] == 1
    assert body["failed"] == 1
    ok, bad = body["results"]
    assert ok["status"] == "success"
    assert bad == {
        "original_name": "notes.txt",
        "status": "failed",
        "photo_id": None,
        "watermarked_url": None,
        "error": "Unsupported file type",
    }

    photo = db.get(Photo, ok["photo_id"])
    assert photo.price == Decimal("15.00")
    assert photo.original_file_path.startswith("albums/album-1/original/")
    assert storage.objects[("originals", photo.original_file_path)] == b"jpeg-bytes"
    assert storage.objects[("watermarked", photo.watermarked_file_path)] == b"marked:jpeg-bytes"


def test_delete_photo(client, catalog, db):
    h = auth_headers()
    assert client.delete("/photos/photo-x", headers=h).status_code == 404
    assert client.delete("/photos/photo-2", headers=h).json() == {"ok": True}
    db.expire_all()
    assert db.get(Photo, "photo-2") is None


def _paid_order(client, processor):
    r = checkout(client, [{"photoId": "photo-1", "price": 15.0}])
    order_id = r.json()["orderId"]
    processor.merchant_orders["mo-1"] = merchant_order(order_id)
    client.post("/payment-webhook?topic=merchant_order&id=mo-1", headers=signed_headers("mo-1"), json={})
    return order_id


def test_order_status_shows_webhook_outcome(client, catalog, processor):
    order_id = _paid_order(client, processor)
    client.get(f"/download-photo/photo-1/{order_id}/a@b.com", follow_redirects=False)

    r = client.get(f"/orders/{order_id}/status", headers=auth_headers())

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "paid"
    assert body["payment_reference"] == "9001"
    assert body["item_count"] == 1
    assert body["downloads_used"] == 1


def test_orders_are_scoped_to_photographer(client, catalog, processor):
    order_id = _paid_order(client, processor)

    assert [o["id"] for o in client.get("/orders", headers=auth_headers()).json()] == [order_id]
    assert client.get("/orders", headers=auth_headers("auth-user-2")).json() == []
    r = client.get(f"/orders/{order_id}/status", headers=auth_headers("auth-user-2"))
    assert r.status_code == 404


def test_stats(client, catalog, processor):
    _paid_order(client, processor)
    checkout(client, [{"photoId": "photo-2", "price": 20.0}])

    r = client.get("/admin/stats", headers=auth_headers())

    body = r.json()
    assert body["total_albums"] == 1
    assert body["total_photos"] == 2
    assert body["total_orders"] == 2
    assert body["paid_orders"] == 1
    assert Decimal(body["total_sales"]) == Decimal("15.00")


def test_delete_orders(client, catalog, db, processor):
    h = auth_headers()
    paid = _paid_order(client, processor)
    checkout(client, [{"photoId": "photo-2", "price": 20.0}])

    assert client.delete(f"/orders/{paid}", headers=h).json() == {"ok": True}
    assert client.delete("/orders/all", headers=h).json() == {"ok": True, "deleted": 1}

    db.expire_all()
    assert db.scalars(select(Order)).all() == []


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
