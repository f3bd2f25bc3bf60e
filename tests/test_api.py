from datetime import timedelta

from sqlalchemy.exc import OperationalError

from models import utcnow


def register(client, email, role):
    r = client.post("/api/auth/register", json={
        "email": email, "name": email.split("@")[0], "password": "password-123", "role": role,
    })
    assert r.status_code == 201, r.text
    body = r.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


def test_register_login_and_me(client):
    user_id, headers = register(client, "ann@coffee.ug", "buyer")
    r = client.post("/api/auth/login", json={"email": "ann@coffee.ug", "password": "password-123"})
    assert r.status_code == 200
    assert r.json()["user"]["id"] == user_id
    assert client.get("/api/me", headers=headers).json()["role"] == "buyer"


def test_auth_errors(client):
    register(client, "ann@coffee.ug", "buyer")
    r = client.post("/api/auth/register", json={
        "email": "ann@coffee.ug", "password": "password-123", "role": "buyer",
    })
    assert r.status_code == 409
    assert r.json()["code"] == "DuplicateEmail"

    r = client.post("/api/auth/register", json={
        "email": "bob@coffee.ug", "password": "password-123", "role": "wizard",
    })
    assert r.status_code == 422
    assert r.json()["code"] == "InvalidRole"

    r = client.post("/api/auth/login", json={"email": "ann@coffee.ug", "password": "wrong-pass"})
    assert r.status_code == 401
    assert r.json()["code"] == "InvalidCredentials"

    assert client.get("/api/me").status_code == 401
    assert client.get("/api/me", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_full_trade_over_http(client):
    farmer_id, farmer = register(client, "farmer@coffee.ug", "farmer")
    buyer_id, buyer = register(client, "buyer@coffee.ug", "buyer")

    farm = client.post("/api/farms", headers=farmer, json={
        "name": "Nakato Estate", "location": "Mbale", "size": 4.5, "coffee_type": "Arabica",
    })
    assert farm.status_code == 201, farm.text
    farm_id = farm.json()["id"]

    harvested = (utcnow() - timedelta(days=7)).isoformat()
    lot = client.post(f"/api/farms/{farm_id}/inventory", headers=farmer, json={
        "quantity": 100, "quality_grade": "AA", "harvest_date": harvested,
    })
    assert lot.status_code == 201, lot.text

    listing = client.post("/api/listings", headers=farmer, json={
        "product_type": "Arabica AA", "quantity": 10, "price": 5, "inventory_id": lot.json()["id"],
    }).json()
    assert listing["status"] == "draft"
    assert client.post(f"/api/listings/{listing['id']}/publish", headers=buyer).status_code == 403
    assert client.post(f"/api/listings/{listing['id']}/publish", headers=farmer).json()["status"] == "open"
    assert [l["id"] for l in client.get("/api/listings").json()] == [listing["id"]]

    txn = client.post(f"/api/listings/{listing['id']}/transactions", headers=buyer, json={"amount": 50})
    assert txn.status_code == 201
    txn_id = txn.json()["id"]
    r = client.post(f"/api/listings/{listing['id']}/transactions", headers=buyer, json={"amount": 1})
    assert r.status_code == 409
    assert r.json()["code"] == "ExceedsListingValue"

    eta = (utcnow() + timedelta(days=4)).isoformat()
    r = client.post(f"/api/transactions/{txn_id}/logistics", headers=farmer,
                    json={"carrier": "DHL", "tracking_number": "TRK-9", "estimated_delivery": eta})
    assert r.status_code == 409
    assert r.json()["code"] == "TransactionNotPaid"

    assert client.post(f"/api/transactions/{txn_id}/confirm", headers=farmer).json()["status"] == "confirmed"
    assert client.post(f"/api/transactions/{txn_id}/pay", headers=farmer).status_code == 403
    assert client.post(f"/api/transactions/{txn_id}/pay", headers=buyer).json()["status"] == "paid"
    assert client.get(f"/api/listings/{listing['id']}").json()["status"] == "closed"

    ship = client.post(f"/api/transactions/{txn_id}/logistics", headers=farmer,
                       json={"carrier": "DHL", "tracking_number": "TRK-9", "estimated_delivery": eta})
    assert ship.status_code == 201
    ship_id = ship.json()["id"]
    r = client.post(f"/api/transactions/{txn_id}/logistics", headers=farmer,
                    json={"carrier": "DHL", "tracking_number": "TRK-9", "estimated_delivery": eta})
    assert r.json()["code"] == "LogisticsAlreadyExists"

    assert client.get("/api/dashboard").json() == {
        "total_farms": 1, "open_listings": 0, "pending_shipments": 1, "paid_revenue": 50.0,
    }

    r = client.post(f"/api/logistics/{ship_id}/status", headers=farmer, json={"status": "delivered"})
    assert r.json()["status"] == "delivered"
    r = client.post(f"/api/logistics/{ship_id}/status", headers=farmer, json={"status": "booked"})
    assert r.status_code == 409

    qr = client.get(f"/api/logistics/{ship_id}/qrcode")
    assert qr.status_code == 200
    assert qr.headers["content-type"] == "image/png"
    assert qr.content.startswith(b"\x89PNG")


def test_messages_over_http(client):
    farmer_id, farmer = register(client, "farmer@coffee.ug", "farmer")
    buyer_id, buyer = register(client, "buyer@coffee.ug", "buyer")

    r = client.post("/api/messages", headers=buyer, json={"receiver_id": buyer_id, "content": "hi"})
    assert r.status_code == 422
    assert r.json()["code"] == "SelfMessage"

    msg = client.post("/api/messages", headers=buyer, json={"receiver_id": farmer_id, "content": "hi"}).json()
    inbox = client.get("/api/messages", headers=farmer).json()
    assert inbox["unread"] == 1
    assert client.post(f"/api/messages/{msg['id']}/read", headers=buyer).status_code == 403
    assert client.post(f"/api/messages/{msg['id']}/read", headers=farmer).json()["read"] is True
    assert client.post(f"/api/messages/{msg['id']}/read", headers=farmer).json()["read"] is True

    convo = client.get(f"/api/conversations/{buyer_id}", headers=farmer).json()
    assert [m["content"] for m in convo] == ["hi"]


def test_not_found_is_translated(client):
    r = client.get("/api/listings/404")
    assert r.status_code == 404
    assert r.json()["code"] == "ListingNotFound"


def test_seed_is_repeatable(client):
    first = client.get("/api/seed").json()
    assert first["status"] == "seeded"
    assert client.get("/api/seed").json()["status"] == "exists"
    assert client.get("/api/dashboard").json()["paid_revenue"] == 1050.0


def test_store_contention_is_503_without_internals(client, services, monkeypatch):
    real = services.store.SessionLocal

    def locked_session():
        db = real()

        def busy(*args, **kwargs):
            raise OperationalError("SELECT listings", {}, Exception("database is locked"))

        db.get = busy
        return db

    monkeypatch.setattr(services.store, "SessionLocal", locked_session)
    r = client.get("/api/listings/1")
    assert r.status_code == 503
    assert r.json() == {"detail": "service busy, please retry", "code": "TransientStoreError"}
    assert "locked" not in r.text


def test_non_finite_numbers_are_rejected(client):
    _, farmer = register(client, "kato@coffee.ug", "farmer")
    raw = {**farmer, "Content-Type": "application/json"}

    r = client.post("/api/farms", headers=raw,
                    content='{"name": "Estate", "location": "Mbale", "size": NaN, "coffee_type": "arabica"}')
    assert r.status_code == 422
    r = client.post("/api/listings", headers=raw,
                    content='{"product_type": "Arabica", "quantity": Infinity, "price": 5}')
    assert r.status_code == 422

    listing = client.post("/api/listings", headers=farmer,
                          json={"product_type": "Arabica", "quantity": 10, "price": 5}).json()
    client.post(f"/api/listings/{listing['id']}/publish", headers=farmer)
    r = client.post(f"/api/listings/{listing['id']}/transactions", headers=raw, content='{"amount": NaN}')
    assert r.status_code == 422
    assert client.get(f"/api/listings/{listing['id']}/summary").json()["committed"] == 0
