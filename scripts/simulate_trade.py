"""
Drive one trade through the API: register a farmer and a buyer, list a lot,
buy part of it, pay, book the shipment and walk it to delivery.
Run:
    python scripts/simulate_trade.py [API_URL]
"""
import sys
import time
import random
from datetime import date, timedelta

import requests

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"


def register(email, role):
    r = requests.post(f"{API}/api/auth/register", json={
        "email": email, "name": email.split("@")[0], "password": "simulate-123", "role": role,
    })
    if r.status_code == 409:
        r = requests.post(f"{API}/api/auth/login", json={"email": email, "password": "simulate-123"})
    r.raise_for_status()
    body = r.json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


def main():
    tag = random.randint(1000, 9999)
    farmer_id, farmer = register(f"farmer{tag}@sim.ug", "farmer")
    buyer_id, buyer = register(f"buyer{tag}@sim.ug", "buyer")

    farm = requests.post(f"{API}/api/farms", headers=farmer, json={
        "name": f"Sim Estate {tag}", "location": "Kapchorwa", "size": 3.2, "coffee_type": "Arabica",
    }).json()
    lot = requests.post(f"{API}/api/farms/{farm['id']}/inventory", headers=farmer, json={
        "quantity": 800, "quality_grade": "A", "harvest_date": str(date.today() - timedelta(days=10)),
    }).json()
    listing = requests.post(f"{API}/api/listings", headers=farmer, json={
        "product_type": "Arabica A", "quantity": 200, "price": 4.5,
        "description": "simulated lot", "inventory_id": lot["id"],
    }).json()
    requests.post(f"{API}/api/listings/{listing['id']}/publish", headers=farmer).raise_for_status()
    print("listing:", listing["id"], "value", listing["quantity"] * listing["price"])

    txn = requests.post(f"{API}/api/listings/{listing['id']}/transactions", headers=buyer,
                        json={"amount": 450}).json()
    print("placed:", txn)
    rr = requests.post(f"{API}/api/listings/{listing['id']}/transactions", headers=buyer, json={"amount": 9999})
    print("oversized placement:", rr.status_code, rr.json().get("code"))

    requests.post(f"{API}/api/transactions/{txn['id']}/confirm", headers=farmer).raise_for_status()
    requests.post(f"{API}/api/transactions/{txn['id']}/pay", headers=buyer).raise_for_status()
    ship = requests.post(f"{API}/api/transactions/{txn['id']}/logistics", headers=farmer, json={
        "carrier": "Sim Freight", "tracking_number": f"SIM-{tag}",
        "estimated_delivery": str(date.today() + timedelta(days=4)),
    }).json()
    for status in ("in_transit", "out_for_delivery", "delivered"):
        rr = requests.post(f"{API}/api/logistics/{ship['id']}/status", headers=farmer, json={"status": status})
        print("shipment", status, rr.status_code)
        time.sleep(0.5)

    requests.post(f"{API}/api/messages", headers=buyer,
                  json={"receiver_id": farmer_id, "content": "Received, thanks!"}).raise_for_status()
    print("dashboard:", requests.get(f"{API}/api/dashboard").json())


if __name__ == "__main__":
    main()
