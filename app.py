import io
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Depends, Header, Response, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import qrcode

from config import Settings, get_settings
from database import Store
from identity import IdentityStore
from farms import FarmRegistry
from marketplace import MarketplaceLedger
from messaging import MessagingLog
from dashboard import dashboard_counts
from models import utcnow
from errors import (
    LedgerError, ValidationError, NotFoundError, ConflictError, AuthorizationError,
    AuthenticationError, TransientStoreError, DuplicateEmail,
)
import schemas

logger = logging.getLogger(__name__)


# ---------- Services ----------
class Services:
    """Everything a request needs, built once from explicit settings."""

    def __init__(self, settings: Settings, store: Optional[Store] = None):
        self.settings = settings
        self.store = store or Store(settings)
        self.identity = IdentityStore(self.store, settings)
        self.farms = FarmRegistry(self.store, settings)
        self.ledger = MarketplaceLedger(self.store, settings)
        self.messages = MessagingLog(self.store, settings)


@lru_cache
def get_services() -> Services:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return Services(settings)


app = FastAPI(title="Coffee Trade Ledger", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    get_services().store.create_all()


# ---------- Errors ----------
ERROR_STATUS = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthorizationError, 403),
    (AuthenticationError, 401),
    (TransientStoreError, 503),
)

def status_for(exc: LedgerError) -> int:
    for kind, status in ERROR_STATUS:
        if isinstance(exc, kind):
            return status
    return 400

@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    status = status_for(exc)
    detail = exc.message
    if isinstance(exc, TransientStoreError):
        detail = "service busy, please retry"
    return JSONResponse(status_code=status, content={"detail": detail, "code": exc.code})


# ---------- Auth ----------
class CurrentUser:
    def __init__(self, id: int, role: str):
        self.id = id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

def get_current_user(authorization: Optional[str] = Header(None),
                     svc: Services = Depends(get_services)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = svc.identity.read_session(authorization.split(" ", 1)[1].strip())
    return CurrentUser(id=payload["uid"], role=payload["role"])

def _actor(current: CurrentUser) -> Optional[int]:
    # admins act on anyone's records
    return None if current.is_admin else current.id


@app.post("/api/auth/register", response_model=schemas.SessionOut, status_code=201)
def register(body: schemas.RegisterUser, svc: Services = Depends(get_services)):
    user = svc.identity.register_user(body.email, body.name, body.password, body.role)
    return schemas.SessionOut(token=svc.identity.issue_session(user), user=schemas.UserOut.model_validate(user))

@app.post("/api/auth/login", response_model=schemas.SessionOut)
def login(body: schemas.Login, svc: Services = Depends(get_services)):
    user = svc.identity.verify_credentials(body.email, body.password)
    return schemas.SessionOut(token=svc.identity.issue_session(user), user=schemas.UserOut.model_validate(user))

@app.get("/api/me", response_model=schemas.UserOut)
def me(current: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    return svc.identity.get_user(current.id)


# ---------- Farms ----------
@app.post("/api/farms", response_model=schemas.FarmOut, status_code=201)
def create_farm(body: schemas.CreateFarm, current: CurrentUser = Depends(get_current_user),
                svc: Services = Depends(get_services)):
    return svc.farms.create_farm(current.id, body.name, body.location, body.size,
                                 body.coffee_type, body.certification)

@app.get("/api/farms", response_model=List[schemas.FarmOut])
def list_farms(owner_id: Optional[int] = Query(None), svc: Services = Depends(get_services)):
    return svc.farms.list_farms(owner_id)

@app.post("/api/farms/{farm_id}/inventory", response_model=schemas.InventoryOut, status_code=201)
def record_inventory(farm_id: int, body: schemas.RecordInventory,
                     current: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    return svc.farms.record_inventory(farm_id, body.quantity, body.quality_grade, body.harvest_date,
                                      _actor(current))

@app.get("/api/farms/{farm_id}/inventory", response_model=List[schemas.InventoryOut])
def list_inventory(farm_id: int, svc: Services = Depends(get_services)):
    return svc.farms.list_inventory(farm_id)

@app.post("/api/inventory/{inventory_id}/adjust", response_model=schemas.InventoryOut)
def adjust_inventory(inventory_id: int, body: schemas.AdjustInventory,
                     current: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    return svc.farms.adjust_inventory(inventory_id, body.delta, _actor(current))


# ---------- Listings ----------
@app.post("/api/listings", response_model=schemas.ListingOut, status_code=201)
def create_listing(body: schemas.CreateListing, current: CurrentUser = Depends(get_current_user),
                   svc: Services = Depends(get_services)):
    return svc.ledger.create_listing(current.id, body.product_type, body.quantity, body.price,
                                     body.description, body.inventory_id)

@app.get("/api/listings", response_model=List[schemas.ListingOut])
def list_listings(
    status: Optional[str] = Query("open"),
    q: Optional[str] = Query(None, description="search product type / description"),
    seller_id: Optional[int] = Query(None),
    svc: Services = Depends(get_services),
):
    return svc.ledger.list_listings(status=status or None, q=q, seller_id=seller_id)

@app.get("/api/listings/{listing_id}", response_model=schemas.ListingOut)
def get_listing(listing_id: int, svc: Services = Depends(get_services)):
    return svc.ledger.get_listing(listing_id)

@app.get("/api/listings/{listing_id}/summary", response_model=schemas.ListingSummary)
def listing_summary(listing_id: int, svc: Services = Depends(get_services)):
    return svc.ledger.listing_value_summary(listing_id)

@app.post("/api/listings/{listing_id}/publish", response_model=schemas.ListingOut)
def publish_listing(listing_id: int, current: CurrentUser = Depends(get_current_user),
                    svc: Services = Depends(get_services)):
    return svc.ledger.publish_listing(listing_id, _actor(current))

@app.post("/api/listings/{listing_id}/close", response_model=schemas.ListingOut)
def close_listing(listing_id: int, current: CurrentUser = Depends(get_current_user),
                  svc: Services = Depends(get_services)):
    return svc.ledger.close_listing(listing_id, _actor(current))

@app.post("/api/listings/{listing_id}/cancel", response_model=schemas.ListingOut)
def cancel_listing(listing_id: int, current: CurrentUser = Depends(get_current_user),
                   svc: Services = Depends(get_services)):
    return svc.ledger.cancel_listing(listing_id, _actor(current))


# ---------- Transactions ----------
@app.post("/api/listings/{listing_id}/transactions", response_model=schemas.TransactionOut, status_code=201)
def place_transaction(listing_id: int, body: schemas.PlaceTransaction,
                      current: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    return svc.ledger.place_transaction(listing_id, body.amount, buyer_id=current.id)

@app.get("/api/listings/{listing_id}/transactions", response_model=List[schemas.TransactionOut])
def list_transactions(listing_id: int, svc: Services = Depends(get_services)):
    return svc.ledger.list_transactions(listing_id)

@app.post("/api/transactions/{transaction_id}/confirm", response_model=schemas.TransactionOut)
def confirm_transaction(transaction_id: int, current: CurrentUser = Depends(get_current_user),
                        svc: Services = Depends(get_services)):
    return svc.ledger.confirm_transaction(transaction_id, _actor(current))

@app.post("/api/transactions/{transaction_id}/pay", response_model=schemas.TransactionOut)
def pay_transaction(transaction_id: int, current: CurrentUser = Depends(get_current_user),
                    svc: Services = Depends(get_services)):
    return svc.ledger.mark_paid(transaction_id, _actor(current))

@app.post("/api/transactions/{transaction_id}/fail", response_model=schemas.TransactionOut)
def fail_transaction(transaction_id: int, current: CurrentUser = Depends(get_current_user),
                     svc: Services = Depends(get_services)):
    return svc.ledger.fail_transaction(transaction_id, _actor(current))

@app.post("/api/transactions/{transaction_id}/cancel", response_model=schemas.TransactionOut)
def cancel_transaction(transaction_id: int, current: CurrentUser = Depends(get_current_user),
                       svc: Services = Depends(get_services)):
    return svc.ledger.cancel_transaction(transaction_id, _actor(current))


# ---------- Logistics ----------
@app.post("/api/transactions/{transaction_id}/logistics", response_model=schemas.LogisticsOut, status_code=201)
def create_logistics(transaction_id: int, body: schemas.CreateLogistics,
                     current: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    return svc.ledger.create_logistics(transaction_id, body.carrier, body.tracking_number,
                                       body.estimated_delivery, _actor(current))

@app.get("/api/logistics/{logistics_id}", response_model=schemas.LogisticsOut)
def get_logistics(logistics_id: int, svc: Services = Depends(get_services)):
    return svc.ledger.get_logistics(logistics_id)

@app.post("/api/logistics/{logistics_id}/status", response_model=schemas.LogisticsOut)
def update_logistics_status(logistics_id: int, body: schemas.UpdateLogisticsStatus,
                            current: CurrentUser = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    return svc.ledger.update_logistics_status(logistics_id, body.status, _actor(current))

@app.get("/api/logistics/{logistics_id}/qrcode")
def logistics_qrcode(logistics_id: int, svc: Services = Depends(get_services)):
    record = svc.ledger.get_logistics(logistics_id)
    url = f"{svc.settings.base_url}/track.html?tracking={record.tracking_number}"
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


# ---------- Messages ----------
@app.post("/api/messages", response_model=schemas.MessageOut, status_code=201)
def send_message(body: schemas.SendMessage, current: CurrentUser = Depends(get_current_user),
                 svc: Services = Depends(get_services)):
    return svc.messages.send_message(current.id, body.receiver_id, body.content)

@app.get("/api/messages", response_model=schemas.MessageList)
def inbox(unread_only: bool = Query(False), current: CurrentUser = Depends(get_current_user),
          svc: Services = Depends(get_services)):
    items = svc.messages.inbox(current.id, unread_only=unread_only)
    return schemas.MessageList(
        items=[schemas.MessageOut.model_validate(m) for m in items],
        unread=svc.messages.unread_count(current.id),
    )

@app.post("/api/messages/{message_id}/read", response_model=schemas.MessageOut)
def mark_read(message_id: int, current: CurrentUser = Depends(get_current_user),
              svc: Services = Depends(get_services)):
    return svc.messages.mark_read(message_id, current.id)

@app.get("/api/conversations/{other_id}", response_model=List[schemas.MessageOut])
def conversation(other_id: int, current: CurrentUser = Depends(get_current_user),
                 svc: Services = Depends(get_services)):
    return list(svc.messages.list_conversation(current.id, other_id))


# ---------- Dashboard ----------
@app.get("/api/dashboard", response_model=schemas.DashboardCounts)
def dashboard(svc: Services = Depends(get_services)):
    return dashboard_counts(svc.store)


@app.get("/api/seed")
def seed(svc: Services = Depends(get_services)):
    seed_email = "farmer@ucip.ug"
    try:
        farmer = svc.identity.register_user(seed_email, "Nakato Farms", "coffee-seed-1", "farmer")
    except DuplicateEmail:
        return {"status": "exists", "email": seed_email}
    buyer = svc.identity.register_user("buyer@ucip.ug", "Kampala Roasters", "coffee-seed-1", "buyer")

    farm = svc.farms.create_farm(farmer.id, "Nakato Estate", "Mbale, Mount Elgon", 4.5, "Arabica",
                                 certification="Organic")
    lot = svc.farms.record_inventory(farm.id, 1200.0, "AA", utcnow() - timedelta(days=14))
    listing = svc.ledger.create_listing(farmer.id, "Arabica AA green beans", 500.0, 4.2,
                                        "Washed, sun dried, Mount Elgon", inventory_id=lot.id)
    svc.ledger.publish_listing(listing.id)
    txn = svc.ledger.place_transaction(listing.id, 1050.0, buyer_id=buyer.id)
    svc.ledger.confirm_transaction(txn.id)
    svc.ledger.mark_paid(txn.id)
    svc.ledger.create_logistics(txn.id, "Entebbe Freight", "EF-000001", utcnow() + timedelta(days=5))
    svc.messages.send_message(buyer.id, farmer.id, "Payment sent, please confirm the shipment date.")
    return {"status": "seeded", "listing_id": listing.id, "transaction_id": txn.id}


@app.get("/")
def root():
    return {"message": "Coffee Trade Ledger API running"}
