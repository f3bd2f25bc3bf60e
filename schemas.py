from datetime import date, datetime
from typing import Optional, List, Literal, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

ShipmentStatus = Literal["booked", "in_transit", "out_for_delivery", "delivered"]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------- Auth ----------
class RegisterUser(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    password: str = Field(..., min_length=8)
    role: str = "farmer"

class Login(BaseModel):
    email: EmailStr
    password: str

class UserOut(ORMModel):
    id: int
    email: str
    name: Optional[str] = None
    role: str
    created_at: datetime

class SessionOut(BaseModel):
    token: str
    user: UserOut


# ---------- Farms ----------
class CreateFarm(BaseModel):
    name: str
    location: str
    size: float = Field(..., gt=0, allow_inf_nan=False)  # hectares
    coffee_type: str  # arabica / robusta
    certification: Optional[str] = None

class FarmOut(ORMModel):
    id: int
    owner_id: int
    name: str
    location: str
    size: float
    coffee_type: str
    certification: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class RecordInventory(BaseModel):
    quantity: float = Field(..., ge=0, allow_inf_nan=False)
    quality_grade: str
    harvest_date: Union[datetime, date]

class AdjustInventory(BaseModel):
    delta: float = Field(..., allow_inf_nan=False)

class InventoryOut(ORMModel):
    id: int
    farm_id: int
    quantity: float
    quality_grade: str
    harvest_date: datetime
    updated_at: datetime


# ---------- Marketplace ----------
class CreateListing(BaseModel):
    product_type: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0, allow_inf_nan=False)
    price: float = Field(..., gt=0, allow_inf_nan=False)
    description: str = ""
    inventory_id: Optional[int] = None

class ListingOut(ORMModel):
    id: int
    seller_id: int
    inventory_id: Optional[int] = None
    product_type: str
    quantity: float
    price: float
    description: str
    status: str
    created_at: datetime
    updated_at: datetime

class ListingSummary(BaseModel):
    listing_id: int
    value: float
    committed: float
    paid: float
    remaining: float

class PlaceTransaction(BaseModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False)

class TransactionOut(ORMModel):
    id: int
    listing_id: int
    buyer_id: Optional[int] = None
    amount: float
    status: str
    created_at: datetime
    updated_at: datetime

class CreateLogistics(BaseModel):
    carrier: str
    tracking_number: str
    estimated_delivery: Union[datetime, date]

class UpdateLogisticsStatus(BaseModel):
    status: ShipmentStatus

class LogisticsOut(ORMModel):
    id: int
    transaction_id: int
    status: str
    carrier: str
    tracking_number: str
    estimated_delivery: datetime
    created_at: datetime
    updated_at: datetime


# ---------- Messaging ----------
class SendMessage(BaseModel):
    receiver_id: int
    content: str = Field(..., min_length=1, max_length=5000)

class MessageOut(ORMModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    read: bool
    created_at: datetime

class MessageList(BaseModel):
    items: List[MessageOut]
    unread: int


# ---------- Dashboard ----------
class DashboardCounts(BaseModel):
    total_farms: int
    open_listings: int
    pending_shipments: int
    paid_revenue: float

class ErrorOut(BaseModel):
    detail: str
    code: str
