# FILE: crud.py  # in-memory storage for the sandbox server

import asyncio  # lock
import hashlib  # hash
import itertools  # id sequences
import secrets  # token generation
from datetime import datetime, timedelta, timezone  # time
from typing import Dict, List, Optional, Tuple  # typing

import bcrypt  # password hash

from config import (
    BCRYPT_ROUNDS, PASSWORD_PEPPER, REFRESH_TOKEN_EXPIRE_DAYS, SANDBOX_AGENCY_EMAIL, SANDBOX_AGENCY_PASSWORD,
    TRACKING_LINK_BASE,
)
from schemas import OfferStatus, RequestCreate, RequestStatus


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


# -------------------- Security helpers --------------------

def hash_password(password: str) -> str:  # bcrypt + pepper
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)  # salt
    mixed = (password + PASSWORD_PEPPER).encode("utf-8")  # mix
    return bcrypt.hashpw(mixed, salt).decode("utf-8")  # out


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        mixed = (password + PASSWORD_PEPPER).encode("utf-8")  # mix
        return bcrypt.checkpw(mixed, stored_hash.encode("utf-8"))  # check
    except ValueError:  # malformed hash
        return False


def create_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_refresh_token(token: str) -> str:  # only hashes are kept
    return hashlib.sha256((token + PASSWORD_PEPPER).encode("utf-8")).hexdigest()


# -------------------- Store --------------------

class Store:
    """All sandbox state. Rows are plain dicts, keyed by id."""

    def __init__(self, seed: bool = True):
        self.reset(seed)

    def reset(self, seed: bool = True) -> None:
        self.agencies: Dict[int, dict] = {}  # agency id -> row
        self.refresh_tokens: Dict[str, dict] = {}  # token hash -> row
        self.requests: Dict[int, dict] = {}  # request id -> row
        self.offers: Dict[int, dict] = {}  # offer id -> row
        self.shares: Dict[str, dict] = {}  # share token -> row
        self.sms_outbox: List[dict] = []  # every SMS "sent"
        self.lock = asyncio.Lock()  # serializes offer acceptance
        self._seq = {name: itertools.count(1) for name in ("agency", "request", "offer", "share", "driver", "vehicle")}
        if seed:
            create_agency(self, SANDBOX_AGENCY_EMAIL, SANDBOX_AGENCY_PASSWORD, "Sandbox Sigorta", "Sandbox Operator")

    def next_id(self, table: str) -> int:
        return next(self._seq[table])


# -------------------- Agencies / tokens --------------------

def create_agency(store: Store, email: str, password: str, name: str, contact_person: str = "") -> dict:
    row = {
        "id": store.next_id("agency"),  # id
        "email": email.strip().lower(),  # login
        "password_hash": hash_password(password),  # hash
        "name": name,  # company name
        "contact_person": contact_person,  # contact
        "created_at": now_iso(),  # created
    }
    store.agencies[row["id"]] = row
    return row


def get_agency_by_email(store: Store, email: str) -> Optional[dict]:
    email = (email or "").strip().lower()
    return next((a for a in store.agencies.values() if a["email"] == email), None)


def issue_refresh_token(store: Store, agency_id: int) -> str:
    raw = create_refresh_token()  # raw token
    store.refresh_tokens[hash_refresh_token(raw)] = {
        "agency_id": agency_id,  # owner
        "expires_at": now_utc() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),  # exp
        "revoked": False,  # revoked
    }
    return raw


def get_refresh_token(store: Store, raw: str) -> Optional[dict]:
    return store.refresh_tokens.get(hash_refresh_token(raw))


def revoke_refresh_token(store: Store, raw: str) -> None:
    row = get_refresh_token(store, raw)
    if row:
        row["revoked"] = True


# -------------------- Requests --------------------

def create_request(store: Store, agency_id: int, body: RequestCreate) -> dict:
    request_id = store.next_id("request")  # id
    tracking_token = secrets.token_urlsafe(16)  # public token
    row = {
        "id": request_id,
        "agency_id": agency_id,
        "tracking_token": tracking_token,
        "tracking_url": f"{TRACKING_LINK_BASE}/{tracking_token}",
        "service_type": body.service_type,
        "insured_name": body.insured_name,
        "insured_phone": body.insured_phone,
        "insured_plate": body.insured_plate,
        "policy_number": body.policy_number,
        "external_reference": body.external_reference,
        "location_method": body.location_method,
        "pickup_address": body.pickup_address,
        "pickup_latitude": body.pickup_latitude,
        "pickup_longitude": body.pickup_longitude,
        "dropoff_address": body.dropoff_address,
        "dropoff_latitude": body.dropoff_latitude,
        "dropoff_longitude": body.dropoff_longitude,
        "estimated_km": body.estimated_km,
        "service_details": body.to_payload().get("service_details", {}),
        "status": RequestStatus.PENDING,
        "driver": None,  # set on acceptance
        "price": None,  # accepted offer price
        "created_at": now_iso(),
        "accepted_at": None,
        "completed_at": None,
    }
    share = store.shares.get(body.location_share_token or "")
    if share is not None and share["agency_id"] == agency_id:
        share["request_id"] = request_id  # link, so a late submit fills the pickup
        if share["used"]:
            apply_shared_location(row, share)
    if row["pickup_latitude"] is None or row["pickup_longitude"] is None:
        row["status"] = RequestStatus.PENDING_LOCATION  # waits for the customer's fix
    store.requests[request_id] = row
    return row


def apply_shared_location(row: dict, share: dict) -> None:
    row["pickup_latitude"] = share["latitude"]
    row["pickup_longitude"] = share["longitude"]
    row["pickup_address"] = row["pickup_address"] or share["address"]
    if row["status"] == RequestStatus.PENDING_LOCATION:
        row["status"] = RequestStatus.PENDING


def get_request(store: Store, request_id: int, agency_id: Optional[int] = None) -> Optional[dict]:
    row = store.requests.get(request_id)
    if row is None or (agency_id is not None and row["agency_id"] != agency_id):
        return None
    return row


def get_request_by_token(store: Store, tracking_token: str) -> Optional[dict]:
    return next((r for r in store.requests.values() if r["tracking_token"] == tracking_token), None)


def list_requests(store: Store, agency_id: int, status: Optional[str], page: int, page_size: int) -> Tuple[int, List[dict]]:
    rows = [r for r in store.requests.values() if r["agency_id"] == agency_id]
    if status:
        rows = [r for r in rows if r["status"].value == status]
    rows.sort(key=lambda r: r["id"], reverse=True)  # newest first
    start = (page - 1) * page_size
    return len(rows), rows[start:start + page_size]


def set_status(row: dict, status: RequestStatus) -> None:
    row["status"] = status
    if status == RequestStatus.AWAITING_PAYMENT:
        row["accepted_at"] = now_iso()
    elif status == RequestStatus.COMPLETED:
        row["completed_at"] = now_iso()


# -------------------- Offers --------------------

def add_offer(store: Store, request_id: int, driver: dict, vehicle: Optional[dict], price: float) -> dict:
    row_vehicle_id = store.next_id("vehicle")  # vehicle id
    row = {
        "id": store.next_id("offer"),
        "request_id": request_id,
        "driver": {"id": store.next_id("driver"), **driver},  # first_name, last_name, phone_number
        "vehicle": ({"id": row_vehicle_id, **vehicle} if vehicle else None),  # brand, model, plate_number, vehicle_type
        "estimated_price": float(price),
        "driver_earnings": round(price * 0.85, 2),  # provider share
        "platform_commission": round(price * 0.15, 2),  # platform share
        "status": OfferStatus.PENDING,
        "created_at": now_iso(),
    }
    store.offers[row["id"]] = row
    return row


def offers_for(store: Store, request_id: int) -> List[dict]:
    return [o for o in store.offers.values() if o["request_id"] == request_id]


def reject_pending_offers(store: Store, request_id: int, keep: Optional[int] = None) -> List[int]:
    rejected = []
    for o in offers_for(store, request_id):
        if o["status"] == OfferStatus.PENDING and o["id"] != keep:
            o["status"] = OfferStatus.REJECTED
            rejected.append(o["id"])
    return rejected


# -------------------- Location share --------------------

def create_share(store: Store, agency_id: int, phone: str) -> dict:
    row = {
        "id": store.next_id("share"),  # ws session id
        "token": secrets.token_urlsafe(24),  # one-time token
        "agency_id": agency_id,
        "phone": phone,
        "request_id": None,  # linked at request creation
        "used": False,
        "latitude": None,
        "longitude": None,
        "address": "",
        "created_at": now_iso(),
    }
    store.shares[row["token"]] = row
    return row


def get_share(store: Store, token: str) -> Optional[dict]:
    return store.shares.get(token)


def get_share_by_id(store: Store, share_id: int) -> Optional[dict]:
    return next((s for s in store.shares.values() if s["id"] == share_id), None)


def record_sms(store: Store, phone: str, body: str, kind: str) -> dict:
    row = {"phone": phone, "body": body, "kind": kind, "sent_at": now_iso()}
    store.sms_outbox.append(row)
    return row
