# FILE: main.py  # sandbox backend: in-memory agency API, public offer/location endpoints, push hubs
# -*- coding: utf-8 -*-

import math  # distance
import secrets  # jti
from datetime import timedelta  # time
from typing import Dict, List, Optional, Set  # typing

import httpx  # HTTP
import jwt  # JWT
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect  # FastAPI
from fastapi.exceptions import RequestValidationError  # body errors
from fastapi.middleware.cors import CORSMiddleware  # CORS
from fastapi.responses import JSONResponse  # error body
from pydantic import BaseModel, Field  # Pydantic
from starlette.exceptions import HTTPException as StarletteHTTPException  # router 404s too

import crud  # storage
from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES, ALLOW_ORIGINS_ENV, INSURANCE_PREFIX, JWT_SECRET, PAYMENT_LINK_BASE, SMS_WEBHOOK_URL,
    setup_logger,
)
from location_share import customer_link
from schemas import (
    NEEDS_DROPOFF, OFFER_COLLECTION_STATUSES, TERMINAL_STATUSES, AcceptOfferResponse, CancelResponse, CompanyInfo,
    DriverContact, DriverInfo, LocationShareInitRequest, LocationShareInitResponse, LocationShareStatus,
    LocationSubmit, LocationSubmitResponse, LoginRequest, LoginResponse, Offer, OffersResponse, OfferStatus,
    PaymentLinkRequest, PaymentLinkResponse, PriceBreakdown, PriceEstimateRequest, PriceEstimateResponse, Pricing,
    PricingQuestionsResponse, RequestCreate, RequestCreateResponse, RequestDetail, RequestListResponse,
    RequestStatus, RequestSummary, SendLocationSmsRequest, SendLocationSmsResponse, ServiceType, Timeline,
    TokenPair, TokenRefreshRequest, TokenRefreshResponse, VehicleInfo,
)

# -------------------- Logger --------------------
logger = setup_logger("yolsepeti.sandbox", "SANDBOX")  # server logger

# -------------------- Storage --------------------
store = crud.Store()  # all state lives here

# -------------------- Sandbox-only bodies --------------------

class SandboxOffer(BaseModel):  # driver side: submit an offer
    first_name: str = "Test"  # driver name
    last_name: str = "Surucu"  # driver surname
    phone_number: str = "5550000000"  # driver phone
    brand: str = "Ford"  # vehicle brand
    model: str = "Cargo"  # vehicle model
    plate_number: str = "34 ABC 123"  # plate
    vehicle_type: str = "towTruck"  # vehicle class
    price: float = Field(..., gt=0)  # bid

# -------------------- Security helpers --------------------

def api_error(status_code: int, code: str, message: str) -> HTTPException:  # uniform error
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})

def create_access_token(agency_id: int) -> str:  # build access token
    now = crud.now_utc()  # now UTC
    exp = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)  # expiry
    payload = {  # payload
        "sub": str(agency_id),  # sub=agency id
        "type": "access",  # type=access
        "jti": secrets.token_hex(8),  # unique per issue
        "iat": int(now.timestamp()),  # issued at
        "exp": int(exp.timestamp()),  # expires at
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")  # sign

def issue_tokens(agency_id: int) -> TokenPair:  # access + rotating refresh
    return TokenPair(
        access_token=create_access_token(agency_id),  # access
        refresh_token=crud.issue_refresh_token(store, agency_id),  # refresh
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,  # seconds
    )

def extract_bearer_token(request: Request) -> Optional[str]:  # Bearer header
    auth = request.headers.get("authorization") or ""  # header
    if not auth.lower().startswith("bearer "):  # not bearer
        return None
    return auth.split(" ", 1)[1].strip()  # token

def decode_access_token(token: str) -> Optional[dict]:  # verify JWT
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])  # decode
    except jwt.PyJWTError:  # bad signature, expired, garbage
        return None
    if payload.get("type") != "access":  # wrong type
        return None
    return payload

def agency_from_token(token: Optional[str]) -> Optional[dict]:
    payload = decode_access_token(token) if token else None  # payload
    sub = str((payload or {}).get("sub") or "")  # agency id
    if not sub.isdigit():
        return None
    return store.agencies.get(int(sub))  # row

def get_auth_agency(request: Request) -> dict:  # authenticated agency or 401
    token = extract_bearer_token(request)  # token
    if not token:
        raise api_error(401, "AUTH_REQUIRED", "missing bearer token")  # 401
    agency = agency_from_token(token)  # row
    if agency is None:
        raise api_error(401, "TOKEN_INVALID", "invalid or expired token")  # 401
    return agency

def owned_request(request_id: int, agency: dict) -> dict:  # agency's request or 404
    row = crud.get_request(store, request_id, agency["id"])  # row
    if row is None:
        raise api_error(404, "REQUEST_NOT_FOUND", "request not found")  # 404
    return row

def tracked_request(tracking_token: str) -> dict:  # public lookup or 404
    row = crud.get_request_by_token(store, tracking_token)  # row
    if row is None:
        raise api_error(404, "REQUEST_NOT_FOUND", "request not found")  # 404
    return row

# -------------------- Push hubs --------------------

class Hub:  # key -> open sockets
    def __init__(self, name: str):
        self.name = name  # hub name
        self._sockets: Dict[str, Set[WebSocket]] = {}  # subscribers

    def add(self, key: str, ws: WebSocket) -> None:
        self._sockets.setdefault(key, set()).add(ws)  # subscribe

    def discard(self, key: str, ws: WebSocket) -> None:
        sockets = self._sockets.get(key)  # subscribers
        if sockets is not None:
            sockets.discard(ws)  # unsubscribe
            if not sockets:
                self._sockets.pop(key, None)  # drop empty

    def count(self, key: str) -> int:
        return len(self._sockets.get(key, ()))

    async def broadcast(self, key: str, message: dict) -> int:  # returns deliveries
        sent = 0  # counter
        for ws in list(self._sockets.get(key, ())):  # snapshot
            try:
                await ws.send_json(message)  # push
                sent += 1
            except Exception as e:  # socket already gone
                logger.error(f"{self.name} push failed key={key} type={message.get('type')}: {e}")  # log
                self.discard(key, ws)  # forget
        return sent

request_hub = Hub("requests")  # keyed by tracking token
location_hub = Hub("location-share")  # keyed by share id

async def notify_request(row: dict, message: dict) -> None:  # push to the request channel
    try:
        await request_hub.broadcast(row["tracking_token"], message)  # push
    except Exception as e:
        logger.error(f"notify_request({message.get('type')}) failed: {e}")  # log

# -------------------- SMS --------------------

async def send_sms(phone: str, body: str, kind: str) -> bool:  # outbox + optional webhook
    crud.record_sms(store, phone, body, kind)  # keep a copy
    logger.info(f"SMS to={phone} kind={kind}: {body}")  # log body
    if not SMS_WEBHOOK_URL:  # no sink configured
        return True
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:  # client
            resp = await client.post(SMS_WEBHOOK_URL, json={"to": phone, "body": body, "kind": kind})  # send
    except httpx.HTTPError as e:
        logger.error(f"SMS webhook failed: {e}")  # log
        return False
    if resp.status_code not in (200, 201, 202, 204):  # not ok
        logger.error(f"SMS webhook failed HTTP_{resp.status_code} body={resp.text}")  # log
        return False
    return True

# -------------------- Views --------------------

def money(value: float) -> str:  # "1500.00"
    return f"{value:.2f}"

def request_detail(row: dict) -> RequestDetail:
    return RequestDetail(
        request_id=row["id"],  # id
        status=row["status"],  # status
        service_type=row["service_type"],  # service
        insured_name=row["insured_name"],  # name
        insured_phone=row["insured_phone"],  # phone
        insured_plate=row["insured_plate"],  # plate
        policy_number=row["policy_number"],  # policy
        tracking_url=row["tracking_url"],  # public link
        pickup_address=row["pickup_address"],  # pickup
        pickup_latitude=row["pickup_latitude"],  # lat
        pickup_longitude=row["pickup_longitude"],  # lng
        driver=DriverContact(**row["driver"]) if row["driver"] else None,  # assigned driver
        pricing=Pricing(estimated_price=money(row["price"])) if row["price"] is not None else None,  # agreed price
        timeline=Timeline(created_at=row["created_at"], accepted_at=row["accepted_at"], completed_at=row["completed_at"]),
    )

def driver_name(offer: dict) -> str:
    return f"{offer['driver']['first_name']} {offer['driver']['last_name']}".strip()

def offer_out(offer: dict) -> Offer:  # REST list layout
    vehicle = offer["vehicle"]  # vehicle row
    return Offer(
        id=offer["id"],  # id
        driver_info=DriverInfo(id=offer["driver"]["id"], name=driver_name(offer), phone=offer["driver"]["phone_number"]),
        vehicle_info=VehicleInfo(**vehicle) if vehicle else None,  # vehicle
        estimated_price=offer["estimated_price"],  # bid
        driver_earnings=offer["driver_earnings"],  # provider share
        platform_commission=offer["platform_commission"],  # platform share
        pricing_breakdown={"total": money(offer["estimated_price"])},  # pass-through
        status=offer["status"],  # status
        created_at=offer["created_at"],  # created
    )

def offer_push(offer: dict) -> dict:  # push layout: split names, string price
    vehicle = offer["vehicle"]  # vehicle row
    return {
        "id": offer["id"],  # id
        "driver": dict(offer["driver"]),  # id, first_name, last_name, phone_number
        "vehicle": {k: vehicle[k] for k in ("id", "brand", "model", "plate_number")} if vehicle else None,  # vehicle
        "estimated_price": money(offer["estimated_price"]),  # numeric string
        "status": offer["status"].value,  # status
        "created_at": offer["created_at"],  # created
    }

# -------------------- Pricing --------------------

BASE_PRICES = {  # TRY, before distance
    ServiceType.TOW_TRUCK: 1500.0,
    ServiceType.CRANE: 3000.0,
    ServiceType.ROAD_ASSISTANCE: 750.0,
    ServiceType.HOME_TO_HOME_MOVING: 5000.0,
    ServiceType.CITY_TO_CITY: 4000.0,
}
PRICE_PER_KM = 25.0  # TRY per km
COMMISSION_RATE = 0.10  # platform share
TAX_RATE = 0.20  # KDV

PRICING_QUESTIONS = [  # static questionnaire
    {"id": 1, "question_text": "Arac calisir durumda mi?", "question_type": "boolean",
     "service_types": ["towTruck"], "options": [{"id": 1, "label": "Evet"}, {"id": 2, "label": "Hayir"}]},
    {"id": 2, "question_text": "Aracin bulundugu yer", "question_type": "single_choice",
     "service_types": ["towTruck", "roadAssistance"],
     "options": [{"id": 3, "label": "Yol kenari"}, {"id": 4, "label": "Otopark"}, {"id": 5, "label": "Kapali otopark"}]},
    {"id": 3, "question_text": "Ek hizmetler", "question_type": "multi_choice",
     "service_types": ["homeToHomeMoving", "cityToCity"],
     "options": [{"id": 6, "label": "Paketleme"}, {"id": 7, "label": "Sigorta"}, {"id": 8, "label": "Depolama"}]},
]

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:  # great-circle distance
    r = 6371.0  # earth radius km
    p1, p2 = math.radians(lat1), math.radians(lat2)  # radians
    dp, dl = math.radians(lat2 - lat1), math.radians(lng2 - lng1)  # deltas
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2  # haversine
    return 2 * r * math.asin(math.sqrt(a))  # km

def estimate(body: PriceEstimateRequest) -> PriceEstimateResponse:
    km = body.estimated_km  # explicit distance wins
    if km is None and body.dropoff_latitude is not None and body.dropoff_longitude is not None:
        km = haversine_km(body.pickup_latitude, body.pickup_longitude, body.dropoff_latitude, body.dropoff_longitude)
    if body.service_type in NEEDS_DROPOFF and km is None:  # cannot price without a destination
        return PriceEstimateResponse(service_type=body.service_type, message="dropoff location required for an estimate")
    base = BASE_PRICES[body.service_type] + (km or 0.0) * PRICE_PER_KM  # base
    commission = base * COMMISSION_RATE  # commission
    tax = (base + commission) * TAX_RATE  # tax
    total = base + commission + tax  # total
    return PriceEstimateResponse(
        service_type=body.service_type,
        estimated_price=money(total),
        message="estimate ready",
        breakdown=PriceBreakdown(base_price=money(base), commission=money(commission), tax=money(tax), total=money(total)),
    )

# -------------------- App & CORS --------------------

app = FastAPI(title="Yol Sepeti sandbox")  # app

allow_origins = ["*"] if ALLOW_ORIGINS_ENV.strip() == "*" else [  # origin list
    o.strip() for o in ALLOW_ORIGINS_ENV.split(",") if o.strip()  # parse
]

app.add_middleware(  # middleware
    CORSMiddleware,  # CORS
    allow_origins=allow_origins,  # origins
    allow_credentials=True,  # credentials
    allow_methods=["*"],  # all methods
    allow_headers=["*"],  # all headers
)

@app.exception_handler(StarletteHTTPException)  # {"error", "code"} bodies
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail  # detail
    if isinstance(detail, dict):
        body = {"error": detail.get("message") or detail.get("code"), "code": detail.get("code")}  # coded error
    else:
        body = {"error": str(detail)}  # plain error
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)  # 400 with the first problem
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()  # error list
    first = errors[0] if errors else {}  # first
    field = ".".join(str(p) for p in first.get("loc", ())[1:])  # field path
    message = first.get("msg", "invalid request")  # message
    return JSONResponse(status_code=400, content={"error": f"{field}: {message}" if field else message, "code": "VALIDATION_ERROR"})

# -------------------- Health --------------------

@app.get("/")  # health
def read_root():
    return {"message": "Yol Sepeti sandbox is running!"}

# -------------------- Auth --------------------

@app.post(f"{INSURANCE_PREFIX}/login/", response_model=LoginResponse)  # agency login
async def login(body: LoginRequest):
    agency = crud.get_agency_by_email(store, body.email)  # row
    if not agency or not crud.verify_password(body.password, agency["password_hash"]):  # wrong
        raise api_error(401, "INVALID_CREDENTIALS", "invalid email or password")  # 401
    logger.info(f"agency login id={agency['id']}")  # log
    return LoginResponse(
        company=CompanyInfo(id=agency["id"], name=agency["name"], contact_person=agency["contact_person"], contact_email=agency["email"]),
        tokens=issue_tokens(agency["id"]),  # tokens
        message="login successful",
    )

@app.post(f"{INSURANCE_PREFIX}/token/refresh/", response_model=TokenRefreshResponse)  # rotate tokens
async def refresh_tokens(body: TokenRefreshRequest):
    raw = (body.refresh_token or "").strip()  # refresh token
    if not raw:
        raise api_error(400, "REFRESH_REQUIRED", "refresh_token required")  # 400
    row = crud.get_refresh_token(store, raw)  # row
    if not row:
        raise api_error(401, "REFRESH_INVALID", "invalid refresh token")  # 401
    if row["revoked"]:
        raise api_error(401, "REFRESH_REVOKED", "refresh token revoked")  # 401
    if row["expires_at"] <= crud.now_utc():
        raise api_error(401, "REFRESH_EXPIRED", "refresh token expired")  # 401
    if row["agency_id"] not in store.agencies:
        raise api_error(401, "AGENCY_NOT_FOUND", "agency not found")  # 401
    crud.revoke_refresh_token(store, raw)  # rotation: single use
    return TokenRefreshResponse(tokens=issue_tokens(row["agency_id"]), message="tokens refreshed")

@app.get(f"{INSURANCE_PREFIX}/me/")  # profile
async def me(request: Request):
    agency = get_auth_agency(request)  # auth
    rows = [r for r in store.requests.values() if r["agency_id"] == agency["id"]]  # own requests
    return {
        "company": {"id": agency["id"], "name": agency["name"], "contact_person": agency["contact_person"],
                    "contact_email": agency["email"], "created_at": agency["created_at"]},
        "api": {"prefix": INSURANCE_PREFIX},
        "status": {"is_active": True},
        "statistics": {
            "total_requests": len(rows),
            "active_requests": sum(1 for r in rows if r["status"] not in TERMINAL_STATUSES),
            "completed_requests": sum(1 for r in rows if r["status"] == RequestStatus.COMPLETED),
        },
    }

# -------------------- Requests --------------------

@app.post(f"{INSURANCE_PREFIX}/requests/create/", response_model=RequestCreateResponse, status_code=201)  # new request
async def create_request(body: RequestCreate, request: Request):
    agency = get_auth_agency(request)  # auth
    row = crud.create_request(store, agency["id"], body)  # insert
    logger.info(f"request created id={row['id']} type={row['service_type'].value} status={row['status'].value}")  # log
    return RequestCreateResponse(
        request_id=row["id"],
        status=row["status"],
        tracking_token=row["tracking_token"],
        tracking_url=row["tracking_url"],
        created_at=row["created_at"],
    )

@app.get(f"{INSURANCE_PREFIX}/requests/", response_model=RequestListResponse)  # list
async def list_requests(request: Request, status: Optional[str] = None, page: int = 1, page_size: int = 20):
    agency = get_auth_agency(request)  # auth
    page = max(page, 1)  # clamp
    page_size = min(max(page_size, 1), 100)  # clamp
    count, rows = crud.list_requests(store, agency["id"], status, page, page_size)  # page
    results = [
        RequestSummary(request_id=r["id"], status=r["status"], service_type=r["service_type"],
                       insured_name=r["insured_name"], policy_number=r["policy_number"], created_at=r["created_at"])
        for r in rows
    ]
    return RequestListResponse(count=count, page=page, page_size=page_size, results=results)

@app.get(f"{INSURANCE_PREFIX}/requests/{{request_id}}/", response_model=RequestDetail)  # detail
async def get_request(request_id: int, request: Request):
    agency = get_auth_agency(request)  # auth
    return request_detail(owned_request(request_id, agency))

@app.post(f"{INSURANCE_PREFIX}/requests/{{request_id}}/cancel/", response_model=CancelResponse)  # cancel
async def cancel_request(request_id: int, request: Request):
    agency = get_auth_agency(request)  # auth
    async with store.lock:  # against a concurrent accept
        row = owned_request(request_id, agency)  # row
        if row["status"] in TERMINAL_STATUSES:  # too late
            raise api_error(409, "CANNOT_CANCEL", "request cannot be cancelled at this stage")  # 409
        crud.set_status(row, RequestStatus.CANCELLED)  # cancel
        crud.reject_pending_offers(store, row["id"])  # close bids
    logger.info(f"request cancelled id={row['id']}")  # log
    await notify_request(row, {"type": "request_cancelled"})  # push
    return CancelResponse(request_id=row["id"], status=row["status"], message="request cancelled")

@app.post(f"{INSURANCE_PREFIX}/requests/{{request_id}}/resend-sms/", response_model=PaymentLinkResponse)  # payment link
async def create_payment_link(request_id: int, body: PaymentLinkRequest, request: Request):
    agency = get_auth_agency(request)  # auth
    row = owned_request(request_id, agency)  # row
    if row["status"] != RequestStatus.AWAITING_PAYMENT:  # only after acceptance
        raise api_error(409, "PAYMENT_NOT_AVAILABLE", "payment link is only available while awaiting payment")  # 409
    url = f"{PAYMENT_LINK_BASE}/{row['tracking_token']}"  # link
    sent = await send_sms(row["insured_phone"], f"Odeme tutari {money(body.price)} TL. Odeme linkiniz: {url}", "payment")
    return PaymentLinkResponse(message="payment link sent" if sent else "payment link could not be sent",
                               payment_url=url, sms_sent=sent)

@app.get(f"{INSURANCE_PREFIX}/requests/{{request_id}}/invoice/")  # invoice
async def get_invoice(request_id: int, request: Request):
    agency = get_auth_agency(request)  # auth
    row = owned_request(request_id, agency)  # row
    if row["status"] != RequestStatus.COMPLETED or row["price"] is None:  # not billable yet
        raise api_error(409, "INVOICE_NOT_READY", "invoice is available once the request is completed")  # 409
    price = row["price"]  # agreed
    commission = price * COMMISSION_RATE  # agency commission
    return {
        "request_id": row["id"],
        "service_type": row["service_type"].value,
        "insured_name": row["insured_name"],
        "driver": row["driver"],
        "price": money(price),
        "insurance_commission": money(commission),
        "tax": money(price * TAX_RATE),
        "total": money(price),
        "currency": "TRY",
        "completed_at": row["completed_at"],
    }

# -------------------- Pricing --------------------

@app.post(f"{INSURANCE_PREFIX}/pricing/estimate/", response_model=PriceEstimateResponse)  # estimate
async def estimate_price(body: PriceEstimateRequest, request: Request):
    get_auth_agency(request)  # auth
    return estimate(body)

@app.get("/pricing/questions/", response_model=PricingQuestionsResponse)  # public questionnaire
def pricing_questions():
    return {"questions": PRICING_QUESTIONS}

# -------------------- Offers (public, token-scoped) --------------------

@app.get("/requests/location/{tracking_token}/offers/", response_model=OffersResponse)  # live offers
async def list_offers(tracking_token: str):
    row = tracked_request(tracking_token)  # row
    offers = [offer_out(o) for o in crud.offers_for(store, row["id"]) if o["status"] == OfferStatus.PENDING]  # open bids
    return OffersResponse(request_id=row["id"], request_status=row["status"], offers_count=len(offers), offers=offers)

@app.post("/requests/location/{tracking_token}/accept-offer/{offer_id}/", response_model=AcceptOfferResponse)  # accept
async def accept_offer(tracking_token: str, offer_id: int):
    async with store.lock:  # first accept wins
        row = tracked_request(tracking_token)  # row
        offer = store.offers.get(offer_id)  # offer
        if offer is None or offer["request_id"] != row["id"]:
            raise api_error(404, "OFFER_NOT_FOUND", "offer not found")  # 404
        if row["status"] not in OFFER_COLLECTION_STATUSES:  # someone was faster, or request closed
            raise api_error(409, "OFFER_ALREADY_ACCEPTED", "offer already accepted")  # 409
        if offer["status"] != OfferStatus.PENDING:  # withdrawn / rejected
            raise api_error(409, "OFFER_NOT_AVAILABLE", "offer is no longer available")  # 409
        offer["status"] = OfferStatus.ACCEPTED  # accept
        crud.reject_pending_offers(store, row["id"], keep=offer_id)  # everyone else loses
        row["driver"] = {"name": driver_name(offer), "phone": offer["driver"]["phone_number"]}  # contact
        row["price"] = offer["estimated_price"]  # agreed price
        crud.set_status(row, RequestStatus.AWAITING_PAYMENT)  # next step
    logger.info(f"offer accepted request={row['id']} offer={offer_id}")  # log
    await notify_request(row, {"type": "offer_accepted", "offer_id": offer_id})  # push
    return AcceptOfferResponse(message="offer accepted", request_id=row["id"], status=row["status"],
                               driver_name=row["driver"]["name"], driver_phone=row["driver"]["phone"])

# -------------------- Location share --------------------

@app.post(f"{INSURANCE_PREFIX}/location-share/init/", response_model=LocationShareInitResponse)  # new token
async def init_location_share(body: LocationShareInitRequest, request: Request):
    agency = get_auth_agency(request)  # auth
    share = crud.create_share(store, agency["id"], body.insured_phone)  # insert
    logger.info(f"location share created id={share['id']}")  # log
    return LocationShareInitResponse(token=share["token"], ws_url=f"ws/location-share/{share['id']}/")

@app.post(f"{INSURANCE_PREFIX}/location-share/send-sms/", response_model=SendLocationSmsResponse)  # (re)send link
async def send_location_sms(body: SendLocationSmsRequest, request: Request):
    agency = get_auth_agency(request)  # auth
    share = crud.get_share(store, body.token)  # row
    if share is None or share["agency_id"] != agency["id"]:
        raise api_error(404, "SHARE_NOT_FOUND", "location share not found")  # 404
    sent = await send_sms(share["phone"], f"Konumunuzu paylasmak icin tiklayin: {customer_link(share['token'])}", "location")
    return SendLocationSmsResponse(success=sent, message="sms sent" if sent else "sms could not be sent")

@app.post(f"{INSURANCE_PREFIX}/location-share/{{token}}/submit/", response_model=LocationSubmitResponse)  # customer fix
async def submit_location(token: str, body: LocationSubmit):
    share = crud.get_share(store, token)  # row
    if share is None:
        raise api_error(404, "SHARE_NOT_FOUND", "invalid link")  # 404
    if share["used"]:  # only the first fix counts
        raise api_error(409, "LOCATION_ALREADY_SHARED", "location already shared")  # 409
    share.update(used=True, latitude=body.latitude, longitude=body.longitude,
                 address=f"{body.latitude:.6f}, {body.longitude:.6f}")  # store fix
    row = store.requests.get(share["request_id"]) if share["request_id"] else None  # linked request
    if row is not None:
        crud.apply_shared_location(row, share)  # pickup filled
    await location_hub.broadcast(str(share["id"]), location_received(share))  # push
    return LocationSubmitResponse(success=True, message="location received")

@app.get(f"{INSURANCE_PREFIX}/location-share/{{token}}/status/", response_model=LocationShareStatus)  # polling
async def location_status(token: str):
    share = crud.get_share(store, token)  # row
    if share is None:
        raise api_error(404, "SHARE_NOT_FOUND", "invalid link")  # 404
    return LocationShareStatus(is_used=share["used"], latitude=share["latitude"], longitude=share["longitude"],
                               address=share["address"] or None)

def location_received(share: dict) -> dict:  # push envelope, coordinates as strings
    return {"type": "location_received", "latitude": f"{share['latitude']:.6f}",
            "longitude": f"{share['longitude']:.6f}", "address": share["address"]}

# -------------------- Live channels --------------------

@app.websocket("/ws/requests/{tracking_token}/")  # request updates
async def request_updates(websocket: WebSocket, tracking_token: str):
    if crud.get_request_by_token(store, tracking_token) is None:  # unknown token
        await websocket.close(code=4404)
        return
    await websocket.accept()  # open
    request_hub.add(tracking_token, websocket)  # subscribe
    try:
        await websocket.send_json({"type": "connection_established"})  # hello
        while True:
            await websocket.receive_text()  # client frames ignored
    except WebSocketDisconnect:
        pass
    finally:
        request_hub.discard(tracking_token, websocket)  # unsubscribe

@app.websocket("/ws/location-share/{share_id}/")  # one share session, ?auth=<access token>
async def location_updates(websocket: WebSocket, share_id: int, auth: str = ""):
    agency = agency_from_token(auth)  # auth
    share = crud.get_share_by_id(store, share_id)  # row
    if agency is None or share is None or share["agency_id"] != agency["id"]:
        await websocket.close(code=4401)
        return
    await websocket.accept()  # open
    key = str(share_id)  # hub key
    location_hub.add(key, websocket)  # subscribe
    try:
        if share["used"]:  # submitted before we connected
            await websocket.send_json(location_received(share))
        while True:
            await websocket.receive_text()  # client frames ignored
    except WebSocketDisconnect:
        pass
    finally:
        location_hub.discard(key, websocket)  # unsubscribe

# -------------------- Sandbox controls (driver / ops side) --------------------

@app.post("/sandbox/requests/{request_id}/offers/", response_model=Offer)  # a driver bids
async def sandbox_submit_offer(request_id: int, body: SandboxOffer):
    row = store.requests.get(request_id)  # row
    if row is None:
        raise api_error(404, "REQUEST_NOT_FOUND", "request not found")  # 404
    if row["status"] not in OFFER_COLLECTION_STATUSES:
        raise api_error(409, "OFFERS_CLOSED", "request is not collecting offers")  # 409
    driver = {"first_name": body.first_name, "last_name": body.last_name, "phone_number": body.phone_number}  # driver
    vehicle = {"brand": body.brand, "model": body.model, "plate_number": body.plate_number, "vehicle_type": body.vehicle_type}
    offer = crud.add_offer(store, row["id"], driver, vehicle, body.price)  # insert
    if row["status"] == RequestStatus.PENDING:
        crud.set_status(row, RequestStatus.AWAITING_APPROVAL)  # first bid in
    await notify_request(row, {"type": "new_offer", "offer": offer_push(offer)})  # push
    return offer_out(offer)

@app.post("/sandbox/offers/{offer_id}/withdraw/", response_model=Offer)  # a driver pulls out
async def sandbox_withdraw_offer(offer_id: int):
    offer = store.offers.get(offer_id)  # row
    if offer is None:
        raise api_error(404, "OFFER_NOT_FOUND", "offer not found")  # 404
    if offer["status"] != OfferStatus.PENDING:
        raise api_error(409, "OFFER_NOT_AVAILABLE", "offer is no longer available")  # 409
    offer["status"] = OfferStatus.WITHDRAWN  # withdraw
    await notify_request(store.requests[offer["request_id"]], {"type": "offer_withdrawn", "offer_id": offer_id})  # push
    return offer_out(offer)

async def advance(request_id: int, expected: RequestStatus, target: RequestStatus, push_type: str) -> RequestDetail:
    row = store.requests.get(request_id)  # row
    if row is None:
        raise api_error(404, "REQUEST_NOT_FOUND", "request not found")  # 404
    if row["status"] != expected:
        raise api_error(409, "INVALID_TRANSITION", f"request is {row['status'].value}, expected {expected.value}")  # 409
    crud.set_status(row, target)  # move
    logger.info(f"request {request_id} {expected.value} -> {target.value}")  # log
    await notify_request(row, {"type": push_type})  # push
    return request_detail(row)

@app.post("/sandbox/requests/{request_id}/payment-completed/", response_model=RequestDetail)  # customer paid
async def sandbox_payment_completed(request_id: int):
    return await advance(request_id, RequestStatus.AWAITING_PAYMENT, RequestStatus.IN_PROGRESS, "payment_completed")

@app.post("/sandbox/requests/{request_id}/complete/", response_model=RequestDetail)  # driver finished
async def sandbox_complete(request_id: int):
    return await advance(request_id, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED, "request_completed")

@app.get("/sandbox/sms/")  # outbox
def sandbox_sms(phone: Optional[str] = None) -> List[dict]:
    return [m for m in store.sms_outbox if phone is None or m["phone"] == phone]

@app.post("/sandbox/reset/")  # fresh state
def sandbox_reset():
    store.reset()
    return {"message": "sandbox reset"}
