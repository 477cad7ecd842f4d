# FILE: schemas.py  # wire shapes for REST bodies and push envelopes

import json  # JSON
import re  # Regex
from enum import Enum  # enums
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union  # typing

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator


# -------------------- Enums --------------------

class ServiceType(str, Enum):  # five fixed service kinds
    TOW_TRUCK = "towTruck"
    CRANE = "crane"
    ROAD_ASSISTANCE = "roadAssistance"
    HOME_TO_HOME_MOVING = "homeToHomeMoving"
    CITY_TO_CITY = "cityToCity"


NEEDS_DROPOFF = {ServiceType.TOW_TRUCK, ServiceType.HOME_TO_HOME_MOVING, ServiceType.CITY_TO_CITY}  # dropoff required


class RequestStatus(str, Enum):  # server-authoritative lifecycle
    PENDING_LOCATION = "pending_location"
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_PAYMENT = "awaiting_payment"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


STATUS_ORDER = [  # forward order, cancelled sits outside
    RequestStatus.PENDING_LOCATION,
    RequestStatus.PENDING,
    RequestStatus.AWAITING_APPROVAL,
    RequestStatus.AWAITING_PAYMENT,
    RequestStatus.IN_PROGRESS,
    RequestStatus.COMPLETED,
]
TERMINAL_STATUSES = {RequestStatus.COMPLETED, RequestStatus.CANCELLED}
OFFER_COLLECTION_STATUSES = {RequestStatus.PENDING, RequestStatus.AWAITING_APPROVAL}
ACTIVE_STATUSES = {RequestStatus.PENDING, RequestStatus.AWAITING_APPROVAL, RequestStatus.AWAITING_PAYMENT}  # offers worth listing
ASSIGNED_STATUSES = {RequestStatus.AWAITING_PAYMENT, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED}  # driver+pricing set
OFFER_CLOSED_STATUSES = {  # offer-collection phase is over for good
    RequestStatus.AWAITING_PAYMENT, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED, RequestStatus.CANCELLED,
}


def is_regression(current: Optional[RequestStatus], new: RequestStatus) -> bool:  # statuses only move forward
    if current is None or current == new:
        return False
    if current in TERMINAL_STATUSES:
        return True
    if new == RequestStatus.CANCELLED:
        return False
    return STATUS_ORDER.index(new) < STATUS_ORDER.index(current)


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


def extract_tracking_token(tracking_url: str) -> str:  # last path segment of the tracking URL
    parts = (tracking_url or "").rstrip("/").split("/")
    return parts[-1]


# -------------------- Service details (tagged by service_type) --------------------

class QuestionAnswer(BaseModel):  # dynamic pricing questionnaire answer
    question_id: int
    option_ids: List[int]


class _DetailsBase(BaseModel):
    question_answers: List[QuestionAnswer] = Field(default_factory=list)


class TowTruckDetails(_DetailsBase):
    kind: Literal["towTruck"] = "towTruck"
    vehicle_type: str = "sedan"


class CraneDetails(_DetailsBase):
    kind: Literal["crane"] = "crane"
    load_type: Optional[str] = None
    load_weight: Optional[float] = None
    lift_height: Optional[float] = None
    floor: Optional[int] = None
    has_obstacles: bool = False
    obstacle_note: Optional[str] = None
    duration: Optional[int] = Field(None, ge=1, le=12, description="hours")


class RoadAssistanceDetails(_DetailsBase):
    kind: Literal["roadAssistance"] = "roadAssistance"
    vehicle_type: Optional[str] = "sedan"
    problem_types: List[Literal["tire_change", "battery_boost", "fuel_delivery", "lockout", "minor_repair"]] = Field(default_factory=list)
    problem_description: Optional[str] = None


TimeSlot = Literal["morning", "afternoon", "evening"]


class HomeMovingDetails(_DetailsBase):
    kind: Literal["homeToHomeMoving"] = "homeToHomeMoving"
    home_type: Optional[str] = None
    floor_from: Optional[int] = None
    floor_to: Optional[int] = None
    has_elevator_from: bool = False
    has_elevator_to: bool = False
    has_large_items: bool = False
    has_fragile_items: bool = False
    needs_packing: bool = False
    needs_disassembly: bool = False
    preferred_date: Optional[str] = None
    preferred_time_slot: Optional[TimeSlot] = None


class CityToCityDetails(_DetailsBase):
    kind: Literal["cityToCity"] = "cityToCity"
    load_type: Optional[str] = None
    load_weight: Optional[float] = None
    width: Optional[float] = None
    length: Optional[float] = None
    height: Optional[float] = None
    preferred_date: Optional[str] = None
    preferred_time_slot: Optional[TimeSlot] = None


ServiceDetails = Annotated[
    Union[TowTruckDetails, CraneDetails, RoadAssistanceDetails, HomeMovingDetails, CityToCityDetails],
    Field(discriminator="kind"),
]

SERVICE_DETAILS_MODELS: Dict[ServiceType, Type[_DetailsBase]] = {
    ServiceType.TOW_TRUCK: TowTruckDetails,
    ServiceType.CRANE: CraneDetails,
    ServiceType.ROAD_ASSISTANCE: RoadAssistanceDetails,
    ServiceType.HOME_TO_HOME_MOVING: HomeMovingDetails,
    ServiceType.CITY_TO_CITY: CityToCityDetails,
}


def missing_details_models(models: Dict[ServiceType, Any]) -> List[ServiceType]:  # kinds with no details shape
    return [kind for kind in ServiceType if kind not in models]


if missing_details_models(SERVICE_DETAILS_MODELS):
    raise RuntimeError(f"no details model for {[k.value for k in missing_details_models(SERVICE_DETAILS_MODELS)]}")


def details_to_payload(details: Optional[_DetailsBase]) -> Dict[str, Any]:  # wire form: no tag, no empties
    if details is None:
        return {}
    out = details.model_dump(exclude={"kind"}, exclude_none=True)
    if not out.get("question_answers"):
        out.pop("question_answers", None)  # only sent when answered
    return out


# -------------------- Requests --------------------

_NAME_RE = re.compile(r"[^a-zA-ZğüşıöçĞÜŞİÖÇ\s]")
_PLATE_RE = re.compile(r"[^A-Z0-9\s]")


class RequestCreate(BaseModel):  # agency form -> POST /requests/create/
    service_type: ServiceType
    insured_name: str
    insured_phone: str
    insured_plate: Optional[str] = None
    policy_number: Optional[str] = None
    insurance_name: Optional[str] = None
    external_reference: Optional[str] = None
    location_method: Literal["manual", "sms"] = "manual"
    location_share_token: Optional[str] = None
    pickup_address: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    dropoff_address: Optional[str] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    estimated_km: Optional[float] = None
    service_details: Optional[ServiceDetails] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_details(cls, data: Any) -> Any:  # service_details is tagged by the parent's service_type
        if isinstance(data, dict) and isinstance(data.get("service_details"), dict):
            details = dict(data["service_details"])
            st = data.get("service_type")
            details.setdefault("kind", st.value if isinstance(st, ServiceType) else st)
            data = {**data, "service_details": details}
        return data

    @field_validator("insured_name", "insurance_name")
    @classmethod
    def _letters_only(cls, v: Optional[str]) -> Optional[str]:
        return _NAME_RE.sub("", v).strip() if v is not None else v

    @field_validator("insured_phone")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        return "".join(ch for ch in v if ch.isdigit())

    @field_validator("insured_plate")
    @classmethod
    def _plate(cls, v: Optional[str]) -> Optional[str]:
        return _PLATE_RE.sub("", v.upper()).strip() if v else None

    @field_validator("pickup_latitude", "pickup_longitude", "dropoff_latitude", "dropoff_longitude")
    @classmethod
    def _round_coord(cls, v: Optional[float]) -> Optional[float]:
        return round(v, 6) if v is not None else v

    @model_validator(mode="after")
    def _check(self) -> "RequestCreate":
        if not self.insured_name or not self.insured_phone:
            raise ValueError("insured_name and insured_phone are required")
        if self.location_method == "manual":
            if not self.pickup_address or not self.pickup_latitude or not self.pickup_longitude:
                raise ValueError("pickup address and coordinates are required")
        if self.service_details is not None and self.service_details.kind != self.service_type.value:
            raise ValueError("service_details does not match service_type")
        if self.service_type not in NEEDS_DROPOFF:  # dropoff only kept where it means something
            self.dropoff_address = None
            self.dropoff_latitude = None
            self.dropoff_longitude = None
            self.estimated_km = None
        return self

    @property
    def needs_dropoff(self) -> bool:
        return self.service_type in NEEDS_DROPOFF

    def to_payload(self) -> Dict[str, Any]:  # JSON body
        out = self.model_dump(mode="json", exclude={"service_details"}, exclude_none=True)
        if self.location_method == "manual":
            out.pop("location_share_token", None)
        if not out.get("estimated_km"):
            out.pop("estimated_km", None)
        out["service_details"] = details_to_payload(self.service_details)
        return out


class RequestCreateResponse(BaseModel):
    request_id: int
    status: RequestStatus
    tracking_token: str
    tracking_url: str
    created_at: str


class RequestSummary(BaseModel):
    request_id: int
    status: RequestStatus
    service_type: ServiceType
    insured_name: str
    policy_number: Optional[str] = None
    created_at: str


class RequestListResponse(BaseModel):
    count: int
    page: int
    page_size: int
    results: List[RequestSummary]


class DriverContact(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class Pricing(BaseModel):
    estimated_price: Optional[str] = None
    currency: str = "TRY"


class Timeline(BaseModel):
    created_at: str
    accepted_at: Optional[str] = None
    completed_at: Optional[str] = None


class RequestDetail(BaseModel):  # snapshot
    request_id: int
    status: RequestStatus
    service_type: ServiceType
    insured_name: str
    insured_phone: str
    insured_plate: Optional[str] = None
    policy_number: Optional[str] = None
    tracking_url: str = ""
    pickup_address: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    driver: Optional[DriverContact] = None
    pricing: Optional[Pricing] = None
    timeline: Timeline

    @property
    def tracking_token(self) -> Optional[str]:
        return extract_tracking_token(self.tracking_url) if self.tracking_url else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CancelResponse(BaseModel):
    request_id: int
    status: RequestStatus
    message: str


# -------------------- Offers --------------------

class DriverInfo(BaseModel):
    id: int
    name: str
    phone: str
    average_rating: Optional[float] = None
    total_ratings: int = 0


class VehicleInfo(BaseModel):
    id: int
    brand: str
    model: str
    plate_number: str
    vehicle_type: str = ""


class Offer(BaseModel):  # one provider's priced bid
    id: int
    driver_info: DriverInfo
    vehicle_info: Optional[VehicleInfo] = None
    estimated_price: float
    driver_earnings: float = 0
    platform_commission: float = 0
    pricing_breakdown: Dict[str, Any] = Field(default_factory=dict)  # pass-through
    offer_details: Dict[str, Any] = Field(default_factory=dict)  # pass-through
    status: OfferStatus = OfferStatus.PENDING
    created_at: str = ""


class OffersResponse(BaseModel):
    request_id: int
    request_status: RequestStatus
    offers_count: int
    offers: List[Offer] = Field(default_factory=list)


class AcceptOfferResponse(BaseModel):
    message: str
    request_id: int
    status: RequestStatus
    driver_name: str
    driver_phone: str


class PaymentLinkRequest(BaseModel):
    price: float = Field(..., gt=0)


class PaymentLinkResponse(BaseModel):
    message: str
    payment_url: Optional[str] = None
    sms_sent: bool = True


# -------------------- Location share --------------------

class LocationShareInitRequest(BaseModel):
    insured_phone: str

    @field_validator("insured_phone")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        digits = "".join(ch for ch in v if ch.isdigit())
        if not digits:
            raise ValueError("insured_phone required")
        return digits


class LocationShareInitResponse(BaseModel):
    token: str
    ws_url: str  # path relative to WS_BASE_URL


class SendLocationSmsRequest(BaseModel):
    token: str


class SendLocationSmsResponse(BaseModel):
    success: bool
    message: str


class LocationSubmit(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class LocationSubmitResponse(BaseModel):
    success: bool
    message: str


class LocationShareStatus(BaseModel):  # polling fallback
    is_used: bool
    latitude: Optional[Union[str, float]] = None
    longitude: Optional[Union[str, float]] = None
    address: Optional[str] = None


class LocationFix(BaseModel):  # the single fix a handshake resolves to
    latitude: float
    longitude: float
    address: str = ""


# -------------------- Auth / profile --------------------

class LoginRequest(BaseModel):
    email: str
    password: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int = 0
    token_type: str = "Bearer"


class TokenRefreshRequest(BaseModel):
    refresh_token: str


class TokenRefreshResponse(BaseModel):
    tokens: TokenPair
    message: str = ""


class CompanyInfo(BaseModel):
    id: int
    name: str
    contact_person: str = ""
    contact_email: str = ""


class LoginResponse(BaseModel):
    company: CompanyInfo
    tokens: TokenPair
    message: str = ""


class CompanyProfile(BaseModel):  # GET /me/, loosely typed sections
    model_config = ConfigDict(extra="allow")

    company: Dict[str, Any]
    api: Dict[str, Any] = Field(default_factory=dict)
    status: Dict[str, Any] = Field(default_factory=dict)
    statistics: Dict[str, Any] = Field(default_factory=dict)


# -------------------- Pricing --------------------

class PriceEstimateRequest(BaseModel):
    service_type: ServiceType
    vehicle_type: Optional[str] = None
    pickup_latitude: float
    pickup_longitude: float
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    estimated_km: Optional[float] = None


class PriceBreakdown(BaseModel):
    base_price: str
    commission: str
    tax: str
    total: str


class PriceEstimateResponse(BaseModel):
    service_type: ServiceType
    estimated_price: Optional[str] = None
    currency: str = "TRY"
    message: str = ""
    breakdown: Optional[PriceBreakdown] = None


class PricingOption(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    label: str


class PricingQuestion(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    question_text: str
    question_type: Literal["single_choice", "multi_choice", "boolean"]
    options: List[PricingOption] = Field(default_factory=list)


class PricingQuestionsResponse(BaseModel):
    questions: List[PricingQuestion] = Field(default_factory=list)


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    request_id: int


# -------------------- Push envelopes --------------------

class WsDriver(BaseModel):  # push layout differs from the REST list layout
    id: int
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""


class WsVehicle(BaseModel):
    id: int
    brand: str = ""
    model: str = ""
    plate_number: str = ""


class WsOffer(BaseModel):
    id: int
    driver: WsDriver
    vehicle: Optional[WsVehicle] = None
    estimated_price: Union[str, float]  # numeric string on the wire
    status: str = "pending"
    created_at: str = ""


class ConnectionEstablished(BaseModel):
    type: Literal["connection_established"]


class NewOfferMessage(BaseModel):
    type: Literal["new_offer"]
    offer: WsOffer


class OfferWithdrawnMessage(BaseModel):
    type: Literal["offer_withdrawn"]
    offer_id: int


class StatusChangedMessage(BaseModel):
    type: Literal["offer_accepted", "request_completed", "request_cancelled", "payment_completed"]


class LocationReceivedMessage(BaseModel):
    type: Literal["location_received"]
    latitude: Union[str, float]
    longitude: Union[str, float]
    address: str = ""


RequestChannelMessage = Annotated[
    Union[ConnectionEstablished, NewOfferMessage, OfferWithdrawnMessage, StatusChangedMessage],
    Field(discriminator="type"),
]
_request_message_adapter = TypeAdapter(RequestChannelMessage)


def parse_envelope(raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:  # JSON object with a str "type", else None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        return None
    return data


def parse_request_message(envelope: Dict[str, Any]):  # typed request-channel message or None
    try:
        return _request_message_adapter.validate_python(envelope)
    except ValidationError:
        return None


def parse_location_message(envelope: Dict[str, Any]) -> Optional[LocationReceivedMessage]:
    try:
        return LocationReceivedMessage.model_validate(envelope)
    except ValidationError:
        return None
