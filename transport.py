# FILE: transport.py  # authenticated REST client for the agency + public endpoints

from typing import Any, Dict, Optional, Tuple, Type, TypeVar  # typing

import httpx  # HTTP
from pydantic import BaseModel  # response models

from config import API_BASE_URL, HTTP_TIMEOUT, INSURANCE_PREFIX, setup_logger
from errors import ApiError, SessionExpiredError, TransportError
from schemas import (
    AcceptOfferResponse, CancelResponse, CompanyProfile, InvoiceResponse, LocationShareInitRequest,
    LocationShareInitResponse, LocationShareStatus, LocationSubmit, LocationSubmitResponse, LoginRequest,
    LoginResponse, OffersResponse, PaymentLinkRequest, PaymentLinkResponse, PriceEstimateRequest,
    PriceEstimateResponse, PricingQuestionsResponse, RequestCreate, RequestCreateResponse, RequestDetail,
    RequestListResponse, SendLocationSmsRequest, SendLocationSmsResponse, TokenPair, TokenRefreshRequest,
    TokenRefreshResponse,
)
from session import Session

logger = setup_logger("yolsepeti.transport", "HTTP")  # transport logger

M = TypeVar("M", bound=BaseModel)


def error_message(resp: httpx.Response) -> Tuple[str, Optional[str], Any]:  # server text verbatim
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or f"HTTP_{resp.status_code}"), None, None
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict):  # FastAPI-style {"detail": {"code", "message"}}
            return str(detail.get("message") or detail.get("code") or resp.status_code), detail.get("code"), body
        for key in ("error", "message"):
            if body.get(key):
                return str(body[key]), body.get("code") or body.get("errorCode"), body
        if detail:
            return str(detail), body.get("code"), body
    return f"HTTP_{resp.status_code}", None, body


class ApiClient:
    """REST operations against the backend.

    Agency endpoints live under ``INSURANCE_PREFIX`` and carry the session's
    bearer token; a 401 on one of them triggers exactly one transparent
    refresh-and-replay. Token-scoped public endpoints are sent without
    credentials and are never replayed.
    """

    def __init__(self, session: Session, base_url: str = API_BASE_URL, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = HTTP_TIMEOUT):
        self.session = session
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # -------------------- Core --------------------

    async def _send(self, method: str, path: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:  # timeouts, drops
            logger.error(f"{method} {path} failed: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e

    async def _refresher(self, refresh_token: str) -> TokenPair:  # used by Session.refresh
        resp = await self._send("POST", f"{INSURANCE_PREFIX}/token/refresh/",
                                json=TokenRefreshRequest(refresh_token=refresh_token).model_dump())
        if resp.status_code >= 400:
            message, code, payload = error_message(resp)
            raise ApiError(resp.status_code, message, code, payload)
        return TokenRefreshResponse.model_validate(resp.json()).tokens

    async def request(self, method: str, path: str, auth: bool = True, **kwargs) -> Any:
        """Send one call and return the decoded JSON body (``None`` when empty)."""
        if not auth:
            resp = await self._send(method, path, **kwargs)
        else:
            full = f"{INSURANCE_PREFIX}{path}"
            token = self.session.access_token
            if not token:  # never logged in, or torn down
                raise SessionExpiredError("access token missing")
            resp = await self._send(method, full, headers={"Authorization": f"Bearer {token}"}, **kwargs)
            if resp.status_code == 401:
                logger.info(f"{method} {full} -> 401, refreshing")
                new_token = await self.session.refresh(self._refresher, stale_access=token)
                resp = await self._send(method, full, headers={"Authorization": f"Bearer {new_token}"}, **kwargs)
                if resp.status_code == 401:  # second consecutive 401 is fatal
                    self.session.expire("401 after refresh")
                    raise SessionExpiredError("request rejected after credential refresh")
        if resp.status_code >= 400:
            message, code, payload = error_message(resp)
            logger.warning(f"{method} {path} -> HTTP_{resp.status_code}: {message}")
            raise ApiError(resp.status_code, message, code, payload)
        if not resp.content:
            return None
        return resp.json()

    async def _call(self, model: Type[M], method: str, path: str, auth: bool = True, **kwargs) -> M:
        return model.model_validate(await self.request(method, path, auth=auth, **kwargs))

    # -------------------- Auth / profile --------------------

    async def login(self, email: str, password: str) -> LoginResponse:
        data = await self.request("POST", f"{INSURANCE_PREFIX}/login/", auth=False,
                                  json=LoginRequest(email=email, password=password).model_dump())
        out = LoginResponse.model_validate(data)
        self.session.set(out.tokens)  # stored credentials created at login
        return out

    def logout(self) -> None:
        self.session.clear()

    async def refresh_tokens(self, refresh_token: str) -> TokenPair:  # explicit renewal, no session write
        return await self._refresher(refresh_token)

    async def get_profile(self) -> CompanyProfile:
        return await self._call(CompanyProfile, "GET", "/me/")

    # -------------------- Requests --------------------

    async def create_request(self, payload: RequestCreate) -> RequestCreateResponse:
        return await self._call(RequestCreateResponse, "POST", "/requests/create/", json=payload.to_payload())

    async def list_requests(self, status: Optional[str] = None, page: Optional[int] = None,
                            page_size: Optional[int] = None) -> RequestListResponse:
        params = {k: v for k, v in {"status": status, "page": page, "page_size": page_size}.items() if v is not None}
        return await self._call(RequestListResponse, "GET", "/requests/", params=params)

    async def get_request(self, request_id: int) -> RequestDetail:
        return await self._call(RequestDetail, "GET", f"/requests/{request_id}/")

    async def cancel_request(self, request_id: int) -> CancelResponse:
        return await self._call(CancelResponse, "POST", f"/requests/{request_id}/cancel/", json={})

    async def create_payment_link(self, request_id: int, price: float) -> PaymentLinkResponse:
        body = PaymentLinkRequest(price=price).model_dump()
        return await self._call(PaymentLinkResponse, "POST", f"/requests/{request_id}/resend-sms/", json=body)

    async def get_invoice(self, request_id: int) -> InvoiceResponse:
        return await self._call(InvoiceResponse, "GET", f"/requests/{request_id}/invoice/")

    # -------------------- Offers (token-scoped, public) --------------------

    async def list_offers(self, tracking_token: str) -> OffersResponse:
        return await self._call(OffersResponse, "GET", f"/requests/location/{tracking_token}/offers/", auth=False)

    async def accept_offer(self, tracking_token: str, offer_id: int) -> AcceptOfferResponse:
        path = f"/requests/location/{tracking_token}/accept-offer/{offer_id}/"
        return await self._call(AcceptOfferResponse, "POST", path, auth=False)

    # -------------------- Location share --------------------

    async def init_location_share(self, insured_phone: str) -> LocationShareInitResponse:
        body = LocationShareInitRequest(insured_phone=insured_phone).model_dump()
        return await self._call(LocationShareInitResponse, "POST", "/location-share/init/", json=body)

    async def send_location_sms(self, token: str) -> SendLocationSmsResponse:
        body = SendLocationSmsRequest(token=token).model_dump()
        return await self._call(SendLocationSmsResponse, "POST", "/location-share/send-sms/", json=body)

    async def submit_shared_location(self, token: str, latitude: float, longitude: float) -> LocationSubmitResponse:
        body = LocationSubmit(latitude=latitude, longitude=longitude).model_dump()
        path = f"{INSURANCE_PREFIX}/location-share/{token}/submit/"
        return await self._call(LocationSubmitResponse, "POST", path, auth=False, json=body)

    async def location_share_status(self, token: str) -> LocationShareStatus:
        path = f"{INSURANCE_PREFIX}/location-share/{token}/status/"
        return await self._call(LocationShareStatus, "GET", path, auth=False)

    # -------------------- Pricing --------------------

    async def estimate_price(self, payload: PriceEstimateRequest) -> PriceEstimateResponse:
        body = payload.model_dump(mode="json", exclude_none=True)
        return await self._call(PriceEstimateResponse, "POST", "/pricing/estimate/", json=body)

    async def get_pricing_questions(self) -> PricingQuestionsResponse:
        return await self._call(PricingQuestionsResponse, "GET", "/pricing/questions/", auth=False)
