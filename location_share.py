# FILE: location_share.py  # one-time customer location handshake, agency side + customer side

import asyncio  # event loop
import inspect  # awaitable check
from enum import Enum  # enums
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union  # typing

from channel import build_location_share_url, location_share_channel
from config import GEOLOCATION_TIMEOUT, LOCATION_SHARE_LINK_BASE, setup_logger
from errors import ClientError, CommandNotAllowed, GeolocationError
from lifecycle import ActionState
from schemas import LocationFix, LocationShareInitRequest, LocationSubmitResponse, parse_location_message
from session import Session
from transport import ApiClient

logger = setup_logger("yolsepeti.location", "LOCATION")  # location logger


def customer_link(token: str) -> str:  # page the SMS points the customer to
    return f"{LOCATION_SHARE_LINK_BASE}/{token}"


def to_fix(latitude: Any, longitude: Any, address: Optional[str] = "") -> Optional[LocationFix]:
    try:
        return LocationFix(latitude=float(latitude), longitude=float(longitude), address=address or "")
    except (TypeError, ValueError):  # numeric strings only
        return None


def fix_from_envelope(envelope: Dict[str, Any]) -> Optional[LocationFix]:
    message = parse_location_message(envelope)
    if message is None:
        return None
    return to_fix(message.latitude, message.longitude, message.address)


# -------------------- Agency side --------------------

class HandshakeStatus(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    RECEIVED = "received"


class LocationShareHandshake:
    """Ask the customer for their position and wait for exactly one fix.

    ``request`` issues a share token (first call only), opens the dedicated
    push channel and sends the SMS; later calls just re-send the SMS with the
    same token. The handshake resolves once, either from the
    ``location_received`` push or from ``poll_status``; after that the
    channel stays shut for this token. There is no timeout: the operator
    decides when to stop waiting.
    """

    def __init__(self, api: ApiClient, session: Optional[Session] = None,
                 on_location: Optional[Callable[[LocationFix], Union[None, Awaitable[None]]]] = None,
                 connect=None, sleep=None):
        self.api = api
        self.session = session or api.session
        self.on_location = on_location
        self.status = HandshakeStatus.IDLE
        self.token: Optional[str] = None
        self.ws_url: Optional[str] = None
        self.fix: Optional[LocationFix] = None
        self.sms_sent = 0  # SMS sends that succeeded
        self.action = ActionState()
        self._received = asyncio.Event()
        self.channel = location_share_channel(self._handle_push, is_terminal=lambda env: fix_from_envelope(env) is not None,
                                              connect=connect, sleep=sleep)

    @property
    def link(self) -> Optional[str]:
        return customer_link(self.token) if self.token else None

    async def request(self, phone: str) -> str:
        body = LocationShareInitRequest(insured_phone=phone)  # empty phone fails here, before any call
        self.action.begin()
        try:
            if self.token is None:
                resp = await self.api.init_location_share(body.insured_phone)
                self.token, self.ws_url = resp.token, resp.ws_url
                self.status = HandshakeStatus.WAITING
                logger.info(f"location share token issued ws={resp.ws_url}")
                await self.channel.set_key(build_location_share_url(resp.ws_url, self.session.access_token))
            await self.api.send_location_sms(self.token)
        except ClientError as e:
            self.action.fail(e)
            raise
        finally:
            self.action.loading = False
        self.sms_sent += 1
        return self.token

    async def _handle_push(self, envelope: Dict[str, Any]) -> None:
        fix = fix_from_envelope(envelope)
        if fix is None:
            logger.debug(f"location share dropped push type={envelope.get('type')}")
            return
        await self._deliver(fix)

    async def _deliver(self, fix: LocationFix) -> None:  # exactly once per token
        if self.status == HandshakeStatus.RECEIVED:
            return
        self.status = HandshakeStatus.RECEIVED
        self.fix = fix
        self._received.set()
        logger.info(f"location received lat={fix.latitude} lng={fix.longitude}")
        await self.channel.close()  # one fix per token, the channel is done
        if self.on_location is not None:
            try:
                result = self.on_location(fix)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"location callback failed: {e}")

    async def poll_status(self) -> Optional[LocationFix]:
        """Fallback when the push never arrives: ask the server directly."""
        if self.token is None or self.status == HandshakeStatus.RECEIVED:
            return self.fix
        status = await self.api.location_share_status(self.token)
        if status.is_used and status.latitude is not None and status.longitude is not None:
            fix = to_fix(status.latitude, status.longitude, status.address)
            if fix is not None:
                await self._deliver(fix)
        return self.fix

    async def wait_for_location(self) -> LocationFix:
        await self._received.wait()
        return self.fix

    async def close(self) -> None:
        await self.channel.close()


# -------------------- Customer side --------------------

class ShareStatus(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    ERROR = "error"


PERMISSION_DENIED = "permission_denied"
POSITION_UNAVAILABLE = "position_unavailable"
TIMEOUT = "timeout"
UNSUPPORTED = "unsupported"
INVALID_LINK = "invalid_link"
SUBMIT_FAILED = "submit_failed"
OTHER = "other"

MESSAGES = {
    PERMISSION_DENIED: "Konum izni reddedildi. Lutfen tarayici ayarlarindan konum iznini verin.",
    POSITION_UNAVAILABLE: "Konum bilgisi alinamadi.",
    TIMEOUT: "Konum istegi zaman asimina ugradi.",
    UNSUPPORTED: "Tarayiciniz konum desteklemiyor",
    INVALID_LINK: "Gecersiz link",
    SUBMIT_FAILED: "Konum gonderilemedi. Lutfen tekrar deneyin.",
    OTHER: "Konum alinirken hata olustu.",
}

Locator = Callable[[], Awaitable[Tuple[float, float]]]  # -> (latitude, longitude)


def geolocation_error(reason: str) -> GeolocationError:
    return GeolocationError(reason, MESSAGES.get(reason, MESSAGES[OTHER]))


class CustomerLocationShare:
    """Customer page flow: read the device position once and submit it.

    ``locator`` raises ``GeolocationError`` (built with ``geolocation_error``)
    for classified failures; anything else it raises counts as ``other``.
    After an error the flow can simply be started again.
    """

    def __init__(self, api: ApiClient, token: Optional[str], locator: Optional[Locator] = None,
                 timeout: float = GEOLOCATION_TIMEOUT):
        self.api = api
        self.token = token
        self.locator = locator
        self.timeout = timeout
        self.status = ShareStatus.IDLE
        self.error: Optional[GeolocationError] = None

    @property
    def message(self) -> str:  # text for the page
        return self.error.message if self.error else ""

    def _fail(self, reason: str) -> GeolocationError:
        self.error = geolocation_error(reason)
        self.status = ShareStatus.ERROR
        logger.warning(f"customer location share failed reason={reason}")
        return self.error

    async def share(self) -> LocationSubmitResponse:
        if self.status in (ShareStatus.LOCATING, ShareStatus.SUBMITTING, ShareStatus.SUCCESS):
            raise CommandNotAllowed("share", self.status.value)
        if not self.token:
            raise self._fail(INVALID_LINK)
        if self.locator is None:
            raise self._fail(UNSUPPORTED)
        self.status = ShareStatus.LOCATING
        self.error = None
        try:
            latitude, longitude = await asyncio.wait_for(self.locator(), self.timeout)
        except asyncio.TimeoutError:
            raise self._fail(TIMEOUT)
        except GeolocationError as e:
            raise self._fail(e.reason if e.reason in MESSAGES else OTHER) from e
        except Exception as e:
            logger.error(f"locator failed: {e}")
            raise self._fail(OTHER) from e
        self.status = ShareStatus.SUBMITTING
        try:
            resp = await self.api.submit_shared_location(self.token, latitude, longitude)
        except (ClientError, ValueError) as e:  # ValueError: coordinates out of range
            raise self._fail(SUBMIT_FAILED) from e
        self.status = ShareStatus.SUCCESS
        return resp
