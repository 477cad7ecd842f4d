# FILE: lifecycle.py  # one request's authoritative view: REST snapshots + push events + operator commands

from typing import Callable, Dict, List, Optional  # typing

from channel import request_channel
from config import setup_logger
from errors import ApiError, ClientError, CommandNotAllowed
from offers import OfferBook, normalize_push_offer
from schemas import (
    ACTIVE_STATUSES, OFFER_CLOSED_STATUSES, OFFER_COLLECTION_STATUSES, TERMINAL_STATUSES, AcceptOfferResponse,
    CancelResponse, NewOfferMessage, OfferWithdrawnMessage, PaymentLinkResponse, RequestDetail, RequestStatus,
    extract_tracking_token, is_regression, parse_request_message,
)
from transport import ApiClient

logger = setup_logger("yolsepeti.lifecycle", "LIFECYCLE")  # lifecycle logger


class ActionState:  # loading flag + last error for one command
    __slots__ = ("loading", "error")

    def __init__(self):
        self.loading = False
        self.error: Optional[str] = None

    def begin(self) -> None:
        self.loading = True
        self.error = None  # cleared per attempt, never accumulated

    def fail(self, exc: Exception) -> None:
        self.error = exc.message if isinstance(exc, ApiError) else str(exc)

    def __repr__(self) -> str:
        return f"ActionState(loading={self.loading}, error={self.error!r})"


class RequestLifecycleController:
    """Single view of one service request.

    The server owns the status; this class never computes the next one. It
    folds three inputs into ``snapshot`` and ``offers``: snapshot fetches,
    pushes on the request channel and the results of the operator's own
    commands. Status signals, commands and the first offer on a pending
    request are followed by a full re-fetch so REST/push races settle on
    whatever the server reports last.

    Snapshots are applied in fetch order and never move the status
    backwards, so a slow response cannot undo a newer one.
    """

    def __init__(self, api: ApiClient, request_id: int, tracking_token: Optional[str] = None, connect=None,
                 sleep=None):
        self.api = api
        self.request_id = request_id
        self._tracking_token = tracking_token
        self.snapshot: Optional[RequestDetail] = None
        self.offers = OfferBook()
        self.status_epoch = 0  # bumped on every observed status change
        self.actions: Dict[str, ActionState] = {
            "load": ActionState(),
            "cancel": ActionState(),
            "accept": ActionState(),
            "payment_sms": ActionState(),
        }
        self.payment_link_sent = False
        self.channel = request_channel(self.handle_push, connect=connect, sleep=sleep)
        self._listeners: List[Callable[["RequestLifecycleController"], None]] = []
        self._fetch_seq = 0  # issued fetches
        self._applied_seq = 0  # newest fetch applied
        self._started = False  # channel may open
        self._stopped = False

    # -------------------- View --------------------

    @property
    def status(self) -> Optional[RequestStatus]:
        return self.snapshot.status if self.snapshot else None

    @property
    def tracking_token(self) -> Optional[str]:
        if self._tracking_token:
            return self._tracking_token
        if self.snapshot and self.snapshot.tracking_url:
            return extract_tracking_token(self.snapshot.tracking_url)
        return None

    @property
    def is_live(self) -> bool:
        return self.channel.is_connected

    def add_listener(self, listener: Callable[["RequestLifecycleController"], None]) -> None:  # view updates
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"request={self.request_id} listener failed: {e}")

    # -------------------- Loading --------------------

    async def start(self) -> RequestDetail:
        """Initial load: snapshot, offers (while worth listing), then the push channel."""
        action = self.actions["load"]
        action.begin()
        try:
            snapshot = await self.refresh()
        except ClientError as e:
            action.fail(e)
            raise
        finally:
            action.loading = False
        if snapshot.status in ACTIVE_STATUSES:
            await self.load_offers()
        self._started = True
        await self._sync_channel()
        return snapshot

    async def refresh(self) -> RequestDetail:
        self._fetch_seq += 1
        seq = self._fetch_seq
        snapshot = await self.api.get_request(self.request_id)
        if seq < self._applied_seq:
            logger.debug(f"request={self.request_id} dropped out-of-order snapshot seq={seq}")
            return self.snapshot
        self._applied_seq = seq
        epoch = self.status_epoch
        self.apply_snapshot(snapshot)
        if self._started and epoch != self.status_epoch and self.status in OFFER_COLLECTION_STATUSES:
            await self.load_offers()  # offers are valid per status epoch
        await self._sync_channel()
        return self.snapshot

    def apply_snapshot(self, snapshot: RequestDetail) -> None:
        previous = self.status
        if is_regression(previous, snapshot.status):
            logger.warning(f"request={self.request_id} ignored stale status {snapshot.status.value} "
                           f"(current {previous.value})")
            return
        self.snapshot = snapshot
        if previous != snapshot.status:
            self.status_epoch += 1
            logger.info(f"request={self.request_id} status {previous.value if previous else None} -> "
                        f"{snapshot.status.value}")
        if snapshot.status in OFFER_CLOSED_STATUSES:
            self.offers.close()
        elif snapshot.status not in OFFER_COLLECTION_STATUSES:
            self.offers.reset()  # pending_location: nothing to show yet
        self._notify()

    async def load_offers(self) -> None:
        token = self.tracking_token
        if not token:
            return
        epoch = self.status_epoch
        try:
            resp = await self.api.list_offers(token)
        except ClientError as e:
            logger.warning(f"request={self.request_id} list offers failed: {e}")  # not fatal
            return
        if epoch != self.status_epoch:
            logger.info(f"request={self.request_id} discarded offers fetched under epoch {epoch}")
            return
        if self.status in OFFER_COLLECTION_STATUSES:
            self.offers.seed(resp.offers)
            self._notify()

    async def _refetch(self) -> None:  # push/command follow-up; failures stay in the load slot
        try:
            await self.refresh()
        except ClientError as e:
            self.actions["load"].fail(e)
            logger.error(f"request={self.request_id} snapshot re-fetch failed: {e}")

    async def _sync_channel(self) -> None:
        token = self.tracking_token
        live = self._started and not self._stopped and token and self.snapshot is not None and not self.snapshot.is_terminal
        await self.channel.set_key(token if live else None)

    # -------------------- Push --------------------

    async def handle_push(self, envelope: dict) -> None:
        message = parse_request_message(envelope)
        if message is None:
            logger.debug(f"request={self.request_id} dropped push type={envelope.get('type')}")
            return
        if isinstance(message, NewOfferMessage):
            if self.offers.closed or self.status not in OFFER_COLLECTION_STATUSES:
                logger.debug(f"request={self.request_id} late offer {message.offer.id} ignored")
                return
            offer = normalize_push_offer(message.offer)
            if offer is None:
                logger.debug(f"request={self.request_id} dropped offer {message.offer.id} with bad price")
                return
            if self.offers.upsert_from_push(offer):
                self._notify()
            if self.status == RequestStatus.PENDING:
                await self._refetch()  # first offer moves the request to awaiting_approval
        elif isinstance(message, OfferWithdrawnMessage):
            if self.offers.remove(message.offer_id) is not None:
                self._notify()
        else:  # connection_established and every status signal
            await self._refetch()

    # -------------------- Commands --------------------

    async def cancel(self) -> CancelResponse:
        status = self.status
        if status is None or status in TERMINAL_STATUSES:
            raise CommandNotAllowed("cancel", status.value if status else None)
        action = self.actions["cancel"]
        action.begin()
        try:
            resp = await self.api.cancel_request(self.request_id)
        except ClientError as e:
            action.fail(e)
            raise
        finally:
            action.loading = False
        await self._refetch()
        return resp

    def can_accept(self) -> bool:
        if self.status == RequestStatus.AWAITING_APPROVAL:
            return True
        return self.status == RequestStatus.PENDING and bool(self.offers.pending())  # best-effort window

    async def accept_offer(self, offer_id: int) -> AcceptOfferResponse:
        token = self.tracking_token
        if not token or not self.can_accept():
            raise CommandNotAllowed("accept_offer", self.status.value if self.status else None)
        action = self.actions["accept"]
        action.begin()
        try:
            resp = await self.api.accept_offer(token, offer_id)  # no retry, server text shown as-is
        except ClientError as e:
            action.fail(e)
            raise
        finally:
            action.loading = False
        logger.info(f"request={self.request_id} offer {offer_id} accepted")
        self.offers.reset()
        await self._refetch()
        return resp

    def payment_price(self) -> Optional[float]:
        pricing = self.snapshot.pricing if self.snapshot else None
        if pricing is None or not pricing.estimated_price:
            return None
        try:
            price = float(pricing.estimated_price)
        except ValueError:
            return None
        return price if price > 0 else None

    async def send_payment_link(self) -> PaymentLinkResponse:
        price = self.payment_price()
        if self.status != RequestStatus.AWAITING_PAYMENT or price is None:
            raise CommandNotAllowed("send_payment_link", self.status.value if self.status else None)
        action = self.actions["payment_sms"]
        action.begin()
        try:
            resp = await self.api.create_payment_link(self.request_id, price)
        except ClientError as e:
            action.fail(e)
            raise
        finally:
            action.loading = False
        self.payment_link_sent = resp.sms_sent
        return resp

    async def stop(self) -> None:
        self._stopped = True
        await self.channel.close()
