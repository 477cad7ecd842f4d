# FILE: test_lifecycle.py  # request lifecycle controller

import asyncio
from typing import List, Optional

import pytest

import main
from channel import request_updates_url
from conftest import FakeConnector, FakeSocket, RecordingSleep, sandbox_api, sandbox_driver, sandbox_login, wait_until
from errors import ApiError, CommandNotAllowed, TransportError
from lifecycle import RequestLifecycleController
from schemas import (
    AcceptOfferResponse, CancelResponse, DriverInfo, Offer, OffersResponse, PaymentLinkResponse, RequestCreate,
    RequestDetail, RequestStatus,
)

S = RequestStatus


def snap(status: RequestStatus, price: Optional[str] = None) -> RequestDetail:
    return RequestDetail.model_validate({
        "request_id": 1,
        "status": status.value,
        "service_type": "towTruck",
        "insured_name": "Ahmet Yilmaz",
        "insured_phone": "05321112233",
        "tracking_url": "https://yolsepetigo.com/takip/tok42",
        "pricing": {"estimated_price": price} if price else None,
        "timeline": {"created_at": "2026-01-01T10:00:00+03:00"},
    })


def offer(offer_id: int, price: float) -> Offer:
    return Offer(id=offer_id, driver_info=DriverInfo(id=offer_id, name=f"Driver {offer_id}", phone="555"), estimated_price=price)


def new_offer_push(offer_id: int, price: str = "1500") -> dict:
    return {"type": "new_offer", "offer": {
        "id": offer_id,
        "driver": {"id": 9, "first_name": "Ali", "last_name": "Veli", "phone_number": "5551112233"},
        "vehicle": {"id": 3, "brand": "Ford", "model": "Cargo", "plate_number": "34 ABC 123"},
        "estimated_price": price,
        "status": "pending",
        "created_at": "2026-01-01T10:05:00+03:00",
    }}


class FakeApi:
    """Plays back snapshots in order (the last one repeats) and records calls."""

    def __init__(self, *snapshots: RequestDetail, offers: Optional[List[Offer]] = None):
        self.snapshots = list(snapshots)
        self.offers = list(offers or [])
        self.calls: List[tuple] = []
        self.list_gate: Optional[asyncio.Event] = None
        self.list_error: Optional[Exception] = None
        self.accept_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    async def get_request(self, request_id):
        self.calls.append(("get_request", request_id))
        return self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]

    async def list_offers(self, token):
        self.calls.append(("list_offers", token))
        if self.list_gate is not None:
            await self.list_gate.wait()
        if self.list_error is not None:
            raise self.list_error
        return OffersResponse(request_id=1, request_status="pending", offers_count=len(self.offers), offers=self.offers)

    async def cancel_request(self, request_id):
        self.calls.append(("cancel_request", request_id))
        if self.cancel_error is not None:
            raise self.cancel_error
        return CancelResponse(request_id=request_id, status="cancelled", message="cancelled")

    async def accept_offer(self, token, offer_id):
        self.calls.append(("accept_offer", token, offer_id))
        if self.accept_error is not None:
            raise self.accept_error
        return AcceptOfferResponse(message="ok", request_id=1, status="awaiting_payment", driver_name="Ali Veli",
                                   driver_phone="5551112233")

    async def create_payment_link(self, request_id, price):
        self.calls.append(("create_payment_link", request_id, price))
        return PaymentLinkResponse(message="sent", payment_url="https://pay/1", sms_sent=True)


def controller(api, connector=None) -> RequestLifecycleController:
    return RequestLifecycleController(api, 1, connect=connector or FakeConnector(), sleep=RecordingSleep())


# -------------------- Loading --------------------

def test_start_loads_offers_then_opens_channel():
    api = FakeApi(snap(S.PENDING), offers=[offer(1, 1800), offer(2, 1500)])
    connector = FakeConnector()

    async def run():
        ctrl = controller(api, connector)
        await ctrl.start()
        await wait_until(lambda: ctrl.is_live)
        lowest = ctrl.offers.lowest().id
        await ctrl.stop()
        return ctrl, lowest

    ctrl, lowest = asyncio.run(run())
    assert lowest == 2
    assert ctrl.tracking_token == "tok42"
    assert connector.urls == [request_updates_url("tok42")]
    assert [c[0] for c in api.calls] == ["get_request", "list_offers"]
    assert ctrl.is_live is False


def test_terminal_request_never_opens_channel():
    api = FakeApi(snap(S.COMPLETED))
    connector = FakeConnector()

    async def run():
        ctrl = controller(api, connector)
        await ctrl.start()
        await asyncio.sleep(0.01)
        return ctrl

    ctrl = asyncio.run(run())
    assert connector.urls == []
    assert api.count("list_offers") == 0
    assert ctrl.offers.closed


def test_list_failure_is_not_fatal():
    api = FakeApi(snap(S.PENDING))
    api.list_error = TransportError("boom")

    async def run():
        ctrl = controller(api)
        await ctrl.start()
        await ctrl.stop()
        return ctrl

    ctrl = asyncio.run(run())
    assert ctrl.status == S.PENDING
    assert len(ctrl.offers) == 0
    assert ctrl.actions["load"].error is None


def test_load_failure_is_recorded_and_raised():
    api = FakeApi(snap(S.PENDING))

    async def broken(request_id):
        raise ApiError(404, "request not found")

    api.get_request = broken

    async def run():
        ctrl = controller(api)
        with pytest.raises(ApiError):
            await ctrl.start()
        return ctrl

    ctrl = asyncio.run(run())
    assert ctrl.actions["load"].error == "request not found"
    assert ctrl.actions["load"].loading is False


def test_offers_from_a_previous_status_epoch_are_discarded():
    api = FakeApi(snap(S.PENDING), offers=[offer(1, 1000)])

    async def run():
        api.list_gate = asyncio.Event()
        ctrl = controller(api)
        task = asyncio.ensure_future(ctrl.start())
        await wait_until(lambda: api.count("list_offers") == 1)
        ctrl.apply_snapshot(snap(S.AWAITING_APPROVAL))  # status moved while the list was in flight
        api.list_gate.set()
        await task
        await ctrl.stop()
        return ctrl

    ctrl = asyncio.run(run())
    assert ctrl.status == S.AWAITING_APPROVAL
    assert ctrl.status_epoch == 2
    assert len(ctrl.offers) == 0


def test_status_never_moves_backwards():
    ctrl = controller(FakeApi(snap(S.PENDING)))
    ctrl.apply_snapshot(snap(S.AWAITING_PAYMENT))
    ctrl.apply_snapshot(snap(S.PENDING))
    assert ctrl.status == S.AWAITING_PAYMENT
    ctrl.apply_snapshot(snap(S.CANCELLED))
    ctrl.apply_snapshot(snap(S.IN_PROGRESS))
    assert ctrl.status == S.CANCELLED


# -------------------- Push --------------------

def test_new_offer_push_lands_in_book_and_refetches():
    api = FakeApi(snap(S.PENDING))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        await ctrl.handle_push(new_offer_push(5, "1500"))
        await ctrl.handle_push(new_offer_push(5, "1500"))  # replay after reconnect
        return ctrl

    ctrl = asyncio.run(run())
    [only] = list(ctrl.offers)
    assert (only.driver_info.name, only.estimated_price, only.status.value) == ("Ali Veli", 1500.0, "pending")
    assert api.count("get_request") == 3


def test_offers_while_awaiting_approval_skip_the_refetch():
    api = FakeApi(snap(S.AWAITING_APPROVAL))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        for offer_id in (5, 6, 7):
            await ctrl.handle_push(new_offer_push(offer_id, str(1000 + offer_id)))
        return ctrl

    ctrl = asyncio.run(run())
    assert [o.id for o in ctrl.offers.ranked()] == [5, 6, 7]
    assert api.count("get_request") == 1


def test_offer_push_with_bad_price_is_dropped():
    api = FakeApi(snap(S.PENDING))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        await ctrl.handle_push(new_offer_push(5, "1500"))
        await ctrl.handle_push(new_offer_push(6, "n/a"))
        return ctrl

    ctrl = asyncio.run(run())
    assert [o.id for o in ctrl.offers] == [5]
    assert ctrl.offers.lowest().id == 5
    assert api.count("get_request") == 2


def test_late_offer_after_acceptance_is_ignored():
    api = FakeApi(snap(S.AWAITING_PAYMENT, "1500.00"))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        await ctrl.handle_push(new_offer_push(6))
        return ctrl

    ctrl = asyncio.run(run())
    assert len(ctrl.offers) == 0
    assert api.count("get_request") == 1


def test_withdrawal_and_unknown_messages():
    api = FakeApi(snap(S.AWAITING_APPROVAL), offers=[offer(1, 1000), offer(2, 1200)])

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        await ctrl.load_offers()
        await ctrl.handle_push({"type": "offer_withdrawn", "offer_id": 1})
        await ctrl.handle_push({"type": "driver_location", "lat": 1})
        return ctrl

    ctrl = asyncio.run(run())
    assert [o.id for o in ctrl.offers] == [2]
    assert api.count("get_request") == 1


def test_terminal_push_stops_the_channel():
    api = FakeApi(snap(S.IN_PROGRESS), snap(S.COMPLETED))
    connector = FakeConnector(FakeSocket([{"type": "request_completed"}]))

    async def run():
        ctrl = controller(api, connector)
        await ctrl.start()
        await wait_until(lambda: ctrl.status == S.COMPLETED)
        await ctrl.channel.wait_closed()
        return ctrl

    ctrl = asyncio.run(run())
    assert ctrl.channel.key is None
    assert ctrl.is_live is False
    assert len(connector.urls) == 1


# -------------------- Commands --------------------

def test_accept_any_offer_clears_book_and_refetches():
    api = FakeApi(snap(S.AWAITING_APPROVAL), snap(S.AWAITING_PAYMENT, "1800.00"),
                  offers=[offer(1, 1800), offer(2, 1500)])

    async def run():
        ctrl = controller(api)
        await ctrl.start()
        assert ctrl.offers.lowest().id == 2
        await ctrl.accept_offer(1)  # not the lowest: still fine
        await ctrl.stop()
        return ctrl

    ctrl = asyncio.run(run())
    assert ("accept_offer", "tok42", 1) in api.calls
    assert ctrl.status == S.AWAITING_PAYMENT
    assert len(ctrl.offers) == 0 and ctrl.offers.closed


def test_accept_failure_shows_server_text_and_does_not_retry():
    api = FakeApi(snap(S.AWAITING_APPROVAL), offers=[offer(1, 1800)])
    api.accept_error = ApiError(409, "offer already accepted", "OFFER_ALREADY_ACCEPTED")

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        await ctrl.load_offers()
        with pytest.raises(ApiError):
            await ctrl.accept_offer(1)
        return ctrl

    ctrl = asyncio.run(run())
    assert api.count("accept_offer") == 1
    assert ctrl.actions["accept"].error == "offer already accepted"
    assert ctrl.actions["accept"].loading is False
    assert len(ctrl.offers) == 1


def test_accept_while_pending_needs_a_visible_offer():
    api = FakeApi(snap(S.PENDING))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        with pytest.raises(CommandNotAllowed):
            await ctrl.accept_offer(1)
        ctrl.offers.seed([offer(1, 900)])
        await ctrl.accept_offer(1)

    asyncio.run(run())
    assert api.count("accept_offer") == 1


def test_cancel_refused_in_terminal_states():
    api = FakeApi(snap(S.CANCELLED))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        with pytest.raises(CommandNotAllowed):
            await ctrl.cancel()

    asyncio.run(run())
    assert api.count("cancel_request") == 0


def test_cancel_failure_leaves_state_and_clears_on_retry():
    api = FakeApi(snap(S.AWAITING_APPROVAL), snap(S.CANCELLED))
    api.cancel_error = TransportError("timeout")

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        with pytest.raises(TransportError):
            await ctrl.cancel()
        first_error = ctrl.actions["cancel"].error
        status_after_failure = ctrl.status
        api.cancel_error = None
        await ctrl.cancel()
        return ctrl, first_error, status_after_failure

    ctrl, first_error, status_after_failure = asyncio.run(run())
    assert first_error == "timeout"
    assert status_after_failure == S.AWAITING_APPROVAL
    assert ctrl.actions["cancel"].error is None
    assert ctrl.status == S.CANCELLED


def test_payment_link_only_with_known_price():
    api = FakeApi(snap(S.AWAITING_APPROVAL), snap(S.AWAITING_PAYMENT, "1500.00"))

    async def run():
        ctrl = controller(api)
        ctrl.apply_snapshot(await api.get_request(1))
        with pytest.raises(CommandNotAllowed):
            await ctrl.send_payment_link()
        ctrl.apply_snapshot(await api.get_request(1))
        await ctrl.send_payment_link()
        return ctrl

    ctrl = asyncio.run(run())
    assert ("create_payment_link", 1, 1500.0) in api.calls
    assert ctrl.payment_link_sent is True


# -------------------- Against the sandbox --------------------

def test_full_flow_against_sandbox(sandbox):
    async def run():
        api = sandbox_api()
        driver = sandbox_driver()
        await sandbox_login(api)
        created = await api.create_request(RequestCreate.model_validate({
            "service_type": "towTruck", "insured_name": "Ahmet Yilmaz", "insured_phone": "05321112233",
            "pickup_address": "Kadikoy", "pickup_latitude": 40.99, "pickup_longitude": 29.02,
            "dropoff_address": "Besiktas", "dropoff_latitude": 41.04, "dropoff_longitude": 29.0,
        }))
        ctrl = RequestLifecycleController(api, created.request_id, tracking_token=created.tracking_token,
                                          connect=FakeConnector(), sleep=RecordingSleep())
        await ctrl.start()
        assert ctrl.status == S.PENDING and len(ctrl.offers) == 0

        for price in (1800, 1500):
            resp = await driver.post(f"/sandbox/requests/{created.request_id}/offers/", json={"price": price})
            await ctrl.handle_push({"type": "new_offer", "offer": main.offer_push(main.store.offers[resp.json()["id"]])})
        assert ctrl.status == S.AWAITING_APPROVAL
        ranked = [o.estimated_price for o in ctrl.offers.ranked()]
        pricier = max(ctrl.offers, key=lambda o: o.estimated_price).id

        await ctrl.accept_offer(pricier)
        assert ctrl.status == S.AWAITING_PAYMENT
        assert ctrl.snapshot.driver.name == "Test Surucu"
        link = await ctrl.send_payment_link()

        await driver.post(f"/sandbox/requests/{created.request_id}/payment-completed/")
        await ctrl.handle_push({"type": "payment_completed"})
        await driver.post(f"/sandbox/requests/{created.request_id}/complete/")
        await ctrl.handle_push({"type": "request_completed"})
        with pytest.raises(CommandNotAllowed):
            await ctrl.cancel()

        await ctrl.stop()
        await driver.aclose()
        await api.aclose()
        return ctrl, ranked, link

    ctrl, ranked, link = asyncio.run(run())
    assert ranked == [1500.0, 1800.0]
    assert link.sms_sent is True
    assert ctrl.status == S.COMPLETED
    assert ctrl.channel.key is None
