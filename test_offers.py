# FILE: test_offers.py  # offer book + push normalization

from offers import OfferBook, normalize_push_offer
from schemas import DriverInfo, Offer, OfferStatus, WsOffer


def push_offer(offer_id: int, price="1500.00", first_name="Ali", last_name="Veli") -> WsOffer:
    return WsOffer.model_validate({
        "id": offer_id,
        "driver": {"id": 10 + offer_id, "first_name": first_name, "last_name": last_name, "phone_number": "5551234567"},
        "vehicle": {"id": 20 + offer_id, "brand": "Ford", "model": "Cargo", "plate_number": "34 ABC 123"},
        "estimated_price": price,
        "status": "pending",
        "created_at": "2026-01-01T10:00:00+03:00",
    })


def rest_offer(offer_id: int, price: float, status=OfferStatus.PENDING) -> Offer:
    return Offer(id=offer_id, driver_info=DriverInfo(id=offer_id, name=f"Driver {offer_id}", phone="555"),
                 estimated_price=price, status=status)


def test_normalize_push_offer():
    offer = normalize_push_offer(push_offer(7))
    assert offer.driver_info.name == "Ali Veli"
    assert offer.driver_info.phone == "5551234567"
    assert offer.estimated_price == 1500.0
    assert offer.driver_earnings == 0 and offer.platform_commission == 0
    assert offer.pricing_breakdown == {}
    assert offer.vehicle_info.vehicle_type == ""
    assert offer.status == OfferStatus.PENDING


def test_normalize_tolerates_odd_names_and_status():
    raw = push_offer(8, first_name="", last_name="Veli")
    raw.status = "something-new"
    offer = normalize_push_offer(raw)
    assert offer.driver_info.name == "Veli"
    assert offer.status == OfferStatus.PENDING


def test_offer_with_bad_price_never_enters_book():
    book = OfferBook()
    book.upsert_from_push(normalize_push_offer(push_offer(1, price="1500")))
    for offer_id, price in ((2, "n/a"), (3, ""), (4, "0"), (5, "-10"), (6, "nan")):
        assert normalize_push_offer(push_offer(offer_id, price=price)) is None
        assert book.upsert_from_push(normalize_push_offer(push_offer(offer_id, price=price))) is False
    assert len(book) == 1
    assert book.lowest().id == 1


def test_duplicate_push_is_idempotent():
    book = OfferBook()
    assert book.upsert_from_push(normalize_push_offer(push_offer(1))) is True
    assert book.upsert_from_push(normalize_push_offer(push_offer(1, price="999"))) is False
    assert len(book) == 1
    assert book.get(1).estimated_price == 1500.0


def test_push_offer_into_empty_book():
    book = OfferBook()
    book.seed([])
    book.upsert_from_push(normalize_push_offer(push_offer(1, price="1500")))
    [offer] = list(book)
    assert (offer.driver_info.name, offer.estimated_price, offer.status) == ("Ali Veli", 1500.0, OfferStatus.PENDING)


def test_lowest_is_a_display_hint():
    book = OfferBook()
    book.seed([rest_offer(1, 1800), rest_offer(2, 1500)])
    assert book.lowest().id == 2
    assert [o.id for o in book.ranked()] == [2, 1]
    assert 1 in book  # the pricier offer stays selectable


def test_equal_prices_keep_arrival_order():
    book = OfferBook()
    book.upsert_from_push(normalize_push_offer(push_offer(5, price="1200")))
    book.upsert_from_push(normalize_push_offer(push_offer(3, price="1200")))
    assert book.lowest().id == 5


def test_only_pending_offers_are_ranked():
    book = OfferBook()
    book.seed([rest_offer(1, 500, OfferStatus.REJECTED), rest_offer(2, 900)])
    assert [o.id for o in book.pending()] == [2]
    assert book.lowest().id == 2


def test_withdrawal_removes_offer():
    book = OfferBook()
    book.seed([rest_offer(1, 1000), rest_offer(2, 1100)])
    assert book.remove(1).id == 1
    assert book.remove(1) is None
    assert [o.id for o in book] == [2]


def test_closed_book_ignores_late_offers():
    book = OfferBook()
    book.seed([rest_offer(1, 1000)])
    book.close()
    assert len(book) == 0
    assert book.upsert_from_push(normalize_push_offer(push_offer(2))) is False
    book.seed([rest_offer(3, 1000)])
    assert len(book) == 0
    assert book.lowest() is None
