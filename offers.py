# FILE: offers.py  # live offer collection for one request

import math  # finite check
from typing import Dict, Iterable, Iterator, List, Optional  # typing

from schemas import DriverInfo, Offer, OfferStatus, VehicleInfo, WsOffer


def _to_price(value) -> Optional[float]:  # push prices arrive as numeric strings
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if math.isfinite(price) and price > 0 else None


def normalize_push_offer(ws_offer: WsOffer) -> Optional[Offer]:
    """Map a ``new_offer`` push payload onto the REST list layout.

    Returns ``None`` when the price is not a positive number; such a push is
    malformed and must not reach the book.
    """
    price = _to_price(ws_offer.estimated_price)
    if price is None:
        return None
    driver = ws_offer.driver
    name = f"{driver.first_name} {driver.last_name}".strip()
    vehicle = None
    if ws_offer.vehicle is not None:
        vehicle = VehicleInfo(**ws_offer.vehicle.model_dump(), vehicle_type="")
    try:
        status = OfferStatus(ws_offer.status)
    except ValueError:
        status = OfferStatus.PENDING
    return Offer(
        id=ws_offer.id,
        driver_info=DriverInfo(id=driver.id, name=name, phone=driver.phone_number, average_rating=None, total_ratings=0),
        vehicle_info=vehicle,
        estimated_price=price,
        driver_earnings=0,  # not in push payload
        platform_commission=0,
        pricing_breakdown={},
        offer_details={},
        status=status,
        created_at=ws_offer.created_at,
    )


class OfferBook:
    """Offers keyed by id for one request.

    Insertion order is kept only to break price ties: among pending offers
    the cheapest is ranked first and, on equal prices, the one received
    first wins. Once closed (the request left the offer-collection phase)
    the book stays empty and ignores late pushes.
    """

    def __init__(self):
        self._offers: Dict[int, Offer] = {}
        self.closed = False

    def __len__(self) -> int:
        return len(self._offers)

    def __iter__(self) -> Iterator[Offer]:
        return iter(list(self._offers.values()))

    def __contains__(self, offer_id: int) -> bool:
        return offer_id in self._offers

    def get(self, offer_id: int) -> Optional[Offer]:
        return self._offers.get(offer_id)

    def seed(self, offers: Iterable[Offer]) -> None:  # list-offers snapshot
        if self.closed:
            return
        self._offers = {o.id: o for o in offers}

    def upsert_from_push(self, offer: Optional[Offer]) -> bool:
        """Insert ``offer`` if unseen. Duplicates (e.g. replays after a reconnect) and malformed pushes are ignored."""
        if offer is None or self.closed or offer.id in self._offers:
            return False
        self._offers[offer.id] = offer
        return True

    def remove(self, offer_id: int) -> Optional[Offer]:  # withdrawal
        return self._offers.pop(offer_id, None)

    def reset(self) -> None:
        self._offers.clear()

    def close(self) -> None:  # request left pending/awaiting_approval
        self.reset()
        self.closed = True

    def pending(self) -> List[Offer]:
        return [o for o in self._offers.values() if o.status == OfferStatus.PENDING]

    def ranked(self) -> List[Offer]:  # display order, stable on ties
        return sorted(self.pending(), key=lambda o: o.estimated_price)

    def lowest(self) -> Optional[Offer]:  # highlighted offer, a display hint only
        ranked = self.ranked()
        return ranked[0] if ranked else None
