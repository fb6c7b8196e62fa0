"""Auction entities: categories, items and bids on items.

A small domain for exercising the locking modes. Items belong to a
category and bids belong to an item, both by id. Entities are plain
dataclasses converted to and from record payloads; the ``kind`` field
tells them apart in queries.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from .errors import InvariantViolation, NotFound
from .locking import LockMode
from .unit_of_work import UnitOfWork
from .versioned import Payload, Predicate, Record

KIND = "kind"


class InvalidBid(InvariantViolation):
    """Raised when a bid does not exceed the current highest bid."""


@dataclass
class Category:
    name: str

    def to_payload(self) -> Payload:
        return {KIND: "category", "name": self.name}

    @classmethod
    def from_payload(cls, payload: Payload) -> Category:
        return cls(name=payload["name"])


@dataclass
class Item:
    name: str
    buy_now_price: Decimal | None = None
    category_id: int | None = None

    def to_payload(self) -> Payload:
        return {
            KIND: "item",
            "name": self.name,
            "buy_now_price": self.buy_now_price,
            "category_id": self.category_id,
        }

    @classmethod
    def from_payload(cls, payload: Payload) -> Item:
        return cls(
            name=payload["name"],
            buy_now_price=payload.get("buy_now_price"),
            category_id=payload.get("category_id"),
        )


@dataclass
class Bid:
    amount: Decimal
    item_id: int

    @classmethod
    def place(cls, amount: Decimal, item_id: int, last_bid: Bid | None) -> Bid:
        """Create a bid that must beat ``last_bid``.

        Raises:
            InvalidBid: If ``amount`` does not exceed the last bid.
        """
        if last_bid is not None and amount <= last_bid.amount:
            raise InvalidBid(
                f"Bid amount {amount} too low, last bid was: {last_bid.amount}"
            )
        return cls(amount=amount, item_id=item_id)

    def to_payload(self) -> Payload:
        return {KIND: "bid", "amount": self.amount, "item_id": self.item_id}

    @classmethod
    def from_payload(cls, payload: Payload) -> Bid:
        return cls(amount=payload["amount"], item_id=payload["item_id"])


def of_kind(kind: str, **fields) -> Predicate:
    """Predicate matching payloads of ``kind`` with the given field values."""

    def predicate(payload: Payload) -> bool:
        if payload.get(KIND) != kind:
            return False
        return all(payload.get(name) == value for name, value in fields.items())

    return predicate


def items_in_category(
    uow: UnitOfWork, category_id: int, lock_mode: LockMode = LockMode.NONE
) -> list[Record]:
    return uow.query(of_kind("item", category_id=category_id), lock_mode)


def category_total(uow: UnitOfWork, category_ids: Iterable[int]) -> Decimal:
    """Sum the buy-now prices of all items in the given categories.

    Every item is read under ``OPTIMISTIC``, so the unit of work will
    refuse to commit if any of them moved or changed meanwhile.
    """
    total = Decimal("0")
    for category_id in category_ids:
        for record in items_in_category(uow, category_id, LockMode.OPTIMISTIC):
            price = record.payload.get("buy_now_price")
            if price is not None:
                total += price
    return total


def highest_bid(uow: UnitOfWork, item_id: int) -> Bid | None:
    bids = uow.query(of_kind("bid", item_id=item_id))
    if not bids:
        return None
    return max((Bid.from_payload(r.payload) for r in bids), key=lambda b: b.amount)


def place_bid(uow: UnitOfWork, item_id: int, amount: Decimal) -> int:
    """Stage a new bid on an item and return the bid's id.

    The item is read under ``FORCE_INCREMENT``: inserting a bid never
    changes the item, so bumping its version is what makes two
    concurrent bids on the same item collide.

    Raises:
        NotFound: If there is no item with that id.
        InvalidBid: If ``amount`` does not beat the highest bid.
    """
    if uow.read(item_id, LockMode.FORCE_INCREMENT).get(KIND) != "item":
        raise NotFound(item_id)
    bid = Bid.place(amount, item_id, highest_bid(uow, item_id))
    return uow.add(bid.to_payload())


def move_item(uow: UnitOfWork, item_id: int, category_id: int) -> None:
    """Stage moving an item into another category."""
    uow.read(category_id)
    payload = uow.read(item_id)
    payload["category_id"] = category_id
    uow.stage(item_id, payload)
