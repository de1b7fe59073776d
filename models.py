import datetime
import random
import time
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

import structlog
from werkzeug.security import generate_password_hash, check_password_hash

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def sanitize_text(value: str) -> str:
    """Basic sanitization: strip surrounding whitespace; return empty string for None."""
    return (value or "").strip()


def to_money(value) -> Decimal:
    """Coerce a price-like value to a two-place Decimal."""
    if isinstance(value, float):
        value = repr(value)
    amount = Decimal(value)
    if not amount.is_finite():
        raise ValueError(f"not a finite amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def require_text(name, value) -> str:
    """Return `value` stripped, or raise ValueError unless it is a non-blank string."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-blank string")
    return value.strip()


def format_money(amount) -> str:
    return f"${to_money(amount):.2f}"


class UserRole(Enum):
    ADMIN = "Admin"
    CUSTOMER = "Customer"


class MembershipLevel(Enum):
    NORMAL = "Normal"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"

    @classmethod
    def for_points(cls, points: int) -> "MembershipLevel":
        for threshold, level in TIER_THRESHOLDS:
            if points >= threshold:
                return level
        return cls.NORMAL


# Highest threshold first.
TIER_THRESHOLDS = (
    (600, MembershipLevel.PLATINUM),
    (300, MembershipLevel.GOLD),
    (100, MembershipLevel.SILVER),
)


class OrderStatus(Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class ErrorCode(Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INVALID_CREDENTIAL = "invalid_credential"
    INSUFFICIENT_STOCK = "insufficient_stock"
    PAYMENT_DECLINED = "payment_declined"
    INVALID_STATE = "invalid_state"
    UNAUTHORIZED = "unauthorized"
    INVALID_INPUT = "invalid_input"


class Result:
    """
    Outcome of a market operation.
    Business failures are reported through this object instead of raised,
    so callers decide how to present them.
    """
    def __init__(self, success, value=None, error=None, message=""):
        self.success = success
        self.value = value
        self.error = error
        self.message = message

    @classmethod
    def ok(cls, value=None, message=""):
        return cls(True, value=value, message=message)

    @classmethod
    def fail(cls, error: ErrorCode, message: str):
        return cls(False, error=error, message=message)

    def __bool__(self):
        return self.success

    def __repr__(self):
        if self.success:
            return f"Result.ok({self.value!r})"
        return f"Result.fail({self.error.name}, {self.message!r})"


class Review:
    """A single rating left by a user. Read-only once created."""
    __slots__ = ("_username", "_rating", "_text", "_created_at")

    def __init__(self, username, rating, text, created_at=None):
        self._username = username
        self._rating = int(rating)
        self._text = text
        self._created_at = created_at or datetime.datetime.now()

    @property
    def username(self):
        return self._username

    @property
    def rating(self):
        return self._rating

    @property
    def text(self):
        return self._text

    @property
    def created_at(self):
        return self._created_at

    def to_dict(self):
        return {
            'username': self.username,
            'rating': self.rating,
            'text': self.text,
            'created_at': self.created_at.strftime('%Y-%m-%d'),
        }


class Book:
    def __init__(self, isbn, title, author, price, quantity, genre, publisher):
        if int(quantity) < 0:
            raise ValueError("quantity must be non-negative")
        if to_money(price) < 0:
            raise ValueError("price must be non-negative")
        self.isbn = require_text("isbn", isbn)
        self.title = require_text("title", title)
        self.author = require_text("author", author)
        self.price = to_money(price)
        self.quantity = int(quantity)
        self.genre = require_text("genre", genre)
        self.publisher = require_text("publisher", publisher)
        self.reviews = []

    def add_review(self, review):
        self.reviews.append(review)

    def average_rating(self) -> float:
        if not self.reviews:
            return 0.0
        return sum(r.rating for r in self.reviews) / len(self.reviews)

    def take_stock(self, quantity):
        if quantity > self.quantity:
            raise ValueError(f"cannot take {quantity} of {self.isbn}: only {self.quantity} left")
        self.quantity -= quantity

    def restock(self, quantity):
        self.quantity += quantity

    def to_dict(self):
        return {
            'isbn': self.isbn,
            'title': self.title,
            'author': self.author,
            'price': f"{self.price:.2f}",
            'quantity': self.quantity,
            'genre': self.genre,
            'publisher': self.publisher,
            'average_rating': round(self.average_rating(), 2),
            'review_count': len(self.reviews),
        }

    def __str__(self):
        return (f"[{self.isbn}] {self.title} | Author: {self.author} | Price: {format_money(self.price)} | "
                f"Stock: {self.quantity} | Genre: {self.genre} | Publisher: {self.publisher} | "
                f"Rating: {self.average_rating():.2f} ({len(self.reviews)} reviews)")


class CartItem:
    def __init__(self, book, quantity=1):
        self.book = book
        self.quantity = int(quantity)

    def get_total_price(self):
        return self.book.price * self.quantity


class ShoppingCart:
    """
    Per-user cart keyed by ISBN.
    - Repeated adds merge into one line
    - Updating to quantity <= 0 removes the line
    """
    def __init__(self):
        self.items = {}  # isbn -> CartItem

    def add_item(self, book, quantity=1):
        if book.isbn in self.items:
            self.items[book.isbn].quantity += quantity
        else:
            self.items[book.isbn] = CartItem(book, quantity)

    def update_item(self, isbn, quantity) -> bool:
        if isbn not in self.items:
            return False
        if quantity <= 0:
            del self.items[isbn]
        else:
            self.items[isbn].quantity = quantity
        return True

    def remove_item(self, isbn) -> bool:
        return self.items.pop(isbn, None) is not None

    def get_total_price(self):
        return sum((item.get_total_price() for item in self.items.values()), Decimal("0.00"))

    def get_total_items(self):
        return sum(item.quantity for item in self.items.values())

    def clear(self):
        self.items = {}

    def get_items(self):
        return list(self.items.values())

    def is_empty(self):
        return len(self.items) == 0

    def to_dict(self):
        return {
            'items': [
                {'isbn': it.book.isbn, 'title': it.book.title, 'quantity': it.quantity,
                 'price': f"{it.book.price:.2f}"}
                for it in self.items.values()
            ],
            'total_items': self.get_total_items(),
            'total_price': f"{self.get_total_price():.2f}",
        }


class User:
    """
    User with a hashed password and loyalty state.
    The role is read-only here; AccountRegistry.change_role is the only way to alter it.
    """
    def __init__(self, username, password, role=UserRole.CUSTOMER):
        self.username = username
        self._password_hash = generate_password_hash(password)
        self._role = role
        self.loyalty_points = 0
        self.membership_level = MembershipLevel.NORMAL

    @property
    def role(self):
        return self._role

    @property
    def is_admin(self):
        return self._role is UserRole.ADMIN

    def set_password(self, raw_password: str):
        self._password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self._password_hash, raw_password or "")

    def add_loyalty_points(self, points: int):
        if points < 0:
            raise ValueError("loyalty points cannot decrease")
        self.loyalty_points += points
        self.membership_level = MembershipLevel.for_points(self.loyalty_points)

    def to_dict(self):
        return {
            'username': self.username,
            'role': self.role.value,
            'membership_level': self.membership_level.value,
            'loyalty_points': self.loyalty_points,
        }

    def __str__(self):
        return f"{self.username} ({self.membership_level.value}) - Points: {self.loyalty_points}"


class Order:
    """Order for a single book. Status moves from ACTIVE to CANCELLED or RETURNED, never back."""
    def __init__(self, order_id, username, book, quantity, created_at=None):
        self.order_id = order_id
        self.username = username
        self.book = book
        self.quantity = int(quantity)
        self.created_at = created_at or datetime.datetime.now()
        self.status = OrderStatus.ACTIVE

    @property
    def total_price(self):
        # Priced from the book as it is now; orders do not snapshot the price.
        return self.book.price * self.quantity

    @property
    def is_active(self):
        return self.status is OrderStatus.ACTIVE

    @property
    def cancelled(self):
        return self.status is OrderStatus.CANCELLED

    @property
    def returned(self):
        return self.status is OrderStatus.RETURNED

    def mark_cancelled(self):
        self._leave_active(OrderStatus.CANCELLED)

    def mark_returned(self):
        self._leave_active(OrderStatus.RETURNED)

    def _leave_active(self, status):
        if not self.is_active:
            raise ValueError(f"order #{self.order_id} is already {self.status.value.lower()}")
        self.status = status

    def to_dict(self):
        return {
            'order_id': self.order_id,
            'username': self.username,
            'isbn': self.book.isbn,
            'title': self.book.title,
            'quantity': self.quantity,
            'total_price': f"{self.total_price:.2f}",
            'order_date': self.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            'status': self.status.value,
        }

    def __str__(self):
        suffix = "" if self.is_active else f" ({self.status.value})"
        return (f"Order #{self.order_id}: {self.book.title} (Qty: {self.quantity}) ordered by {self.username} "
                f"on {self.created_at:%Y-%m-%d %H:%M:%S} | Total: {format_money(self.total_price)}{suffix}")


class PaymentGateway:
    """
    Mock payment gateway.
    Blocks for `delay` seconds to simulate latency, then approves.
    """
    def __init__(self, delay=0.01):
        self.delay = delay

    def _settle(self, kind, amount):
        amount = to_money(amount)
        if amount < 0:
            return {'success': False, 'message': f'{kind} failed: negative amount.', 'transaction_id': None}
        if self.delay:
            time.sleep(self.delay)
        transaction_id = f"TXN{random.randint(100000, 999999)}"
        logger.info(f"{kind} processed", amount=str(amount), transaction_id=transaction_id)
        return {'success': True, 'message': f'{kind} processed successfully', 'transaction_id': transaction_id}

    def process_payment(self, amount):
        return self._settle("Payment", amount)

    def process_refund(self, amount):
        return self._settle("Refund", amount)


class NotificationService:
    """Mock notification channel; keeps what it sent so it can be inspected."""
    def __init__(self):
        self.sent = []

    def notify(self, username, message):
        self.sent.append((username, message))
        logger.info("Notification sent", username=username, message=message)
