"""
In-memory book market: catalog, accounts, carts, wishlists and the order ledger,
composed by the Market facade.

Every public operation returns a Result (or an optional for plain lookups);
validation always runs before any state is touched.
"""
import datetime
import os

import structlog

from models import (
    Book, ErrorCode, NotificationService, Order, PaymentGateway, Result, Review,
    ShoppingCart, User, UserRole, require_text, sanitize_text, to_money,
)

logger = structlog.get_logger(__name__)

UPDATABLE_BOOK_FIELDS = ("title", "author", "price", "quantity", "genre", "publisher")
TEXT_BOOK_FIELDS = ("title", "author", "genre", "publisher")


class Catalog:
    """Books keyed by ISBN, kept in insertion order."""
    def __init__(self):
        self._books = {}

    def add(self, book) -> Result:
        if book.isbn in self._books:
            return Result.fail(ErrorCode.ALREADY_EXISTS, f"Book {book.isbn} is already registered.")
        self._books[book.isbn] = book
        logger.info("Book added", isbn=book.isbn, title=book.title)
        return Result.ok(book)

    def update(self, isbn, **fields) -> Result:
        book = self._books.get(isbn)
        if book is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"No book with ISBN {isbn}.")

        unknown = sorted(set(fields) - set(UPDATABLE_BOOK_FIELDS))
        if unknown:
            return Result.fail(ErrorCode.INVALID_INPUT, f"Unknown book fields: {', '.join(unknown)}.")
        try:
            for name in TEXT_BOOK_FIELDS:
                if name in fields:
                    fields[name] = require_text(name, fields[name])
        except ValueError as exc:
            return Result.fail(ErrorCode.INVALID_INPUT, f"Invalid book data: {exc}")
        try:
            if "price" in fields:
                fields["price"] = to_money(fields["price"])
            if "quantity" in fields:
                fields["quantity"] = int(fields["quantity"])
        except (ArithmeticError, TypeError, ValueError):
            return Result.fail(ErrorCode.INVALID_INPUT, "Price and quantity must be finite numbers.")
        if fields.get("price", 0) < 0 or fields.get("quantity", 0) < 0:
            return Result.fail(ErrorCode.INVALID_INPUT, "Price and quantity must be non-negative.")

        for name, value in fields.items():
            setattr(book, name, value)
        logger.info("Book updated", isbn=isbn, fields=sorted(fields))
        return Result.ok(book)

    def remove(self, isbn) -> Result:
        book = self._books.pop(isbn, None)
        if book is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"No book with ISBN {isbn}.")
        logger.info("Book removed", isbn=isbn)
        return Result.ok(book)

    def get(self, isbn):
        return self._books.get(isbn)

    def list(self):
        return sorted(self._books.values(), key=lambda b: b.title)

    def search(self, query):
        query = (query or "").lower()
        return [
            book for book in self._books.values()
            if query in book.isbn.lower()
            or query in book.title.lower()
            or query in book.genre.lower()
            or query in book.publisher.lower()
        ]

    def __iter__(self):
        return iter(list(self._books.values()))

    def __len__(self):
        return len(self._books)

    def __contains__(self, isbn):
        return isbn in self._books


class AccountRegistry:
    def __init__(self):
        self._users = {}

    def register(self, username, password, role=UserRole.CUSTOMER) -> Result:
        username = sanitize_text(username)
        if not username or not password:
            return Result.fail(ErrorCode.INVALID_INPUT, "Username and password are required.")
        if username in self._users:
            return Result.fail(ErrorCode.ALREADY_EXISTS, f"User {username} already exists.")
        user = User(username, password, role)
        self._users[username] = user
        logger.info("User registered", username=username, role=role.value)
        return Result.ok(user)

    def authenticate(self, username, password) -> Result:
        user = self._users.get(sanitize_text(username))
        if user is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"User {username} does not exist.")
        if not user.check_password(password):
            logger.warning("Login rejected", username=user.username)
            return Result.fail(ErrorCode.INVALID_CREDENTIAL, "Incorrect password.")
        logger.info("Login succeeded", username=user.username)
        return Result.ok(user)

    def change_password(self, username, old_password, new_password) -> Result:
        auth = self.authenticate(username, old_password)
        if not auth:
            return auth
        if not new_password:
            return Result.fail(ErrorCode.INVALID_INPUT, "New password must not be empty.")
        auth.value.set_password(new_password)
        logger.info("Password changed", username=auth.value.username)
        return Result.ok(auth.value)

    def add_loyalty_points(self, username, points) -> Result:
        user = self._users.get(username)
        if user is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"User {username} does not exist.")
        if points < 0:
            return Result.fail(ErrorCode.INVALID_INPUT, "Loyalty points cannot be negative.")
        previous = user.membership_level
        user.add_loyalty_points(points)
        if user.membership_level is not previous:
            logger.info("Membership level changed", username=username,
                        old=previous.value, new=user.membership_level.value)
        return Result.ok(user)

    def change_role(self, actor, target_username, new_role) -> Result:
        """Only a registered admin may change roles. Admins may demote themselves."""
        if actor is None or self._users.get(actor.username) is not actor or not actor.is_admin:
            return Result.fail(ErrorCode.UNAUTHORIZED, "Only administrators can change user roles.")
        if not isinstance(new_role, UserRole):
            return Result.fail(ErrorCode.INVALID_INPUT, "Role must be Admin or Customer.")
        target = self._users.get(target_username)
        if target is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"User {target_username} does not exist.")
        target._role = new_role
        logger.info("User role changed", by=actor.username, username=target_username, role=new_role.value)
        return Result.ok(target)

    def get(self, username):
        return self._users.get(username)

    def list(self):
        return list(self._users.values())

    def __iter__(self):
        return iter(list(self._users.values()))

    def __len__(self):
        return len(self._users)


class CartStore:
    def __init__(self):
        self._carts = {}

    def cart_for(self, username):
        return self._carts.setdefault(username, ShoppingCart())

    def get(self, username):
        return self._carts.get(username)

    def __len__(self):
        return len(self._carts)


class WishlistStore:
    """Per-user ordered ISBN lists, resolved against the catalog when read."""
    def __init__(self, catalog):
        self._catalog = catalog
        self._lists = {}

    def add(self, username, isbn) -> Result:
        book = self._catalog.get(isbn)
        if book is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"No book with ISBN {isbn}.")
        wishlist = self._lists.setdefault(username, [])
        if isbn in wishlist:
            return Result.fail(ErrorCode.ALREADY_EXISTS, f"{book.title} is already in the wishlist.")
        wishlist.append(isbn)
        logger.info("Wishlist item added", username=username, isbn=isbn)
        return Result.ok(book)

    def remove(self, username, isbn) -> Result:
        wishlist = self._lists.get(username, [])
        if isbn not in wishlist:
            return Result.fail(ErrorCode.NOT_FOUND, f"{isbn} is not in the wishlist.")
        wishlist.remove(isbn)
        logger.info("Wishlist item removed", username=username, isbn=isbn)
        return Result.ok(isbn)

    def list(self, username):
        books = (self._catalog.get(isbn) for isbn in self._lists.get(username, []))
        return [book for book in books if book is not None]

    def __len__(self):
        return len(self._lists)


class OrderLedger:
    """Append-only list of orders. Ids start at 1 and are never reused."""
    def __init__(self):
        self._orders = []
        self._next_id = 1

    def append(self, username, book, quantity, created_at=None):
        order = Order(self._next_id, username, book, quantity, created_at)
        self._next_id += 1
        self._orders.append(order)
        return order

    def find(self, order_id, username):
        return next(
            (o for o in self._orders if o.order_id == order_id and o.username == username),
            None,
        )

    def for_user(self, username):
        return [o for o in self._orders if o.username == username]

    def active(self):
        return [o for o in self._orders if o.is_active]

    def __iter__(self):
        return iter(tuple(self._orders))

    def __len__(self):
        return len(self._orders)


class Market:
    """
    Facade over the catalog, accounts, carts, wishlists and order ledger.
    One instance per process; pass it to whatever needs it.
    """
    def __init__(self, payments=None, notifier=None, clock=None, data_file="bookmarket.dat"):
        self.catalog = Catalog()
        self.accounts = AccountRegistry()
        self.carts = CartStore()
        self.wishlists = WishlistStore(self.catalog)
        self.orders = OrderLedger()
        self.payments = payments or PaymentGateway()
        self.notifier = notifier or NotificationService()
        self.clock = clock or datetime.datetime.now
        self.data_file = data_file

    # ---------- Catalog & reviews ---------- #

    def add_book(self, isbn, title, author, price, quantity, genre, publisher) -> Result:
        try:
            book = Book(isbn, title, author, price, quantity, genre, publisher)
        except (ArithmeticError, TypeError, ValueError) as exc:
            return Result.fail(ErrorCode.INVALID_INPUT, f"Invalid book data: {exc}")
        return self.catalog.add(book)

    def add_review(self, username, isbn, rating, text="") -> Result:
        if self.accounts.get(username) is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"User {username} does not exist.")
        book = self.catalog.get(isbn)
        if book is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"No book with ISBN {isbn}.")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            return Result.fail(ErrorCode.INVALID_INPUT, "Rating must be a whole number from 1 to 5.")
        review = Review(username, rating, sanitize_text(text), self.clock())
        book.add_review(review)
        logger.info("Review added", username=username, isbn=isbn, rating=rating)
        return Result.ok(review)

    # ---------- Orders ---------- #

    def place_order(self, username, isbn, quantity) -> Result:
        user = self.accounts.get(username)
        if user is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"User {username} does not exist.")
        book = self.catalog.get(isbn)
        if book is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"No book with ISBN {isbn}.")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            return Result.fail(ErrorCode.INVALID_INPUT, "Order quantity must be a positive whole number.")
        if book.quantity < quantity:
            return Result.fail(ErrorCode.INSUFFICIENT_STOCK,
                               f"Insufficient stock for {book.title}: {book.quantity} left.")

        total = book.price * quantity
        payment = self.payments.process_payment(total)
        if not payment['success']:
            logger.warning("Payment declined", username=username, isbn=isbn, amount=str(total))
            return Result.fail(ErrorCode.PAYMENT_DECLINED, payment['message'])

        order = self._record_order(user, book, quantity)
        self._notify(username, f"Your order has been placed! Order number: {order.order_id}")
        return Result.ok(order)

    def checkout_cart(self, username) -> Result:
        """Turn every cart line into an order, all or nothing, with a single payment."""
        user = self.accounts.get(username)
        if user is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"User {username} does not exist.")
        cart = self.carts.get(username)
        if cart is None or cart.is_empty():
            return Result.fail(ErrorCode.INVALID_STATE, "Your cart is empty.")

        for item in cart.get_items():
            # The line must still point at the catalog's current record for that ISBN
            if self.catalog.get(item.book.isbn) is not item.book:
                return Result.fail(ErrorCode.NOT_FOUND, f"{item.book.title} is no longer sold.")
            if item.book.quantity < item.quantity:
                return Result.fail(ErrorCode.INSUFFICIENT_STOCK,
                                   f"Insufficient stock for {item.book.title}: {item.book.quantity} left.")

        total = cart.get_total_price()
        payment = self.payments.process_payment(total)
        if not payment['success']:
            logger.warning("Payment declined", username=username, amount=str(total))
            return Result.fail(ErrorCode.PAYMENT_DECLINED, payment['message'])

        orders = [self._record_order(user, item.book, item.quantity) for item in cart.get_items()]
        cart.clear()
        ids = ", ".join(str(o.order_id) for o in orders)
        self._notify(username, f"Your orders have been placed! Order numbers: {ids}")
        return Result.ok(orders)

    def _record_order(self, user, book, quantity):
        book.take_stock(quantity)
        order = self.orders.append(user.username, book, quantity, self.clock())
        # One point per full $10 spent
        self.accounts.add_loyalty_points(user.username, int(order.total_price // 10))
        logger.info("Order placed", order_id=order.order_id, username=user.username,
                    isbn=book.isbn, quantity=quantity, total=str(order.total_price))
        return order

    def _eligible_order(self, username, order_id):
        order = self.orders.find(order_id, username)
        if order is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"Order #{order_id} not found for {username}.")
        if not order.is_active:
            return Result.fail(ErrorCode.INVALID_STATE,
                               f"Order #{order_id} is already {order.status.value.lower()}.")
        return Result.ok(order)

    def cancel_order(self, username, order_id) -> Result:
        found = self._eligible_order(username, order_id)
        if not found:
            return found
        order = found.value
        order.mark_cancelled()
        order.book.restock(order.quantity)
        logger.info("Order cancelled", order_id=order_id, username=username)
        self._notify(username, f"Your order has been cancelled. Order number: {order_id}")
        return Result.ok(order)

    def return_order(self, username, order_id) -> Result:
        found = self._eligible_order(username, order_id)
        if not found:
            return found
        order = found.value
        refund = self.payments.process_refund(order.total_price)
        if not refund['success']:
            logger.warning("Refund declined", order_id=order_id, username=username)
            return Result.fail(ErrorCode.PAYMENT_DECLINED, refund['message'])
        order.mark_returned()
        order.book.restock(order.quantity)
        logger.info("Order returned", order_id=order_id, username=username)
        self._notify(username, f"Your order has been returned. Order number: {order_id}")
        return Result.ok(order)

    def orders_for(self, username):
        return self.orders.for_user(username)

    def iter_orders(self):
        return iter(self.orders)

    def iter_users(self):
        return iter(self.accounts)

    def _notify(self, username, message):
        try:
            self.notifier.notify(username, message)
        except Exception:
            logger.exception("Notification failed", username=username)

    # ---------- Carts & wishlists ---------- #

    def add_to_cart(self, username, isbn, quantity=1) -> Result:
        book = self.catalog.get(isbn)
        if book is None:
            return Result.fail(ErrorCode.NOT_FOUND, f"No book with ISBN {isbn}.")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            return Result.fail(ErrorCode.INVALID_INPUT, "Quantity must be at least 1.")
        cart = self.carts.cart_for(username)
        cart.add_item(book, quantity)
        return Result.ok(cart)

    def update_cart(self, username, isbn, quantity) -> Result:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            return Result.fail(ErrorCode.INVALID_INPUT, "Quantity must be a whole number.")
        cart = self.carts.cart_for(username)
        if not cart.update_item(isbn, quantity):
            return Result.fail(ErrorCode.NOT_FOUND, f"{isbn} is not in the cart.")
        return Result.ok(cart)

    def remove_from_cart(self, username, isbn) -> Result:
        cart = self.carts.cart_for(username)
        if not cart.remove_item(isbn):
            return Result.fail(ErrorCode.NOT_FOUND, f"{isbn} is not in the cart.")
        return Result.ok(cart)

    def view_cart(self, username):
        return self.carts.cart_for(username)

    def add_to_wishlist(self, username, isbn) -> Result:
        return self.wishlists.add(username, isbn)

    def remove_from_wishlist(self, username, isbn) -> Result:
        return self.wishlists.remove(username, isbn)

    def view_wishlist(self, username):
        return self.wishlists.list(username)

    # ---------- Recommendations & admin ---------- #

    def recommended_books(self, username):
        genres = {o.book.genre for o in self.orders.for_user(username) if o.is_active}
        candidates = [b for b in self.catalog if b.genre in genres and b.quantity > 0]
        # sorted() is stable, so equal ratings keep catalog order
        return sorted(candidates, key=lambda b: b.average_rating(), reverse=True)

    def system_health(self):
        exists = os.path.exists(self.data_file)
        return {
            'data_file': {
                'path': self.data_file,
                'exists': exists,
                'size': os.path.getsize(self.data_file) if exists else 0,
            },
            'users': len(self.accounts),
            'books': len(self.catalog),
            'active_orders': len(self.orders.active()),
            'carts': len(self.carts),
            'wishlists': len(self.wishlists),
        }
