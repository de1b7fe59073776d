import io
from functools import wraps

import structlog
from flask import Flask, Response, current_app, jsonify, request, session

import reports
from config import Config
from exports import write_orders, write_users
from logging_config import configure_logging
from market import Market
from models import ErrorCode, NotificationService, PaymentGateway, UserRole, sanitize_text

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.INVALID_CREDENTIAL: 401,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.PAYMENT_DECLINED: 402,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.INVALID_INPUT: 400,
}


def seed_demo_data(market):
    market.add_book("111", "Java Fundamentals", "Namgung Sung", 33.00, 10, "Programming", "Dowoo")
    market.add_book("222", "Effective Java", "Joshua Bloch", 38.00, 5, "Programming", "Insight")
    market.add_book("333", "The Great Gatsby", "F. Scott Fitzgerald", 10.99, 7, "Fiction", "Scribner")
    market.add_book("444", "Moby Dick", "Herman Melville", 12.49, 3, "Adventure", "Harper")
    market.accounts.register("admin", "admin", UserRole.ADMIN)
    market.accounts.register("user1", "1111", UserRole.CUSTOMER)


def create_app(config_object=Config, market=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app.config["LOG_LEVEL"])

    if market is None:
        market = Market(
            payments=PaymentGateway(delay=app.config["PAYMENT_DELAY"]),
            notifier=NotificationService(),
            data_file=app.config["DATA_FILE"],
        )
        if app.config.get("SEED_DEMO_DATA"):
            seed_demo_data(market)
    app.extensions["market"] = market

    register_routes(app)
    return app


# ---------- Helpers ---------- #

def get_market() -> Market:
    return current_app.extensions["market"]


def get_current_user():
    if 'username' in session:
        return get_market().accounts.get(session['username'])
    return None


def payload():
    """JSON body or form data, whichever the client sent."""
    return request.get_json(silent=True) or request.form


def parse_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def error_response(error, message):
    return jsonify({'success': False, 'error': error.value, 'message': message}), ERROR_STATUS[error]


def result_response(result, serialize=None, status=200):
    if not result:
        return error_response(result.error, result.message)
    body = {'success': True, 'message': result.message}
    if serialize is not None:
        body['data'] = serialize(result.value)
    return jsonify(body), status


def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if get_current_user() is None:
            return error_response(ErrorCode.UNAUTHORIZED, 'Please log in to access this page.')
        return f(*args, **kwargs)
    return wrapper


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        user = get_current_user()
        if user is None or not user.is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Administrator access required.')
        return f(*args, **kwargs)
    return wrapper


def to_dict(obj):
    return obj.to_dict()


def to_dicts(items):
    return [item.to_dict() for item in items]


# ---------- Routes ---------- #

def register_routes(app):

    @app.route('/')
    @app.route('/books')
    def list_books():
        query = sanitize_text(request.args.get('q'))
        market = get_market()
        books = market.catalog.search(query) if query else market.catalog.list()
        return jsonify({'books': to_dicts(books), 'count': len(books)})

    @app.route('/books/<isbn>')
    def book_detail(isbn):
        book = get_market().catalog.get(isbn)
        if book is None:
            return error_response(ErrorCode.NOT_FOUND, 'Book not found!')
        data = book.to_dict()
        data['reviews'] = to_dicts(book.reviews)
        return jsonify(data)

    @app.route('/books', methods=['POST'])
    @admin_required
    def add_book():
        data = payload()
        fields = ['isbn', 'title', 'author', 'price', 'quantity', 'genre', 'publisher']
        missing = [f for f in fields if data.get(f) in (None, '')]
        if missing:
            return error_response(ErrorCode.INVALID_INPUT, f'Please fill in: {", ".join(missing)}.')
        result = get_market().add_book(*(data.get(f) for f in fields))
        return result_response(result, to_dict, status=201)

    @app.route('/books/<isbn>', methods=['PATCH'])
    @admin_required
    def update_book(isbn):
        fields = dict(payload().items())
        if 'isbn' in fields:
            return error_response(ErrorCode.INVALID_INPUT, 'The ISBN of a book cannot be changed.')
        result = get_market().catalog.update(isbn, **fields)
        return result_response(result, to_dict)

    @app.route('/books/<isbn>', methods=['DELETE'])
    @admin_required
    def remove_book(isbn):
        result = get_market().catalog.remove(isbn)
        return result_response(result, to_dict)

    @app.route('/books/<isbn>/reviews', methods=['POST'])
    @login_required
    def add_review(isbn):
        data = payload()
        rating = parse_int(data.get('rating'))
        if rating is None:
            return error_response(ErrorCode.INVALID_INPUT, 'Rating must be a whole number from 1 to 5.')
        result = get_market().add_review(session['username'], isbn, rating, data.get('text', ''))
        return result_response(result, to_dict, status=201)

    # -------- User Account Management -------- #

    @app.route('/register', methods=['POST'])
    def register():
        data = payload()
        username = sanitize_text(data.get('username'))
        password = data.get('password') or ''
        result = get_market().accounts.register(username, password, UserRole.CUSTOMER)
        if result:
            session['username'] = result.value.username
        return result_response(result, to_dict, status=201)

    @app.route('/login', methods=['POST'])
    def login():
        data = payload()
        result = get_market().accounts.authenticate(data.get('username'), data.get('password') or '')
        if result:
            session['username'] = result.value.username
        return result_response(result, to_dict)

    @app.route('/logout')
    def logout():
        session.pop('username', None)
        return jsonify({'success': True, 'message': 'Logged out successfully!'})

    @app.route('/account')
    @login_required
    def account():
        user = get_current_user()
        data = user.to_dict()
        data['orders'] = to_dicts(get_market().orders_for(user.username))
        return jsonify(data)

    @app.route('/update-profile', methods=['POST'])
    @login_required
    def update_profile():
        data = payload()
        result = get_market().accounts.change_password(
            session['username'], data.get('password') or '', data.get('new_password') or '')
        return result_response(result, to_dict)

    # -------- Cart -------- #

    @app.route('/cart')
    @login_required
    def view_cart():
        return jsonify(get_market().view_cart(session['username']).to_dict())

    @app.route('/add-to-cart', methods=['POST'])
    @login_required
    def add_to_cart():
        data = payload()
        quantity = parse_int(data.get('quantity', 1))
        result = get_market().add_to_cart(session['username'], sanitize_text(data.get('isbn')), quantity)
        return result_response(result, to_dict)

    @app.route('/update-cart', methods=['POST'])
    @login_required
    def update_cart():
        data = payload()
        quantity = parse_int(data.get('quantity'))
        if quantity is None:
            return error_response(ErrorCode.INVALID_INPUT, 'Quantity must be a whole number.')
        result = get_market().update_cart(session['username'], sanitize_text(data.get('isbn')), quantity)
        return result_response(result, to_dict)

    @app.route('/remove-from-cart', methods=['POST'])
    @login_required
    def remove_from_cart():
        result = get_market().remove_from_cart(session['username'], sanitize_text(payload().get('isbn')))
        return result_response(result, to_dict)

    @app.route('/clear-cart', methods=['POST'])
    @login_required
    def clear_cart():
        get_market().view_cart(session['username']).clear()
        return jsonify({'success': True, 'message': 'Cart cleared!'})

    @app.route('/checkout', methods=['POST'])
    @login_required
    def checkout():
        result = get_market().checkout_cart(session['username'])
        return result_response(result, to_dicts, status=201)

    # -------- Wishlist -------- #

    @app.route('/wishlist')
    @login_required
    def view_wishlist():
        return jsonify({'books': to_dicts(get_market().view_wishlist(session['username']))})

    @app.route('/wishlist', methods=['POST'])
    @login_required
    def add_to_wishlist():
        result = get_market().add_to_wishlist(session['username'], sanitize_text(payload().get('isbn')))
        return result_response(result, to_dict, status=201)

    @app.route('/wishlist/<isbn>', methods=['DELETE'])
    @login_required
    def remove_from_wishlist(isbn):
        result = get_market().remove_from_wishlist(session['username'], isbn)
        return result_response(result)

    # -------- Orders -------- #

    @app.route('/orders')
    @login_required
    def view_orders():
        return jsonify({'orders': to_dicts(get_market().orders_for(session['username']))})

    @app.route('/orders', methods=['POST'])
    @login_required
    def place_order():
        data = payload()
        quantity = parse_int(data.get('quantity', 1))
        if quantity is None:
            return error_response(ErrorCode.INVALID_INPUT, 'Quantity must be a whole number.')
        result = get_market().place_order(session['username'], sanitize_text(data.get('isbn')), quantity)
        return result_response(result, to_dict, status=201)

    @app.route('/orders/<int:order_id>/cancel', methods=['POST'])
    @login_required
    def cancel_order(order_id):
        return result_response(get_market().cancel_order(session['username'], order_id), to_dict)

    @app.route('/orders/<int:order_id>/return', methods=['POST'])
    @login_required
    def return_order(order_id):
        return result_response(get_market().return_order(session['username'], order_id), to_dict)

    @app.route('/recommendations')
    @login_required
    def recommendations():
        return jsonify({'books': to_dicts(get_market().recommended_books(session['username']))})

    # -------- Admin -------- #

    @app.route('/admin/users')
    @admin_required
    def list_users():
        return jsonify({'users': to_dicts(get_market().accounts.list())})

    @app.route('/admin/users/<username>/role', methods=['POST'])
    @admin_required
    def change_role(username):
        try:
            role = UserRole(payload().get('role'))
        except ValueError:
            return error_response(ErrorCode.INVALID_INPUT, 'Role must be Admin or Customer.')
        result = get_market().accounts.change_role(get_current_user(), username, role)
        return result_response(result, to_dict)

    @app.route('/admin/reports')
    @admin_required
    def admin_reports():
        market = get_market()
        low = parse_int(request.args.get('low_stock'))
        fast = parse_int(request.args.get('fast_selling'))
        low = current_app.config['LOW_STOCK_THRESHOLD'] if low is None else low
        fast = current_app.config['FAST_SELLING_THRESHOLD'] if fast is None else fast
        limit = current_app.config['BEST_SELLER_LIMIT']

        sales = reports.sales_report(market)
        return jsonify({
            'sales': {
                'total_orders': sales['total_orders'],
                'total_revenue': f"{sales['total_revenue']:.2f}",
                'units_by_title': [{'title': t, 'units': u} for t, u in sales['units_by_title']],
            },
            'monthly_revenue': [{'month': m, 'revenue': f"{r:.2f}"} for m, r in reports.monthly_revenue(market)],
            'best_sellers': [{'isbn': b.isbn, 'title': b.title, 'units': u}
                             for b, u in reports.best_sellers(market, limit)],
            'low_stock': to_dicts(reports.low_stock(market, low)),
            'fast_selling': [{'isbn': b.isbn, 'title': b.title, 'units': u}
                             for b, u in reports.fast_selling(market, fast)],
            'text': reports.full_report(market, low, fast, limit),
        })

    @app.route('/admin/health')
    @admin_required
    def health():
        return jsonify(get_market().system_health())

    @app.route('/admin/export/<kind>.csv')
    @admin_required
    def export_csv(kind):
        writers = {'orders': write_orders, 'users': write_users}
        if kind not in writers:
            return error_response(ErrorCode.NOT_FOUND, f'No export named {kind}.')
        buf = io.StringIO()
        writers[kind](get_market(), buf)
        logger.info("CSV download", kind=kind, username=session['username'])
        return Response(buf.getvalue(), mimetype='text/csv',
                        headers={'Content-Disposition': f'attachment; filename={kind}.csv'})


app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=app.config["PORT"])
