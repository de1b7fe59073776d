"""
Read-only sales and inventory reports over a Market.

Each report returns plain data; the render_* helpers turn that data into the
text shown to administrators. Only active orders count toward revenue and units.
"""
from decimal import Decimal

from models import format_money

ZERO = Decimal("0.00")


def _units_by_book(market):
    """Units sold per book, in the order each book first sold."""
    units = {}
    for order in market.iter_orders():
        if order.is_active:
            book, sold = units.get(order.book.isbn, (order.book, 0))
            units[order.book.isbn] = (book, sold + order.quantity)
    return list(units.values())


def _ranked(rows):
    # sorted() is stable: ties keep first-sold order
    return sorted(rows, key=lambda row: row[1], reverse=True)


def sales_report(market):
    all_orders = list(market.iter_orders())
    revenue = ZERO
    units_by_title = {}
    for order in all_orders:
        if not order.is_active:
            continue
        revenue += order.total_price
        units_by_title[order.book.title] = units_by_title.get(order.book.title, 0) + order.quantity
    return {
        'total_orders': len(all_orders),
        'total_revenue': revenue,
        'units_by_title': _ranked(units_by_title.items()),
    }


def monthly_revenue(market):
    months = {}
    for order in market.iter_orders():
        if order.is_active:
            key = order.created_at.strftime('%Y-%m')
            months[key] = months.get(key, ZERO) + order.total_price
    return sorted(months.items())


def best_sellers(market, limit=5):
    return _ranked(_units_by_book(market))[:limit]


def low_stock(market, threshold):
    return [book for book in market.catalog if book.quantity <= threshold]


def fast_selling(market, threshold):
    return [(book, sold) for book, sold in _ranked(_units_by_book(market)) if sold >= threshold]


# ---------- Text rendering ---------- #

def render_sales_report(report):
    if not report['total_orders']:
        return "No sales recorded yet."
    lines = [
        "=== Sales Report ===",
        f"Total orders: {report['total_orders']}",
        f"Total revenue: {format_money(report['total_revenue'])}",
        "=== Units Sold by Title ===",
    ]
    lines += [f"{title} : {units} sold" for title, units in report['units_by_title']]
    return "\n".join(lines)


def render_monthly_revenue(rows):
    if not rows:
        return "No sales recorded yet."
    lines = ["=== Monthly Revenue ==="]
    lines += [f"{month} : {format_money(total)}" for month, total in rows]
    return "\n".join(lines)


def render_best_sellers(rows):
    if not rows:
        return "No books sold yet."
    lines = [f"=== Best Sellers (Top {len(rows)}) ==="]
    lines += [f"{rank}. {book.title} - {sold} sold" for rank, (book, sold) in enumerate(rows, start=1)]
    return "\n".join(lines)


def render_low_stock(books, threshold):
    lines = [f"=== Low Stock (threshold: {threshold}) ==="]
    lines += [str(book) for book in books] or ["No books are running low."]
    return "\n".join(lines)


def render_fast_selling(rows, threshold):
    lines = [f"=== Fast Selling (at least {threshold} sold) ==="]
    lines += [f"{book} - sold: {sold}" for book, sold in rows] or ["No fast-selling books."]
    return "\n".join(lines)


def full_report(market, low_stock_threshold=5, fast_selling_threshold=3, limit=5):
    """The admin sales screen: every report rendered in one block."""
    return "\n\n".join([
        render_sales_report(sales_report(market)),
        render_monthly_revenue(monthly_revenue(market)),
        render_best_sellers(best_sellers(market, limit)),
        render_low_stock(low_stock(market, low_stock_threshold), low_stock_threshold),
        render_fast_selling(fast_selling(market, fast_selling_threshold), fast_selling_threshold),
    ])
