"""CSV exports of the order ledger and the user registry."""
import csv

import structlog

logger = structlog.get_logger(__name__)

ORDER_HEADER = ["Order ID", "Username", "Book Title", "Quantity", "Total Price", "Date", "Status"]
USER_HEADER = ["Username", "Role", "Membership Level", "Loyalty Points"]


def order_rows(market):
    for order in market.iter_orders():
        status = "Completed" if order.is_active else order.status.value
        yield [
            order.order_id,
            order.username,
            order.book.title,
            order.quantity,
            f"{order.total_price:.2f}",
            order.created_at.strftime('%Y-%m-%d'),
            status,
        ]


def user_rows(market):
    for user in market.iter_users():
        yield [user.username, user.role.value, user.membership_level.value, user.loyalty_points]


def write_orders(market, fh):
    """Write the order ledger as CSV to an open text file; returns the row count."""
    return _write_rows(fh, ORDER_HEADER, order_rows(market))


def write_users(market, fh):
    return _write_rows(fh, USER_HEADER, user_rows(market))


def _write_rows(fh, header, rows):
    writer = csv.writer(fh)
    writer.writerow(header)
    count = 0
    for row in rows:
        writer.writerow(row)
        count += 1
    return count


def _export(path, write, market):
    try:
        with open(path, "w", newline="", encoding="utf-8") as fh:
            count = write(market, fh)
    except OSError:
        logger.exception("CSV export failed", path=str(path))
        raise
    logger.info("CSV exported", path=str(path), rows=count)
    return count


def export_orders_csv(market, path):
    return _export(path, write_orders, market)


def export_users_csv(market, path):
    return _export(path, write_users, market)
