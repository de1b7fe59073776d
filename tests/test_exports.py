import csv
import io

import pytest

from exports import ORDER_HEADER, USER_HEADER, export_orders_csv, export_users_csv, write_orders


def read_csv(path):
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.reader(fh))


def test_export_orders(stocked_market, clock, tmp_path):
    clock.set(2024, 4, 2, 10, 30)
    stocked_market.place_order("u1", "B1", 2)
    second = stocked_market.place_order("u1", "B2", 1).value
    third = stocked_market.place_order("u1", "B3", 1).value
    stocked_market.cancel_order("u1", second.order_id)
    stocked_market.return_order("u1", third.order_id)

    path = tmp_path / "sales.csv"
    assert export_orders_csv(stocked_market, path) == 3
    rows = read_csv(path)
    assert rows[0] == ORDER_HEADER
    assert rows[1] == ["1", "u1", "Python Basics", "2", "20.00", "2024-04-02", "Completed"]
    assert rows[2][-1] == "Cancelled"
    assert rows[3][-1] == "Returned"


def test_export_users(stocked_market, tmp_path):
    stocked_market.accounts.add_loyalty_points("u1", 150)
    path = tmp_path / "users.csv"
    export_users_csv(stocked_market, path)
    assert read_csv(path) == [
        USER_HEADER,
        ["u1", "Customer", "Silver", "150"],
        ["admin", "Admin", "Normal", "0"],
    ]


def test_titles_with_commas_are_quoted(stocked_market):
    stocked_market.add_book("B9", "Eats, Shoots & Leaves", "Truss", 12, 3, "Grammar", "Gotham")
    stocked_market.place_order("u1", "B9", 1)
    buf = io.StringIO()
    write_orders(stocked_market, buf)
    assert '"Eats, Shoots & Leaves"' in buf.getvalue()


def test_export_to_missing_directory_raises(stocked_market, tmp_path):
    with pytest.raises(OSError):
        export_orders_csv(stocked_market, tmp_path / "missing" / "sales.csv")
