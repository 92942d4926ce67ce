"""Initialize a tiny demo SQLite DB (sample.db) for DB Explorer.

Usage:
  python scripts/init_sqlite.py
  curl -X POST localhost:5000/db/connect -H 'Content-Type: application/json' \
       -d '{"db_url": "sqlite:///sample.db"}'
"""

import sqlite3
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
DB_PATH = ROOT / "sample.db"

def main():
    conn = sqlite3.connect(DB_PATH)
    cur = conn.cursor()

    # Drop & recreate tables for repeatable runs
    cur.executescript("""
    DROP TABLE IF EXISTS order_items;
    DROP TABLE IF EXISTS orders;
    DROP TABLE IF EXISTS products;
    DROP TABLE IF EXISTS customers;

    CREATE TABLE customers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        email TEXT UNIQUE,
        phone TEXT,
        city TEXT,
        signup_date DATE NOT NULL
    );

    CREATE TABLE products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sku TEXT NOT NULL,
        title TEXT NOT NULL,
        price_usd REAL NOT NULL
    );

    CREATE TABLE orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        customer_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        FOREIGN KEY(customer_id) REFERENCES customers(id)
    );

    CREATE TABLE order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL,
        product_id INTEGER NOT NULL,
        quantity INTEGER NOT NULL,
        FOREIGN KEY(order_id) REFERENCES orders(id),
        FOREIGN KEY(product_id) REFERENCES products(id)
    );
    """)

    customers = [
        ("Alice", "Martin", "alice@example.com", "+1 415 555 0101", "Lyon", "2025-01-14"),
        ("Bob", "Nguyen", "bob@example.com", "+1 415 555 0102", "Austin", "2025-03-02"),
        ("Chen", "Wei", "chen.wei@example.com", "+1 415 555 0103", "Toronto", "2025-06-21"),
    ]
    cur.executemany(
        "INSERT INTO customers (first_name, last_name, email, phone, city, signup_date) VALUES (?, ?, ?, ?, ?, ?)",
        customers,
    )

    products = [("SKU-100", "Desk lamp", 39.0), ("SKU-200", "Standing desk", 420.0), ("SKU-300", "Monitor arm", 89.5)]
    cur.executemany("INSERT INTO products (sku, title, price_usd) VALUES (?, ?, ?)", products)

    orders = [(1, "shipped", "2025-12-01 10:12:00"), (2, "pending", "2025-12-03 16:40:00"), (1, "cancelled", "2025-12-09 08:05:00")]
    cur.executemany("INSERT INTO orders (customer_id, status, created_at) VALUES (?, ?, ?)", orders)

    items = [(1, 1, 2), (1, 3, 1), (2, 2, 1), (3, 1, 1)]
    cur.executemany("INSERT INTO order_items (order_id, product_id, quantity) VALUES (?, ?, ?)", items)

    conn.commit()
    conn.close()
    print(f"Created {DB_PATH}")

if __name__ == "__main__":
    main()
