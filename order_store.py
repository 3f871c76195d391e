"""
SQLite persistence for orders, admin accounts and the audit trail.

The store is the only thing that creates, updates or deletes an order. Each
operation opens its own connection, so a store instance can be shared between
request threads.
"""

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from secrets import token_hex
from typing import List, NamedTuple, Optional

from werkzeug.security import generate_password_hash

from errors import DuplicateOrderError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
DELIVERED = "delivered"
CANCELLED = "cancelled"
ORDER_STATUSES = (PENDING, CONFIRMED, DELIVERED, CANCELLED)

# a prior order in one of these states no longer blocks a new one
RESOLVED_STATUSES = (CONFIRMED, DELIVERED)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_PAGE = 10000

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    mobile TEXT NOT NULL,
    address TEXT NOT NULL,
    products TEXT NOT NULL,
    sizes TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity >= 1),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'confirmed', 'delivered', 'cancelled')),
    location TEXT,
    price INTEGER,
    delivery_charge INTEGER,
    total INTEGER,
    event_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_mobile_created ON orders (mobile, created_at);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status);

CREATE TABLE IF NOT EXISTS admins (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    email TEXT,
    password_hash TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actor_type TEXT NOT NULL,
    actor_id INTEGER,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT,
    details TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def generate_order_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    token = token_hex(5).upper()
    return f"ORD-{stamp}-{token}"


@dataclass
class OrderDraft:
    name: str
    mobile: str
    address: str
    products: List[str]
    sizes: List[str]
    quantity: int
    location: Optional[str] = None
    price: Optional[int] = None
    delivery_charge: Optional[int] = None
    total: Optional[int] = None
    event_id: Optional[str] = None

    def log_context(self):
        # enough to diagnose a failed write without the customer's number
        return {
            "name": self.name,
            "mobile_suffix": self.mobile[-3:],
            "products": self.products,
            "sizes": self.sizes,
            "quantity": self.quantity,
            "location": self.location,
            "total": self.total,
        }


@dataclass
class Order:
    id: str
    name: str
    mobile: str
    address: str
    products: List[str]
    sizes: List[str]
    quantity: int
    status: str
    created_at: str
    updated_at: str
    location: Optional[str] = None
    price: Optional[int] = None
    delivery_charge: Optional[int] = None
    total: Optional[int] = None
    event_id: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            name=row["name"],
            mobile=row["mobile"],
            address=row["address"],
            products=json.loads(row["products"]),
            sizes=json.loads(row["sizes"]),
            quantity=row["quantity"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            location=row["location"],
            price=row["price"],
            delivery_charge=row["delivery_charge"],
            total=row["total"],
            event_id=row["event_id"],
        )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "mobile": self.mobile,
            "address": self.address,
            "products": list(self.products),
            "sizes": list(self.sizes),
            "quantity": self.quantity,
            "status": self.status,
            "location": self.location,
            "price": self.price,
            "deliveryCharge": self.delivery_charge,
            "total": self.total,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class DuplicateCheck(NamedTuple):
    blocked: bool
    order_id: Optional[str] = None


class AdminRecord(NamedTuple):
    id: int
    username: str
    email: Optional[str]
    password_hash: str


def is_blocking(order: Optional[Order]) -> bool:
    return order is not None and order.status not in RESOLVED_STATUSES


def check_duplicate(store, mobile: str) -> DuplicateCheck:
    """Read-only duplicate check for ``mobile``; see ``is_blocking``."""
    latest = store.find_most_recent_by_mobile(mobile)
    if is_blocking(latest):
        return DuplicateCheck(True, latest.id)
    return DuplicateCheck(False)


def validate_draft(draft: OrderDraft):
    errors = {}
    if not isinstance(draft.quantity, int) or isinstance(draft.quantity, bool) or draft.quantity < 1:
        errors["quantity"] = "Quantity must be at least 1."
    if not draft.products:
        errors["product"] = "Select at least one product."
    if not draft.sizes:
        errors["size"] = "Select at least one size."
    if errors:
        raise ValidationError(errors)


def ensure_column(conn, table_name: str, column_name: str, column_type: str):
    cursor = conn.execute(f"PRAGMA table_info({table_name})")
    columns = {row[1] for row in cursor.fetchall()}
    if column_name not in columns:
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")


class OrderStore:
    def __init__(self, database_path: str):
        self.database_path = database_path

    def connect(self):
        conn = sqlite3.connect(self.database_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        with closing(self.connect()) as conn:
            conn.executescript(SCHEMA)
            for column_name, column_type in (
                ("location", "TEXT"),
                ("price", "INTEGER"),
                ("delivery_charge", "INTEGER"),
                ("total", "INTEGER"),
                ("event_id", "TEXT"),
            ):
                ensure_column(conn, "orders", column_name, column_type)

    # -- orders -------------------------------------------------------------

    def create(self, draft: OrderDraft) -> Order:
        validate_draft(draft)
        return self._write(draft, lambda conn: self._insert(conn, draft))

    def create_unless_duplicate(self, draft: OrderDraft) -> Order:
        """
        Insert ``draft`` unless the newest order for the same mobile number is
        still unresolved.

        The check and the insert share one ``BEGIN IMMEDIATE`` transaction,
        which takes SQLite's write lock up front, so two concurrent
        submissions for one number are serialized and the second one sees the
        first one's row.
        """
        validate_draft(draft)

        def guarded_insert(conn):
            latest = self._most_recent_by_mobile(conn, draft.mobile)
            if is_blocking(latest):
                logger.info("Rejected duplicate order for mobile ending %s (open order %s)",
                            draft.mobile[-3:], latest.id)
                raise DuplicateOrderError()
            return self._insert(conn, draft)

        return self._write(draft, guarded_insert)

    def _write(self, draft: OrderDraft, operation) -> Order:
        try:
            with closing(self.connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    order = operation(conn)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error:
            logger.exception("Failed to store order draft %s", draft.log_context())
            raise StorageError("Failed to store order")
        logger.info("Created order %s", order.id)
        return order

    def _insert(self, conn, draft: OrderDraft) -> Order:
        now = utc_now()
        order = Order(
            id=generate_order_id(),
            name=draft.name,
            mobile=draft.mobile,
            address=draft.address,
            products=list(draft.products),
            sizes=list(draft.sizes),
            quantity=draft.quantity,
            status=PENDING,
            created_at=now,
            updated_at=now,
            location=draft.location,
            price=draft.price,
            delivery_charge=draft.delivery_charge,
            total=draft.total,
            event_id=draft.event_id,
        )
        conn.execute(
            """
            INSERT INTO orders (
                id, name, mobile, address, products, sizes, quantity, status,
                location, price, delivery_charge, total, event_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.id,
                order.name,
                order.mobile,
                order.address,
                json.dumps(order.products),
                json.dumps(order.sizes),
                order.quantity,
                order.status,
                order.location,
                order.price,
                order.delivery_charge,
                order.total,
                order.event_id,
                order.created_at,
                order.updated_at,
            ),
        )
        return order

    def _most_recent_by_mobile(self, conn, mobile: str) -> Optional[Order]:
        row = conn.execute(
            """
            SELECT * FROM orders
            WHERE mobile = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (mobile,),
        ).fetchone()
        return Order.from_row(row) if row else None

    def find_most_recent_by_mobile(self, mobile: str) -> Optional[Order]:
        with self._reading("find order by mobile") as conn:
            return self._most_recent_by_mobile(conn, mobile)

    def get(self, order_id: str) -> Order:
        with self._reading("load order") as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if not row:
            raise NotFoundError("Order not found")
        return Order.from_row(row)

    def list(self, status: Optional[str] = None, search: Optional[str] = None,
             page: int = 1, limit: int = DEFAULT_PAGE_SIZE):
        """
        Return ``(orders, total)`` for one page, newest first.

        ``status`` of ``None`` or ``"all"`` disables the status filter.
        ``search`` matches a case-insensitive substring of the name, a plain
        substring of the mobile number, or a substring of the order id.
        """
        clauses = []
        params = []
        if status and status != "all":
            if status not in ORDER_STATUSES:
                raise ValidationError({"status": f"Unknown status: {status}"})
            clauses.append("status = ?")
            params.append(status)
        if search:
            clauses.append(
                "(instr(lower(name), lower(?)) > 0 OR instr(mobile, ?) > 0 OR instr(id, ?) > 0)"
            )
            params.extend([search, search, search])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        page = max(page, 1)
        if page > MAX_PAGE:
            raise ValidationError({"page": f"Page must be at most {MAX_PAGE}."})
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        with self._reading("list orders") as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM orders {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM orders {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, (page - 1) * limit],
            ).fetchall()
        return [Order.from_row(row) for row in rows], total

    def update_status(self, order_id: str, status: str) -> Order:
        # any status may follow any other; admins can always override
        if status not in ORDER_STATUSES:
            raise ValidationError({"status": f"Status must be one of: {', '.join(ORDER_STATUSES)}"})
        with self._writing("update order status") as conn:
            cursor = conn.execute(
                "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?",
                (status, utc_now(), order_id),
            )
            updated = cursor.rowcount
        if not updated:
            raise NotFoundError("Order not found")
        logger.info("Order %s status set to %s", order_id, status)
        return self.get(order_id)

    def delete(self, order_id: str):
        with self._writing("delete order") as conn:
            deleted = conn.execute("DELETE FROM orders WHERE id = ?", (order_id,)).rowcount
        if not deleted:
            raise NotFoundError("Order not found")
        logger.info("Deleted order %s", order_id)

    def stats(self):
        with self._reading("compute order stats") as conn:
            counts = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS count FROM orders GROUP BY status"
                ).fetchall()
            }
            today = conn.execute(
                "SELECT COUNT(*) FROM orders "
                "WHERE date(created_at, 'localtime') = date('now', 'localtime')"
            ).fetchone()[0]
        return {
            "totalOrders": sum(counts.values()),
            "pendingOrders": counts.get(PENDING, 0),
            "confirmedOrders": counts.get(CONFIRMED, 0),
            "deliveredOrders": counts.get(DELIVERED, 0),
            "cancelledOrders": counts.get(CANCELLED, 0),
            "todayOrders": today,
        }

    # -- audit trail ----------------------------------------------------------

    def log_audit_event(self, actor_type: str, actor_id, action: str,
                        entity_type: str, entity_id, details: str = ""):
        with self._writing("write audit log") as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (actor_type, actor_id, action, entity_type, entity_id, details)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (actor_type, actor_id, action, entity_type, entity_id, details),
            )

    def audit_events(self, entity_id=None):
        query = "SELECT * FROM audit_logs"
        params = ()
        if entity_id is not None:
            query += " WHERE entity_id = ?"
            params = (entity_id,)
        with self._reading("read audit log") as conn:
            rows = conn.execute(query + " ORDER BY id DESC", params).fetchall()
        return [dict(row) for row in rows]

    # -- admins ---------------------------------------------------------------

    def find_admin(self, username: str) -> Optional[AdminRecord]:
        with self._reading("load admin") as conn:
            row = conn.execute(
                "SELECT id, username, email, password_hash FROM admins WHERE username = ?",
                (username,),
            ).fetchone()
        return AdminRecord(*row) if row else None

    def ensure_admin(self, username: str, password: str, email: Optional[str] = None):
        if self.find_admin(username):
            return
        with self._writing("create admin") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO admins (username, email, password_hash) VALUES (?, ?, ?)",
                (username, email, generate_password_hash(password)),
            )
        logger.info("Created admin user %s", username)

    # -- connection helpers ---------------------------------------------------

    def _reading(self, what: str):
        return _Connection(self, what, write=False)

    def _writing(self, what: str):
        return _Connection(self, what, write=True)


class _Connection:
    """Context manager wrapping one connection; sqlite errors become StorageError."""

    def __init__(self, store: OrderStore, what: str, write: bool):
        self.store = store
        self.what = what
        self.write = write
        self.conn = None

    def __enter__(self):
        try:
            self.conn = self.store.connect()
            if self.write:
                self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            if self.conn is not None:
                self.conn.close()
            logger.exception("Failed to %s", self.what)
            raise StorageError(f"Failed to {self.what}")
        return self.conn

    def __exit__(self, exc_type, exc, tb):
        try:
            if self.write:
                self.conn.execute("COMMIT" if exc_type is None else "ROLLBACK")
        except sqlite3.Error:
            logger.exception("Failed to %s", self.what)
            raise StorageError(f"Failed to {self.what}")
        finally:
            self.conn.close()
        if exc_type is not None and issubclass(exc_type, sqlite3.Error):
            logger.error("Failed to %s: %s", self.what, exc)
            raise StorageError(f"Failed to {self.what}") from exc
        return False
