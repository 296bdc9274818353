"""SQLite store for commissioned nodes and provisioned identifiers.

Lets a restarted provisioner keep its address counter and refuse to
re-provision devices it already commissioned. Uses WAL mode so the web
server can read while the controller writes. All functions are
synchronous.
"""

import sqlite3
import time
from pathlib import Path

from mesh_provisioner.node_state import Node

DB_PATH = Path.cwd() / "mesh_nodes.db"


def get_connection() -> sqlite3.Connection:
    """Get a database connection with WAL mode and row factory."""
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    """Create tables if they don't exist."""
    conn = get_connection()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS nodes (
            address INTEGER PRIMARY KEY,
            identifier TEXT NOT NULL,
            provisioned_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS provisioned (
            identifier TEXT PRIMARY KEY,
            provisioned_at REAL NOT NULL
        );
    """)
    conn.commit()
    conn.close()


def save_node(node: Node):
    """Record a registered node and mark its identifier provisioned."""
    now = time.time()
    conn = get_connection()
    conn.execute(
        "INSERT OR IGNORE INTO nodes (address, identifier, provisioned_at) "
        "VALUES (?, ?, ?)",
        (node.address, node.identifier, now)
    )
    conn.execute(
        "INSERT OR IGNORE INTO provisioned (identifier, provisioned_at) VALUES (?, ?)",
        (node.identifier, now)
    )
    conn.commit()
    conn.close()


def load_nodes() -> list[Node]:
    """Nodes in the order they were commissioned."""
    conn = get_connection()
    rows = conn.execute(
        "SELECT address, identifier FROM nodes ORDER BY provisioned_at, address"
    ).fetchall()
    conn.close()
    return [Node(address=r["address"], identifier=r["identifier"]) for r in rows]


def load_provisioned() -> set[str]:
    conn = get_connection()
    rows = conn.execute("SELECT identifier FROM provisioned").fetchall()
    conn.close()
    return {r["identifier"] for r in rows}
