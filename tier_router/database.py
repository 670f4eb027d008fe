"""
Database module for cl-fee-tiers

Handles SQLite persistence for:
- Forward events (deduplicated by content hash)
- Peer groups, their members and running totals
- Peer profiles and the peer event log
"""

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from .errors import DuplicateEventError, DuplicateMembershipError


class Database:
    """
    SQLite database manager for the fee tier plugin.

    Provides persistence for:
    - Forward events (the exactly-once ingestion ledger)
    - Peer group aggregates and membership
    - Peer profiles and peer log

    Thread Safety:
        Each thread gets its own connection (thread-local). Multi-statement
        writes go through transaction(), which issues BEGIN IMMEDIATE so two
        writers never interleave. Fiat totals are stored as decimal strings
        and summed in Python, so read-modify-write on a group must be
        serialized by the caller (see PeerGroupManager.lock()).
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._local = threading.local()
        self._all_connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create this thread's database connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode, explicit BEGIN for transactions
                timeout=30.0
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            self._local.tx_depth = 0
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Nested use joins the outer transaction; only the outermost block
        commits or rolls back.
        """
        conn = self._get_connection()
        if self._local.tx_depth > 0:
            self._local.tx_depth += 1
            try:
                yield conn
            finally:
                self._local.tx_depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.tx_depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.tx_depth = 0

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Forward events - one row per settled forward, keyed by content hash
        conn.execute("""
            CREATE TABLE IF NOT EXISTS forward_events (
                event_id TEXT PRIMARY KEY,
                node_public_key TEXT NOT NULL,
                in_channel TEXT NOT NULL,
                in_channel_node TEXT NOT NULL,
                out_channel TEXT NOT NULL,
                out_channel_node TEXT NOT NULL,
                amount_sats INTEGER NOT NULL,
                fee_sats INTEGER NOT NULL,
                usd_amount TEXT NOT NULL,
                usd_fee TEXT NOT NULL,
                routed_at_ms INTEGER NOT NULL,
                created_at_ms INTEGER NOT NULL
            )
        """)

        # Peer groups - running totals and current tier
        # usd columns hold decimal strings (exact arithmetic happens in Python)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS peer_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tier_min INTEGER NOT NULL,
                tier_max INTEGER,
                tier_fee_percent TEXT NOT NULL,
                total_sats_forwarded INTEGER NOT NULL DEFAULT 0,
                total_usd_forwarded TEXT NOT NULL DEFAULT '0',
                total_sats_fee INTEGER NOT NULL DEFAULT 0,
                total_usd_fee TEXT NOT NULL DEFAULT '0',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Group membership - node_id is the primary key, so a node can
        # belong to at most one group
        conn.execute("""
            CREATE TABLE IF NOT EXISTS peer_group_members (
                node_id TEXT PRIMARY KEY,
                group_id INTEGER NOT NULL REFERENCES peer_groups(id),
                added_at INTEGER NOT NULL
            )
        """)

        # Peer profiles
        conn.execute("""
            CREATE TABLE IF NOT EXISTS peers (
                node_public_key TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL,
                last_connect INTEGER,
                last_disconnect INTEGER
            )
        """)

        # Peer event log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS peer_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_public_key TEXT NOT NULL,
                name TEXT NOT NULL,
                ts INTEGER NOT NULL,
                meta TEXT
            )
        """)

        # Forward sync position per reporting node (listforwards updated_index)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_cursors (
                node_public_key TEXT PRIMARY KEY,
                cursor TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Runtime config overrides (feetier-config set)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Create indexes for common queries
        conn.execute("CREATE INDEX IF NOT EXISTS idx_forward_events_routed ON forward_events(routed_at_ms)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_forward_events_nodes ON forward_events(in_channel_node, out_channel_node)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_group_members_group ON peer_group_members(group_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_peer_log_node ON peer_log(node_public_key, ts)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Forward Event Methods
    # =========================================================================

    def insert_forward_event(self, event: Dict[str, Any]) -> None:
        """
        Insert a forward event row.

        Raises:
            DuplicateEventError: if a row with the same event_id exists
        """
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO forward_events
                (event_id, node_public_key, in_channel, in_channel_node,
                 out_channel, out_channel_node, amount_sats, fee_sats,
                 usd_amount, usd_fee, routed_at_ms, created_at_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (event['event_id'], event['node_public_key'],
                  event['in_channel'], event['in_channel_node'],
                  event['out_channel'], event['out_channel_node'],
                  event['amount_sats'], event['fee_sats'],
                  event['usd_amount'], event['usd_fee'],
                  event['routed_at_ms'], event['created_at_ms']))
        except sqlite3.IntegrityError:
            raise DuplicateEventError(event['event_id'])

    def get_forward_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM forward_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_latest_forward_event(self) -> Optional[Dict[str, Any]]:
        """Get the forward event with the greatest routed_at_ms."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT * FROM forward_events
            ORDER BY routed_at_ms DESC, event_id DESC
            LIMIT 1
        """).fetchone()
        return dict(row) if row else None

    def iter_forward_events(self, batch_size: int = 500) -> Iterator[Dict[str, Any]]:
        """
        Lazily iterate over all forward events, newest first.

        Rows are pulled from the cursor in batches; each call starts a
        fresh query.
        """
        conn = self._get_connection()
        cursor = conn.execute("""
            SELECT * FROM forward_events
            ORDER BY routed_at_ms DESC, event_id DESC
        """)
        try:
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                for row in rows:
                    yield dict(row)
        finally:
            cursor.close()

    def count_forward_events(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) as cnt FROM forward_events").fetchone()
        return row['cnt'] if row else 0

    # =========================================================================
    # Peer Group Methods
    # =========================================================================

    def _group_row_to_dict(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Dict[str, Any]:
        result = dict(row)
        members = conn.execute(
            "SELECT node_id FROM peer_group_members WHERE group_id = ? ORDER BY node_id",
            (row['id'],)
        ).fetchall()
        result['nodes'] = [m['node_id'] for m in members]
        return result

    def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM peer_groups WHERE id = ?", (group_id,)).fetchone()
        return self._group_row_to_dict(conn, row) if row else None

    def get_group_by_member(self, node_id: str) -> Optional[Dict[str, Any]]:
        """Get the group a node belongs to, if any."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT g.* FROM peer_groups g
            JOIN peer_group_members m ON m.group_id = g.id
            WHERE m.node_id = ?
        """, (node_id,)).fetchone()
        return self._group_row_to_dict(conn, row) if row else None

    def get_all_groups(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM peer_groups ORDER BY id").fetchall()
        return [self._group_row_to_dict(conn, row) for row in rows]

    def insert_group(self, nodes: List[str], tier_min: int, tier_max: Optional[int],
                     tier_fee_percent: str) -> int:
        """
        Create a group with the given members and return its id.

        Membership check and inserts run in one transaction.

        Raises:
            DuplicateMembershipError: if any node already belongs to a group
        """
        now = int(time.time())
        with self.transaction() as conn:
            placeholders = ','.join('?' * len(nodes))
            taken = conn.execute(
                f"SELECT node_id FROM peer_group_members WHERE node_id IN ({placeholders})",
                tuple(nodes)
            ).fetchall()
            if taken:
                raise DuplicateMembershipError([row['node_id'] for row in taken])

            cursor = conn.execute("""
                INSERT INTO peer_groups
                (tier_min, tier_max, tier_fee_percent, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (tier_min, tier_max, tier_fee_percent, now, now))
            group_id = cursor.lastrowid

            for node_id in nodes:
                conn.execute("""
                    INSERT INTO peer_group_members (node_id, group_id, added_at)
                    VALUES (?, ?, ?)
                """, (node_id, group_id, now))

        return group_id

    def update_group_totals(self, group_id: int, total_sats_forwarded: int,
                            total_usd_forwarded: str, total_sats_fee: int,
                            total_usd_fee: str) -> None:
        conn = self._get_connection()
        conn.execute("""
            UPDATE peer_groups
            SET total_sats_forwarded = ?, total_usd_forwarded = ?,
                total_sats_fee = ?, total_usd_fee = ?, updated_at = ?
            WHERE id = ?
        """, (total_sats_forwarded, total_usd_forwarded, total_sats_fee,
              total_usd_fee, int(time.time()), group_id))

    def update_group_tier(self, group_id: int, tier_min: int, tier_max: Optional[int],
                          tier_fee_percent: str) -> None:
        conn = self._get_connection()
        conn.execute("""
            UPDATE peer_groups
            SET tier_min = ?, tier_max = ?, tier_fee_percent = ?, updated_at = ?
            WHERE id = ?
        """, (tier_min, tier_max, tier_fee_percent, int(time.time()), group_id))

    # =========================================================================
    # Peer Profile Methods
    # =========================================================================

    def get_peer(self, node_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM peers WHERE node_public_key = ?", (node_id,)
        ).fetchone()
        return dict(row) if row else None

    def insert_peer(self, node_id: str) -> bool:
        """Create a peer profile. Returns False if it already existed."""
        conn = self._get_connection()
        now = int(time.time())
        cursor = conn.execute("""
            INSERT OR IGNORE INTO peers (node_public_key, created_at, last_connect, last_disconnect)
            VALUES (?, ?, ?, NULL)
        """, (node_id, now, now))
        return cursor.rowcount > 0

    def update_peer_connect(self, node_id: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE peers SET last_connect = ? WHERE node_public_key = ?",
            (int(time.time()), node_id)
        )

    def update_peer_disconnect(self, node_id: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE peers SET last_disconnect = ? WHERE node_public_key = ?",
            (int(time.time()), node_id)
        )

    def add_peer_log(self, node_id: str, events: List[Dict[str, Any]]) -> None:
        """Append one or more named events to a peer's log."""
        now = int(time.time())
        with self.transaction() as conn:
            for event in events:
                meta = event.get('meta')
                conn.execute("""
                    INSERT INTO peer_log (node_public_key, name, ts, meta)
                    VALUES (?, ?, ?, ?)
                """, (node_id, event['name'], now,
                      json.dumps(meta) if meta is not None else None))

    def get_peer_log(self, node_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM peer_log
            WHERE node_public_key = ?
            ORDER BY ts DESC, id DESC
            LIMIT ?
        """, (node_id, limit)).fetchall()
        result = []
        for row in rows:
            entry = dict(row)
            entry['meta'] = json.loads(entry['meta']) if entry['meta'] else None
            result.append(entry)
        return result

    # =========================================================================
    # Sync Cursor Methods
    # =========================================================================

    def get_sync_cursor(self, node_id: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT cursor FROM sync_cursors WHERE node_public_key = ?", (node_id,)
        ).fetchone()
        return row['cursor'] if row else None

    def set_sync_cursor(self, node_id: str, cursor: str) -> None:
        conn = self._get_connection()
        conn.execute("""
            INSERT OR REPLACE INTO sync_cursors (node_public_key, cursor, updated_at)
            VALUES (?, ?, ?)
        """, (node_id, cursor, int(time.time())))

    def delete_sync_cursor(self, node_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM sync_cursors WHERE node_public_key = ?", (node_id,))
        return cursor.rowcount > 0

    # =========================================================================
    # Config Override Methods
    # =========================================================================

    def set_config_override(self, key: str, value: str) -> int:
        """Store an override and return the new global config version."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) as v FROM config_overrides"
            ).fetchone()
            version = row['v'] + 1
            conn.execute("""
                INSERT OR REPLACE INTO config_overrides (key, value, version, updated_at)
                VALUES (?, ?, ?, ?)
            """, (key, value, version, int(time.time())))
        return version

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM config_overrides WHERE key = ?", (key,)
        ).fetchone()
        return row['value'] if row else None

    def get_all_config_overrides(self) -> List[tuple]:
        """(key, value, version) for every override, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT key, value, version FROM config_overrides ORDER BY version"
        ).fetchall()
        return [(row['key'], row['value'], row['version']) for row in rows]

    def delete_config_override(self, key: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM config_overrides WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def close_all_connections(self):
        """Close every thread's connection (shutdown)."""
        with self._connections_lock:
            for conn in self._all_connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._all_connections = []
        self._local = threading.local()

    def close(self):
        """Close the current thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn:
            conn.close()
            with self._connections_lock:
                if conn in self._all_connections:
                    self._all_connections.remove(conn)
            self._local.conn = None
