import sqlite3
import logging
import os
import time
import threading

# Configuration
DB_FILE = os.getenv("DB_FILE", "liquidator.db")

logger = logging.getLogger("Liquidator")

# Thread-safe lock for database access (callers use asyncio.to_thread)
db_lock = threading.Lock()


def configure(path):
    global DB_FILE
    DB_FILE = path


def get_connection():
    """Returns a connection to the SQLite database with WAL mode for high-frequency writes."""
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_db():
    """Creates all tables. Safe to call multiple times."""
    with db_lock:
        conn = get_connection()
        cursor = conn.cursor()

        # Liquidation attempts: inserted as 'pending', then given a final status
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chain TEXT,
                protocol TEXT,
                borrower TEXT,
                collateral_asset TEXT,
                debt_asset TEXT,
                debt_to_cover TEXT,
                expected_profit_usd REAL,
                status TEXT DEFAULT 'pending',
                tx_hash TEXT,
                reason TEXT,
                created_at REAL,
                updated_at REAL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS bad_debt (
                chain TEXT,
                protocol TEXT,
                borrower TEXT,
                debt_usd REAL,
                recorded_at REAL,
                PRIMARY KEY (chain, protocol, borrower)
            )
        ''')

        # Latest evaluated state per position
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS positions (
                chain TEXT,
                protocol TEXT,
                market TEXT,
                borrower TEXT,
                liquidatable INTEGER,
                health_factor REAL,
                shortfall REAL,
                collateral_usd REAL,
                debt_usd REAL,
                updated_at REAL,
                PRIMARY KEY (chain, protocol, market, borrower)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS system_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chain TEXT,
                borrower_count INTEGER,
                position_count INTEGER,
                liquidatable_count INTEGER,
                scan_time_ms REAL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT,
                message TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        conn.commit()
        conn.close()


def log_event(level, message):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute("INSERT INTO logs (level, message) VALUES (?, ?)", (level, message))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"❌ DB Log Error: {e}")


# =====================================================================
# EXECUTION JOURNAL
# =====================================================================

def record_execution_start(chain, protocol, borrower, collateral_asset, debt_asset,
                           debt_to_cover, expected_profit_usd):
    """Journals an attempt before submission. Returns the row id, or None on failure."""
    now = time.time()
    try:
        with db_lock:
            conn = get_connection()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO executions (chain, protocol, borrower, collateral_asset, debt_asset,
                                        debt_to_cover, expected_profit_usd, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            ''', (chain, protocol, borrower, collateral_asset, debt_asset,
                  debt_to_cover, expected_profit_usd, now, now))
            conn.commit()
            row_id = cursor.lastrowid
            conn.close()
            return row_id
    except sqlite3.Error as e:
        logger.warning(f"⚠️ Failed to journal execution for {borrower}: {e}")
        return None


def finish_execution(row_id, status, tx_hash=None, reason=""):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute(
                "UPDATE executions SET status = ?, tx_hash = ?, reason = ?, updated_at = ? WHERE id = ?",
                (status, tx_hash, reason, time.time(), row_id),
            )
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"⚠️ Failed to finish execution {row_id}: {e}")


def pending_executions(max_age_seconds):
    """Attempts still 'pending' and younger than max_age (a crash mid-liquidation)."""
    cutoff = time.time() - max_age_seconds
    try:
        with db_lock:
            conn = get_connection()
            rows = conn.execute(
                "SELECT chain, borrower, created_at FROM executions WHERE status = 'pending' AND created_at >= ?",
                (cutoff,),
            ).fetchall()
            conn.close()
            return [dict(r) for r in rows]
    except sqlite3.Error as e:
        logger.warning(f"⚠️ Failed to read pending executions: {e}")
        return []


def get_recent_executions(limit=50):
    try:
        with db_lock:
            conn = get_connection()
            rows = conn.execute("SELECT * FROM executions ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            conn.close()
            return [dict(r) for r in rows]
    except sqlite3.Error:
        return []


# =====================================================================
# CLASSIFICATIONS & METRICS
# =====================================================================

def record_bad_debt(record):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT OR REPLACE INTO bad_debt (chain, protocol, borrower, debt_usd, recorded_at)
                VALUES (?, ?, ?, ?, ?)
            ''', (record.chain, record.protocol.value, record.borrower, record.debt_usd, record.recorded_at))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"⚠️ Failed to record bad debt for {record.borrower}: {e}")


def update_positions(positions):
    """Bulk upsert of evaluated positions."""
    if not positions:
        return
    rows = [
        (p.chain, p.protocol.value, p.market, p.borrower, int(p.liquidatable), p.health_factor,
         p.shortfall, p.collateral_usd, p.debt_usd, p.evaluated_at)
        for p in positions
    ]
    try:
        with db_lock:
            conn = get_connection()
            conn.executemany('''
                INSERT INTO positions (chain, protocol, market, borrower, liquidatable, health_factor,
                                       shortfall, collateral_usd, debt_usd, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chain, protocol, market, borrower) DO UPDATE SET
                    liquidatable = excluded.liquidatable,
                    health_factor = excluded.health_factor,
                    shortfall = excluded.shortfall,
                    collateral_usd = excluded.collateral_usd,
                    debt_usd = excluded.debt_usd,
                    updated_at = excluded.updated_at
            ''', rows)
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"⚠️ Failed to update positions: {e}")


def log_system_metric(chain, borrower_count, position_count, liquidatable_count, scan_time_ms):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT INTO system_metrics (chain, borrower_count, position_count, liquidatable_count, scan_time_ms)
                VALUES (?, ?, ?, ?, ?)
            ''', (chain, borrower_count, position_count, liquidatable_count, scan_time_ms))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"⚠️ Failed to log metric: {e}")
