from psycopg2 import pool as pg_pool

_POOL: pg_pool.SimpleConnectionPool | None = None


def init_pool(database_url: str, min_conn: int = 1, max_conn: int = 10) -> None:
    global _POOL
    if not database_url:
        raise RuntimeError("DATABASE_URL environment variable is not set")
    _POOL = pg_pool.SimpleConnectionPool(
        min_conn,
        max_conn,
        dsn=database_url,
        sslmode="require",
        connect_timeout=10,
    )


def get_connection():
    if _POOL is None:
        raise RuntimeError("Database pool is not initialised; call init_pool() first")
    return _POOL.getconn()


def release_connection(conn):
    if conn and _POOL is not None:
        _POOL.putconn(conn)


def ensure_schema() -> None:
    conn = get_connection()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                identity TEXT PRIMARY KEY,
                password_hash TEXT NOT NULL,
                verified BOOLEAN NOT NULL DEFAULT FALSE,
                wallet_address TEXT UNIQUE,
                active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS passcodes (
                id SERIAL PRIMARY KEY,
                identity TEXT NOT NULL,
                purpose TEXT NOT NULL,
                code TEXT NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL,
                used BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id SERIAL PRIMARY KEY,
                event_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                entry_hash TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS passcodes_identity_purpose
            ON passcodes (identity, purpose)
            WHERE used = FALSE;
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS passcodes_expires_at ON passcodes (expires_at);")
        conn.commit()
    finally:
        cur.close()
        release_connection(conn)
