"""
Database Module
===============
AsyncPG connection pool and schema migrations for the checkout store.

Tables:
- products / product_variants: catalog and the stock counters
- coupons, carts, cart_items
- orders, order_items, order_status_history
- webhook_events: dedupe ledger for gateway deliveries

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
import structlog

from storefront.config import DatabaseConfig

# Configure logger
logger = structlog.get_logger().bind(component="database")


config = DatabaseConfig()


# =============================================================================
# SCHEMA
# =============================================================================

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR(64) PRIMARY KEY,
        name TEXT NOT NULL,
        sku VARCHAR(64),
        price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
        discounted_price NUMERIC(12, 2) CHECK (discounted_price >= 0),
        stock_quantity INTEGER NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
        low_stock_threshold INTEGER NOT NULL DEFAULT 5,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        id VARCHAR(64) PRIMARY KEY,
        product_id VARCHAR(64) NOT NULL REFERENCES products(id) ON DELETE CASCADE,
        size VARCHAR(32),
        color VARCHAR(32),
        sku VARCHAR(64),
        price NUMERIC(12, 2) CHECK (price >= 0),
        stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupons (
        id VARCHAR(64) PRIMARY KEY,
        code VARCHAR(64) NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        type VARCHAR(20) NOT NULL,
        value NUMERIC(12, 2) NOT NULL,
        max_discount NUMERIC(12, 2),
        min_order_value NUMERIC(12, 2),
        usage_limit INTEGER,
        usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
        per_user_limit INTEGER,
        valid_from TIMESTAMP NOT NULL,
        valid_until TIMESTAMP NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS carts (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL UNIQUE,
        updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id VARCHAR(64) PRIMARY KEY,
        cart_id VARCHAR(64) NOT NULL REFERENCES carts(id) ON DELETE CASCADE,
        product_id VARCHAR(64) NOT NULL,
        variant_id VARCHAR(64),
        quantity INTEGER NOT NULL CHECK (quantity > 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        order_number VARCHAR(32) NOT NULL,
        user_id VARCHAR(64) NOT NULL,
        status VARCHAR(20) NOT NULL,
        payment_status VARCHAR(20) NOT NULL,
        payment_method VARCHAR(32) NOT NULL,
        payment_id VARCHAR(64),
        gateway_order_id VARCHAR(64),
        shipping_address_id VARCHAR(64) NOT NULL,
        subtotal NUMERIC(12, 2) NOT NULL,
        discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total_amount NUMERIC(12, 2) NOT NULL,
        coupon_id VARCHAR(64) REFERENCES coupons(id),
        tracking_number VARCHAR(32),
        estimated_delivery TIMESTAMP,
        created_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
        CONSTRAINT orders_order_number_key UNIQUE (order_number),
        CONSTRAINT orders_tracking_number_key UNIQUE (tracking_number),
        CONSTRAINT orders_gateway_order_id_key UNIQUE (gateway_order_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id VARCHAR(64) PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        product_id VARCHAR(64) NOT NULL,
        variant_id VARCHAR(64),
        product_name TEXT,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        price_at_purchase NUMERIC(12, 2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_status_history (
        id VARCHAR(64) PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        status VARCHAR(20) NOT NULL,
        note TEXT,
        updated_by VARCHAR(64),
        created_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id VARCHAR(128) PRIMARY KEY,
        event_type VARCHAR(64) NOT NULL,
        received_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,

    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_variants_product ON product_variants(product_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_payment ON orders(payment_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_order ON order_status_history(order_id, created_at)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, database_config: Optional[DatabaseConfig] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        cfg = database_config or config
        try:
            cls._pool = await asyncpg.create_pool(
                cfg.DATABASE_URL,
                min_size=cfg.MIN_POOL_SIZE,
                max_size=cfg.MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            # Run migrations on startup
            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        async with cls.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_skipped", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database(database_config: Optional[DatabaseConfig] = None):
    """Initialize database on app startup"""
    await Database.initialize(database_config)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
