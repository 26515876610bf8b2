"""
Async Postgres: deliveries (current status per delivery) + delivery_events (append-only audit log),
users (actor directory) and sms_logs (notification attempts).
Each lifecycle operation runs in one transaction; status changes use a compare-and-swap UPDATE on the
current status so two writers can never both win from the same source status.
"""
from contextlib import asynccontextmanager

import asyncpg

from courier.config import settings
from courier.delivery_state import DeliveryStatus
from courier.errors import ConflictError
from courier.models import Actor, Delivery, DeliveryEvent
from courier.roles import Role
from courier.store import check_changes

_pool: asyncpg.Pool | None = None

DELIVERY_COLUMNS = (
    "id, business_id, status, assigned_rider_id, pickup_name, pickup_phone, pickup_address, "
    "dropoff_name, dropoff_phone, dropoff_address, package_description, created_by, "
    "created_at, updated_at, delivered_at"
)


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR(64) PRIMARY KEY,
                name VARCHAR(255),
                phone VARCHAR(32),
                role VARCHAR(20) NOT NULL,
                active BOOLEAN NOT NULL DEFAULT TRUE,
                business_id VARCHAR(64),
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deliveries (
                id VARCHAR(64) PRIMARY KEY,
                business_id VARCHAR(64) NOT NULL,
                status VARCHAR(20) NOT NULL,
                assigned_rider_id VARCHAR(64) REFERENCES users(id),
                pickup_name VARCHAR(255) NOT NULL,
                pickup_phone VARCHAR(32) NOT NULL,
                pickup_address TEXT NOT NULL,
                dropoff_name VARCHAR(255) NOT NULL,
                dropoff_phone VARCHAR(32) NOT NULL,
                dropoff_address TEXT NOT NULL,
                package_description TEXT,
                created_by VARCHAR(64),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                delivered_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deliveries_assigned_rider_id
            ON deliveries(assigned_rider_id);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deliveries_business_id
            ON deliveries(business_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS delivery_events (
                seq BIGSERIAL PRIMARY KEY,
                id UUID NOT NULL UNIQUE,
                delivery_id VARCHAR(64) NOT NULL REFERENCES deliveries(id),
                status VARCHAR(20) NOT NULL,
                note TEXT,
                created_by VARCHAR(64) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_delivery_events_delivery_id
            ON delivery_events(delivery_id, created_at);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sms_logs (
                id BIGSERIAL PRIMARY KEY,
                delivery_id VARCHAR(64),
                to_phone VARCHAR(32) NOT NULL,
                message TEXT NOT NULL,
                status VARCHAR(20) NOT NULL,
                provider_response TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)


def _row_to_delivery(row) -> Delivery:
    return Delivery(
        id=row["id"],
        business_id=row["business_id"],
        status=DeliveryStatus(row["status"]),
        assigned_rider_id=row["assigned_rider_id"],
        pickup_name=row["pickup_name"],
        pickup_phone=row["pickup_phone"],
        pickup_address=row["pickup_address"],
        dropoff_name=row["dropoff_name"],
        dropoff_phone=row["dropoff_phone"],
        dropoff_address=row["dropoff_address"],
        package_description=row["package_description"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        delivered_at=row["delivered_at"],
    )


def _column_value(value):
    return value.value if isinstance(value, DeliveryStatus) else value


class PostgresDeliveryStore:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def get(self, delivery_id: str) -> Delivery | None:
        row = await self._conn.fetchrow(
            f"SELECT {DELIVERY_COLUMNS} FROM deliveries WHERE id = $1;",
            delivery_id,
        )
        return _row_to_delivery(row) if row is not None else None

    async def insert(self, delivery: Delivery) -> Delivery:
        row = await self._conn.fetchrow(
            f"""
            INSERT INTO deliveries ({DELIVERY_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            RETURNING {DELIVERY_COLUMNS};
            """,
            delivery.id,
            delivery.business_id,
            delivery.status.value,
            delivery.assigned_rider_id,
            delivery.pickup_name,
            delivery.pickup_phone,
            delivery.pickup_address,
            delivery.dropoff_name,
            delivery.dropoff_phone,
            delivery.dropoff_address,
            delivery.package_description,
            delivery.created_by,
            delivery.created_at,
            delivery.updated_at,
            delivery.delivered_at,
        )
        return _row_to_delivery(row)

    async def compare_and_update(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        changes: dict,
    ) -> Delivery:
        check_changes(changes)
        columns = sorted(changes)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=3))
        row = await self._conn.fetchrow(
            f"""
            UPDATE deliveries SET {assignments}
            WHERE id = $1 AND status = $2
            RETURNING {DELIVERY_COLUMNS};
            """,
            delivery_id,
            expected_status.value,
            *(_column_value(changes[col]) for col in columns),
        )
        if row is None:
            raise ConflictError(delivery_id, expected_status)
        return _row_to_delivery(row)

    async def list(
        self,
        *,
        status: DeliveryStatus | None = None,
        business_id: str | None = None,
        rider_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Delivery]:
        clauses: list[str] = []
        args: list = []
        for column, value in (
            ("status", status.value if status is not None else None),
            ("business_id", business_id),
            ("assigned_rider_id", rider_id),
        ):
            if value is not None:
                args.append(value)
                clauses.append(f"{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.extend([limit, offset])
        rows = await self._conn.fetch(
            f"""
            SELECT {DELIVERY_COLUMNS} FROM deliveries {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) - 1} OFFSET ${len(args)};
            """,
            *args,
        )
        return [_row_to_delivery(r) for r in rows]


class PostgresEventLog:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def append(self, event: DeliveryEvent) -> None:
        await self._conn.execute(
            """
            INSERT INTO delivery_events (id, delivery_id, status, note, created_by, created_at)
            VALUES ($1, $2, $3, $4, $5, $6);
            """,
            event.id,
            event.delivery_id,
            event.status.value,
            event.note,
            event.created_by,
            event.created_at,
        )

    async def list_for_delivery(self, delivery_id: str) -> list[DeliveryEvent]:
        rows = await self._conn.fetch(
            """
            SELECT id, delivery_id, status, note, created_by, created_at FROM delivery_events
            WHERE delivery_id = $1
            ORDER BY created_at ASC, seq ASC;
            """,
            delivery_id,
        )
        return [
            DeliveryEvent(
                id=str(r["id"]),
                delivery_id=r["delivery_id"],
                status=DeliveryStatus(r["status"]),
                note=r["note"],
                created_by=r["created_by"],
                created_at=r["created_at"],
            )
            for r in rows
        ]


class PostgresActorDirectory:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def get(self, actor_id: str) -> Actor | None:
        row = await self._conn.fetchrow(
            "SELECT id, name, phone, role, active, business_id FROM users WHERE id = $1;",
            actor_id,
        )
        if row is None:
            return None
        return Actor(
            id=row["id"],
            role=Role(row["role"]),
            active=row["active"],
            name=row["name"],
            phone=row["phone"],
            business_id=row["business_id"],
        )


class PostgresSession:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self.deliveries = PostgresDeliveryStore(conn)
        self.events = PostgresEventLog(conn)
        self.actors = PostgresActorDirectory(conn)


class PostgresBackend:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def session(self):
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresSession(conn)


async def insert_sms_log(
    pool: asyncpg.Pool,
    delivery_id: str | None,
    to_phone: str,
    message: str,
    status: str,
    provider_response: str | None,
) -> None:
    async with pool.acquire() as conn:
        await conn.execute(
            """
            INSERT INTO sms_logs (delivery_id, to_phone, message, status, provider_response)
            VALUES ($1, $2, $3, $4, $5);
            """,
            delivery_id,
            to_phone,
            message,
            status,
            provider_response,
        )
