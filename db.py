"""
Database Module (Production)
=============================
Async persistence gateway for custom orders and transactions on Supabase.
Blocking client calls run in the executor behind a timeout and a circuit
breaker. Every status write can be made conditional on the prior status
(compare-and-swap) so racing admin actions cannot both win.
"""

import asyncio
import logging
import re
from typing import Dict, List, Any, Optional, Callable, Tuple
from datetime import datetime, timezone
from enum import Enum

from supabase import create_client, Client
from postgrest.exceptions import APIError
from prometheus_client import Gauge

from config import SupabaseConfig
from errors import ConflictError, DependencyError, OrderServiceError, ValidationError
from models import ListQuery


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds

# Columns searched by free-text list queries
ORDER_SEARCH_COLUMNS = ("nama_pemesanan", "unique_id", "warna")
TRANSACTION_SEARCH_COLUMNS = ("keterangan", "unique_id")
USER_SEARCH_COLUMNS = ("name", "email")

# Embedded relation columns on transaction reads
USER_PROJECTION = "id,name,email"
ORDER_PROJECTION = "id,unique_id,nama_pemesanan,status,total_harga"


# ============================================================================
# METRICS
# ============================================================================

db_circuit_state = Gauge(
    'db_circuit_state',
    'Database circuit breaker state (0=closed, 1=half_open, 2=open)'
)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


_CIRCUIT_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def _set_state(self, state: CircuitState):
        self.state = state
        db_circuit_state.set(_CIRCUIT_GAUGE_VALUES[state])

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self._set_state(CircuitState.CLOSED)
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self._set_state(CircuitState.OPEN)
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            # Check if timeout expired
            if self.last_failure_time:
                elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self._set_state(CircuitState.HALF_OPEN)
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


def _to_row(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Make a field mapping JSON-safe for PostgREST."""
    row = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        row[key] = value
    return row


def _search_term(search: str) -> str:
    # PostgREST or-filter syntax reserves these characters
    term = "".join(c for c in search if c not in ",()*%")
    # ilike wildcards must match literally
    return term.replace("\\", "\\\\").replace("_", "\\_")


# ============================================================================
# API ERROR CLASSIFICATION
# ============================================================================

# SQLSTATE classes that mean the database itself is unreachable or unwell
INFRASTRUCTURE_SQLSTATE_CLASSES = ("08", "53", "57", "58", "XX")

_KEY_COLUMN = re.compile(r"Key \(([\w\s,]+)\)")
_QUOTED_COLUMN = re.compile(r'column "(\w+)"')


def is_infrastructure_error(error: APIError) -> bool:
    """True when the failure says nothing about the caller's input."""
    code = str(error.code or "")
    if not code:
        return True
    # Non-JSON gateway responses carry the HTTP status as the code
    if code.isdigit() and len(code) == 3:
        return code.startswith("5")
    return code[:2] in INFRASTRUCTURE_SQLSTATE_CLASSES


def _offending_column(error: APIError) -> str:
    for text in (error.details, error.message):
        if not text:
            continue
        match = _KEY_COLUMN.search(str(text)) or _QUOTED_COLUMN.search(str(text))
        if match:
            return match.group(1)
    return "payload"


def map_input_error(error: APIError, operation: str) -> Optional[OrderServiceError]:
    """
    Translate constraint and data errors caused by the request.

    Returns None for errors that are not the caller's fault.
    """
    code = str(error.code or "")

    if code == "23505":
        return ConflictError(f"{operation} would duplicate an existing record")
    if code == "23503":
        column = _offending_column(error)
        return ValidationError({column: "references a record that does not exist"})
    if code == "23502":
        return ValidationError({_offending_column(error): "is required"})
    if code.startswith("23") or code.startswith("22"):
        return ValidationError({_offending_column(error): error.message or "is invalid"})

    return None


class DatabaseClient:
    """
    Persistence gateway.

    Rows are plain dicts. Not-found is signalled by None; every
    infrastructure failure surfaces as DependencyError, while data the
    database refuses surfaces as ValidationError or ConflictError.
    """

    def __init__(
        self,
        settings: Optional[SupabaseConfig] = None,
        client: Optional[Client] = None,
        timeout: Optional[float] = None
    ):
        self.settings = settings
        self.client: Optional[Client] = client
        self.circuit_breaker = CircuitBreaker()
        self.timeout = float(timeout or (settings.connection_timeout if settings else DEFAULT_TIMEOUT))

        self.orders_table = settings.orders_table if settings else "custom_orders"
        self.transactions_table = settings.transactions_table if settings else "transactions"
        self.users_table = settings.users_table if settings else "users"

        # Transaction reads embed the customer, the admin and an order summary
        self.transaction_columns = (
            "*,"
            f"customer:{self.users_table}!user_id({USER_PROJECTION}),"
            f"admin:{self.users_table}!admin_id({USER_PROJECTION}),"
            f"custom_order:{self.orders_table}!custom_order_id({ORDER_PROJECTION})"
        )

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.rejected_count = 0

        if self.client is None:
            self._initialize_client()

        logger.info("DatabaseClient initialized")

    def _initialize_client(self):
        """Initialize Supabase client."""
        if not self.settings:
            logger.error("Supabase settings required to create a client")
            return

        try:
            self.client = create_client(self.settings.url, self.settings.key)
            logger.info("Supabase client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {str(e)}")

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def _execute(self, operation: str, build: Callable[[], Any], write: bool = False):
        """
        Run a query builder in the executor with timeout and circuit breaker.

        Raises:
            ValidationError, ConflictError: The database refused the caller's data
            DependencyError: Client missing, circuit open, timeout or API error
        """
        if not self.client:
            raise DependencyError("Database client not initialized", operation=operation)

        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, rejecting {operation}")
            raise DependencyError("Database unavailable (circuit open)", operation=operation)

        loop = asyncio.get_running_loop()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: build().execute()),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            logger.error(f"{operation} timeout after {self.timeout}s")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise DependencyError(f"{operation} timed out", operation=operation)

        except APIError as e:
            rejected = map_input_error(e, operation)
            if rejected is not None:
                # The database answered; the request was bad
                logger.warning(f"{operation} rejected by database ({e.code}): {e.message}")
                self.rejected_count += 1
                self.circuit_breaker.record_success()
                raise rejected from e

            logger.error(f"{operation} API error: {str(e)}")
            self.error_count += 1
            if is_infrastructure_error(e):
                self.circuit_breaker.record_failure()
            raise DependencyError(f"{operation} failed", operation=operation)

        except Exception as e:
            logger.error(f"{operation} error: {str(e)}")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise DependencyError(f"{operation} failed", operation=operation)

        self.circuit_breaker.record_success()
        if write:
            self.write_count += 1
        else:
            self.read_count += 1

        return result

    # ========================================================================
    # GENERIC ROW OPERATIONS
    # ========================================================================

    async def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._execute(
            f"insert_{table}",
            lambda: self.client.table(table).insert(_to_row(row)),
            write=True
        )
        if not result.data:
            raise DependencyError(f"insert into {table} returned no row", operation=f"insert_{table}")
        return result.data[0]

    async def _fetch(self, table: str, row_id: int, columns: str = "*") -> Optional[Dict[str, Any]]:
        result = await self._execute(
            f"fetch_{table}",
            lambda: self.client.table(table).select(columns).eq("id", row_id).limit(1)
        )
        return result.data[0] if result.data else None

    async def _update(
        self,
        table: str,
        row_id: int,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        def build():
            query = self.client.table(table).update(_to_row(fields)).eq("id", row_id)
            if expected_status is not None:
                query = query.eq("status", expected_status)
            return query

        result = await self._execute(f"update_{table}", build, write=True)
        return result.data[0] if result.data else None

    async def _delete(self, table: str, row_id: int) -> bool:
        result = await self._execute(
            f"delete_{table}",
            lambda: self.client.table(table).delete().eq("id", row_id),
            write=True
        )
        return bool(result.data)

    async def _find(
        self,
        table: str,
        query: ListQuery,
        search_filter: Optional[str],
        filters: Dict[str, Any],
        columns: str = "*"
    ) -> Tuple[List[Dict[str, Any]], int]:
        def build():
            q = self.client.table(table).select(columns, count="exact")
            if search_filter:
                q = q.or_(search_filter)
            for column, value in filters.items():
                if value is not None:
                    q = q.eq(column, value)
            if not query.include_deleted:
                q = q.is_("deleted_at", "null")
            q = q.order(query.sort_by, desc=query.sort_order == "desc")
            return q.range(query.offset, query.offset + query.limit - 1)

        result = await self._execute(f"find_{table}", build)
        rows = result.data or []
        total = result.count if result.count is not None else len(rows)
        return rows, total

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def insert_order(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a custom order and return the stored row."""
        return await self._insert(self.orders_table, row)

    async def fetch_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a custom order row (soft-deleted rows included)."""
        return await self._fetch(self.orders_table, order_id)

    async def find_orders(self, query: ListQuery) -> Tuple[List[Dict[str, Any]], int]:
        """
        Search, filter, sort and paginate custom orders.

        Returns:
            (rows for the requested page, total matching rows)
        """
        search_filter = None
        if query.search:
            term = _search_term(query.search)
            search_filter = ",".join(
                f"{column}.ilike.%{term}%" for column in ORDER_SEARCH_COLUMNS
            )

        return await self._find(
            self.orders_table,
            query,
            search_filter,
            {
                "user_id": query.user_id,
                "admin_id": query.admin_id,
                "status": query.status,
            }
        )

    async def update_order(
        self,
        order_id: int,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Update a custom order.

        Args:
            order_id: Order id
            fields: Columns to write
            expected_status: When set, only update if the stored status matches

        Returns:
            Updated row, or None if no row matched
        """
        return await self._update(self.orders_table, order_id, fields, expected_status)

    async def delete_order(self, order_id: int) -> bool:
        """Hard delete. Returns False if nothing was deleted."""
        return await self._delete(self.orders_table, order_id)

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    async def insert_transaction(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a transaction and return the stored row."""
        return await self._insert(self.transactions_table, row)

    async def fetch_transaction(self, transaction_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a transaction row (soft-deleted rows included)."""
        return await self._fetch(self.transactions_table, transaction_id, self.transaction_columns)

    async def _find_user_ids(self, term: str) -> List[int]:
        """Ids of users whose name or email matches the search term."""
        search_filter = ",".join(
            f"{column}.ilike.%{term}%" for column in USER_SEARCH_COLUMNS
        )
        result = await self._execute(
            f"find_{self.users_table}",
            lambda: self.client.table(self.users_table).select("id").or_(search_filter)
        )
        return [row["id"] for row in (result.data or [])]

    async def find_transactions(self, query: ListQuery) -> Tuple[List[Dict[str, Any]], int]:
        """
        Search, filter, sort and paginate transactions.

        Free-text search also matches the owning customer's name and email.
        """
        search_filter = None
        if query.search:
            term = _search_term(query.search)
            clauses = [
                f"{column}.ilike.%{term}%" for column in TRANSACTION_SEARCH_COLUMNS
            ]
            user_ids = await self._find_user_ids(term)
            if user_ids:
                clauses.append(f"user_id.in.({','.join(str(i) for i in user_ids)})")
            search_filter = ",".join(clauses)

        return await self._find(
            self.transactions_table,
            query,
            search_filter,
            {
                "user_id": query.user_id,
                "admin_id": query.admin_id,
                "status": query.status,
                "payment_method": query.payment_method,
            },
            self.transaction_columns
        )

    async def find_transactions_for_order(self, order_id: int) -> List[Dict[str, Any]]:
        """All transactions spawned by an order, oldest first."""
        result = await self._execute(
            f"find_{self.transactions_table}_for_order",
            lambda: self.client.table(self.transactions_table)
                .select(self.transaction_columns)
                .eq("custom_order_id", order_id)
                .order("created_at")
        )
        return result.data or []

    async def update_transaction(
        self,
        transaction_id: int,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Update a transaction, optionally conditional on its stored status."""
        return await self._update(self.transactions_table, transaction_id, fields, expected_status)

    async def delete_transaction(self, transaction_id: int) -> bool:
        """Hard delete. Returns False if nothing was deleted."""
        return await self._delete(self.transactions_table, transaction_id)

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "rejected": self.rejected_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if database is healthy."""
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )
