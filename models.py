"""
Domain Models
=============
Records, enumerations and request context shared by the engines.

Records are immutable: engines never patch a record in place, they persist
a change and build a new record from the stored row.
"""

import json
import time
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


# ============================================================================
# ENUMS
# ============================================================================

class OrderStatus(Enum):
    """Custom order lifecycle status."""
    PENDING = "PENDING"
    DITOLAK = "DITOLAK"          # Rejected by admin
    NEGOSIASI = "NEGOSIASI"      # Accepted, price under negotiation
    PEMBAYARAN = "PEMBAYARAN"    # Defined but never set by any transition
    PENGERJAAN = "PENGERJAAN"    # Deal reached, work in progress
    DIBATALKAN = "DIBATALKAN"    # Cancelled
    SELESAI = "SELESAI"          # Paid and finished


class PaymentStatus(Enum):
    """
    Transaction status.

    BELUM_BAYAR covers both "awaiting payment" and "awaiting confirmation";
    a submitted proof shows up as a non-null file_screenshot.
    """
    BELUM_BAYAR = "BELUM_BAYAR"
    LUNAS = "LUNAS"
    DITOLAK = "DITOLAK"


class Size(Enum):
    """Requested garment size."""
    EXTRA_SMALL = "extra_small"
    SMALL = "small"
    MEDIUM = "medium"
    REGULER = "reguler"
    LARGE = "large"
    EXTRA_LARGE = "extra_large"
    DOUBLE_EXTRA_LARGE = "double_extra_large"
    CUSTOM = "custom"


class PaymentMethod(Enum):
    """Accepted payment channels."""
    BCA = "BCA"
    BNI = "BNI"
    BRI = "BRI"
    MANDIRI = "MANDIRI"
    QRIS = "QRIS"
    CASH = "CASH"


class Role(Enum):
    """Requester role."""
    CUSTOMER = "User"
    ADMIN = "Admin"
    MANAGER = "Manager"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role name case-insensitively ("admin", "Admin", ...)."""
        normalized = (value or "").strip().lower()
        for role in cls:
            if role.value.lower() == normalized or role.name.lower() == normalized:
                return role
        raise ValueError(f"Unknown role: {value}")


ELEVATED_ROLES = frozenset({Role.ADMIN, Role.MANAGER})


# ============================================================================
# REQUESTER
# ============================================================================

@dataclass(frozen=True)
class Requester:
    """Explicit identity of the caller, passed into every query."""
    id: int
    role: Role

    @property
    def is_elevated(self) -> bool:
        """Admin-class requester, exempt from own-records-only filtering."""
        return self.role in ELEVATED_ROLES

    @classmethod
    def customer(cls, user_id: int) -> "Requester":
        return cls(id=user_id, role=Role.CUSTOMER)

    @classmethod
    def admin(cls, user_id: int) -> "Requester":
        return cls(id=user_id, role=Role.ADMIN)

    @classmethod
    def manager(cls, user_id: int) -> "Requester":
        return cls(id=user_id, role=Role.MANAGER)


# ============================================================================
# HELPERS
# ============================================================================

def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_token(prefix: str) -> str:
    """External reference token, e.g. CSO-1718000000000-3F9A1C2B."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_amount(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True)
class CustomOrder:
    """Stored custom garment order."""
    id: int
    unique_id: str
    nama_pemesanan: str
    ukuran: Size
    jumlah_barang: int
    user_id: int
    status: OrderStatus = OrderStatus.PENDING
    warna: Optional[str] = None
    catatan: Optional[str] = None
    material_sendiri: bool = False
    material_id: Optional[int] = None
    referensi_custom: bool = False
    file_referensi_custom: Optional[str] = None
    model_baju_id: Optional[int] = None
    admin_id: Optional[int] = None
    total_harga: Optional[int] = None
    diterima_pada: Optional[datetime] = None
    ditolak_pada: Optional[datetime] = None
    alasan_ditolak: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CustomOrder":
        """Build from a gateway row."""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        data["ukuran"] = Size(str(row["ukuran"]).lower())
        data["status"] = OrderStatus(str(row.get("status") or "PENDING").upper())
        data["total_harga"] = _parse_amount(row.get("total_harga"))
        data["material_sendiri"] = bool(row.get("material_sendiri"))
        data["referensi_custom"] = bool(row.get("referensi_custom"))
        for name in ("diterima_pada", "ditolak_pada", "created_at", "updated_at", "deleted_at"):
            data[name] = _parse_ts(row.get(name))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-safe dictionary (amounts as decimal strings)."""
        data = {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}
        if self.total_harga is not None:
            data["total_harga"] = str(self.total_harga)
        return data


@dataclass(frozen=True)
class Transaction:
    """Stored payment record."""
    id: int
    unique_id: str
    user_id: int
    total_harga: int
    status: PaymentStatus = PaymentStatus.BELUM_BAYAR
    admin_id: Optional[int] = None
    custom_order_id: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    file_screenshot: Optional[str] = None
    alasan_ditolak: Optional[str] = None
    keterangan: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    # Related records embedded on reads; write results leave them unset
    customer: Optional[Dict[str, Any]] = None
    admin: Optional[Dict[str, Any]] = None
    custom_order: Optional[Dict[str, Any]] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def proof_submitted(self) -> bool:
        return bool(self.file_screenshot)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        """Build from a gateway row."""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        data["status"] = PaymentStatus(str(row.get("status") or "BELUM_BAYAR").upper())
        data["total_harga"] = _parse_amount(row.get("total_harga")) or 0
        method = row.get("payment_method")
        data["payment_method"] = PaymentMethod(str(method).upper()) if method else None
        for name in ("created_at", "updated_at", "deleted_at"):
            data[name] = _parse_ts(row.get(name))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-safe dictionary (amounts as decimal strings)."""
        data = {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}
        data["total_harga"] = str(self.total_harga)
        return data


# ============================================================================
# LIST QUERY
# ============================================================================

@dataclass(frozen=True)
class ListQuery:
    """Validated list filter, pagination and sort."""
    search: Optional[str] = None
    page: int = 1
    limit: int = 25
    sort_by: str = "created_at"
    sort_order: str = "desc"
    user_id: Optional[int] = None
    admin_id: Optional[int] = None
    status: Optional[str] = None
    payment_method: Optional[str] = None
    include_deleted: bool = False

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def scoped_to(self, requester: Requester) -> "ListQuery":
        """
        Apply access control.

        Non-elevated requesters are forced to their own records regardless
        of what they asked for, and never see soft-deleted rows.
        """
        if requester.is_elevated:
            return self
        return replace(self, user_id=requester.id, include_deleted=False)

    def paginate(self, items: List[Any], total: int) -> "Page":
        return Page(items=items, total=total, page=self.page, limit=self.limit)

    def cache_fragment(self) -> str:
        """Stable string used inside list cache keys."""
        data = {
            "search": self.search,
            "page": self.page,
            "limit": self.limit,
            "sort_by": self.sort_by,
            "sort_order": self.sort_order,
            "user_id": self.user_id,
            "admin_id": self.admin_id,
            "status": self.status,
            "payment_method": self.payment_method,
            "include_deleted": self.include_deleted,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class Page:
    """One page of list results."""
    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [item.to_dict() for item in self.items],
            "pagination": {
                "total": self.total,
                "page": self.page,
                "limit": self.limit,
                "total_pages": self.total_pages,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], record_cls) -> "Page":
        """Rebuild a cached page."""
        meta = data["pagination"]
        return cls(
            items=[record_cls.from_row(row) for row in data["data"]],
            total=meta["total"],
            page=meta["page"],
            limit=meta["limit"],
        )
