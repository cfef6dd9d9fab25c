"""
Payload Validation
==================
Eager validation for every engine operation.

Each validator checks the whole payload before returning and raises a
single ValidationError listing every violated field. Nothing here touches
persistence; engines call these at the top of each operation.
"""

from typing import Dict, Any, Optional, Iterable, Mapping, Type
from enum import Enum

from errors import ValidationError
from models import (
    ListQuery,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Size,
)


# ============================================================================
# CONSTANTS
# ============================================================================

ORDER_UPDATABLE_FIELDS = frozenset({
    "nama_pemesanan",
    "ukuran",
    "jumlah_barang",
    "warna",
    "catatan",
    "material_sendiri",
    "material_id",
    "referensi_custom",
    "file_referensi_custom",
    "model_baju_id",
    "total_harga",
})

ORDER_CREATE_FIELDS = (ORDER_UPDATABLE_FIELDS - {"total_harga"}) | {"user_id", "status"}

TRANSACTION_UPDATABLE_FIELDS = frozenset({
    "total_harga",
    "payment_method",
    "keterangan",
    "admin_id",
})

TRANSACTION_CREATE_FIELDS = frozenset({
    "user_id",
    "total_harga",
    "payment_method",
    "keterangan",
    "admin_id",
    "file_screenshot",
})

ORDER_SORT_FIELDS = frozenset({
    "created_at",
    "updated_at",
    "nama_pemesanan",
    "unique_id",
    "status",
    "jumlah_barang",
    "total_harga",
})

TRANSACTION_SORT_FIELDS = frozenset({
    "created_at",
    "updated_at",
    "unique_id",
    "status",
    "payment_method",
    "total_harga",
})

# camelCase names used by older clients
_SORT_ALIASES = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


# ============================================================================
# FIELD HELPERS
# ============================================================================

class _Errors(dict):
    """field -> problem, raised all at once."""

    def raise_if_any(self):
        if self:
            raise ValidationError(dict(self))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_amount(value: Any, positive: bool = False) -> int:
    """
    Parse a monetary amount.

    Accepts an int or a string of decimal digits. Floats and booleans are
    rejected so no precision is ever lost.

    Raises:
        ValueError: With a human readable problem description
    """
    if _is_int(value):
        amount = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        amount = int(value.strip())
    else:
        raise ValueError("must be an integer amount (number or digit string)")

    if positive and amount <= 0:
        raise ValueError("must be greater than 0")
    if amount < 0:
        raise ValueError("must not be negative")
    return amount


def _check_amount(errors: _Errors, payload: Mapping, name: str, positive: bool = False) -> Optional[int]:
    if payload.get(name) is None:
        errors[name] = "is required"
        return None
    try:
        return parse_amount(payload.get(name), positive=positive)
    except ValueError as e:
        errors[name] = str(e)
        return None


def _check_text(errors: _Errors, payload: Mapping, name: str, required: bool = True) -> Optional[str]:
    value = payload.get(name)
    if value is None:
        if required:
            errors[name] = "is required"
        return None
    if not isinstance(value, str):
        errors[name] = "must be a string"
        return None
    value = value.strip()
    if required and not value:
        errors[name] = "must not be empty"
        return None
    return value or None


def _check_id(errors: _Errors, payload: Mapping, name: str, required: bool = True) -> Optional[int]:
    value = payload.get(name)
    if value is None:
        if required:
            errors[name] = "is required"
        return None
    if not _is_int(value) or value <= 0:
        errors[name] = "must be a positive integer"
        return None
    return value


def _check_bool(errors: _Errors, payload: Mapping, name: str, default: bool = False) -> bool:
    value = payload.get(name, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        errors[name] = "must be a boolean"
        return default
    return value


def _check_enum(
    errors: _Errors,
    payload: Mapping,
    name: str,
    enum_cls: Type[Enum],
    required: bool = True,
    upper: bool = True
) -> Optional[Enum]:
    value = payload.get(name)
    if value is None:
        if required:
            errors[name] = "is required"
        return None
    try:
        text = str(value).strip()
        return enum_cls(text.upper() if upper else text.lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        errors[name] = f"must be one of: {allowed}"
        return None


def _check_literal(errors: _Errors, payload: Mapping, name: str, expected: str):
    value = payload.get(name)
    if not isinstance(value, str) or value.strip().lower() != expected:
        errors[name] = f"must be '{expected}'"


def _check_unknown(errors: _Errors, payload: Mapping, allowed: Iterable[str]):
    allowed = set(allowed)
    for name in payload:
        if name not in allowed:
            errors[name] = "is not an updatable field"


def _require_mapping(payload: Any) -> Mapping:
    if not isinstance(payload, Mapping):
        raise ValidationError({"payload": "must be an object"})
    return payload


# ============================================================================
# ORDER SOURCING INVARIANTS
# ============================================================================

def normalize_sourcing(data: Dict[str, Any]) -> Dict[str, str]:
    """
    Enforce the material and design branches on a full order record.

    The field not selected by a branch is forced to None in `data`.

    Returns:
        Mapping of violated fields (empty when valid)
    """
    errors: Dict[str, str] = {}

    if data.get("material_sendiri"):
        data["material_id"] = None
    elif data.get("material_id") is None:
        errors["material_id"] = "is required when material_sendiri is false"

    if data.get("referensi_custom"):
        data["model_baju_id"] = None
        if not data.get("file_referensi_custom"):
            errors["file_referensi_custom"] = "is required when referensi_custom is true"
    else:
        data["file_referensi_custom"] = None
        if data.get("model_baju_id") is None:
            errors["model_baju_id"] = "is required when referensi_custom is false"

    return errors


# ============================================================================
# ORDER PAYLOADS
# ============================================================================

def _order_field(errors: _Errors, payload: Mapping, name: str, required: bool) -> Any:
    if name == "nama_pemesanan":
        return _check_text(errors, payload, name, required=required)
    if name == "ukuran":
        return _check_enum(errors, payload, name, Size, required=required, upper=False)
    if name == "jumlah_barang":
        value = payload.get(name)
        if value is None:
            if required:
                errors[name] = "is required"
            return None
        if not _is_int(value) or value < 0:
            errors[name] = "must be a non-negative integer"
            return None
        return value
    if name in ("warna", "catatan", "file_referensi_custom"):
        return _check_text(errors, payload, name, required=False)
    if name in ("material_sendiri", "referensi_custom"):
        return _check_bool(errors, payload, name)
    if name in ("material_id", "model_baju_id", "user_id"):
        return _check_id(errors, payload, name, required=required)
    if name == "total_harga":
        if payload.get(name) is None:
            return None
        return _check_amount(errors, payload, name, positive=True)
    raise KeyError(name)


def validate_order_create(payload: Any) -> Dict[str, Any]:
    """
    Validate a new custom order.

    Returns:
        Normalized fields ready to persist (status and token excluded)
    """
    payload = _require_mapping(payload)
    errors = _Errors()
    _check_unknown(errors, payload, ORDER_CREATE_FIELDS)

    status = payload.get("status")
    if status is not None and str(status).upper() != OrderStatus.PENDING.value:
        errors["status"] = "new orders always start as PENDING"

    data: Dict[str, Any] = {}
    for name in ("nama_pemesanan", "ukuran", "jumlah_barang", "user_id"):
        data[name] = _order_field(errors, payload, name, required=True)
    for name in ("warna", "catatan", "material_sendiri", "material_id",
                 "referensi_custom", "file_referensi_custom", "model_baju_id"):
        data[name] = _order_field(errors, payload, name, required=False)

    for name, problem in normalize_sourcing(data).items():
        errors.setdefault(name, problem)

    errors.raise_if_any()
    data["ukuran"] = data["ukuran"].value
    return data


def validate_order_update(payload: Any) -> Dict[str, Any]:
    """
    Validate a partial order update.

    Only fields present in the payload are returned. Sourcing invariants
    are checked by the engine once the update is merged with the stored
    record.
    """
    payload = _require_mapping(payload)
    errors = _Errors()

    if "status" in payload:
        errors["status"] = "status changes only through lifecycle actions"
    _check_unknown(
        errors,
        {k: v for k, v in payload.items() if k != "status"},
        ORDER_UPDATABLE_FIELDS
    )
    if not payload:
        errors["payload"] = "no fields to update"

    changes: Dict[str, Any] = {}
    for name in ORDER_UPDATABLE_FIELDS:
        if name not in payload:
            continue
        required = name in ("nama_pemesanan", "ukuran", "jumlah_barang")
        value = _order_field(errors, payload, name, required=required)
        if isinstance(value, Enum):
            value = value.value
        changes[name] = value

    errors.raise_if_any()
    return changes


def validate_accept(payload: Any):
    """Accept contract: {"status": "setuju"}."""
    payload = _require_mapping(payload)
    errors = _Errors()
    _check_literal(errors, payload, "status", "setuju")
    errors.raise_if_any()


def validate_reject(payload: Any) -> str:
    """Reject contract: {"status": "ditolak", "alasan_ditolak": <non-empty>}."""
    payload = _require_mapping(payload)
    errors = _Errors()
    _check_literal(errors, payload, "status", "ditolak")
    reason = _check_text(errors, payload, "alasan_ditolak", required=True)
    errors.raise_if_any()
    return reason


def validate_deal(payload: Any) -> int:
    """Deal contract: {"status": "deal", "total_harga": <amount > 0>}."""
    payload = _require_mapping(payload)
    errors = _Errors()
    _check_literal(errors, payload, "status", "deal")
    amount = _check_amount(errors, payload, "total_harga", positive=True)
    errors.raise_if_any()
    return amount


def validate_cancel(payload: Any) -> Optional[str]:
    """Cancel contract: {"status": "dibatalkan", "alasan_ditolak": <optional>}."""
    payload = _require_mapping(payload)
    errors = _Errors()
    _check_literal(errors, payload, "status", "dibatalkan")
    reason = _check_text(errors, payload, "alasan_ditolak", required=False)
    errors.raise_if_any()
    return reason


# ============================================================================
# TRANSACTION PAYLOADS
# ============================================================================

def validate_transaction_create(payload: Any) -> Dict[str, Any]:
    """Validate an administrative transaction not tied to a deal."""
    payload = _require_mapping(payload)
    errors = _Errors()
    _check_unknown(errors, payload, TRANSACTION_CREATE_FIELDS)

    data = {
        "user_id": _check_id(errors, payload, "user_id", required=True),
        "total_harga": _check_amount(errors, payload, "total_harga", positive=True),
        "payment_method": _check_enum(errors, payload, "payment_method", PaymentMethod, required=False),
        "keterangan": _check_text(errors, payload, "keterangan", required=False),
        "admin_id": _check_id(errors, payload, "admin_id", required=False),
        "file_screenshot": _check_text(errors, payload, "file_screenshot", required=False),
    }

    errors.raise_if_any()
    if data["payment_method"] is not None:
        data["payment_method"] = data["payment_method"].value
    return data


def validate_transaction_update(payload: Any) -> Dict[str, Any]:
    """Validate a generic admin update; status is never writable here."""
    payload = _require_mapping(payload)
    errors = _Errors()

    if "status" in payload:
        errors["status"] = "status changes only through payment actions"
    _check_unknown(
        errors,
        {k: v for k, v in payload.items() if k != "status"},
        TRANSACTION_UPDATABLE_FIELDS
    )
    if not payload:
        errors["payload"] = "no fields to update"

    changes: Dict[str, Any] = {}
    if "total_harga" in payload:
        changes["total_harga"] = _check_amount(errors, payload, "total_harga", positive=True)
    if "payment_method" in payload:
        method = _check_enum(errors, payload, "payment_method", PaymentMethod, required=False)
        changes["payment_method"] = method.value if method else None
    if "keterangan" in payload:
        changes["keterangan"] = _check_text(errors, payload, "keterangan", required=False)
    if "admin_id" in payload:
        changes["admin_id"] = _check_id(errors, payload, "admin_id", required=False)

    errors.raise_if_any()
    return changes


def validate_submit_payment(payload: Any) -> Dict[str, Any]:
    """Proof of payment and method are both required."""
    payload = _require_mapping(payload)
    errors = _Errors()
    data = {
        "file_screenshot": _check_text(errors, payload, "file_screenshot", required=True),
        "payment_method": _check_enum(errors, payload, "payment_method", PaymentMethod, required=True),
        "keterangan": _check_text(errors, payload, "keterangan", required=False),
    }
    errors.raise_if_any()
    data["payment_method"] = data["payment_method"].value
    return data


def validate_resend_payment(payload: Any) -> Dict[str, Any]:
    """New proof is required; method and remark are optional."""
    payload = _require_mapping(payload)
    errors = _Errors()
    data = {
        "file_screenshot": _check_text(errors, payload, "file_screenshot", required=True),
        "keterangan": _check_text(errors, payload, "keterangan", required=False),
    }
    method = _check_enum(errors, payload, "payment_method", PaymentMethod, required=False)
    errors.raise_if_any()
    if method is not None:
        data["payment_method"] = method.value
    return data


def validate_reject_payment(payload: Any) -> str:
    """A rejection reason is required."""
    payload = _require_mapping(payload or {})
    errors = _Errors()
    reason = _check_text(errors, payload, "alasan_ditolak", required=True)
    errors.raise_if_any()
    return reason


# ============================================================================
# LIST PARAMETERS
# ============================================================================

def _parse_int_param(errors: _Errors, params: Mapping, name: str, default: Optional[int]) -> Optional[int]:
    value = params.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        errors[name] = "must be an integer"
        return default


def parse_list_params(
    params: Optional[Mapping[str, Any]],
    sort_fields: Iterable[str],
    status_enum: Type[Enum],
    default_limit: int = 25,
    max_limit: int = 100
) -> ListQuery:
    """
    Build a ListQuery from raw query parameters.

    Args:
        params: Query string values (strings or already-typed values)
        sort_fields: Whitelisted sort columns
        status_enum: Enum used to validate the status filter
        default_limit: Page size when none is given
        max_limit: Page size cap; larger requests are clamped

    Raises:
        ValidationError: Listing every bad parameter
    """
    params = params or {}
    errors = _Errors()

    page = _parse_int_param(errors, params, "page", 1)
    if page is not None and page < 1:
        errors["page"] = "must be >= 1"

    limit = _parse_int_param(errors, params, "limit", default_limit)
    if limit is not None and limit <= 0:
        errors["limit"] = "must be > 0"
    elif limit is not None:
        limit = min(limit, max_limit)

    sort_by = params.get("sort_by") or params.get("sortBy") or "created_at"
    sort_by = _SORT_ALIASES.get(sort_by, sort_by)
    if sort_by not in sort_fields:
        errors["sort_by"] = f"must be one of: {', '.join(sorted(sort_fields))}"

    sort_order = str(params.get("sort_order") or params.get("sortOrder") or "desc").lower()
    if sort_order not in ("asc", "desc"):
        errors["sort_order"] = "must be 'asc' or 'desc'"

    status = params.get("status")
    if status:
        try:
            status = status_enum(str(status).upper()).value
        except ValueError:
            errors["status"] = f"must be one of: {', '.join(m.value for m in status_enum)}"

    payment_method = params.get("payment_method")
    if payment_method:
        try:
            payment_method = PaymentMethod(str(payment_method).upper()).value
        except ValueError:
            errors["payment_method"] = f"must be one of: {', '.join(m.value for m in PaymentMethod)}"

    user_id = _parse_int_param(errors, params, "user_id", None)
    admin_id = _parse_int_param(errors, params, "admin_id", None)

    include_deleted = params.get("include_deleted", False)
    if isinstance(include_deleted, str):
        include_deleted = include_deleted.lower() in ("true", "1", "yes")

    search = params.get("search")
    search = str(search).strip() if search is not None else None

    errors.raise_if_any()
    return ListQuery(
        search=search or None,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        user_id=user_id,
        admin_id=admin_id,
        status=status or None,
        payment_method=payment_method or None,
        include_deleted=bool(include_deleted),
    )


def parse_order_list_params(params, default_limit: int = 25, max_limit: int = 100) -> ListQuery:
    return parse_list_params(params, ORDER_SORT_FIELDS, OrderStatus, default_limit, max_limit)


def parse_transaction_list_params(params, default_limit: int = 25, max_limit: int = 100) -> ListQuery:
    return parse_list_params(params, TRANSACTION_SORT_FIELDS, PaymentStatus, default_limit, max_limit)
