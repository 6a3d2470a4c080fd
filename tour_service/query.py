"""Query transformer for list endpoints.

Turns the client's query-string mapping into an immutable ``QueryDescriptor``
that the store layer executes::

    ?duration[gte]=5&difficulty=easy&sort=-ratingsAverage,price&fields=name,price&page=2&limit=10

becomes::

    filter     {"duration": {"$gte": 5}, "difficulty": "easy"}
    sort       (("ratingsAverage", -1), ("price", 1))
    projection {"name": 1, "price": 1}
    page=2, limit=10, skip=10

The transformer never mutates its input and never touches the database.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass

from bson import ObjectId

from .config import settings
from .errors import ValidationError


CONTROL_KEYS = frozenset({"page", "sort", "limit", "fields"})
COMPARISON_OPERATORS = frozenset({"gte", "gt", "lte", "lt"})
DEFAULT_SORT: tuple[tuple[str, int], ...] = (("createdAt", -1),)
DEFAULT_EXCLUDED_FIELDS: tuple[str, ...] = ("__v",)

# "price[gte]" -> field "price", operator "gte"
_BRACKET_KEY = re.compile(r"^(?P<field>[^\[\]]+)\[(?P<operator>[^\[\]]+)\]$")


def _to_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise ValueError(value)


def _to_object_id(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValueError(value)
    return ObjectId(value)


_CASTERS = {
    int: int,
    float: float,
    bool: _to_bool,
    str: str,
    ObjectId: _to_object_id,
}


def _positive_int(raw, default: int) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class QueryDescriptor:
    """Fully resolved query plan for one list request."""
    filter: dict
    sort: tuple[tuple[str, int], ...]
    projection: dict[str, int]
    page: int
    limit: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


class ApiFeatures:
    """Chainable builder: ``ApiFeatures(params).filter().sort().limit_fields().paginate().build()``.

    Args:
        query_params: Raw query mapping. Keys may use the bracket form
            (``price[gte]``) or already be nested (``{"price": {"gte": "5"}}``).
        base_filter: Constraints the caller always applies (e.g. the parent
            tour of nested reviews). They take precedence over client keys.
        field_types: Known field types used to coerce string values.
        excluded_fields: Fields hidden when the client does not ask for
            specific ``fields``.
        hidden_fields: Fields that can never be filtered on or projected in.
    """

    def __init__(
        self,
        query_params: Mapping,
        base_filter: Mapping | None = None,
        *,
        field_types: Mapping[str, type] | None = None,
        excluded_fields: tuple[str, ...] = DEFAULT_EXCLUDED_FIELDS,
        hidden_fields: tuple[str, ...] = (),
        default_sort: tuple[tuple[str, int], ...] = DEFAULT_SORT,
        max_limit: int | None = None,
    ):
        self._params = dict(query_params)
        self._base_filter = dict(base_filter or {})
        self._field_types = dict(field_types or {})
        self._excluded_fields = excluded_fields
        self._hidden_fields = frozenset(hidden_fields)
        self._max_limit = max_limit or settings.MAX_LIMIT

        self._filter: dict = dict(self._base_filter)
        self._sort = default_sort
        self._projection: dict[str, int] = {name: 0 for name in excluded_fields}
        self._page = settings.DEFAULT_PAGE
        self._limit = min(settings.DEFAULT_LIMIT, self._max_limit)

    # ==================== Coercion ====================

    def _coerce(self, field: str, value):
        field_type = self._field_types.get(field)
        if field_type is None or not isinstance(value, str):
            return value
        try:
            return _CASTERS[field_type](value)
        except ValueError:
            raise ValidationError(f"Invalid {field}: {value}.") from None

    def _rewrite_operators(self, field: str, operators: Mapping) -> dict:
        rewritten = {}
        for operator, value in operators.items():
            if str(operator).startswith("$"):
                raise ValidationError(f"Invalid filter operator: {operator}.")
            if isinstance(value, Mapping):
                raise ValidationError(f"Invalid {field}: nested operators are not supported.")
            if operator in COMPARISON_OPERATORS:
                rewritten[f"${operator}"] = self._coerce(field, value)
            else:
                # Unknown operators pass through untouched and never gain a "$".
                rewritten[operator] = value
        return rewritten

    # ==================== Pipeline Steps ====================

    def filter(self) -> "ApiFeatures":
        constraints: dict = {}
        for key, value in self._params.items():
            if key in CONTROL_KEYS:
                continue

            match = _BRACKET_KEY.match(key)
            field = match["field"] if match else key
            if field.startswith("$"):
                raise ValidationError(f"Invalid filter field: {field}.")
            if field in self._hidden_fields:
                continue

            if match:
                operators = {match["operator"]: value}
            elif isinstance(value, Mapping):
                operators = value
            else:
                if isinstance(constraints.get(key), dict):
                    raise ValidationError(f"Conflicting constraints for {key}.")
                constraints[key] = self._coerce(key, value)
                continue

            existing = constraints.setdefault(field, {})
            if not isinstance(existing, dict):
                raise ValidationError(f"Conflicting constraints for {field}.")
            existing.update(self._rewrite_operators(field, operators))

        # Caller-owned scoping wins over anything the client sent
        self._filter = {**constraints, **self._base_filter}
        return self

    def sort(self) -> "ApiFeatures":
        raw = self._params.get("sort")
        if not raw:
            return self

        keys = []
        for token in str(raw).split(","):
            token = token.strip()
            if not token:
                continue
            if token.startswith("-"):
                keys.append((token[1:], -1))
            else:
                keys.append((token.lstrip("+"), 1))
        if keys:
            self._sort = tuple(keys)
        return self

    def limit_fields(self) -> "ApiFeatures":
        raw = self._params.get("fields")
        if not raw:
            return self

        fields = [
            name.strip() for name in str(raw).split(",")
            if name.strip() and name.strip() not in self._hidden_fields
        ]
        if fields:
            self._projection = {name: 1 for name in fields}
        return self

    def paginate(self) -> "ApiFeatures":
        self._page = _positive_int(self._params.get("page"), settings.DEFAULT_PAGE)
        limit = _positive_int(self._params.get("limit"), settings.DEFAULT_LIMIT)
        self._limit = min(limit, self._max_limit)
        return self

    def build(self) -> QueryDescriptor:
        return QueryDescriptor(
            filter=dict(self._filter),
            sort=self._sort,
            projection=dict(self._projection),
            page=self._page,
            limit=self._limit,
        )


def build_query(query_params: Mapping, base_filter: Mapping | None = None, **options) -> QueryDescriptor:
    """Run every transformer step in the canonical order."""
    return (
        ApiFeatures(query_params, base_filter, **options)
        .filter()
        .sort()
        .limit_fields()
        .paginate()
        .build()
    )
