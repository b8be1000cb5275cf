"""Document filter compiler.

Collections store each entity as a JSONB ``doc`` column. Managers query them with
a small document-query language which this module translates into SQL:

    {'status': 'active'}                               equality on a dotted path
    {'pricing.amount': {'$gte': 10, '$lte': 50}}       range
    {'status': {'$in': ['pending', 'confirmed']}}      membership
    {'title': {'$regex': 'garden', '$options': 'i'}}   regular expression
    {'$or': [{'customer': uid}, {'provider': uid}]}    disjunction
    {'location': {'$near': {'coordinates': [lng, lat], 'maxDistance': 16093.4}}}

Values are always passed as query parameters; only the operator skeleton is
interpolated into the statement.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import DatabaseError

EARTH_RADIUS_METERS = 6371008.8

Sort = Sequence[Tuple[str, int]]

COMPARISONS = {
    '$gt': '>',
    '$gte': '>=',
    '$lt': '<',
    '$lte': '<='
}

class QueryError(DatabaseError):
    """Raised when a filter uses an unsupported operator or malformed value."""
    pass

class QueryCompiler:
    """Compiles filters and sort specs into SQL fragments and positional parameters."""

    def __init__(self, column: str = 'doc'):
        self.column = column
        self.params: List[Any] = []
        self.distance_expr: Optional[str] = None

    def param(self, value: Any) -> str:
        """Register a parameter and return its placeholder."""
        self.params.append(value)
        return f"${len(self.params)}"

    def json_path(self, field: str) -> str:
        return f"({self.column} #> {self.param(field.split('.'))}::text[])"

    def text_path(self, field: str) -> str:
        return f"({self.column} #>> {self.param(field.split('.'))}::text[])"

    def where(self, filter: Optional[Dict[str, Any]]) -> str:
        """Compile a filter into a boolean SQL expression."""
        if not filter:
            return 'TRUE'

        clauses = []
        for key, value in filter.items():
            if key in ('$or', '$and'):
                if not isinstance(value, (list, tuple)):
                    raise QueryError(f"{key} expects a list of filters")
                parts = [f"({self.where(sub)})" for sub in value]
                if not parts:
                    clauses.append('FALSE' if key == '$or' else 'TRUE')
                else:
                    joiner = ' OR ' if key == '$or' else ' AND '
                    clauses.append(f"({joiner.join(parts)})")
            elif key.startswith('$'):
                raise QueryError(f"Unsupported top-level operator: {key}")
            elif _is_operator_dict(value):
                clauses.extend(self._operators(key, value))
            else:
                clauses.append(self._equals(key, value))

        return ' AND '.join(clauses)

    def order_by(self, sort: Optional[Sort]) -> str:
        """Compile a sort clause, falling back to distance order for $near queries."""
        terms = []
        for field, direction in sort or []:
            if direction >= 0:
                terms.append(f"{self.json_path(field)} ASC NULLS FIRST")
            else:
                terms.append(f"{self.json_path(field)} DESC NULLS LAST")

        if self.distance_expr and not terms:
            terms.append(f"{self.distance_expr} ASC")

        return f" ORDER BY {', '.join(terms)}" if terms else ''

    def _equals(self, field: str, value: Any) -> str:
        path = self.json_path(field)
        if value is None:
            return f"({path} IS NULL OR {path} = 'null'::jsonb)"
        return f"{path} = {self.param(value)}::jsonb"

    def _operators(self, field: str, ops: Dict[str, Any]) -> List[str]:
        clauses = []
        for op, value in ops.items():
            if op == '$eq':
                clauses.append(self._equals(field, value))
            elif op == '$ne':
                path = self.json_path(field)
                if value is None:
                    clauses.append(f"({path} IS NOT NULL AND {path} <> 'null'::jsonb)")
                else:
                    clauses.append(f"{path} IS DISTINCT FROM {self.param(value)}::jsonb")
            elif op in COMPARISONS:
                clauses.append(self._compare(field, COMPARISONS[op], value))
            elif op == '$in':
                clauses.append(
                    f"COALESCE({self.param(list(value))}::jsonb @> {self.json_path(field)}, FALSE)"
                )
            elif op == '$nin':
                clauses.append(
                    f"NOT COALESCE({self.param(list(value))}::jsonb @> {self.json_path(field)}, FALSE)"
                )
            elif op == '$regex':
                operator = '~*' if 'i' in ops.get('$options', '') else '~'
                clauses.append(f"{self.text_path(field)} {operator} {self.param(str(value))}")
            elif op == '$options':
                continue
            elif op == '$exists':
                suffix = 'IS NOT NULL' if value else 'IS NULL'
                clauses.append(f"{self.json_path(field)} {suffix}")
            elif op == '$near':
                clauses.append(self._near(field, value))
            else:
                raise QueryError(f"Unsupported operator {op} on {field}")
        return clauses

    def _compare(self, field: str, operator: str, value: Any) -> str:
        if isinstance(value, datetime):
            return f"{self.text_path(field)}::timestamptz {operator} {self.param(value)}::timestamptz"
        return f"{self.json_path(field)} {operator} {self.param(value)}::jsonb"

    def _near(self, field: str, near: Dict[str, Any]) -> str:
        try:
            lng, lat = (float(c) for c in near['coordinates'])
        except (KeyError, TypeError, ValueError):
            raise QueryError(f"$near on {field} requires coordinates [lng, lat]")

        point = self.json_path(field)
        doc_lng = f"({point} -> 'coordinates' ->> 0)::float8"
        doc_lat = f"({point} -> 'coordinates' ->> 1)::float8"
        p_lng = self.param(lng)
        p_lat = self.param(lat)

        # Haversine great-circle distance in meters
        self.distance_expr = (
            f"(2 * {EARTH_RADIUS_METERS} * asin(least(1.0, sqrt("
            f"power(sin(radians({doc_lat} - {p_lat}::float8) / 2), 2) + "
            f"cos(radians({p_lat}::float8)) * cos(radians({doc_lat})) * "
            f"power(sin(radians({doc_lng} - {p_lng}::float8) / 2), 2)))))"
        )

        clause = f"jsonb_array_length({point} -> 'coordinates') = 2"
        max_distance = near.get('maxDistance')
        if max_distance is not None:
            clause += f" AND {self.distance_expr} <= {self.param(float(max_distance))}::float8"
        return f"({clause})"

def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(
        isinstance(k, str) and k.startswith('$') for k in value
    )
