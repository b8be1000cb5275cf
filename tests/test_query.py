"""Tests for the document filter compiler."""

from datetime import datetime, timezone

import pytest

from database.lib.query import QueryCompiler, QueryError

def test_equality_on_dotted_path():
    compiler = QueryCompiler()
    sql = compiler.where({'address.city': 'Austin'})

    assert sql == "(doc #> $1::text[]) = $2::jsonb"
    assert compiler.params == [['address', 'city'], 'Austin']

def test_none_matches_missing_or_null():
    compiler = QueryCompiler()
    sql = compiler.where({'deletedAt': None})

    assert 'IS NULL' in sql
    assert "'null'::jsonb" in sql

def test_range_and_membership():
    compiler = QueryCompiler()
    sql = compiler.where({
        'pricing.amount': {'$gte': 10, '$lte': 50},
        'status': {'$in': ['pending', 'confirmed']}
    })

    assert '>= $2::jsonb' in sql
    assert '<= $4::jsonb' in sql
    assert '@>' in sql
    assert ['pending', 'confirmed'] in compiler.params
    assert 10 in compiler.params and 50 in compiler.params

def test_datetime_comparison_uses_timestamptz():
    """Test that datetimes compare as instants, not as JSON strings."""
    compiler = QueryCompiler()
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    sql = compiler.where({'createdAt': {'$gte': since}})

    assert '#>>' in sql
    assert sql.count('::timestamptz') == 2
    assert since in compiler.params

def test_regex_case_insensitive():
    compiler = QueryCompiler()
    sql = compiler.where({'title': {'$regex': 'garden', '$options': 'i'}})

    assert '~*' in sql
    assert 'garden' in compiler.params

def test_or_clauses():
    compiler = QueryCompiler()
    sql = compiler.where({'$or': [{'customer': 'a'}, {'provider': 'a'}]})

    assert ' OR ' in sql
    assert sql.startswith('((')

def test_empty_or_matches_nothing():
    assert QueryCompiler().where({'$or': []}) == 'FALSE'

def test_empty_filter_matches_everything():
    assert QueryCompiler().where({}) == 'TRUE'

def test_near_orders_by_distance_without_sort():
    compiler = QueryCompiler()
    sql = compiler.where({'location': {'$near': {'coordinates': [-97.7, 30.3], 'maxDistance': 1000}}})

    assert 'jsonb_array_length' in sql
    assert 'asin' in sql
    assert compiler.order_by(None).startswith(' ORDER BY (2 * ')

def test_explicit_sort_wins_over_distance():
    compiler = QueryCompiler()
    compiler.where({'location': {'$near': {'coordinates': [0, 0]}}})
    order = compiler.order_by([('createdAt', -1)])

    assert order.endswith('DESC NULLS LAST')
    assert 'asin' not in order

def test_ascending_sort_puts_nulls_first():
    assert QueryCompiler().order_by([('title', 1)]).endswith('ASC NULLS FIRST')

def test_unsupported_operator():
    with pytest.raises(QueryError):
        QueryCompiler().where({'title': {'$where': 'x'}})

def test_unsupported_top_level_operator():
    with pytest.raises(QueryError):
        QueryCompiler().where({'$nor': [{'a': 1}]})

def test_near_requires_coordinates():
    with pytest.raises(QueryError, match='coordinates'):
        QueryCompiler().where({'location': {'$near': {'maxDistance': 10}}})
