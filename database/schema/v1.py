"""Schema v1 - Initial database schema.

One table per collection, each row holding a JSON document:
- users
- services
- bookings
- reviews
- community_posts

Indexes are expression indexes over document fields. Unique indexes carry a
'field' entry naming the document field reported on duplicate writes.
"""

def _location_index(name):
    """Index on the [lng, lat] pair of a GeoJSON location field."""
    return {
        'name': name,
        'columns': [
            "((doc->'location'->'coordinates'->>0)::float8)",
            "((doc->'location'->'coordinates'->>1)::float8)"
        ]
    }

def _collection(name, indexes):
    return {
        'name': name,
        'columns': [
            {'name': 'id', 'type': 'UUID', 'primary_key': True},
            {'name': 'doc', 'type': 'JSONB', 'nullable': False},
            {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
            {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
        ],
        'indexes': indexes
    }

schema = {
    'version': 1,
    'tables': [
        _collection('users', [
            {'name': 'uq_users_email', 'columns': ["(doc->>'email')"], 'unique': True, 'field': 'email'},
            {'name': 'idx_users_city', 'columns': ["(doc->'address'->>'city')"]},
            {'name': 'idx_users_active', 'columns': ["(doc->>'isActive')"]},
            _location_index('idx_users_location')
        ]),
        _collection('services', [
            {'name': 'idx_services_provider', 'columns': ["(doc->>'provider')"]},
            {'name': 'idx_services_category', 'columns': ["(doc->>'category')"]},
            {'name': 'idx_services_active', 'columns': ["(doc->>'isActive')", "(doc->>'isPaused')"]},
            _location_index('idx_services_location')
        ]),
        _collection('bookings', [
            {'name': 'idx_bookings_customer', 'columns': ["(doc->>'customer')"]},
            {'name': 'idx_bookings_provider', 'columns': ["(doc->>'provider')"]},
            {'name': 'idx_bookings_service', 'columns': ["(doc->>'service')"]},
            {'name': 'idx_bookings_status', 'columns': ["(doc->>'status')"]}
        ]),
        _collection('reviews', [
            {
                'name': 'uq_reviews_booking_type',
                'columns': ["(doc->>'booking')", "(doc->>'reviewType')"],
                'unique': True,
                'field': 'booking'
            },
            {'name': 'idx_reviews_reviewee', 'columns': ["(doc->>'reviewee')"]},
            {'name': 'idx_reviews_service', 'columns': ["(doc->>'service')"]}
        ]),
        _collection('community_posts', [
            {'name': 'idx_posts_author', 'columns': ["(doc->>'author')"]},
            {'name': 'idx_posts_city', 'columns': ["(doc->'address'->>'city')"]},
            {'name': 'idx_posts_status', 'columns': ["(doc->>'status')"]},
            _location_index('idx_posts_location')
        ])
    ]
}
