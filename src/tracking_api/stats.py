import json

MISSING = 'undefined'

# response key -> record field
COUNTED_FIELDS = (
    ('browsers', 'browser'),
    ('devices', 'deviceType'),
    ('countries', 'country'),
    ('cities', 'city'),
)


def bucket_key(record, field):
    if field not in record:
        return MISSING
    value = record[field]
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(',', ':'), sort_keys=True)


def compute_stats(visitors):
    """Count browsers, devices, countries and cities in a single pass."""
    stats = {'totalVisitors': len(visitors)}
    for name, _ in COUNTED_FIELDS:
        stats[name] = {}

    for visitor in visitors:
        if not isinstance(visitor, dict):
            visitor = {}
        for name, field in COUNTED_FIELDS:
            key = bucket_key(visitor, field)
            stats[name][key] = stats[name].get(key, 0) + 1

    return stats
