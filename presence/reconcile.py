"""Replace-all as a key-set reconciliation.

Both backends make a stored collection equal to a given list by upserting
every incoming record and deleting only the ids that disappeared. Upserts are
applied before deletes, so readers never observe an empty collection.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set


@dataclass
class ReplacePlan:
    upserts: Dict[str, Dict] = field(default_factory=dict)
    deletes: Set[str] = field(default_factory=set)
    inserts: Set[str] = field(default_factory=set)


def record_key(record: Dict) -> str:
    if 'id' not in record or record['id'] in (None, ''):
        raise ValueError('Every record needs an "id" to be stored.')
    return str(record['id'])


def plan_replace(existing_keys: Iterable[str], records: List[Dict]) -> ReplacePlan:
    previous = {str(k) for k in existing_keys}
    upserts = {}
    for record in records:
        # a repeated id keeps the last occurrence
        upserts[record_key(record)] = record
    new_keys = set(upserts)
    return ReplacePlan(
        upserts=upserts,
        deletes=previous - new_keys,
        inserts=new_keys - previous,
    )
