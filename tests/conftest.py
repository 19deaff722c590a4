"""Shared test fixtures: an in-memory stand-in for the Supabase table API."""
import itertools
import re
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from postgrest.exceptions import APIError

import db

_EMBED = re.compile(r"(\w+):(\w+)\(([^)]*)\)")


def _split_top(expr):
    """Split on commas that are not inside parentheses."""
    parts, depth, cur = [], 0, ""
    for ch in expr:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(cur)
            cur = ""
        else:
            cur += ch
    if cur:
        parts.append(cur)
    return parts


def _ilike(value, pattern):
    if value is None:
        return False
    rx = "^" + ".*".join(re.escape(p) for p in pattern.lower().split("%")) + "$"
    return re.match(rx, str(value).lower()) is not None


def _cond(expr, row):
    if expr.startswith("and(") and expr.endswith(")"):
        return all(_cond(e, row) for e in _split_top(expr[4:-1]))
    col, op, val = expr.split(".", 2)
    if op == "eq":
        return str(row.get(col)) == val
    if op == "ilike":
        return _ilike(row.get(col), val)
    raise NotImplementedError(op)


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, backend, table):
        self.backend = backend
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload = None
        self.filters = []
        self.ordering = []
        self.row_limit = None
        self.want_count = None

    def select(self, columns="*", count=None):
        self.columns = columns
        self.want_count = count
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def upsert(self, rows, on_conflict="id"):
        self.op, self.payload = "upsert", rows
        return self

    def update(self, values):
        self.op, self.payload = "update", values
        return self

    def eq(self, col, val):
        self.filters.append(lambda r: r.get(col) == val)
        return self

    def lt(self, col, val):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) < val)
        return self

    def in_(self, col, vals):
        self.filters.append(lambda r: r.get(col) in vals)
        return self

    def ilike(self, col, pattern):
        self.filters.append(lambda r: _ilike(r.get(col), pattern))
        return self

    def or_(self, expr):
        groups = _split_top(expr)
        self.filters.append(lambda r: any(_cond(g, r) for g in groups))
        return self

    def order(self, col, desc=False):
        self.ordering.append((col, desc))
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def _matching(self):
        return [r for r in self.backend.tables.setdefault(self.table, [])
                if all(f(r) for f in self.filters)]

    def _embed(self, row):
        out = dict(row)
        for alias, table, _cols in _EMBED.findall(self.columns):
            ref = row.get(f"{alias}_id")
            out[alias] = next((dict(t) for t in self.backend.tables.get(table, []) if t.get("id") == ref), None)
        return out

    def execute(self):
        self.backend.calls.append((self.table, self.op))
        if (self.table, self.op) in self.backend.failures:
            raise APIError({"message": f"{self.op} on {self.table} failed", "code": "500"})
        rows = self.backend.tables.setdefault(self.table, [])

        if self.op in ("insert", "upsert"):
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for p in payload:
                existing = next((r for r in rows if p.get("id") and r.get("id") == p["id"]), None)
                if self.op == "upsert" and existing is not None:
                    existing.update(p)
                    out.append(dict(existing))
                    continue
                new = dict(p)
                new.setdefault("id", str(uuid.uuid4()))
                new.setdefault("created_at", self.backend.tick())
                rows.append(new)
                out.append(dict(new))
            return FakeResponse(out)

        if self.op == "update":
            hit = self._matching()
            for r in hit:
                r.update(self.payload)
            return FakeResponse([dict(r) for r in hit])

        hit = self._matching()
        for col, desc in reversed(self.ordering):
            hit.sort(key=lambda r: r.get(col), reverse=desc)
        total = len(hit)
        if self.row_limit is not None:
            hit = hit[:self.row_limit]
        count = total if self.want_count else None
        return FakeResponse([self._embed(r) for r in hit], count)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.calls = []
        self.failures = set()
        self._clock = itertools.count()
        self._epoch = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def tick(self):
        return (self._epoch + timedelta(seconds=next(self._clock))).isoformat()

    def table(self, name):
        return FakeQuery(self, name)

    def fail(self, table, op):
        self.failures.add((table, op))


CLINIC_X = "clinic-x"
CLINIC_Y = "clinic-y"


@pytest.fixture
def backend(monkeypatch):
    sb = FakeSupabase()
    sb.tables["clinics"] = [
        {"id": CLINIC_X, "name": "Vashi Health Centre", "name_hi": "वाशी स्वास्थ्य केंद्र",
         "address": "Sector 17, Vashi", "address_hi": "", "latitude": "19.0771", "longitude": "72.9986",
         "status": "open", "is_active": True, "queueSize": None, "currentWaitTime": None},
        {"id": CLINIC_Y, "name": "Nerul Family Clinic", "address": "Sector 20, Nerul",
         "latitude": "19.0330", "longitude": "73.0297", "status": "busy", "is_active": True,
         "queueSize": 4, "currentWaitTime": 40},
        {"id": "clinic-z", "name": "Closed Clinic", "address": "Belapur", "is_active": False},
    ]
    sb.tables["doctors"] = [
        {"id": "doc-1", "clinic_id": CLINIC_X, "name": "Asha Rao", "specialization": "Dermatology",
         "rating": 4.2, "is_active": True},
        {"id": "doc-2", "clinic_id": CLINIC_X, "name": "Vikram Shah", "specialization": "Cardiology",
         "rating": 4.8, "is_active": True},
        {"id": "doc-3", "clinic_id": CLINIC_Y, "name": "Meera Iyer", "specialization": "Pediatrics",
         "rating": 4.5, "is_active": True},
    ]
    sb.tables["patients"] = []
    sb.tables["queue_tokens"] = []
    sb.tables["user_profiles"] = []
    monkeypatch.setattr(db, "get_supabase", lambda: sb)
    db.invalidate_lookups()
    yield sb
    db.invalidate_lookups()


@pytest.fixture
def storage():
    """Plays the part of st.session_state."""
    return {}


@pytest.fixture
def add_token(backend):
    def _add(clinic_id, token_number, status="waiting", patient_id="p-0"):
        row = {"id": str(uuid.uuid4()), "clinic_id": clinic_id, "patient_id": patient_id,
               "token_number": token_number, "status": status, "estimated_wait_time": 10,
               "created_at": backend.tick()}
        backend.tables["queue_tokens"].append(row)
        return row
    return _add
