"""
═══════════════════════════════════════════════════════════
 ClinicQ — Booking & Queue Manager V1.4.0
 Actor resolution, conflict check, token issuance,
 wait estimation and the patient's queue view.
═══════════════════════════════════════════════════════════
"""

import asyncio
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Optional

import httpx
from postgrest.exceptions import APIError

import db

logger = logging.getLogger(__name__)

# Errors the backend raises for a failed request
BACKEND_ERRORS = (APIError, httpx.HTTPError)

PER_PATIENT_MINUTES = 10
MIN_WAIT_MINUTES = 5
FALLBACK_WAIT_MINUTES = 30
MAX_WAIT_MINUTES = 24 * 60

SENTINEL_PHONE = "0000000000"
ANONYMOUS_NAME = "Anonymous Patient"

# Allowed next statuses
TRANSITIONS = {
    "waiting":   ("called", "cancelled"),
    "called":    ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

class BookingError(Exception):
    """Token could not be persisted."""

class InvalidTransition(Exception):
    pass

class BookingInProgress(Exception):
    pass

# ═══════════════════════════════════════════════════
#  LOCAL TOKEN STORE
# ═══════════════════════════════════════════════════
class LocalTokenStore:
    """Tokens booked on this device without signing in.

    Wraps any mutable mapping (Streamlit session state in the app). The whole
    list lives as one JSON string under ``SLOT`` and is rewritten on every
    change.
    """

    SLOT = "userTokens"

    def __init__(self, storage):
        self.storage = storage

    def get(self):
        raw = self.storage.get(self.SLOT)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable local token list")
            return []
        if not isinstance(entries, list):
            logger.warning("Discarding local token list of type %s", type(entries).__name__)
            return []
        return [e for e in entries if isinstance(e, dict)]

    def _put(self, entries):
        self.storage[self.SLOT] = json.dumps(entries)

    def append(self, entry):
        entries = self.get()
        entries.append(entry)
        self._put(entries)

    def remove(self, clinic_id, token_number):
        entries = self.get()
        kept = [e for e in entries
                if not (e.get("clinicId") == clinic_id and e.get("tokenNumber") == token_number)]
        self._put(kept)
        return len(entries) - len(kept)

# ═══════════════════════════════════════════════════
#  ACTOR RESOLVER
# ═══════════════════════════════════════════════════
@dataclass
class Actor:
    actor_id: Optional[str] = None
    local_tokens: list = field(default_factory=list)
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def authenticated(self):
        return self.actor_id is not None

def _user_attr(user, name):
    if isinstance(user, dict):
        return user.get(name)
    return getattr(user, name, None)

def resolve_actor(auth_user, store):
    """Authenticated actor when a well-formed identity is present, else anonymous."""
    if auth_user is not None:
        raw_id = _user_attr(auth_user, "id")
        try:
            actor_id = str(uuid.UUID(str(raw_id)))
        except (TypeError, ValueError):
            logger.warning("Malformed auth identity %r, booking anonymously", raw_id)
        else:
            meta = _user_attr(auth_user, "user_metadata") or {}
            return Actor(actor_id=actor_id,
                         email=_user_attr(auth_user, "email"),
                         name=meta.get("name") or meta.get("full_name"))
    return Actor(local_tokens=store.get())

# ═══════════════════════════════════════════════════
#  CONFLICT CHECKER
# ═══════════════════════════════════════════════════
def find_active_booking(actor):
    """The actor's waiting/called token, or None.

    Lookup errors count as no conflict.
    """
    if actor.authenticated:
        try:
            return db.latest_active_token(actor.actor_id)
        except BACKEND_ERRORS as e:
            logger.warning("Conflict lookup failed for %s: %s", actor.actor_id, e)
            return None

    for entry in actor.local_tokens:
        try:
            found = db.find_active_token(entry.get("clinicId"), entry.get("tokenNumber"))
        except BACKEND_ERRORS as e:
            logger.warning("Conflict lookup failed for clinic %s #%s: %s",
                           entry.get("clinicId"), entry.get("tokenNumber"), e)
            continue
        if found:
            return found
    return None

# ═══════════════════════════════════════════════════
#  WAIT-TIME ESTIMATOR
# ═══════════════════════════════════════════════════
def wait_minutes(depth):
    return min(MAX_WAIT_MINUTES, max(MIN_WAIT_MINUTES, depth * PER_PATIENT_MINUTES))

def estimate_wait(clinic_id):
    try:
        depth = db.count_waiting(clinic_id)
    except BACKEND_ERRORS as e:
        logger.warning("Queue depth unavailable for clinic %s: %s", clinic_id, e)
        return FALLBACK_WAIT_MINUTES
    return wait_minutes(depth)

def clinic_snapshot(clinic):
    """Clinic with queueSize / currentWaitTime filled from the live queue when empty."""
    c = dict(clinic)
    if c.get("queueSize") is None or c.get("currentWaitTime") is None:
        try:
            depth = db.count_waiting(c["id"])
        except BACKEND_ERRORS as e:
            logger.warning("Queue depth unavailable for clinic %s: %s", c["id"], e)
            if c.get("currentWaitTime") is None:
                c["currentWaitTime"] = FALLBACK_WAIT_MINUTES
            return c
        if c.get("queueSize") is None:
            c["queueSize"] = depth
        if c.get("currentWaitTime") is None:
            c["currentWaitTime"] = wait_minutes(depth)
    return c

# ═══════════════════════════════════════════════════
#  TOKEN ISSUER
# ═══════════════════════════════════════════════════
def resolve_patient(actor):
    """Patient id for the booking. Anonymous actors always get a fresh placeholder."""
    if not actor.authenticated:
        p = db.insert_patient({"name": ANONYMOUS_NAME, "phone": SENTINEL_PHONE, "email": None})
        return p["id"]

    if db.get_patient(actor.actor_id):
        return actor.actor_id
    profile = db.get_user_profile(actor.actor_id) or {}
    db.upsert_patient({
        "id": actor.actor_id,
        "name": profile.get("full_name") or actor.name or actor.email or "Patient",
        "phone": profile.get("phone") or SENTINEL_PHONE,
        "email": actor.email,
    })
    return actor.actor_id

def issue_token(actor, clinic_id, doctor_id=None, store=None, booking_type="doctor_booking"):
    """Persist a new waiting token. Raises BookingError on any backend failure.

    A patient row created before a failed token insert is left in place.
    """
    try:
        patient_id = resolve_patient(actor)
        # TODO: switch to a server-side sequence once the backend exposes one;
        # two devices booking the same clinic at once can read the same max.
        token_number = db.last_token_number(clinic_id) + 1
        eta = estimate_wait(clinic_id)
        token = db.insert_queue_token({
            "clinic_id": clinic_id,
            "patient_id": patient_id,
            "token_number": token_number,
            "status": "waiting",
            "estimated_wait_time": eta,
        })
    except BACKEND_ERRORS as e:
        logger.exception("Booking failed for clinic %s", clinic_id)
        raise BookingError("Failed to book appointment. Please try again.") from e

    if not actor.authenticated and store is not None:
        store.append({
            "tokenNumber": token["token_number"],
            "clinicId": clinic_id,
            "doctorId": doctor_id,
            "createdAt": token.get("created_at"),
            "bookingType": booking_type,
        })
    logger.info("Issued token #%s at clinic %s (eta %s min)",
                token["token_number"], clinic_id, token.get("estimated_wait_time"))
    return token

# ═══════════════════════════════════════════════════
#  STATUS TRANSITIONS
# ═══════════════════════════════════════════════════
def can_transition(old, new):
    return new in TRANSITIONS.get(old, ())

def transition_token(token_id, new_status):
    """Move a token along waiting → called → completed / cancelled.

    Re-applying the current status is a no-op.
    """
    token = db.get_token(token_id)
    if token is None:
        raise LookupError(f"Token {token_id} not found")
    old = token["status"]
    if old == new_status:
        return token
    if not can_transition(old, new_status):
        raise InvalidTransition(f"{old} → {new_status} not allowed")
    updated = db.update_queue_token(token_id, status=new_status)
    if updated is None:
        # zero rows written, e.g. row-level security refused the update
        raise LookupError(f"Token {token_id} was not updated")
    logger.info("Token %s: %s → %s", token_id, old, new_status)
    return updated

def cancel_token(token_id, store=None):
    token = transition_token(token_id, "cancelled")
    if store is not None:
        store.remove(token["clinic_id"], token["token_number"])
    return token

# ═══════════════════════════════════════════════════
#  BOOKING FLOW
# ═══════════════════════════════════════════════════
@dataclass
class BookingRequest:
    clinic_id: Optional[str]
    doctor_id: Optional[str] = None
    booking_type: str = "doctor_booking"

@dataclass
class BookingResult:
    status: str   # booked | conflict | kept | invalid | busy | failed
    token: Optional[dict] = None
    existing: Optional[dict] = None
    errors: list = field(default_factory=list)

    @property
    def ok(self):
        return self.status == "booked"

def validate_booking(request):
    errors = []
    if not request.clinic_id:
        errors.append("Please choose a clinic.")
        return errors
    clinic = db.get_clinic(request.clinic_id)
    if not clinic:
        errors.append("Clinic not found. It may have been removed.")
    if request.doctor_id:
        doc = db.get_doctor(request.doctor_id)
        if not doc or doc.get("clinic_id") != request.clinic_id:
            errors.append("No clinic found for this doctor.")
    return errors

class BookingGuard:
    """In-flight flag per action, kept in the same mapping as the local store."""

    def __init__(self, storage, action="book"):
        self.storage = storage
        self.key = f"in_flight_{action}"

    @property
    def busy(self):
        return bool(self.storage.get(self.key))

    @contextmanager
    def hold(self):
        if self.busy:
            raise BookingInProgress(self.key)
        self.storage[self.key] = True
        try:
            yield
        finally:
            self.storage[self.key] = False

def book(actor, store, request, guard=None):
    """Full booking: validate, check for a conflict, then issue."""
    try:
        errors = validate_booking(request)
    except BACKEND_ERRORS:
        logger.exception("Could not validate booking for clinic %s", request.clinic_id)
        return BookingResult("failed", errors=["Failed to book appointment. Please try again."])
    if errors:
        return BookingResult("invalid", errors=errors)

    guard = guard or BookingGuard(store.storage)
    try:
        with guard.hold():
            existing = find_active_booking(actor)
            if existing:
                return BookingResult("conflict", existing=existing)
            token = issue_token(actor, request.clinic_id, request.doctor_id,
                                store=store, booking_type=request.booking_type)
    except BookingInProgress:
        return BookingResult("busy", errors=["A booking is already in progress."])
    except BookingError as e:
        return BookingResult("failed", errors=[str(e)])
    return BookingResult("booked", token=token)

def resolve_conflict(choice, existing, actor, store, request):
    """Apply the patient's answer to the conflict dialog."""
    if choice == "keep_previous":
        return BookingResult("kept", existing=existing)
    if choice != "cancel_previous":
        raise ValueError(f"Unknown conflict choice: {choice}")

    try:
        cancel_token(existing["id"])
    except (InvalidTransition, LookupError) as e:
        logger.warning("Could not cancel previous token %s: %s", existing.get("id"), e)
        return BookingResult("failed", existing=existing, errors=["Failed to cancel previous appointment."])
    except BACKEND_ERRORS:
        logger.exception("Cancel failed for token %s", existing.get("id"))
        return BookingResult("failed", existing=existing, errors=["Failed to cancel previous appointment."])
    store.remove(existing["clinic_id"], existing["token_number"])
    if not actor.authenticated:
        actor = replace(actor, local_tokens=store.get())
    return book(actor, store, request)

# ═══════════════════════════════════════════════════
#  QUEUE STATUS READER
# ═══════════════════════════════════════════════════
def fetch_my_tokens(actor):
    """The actor's tokens, newest first, each waiting one with its queue position."""
    try:
        if actor.authenticated:
            rows = db.tokens_for_patient(actor.actor_id)
        else:
            refs = [(e["clinicId"], e["tokenNumber"]) for e in actor.local_tokens
                    if e.get("clinicId") and e.get("tokenNumber") is not None]
            rows = db.tokens_by_refs(refs)
    except BACKEND_ERRORS as e:
        logger.warning("Could not load queue tokens: %s", e)
        return []

    out = []
    for r in rows:
        r = dict(r)
        clinic = r.get("clinic")
        if isinstance(clinic, list):
            clinic = clinic[0] if clinic else None
        r["clinic"] = clinic or {}
        r["position"] = None
        if r.get("status") == "waiting":
            try:
                r["position"] = db.count_ahead(r) + 1
            except BACKEND_ERRORS as e:
                logger.warning("Position unavailable for token %s: %s", r.get("id"), e)
        out.append(r)
    return out

class QueueStatusReader:
    """Keeps the patient's token list current.

    ``watch`` subscribes to every change on ``queue_tokens`` and re-runs the
    full query on each event, off the event loop in a worker thread. Pass a
    ``client`` when reading outside a Streamlit session. ``close`` must be
    called when the view goes away.
    """

    def __init__(self, actor, store=None, client=None):
        self.actor = actor
        self.store = store
        self.client = client
        self.tokens = []
        self.listeners = []
        self._feed = None
        self._subscription = None
        self._loop = None
        self._pending = set()

    def add_listener(self, fn):
        self.listeners.append(fn)

    def refresh(self):
        if self.store is not None and not self.actor.authenticated:
            self.actor = replace(self.actor, local_tokens=self.store.get())
        if self.client is not None:
            with db.bound_client(self.client):
                self.tokens = fetch_my_tokens(self.actor)
        else:
            self.tokens = fetch_my_tokens(self.actor)
        for fn in self.listeners:
            fn(self.tokens)
        return self.tokens

    def _on_change(self, payload):
        logger.debug("queue_tokens change: %s", payload)
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._schedule_refresh)

    def _schedule_refresh(self):
        if self._loop is None:
            return
        task = self._loop.create_task(asyncio.to_thread(self.refresh))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def settle(self):
        """Wait for refreshes already triggered by change events."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @property
    def watching(self):
        return self._subscription is not None

    async def watch(self, feed):
        if self.watching:
            return
        self._loop = asyncio.get_running_loop()
        await asyncio.to_thread(self.refresh)
        self._feed = feed
        self._subscription = await feed.subscribe(self._on_change)

    async def close(self):
        if not self.watching:
            return
        try:
            await self._feed.unsubscribe(self._subscription)
            await self.settle()
        finally:
            self._feed = None
            self._subscription = None
            self._loop = None
