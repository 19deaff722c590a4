"""
═══════════════════════════════════════════════════════════
 ClinicQ — Database Layer V1.4.0 (Supabase)
 Shared by booking.py, token_feed.py and member_app.py
 All times in IST (UTC+5:30)
═══════════════════════════════════════════════════════════
"""

import logging
import math
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone, timedelta

import streamlit as st
from supabase import create_client

VER = "V1.4.0"

logger = logging.getLogger(__name__)

# ── India Standard Time ──
IST = timezone(timedelta(hours=5, minutes=30))

def now_ist():
    return datetime.now(IST)

def format_ist(ts):
    """'2026-10-18T09:05:00+00:00' → '18 Oct, 02:35 PM'. Returns '' if unparseable."""
    if not ts:
        return ""
    try:
        dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST).strftime("%d %b, %I:%M %p")

# ── Supabase Connection ──
def get_credentials():
    try:
        url = st.secrets["SUPABASE_URL"]
        key = st.secrets["SUPABASE_KEY"]
    except Exception:
        url = os.environ.get("SUPABASE_URL", "")
        key = os.environ.get("SUPABASE_KEY", "")
    return url, key

# Client bound for code running outside a Streamlit session (worker threads, scripts)
_bound_client = ContextVar("supabase_client", default=None)

@contextmanager
def bound_client(client):
    token = _bound_client.set(client)
    try:
        yield client
    finally:
        _bound_client.reset(token)

def new_client(url=None, key=None):
    if not url or not key:
        url, key = get_credentials()
    if not url or not key:
        raise RuntimeError("Missing Supabase credentials")
    return create_client(url, key)

def get_supabase():
    sb = _bound_client.get()
    if sb is not None:
        return sb
    if "sb_client" not in st.session_state:
        url, key = get_credentials()
        if not url or not key:
            st.error("❌ Missing Supabase credentials.")
            st.stop()
        st.session_state.sb_client = create_client(url, key)
    return st.session_state.sb_client

# ═══════════════════════════════════════════════════
#  AUTH
# ═══════════════════════════════════════════════════
def sign_in(email, password):
    """Email/password sign-in. Returns the auth user or None."""
    sb = get_supabase()
    try:
        r = sb.auth.sign_in_with_password({"email": email.strip(), "password": password})
    except Exception as e:
        logger.warning("Sign-in failed for %s: %s", email, e)
        return None
    return r.user

def sign_out():
    get_supabase().auth.sign_out()

def user_role(auth_user):
    """Single role flag from user metadata; defaults to 'patient'."""
    if auth_user is None:
        return None
    meta = getattr(auth_user, "user_metadata", None)
    if meta is None and isinstance(auth_user, dict):
        meta = auth_user.get("user_metadata")
    return (meta or {}).get("role", "patient")

# ═══════════════════════════════════════════════════
#  CACHED LOOKUPS (clinics + doctors change rarely)
# ═══════════════════════════════════════════════════
@st.cache_data(ttl=60)
def get_clinics_cached():
    sb = get_supabase()
    r = sb.table("clinics").select("*").eq("is_active", True).execute()
    return r.data or []

@st.cache_data(ttl=60)
def get_doctors_cached():
    sb = get_supabase()
    r = sb.table("doctors").select("*").eq("is_active", True).order("name").execute()
    return r.data or []

def get_clinics():
    return get_clinics_cached()

def get_clinic(clinic_id):
    return next((c for c in get_clinics() if c["id"] == clinic_id), None)

def get_doctors(clinic_id=None):
    docs = get_doctors_cached()
    if clinic_id:
        docs = [d for d in docs if d.get("clinic_id") == clinic_id]
        return sorted(docs, key=lambda d: d.get("rating") or 0, reverse=True)
    return docs

def get_doctor(doctor_id):
    return next((d for d in get_doctors_cached() if d["id"] == doctor_id), None)

def invalidate_lookups():
    get_clinics_cached.clear()
    get_doctors_cached.clear()

# ═══════════════════════════════════════════════════
#  CLINIC SEARCH / LOCALIZATION
# ═══════════════════════════════════════════════════
LANGS = ("en", "hi", "mr")

def search_fields(lang):
    if lang in ("hi", "mr"):
        return [f"name_{lang}", f"address_{lang}", "name", "address"]
    return ["name_en", "address_en", "name", "address"]

def search_clinics(term="", area=None, lang="en"):
    """Active clinics matching a free-text term (localized columns) and an area."""
    sb = get_supabase()
    q = sb.table("clinics").select("*").eq("is_active", True)
    term = (term or "").strip().replace(",", " ")
    if term:
        q = q.or_(",".join(f"{f}.ilike.%{term}%" for f in search_fields(lang)))
    if area:
        q = q.ilike("address", f"%{area}%")
    r = q.execute()
    return r.data or []

def translated_name(clinic, lang="en"):
    return clinic.get(f"name_{lang}") or clinic.get("name", "")

def translated_address(clinic, lang="en"):
    return clinic.get(f"address_{lang}") or clinic.get("address", "")

def distance_km(lat1, lng1, lat2, lng2):
    """Haversine distance in kilometres."""
    r = 6371.0
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

def sort_by_distance(clinics, location):
    """Attach 'distance' (km) and sort nearest first. Clinics without coordinates go last."""
    if not location:
        return list(clinics)
    lat, lng = location
    out = []
    for c in clinics:
        c = dict(c)
        try:
            c["distance"] = distance_km(lat, lng, float(c["latitude"]), float(c["longitude"]))
        except (KeyError, TypeError, ValueError):
            c["distance"] = None
        out.append(c)
    out.sort(key=lambda c: (c["distance"] is None, c["distance"] or 0))
    return out

# ═══════════════════════════════════════════════════
#  DOCTORS
# ═══════════════════════════════════════════════════
def specialties(doctors):
    return sorted({d["specialization"] for d in doctors if d.get("specialization")})

def filter_doctors(doctors, term="", specialty="all"):
    t = (term or "").strip().lower()
    out = []
    for d in doctors:
        if t and t not in d.get("name", "").lower() and t not in (d.get("specialization") or "").lower():
            continue
        if specialty != "all" and d.get("specialization") != specialty:
            continue
        out.append(d)
    return out

# ═══════════════════════════════════════════════════
#  PATIENTS
# ═══════════════════════════════════════════════════
def get_patient(patient_id):
    sb = get_supabase()
    r = sb.table("patients").select("*").eq("id", patient_id).limit(1).execute()
    return r.data[0] if r.data else None

def get_user_profile(user_id):
    sb = get_supabase()
    r = sb.table("user_profiles").select("*").eq("user_id", user_id).limit(1).execute()
    return r.data[0] if r.data else None

def insert_patient(patient):
    sb = get_supabase()
    r = sb.table("patients").insert(patient).execute()
    return r.data[0]

def upsert_patient(patient):
    sb = get_supabase()
    r = sb.table("patients").upsert(patient, on_conflict="id").execute()
    return r.data[0]

# ═══════════════════════════════════════════════════
#  QUEUE TOKENS — READS
# ═══════════════════════════════════════════════════
# Active: holds a place in line, blocks a second booking
ACTIVE = ("waiting", "called")
# Shown on the dashboard
VISIBLE = ("waiting", "called", "completed")

TOKEN_COLUMNS = "*, clinic:clinics(name, address, phone)"

def get_token(token_id):
    sb = get_supabase()
    r = sb.table("queue_tokens").select("*").eq("id", token_id).limit(1).execute()
    return r.data[0] if r.data else None

def latest_active_token(patient_id):
    """Most recent waiting/called token owned by a patient."""
    sb = get_supabase()
    r = (sb.table("queue_tokens").select(TOKEN_COLUMNS)
         .eq("patient_id", patient_id)
         .in_("status", list(ACTIVE))
         .order("created_at", desc=True)
         .limit(1)
         .execute())
    return r.data[0] if r.data else None

def find_active_token(clinic_id, token_number):
    sb = get_supabase()
    r = (sb.table("queue_tokens").select(TOKEN_COLUMNS)
         .eq("clinic_id", clinic_id)
         .eq("token_number", token_number)
         .in_("status", list(ACTIVE))
         .limit(1)
         .execute())
    return r.data[0] if r.data else None

def last_token_number(clinic_id):
    """Highest token number ever issued for a clinic (0 if none)."""
    sb = get_supabase()
    r = (sb.table("queue_tokens").select("token_number")
         .eq("clinic_id", clinic_id)
         .order("token_number", desc=True)
         .limit(1)
         .execute())
    return r.data[0]["token_number"] if r.data else 0

def count_waiting(clinic_id):
    sb = get_supabase()
    r = (sb.table("queue_tokens").select("id", count="exact")
         .eq("clinic_id", clinic_id)
         .eq("status", "waiting")
         .execute())
    return r.count if r.count is not None else len(r.data or [])

def count_ahead(token):
    """Waiting tokens in the same clinic with a lower number."""
    sb = get_supabase()
    r = (sb.table("queue_tokens").select("id", count="exact")
         .eq("clinic_id", token["clinic_id"])
         .eq("status", "waiting")
         .lt("token_number", token["token_number"])
         .execute())
    return r.count if r.count is not None else len(r.data or [])

def tokens_for_patient(patient_id, statuses=VISIBLE):
    sb = get_supabase()
    r = (sb.table("queue_tokens").select(TOKEN_COLUMNS)
         .eq("patient_id", patient_id)
         .in_("status", list(statuses))
         .order("created_at", desc=True)
         .execute())
    return r.data or []

def tokens_by_refs(refs, statuses=VISIBLE):
    """Tokens matching any (clinic_id, token_number) pair."""
    if not refs:
        return []
    sb = get_supabase()
    cond = ",".join(f"and(clinic_id.eq.{c},token_number.eq.{n})" for c, n in refs)
    r = (sb.table("queue_tokens").select(TOKEN_COLUMNS)
         .in_("status", list(statuses))
         .or_(cond)
         .order("created_at", desc=True)
         .execute())
    return r.data or []

# ═══════════════════════════════════════════════════
#  QUEUE TOKENS — WRITES
# ═══════════════════════════════════════════════════
def insert_queue_token(token):
    sb = get_supabase()
    r = sb.table("queue_tokens").insert(token).execute()
    return r.data[0]

def update_queue_token(token_id, **kwargs):
    sb = get_supabase()
    r = sb.table("queue_tokens").update(kwargs).eq("id", token_id).execute()
    return r.data[0] if r.data else None

# ═══════════════════════════════════════════════════
#  STATUS CONSTANTS
# ═══════════════════════════════════════════════════
CLINIC_STATUS = {
    "open":   {"label": "Open",   "emoji": "🟢", "color": "green"},
    "busy":   {"label": "Busy",   "emoji": "🟡", "color": "yellow"},
    "closed": {"label": "Closed", "emoji": "🔴", "color": "red"},
}

STATUS_LABELS = {
    "waiting":   "⏳ Waiting",
    "called":    "🔔 Called",
    "completed": "✅ Completed",
    "cancelled": "🚫 Cancelled",
}
