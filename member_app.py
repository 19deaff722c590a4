"""
═══════════════════════════════════════════════════════════
 ClinicQ — Patient Portal V1.4.0 (Public)
 Find a clinic, join its queue, track your token.
═══════════════════════════════════════════════════════════
"""

import logging
import os

import streamlit as st

from db import (
    VER, LANGS, CLINIC_STATUS, STATUS_LABELS, ACTIVE, now_ist, format_ist,
    search_clinics, get_clinic, get_doctors, get_doctor, specialties, filter_doctors,
    translated_name, translated_address, sort_by_distance, sign_in, sign_out, user_role,
)
from booking import (
    LocalTokenStore, BookingGuard, BookingRequest, QueueStatusReader,
    resolve_actor, book, resolve_conflict, cancel_token, clinic_snapshot,
    InvalidTransition, BACKEND_ERRORS,
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("member_app")

st.set_page_config(page_title="ClinicQ", page_icon="🏥", layout="centered")

st.markdown("""<style>
.cq-header{background:linear-gradient(135deg,#0b3d5c,#1479a8);color:#fff!important;padding:18px 22px;border-radius:12px;margin-bottom:16px}
.cq-header h2{margin:0;font-size:22px;color:#fff!important}
.cq-header p{margin:4px 0 0;opacity:.75;font-size:13px;color:#fff!important}
.cq-card{background:var(--secondary-background-color,#fff);border-radius:10px;padding:16px;margin-bottom:12px;border:1px solid rgba(128,128,128,.15)}
.cq-token{font-family:monospace;font-size:40px;font-weight:900;color:#1479a8;text-align:center}
.stButton>button{border-radius:8px;font-weight:700}
</style>""", unsafe_allow_html=True)

# ── Auto-refresh ──
_ar_ok = False
try:
    from streamlit_autorefresh import st_autorefresh
    st_autorefresh(interval=20_000, limit=None, key="member_ar")
    _ar_ok = True
except ImportError:
    pass

# ── Session state ──
for k, v in {"screen": "home", "sel_clinic": None, "sel_doctor": None, "ticket": None,
             "conflict": None, "auth_user": None, "lang": "en", "location": None}.items():
    if k not in st.session_state:
        st.session_state[k] = v

def go(scr):
    st.session_state.screen = scr
    st.rerun()

store = LocalTokenStore(st.session_state)
guard = BookingGuard(st.session_state)
auth_user = st.session_state.auth_user
actor = resolve_actor(auth_user, store)
lang = st.session_state.lang
screen = st.session_state.screen

# ═══════════════════════════════════════════════════
#  SIDEBAR — SIGN-IN / LANGUAGE / LOCATION
# ═══════════════════════════════════════════════════
with st.sidebar:
    st.session_state.lang = st.selectbox("Language", LANGS, index=LANGS.index(lang))
    if auth_user is None:
        with st.form("login"):
            email = st.text_input("Email")
            pw = st.text_input("Password", type="password")
            if st.form_submit_button("Sign in", use_container_width=True):
                u = sign_in(email, pw)
                if u:
                    st.session_state.auth_user = u
                    st.rerun()
                else:
                    st.error("❌ Invalid email or password.")
        st.caption("You can book without signing in. Tokens stay on this device.")
    else:
        st.markdown(f"Signed in as **{getattr(auth_user, 'email', '')}**")
        if st.button("Sign out", use_container_width=True):
            sign_out()
            st.session_state.auth_user = None
            st.rerun()
    with st.expander("📍 My location"):
        lat = st.number_input("Latitude", value=19.03, format="%.5f")
        lng = st.number_input("Longitude", value=73.03, format="%.5f")
        if st.button("Sort clinics by distance"):
            st.session_state.location = (lat, lng)
            st.rerun()

# ═══════════════════════════════════════════════════
#  HEADER
# ═══════════════════════════════════════════════════
now = now_ist()
st.markdown(f"""<div class="cq-header">
    <div style="display:flex;justify-content:space-between;align-items:center;">
        <div><h2>🏥 ClinicQ</h2><p>Find a clinic · Join the queue · {VER}</p></div>
        <div style="text-align:right;font-size:13px;opacity:.8;">
            {now.strftime('%A, %b %d, %Y')}<br/>{now.strftime('%I:%M %p')} IST</div>
    </div></div>""", unsafe_allow_html=True)

if not _ar_ok:
    if st.button("🔄 Refresh Page", type="primary", use_container_width=True):
        st.rerun()

show_dashboard = (auth_user is not None and user_role(auth_user) == "patient") or bool(store.get())
c1, c2 = st.columns(2)
with c1:
    if screen != "home" and st.button("🏠 Home", key="nav_home", use_container_width=True):
        go("home")
with c2:
    if show_dashboard and screen != "dashboard":
        if st.button("🎫 My Tokens", key="nav_dash", use_container_width=True):
            go("dashboard")

# ═══════════════════════════════════════════════════
#  HOME — CLINIC LIST
# ═══════════════════════════════════════════════════
if screen == "home":
    fc1, fc2 = st.columns([3, 2])
    with fc1:
        term = st.text_input("🔍 Search clinics", placeholder="Name or address")
    with fc2:
        area = st.text_input("Area", placeholder="Vashi, Nerul…")

    try:
        clinics = search_clinics(term, area.strip() or None, lang)
    except BACKEND_ERRORS:
        logger.exception("Clinic search failed")
        clinics = []
        st.error("❌ Could not load clinics. Please refresh.")
    clinics = sort_by_distance(clinics, st.session_state.location)

    if not clinics:
        st.info("No clinics found.")
    for c in clinics:
        c = clinic_snapshot(c)
        sm = CLINIC_STATUS.get(c.get("status"), CLINIC_STATUS["open"])
        dist = f" · 📍 {c['distance']:.1f} km" if c.get("distance") is not None else ""
        st.markdown(f"""<div class="cq-card">
            <strong>{translated_name(c, lang)}</strong> &nbsp; {sm['emoji']} {sm['label']}<br/>
            <span style="opacity:.7;font-size:13px;">{translated_address(c, lang)}{dist}</span><br/>
            <span style="font-size:13px;">👥 {c.get('queueSize') if c.get('queueSize') is not None else '—'} in queue
            · ⏱ ~{c.get('currentWaitTime')} min</span>
        </div>""", unsafe_allow_html=True)
        if st.button("View doctors", key=f"clinic_{c['id']}", use_container_width=True):
            st.session_state.sel_clinic = c["id"]
            st.session_state.sel_doctor = None
            go("doctors")

# ═══════════════════════════════════════════════════
#  DOCTORS
# ═══════════════════════════════════════════════════
elif screen == "doctors":
    clinic = get_clinic(st.session_state.sel_clinic)
    if not clinic:
        st.error("Clinic not found. It may have been removed.")
    else:
        st.subheader(translated_name(clinic, lang))
        docs = get_doctors(clinic["id"])
        fc1, fc2 = st.columns(2)
        with fc1:
            dterm = st.text_input("Search doctors")
        with fc2:
            spec = st.selectbox("Specialty", ["all"] + specialties(docs))
        docs = filter_doctors(docs, dterm, spec)

        if not docs:
            st.info("No doctors listed. You can still join the clinic queue.")
        for d in docs:
            st.markdown(f"""<div class="cq-card"><strong>Dr. {d['name']}</strong><br/>
                <span style="opacity:.7;">{d.get('specialization','')} · {d.get('experience_years','?')} yrs · ⭐ {d.get('rating','—')}</span>
                </div>""", unsafe_allow_html=True)
            if st.button("📋 Book with this doctor", key=f"doc_{d['id']}", use_container_width=True):
                st.session_state.sel_doctor = d["id"]
                go("confirm")
        if st.button("📋 Join clinic queue", type="primary", use_container_width=True):
            st.session_state.sel_doctor = None
            go("confirm")

# ═══════════════════════════════════════════════════
#  CONFIRM BOOKING
# ═══════════════════════════════════════════════════
elif screen == "confirm":
    clinic = get_clinic(st.session_state.sel_clinic)
    doctor = get_doctor(st.session_state.sel_doctor) if st.session_state.sel_doctor else None
    if not clinic:
        st.error("Selection not found. Please start over.")
    else:
        who = f"Dr. {doctor['name']} · " if doctor else ""
        st.markdown(f'<div class="cq-card">{who}<strong>{translated_name(clinic, lang)}</strong><br/>'
                    f'<span style="opacity:.6;">{translated_address(clinic, lang)}</span></div>',
                    unsafe_allow_html=True)
        st.caption("You'll receive a token number and an estimated wait time.")
        req = BookingRequest(clinic["id"], doctor["id"] if doctor else None,
                             "doctor_booking" if doctor else "clinic_finder")
        if st.button("✅ Confirm Booking", type="primary", use_container_width=True, disabled=guard.busy):
            res = book(actor, store, req, guard)
            if res.status == "booked":
                st.session_state.ticket = res.token
                go("ticket")
            elif res.status == "conflict":
                st.session_state.conflict = {"existing": res.existing, "request": req}
                go("conflict")
            else:
                for e in res.errors:
                    st.error(f"❌ {e}")

# ═══════════════════════════════════════════════════
#  CONFLICT — ONE ACTIVE APPOINTMENT AT A TIME
# ═══════════════════════════════════════════════════
elif screen == "conflict":
    cf = st.session_state.conflict
    if not cf:
        go("home")
    else:
        ex = cf["existing"]
        cl = ex.get("clinic") or {}
        st.warning("⚠️ You already have an active appointment.")
        st.markdown(f"""<div class="cq-card">Token <b>#{ex['token_number']}</b> at <b>{cl.get('name','')}</b><br/>
            <span style="opacity:.7;">{STATUS_LABELS.get(ex['status'], ex['status'])} · booked {format_ist(ex.get('created_at'))}</span>
            </div>""", unsafe_allow_html=True)
        cc1, cc2 = st.columns(2)
        with cc1:
            if st.button("← Keep Previous", use_container_width=True):
                resolve_conflict("keep_previous", ex, actor, store, cf["request"])
                st.session_state.conflict = None
                go("dashboard")
        with cc2:
            if st.button("🚫 Cancel Previous & Book", type="primary", use_container_width=True):
                res = resolve_conflict("cancel_previous", ex, actor, store, cf["request"])
                if res.status == "conflict":
                    # another active token surfaced; ask again about that one
                    st.session_state.conflict = {"existing": res.existing, "request": cf["request"]}
                    st.rerun()
                st.session_state.conflict = None
                if res.status == "booked":
                    st.session_state.ticket = res.token
                    go("ticket")
                if not res.errors:
                    st.error("❌ Booking did not go through. Please try again.")
                for e in res.errors:
                    st.error(f"❌ {e}")

# ═══════════════════════════════════════════════════
#  TICKET
# ═══════════════════════════════════════════════════
elif screen == "ticket":
    t = st.session_state.ticket
    if not t:
        go("home")
    else:
        clinic = get_clinic(t["clinic_id"]) or {}
        st.markdown('<div style="text-align:center;"><span style="font-size:48px;">✅</span><h2 style="color:#22c55e;">Booked!</h2></div>', unsafe_allow_html=True)
        st.markdown(f"""<div class="cq-card" style="text-align:center;">
            <div style="font-size:11px;opacity:.5;letter-spacing:2px;">{translated_name(clinic, lang).upper()}</div>
            <div style="font-size:11px;opacity:.5;margin-top:8px;">TOKEN NUMBER</div>
            <div class="cq-token">{t['token_number']}</div>
            <div>⏱ Estimated wait: <b>{t.get('estimated_wait_time')} min</b></div>
        </div>""", unsafe_allow_html=True)
        st.caption("Check **My Tokens** for live position updates.")

# ═══════════════════════════════════════════════════
#  DASHBOARD — MY TOKENS (with CANCEL option)
# ═══════════════════════════════════════════════════
elif screen == "dashboard":
    reader = QueueStatusReader(actor, store)
    tokens = reader.refresh()
    st.subheader("🎫 My Tokens")
    if not tokens:
        st.info("No appointments yet.")
    for t in tokens:
        cl = t["clinic"]
        pos = f" · Position #{t['position']}" if t.get("position") else ""
        st.markdown(f"""<div class="cq-card">
            <b>#{t['token_number']}</b> · {cl.get('name','Unknown Clinic')}<br/>
            <span style="opacity:.7;font-size:13px;">{cl.get('address','')}</span><br/>
            {STATUS_LABELS.get(t['status'], t['status'])}{pos} · ⏱ ~{t.get('estimated_wait_time') or '—'} min
            · {format_ist(t.get('created_at'))}
        </div>""", unsafe_allow_html=True)
        if t["status"] in ACTIVE:
            ck = f"confirm_cancel_{t['id']}"
            if not st.session_state.get(ck):
                if st.button("🚫 Cancel", key=f"cancel_{t['id']}"):
                    st.session_state[ck] = True
                    st.rerun()
            else:
                st.warning("⚠️ Are you sure? This cannot be undone.")
                cc1, cc2 = st.columns(2)
                with cc1:
                    if st.button("✅ Yes, Cancel", key=f"yes_{t['id']}", type="primary", use_container_width=True):
                        try:
                            cancel_token(t["id"])
                        except (InvalidTransition, LookupError, *BACKEND_ERRORS):
                            logger.exception("Cancel failed for %s", t["id"])
                            st.error("❌ Failed to cancel appointment. Please try again.")
                        st.session_state[ck] = False
                        st.rerun()
                with cc2:
                    if st.button("← Keep It", key=f"keep_{t['id']}", use_container_width=True):
                        st.session_state[ck] = False
                        st.rerun()
    st.caption(f"🔄 Auto-refreshes every 20s · Last: {now.strftime('%I:%M:%S %p')} IST")

# ═══════════════════════════════════════════════════
#  FOOTER
# ═══════════════════════════════════════════════════
st.markdown("---")
st.markdown(f"""<div style="text-align:center;font-size:10px;opacity:.3;padding:8px;">
    ClinicQ {VER} · Not a substitute for emergency care
</div>""", unsafe_allow_html=True)
