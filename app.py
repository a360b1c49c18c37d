# ==============================================================================
# I. IMPORTS
# ==============================================================================

# --- Standard Library Imports ---
import os
import json
import queue
import threading
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from urllib.parse import quote, urlencode

# --- Third-Party Imports ---
from flask import (
    Flask, Response, render_template, request, jsonify, make_response,
    redirect, url_for, stream_with_context,
)
from flask_caching import Cache
from flask_compress import Compress
from pydantic import ValidationError
from werkzeug.utils import secure_filename
import jwt
from dotenv import load_dotenv

# --- Firebase & Google Cloud Imports ---
import firebase_admin
from firebase_admin import credentials, firestore, storage
from google.cloud.firestore_v1.client import Client
from google.cloud.firestore import FieldFilter

# --- Local Imports ---
from admin_auth import AdminCredentials, LoginOutcome, LOGIN_ERRORS, check_admin_credentials, parse_login_body
from contact_relay import ContactRelayError, MailSettings, parse_contact_body, send_contact_email
from payouts import (
    PAYOUT_STATUSES, filter_rows, month_options, report_row, report_totals, to_amount, trip_split,
)
from promo_codes import (
    MAX_LISTED_CODES, PromoCodeForm, filter_codes, promo_payload, promo_update_payload, validation_message,
)
from push_notifications import AUDIENCES, PushError, collect_tokens, notify_token, send_push


# ==============================================================================
# II. CONFIGURATION
# ==============================================================================

# --- Environment Variable Loading ---
load_dotenv()

# --- Flask Application Configuration ---
APP_SECRET_KEY = os.getenv('FLASK_SECRET_KEY')
FLASK_ENV = os.getenv('FLASK_ENV', 'production')
BRAND_NAME = os.getenv('BRAND_NAME', 'HILBU')

# --- Admin Session Configuration ---
# The console keeps its "authenticated" flag in a signed JWT cookie.
JWT_SECRET = os.getenv('JWT_SECRET') or APP_SECRET_KEY
JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
ADMIN_SESSION_HOURS = int(os.getenv('ADMIN_SESSION_HOURS', 12))
ADMIN_REMEMBER_DAYS = 30
ADMIN_COOKIE = 'admin_token'

# --- Maps Configuration ---
GOOGLE_MAPS_API_KEY = os.getenv('GOOGLE_MAPS_API_KEY', '')
DEFAULT_MAP_CENTER = (25.2048, 55.2708)  # Dubai
STATIC_MAP_URL = 'https://maps.googleapis.com/maps/api/staticmap'
LIVE_MAP_REFRESH_SECONDS = 30

# --- Firestore Collection Names ---
USERS = 'users'
DRIVERS = 'drivers'
TRIPS = 'trip_history_driver'
PAYOUT_REQUESTS = 'payout_requests'
TRANSFERS = 'transfers'
NOTIFICATIONS = 'notifications'
PROMO_CODES = 'promo_codes'
SUPPORT_MESSAGES = 'support_messages'

# --- Application Globals & Constants ---
CACHE_TIMEOUT_SECONDS = 300
DASHBOARD_CACHE_SECONDS = 60
RECENT_TRIPS_LIMIT = 5
SSE_KEEPALIVE_SECONDS = 15
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
DRIVER_DOCUMENT_FIELDS = {'licenseUrl': 'License', 'emiratesIdUrl': 'Emirates ID'}
USER_STATUSES = ('active', 'suspended')
DRIVER_STATUSES = ('active', 'inactive')
APPROVAL_TITLE = f"✅ {BRAND_NAME} Approval"


def _firebase_credentials():
    """
    Builds Firebase Admin credentials from the FIREBASE_* service-account
    variables, falling back to Application Default Credentials.
    """
    private_key = os.getenv("FIREBASE_PRIVATE_KEY")
    if not private_key:
        return credentials.ApplicationDefault()
    return credentials.Certificate({
        "type": os.getenv("FIREBASE_TYPE", "service_account"),
        "project_id": os.getenv("FIREBASE_PROJECT_ID"),
        "private_key_id": os.getenv("FIREBASE_PRIVATE_KEY_ID"),
        "private_key": private_key.replace('\\n', '\n'),
        "client_email": os.getenv("FIREBASE_CLIENT_EMAIL"),
        "client_id": os.getenv("FIREBASE_CLIENT_ID"),
        "auth_uri": os.getenv("FIREBASE_AUTH_URI", "https://accounts.google.com/o/oauth2/auth"),
        "token_uri": os.getenv("FIREBASE_TOKEN_URI", "https://oauth2.googleapis.com/token"),
        "auth_provider_x509_cert_url": os.getenv("FIREBASE_AUTH_PROVIDER_CERT_URL"),
        "client_x509_cert_url": os.getenv("FIREBASE_CLIENT_CERT_URL"),
    })


# ==============================================================================
# III. INITIALIZATION
# ==============================================================================

# --- Flask App Initialization ---
app = Flask(__name__, template_folder='templates')
app.secret_key = APP_SECRET_KEY
app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES
app.config['COMPRESS_STREAMS'] = False
Compress(app)
cache = Cache(config={'CACHE_TYPE': 'SimpleCache'})
cache.init_app(app)

# --- Credential Store & Mail Settings ---
# Built once per process and handed explicitly to the checks that need them.
app.config['ADMIN_CREDENTIALS'] = AdminCredentials.from_env(os.environ)
app.config['MAIL_SETTINGS'] = MailSettings.from_env(os.environ)
if not app.config['ADMIN_CREDENTIALS'].is_configured:
    app.logger.warning("ADMIN_EMAILS / ADMIN_PASSWORDS are missing or unbalanced; admin login is disabled")

# --- Service Clients Initialization ---
# Firebase is initialized on first use so the app imports without credentials.
_firebase_lock = threading.Lock()


def _ensure_firebase():
    with _firebase_lock:
        try:
            return firebase_admin.get_app()
        except ValueError:
            return firebase_admin.initialize_app(
                _firebase_credentials(),
                {'storageBucket': os.getenv("FIREBASE_STORAGE_BUCKET")},
            )


def get_db() -> Client:
    """Returns the Firestore client, initializing Firebase if needed."""
    return firestore.client(_ensure_firebase())


def get_bucket():
    return storage.bucket(app=_ensure_firebase())


# ==============================================================================
# IV. DECORATORS & HELPERS
# ==============================================================================

def issue_admin_token(email: str, remember: bool = False) -> tuple:
    """
    Signs the console session token for an authorized admin.

    Args:
        email (str): The admin's email.
        remember (bool): Whether the session should outlive the browser session.

    Returns:
        tuple: (token, max_age_seconds)
    """
    lifetime = timedelta(days=ADMIN_REMEMBER_DAYS) if remember else timedelta(hours=ADMIN_SESSION_HOURS)
    payload = {
        'sub': email,
        'role': 'admin',
        'exp': datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM), int(lifetime.total_seconds())


def admin_required(f):
    """
    Protects console routes. A valid admin JWT must be present in the
    admin cookie or an Authorization header. Pages redirect to the login
    form, API routes answer 401.

    Args:
        f (function): The route function; receives the admin email first.

    Returns:
        function: The wrapped function with authentication logic.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        is_api = request.path.startswith('/api/')
        token = request.cookies.get(ADMIN_COOKIE)
        auth_header = request.headers.get('Authorization', '')
        if not token and auth_header.startswith('Bearer '):
            token = auth_header[len('Bearer '):]
        if not token:
            if is_api:
                return jsonify({'error': 'Authentication required'}), 401
            return redirect(url_for('login'))
        try:
            data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], options={'verify_exp': True})
            if data.get('role') != 'admin' or not data.get('sub'):
                raise jwt.InvalidTokenError('not an admin token')
        except (jwt.ExpiredSignatureError, jwt.InvalidTokenError):
            if is_api:
                return jsonify({'error': 'Authentication required'}), 401
            response = redirect(url_for('login'))
            response.delete_cookie(ADMIN_COOKIE)
            return response
        return f(data['sub'], *args, **kwargs)
    return decorated


def json_body() -> dict:
    """Request JSON as a dict; malformed or non-object bodies become {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def truthy(value) -> bool:
    if isinstance(value, str):
        return value.lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def docs_to_list(snapshots) -> list:
    return [{'id': doc.id, **(doc.to_dict() or {})} for doc in snapshots]


def count_of(query) -> int:
    return query.count().get()[0][0].value


def with_cors(response):
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'POST,OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


def snapshot_stream(query, serialize) -> Response:
    """
    Streams a Firestore snapshot listener as Server-Sent Events. The
    listener is unsubscribed when the client goes away.

    Args:
        query: A Firestore query or collection reference.
        serialize (function): Maps a document snapshot to a JSON-able dict.

    Returns:
        Response: A text/event-stream response.
    """
    updates = queue.Queue()

    def on_snapshot(docs, changes, read_time):
        updates.put([serialize(doc) for doc in docs])

    watch = query.on_snapshot(on_snapshot)

    def generate():
        try:
            while True:
                try:
                    payload = updates.get(timeout=SSE_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(payload, default=str)}\n\n"
        finally:
            watch.unsubscribe()

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )


@app.template_filter('fmt_date')
def fmt_date(value, fmt='%Y-%m-%d %H:%M'):
    if isinstance(value, datetime):
        return value.strftime(fmt)
    return value or '—'


# --- Dashboard ---

@cache.memoize(timeout=DASHBOARD_CACHE_SECONDS)
def dashboard_counts() -> dict:
    """
    Counts the headline figures shown on the dashboard. Cached briefly
    since every count is a billed aggregation query.
    """
    db = get_db()
    return {
        'users': count_of(db.collection(USERS)),
        'drivers': count_of(db.collection(DRIVERS)),
        'trips': count_of(db.collection(TRIPS)),
        'pending_payouts': count_of(
            db.collection(PAYOUT_REQUESTS).where(filter=FieldFilter('status', '==', 'pending'))
        ),
    }


def recent_trips(limit: int = RECENT_TRIPS_LIMIT) -> list:
    query = (
        get_db().collection(TRIPS)
        .order_by('timestamp', direction=firestore.Query.DESCENDING)
        .limit(limit)
    )
    return [trip_view(doc.id, doc.to_dict() or {}) for doc in query.stream()]


# --- Users & Drivers ---

def list_users(search: str = '', status: str = 'all') -> list:
    needle = (search or '').strip().lower()
    users = []
    for user in docs_to_list(get_db().collection(USERS).stream()):
        user['status'] = user.get('status') or 'active'
        haystack = ' '.join(str(user.get(k) or '') for k in ('name', 'email', 'phone')).lower()
        if needle and needle not in haystack:
            continue
        if status != 'all' and user['status'] != status:
            continue
        users.append(user)
    return users


def list_drivers(search: str = '', status: str = 'all') -> list:
    needle = (search or '').strip().lower()
    drivers = []
    for driver in docs_to_list(get_db().collection(DRIVERS).stream()):
        driver['status'] = driver.get('status') or 'inactive'
        haystack = ' '.join(str(driver.get(k) or '') for k in ('name', 'phone')).lower()
        if needle and needle not in haystack:
            continue
        if status != 'all' and driver['status'] != status:
            continue
        drivers.append(driver)
    return drivers


def trip_view(doc_id: str, data: dict) -> dict:
    amount = to_amount(data.get('amount'))
    commission, earnings = trip_split(amount)
    return {
        'id': doc_id,
        'driver': data.get('driverPhone') or 'Unknown Driver',
        'rider': data.get('userPhone') or 'Unknown User',
        'pickup': data.get('pickup') or 'N/A',
        'dropoff': data.get('dropoff') or 'N/A',
        'timestamp': data.get('timestamp'),
        'amount': round(amount, 2),
        'commission': commission,
        'earnings': earnings,
    }


def list_trips() -> list:
    return [trip_view(doc.id, doc.to_dict() or {}) for doc in get_db().collection(TRIPS).stream()]


def driver_trips(phone: str) -> list:
    query = get_db().collection(TRIPS).where(filter=FieldFilter('driverPhone', '==', phone))
    return [trip_view(doc.id, doc.to_dict() or {}) for doc in query.stream()]


def set_driver_review(driver_id: str, approved: bool, note: str = '') -> dict:
    """
    Applies an approval decision to a driver document and pushes the result
    to the driver's device when a token is known.

    Returns:
        dict: The driver data as it was before the update.
    """
    ref = get_db().collection(DRIVERS).document(driver_id)
    snapshot = ref.get()
    if not snapshot.exists:
        raise LookupError(driver_id)
    driver = snapshot.to_dict() or {}
    ref.update({
        'status': 'active' if approved else 'rejected',
        'verified': approved,
        'recovery': approved,
        'adminNote': note,
    })
    if approved:
        notify_token(
            driver.get('expoPushToken'), APPROVAL_TITLE,
            'Your driver profile has been approved. You can now accept recovery jobs.',
        )
    else:
        notify_token(
            driver.get('expoPushToken'), f"❌ {BRAND_NAME} Application Rejected",
            f"Your driver profile was rejected. Reason: {note}",
        )
    return driver


# --- Payouts & Reports ---

def list_payouts() -> list:
    query = get_db().collection(PAYOUT_REQUESTS).order_by('timestamp', direction=firestore.Query.DESCENDING)
    return [report_row(doc.id, doc.to_dict() or {}) for doc in query.stream()]


def notify_driver(driver_id: str, title: str, message: str):
    """Best-effort push to a driver looked up by document id."""
    if not driver_id:
        return
    try:
        snapshot = get_db().collection(DRIVERS).document(driver_id).get()
        if snapshot.exists:
            notify_token((snapshot.to_dict() or {}).get('expoPushToken'), title, message)
    except Exception as e:
        app.logger.error(f"Driver push lookup failed for {driver_id}: {e}", exc_info=True)


def decide_payout(payout_id: str, approved: bool, reason: str = '') -> dict:
    """
    Marks a payout request approved or rejected and records the audit trail
    (transfer log, notification document, push to the driver).
    """
    db = get_db()
    ref = db.collection(PAYOUT_REQUESTS).document(payout_id)
    snapshot = ref.get()
    if not snapshot.exists:
        raise LookupError(payout_id)
    payout = snapshot.to_dict() or {}
    amount = to_amount(payout.get('amount'))
    driver_id = payout.get('driverId') or ''

    if approved:
        ref.update({'status': 'approved'})
        title = 'Payout Approved'
        message = f"Your payout of AED {amount:.2f} has been approved."
        try:
            db.collection(TRANSFERS).add({
                'payoutRequestId': payout_id,
                'driverId': driver_id,
                'amount': amount,
                'status': 'approved',
                'approvedAt': firestore.SERVER_TIMESTAMP,
            })
        except Exception as e:
            app.logger.error(f"Transfer log failed for payout {payout_id}: {e}", exc_info=True)
    else:
        ref.update({'status': 'rejected', 'reason': reason})
        title = 'Payout Rejected'
        message = f"Your payout request was rejected. Reason: {reason}"

    try:
        db.collection(NOTIFICATIONS).add({
            'type': 'payout_approved' if approved else 'payout_rejected',
            'title': title,
            'message': message,
            'audience': driver_id or 'driver',
            'createdAt': firestore.SERVER_TIMESTAMP,
        })
    except Exception as e:
        app.logger.error(f"Notification log failed for payout {payout_id}: {e}", exc_info=True)

    notify_driver(driver_id, title, message)
    return {'id': payout_id, 'status': 'approved' if approved else 'rejected'}


# --- Promo Codes ---

def list_promo_codes(search: str = '') -> list:
    query = (
        get_db().collection(PROMO_CODES)
        .order_by('createdAt', direction=firestore.Query.DESCENDING)
        .limit(MAX_LISTED_CODES)
    )
    return filter_codes(docs_to_list(query.stream()), search)


# --- Support Chat ---

@cache.memoize(timeout=CACHE_TIMEOUT_SECONDS)
def lookup_contact(phone: str) -> dict:
    """
    Resolves a support conversation's phone number to a name and role,
    checking users first, then drivers.
    """
    db = get_db()
    user_doc = db.collection(USERS).document(phone).get()
    if user_doc.exists:
        return {'name': (user_doc.to_dict() or {}).get('name', ''), 'role': 'user'}
    driver_doc = db.collection(DRIVERS).document(phone).get()
    if driver_doc.exists:
        return {'name': (driver_doc.to_dict() or {}).get('name', ''), 'role': 'driver'}
    return {'name': '', 'role': 'user'}


def support_threads(search: str = '') -> list:
    query = get_db().collection(SUPPORT_MESSAGES).order_by('timestamp', direction=firestore.Query.DESCENDING)
    threads = {}
    for doc in query.stream():
        data = doc.to_dict() or {}
        phone = data.get('phone')
        if not phone:
            continue
        if phone not in threads:
            threads[phone] = {'phone': phone, 'unread': 0, **lookup_contact(phone)}
        if data.get('isUser') and data.get('seen') is False:
            threads[phone]['unread'] += 1

    ordered = sorted(threads.values(), key=lambda t: t['unread'], reverse=True)
    needle = (search or '').strip().lower()
    if needle:
        ordered = [t for t in ordered if needle in (t['name'] or '').lower() or needle in t['phone']]
    return ordered


def thread_query(phone: str):
    return (
        get_db().collection(SUPPORT_MESSAGES)
        .where(filter=FieldFilter('phone', '==', phone))
        .order_by('timestamp')
    )


def support_message_view(doc) -> dict:
    data = doc.to_dict() or {}
    return {
        'id': doc.id,
        'text': data.get('text', ''),
        'isUser': bool(data.get('isUser')),
        'seen': data.get('seen'),
        'timestamp': data.get('timestamp'),
    }


# --- Live Activity ---

def driver_position(data: dict):
    location = data.get('location') or data.get('currentLocation') or {}
    if not isinstance(location, dict):
        return None
    lat = location.get('latitude', location.get('lat'))
    lng = location.get('longitude', location.get('lng'))
    try:
        return float(lat), float(lng)
    except (TypeError, ValueError):
        return None


def live_driver_view(doc):
    data = doc.to_dict() or {}
    position = driver_position(data)
    if not position:
        return None
    return {
        'id': doc.id,
        'name': data.get('name') or doc.id,
        'phone': data.get('phone', ''),
        'status': data.get('status') or 'inactive',
        'recovery': bool(data.get('recovery')),
        'lat': position[0],
        'lng': position[1],
    }


def static_map_url(drivers: list) -> str:
    """
    Builds a Google Static Maps image URL with one marker per driver,
    centred on the first driver or the default city.
    """
    center = (drivers[0]['lat'], drivers[0]['lng']) if drivers else DEFAULT_MAP_CENTER
    params = [
        ('center', f"{center[0]},{center[1]}"),
        ('zoom', '12' if drivers else '14'),
        ('size', '640x400'),
        ('maptype', 'roadmap'),
    ]
    for driver in drivers:
        color = 'green' if driver['status'] == 'active' else 'gray'
        params.append(('markers', f"color:{color}|{driver['lat']},{driver['lng']}"))
    params.append(('key', GOOGLE_MAPS_API_KEY))
    return f"{STATIC_MAP_URL}?{urlencode(params)}"


def live_drivers() -> list:
    views = (live_driver_view(doc) for doc in get_db().collection(DRIVERS).stream())
    return [view for view in views if view]


# ==============================================================================
# V. ROUTE DEFINITIONS
# ==============================================================================

@app.errorhandler(405)
def method_not_allowed(e):
    if request.path.startswith('/api/'):
        return jsonify({'ok': False, 'error': 'Method not allowed'}), 405
    return e


@app.context_processor
def inject_brand():
    return {'brand_name': BRAND_NAME}


# --- Public Site Routes ---

@app.route('/')
def home():
    return render_template('home.html')


@app.route('/privacy')
def privacy():
    return render_template('privacy.html')


@app.route('/terms')
def terms():
    return render_template('terms.html')


@app.route('/contact')
def contact():
    return render_template('contact.html')


@app.route('/api/contact', methods=['POST', 'OPTIONS'])
def contact_submit():
    """
    Relays a public contact-form submission to the support inbox.

    Returns:
        Response: 200 {ok: true}; 400 with field errors; 500 when mail is
                  not configured or the provider fails; 204 for preflight.
    """
    if request.method == 'OPTIONS':
        return with_cors(make_response('', 204))

    contact_request, errors = parse_contact_body(request.get_json(silent=True))
    if errors:
        first_error = next(iter(errors.values()))
        return with_cors(make_response(jsonify({'ok': False, 'error': first_error, 'fields': errors}), 400))

    settings = app.config['MAIL_SETTINGS']
    if missing := settings.missing():
        app.logger.error(f"Contact relay not configured, missing: {', '.join(missing)}")
        return with_cors(make_response(jsonify({
            'ok': False,
            'error': f"Server email is not configured (missing {', '.join(missing)}).",
        }), 500))

    try:
        send_contact_email(contact_request, settings)
    except ContactRelayError:
        return with_cors(make_response(jsonify({
            'ok': False,
            'error': 'Failed to send message. Please try again later.',
        }), 500))

    return with_cors(make_response(jsonify({'ok': True}), 200))


# --- Admin Authentication Routes ---

@app.route('/api/admin-login', methods=['POST'])
def admin_login_check():
    """
    Stateless admin credential check. Issues no token; the caller keeps
    its own authenticated flag.

    Returns:
        Response: 200 {ok: true, email}, or {ok: false, error} with 400,
                  401 or 500.
    """
    try:
        submission = parse_login_body(request.get_json(silent=True))
        outcome = check_admin_credentials(
            app.config['ADMIN_CREDENTIALS'], submission.email, submission.password,
        )
    except Exception as e:
        app.logger.error(f"Admin login check error: {e}", exc_info=True)
        return jsonify({'ok': False, 'error': 'Server error'}), 500

    if outcome is LoginOutcome.AUTHORIZED:
        app.logger.info(f"Admin login check succeeded for {submission.email}")
        return jsonify({'ok': True, 'email': submission.email})
    if outcome is LoginOutcome.REJECTED:
        app.logger.info(f"Admin login check rejected for {submission.email}")
    return jsonify({'ok': False, 'error': LOGIN_ERRORS[outcome]}), outcome.status_code


@app.route('/login', methods=['GET', 'POST'])
def login():
    """
    Renders the console login form and, on a successful check, stores the
    admin session cookie.
    """
    if request.method == 'GET':
        return render_template('admin/login.html', email=request.cookies.get('admin_email', ''))

    submission = parse_login_body({
        'email': request.form.get('email', ''),
        'password': request.form.get('password', ''),
    })
    remember = truthy(request.form.get('remember'))
    outcome = check_admin_credentials(app.config['ADMIN_CREDENTIALS'], submission.email, submission.password)
    if outcome is not LoginOutcome.AUTHORIZED:
        return render_template(
            'admin/login.html', email=submission.email, error=LOGIN_ERRORS[outcome],
        ), outcome.status_code

    try:
        token, max_age = issue_admin_token(submission.email, remember)
    except Exception as e:
        app.logger.error(f"Admin session signing error: {e}", exc_info=True)
        return render_template('admin/login.html', email=submission.email, error='Server error'), 500

    response = make_response(redirect(url_for('admin_dashboard')))
    response.set_cookie(
        ADMIN_COOKIE, token,
        httponly=True, secure=(FLASK_ENV == 'production'),
        samesite='Lax', max_age=max_age,
    )
    if remember:
        response.set_cookie('admin_email', submission.email, samesite='Lax', max_age=max_age)
    else:
        response.delete_cookie('admin_email')
    app.logger.info(f"Admin {submission.email} signed in")
    return response


@app.route('/logout')
def logout():
    response = redirect(url_for('login'))
    response.delete_cookie(ADMIN_COOKIE)
    return response


# --- Admin Console Pages ---

@app.route('/admin')
@admin_required
def admin_home(current_admin: str):
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/dashboard')
@admin_required
def admin_dashboard(current_admin: str):
    try:
        stats = dashboard_counts()
        trips = recent_trips()
    except Exception as e:
        app.logger.error(f"Dashboard load error: {e}", exc_info=True)
        stats, trips = None, []
    return render_template('admin/dashboard.html', admin=current_admin, stats=stats, trips=trips)


@app.route('/admin/users')
@admin_required
def admin_users(current_admin: str):
    search = request.args.get('q', '')
    status = request.args.get('status', 'all')
    return render_template(
        'admin/users.html', admin=current_admin,
        users=list_users(search, status), search=search, status=status,
    )


@app.route('/admin/drivers')
@admin_required
def admin_drivers(current_admin: str):
    search = request.args.get('q', '')
    status = request.args.get('status', 'all')
    drivers = list_drivers(search, status)
    pending = [d for d in list_drivers() if d['status'] == 'pending_approval']
    return render_template(
        'admin/drivers.html', admin=current_admin, drivers=drivers, pending=pending,
        search=search, status=status, document_fields=DRIVER_DOCUMENT_FIELDS,
    )


@app.route('/admin/trips')
@admin_required
def admin_trips(current_admin: str):
    return render_template('admin/trips.html', admin=current_admin, trips=list_trips())


@app.route('/admin/reports')
@admin_required
def admin_reports(current_admin: str):
    month = request.args.get('month', 'all')
    only_approved = truthy(request.args.get('approved'))
    rows = list_payouts()
    filtered = filter_rows(rows, month, only_approved)
    return render_template(
        'admin/reports.html', admin=current_admin, rows=filtered, months=month_options(rows),
        month=month, only_approved=only_approved, totals=report_totals(filtered),
    )


@app.route('/admin/payouts')
@admin_required
def admin_payouts(current_admin: str):
    return render_template('admin/payouts.html', admin=current_admin, payouts=list_payouts())


@app.route('/admin/promo-codes')
@admin_required
def admin_promo_codes(current_admin: str):
    search = request.args.get('q', '')
    return render_template(
        'admin/promo_codes.html', admin=current_admin, codes=list_promo_codes(search), search=search,
    )


@app.route('/admin/notifications')
@admin_required
def admin_notifications(current_admin: str):
    return render_template('admin/notifications.html', admin=current_admin, audiences=AUDIENCES)


@app.route('/admin/support')
@admin_required
def admin_support(current_admin: str):
    return render_template('admin/support.html', admin=current_admin, threads=support_threads())


@app.route('/admin/live-activity')
@admin_required
def admin_live_activity(current_admin: str):
    drivers = live_drivers()
    return render_template(
        'admin/live_activity.html', admin=current_admin, drivers=drivers,
        map_url=static_map_url(drivers), refresh_seconds=LIVE_MAP_REFRESH_SECONDS,
    )


# --- Dashboard API Routes ---

@app.route('/api/admin/dashboard')
@admin_required
def dashboard_api(current_admin: str):
    try:
        return jsonify({'stats': dashboard_counts(), 'recent_trips': recent_trips()})
    except Exception as e:
        app.logger.error(f"Dashboard stats error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


# --- Users API Routes ---

@app.route('/api/admin/users')
@admin_required
def users_api(current_admin: str):
    try:
        return jsonify(list_users(request.args.get('q', ''), request.args.get('status', 'all')))
    except Exception as e:
        app.logger.error(f"User list error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/users/<user_id>/status', methods=['POST'])
@admin_required
def set_user_status(current_admin: str, user_id: str):
    status = json_body().get('status')
    if status not in USER_STATUSES:
        return jsonify({"error": f"Status must be one of {', '.join(USER_STATUSES)}"}), 400
    try:
        ref = get_db().collection(USERS).document(user_id)
        if not ref.get().exists:
            return jsonify({"error": "User not found"}), 404
        ref.update({'status': status})
        app.logger.info(f"{current_admin} set user {user_id} status to {status}")
        return jsonify({"status": "success"})
    except Exception as e:
        app.logger.error(f"User status update error: {e}", exc_info=True)
        return jsonify({"error": "Failed to update status"}), 500


@app.route('/api/admin/users/<user_id>/recovery', methods=['POST'])
@admin_required
def set_user_recovery(current_admin: str, user_id: str):
    data = json_body()
    if 'recovery' not in data:
        return jsonify({"error": "Missing recovery flag"}), 400
    try:
        ref = get_db().collection(USERS).document(user_id)
        if not ref.get().exists:
            return jsonify({"error": "User not found"}), 404
        ref.update({'recovery': truthy(data['recovery'])})
        return jsonify({"status": "success"})
    except Exception as e:
        app.logger.error(f"User recovery update error: {e}", exc_info=True)
        return jsonify({"error": "Failed to update recovery"}), 500


# --- Drivers API Routes ---

@app.route('/api/admin/drivers')
@admin_required
def drivers_api(current_admin: str):
    try:
        return jsonify(list_drivers(request.args.get('q', ''), request.args.get('status', 'all')))
    except Exception as e:
        app.logger.error(f"Driver list error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/drivers/<driver_id>/status', methods=['POST'])
@admin_required
def set_driver_status(current_admin: str, driver_id: str):
    status = json_body().get('status')
    if status not in DRIVER_STATUSES:
        return jsonify({"error": f"Status must be one of {', '.join(DRIVER_STATUSES)}"}), 400
    try:
        ref = get_db().collection(DRIVERS).document(driver_id)
        if not ref.get().exists:
            return jsonify({"error": "Driver not found"}), 404
        ref.update({'status': status})
        app.logger.info(f"{current_admin} set driver {driver_id} status to {status}")
        return jsonify({"status": "success"})
    except Exception as e:
        app.logger.error(f"Driver status update error: {e}", exc_info=True)
        return jsonify({"error": "Error updating driver status"}), 500


@app.route('/api/admin/drivers/<driver_id>/recovery', methods=['POST'])
@admin_required
def set_driver_recovery(current_admin: str, driver_id: str):
    data = json_body()
    if 'recovery' not in data:
        return jsonify({"error": "Missing recovery flag"}), 400
    try:
        ref = get_db().collection(DRIVERS).document(driver_id)
        if not ref.get().exists:
            return jsonify({"error": "Driver not found"}), 404
        ref.update({'recovery': truthy(data['recovery'])})
        return jsonify({"status": "success"})
    except Exception as e:
        app.logger.error(f"Driver recovery update error: {e}", exc_info=True)
        return jsonify({"error": "Error updating recovery status"}), 500


@app.route('/api/admin/drivers/<driver_id>/approve', methods=['POST'])
@admin_required
def approve_driver(current_admin: str, driver_id: str):
    try:
        set_driver_review(driver_id, approved=True)
        app.logger.info(f"{current_admin} approved driver {driver_id}")
        return jsonify({"status": "success"})
    except LookupError:
        return jsonify({"error": "Driver not found"}), 404
    except Exception as e:
        app.logger.error(f"Driver approval error: {e}", exc_info=True)
        return jsonify({"error": "Error approving driver"}), 500


@app.route('/api/admin/drivers/approve-all', methods=['POST'])
@admin_required
def approve_all_drivers(current_admin: str):
    try:
        pending = [d for d in list_drivers() if d['status'] == 'pending_approval']
        for driver in pending:
            set_driver_review(driver['id'], approved=True)
        app.logger.info(f"{current_admin} approved {len(pending)} pending drivers")
        return jsonify({"status": "success", "approved": len(pending)})
    except Exception as e:
        app.logger.error(f"Bulk driver approval error: {e}", exc_info=True)
        return jsonify({"error": "Error approving drivers"}), 500


@app.route('/api/admin/drivers/<driver_id>/reject', methods=['POST'])
@admin_required
def reject_driver(current_admin: str, driver_id: str):
    reason = str(json_body().get('reason') or '').strip()
    if not reason:
        return jsonify({"error": "A rejection reason is required"}), 400
    try:
        set_driver_review(driver_id, approved=False, note=reason)
        app.logger.info(f"{current_admin} rejected driver {driver_id}")
        return jsonify({"status": "success"})
    except LookupError:
        return jsonify({"error": "Driver not found"}), 404
    except Exception as e:
        app.logger.error(f"Driver rejection error: {e}", exc_info=True)
        return jsonify({"error": "Error rejecting driver"}), 500


@app.route('/api/admin/drivers/<driver_id>/trips')
@admin_required
def driver_trips_api(current_admin: str, driver_id: str):
    try:
        snapshot = get_db().collection(DRIVERS).document(driver_id).get()
        if not snapshot.exists:
            return jsonify({"error": "Driver not found"}), 404
        phone = (snapshot.to_dict() or {}).get('phone') or driver_id
        return jsonify(driver_trips(phone))
    except Exception as e:
        app.logger.error(f"Driver trips error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/drivers/<driver_id>/documents/<field>', methods=['POST'])
@admin_required
def upload_driver_document(current_admin: str, driver_id: str, field: str):
    """
    Uploads a driver's license or Emirates ID to Cloud Storage and stores
    a tokenized download URL on the driver document.

    Args:
        current_admin (str): Email of the signed-in admin.
        driver_id (str): Driver document id.
        field (str): Either 'licenseUrl' or 'emiratesIdUrl'.

    Returns:
        Response: JSON with the stored URL, or an error.
    """
    if field not in DRIVER_DOCUMENT_FIELDS:
        return jsonify({"error": "Unknown document type"}), 400
    upload = request.files.get('file')
    if not upload or not upload.filename:
        return jsonify({"error": "No file provided"}), 400

    try:
        ref = get_db().collection(DRIVERS).document(driver_id)
        if not ref.get().exists:
            return jsonify({"error": "Driver not found"}), 404

        path = f"drivers/{driver_id}/{field}-{secure_filename(upload.filename)}"
        download_token = str(uuid.uuid4())
        bucket = get_bucket()
        blob = bucket.blob(path)
        blob.metadata = {'firebaseStorageDownloadTokens': download_token}
        blob.upload_from_file(upload.stream, content_type=upload.mimetype)
        url = (
            f"https://firebasestorage.googleapis.com/v0/b/{bucket.name}/o/"
            f"{quote(path, safe='')}?alt=media&token={download_token}"
        )
        ref.update({field: url})
        app.logger.info(f"{current_admin} uploaded {field} for driver {driver_id}")
        return jsonify({
            "status": "success",
            "url": url,
            "message": f"{DRIVER_DOCUMENT_FIELDS[field]} uploaded successfully!",
        })
    except Exception as e:
        app.logger.error(f"Driver document upload error: {e}", exc_info=True)
        return jsonify({"error": "Failed to upload file."}), 500


# --- Trips & Reports API Routes ---

@app.route('/api/admin/trips')
@admin_required
def trips_api(current_admin: str):
    try:
        return jsonify(list_trips())
    except Exception as e:
        app.logger.error(f"Trip history error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/reports')
@admin_required
def reports_api(current_admin: str):
    month = request.args.get('month', 'all')
    only_approved = truthy(request.args.get('approved'))
    try:
        rows = list_payouts()
        filtered = filter_rows(rows, month, only_approved)
        return jsonify({
            'rows': filtered,
            'months': month_options(rows),
            'totals': report_totals(filtered),
        })
    except Exception as e:
        app.logger.error(f"Report load error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


# --- Payouts API Routes ---

@app.route('/api/admin/payouts')
@admin_required
def payouts_api(current_admin: str):
    status = request.args.get('status')
    try:
        rows = list_payouts()
        if status in PAYOUT_STATUSES:
            rows = [row for row in rows if row['status'] == status]
        return jsonify(rows)
    except Exception as e:
        app.logger.error(f"Payout list error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/payouts/<payout_id>/approve', methods=['POST'])
@admin_required
def approve_payout(current_admin: str, payout_id: str):
    try:
        result = decide_payout(payout_id, approved=True)
        app.logger.info(f"{current_admin} approved payout {payout_id}")
        return jsonify({"status": "success", **result})
    except LookupError:
        return jsonify({"error": "Payout request not found"}), 404
    except Exception as e:
        app.logger.error(f"Payout approval error: {e}", exc_info=True)
        return jsonify({"error": "Failed to approve payout. Try again."}), 500


@app.route('/api/admin/payouts/<payout_id>/reject', methods=['POST'])
@admin_required
def reject_payout(current_admin: str, payout_id: str):
    reason = str(json_body().get('reason') or '').strip() or 'Not eligible'
    try:
        result = decide_payout(payout_id, approved=False, reason=reason)
        app.logger.info(f"{current_admin} rejected payout {payout_id}")
        return jsonify({"status": "success", **result})
    except LookupError:
        return jsonify({"error": "Payout request not found"}), 404
    except Exception as e:
        app.logger.error(f"Payout rejection error: {e}", exc_info=True)
        return jsonify({"error": "Failed to reject payout. Try again."}), 500


# --- Promo Code API Routes ---

@app.route('/api/admin/promo-codes', methods=['GET', 'POST'])
@admin_required
def promo_codes_api(current_admin: str):
    """
    GET: Lists the newest promo codes, optionally filtered by ?q=.
    POST: Validates and creates a promo code.
    """
    try:
        if request.method == 'GET':
            return jsonify(list_promo_codes(request.args.get('q', '')))

        try:
            form = PromoCodeForm(**json_body())
        except ValidationError as e:
            return jsonify({"error": validation_message(e)}), 400

        payload = promo_payload(form)
        payload.update({
            'timesRedeemed': 0,
            'createdAt': firestore.SERVER_TIMESTAMP,
            'updatedAt': firestore.SERVER_TIMESTAMP,
        })
        new_doc_ref = get_db().collection(PROMO_CODES).document()
        new_doc_ref.set(payload)
        app.logger.info(f"{current_admin} created promo code {form.code}")
        return jsonify({"status": "success", "id": new_doc_ref.id}), 201

    except Exception as e:
        app.logger.error(f"Promo code error on {request.method}: {e}", exc_info=True)
        return jsonify({"error": "Failed to save promo code."}), 500


@app.route('/api/admin/promo-codes/<code_id>', methods=['PUT', 'DELETE'])
@admin_required
def manage_promo_code(current_admin: str, code_id: str):
    try:
        code_ref = get_db().collection(PROMO_CODES).document(code_id)
        if not code_ref.get().exists:
            return jsonify({"error": "Promo code not found"}), 404

        if request.method == 'PUT':
            data = json_body()
            if 'active' not in data:
                return jsonify({"error": "Missing active flag"}), 400
            try:
                form = PromoCodeForm(**data)
            except ValidationError as e:
                return jsonify({"error": validation_message(e)}), 400
            payload = promo_update_payload(form, firestore.DELETE_FIELD)
            payload['updatedAt'] = firestore.SERVER_TIMESTAMP
            code_ref.update(payload)
            return jsonify({"status": "success"})

        code_ref.delete()
        app.logger.info(f"{current_admin} deleted promo code {code_id}")
        return jsonify({"status": "success"})

    except Exception as e:
        app.logger.error(f"Promo code management error: {e}", exc_info=True)
        return jsonify({"error": "Failed to update promo code."}), 500


@app.route('/api/admin/promo-codes/<code_id>/toggle', methods=['POST'])
@admin_required
def toggle_promo_code(current_admin: str, code_id: str):
    try:
        code_ref = get_db().collection(PROMO_CODES).document(code_id)
        snapshot = code_ref.get()
        if not snapshot.exists:
            return jsonify({"error": "Promo code not found"}), 404
        active = not bool((snapshot.to_dict() or {}).get('active'))
        code_ref.update({'active': active, 'updatedAt': firestore.SERVER_TIMESTAMP})
        return jsonify({"status": "success", "active": active})
    except Exception as e:
        app.logger.error(f"Promo code toggle error: {e}", exc_info=True)
        return jsonify({"error": "Failed to update status."}), 500


# --- Push Notification API Routes ---

@app.route('/api/admin/notifications/preview', methods=['POST'])
@admin_required
def preview_audience(current_admin: str):
    target = json_body().get('target', 'all')
    if target not in AUDIENCES:
        return jsonify({"error": "Unknown audience"}), 400
    try:
        return jsonify({"target": target, "devices": len(collect_tokens(get_db(), target))})
    except Exception as e:
        app.logger.error(f"Audience preview error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/notifications/send', methods=['POST'])
@admin_required
def send_notification(current_admin: str):
    """
    Broadcasts a push message to every registered device in the audience.

    Returns:
        Response: JSON with the number of devices notified, or an error.
    """
    data = json_body()
    message = str(data.get('message') or '').strip()
    target = data.get('target', 'all')
    if not message:
        return jsonify({"error": "Message cannot be empty."}), 400
    if target not in AUDIENCES:
        return jsonify({"error": "Unknown audience"}), 400

    try:
        tokens = collect_tokens(get_db(), target)
        if not tokens:
            return jsonify({"error": "No registered devices to send to."}), 400
        sent = send_push(tokens, BRAND_NAME, message, {'scope': target})
        app.logger.info(f"{current_admin} sent a notification to {sent} {target} devices")
        return jsonify({"status": "success", "sent": sent})
    except PushError as e:
        app.logger.error(f"Push delivery error: {e}", exc_info=True)
        return jsonify({"error": "Failed to send notification."}), 502
    except Exception as e:
        app.logger.error(f"Notification send error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


# --- Support Chat API Routes ---

@app.route('/api/admin/support/threads')
@admin_required
def support_threads_api(current_admin: str):
    try:
        return jsonify(support_threads(request.args.get('q', '')))
    except Exception as e:
        app.logger.error(f"Support thread list error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/support/threads/<phone>', methods=['GET'])
@admin_required
def support_thread(current_admin: str, phone: str):
    try:
        return jsonify([support_message_view(doc) for doc in thread_query(phone).stream()])
    except Exception as e:
        app.logger.error(f"Support thread error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/support/threads/<phone>/reply', methods=['POST'])
@admin_required
def support_reply(current_admin: str, phone: str):
    text = str(json_body().get('text') or '').strip()
    if not text:
        return jsonify({"error": "Message cannot be empty."}), 400
    try:
        _, new_doc_ref = get_db().collection(SUPPORT_MESSAGES).add({
            'text': text,
            'isUser': False,
            'phone': phone,
            'seen': False,
            'timestamp': datetime.now(timezone.utc),
        })
        return jsonify({"status": "success", "id": new_doc_ref.id}), 201
    except Exception as e:
        app.logger.error(f"Support reply error: {e}", exc_info=True)
        return jsonify({"error": "Failed to send message."}), 500


@app.route('/api/admin/support/threads/<phone>/stream')
@admin_required
def support_thread_stream(current_admin: str, phone: str):
    return snapshot_stream(thread_query(phone), support_message_view)


# --- Live Activity API Routes ---

@app.route('/api/admin/live-activity')
@admin_required
def live_activity_api(current_admin: str):
    try:
        drivers = live_drivers()
        return jsonify({'drivers': drivers, 'map_url': static_map_url(drivers)})
    except Exception as e:
        app.logger.error(f"Live activity error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/admin/live-activity/stream')
@admin_required
def live_activity_stream(current_admin: str):
    def serialize(doc):
        return live_driver_view(doc) or {'id': doc.id, 'offline': True}
    return snapshot_stream(get_db().collection(DRIVERS), serialize)


# ==============================================================================
# VI. APPLICATION RUNNER
# ==============================================================================

if __name__ == '__main__':
    # Debug mode is enabled only in 'development' FLASK_ENV.
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=(FLASK_ENV == 'development'),
        threaded=True
    )
