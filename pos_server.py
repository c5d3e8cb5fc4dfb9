from flask import Flask, request, jsonify
from dotenv import load_dotenv
import os
import logging
import threading
from typing import Any, Dict, Optional

from bill_archive import BillFormatDefaults, BillSaveError, RECEIPT_STYLES
from billing import DISCOUNT_TYPES, PREDEFINED_CATALOG
from branch_storage import ConfigurationError, StorageWriteError
from pos_service import PosService, line_items_from_payload
from remote_ledger import RemoteUnavailable

# Load environment variables
load_dotenv()

def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw

app = Flask(__name__)

_LOG_LEVEL_NAME = (_env_string('POS_LOG_LEVEL', 'INFO') or 'INFO').upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')

_SERVICE: Optional[PosService] = None
_SERVICE_LOCK = threading.Lock()


def _service() -> PosService:
    """Build the till service on first use and restore the persisted branch."""
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            svc = PosService.from_env(POS_DB_PATH)
            branch = svc.hydrate()
            if branch:
                app.logger.info("Restored active branch %s", branch)
            _SERVICE = svc
        return _SERVICE


def set_service(svc: Optional[PosService]) -> None:
    """Swap the service instance (tests and embedding)."""
    global _SERVICE
    with _SERVICE_LOCK:
        _SERVICE = svc


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error(message: str, code: int):
    return jsonify({'status': 'error', 'message': message}), code


@app.errorhandler(ConfigurationError)
def _no_branch(exc):
    return _error(str(exc) or 'No active branch', 401)


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


# ---------- BRANCH SESSION ----------
@app.route('/api/branch/login', methods=['POST'])
def api_branch_login():
    """Log a branch in by username/password."""
    data = _json_body()
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '').strip()
    if not username or not password:
        return _error('Username and password are required', 400)
    svc = _service()
    if not svc.login(username, password):
        app.logger.info("Rejected branch login for %s", username)
        return _error('Invalid username or password', 401)
    return jsonify({'status': 'success', 'branch': svc.session.branch})


@app.route('/api/branch/logout', methods=['POST'])
def api_branch_logout():
    _service().logout()
    return jsonify({'status': 'success'})


@app.route('/api/branch')
def api_branch():
    session = _service().session
    return jsonify({
        'status': 'success',
        'branch': session.branch,
        'authenticated': session.is_authenticated,
    })


@app.route('/api/catalog')
def api_catalog():
    return jsonify({'status': 'success', 'items': [item.to_dict() for item in PREDEFINED_CATALOG]})


# ---------- BILLS ----------
@app.route('/api/bills/print', methods=['POST'])
def api_print_bill():
    """Archive a bill and add it to the branch's daily totals."""
    data = _json_body()
    raw_items = data.get('lineItems')
    if not isinstance(raw_items, list):
        return _error('lineItems must be a list', 400)
    line_items = [li for li in line_items_from_payload(raw_items) if li.label.strip()]
    if not line_items:
        return _error('At least one labelled line item is required', 400)
    discount_type = data.get('discountType') or 'percentage'
    if discount_type not in DISCOUNT_TYPES:
        return _error(f'discountType must be one of {", ".join(DISCOUNT_TYPES)}', 400)
    svc = _service()
    try:
        record = svc.print_bill(
            line_items,
            tax_rate=data.get('taxRate'),
            discount_type=discount_type,
            discount_value=data.get('discountValue'),
        )
    except BillSaveError as exc:
        app.logger.error("Bill save failed: %s", exc)
        return _error('Failed to save bill', 500)
    return jsonify({'status': 'success', 'bill': record.to_dict()})


@app.route('/api/bills')
def api_bills():
    svc = _service()
    branch = svc.session.require_branch()
    day = (request.args.get('day') or '').strip()
    bills = svc.archive.bills_for_day(branch, day) if day else svc.archive.get_all(branch)
    bills.sort(key=lambda b: b.timestamp, reverse=True)
    return jsonify({'status': 'success', 'bills': [b.to_dict() for b in bills]})


@app.route('/api/bills/<bill_id>')
def api_bill(bill_id):
    svc = _service()
    bill = svc.archive.get_by_id(svc.session.require_branch(), bill_id)
    if bill is None:
        return _error('Bill not found', 404)
    return jsonify({'status': 'success', 'bill': bill.to_dict()})


# ---------- BALANCE SHEET ----------
@app.route('/api/balance-sheet')
def api_balance_sheet():
    day = (request.args.get('day') or '').strip() or None
    view = _service().balance_sheet(day)
    return jsonify({'status': 'success', 'balanceSheet': view.to_dict()})


@app.route('/api/daily-totals', methods=['DELETE'])
def api_clear_daily_totals():
    """Clear remote and local daily totals for the active branch."""
    svc = _service()
    branch = svc.session.require_branch()
    try:
        svc.clear_all_daily_totals(branch)
    except RemoteUnavailable as exc:
        app.logger.warning("Remote clear failed for %s: %s", branch, exc)
        return _error(f'Remote clear failed: {exc}', 502)
    return jsonify({'status': 'success', 'branch': branch})


# ---------- BILL FORMAT DEFAULTS ----------
@app.route('/api/bill-defaults', methods=['GET', 'PUT'])
def api_bill_defaults():
    svc = _service()
    if request.method == 'GET':
        return jsonify({'status': 'success', 'defaults': svc.get_bill_defaults().to_dict()})

    data = _json_body()
    style = data.get('receiptStyle') or 'classic'
    if style not in RECEIPT_STYLES:
        return _error(f'receiptStyle must be one of {", ".join(RECEIPT_STYLES)}', 400)
    defaults = BillFormatDefaults(
        style,
        str(data.get('paymentScanDataUrl') or '').strip() or None,
        str(data.get('printLocationAddress') or '').strip() or None,
    )
    try:
        saved = svc.save_bill_defaults(defaults)
    except StorageWriteError as exc:
        app.logger.error("Saving bill defaults failed: %s", exc)
        return _error('Failed to save bill format defaults', 500)
    return jsonify({'status': 'success', 'defaults': saved.to_dict()})
