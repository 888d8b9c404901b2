from flask import Flask, request, jsonify
from werkzeug.exceptions import RequestEntityTooLarge
import base64
import binascii
import re
import logging

import bundle_codec
from bundle_codec import BundleError, BundleFormatError

app = Flask(__name__)

# SECURITY: Disable Flask sessions to prevent any session-based storage
app.config['SESSION_COOKIE_SECURE'] = True
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['PERMANENT_SESSION_LIFETIME'] = 0  # No persistent sessions
app.config['SESSION_TYPE'] = None

# Codec behaviour, overridable with FLASK_* environment variables
app.config['CA_BLOCK_POLICY'] = bundle_codec.CA_POLICY_LENIENT
app.config['LEAF_SELECTION'] = bundle_codec.LEAF_ORDINAL
app.config['PFX_CIPHER'] = bundle_codec.PFX_CIPHER_LEGACY
app.config['MAX_CONTENT_LENGTH'] = 1024 * 1024
app.config.from_prefixed_env()

# SECURITY: Configure logging to prevent sensitive data from being logged
logging.getLogger('werkzeug').setLevel(logging.WARNING)

# Endpoints whose request bodies carry private keys or passwords
SENSITIVE_PATHS = (
    '/api/check-match',
    '/api/create-pfx',
    '/api/extract-pfx',
    '/api/extract',
)


class SensitiveDataFilter(logging.Filter):
    """Redact private keys and passwords from log messages"""
    def filter(self, record):
        if hasattr(record, 'msg') and record.msg:
            msg = str(record.msg)
            msg = re.sub(r'-----BEGIN.*?PRIVATE KEY-----.*?-----END.*?PRIVATE KEY-----',
                         '[PRIVATE KEY REDACTED]', msg, flags=re.DOTALL)
            msg = re.sub(r'"(private_key|password|output_key_password|key_password)":\s*"[^"]*"',
                         r'"\1": "[REDACTED]"', msg)
            record.msg = msg
        return True


# Apply filter to all loggers
for handler in logging.root.handlers:
    handler.addFilter(SensitiveDataFilter())


class RequestError(Exception):
    """Malformed request: missing field, bad base64 or unsupported upload."""


@app.before_request
def suppress_request_logging():
    """Suppress request logging for endpoints that handle private keys"""
    if request.path in SENSITIVE_PATHS:
        werkzeug_logger = logging.getLogger('werkzeug')
        request._original_log_level = werkzeug_logger.level
        werkzeug_logger.setLevel(logging.ERROR)


@app.after_request
def restore_request_logging(response):
    """Restore logging level after processing sensitive endpoints"""
    if hasattr(request, '_original_log_level'):
        logging.getLogger('werkzeug').setLevel(request._original_log_level)
    return response


@app.errorhandler(RequestError)
def handle_request_error(e):
    return jsonify({'success': False, 'error': str(e), 'error_type': 'request'}), 400


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    limit = app.config['MAX_CONTENT_LENGTH']
    return jsonify({
        'success': False,
        'error': f'Upload is too large. The limit is {limit} bytes.',
        'error_type': 'request',
    }), 413


@app.errorhandler(BundleError)
def handle_bundle_error(e):
    app.logger.info('Codec rejected input on %s: %s', request.path, e.kind)
    return jsonify({'success': False, 'error': str(e), 'error_type': e.kind})


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise RequestError('Request body must be a JSON object.')
    return data


def _required(data, field, label):
    value = data.get(field) or ''
    if not isinstance(value, str) or not value.strip():
        raise RequestError(f'{label} is required.')
    return value


def _decode_base64(value, label):
    try:
        return base64.b64decode(''.join(value.split()), validate=True)
    except (binascii.Error, ValueError):
        raise RequestError(f'{label} must be base64-encoded.')


def _p7b_input(input_data):
    """P7B input may be pasted PEM or base64 encoded DER"""
    if 'BEGIN' in input_data.upper():
        return input_data.encode('utf-8')
    return _decode_base64(input_data, 'P7B data')


def _extract_pfx(pfx_bytes, password, output_key_password):
    if not password:
        raise RequestError('Please enter the PFX password.')
    return bundle_codec.extract_from_pfx(
        pfx_bytes, password, output_key_password or None,
        leaf_selection=app.config['LEAF_SELECTION'],
    )


def _extract_p7b(p7b_bytes):
    return bundle_codec.extract_from_p7b(p7b_bytes, leaf_selection=app.config['LEAF_SELECTION'])


def _components_response(components):
    result = {'success': True}
    result.update(components.to_dict())
    return jsonify(result)


def _output_filename(friendly_name, extension):
    base = (friendly_name or '').strip() or 'certificate'
    return f'{base}.{extension}'


@app.route('/api/extract-pfx', methods=['POST'])
def extract_pfx():
    data = _json_body()
    pfx_bytes = _decode_base64(_required(data, 'input_data', 'PFX data'), 'PFX data')
    components = _extract_pfx(pfx_bytes, data.get('password', ''), data.get('output_key_password', ''))
    return _components_response(components)


@app.route('/api/extract-p7b', methods=['POST'])
def extract_p7b():
    data = _json_body()
    p7b_bytes = _p7b_input(_required(data, 'input_data', 'P7B data'))
    return _components_response(_extract_p7b(p7b_bytes))


@app.route('/api/extract', methods=['POST'])
def extract_upload():
    """
    Extract an uploaded .pfx/.p12/.p7b/.p7c file.
    The container type is taken from the file extension.
    """
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        raise RequestError('Please select a file first.')
    try:
        kind = bundle_codec.bundle_kind_for_filename(upload.filename)
    except BundleFormatError as e:
        raise RequestError(str(e))

    file_bytes = upload.read()
    if kind == 'pkcs7':
        components = _extract_p7b(file_bytes)
    else:
        components = _extract_pfx(
            file_bytes, request.form.get('password', ''), request.form.get('output_key_password', '')
        )
    return _components_response(components)


@app.route('/api/create-pfx', methods=['POST'])
def create_pfx():
    data = _json_body()
    key_pem = _required(data, 'private_key', 'Private Key')
    cert_pem = _required(data, 'certificate', 'Certificate')
    password = _required(data, 'password', 'Export password')
    friendly_name = data.get('friendly_name') or None

    pfx_bytes = bundle_codec.create_pfx(
        key_pem, cert_pem, data.get('ca_bundle') or None, password,
        friendly_name=friendly_name,
        ca_policy=app.config['CA_BLOCK_POLICY'],
        cipher=app.config['PFX_CIPHER'],
        key_password=data.get('key_password') or None,
    )
    return jsonify({
        'success': True,
        'output_data': base64.b64encode(pfx_bytes).decode('utf-8'),
        'filename': _output_filename(friendly_name, 'pfx'),
    })


@app.route('/api/create-p7b', methods=['POST'])
def create_p7b():
    data = _json_body()
    cert_pem = _required(data, 'certificate', 'Certificate')
    p7b_pem = bundle_codec.create_p7b(
        cert_pem, data.get('ca_bundle') or None, ca_policy=app.config['CA_BLOCK_POLICY']
    )
    return jsonify({
        'success': True,
        'output_data': p7b_pem,
        'filename': _output_filename(data.get('friendly_name'), 'p7b'),
    })


@app.route('/api/check-match', methods=['POST'])
def check_match():
    """
    SECURITY: This endpoint processes private keys but NEVER stores them.
    Keys are parsed in memory for this request only and request logging is
    lowered for this path.
    """
    data = _json_body()
    cert_pem = _required(data, 'certificate', 'Certificate')
    key_pem = _required(data, 'private_key', 'Private Key')

    match = bundle_codec.verify_cert_key_match(cert_pem, key_pem, data.get('password') or None)
    return jsonify({
        'success': True,
        'match': match,
        'message': 'Certificate and private key match' if match else 'Certificate and private key do NOT match'
    })


@app.route('/api/decode-certificate', methods=['POST'])
def decode_certificate():
    data = _json_body()
    cert_pem = _required(data, 'certificate', 'Certificate')
    result = {'success': True}
    result.update(bundle_codec.describe_certificate(cert_pem))
    return jsonify(result)


if __name__ == '__main__':
    # SECURITY NOTE: In production, set debug=False
    # Debug mode can expose sensitive information in error pages
    app.run(host='0.0.0.0', port=8000, debug=False)
