"""Uniform JSON response envelope: {success, message, data?, error?}."""
from flask import jsonify


def success_response(message, data=None, status_code=200):
    """Build a successful envelope; `data` is omitted when None."""
    body = {'success': True, 'message': message}
    if data is not None:
        body['data'] = data
    return jsonify(body), status_code


def error_response(message, status_code=400, error=None):
    """Build a failure envelope; `error` is omitted when None."""
    body = {'success': False, 'message': message}
    if error is not None:
        body['error'] = error
    return jsonify(body), status_code
