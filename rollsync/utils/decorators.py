"""Custom decorators for authorization and validation."""
from functools import wraps
from flask import request
from flask_jwt_extended import get_jwt
from rollsync.utils.helpers import error_response

INSTRUCTOR_ROLES = ('instructor', 'admin')
STUDENT_ROLES = ('student',)


def role_required(*roles):
    """Decorator to require one of ``roles`` in the JWT ``role`` claim."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            role = get_jwt().get('role')
            if role not in roles:
                return error_response(f"{' or '.join(r.title() for r in roles)} access required", 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


instructor_required = role_required(*INSTRUCTOR_ROLES)
student_required = role_required(*STUDENT_ROLES)


def json_body(*required_fields):
    """Decorator to require a JSON object body with ``required_fields``."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            data = request.get_json(silent=True)
            if data is None:
                data = {}
            if not isinstance(data, dict):
                return error_response("JSON object body required", 400)
            for field in required_fields:
                if field not in data or data[field] is None or data[field] == '':
                    return error_response(f"Missing required field: {field}", 400)
            return f(*args, **kwargs)
        return decorated_function
    return decorator
