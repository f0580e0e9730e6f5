import secrets

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

MAX_AGE_SECONDS = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="csrf-token")


def generate_csrf_token() -> str:
    return _serializer().dumps({"n": secrets.token_hex(16)})


def validate_csrf_token(
    submitted: str, expected: str, max_age: int = MAX_AGE_SECONDS
) -> bool:
    """Check ``submitted`` against the token stored in the session."""
    if not submitted or not expected:
        return False
    if not secrets.compare_digest(submitted, expected):
        return False
    try:
        _serializer().loads(submitted, max_age=max_age)
    except BadSignature:
        return False
    return True
