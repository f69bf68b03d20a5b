from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_SECONDS = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="flowtrack-csrf")


def generate_csrf_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def validate_csrf_token(
    token: str, user_id: int, max_age_seconds: int = TOKEN_MAX_AGE_SECONDS
) -> bool:
    """Signed, unexpired and issued to the same user."""
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except BadSignature:
        # SignatureExpired is a BadSignature too.
        return False
    return isinstance(data, dict) and data.get("u") == user_id
