import os, json, logging
import httpx, jwt
from jwt import PyJWKClient
from jwt.algorithms import RSAAlgorithm
from flask import request, abort, g
from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

JWKS_CACHE_KEY = "jwt:jwks"
REVOKED_KEY = "jwt:revoked"

_r = None


def _redis():
    global _r
    if _r is None:
        redis_url = os.getenv("BULK_ISSUANCE_REDIS_URL")
        if redis_url:
            _r = Redis.from_url(redis_url)
    return _r


def _fetch_jwks() -> dict:
    r = _redis()
    if r is not None:
        try:
            cached = r.get(JWKS_CACHE_KEY)
        except RedisError as e:
            logger.warning("JWKS cache unavailable: %s", e)
            cached = None
        if cached:
            return json.loads(cached)

    response = httpx.get(os.getenv("JWT_JWKS_URL"), timeout=5.0)
    response.raise_for_status()
    jwks = response.json()

    if r is not None:
        try:
            r.setex(JWKS_CACHE_KEY, int(os.getenv("JWT_JWKS_TTL", "900")), json.dumps(jwks))
        except RedisError as e:
            logger.warning("Could not cache JWKS: %s", e)
    return jwks


def _get_signing_key(token: str):
    try:
        jwk_client = PyJWKClient(os.getenv("JWT_JWKS_URL"), cache_keys=True)
        return jwk_client.get_signing_key_from_jwt(token).key
    except jwt.PyJWKClientError as e:
        logger.info("PyJWKClient lookup failed, fetching JWKS directly: %s", e)

    keys = _fetch_jwks().get("keys") or []
    if not keys:
        raise jwt.InvalidTokenError("No keys found in JWKS")

    kid = jwt.get_unverified_header(token).get("kid")
    key = next((k for k in keys if k.get("kid") == kid), keys[0])
    return RSAAlgorithm.from_jwk(json.dumps(key))


def _decode_rs256(token: str) -> dict:
    return jwt.decode(
        token,
        _get_signing_key(token),
        algorithms=["RS256"],
        options={"require": ["exp", "iat"], "verify_aud": False, "verify_iss": False},
        leeway=30,
    )


def _is_revoked(claims: dict) -> bool:
    jti = claims.get("jti")
    r = _redis()
    if not jti or r is None:
        return False
    try:
        return bool(r.sismember(REVOKED_KEY, jti))
    except RedisError as e:
        logger.warning("Revocation check skipped: %s", e)
        return False


def _principal_id(claims: dict):
    value = claims.get("user_id")
    if value is None:
        value = claims.get("sub")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


def jwt_required(fn):
    def inner(*args, **kwargs):
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            abort(401)

        token = auth.split(" ", 1)[1]
        try:
            claims = _decode_rs256(token)
        except (jwt.InvalidTokenError, httpx.HTTPError) as e:
            logger.warning("Rejected token: %s", e)
            abort(401)

        if _is_revoked(claims):
            abort(401)

        user_id = _principal_id(claims)
        if user_id is None:
            abort(401)
        g.user_id = user_id
        g.claims = claims

        return fn(*args, **kwargs)

    inner.__name__ = fn.__name__
    return inner
