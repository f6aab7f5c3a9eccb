import time
import uuid
import pytest
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from bulk_issuance import jwt_auth


def make_token(private_key, sub="1", **claims):
	now = int(time.time())
	payload = {"sub": sub, "iat": now, "exp": now + 300, "jti": uuid.uuid4().hex}
	payload.update(claims)
	return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": "test-key"})


@pytest.fixture(scope="session")
def private_key():
	return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(autouse=True)
def set_env(monkeypatch, private_key):
	monkeypatch.setenv("BULK_ISSUANCE_DATABASE_URL", "sqlite://")
	monkeypatch.setenv("JWT_JWKS_URL", "https://issuer/.well-known/jwks.json")
	monkeypatch.delenv("BULK_ISSUANCE_REDIS_URL", raising=False)
	monkeypatch.delenv("REPORT_STRICT_ROW_DATA", raising=False)
	monkeypatch.setattr(jwt_auth, "_r", None)
	monkeypatch.setattr(jwt_auth, "_get_signing_key", lambda token: private_key.public_key())


@pytest.fixture
def auth_header(private_key):
	def build(sub="1", **claims):
		return {"Authorization": f"Bearer {make_token(private_key, sub=sub, **claims)}"}
	return build
