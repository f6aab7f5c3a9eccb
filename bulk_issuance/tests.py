import csv
import io
import json
import time
import pytest
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from bulk_issuance import jwt_auth
from bulk_issuance.conftest import make_token
from bulk_issuance.files import InMemoryFileStore, ReportFile, FileStore, ReportFileLookupError

FORBIDDEN = b"User is not allowed to access this file"
REAL_GET_SIGNING_KEY = jwt_auth._get_signing_key


class FakeRedis:
	def __init__(self, *a, **k):
		self.kv = {}
		self.sets = {}
	def get(self, k):
		v = self.kv.get(k)
		return v.encode() if isinstance(v, str) else v
	def setex(self, k, ttl, val):
		self.kv[k] = val
	def sadd(self, key, member):
		self.sets.setdefault(key, set()).add(member)
	def sismember(self, key, member):
		return member in self.sets.get(key, set())


class FakeResponse:
	def __init__(self, payload):
		self.payload = payload
	def raise_for_status(self):
		pass
	def json(self):
		return self.payload


class BrokenFileStore(FileStore):
	def __init__(self, error):
		self.error = error
	def get_file_by_id_and_user(self, file_id, user_id):
		raise self.error


@pytest.fixture
def store():
	return InMemoryFileStore([
		ReportFile(1, 1, "report.csv", "a,b,c", b'[["1","2","3"]]'),
		ReportFile(2, 1, "quoted.csv", "col1,col2", b'[["x,y","z"],["say \\"hi\\"","ok"]]'),
		ReportFile(3, 1, "broken.csv", "a,b,c", b'[["1","2"'),
		ReportFile(4, 2, "someone-else.csv", "a", b'[["secret"]]'),
		ReportFile(5, 1, "addresses.csv", "id,address (street, city)", b'[["7","Main St","Springfield"]]'),
		ReportFile(6, 1, "résumé.csv", "a", b'[]'),
		ReportFile(7, 1, "mixed.csv", "a,b", b'[["1", 2], ["3","4"]]'),
		ReportFile(8, 0, "root.csv", "a", b'[["zero"]]'),
		ReportFile(9, 1, "blank-header.csv", "", b'[["x"]]'),
	])


@pytest.fixture
def app_client(store):
	from bulk_issuance.app import create_app
	app = create_app(file_store=store)
	app.testing = True
	return app.test_client(), app


def test_healthz(app_client):
	client, _app = app_client
	r = client.get("/v1/healthz")
	assert r.status_code == 200
	assert r.get_json() == {"ok": True}


def test_download_report_as_csv(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/1/report", headers=auth_header())
	assert r.status_code == 200
	assert r.data == b"a,b,c\n1,2,3\n"
	assert r.headers["Content-Type"].startswith("text/csv")
	assert r.headers["Content-Disposition"] == 'attachment; filename="report.csv"'


def test_download_quotes_cells(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/2/report", headers=auth_header())
	assert r.status_code == 200
	assert r.data.decode() == 'col1,col2\n"x,y",z\n"say ""hi""",ok\n'


def test_malformed_row_data_returns_header_only(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/3/report", headers=auth_header())
	assert r.status_code == 200
	assert r.data == b"a,b,c\n"
	assert r.headers["Content-Disposition"] == 'attachment; filename="broken.csv"'


def test_malformed_row_data_in_strict_mode(store, auth_header, monkeypatch):
	monkeypatch.setenv("REPORT_STRICT_ROW_DATA", "true")
	from bulk_issuance.app import create_app
	client = create_app(file_store=store).test_client()
	r = client.get("/v1/3/report", headers=auth_header())
	assert r.status_code == 422
	assert r.data == b"Report row data could not be decoded"


def test_header_with_embedded_comma_is_split(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/5/report", headers=auth_header())
	assert r.status_code == 200
	rows = list(csv.reader(io.StringIO(r.data.decode())))
	assert rows[0] == ["id", "address (street", " city)"]
	assert rows[1] == ["7", "Main St", "Springfield"]
	assert r.data == b'id,address (street," city)"\n7,Main St,Springfield\n'


def test_non_ascii_filename(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/6/report", headers=auth_header())
	assert r.status_code == 200
	assert r.data == b"a\n"
	disposition = r.headers["Content-Disposition"]
	assert disposition.startswith('attachment; filename="rsum.csv"')
	assert "filename*=UTF-8''r%C3%A9sum%C3%A9.csv" in disposition


@pytest.mark.parametrize("file_id", [4, 999])
def test_foreign_or_missing_file_is_forbidden(app_client, auth_header, file_id):
	client, _app = app_client
	r = client.get(f"/v1/{file_id}/report", headers=auth_header())
	assert r.status_code == 403
	assert r.data == FORBIDDEN
	assert r.headers["Content-Type"].startswith("text/plain")
	assert "Content-Disposition" not in r.headers


def test_lookup_failure_never_reports_not_found(auth_header, caplog):
	from bulk_issuance.app import create_app
	app = create_app(file_store=BrokenFileStore(ReportFileLookupError("connection refused")))
	r = app.test_client().get("/v1/1/report", headers=auth_header())
	assert r.status_code == 403
	assert r.data == FORBIDDEN
	assert "Report file 1 denied for user 1 (lookup_failed)" in caplog.text


def test_unexpected_store_error_is_500(auth_header, caplog):
	from bulk_issuance.app import create_app
	app = create_app(file_store=BrokenFileStore(RuntimeError("boom")))
	r = app.test_client().get("/v1/1/report", headers=auth_header())
	assert r.status_code == 500
	assert r.get_json()["status_code"] == 500
	assert "500 Error (RuntimeError)" in caplog.text


def test_non_integer_id_is_not_found(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/abc/report", headers=auth_header())
	assert r.status_code == 404
	assert r.get_json()["error"] == "Not Found"


def test_missing_token_is_unauthorized(app_client):
	client, _app = app_client
	r = client.get("/v1/1/report")
	assert r.status_code == 401
	assert r.get_json()["error"] == "Unauthorized"


def test_token_signed_by_other_key_is_unauthorized(app_client):
	client, _app = app_client
	other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
	r = client.get("/v1/1/report", headers={"Authorization": f"Bearer {make_token(other)}"})
	assert r.status_code == 401


def test_expired_token_is_unauthorized(app_client, auth_header):
	client, _app = app_client
	now = int(time.time())
	r = client.get("/v1/1/report", headers=auth_header(iat=now - 7200, exp=now - 3600))
	assert r.status_code == 401


def test_non_numeric_subject_is_unauthorized(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/1/report", headers=auth_header(sub="alice"))
	assert r.status_code == 401


def test_user_id_claim_takes_precedence(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/4/report", headers=auth_header(sub="1", user_id=2))
	assert r.status_code == 200
	assert r.data == b"a\nsecret\n"


def test_revoked_token_is_unauthorized(app_client, private_key, monkeypatch):
	client, _app = app_client
	fake = FakeRedis()
	monkeypatch.setattr(jwt_auth, "_r", fake)
	token = make_token(private_key, jti="revoked-1")
	fake.sadd(jwt_auth.REVOKED_KEY, "revoked-1")
	r = client.get("/v1/1/report", headers={"Authorization": f"Bearer {token}"})
	assert r.status_code == 401


class FailingJWKClient:
	def __init__(self, *a, **k):
		pass
	def get_signing_key_from_jwt(self, token):
		raise jwt.PyJWKClientError("unreachable")


def test_jwks_fallback_is_cached_in_redis(private_key, monkeypatch):
	fake = FakeRedis()
	monkeypatch.setattr(jwt_auth, "_r", fake)
	monkeypatch.setattr(jwt_auth, "_get_signing_key", REAL_GET_SIGNING_KEY)
	monkeypatch.setattr(jwt_auth, "PyJWKClient", FailingJWKClient)

	jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
	jwk["kid"] = "test-key"
	calls = []

	def fake_get(url, timeout=None):
		calls.append(url)
		return FakeResponse({"keys": [jwk]})

	monkeypatch.setattr(jwt_auth.httpx, "get", fake_get)

	token = make_token(private_key, sub="9")
	assert jwt_auth._decode_rs256(token)["sub"] == "9"
	assert jwt_auth._decode_rs256(token)["sub"] == "9"
	assert calls == ["https://issuer/.well-known/jwks.json"]
	assert json.loads(fake.get(jwt_auth.JWKS_CACHE_KEY)) == {"keys": [jwk]}


def test_empty_jwks_is_unauthorized(app_client, auth_header, monkeypatch):
	client, _app = app_client
	monkeypatch.setattr(jwt_auth, "_get_signing_key", REAL_GET_SIGNING_KEY)
	monkeypatch.setattr(jwt_auth, "PyJWKClient", FailingJWKClient)
	monkeypatch.setattr(jwt_auth.httpx, "get", lambda url, timeout=None: FakeResponse({"keys": []}))
	r = client.get("/v1/1/report", headers=auth_header())
	assert r.status_code == 401



def test_wrong_typed_cells_keep_the_rest_of_the_table(app_client, auth_header, caplog):
	client, _app = app_client
	r = client.get("/v1/7/report", headers=auth_header())
	assert r.status_code == 200
	assert r.data == b"a,b\n1,\n3,4\n"
	assert "row 0 column 1 is int, expected a string" in caplog.text


def test_wrong_typed_cells_in_strict_mode(store, auth_header, monkeypatch):
	monkeypatch.setenv("REPORT_STRICT_ROW_DATA", "true")
	from bulk_issuance.app import create_app
	client = create_app(file_store=store).test_client()
	r = client.get("/v1/7/report", headers=auth_header())
	assert r.status_code == 422
	assert client.get("/v1/1/report", headers=auth_header()).status_code == 200


def test_empty_header_line_is_an_empty_record(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/9/report", headers=auth_header())
	assert r.status_code == 200
	assert r.data == b"\nx\n"


def test_zero_user_id_claim_is_not_replaced_by_subject(app_client, auth_header):
	client, _app = app_client
	r = client.get("/v1/8/report", headers=auth_header(sub="1", user_id=0))
	assert r.status_code == 200
	assert r.data == b"a\nzero\n"
	assert client.get("/v1/1/report", headers=auth_header(sub="1", user_id=0)).status_code == 403


@pytest.mark.parametrize("claims", [
	{"user_id": 1.9},
	{"user_id": True},
	{"user_id": "1.0"},
	{"user_id": "-1"},
	{"user_id": [1]},
	{"sub": " 1"},
])
def test_non_integer_principal_is_unauthorized(app_client, auth_header, claims):
	client, _app = app_client
	claims = dict(claims)
	sub = claims.pop("sub", "1")
	r = client.get("/v1/1/report", headers=auth_header(sub=sub, **claims))
	assert r.status_code == 401
