import pytest
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, Text, LargeBinary, DateTime, func

from bulk_issuance.init_db import init_db
from bulk_issuance.files import SqlFileStore, ReportFileNotFound, ReportFileLookupError


@pytest.fixture
def db_url(tmp_path):
	url = f"sqlite:///{tmp_path / 'bulk_issuance.db'}"
	engine = create_engine(url)
	metadata = MetaData()
	file_data = Table(
		"file_data",
		metadata,
		Column("id", Integer, primary_key=True),
		Column("filename", String(255)),
		Column("total_records", Integer),
		Column("user_id", Integer, nullable=False),
		Column("headers", Text),
		Column("row_data", LargeBinary),
		Column("date", DateTime, server_default=func.now()),
	)
	metadata.create_all(engine)
	with engine.begin() as conn:
		conn.execute(file_data.insert(), [
			{"id": 1, "filename": "report.csv", "total_records": 1, "user_id": 7,
			 "headers": "name,email", "row_data": b'[["Ann","ann@example.com"]]'},
			{"id": 2, "filename": "other.csv", "total_records": 1, "user_id": 8,
			 "headers": "name", "row_data": b'[["Bob"]]'},
		])
	engine.dispose()
	return url


def test_sql_store_returns_owned_file(db_url):
	store = SqlFileStore(init_db(db_url))
	report_file = store.get_file_by_id_and_user(1, 7)
	assert report_file.id == 1
	assert report_file.filename == "report.csv"
	assert report_file.headers == "name,email"
	assert bytes(report_file.row_data) == b'[["Ann","ann@example.com"]]'


@pytest.mark.parametrize("file_id,user_id", [(2, 7), (3, 7)])
def test_sql_store_hides_foreign_and_missing_files(db_url, file_id, user_id):
	store = SqlFileStore(init_db(db_url))
	with pytest.raises(ReportFileNotFound):
		store.get_file_by_id_and_user(file_id, user_id)


def test_sql_store_wraps_database_errors(db_url):
	db = init_db(db_url)
	store = SqlFileStore(db)
	with db["engine"].begin() as conn:
		conn.exec_driver_sql("DROP TABLE file_data")
	with pytest.raises(ReportFileLookupError) as exc:
		store.get_file_by_id_and_user(1, 7)
	assert not isinstance(exc.value, ReportFileNotFound)


def test_app_serves_reports_from_database(db_url, monkeypatch, auth_header):
	monkeypatch.setenv("BULK_ISSUANCE_DATABASE_URL", db_url)
	from bulk_issuance.app import create_app
	client = create_app().test_client()

	r = client.get("/v1/1/report", headers=auth_header(sub="7"))
	assert r.status_code == 200
	assert r.data == b"name,email\nAnn,ann@example.com\n"
	assert r.headers["Content-Disposition"] == 'attachment; filename="report.csv"'

	r = client.get("/v1/2/report", headers=auth_header(sub="7"))
	assert r.status_code == 403
	assert r.data == b"User is not allowed to access this file"
