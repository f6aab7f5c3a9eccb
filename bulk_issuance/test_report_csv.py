import pytest

from bulk_issuance.report_csv import RowDataDecodeError, decode_row_data, build_report_csv, content_disposition, header_row


def test_build_report_csv():
	assert build_report_csv("a,b,c", [["1", "2", "3"]]) == b"a,b,c\n1,2,3\n"


def test_build_report_csv_quotes_delimiters_quotes_and_newlines():
	payload = build_report_csv("x,y", [["x,y", "z"], ['a "b"', "line\nbreak"], ["cr\rin", "\\."]])
	assert payload.decode() == 'x,y\n"x,y",z\n"a ""b""","line\nbreak"\n"cr\rin","\\."\n'


def test_build_report_csv_leaves_empty_fields_bare():
	assert build_report_csv("", [["x"], [""], ["", ""]]) == b"\nx\n\n,\n"


def test_build_report_csv_quotes_leading_whitespace():
	assert build_report_csv("id,address (street, city)", []) == b'id,address (street," city)"\n'
	assert build_report_csv("a", [["\tx"], ["x "]]) == b'a\n"\tx"\nx \n'


def test_header_row_splits_on_every_comma():
	assert header_row("id,address (street, city)") == ["id", "address (street", " city)"]


def test_decode_row_data_accepts_bytes_and_str():
	assert decode_row_data(b'[["1","2"]]') == ([["1", "2"]], [])
	assert decode_row_data('[["1","2"]]') == ([["1", "2"]], [])
	assert decode_row_data(memoryview(b'[["1"]]')) == ([["1"]], [])


def test_decode_row_data_null_is_empty_table():
	assert decode_row_data(b"null") == ([], [])
	assert decode_row_data(b'[null, ["a", null]]') == ([[], ["a", ""]], [])


def test_decode_row_data_keeps_rows_around_wrong_types():
	rows, problems = decode_row_data(b'[["1", 2], "flat", ["3", "4"], [true, {"k": "v"}]]')
	assert rows == [["1", ""], [], ["3", "4"], ["", ""]]
	assert problems == [
		"row 0 column 1 is int, expected a string",
		"row 1 is str, expected a list of cells",
		"row 3 column 0 is bool, expected a string",
		"row 3 column 1 is dict, expected a string",
	]


@pytest.mark.parametrize("blob", [
	None,
	b"",
	b'[["1","2"',
	b'{"a": 1}',
	b'"text"',
	b"\xff\xfe\xfd",
])
def test_decode_row_data_rejects_unparseable_blobs(blob):
	with pytest.raises(RowDataDecodeError):
		decode_row_data(blob)


def test_content_disposition():
	assert content_disposition("report.csv") == 'attachment; filename="report.csv"'
	assert content_disposition('we"ird.csv') == 'attachment; filename="we\\"ird.csv"'
	assert content_disposition("bad\r\nname.csv") == 'attachment; filename="badname.csv"'
