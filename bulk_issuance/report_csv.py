"""
CSV rendering of stored bulk-issuance reports.

Row data is persisted as a JSON array of rows, each row an array of
string cells. The header line is stored separately as comma-joined text.
The CSV produced matches the dialect of the issuance service that wrote
the reports: comma separated, ``\\n`` terminated, and a field is quoted
only when it contains a comma, a quote or a line break, starts with
whitespace, or is exactly ``\\.``. Empty fields are never quoted.
"""
import json
from typing import List, Optional, Tuple, Union
from urllib.parse import quote

Table = List[List[str]]


class RowDataDecodeError(ValueError):
    """Raised when stored row data cannot be parsed as a JSON array"""


def decode_row_data(
    row_data: Optional[Union[bytes, bytearray, memoryview, str]]
) -> Tuple[Table, List[str]]:
    """
    Decode stored row data into a table of text cells.

    Decoding is lenient below the top level: a cell that is not a string
    becomes ``""`` and a row that is not an array becomes an empty row,
    and every such substitution is reported in the returned problem list.
    ``null`` rows and cells decode silently to empty values.

    Raises:
        RowDataDecodeError: the blob is empty, not JSON, or not an array
    """
    if isinstance(row_data, memoryview):
        row_data = row_data.tobytes()
    if row_data is None or len(row_data) == 0:
        raise RowDataDecodeError("unexpected end of JSON input")

    try:
        decoded = json.loads(row_data)
    except (TypeError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RowDataDecodeError(str(e)) from e

    if decoded is None:
        return [], []
    if not isinstance(decoded, list):
        raise RowDataDecodeError(
            f"cannot decode {type(decoded).__name__} into a list of rows"
        )

    rows, problems = [], []
    for index, row in enumerate(decoded):
        if row is None:
            rows.append([])
            continue
        if not isinstance(row, list):
            problems.append(f"row {index} is {type(row).__name__}, expected a list of cells")
            rows.append([])
            continue
        cells = []
        for column, cell in enumerate(row):
            if cell is None:
                cell = ""
            elif not isinstance(cell, str):
                problems.append(
                    f"row {index} column {column} is {type(cell).__name__}, expected a string"
                )
                cell = ""
            cells.append(cell)
        rows.append(cells)
    return rows, problems


def header_row(headers: str) -> List[str]:
    return headers.split(",")


def _needs_quotes(field: str) -> bool:
    if field == "":
        return False
    if field == "\\." or any(c in field for c in ',"\r\n'):
        return True
    return field[0].isspace()


def _format_field(field: str) -> str:
    if not _needs_quotes(field):
        return field
    return '"' + field.replace('"', '""') + '"'


def render_csv(rows: Table) -> bytes:
    lines = [",".join(_format_field(field) for field in row) + "\n" for row in rows]
    return "".join(lines).encode("utf-8")


def build_report_csv(headers: str, rows: Table) -> bytes:
    """Serialize the header line followed by the data rows as CSV bytes"""
    return render_csv([header_row(headers)] + list(rows))


def content_disposition(filename: str) -> str:
    """
    Build an ``attachment`` Content-Disposition value for a filename.

    The filename is emitted as a quoted string. Names that are not plain
    ASCII also get an RFC 5987 ``filename*`` parameter, with an ASCII
    fallback in ``filename``.
    """
    safe = filename.replace("\r", "").replace("\n", "")
    try:
        safe.encode("ascii")
    except UnicodeEncodeError:
        fallback = safe.encode("ascii", "ignore").decode("ascii")
        return 'attachment; filename="{}"; filename*=UTF-8\'\'{}'.format(
            _quote_string(fallback), quote(safe, safe="")
        )
    return f'attachment; filename="{_quote_string(safe)}"'


def _quote_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')
