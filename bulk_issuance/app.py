import os
import logging
from flask import Flask, Response, request, jsonify, g
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from . import jwt_auth
from .init_db import init_db
from .files import FileStore, SqlFileStore, ReportFileLookupError, ReportFileNotFound
from .report_csv import RowDataDecodeError, decode_row_data, build_report_csv, content_disposition

FORBIDDEN_MESSAGE = "User is not allowed to access this file"
UNDECODABLE_MESSAGE = "Report row data could not be decoded"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def create_app(file_store: FileStore = None):
    app = Flask(__name__)

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(__name__)

    origins = [
        o.strip()
        for o in os.getenv(
            "CORS_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000"
        ).split(",")
        if o.strip()
    ]
    CORS(
        app,
        origins=origins,
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin"],
        methods=["GET", "OPTIONS"],
        expose_headers=["Content-Disposition", "Content-Type"],
        max_age=86400,
    )

    if file_store is None:
        file_store = SqlFileStore(init_db(os.environ["BULK_ISSUANCE_DATABASE_URL"]))
    strict_row_data = _env_flag("REPORT_STRICT_ROW_DATA")

    app.extensions["file_store"] = file_store

    @app.before_request
    def log_request_info():
        logger.info(
            "Request: %s %s - Remote Address: %s - User Agent: %s",
            request.method,
            request.url,
            request.remote_addr,
            request.headers.get("User-Agent"),
        )

    @app.after_request
    def log_response_info(response):
        logger.info(
            "Response: %s %s - Status: %s",
            request.method,
            request.url,
            response.status_code,
        )
        return response

    @app.errorhandler(401)
    def unauthorized(error):
        logger.warning(
            "401 Error: %s %s - Remote Address: %s",
            request.method,
            request.url,
            request.remote_addr,
        )
        return (
            jsonify(
                {
                    "error": "Unauthorized",
                    "message": "Authentication is required to access this resource. Please provide a valid JWT token.",
                    "status_code": 401,
                }
            ),
            401,
        )

    @app.errorhandler(404)
    def not_found(error):
        logger.warning(
            "404 Error: %s %s - Remote Address: %s",
            request.method,
            request.url,
            request.remote_addr,
        )
        return (
            jsonify(
                {
                    "error": "Not Found",
                    "message": f"The requested endpoint '{request.path}' was not found.",
                    "status_code": 404,
                    "available_endpoints": ["/v1/healthz", "/v1/<id>/report"],
                }
            ),
            404,
        )

    @app.errorhandler(Exception)
    def handle_error(error):
        if isinstance(error, HTTPException):
            status_code = error.code or 500
        else:
            status_code = 500
        error_name = error.__class__.__name__

        logger.error(
            "%s Error (%s): %s %s - Remote Address: %s - Error: %s",
            status_code,
            error_name,
            request.method,
            request.url,
            request.remote_addr,
            str(error),
            exc_info=status_code >= 500,
        )

        body = {
            "error": error_name if status_code < 500 else "Internal Server Error",
            "message": (
                error.description
                if isinstance(error, HTTPException) and status_code < 500
                else "Internal Server Error - Something went wrong on our end"
            ),
            "status_code": status_code,
        }

        if os.getenv("FLASK_ENV") == "development" or os.getenv("DEBUG") == "true":
            body["debug"] = {
                "error_type": error_name,
                "original_error": str(error),
                "request_method": request.method,
                "request_path": request.path,
            }

        return jsonify(body), status_code

    @app.get("/v1/healthz")
    def healthz():
        return jsonify({"ok": True})

    @app.get("/v1/<int:file_id>/report")
    @jwt_auth.jwt_required
    def download_report_file(file_id: int):
        logger.info("Downloading report file with ID : %s", file_id)

        try:
            report_file = file_store.get_file_by_id_and_user(file_id, g.user_id)
        except ReportFileLookupError as e:
            # Missing and foreign files get the same answer so existence is not leaked.
            reason = "not_found" if isinstance(e, ReportFileNotFound) else "lookup_failed"
            logger.warning(
                "Report file %s denied for user %s (%s) - Remote Address: %s - Error: %s",
                file_id,
                g.user_id,
                reason,
                request.remote_addr,
                e,
            )
            return _text(FORBIDDEN_MESSAGE, 403)

        try:
            rows, problems = decode_row_data(report_file.row_data)
        except RowDataDecodeError as e:
            rows, problems = [], [str(e)]
        if problems:
            logger.error(
                "Error while unmarshalling row data for downloading report of file : %s : %s",
                report_file.filename,
                "; ".join(problems),
            )
            if strict_row_data:
                return _text(UNDECODABLE_MESSAGE, 422)

        payload = build_report_csv(report_file.headers, rows)

        response = Response(payload, status=200, mimetype="text/csv")
        response.headers["Content-Disposition"] = content_disposition(report_file.filename)
        logger.info(
            "Downloading file with name : %s (%s rows) for user %s",
            report_file.filename,
            len(rows),
            g.user_id,
        )
        return response

    return app
